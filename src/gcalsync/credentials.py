"""
Credential broker: an authenticated Calendar v3 service per account name.

Tokens live in the account_tokens table of the index; the engine never reads
them.  A missing or unusable token triggers the installed-app OAuth flow on
the first free authorized loopback port.
"""

import json
import logging
import socket

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from gcalsync.config import AppConfig
from gcalsync.db import StateDatabase
from gcalsync.models import ConfigError
from gcalsync.models import UserError

SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _client_config(config: AppConfig) -> dict:
    return {
        "installed": {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }


def _first_free_port(ports: list[int]) -> int:
    for port in ports:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("localhost", port))
            except OSError:
                continue
            return port
    raise ConfigError(
        f"None of the authorized_ports {ports} is free for the OAuth callback; "
        f"free one or change 'authorized_ports' in the config"
    )


class CredentialBroker:
    """Hands out authenticated Calendar services keyed by account name."""

    def __init__(self, config: AppConfig, state_db: StateDatabase, interactive: bool = True):
        self.config = config
        self.state_db = state_db
        self.interactive = interactive
        self.logger = logging.getLogger(__name__)
        self._services: dict[str, object] = {}

    def _load_credentials(self, account_name: str) -> Credentials | None:
        token_json = self.state_db.get_token(account_name)
        if not token_json:
            return None
        try:
            return Credentials.from_authorized_user_info(json.loads(token_json), SCOPES)
        except (ValueError, KeyError) as e:
            self.logger.warning(f"Stored token for '{account_name}' is unusable: {e}")
            return None

    def _authorize(self, account_name: str) -> Credentials:
        if not self.interactive:
            raise UserError(
                f"Account '{account_name}' has no valid token; run 'gcalsync add {account_name}'"
            )
        port = _first_free_port(self.config.authorized_ports)
        self.logger.info(f"Authorizing account '{account_name}' in the browser (port {port})")
        flow = InstalledAppFlow.from_client_config(_client_config(self.config), SCOPES)
        return flow.run_local_server(port=port, open_browser=True)

    def get_credentials(self, account_name: str) -> Credentials:
        creds = self._load_credentials(account_name)
        if creds and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
                self.logger.debug(f"Refreshed token for '{account_name}'")
            except RefreshError as e:
                self.logger.warning(f"Token refresh failed for '{account_name}': {e}")
                creds = None
        if not creds or not creds.valid:
            creds = self._authorize(account_name)
        self.state_db.save_token(account_name, creds.to_json())
        return creds

    def get_service(self, account_name: str):
        """Return a cached Calendar v3 service for *account_name*."""
        if account_name not in self._services:
            creds = self.get_credentials(account_name)
            self._services[account_name] = build(
                "calendar", "v3", credentials=creds, cache_discovery=False
            )
        return self._services[account_name]
