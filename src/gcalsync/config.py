"""
Loading and validation of the .gcalsync.toml configuration file.
"""

import logging
import tomllib
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path

from gcalsync.models import ConfigError
from gcalsync.models import SyncWindow

logger = logging.getLogger(__name__)

VISIBILITIES = ("default", "public", "private", "confidential")


@dataclass
class AppConfig:
    """Client credentials plus optional tuning knobs."""

    client_id: str
    client_secret: str
    rate_interval_ms: int = 400
    window_past_hours: int = 24
    window_future_hours: int = 1440
    disable_reminders: bool = False
    block_event_visibility: str = "private"
    authorized_ports: list[int] = field(default_factory=lambda: [8080, 8081, 8082])

    def window(self, now: datetime | None = None) -> SyncWindow:
        now = now or datetime.now(timezone.utc)
        return SyncWindow(
            start=now - timedelta(hours=self.window_past_hours),
            end=now + timedelta(hours=self.window_future_hours),
        )


def _lookup(raw: dict, table: str, key: str):
    section = raw.get(table)
    if isinstance(section, dict) and key in section:
        return section[key]
    return raw.get(key)


def _int_option(raw: dict, key: str, default: int, minimum: int) -> int:
    value = _lookup(raw, "general", key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {value}")
    return value


def load_config(path: Path) -> AppConfig:
    """Read and validate the configuration file at *path*."""
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}. Create it with a [google] table "
            f"holding client_id and client_secret."
        )
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Malformed config file {path}: {e}") from e

    credentials = {}
    for key in ("client_id", "client_secret"):
        value = _lookup(raw, "google", key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"Missing '{key}' in the [google] table of {path}")
        credentials[key] = value.strip()

    disable_reminders = _lookup(raw, "general", "disable_reminders")
    if disable_reminders is None:
        disable_reminders = False
    elif not isinstance(disable_reminders, bool):
        raise ConfigError(f"'disable_reminders' must be true or false, got {disable_reminders!r}")

    visibility = _lookup(raw, "general", "block_event_visibility") or "private"
    if visibility not in VISIBILITIES:
        raise ConfigError(
            f"'block_event_visibility' must be one of {', '.join(VISIBILITIES)}, "
            f"got {visibility!r}"
        )

    ports = _lookup(raw, "general", "authorized_ports")
    if ports is None:
        ports = [8080, 8081, 8082]
    elif not isinstance(ports, list) or not ports or not all(
        isinstance(p, int) and not isinstance(p, bool) and 0 < p < 65536 for p in ports
    ):
        raise ConfigError(f"'authorized_ports' must be a non-empty list of ports, got {ports!r}")

    cfg = AppConfig(
        client_id=credentials["client_id"],
        client_secret=credentials["client_secret"],
        rate_interval_ms=_int_option(raw, "rate_interval_ms", 400, 1),
        window_past_hours=_int_option(raw, "window_past_hours", 24, 0),
        window_future_hours=_int_option(raw, "window_future_hours", 1440, 1),
        disable_reminders=disable_reminders,
        block_event_visibility=visibility,
        authorized_ports=list(ports),
    )
    logger.debug(
        "Loaded config from %s (rate %d ms, window -%dh/+%dh)",
        path,
        cfg.rate_interval_ms,
        cfg.window_past_hours,
        cfg.window_future_hours,
    )
    return cfg
