"""
Rate-limited, retrying executor that serializes every remote calendar call.
"""

import contextlib
import json
import logging
import signal
import threading
import time
from typing import Callable
from typing import TypeVar

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.exceptions import TransportError
from googleapiclient.errors import HttpError

from gcalsync.models import RemoteFatal
from gcalsync.models import RemoteMissing
from gcalsync.models import RemoteTransient
from gcalsync.models import SyncCancelled

T = TypeVar("T")

MAX_RETRIES = 3
INITIAL_BACKOFF = 8.0

# 403 reasons that mean "slow down" rather than "you may not do this".
_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)
_MISSING_STATUSES = frozenset({404, 410})
# socket.timeout, ConnectionError and TimeoutError are OSError subclasses.
# TransportError covers a token refresh that never reached the token endpoint.
_NETWORK_ERRORS = (httplib2.HttpLib2Error, TransportError, OSError)


def _error_reason(error: HttpError) -> str | None:
    """Return the first 'reason' from a Google API error payload, if any."""
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (ValueError, AttributeError):
        return None
    detail = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(detail, dict):
        # OAuth-style bodies carry a bare string: {"error": "invalid_grant"}
        return None
    errors = detail.get("errors") or [{}]
    return errors[0].get("reason") if isinstance(errors[0], dict) else None


def classify_http_error(error: HttpError) -> type:
    """Map an HttpError to RemoteTransient, RemoteMissing or RemoteFatal."""
    status = error.resp.status
    if status in _MISSING_STATUSES:
        return RemoteMissing
    if status == 429 or 500 <= status < 600:
        return RemoteTransient
    if status == 403:
        reason = _error_reason(error)
        if reason is None or reason in _RATE_LIMIT_REASONS:
            return RemoteTransient
    return RemoteFatal


class RateLimitedExecutor:
    """Runs remote calls one at a time, at most one per *interval_ms*.

    Transient failures (rate limits, 429, 5xx, network) are retried up to
    three times with 8/16/32 second backoff.  404 and 410 surface as
    RemoteMissing immediately; any other failure surfaces as RemoteFatal.
    """

    def __init__(
        self,
        interval_ms: int = 400,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF,
    ):
        self.interval = interval_ms / 1000.0
        self.sleep = sleep
        self.clock = clock
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.logger = logging.getLogger(__name__)
        self.calls = 0
        self.cancelled = False
        self._last_call: float | None = None

    def _wait_for_tick(self):
        if self._last_call is not None:
            remaining = self._last_call + self.interval - self.clock()
            if remaining > 0:
                self.sleep(remaining)
        self._last_call = self.clock()

    def _check_cancelled(self):
        if self.cancelled:
            raise SyncCancelled("Interrupted by user; stopping after the last completed call")

    def run(self, operation: str, call: Callable[[], T]) -> T:
        """Execute *call* under pacing and retry. *operation* names it in logs."""
        backoff = self.initial_backoff
        for attempt in range(self.max_retries + 1):
            self._check_cancelled()
            self._wait_for_tick()
            self.calls += 1
            try:
                return call()
            except HttpError as e:
                kind = classify_http_error(e)
                status = e.resp.status
                if kind is RemoteMissing:
                    label = "gone" if status == 410 else "not found"
                    raise RemoteMissing(f"{operation}: {label} (HTTP {status})", status) from e
                if kind is RemoteFatal:
                    self.logger.error(f"{operation} failed: HTTP {status}: {e}")
                    raise RemoteFatal(f"{operation} failed: HTTP {status}: {e}", status) from e
                failure = RemoteTransient(f"{operation}: HTTP {status}", status)
            except RefreshError as e:
                self.logger.error(f"{operation} failed: token refresh rejected: {e}")
                raise RemoteFatal(
                    f"{operation} failed: token refresh rejected ({e}); "
                    "re-authorize with 'gcalsync add ACCOUNT'"
                ) from e
            except _NETWORK_ERRORS as e:
                failure = RemoteTransient(f"{operation}: network error: {e}")

            if attempt >= self.max_retries:
                self.logger.error(f"{failure} (giving up after {attempt + 1} attempts)")
                raise RemoteFatal(
                    f"{failure}; retries exhausted after {attempt + 1} attempts", failure.status
                ) from failure
            self.logger.warning(
                f"{failure}, retrying in {backoff:g}s (attempt {attempt + 1}/{self.max_retries})"
            )
            self.sleep(backoff)
            backoff *= 2
        raise AssertionError("unreachable")

    @contextlib.contextmanager
    def interruptible(self):
        """Turn SIGINT into a flag checked before the next remote call.

        The in-flight call always completes; outside the main thread this is
        a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            yield self
            return

        def _handler(signum, frame):
            if self.cancelled:
                raise KeyboardInterrupt
            self.logger.warning("Interrupt received; finishing the current call")
            self.cancelled = True

        previous = signal.signal(signal.SIGINT, _handler)
        try:
            yield self
        finally:
            signal.signal(signal.SIGINT, previous)
