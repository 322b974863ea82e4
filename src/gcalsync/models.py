"""
Pure data models and the error taxonomy; no sqlite or Google imports.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Any

DEFAULT_STATE_DB = Path(".gcalsync.db")
DEFAULT_CONFIG = Path(".gcalsync.toml")

BLOCKER_TAG = "gcalsync_blocker"
BUSY_TITLE = "Busy"


class GcalsyncError(Exception):
    """Base exception for calendar sync errors."""

    exit_code = 1


class UserError(GcalsyncError):
    """Missing argument, unknown calendar or unknown account."""


class ConfigError(GcalsyncError):
    """Missing or malformed configuration file."""


class StateIndexError(GcalsyncError):
    """The local index is corrupt or has an unexpected schema."""


class RemoteError(GcalsyncError):
    """Base class for failures reported by the remote calendar API."""

    exit_code = 2

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RemoteTransient(RemoteError):
    """Rate limited, too many requests or network failure. Retried by the executor."""


class RemoteMissing(RemoteError):
    """The remote reports the object as not found (404) or gone (410)."""


class RemoteFatal(RemoteError):
    """Any other non-2xx status, or transient failures that exhausted retries."""


class SyncCancelled(GcalsyncError):
    """The user interrupted the run; raised between remote calls."""

    exit_code = 130


class DeleteResult(enum.Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    GONE = "gone"


@dataclass(frozen=True)
class SyncWindow:
    """Time range [start, end) within which events are considered for projection."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class RemoteEvent:
    """The subset of a remote event the engine needs."""

    event_id: str
    calendar_id: str
    start: dict[str, str]
    end: dict[str, str]
    updated: str = ""
    status: str = "confirmed"
    summary: str = ""
    html_link: str = ""
    transparency: str = "opaque"
    self_response: str | None = None
    private_properties: dict[str, str] = field(default_factory=dict)

    @property
    def is_blocker(self) -> bool:
        return self.private_properties.get(BLOCKER_TAG) == "1"

    @property
    def is_all_day(self) -> bool:
        return "date" in self.start and "dateTime" not in self.start


@dataclass
class EventSpec:
    """Body of a blocker to insert into or patch in a target calendar."""

    start: dict[str, str]
    end: dict[str, str]
    title: str
    origin_fingerprint: str
    origin_calendar_id: str
    origin_event_id: str
    description: str | None = None
    visibility: str = "private"
    disable_reminders: bool = False

    def to_body(self) -> dict[str, Any]:
        """Render the Calendar v3 request body.

        description, location and attendees are always written so that a
        patch from a detailed projection to a private one clears them.
        """
        body: dict[str, Any] = {
            "summary": self.title,
            "description": self.description or "",
            "location": "",
            "attendees": [],
            "start": dict(self.start),
            "end": dict(self.end),
            "transparency": "opaque",
            "visibility": self.visibility,
            "extendedProperties": {
                "private": {
                    BLOCKER_TAG: "1",
                    "origin_fingerprint": self.origin_fingerprint,
                    "origin_calendar_id": self.origin_calendar_id,
                    "origin_event_id": self.origin_event_id,
                }
            },
        }
        if self.disable_reminders:
            body["reminders"] = {"useDefault": False, "overrides": []}
        return body


@dataclass(frozen=True)
class CalendarRecord:
    account_name: str
    calendar_id: str


@dataclass(frozen=True)
class BlockerRecord:
    """One projected blocker as recorded in the local index."""

    event_id: str
    calendar_id: str
    account_name: str
    origin_calendar_id: str
    origin_event_id: str
    origin_fingerprint: str
    last_seen_at: int = 0


@dataclass
class SyncStats:
    """Statistics for a sync or desync run."""

    added: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0
    adopted: int = 0


@dataclass
class EngineContext:
    """Everything a reconcile or desync run needs besides the index store.

    Built once per invocation by the command surface and passed explicitly.
    """

    broker: Any
    executor: Any
    window: SyncWindow
    visibility: str = "private"
    disable_reminders: bool = False
    dry_run: bool = False
