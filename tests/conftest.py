"""
Shared pytest fixtures and event helpers.
"""

import logging
from datetime import datetime
from datetime import timezone

import pytest

from gcalsync.db import StateDatabase
from gcalsync.executor import RateLimitedExecutor
from gcalsync.models import EngineContext
from gcalsync.models import SyncStats
from gcalsync.models import SyncWindow
from tests.fake_service import FakeBroker
from tests.fake_service import FakeCalendarService

ACCOUNT = "work"
OTHER_ACCOUNT = "personal"
SOURCE_CAL_ID = "source@example.com"
TARGET_CAL_ID = "target@example.com"

WINDOW = SyncWindow(
    start=datetime(2026, 3, 1, tzinfo=timezone.utc),
    end=datetime(2026, 4, 1, tzinfo=timezone.utc),
)


def make_event(
    event_id: str,
    summary: str = "Test Event",
    start: str = "2026-03-02T10:00:00Z",
    end: str = "2026-03-02T11:00:00Z",
    **extra,
) -> dict:
    """Return a minimal Calendar v3 event resource."""
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        "updated": "2026-02-24T00:00:00Z",
        "status": "confirmed",
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
        **extra,
    }


def make_all_day_event(event_id: str, summary: str = "Holiday") -> dict:
    return {
        "id": event_id,
        "summary": summary,
        "start": {"date": "2026-03-03"},
        "end": {"date": "2026-03-04"},
        "updated": "2026-02-24T00:00:00Z",
        "status": "confirmed",
    }


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self):
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / ".gcalsync.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(clock):
    return RateLimitedExecutor(interval_ms=400, sleep=clock.sleep, clock=clock)


@pytest.fixture
def service():
    return FakeCalendarService({SOURCE_CAL_ID: {}, TARGET_CAL_ID: {}})


@pytest.fixture
def broker(service):
    return FakeBroker(service)


@pytest.fixture
def engine_ctx(broker, executor):
    return EngineContext(broker=broker, executor=executor, window=WINDOW)


@pytest.fixture
def registered(state_db):
    """Source and target calendars registered under two accounts."""
    state_db.add_calendar(ACCOUNT, SOURCE_CAL_ID)
    state_db.add_calendar(OTHER_ACCOUNT, TARGET_CAL_ID)
    return state_db


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncStats()
