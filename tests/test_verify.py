"""
Tests for the post-sync audit in gcalsync.verify.
"""

import pytest
from rich.console import Console

from gcalsync.gateway import GatewayPool
from gcalsync.models import BlockerRecord
from gcalsync.models import SyncStats
from gcalsync.sync.reconcile import run_reconcile
from gcalsync.verify import collect_issues
from gcalsync.verify import run_verify
from tests.conftest import OTHER_ACCOUNT
from tests.conftest import SOURCE_CAL_ID
from tests.conftest import TARGET_CAL_ID
from tests.conftest import make_event


@pytest.fixture
def synced(engine_ctx, registered, service, sync_logger):
    service.add_event(SOURCE_CAL_ID, make_event("e1", "Dentist"))
    run_reconcile(engine_ctx, SyncStats(), sync_logger, registered)
    return registered


@pytest.fixture
def pool(broker, executor):
    return GatewayPool(broker, executor)


def test_clean_after_sync(synced, pool):
    console = Console(record=True, width=120)
    assert run_verify(synced, pool, console) is True
    assert "confirmed" in console.export_text()


def test_missing_and_mismatch(synced, pool, service):
    row = synced.get_blockers(calendar_id=TARGET_CAL_ID)[0]
    synced.update_fingerprint(TARGET_CAL_ID, row.event_id, "stale")
    synced.upsert_blocker(
        BlockerRecord(
            event_id="ghost",
            calendar_id=TARGET_CAL_ID,
            account_name=OTHER_ACCOUNT,
            origin_calendar_id=SOURCE_CAL_ID,
            origin_event_id="e9",
            origin_fingerprint="fp",
        )
    )

    issues = collect_issues(synced, pool)

    assert [i[1] for i in issues["MISSING"]] == ["ghost"]
    assert [i[1] for i in issues["MISMATCH"]] == [row.event_id]


def test_untracked_blocker(synced, pool):
    row = synced.get_blockers(calendar_id=TARGET_CAL_ID)[0]
    synced.delete_blocker(TARGET_CAL_ID, row.event_id)

    issues = collect_issues(synced, pool)

    assert [i[1] for i in issues["UNTRACKED"]] == [row.event_id]


def test_stale_rows_reported(synced, pool):
    synced.remove_calendar(TARGET_CAL_ID)
    console = Console(record=True, width=120)

    assert run_verify(synced, pool, console) is False
    assert "STALE" in console.export_text()


def test_verify_is_read_only(synced, pool, service):
    service.calls.clear()
    synced.delete_blocker(TARGET_CAL_ID, synced.get_blockers()[0].event_id)
    run_verify(synced, pool, Console(record=True))
    assert service.mutations() == []
