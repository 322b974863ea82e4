"""
Command-line tests via typer's CliRunner.

Google credentials are replaced with FakeBroker, so every command runs
against the in-memory Calendar service.
"""

import pytest
from typer.testing import CliRunner

from gcalsync import cli
from gcalsync.db import StateDatabase
from tests.conftest import ACCOUNT
from tests.conftest import OTHER_ACCOUNT
from tests.conftest import SOURCE_CAL_ID
from tests.conftest import TARGET_CAL_ID
from tests.conftest import make_event
from tests.fake_service import make_http_error

runner = CliRunner()

_CONFIG = """
[google]
client_id = "id"
client_secret = "secret"

[general]
rate_interval_ms = 1
window_past_hours = 0
window_future_hours = 87600
"""


@pytest.fixture
def paths(tmp_path):
    config = tmp_path / ".gcalsync.toml"
    config.write_text(_CONFIG, encoding="utf-8")
    return config, tmp_path / ".gcalsync.db"


@pytest.fixture
def invoke(paths, broker, monkeypatch):
    config, db_path = paths
    monkeypatch.setattr(cli, "CredentialBroker", lambda cfg, db, interactive=True: broker)

    def _invoke(*args, input=None):
        return runner.invoke(
            cli.app, ["--config", str(config), "--state-db", str(db_path), *args], input=input
        )

    return _invoke


def _db(paths) -> StateDatabase:
    return StateDatabase(paths[1])


@pytest.fixture
def two_calendars(invoke):
    assert invoke("add", ACCOUNT, "-C", SOURCE_CAL_ID).exit_code == 0
    assert invoke("add", OTHER_ACCOUNT, "-C", TARGET_CAL_ID).exit_code == 0


class TestAdd:
    def test_add_with_calendar_option(self, invoke, paths):
        result = invoke("add", ACCOUNT, "--calendar", SOURCE_CAL_ID)
        assert result.exit_code == 0
        with _db(paths) as db:
            assert db.get_calendar(SOURCE_CAL_ID).account_name == ACCOUNT

    def test_add_interactive_picker(self, invoke, paths):
        # calendarList is sorted: source@..., target@...
        result = invoke("add", ACCOUNT, input="2\n")
        assert result.exit_code == 0
        with _db(paths) as db:
            assert [c.calendar_id for c in db.list_calendars()] == [TARGET_CAL_ID]

    def test_calendar_owned_by_other_account(self, invoke, two_calendars):
        result = invoke("add", "someone-else", "-C", SOURCE_CAL_ID)
        assert result.exit_code == 1

    def test_read_only_calendar_is_refused(self, invoke, service, paths):
        service.calendars["holidays@group.v.calendar.google.com"] = {}
        service.access_roles["holidays@group.v.calendar.google.com"] = "reader"

        result = invoke("add", ACCOUNT, "-C", "holidays@group.v.calendar.google.com")

        assert result.exit_code == 1
        assert "reader" in result.output
        with _db(paths) as db:
            assert db.list_calendars() == []

    def test_read_only_pick_registers_nothing(self, invoke, service, paths):
        service.access_roles[TARGET_CAL_ID] = "freeBusyReader"

        result = invoke("add", ACCOUNT, input="1,2\n")

        assert result.exit_code == 1
        with _db(paths) as db:
            assert db.list_calendars() == []


class TestPolicyCommands:
    def test_block_unblock_blocks(self, invoke, two_calendars):
        assert invoke("block", SOURCE_CAL_ID, TARGET_CAL_ID).exit_code == 0
        listed = invoke("blocks")
        assert SOURCE_CAL_ID in listed.output
        assert invoke("unblock", SOURCE_CAL_ID, TARGET_CAL_ID).exit_code == 0
        assert "No blocked calendars" in invoke("blocks").output

    def test_block_unknown_calendar_exits_1(self, invoke, two_calendars):
        result = invoke("block", "nope@example.com", TARGET_CAL_ID)
        assert result.exit_code == 1


class TestSync:
    def test_preflight_requires_two_calendars(self, invoke):
        invoke("add", ACCOUNT, "-C", SOURCE_CAL_ID)
        result = invoke("sync")
        assert result.exit_code == 1
        assert "Preflight checks failed" in result.output

    def test_sync_list_desync(self, invoke, two_calendars, service, paths):
        service.add_event(
            SOURCE_CAL_ID,
            make_event("e1", "Dentist", "2030-01-07T10:00:00Z", "2030-01-07T11:00:00Z"),
        )

        result = invoke("sync")
        assert result.exit_code == 0, result.output
        assert len(service.blockers(TARGET_CAL_ID)) == 1

        listed = invoke("list")
        assert TARGET_CAL_ID in listed.output

        assert invoke("desync", "--yes").exit_code == 0
        assert service.blockers(TARGET_CAL_ID) == []
        with _db(paths) as db:
            assert db.get_blockers() == []

    def test_remote_fatal_exits_2(self, invoke, two_calendars, service):
        service.fail_next("list", make_http_error(400))
        result = invoke("sync")
        assert result.exit_code == 2

    def test_unexpected_error_exits_1(self, invoke, two_calendars, service):
        service.fail_next("list", ValueError("malformed response"))
        result = invoke("sync")
        assert result.exit_code == 1
        assert "Unexpected error" in result.output

    def test_desync_confirmation_declined(self, invoke, two_calendars, service):
        service.calls.clear()
        result = invoke("desync", input="n\n")
        assert result.exit_code != 0
        assert service.calls == []

    def test_missing_config_exits_1(self, invoke, two_calendars, paths):
        paths[0].unlink()
        result = invoke("desync", "--yes")
        assert result.exit_code == 1


class TestRemove:
    def test_remove_then_sync_withdraws(self, invoke, two_calendars, service, paths):
        service.add_event(
            SOURCE_CAL_ID,
            make_event("e1", "Dentist", "2030-01-07T10:00:00Z", "2030-01-07T11:00:00Z"),
        )
        invoke("sync")
        assert invoke("remove", TARGET_CAL_ID).exit_code == 0

        result = invoke("sync")
        assert result.exit_code == 0, result.output
        assert service.blockers(TARGET_CAL_ID) == []

    def test_remove_unknown_exits_1(self, invoke):
        assert invoke("remove", "nope@example.com").exit_code == 1
