"""
In-memory fake of the Google Calendar v3 service for testing.

Duck-type-compatible stand-in for the object returned by
``googleapiclient.discovery.build("calendar", "v3")``.  No network connection
is required: events live in plain dicts keyed by calendar and event id, and
failures are raised as real ``HttpError`` instances so the executor's
classification runs unchanged.
"""

import copy
import itertools
import json
from datetime import date
from datetime import datetime
from datetime import timezone

import httplib2
from googleapiclient.errors import HttpError


def make_http_error(status: int, reason: str | None = None) -> HttpError:
    """Build an HttpError the way googleapiclient raises it."""
    error = {"code": status, "message": f"HTTP {status}"}
    if reason:
        error["errors"] = [{"reason": reason, "domain": "usageLimits"}]
    content = json.dumps({"error": error}).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content, uri="https://fake/calendar")


def _as_datetime(value: dict) -> datetime:
    if "dateTime" in value:
        return datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
    day = date.fromisoformat(value["date"])
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


class _Request:
    """Deferred call, executed by ``execute()`` like an HttpRequest."""

    def __init__(self, service, verb: str, calendar_id: str, event_id: str | None, fn):
        self._service = service
        self.verb = verb
        self.calendar_id = calendar_id
        self.event_id = event_id
        self._fn = fn

    def execute(self):
        self._service.calls.append((self.verb, self.calendar_id, self.event_id))
        queued = self._service.failures.get(self.verb)
        if queued:
            error = queued.pop(0)
            if error is not None:
                raise error
        return self._fn()


class _EventsResource:
    def __init__(self, service):
        self._service = service

    def list(self, calendarId, pageToken=None, maxResults=250, **params):
        return _Request(
            self._service,
            "list",
            calendarId,
            None,
            lambda: self._service._list(calendarId, pageToken, maxResults, params),
        )

    def insert(self, calendarId, body):
        return _Request(
            self._service,
            "insert",
            calendarId,
            None,
            lambda: self._service._insert(calendarId, body),
        )

    def patch(self, calendarId, eventId, body):
        return _Request(
            self._service,
            "patch",
            calendarId,
            eventId,
            lambda: self._service._patch(calendarId, eventId, body),
        )

    def delete(self, calendarId, eventId):
        return _Request(
            self._service,
            "delete",
            calendarId,
            eventId,
            lambda: self._service._delete(calendarId, eventId),
        )


class _CalendarListResource:
    def __init__(self, service):
        self._service = service

    def list(self, pageToken=None):
        items = [
            {
                "id": cal_id,
                "summary": cal_id,
                "accessRole": self._service.access_roles.get(cal_id, "owner"),
            }
            for cal_id in sorted(self._service.calendars)
        ]
        return _Request(self._service, "calendarList", "", None, lambda: {"items": items})


class FakeCalendarService:
    """In-memory stub of the Calendar v3 ``events`` and ``calendarList`` resources."""

    def __init__(self, calendars: dict[str, dict[str, dict]] | None = None):
        # calendar_id → {event_id → event resource}
        self.calendars: dict[str, dict[str, dict]] = {
            cal_id: dict(events) for cal_id, events in (calendars or {}).items()
        }
        # event ids that existed once and were deleted (delete again → 410)
        self.tombstones: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str, str | None]] = []
        # verb → queued outcomes of its next executions (an error to raise, or None)
        self.failures: dict[str, list[Exception | None]] = {}
        # calendar_id → accessRole reported by calendarList (default "owner")
        self.access_roles: dict[str, str] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------ #
    # Resource accessors                                                   #
    # ------------------------------------------------------------------ #

    def events(self):
        return _EventsResource(self)

    def calendarList(self):  # noqa: N802
        return _CalendarListResource(self)

    # ------------------------------------------------------------------ #
    # Test helpers                                                         #
    # ------------------------------------------------------------------ #

    def add_event(self, calendar_id: str, event: dict) -> dict:
        """Seed an event directly, bypassing call recording."""
        stored = {"status": "confirmed", "updated": "2026-01-01T00:00:00Z", **event}
        self.calendars.setdefault(calendar_id, {})[stored["id"]] = stored
        return stored

    def remove_out_of_band(self, calendar_id: str, event_id: str):
        """Delete an event as another client would, leaving a tombstone."""
        del self.calendars[calendar_id][event_id]
        self.tombstones.add((calendar_id, event_id))

    def blockers(self, calendar_id: str) -> list[dict]:
        return [
            e
            for e in self.calendars.get(calendar_id, {}).values()
            if e.get("extendedProperties", {}).get("private", {}).get("gcalsync_blocker") == "1"
        ]

    def mutations(self) -> list[tuple[str, str, str | None]]:
        return [c for c in self.calls if c[0] in ("insert", "patch", "delete")]

    def fail_next(self, verb: str, *errors: Exception | None):
        self.failures.setdefault(verb, []).extend(errors)

    # ------------------------------------------------------------------ #
    # Verb implementations                                                 #
    # ------------------------------------------------------------------ #

    def _calendar(self, calendar_id: str) -> dict[str, dict]:
        if calendar_id not in self.calendars:
            raise make_http_error(404)
        return self.calendars[calendar_id]

    def _list(self, calendar_id, page_token, max_results, params):
        events = list(self._calendar(calendar_id).values())
        prop = params.get("privateExtendedProperty")
        if prop:
            key, value = prop.split("=", 1)
            events = [
                e
                for e in events
                if e.get("extendedProperties", {}).get("private", {}).get(key) == value
            ]
        if not params.get("showDeleted"):
            events = [e for e in events if e.get("status") != "cancelled"]
        if "timeMin" in params:
            lower = datetime.fromisoformat(params["timeMin"])
            events = [e for e in events if _as_datetime(e["end"]) > lower]
        if "timeMax" in params:
            upper = datetime.fromisoformat(params["timeMax"])
            events = [e for e in events if _as_datetime(e["start"]) < upper]
        events.sort(key=lambda e: (_as_datetime(e["start"]), e["id"]))

        offset = int(page_token or 0)
        page = events[offset : offset + max_results]
        response = {"items": copy.deepcopy(page)}
        if offset + max_results < len(events):
            response["nextPageToken"] = str(offset + max_results)
        return response

    def _insert(self, calendar_id, body):
        calendar = self._calendar(calendar_id)
        event_id = f"blk{next(self._ids)}"
        stored = copy.deepcopy(body)
        stored.update({"id": event_id, "status": "confirmed"})
        calendar[event_id] = stored
        return copy.deepcopy(stored)

    def _patch(self, calendar_id, event_id, body):
        calendar = self._calendar(calendar_id)
        if event_id not in calendar:
            raise make_http_error(410 if (calendar_id, event_id) in self.tombstones else 404)
        stored = calendar[event_id]
        for key, value in copy.deepcopy(body).items():
            if key == "extendedProperties":
                current = stored.setdefault("extendedProperties", {})
                for scope, props in value.items():
                    current.setdefault(scope, {}).update(props)
            else:
                stored[key] = value
        return copy.deepcopy(stored)

    def _delete(self, calendar_id, event_id):
        calendar = self._calendar(calendar_id)
        if event_id not in calendar:
            raise make_http_error(410 if (calendar_id, event_id) in self.tombstones else 404)
        del calendar[event_id]
        self.tombstones.add((calendar_id, event_id))
        return ""


class FakeBroker:
    """Credential broker stand-in that hands out one shared fake service."""

    def __init__(self, service: FakeCalendarService):
        self.service = service
        self.requested: list[str] = []

    def get_service(self, account_name: str):
        self.requested.append(account_name)
        return self.service
