"""
Google Calendar v3 gateway: the four verbs the engine needs, routed through the executor.
"""

import logging
from typing import Any

from gcalsync.executor import RateLimitedExecutor
from gcalsync.models import BLOCKER_TAG
from gcalsync.models import DeleteResult
from gcalsync.models import EventSpec
from gcalsync.models import RemoteEvent
from gcalsync.models import RemoteFatal
from gcalsync.models import RemoteMissing
from gcalsync.models import SyncWindow

PAGE_SIZE = 250


def parse_remote_event(item: dict[str, Any], calendar_id: str) -> RemoteEvent:
    """Build a RemoteEvent from a Calendar v3 event resource."""
    self_response = None
    for attendee in item.get("attendees") or []:
        if attendee.get("self"):
            self_response = attendee.get("responseStatus")
            break
    private = (item.get("extendedProperties") or {}).get("private") or {}
    return RemoteEvent(
        event_id=item["id"],
        calendar_id=calendar_id,
        start=dict(item.get("start") or {}),
        end=dict(item.get("end") or {}),
        updated=item.get("updated", ""),
        status=item.get("status", "confirmed"),
        summary=item.get("summary", ""),
        html_link=item.get("htmlLink", ""),
        transparency=item.get("transparency", "opaque"),
        self_response=self_response,
        private_properties=dict(private),
    )


class CalendarGateway:
    """Calendar operations for one authenticated account."""

    def __init__(self, service, executor: RateLimitedExecutor, account_name: str = ""):
        self.service = service
        self.executor = executor
        self.account_name = account_name
        self.logger = logging.getLogger(__name__)

    def _list(self, calendar_id: str, operation: str, **params) -> list[RemoteEvent]:
        events: list[RemoteEvent] = []
        page_token = None
        while True:
            request = self.service.events().list(
                calendarId=calendar_id,
                singleEvents=True,
                showDeleted=False,
                maxResults=PAGE_SIZE,
                pageToken=page_token,
                **params,
            )
            try:
                response = self.executor.run(operation, request.execute)
            except RemoteMissing as e:
                raise RemoteFatal(
                    f"Calendar {calendar_id} is not accessible for account "
                    f"'{self.account_name}' (HTTP {e.status})",
                    e.status,
                ) from e
            for item in response.get("items", []):
                events.append(parse_remote_event(item, calendar_id))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return events

    def list_events(self, calendar_id: str, window: SyncWindow) -> list[RemoteEvent]:
        """Events (single instances) whose time falls inside *window*."""
        events = self._list(
            calendar_id,
            f"list {calendar_id}",
            timeMin=window.start.isoformat(),
            timeMax=window.end.isoformat(),
            orderBy="startTime",
        )
        self.logger.debug(f"Listed {len(events)} event(s) in {calendar_id}")
        return events

    def list_blockers(self, calendar_id: str) -> list[RemoteEvent]:
        """Every event in *calendar_id* tagged as a managed blocker."""
        return self._list(
            calendar_id,
            f"list blockers {calendar_id}",
            privateExtendedProperty=f"{BLOCKER_TAG}=1",
        )

    def insert_event(self, calendar_id: str, spec: EventSpec) -> str:
        """Create a blocker and return the event id assigned by the remote."""
        request = self.service.events().insert(calendarId=calendar_id, body=spec.to_body())
        try:
            created = self.executor.run(f"insert into {calendar_id}", request.execute)
        except RemoteMissing as e:
            raise RemoteFatal(
                f"Cannot insert into calendar {calendar_id} (HTTP {e.status})", e.status
            ) from e
        self.logger.debug(f"Inserted {created['id']} into {calendar_id}")
        return created["id"]

    def patch_event(self, calendar_id: str, event_id: str, spec: EventSpec) -> bool:
        """Patch an existing blocker. Returns False when the remote no longer has it."""
        request = self.service.events().patch(
            calendarId=calendar_id, eventId=event_id, body=spec.to_body()
        )
        try:
            self.executor.run(f"patch {event_id}", request.execute)
        except RemoteMissing:
            self.logger.warning(f"Blocker {event_id} vanished from {calendar_id}; will recreate")
            return False
        self.logger.debug(f"Patched {event_id} in {calendar_id}")
        return True

    def delete_event(self, calendar_id: str, event_id: str) -> DeleteResult:
        request = self.service.events().delete(calendarId=calendar_id, eventId=event_id)
        try:
            self.executor.run(f"delete {event_id}", request.execute)
        except RemoteMissing as e:
            if e.status == 410:
                self.logger.warning(f"Blocker {event_id} already deleted from {calendar_id}")
                return DeleteResult.GONE
            self.logger.warning(f"Blocker {event_id} not found in {calendar_id}")
            return DeleteResult.NOT_FOUND
        self.logger.debug(f"Deleted {event_id} from {calendar_id}")
        return DeleteResult.DELETED

    def list_calendars(self) -> list[dict[str, Any]]:
        """Calendars visible to the account (id, summary, accessRole, primary)."""
        calendars = []
        page_token = None
        while True:
            request = self.service.calendarList().list(pageToken=page_token)
            response = self.executor.run("list calendars", request.execute)
            calendars.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return calendars


class GatewayPool:
    """One CalendarGateway per account for the duration of a run."""

    def __init__(self, broker, executor: RateLimitedExecutor):
        self.broker = broker
        self.executor = executor
        self._gateways: dict[str, CalendarGateway] = {}

    def get(self, account_name: str) -> CalendarGateway:
        if account_name not in self._gateways:
            service = self.broker.get_service(account_name)
            self._gateways[account_name] = CalendarGateway(service, self.executor, account_name)
        return self._gateways[account_name]
