"""
Blocker construction: turns a source event into the body projected into a target.
"""

from gcalsync.models import BUSY_TITLE
from gcalsync.models import EventSpec
from gcalsync.models import RemoteEvent


class EventSanitizer:
    """Builds blocker bodies per pair privacy policy."""

    @staticmethod
    def is_managed_event(event: RemoteEvent) -> bool:
        """Check if an event is a blocker created by this tool."""
        return event.is_blocker

    @staticmethod
    def get_origin(event: RemoteEvent) -> tuple[str, str, str]:
        """Return (origin_calendar_id, origin_event_id, origin_fingerprint) of a blocker."""
        props = event.private_properties
        return (
            props.get("origin_calendar_id", ""),
            props.get("origin_event_id", ""),
            props.get("origin_fingerprint", ""),
        )

    @staticmethod
    def _reference(event: RemoteEvent) -> str:
        lines = [f"Synced by gcalsync from {event.calendar_id}"]
        if event.html_link:
            lines.append(event.html_link)
        return "\n".join(lines)

    @classmethod
    def sanitize(
        cls,
        event: RemoteEvent,
        fingerprint: str,
        private: bool,
        visibility: str = "private",
        disable_reminders: bool = False,
    ) -> EventSpec:
        """
        Build the EventSpec for projecting *event* into a target.

        Args:
            event: Source event
            fingerprint: origin fingerprint stamped on the blocker
            private: True when a policy edge exists for the pair: title becomes
                     "Busy" and description, location and attendees are empty.
                     False mirrors the title and adds a reference to the origin.
        """
        if private:
            title = BUSY_TITLE
            description = None
        else:
            title = event.summary or BUSY_TITLE
            description = cls._reference(event)
        return EventSpec(
            start=dict(event.start),
            end=dict(event.end),
            title=title,
            description=description,
            origin_fingerprint=fingerprint,
            origin_calendar_id=event.calendar_id,
            origin_event_id=event.event_id,
            visibility=visibility,
            disable_reminders=disable_reminders,
        )
