"""
Stateless event-inspection helpers.
"""

import hashlib
import json

from gcalsync.models import RemoteEvent

# Fingerprint for source events that no longer block time.  Never stored:
# the reconciler turns it into a Delete (or nothing, if no blocker exists).
CANCELLED_FINGERPRINT = "cancelled"

MODE_BUSY = "busy"
MODE_DETAIL = "detail"


def _time_key(value: dict[str, str]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def is_event_cancelled(event: RemoteEvent) -> bool:
    return event.status == "cancelled"


def is_free_time(event: RemoteEvent) -> bool:
    """Return True if the event is transparent ("show as available")."""
    return event.transparency == "transparent"


def is_declined_by_user(event: RemoteEvent) -> bool:
    """Return True if the calendar owner declined the invitation."""
    return event.self_response == "declined"


def blocks_time(event: RemoteEvent) -> bool:
    """Whether a source event should be represented by a blocker at all."""
    return not (is_event_cancelled(event) or is_free_time(event) or is_declined_by_user(event))


def compute_origin_fingerprint(event: RemoteEvent, mode: str) -> str:
    """
    Digest of a source event's identity and mutable state.

    Covers the event id, its last-modified stamp, start, end and status, plus
    the projection *mode* of the pair so that toggling a policy edge is seen
    as an update.  Events that do not block time get CANCELLED_FINGERPRINT.
    """
    if not blocks_time(event):
        return CANCELLED_FINGERPRINT
    material = "\x1f".join(
        (
            event.event_id,
            event.updated,
            _time_key(event.start),
            _time_key(event.end),
            event.status,
            mode,
        )
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]
