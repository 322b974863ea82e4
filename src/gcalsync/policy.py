"""
Policy admin: add, remove and list "Busy" block edges between registered calendars.

Mutations touch the index only; the next sync applies them remotely.
"""

import enum
import logging

from gcalsync.db import StateDatabase
from gcalsync.models import UserError

logger = logging.getLogger(__name__)


class PolicyResult(enum.Enum):
    ADDED = "added"
    EXISTS = "exists"
    REMOVED = "removed"
    ABSENT = "absent"


def _require_registered(state_db: StateDatabase, calendar_id: str, role: str):
    if state_db.get_calendar(calendar_id) is None:
        raise UserError(
            f"{role} calendar {calendar_id} not found in gcalsync. "
            f"Add it first with 'gcalsync add'."
        )


def add_block(state_db: StateDatabase, source_calendar_id: str, target_calendar_id: str):
    """Make projections from source into target collapse to anonymous 'Busy' events."""
    if source_calendar_id == target_calendar_id:
        raise UserError("Source and target calendar must differ")
    _require_registered(state_db, source_calendar_id, "Source")
    _require_registered(state_db, target_calendar_id, "Target")

    if not state_db.add_block(source_calendar_id, target_calendar_id):
        logger.warning(
            f"Calendar {source_calendar_id} is already blocked from {target_calendar_id}"
        )
        return PolicyResult.EXISTS
    logger.debug(f"Added block {source_calendar_id} -> {target_calendar_id}")
    return PolicyResult.ADDED


def remove_block(state_db: StateDatabase, source_calendar_id: str, target_calendar_id: str):
    """Show full event titles from source in target again."""
    _require_registered(state_db, source_calendar_id, "Source")
    _require_registered(state_db, target_calendar_id, "Target")
    if not state_db.remove_block(source_calendar_id, target_calendar_id):
        logger.warning(
            f"No blocking relationship found between {source_calendar_id} and {target_calendar_id}"
        )
        return PolicyResult.ABSENT
    logger.debug(f"Removed block {source_calendar_id} -> {target_calendar_id}")
    return PolicyResult.REMOVED


def list_blocks(state_db: StateDatabase) -> list[tuple[str, str]]:
    return state_db.list_blocks()
