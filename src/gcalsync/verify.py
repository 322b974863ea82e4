"""
Post-sync audit: check that the index and the remote targets agree.

Reports index rows whose remote blocker is gone (MISSING) or carries a
different fingerprint (MISMATCH), managed remote blockers with no index row
(UNTRACKED), and rows held in calendars that are no longer registered
(STALE).
"""

import logging

from rich.console import Console
from rich.table import Table

from gcalsync.db import StateDatabase
from gcalsync.gateway import GatewayPool
from gcalsync.sanitizer import EventSanitizer

_logger = logging.getLogger(__name__)


def _short_id(event_id: str) -> str:
    return event_id[:24] + "…" if len(event_id) > 24 else event_id


def collect_issues(state_db: StateDatabase, pool: GatewayPool) -> dict[str, list[tuple]]:
    """Compare every registered target with the index.

    Returns a dict keyed by issue kind; each value is a list of
    (calendar_id, event_id, detail) tuples.
    """
    issues: dict[str, list[tuple]] = {"MISSING": [], "MISMATCH": [], "UNTRACKED": [], "STALE": []}
    registered = {c.calendar_id: c.account_name for c in state_db.list_calendars()}

    for calendar_id in state_db.target_calendar_ids():
        if calendar_id not in registered:
            for blocker in state_db.get_blockers(calendar_id=calendar_id):
                issues["STALE"].append((calendar_id, blocker.event_id, "calendar not registered"))

    for calendar_id, account_name in sorted(registered.items()):
        remote = {
            e.event_id: e for e in pool.get(account_name).list_blockers(calendar_id)
        }
        rows = state_db.get_blockers(calendar_id=calendar_id)
        _logger.debug(f"{calendar_id}: {len(rows)} row(s), {len(remote)} remote blocker(s)")

        for row in rows:
            event = remote.pop(row.event_id, None)
            if event is None:
                issues["MISSING"].append((calendar_id, row.event_id, row.origin_event_id))
                continue
            _, _, fingerprint = EventSanitizer.get_origin(event)
            if fingerprint != row.origin_fingerprint:
                issues["MISMATCH"].append(
                    (calendar_id, row.event_id, f"{row.origin_fingerprint} != {fingerprint}")
                )

        for event_id, event in sorted(remote.items()):
            origin_calendar_id, origin_event_id, _ = EventSanitizer.get_origin(event)
            if origin_calendar_id in registered:
                issues["UNTRACKED"].append((calendar_id, event_id, origin_event_id))

    return issues


_TITLES = {
    "MISSING": "[bold red]MISSING[/]: index row exists but the remote blocker is gone",
    "MISMATCH": "[bold cyan]MISMATCH[/]: remote fingerprint differs from the index",
    "UNTRACKED": "[bold magenta]UNTRACKED[/]: managed remote blocker with no index row",
    "STALE": "[bold yellow]STALE[/]: rows held in an unregistered calendar",
}


def run_verify(state_db: StateDatabase, pool: GatewayPool, console: Console) -> bool:
    """Print an audit report. Returns True when no issues were found."""
    issues = collect_issues(state_db, pool)
    total = sum(len(v) for v in issues.values())
    rows = len(state_db.get_blockers())

    if not total:
        console.print(f"[bold green]✓[/] All [bold]{rows}[/bold] indexed blocker(s) confirmed.")
        return True

    for kind, entries in issues.items():
        if not entries:
            continue
        t = Table(title=_TITLES[kind], show_header=True, header_style="bold")
        t.add_column("Calendar", overflow="fold", min_width=20)
        t.add_column("Blocker ID", overflow="fold")
        t.add_column("Detail", overflow="fold")
        for calendar_id, event_id, detail in entries:
            t.add_row(calendar_id, _short_id(event_id), detail)
        console.print(t)

    console.print(
        f"\n[bold red]{total}[/bold red] issue(s) found. "
        f"Run [cyan]gcalsync sync[/] to converge."
    )
    return False
