"""
Reconciler: converge the blockers in every target calendar with its sources.
"""

from dataclasses import dataclass

from gcalsync.db import StateDatabase
from gcalsync.gateway import CalendarGateway
from gcalsync.gateway import GatewayPool
from gcalsync.models import BlockerRecord
from gcalsync.models import EngineContext
from gcalsync.models import RemoteEvent
from gcalsync.models import SyncStats
from gcalsync.sanitizer import EventSanitizer
from gcalsync.sync.utils import CANCELLED_FINGERPRINT
from gcalsync.sync.utils import MODE_BUSY
from gcalsync.sync.utils import MODE_DETAIL
from gcalsync.sync.utils import compute_origin_fingerprint

DELETE = "delete"
UPDATE = "update"
CREATE = "create"


@dataclass(frozen=True)
class PlannedOp:
    """One remote mutation the reconciler intends to perform in a target."""

    kind: str
    target_calendar_id: str
    origin_calendar_id: str
    origin_event_id: str
    blocker: BlockerRecord | None = None
    source: RemoteEvent | None = None
    fingerprint: str = ""
    private: bool = False


@dataclass
class TargetPlan:
    ops: list[PlannedOp]
    unchanged: list[BlockerRecord]


def plan_target(
    target_calendar_id: str,
    sources: dict[str, list[RemoteEvent]],
    blockers: list[BlockerRecord],
    private_sources: set[str],
) -> TargetPlan:
    """
    Diff the desired blockers of one target against the recorded ones.

    Args:
        target_calendar_id: Calendar receiving the blockers
        sources: Events per source calendar projecting into this target
                 (blocker-tagged events already removed)
        blockers: Index rows for blockers currently in this target
        private_sources: Source calendars with a policy edge into this target

    Returns a TargetPlan whose ops are ordered deletes, updates, creates; each
    class sorted by (calendar_id, event_id).
    """
    existing: dict[tuple[str, str], BlockerRecord] = {}
    deletes: list[PlannedOp] = []
    for blocker in blockers:
        key = (blocker.origin_calendar_id, blocker.origin_event_id)
        orphaned = blocker.origin_calendar_id not in sources or not blocker.origin_event_id
        if orphaned or key in existing:
            deletes.append(PlannedOp(DELETE, target_calendar_id, key[0], key[1], blocker=blocker))
            continue
        existing[key] = blocker

    updates: list[PlannedOp] = []
    creates: list[PlannedOp] = []
    unchanged: list[BlockerRecord] = []
    seen: set[tuple[str, str]] = set()
    for source_calendar_id, events in sources.items():
        private = source_calendar_id in private_sources
        mode = MODE_BUSY if private else MODE_DETAIL
        for event in events:
            key = (source_calendar_id, event.event_id)
            fingerprint = compute_origin_fingerprint(event, mode)
            if key in seen or fingerprint == CANCELLED_FINGERPRINT:
                # A blocker for a cancelled source stays unseen and is deleted below.
                continue
            seen.add(key)
            blocker = existing.get(key)
            if blocker is None:
                creates.append(
                    PlannedOp(
                        CREATE,
                        target_calendar_id,
                        source_calendar_id,
                        event.event_id,
                        source=event,
                        fingerprint=fingerprint,
                        private=private,
                    )
                )
            elif blocker.origin_fingerprint != fingerprint:
                updates.append(
                    PlannedOp(
                        UPDATE,
                        target_calendar_id,
                        source_calendar_id,
                        event.event_id,
                        blocker=blocker,
                        source=event,
                        fingerprint=fingerprint,
                        private=private,
                    )
                )
            else:
                unchanged.append(blocker)

    for key, blocker in existing.items():
        if key not in seen:
            deletes.append(PlannedOp(DELETE, target_calendar_id, key[0], key[1], blocker=blocker))

    deletes.sort(key=lambda op: (op.blocker.calendar_id, op.blocker.event_id))
    updates.sort(key=lambda op: (op.blocker.calendar_id, op.blocker.event_id))
    creates.sort(key=lambda op: (op.origin_calendar_id, op.origin_event_id))
    return TargetPlan(ops=deletes + updates + creates, unchanged=unchanged)


def _sync_index_with_remote(
    ctx: EngineContext,
    stats: SyncStats,
    logger,
    gateway: CalendarGateway,
    target_calendar_id: str,
    account_name: str,
    registered: set[str],
    blockers: list[BlockerRecord],
    state_db: StateDatabase,
) -> list[BlockerRecord]:
    """Compare the index with the managed events actually present in the target.

    Rows whose remote blocker has vanished are dropped so the plan recreates
    them.  Blockers whose origin calendar is registered but which have no row
    are adopted into the index (a crash between insert and index write, or a
    lost index file).  A second blocker for an origin that already has a row
    is a duplicate and is deleted.  Returns the reconciled blocker list.
    """
    remote = gateway.list_blockers(target_calendar_id)
    remote_ids = {e.event_id for e in remote}

    result = []
    for blocker in blockers:
        if blocker.event_id in remote_ids:
            result.append(blocker)
            continue
        logger.warning(
            f"Blocker {blocker.event_id} vanished from {target_calendar_id}; will recreate"
        )
        if not ctx.dry_run:
            state_db.delete_blocker(target_calendar_id, blocker.event_id)

    known_ids = {b.event_id for b in result}
    known_origins = {(b.origin_calendar_id, b.origin_event_id) for b in result}

    for event in remote:
        if event.event_id in known_ids:
            continue
        origin_calendar_id, origin_event_id, fingerprint = EventSanitizer.get_origin(event)
        if origin_calendar_id not in registered or origin_calendar_id == target_calendar_id:
            logger.debug(
                f"Ignoring blocker {event.event_id} from unknown origin {origin_calendar_id!r}"
            )
            continue
        if (origin_calendar_id, origin_event_id) in known_origins:
            if ctx.dry_run:
                logger.info(f"[DRY RUN] Would DELETE duplicate blocker {event.event_id}")
            else:
                logger.info(f"Deleting duplicate blocker {event.event_id} in {target_calendar_id}")
                gateway.delete_event(target_calendar_id, event.event_id)
            stats.deleted += 1
            continue

        record = BlockerRecord(
            event_id=event.event_id,
            calendar_id=target_calendar_id,
            account_name=account_name,
            origin_calendar_id=origin_calendar_id,
            origin_event_id=origin_event_id,
            origin_fingerprint=fingerprint,
        )
        logger.info(f"Recovering untracked blocker {event.event_id} ({origin_event_id})")
        if not ctx.dry_run:
            state_db.upsert_blocker(record)
        known_ids.add(event.event_id)
        known_origins.add((origin_calendar_id, origin_event_id))
        result.append(record)
        stats.adopted += 1
    return result


def _execute(
    ctx: EngineContext,
    stats: SyncStats,
    logger,
    gateway: CalendarGateway,
    account_name: str,
    op: PlannedOp,
    state_db: StateDatabase,
):
    """Apply one planned op remotely, then record it in the index."""
    target = op.target_calendar_id

    if op.kind == DELETE:
        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would DELETE {op.blocker.event_id} from {target}")
        else:
            result = gateway.delete_event(target, op.blocker.event_id)
            state_db.delete_blocker(target, op.blocker.event_id)
            logger.debug(f"Deleted blocker {op.blocker.event_id} ({result.value})")
        stats.deleted += 1
        return

    spec = EventSanitizer.sanitize(
        op.source,
        op.fingerprint,
        private=op.private,
        visibility=ctx.visibility,
        disable_reminders=ctx.disable_reminders,
    )

    if op.kind == UPDATE:
        if ctx.dry_run:
            logger.info(f"[DRY RUN] Would UPDATE {op.blocker.event_id} in {target}")
        elif gateway.patch_event(target, op.blocker.event_id, spec):
            state_db.update_fingerprint(target, op.blocker.event_id, op.fingerprint)
        else:
            new_id = gateway.insert_event(target, spec)
            state_db.delete_blocker(target, op.blocker.event_id)
            state_db.upsert_blocker(
                BlockerRecord(
                    event_id=new_id,
                    calendar_id=target,
                    account_name=account_name,
                    origin_calendar_id=op.origin_calendar_id,
                    origin_event_id=op.origin_event_id,
                    origin_fingerprint=op.fingerprint,
                )
            )
            logger.debug(f"Recreated blocker {op.blocker.event_id} as {new_id}")
        stats.modified += 1
        return

    if ctx.dry_run:
        logger.info(f"[DRY RUN] Would CREATE blocker for {op.origin_event_id} in {target}")
    else:
        new_id = gateway.insert_event(target, spec)
        state_db.upsert_blocker(
            BlockerRecord(
                event_id=new_id,
                calendar_id=target,
                account_name=account_name,
                origin_calendar_id=op.origin_calendar_id,
                origin_event_id=op.origin_event_id,
                origin_fingerprint=op.fingerprint,
            )
        )
        logger.debug(f"Created blocker {new_id} for {op.origin_event_id} in {target}")
    stats.added += 1


def _withdraw_stale_target(
    ctx: EngineContext,
    stats: SyncStats,
    logger,
    pool: GatewayPool,
    target_calendar_id: str,
    state_db: StateDatabase,
):
    """Delete blockers recorded in a calendar that is no longer registered."""
    blockers = state_db.get_blockers(calendar_id=target_calendar_id)
    logger.info(
        f"Calendar {target_calendar_id} is no longer registered; "
        f"withdrawing {len(blockers)} blocker(s)"
    )
    for blocker in blockers:
        op = PlannedOp(
            DELETE,
            target_calendar_id,
            blocker.origin_calendar_id,
            blocker.origin_event_id,
            blocker=blocker,
        )
        gateway = pool.get(blocker.account_name)
        _execute(ctx, stats, logger, gateway, blocker.account_name, op, state_db)


def run_reconcile(
    ctx: EngineContext,
    stats: SyncStats,
    logger,
    state_db: StateDatabase,
):
    """Execute one convergence run over every registered calendar."""
    pool = GatewayPool(ctx.broker, ctx.executor)
    calendars = state_db.list_calendars()
    registered = {c.calendar_id: c.account_name for c in calendars}
    policy = set(state_db.list_blocks())

    if len(calendars) < 2:
        logger.warning("Fewer than two calendars registered; nothing to project")

    # Fetch every source once; blockers are never projected again.
    logger.info("Fetching source events...")
    source_events: dict[str, list[RemoteEvent]] = {}
    if len(calendars) >= 2:
        for calendar in calendars:
            gateway = pool.get(calendar.account_name)
            events = gateway.list_events(calendar.calendar_id, ctx.window)
            source_events[calendar.calendar_id] = [
                e for e in events if not EventSanitizer.is_managed_event(e)
            ]
            logger.debug(
                f"{calendar.calendar_id}: "
                f"{len(source_events[calendar.calendar_id])} source event(s)"
            )

    targets = sorted(set(registered) | set(state_db.target_calendar_ids()))
    for target in targets:
        if target not in registered:
            _withdraw_stale_target(ctx, stats, logger, pool, target, state_db)
            continue

        account_name = registered[target]
        gateway = pool.get(account_name)
        sources = {cal_id: events for cal_id, events in source_events.items() if cal_id != target}
        private_sources = {cal_id for cal_id in sources if (cal_id, target) in policy}

        blockers = state_db.get_blockers(calendar_id=target)
        blockers = _sync_index_with_remote(
            ctx, stats, logger, gateway, target, account_name, set(registered), blockers, state_db
        )

        plan = plan_target(target, sources, blockers, private_sources)
        counts = {kind: 0 for kind in (DELETE, UPDATE, CREATE)}
        for op in plan.ops:
            counts[op.kind] += 1
        logger.info(
            f"{target}: {counts[CREATE]} to create, {counts[UPDATE]} to update, "
            f"{counts[DELETE]} to delete, {len(plan.unchanged)} unchanged"
        )

        for op in plan.ops:
            _execute(ctx, stats, logger, gateway, account_name, op, state_db)

        stats.unchanged += len(plan.unchanged)
        if not ctx.dry_run:
            state_db.mark_seen(target, [b.event_id for b in plan.unchanged])
