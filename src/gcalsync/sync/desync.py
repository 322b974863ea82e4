"""
Desync: withdraw every projected blocker and prune the index.
"""

from itertools import groupby

from gcalsync.db import StateDatabase
from gcalsync.gateway import GatewayPool
from gcalsync.models import DeleteResult
from gcalsync.models import EngineContext
from gcalsync.models import SyncStats


def run_desync(
    ctx: EngineContext,
    stats: SyncStats,
    logger,
    state_db: StateDatabase,
    calendar_id: str | None = None,
):
    """Delete every recorded blocker remotely, then its index row.

    404 and 410 count as deleted.  Any other failure propagates and leaves
    the remaining rows in place for a later run.  *calendar_id* limits the
    withdrawal to blockers inside one target calendar.
    """
    pool = GatewayPool(ctx.broker, ctx.executor)
    blockers = state_db.get_blockers(calendar_id=calendar_id)
    if not blockers:
        logger.info("No blocker events recorded - nothing to withdraw")
        return

    blockers.sort(key=lambda b: (b.account_name, b.calendar_id, b.event_id))
    for account_name, group in groupby(blockers, key=lambda b: b.account_name):
        account_blockers = list(group)
        logger.info(f"Processing {len(account_blockers)} blocker(s) for account: {account_name}")

        if ctx.dry_run:
            for blocker in account_blockers:
                logger.info(f"[DRY RUN] Would DELETE {blocker.event_id} from {blocker.calendar_id}")
            stats.deleted += len(account_blockers)
            continue

        gateway = pool.get(account_name)
        missing = 0
        for blocker in account_blockers:
            result = gateway.delete_event(blocker.calendar_id, blocker.event_id)
            if result is not DeleteResult.DELETED:
                missing += 1
            state_db.delete_blocker(blocker.calendar_id, blocker.event_id)
            stats.deleted += 1
            logger.debug(f"Blocker {blocker.event_id} withdrawn ({result.value})")

        if missing:
            logger.info(f"{account_name}: {missing} blocker(s) were already gone remotely")

    logger.info(f"Desync complete: removed {stats.deleted} blocker(s)")
