"""
CalendarSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import logging

from gcalsync.config import AppConfig
from gcalsync.db import StateDatabase
from gcalsync.executor import RateLimitedExecutor
from gcalsync.models import EngineContext
from gcalsync.models import SyncStats
from gcalsync.sync.desync import run_desync
from gcalsync.sync.reconcile import run_reconcile


def build_context(config: AppConfig, broker, dry_run: bool = False, executor=None) -> EngineContext:
    """Assemble the per-invocation engine context from configuration."""
    return EngineContext(
        broker=broker,
        executor=executor or RateLimitedExecutor(config.rate_interval_ms),
        window=config.window(),
        visibility=config.block_event_visibility,
        disable_reminders=config.disable_reminders,
        dry_run=dry_run,
    )


class CalendarSynchronizer:
    """Main synchronization engine."""

    def __init__(self, ctx: EngineContext, state_db: StateDatabase):
        self.ctx = ctx
        self.state_db = state_db
        self.logger = logging.getLogger(__name__)
        self.stats = SyncStats()

    def sync(self) -> SyncStats:
        """Converge every target calendar with its sources."""
        with self.ctx.executor.interruptible():
            run_reconcile(self.ctx, self.stats, self.logger, self.state_db)
        return self.stats

    def desync(self, calendar_id: str | None = None) -> SyncStats:
        """Withdraw every recorded blocker."""
        with self.ctx.executor.interruptible():
            run_desync(self.ctx, self.stats, self.logger, self.state_db, calendar_id)
        return self.stats
