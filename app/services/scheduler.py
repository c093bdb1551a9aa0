"""
Recurring and on-demand sync triggers.
"""

import asyncio
import logging
import os
from functools import lru_cache

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from app.services.sync_orchestrator import SyncOrchestrator, SyncResult, get_sync_orchestrator

logger = logging.getLogger(__name__)

load_dotenv()

SYNC_INTERVAL_HOURS = float(os.getenv("SYNC_INTERVAL_HOURS", "1"))

ROUND_JOB_ID = "connection_sync_round"


class SyncScheduler:
    """Fires a sync round on a fixed interval and runs ad-hoc syncs.

    Both paths go through the orchestrator, whose per-connection lock keeps
    them from overlapping on the same connection.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_hours: float = SYNC_INTERVAL_HOURS,
    ):
        self.orchestrator = orchestrator
        self.interval_hours = interval_hours
        self.scheduler: AsyncIOScheduler | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        """Register the recurring round and start the scheduler.

        Must be called from inside the running event loop.
        """
        self.scheduler = AsyncIOScheduler(
            event_loop=asyncio.get_running_loop(),
            timezone="UTC",
        )
        self.scheduler.add_job(
            func=self._run_round,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id=ROUND_JOB_ID,
            name="Connection Sync Round",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started, interval={self.interval_hours}h")

    def shutdown(self) -> None:
        """Stop the scheduler and cancel outstanding on-demand syncs."""
        if self.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler shut down")
        for task in list(self._pending):
            task.cancel()

    async def _run_round(self) -> None:
        try:
            await self.orchestrator.run_round()
        except Exception:
            # Keep the job alive for the next tick
            logger.exception("Scheduled sync round failed")

    async def trigger_now(self, item_id: str) -> SyncResult:
        """Sync one connection immediately, without waiting for the next tick."""
        logger.info(f"Manual sync requested for connection {item_id}")
        return await self.orchestrator.sync_connection(item_id)

    def request_sync(self, item_id: str) -> asyncio.Task:
        """Start an immediate sync in the background and return its task."""
        task = asyncio.create_task(self.trigger_now(item_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task


@lru_cache
def get_sync_scheduler() -> SyncScheduler:
    """Process-wide scheduler bound to the shared orchestrator."""
    return SyncScheduler(get_sync_orchestrator())
