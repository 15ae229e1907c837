"""Periodic escalation worker.

Runs EscalationEngine.process_pending_escalations on a fixed interval
using an APScheduler AsyncIOScheduler owned by the worker instance. A
tick that is still running when the next one is due is not doubled up
(max_instances=1); missed runs are coalesced into one.
"""

import asyncio
import uuid
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pulsar_escalation.logging_config import bind_correlation_id, get_logger
from pulsar_escalation.services.escalation_engine import EscalationEngine, TickReport

logger = get_logger(__name__)

JOB_ID = "escalation_tick"
CLEANUP_JOB_ID = "dnd_override_cleanup"


class EscalationWorker:
    """Drives the escalation engine on a timer.

    Args:
        engine: The engine to tick
        interval_seconds: Seconds between ticks
        grace_seconds: Default time stop() waits for an in-flight tick
            before cancelling it
        cleanup_interval_hours: Hours between prunes of ended DND
            overrides (0 disables the job)
    """

    def __init__(
        self,
        engine: EscalationEngine,
        interval_seconds: int = 30,
        grace_seconds: float = 10.0,
        cleanup_interval_hours: int = 6,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._grace_seconds = grace_seconds
        self._cleanup_interval_hours = cleanup_interval_hours
        self._scheduler: AsyncIOScheduler | None = None
        self._stopping = False
        self._in_flight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def scheduler(self) -> AsyncIOScheduler | None:
        return self._scheduler

    def start(self) -> None:
        """Start ticking. Must be called from within the running event loop."""
        if self.running:
            logger.warning("Escalation worker already running")
            return

        self._stopping = False
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=JOB_ID,
            name="Process pending escalations",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self._cleanup_interval_hours > 0:
            self._scheduler.add_job(
                self._scheduled_cleanup,
                trigger=IntervalTrigger(hours=self._cleanup_interval_hours),
                id=CLEANUP_JOB_ID,
                name="Prune ended DND overrides",
                replace_existing=True,
                max_instances=1,
            )
        self._scheduler.start()

        logger.info(
            "Escalation worker started",
            interval_seconds=self._interval_seconds,
        )

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop scheduling new ticks and wind down the one in flight.

        Args:
            grace_seconds: How long to wait for an in-flight tick before
                cancelling it (defaults to the worker's grace period)
        """
        self._stopping = True
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

        grace = self._grace_seconds if grace_seconds is None else grace_seconds
        pending = {t for t in self._in_flight if not t.done()}
        if pending:
            logger.info("Waiting for in-flight escalation tick", tasks=len(pending))
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                logger.warning(
                    "Cancelling escalation tick after grace period",
                    grace_seconds=grace,
                    tasks=len(still_running),
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info("Escalation worker stopped")

    async def run_once(self, now: datetime | None = None) -> TickReport:
        """Run a tick immediately, outside the schedule."""
        return await self._run_tick(now)

    async def _scheduled_tick(self) -> None:
        if self._stopping:
            return
        try:
            await self._run_tick()
        except asyncio.CancelledError:
            logger.warning("Escalation tick cancelled")
            raise
        except Exception as e:
            logger.exception("Escalation tick failed", error=str(e))

    async def _scheduled_cleanup(self) -> None:
        if self._stopping:
            return
        try:
            await self._engine.prune_dnd_overrides()
        except Exception as e:
            logger.exception("DND override cleanup failed", error=str(e))

    async def _run_tick(self, now: datetime | None = None) -> TickReport:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            with bind_correlation_id(f"tick-{uuid.uuid4()}"):
                return await self._engine.process_pending_escalations(now)
        finally:
            if task is not None:
                self._in_flight.discard(task)
