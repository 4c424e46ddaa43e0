"""
APScheduler Configuration for the Reconciliation Sweep

Runs ReconciliationService.sweep() on an interval while the app is up.
Jobs live in memory: the sweep is re-registered at every startup, so
nothing needs to survive a restart.
"""
import asyncio
import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reconciliation_sweep"


class ReconciliationScheduler:
    """
    Owns the AsyncIOScheduler for periodic reconciliation.

    Configuration:
    - AsyncIOExecutor, jobs run on the app's event loop
    - Coalesce: True (missed runs collapse into one)
    - Max instances: 1 (sweeps never overlap)
    """

    def __init__(self, reconciliation: ReconciliationService, interval_minutes: int = 15):
        self._reconciliation = reconciliation
        self._interval_minutes = interval_minutes
        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,  # 5 minutes grace period for misfires
            },
            timezone="UTC",
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """
        Register the sweep job and start the scheduler.

        Must be called from within a running event loop (FastAPI lifespan).
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self._run_sweep,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=SWEEP_JOB_ID,
            name="Reconciliation sweep",
            replace_existing=True,
        )
        self._scheduler.start()

        next_run = self.next_run_time()
        logger.info(f"Reconciliation scheduler started: interval={self._interval_minutes}min, next_run={next_run}")

    async def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler gracefully.

        AsyncIOScheduler applies the stop on the event loop, so this yields
        once before reporting.

        Args:
            wait: Wait for a running sweep to complete
        """
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        await asyncio.sleep(0)
        if self._scheduler.running:
            logger.warning("Reconciliation scheduler shutdown requested but still running")
        else:
            logger.info(f"Reconciliation scheduler shutdown (wait={wait})")

    def next_run_time(self):
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None

    async def _run_sweep(self) -> Optional[dict]:
        try:
            report = await self._reconciliation.sweep()
        except Exception as e:
            logger.error(f"Reconciliation sweep failed: {e}", exc_info=True)
            return None
        return report.to_dict()
