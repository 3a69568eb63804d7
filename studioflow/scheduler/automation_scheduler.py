"""Automation Scheduler - Periodic scheduler passes

Each process runs its own scheduler. Passes on different servers may overlap;
execution claims make sure each firing is delivered once. Nothing is kept in
memory between passes except the last summary, for the status endpoint.
"""
import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.models import PassSummary
from ..engine.engine import AutomationEngine, get_engine
from ..utils.logger import get_logger

logger = get_logger(__name__)

PASS_JOB_ID = "automation_pass"


class AutomationScheduler:
    """
    APScheduler wrapper that runs ``AutomationEngine.run_pass`` on an interval

    The pass itself is synchronous (store and transport calls block), so it
    runs in a worker thread to keep the event loop serving requests.
    """

    def __init__(self, engine: Optional[AutomationEngine] = None):
        self.engine = engine or get_engine()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self.last_summary: Optional[PassSummary] = None

    @property
    def server_id(self) -> str:
        return self.engine.server_id

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_pass,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id=PASS_JOB_ID,
            name="Run automation pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={"server_id": self.server_id, "status": f"every {settings.scheduler_interval_seconds}s"}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Scheduler stopped", extra={"server_id": self.server_id})

    @property
    def is_running(self) -> bool:
        return self._is_running

    def next_run_time(self) -> Optional[str]:
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(PASS_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    async def _run_pass(self) -> None:
        try:
            self.last_summary = await asyncio.to_thread(self.engine.run_pass)
        except Exception as e:
            logger.error(f"Error in automation pass: {e}", exc_info=True, extra={"server_id": self.server_id})


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


def get_scheduler() -> AutomationScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler()
    return _scheduler


def start_scheduler() -> None:
    """Start the global scheduler"""
    get_scheduler().start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
