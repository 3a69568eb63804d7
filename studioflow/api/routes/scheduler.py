"""
Scheduler Routes

Run a pass on demand and inspect the in-process scheduler.
"""

from fastapi import APIRouter, Depends

from ..deps import get_correlation_id_dep, get_engine_dep
from ...config.settings import settings
from ...domain.models import PassSummary
from ...engine.engine import AutomationEngine
from ...scheduler.automation_scheduler import get_scheduler
from ...utils.logger import get_logger
from .schemas import RunPassRequest, SchedulerStatusResponse

logger = get_logger(__name__)
router = APIRouter()


@router.post("/run-pass", response_model=PassSummary)
async def run_pass(
    request: RunPassRequest,
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Run one scheduler pass now.

    Safe to call while the periodic scheduler is running; claims keep every
    firing to one delivery.
    """
    logger.info("Manual scheduler pass requested", extra={"server_id": engine.server_id})
    return engine.run_pass(now=request.now)


@router.get("/status", response_model=SchedulerStatusResponse)
async def scheduler_status(engine: AutomationEngine = Depends(get_engine_dep)):
    scheduler = get_scheduler()
    return SchedulerStatusResponse(
        enabled=settings.scheduler_enabled,
        running=scheduler.is_running,
        interval_seconds=settings.scheduler_interval_seconds,
        server_id=engine.server_id,
        next_run_time=scheduler.next_run_time()
    )
