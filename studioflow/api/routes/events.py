"""
Event Routes

Inbound events from the pipeline and calendar. Each call returns the
evaluation summary only; delivery failures are reported in the audit log.
"""

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_correlation_id_dep, get_engine_dep, get_tenant_id_dep
from ...domain.models import AutomationEvent, EvaluationResult
from ...domain.enums import EventKind
from ...domain.errors import DomainError
from ...engine.engine import AutomationEngine
from ...utils.logger import get_logger
from ...utils.time import utc_now
from .schemas import BusinessEventRequest, ClockTickRequest, StageEnteredRequest

logger = get_logger(__name__)
router = APIRouter()


def _handle(engine: AutomationEngine, event: AutomationEvent) -> EvaluationResult:
    try:
        return engine.handle_event(event)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/stage-entered", response_model=EvaluationResult)
async def stage_entered(
    request: StageEnteredRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    A subject entered a stage.

    Zero-delay automations deliver before the response; delayed steps are
    scheduled and matching drip campaigns enrol the subject.
    """
    event = AutomationEvent(
        tenant_id=tenant_id,
        subject_id=request.subject_id,
        kind=EventKind.STAGE_ENTERED,
        stage_id=request.stage_id,
        occurred_at=request.occurred_at or utc_now(),
        correlation_id=correlation_id
    )
    return _handle(engine, event)


@router.post("/business", response_model=EvaluationResult)
async def business_event(
    request: BusinessEventRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """A business event happened; matching stage-change automations move the subject"""
    event = AutomationEvent(
        tenant_id=tenant_id,
        subject_id=request.subject_id,
        kind=EventKind.BUSINESS_EVENT,
        business_event=request.business_event,
        occurred_at=request.occurred_at or utc_now(),
        correlation_id=correlation_id
    )
    return _handle(engine, event)


@router.post("/clock-tick", response_model=EvaluationResult)
async def clock_tick(
    request: ClockTickRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Schedule countdowns due today, e.g. right after an anchor date changed"""
    event = AutomationEvent(
        tenant_id=tenant_id,
        subject_id=request.subject_id,
        kind=EventKind.CLOCK_TICK,
        occurred_at=utc_now(),
        correlation_id=correlation_id
    )
    return _handle(engine, event)
