"""
Subscription Routes

Manual enrolment and operator transitions for drip subscriptions.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_correlation_id_dep, get_engine_dep, get_tenant_id_dep
from ...domain.errors import CampaignNotFoundError, DomainError, SubjectNotFoundError
from ...engine.engine import AutomationEngine
from ...utils.logger import get_logger
from ...utils.time import utc_now
from .schemas import EnrollRequest, EnrollResponse

logger = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=EnrollResponse)
async def enroll_subject(
    request: EnrollRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Enrol a subject in an ACTIVE campaign.

    Enrolment is idempotent per (campaign, subject); an ineligible subject
    (no email address, no opt-in, inactive campaign) returns no subscription.
    """
    try:
        campaign = engine.repos.campaigns.get_campaign(tenant_id, request.campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {request.campaign_id} not found")
        subject = engine.repos.subjects.get_subject(tenant_id, request.subject_id)
        if subject is None:
            raise SubjectNotFoundError(f"Subject {request.subject_id} not found")

        subscription, created = engine.ledger.enroll(campaign, subject, utc_now())
        return EnrollResponse(
            subscription=subscription.model_dump(mode="json") if subscription else None,
            created=created
        )
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("/subject/{subject_id}")
async def list_subject_subscriptions(
    subject_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep)
) -> List[Dict[str, Any]]:
    subscriptions = engine.repos.subscriptions.list_for_subject(tenant_id, subject_id)
    return [s.model_dump(mode="json") for s in subscriptions]


@router.post("/{subscription_id}/pause")
async def pause_subscription(
    subscription_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return engine.ledger.pause(tenant_id, subscription_id, utc_now()).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Resume with the cursor unchanged"""
    try:
        return engine.ledger.resume(tenant_id, subscription_id, utc_now()).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{subscription_id}/unsubscribe")
async def unsubscribe(
    subscription_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    engine: AutomationEngine = Depends(get_engine_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return engine.ledger.unsubscribe(tenant_id, subscription_id, utc_now()).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
