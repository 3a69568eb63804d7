"""
Campaign Routes

Drip campaign lifecycle and per-email approval.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_correlation_id_dep, get_repositories_dep, get_tenant_id_dep
from ...domain.enums import CampaignStatus
from ...domain.errors import DomainError
from ...repositories import Repositories
from ...services.campaign_service import CampaignService
from ...utils.logger import get_logger
from .schemas import CampaignListResponse, CreateCampaignRequest

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Campaigns
# =============================================================================

@router.post("", status_code=201)
async def create_campaign(
    request: CreateCampaignRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Create a campaign in DRAFT with every email PENDING"""
    try:
        campaign = CampaignService(repos).create_campaign(tenant_id, request.model_dump())
        logger.info(
            "Campaign created",
            extra={"tenant_id": tenant_id, "campaign_id": campaign.campaign_id}
        )
        return campaign.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status: Optional[CampaignStatus] = Query(None),
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
):
    items = CampaignService(repos).list_campaigns(tenant_id, status=status)
    return CampaignListResponse(items=[c.model_dump(mode="json") for c in items], total=len(items))


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
) -> Dict[str, Any]:
    try:
        return CampaignService(repos).get_campaign(tenant_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/approve")
async def approve_campaign(
    campaign_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return CampaignService(repos).approve_campaign(tenant_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/activate")
async def activate_campaign(
    campaign_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return CampaignService(repos).activate_campaign(tenant_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return CampaignService(repos).delete_campaign(tenant_id, campaign_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# =============================================================================
# Email approval
# =============================================================================

@router.post("/{campaign_id}/emails/{email_id}/approve")
async def approve_email(
    campaign_id: str,
    email_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Approve one email.

    Subscriptions held at this email send it on the next scheduler pass.
    """
    try:
        return CampaignService(repos).approve_email(tenant_id, campaign_id, email_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{campaign_id}/emails/{email_id}/reject")
async def reject_email(
    campaign_id: str,
    email_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return CampaignService(repos).reject_email(tenant_id, campaign_id, email_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
