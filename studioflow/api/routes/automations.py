"""
Automation Routes

Rule store management for communication, stage-change and countdown
automations.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_correlation_id_dep, get_repositories_dep, get_tenant_id_dep
from ...domain.enums import AutomationKind
from ...domain.errors import DomainError
from ...repositories import Repositories
from ...services.automation_service import AutomationService
from ...utils.logger import get_logger
from .schemas import AutomationListResponse, CreateAutomationRequest, UpdateAutomationRequest

logger = get_logger(__name__)
router = APIRouter()


@router.post("", status_code=201)
async def create_automation(
    request: CreateAutomationRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Create an automation.

    Rules that could never fire (missing content, unknown channel for the
    kind, no triggers) are rejected with AUTOMATION_CONFIG_ERROR.
    """
    try:
        service = AutomationService(repos)
        automation = service.create_automation(tenant_id, request.model_dump(exclude_none=True))
        logger.info(
            "Automation created",
            extra={"tenant_id": tenant_id, "rule_id": automation.automation_id}
        )
        return automation.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=AutomationListResponse)
async def list_automations(
    kind: Optional[AutomationKind] = Query(None),
    enabled_only: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
):
    service = AutomationService(repos)
    items = service.list_automations(tenant_id, kind=kind, enabled_only=enabled_only)
    return AutomationListResponse(
        items=[a.model_dump(mode="json") for a in items],
        total=len(items)
    )


@router.get("/{automation_id}")
async def get_automation(
    automation_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
) -> Dict[str, Any]:
    try:
        return AutomationService(repos).get_automation(tenant_id, automation_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.patch("/{automation_id}")
async def update_automation(
    automation_id: str,
    request: UpdateAutomationRequest,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """Edit parameters; the merged rule is validated before it is stored"""
    try:
        service = AutomationService(repos)
        automation = service.update_automation(
            tenant_id, automation_id, request.model_dump(exclude_unset=True)
        )
        return automation.model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{automation_id}/enable")
async def enable_automation(
    automation_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    try:
        return AutomationService(repos).enable_automation(tenant_id, automation_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{automation_id}/disable")
async def disable_automation(
    automation_id: str,
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
) -> Dict[str, Any]:
    """
    Disable an automation.

    New triggers stop matching at once. Firings already scheduled still run
    and are flagged in the audit log.
    """
    try:
        return AutomationService(repos).disable_automation(tenant_id, automation_id).model_dump(mode="json")
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
