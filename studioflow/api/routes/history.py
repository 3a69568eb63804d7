"""
History Routes

Read-only view of the execution audit log.
"""

from fastapi import APIRouter, Depends, Query

from ..deps import get_repositories_dep, get_tenant_id_dep
from ...repositories import Repositories
from .schemas import HistoryResponse, SubjectHistoryResponse

router = APIRouter()


@router.get("/subjects/{subject_id}", response_model=SubjectHistoryResponse)
async def subject_history(
    subject_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
):
    """Everything the engine did, and still plans to do, for one subject"""
    records = repos.audit.list_for_subject(tenant_id, subject_id, skip=skip, limit=limit)
    return SubjectHistoryResponse(
        items=[r.model_dump(mode="json") for r in records],
        skip=skip,
        limit=limit,
        due_items=[d.model_dump(mode="json") for d in repos.due_items.list_for_subject(tenant_id, subject_id)],
        subscriptions=[s.model_dump(mode="json") for s in repos.subscriptions.list_for_subject(tenant_id, subject_id)]
    )


@router.get("/rules/{rule_id}", response_model=HistoryResponse)
async def rule_history(
    rule_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id_dep),
    repos: Repositories = Depends(get_repositories_dep)
):
    records = repos.audit.list_for_rule(tenant_id, rule_id, skip=skip, limit=limit)
    return HistoryResponse(items=[r.model_dump(mode="json") for r in records], skip=skip, limit=limit)
