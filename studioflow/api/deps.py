"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Header, HTTPException, status

from ..engine.engine import AutomationEngine, get_engine
from ..repositories import Repositories, get_repositories
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


async def get_tenant_id_dep(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id")
) -> str:
    """
    Tenant the request acts for

    Every rule, subject and history lookup is scoped to this tenant.

    Raises:
        HTTPException: 401 if the header is missing
    """
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTHENTICATION_ERROR", "message": "X-Tenant-Id header is missing"}}
        )
    return x_tenant_id.strip()


def get_repositories_dep() -> Repositories:
    return get_repositories()


def get_engine_dep() -> AutomationEngine:
    return get_engine()
