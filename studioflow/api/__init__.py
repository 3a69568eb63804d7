"""API module - Routes and dependencies"""
from .deps import get_correlation_id_dep, get_tenant_id_dep, get_engine_dep, get_repositories_dep

__all__ = ["get_correlation_id_dep", "get_tenant_id_dep", "get_engine_dep", "get_repositories_dep"]
