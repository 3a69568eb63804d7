"""Tenant Repository - Tenant settings and message templates"""
from typing import List, Optional
from pymongo.collection import Collection

from .base import TenantRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import Tenant, MessageTemplate
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoTenantRepository(TenantRepository):
    """Repository for tenants and templates"""

    def __init__(
        self,
        tenants: Optional[Collection] = None,
        templates: Optional[Collection] = None
    ):
        self._tenants: Collection = tenants if tenants is not None else get_collection("tenants")
        self._templates: Collection = (
            templates if templates is not None else get_collection("message_templates")
        )

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        doc = from_document(self._tenants.find_one({"tenant_id": tenant_id}))
        return Tenant.model_validate(doc) if doc else None

    def list_tenant_ids(self) -> List[str]:
        return sorted(self._tenants.distinct("tenant_id"))

    def save_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants.replace_one(
            {"_id": tenant.tenant_id},
            to_document(tenant, tenant.tenant_id),
            upsert=True
        )
        return tenant

    def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        doc = from_document(self._templates.find_one({"template_id": template_id}))
        return MessageTemplate.model_validate(doc) if doc else None

    def save_template(self, template: MessageTemplate) -> MessageTemplate:
        self._templates.replace_one(
            {"_id": template.template_id},
            to_document(template, template.template_id),
            upsert=True
        )
        return template
