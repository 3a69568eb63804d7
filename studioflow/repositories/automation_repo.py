"""Automation Repository - Data access for automation rules"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .base import AutomationRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import Automation
from ..domain.enums import AutomationKind
from ..domain.errors import AlreadyExistsError, AutomationNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoAutomationRepository(AutomationRepository):
    """Repository for automation operations"""

    def __init__(self, collection: Optional[Collection] = None):
        self._automations: Collection = (
            collection if collection is not None else get_collection("automations")
        )

    def create_automation(self, automation: Automation) -> Automation:
        """Create a new automation"""
        try:
            self._automations.insert_one(to_document(automation, automation.automation_id))
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Automation {automation.automation_id} already exists")

        logger.info(
            f"Created automation: {automation.name}",
            extra={"tenant_id": automation.tenant_id, "rule_id": automation.automation_id}
        )
        return automation

    def get_automation(self, tenant_id: str, automation_id: str) -> Optional[Automation]:
        """Get automation by ID within a tenant"""
        doc = from_document(self._automations.find_one({
            "automation_id": automation_id,
            "tenant_id": tenant_id
        }))
        return Automation.model_validate(doc) if doc else None

    def list_automations(
        self,
        tenant_id: str,
        kind: Optional[AutomationKind] = None,
        enabled_only: bool = False
    ) -> List[Automation]:
        """List a tenant's automations, optionally filtered"""
        query: Dict[str, Any] = {"tenant_id": tenant_id}
        if kind is not None:
            query["kind"] = kind.value
        if enabled_only:
            query["enabled"] = True

        cursor = self._automations.find(query).sort("automation_id", ASCENDING)
        return [Automation.model_validate(from_document(doc)) for doc in cursor]

    def update_automation(
        self, tenant_id: str, automation_id: str, updates: Dict[str, Any]
    ) -> Automation:
        """Merge updates into an automation and store the validated result"""
        current = self.get_automation(tenant_id, automation_id)
        if current is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")

        merged = current.model_dump()
        merged.update(updates)
        updated = Automation.model_validate(merged)
        self._automations.replace_one(
            {"_id": automation_id, "tenant_id": tenant_id},
            to_document(updated, automation_id)
        )
        return updated
