"""Automation Service - Operator use cases for the rule store"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import Automation
from ..domain.enums import AutomationKind
from ..domain.errors import AutomationNotFoundError
from ..engine.rule_validator import RuleValidator
from ..repositories import Repositories, get_repositories
from ..utils.idgen import generate_automation_id, generate_step_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class AutomationService:
    """Create, edit, enable and disable automations"""

    def __init__(self, repos: Optional[Repositories] = None):
        self.repos = repos or get_repositories()
        self.validator = RuleValidator()

    def create_automation(
        self, tenant_id: str, data: Dict[str, Any], now: Optional[datetime] = None
    ) -> Automation:
        """
        Create an automation after checking its kind-specific invariants

        Raises:
            AutomationConfigError: The rule could never fire as configured
        """
        now = now or utc_now()
        steps = []
        for step in data.get("steps") or []:
            step = dict(step)
            if not step.get("step_id"):
                step["step_id"] = generate_step_id()
            steps.append(step)

        automation = Automation.model_validate({
            **data,
            "steps": steps,
            "automation_id": generate_automation_id(),
            "tenant_id": tenant_id,
            "created_at": now,
            "updated_at": now,
        })
        self.validator.ensure_valid_automation(automation)
        self.repos.automations.create_automation(automation)
        return automation

    def get_automation(self, tenant_id: str, automation_id: str) -> Automation:
        automation = self.repos.automations.get_automation(tenant_id, automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        return automation

    def list_automations(
        self,
        tenant_id: str,
        kind: Optional[AutomationKind] = None,
        enabled_only: bool = False
    ) -> List[Automation]:
        return self.repos.automations.list_automations(tenant_id, kind=kind, enabled_only=enabled_only)

    def update_automation(
        self,
        tenant_id: str,
        automation_id: str,
        updates: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> Automation:
        """Edit parameters; identity, tenant and kind never change"""
        current = self.get_automation(tenant_id, automation_id)
        updates = {
            key: value for key, value in updates.items()
            if key not in ("automation_id", "tenant_id", "kind", "created_at")
        }
        if "steps" in updates:
            updates["steps"] = [
                {**step, "step_id": step.get("step_id") or generate_step_id()}
                for step in updates["steps"] or []
            ]
        updates["updated_at"] = now or utc_now()

        candidate = Automation.model_validate({**current.model_dump(), **updates})
        self.validator.ensure_valid_automation(candidate)
        return self.repos.automations.update_automation(tenant_id, automation_id, updates)

    def enable_automation(
        self, tenant_id: str, automation_id: str, now: Optional[datetime] = None
    ) -> Automation:
        current = self.get_automation(tenant_id, automation_id)
        self.validator.ensure_valid_automation(current)
        automation = self.repos.automations.update_automation(
            tenant_id, automation_id,
            {"enabled": True, "disabled_at": None, "updated_at": now or utc_now()}
        )
        logger.info("Automation enabled", extra={"tenant_id": tenant_id, "rule_id": automation_id})
        return automation

    def disable_automation(
        self, tenant_id: str, automation_id: str, now: Optional[datetime] = None
    ) -> Automation:
        """Soft-disable; due items already persisted are left in place"""
        self.get_automation(tenant_id, automation_id)
        now = now or utc_now()
        automation = self.repos.automations.update_automation(
            tenant_id, automation_id,
            {"enabled": False, "disabled_at": now, "updated_at": now}
        )
        logger.info("Automation disabled", extra={"tenant_id": tenant_id, "rule_id": automation_id})
        return automation
