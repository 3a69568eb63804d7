"""Repository Interfaces - Storage contracts the engine depends on

The engine only talks to these interfaces. ``mongo`` implementations live in
the ``*_repo`` modules, the in-process implementation in ``memory_store``.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import (
    Automation, DripCampaign, DripCampaignSubscription, DueItem, ExecutionClaim,
    ExecutionRecord, Subject, Tenant, MessageTemplate
)
from ..domain.enums import (
    AutomationKind, CampaignStatus, ClaimStatus, SubscriptionStatus
)


class AutomationRepository(ABC):
    """Rule store: automations with embedded steps and business triggers"""

    @abstractmethod
    def create_automation(self, automation: Automation) -> Automation: ...

    @abstractmethod
    def get_automation(self, tenant_id: str, automation_id: str) -> Optional[Automation]: ...

    @abstractmethod
    def list_automations(
        self,
        tenant_id: str,
        kind: Optional[AutomationKind] = None,
        enabled_only: bool = False
    ) -> List[Automation]: ...

    @abstractmethod
    def update_automation(
        self, tenant_id: str, automation_id: str, updates: Dict[str, Any]
    ) -> Automation: ...


class CampaignRepository(ABC):
    """Rule store: drip campaigns with embedded emails"""

    @abstractmethod
    def create_campaign(self, campaign: DripCampaign) -> DripCampaign: ...

    @abstractmethod
    def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[DripCampaign]: ...

    @abstractmethod
    def list_campaigns(
        self, tenant_id: str, status: Optional[CampaignStatus] = None
    ) -> List[DripCampaign]: ...

    @abstractmethod
    def save_campaign(self, campaign: DripCampaign) -> DripCampaign: ...


class SubscriptionRepository(ABC):
    """Subscription ledger: one cursor per (campaign, subject)"""

    @abstractmethod
    def create_subscription(
        self, subscription: DripCampaignSubscription
    ) -> Tuple[DripCampaignSubscription, bool]:
        """Insert unless the (campaign, subject) pair exists; returns (row, created)"""

    @abstractmethod
    def get_subscription(
        self, tenant_id: str, subscription_id: str
    ) -> Optional[DripCampaignSubscription]: ...

    @abstractmethod
    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DripCampaignSubscription]: ...

    @abstractmethod
    def list_due_subscriptions(
        self, now: datetime, limit: int, skip: int = 0
    ) -> List[DripCampaignSubscription]:
        """ACTIVE subscriptions with next_email_at <= now, across all tenants, one page at a time"""

    @abstractmethod
    def advance_cursor(
        self,
        subscription_id: str,
        expected_index: int,
        next_index: int,
        next_email_at: Optional[datetime],
        now: datetime
    ) -> Optional[DripCampaignSubscription]:
        """Move the cursor only if it still points at ``expected_index``"""

    @abstractmethod
    def transition_status(
        self,
        subscription_id: str,
        from_statuses: List[SubscriptionStatus],
        to_status: SubscriptionStatus,
        now: datetime,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[DripCampaignSubscription]:
        """Conditional status change; None when the current status is not allowed"""


class DueItemRepository(ABC):
    """Persisted due timestamps"""

    @abstractmethod
    def upsert_due_item(self, item: DueItem) -> Tuple[DueItem, bool]:
        """Insert unless (rule, subject, occurrence) exists; returns (row, created)"""

    @abstractmethod
    def list_due(self, now: datetime, limit: int, skip: int = 0) -> List[DueItem]:
        """PENDING items with fire_at <= now, oldest first, one page at a time"""

    @abstractmethod
    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DueItem]: ...

    @abstractmethod
    def mark_done(self, due_item_id: str, now: datetime) -> None: ...

    @abstractmethod
    def record_failure(
        self, due_item_id: str, error: str, permanent: bool, now: datetime
    ) -> None: ...


class ExecutionClaimRepository(ABC):
    """Idempotency claims acquired by atomic conditional insert"""

    @abstractmethod
    def try_claim(self, claim: ExecutionClaim, now: datetime) -> bool:
        """
        Acquire the claim. Succeeds for a new key, a FAILED key, or an
        IN_PROGRESS key whose lease expired. Never succeeds for SUCCEEDED.
        """

    @abstractmethod
    def release(self, claim_id: str, claimed_by: str, status: ClaimStatus, now: datetime) -> bool: ...

    @abstractmethod
    def get_claim(self, claim_id: str) -> Optional[ExecutionClaim]: ...


class AuditRepository(ABC):
    """Append-only execution log"""

    @abstractmethod
    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        """Raises AlreadyExistsError for a second SUCCESS with the same idempotency key"""

    @abstractmethod
    def list_for_subject(
        self, tenant_id: str, subject_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]: ...

    @abstractmethod
    def list_for_rule(
        self, tenant_id: str, rule_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]: ...

    @abstractmethod
    def has_success(self, idempotency_key: str) -> bool: ...


class SubjectRepository(ABC):
    """Pipeline and calendar collaborator view of contacts/projects"""

    @abstractmethod
    def get_subject(self, tenant_id: str, subject_id: str) -> Optional[Subject]: ...

    @abstractmethod
    def list_active_subjects(
        self, tenant_id: str, project_type: str, stage_id: Optional[str] = None
    ) -> List[Subject]: ...

    @abstractmethod
    def save_subject(self, subject: Subject) -> Subject: ...

    @abstractmethod
    def get_stage(self, tenant_id: str, stage_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def save_stage(self, tenant_id: str, stage_id: str, name: str) -> Dict[str, Any]: ...

    @abstractmethod
    def update_subject_stage(
        self, tenant_id: str, subject_id: str, stage_id: str, now: datetime
    ) -> Subject: ...


class TenantRepository(ABC):
    """Tenant settings and reusable templates"""

    @abstractmethod
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    @abstractmethod
    def list_tenant_ids(self) -> List[str]: ...

    @abstractmethod
    def save_tenant(self, tenant: Tenant) -> Tenant: ...

    @abstractmethod
    def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        """Lookup by id only; callers enforce tenant ownership"""

    @abstractmethod
    def save_template(self, template: MessageTemplate) -> MessageTemplate: ...
