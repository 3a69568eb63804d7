"""In-Process Repositories - Thread-safe storage for tests and single-node runs

Every repository here honours the same atomicity contracts as the Mongo
implementations: conditional updates happen under one lock and callers always
receive copies, never the stored objects.
"""
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    AutomationRepository, CampaignRepository, SubscriptionRepository,
    DueItemRepository, ExecutionClaimRepository, AuditRepository,
    SubjectRepository, TenantRepository
)
from ..domain.models import (
    Automation, DripCampaign, DripCampaignSubscription, DueItem, ExecutionClaim,
    ExecutionRecord, Subject, Tenant, MessageTemplate
)
from ..domain.enums import (
    AutomationKind, CampaignStatus, ClaimStatus, DueItemStatus,
    ExecutionOutcome, SubjectStatus, SubscriptionStatus
)
from ..domain.errors import (
    AlreadyExistsError, AutomationNotFoundError, SubjectNotFoundError
)
from ..utils.logger import get_logger
from ..utils.time import ensure_utc

logger = get_logger(__name__)


class MemoryAutomationRepository(AutomationRepository):
    """Automations keyed by automation_id"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, Automation] = {}

    def create_automation(self, automation: Automation) -> Automation:
        with self._lock:
            if automation.automation_id in self._rows:
                raise AlreadyExistsError(f"Automation {automation.automation_id} already exists")
            self._rows[automation.automation_id] = automation.model_copy(deep=True)
        return automation

    def get_automation(self, tenant_id: str, automation_id: str) -> Optional[Automation]:
        with self._lock:
            row = self._rows.get(automation_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row.model_copy(deep=True)

    def list_automations(
        self,
        tenant_id: str,
        kind: Optional[AutomationKind] = None,
        enabled_only: bool = False
    ) -> List[Automation]:
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.tenant_id == tenant_id
                and (kind is None or row.kind == kind)
                and (not enabled_only or row.enabled)
            ]
        return sorted(rows, key=lambda a: a.automation_id)

    def update_automation(
        self, tenant_id: str, automation_id: str, updates: Dict[str, Any]
    ) -> Automation:
        with self._lock:
            row = self._rows.get(automation_id)
            if row is None or row.tenant_id != tenant_id:
                raise AutomationNotFoundError(f"Automation {automation_id} not found")
            merged = row.model_dump()
            merged.update(updates)
            updated = Automation.model_validate(merged)
            self._rows[automation_id] = updated
            return updated.model_copy(deep=True)


class MemoryCampaignRepository(CampaignRepository):
    """Drip campaigns keyed by campaign_id"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, DripCampaign] = {}

    def create_campaign(self, campaign: DripCampaign) -> DripCampaign:
        with self._lock:
            if campaign.campaign_id in self._rows:
                raise AlreadyExistsError(f"Campaign {campaign.campaign_id} already exists")
            self._rows[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign

    def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[DripCampaign]:
        with self._lock:
            row = self._rows.get(campaign_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row.model_copy(deep=True)

    def list_campaigns(
        self, tenant_id: str, status: Optional[CampaignStatus] = None
    ) -> List[DripCampaign]:
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.tenant_id == tenant_id and (status is None or row.status == status)
            ]
        return sorted(rows, key=lambda c: c.campaign_id)

    def save_campaign(self, campaign: DripCampaign) -> DripCampaign:
        with self._lock:
            self._rows[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign


class MemorySubscriptionRepository(SubscriptionRepository):
    """Subscriptions with a (campaign, subject) uniqueness guard"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, DripCampaignSubscription] = {}

    def create_subscription(
        self, subscription: DripCampaignSubscription
    ) -> Tuple[DripCampaignSubscription, bool]:
        with self._lock:
            for row in self._rows.values():
                if (row.campaign_id == subscription.campaign_id
                        and row.subject_id == subscription.subject_id):
                    return row.model_copy(deep=True), False
            self._rows[subscription.subscription_id] = subscription.model_copy(deep=True)
            return subscription, True

    def get_subscription(
        self, tenant_id: str, subscription_id: str
    ) -> Optional[DripCampaignSubscription]:
        with self._lock:
            row = self._rows.get(subscription_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row.model_copy(deep=True)

    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DripCampaignSubscription]:
        with self._lock:
            return [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.tenant_id == tenant_id and row.subject_id == subject_id
            ]

    def list_due_subscriptions(
        self, now: datetime, limit: int, skip: int = 0
    ) -> List[DripCampaignSubscription]:
        now = ensure_utc(now)
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.status == SubscriptionStatus.ACTIVE
                and row.next_email_at is not None
                and ensure_utc(row.next_email_at) <= now
            ]
        rows.sort(key=lambda s: (ensure_utc(s.next_email_at), s.subscription_id))
        return rows[skip:skip + limit]

    def advance_cursor(
        self,
        subscription_id: str,
        expected_index: int,
        next_index: int,
        next_email_at: Optional[datetime],
        now: datetime
    ) -> Optional[DripCampaignSubscription]:
        with self._lock:
            row = self._rows.get(subscription_id)
            if row is None or row.next_email_index != expected_index:
                return None
            updated = row.model_copy(update={
                "next_email_index": next_index,
                "next_email_at": next_email_at,
                "updated_at": now,
            })
            self._rows[subscription_id] = updated
            return updated.model_copy(deep=True)

    def transition_status(
        self,
        subscription_id: str,
        from_statuses: List[SubscriptionStatus],
        to_status: SubscriptionStatus,
        now: datetime,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[DripCampaignSubscription]:
        with self._lock:
            row = self._rows.get(subscription_id)
            if row is None or row.status not in from_statuses:
                return None
            changes = dict(updates or {})
            changes.update({"status": to_status, "updated_at": now})
            updated = row.model_copy(update=changes)
            self._rows[subscription_id] = updated
            return updated.model_copy(deep=True)


class MemoryDueItemRepository(DueItemRepository):
    """Due items with a (rule, subject, occurrence) uniqueness guard"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, DueItem] = {}

    def upsert_due_item(self, item: DueItem) -> Tuple[DueItem, bool]:
        with self._lock:
            for row in self._rows.values():
                if (row.rule_id == item.rule_id
                        and row.subject_id == item.subject_id
                        and row.occurrence_key == item.occurrence_key):
                    return row.model_copy(deep=True), False
            self._rows[item.due_item_id] = item.model_copy(deep=True)
            return item, True

    def list_due(self, now: datetime, limit: int, skip: int = 0) -> List[DueItem]:
        now = ensure_utc(now)
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.status == DueItemStatus.PENDING and ensure_utc(row.fire_at) <= now
            ]
        rows.sort(key=lambda d: (ensure_utc(d.fire_at), d.step_index, d.due_item_id))
        return rows[skip:skip + limit]

    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DueItem]:
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.tenant_id == tenant_id and row.subject_id == subject_id
            ]
        rows.sort(key=lambda d: (ensure_utc(d.fire_at), d.step_index))
        return rows

    def mark_done(self, due_item_id: str, now: datetime) -> None:
        with self._lock:
            row = self._rows.get(due_item_id)
            if row is not None:
                self._rows[due_item_id] = row.model_copy(update={
                    "status": DueItemStatus.DONE, "updated_at": now
                })

    def record_failure(
        self, due_item_id: str, error: str, permanent: bool, now: datetime
    ) -> None:
        with self._lock:
            row = self._rows.get(due_item_id)
            if row is None:
                return
            self._rows[due_item_id] = row.model_copy(update={
                "status": DueItemStatus.FAILED if permanent else DueItemStatus.PENDING,
                "attempts": row.attempts + 1,
                "last_error": error,
                "updated_at": now,
            })


class MemoryExecutionClaimRepository(ExecutionClaimRepository):
    """Idempotency claims keyed by idempotency key"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, ExecutionClaim] = {}

    def try_claim(self, claim: ExecutionClaim, now: datetime) -> bool:
        now = ensure_utc(now)
        with self._lock:
            existing = self._rows.get(claim.claim_id)
            if existing is None:
                self._rows[claim.claim_id] = claim.model_copy(deep=True)
                return True

            if existing.status == ClaimStatus.SUCCEEDED:
                return False
            if (existing.status == ClaimStatus.IN_PROGRESS
                    and ensure_utc(existing.lease_until) > now):
                return False

            self._rows[claim.claim_id] = existing.model_copy(update={
                "status": ClaimStatus.IN_PROGRESS,
                "claimed_by": claim.claimed_by,
                "lease_until": claim.lease_until,
                "attempts": existing.attempts + 1,
                "updated_at": now,
            })
            return True

    def release(self, claim_id: str, claimed_by: str, status: ClaimStatus, now: datetime) -> bool:
        with self._lock:
            existing = self._rows.get(claim_id)
            if existing is None or existing.claimed_by != claimed_by:
                return False
            self._rows[claim_id] = existing.model_copy(update={
                "status": status, "updated_at": now
            })
            return True

    def get_claim(self, claim_id: str) -> Optional[ExecutionClaim]:
        with self._lock:
            row = self._rows.get(claim_id)
            return row.model_copy(deep=True) if row else None


class MemoryAuditRepository(AuditRepository):
    """Append-only execution log"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: List[ExecutionRecord] = []

    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            if record.outcome == ExecutionOutcome.SUCCESS and self.has_success(record.idempotency_key):
                raise AlreadyExistsError(
                    "Successful execution already recorded",
                    details={"idempotency_key": record.idempotency_key}
                )
            self._rows.append(record.model_copy(deep=True))
        return record

    def list_for_subject(
        self, tenant_id: str, subject_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]:
        with self._lock:
            rows = [
                r.model_copy(deep=True) for r in self._rows
                if r.tenant_id == tenant_id and r.subject_id == subject_id
            ]
        rows.sort(key=lambda r: ensure_utc(r.timestamp), reverse=True)
        return rows[skip:skip + limit]

    def list_for_rule(
        self, tenant_id: str, rule_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]:
        with self._lock:
            rows = [
                r.model_copy(deep=True) for r in self._rows
                if r.tenant_id == tenant_id and r.rule_id == rule_id
            ]
        rows.sort(key=lambda r: ensure_utc(r.timestamp), reverse=True)
        return rows[skip:skip + limit]

    def has_success(self, idempotency_key: str) -> bool:
        with self._lock:
            return any(
                r.idempotency_key == idempotency_key and r.outcome == ExecutionOutcome.SUCCESS
                for r in self._rows
            )


class MemorySubjectRepository(SubjectRepository):
    """Subjects plus the tenant's pipeline stages"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, Subject] = {}
        self._stages: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def get_subject(self, tenant_id: str, subject_id: str) -> Optional[Subject]:
        with self._lock:
            row = self._rows.get(subject_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row.model_copy(deep=True)

    def list_active_subjects(
        self, tenant_id: str, project_type: str, stage_id: Optional[str] = None
    ) -> List[Subject]:
        with self._lock:
            rows = [
                row.model_copy(deep=True) for row in self._rows.values()
                if row.tenant_id == tenant_id
                and row.project_type == project_type
                and row.status == SubjectStatus.ACTIVE
                and (stage_id is None or row.stage_id == stage_id)
            ]
        return sorted(rows, key=lambda s: s.subject_id)

    def save_subject(self, subject: Subject) -> Subject:
        with self._lock:
            self._rows[subject.subject_id] = subject.model_copy(deep=True)
        return subject

    def get_stage(self, tenant_id: str, stage_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stage = self._stages.get((tenant_id, stage_id))
            return dict(stage) if stage else None

    def save_stage(self, tenant_id: str, stage_id: str, name: str) -> Dict[str, Any]:
        stage = {"tenant_id": tenant_id, "stage_id": stage_id, "name": name}
        with self._lock:
            self._stages[(tenant_id, stage_id)] = stage
        return dict(stage)

    def update_subject_stage(
        self, tenant_id: str, subject_id: str, stage_id: str, now: datetime
    ) -> Subject:
        with self._lock:
            row = self._rows.get(subject_id)
            if row is None or row.tenant_id != tenant_id:
                raise SubjectNotFoundError(f"Subject {subject_id} not found")
            updated = row.model_copy(update={"stage_id": stage_id, "stage_entered_at": now})
            self._rows[subject_id] = updated
            return updated.model_copy(deep=True)


class MemoryTenantRepository(TenantRepository):
    """Tenants and their message templates"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, Tenant] = {}
        self._templates: Dict[str, MessageTemplate] = {}

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            row = self._rows.get(tenant_id)
            return row.model_copy(deep=True) if row else None

    def list_tenant_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._rows.keys())

    def save_tenant(self, tenant: Tenant) -> Tenant:
        with self._lock:
            self._rows[tenant.tenant_id] = tenant.model_copy(deep=True)
        return tenant

    def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        with self._lock:
            row = self._templates.get(template_id)
            return row.model_copy(deep=True) if row else None

    def save_template(self, template: MessageTemplate) -> MessageTemplate:
        with self._lock:
            self._templates[template.template_id] = template.model_copy(deep=True)
        return template
