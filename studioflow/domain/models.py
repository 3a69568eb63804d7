"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from .enums import (
    AutomationKind, DeliveryChannel, TemplateChannel, EventKind, BusinessTriggerType,
    AnchorEventType, GlobalMatchPolicy, CampaignStatus, EmailApprovalStatus,
    SubscriptionStatus, PauseReason, SubjectStatus, DueItemStatus, ClaimStatus,
    ExecutionOutcome, ExecutionAnomaly, DeliveryStatus, TimingDecision, RuleKind,
    DispatchStatus
)


def build_idempotency_key(rule_id: str, subject_id: str, occurrence_key: str) -> str:
    """Key identifying one firing of one rule for one subject"""
    return f"{rule_id}|{subject_id}|{occurrence_key}"


# ============================================================================
# Tenant, Subject & Templates (collaborator views)
# ============================================================================

class Tenant(BaseModel):
    """Photographer account settings the engine needs"""
    model_config = ConfigDict(extra="ignore")

    tenant_id: str
    business_name: str = Field(default="Your Photographer")
    timezone: str = Field(default="UTC", description="IANA timezone name")
    send_hour: int = Field(default=9, ge=0, le=23, description="Local hour countdowns are sent")
    send_minute: int = Field(default=0, ge=0, le=59)
    email_from_name: Optional[str] = None
    reply_to_email: Optional[str] = None
    global_match_policy: Optional[GlobalMatchPolicy] = Field(
        None, description="Overrides the deployment-wide policy when set"
    )


class Contact(BaseModel):
    """Contact details and consent flags of a subject"""
    model_config = ConfigDict(extra="ignore")

    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    email_opt_in: bool = True
    sms_opt_in: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Subject(BaseModel):
    """Contact/project instance an automation acts upon"""
    model_config = ConfigDict(extra="ignore")

    subject_id: str
    tenant_id: str
    project_type: str = Field(default="WEDDING")
    stage_id: Optional[str] = None
    stage_entered_at: Optional[datetime] = None
    status: SubjectStatus = Field(default=SubjectStatus.ACTIVE)
    contact: Contact = Field(default_factory=Contact)
    anchor_dates: Dict[str, datetime] = Field(
        default_factory=dict, description="Event dates keyed by AnchorEventType value"
    )
    smart_file_token: Optional[str] = None

    def anchor_date(self, event_type: AnchorEventType) -> Optional[datetime]:
        """Read an anchor date; wedding and event dates are interchangeable"""
        value = self.anchor_dates.get(event_type.value)
        if value is None and event_type == AnchorEventType.WEDDING_DATE:
            value = self.anchor_dates.get(AnchorEventType.EVENT_DATE.value)
        elif value is None and event_type == AnchorEventType.EVENT_DATE:
            value = self.anchor_dates.get(AnchorEventType.WEDDING_DATE.value)
        return value


class MessageTemplate(BaseModel):
    """Reusable message template owned by a tenant"""
    model_config = ConfigDict(extra="ignore")

    template_id: str
    tenant_id: str
    name: str = ""
    channel: TemplateChannel
    subject: Optional[str] = None
    html_body: Optional[str] = None
    text_body: Optional[str] = None


# ============================================================================
# Automation Rules
# ============================================================================

class MessageContent(BaseModel):
    """Inline message text or a reference to a reusable template"""
    model_config = ConfigDict(extra="forbid")

    template_id: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = Field(None, description="Plain text body")
    html_body: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.template_id and not (self.body or self.html_body)


class DelaySpec(BaseModel):
    """Delay from trigger time with an optional pin to a local clock time"""
    model_config = ConfigDict(extra="forbid")

    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)
    send_at_hour: Optional[int] = Field(None, ge=0, le=23)
    send_at_minute: int = Field(default=0, ge=0, le=59)

    @property
    def total_minutes(self) -> int:
        return self.days * 1440 + self.hours * 60 + self.minutes

    @property
    def is_immediate(self) -> bool:
        return self.total_minutes == 0 and self.send_at_hour is None


class QuietHours(BaseModel):
    """Local hours during which messages are not sent (inclusive bounds)"""
    model_config = ConfigDict(extra="forbid")

    start_hour: int = Field(..., ge=0, le=23)
    end_hour: int = Field(..., ge=0, le=23)

    def contains(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


class AutomationStep(BaseModel):
    """One sequential action of a COMMUNICATION automation"""
    model_config = ConfigDict(extra="ignore")

    step_id: str
    step_index: int = Field(..., ge=0)
    action: DeliveryChannel
    delay: DelaySpec = Field(default_factory=DelaySpec)
    content: Optional[MessageContent] = None
    quiet_hours: Optional[QuietHours] = None
    enabled: bool = True


class BusinessTrigger(BaseModel):
    """Binds a STAGE_CHANGE automation to a business event"""
    model_config = ConfigDict(extra="forbid")

    trigger_type: BusinessTriggerType
    source_stage_id: Optional[str] = Field(
        None, description="Only applies while the subject sits in this stage"
    )


class Automation(BaseModel):
    """
    A tenant-owned rule mapping a trigger to an action

    Stored rules are loaded leniently; kind-specific invariants are checked by
    the rule validator so that a half-configured rule is skipped, not fatal.
    """
    model_config = ConfigDict(extra="ignore")

    automation_id: str
    tenant_id: str
    name: str = ""
    kind: AutomationKind
    scope_stage_id: Optional[str] = Field(None, description="None means global (any stage)")
    project_type: str = Field(default="WEDDING")
    channel: DeliveryChannel
    enabled: bool = True

    # COMMUNICATION / COUNTDOWN
    content: Optional[MessageContent] = None
    delay: Optional[DelaySpec] = None
    steps: List[AutomationStep] = Field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None

    # STAGE_CHANGE
    target_stage_id: Optional[str] = None
    business_triggers: List[BusinessTrigger] = Field(default_factory=list)

    # COUNTDOWN
    anchor_event: Optional[AnchorEventType] = None
    days_before: Optional[int] = Field(None, description="Signed; negative means days after")
    stage_condition: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None

    @property
    def is_global(self) -> bool:
        return self.scope_stage_id is None

    def effective_steps(self) -> List[AutomationStep]:
        """Enabled steps in index order; a stepless automation is one implicit step"""
        if self.steps:
            return sorted(
                [step for step in self.steps if step.enabled],
                key=lambda step: step.step_index
            )
        return [
            AutomationStep(
                step_id=f"{self.automation_id}-0",
                step_index=0,
                action=self.channel,
                delay=self.delay or DelaySpec(),
                content=self.content,
                quiet_hours=self.quiet_hours,
            )
        ]

    def trigger_for(self, trigger_type: BusinessTriggerType) -> Optional[BusinessTrigger]:
        for trigger in self.business_triggers:
            if trigger.trigger_type == trigger_type:
                return trigger
        return None


# ============================================================================
# Drip Campaigns
# ============================================================================

class DripCampaignEmail(BaseModel):
    """One email of a nurture sequence"""
    model_config = ConfigDict(extra="ignore")

    email_id: str
    sequence_index: int = Field(..., ge=0)
    subject: str
    html_body: str = ""
    text_body: Optional[str] = None
    day_offset: Optional[int] = Field(None, ge=0)
    week_offset: Optional[int] = Field(None, ge=0)
    approval_status: EmailApprovalStatus = Field(default=EmailApprovalStatus.PENDING)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    @property
    def offset_days(self) -> int:
        if self.day_offset is not None:
            return self.day_offset
        if self.week_offset is not None:
            return self.week_offset * 7
        return 0


class DripCampaign(BaseModel):
    """Multi-email nurture sequence targeting one stage and project type"""
    model_config = ConfigDict(extra="ignore")

    campaign_id: str
    tenant_id: str
    name: str = ""
    target_stage_id: str
    project_type: str = Field(default="WEDDING")
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)
    emails: List[DripCampaignEmail] = Field(default_factory=list)
    max_duration_months: Optional[int] = Field(None, ge=1)
    stop_after_event_date: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None

    def sequence(self) -> List[DripCampaignEmail]:
        """Sendable order: rejected emails drop out of the sequence"""
        return sorted(
            [e for e in self.emails if e.approval_status != EmailApprovalStatus.REJECTED],
            key=lambda e: e.sequence_index
        )

    def find_email(self, email_id: str) -> Optional[DripCampaignEmail]:
        for email in self.emails:
            if email.email_id == email_id:
                return email
        return None


class DripCampaignSubscription(BaseModel):
    """Per-project cursor through a drip campaign"""
    model_config = ConfigDict(extra="ignore")

    subscription_id: str
    tenant_id: str
    campaign_id: str
    subject_id: str
    started_at: datetime
    next_email_index: int = Field(default=0, ge=0)
    next_email_at: Optional[datetime] = None
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)
    pause_reason: Optional[PauseReason] = None
    completed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================================================
# Events
# ============================================================================

class AutomationEvent(BaseModel):
    """Event entering the trigger evaluator"""
    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    subject_id: Optional[str] = Field(None, description="Absent for tenant-wide clock ticks")
    kind: EventKind
    stage_id: Optional[str] = None
    business_event: Optional[BusinessTriggerType] = None
    occurred_at: datetime
    correlation_id: Optional[str] = None


# ============================================================================
# Scheduling & Idempotency
# ============================================================================

class DueItem(BaseModel):
    """Persisted record: this action must fire at or after fire_at"""
    model_config = ConfigDict(extra="ignore")

    due_item_id: str
    tenant_id: str
    rule_id: str
    rule_kind: RuleKind
    subject_id: str
    occurrence_key: str
    step_index: int = 0
    channel: DeliveryChannel
    fire_at: datetime
    status: DueItemStatus = Field(default=DueItemStatus.PENDING)
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return build_idempotency_key(self.rule_id, self.subject_id, self.occurrence_key)


class ExecutionClaim(BaseModel):
    """Atomic reservation of one (rule, subject, occurrence) firing"""
    model_config = ConfigDict(extra="ignore")

    claim_id: str = Field(..., description="Idempotency key")
    tenant_id: str
    rule_id: str
    subject_id: str
    occurrence_key: str
    status: ClaimStatus
    claimed_by: str
    lease_until: datetime
    attempts: int = 1
    created_at: datetime
    updated_at: Optional[datetime] = None


class ExecutionRecord(BaseModel):
    """Audit log entry (append-only)"""
    model_config = ConfigDict(extra="forbid")

    execution_id: str
    tenant_id: str
    rule_id: str
    rule_kind: RuleKind
    subject_id: str
    occurrence_key: str
    idempotency_key: str
    step_index: Optional[int] = None
    channel: DeliveryChannel
    outcome: ExecutionOutcome
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    anomaly: Optional[ExecutionAnomaly] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


# ============================================================================
# Delivery
# ============================================================================

class ResolvedContent(BaseModel):
    """Rendered payload handed to a delivery channel"""
    model_config = ConfigDict(extra="forbid")

    subject: Optional[str] = None
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    target_stage_id: Optional[str] = None
    link: Optional[str] = None


class TransportResult(BaseModel):
    """Result reported by an email/SMS collaborator"""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True


class DeliveryOutcome(BaseModel):
    """Uniform result of a channel delivery"""
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


# ============================================================================
# Engine Results
# ============================================================================

class TimingResolution(BaseModel):
    """When a matched rule should fire"""
    decision: TimingDecision
    fire_at: Optional[datetime] = None
    reason: Optional[str] = None


class DispatchTask(BaseModel):
    """One unit of work planned for a scheduler pass"""
    tenant_id: str
    rule_id: str
    rule_kind: RuleKind
    subject_id: str
    occurrence_key: str
    step_index: int = 0
    channel: DeliveryChannel
    fire_at: datetime
    due_item_id: Optional[str] = None
    subscription_id: Optional[str] = None
    cascade_depth: int = 0

    @property
    def idempotency_key(self) -> str:
        return build_idempotency_key(self.rule_id, self.subject_id, self.occurrence_key)


class DispatchResult(BaseModel):
    """What happened to one dispatch task"""
    idempotency_key: str
    status: DispatchStatus
    rule_id: Optional[str] = None
    subject_id: Optional[str] = None
    execution_id: Optional[str] = None
    error: Optional[str] = None
    anomaly: Optional[ExecutionAnomaly] = None
    target_stage_id: Optional[str] = Field(None, description="Set when a stage change was delivered")


class EvaluationResult(BaseModel):
    """Summary of handling one event"""
    event_kind: EventKind
    subject_id: Optional[str] = None
    matched_rule_ids: List[str] = Field(default_factory=list)
    skipped_rule_ids: List[str] = Field(default_factory=list)
    scheduled_due_item_ids: List[str] = Field(default_factory=list)
    enrolled_subscription_ids: List[str] = Field(default_factory=list)
    dispatched: List[DispatchResult] = Field(default_factory=list)


class PassSummary(BaseModel):
    """Summary of one scheduler pass"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    server_id: Optional[str] = None
    due_items_created: int = 0
    planned: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    results: List[DispatchResult] = Field(default_factory=list)
