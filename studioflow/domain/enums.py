"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class AutomationKind(str, Enum):
    """What an automation does when it fires"""
    COMMUNICATION = "COMMUNICATION"
    STAGE_CHANGE = "STAGE_CHANGE"
    COUNTDOWN = "COUNTDOWN"


class DeliveryChannel(str, Enum):
    """Closed set of actions a rule can perform"""
    EMAIL = "EMAIL"
    SMS = "SMS"
    STATE_CHANGE = "STATE_CHANGE"  # Pipeline stage mutation
    SMART_FILE = "SMART_FILE"  # Proposal/contract link sent by email


class TemplateChannel(str, Enum):
    """Channel a reusable message template is written for"""
    EMAIL = "EMAIL"
    SMS = "SMS"


class EventKind(str, Enum):
    """Kinds of events entering the trigger evaluator"""
    STAGE_ENTERED = "STAGE_ENTERED"
    BUSINESS_EVENT = "BUSINESS_EVENT"
    CLOCK_TICK = "CLOCK_TICK"


class BusinessTriggerType(str, Enum):
    """Non-stage business events a STAGE_CHANGE automation can listen to"""
    DEPOSIT_PAID = "DEPOSIT_PAID"
    FULL_PAYMENT_MADE = "FULL_PAYMENT_MADE"
    PROJECT_BOOKED = "PROJECT_BOOKED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    ESTIMATE_ACCEPTED = "ESTIMATE_ACCEPTED"
    EVENT_DATE_REACHED = "EVENT_DATE_REACHED"
    PROJECT_DELIVERED = "PROJECT_DELIVERED"
    CLIENT_ONBOARDED = "CLIENT_ONBOARDED"
    APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
    GALLERY_SHARED = "GALLERY_SHARED"


class AnchorEventType(str, Enum):
    """Subject date fields countdown automations measure from"""
    EVENT_DATE = "EVENT_DATE"
    WEDDING_DATE = "WEDDING_DATE"
    SESSION_DATE = "SESSION_DATE"
    DELIVERY_DATE = "DELIVERY_DATE"


class GlobalMatchPolicy(str, Enum):
    """How global and stage-specific automations combine on stage entry"""
    FIRE_ALL = "FIRE_ALL"  # Observed behaviour: both fire
    PREFER_STAGE_SPECIFIC = "PREFER_STAGE_SPECIFIC"  # Globals dropped when a stage rule matched


class CampaignStatus(str, Enum):
    """Drip campaign lifecycle"""
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class EmailApprovalStatus(str, Enum):
    """Per-email approval inside a drip campaign"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SubscriptionStatus(str, Enum):
    """Drip subscription cursor state"""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class PauseReason(str, Enum):
    """Why a subscription is paused"""
    OPERATOR = "OPERATOR"
    DELIVERY_FAILED = "DELIVERY_FAILED"


class SubjectStatus(str, Enum):
    """Project lifecycle as seen by the engine"""
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class DueItemStatus(str, Enum):
    """Persisted due-item state"""
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class ClaimStatus(str, Enum):
    """Idempotency claim state"""
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ExecutionOutcome(str, Enum):
    """Outcome written to the audit log"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ExecutionAnomaly(str, Enum):
    """Noteworthy but non-fatal conditions recorded with an execution"""
    RULE_DISABLED_AFTER_FIRE = "RULE_DISABLED_AFTER_FIRE"
    SUBSCRIPTION_CHANGED_AFTER_FIRE = "SUBSCRIPTION_CHANGED_AFTER_FIRE"
    DUPLICATE_SUCCESS = "DUPLICATE_SUCCESS"


class DeliveryStatus(str, Enum):
    """Uniform delivery contract"""
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"  # Permanent
    RETRYABLE = "RETRYABLE"


class TimingDecision(str, Enum):
    """Result class of the timing resolver"""
    IMMEDIATE = "IMMEDIATE"
    SCHEDULED = "SCHEDULED"
    HOLD = "HOLD"
    SKIP = "SKIP"


class RuleKind(str, Enum):
    """Kind of rule an execution or due item belongs to"""
    COMMUNICATION = "COMMUNICATION"
    STAGE_CHANGE = "STAGE_CHANGE"
    COUNTDOWN = "COUNTDOWN"
    DRIP_CAMPAIGN = "DRIP_CAMPAIGN"


class DispatchStatus(str, Enum):
    """What happened to one due item during a dispatch attempt"""
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"  # Permanent, not retried
    RETRY_SCHEDULED = "RETRY_SCHEDULED"  # Still due on the next pass
    DUPLICATE = "DUPLICATE"  # Claimed or completed elsewhere
    SKIPPED = "SKIPPED"
    HELD = "HELD"  # Drip cursor waiting for approval
