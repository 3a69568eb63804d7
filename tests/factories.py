"""Builders for domain objects and recording transports used across tests"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from studioflow.domain.models import (
    Automation, AutomationStep, BusinessTrigger, Contact, DelaySpec, DripCampaign,
    DripCampaignEmail, MessageContent, QuietHours, Subject, Tenant, TransportResult
)
from studioflow.domain.enums import (
    AnchorEventType, AutomationKind, BusinessTriggerType, CampaignStatus,
    DeliveryChannel, EmailApprovalStatus
)
from studioflow.services.email_service import EmailSender
from studioflow.services.sms_service import SmsSender

TENANT_ID = "tenant-1"
SUBJECT_ID = "subj-1"
STAGE_INQUIRY = "stage-inquiry"
STAGE_CONSULT = "stage-consult"
STAGE_BOOKED = "stage-booked"

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# =============================================================================
# Recording transports
# =============================================================================

class RecordingEmailSender(EmailSender):
    """Records every send; queued results are returned first, then success"""

    def __init__(self):
        self.sent: List[Dict] = []
        self.results: List[TransportResult] = []

    def send(self, to_email, subject, html_body, text_body, from_name=None, reply_to=None):
        self.sent.append({
            "to_email": to_email,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "from_name": from_name,
            "reply_to": reply_to,
        })
        if self.results:
            return self.results.pop(0)
        return TransportResult(success=True, provider_message_id=f"email-{len(self.sent)}")


class RecordingSmsSender(SmsSender):
    def __init__(self):
        self.sent: List[Dict] = []
        self.results: List[TransportResult] = []

    def send(self, to_number, body):
        self.sent.append({"to_number": to_number, "body": body})
        if self.results:
            return self.results.pop(0)
        return TransportResult(success=True, provider_message_id=f"sms-{len(self.sent)}")


# =============================================================================
# Tenants and subjects
# =============================================================================

def make_tenant(tenant_id: str = TENANT_ID, **overrides) -> Tenant:
    data = {
        "tenant_id": tenant_id,
        "business_name": "Lumen Studio",
        "timezone": "UTC",
        "send_hour": 9,
        "send_minute": 0,
    }
    data.update(overrides)
    return Tenant(**data)


def make_subject(
    subject_id: str = SUBJECT_ID,
    tenant_id: str = TENANT_ID,
    stage_id: Optional[str] = STAGE_INQUIRY,
    email: Optional[str] = "ana@example.com",
    phone: Optional[str] = "(555) 123-4567",
    anchor_dates: Optional[Dict[str, datetime]] = None,
    **overrides
) -> Subject:
    contact = Contact(
        first_name="Ana",
        last_name="Diaz",
        email=email,
        phone=phone,
        email_opt_in=overrides.pop("email_opt_in", True),
        sms_opt_in=overrides.pop("sms_opt_in", True),
    )
    return Subject(
        subject_id=subject_id,
        tenant_id=tenant_id,
        stage_id=stage_id,
        contact=contact,
        anchor_dates=anchor_dates or {},
        **overrides
    )


# =============================================================================
# Automations
# =============================================================================

def email_step(
    index: int = 0,
    minutes: int = 0,
    action: DeliveryChannel = DeliveryChannel.EMAIL,
    quiet_hours: Optional[QuietHours] = None,
    **delay
) -> AutomationStep:
    return AutomationStep(
        step_id=f"step-{index}",
        step_index=index,
        action=action,
        delay=DelaySpec(minutes=minutes, **delay),
        content=MessageContent(
            subject="Hi {first_name}",
            body="Thanks for reaching out, {{ first_name }}! - {business_name}"
        ),
        quiet_hours=quiet_hours,
    )


def make_communication(
    automation_id: str = "auto-welcome",
    scope_stage_id: Optional[str] = STAGE_INQUIRY,
    steps: Optional[List[AutomationStep]] = None,
    **overrides
) -> Automation:
    data = {
        "automation_id": automation_id,
        "tenant_id": TENANT_ID,
        "name": "Welcome",
        "kind": AutomationKind.COMMUNICATION,
        "scope_stage_id": scope_stage_id,
        "channel": DeliveryChannel.EMAIL,
        "steps": steps if steps is not None else [email_step(0)],
    }
    data.update(overrides)
    return Automation(**data)


def make_stage_change(
    automation_id: str = "auto-book",
    trigger: BusinessTriggerType = BusinessTriggerType.APPOINTMENT_BOOKED,
    target_stage_id: str = STAGE_CONSULT,
    source_stage_id: Optional[str] = None,
    **overrides
) -> Automation:
    data = {
        "automation_id": automation_id,
        "tenant_id": TENANT_ID,
        "name": "Move on booking",
        "kind": AutomationKind.STAGE_CHANGE,
        "channel": DeliveryChannel.STATE_CHANGE,
        "target_stage_id": target_stage_id,
        "business_triggers": [BusinessTrigger(trigger_type=trigger, source_stage_id=source_stage_id)],
    }
    data.update(overrides)
    return Automation(**data)


def make_countdown(
    automation_id: str = "auto-countdown",
    days_before: int = 7,
    anchor_event: AnchorEventType = AnchorEventType.WEDDING_DATE,
    **overrides
) -> Automation:
    data = {
        "automation_id": automation_id,
        "tenant_id": TENANT_ID,
        "name": "One week to go",
        "kind": AutomationKind.COUNTDOWN,
        "channel": DeliveryChannel.EMAIL,
        "anchor_event": anchor_event,
        "days_before": days_before,
        "content": MessageContent(subject="One week to go!", body="See you on {wedding_date}, {first_name}."),
    }
    data.update(overrides)
    return Automation(**data)


# =============================================================================
# Drip campaigns
# =============================================================================

def make_campaign(
    campaign_id: str = "camp-nurture",
    offsets: Optional[List[int]] = None,
    status: CampaignStatus = CampaignStatus.ACTIVE,
    approvals: Optional[List[EmailApprovalStatus]] = None,
    target_stage_id: str = STAGE_INQUIRY,
    **overrides
) -> DripCampaign:
    offsets = offsets if offsets is not None else [0, 9, 23]
    approvals = approvals or [EmailApprovalStatus.APPROVED] * len(offsets)
    emails = [
        DripCampaignEmail(
            email_id=f"{campaign_id}-email-{i}",
            sequence_index=i,
            subject=f"Nurture {i} for {{first_name}}",
            html_body=f"<p>Email {i}</p>",
            day_offset=offset,
            approval_status=approvals[i],
        )
        for i, offset in enumerate(offsets)
    ]
    data = {
        "campaign_id": campaign_id,
        "tenant_id": TENANT_ID,
        "name": "Inquiry nurture",
        "target_stage_id": target_stage_id,
        "status": status,
        "emails": emails,
    }
    data.update(overrides)
    return DripCampaign(**data)
