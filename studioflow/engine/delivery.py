"""Delivery Channel Abstraction - Uniform contract over email, SMS and stage changes

Every DeliveryChannel member maps to exactly one handler; the router refuses
to start with a gap. Handlers translate collaborator results and failures into
a DeliveryOutcome so the dispatcher never sees transport details.
"""
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..config.settings import settings
from ..domain.models import (
    DeliveryOutcome, DripCampaignEmail, MessageContent, ResolvedContent, Subject, Tenant
)
from ..domain.enums import AnchorEventType, DeliveryChannel, DeliveryStatus, TemplateChannel
from ..domain.errors import (
    AutomationConfigError, ChannelNotConfiguredError, CrossTenantReferenceError,
    PermanentDeliveryError, TemplateNotFoundError, TransientDeliveryError
)
from ..repositories.base import SubjectRepository, TenantRepository
from ..services.email_service import EmailSender
from ..services.sms_service import SmsSender, normalize_phone
from ..utils.template import render_template
from ..utils.logger import get_logger
from ..utils.time import local_date

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# SMART_FILE messages are emails carrying a link
_TEMPLATE_CHANNEL = {
    DeliveryChannel.EMAIL: TemplateChannel.EMAIL,
    DeliveryChannel.SMART_FILE: TemplateChannel.EMAIL,
    DeliveryChannel.SMS: TemplateChannel.SMS,
}


def subject_metadata(subject: Subject) -> Dict[str, Any]:
    """Subject-identifying info attached to every execution record"""
    return {
        "subject_name": subject.contact.full_name,
        "stage_id": subject.stage_id,
        "project_type": subject.project_type,
    }


# ============================================================================
# Content Resolution
# ============================================================================

def _format_day(value: datetime, tenant: Tenant) -> str:
    return local_date(value, tenant.timezone).strftime("%B %d, %Y")


class ContentResolver:
    """Turn inline content or a template reference into rendered text"""

    def __init__(self, tenants: TenantRepository, public_base_url: Optional[str] = None):
        self.tenants = tenants
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def smart_file_link(self, subject: Subject) -> Optional[str]:
        if not subject.smart_file_token:
            return None
        return f"{self.public_base_url}/smart-file/{subject.smart_file_token}"

    def build_variables(self, tenant: Tenant, subject: Subject) -> Dict[str, Optional[str]]:
        contact = subject.contact
        event_date = subject.anchor_date(AnchorEventType.EVENT_DATE)
        wedding_date = subject.anchor_date(AnchorEventType.WEDDING_DATE)
        return {
            "first_name": contact.first_name,
            "last_name": contact.last_name,
            "full_name": contact.full_name,
            "email": contact.email,
            "phone": contact.phone,
            "business_name": tenant.business_name,
            "event_date": _format_day(event_date, tenant) if event_date else "",
            "wedding_date": _format_day(wedding_date, tenant) if wedding_date else "",
            "smart_file_link": self.smart_file_link(subject) or "",
        }

    def resolve(
        self,
        tenant: Tenant,
        subject: Subject,
        channel: DeliveryChannel,
        content: Optional[MessageContent]
    ) -> ResolvedContent:
        """
        Render message content for a subject

        Raises:
            AutomationConfigError: No content configured
            TemplateNotFoundError: Referenced template does not exist
            CrossTenantReferenceError: Template belongs to another tenant
        """
        if content is None or content.is_empty:
            raise AutomationConfigError("Missing message content")

        subject_line = content.subject
        text_body = content.body
        html_body = content.html_body

        if content.template_id:
            template = self.tenants.get_template(content.template_id)
            if template is None:
                raise TemplateNotFoundError(
                    f"Template {content.template_id} not found",
                    details={"template_id": content.template_id}
                )
            if template.tenant_id != tenant.tenant_id:
                raise CrossTenantReferenceError(
                    "Template belongs to another tenant",
                    details={"template_id": template.template_id}
                )
            expected = _TEMPLATE_CHANNEL.get(channel)
            if expected is not None and template.channel != expected:
                raise AutomationConfigError(
                    f"{template.channel.value} template used on {channel.value} channel",
                    details={"template_id": template.template_id}
                )
            subject_line = template.subject or subject_line
            text_body = template.text_body or text_body
            html_body = template.html_body or html_body

        variables = self.build_variables(tenant, subject)
        return ResolvedContent(
            subject=render_template(subject_line, variables) if subject_line else None,
            text_body=render_template(text_body, variables) if text_body else None,
            html_body=render_template(html_body, variables) if html_body else None,
            link=self.smart_file_link(subject),
        )

    def resolve_drip_email(
        self, tenant: Tenant, subject: Subject, email: DripCampaignEmail
    ) -> ResolvedContent:
        """Drip emails carry their own content"""
        variables = self.build_variables(tenant, subject)
        return ResolvedContent(
            subject=render_template(email.subject, variables),
            html_body=render_template(email.html_body, variables) if email.html_body else None,
            text_body=render_template(email.text_body, variables) if email.text_body else None,
        )


# ============================================================================
# Channel Handlers
# ============================================================================

class ChannelHandler(ABC):
    """One delivery channel; raise DeliveryError subclasses for failures"""

    @abstractmethod
    def deliver(
        self, tenant: Tenant, subject: Subject, content: ResolvedContent, now: datetime
    ) -> DeliveryOutcome: ...


def _outcome_from_transport(result, metadata: Dict[str, Any]) -> DeliveryOutcome:
    if result.success:
        return DeliveryOutcome(
            status=DeliveryStatus.DELIVERED,
            provider_message_id=result.provider_message_id,
            metadata=metadata
        )
    if result.retryable:
        raise TransientDeliveryError(result.error or "Transport failure", details=metadata)
    raise PermanentDeliveryError(result.error or "Transport rejected message", details=metadata)


def _email_recipient(subject: Subject) -> str:
    contact = subject.contact
    if not contact.email:
        raise PermanentDeliveryError("Subject has no email address")
    if not _EMAIL_PATTERN.match(contact.email):
        raise PermanentDeliveryError(f"Invalid email address: {contact.email}")
    if not contact.email_opt_in:
        raise PermanentDeliveryError("Subject has not opted in to email")
    return contact.email


class EmailChannel(ChannelHandler):
    def __init__(self, sender: EmailSender):
        self.sender = sender

    def deliver(self, tenant, subject, content, now):
        recipient = _email_recipient(subject)
        if not content.subject or not (content.html_body or content.text_body):
            raise PermanentDeliveryError("Email needs a subject and a body")

        result = self.sender.send(
            to_email=recipient,
            subject=content.subject,
            html_body=content.html_body,
            text_body=content.text_body,
            from_name=tenant.email_from_name or tenant.business_name,
            reply_to=tenant.reply_to_email
        )
        return _outcome_from_transport(result, {"recipient": recipient})


class SmsChannel(ChannelHandler):
    def __init__(self, sender: SmsSender):
        self.sender = sender

    def deliver(self, tenant, subject, content, now):
        contact = subject.contact
        if not contact.phone:
            raise PermanentDeliveryError("Subject has no phone number")
        number = normalize_phone(contact.phone)
        if number is None:
            raise PermanentDeliveryError(f"Invalid phone number: {contact.phone}")
        if not contact.sms_opt_in:
            raise PermanentDeliveryError("Subject has not opted in to SMS")
        if not content.text_body:
            raise PermanentDeliveryError("SMS needs a text body")

        result = self.sender.send(number, content.text_body)
        return _outcome_from_transport(result, {"recipient": number})


class SmartFileChannel(ChannelHandler):
    """Email the subject a link to their proposal/contract"""

    def __init__(self, sender: EmailSender):
        self.sender = sender

    def deliver(self, tenant, subject, content, now):
        recipient = _email_recipient(subject)
        if not content.link:
            raise PermanentDeliveryError("Subject has no smart file to share")

        text_body = content.text_body or ""
        html_body = content.html_body
        if content.link not in text_body:
            text_body = f"{text_body}\n\n{content.link}".strip()
        if html_body and content.link not in html_body:
            html_body = f'{html_body}<p><a href="{content.link}">{content.link}</a></p>'

        result = self.sender.send(
            to_email=recipient,
            subject=content.subject or f"Documents from {tenant.business_name}",
            html_body=html_body,
            text_body=text_body,
            from_name=tenant.email_from_name or tenant.business_name,
            reply_to=tenant.reply_to_email
        )
        return _outcome_from_transport(result, {"recipient": recipient, "link": content.link})


class StateChangeChannel(ChannelHandler):
    """Move the subject to another pipeline stage"""

    def __init__(self, subjects: SubjectRepository):
        self.subjects = subjects

    def deliver(self, tenant, subject, content, now):
        target = content.target_stage_id
        if not target:
            raise PermanentDeliveryError("No target stage")
        if self.subjects.get_stage(tenant.tenant_id, target) is None:
            raise PermanentDeliveryError(f"Unknown stage {target}")

        self.subjects.update_subject_stage(tenant.tenant_id, subject.subject_id, target, now)
        return DeliveryOutcome(
            status=DeliveryStatus.DELIVERED,
            metadata={"from_stage_id": subject.stage_id, "to_stage_id": target}
        )


# ============================================================================
# Router
# ============================================================================

class DeliveryRouter:
    """Route a delivery to its channel handler"""

    def __init__(self, handlers: Mapping[DeliveryChannel, ChannelHandler]):
        missing = [channel.value for channel in DeliveryChannel if channel not in handlers]
        if missing:
            raise ChannelNotConfiguredError(
                f"No delivery handler for: {', '.join(missing)}",
                details={"missing": missing}
            )
        self._handlers: Dict[DeliveryChannel, ChannelHandler] = dict(handlers)

    def deliver(
        self,
        channel: DeliveryChannel,
        tenant: Tenant,
        subject: Subject,
        content: ResolvedContent,
        now: datetime
    ) -> DeliveryOutcome:
        """
        Deliver and classify the result

        Returns:
            DELIVERED on confirmed acceptance, FAILED for permanent errors,
            RETRYABLE for anything else
        """
        metadata = subject_metadata(subject)
        try:
            outcome = self._handlers[channel].deliver(tenant, subject, content, now)
        except PermanentDeliveryError as e:
            metadata.update(e.details)
            return DeliveryOutcome(status=DeliveryStatus.FAILED, error=e.message, metadata=metadata)
        except TransientDeliveryError as e:
            metadata.update(e.details)
            return DeliveryOutcome(status=DeliveryStatus.RETRYABLE, error=e.message, metadata=metadata)
        except Exception as e:
            logger.error(
                f"Unexpected delivery error: {e}",
                extra={"channel": channel.value, "subject_id": subject.subject_id}
            )
            return DeliveryOutcome(status=DeliveryStatus.RETRYABLE, error=str(e), metadata=metadata)

        metadata.update(outcome.metadata)
        outcome.metadata = metadata
        return outcome


def build_delivery_router(
    subjects: SubjectRepository,
    email_sender: EmailSender,
    sms_sender: SmsSender
) -> DeliveryRouter:
    return DeliveryRouter({
        DeliveryChannel.EMAIL: EmailChannel(email_sender),
        DeliveryChannel.SMS: SmsChannel(sms_sender),
        DeliveryChannel.STATE_CHANGE: StateChangeChannel(subjects),
        DeliveryChannel.SMART_FILE: SmartFileChannel(email_sender),
    })
