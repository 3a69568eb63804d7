"""Subscription Ledger - Drip campaign cursors and their state machine

    ACTIVE --send, more left--> ACTIVE (cursor + 1)
    ACTIVE --send, none left--> COMPLETED
    ACTIVE <--pause/resume--> PAUSED (cursor unchanged)
    any --unsubscribe--> UNSUBSCRIBED (terminal)

Every transition is a conditional write, so a stale worker cannot move a
cursor another worker already moved.
"""
from datetime import datetime
from typing import Optional, Tuple

from ..domain.models import (
    DripCampaign, DripCampaignSubscription, Subject, Tenant, TimingResolution
)
from ..domain.enums import (
    AnchorEventType, CampaignStatus, PauseReason, SubscriptionStatus, TimingDecision
)
from ..domain.errors import InvalidStateError, SubscriptionNotFoundError
from ..repositories import Repositories
from .timing_resolver import TimingResolver, drip_send_time
from ..utils.idgen import generate_subscription_id
from ..utils.time import local_date, months_between
from ..utils.logger import get_logger

logger = get_logger(__name__)

LIVE_STATUSES = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, SubscriptionStatus.COMPLETED]


class SubscriptionLedger:
    """Enrolment, cursor movement and operator transitions for subscriptions"""

    def __init__(self, repos: Repositories, timing_resolver: Optional[TimingResolver] = None):
        self.repos = repos
        self.timing_resolver = timing_resolver or TimingResolver()

    # =========================================================================
    # Enrolment
    # =========================================================================

    def enroll(
        self, campaign: DripCampaign, subject: Subject, now: datetime
    ) -> Tuple[Optional[DripCampaignSubscription], bool]:
        """
        Subscribe a subject to an ACTIVE campaign

        Returns:
            (subscription, created). The subscription is None when the subject
            is not eligible; an existing subscription is returned unchanged.
        """
        if campaign.status != CampaignStatus.ACTIVE:
            logger.debug("Campaign not active, no enrolment", extra={"campaign_id": campaign.campaign_id})
            return None, False
        if not subject.contact.email or not subject.contact.email_opt_in:
            logger.info(
                "Subject not enrolled: no email address or no email opt-in",
                extra={"campaign_id": campaign.campaign_id, "subject_id": subject.subject_id}
            )
            return None, False

        sequence = campaign.sequence()
        if not sequence:
            return None, False

        subscription = DripCampaignSubscription(
            subscription_id=generate_subscription_id(),
            tenant_id=campaign.tenant_id,
            campaign_id=campaign.campaign_id,
            subject_id=subject.subject_id,
            started_at=now,
            next_email_index=0,
            next_email_at=drip_send_time(now, sequence, 0),
            status=SubscriptionStatus.ACTIVE,
            updated_at=now
        )
        stored, created = self.repos.subscriptions.create_subscription(subscription)
        if created:
            logger.info(
                "Enrolled subject in drip campaign",
                extra={
                    "tenant_id": campaign.tenant_id,
                    "campaign_id": campaign.campaign_id,
                    "subject_id": subject.subject_id,
                    "subscription_id": stored.subscription_id
                }
            )
        return stored, created

    # =========================================================================
    # Cursor
    # =========================================================================

    def check_cursor(
        self,
        subscription: DripCampaignSubscription,
        campaign: Optional[DripCampaign],
        subject: Optional[Subject],
        tenant: Tenant,
        now: datetime
    ) -> TimingResolution:
        """
        Decide what a due subscription should do on this pass

        Completes the subscription when its campaign ran out, the subject's
        event date passed or the campaign's maximum duration elapsed.
        """
        if campaign is None or campaign.status != CampaignStatus.ACTIVE:
            return TimingResolution(decision=TimingDecision.HOLD, reason="campaign not active")
        if subject is None:
            return TimingResolution(decision=TimingDecision.HOLD, reason="subject not found")

        if campaign.max_duration_months and months_between(subscription.started_at, now) >= campaign.max_duration_months:
            self.complete(subscription, now, "max duration reached")
            return TimingResolution(decision=TimingDecision.SKIP, reason="max duration reached")

        if campaign.stop_after_event_date:
            event_date = subject.anchor_date(AnchorEventType.EVENT_DATE)
            today = local_date(now, tenant.timezone)
            if event_date is not None and local_date(event_date, tenant.timezone) < today:
                self.complete(subscription, now, "event date passed")
                return TimingResolution(decision=TimingDecision.SKIP, reason="event date passed")

        resolution = self.timing_resolver.resolve_drip(campaign, subscription)
        if resolution.decision == TimingDecision.SKIP:
            self.complete(subscription, now, resolution.reason or "sequence exhausted")
        return resolution

    def advance(
        self,
        subscription: DripCampaignSubscription,
        campaign: DripCampaign,
        sent_index: int,
        now: datetime
    ) -> Optional[DripCampaignSubscription]:
        """
        Move the cursor past a successfully sent email

        Returns:
            The updated subscription, or None if the cursor no longer pointed
            at ``sent_index``
        """
        sequence = campaign.sequence()
        next_index = sent_index + 1
        updated = self.repos.subscriptions.advance_cursor(
            subscription.subscription_id,
            expected_index=sent_index,
            next_index=next_index,
            next_email_at=drip_send_time(subscription.started_at, sequence, next_index),
            now=now
        )
        if updated is None:
            return None

        if next_index >= len(sequence):
            completed = self.complete(updated, now, "sequence exhausted")
            return completed or updated
        return updated

    def complete(
        self, subscription: DripCampaignSubscription, now: datetime, reason: str
    ) -> Optional[DripCampaignSubscription]:
        completed = self.repos.subscriptions.transition_status(
            subscription.subscription_id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.COMPLETED,
            now,
            updates={"completed_at": now, "next_email_at": None}
        )
        if completed:
            logger.info(
                f"Drip subscription completed: {reason}",
                extra={
                    "subscription_id": subscription.subscription_id,
                    "campaign_id": subscription.campaign_id,
                    "subject_id": subscription.subject_id
                }
            )
        return completed

    def pause_for_failure(
        self, subscription: DripCampaignSubscription, now: datetime
    ) -> Optional[DripCampaignSubscription]:
        return self.repos.subscriptions.transition_status(
            subscription.subscription_id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.PAUSED,
            now,
            updates={"pause_reason": PauseReason.DELIVERY_FAILED}
        )

    # =========================================================================
    # Operator transitions
    # =========================================================================

    def _get(self, tenant_id: str, subscription_id: str) -> DripCampaignSubscription:
        subscription = self.repos.subscriptions.get_subscription(tenant_id, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def pause(self, tenant_id: str, subscription_id: str, now: datetime) -> DripCampaignSubscription:
        current = self._get(tenant_id, subscription_id)
        paused = self.repos.subscriptions.transition_status(
            subscription_id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.PAUSED,
            now,
            updates={"pause_reason": PauseReason.OPERATOR}
        )
        if paused is None:
            raise InvalidStateError(
                f"Cannot pause a {current.status.value} subscription",
                details={"subscription_id": subscription_id}
            )
        logger.info("Subscription paused", extra={"tenant_id": tenant_id, "subscription_id": subscription_id})
        return paused

    def resume(self, tenant_id: str, subscription_id: str, now: datetime) -> DripCampaignSubscription:
        """Resume with the cursor where it was; an overdue email sends on the next pass"""
        current = self._get(tenant_id, subscription_id)
        resumed = self.repos.subscriptions.transition_status(
            subscription_id,
            [SubscriptionStatus.PAUSED],
            SubscriptionStatus.ACTIVE,
            now,
            updates={"pause_reason": None}
        )
        if resumed is None:
            raise InvalidStateError(
                f"Cannot resume a {current.status.value} subscription",
                details={"subscription_id": subscription_id}
            )
        logger.info("Subscription resumed", extra={"tenant_id": tenant_id, "subscription_id": subscription_id})
        return resumed

    def unsubscribe(self, tenant_id: str, subscription_id: str, now: datetime) -> DripCampaignSubscription:
        current = self._get(tenant_id, subscription_id)
        unsubscribed = self.repos.subscriptions.transition_status(
            subscription_id,
            LIVE_STATUSES,
            SubscriptionStatus.UNSUBSCRIBED,
            now,
            updates={"unsubscribed_at": now, "next_email_at": None}
        )
        if unsubscribed is None:
            raise InvalidStateError(
                f"Subscription already {current.status.value}",
                details={"subscription_id": subscription_id}
            )
        logger.info("Subscription unsubscribed", extra={"tenant_id": tenant_id, "subscription_id": subscription_id})
        return unsubscribed
