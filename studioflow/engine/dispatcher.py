"""Dispatcher - Exactly-once attempt of one planned firing

    claim -> prepare -> deliver -> record -> advance

The claim is an atomic conditional insert keyed by (rule, subject,
occurrence); losing it means another worker owns or finished the firing and
the task is dropped silently. Nothing is advanced without a recorded success.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..config.settings import settings
from ..domain.models import (
    Automation, DispatchResult, DispatchTask, DripCampaign, DripCampaignSubscription,
    DueItem, ExecutionClaim, ResolvedContent, Subject, Tenant, DeliveryOutcome
)
from ..domain.enums import (
    AutomationKind, ClaimStatus, DeliveryStatus, DispatchStatus, EmailApprovalStatus,
    ExecutionAnomaly, RuleKind, SubscriptionStatus
)
from ..domain.errors import (
    AutomationConfigError, AutomationNotFoundError, CampaignNotFoundError, DomainError,
    SubjectNotFoundError, SubscriptionNotFoundError
)
from ..repositories import Repositories
from .audit_writer import AuditWriter
from .delivery import ContentResolver, DeliveryRouter, subject_metadata
from .subscription_ledger import SubscriptionLedger
from ..utils.idgen import generate_due_item_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


def drip_occurrence_key(email_id: str) -> str:
    return f"email:{email_id}"


class _SkipDispatch(Exception):
    """The firing is no longer applicable (cursor moved, subscription stopped)"""


class DispatchContext:
    """Everything loaded for one delivery"""

    def __init__(self, tenant: Tenant, subject: Subject, content: ResolvedContent):
        self.tenant = tenant
        self.subject = subject
        self.content = content
        self.automation: Optional[Automation] = None
        self.campaign: Optional[DripCampaign] = None
        self.subscription: Optional[DripCampaignSubscription] = None


class Dispatcher:
    """Claim, deliver and record one DispatchTask"""

    def __init__(
        self,
        repos: Repositories,
        router: DeliveryRouter,
        content_resolver: ContentResolver,
        ledger: SubscriptionLedger,
        audit_writer: AuditWriter,
        server_id: str,
        lease_seconds: Optional[int] = None
    ):
        self.repos = repos
        self.router = router
        self.content_resolver = content_resolver
        self.ledger = ledger
        self.audit_writer = audit_writer
        self.server_id = server_id
        self.lease_seconds = lease_seconds or settings.claim_lease_seconds

    def tenant_for(self, tenant_id: str) -> Tenant:
        """Stored tenant settings, or deployment defaults"""
        tenant = self.repos.tenants.get_tenant(tenant_id)
        if tenant is not None:
            return tenant
        return Tenant(
            tenant_id=tenant_id,
            timezone=settings.default_timezone,
            send_hour=settings.default_send_hour,
            send_minute=settings.default_send_minute
        )

    def dispatch(
        self, task: DispatchTask, now: datetime, correlation_id: Optional[str] = None
    ) -> DispatchResult:
        """
        Attempt one firing exactly once

        Args:
            task: Planned firing
            now: Pass time; used for leases, audit timestamps and cursor moves
            correlation_id: Trace id carried into the audit record

        Returns:
            DispatchResult describing what happened
        """
        key = task.idempotency_key
        log_extra = {
            "tenant_id": task.tenant_id,
            "rule_id": task.rule_id,
            "subject_id": task.subject_id,
            "occurrence_key": task.occurrence_key,
            "channel": task.channel.value,
        }

        claim = ExecutionClaim(
            claim_id=key,
            tenant_id=task.tenant_id,
            rule_id=task.rule_id,
            subject_id=task.subject_id,
            occurrence_key=task.occurrence_key,
            status=ClaimStatus.IN_PROGRESS,
            claimed_by=self.server_id,
            lease_until=now + timedelta(seconds=self.lease_seconds),
            created_at=now,
            updated_at=now
        )
        if not self.repos.claims.try_claim(claim, now):
            if self.repos.audit.has_success(key):
                self._settle_recorded_success(task, now)
            logger.debug("Execution already claimed, skipping", extra=log_extra)
            return self._result(task, DispatchStatus.DUPLICATE)

        # Replay protection for a claim released after a recorded success
        if self.repos.audit.has_success(key):
            self.repos.claims.release(key, self.server_id, ClaimStatus.SUCCEEDED, now)
            self._settle_recorded_success(task, now)
            logger.debug("Execution already succeeded, skipping", extra=log_extra)
            return self._result(task, DispatchStatus.DUPLICATE)

        try:
            context = self._prepare(task)
        except _SkipDispatch as e:
            self.repos.claims.release(key, self.server_id, ClaimStatus.FAILED, now)
            record = self.audit_writer.write_skipped(task, now, str(e), correlation_id=correlation_id)
            logger.info(f"Dispatch skipped: {e}", extra=log_extra)
            return self._result(task, DispatchStatus.SKIPPED, record=record, error=str(e))
        except DomainError as e:
            return self._fail_permanently(task, None, e.message, {}, now, correlation_id)
        except Exception as e:
            logger.error(f"Error preparing dispatch: {e}", extra=log_extra)
            return self._fail_retryable(task, str(e), {}, now, correlation_id)

        outcome = self.router.deliver(task.channel, context.tenant, context.subject, context.content, now)

        if outcome.status == DeliveryStatus.DELIVERED:
            return self._succeed(task, context, outcome, now, correlation_id)
        if outcome.status == DeliveryStatus.RETRYABLE:
            return self._fail_retryable(task, outcome.error or "Retryable failure", outcome.metadata, now, correlation_id)
        return self._fail_permanently(
            task, context, outcome.error or "Delivery failed", outcome.metadata, now, correlation_id
        )

    # =========================================================================
    # Preparation
    # =========================================================================

    def _prepare(self, task: DispatchTask) -> DispatchContext:
        tenant = self.tenant_for(task.tenant_id)
        subject = self.repos.subjects.get_subject(task.tenant_id, task.subject_id)
        if subject is None:
            raise SubjectNotFoundError(f"Subject {task.subject_id} not found")

        if task.rule_kind == RuleKind.DRIP_CAMPAIGN:
            return self._prepare_drip(task, tenant, subject)

        automation = self.repos.automations.get_automation(task.tenant_id, task.rule_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {task.rule_id} not found")

        if automation.kind == AutomationKind.STAGE_CHANGE:
            content = ResolvedContent(target_stage_id=automation.target_stage_id)
        elif automation.kind == AutomationKind.COUNTDOWN:
            content = self.content_resolver.resolve(tenant, subject, task.channel, automation.content)
        else:
            step = next(
                (s for s in automation.effective_steps() if s.step_index == task.step_index), None
            )
            if step is None:
                raise AutomationConfigError(f"Step {task.step_index} no longer exists")
            content = self.content_resolver.resolve(tenant, subject, task.channel, step.content)

        context = DispatchContext(tenant, subject, content)
        context.automation = automation
        return context

    def _prepare_drip(self, task: DispatchTask, tenant: Tenant, subject: Subject) -> DispatchContext:
        campaign = self.repos.campaigns.get_campaign(task.tenant_id, task.rule_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {task.rule_id} not found")
        subscription = (
            self.repos.subscriptions.get_subscription(task.tenant_id, task.subscription_id)
            if task.subscription_id else None
        )
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {task.subscription_id} not found")
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise _SkipDispatch(f"subscription is {subscription.status.value}")

        sequence = campaign.sequence()
        index = subscription.next_email_index
        if index != task.step_index or index >= len(sequence):
            raise _SkipDispatch("cursor moved")
        email = sequence[index]
        if drip_occurrence_key(email.email_id) != task.occurrence_key:
            raise _SkipDispatch("cursor moved")
        if email.approval_status != EmailApprovalStatus.APPROVED:
            raise _SkipDispatch("email awaiting approval")

        context = DispatchContext(tenant, subject, self.content_resolver.resolve_drip_email(tenant, subject, email))
        context.campaign = campaign
        context.subscription = subscription
        return context

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _succeed(
        self,
        task: DispatchTask,
        context: DispatchContext,
        outcome: DeliveryOutcome,
        now: datetime,
        correlation_id: Optional[str]
    ) -> DispatchResult:
        anomaly = self._anomaly_after_fire(task, context)
        record = self.audit_writer.write_success(
            task,
            now,
            provider_message_id=outcome.provider_message_id,
            anomaly=anomaly,
            metadata=outcome.metadata,
            correlation_id=correlation_id
        )
        self.repos.claims.release(task.idempotency_key, self.server_id, ClaimStatus.SUCCEEDED, now)

        if context.subscription is not None and context.campaign is not None:
            self.ledger.advance(context.subscription, context.campaign, task.step_index, now)
        elif task.due_item_id:
            self.repos.due_items.mark_done(task.due_item_id, now)

        logger.info(
            f"Delivered {task.channel.value}",
            extra={
                "tenant_id": task.tenant_id,
                "rule_id": task.rule_id,
                "subject_id": task.subject_id,
                "occurrence_key": task.occurrence_key,
                "outcome": "SUCCESS"
            }
        )

        if record is None:
            return self._result(
                task, DispatchStatus.DUPLICATE, anomaly=ExecutionAnomaly.DUPLICATE_SUCCESS
            )
        return self._result(
            task,
            DispatchStatus.DELIVERED,
            record=record,
            anomaly=anomaly,
            target_stage_id=context.content.target_stage_id
        )

    def _settle_recorded_success(self, task: DispatchTask, now: datetime) -> None:
        """Finish the bookkeeping of a firing whose success is already in the audit log"""
        if task.due_item_id:
            self.repos.due_items.mark_done(task.due_item_id, now)
        if task.rule_kind != RuleKind.DRIP_CAMPAIGN or not task.subscription_id:
            return
        subscription = self.repos.subscriptions.get_subscription(task.tenant_id, task.subscription_id)
        campaign = self.repos.campaigns.get_campaign(task.tenant_id, task.rule_id)
        if subscription is None or campaign is None:
            return
        if subscription.status == SubscriptionStatus.ACTIVE and subscription.next_email_index == task.step_index:
            self.ledger.advance(subscription, campaign, task.step_index, now)

    def _anomaly_after_fire(self, task: DispatchTask, context: DispatchContext) -> Optional[ExecutionAnomaly]:
        """Detect a disable/pause that landed while the firing was in flight"""
        if context.subscription is not None:
            current = self.repos.subscriptions.get_subscription(
                task.tenant_id, context.subscription.subscription_id
            )
            if (current is None
                    or current.status != SubscriptionStatus.ACTIVE
                    or current.next_email_index != context.subscription.next_email_index):
                return ExecutionAnomaly.SUBSCRIPTION_CHANGED_AFTER_FIRE
            return None

        current_rule = self.repos.automations.get_automation(task.tenant_id, task.rule_id)
        if current_rule is None or not current_rule.enabled:
            return ExecutionAnomaly.RULE_DISABLED_AFTER_FIRE
        return None

    def _fail_retryable(
        self,
        task: DispatchTask,
        error: str,
        metadata: Dict[str, Any],
        now: datetime,
        correlation_id: Optional[str]
    ) -> DispatchResult:
        """Record the attempt; the firing stays due for the next pass"""
        self.repos.claims.release(task.idempotency_key, self.server_id, ClaimStatus.FAILED, now)
        record = self.audit_writer.write_failure(
            task, now, error, metadata=metadata, correlation_id=correlation_id
        )

        if task.due_item_id:
            self.repos.due_items.record_failure(task.due_item_id, error, permanent=False, now=now)
        elif task.rule_kind != RuleKind.DRIP_CAMPAIGN:
            # Inline firings have no due item yet; persist one so the next pass retries
            self.repos.due_items.upsert_due_item(DueItem(
                due_item_id=generate_due_item_id(),
                tenant_id=task.tenant_id,
                rule_id=task.rule_id,
                rule_kind=task.rule_kind,
                subject_id=task.subject_id,
                occurrence_key=task.occurrence_key,
                step_index=task.step_index,
                channel=task.channel,
                fire_at=now,
                attempts=1,
                last_error=error,
                created_at=now,
                updated_at=now
            ))

        logger.warning(
            f"Delivery failed, will retry: {error}",
            extra={
                "tenant_id": task.tenant_id,
                "rule_id": task.rule_id,
                "subject_id": task.subject_id,
                "occurrence_key": task.occurrence_key
            }
        )
        return self._result(task, DispatchStatus.RETRY_SCHEDULED, record=record, error=error)

    def _fail_permanently(
        self,
        task: DispatchTask,
        context: Optional[DispatchContext],
        error: str,
        metadata: Dict[str, Any],
        now: datetime,
        correlation_id: Optional[str]
    ) -> DispatchResult:
        """Record the failure and take the firing out of the due set"""
        self.repos.claims.release(task.idempotency_key, self.server_id, ClaimStatus.FAILED, now)
        if not metadata and context is not None:
            metadata = subject_metadata(context.subject)
        record = self.audit_writer.write_failure(
            task, now, error, metadata=metadata, correlation_id=correlation_id
        )

        if task.due_item_id:
            self.repos.due_items.record_failure(task.due_item_id, error, permanent=True, now=now)

        if task.rule_kind == RuleKind.DRIP_CAMPAIGN and task.subscription_id:
            subscription = (
                context.subscription if context is not None and context.subscription is not None
                else self.repos.subscriptions.get_subscription(task.tenant_id, task.subscription_id)
            )
            if subscription is not None:
                self.ledger.pause_for_failure(subscription, now)

        logger.warning(
            f"Delivery failed permanently: {error}",
            extra={
                "tenant_id": task.tenant_id,
                "rule_id": task.rule_id,
                "subject_id": task.subject_id,
                "occurrence_key": task.occurrence_key
            }
        )
        return self._result(task, DispatchStatus.FAILED, record=record, error=error)

    def _result(self, task: DispatchTask, status: DispatchStatus, record=None, **kwargs) -> DispatchResult:
        return DispatchResult(
            idempotency_key=task.idempotency_key,
            status=status,
            rule_id=task.rule_id,
            subject_id=task.subject_id,
            execution_id=record.execution_id if record is not None else None,
            **kwargs
        )
