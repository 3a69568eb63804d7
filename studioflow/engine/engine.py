"""Automation Engine - The brain of the system

Events come in through ``handle_event``; the periodic scheduler calls
``run_pass``. A pass is a pure planning step (``build_dispatch_plan``) over
what the store says is due, followed by one dispatch per planned firing.
No state survives between passes except what is written to the store.
"""
from datetime import datetime
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from ..config.settings import settings
from ..domain.models import (
    AutomationEvent, DispatchResult, DispatchTask, DripCampaignSubscription, DueItem,
    EvaluationResult, PassSummary, Subject, Tenant
)
from ..domain.enums import (
    DeliveryChannel, DispatchStatus, DueItemStatus, EventKind,
    GlobalMatchPolicy, RuleKind, SubjectStatus, SubscriptionStatus, TimingDecision
)
from ..domain.errors import SubjectNotFoundError, ValidationError
from ..repositories import Repositories, get_repositories
from ..services.email_service import EmailSender, SendGridEmailSender
from ..services.sms_service import SmsSender, TwilioSmsSender
from .audit_writer import AuditWriter
from .delivery import ContentResolver, DeliveryRouter, build_delivery_router
from .dispatcher import Dispatcher, drip_occurrence_key
from .subscription_ledger import SubscriptionLedger
from .timing_resolver import TimingResolver
from .trigger_evaluator import TriggerEvaluator
from ..utils.idgen import generate_correlation_id, generate_due_item_id, generate_server_id
from ..utils.logger import get_logger, get_correlation_id, set_correlation_id
from ..utils.time import ensure_utc, format_iso, local_date, utc_now

logger = get_logger(__name__)

T = TypeVar("T")


def communication_occurrence_key(step_index: int, trigger_time: datetime) -> str:
    """One occurrence per step per stage entry"""
    return f"step:{step_index}:entered:{format_iso(trigger_time)}"


def countdown_occurrence_key(anchor_day, days_before: int) -> str:
    """One occurrence per anchor date, so a rescheduled event counts down again"""
    return f"{anchor_day.isoformat()}:{days_before}"


def build_dispatch_plan(
    now: datetime,
    due_items: Sequence[DueItem],
    drip_cursors: Sequence[Tuple[DripCampaignSubscription, str]]
) -> List[DispatchTask]:
    """
    Plan the firings of one pass

    Pure: reads only its arguments. Items not yet due or not pending are
    dropped, duplicates (same idempotency key) collapse to one task, and the
    result is ordered by (fire_at, step_index).

    Args:
        now: Pass time
        due_items: Persisted due items
        drip_cursors: (subscription, email_id under its cursor) pairs

    Returns:
        Ordered dispatch tasks
    """
    now = ensure_utc(now)
    tasks: Dict[str, DispatchTask] = {}

    for item in due_items:
        if item.status != DueItemStatus.PENDING or ensure_utc(item.fire_at) > now:
            continue
        task = DispatchTask(
            tenant_id=item.tenant_id,
            rule_id=item.rule_id,
            rule_kind=item.rule_kind,
            subject_id=item.subject_id,
            occurrence_key=item.occurrence_key,
            step_index=item.step_index,
            channel=item.channel,
            fire_at=ensure_utc(item.fire_at),
            due_item_id=item.due_item_id
        )
        tasks.setdefault(task.idempotency_key, task)

    for subscription, email_id in drip_cursors:
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.next_email_at is None:
            continue
        if ensure_utc(subscription.next_email_at) > now:
            continue
        task = DispatchTask(
            tenant_id=subscription.tenant_id,
            rule_id=subscription.campaign_id,
            rule_kind=RuleKind.DRIP_CAMPAIGN,
            subject_id=subscription.subject_id,
            occurrence_key=drip_occurrence_key(email_id),
            step_index=subscription.next_email_index,
            channel=DeliveryChannel.EMAIL,
            fire_at=ensure_utc(subscription.next_email_at),
            subscription_id=subscription.subscription_id
        )
        tasks.setdefault(task.idempotency_key, task)

    return sorted(tasks.values(), key=lambda t: (t.fire_at, t.step_index, t.idempotency_key))


class AutomationEngine:
    """
    Event handling and scheduler passes

    Flow:
        event -> TriggerEvaluator -> TimingResolver -> inline dispatch | due item
        pass  -> countdown scan + due items + due subscriptions -> plan -> Dispatcher
    """

    def __init__(
        self,
        repos: Repositories,
        router: Optional[DeliveryRouter] = None,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        server_id: Optional[str] = None,
        timing_resolver: Optional[TimingResolver] = None,
        default_policy: Optional[GlobalMatchPolicy] = None,
        max_cascade_depth: Optional[int] = None,
        batch_size: Optional[int] = None
    ):
        self.repos = repos
        self.server_id = server_id or generate_server_id()
        self.timing_resolver = timing_resolver or TimingResolver()
        self.evaluator = TriggerEvaluator(
            repos, timing_resolver=self.timing_resolver, default_policy=default_policy
        )
        self.ledger = SubscriptionLedger(repos, self.timing_resolver)
        self.router = router or build_delivery_router(
            repos.subjects,
            email_sender or SendGridEmailSender(),
            sms_sender or TwilioSmsSender()
        )
        self.dispatcher = Dispatcher(
            repos,
            self.router,
            ContentResolver(repos.tenants),
            self.ledger,
            AuditWriter(repos.audit),
            server_id=self.server_id
        )
        self.max_cascade_depth = (
            max_cascade_depth if max_cascade_depth is not None else settings.max_stage_cascade_depth
        )
        self.batch_size = batch_size or settings.due_item_batch_size

    # =========================================================================
    # Events
    # =========================================================================

    def handle_event(self, event: AutomationEvent, now: Optional[datetime] = None) -> EvaluationResult:
        """
        Evaluate one event

        Zero-delay matches are dispatched before this returns; everything else
        is persisted as due items or subscriptions. Rule failures are isolated
        and reported through the audit log, never raised.

        Raises:
            SubjectNotFoundError: Event names an unknown subject
            ValidationError: Event is missing its stage or business trigger
        """
        now = ensure_utc(now or utc_now())
        correlation_id = event.correlation_id or get_correlation_id() or generate_correlation_id()
        return self._handle(event, now, correlation_id, depth=0)

    def _handle(
        self, event: AutomationEvent, now: datetime, correlation_id: str, depth: int
    ) -> EvaluationResult:
        tenant = self.dispatcher.tenant_for(event.tenant_id)
        result = EvaluationResult(event_kind=event.kind, subject_id=event.subject_id)

        if event.kind == EventKind.CLOCK_TICK:
            created, skipped = self.schedule_countdowns(tenant, now, subject_id=event.subject_id)
            result.scheduled_due_item_ids.extend(created)
            result.skipped_rule_ids.extend(skipped)
            return result

        if not event.subject_id:
            raise ValidationError(f"{event.kind.value} events need a subject")
        subject = self.repos.subjects.get_subject(event.tenant_id, event.subject_id)
        if subject is None:
            raise SubjectNotFoundError(f"Subject {event.subject_id} not found")
        if subject.status != SubjectStatus.ACTIVE:
            logger.info(
                "Ignoring event for inactive subject",
                extra={"tenant_id": event.tenant_id, "subject_id": subject.subject_id}
            )
            return result

        trigger_time = ensure_utc(event.occurred_at)
        if event.kind == EventKind.STAGE_ENTERED:
            stage_id = event.stage_id or subject.stage_id
            if not stage_id:
                raise ValidationError("STAGE_ENTERED events need a stage")
            self._on_stage_entered(tenant, subject, stage_id, trigger_time, now, correlation_id, depth, result)
        elif event.kind == EventKind.BUSINESS_EVENT:
            if event.business_event is None:
                raise ValidationError("BUSINESS_EVENT events need a business event type")
            self._on_business_event(tenant, subject, event, trigger_time, now, correlation_id, depth, result)
        return result

    def _on_stage_entered(
        self,
        tenant: Tenant,
        subject: Subject,
        stage_id: str,
        trigger_time: datetime,
        now: datetime,
        correlation_id: str,
        depth: int,
        result: EvaluationResult
    ) -> None:
        matches = self.evaluator.match_stage_entered(tenant, subject, stage_id)
        result.matched_rule_ids.extend(matches.matched_rule_ids)
        result.skipped_rule_ids.extend(matches.skipped_rule_ids)

        for automation in matches.automations:
            try:
                for step in automation.effective_steps():
                    resolution = self.timing_resolver.resolve_step(step, trigger_time, tenant)
                    task = DispatchTask(
                        tenant_id=tenant.tenant_id,
                        rule_id=automation.automation_id,
                        rule_kind=RuleKind.COMMUNICATION,
                        subject_id=subject.subject_id,
                        occurrence_key=communication_occurrence_key(step.step_index, trigger_time),
                        step_index=step.step_index,
                        channel=step.action,
                        fire_at=resolution.fire_at or trigger_time
                    )
                    if resolution.decision == TimingDecision.IMMEDIATE:
                        self._dispatch(task, now, correlation_id, depth, result)
                    else:
                        item_id = self._persist_due_item(task, now)
                        if item_id:
                            result.scheduled_due_item_ids.append(item_id)
            except Exception as e:
                logger.error(
                    f"Error scheduling automation: {e}",
                    extra={"tenant_id": tenant.tenant_id, "rule_id": automation.automation_id}
                )
                result.skipped_rule_ids.append(automation.automation_id)

        for campaign in matches.campaigns:
            try:
                subscription, created = self.ledger.enroll(campaign, subject, now)
                if subscription is not None and created:
                    result.enrolled_subscription_ids.append(subscription.subscription_id)
            except Exception as e:
                logger.error(
                    f"Error enrolling subject: {e}",
                    extra={"tenant_id": tenant.tenant_id, "campaign_id": campaign.campaign_id}
                )
                result.skipped_rule_ids.append(campaign.campaign_id)

    def _on_business_event(
        self,
        tenant: Tenant,
        subject: Subject,
        event: AutomationEvent,
        trigger_time: datetime,
        now: datetime,
        correlation_id: str,
        depth: int,
        result: EvaluationResult
    ) -> None:
        matches = self.evaluator.match_business_event(tenant, subject, event.business_event)
        result.matched_rule_ids.extend(matches.matched_rule_ids)
        result.skipped_rule_ids.extend(matches.skipped_rule_ids)

        for automation in matches.automations:
            resolution = self.timing_resolver.resolve_stage_change(trigger_time)
            task = DispatchTask(
                tenant_id=tenant.tenant_id,
                rule_id=automation.automation_id,
                rule_kind=RuleKind.STAGE_CHANGE,
                subject_id=subject.subject_id,
                occurrence_key=event.business_event.value,
                channel=DeliveryChannel.STATE_CHANGE,
                fire_at=resolution.fire_at
            )
            self._dispatch(task, now, correlation_id, depth, result)

    # =========================================================================
    # Countdowns
    # =========================================================================

    def schedule_countdowns(
        self, tenant: Tenant, now: datetime, subject_id: Optional[str] = None
    ) -> Tuple[List[str], List[str]]:
        """
        Persist due items for countdowns whose target day is today

        Returns:
            (created due item ids, skipped rule ids)
        """
        created: List[str] = []
        due, skipped = self.evaluator.match_countdowns(tenant, now, subject_id=subject_id)
        for automation, subject, resolution in due:
            try:
                anchor = subject.anchor_date(automation.anchor_event)
                task = DispatchTask(
                    tenant_id=tenant.tenant_id,
                    rule_id=automation.automation_id,
                    rule_kind=RuleKind.COUNTDOWN,
                    subject_id=subject.subject_id,
                    occurrence_key=countdown_occurrence_key(
                        local_date(anchor, tenant.timezone), automation.days_before
                    ),
                    channel=automation.channel,
                    fire_at=resolution.fire_at
                )
                item_id = self._persist_due_item(task, now)
                if item_id:
                    created.append(item_id)
            except Exception as e:
                logger.error(
                    f"Error scheduling countdown: {e}",
                    extra={"tenant_id": tenant.tenant_id, "rule_id": automation.automation_id}
                )
                skipped.append(automation.automation_id)
        return created, skipped

    def _persist_due_item(self, task: DispatchTask, now: datetime) -> Optional[str]:
        item, created = self.repos.due_items.upsert_due_item(DueItem(
            due_item_id=generate_due_item_id(),
            tenant_id=task.tenant_id,
            rule_id=task.rule_id,
            rule_kind=task.rule_kind,
            subject_id=task.subject_id,
            occurrence_key=task.occurrence_key,
            step_index=task.step_index,
            channel=task.channel,
            fire_at=task.fire_at,
            created_at=now,
            updated_at=now
        ))
        return item.due_item_id if created else None

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(
        self,
        task: DispatchTask,
        now: datetime,
        correlation_id: str,
        depth: int,
        result: Optional[EvaluationResult] = None
    ) -> DispatchResult:
        try:
            outcome = self.dispatcher.dispatch(task, now, correlation_id=correlation_id)
        except Exception as e:
            logger.error(
                f"Dispatch error: {e}",
                extra={"tenant_id": task.tenant_id, "rule_id": task.rule_id, "subject_id": task.subject_id}
            )
            outcome = DispatchResult(
                idempotency_key=task.idempotency_key,
                status=DispatchStatus.RETRY_SCHEDULED,
                rule_id=task.rule_id,
                subject_id=task.subject_id,
                error=str(e)
            )

        if result is not None:
            result.dispatched.append(outcome)

        if outcome.status == DispatchStatus.DELIVERED and outcome.target_stage_id:
            self._cascade(task, outcome.target_stage_id, now, correlation_id, depth, result)
        return outcome

    def _cascade(
        self,
        task: DispatchTask,
        stage_id: str,
        now: datetime,
        correlation_id: str,
        depth: int,
        result: Optional[EvaluationResult]
    ) -> None:
        """Evaluate stage-entry automations for a stage the engine just moved a subject to"""
        if depth >= self.max_cascade_depth:
            logger.warning(
                "Stage change cascade depth reached, not evaluating further",
                extra={"tenant_id": task.tenant_id, "subject_id": task.subject_id}
            )
            return

        event = AutomationEvent(
            tenant_id=task.tenant_id,
            subject_id=task.subject_id,
            kind=EventKind.STAGE_ENTERED,
            stage_id=stage_id,
            occurred_at=now,
            correlation_id=correlation_id
        )
        try:
            nested = self._handle(event, now, correlation_id, depth + 1)
        except Exception as e:
            logger.error(
                f"Error evaluating stage change cascade: {e}",
                extra={"tenant_id": task.tenant_id, "subject_id": task.subject_id}
            )
            return

        if result is not None:
            result.matched_rule_ids.extend(nested.matched_rule_ids)
            result.skipped_rule_ids.extend(nested.skipped_rule_ids)
            result.scheduled_due_item_ids.extend(nested.scheduled_due_item_ids)
            result.enrolled_subscription_ids.extend(nested.enrolled_subscription_ids)
            result.dispatched.extend(nested.dispatched)

    # =========================================================================
    # Scheduler pass
    # =========================================================================

    def run_pass(self, now: Optional[datetime] = None) -> PassSummary:
        """
        One scheduler pass

        1. Countdown scan per tenant (due items on the target day only)
        2. Collect persisted due items and due drip subscriptions
        3. Plan with build_dispatch_plan
        4. Dispatch each task; claims make concurrent passes safe
        """
        now = ensure_utc(now or utc_now())
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        summary = PassSummary(started_at=now, server_id=self.server_id)

        for tenant_id in self.repos.tenants.list_tenant_ids():
            try:
                created, _ = self.schedule_countdowns(self.dispatcher.tenant_for(tenant_id), now)
                summary.due_items_created += len(created)
            except Exception as e:
                logger.error(f"Countdown scan failed: {e}", extra={"tenant_id": tenant_id})

        due_items = self._read_all_pages(
            lambda skip: self.repos.due_items.list_due(now, self.batch_size, skip)
        )
        drip_cursors = self._collect_drip_cursors(now, summary)
        plan = build_dispatch_plan(now, due_items, drip_cursors)
        summary.planned = len(plan)

        for task in plan:
            outcome = self._dispatch(task, now, correlation_id, depth=0)
            summary.results.append(outcome)
            self._count(summary, outcome.status)

        summary.finished_at = utc_now()
        logger.info(
            f"Scheduler pass finished: {summary.planned} planned, {summary.counts}",
            extra={"server_id": self.server_id}
        )
        return summary

    def _collect_drip_cursors(
        self, now: datetime, summary: PassSummary
    ) -> List[Tuple[DripCampaignSubscription, str]]:
        cursors: List[Tuple[DripCampaignSubscription, str]] = []
        subscriptions = self._read_all_pages(
            lambda skip: self.repos.subscriptions.list_due_subscriptions(now, self.batch_size, skip)
        )
        for subscription in subscriptions:
            try:
                tenant = self.dispatcher.tenant_for(subscription.tenant_id)
                campaign = self.repos.campaigns.get_campaign(subscription.tenant_id, subscription.campaign_id)
                subject = self.repos.subjects.get_subject(subscription.tenant_id, subscription.subject_id)
                resolution = self.ledger.check_cursor(subscription, campaign, subject, tenant, now)

                if resolution.decision == TimingDecision.SCHEDULED:
                    email = campaign.sequence()[subscription.next_email_index]
                    cursors.append((subscription, email.email_id))
                elif resolution.decision == TimingDecision.HOLD:
                    self._count(summary, DispatchStatus.HELD)
                else:
                    self._count(summary, DispatchStatus.SKIPPED)
            except Exception as e:
                logger.error(
                    f"Error checking subscription: {e}",
                    extra={"subscription_id": subscription.subscription_id}
                )
        return cursors

    def _read_all_pages(self, fetch: Callable[[int], List[T]]) -> List[T]:
        """Every due row, fetched batch_size rows per query"""
        rows: List[T] = []
        while True:
            page = fetch(len(rows))
            rows.extend(page)
            if not page or len(page) < self.batch_size:
                return rows

    @staticmethod
    def _count(summary: PassSummary, status: DispatchStatus) -> None:
        summary.counts[status.value] = summary.counts.get(status.value, 0) + 1


@lru_cache()
def get_engine() -> AutomationEngine:
    """Process-wide engine over the configured repositories"""
    return AutomationEngine(get_repositories())
