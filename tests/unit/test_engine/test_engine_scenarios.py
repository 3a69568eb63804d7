"""End-to-end engine behaviour over the memory store"""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from studioflow.domain.models import AutomationEvent, DispatchTask, ExecutionClaim, TransportResult
from studioflow.domain.enums import (
    AnchorEventType, BusinessTriggerType, ClaimStatus, DeliveryChannel, DispatchStatus, GlobalMatchPolicy,
    DueItemStatus, EmailApprovalStatus, EventKind, ExecutionAnomaly, ExecutionOutcome,
    RuleKind, SubjectStatus, SubscriptionStatus
)
from studioflow.domain.errors import SubjectNotFoundError, ValidationError
from studioflow.engine.dispatcher import drip_occurrence_key
from studioflow.engine.engine import AutomationEngine, communication_occurrence_key
from studioflow.engine.timing_resolver import TimingResolver
from studioflow.services.campaign_service import CampaignService

from tests.factories import (
    NOW, STAGE_BOOKED, STAGE_CONSULT, STAGE_INQUIRY, SUBJECT_ID, TENANT_ID,
    RecordingEmailSender, RecordingSmsSender, email_step, make_campaign, make_communication,
    make_countdown, make_stage_change, make_subject, make_tenant, utc
)


def stage_entered(stage_id=STAGE_INQUIRY, subject_id=SUBJECT_ID, at=NOW):
    return AutomationEvent(
        tenant_id=TENANT_ID,
        subject_id=subject_id,
        kind=EventKind.STAGE_ENTERED,
        stage_id=stage_id,
        occurred_at=at
    )


def business_event(trigger, subject_id=SUBJECT_ID, at=NOW):
    return AutomationEvent(
        tenant_id=TENANT_ID,
        subject_id=subject_id,
        kind=EventKind.BUSINESS_EVENT,
        business_event=trigger,
        occurred_at=at
    )


def audit_rows(repos, subject_id=SUBJECT_ID):
    return repos.audit.list_for_subject(TENANT_ID, subject_id)


class SlowEmailSender(RecordingEmailSender):
    """Keeps each send open long enough for concurrent dispatches to overlap"""

    def send(self, *args, **kwargs):
        time.sleep(0.05)
        return super().send(*args, **kwargs)


class TestStageEntry:
    """Communication automations on stage entry"""

    def test_zero_delay_email_sends_inline_and_audits_once(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_communication())

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == ["auto-welcome"]
        assert [d.status for d in result.dispatched] == [DispatchStatus.DELIVERED]
        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["to_email"] == "ana@example.com"
        assert email_sender.sent[0]["subject"] == "Hi Ana"
        assert email_sender.sent[0]["text_body"] == "Thanks for reaching out, Ana! - Lumen Studio"
        assert email_sender.sent[0]["from_name"] == "Lumen Studio"

        rows = audit_rows(repos)
        assert len(rows) == 1
        assert rows[0].outcome == ExecutionOutcome.SUCCESS
        assert rows[0].timestamp == NOW
        assert rows[0].provider_message_id == "email-1"
        assert rows[0].metadata["subject_name"] == "Ana Diaz"

    def test_delayed_step_is_persisted_then_sent_by_a_pass(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(
            make_communication(steps=[email_step(0), email_step(1, minutes=120)])
        )

        result = engine.handle_event(stage_entered(), now=NOW)

        assert len(email_sender.sent) == 1
        assert len(result.scheduled_due_item_ids) == 1
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert item.fire_at == NOW + timedelta(minutes=120)
        assert item.occurrence_key == communication_occurrence_key(1, NOW)

        early = engine.run_pass(now=NOW + timedelta(minutes=119))
        assert early.planned == 0
        assert len(email_sender.sent) == 1

        summary = engine.run_pass(now=NOW + timedelta(minutes=120))
        assert summary.counts == {"DELIVERED": 1}
        assert len(email_sender.sent) == 2
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert item.status == DueItemStatus.DONE

    def test_reentering_a_stage_is_a_new_occurrence(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_communication())

        engine.handle_event(stage_entered(at=NOW), now=NOW)
        engine.handle_event(stage_entered(at=NOW), now=NOW)
        assert len(email_sender.sent) == 1

        later = NOW + timedelta(days=3)
        engine.handle_event(stage_entered(at=later), now=later)
        assert len(email_sender.sent) == 2

    def test_other_stage_and_project_type_do_not_match(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_communication(scope_stage_id=STAGE_BOOKED))
        repos.automations.create_automation(
            make_communication(automation_id="auto-portrait", project_type="PORTRAIT")
        )

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == []
        assert email_sender.sent == []

    def test_disabled_automation_does_not_match(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_communication(enabled=False))

        engine.handle_event(stage_entered(), now=NOW)

        assert email_sender.sent == []

    def test_invalid_rule_is_skipped_and_others_still_fire(self, engine, repos, subject, email_sender):
        broken = make_communication(automation_id="auto-broken")
        broken.steps[0].content = None
        repos.automations.create_automation(broken)
        repos.automations.create_automation(make_communication())

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.skipped_rule_ids == ["auto-broken"]
        assert result.matched_rule_ids == ["auto-welcome"]
        assert len(email_sender.sent) == 1

    def test_inactive_subject_is_ignored(self, engine, repos, tenant, email_sender):
        repos.subjects.save_subject(make_subject(status=SubjectStatus.ARCHIVED))
        repos.automations.create_automation(make_communication())

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == []
        assert email_sender.sent == []

    def test_unknown_subject_raises(self, engine, repos, tenant):
        with pytest.raises(SubjectNotFoundError):
            engine.handle_event(stage_entered(subject_id="nobody"), now=NOW)

    def test_business_event_without_type_raises(self, engine, subject):
        event = AutomationEvent(
            tenant_id=TENANT_ID, subject_id=SUBJECT_ID, kind=EventKind.BUSINESS_EVENT, occurred_at=NOW
        )
        with pytest.raises(ValidationError):
            engine.handle_event(event, now=NOW)


class TestGlobalMatchPolicy:

    def _seed(self, repos):
        repos.automations.create_automation(make_communication(automation_id="auto-stage"))
        repos.automations.create_automation(
            make_communication(automation_id="auto-global", scope_stage_id=None)
        )

    def test_fire_all_keeps_global_and_stage_specific(self, engine, repos, subject, email_sender):
        self._seed(repos)

        result = engine.handle_event(stage_entered(), now=NOW)

        assert sorted(result.matched_rule_ids) == ["auto-global", "auto-stage"]
        assert len(email_sender.sent) == 2

    def test_tenant_can_prefer_stage_specific(self, engine, repos, tenant, subject, email_sender):
        self._seed(repos)
        repos.tenants.save_tenant(tenant.model_copy(update={"global_match_policy": GlobalMatchPolicy.PREFER_STAGE_SPECIFIC}))

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == ["auto-stage"]
        assert len(email_sender.sent) == 1

    def test_global_fires_alone_when_no_stage_rule_matches(self, engine, repos, tenant, subject, email_sender):
        repos.automations.create_automation(
            make_communication(automation_id="auto-global", scope_stage_id=None)
        )
        repos.tenants.save_tenant(tenant.model_copy(update={"global_match_policy": GlobalMatchPolicy.PREFER_STAGE_SPECIFIC}))

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == ["auto-global"]


class TestCountdown:
    """Countdowns fire on the target day at the tenant send time"""

    @pytest.fixture
    def wedding_subject(self, repos, tenant):
        return repos.subjects.save_subject(
            make_subject(anchor_dates={AnchorEventType.WEDDING_DATE.value: utc(2025, 6, 14)})
        )

    def test_no_due_item_before_the_target_day(self, engine, repos, wedding_subject, email_sender):
        repos.automations.create_automation(make_countdown(days_before=7))

        summary = engine.run_pass(now=utc(2025, 6, 1, 12, 0))

        assert summary.due_items_created == 0
        assert repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID) == []
        assert email_sender.sent == []

    def test_fires_at_send_hour_on_target_day(self, engine, repos, wedding_subject, email_sender):
        repos.automations.create_automation(make_countdown(days_before=7))

        morning = engine.run_pass(now=utc(2025, 6, 7, 8, 0))
        assert morning.due_items_created == 1
        assert morning.planned == 0
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert item.fire_at == utc(2025, 6, 7, 9, 0)
        assert item.occurrence_key == "2025-06-14:7"
        assert item.rule_kind == RuleKind.COUNTDOWN

        engine.run_pass(now=utc(2025, 6, 7, 9, 0))
        engine.run_pass(now=utc(2025, 6, 7, 9, 5))

        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["text_body"] == "See you on June 14, 2025, Ana."

    def test_missed_target_day_is_skipped(self, engine, repos, wedding_subject, email_sender):
        repos.automations.create_automation(make_countdown(days_before=7))

        summary = engine.run_pass(now=utc(2025, 6, 9, 12, 0))

        assert summary.due_items_created == 0
        assert email_sender.sent == []

    def test_rescheduled_event_counts_down_again(self, engine, repos, wedding_subject, email_sender):
        repos.automations.create_automation(make_countdown(days_before=7))
        engine.run_pass(now=utc(2025, 6, 7, 9, 0))

        moved = wedding_subject.model_copy(
            update={"anchor_dates": {AnchorEventType.WEDDING_DATE.value: utc(2025, 9, 20)}}
        )
        repos.subjects.save_subject(moved)
        engine.run_pass(now=utc(2025, 9, 13, 9, 0))

        assert len(email_sender.sent) == 2

    def test_stage_condition_limits_subjects(self, engine, repos, wedding_subject, email_sender):
        repos.automations.create_automation(make_countdown(stage_condition=STAGE_BOOKED))

        summary = engine.run_pass(now=utc(2025, 6, 7, 9, 0))

        assert summary.due_items_created == 0
        assert email_sender.sent == []

    def test_clock_tick_schedules_for_one_tenant(self, engine, repos, wedding_subject):
        repos.automations.create_automation(make_countdown(days_before=7))
        tick = AutomationEvent(tenant_id=TENANT_ID, kind=EventKind.CLOCK_TICK, occurred_at=utc(2025, 6, 7))

        result = engine.handle_event(tick, now=utc(2025, 6, 7, 6, 0))

        assert len(result.scheduled_due_item_ids) == 1

    def test_countdown_day_follows_tenant_timezone(self, engine, repos, email_sender):
        repos.tenants.save_tenant(make_tenant(timezone="America/Los_Angeles"))
        # The evening of June 14 in Los Angeles
        repos.subjects.save_subject(
            make_subject(anchor_dates={AnchorEventType.WEDDING_DATE.value: utc(2025, 6, 15, 1, 0)})
        )
        repos.automations.create_automation(make_countdown(days_before=7))

        created_on = []
        for day in range(5, 10):
            # Local noon
            summary = engine.run_pass(now=utc(2025, 6, day, 19, 0))
            if summary.due_items_created:
                created_on.append(day)

        assert created_on == [7]
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert item.occurrence_key == "2025-06-14:7"
        assert item.fire_at == utc(2025, 6, 7, 16, 0)
        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["text_body"] == "See you on June 14, 2025, Ana."


class TestDripCampaign:

    def test_cursor_advances_by_cumulative_offsets(self, engine, repos, subject, email_sender):
        repos.campaigns.create_campaign(make_campaign(offsets=[0, 9, 23]))
        start = utc(2025, 1, 1, 0, 0)

        result = engine.handle_event(stage_entered(at=start), now=start)
        assert len(result.enrolled_subscription_ids) == 1

        engine.run_pass(now=start)
        subscription = repos.subscriptions.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["subject"] == "Nurture 0 for Ana"
        assert subscription.next_email_index == 1
        assert subscription.next_email_at == utc(2025, 1, 10, 0, 0)

        engine.run_pass(now=utc(2025, 1, 9, 23, 59))
        assert len(email_sender.sent) == 1

        engine.run_pass(now=utc(2025, 1, 10, 0, 0))
        subscription = repos.subscriptions.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert len(email_sender.sent) == 2
        assert subscription.next_email_at == utc(2025, 2, 2, 0, 0)

        engine.run_pass(now=utc(2025, 2, 2, 0, 0))
        subscription = repos.subscriptions.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert len(email_sender.sent) == 3
        assert subscription.status == SubscriptionStatus.COMPLETED
        assert subscription.next_email_at is None

    def test_pending_email_holds_the_cursor_until_approved(self, engine, repos, subject, email_sender):
        repos.campaigns.create_campaign(make_campaign(
            offsets=[0, 2],
            approvals=[EmailApprovalStatus.APPROVED, EmailApprovalStatus.PENDING]
        ))
        engine.handle_event(stage_entered(), now=NOW)
        engine.run_pass(now=NOW)

        held = engine.run_pass(now=NOW + timedelta(days=3))
        assert held.counts.get("HELD") == 1
        assert len(email_sender.sent) == 1

        CampaignService(repos).approve_email(TENANT_ID, "camp-nurture", "camp-nurture-email-1")
        engine.run_pass(now=NOW + timedelta(days=4))
        assert len(email_sender.sent) == 2

    def test_unsubscribed_subject_receives_nothing_more(self, engine, repos, subject, email_sender):
        repos.campaigns.create_campaign(make_campaign(offsets=[0, 1]))
        result = engine.handle_event(stage_entered(), now=NOW)
        engine.run_pass(now=NOW)

        engine.ledger.unsubscribe(TENANT_ID, result.enrolled_subscription_ids[0], NOW)
        engine.run_pass(now=NOW + timedelta(days=2))

        assert len(email_sender.sent) == 1

    def test_subject_without_email_opt_in_is_not_enrolled(self, engine, repos, tenant):
        repos.subjects.save_subject(make_subject(email_opt_in=False))
        repos.campaigns.create_campaign(make_campaign())

        result = engine.handle_event(stage_entered(), now=NOW)

        assert result.matched_rule_ids == ["camp-nurture"]
        assert result.enrolled_subscription_ids == []

    def test_permanent_failure_pauses_the_subscription(self, engine, repos, subject, email_sender):
        repos.campaigns.create_campaign(make_campaign(offsets=[0, 1]))
        engine.handle_event(stage_entered(), now=NOW)
        email_sender.results.append(TransportResult(success=False, error="bounced", retryable=False))

        summary = engine.run_pass(now=NOW)

        assert summary.counts == {"FAILED": 1}
        subscription = repos.subscriptions.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert subscription.status == SubscriptionStatus.PAUSED
        assert subscription.pause_reason.value == "DELIVERY_FAILED"
        assert subscription.next_email_index == 0


class TestStageChange:

    def test_appointment_booked_moves_subject(self, engine, repos, subject):
        repos.automations.create_automation(make_stage_change(target_stage_id=STAGE_CONSULT))

        result = engine.handle_event(business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW)

        assert [d.status for d in result.dispatched] == [DispatchStatus.DELIVERED]
        assert repos.subjects.get_subject(TENANT_ID, SUBJECT_ID).stage_id == STAGE_CONSULT
        rows = audit_rows(repos)
        assert len(rows) == 1
        assert rows[0].channel == DeliveryChannel.STATE_CHANGE
        assert rows[0].metadata["from_stage_id"] == STAGE_INQUIRY
        assert rows[0].metadata["to_stage_id"] == STAGE_CONSULT

    def test_same_business_event_fires_once(self, engine, repos, subject):
        repos.automations.create_automation(make_stage_change())

        engine.handle_event(business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW)
        second = engine.handle_event(
            business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW + timedelta(hours=1)
        )

        assert [d.status for d in second.dispatched] == [DispatchStatus.DUPLICATE]
        assert len(audit_rows(repos)) == 1

    def test_source_stage_constraint(self, engine, repos, subject):
        repos.automations.create_automation(make_stage_change(source_stage_id=STAGE_BOOKED))

        result = engine.handle_event(business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW)

        assert result.matched_rule_ids == []
        assert repos.subjects.get_subject(TENANT_ID, SUBJECT_ID).stage_id == STAGE_INQUIRY

    def test_stage_change_cascades_into_stage_entry_automations(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_stage_change(target_stage_id=STAGE_CONSULT))
        repos.automations.create_automation(
            make_communication(automation_id="auto-consult", scope_stage_id=STAGE_CONSULT)
        )

        result = engine.handle_event(business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW)

        assert "auto-consult" in result.matched_rule_ids
        assert len(email_sender.sent) == 1
        assert len(audit_rows(repos)) == 2

    def test_unknown_target_stage_fails_permanently(self, engine, repos, subject):
        repos.automations.create_automation(make_stage_change(target_stage_id="stage-missing"))

        result = engine.handle_event(business_event(BusinessTriggerType.APPOINTMENT_BOOKED), now=NOW)

        assert [d.status for d in result.dispatched] == [DispatchStatus.FAILED]
        assert audit_rows(repos)[0].outcome == ExecutionOutcome.FAILED


class TestExactlyOnce:

    def _due_task(self, engine, repos):
        repos.automations.create_automation(
            make_communication(steps=[email_step(0, minutes=30)])
        )
        engine.handle_event(stage_entered(), now=NOW)
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        return DispatchTask(
            tenant_id=item.tenant_id,
            rule_id=item.rule_id,
            rule_kind=item.rule_kind,
            subject_id=item.subject_id,
            occurrence_key=item.occurrence_key,
            step_index=item.step_index,
            channel=item.channel,
            fire_at=item.fire_at,
            due_item_id=item.due_item_id
        )

    def _claim_elsewhere(self, repos, task, at, release=None):
        repos.claims.try_claim(ExecutionClaim(
            claim_id=task.idempotency_key,
            tenant_id=TENANT_ID,
            rule_id=task.rule_id,
            subject_id=task.subject_id,
            occurrence_key=task.occurrence_key,
            status=ClaimStatus.IN_PROGRESS,
            claimed_by="other-server",
            lease_until=at + timedelta(minutes=5),
            created_at=at
        ), at)
        if release is not None:
            repos.claims.release(task.idempotency_key, "other-server", release, at)

    def test_same_due_item_dispatched_twice_succeeds_once(self, engine, repos, subject, email_sender):
        task = self._due_task(engine, repos)
        later = NOW + timedelta(minutes=30)

        first = engine.dispatcher.dispatch(task, later)
        second = engine.dispatcher.dispatch(task, later)

        assert first.status == DispatchStatus.DELIVERED
        assert second.status == DispatchStatus.DUPLICATE
        assert len(email_sender.sent) == 1
        successes = [r for r in audit_rows(repos) if r.outcome == ExecutionOutcome.SUCCESS]
        assert len(successes) == 1

    def test_live_claim_on_another_server_blocks_dispatch(self, engine, repos, subject, email_sender):
        task = self._due_task(engine, repos)
        later = NOW + timedelta(minutes=30)
        self._claim_elsewhere(repos, task, later)

        blocked = engine.dispatcher.dispatch(task, later)
        assert blocked.status == DispatchStatus.DUPLICATE
        assert email_sender.sent == []

        # Lease expired: the abandoned claim is taken over
        recovered = engine.dispatcher.dispatch(task, later + timedelta(minutes=6))
        assert recovered.status == DispatchStatus.DELIVERED
        assert len(email_sender.sent) == 1

    def test_second_server_pass_does_not_redeliver(self, engine, repos, subject, email_sender, sms_sender):
        self._due_task(engine, repos)
        other = AutomationEngine(
            repos, email_sender=email_sender, sms_sender=sms_sender, server_id="other-server"
        )
        later = NOW + timedelta(minutes=30)

        engine.run_pass(now=later)
        other.run_pass(now=later)

        assert len(email_sender.sent) == 1

    def test_success_recorded_before_a_crash_closes_the_due_item(self, engine, repos, subject, email_sender):
        task = self._due_task(engine, repos)
        later = NOW + timedelta(minutes=30)
        # Another server delivered and released its claim, then died before closing the item
        engine.dispatcher.audit_writer.write_success(task, later)
        self._claim_elsewhere(repos, task, later, release=ClaimStatus.SUCCEEDED)

        summary = engine.run_pass(now=later + timedelta(minutes=1))

        assert summary.counts == {"DUPLICATE": 1}
        assert email_sender.sent == []
        assert repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0].status == DueItemStatus.DONE
        assert engine.run_pass(now=later + timedelta(minutes=2)).planned == 0

    def test_drip_success_recorded_before_a_crash_advances_the_cursor(self, engine, repos, subject, email_sender):
        campaign = repos.campaigns.create_campaign(make_campaign(offsets=[0, 1]))
        subscription, _ = engine.ledger.enroll(campaign, subject, NOW)
        task = DispatchTask(
            tenant_id=TENANT_ID,
            rule_id=campaign.campaign_id,
            rule_kind=RuleKind.DRIP_CAMPAIGN,
            subject_id=SUBJECT_ID,
            occurrence_key=drip_occurrence_key("camp-nurture-email-0"),
            step_index=0,
            channel=DeliveryChannel.EMAIL,
            fire_at=NOW,
            subscription_id=subscription.subscription_id
        )
        engine.dispatcher.audit_writer.write_success(task, NOW)
        self._claim_elsewhere(repos, task, NOW, release=ClaimStatus.SUCCEEDED)

        summary = engine.run_pass(now=NOW)

        assert summary.counts == {"DUPLICATE": 1}
        assert email_sender.sent == []
        current = repos.subscriptions.get_subscription(TENANT_ID, subscription.subscription_id)
        assert current.next_email_index == 1
        assert current.next_email_at == NOW + timedelta(days=1)

    def test_concurrent_dispatch_of_one_task_delivers_once(self, repos, subject):
        sender = SlowEmailSender()
        engines = [
            AutomationEngine(
                repos, email_sender=sender, sms_sender=RecordingSmsSender(), server_id=f"server-{i}"
            )
            for i in range(8)
        ]
        task = self._due_task(engines[0], repos)
        later = NOW + timedelta(minutes=30)

        with ThreadPoolExecutor(max_workers=len(engines)) as pool:
            results = list(pool.map(lambda e: e.dispatcher.dispatch(task, later), engines))

        assert sorted(r.status.value for r in results) == ["DELIVERED"] + ["DUPLICATE"] * 7
        assert len(sender.sent) == 1
        successes = [r for r in audit_rows(repos) if r.outcome == ExecutionOutcome.SUCCESS]
        assert len(successes) == 1
        assert repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0].status == DueItemStatus.DONE


class TestFailureHandling:

    def test_retryable_failure_is_retried_on_next_pass(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(make_communication())
        email_sender.results.append(TransportResult(success=False, error="503", retryable=True))

        result = engine.handle_event(stage_entered(), now=NOW)

        assert [d.status for d in result.dispatched] == [DispatchStatus.RETRY_SCHEDULED]
        item = repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0]
        assert item.fire_at == NOW
        assert item.status == DueItemStatus.PENDING

        summary = engine.run_pass(now=NOW + timedelta(minutes=1))

        assert summary.counts == {"DELIVERED": 1}
        outcomes = sorted(r.outcome.value for r in audit_rows(repos))
        assert outcomes == ["FAILED", "SUCCESS"]
        assert repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID)[0].status == DueItemStatus.DONE

    def test_permanent_failure_is_not_retried(self, engine, repos, tenant, email_sender):
        repos.subjects.save_subject(make_subject(email=None))
        repos.automations.create_automation(make_communication())

        result = engine.handle_event(stage_entered(), now=NOW)

        assert [d.status for d in result.dispatched] == [DispatchStatus.FAILED]
        assert repos.due_items.list_for_subject(TENANT_ID, SUBJECT_ID) == []
        row = audit_rows(repos)[0]
        assert row.outcome == ExecutionOutcome.FAILED
        assert row.error == "Subject has no email address"
        assert email_sender.sent == []

    def test_rule_disabled_after_scheduling_still_fires_with_anomaly(self, engine, repos, subject, email_sender):
        repos.automations.create_automation(
            make_communication(steps=[email_step(0, minutes=60)])
        )
        engine.handle_event(stage_entered(), now=NOW)
        repos.automations.update_automation(TENANT_ID, "auto-welcome", {"enabled": False})

        engine.run_pass(now=NOW + timedelta(minutes=60))

        assert len(email_sender.sent) == 1
        assert audit_rows(repos)[0].anomaly == ExecutionAnomaly.RULE_DISABLED_AFTER_FIRE


class TestBacklog:
    """Rows that stay due do not crowd out newer work"""

    @pytest.fixture
    def small_batch_engine(self, repos, email_sender, sms_sender, tenant):
        return AutomationEngine(
            repos,
            email_sender=email_sender,
            sms_sender=sms_sender,
            server_id="test-server",
            timing_resolver=TimingResolver(countdown_grace_days=0),
            batch_size=2
        )

    def test_held_subscriptions_do_not_block_later_ones(self, small_batch_engine, repos, email_sender):
        held = repos.campaigns.create_campaign(
            make_campaign("camp-held", offsets=[0], approvals=[EmailApprovalStatus.PENDING])
        )
        ready = repos.campaigns.create_campaign(make_campaign("camp-ready", offsets=[0]))
        for subject_id in ("subj-a", "subj-b"):
            small_batch_engine.ledger.enroll(held, repos.subjects.save_subject(make_subject(subject_id)), NOW)
        small_batch_engine.ledger.enroll(
            ready, repos.subjects.save_subject(make_subject("subj-c")), NOW + timedelta(hours=1)
        )

        for day in range(1, 4):
            summary = small_batch_engine.run_pass(now=NOW + timedelta(days=day))
            assert summary.counts.get("HELD") == 2

        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["subject"] == "Nurture 0 for Ana"

    def test_retrying_items_do_not_block_the_rest(self, small_batch_engine, repos, email_sender):
        subject_ids = ["subj-a", "subj-b", "subj-c"]
        repos.automations.create_automation(make_communication(steps=[email_step(0, minutes=30)]))
        for subject_id in subject_ids:
            repos.subjects.save_subject(make_subject(subject_id))
            small_batch_engine.handle_event(stage_entered(subject_id=subject_id), now=NOW)
        email_sender.results.extend(
            TransportResult(success=False, error="timeout", retryable=True) for _ in subject_ids
        )

        first = small_batch_engine.run_pass(now=NOW + timedelta(minutes=30))

        assert first.counts == {"RETRY_SCHEDULED": 3}
        attempts = [repos.due_items.list_for_subject(TENANT_ID, s)[0].attempts for s in subject_ids]
        assert attempts == [1, 1, 1]

        second = small_batch_engine.run_pass(now=NOW + timedelta(minutes=31))

        assert second.counts == {"DELIVERED": 3}
        assert len(email_sender.sent) == 6
