"""Tests for the timing resolver"""

from datetime import timedelta

import pytest

from studioflow.domain.models import QuietHours, DripCampaignSubscription
from studioflow.domain.enums import AnchorEventType, EmailApprovalStatus, TimingDecision
from studioflow.engine.timing_resolver import (
    TimingResolver, cumulative_offset_days, drip_send_time
)

from tests.factories import (
    NOW, email_step, make_campaign, make_countdown, make_subject, make_tenant, utc
)


@pytest.fixture
def resolver():
    return TimingResolver(countdown_grace_days=0)


class TestCommunicationSteps:

    def test_zero_delay_is_immediate(self, resolver):
        resolution = resolver.resolve_step(email_step(0), NOW, make_tenant())

        assert resolution.decision == TimingDecision.IMMEDIATE
        assert resolution.fire_at == NOW

    def test_delay_is_measured_from_trigger_time(self, resolver):
        step = email_step(1, minutes=30, hours=2, days=1)

        resolution = resolver.resolve_step(step, NOW, make_tenant())

        assert resolution.decision == TimingDecision.SCHEDULED
        assert resolution.fire_at == NOW + timedelta(days=1, hours=2, minutes=30)

    def test_pin_to_local_clock_time_rolls_to_next_day(self, resolver):
        tenant = make_tenant(timezone="America/New_York")
        step = email_step(0, send_at_hour=9)

        # 20:00 UTC is 15:00 in New York, past 09:00
        resolution = resolver.resolve_step(step, utc(2025, 1, 1, 20, 0), tenant)

        assert resolution.decision == TimingDecision.SCHEDULED
        assert resolution.fire_at == utc(2025, 1, 2, 14, 0)

    def test_pin_later_the_same_day(self, resolver):
        tenant = make_tenant(timezone="America/New_York")
        step = email_step(0, send_at_hour=17, send_at_minute=30)

        resolution = resolver.resolve_step(step, utc(2025, 1, 1, 15, 0), tenant)

        assert resolution.fire_at == utc(2025, 1, 1, 22, 30)

    def test_quiet_hours_across_midnight_push_to_morning(self, resolver):
        step = email_step(0, quiet_hours=QuietHours(start_hour=21, end_hour=7))

        resolution = resolver.resolve_step(step, utc(2025, 1, 1, 23, 15), make_tenant())

        assert resolution.decision == TimingDecision.SCHEDULED
        assert resolution.fire_at == utc(2025, 1, 2, 8, 0)
        assert resolution.reason == "quiet hours"

    def test_quiet_hours_after_midnight_stay_on_same_day(self, resolver):
        step = email_step(0, quiet_hours=QuietHours(start_hour=21, end_hour=7))

        resolution = resolver.resolve_step(step, utc(2025, 1, 2, 3, 0), make_tenant())

        assert resolution.fire_at == utc(2025, 1, 2, 8, 0)

    def test_outside_quiet_hours_stays_immediate(self, resolver):
        step = email_step(0, quiet_hours=QuietHours(start_hour=21, end_hour=7))

        resolution = resolver.resolve_step(step, NOW, make_tenant())

        assert resolution.decision == TimingDecision.IMMEDIATE

    def test_stage_change_is_always_immediate(self, resolver):
        resolution = resolver.resolve_stage_change(NOW)

        assert resolution.decision == TimingDecision.IMMEDIATE
        assert resolution.fire_at == NOW


class TestCountdown:

    @pytest.fixture
    def subject(self):
        return make_subject(anchor_dates={AnchorEventType.WEDDING_DATE.value: utc(2025, 6, 14)})

    @pytest.mark.parametrize("now, decision", [
        (utc(2025, 6, 6, 23, 59), TimingDecision.HOLD),
        (utc(2025, 6, 7, 0, 0), TimingDecision.SCHEDULED),
        (utc(2025, 6, 7, 23, 59), TimingDecision.SCHEDULED),
        (utc(2025, 6, 8, 0, 0), TimingDecision.SKIP),
    ])
    def test_decision_by_day(self, resolver, subject, now, decision):
        resolution = resolver.resolve_countdown(make_countdown(days_before=7), subject, make_tenant(), now)

        assert resolution.decision == decision

    def test_fire_at_uses_tenant_send_time_and_timezone(self, resolver):
        tenant = make_tenant(timezone="America/Los_Angeles", send_hour=9, send_minute=30)
        # Noon on June 14 in Los Angeles
        subject = make_subject(anchor_dates={AnchorEventType.WEDDING_DATE.value: utc(2025, 6, 14, 19, 0)})

        resolution = resolver.resolve_countdown(
            make_countdown(days_before=7), subject, tenant, utc(2025, 6, 7, 18, 0)
        )

        # 09:30 PDT is 16:30 UTC
        assert resolution.fire_at == utc(2025, 6, 7, 16, 30)

    def test_negative_days_before_counts_after_the_event(self, resolver, subject):
        resolution = resolver.resolve_countdown(
            make_countdown(days_before=-3), subject, make_tenant(), utc(2025, 6, 17, 10, 0)
        )

        assert resolution.decision == TimingDecision.SCHEDULED
        assert resolution.fire_at == utc(2025, 6, 17, 9, 0)

    def test_grace_days_extend_the_window(self, subject):
        resolver = TimingResolver(countdown_grace_days=2)

        resolution = resolver.resolve_countdown(
            make_countdown(days_before=7), subject, make_tenant(), utc(2025, 6, 9, 12, 0)
        )

        assert resolution.decision == TimingDecision.SCHEDULED

    def test_missing_anchor_is_skipped(self, resolver):
        resolution = resolver.resolve_countdown(make_countdown(), make_subject(), make_tenant(), NOW)

        assert resolution.decision == TimingDecision.SKIP
        assert resolution.reason == "no anchor date"

    def test_event_date_stands_in_for_wedding_date(self, resolver):
        subject = make_subject(anchor_dates={AnchorEventType.EVENT_DATE.value: utc(2025, 6, 14)})

        target = resolver.countdown_target_day(make_countdown(days_before=7), subject, make_tenant())

        assert target.isoformat() == "2025-06-07"

    def test_anchor_day_is_read_in_tenant_timezone(self, resolver):
        # 01:00 UTC on June 15 is the evening of June 14 in Los Angeles
        subject = make_subject(anchor_dates={AnchorEventType.WEDDING_DATE.value: utc(2025, 6, 15, 1, 0)})
        tenant = make_tenant(timezone="America/Los_Angeles")
        countdown = make_countdown(days_before=7)

        assert resolver.countdown_target_day(countdown, subject, tenant).isoformat() == "2025-06-07"
        assert resolver.countdown_target_day(countdown, subject, make_tenant()).isoformat() == "2025-06-08"

        resolution = resolver.resolve_countdown(countdown, subject, tenant, utc(2025, 6, 7, 19, 0))

        assert resolution.decision == TimingDecision.SCHEDULED
        assert resolution.fire_at == utc(2025, 6, 7, 16, 0)


class TestDrip:

    def test_offsets_are_cumulative(self):
        sequence = make_campaign(offsets=[0, 9, 23]).sequence()

        assert [cumulative_offset_days(sequence, i) for i in range(3)] == [0, 9, 32]

    def test_send_time_none_when_exhausted(self):
        sequence = make_campaign(offsets=[0, 9]).sequence()

        assert drip_send_time(NOW, sequence, 1) == NOW + timedelta(days=9)
        assert drip_send_time(NOW, sequence, 2) is None

    def test_week_offsets(self):
        campaign = make_campaign(offsets=[0, 0])
        campaign.emails[1].day_offset = None
        campaign.emails[1].week_offset = 2

        assert drip_send_time(NOW, campaign.sequence(), 1) == NOW + timedelta(days=14)

    def test_rejected_emails_drop_out_of_the_sequence(self):
        campaign = make_campaign(
            offsets=[0, 5, 7],
            approvals=[EmailApprovalStatus.APPROVED, EmailApprovalStatus.REJECTED, EmailApprovalStatus.APPROVED]
        )

        sequence = campaign.sequence()

        assert [e.sequence_index for e in sequence] == [0, 2]
        assert drip_send_time(NOW, sequence, 1) == NOW + timedelta(days=7)

    def test_pending_email_holds(self, resolver):
        campaign = make_campaign(offsets=[0], approvals=[EmailApprovalStatus.PENDING])
        subscription = DripCampaignSubscription(
            subscription_id="sub-1", tenant_id="tenant-1", campaign_id=campaign.campaign_id,
            subject_id="subj-1", started_at=NOW, next_email_at=NOW
        )

        resolution = resolver.resolve_drip(campaign, subscription)

        assert resolution.decision == TimingDecision.HOLD
        assert resolution.fire_at == NOW

    def test_exhausted_cursor_is_skipped(self, resolver):
        campaign = make_campaign(offsets=[0])
        subscription = DripCampaignSubscription(
            subscription_id="sub-1", tenant_id="tenant-1", campaign_id=campaign.campaign_id,
            subject_id="subj-1", started_at=NOW, next_email_index=1
        )

        assert resolver.resolve_drip(campaign, subscription).decision == TimingDecision.SKIP
