"""Timing Resolver - Decide when a matched rule fires

All calendar math happens in the tenant's timezone; every instant returned is
UTC. The resolver reads nothing from storage.
"""
from datetime import date, datetime, timedelta
from typing import List, Optional

from ..config.settings import settings
from ..domain.models import (
    Automation, AutomationStep, DripCampaign, DripCampaignEmail, DripCampaignSubscription,
    QuietHours, Subject, Tenant, TimingResolution
)
from ..domain.enums import EmailApprovalStatus, TimingDecision
from ..utils.time import at_local_time, ensure_utc, get_timezone, local_date


def cumulative_offset_days(sequence: List[DripCampaignEmail], index: int) -> int:
    """Days from subscription start to the email at ``index`` (offsets 0..index inclusive)"""
    return sum(email.offset_days for email in sequence[:index + 1])


def drip_send_time(
    started_at: datetime, sequence: List[DripCampaignEmail], index: int
) -> Optional[datetime]:
    """next_email_at for a cursor position; None once the sequence is exhausted"""
    if index >= len(sequence):
        return None
    return ensure_utc(started_at) + timedelta(days=cumulative_offset_days(sequence, index))


class TimingResolver:
    """
    Resolve a TimingResolution per rule kind

    COMMUNICATION   trigger time + delay, optional pin to a local clock time,
                    pushed past quiet hours
    STAGE_CHANGE    always immediate
    COUNTDOWN       anchor date - days_before at the tenant send time
    DRIP            subscription start + cumulative offset, held on PENDING
    """

    def __init__(self, countdown_grace_days: Optional[int] = None):
        self.countdown_grace_days = (
            countdown_grace_days if countdown_grace_days is not None
            else settings.countdown_grace_days
        )

    # =========================================================================
    # COMMUNICATION
    # =========================================================================

    def resolve_step(
        self, step: AutomationStep, trigger_time: datetime, tenant: Tenant
    ) -> TimingResolution:
        """
        Resolve one communication step relative to the trigger time

        Args:
            step: Step whose delay is applied
            trigger_time: When the stage was entered (not when the previous step sent)
            tenant: Supplies the timezone for pins and quiet hours

        Returns:
            IMMEDIATE for a zero delay outside quiet hours, SCHEDULED otherwise
        """
        trigger_time = ensure_utc(trigger_time)
        fire_at = trigger_time + timedelta(minutes=step.delay.total_minutes)

        if step.delay.send_at_hour is not None:
            fire_at = self._pin_to_local_time(
                fire_at, step.delay.send_at_hour, step.delay.send_at_minute, tenant.timezone
            )

        moved = False
        if step.quiet_hours is not None:
            adjusted = self._skip_quiet_hours(fire_at, step.quiet_hours, tenant.timezone)
            moved = adjusted != fire_at
            fire_at = adjusted

        if step.delay.is_immediate and not moved:
            return TimingResolution(decision=TimingDecision.IMMEDIATE, fire_at=trigger_time)
        return TimingResolution(
            decision=TimingDecision.SCHEDULED,
            fire_at=fire_at,
            reason="quiet hours" if moved else None
        )

    def _pin_to_local_time(self, fire_at: datetime, hour: int, minute: int, tz_name: str) -> datetime:
        """Move forward to the next occurrence of hour:minute local time"""
        day = local_date(fire_at, tz_name)
        pinned = at_local_time(day, hour, minute, tz_name)
        if pinned < fire_at:
            pinned = at_local_time(day + timedelta(days=1), hour, minute, tz_name)
        return pinned

    def _skip_quiet_hours(self, fire_at: datetime, quiet: QuietHours, tz_name: str) -> datetime:
        """Push an instant inside the quiet window to the first minute after it"""
        local = fire_at.astimezone(get_timezone(tz_name))
        if not quiet.contains(local.hour):
            return fire_at

        end_day: date = local.date()
        if quiet.start_hour > quiet.end_hour and local.hour >= quiet.start_hour:
            end_day += timedelta(days=1)
        end_hour = quiet.end_hour + 1
        if end_hour == 24:
            end_day += timedelta(days=1)
            end_hour = 0
        return at_local_time(end_day, end_hour, 0, tz_name)

    # =========================================================================
    # STAGE_CHANGE
    # =========================================================================

    def resolve_stage_change(self, trigger_time: datetime) -> TimingResolution:
        return TimingResolution(decision=TimingDecision.IMMEDIATE, fire_at=ensure_utc(trigger_time))

    # =========================================================================
    # COUNTDOWN
    # =========================================================================

    def countdown_target_day(
        self, automation: Automation, subject: Subject, tenant: Tenant
    ) -> Optional[date]:
        """Tenant-local calendar day the countdown fires on, None without an anchor date"""
        if automation.anchor_event is None or automation.days_before is None:
            return None
        anchor = subject.anchor_date(automation.anchor_event)
        if anchor is None:
            return None
        return local_date(anchor, tenant.timezone) - timedelta(days=automation.days_before)

    def resolve_countdown(
        self, automation: Automation, subject: Subject, tenant: Tenant, now: datetime
    ) -> TimingResolution:
        """
        Resolve a countdown for one subject as of ``now``

        HOLD before the target day, SCHEDULED on it (and during the grace
        window), SKIP once it has passed or when there is no anchor date.
        """
        target_day = self.countdown_target_day(automation, subject, tenant)
        if target_day is None:
            return TimingResolution(decision=TimingDecision.SKIP, reason="no anchor date")

        fire_at = at_local_time(target_day, tenant.send_hour, tenant.send_minute, tenant.timezone)
        today = local_date(now, tenant.timezone)

        if today < target_day:
            return TimingResolution(decision=TimingDecision.HOLD, fire_at=fire_at, reason="target day not reached")
        if today > target_day + timedelta(days=self.countdown_grace_days):
            return TimingResolution(decision=TimingDecision.SKIP, fire_at=fire_at, reason="target day passed")
        return TimingResolution(decision=TimingDecision.SCHEDULED, fire_at=fire_at)

    # =========================================================================
    # DRIP
    # =========================================================================

    def resolve_drip(
        self, campaign: DripCampaign, subscription: DripCampaignSubscription
    ) -> TimingResolution:
        """Timing of the email under the subscription cursor"""
        sequence = campaign.sequence()
        index = subscription.next_email_index
        if index >= len(sequence):
            return TimingResolution(decision=TimingDecision.SKIP, reason="sequence exhausted")

        email = sequence[index]
        fire_at = drip_send_time(subscription.started_at, sequence, index)
        if email.approval_status != EmailApprovalStatus.APPROVED:
            return TimingResolution(decision=TimingDecision.HOLD, fire_at=fire_at, reason="email awaiting approval")
        return TimingResolution(decision=TimingDecision.SCHEDULED, fire_at=fire_at)
