"""Rule Validator - Kind-specific invariants for automations and campaigns

Stored rules are loaded leniently; this module decides whether a rule is
usable. The evaluator skips unusable rules, the operator API rejects them.
"""
from typing import List

from ..domain.models import Automation, DripCampaign
from ..domain.enums import AutomationKind, DeliveryChannel
from ..domain.errors import AutomationConfigError

MESSAGE_CHANNELS = (DeliveryChannel.EMAIL, DeliveryChannel.SMS, DeliveryChannel.SMART_FILE)


class RuleValidator:
    """Collect configuration problems; an empty list means the rule is usable"""

    def validate_automation(self, automation: Automation) -> List[str]:
        if automation.kind == AutomationKind.COMMUNICATION:
            return self._validate_communication(automation)
        if automation.kind == AutomationKind.STAGE_CHANGE:
            return self._validate_stage_change(automation)
        if automation.kind == AutomationKind.COUNTDOWN:
            return self._validate_countdown(automation)
        return [f"Unsupported automation kind: {automation.kind}"]

    def _validate_communication(self, automation: Automation) -> List[str]:
        problems: List[str] = []
        steps = automation.effective_steps()
        if not steps:
            problems.append("Automation has no enabled steps")
            return problems

        seen_indexes = set()
        previous_delay = -1
        for step in steps:
            if step.step_index in seen_indexes:
                problems.append(f"Duplicate step index {step.step_index}")
            seen_indexes.add(step.step_index)

            if step.action not in MESSAGE_CHANNELS:
                problems.append(f"Step {step.step_index}: {step.action.value} is not a message channel")
            if step.content is None or step.content.is_empty:
                problems.append(f"Step {step.step_index}: missing message content")

            # Later steps may never be due before earlier ones
            if step.delay.total_minutes < previous_delay:
                problems.append(f"Step {step.step_index}: delay shorter than the previous step")
            previous_delay = step.delay.total_minutes
        return problems

    def _validate_stage_change(self, automation: Automation) -> List[str]:
        problems: List[str] = []
        if automation.channel != DeliveryChannel.STATE_CHANGE:
            problems.append("Stage change automations must use the STATE_CHANGE channel")
        if not automation.target_stage_id:
            problems.append("Missing target stage")
        if not automation.business_triggers:
            problems.append("No business trigger configured")

        trigger_types = [t.trigger_type for t in automation.business_triggers]
        if len(trigger_types) != len(set(trigger_types)):
            problems.append("Business trigger types must be unique")
        return problems

    def _validate_countdown(self, automation: Automation) -> List[str]:
        problems: List[str] = []
        if automation.anchor_event is None:
            problems.append("Missing anchor event type")
        if automation.days_before is None:
            problems.append("Missing days before anchor")
        if automation.channel not in MESSAGE_CHANNELS:
            problems.append(f"{automation.channel.value} is not a message channel")
        if automation.content is None or automation.content.is_empty:
            problems.append("Missing message content")
        return problems

    def validate_campaign(self, campaign: DripCampaign) -> List[str]:
        problems: List[str] = []
        if not campaign.target_stage_id:
            problems.append("Missing target stage")
        if not campaign.emails:
            problems.append("Campaign has no emails")

        indexes = [e.sequence_index for e in campaign.emails]
        if len(indexes) != len(set(indexes)):
            problems.append("Duplicate email sequence index")

        for email in campaign.emails:
            if not email.subject:
                problems.append(f"Email {email.sequence_index}: missing subject")
            if not (email.html_body or email.text_body):
                problems.append(f"Email {email.sequence_index}: missing body")
            if email.day_offset is not None and email.week_offset is not None:
                problems.append(f"Email {email.sequence_index}: set either day or week offset, not both")
        return problems

    def ensure_valid_automation(self, automation: Automation) -> None:
        """Raise AutomationConfigError listing every problem"""
        problems = self.validate_automation(automation)
        if problems:
            raise AutomationConfigError(
                f"Invalid automation '{automation.name}'",
                details={"automation_id": automation.automation_id, "problems": problems}
            )

    def ensure_valid_campaign(self, campaign: DripCampaign) -> None:
        problems = self.validate_campaign(campaign)
        if problems:
            raise AutomationConfigError(
                f"Invalid drip campaign '{campaign.name}'",
                details={"campaign_id": campaign.campaign_id, "problems": problems}
            )
