"""Trigger Evaluator - Match events against the rule store

Matching never raises for a bad rule: invalid or failing rules are logged and
reported as skipped so the remaining rules are still evaluated.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from ..config.settings import settings
from ..domain.models import (
    Automation, DripCampaign, Subject, Tenant, TimingResolution
)
from ..domain.enums import (
    AutomationKind, BusinessTriggerType, CampaignStatus, GlobalMatchPolicy, TimingDecision
)
from ..repositories import Repositories
from .rule_validator import RuleValidator
from .timing_resolver import TimingResolver
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TriggerMatches:
    """Rules matched by one event"""

    def __init__(self):
        self.automations: List[Automation] = []
        self.campaigns: List[DripCampaign] = []
        self.skipped_rule_ids: List[str] = []

    @property
    def matched_rule_ids(self) -> List[str]:
        return [a.automation_id for a in self.automations] + [c.campaign_id for c in self.campaigns]


class TriggerEvaluator:
    """
    Match events to automations and campaigns

    STAGE_ENTERED   COMMUNICATION automations scoped to the stage or global,
                    plus ACTIVE drip campaigns targeting the stage
    BUSINESS_EVENT  STAGE_CHANGE automations listening to the trigger type
    CLOCK_TICK      COUNTDOWN automations whose target day is today
    """

    def __init__(
        self,
        repos: Repositories,
        timing_resolver: Optional[TimingResolver] = None,
        validator: Optional[RuleValidator] = None,
        default_policy: Optional[GlobalMatchPolicy] = None
    ):
        self.repos = repos
        self.timing_resolver = timing_resolver or TimingResolver()
        self.validator = validator or RuleValidator()
        self.default_policy = default_policy or GlobalMatchPolicy(settings.global_match_policy)

    def policy_for(self, tenant: Tenant) -> GlobalMatchPolicy:
        return tenant.global_match_policy or self.default_policy

    def _usable(self, automation: Automation, matches: TriggerMatches) -> bool:
        problems = self.validator.validate_automation(automation)
        if problems:
            logger.warning(
                f"Skipping invalid automation '{automation.name}': {'; '.join(problems)}",
                extra={"tenant_id": automation.tenant_id, "rule_id": automation.automation_id}
            )
            matches.skipped_rule_ids.append(automation.automation_id)
            return False
        return True

    # =========================================================================
    # STAGE_ENTERED
    # =========================================================================

    def match_stage_entered(self, tenant: Tenant, subject: Subject, stage_id: str) -> TriggerMatches:
        matches = TriggerMatches()
        stage_specific: List[Automation] = []
        global_matches: List[Automation] = []

        automations = self.repos.automations.list_automations(
            tenant.tenant_id, kind=AutomationKind.COMMUNICATION, enabled_only=True
        )
        for automation in automations:
            try:
                if automation.project_type != subject.project_type:
                    continue
                if not (automation.is_global or automation.scope_stage_id == stage_id):
                    continue
                if not self._usable(automation, matches):
                    continue
                if automation.is_global:
                    global_matches.append(automation)
                else:
                    stage_specific.append(automation)
            except Exception as e:
                logger.error(
                    f"Error matching automation: {e}",
                    extra={"tenant_id": tenant.tenant_id, "rule_id": automation.automation_id}
                )
                matches.skipped_rule_ids.append(automation.automation_id)

        if stage_specific and global_matches and self.policy_for(tenant) == GlobalMatchPolicy.PREFER_STAGE_SPECIFIC:
            logger.info(
                f"Dropping {len(global_matches)} global automation(s) in favour of stage-specific ones",
                extra={"tenant_id": tenant.tenant_id, "subject_id": subject.subject_id}
            )
            global_matches = []
        matches.automations = stage_specific + global_matches

        for campaign in self.repos.campaigns.list_campaigns(tenant.tenant_id, status=CampaignStatus.ACTIVE):
            if campaign.target_stage_id != stage_id or campaign.project_type != subject.project_type:
                continue
            problems = self.validator.validate_campaign(campaign)
            if problems:
                logger.warning(
                    f"Skipping invalid campaign '{campaign.name}': {'; '.join(problems)}",
                    extra={"tenant_id": tenant.tenant_id, "campaign_id": campaign.campaign_id}
                )
                matches.skipped_rule_ids.append(campaign.campaign_id)
                continue
            matches.campaigns.append(campaign)
        return matches

    # =========================================================================
    # BUSINESS_EVENT
    # =========================================================================

    def match_business_event(
        self, tenant: Tenant, subject: Subject, trigger_type: BusinessTriggerType
    ) -> TriggerMatches:
        matches = TriggerMatches()
        automations = self.repos.automations.list_automations(
            tenant.tenant_id, kind=AutomationKind.STAGE_CHANGE, enabled_only=True
        )
        for automation in automations:
            try:
                trigger = automation.trigger_for(trigger_type)
                if trigger is None or automation.project_type != subject.project_type:
                    continue
                if trigger.source_stage_id and trigger.source_stage_id != subject.stage_id:
                    logger.debug(
                        "Business trigger limited to another stage",
                        extra={"rule_id": automation.automation_id, "subject_id": subject.subject_id}
                    )
                    continue
                if self._usable(automation, matches):
                    matches.automations.append(automation)
            except Exception as e:
                logger.error(
                    f"Error matching automation: {e}",
                    extra={"tenant_id": tenant.tenant_id, "rule_id": automation.automation_id}
                )
                matches.skipped_rule_ids.append(automation.automation_id)
        return matches

    # =========================================================================
    # CLOCK_TICK
    # =========================================================================

    def match_countdowns(
        self,
        tenant: Tenant,
        now: datetime,
        subject_id: Optional[str] = None
    ) -> Tuple[List[Tuple[Automation, Subject, TimingResolution]], List[str]]:
        """
        Countdown firings due today for a tenant

        Returns:
            (automation, subject, resolution) for every SCHEDULED firing, and
            the ids of rules that were skipped as invalid or failing
        """
        due: List[Tuple[Automation, Subject, TimingResolution]] = []
        matches = TriggerMatches()

        automations = self.repos.automations.list_automations(
            tenant.tenant_id, kind=AutomationKind.COUNTDOWN, enabled_only=True
        )
        for automation in automations:
            try:
                if not self._usable(automation, matches):
                    continue
                subjects = self.repos.subjects.list_active_subjects(
                    tenant.tenant_id, automation.project_type, stage_id=automation.stage_condition
                )
                for subject in subjects:
                    if subject_id is not None and subject.subject_id != subject_id:
                        continue
                    resolution = self.timing_resolver.resolve_countdown(automation, subject, tenant, now)
                    if resolution.decision == TimingDecision.SCHEDULED:
                        due.append((automation, subject, resolution))
            except Exception as e:
                logger.error(
                    f"Error evaluating countdown: {e}",
                    extra={"tenant_id": tenant.tenant_id, "rule_id": automation.automation_id}
                )
                matches.skipped_rule_ids.append(automation.automation_id)
        return due, matches.skipped_rule_ids
