"""Campaign Service - Drip campaign lifecycle and per-email approval"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import DripCampaign, DripCampaignEmail
from ..domain.enums import CampaignStatus, EmailApprovalStatus
from ..domain.errors import CampaignNotFoundError, InvalidStateError, NotFoundError
from ..engine.rule_validator import RuleValidator
from ..repositories import Repositories, get_repositories
from ..utils.idgen import generate_campaign_email_id, generate_campaign_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class CampaignService:
    """
    Drip campaign operations

    Campaign lifecycle: DRAFT -> APPROVED -> ACTIVE, any -> DELETED.
    Email approval: PENDING -> APPROVED | REJECTED. Only PENDING emails can be
    rejected, so an email that may already have been sent never leaves the
    sequence.
    """

    def __init__(self, repos: Optional[Repositories] = None):
        self.repos = repos or get_repositories()
        self.validator = RuleValidator()

    def create_campaign(
        self, tenant_id: str, data: Dict[str, Any], now: Optional[datetime] = None
    ) -> DripCampaign:
        now = now or utc_now()
        emails = [
            {
                **email,
                "email_id": generate_campaign_email_id(),
                "approval_status": EmailApprovalStatus.PENDING,
            }
            for email in data.get("emails") or []
        ]
        campaign = DripCampaign.model_validate({
            **data,
            "emails": emails,
            "campaign_id": generate_campaign_id(),
            "tenant_id": tenant_id,
            "status": CampaignStatus.DRAFT,
            "created_at": now,
            "updated_at": now,
        })
        self.validator.ensure_valid_campaign(campaign)
        self.repos.campaigns.create_campaign(campaign)
        return campaign

    def get_campaign(self, tenant_id: str, campaign_id: str) -> DripCampaign:
        campaign = self.repos.campaigns.get_campaign(tenant_id, campaign_id)
        if campaign is None or campaign.status == CampaignStatus.DELETED:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def list_campaigns(
        self, tenant_id: str, status: Optional[CampaignStatus] = None
    ) -> List[DripCampaign]:
        campaigns = self.repos.campaigns.list_campaigns(tenant_id, status=status)
        if status is None:
            campaigns = [c for c in campaigns if c.status != CampaignStatus.DELETED]
        return campaigns

    # =========================================================================
    # Campaign lifecycle
    # =========================================================================

    def _transition(
        self,
        campaign: DripCampaign,
        allowed_from: List[CampaignStatus],
        to_status: CampaignStatus,
        now: datetime,
        **updates
    ) -> DripCampaign:
        if campaign.status not in allowed_from:
            raise InvalidStateError(
                f"Cannot move a {campaign.status.value} campaign to {to_status.value}",
                details={"campaign_id": campaign.campaign_id}
            )
        updated = campaign.model_copy(update={"status": to_status, "updated_at": now, **updates})
        self.repos.campaigns.save_campaign(updated)
        logger.info(
            f"Campaign moved to {to_status.value}",
            extra={"tenant_id": campaign.tenant_id, "campaign_id": campaign.campaign_id}
        )
        return updated

    def approve_campaign(
        self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None
    ) -> DripCampaign:
        campaign = self.get_campaign(tenant_id, campaign_id)
        self.validator.ensure_valid_campaign(campaign)
        now = now or utc_now()
        return self._transition(campaign, [CampaignStatus.DRAFT], CampaignStatus.APPROVED, now, approved_at=now)

    def activate_campaign(
        self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None
    ) -> DripCampaign:
        """Subjects entering the target stage are enrolled from now on"""
        campaign = self.get_campaign(tenant_id, campaign_id)
        now = now or utc_now()
        return self._transition(campaign, [CampaignStatus.APPROVED], CampaignStatus.ACTIVE, now, activated_at=now)

    def delete_campaign(
        self, tenant_id: str, campaign_id: str, now: Optional[datetime] = None
    ) -> DripCampaign:
        campaign = self.get_campaign(tenant_id, campaign_id)
        return self._transition(
            campaign,
            [CampaignStatus.DRAFT, CampaignStatus.APPROVED, CampaignStatus.ACTIVE],
            CampaignStatus.DELETED,
            now or utc_now()
        )

    # =========================================================================
    # Email approval
    # =========================================================================

    def _update_email(
        self,
        tenant_id: str,
        campaign_id: str,
        email_id: str,
        to_status: EmailApprovalStatus,
        now: datetime
    ) -> DripCampaignEmail:
        campaign = self.get_campaign(tenant_id, campaign_id)
        email = campaign.find_email(email_id)
        if email is None:
            raise NotFoundError(f"Email {email_id} not found in campaign {campaign_id}")

        if email.approval_status == to_status:
            return email
        if email.approval_status != EmailApprovalStatus.PENDING:
            raise InvalidStateError(
                f"Cannot mark a {email.approval_status.value} email {to_status.value}",
                details={"campaign_id": campaign_id, "email_id": email_id}
            )

        stamp = {"approved_at": now} if to_status == EmailApprovalStatus.APPROVED else {"rejected_at": now}
        updated_email = email.model_copy(update={"approval_status": to_status, **stamp})
        emails = [updated_email if e.email_id == email_id else e for e in campaign.emails]
        self.repos.campaigns.save_campaign(campaign.model_copy(update={"emails": emails, "updated_at": now}))

        logger.info(
            f"Drip email {to_status.value}",
            extra={"tenant_id": tenant_id, "campaign_id": campaign_id}
        )
        return updated_email

    def approve_email(
        self, tenant_id: str, campaign_id: str, email_id: str, now: Optional[datetime] = None
    ) -> DripCampaignEmail:
        """Approve one email; held subscriptions send it on the next pass"""
        return self._update_email(tenant_id, campaign_id, email_id, EmailApprovalStatus.APPROVED, now or utc_now())

    def reject_email(
        self, tenant_id: str, campaign_id: str, email_id: str, now: Optional[datetime] = None
    ) -> DripCampaignEmail:
        """Reject a PENDING email; it drops out of the sequence"""
        return self._update_email(tenant_id, campaign_id, email_id, EmailApprovalStatus.REJECTED, now or utc_now())
