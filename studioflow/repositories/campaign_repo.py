"""Campaign Repository - Data access for drip campaigns"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .base import CampaignRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import DripCampaign
from ..domain.enums import CampaignStatus
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoCampaignRepository(CampaignRepository):
    """Repository for drip campaigns (emails are embedded)"""

    def __init__(self, collection: Optional[Collection] = None):
        self._campaigns: Collection = (
            collection if collection is not None else get_collection("drip_campaigns")
        )

    def create_campaign(self, campaign: DripCampaign) -> DripCampaign:
        try:
            self._campaigns.insert_one(to_document(campaign, campaign.campaign_id))
        except DuplicateKeyError:
            raise AlreadyExistsError(f"Campaign {campaign.campaign_id} already exists")

        logger.info(
            f"Created drip campaign: {campaign.name}",
            extra={"tenant_id": campaign.tenant_id, "campaign_id": campaign.campaign_id}
        )
        return campaign

    def get_campaign(self, tenant_id: str, campaign_id: str) -> Optional[DripCampaign]:
        doc = from_document(self._campaigns.find_one({
            "campaign_id": campaign_id,
            "tenant_id": tenant_id
        }))
        return DripCampaign.model_validate(doc) if doc else None

    def list_campaigns(
        self, tenant_id: str, status: Optional[CampaignStatus] = None
    ) -> List[DripCampaign]:
        query: Dict[str, Any] = {"tenant_id": tenant_id}
        if status is not None:
            query["status"] = status.value

        cursor = self._campaigns.find(query).sort("campaign_id", ASCENDING)
        return [DripCampaign.model_validate(from_document(doc)) for doc in cursor]

    def save_campaign(self, campaign: DripCampaign) -> DripCampaign:
        """Replace the stored campaign document"""
        self._campaigns.replace_one(
            {"_id": campaign.campaign_id},
            to_document(campaign, campaign.campaign_id),
            upsert=True
        )
        return campaign
