"""Subscription Repository - Drip campaign cursors

Cursor moves and status changes are conditional find-and-modify operations so
two workers racing on the same subscription cannot both advance it.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import SubscriptionRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import DripCampaignSubscription
from ..domain.enums import SubscriptionStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoSubscriptionRepository(SubscriptionRepository):
    """Repository for drip subscriptions"""

    def __init__(self, collection: Optional[Collection] = None):
        self._subscriptions: Collection = (
            collection if collection is not None else get_collection("drip_subscriptions")
        )

    def create_subscription(
        self, subscription: DripCampaignSubscription
    ) -> Tuple[DripCampaignSubscription, bool]:
        """Insert a subscription; the (campaign, subject) unique index rejects duplicates"""
        try:
            self._subscriptions.insert_one(
                to_document(subscription, subscription.subscription_id)
            )
        except DuplicateKeyError:
            existing = from_document(self._subscriptions.find_one({
                "campaign_id": subscription.campaign_id,
                "subject_id": subscription.subject_id
            }))
            logger.debug(
                "Subscription already exists",
                extra={
                    "campaign_id": subscription.campaign_id,
                    "subject_id": subscription.subject_id
                }
            )
            if existing:
                return DripCampaignSubscription.model_validate(existing), False
            raise

        logger.info(
            "Created drip subscription",
            extra={
                "tenant_id": subscription.tenant_id,
                "subscription_id": subscription.subscription_id,
                "campaign_id": subscription.campaign_id,
                "subject_id": subscription.subject_id
            }
        )
        return subscription, True

    def get_subscription(
        self, tenant_id: str, subscription_id: str
    ) -> Optional[DripCampaignSubscription]:
        doc = from_document(self._subscriptions.find_one({
            "subscription_id": subscription_id,
            "tenant_id": tenant_id
        }))
        return DripCampaignSubscription.model_validate(doc) if doc else None

    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DripCampaignSubscription]:
        cursor = self._subscriptions.find({"tenant_id": tenant_id, "subject_id": subject_id})
        return [DripCampaignSubscription.model_validate(from_document(doc)) for doc in cursor]

    def list_due_subscriptions(
        self, now: datetime, limit: int, skip: int = 0
    ) -> List[DripCampaignSubscription]:
        cursor = self._subscriptions.find({
            "status": SubscriptionStatus.ACTIVE.value,
            "next_email_at": {"$ne": None, "$lte": now}
        }).sort([("next_email_at", ASCENDING), ("subscription_id", ASCENDING)]).skip(skip).limit(limit)
        return [DripCampaignSubscription.model_validate(from_document(doc)) for doc in cursor]

    def advance_cursor(
        self,
        subscription_id: str,
        expected_index: int,
        next_index: int,
        next_email_at: Optional[datetime],
        now: datetime
    ) -> Optional[DripCampaignSubscription]:
        doc = self._subscriptions.find_one_and_update(
            {"subscription_id": subscription_id, "next_email_index": expected_index},
            {"$set": {
                "next_email_index": next_index,
                "next_email_at": next_email_at,
                "updated_at": now
            }},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            logger.warning(
                "Cursor moved by another worker",
                extra={"subscription_id": subscription_id}
            )
            return None
        return DripCampaignSubscription.model_validate(from_document(doc))

    def transition_status(
        self,
        subscription_id: str,
        from_statuses: List[SubscriptionStatus],
        to_status: SubscriptionStatus,
        now: datetime,
        updates: Optional[Dict[str, Any]] = None
    ) -> Optional[DripCampaignSubscription]:
        changes: Dict[str, Any] = {}
        for key, value in (updates or {}).items():
            changes[key] = value.value if isinstance(value, Enum) else value
        changes.update({"status": to_status.value, "updated_at": now})

        doc = self._subscriptions.find_one_and_update(
            {
                "subscription_id": subscription_id,
                "status": {"$in": [s.value for s in from_statuses]}
            },
            {"$set": changes},
            return_document=ReturnDocument.AFTER
        )
        return DripCampaignSubscription.model_validate(from_document(doc)) if doc else None
