"""Due Item Repository - Persisted due timestamps"""
from datetime import datetime
from typing import List, Optional, Tuple
from pymongo.collection import Collection
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .base import DueItemRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import DueItem
from ..domain.enums import DueItemStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoDueItemRepository(DueItemRepository):
    """Repository for due items"""

    def __init__(self, collection: Optional[Collection] = None):
        self._due_items: Collection = (
            collection if collection is not None else get_collection("due_items")
        )

    def upsert_due_item(self, item: DueItem) -> Tuple[DueItem, bool]:
        """
        Insert a due item unless the same (rule, subject, occurrence) exists.

        The unique index makes this safe when two workers evaluate the same
        event; the loser gets the stored row back.
        """
        try:
            self._due_items.insert_one(to_document(item, item.due_item_id))
        except DuplicateKeyError:
            existing = from_document(self._due_items.find_one({
                "rule_id": item.rule_id,
                "subject_id": item.subject_id,
                "occurrence_key": item.occurrence_key
            }))
            if existing:
                return DueItem.model_validate(existing), False
            raise

        logger.debug(
            f"Scheduled due item for {item.fire_at.isoformat()}",
            extra={
                "tenant_id": item.tenant_id,
                "rule_id": item.rule_id,
                "subject_id": item.subject_id,
                "occurrence_key": item.occurrence_key
            }
        )
        return item, True

    def list_due(self, now: datetime, limit: int, skip: int = 0) -> List[DueItem]:
        cursor = self._due_items.find({
            "status": DueItemStatus.PENDING.value,
            "fire_at": {"$lte": now}
        }).sort([
            ("fire_at", ASCENDING), ("step_index", ASCENDING), ("due_item_id", ASCENDING)
        ]).skip(skip).limit(limit)
        return [DueItem.model_validate(from_document(doc)) for doc in cursor]

    def list_for_subject(self, tenant_id: str, subject_id: str) -> List[DueItem]:
        cursor = self._due_items.find(
            {"tenant_id": tenant_id, "subject_id": subject_id}
        ).sort([("fire_at", ASCENDING), ("step_index", ASCENDING)])
        return [DueItem.model_validate(from_document(doc)) for doc in cursor]

    def mark_done(self, due_item_id: str, now: datetime) -> None:
        self._due_items.update_one(
            {"due_item_id": due_item_id},
            {"$set": {"status": DueItemStatus.DONE.value, "updated_at": now}}
        )

    def record_failure(
        self, due_item_id: str, error: str, permanent: bool, now: datetime
    ) -> None:
        """Count a failed attempt; permanent failures leave the due set"""
        status = DueItemStatus.FAILED if permanent else DueItemStatus.PENDING
        self._due_items.update_one(
            {"due_item_id": due_item_id},
            {
                "$set": {"status": status.value, "last_error": error, "updated_at": now},
                "$inc": {"attempts": 1}
            }
        )
