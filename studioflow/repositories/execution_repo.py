"""Execution Claim Repository - Idempotency claims

A claim document's _id is the idempotency key, so the first insert wins and
every other worker gets a DuplicateKeyError. Takeover of an abandoned or
failed claim goes through one conditional find_one_and_update.
"""
from datetime import datetime
from typing import Optional
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import ExecutionClaimRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import ExecutionClaim
from ..domain.enums import ClaimStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoExecutionClaimRepository(ExecutionClaimRepository):
    """Repository for execution claims"""

    def __init__(self, collection: Optional[Collection] = None):
        self._claims: Collection = (
            collection if collection is not None else get_collection("execution_claims")
        )

    def try_claim(self, claim: ExecutionClaim, now: datetime) -> bool:
        """
        Try to acquire the claim for one (rule, subject, occurrence).

        Args:
            claim: Claim to insert, status IN_PROGRESS
            now: Current time, compared against an existing lease

        Returns:
            True if this worker now owns the claim
        """
        try:
            self._claims.insert_one(to_document(claim, claim.claim_id))
            return True
        except DuplicateKeyError:
            pass

        try:
            result = self._claims.find_one_and_update(
                {
                    "_id": claim.claim_id,
                    "$or": [
                        {"status": ClaimStatus.FAILED.value},
                        {
                            "status": ClaimStatus.IN_PROGRESS.value,
                            "lease_until": {"$lte": now}
                        }
                    ]
                },
                {
                    "$set": {
                        "status": ClaimStatus.IN_PROGRESS.value,
                        "claimed_by": claim.claimed_by,
                        "lease_until": claim.lease_until,
                        "updated_at": now
                    },
                    "$inc": {"attempts": 1}
                }
            )
        except PyMongoError as e:
            logger.error(
                f"Database error taking over claim: {e}",
                extra={"occurrence_key": claim.occurrence_key, "rule_id": claim.rule_id}
            )
            return False

        if result:
            logger.debug(
                "Took over existing claim",
                extra={"rule_id": claim.rule_id, "subject_id": claim.subject_id}
            )
            return True
        return False

    def release(self, claim_id: str, claimed_by: str, status: ClaimStatus, now: datetime) -> bool:
        """Finish a claim this worker owns"""
        result = self._claims.update_one(
            {"_id": claim_id, "claimed_by": claimed_by},
            {"$set": {"status": status.value, "updated_at": now}}
        )
        return result.modified_count > 0

    def get_claim(self, claim_id: str) -> Optional[ExecutionClaim]:
        doc = from_document(self._claims.find_one({"_id": claim_id}))
        return ExecutionClaim.model_validate(doc) if doc else None
