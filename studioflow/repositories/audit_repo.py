"""Audit Repository - Data access for the execution log"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .base import AuditRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import ExecutionRecord
from ..domain.enums import ExecutionOutcome
from ..domain.errors import AlreadyExistsError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoAuditRepository(AuditRepository):
    """Repository for execution records (append-only)"""

    def __init__(self, collection: Optional[Collection] = None):
        self._executions: Collection = (
            collection if collection is not None else get_collection("execution_log")
        )

    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        """Append an execution record (append-only)"""
        try:
            self._executions.insert_one(to_document(record, record.execution_id))
        except DuplicateKeyError:
            raise AlreadyExistsError(
                "Successful execution already recorded",
                details={"idempotency_key": record.idempotency_key}
            )

        logger.info(
            f"Recorded execution: {record.outcome.value}",
            extra={
                "tenant_id": record.tenant_id,
                "rule_id": record.rule_id,
                "subject_id": record.subject_id,
                "occurrence_key": record.occurrence_key,
                "outcome": record.outcome.value
            }
        )
        return record

    def list_for_subject(
        self, tenant_id: str, subject_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]:
        """Get execution history for a subject, newest first"""
        cursor = self._executions.find(
            {"tenant_id": tenant_id, "subject_id": subject_id}
        ).sort("timestamp", DESCENDING).skip(skip).limit(limit)
        return [ExecutionRecord.model_validate(from_document(doc)) for doc in cursor]

    def list_for_rule(
        self, tenant_id: str, rule_id: str, skip: int = 0, limit: int = 100
    ) -> List[ExecutionRecord]:
        """Get execution history for a rule, newest first"""
        cursor = self._executions.find(
            {"tenant_id": tenant_id, "rule_id": rule_id}
        ).sort("timestamp", DESCENDING).skip(skip).limit(limit)
        return [ExecutionRecord.model_validate(from_document(doc)) for doc in cursor]

    def has_success(self, idempotency_key: str) -> bool:
        return self._executions.count_documents(
            {"idempotency_key": idempotency_key, "outcome": ExecutionOutcome.SUCCESS.value},
            limit=1
        ) > 0
