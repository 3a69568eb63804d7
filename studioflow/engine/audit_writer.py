"""Audit Writer - Append-only execution records"""
from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.models import DispatchTask, ExecutionRecord
from ..domain.enums import ExecutionAnomaly, ExecutionOutcome
from ..domain.errors import AlreadyExistsError
from ..repositories.base import AuditRepository
from ..utils.idgen import generate_execution_id
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class AuditWriter:
    """
    Write execution records (append-only)

    Every dispatch attempt produces exactly one record. A second SUCCESS for
    the same idempotency key is refused by the store and logged as an anomaly.
    """

    def __init__(self, repo: AuditRepository):
        self.repo = repo

    def write_execution(
        self,
        task: DispatchTask,
        outcome: ExecutionOutcome,
        now: datetime,
        error: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        anomaly: Optional[ExecutionAnomaly] = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> Optional[ExecutionRecord]:
        """
        Append one execution record

        Returns:
            The record, or None when a SUCCESS for this key already exists
        """
        record = ExecutionRecord(
            execution_id=generate_execution_id(),
            tenant_id=task.tenant_id,
            rule_id=task.rule_id,
            rule_kind=task.rule_kind,
            subject_id=task.subject_id,
            occurrence_key=task.occurrence_key,
            idempotency_key=task.idempotency_key,
            step_index=task.step_index,
            channel=task.channel,
            outcome=outcome,
            error=error,
            provider_message_id=provider_message_id,
            anomaly=anomaly,
            metadata=metadata or {},
            timestamp=now,
            correlation_id=correlation_id or get_correlation_id()
        )

        try:
            return self.repo.append(record)
        except AlreadyExistsError:
            logger.warning(
                f"Duplicate success suppressed: {ExecutionAnomaly.DUPLICATE_SUCCESS.value}",
                extra={
                    "tenant_id": task.tenant_id,
                    "rule_id": task.rule_id,
                    "subject_id": task.subject_id,
                    "occurrence_key": task.occurrence_key
                }
            )
            return None

    def write_success(self, task: DispatchTask, now: datetime, **kwargs) -> Optional[ExecutionRecord]:
        return self.write_execution(task, ExecutionOutcome.SUCCESS, now, **kwargs)

    def write_failure(
        self, task: DispatchTask, now: datetime, error: str, **kwargs
    ) -> Optional[ExecutionRecord]:
        return self.write_execution(task, ExecutionOutcome.FAILED, now, error=error, **kwargs)

    def write_skipped(
        self, task: DispatchTask, now: datetime, reason: str, **kwargs
    ) -> Optional[ExecutionRecord]:
        return self.write_execution(task, ExecutionOutcome.SKIPPED, now, error=reason, **kwargs)
