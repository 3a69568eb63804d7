"""Subject Repository - Engine view of projects, contacts and stages"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, ReturnDocument

from .base import SubjectRepository
from .mongo_client import get_collection, to_document, from_document
from ..domain.models import Subject
from ..domain.enums import SubjectStatus
from ..domain.errors import SubjectNotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class MongoSubjectRepository(SubjectRepository):
    """Repository for subjects and pipeline stages"""

    def __init__(
        self,
        subjects: Optional[Collection] = None,
        stages: Optional[Collection] = None
    ):
        self._subjects: Collection = subjects if subjects is not None else get_collection("subjects")
        self._stages: Collection = stages if stages is not None else get_collection("stages")

    def get_subject(self, tenant_id: str, subject_id: str) -> Optional[Subject]:
        doc = from_document(self._subjects.find_one({
            "subject_id": subject_id,
            "tenant_id": tenant_id
        }))
        return Subject.model_validate(doc) if doc else None

    def list_active_subjects(
        self, tenant_id: str, project_type: str, stage_id: Optional[str] = None
    ) -> List[Subject]:
        query: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "project_type": project_type,
            "status": SubjectStatus.ACTIVE.value
        }
        if stage_id is not None:
            query["stage_id"] = stage_id

        cursor = self._subjects.find(query).sort("subject_id", ASCENDING)
        return [Subject.model_validate(from_document(doc)) for doc in cursor]

    def save_subject(self, subject: Subject) -> Subject:
        self._subjects.replace_one(
            {"_id": subject.subject_id},
            to_document(subject, subject.subject_id),
            upsert=True
        )
        return subject

    def get_stage(self, tenant_id: str, stage_id: str) -> Optional[Dict[str, Any]]:
        return from_document(self._stages.find_one({"tenant_id": tenant_id, "stage_id": stage_id}))

    def save_stage(self, tenant_id: str, stage_id: str, name: str) -> Dict[str, Any]:
        stage = {"tenant_id": tenant_id, "stage_id": stage_id, "name": name}
        self._stages.update_one(
            {"tenant_id": tenant_id, "stage_id": stage_id},
            {"$set": stage},
            upsert=True
        )
        return stage

    def update_subject_stage(
        self, tenant_id: str, subject_id: str, stage_id: str, now: datetime
    ) -> Subject:
        """Move a subject to another pipeline stage"""
        doc = self._subjects.find_one_and_update(
            {"subject_id": subject_id, "tenant_id": tenant_id},
            {"$set": {"stage_id": stage_id, "stage_entered_at": now}},
            return_document=ReturnDocument.AFTER
        )
        if doc is None:
            raise SubjectNotFoundError(f"Subject {subject_id} not found")

        logger.info(
            f"Moved subject to stage {stage_id}",
            extra={"tenant_id": tenant_id, "subject_id": subject_id}
        )
        return Subject.model_validate(from_document(doc))
