"""
Answer-sheet persistence on MongoDB.

Writes are optimistic per document: save() only replaces the stored
document when its version still matches the one that was loaded, and
bumps the version. Derived flag fields are recomputed right before every
write.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..errors import ConflictError, StaleWriteError
from ..models import AnswerSheet
from ..utils import utcnow
from .flags import recompute_derived_flags

logger = logging.getLogger(__name__)


class AnswerSheetRepository:
    """answer_sheets collection access."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.answer_sheets

    async def create_indexes(self):
        # One active sheet per (exam, student); unmatched sheets are exempt
        await self.collection.create_index(
            [("exam_id", ASCENDING), ("student_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"is_active": True, "student_id": {"$type": "string"}},
            name="uniq_active_exam_student",
        )
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("cloud_storage_key", unique=True)
        await self.collection.create_index([("exam_id", ASCENDING), ("status", ASCENDING)])
        await self.collection.create_index([("status", ASCENDING), ("uploaded_at", DESCENDING)])
        await self.collection.create_index([("is_missing", ASCENDING), ("is_absent", ASCENDING)])
        await self.collection.create_index([("uploaded_by", ASCENDING), ("status", ASCENDING)])
        await self.collection.create_index([("flag_count", ASCENDING), ("has_critical_flags", ASCENDING)])
        await self.collection.create_index([("last_flagged_at", DESCENDING)])

    async def insert(self, sheet: AnswerSheet) -> AnswerSheet:
        """
        Persist a new sheet.

        Raises:
            ConflictError: An active sheet already exists for this exam and student
        """
        prepared = recompute_derived_flags(sheet)
        prepared.version = 1
        prepared.created_at = prepared.updated_at = utcnow()
        try:
            await self.collection.insert_one(prepared.to_document())
        except DuplicateKeyError as e:
            raise ConflictError(_duplicate_message(e)) from e
        return prepared

    async def get(self, sheet_id: str, include_inactive: bool = False) -> Optional[AnswerSheet]:
        query: Dict[str, Any] = {"id": sheet_id}
        if not include_inactive:
            query["is_active"] = True
        doc = await self.collection.find_one(query, {"_id": 0})
        return AnswerSheet(**doc) if doc else None

    async def save(self, sheet: AnswerSheet) -> AnswerSheet:
        """
        Replace the stored sheet if nobody else wrote it since it was loaded.

        Raises:
            ConflictError: Stale version, or the write would break the
                one-active-sheet-per-student rule
        """
        prepared = recompute_derived_flags(sheet)
        expected_version = prepared.version
        prepared.version = expected_version + 1
        prepared.updated_at = utcnow()

        try:
            result = await self.collection.find_one_and_replace(
                {"id": prepared.id, "version": expected_version},
                prepared.to_document(),
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )
        except DuplicateKeyError as e:
            raise ConflictError(_duplicate_message(e)) from e

        if result is None:
            raise StaleWriteError("Answer sheet was modified concurrently; reload and retry")
        return AnswerSheet(**result)

    async def find_by_exam(self, exam_id: str, status: Optional[str] = None) -> List[AnswerSheet]:
        query: Dict[str, Any] = {"exam_id": exam_id, "is_active": True}
        if status:
            query["status"] = status
        return await self.find_many(query, sort=[("uploaded_at", DESCENDING)])

    async def find_unmatched(self, exam_id: str) -> List[AnswerSheet]:
        return await self.find_many(
            {"exam_id": exam_id, "is_active": True, "student_id": None},
            sort=[("uploaded_at", ASCENDING)],
        )

    async def find_active_for_student(self, exam_id: str, student_id: str) -> Optional[AnswerSheet]:
        doc = await self.collection.find_one(
            {"exam_id": exam_id, "student_id": student_id, "is_active": True},
            {"_id": 0},
        )
        return AnswerSheet(**doc) if doc else None

    async def find_flagged(
        self,
        exam_id: Optional[str] = None,
        severity: Optional[str] = None,
        flag_type: Optional[str] = None,
        unresolved_only: bool = True,
    ) -> List[AnswerSheet]:
        query: Dict[str, Any] = {"is_active": True, "flag_count": {"$gt": 0}}
        if exam_id:
            query["exam_id"] = exam_id

        flag_filter: Dict[str, Any] = {}
        if unresolved_only:
            flag_filter["resolved"] = False
        if severity:
            flag_filter["severity"] = severity
        if flag_type:
            flag_filter["type"] = flag_type
        if flag_filter:
            query["flags"] = {"$elemMatch": flag_filter}

        return await self.find_many(query, sort=[("last_flagged_at", DESCENDING)])

    async def find_many(self, query: Dict[str, Any], sort: Optional[Iterable] = None, limit: int = 0) -> List[AnswerSheet]:
        cursor = self.collection.find(query, {"_id": 0})
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return [AnswerSheet(**doc) async for doc in cursor]


def _duplicate_message(error: DuplicateKeyError) -> str:
    details = error.details or {}
    key_pattern = details.get("keyPattern") or {}
    if "student_id" in key_pattern:
        return "An active answer sheet already exists for this student in this exam"
    if "cloud_storage_key" in key_pattern:
        return "Storage key already in use"
    return "Duplicate answer sheet"
