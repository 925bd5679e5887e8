"""
Notifications raised as side effects of answer-sheet transitions.

The dispatcher never lets a notification failure escape: the sheet
mutation that triggered it has already been persisted and stays that way.
"""

import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from ..config.settings import settings
from ..errors import NotFoundError
from ..models import (
    AnswerSheet,
    ManualOverride,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from ..utils import utcnow

logger = logging.getLogger(__name__)

STATUS_TIMESTAMPS = {
    NotificationStatus.READ: "read_at",
    NotificationStatus.ACKNOWLEDGED: "acknowledged_at",
    NotificationStatus.DISMISSED: "dismissed_at",
}


class NotificationRepository:
    """notifications collection access."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.notifications

    async def create_indexes(self):
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index([("recipient_id", 1), ("status", 1), ("created_at", DESCENDING)])
        await self.collection.create_index("related_entity_id")

    async def insert(self, notification: Notification) -> Notification:
        await self.collection.insert_one(notification.to_document())
        return notification

    async def list_for_recipient(self, recipient_id: str, status: Optional[str] = None, limit: int = 50) -> List[Notification]:
        query: Dict[str, Any] = {"recipient_id": recipient_id, "is_active": True}
        if status:
            query["status"] = status
        cursor = self.collection.find(query, {"_id": 0}).sort("created_at", DESCENDING).limit(limit)
        return [Notification(**doc) async for doc in cursor]

    async def count_unread(self, recipient_id: str) -> int:
        return await self.collection.count_documents(
            {"recipient_id": recipient_id, "is_active": True, "status": NotificationStatus.UNREAD.value}
        )

    async def set_status(self, notification_id: str, recipient_id: str, status: NotificationStatus) -> Optional[Notification]:
        update = {"status": status.value, STATUS_TIMESTAMPS[status]: utcnow()}
        if status == NotificationStatus.DISMISSED:
            update["is_active"] = False
        doc = await self.collection.find_one_and_update(
            {"id": notification_id, "recipient_id": recipient_id},
            {"$set": update},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return Notification(**doc) if doc else None

    async def set_status_many(self, query: Dict[str, Any], status: NotificationStatus) -> int:
        result = await self.collection.update_many(
            query,
            {"$set": {"status": status.value, STATUS_TIMESTAMPS[status]: utcnow()}},
        )
        return result.modified_count


class NotificationService:
    """Inbox operations for the current user."""

    def __init__(self, repository: NotificationRepository):
        self.repository = repository

    async def list_notifications(self, user_id: str, status: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        notifications = await self.repository.list_for_recipient(user_id, status, limit)
        unread = await self.repository.count_unread(user_id)
        return {
            "notifications": [n.model_dump(mode="json") for n in notifications],
            "unread_count": unread,
        }

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        return await self._set(notification_id, user_id, NotificationStatus.READ)

    async def dismiss(self, notification_id: str, user_id: str) -> Notification:
        return await self._set(notification_id, user_id, NotificationStatus.DISMISSED)

    async def mark_all_read(self, user_id: str) -> int:
        return await self.repository.set_status_many(
            {"recipient_id": user_id, "is_active": True, "status": NotificationStatus.UNREAD.value},
            NotificationStatus.READ,
        )

    async def _set(self, notification_id: str, user_id: str, status: NotificationStatus) -> Notification:
        notification = await self.repository.set_status(notification_id, user_id, status)
        if notification is None:
            raise NotFoundError("Notification not found")
        return notification


class NotificationDispatcher:
    """One method per sheet trigger; each maps to one notification type and priority."""

    def __init__(self, repository: NotificationRepository):
        self.repository = repository

    async def _send(
        self,
        recipient_id: Optional[str],
        notification_type: NotificationType,
        priority: NotificationPriority,
        title: str,
        message: str,
        related_entity_id: Optional[str] = None,
        related_entity_type: str = "AnswerSheet",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        if not recipient_id:
            logger.warning(f"⚠️  No recipient for {notification_type.value} notification; skipped")
            return None

        try:
            notification = Notification(
                type=notification_type,
                priority=priority,
                title=title,
                message=message,
                recipient_id=recipient_id,
                related_entity_id=related_entity_id,
                related_entity_type=related_entity_type if related_entity_id else None,
                metadata=metadata or {},
            )
            return await self.repository.insert(notification)
        except Exception as e:
            logger.error(f"❌ Failed to send {notification_type.value} notification to {recipient_id}: {e}", exc_info=True)
            return None

    async def sheet_uploaded(self, student_user_id: Optional[str], sheet: AnswerSheet, exam_title: str):
        return await self._send(
            student_user_id,
            NotificationType.ANSWER_SHEET_UPLOADED,
            NotificationPriority.LOW,
            "Answer Sheet Uploaded",
            f"Your answer sheet for {exam_title} has been uploaded and is awaiting evaluation.",
            related_entity_id=sheet.id,
            metadata={"exam_id": sheet.exam_id},
        )

    async def upload_summary(self, uploader_id: str, exam_id: str, exam_title: str, total: int, matched: int, unmatched: int, failed: int = 0):
        message = f"{total} answer sheet(s) processed for {exam_title}: {matched} matched, {unmatched} need manual review"
        if failed:
            message += f", {failed} failed"
        return await self._send(
            uploader_id,
            NotificationType.ANSWER_SHEET_UPLOADED,
            NotificationPriority.LOW,
            "Answer Sheets Processed",
            message + ".",
            related_entity_id=exam_id,
            related_entity_type="Exam",
            metadata={"total": total, "matched": matched, "unmatched": unmatched, "failed": failed},
        )

    async def manual_review_required(self, admin_id: Optional[str], exam_id: str, exam_title: str, unmatched: List[AnswerSheet]):
        return await self._send(
            admin_id,
            NotificationType.MANUAL_REVIEW_REQUIRED,
            NotificationPriority.MEDIUM,
            "Manual Review Required",
            f"{len(unmatched)} answer sheet(s) for {exam_title} could not be matched to a student.",
            related_entity_id=exam_id,
            related_entity_type="Exam",
            metadata={
                "unmatched_sheets": [
                    {
                        "answer_sheet_id": sheet.id,
                        "file_name": sheet.original_file_name,
                        "roll_number": sheet.roll_number_detected,
                    }
                    for sheet in unmatched
                ]
            },
        )

    async def missing_sheet(self, admin_id: Optional[str], sheet: AnswerSheet, reason: str):
        return await self._send(
            admin_id,
            NotificationType.MISSING_ANSWER_SHEET,
            NotificationPriority.HIGH,
            "Missing Answer Sheet",
            f"Answer sheet marked missing: {reason}",
            related_entity_id=sheet.id,
            metadata={"exam_id": sheet.exam_id, "student_id": sheet.student_id, "reason": reason},
        )

    async def absent_student(self, admin_id: Optional[str], sheet: AnswerSheet, reason: str):
        return await self._send(
            admin_id,
            NotificationType.ABSENT_STUDENT,
            NotificationPriority.MEDIUM,
            "Student Absent",
            f"Student marked absent: {reason}",
            related_entity_id=sheet.id,
            metadata={"exam_id": sheet.exam_id, "student_id": sheet.student_id, "reason": reason},
        )

    async def ai_processing_started(self, recipient_id: str, sheet: AnswerSheet):
        return await self._send(
            recipient_id,
            NotificationType.AI_PROCESSING_STARTED,
            NotificationPriority.LOW,
            "AI Correction Started",
            f"AI correction started for {sheet.original_file_name}. Estimated time: {settings.CORRECTION_ESTIMATE_MINUTES}.",
            related_entity_id=sheet.id,
            metadata={"exam_id": sheet.exam_id},
        )

    async def ai_correction_complete(self, recipient_id: str, sheet: AnswerSheet):
        results = sheet.ai_correction_results
        metadata: Dict[str, Any] = {"exam_id": sheet.exam_id}
        if results is not None:
            metadata.update(obtained_marks=results.obtained_marks, total_marks=results.total_marks, percentage=results.percentage)
        return await self._send(
            recipient_id,
            NotificationType.AI_CORRECTION_COMPLETE,
            NotificationPriority.LOW,
            "AI Correction Complete",
            f"AI correction finished for {sheet.original_file_name}.",
            related_entity_id=sheet.id,
            metadata=metadata,
        )

    async def ai_processing_failed(self, recipient_id: str, sheet: AnswerSheet, error: str):
        return await self._send(
            recipient_id,
            NotificationType.AI_PROCESSING_FAILED,
            NotificationPriority.HIGH,
            "AI Correction Failed",
            f"AI correction failed for {sheet.original_file_name}: {error}",
            related_entity_id=sheet.id,
            metadata={"exam_id": sheet.exam_id, "error": error},
        )

    async def manual_override_added(self, recipient_id: Optional[str], sheet: AnswerSheet, override: ManualOverride):
        return await self._send(
            recipient_id,
            NotificationType.MANUAL_OVERRIDE_ADDED,
            NotificationPriority.LOW,
            "Marks Updated",
            f"Marks for question {override.question_number or override.question_id} were updated by your teacher.",
            related_entity_id=sheet.id,
            metadata={
                "exam_id": sheet.exam_id,
                "question_id": override.question_id,
                "corrected_marks": override.corrected_marks,
            },
        )

    async def acknowledge_related(self, entity_id: str) -> int:
        """UNREAD notifications about an entity become ACKNOWLEDGED."""
        try:
            return await self.repository.set_status_many(
                {"related_entity_id": entity_id, "status": NotificationStatus.UNREAD.value},
                NotificationStatus.ACKNOWLEDGED,
            )
        except Exception as e:
            logger.error(f"❌ Failed to acknowledge notifications for {entity_id}: {e}", exc_info=True)
            return 0
