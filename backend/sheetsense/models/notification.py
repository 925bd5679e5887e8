"""Notification side entity."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils import new_id, utcnow


class NotificationType(str, Enum):
    ANSWER_SHEET_UPLOADED = "ANSWER_SHEET_UPLOADED"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"
    MISSING_ANSWER_SHEET = "MISSING_ANSWER_SHEET"
    ABSENT_STUDENT = "ABSENT_STUDENT"
    AI_PROCESSING_STARTED = "AI_PROCESSING_STARTED"
    AI_CORRECTION_COMPLETE = "AI_CORRECTION_COMPLETE"
    AI_PROCESSING_FAILED = "AI_PROCESSING_FAILED"
    MANUAL_OVERRIDE_ADDED = "MANUAL_OVERRIDE_ADDED"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class NotificationStatus(str, Enum):
    UNREAD = "UNREAD"
    READ = "READ"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    DISMISSED = "DISMISSED"


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: new_id("notif"))
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.MEDIUM
    status: NotificationStatus = NotificationStatus.UNREAD
    title: str
    message: str
    recipient_id: str
    related_entity_id: Optional[str] = None
    related_entity_type: Optional[str] = None  # "AnswerSheet", "Exam"
    metadata: Dict[str, Any] = {}
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump() | {
            "type": self.type.value,
            "priority": self.priority.value,
            "status": self.status.value,
        }
