"""Database models using Pydantic for validation."""

from .answer_sheet import (
    AICorrectionResult,
    AnswerSheet,
    Flag,
    FlagSeverity,
    FlagType,
    Language,
    ManualOverride,
    QuestionResult,
    ScanQuality,
    SEVERITY_RANK,
    SheetStatus,
    TERMINAL_STATUSES,
)
from .notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from .pipeline import (
    BatchUploadError,
    BatchUploadResult,
    ImageAnalysis,
    RollNumberDetection,
    RosterStudent,
    StudentCandidate,
    StudentMatch,
    UploadResult,
)
from .requests import (
    BulkResolveRequest,
    FlagCreateRequest,
    FlagResolveRequest,
    ManualOverrideRequest,
    MatchRequest,
    ReasonRequest,
)

__all__ = [
    "AICorrectionResult",
    "AnswerSheet",
    "BatchUploadError",
    "BatchUploadResult",
    "BulkResolveRequest",
    "Flag",
    "FlagCreateRequest",
    "FlagResolveRequest",
    "FlagSeverity",
    "FlagType",
    "ImageAnalysis",
    "Language",
    "ManualOverride",
    "ManualOverrideRequest",
    "MatchRequest",
    "Notification",
    "NotificationPriority",
    "NotificationStatus",
    "NotificationType",
    "QuestionResult",
    "ReasonRequest",
    "RollNumberDetection",
    "RosterStudent",
    "SEVERITY_RANK",
    "ScanQuality",
    "SheetStatus",
    "StudentCandidate",
    "StudentMatch",
    "TERMINAL_STATUSES",
    "UploadResult",
]
