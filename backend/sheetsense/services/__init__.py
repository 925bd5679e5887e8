"""Service layer for answer-sheet ingestion and reconciliation."""

from .answer_sheets import AnswerSheetService
from .auth import SessionAuthenticator, User
from .background import BackgroundTaskRunner
from .correction import CorrectionService
from .gemini_client import GeminiClient
from .image_analysis import ImageAnalysisService
from .notifications import NotificationDispatcher, NotificationRepository, NotificationService
from .reconciliation import ReconciliationService
from .roll_number_detection import (
    GeminiRollNumberDetector,
    MockRollNumberDetector,
    RollNumberDetector,
    build_detector,
    parse_roll_number_response,
)
from .roster import RosterDirectory
from .sheet_store import AnswerSheetRepository
from .storage import GridFSStorage
from .student_matching import StudentMatcher, roll_number_similarity
from .upload_pipeline import UploadPipeline

__all__ = [
    "AnswerSheetRepository",
    "AnswerSheetService",
    "BackgroundTaskRunner",
    "CorrectionService",
    "GeminiClient",
    "GeminiRollNumberDetector",
    "GridFSStorage",
    "ImageAnalysisService",
    "MockRollNumberDetector",
    "NotificationDispatcher",
    "NotificationRepository",
    "NotificationService",
    "ReconciliationService",
    "RollNumberDetector",
    "RosterDirectory",
    "SessionAuthenticator",
    "StudentMatcher",
    "UploadPipeline",
    "User",
    "build_detector",
    "parse_roll_number_response",
    "roll_number_similarity",
]
