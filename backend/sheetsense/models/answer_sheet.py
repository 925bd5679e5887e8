"""Answer-sheet aggregate and its embedded records."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils import new_id, utcnow


# ============ ENUMS ============
class SheetStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    AI_CORRECTED = "AI_CORRECTED"
    MANUALLY_REVIEWED = "MANUALLY_REVIEWED"
    COMPLETED = "COMPLETED"
    MISSING = "MISSING"
    ABSENT = "ABSENT"
    FLAGGED = "FLAGGED"
    ERROR = "ERROR"


# Statuses that short-circuit the pipeline; flags never override them
TERMINAL_STATUSES = {SheetStatus.MISSING, SheetStatus.ABSENT, SheetStatus.ERROR}


class ScanQuality(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    UNREADABLE = "UNREADABLE"


class FlagType(str, Enum):
    UNMATCHED_ROLL = "UNMATCHED_ROLL"
    POOR_QUALITY = "POOR_QUALITY"
    MISSING_PAGES = "MISSING_PAGES"
    ALIGNMENT_ISSUE = "ALIGNMENT_ISSUE"
    DUPLICATE_UPLOAD = "DUPLICATE_UPLOAD"
    INVALID_FORMAT = "INVALID_FORMAT"
    SIZE_TOO_LARGE = "SIZE_TOO_LARGE"
    CORRUPTED_FILE = "CORRUPTED_FILE"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"


class FlagSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK = {
    FlagSeverity.LOW: 1,
    FlagSeverity.MEDIUM: 2,
    FlagSeverity.HIGH: 3,
    FlagSeverity.CRITICAL: 4,
}


class Language(str, Enum):
    ENGLISH = "ENGLISH"
    TAMIL = "TAMIL"
    HINDI = "HINDI"
    MALAYALAM = "MALAYALAM"
    TELUGU = "TELUGU"
    KANNADA = "KANNADA"
    FRENCH = "FRENCH"


# ============ FLAGS ============
class Flag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: FlagType
    severity: FlagSeverity
    description: str
    detected_at: datetime = Field(default_factory=utcnow)
    detected_by: Optional[str] = None  # user id, or None when raised by the system
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    auto_resolved: bool = False


# ============ AI CORRECTION ============
class QuestionResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_number: int
    correct_answer: str = ""
    student_answer: str = ""
    is_correct: bool = False
    marks_obtained: float = 0
    max_marks: float = 0
    feedback: str = ""
    confidence: float = 0.0  # 0.0 to 1.0


class AICorrectionResult(BaseModel):
    """Closed result schema for one AI correction pass."""

    model_config = ConfigDict(extra="ignore")

    status: str = "completed"  # completed, partial, failed
    confidence: float = 0.0
    total_marks: float = 0
    obtained_marks: float = 0
    percentage: float = 0
    question_wise_results: List[QuestionResult] = []
    overall_feedback: str = ""
    strengths: List[str] = []
    weaknesses: List[str] = []
    suggestions: List[str] = []
    processing_time: int = 0  # milliseconds
    errors: List[str] = []


class ManualOverride(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_id: str
    question_number: Optional[int] = None
    corrected_answer: str = ""
    corrected_marks: float
    reason: str
    corrected_by: str
    corrected_at: datetime = Field(default_factory=utcnow)


# ============ ANSWER SHEET ============
class AnswerSheet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: new_id("sheet"))
    exam_id: str
    student_id: Optional[str] = None
    uploaded_by: str
    original_file_name: str
    cloud_storage_url: str = ""
    cloud_storage_key: str
    status: SheetStatus = SheetStatus.UPLOADED
    scan_quality: ScanQuality = ScanQuality.GOOD
    is_aligned: bool = True
    roll_number_detected: Optional[str] = None
    roll_number_confidence: int = 0  # 0-100
    confidence: Optional[float] = None  # overall AI confidence, 0-1
    ai_correction_results: Optional[AICorrectionResult] = None
    ai_processing_results: Dict[str, Any] = {}
    manual_overrides: List[ManualOverride] = []

    # Exception state
    is_missing: bool = False
    missing_reason: Optional[str] = None
    is_absent: bool = False
    absent_reason: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    # Flags and their derived fields
    flags: List[Flag] = []
    flag_count: int = 0
    has_critical_flags: bool = False
    last_flagged_at: Optional[datetime] = None
    flag_resolution_rate: float = 0.0

    uploaded_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    language: Language = Language.ENGLISH
    is_active: bool = True
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def unresolved_flags(self) -> List[Flag]:
        return [flag for flag in self.flags if not flag.resolved]

    def effective_marks(self) -> Optional[float]:
        """
        Obtained marks with the override ledger applied on top of the AI result.

        The latest override for a question replaces the AI marks for that
        question; the stored AI result itself is never modified.
        """
        if self.ai_correction_results is None and not self.manual_overrides:
            return None

        per_question: Dict[str, float] = {}
        if self.ai_correction_results is not None:
            for result in self.ai_correction_results.question_wise_results:
                per_question[str(result.question_number)] = result.marks_obtained

        for override in sorted(self.manual_overrides, key=lambda o: o.corrected_at):
            key = str(override.question_number) if override.question_number is not None else override.question_id
            per_question[key] = override.corrected_marks

        return round(sum(per_question.values()), 2)

    def to_document(self) -> Dict[str, Any]:
        """Mongo-ready dict (enums as plain strings)."""
        return self.model_dump() | {
            "status": self.status.value,
            "scan_quality": self.scan_quality.value,
            "language": self.language.value,
            "flags": [flag.model_dump() | {"type": flag.type.value, "severity": flag.severity.value} for flag in self.flags],
        }

    def summary(self) -> Dict[str, Any]:
        """Compact view returned from upload endpoints."""
        return {
            "answer_sheet_id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "original_file_name": self.original_file_name,
            "cloud_storage_url": self.cloud_storage_url,
            "status": self.status.value,
            "scan_quality": self.scan_quality.value,
            "is_aligned": self.is_aligned,
            "roll_number_detected": self.roll_number_detected,
            "roll_number_confidence": self.roll_number_confidence,
            "flag_count": self.flag_count,
            "has_critical_flags": self.has_critical_flags,
            "flags": [
                {"type": flag.type.value, "severity": flag.severity.value, "description": flag.description}
                for flag in self.flags
            ],
        }
