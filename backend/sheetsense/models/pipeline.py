"""Value objects passed between the detector, matcher and upload pipeline."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .answer_sheet import ScanQuality


# ============ ROSTER ============
class RosterStudent(BaseModel):
    student_id: str
    name: str
    roll_number: str
    email: Optional[str] = None
    class_id: Optional[str] = None


# ============ DETECTION ============
class RollNumberDetection(BaseModel):
    roll_number: str = ""
    confidence: float = 0.0  # 0.0 to 1.0
    image_quality: ScanQuality = ScanQuality.POOR
    processing_time_ms: int = 0
    raw_response: Optional[str] = None

    @property
    def found(self) -> bool:
        return bool(self.roll_number)


class ImageAnalysis(BaseModel):
    scan_quality: ScanQuality
    is_aligned: bool = True
    is_pdf: bool = False
    page_count: int = 1
    width: int = 0
    height: int = 0
    brightness: Optional[float] = None
    contrast: Optional[float] = None
    corrupted: bool = False
    issues: List[str] = []
    suggestions: List[str] = []


# ============ MATCHING ============
class StudentCandidate(BaseModel):
    student: RosterStudent
    similarity: float


class StudentMatch(BaseModel):
    matched_student: Optional[RosterStudent] = None
    confidence: float = 0.0
    alternatives: List[StudentCandidate] = []
    exact: bool = False
    processing_time_ms: int = 0


# ============ UPLOAD ============
class UploadResult(BaseModel):
    sheet: Dict[str, Any]
    detection: Optional[RollNumberDetection] = None
    matching: Optional[StudentMatch] = None
    image_analysis: Optional[ImageAnalysis] = None
    duplicate_of: Optional[str] = None  # set when a matched sheet was re-filed unmatched


class BatchUploadError(BaseModel):
    file_name: str
    error: str


class BatchUploadResult(BaseModel):
    results: List[UploadResult] = []
    errors: List[BatchUploadError] = []
    total: int = 0
    uploaded: int = 0
    matched: int = 0
    unmatched: int = 0
    failed: int = 0
