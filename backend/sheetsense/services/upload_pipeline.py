"""
Answer-sheet upload pipeline.

Per file: access check -> roll-number detection -> roster matching ->
status and flag decision -> storage write -> persist -> notifications.
Batch uploads run the same steps per file and isolate failures.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import settings
from ..errors import ConflictError, NotFoundError, ValidationFailure
from ..models import (
    AnswerSheet,
    BatchUploadError,
    BatchUploadResult,
    Flag,
    FlagSeverity,
    FlagType,
    ImageAnalysis,
    Language,
    RollNumberDetection,
    ScanQuality,
    SEVERITY_RANK,
    SheetStatus,
    StudentMatch,
    UploadResult,
)
from ..utils import compute_file_hash, file_extension, validate_file_size, validate_file_type
from .flags import BLOCKING_SEVERITY, make_flag
from .image_analysis import ImageAnalysisService
from .notifications import NotificationDispatcher
from .roll_number_detection import RollNumberDetector
from .roster import require_class_access
from .sheet_store import AnswerSheetRepository
from .storage import build_storage_key
from .student_matching import StudentMatcher

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
}


def guess_mime_type(file_name: str) -> str:
    return MIME_TYPES.get(file_extension(file_name), "application/octet-stream")


def validate_upload(file_name: str, file_bytes: bytes, language: str) -> Language:
    """Reject files the pipeline must not store at all."""
    if not file_bytes:
        raise ValidationFailure(f"{file_name} is empty")

    is_valid, msg = validate_file_type(file_name, settings.ALLOWED_EXTENSIONS)
    if not is_valid:
        raise ValidationFailure(msg)

    is_valid, msg = validate_file_size(file_bytes, settings.MAX_FILE_SIZE_MB)
    if not is_valid:
        raise ValidationFailure(msg)

    try:
        return Language(language.upper())
    except ValueError:
        raise ValidationFailure(f"Unsupported language '{language}'")


def decide_match_outcome(
    detection: Optional[RollNumberDetection],
    match: Optional[StudentMatch],
    threshold: float = settings.AUTO_MATCH_THRESHOLD,
) -> Tuple[Optional[str], Optional[Flag]]:
    """
    Decide the student and the matching flag for a detector-driven upload.

    Returns:
        (student_id or None, flag or None). A flag means the sheet needs
        manual review on the matching axis.
    """
    roll_number = detection.roll_number if detection else ""

    if not roll_number:
        return None, make_flag(
            FlagType.UNMATCHED_ROLL,
            FlagSeverity.CRITICAL,
            "No roll number could be detected on the answer sheet",
        )

    if match is None or (match.matched_student is None and not match.alternatives):
        return None, make_flag(
            FlagType.UNMATCHED_ROLL,
            FlagSeverity.HIGH,
            f"Detected roll number {roll_number} does not match any student in this class",
        )

    if match.matched_student is not None and match.confidence >= threshold:
        return match.matched_student.student_id, None

    # Candidates exist but none clears the auto-match gate
    suggestions = [match.matched_student] if match.matched_student is not None else []
    suggestions += [c.student for c in match.alternatives if c.student not in suggestions]
    listed = ", ".join(f"{s.roll_number} ({s.name})" for s in suggestions[: settings.MAX_ALTERNATIVES])
    return None, make_flag(
        FlagType.UNMATCHED_ROLL,
        FlagSeverity.MEDIUM,
        f"Detected roll number {roll_number} is an uncertain match; possible students: {listed}",
    )


def quality_flags(analysis: ImageAnalysis, size_bytes: int) -> List[Flag]:
    """Flags independent of matching: file integrity, scan quality, alignment, size."""
    flags = []
    if analysis.corrupted:
        flags.append(make_flag(FlagType.CORRUPTED_FILE, FlagSeverity.CRITICAL, "; ".join(analysis.issues) or "File could not be read"))
    elif analysis.scan_quality == ScanQuality.UNREADABLE:
        flags.append(make_flag(FlagType.POOR_QUALITY, FlagSeverity.CRITICAL, "Scan is unreadable"))
    elif analysis.scan_quality == ScanQuality.POOR:
        flags.append(make_flag(FlagType.POOR_QUALITY, FlagSeverity.HIGH, "Scan quality is poor; AI correction may be unreliable"))

    if not analysis.is_aligned:
        flags.append(make_flag(FlagType.ALIGNMENT_ISSUE, FlagSeverity.MEDIUM, "Answer sheet appears to be misaligned"))

    if size_bytes > settings.RECOMMENDED_FILE_SIZE_MB * 1024 * 1024:
        flags.append(
            make_flag(
                FlagType.SIZE_TOO_LARGE,
                FlagSeverity.MEDIUM,
                f"File is {size_bytes / (1024 * 1024):.1f} MB; recommended maximum is {settings.RECOMMENDED_FILE_SIZE_MB} MB",
            )
        )
    return flags


def initial_status(match_flag: Optional[Flag], other_flags: List[Flag]) -> SheetStatus:
    """Most severe outcome of the matching axis and the independent flags."""
    if match_flag is not None:
        return SheetStatus.FLAGGED
    if any(SEVERITY_RANK[f.severity] >= SEVERITY_RANK[BLOCKING_SEVERITY] for f in other_flags):
        return SheetStatus.FLAGGED
    return SheetStatus.UPLOADED


class UploadPipeline:
    """Ingests uploaded answer sheets for an exam."""

    def __init__(
        self,
        repository: AnswerSheetRepository,
        roster,
        storage,
        detector: RollNumberDetector,
        dispatcher: NotificationDispatcher,
        matcher: Optional[StudentMatcher] = None,
        image_service: Optional[ImageAnalysisService] = None,
    ):
        self.repository = repository
        self.roster = roster
        self.storage = storage
        self.detector = detector
        self.dispatcher = dispatcher
        self.matcher = matcher or StudentMatcher(roster)
        self.image_service = image_service or ImageAnalysisService()

    async def upload_sheet(
        self,
        exam_id: str,
        file_bytes: bytes,
        file_name: str,
        uploader_id: str,
        student_id: Optional[str] = None,
        language: str = Language.ENGLISH.value,
    ) -> UploadResult:
        """
        Ingest one answer sheet.

        Raises:
            NotFoundError: Unknown exam, or explicit student not in the class
            ForbiddenError: Uploader has no access to the exam's class
            ConflictError: Explicit student already has an active sheet
        """
        exam = await self.roster.get_exam(exam_id)
        await require_class_access(self.roster, uploader_id, exam)

        sheet, result = await self._ingest(exam, file_bytes, file_name, uploader_id, student_id, language)
        await self._notify(exam, uploader_id, [sheet], failed=0)
        return result

    async def batch_upload_sheets(
        self,
        exam_id: str,
        files: List[Tuple[str, bytes]],
        uploader_id: str,
        language: str = Language.ENGLISH.value,
    ) -> BatchUploadResult:
        """
        Ingest many sheets; one file's failure never stops the rest.

        The access check runs once, before any file is analyzed.
        """
        exam = await self.roster.get_exam(exam_id)
        await require_class_access(self.roster, uploader_id, exam)

        batch = BatchUploadResult(total=len(files))
        stored_sheets: List[AnswerSheet] = []
        for file_name, file_bytes in files:
            try:
                sheet, result = await self._ingest(exam, file_bytes, file_name, uploader_id, None, language)
                stored_sheets.append(sheet)
                batch.results.append(result)
            except Exception as e:
                logger.error(f"❌ Failed to ingest {file_name}: {e}", exc_info=True)
                batch.errors.append(BatchUploadError(file_name=file_name, error=str(e)))

        batch.uploaded = len(batch.results)
        batch.matched = sum(1 for r in batch.results if r.sheet["student_id"])
        batch.unmatched = batch.uploaded - batch.matched
        batch.failed = len(batch.errors)

        logger.info(
            f"✅ Batch upload for {exam_id}: {batch.uploaded}/{batch.total} stored, "
            f"{batch.matched} matched, {batch.failed} failed"
        )
        await self._notify(exam, uploader_id, stored_sheets, failed=batch.failed)
        return batch

    async def detect_and_match(self, file_bytes: bytes, file_name: str, exam_id: str, uploader_id: str) -> Dict[str, Any]:
        """
        Run detection and matching without storing anything.

        Raises:
            ForbiddenError: Caller has no access to the exam's class; no detection is attempted
        """
        exam = await self.roster.get_exam(exam_id)
        await require_class_access(self.roster, uploader_id, exam)
        detection = await self.detector.detect(file_bytes, file_name)
        match = None
        if detection.found:
            match = await self.matcher.match(detection.roll_number, exam["exam_id"], detection.confidence)
        return {"roll_number_detection": detection, "student_matching": match}

    async def _ingest(
        self,
        exam: Dict[str, Any],
        file_bytes: bytes,
        file_name: str,
        uploader_id: str,
        student_id: Optional[str],
        language: str,
    ) -> Tuple[AnswerSheet, UploadResult]:
        exam_id = exam["exam_id"]
        sheet_language = validate_upload(file_name, file_bytes, language)
        detection: Optional[RollNumberDetection] = None
        match: Optional[StudentMatch] = None
        match_flag: Optional[Flag] = None
        analysis = await self.image_service.analyze(file_bytes, file_name)

        if student_id:
            # Explicit assignment skips detection entirely
            student = await self.roster.find_student(exam["class_id"], student_id=student_id)
            if student is None:
                raise NotFoundError("Student not found in this exam's class")
            if await self.repository.find_active_for_student(exam_id, student_id) is not None:
                raise ConflictError("An active answer sheet already exists for this student in this exam")
            assigned_student_id = student_id
            roll_number, roll_confidence = student.roll_number, 100
        else:
            detection = await self.detector.detect(file_bytes, file_name, analysis)
            if detection.found:
                match = await self.matcher.match(detection.roll_number, exam_id, detection.confidence)
            assigned_student_id, match_flag = decide_match_outcome(detection, match)
            roll_number = detection.roll_number or None
            roll_confidence = round(detection.confidence * 100)

        other_flags = quality_flags(analysis, len(file_bytes))
        flags = ([match_flag] if match_flag else []) + other_flags
        status = initial_status(match_flag, other_flags)

        content_type = guess_mime_type(file_name)
        key = build_storage_key(exam_id, assigned_student_id, file_name)
        stored = await self.storage.store(
            file_bytes,
            key,
            content_type,
            {"exam_id": exam_id, "uploaded_by": uploader_id, "sha256": compute_file_hash(file_bytes)},
        )

        sheet = AnswerSheet(
            exam_id=exam_id,
            student_id=assigned_student_id,
            uploaded_by=uploader_id,
            original_file_name=file_name,
            cloud_storage_url=stored["url"],
            cloud_storage_key=stored["key"],
            status=status,
            scan_quality=analysis.scan_quality,
            is_aligned=analysis.is_aligned,
            roll_number_detected=roll_number,
            roll_number_confidence=roll_confidence,
            flags=flags,
            language=sheet_language,
            ai_processing_results={
                "detector_backend": self.detector.backend if detection else None,
                "roll_number_detection": detection.model_dump(mode="json") if detection else None,
                "student_matching": match.model_dump(mode="json") if match else None,
                "image_analysis": analysis.model_dump(mode="json"),
                "file": {"size_bytes": len(file_bytes), "mime_type": content_type, "page_count": analysis.page_count},
                "issues": analysis.issues,
                "suggestions": analysis.suggestions,
            },
        )

        duplicate_of = None
        try:
            if assigned_student_id and not student_id:
                existing = await self.repository.find_active_for_student(exam_id, assigned_student_id)
                if existing is not None:
                    raise ConflictError("An active answer sheet already exists for this student in this exam")
            sheet = await self.repository.insert(sheet)
        except ConflictError:
            if student_id or not assigned_student_id:
                await self.storage.delete(stored["key"])
                raise
            # Detector-driven ingestion keeps the file and parks it for manual review
            existing = await self.repository.find_active_for_student(exam_id, assigned_student_id)
            duplicate_of = existing.id if existing else None
            sheet = await self.repository.insert(self._as_duplicate(sheet, duplicate_of))

        logger.info(f"✅ Stored answer sheet {sheet.id} ({file_name}) status={sheet.status.value}")
        return sheet, UploadResult(
            sheet=sheet.summary(),
            detection=detection,
            matching=match,
            image_analysis=analysis,
            duplicate_of=duplicate_of,
        )

    @staticmethod
    def _as_duplicate(sheet: AnswerSheet, duplicate_of: Optional[str]) -> AnswerSheet:
        parked = sheet.model_copy(deep=True)
        claimed = parked.student_id
        parked.student_id = None
        parked.flags.append(
            make_flag(
                FlagType.DUPLICATE_UPLOAD,
                FlagSeverity.HIGH,
                f"Student {claimed} already has an active answer sheet"
                + (f" ({duplicate_of})" if duplicate_of else "")
                + f" for roll number {parked.roll_number_detected}",
            )
        )
        parked.status = SheetStatus.FLAGGED
        return parked

    async def _notify(self, exam: Dict[str, Any], uploader_id: str, sheets: List[AnswerSheet], failed: int):
        """Upload side effects; failures here are logged and never undo the upload."""
        exam_title = exam.get("title", exam["exam_id"])
        try:
            unmatched = [sheet for sheet in sheets if not sheet.student_id]

            for sheet in sheets:
                if sheet.student_id:
                    student_user_id = await self.roster.student_user_id(sheet.student_id)
                    await self.dispatcher.sheet_uploaded(student_user_id, sheet, exam_title)

            await self.dispatcher.upload_summary(
                uploader_id,
                exam["exam_id"],
                exam_title,
                len(sheets) + failed,
                len(sheets) - len(unmatched),
                len(unmatched),
                failed,
            )

            if unmatched:
                admin_id = await self.roster.supervising_admin_id(uploader_id)
                await self.dispatcher.manual_review_required(admin_id, exam["exam_id"], exam_title, unmatched)
        except Exception as e:
            logger.error(f"❌ Upload notifications failed for exam {exam['exam_id']}: {e}", exc_info=True)
