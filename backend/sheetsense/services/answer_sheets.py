"""
Answer-sheet state transitions after upload.

Covers the exception markers (missing/absent), acknowledgement, AI result
application, the manual-override ledger, manual and automatic matching,
completion and flag management. Every write goes through the repository's
optimistic save, which recomputes derived flag fields first.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..config.settings import settings
from ..errors import ConflictError, ForbiddenError, NotFoundError, StaleWriteError, ValidationFailure
from ..models import (
    AICorrectionResult,
    AnswerSheet,
    FlagCreateRequest,
    FlagType,
    ManualOverride,
    ManualOverrideRequest,
    SheetStatus,
)
from ..utils import new_id, utcnow
from . import flags as flag_rules
from .notifications import NotificationDispatcher
from .roster import require_class_access
from .sheet_store import AnswerSheetRepository
from .student_matching import StudentMatcher

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3

COMPLETABLE_STATUSES = {SheetStatus.AI_CORRECTED, SheetStatus.MANUALLY_REVIEWED}

# Set in ai_processing_results while a detached correction is running
CORRECTION_IN_PROGRESS = "correction_in_progress"

# Flags cleared when a sheet is attached to a student
MATCH_RESOLVES = [FlagType.UNMATCHED_ROLL, FlagType.DUPLICATE_UPLOAD]

TRAILING_NUMBER = re.compile(r"(\d+)\s*$")


def resolve_question_number(question_id: str, question_number: Optional[int], questions: List[Dict[str, Any]]) -> int:
    """
    Question number an override applies to.

    An explicit number wins; otherwise the id is looked up among the exam's
    questions, then read from its trailing digits ("Q2", "q2", "2").

    Raises:
        ValidationFailure: The question cannot be identified or is not on the exam
    """
    number = question_number
    if number is None:
        for question in questions:
            if question.get("question_id") == question_id and question.get("question_number"):
                number = int(question["question_number"])
                break
    if number is None:
        match = TRAILING_NUMBER.search(question_id)
        if match is None:
            raise ValidationFailure(f"Cannot tell which question '{question_id}' refers to; send question_number")
        number = int(match.group(1))

    known = {int(q["question_number"]) for q in questions if q.get("question_number")}
    if known and number not in known:
        raise ValidationFailure(f"Question {number} is not part of this exam")
    return number


class AnswerSheetService:
    """Business operations on stored answer sheets."""

    def __init__(
        self,
        repository: AnswerSheetRepository,
        roster,
        dispatcher: NotificationDispatcher,
        matcher: Optional[StudentMatcher] = None,
    ):
        self.repository = repository
        self.roster = roster
        self.dispatcher = dispatcher
        self.matcher = matcher or StudentMatcher(roster)

    # ============ LOADING / SAVING ============

    async def get(self, sheet_id: str) -> AnswerSheet:
        sheet = await self.repository.get(sheet_id)
        if sheet is None:
            raise NotFoundError("Answer sheet not found")
        return sheet

    async def get_for_actor(self, sheet_id: str, actor_id: str) -> AnswerSheet:
        """
        Load a sheet the actor may work on.

        Raises:
            NotFoundError: Sheet does not exist
            ForbiddenError: Actor has no access to the sheet's class
        """
        sheet = await self.get(sheet_id)
        await self.require_exam_access(sheet.exam_id, actor_id)
        return sheet

    async def require_exam_access(self, exam_id: str, actor_id: str) -> Dict[str, Any]:
        exam = await self.roster.get_exam(exam_id)
        await require_class_access(self.roster, actor_id, exam)
        return exam

    async def update(self, sheet_id: str, change: Callable[[AnswerSheet], AnswerSheet]) -> AnswerSheet:
        """Load, apply change, save; reload and reapply when a concurrent write wins."""
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            sheet = await self.get(sheet_id)
            try:
                return await self.repository.save(change(sheet))
            except StaleWriteError:
                if attempt == MAX_SAVE_ATTEMPTS:
                    raise
                logger.info(f"Retrying write to {sheet_id} after concurrent update (attempt {attempt})")

    # ============ NOTIFICATIONS ============
    # Recipient lookup and delivery run after the write has committed, so
    # failures are logged and never reach the caller.

    async def _notify_supervisor(self, actor_id: str, send: Callable[[Optional[str]], Awaitable[Any]]):
        try:
            admin_id = await self.roster.supervising_admin_id(actor_id)
            await send(admin_id)
        except Exception as e:
            logger.error(f"❌ Admin notification for actions of {actor_id} failed: {e}", exc_info=True)

    async def _notify_student(self, student_id: str, send: Callable[[Optional[str]], Awaitable[Any]]):
        try:
            student_user_id = await self.roster.student_user_id(student_id)
            await send(student_user_id)
        except Exception as e:
            logger.error(f"❌ Notification to student {student_id} failed: {e}", exc_info=True)

    # ============ EXCEPTION MARKERS ============

    async def mark_missing(
        self,
        reason: str,
        actor_id: str,
        sheet_id: Optional[str] = None,
        exam_id: Optional[str] = None,
        student_id: Optional[str] = None,
    ) -> AnswerSheet:
        """Mark a sheet missing, creating a stub when the student has none yet."""

        def change(sheet: AnswerSheet) -> AnswerSheet:
            sheet.is_missing = True
            sheet.missing_reason = reason
            sheet.status = SheetStatus.MISSING
            return sheet

        if sheet_id:
            await self.get_for_actor(sheet_id, actor_id)
            sheet = await self.update(sheet_id, change)
        else:
            sheet = await self._mark_for_student(exam_id, student_id, actor_id, change, "MISSING")

        logger.info(f"Answer sheet {sheet.id} marked missing")
        await self._notify_supervisor(actor_id, lambda admin_id: self.dispatcher.missing_sheet(admin_id, sheet, reason))
        return sheet

    async def mark_absent(self, exam_id: str, student_id: str, reason: str, actor_id: str) -> AnswerSheet:
        """Record a student as absent for an exam, creating a stub sheet if needed."""

        def change(sheet: AnswerSheet) -> AnswerSheet:
            sheet.is_absent = True
            sheet.absent_reason = reason
            sheet.status = SheetStatus.ABSENT
            return sheet

        sheet = await self._mark_for_student(exam_id, student_id, actor_id, change, "ABSENT")

        logger.info(f"Student {student_id} marked absent for exam {exam_id}")
        await self._notify_supervisor(actor_id, lambda admin_id: self.dispatcher.absent_student(admin_id, sheet, reason))
        return sheet

    async def _mark_for_student(
        self,
        exam_id: Optional[str],
        student_id: Optional[str],
        actor_id: str,
        change: Callable[[AnswerSheet], AnswerSheet],
        stub_name: str,
    ) -> AnswerSheet:
        if not exam_id or not student_id:
            raise ValidationFailure("Either sheet_id or exam_id and student_id are required")

        exam = await self.require_exam_access(exam_id, actor_id)
        student = await self.roster.find_student(exam["class_id"], student_id=student_id)
        if student is None:
            raise NotFoundError("Student not found in this exam's class")

        existing = await self.repository.find_active_for_student(exam_id, student_id)
        if existing is not None:
            return await self.update(existing.id, change)

        stub = AnswerSheet(
            exam_id=exam_id,
            student_id=student_id,
            uploaded_by=actor_id,
            original_file_name=stub_name,
            cloud_storage_key=f"placeholders/{exam_id}/{student_id}/{new_id(stub_name.lower())}",
            roll_number_detected=student.roll_number,
            roll_number_confidence=100,
        )
        return await self.repository.insert(change(stub))

    async def acknowledge(self, sheet_id: str, user_id: str) -> Dict[str, Any]:
        """
        Admin acknowledgement of a missing/absent sheet.

        Idempotent: the first acknowledgement's user and timestamp are kept.
        """
        sheet = await self.get_for_actor(sheet_id, user_id)
        if sheet.acknowledged_at is not None:
            return {"sheet": sheet, "already_acknowledged": True}

        def change(current: AnswerSheet) -> AnswerSheet:
            if current.acknowledged_at is None:
                current.acknowledged_by = user_id
                current.acknowledged_at = utcnow()
            return current

        sheet = await self.update(sheet_id, change)
        acknowledged = await self.dispatcher.acknowledge_related(sheet_id)
        logger.info(f"Answer sheet {sheet_id} acknowledged by {user_id} ({acknowledged} notifications)")
        return {"sheet": sheet, "already_acknowledged": False}

    # ============ RECONCILIATION ============

    async def apply_ai_correction(
        self, sheet_id: str, results: AICorrectionResult, actor_id: Optional[str] = None
    ) -> AnswerSheet:
        """
        Store an AI correction pass.

        The override ledger is never touched; a sheet that already carries
        overrides stays MANUALLY_REVIEWED. Results posted on behalf of a user
        need class access; the background correction passes no actor.

        Raises:
            NotFoundError: Sheet does not exist
            ForbiddenError: Actor has no access to the sheet's class
        """
        if actor_id is not None:
            await self.get_for_actor(sheet_id, actor_id)

        def change(sheet: AnswerSheet) -> AnswerSheet:
            sheet.ai_correction_results = results
            sheet.confidence = results.confidence
            sheet.processed_at = utcnow()
            sheet.error_message = None
            sheet.ai_processing_results.pop(CORRECTION_IN_PROGRESS, None)
            sheet.status = SheetStatus.MANUALLY_REVIEWED if sheet.manual_overrides else SheetStatus.AI_CORRECTED
            return sheet

        sheet = await self.update(sheet_id, change)
        logger.info(f"✅ AI correction applied to {sheet_id}: {results.obtained_marks}/{results.total_marks}")
        return sheet

    async def add_manual_override(self, sheet_id: str, request: ManualOverrideRequest, corrector_id: str) -> AnswerSheet:
        """Append to the override ledger and move the sheet to MANUALLY_REVIEWED."""
        sheet = await self.get(sheet_id)
        exam = await self.require_exam_access(sheet.exam_id, corrector_id)
        question_number = resolve_question_number(
            request.question_id, request.question_number, exam.get("questions", [])
        )
        override = ManualOverride(
            **request.model_dump(exclude={"question_number"}),
            question_number=question_number,
            corrected_by=corrector_id,
        )

        def change(sheet: AnswerSheet) -> AnswerSheet:
            if sheet.status in (SheetStatus.MISSING, SheetStatus.ABSENT):
                raise ValidationFailure(f"Cannot override marks on a {sheet.status.value.lower()} answer sheet")
            sheet.manual_overrides.append(override)
            sheet.status = SheetStatus.MANUALLY_REVIEWED
            return sheet

        sheet = await self.update(sheet_id, change)
        logger.info(f"Manual override on {sheet_id} question {override.question_id} by {corrector_id}")

        if sheet.student_id:
            await self._notify_student(
                sheet.student_id, lambda user_id: self.dispatcher.manual_override_added(user_id, sheet, override)
            )
        return sheet

    async def complete(self, sheet_id: str, actor_id: str) -> AnswerSheet:
        await self.get_for_actor(sheet_id, actor_id)

        def change(sheet: AnswerSheet) -> AnswerSheet:
            if sheet.status not in COMPLETABLE_STATUSES:
                raise ValidationFailure(f"Answer sheet in status {sheet.status.value} cannot be completed")
            if sheet.has_critical_flags:
                raise ValidationFailure("Resolve critical flags before completing the answer sheet")
            sheet.status = SheetStatus.COMPLETED
            sheet.completed_at = utcnow()
            return sheet

        return await self.update(sheet_id, change)

    async def soft_delete(self, sheet_id: str, actor_id: str) -> AnswerSheet:
        await self.get_for_actor(sheet_id, actor_id)

        def change(sheet: AnswerSheet) -> AnswerSheet:
            sheet.is_active = False
            return sheet

        sheet = await self.update(sheet_id, change)
        logger.info(f"🗑️  Answer sheet {sheet_id} deactivated")
        return sheet

    # ============ MATCHING ============

    async def match_to_student(
        self,
        sheet_id: str,
        actor_id: str,
        student_id: Optional[str] = None,
        roll_number: Optional[str] = None,
    ) -> AnswerSheet:
        """Manually attach an unmatched sheet to a roster student."""
        sheet = await self.get(sheet_id)
        exam = await self.require_exam_access(sheet.exam_id, actor_id)

        student = await self.roster.find_student(exam["class_id"], student_id=student_id, roll_number=roll_number)
        if student is None:
            raise NotFoundError("Student not found in this exam's class")

        existing = await self.repository.find_active_for_student(sheet.exam_id, student.student_id)
        if existing is not None and existing.id != sheet_id:
            raise ConflictError("An active answer sheet already exists for this student in this exam")

        def change(current: AnswerSheet) -> AnswerSheet:
            current.student_id = student.student_id
            current.roll_number_detected = student.roll_number
            current.roll_number_confidence = 100
            current = flag_rules.resolve_all_flags(
                current, actor_id, "Matched manually", flag_types=MATCH_RESOLVES
            )
            if current.status == SheetStatus.PROCESSING and current.ai_correction_results is None:
                current.status = SheetStatus.UPLOADED
            return current

        sheet = await self.update(sheet_id, change)
        logger.info(f"✅ Answer sheet {sheet_id} matched to student {student.student_id}")

        exam_title = exam.get("title", sheet.exam_id)
        await self._notify_student(
            student.student_id, lambda user_id: self.dispatcher.sheet_uploaded(user_id, sheet, exam_title)
        )
        return sheet

    async def auto_match_unmatched(self, exam_id: str, actor_id: str) -> Dict[str, Any]:
        """Re-run roster matching over unmatched sheets that carry a detected roll number."""
        exam = await self.require_exam_access(exam_id, actor_id)
        students = await self.roster.list_active_students(exam["class_id"])

        unmatched = await self.repository.find_unmatched(exam_id)
        matched: List[Dict[str, Any]] = []
        still_unmatched: List[Dict[str, Any]] = []

        for sheet in unmatched:
            if not sheet.roll_number_detected:
                still_unmatched.append({"answer_sheet_id": sheet.id, "reason": "No roll number detected"})
                continue

            result = self.matcher.match_against(
                sheet.roll_number_detected, students, sheet.roll_number_confidence / 100
            )
            if result.matched_student is None or result.confidence < settings.AUTO_MATCH_THRESHOLD:
                still_unmatched.append({"answer_sheet_id": sheet.id, "reason": "No confident roster match"})
                continue

            student = result.matched_student
            confidence = round(result.confidence * 100)

            def change(current: AnswerSheet, student=student, confidence=confidence) -> AnswerSheet:
                current.student_id = student.student_id
                current.roll_number_confidence = confidence
                return flag_rules.resolve_all_flags(
                    current, actor_id, "Matched automatically", flag_types=MATCH_RESOLVES, auto_resolved=True
                )

            try:
                await self.update(sheet.id, change)
            except ConflictError as e:
                still_unmatched.append({"answer_sheet_id": sheet.id, "reason": e.message})
                continue

            matched.append({"answer_sheet_id": sheet.id, "student_id": student.student_id, "confidence": confidence})

        logger.info(f"Auto-match for exam {exam_id}: {len(matched)} matched, {len(still_unmatched)} still unmatched")
        return {
            "total_processed": len(unmatched),
            "matched": matched,
            "still_unmatched": still_unmatched,
        }

    # ============ LISTING ============

    async def list_by_exam(self, exam_id: str, actor_id: str, status: Optional[str] = None) -> Dict[str, Any]:
        await self.require_exam_access(exam_id, actor_id)
        if status and status not in SheetStatus.__members__:
            raise ValidationFailure(f"Unknown status '{status}'")

        sheets = await self.repository.find_by_exam(exam_id, status)
        by_status: Dict[str, int] = {}
        for sheet in sheets:
            by_status[sheet.status.value] = by_status.get(sheet.status.value, 0) + 1

        return {
            "sheets": sheets,
            "summary": {
                "total": len(sheets),
                "matched": sum(1 for s in sheets if s.student_id),
                "unmatched": sum(1 for s in sheets if not s.student_id),
                "flagged": sum(1 for s in sheets if s.flag_count and s.unresolved_flags()),
                "missing": sum(1 for s in sheets if s.is_missing),
                "absent": sum(1 for s in sheets if s.is_absent),
                "by_status": by_status,
            },
        }

    # ============ FLAGS ============

    async def add_flag(self, sheet_id: str, request: FlagCreateRequest, actor_id: str) -> AnswerSheet:
        await self.get_for_actor(sheet_id, actor_id)
        flag = flag_rules.make_flag(request.type, request.severity, request.description, detected_by=actor_id)
        return await self.update(sheet_id, lambda sheet: flag_rules.add_flag(sheet, flag))

    async def resolve_flag(self, sheet_id: str, index: int, actor_id: str, notes: Optional[str] = None) -> AnswerSheet:
        await self.get_for_actor(sheet_id, actor_id)

        def change(sheet: AnswerSheet) -> AnswerSheet:
            try:
                return flag_rules.resolve_flag(sheet, index, actor_id, notes)
            except IndexError as e:
                raise ValidationFailure(str(e))
            except ValueError as e:
                raise ConflictError(str(e))

        return await self.update(sheet_id, change)

    async def resolve_all_flags(self, sheet_id: str, actor_id: str, notes: Optional[str] = None) -> AnswerSheet:
        await self.get_for_actor(sheet_id, actor_id)
        return await self.update(sheet_id, lambda sheet: flag_rules.resolve_all_flags(sheet, actor_id, notes))

    async def bulk_resolve_flags(self, sheet_ids: Iterable[str], actor_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        resolved: List[str] = []
        failed: List[Dict[str, str]] = []
        for sheet_id in sheet_ids:
            try:
                await self.resolve_all_flags(sheet_id, actor_id, notes)
                resolved.append(sheet_id)
            except (NotFoundError, ForbiddenError, ConflictError) as e:
                failed.append({"answer_sheet_id": sheet_id, "error": e.message})
        return {"resolved": resolved, "failed": failed}

    async def get_flags(self, sheet_id: str, actor_id: str) -> Dict[str, Any]:
        sheet = await self.get_for_actor(sheet_id, actor_id)
        return {
            "answer_sheet_id": sheet.id,
            "flags": [flag.model_dump(mode="json") for flag in sheet.flags],
            "flag_count": sheet.flag_count,
            "has_critical_flags": sheet.has_critical_flags,
            "last_flagged_at": sheet.last_flagged_at,
            "flag_resolution_rate": sheet.flag_resolution_rate,
        }

    async def flagged_sheets(
        self,
        exam_id: str,
        actor_id: str,
        severity: Optional[str] = None,
        flag_type: Optional[str] = None,
        unresolved_only: bool = True,
    ) -> List[AnswerSheet]:
        await self.require_exam_access(exam_id, actor_id)
        return await self.repository.find_flagged(exam_id, severity, flag_type, unresolved_only)

    async def flag_statistics(self, exam_id: str, actor_id: str) -> Dict[str, Any]:
        await self.require_exam_access(exam_id, actor_id)
        sheets = await self.repository.find_by_exam(exam_id)
        stats = flag_rules.flag_statistics(sheets)
        stats["exam_id"] = exam_id
        stats["total_sheets"] = len(sheets)
        return stats

    async def auto_detect_flags(self, sheet_id: str, actor_id: str) -> Dict[str, Any]:
        sheet = await self.get_for_actor(sheet_id, actor_id)
        proposed = flag_rules.auto_detect_flags(sheet)
        if not proposed:
            return {"sheet": sheet, "added": []}

        def change(current: AnswerSheet) -> AnswerSheet:
            for flag in proposed:
                current = flag_rules.add_flag(current, flag)
            return current

        sheet = await self.update(sheet_id, change)
        logger.info(f"Auto-detected {len(proposed)} flag(s) on {sheet_id}")
        return {"sheet": sheet, "added": [flag.type.value for flag in proposed]}
