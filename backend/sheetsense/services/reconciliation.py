"""
AI-correction kickoff and its detached continuation.

process_answer_sheet() marks the sheet PROCESSING and returns at once; the
correction runs on the background runner and reports through the sheet's
status and the notification dispatcher only.
"""

import logging
from typing import Any, Dict

from ..config.settings import settings
from ..errors import ConflictError, ExternalServiceError, ValidationFailure
from ..models import AnswerSheet, SheetStatus
from ..utils import utcnow
from .answer_sheets import CORRECTION_IN_PROGRESS, AnswerSheetService
from .background import BackgroundTaskRunner
from .correction import CorrectionService
from .notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Starts AI correction and applies its outcome."""

    def __init__(
        self,
        answer_sheets: AnswerSheetService,
        correction: CorrectionService,
        storage,
        roster,
        dispatcher: NotificationDispatcher,
        runner: BackgroundTaskRunner,
    ):
        self.answer_sheets = answer_sheets
        self.correction = correction
        self.storage = storage
        self.roster = roster
        self.dispatcher = dispatcher
        self.runner = runner

    async def process_answer_sheet(self, sheet_id: str, actor_id: str) -> Dict[str, Any]:
        """
        Mark the sheet PROCESSING and schedule AI correction.

        Raises:
            NotFoundError: Sheet does not exist
            ForbiddenError: Actor has no access to the sheet's class
            ValidationFailure: Sheet has no file or carries critical flags
            ConflictError: Correction already running
            ExternalServiceError: No correction backend is configured
        """
        await self.answer_sheets.get_for_actor(sheet_id, actor_id)
        if self.correction is None:
            raise ExternalServiceError("AI correction is not configured (GEMINI_API_KEY missing)")

        def change(sheet: AnswerSheet) -> AnswerSheet:
            if sheet.is_missing or sheet.is_absent:
                raise ValidationFailure("Answer sheet has no uploaded file to process")
            if sheet.has_critical_flags:
                raise ValidationFailure("Resolve critical flags before starting AI correction")
            if sheet.ai_processing_results.get(CORRECTION_IN_PROGRESS):
                raise ConflictError("AI correction is already running for this answer sheet")
            sheet.status = SheetStatus.PROCESSING
            sheet.error_message = None
            sheet.ai_processing_results[CORRECTION_IN_PROGRESS] = True
            sheet.ai_processing_results["correction_started_at"] = utcnow().isoformat()
            return sheet

        sheet = await self.answer_sheets.update(sheet_id, change)
        await self.dispatcher.ai_processing_started(actor_id, sheet)

        self.runner.spawn(self._run_correction(sheet_id, actor_id), name=f"correction-{sheet_id}")
        logger.info(f"🚀 AI correction scheduled for {sheet_id}")

        return {
            "answer_sheet_id": sheet_id,
            "status": SheetStatus.PROCESSING.value,
            "estimated_completion": settings.CORRECTION_ESTIMATE_MINUTES,
        }

    async def _run_correction(self, sheet_id: str, actor_id: str):
        try:
            sheet = await self.answer_sheets.get(sheet_id)
            exam = await self.roster.get_exam(sheet.exam_id)
            file_bytes, content_type = await self.storage.fetch(sheet.cloud_storage_key)
            result = await self.correction.correct(exam, file_bytes, content_type, sheet.language.value)
            sheet = await self.answer_sheets.apply_ai_correction(sheet_id, result)
        except Exception as e:
            logger.error(f"❌ AI correction failed for {sheet_id}: {e}", exc_info=True)
            await self._mark_failed(sheet_id, actor_id, str(e) or e.__class__.__name__)
            return

        await self.dispatcher.ai_correction_complete(actor_id, sheet)

    async def _mark_failed(self, sheet_id: str, actor_id: str, error: str):
        def change(sheet: AnswerSheet) -> AnswerSheet:
            sheet.status = SheetStatus.ERROR
            sheet.error_message = error
            sheet.ai_processing_results.pop(CORRECTION_IN_PROGRESS, None)
            return sheet

        try:
            sheet = await self.answer_sheets.update(sheet_id, change)
        except Exception as e:
            logger.error(f"❌ Could not record AI failure on {sheet_id}: {e}", exc_info=True)
            return

        await self.dispatcher.ai_processing_failed(actor_id, sheet, error)
