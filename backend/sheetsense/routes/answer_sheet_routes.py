"""
Answer-sheet routes.

Endpoints:
- POST /api/answer-sheets/upload
- POST /api/answer-sheets/exams/{exam_id}/batch-upload
- POST /api/answer-sheets/exams/{exam_id}/detect
- GET  /api/answer-sheets/exams/{exam_id}
- POST /api/answer-sheets/exams/{exam_id}/auto-match
- POST /api/answer-sheets/exams/{exam_id}/students/{student_id}/absent
- POST /api/answer-sheets/exams/{exam_id}/students/{student_id}/missing
- GET|DELETE /api/answer-sheets/{sheet_id}
- POST /api/answer-sheets/{sheet_id}/missing | acknowledge | ai-results | overrides | match | process | complete
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from ..models import AICorrectionResult, ManualOverrideRequest, MatchRequest, ReasonRequest
from ..services import User
from .deps import create_staff_user_dependency, http_error, sheet_response


def create_answer_sheet_routes(container) -> APIRouter:
    """Create answer-sheet routes bound to the service container."""

    router = APIRouter(prefix="/api/answer-sheets", tags=["answer-sheets"])
    get_staff_user = create_staff_user_dependency(container)
    pipeline = container.upload_pipeline
    sheets = container.answer_sheets

    @router.post("/upload", status_code=201)
    async def upload_answer_sheet(
        exam_id: str = Form(...),
        file: UploadFile = File(...),
        student_id: Optional[str] = Form(None),
        language: str = Form("ENGLISH"),
        user: User = Depends(get_staff_user),
    ):
        """Upload one answer sheet; the roll number is detected unless student_id is given."""
        try:
            file_bytes = await file.read()
            result = await pipeline.upload_sheet(
                exam_id, file_bytes, file.filename, user.user_id, student_id=student_id or None, language=language
            )
            return result.model_dump(mode="json")
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/exams/{exam_id}/batch-upload")
    async def batch_upload(
        exam_id: str,
        files: List[UploadFile] = File(...),
        language: str = Form("ENGLISH"),
        user: User = Depends(get_staff_user),
    ):
        """Upload many sheets; failures are reported per file."""
        try:
            payload = [(f.filename, await f.read()) for f in files]
            result = await pipeline.batch_upload_sheets(exam_id, payload, user.user_id, language=language)
            return result.model_dump(mode="json")
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/exams/{exam_id}/detect")
    async def detect_roll_number(exam_id: str, file: UploadFile = File(...), user: User = Depends(get_staff_user)):
        """Detect and match a roll number without storing the sheet."""
        try:
            file_bytes = await file.read()
            result = await pipeline.detect_and_match(file_bytes, file.filename, exam_id, user.user_id)
            return {
                "roll_number_detection": result["roll_number_detection"].model_dump(mode="json"),
                "student_matching": result["student_matching"].model_dump(mode="json") if result["student_matching"] else None,
            }
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.get("/exams/{exam_id}")
    async def list_exam_sheets(exam_id: str, status: Optional[str] = None, user: User = Depends(get_staff_user)):
        try:
            result = await sheets.list_by_exam(exam_id, user.user_id, status)
            return {
                "answer_sheets": [sheet_response(s) for s in result["sheets"]],
                "summary": result["summary"],
            }
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/exams/{exam_id}/auto-match")
    async def auto_match(exam_id: str, user: User = Depends(get_staff_user)):
        try:
            return await sheets.auto_match_unmatched(exam_id, user.user_id)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/exams/{exam_id}/students/{student_id}/absent")
    async def mark_student_absent(exam_id: str, student_id: str, body: ReasonRequest, user: User = Depends(get_staff_user)):
        try:
            sheet = await sheets.mark_absent(exam_id, student_id, body.reason, user.user_id)
            return sheet_response(sheet)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/exams/{exam_id}/students/{student_id}/missing")
    async def mark_student_missing(exam_id: str, student_id: str, body: ReasonRequest, user: User = Depends(get_staff_user)):
        try:
            sheet = await sheets.mark_missing(body.reason, user.user_id, exam_id=exam_id, student_id=student_id)
            return sheet_response(sheet)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.get("/{sheet_id}")
    async def get_answer_sheet(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            return sheet_response(await sheets.get_for_actor(sheet_id, user.user_id))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.delete("/{sheet_id}")
    async def delete_answer_sheet(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            await sheets.soft_delete(sheet_id, user.user_id)
            return {"message": "Answer sheet deleted", "answer_sheet_id": sheet_id}
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/missing")
    async def mark_sheet_missing(sheet_id: str, body: ReasonRequest, user: User = Depends(get_staff_user)):
        try:
            sheet = await sheets.mark_missing(body.reason, user.user_id, sheet_id=sheet_id)
            return sheet_response(sheet)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/acknowledge")
    async def acknowledge_sheet(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            result = await sheets.acknowledge(sheet_id, user.user_id)
            return {
                "answer_sheet": sheet_response(result["sheet"]),
                "already_acknowledged": result["already_acknowledged"],
            }
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/ai-results")
    async def apply_ai_results(sheet_id: str, body: AICorrectionResult, user: User = Depends(get_staff_user)):
        """Accept correction results posted by an external correction service."""
        try:
            return sheet_response(await sheets.apply_ai_correction(sheet_id, body, user.user_id))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/overrides")
    async def add_override(sheet_id: str, body: ManualOverrideRequest, user: User = Depends(get_staff_user)):
        try:
            return sheet_response(await sheets.add_manual_override(sheet_id, body, user.user_id))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/match")
    async def match_sheet(sheet_id: str, body: MatchRequest, user: User = Depends(get_staff_user)):
        try:
            sheet = await sheets.match_to_student(
                sheet_id, user.user_id, student_id=body.student_id, roll_number=body.roll_number
            )
            return sheet_response(sheet)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/process", status_code=202)
    async def process_sheet(sheet_id: str, user: User = Depends(get_staff_user)):
        """Start AI correction; completion arrives via notifications."""
        try:
            return await container.reconciliation.process_answer_sheet(sheet_id, user.user_id)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/{sheet_id}/complete")
    async def complete_sheet(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            return sheet_response(await sheets.complete(sheet_id, user.user_id))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    return router
