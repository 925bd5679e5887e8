"""
Flag management routes.

Endpoints:
- GET|POST /api/answer-sheets/{sheet_id}/flags
- POST /api/answer-sheets/{sheet_id}/flags/{index}/resolve
- POST /api/answer-sheets/{sheet_id}/flags/resolve-all
- POST /api/answer-sheets/{sheet_id}/flags/auto-detect
- POST /api/flags/bulk-resolve
- GET  /api/flags/exams/{exam_id}
- GET  /api/flags/exams/{exam_id}/statistics
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..models import BulkResolveRequest, FlagCreateRequest, FlagResolveRequest
from ..services import User
from .deps import create_staff_user_dependency, http_error, sheet_response


def create_flag_routes(container) -> APIRouter:
    """Create flag routes bound to the service container."""

    router = APIRouter(prefix="/api", tags=["flags"])
    get_staff_user = create_staff_user_dependency(container)
    sheets = container.answer_sheets

    @router.get("/answer-sheets/{sheet_id}/flags")
    async def get_flags(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            return await sheets.get_flags(sheet_id, user.user_id)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/answer-sheets/{sheet_id}/flags", status_code=201)
    async def add_flag(sheet_id: str, body: FlagCreateRequest, user: User = Depends(get_staff_user)):
        try:
            return sheet_response(await sheets.add_flag(sheet_id, body, user.user_id))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/answer-sheets/{sheet_id}/flags/resolve-all")
    async def resolve_all(sheet_id: str, body: Optional[FlagResolveRequest] = None, user: User = Depends(get_staff_user)):
        try:
            notes = body.resolution_notes if body else None
            return sheet_response(await sheets.resolve_all_flags(sheet_id, user.user_id, notes))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/answer-sheets/{sheet_id}/flags/auto-detect")
    async def auto_detect(sheet_id: str, user: User = Depends(get_staff_user)):
        try:
            result = await sheets.auto_detect_flags(sheet_id, user.user_id)
            return {"answer_sheet": sheet_response(result["sheet"]), "added": result["added"]}
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/answer-sheets/{sheet_id}/flags/{index}/resolve")
    async def resolve_flag(sheet_id: str, index: int, body: Optional[FlagResolveRequest] = None, user: User = Depends(get_staff_user)):
        try:
            notes = body.resolution_notes if body else None
            return sheet_response(await sheets.resolve_flag(sheet_id, index, user.user_id, notes))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.post("/flags/bulk-resolve")
    async def bulk_resolve(body: BulkResolveRequest, user: User = Depends(get_staff_user)):
        try:
            return await sheets.bulk_resolve_flags(body.answer_sheet_ids, user.user_id, body.resolution_notes)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.get("/flags/exams/{exam_id}")
    async def flagged_sheets(
        exam_id: str,
        severity: Optional[str] = None,
        flag_type: Optional[str] = None,
        include_resolved: bool = False,
        user: User = Depends(get_staff_user),
    ):
        try:
            found = await sheets.flagged_sheets(
                exam_id, user.user_id, severity, flag_type, unresolved_only=not include_resolved
            )
            return {"answer_sheets": [sheet_response(s) for s in found], "total": len(found)}
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.get("/flags/exams/{exam_id}/statistics")
    async def flag_statistics(exam_id: str, user: User = Depends(get_staff_user)):
        try:
            return await sheets.flag_statistics(exam_id, user.user_id)
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    return router
