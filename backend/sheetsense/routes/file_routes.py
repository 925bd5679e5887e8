"""
Stored file download.

Endpoints:
- GET /api/files/{file_id}
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from ..services import User
from .deps import create_staff_user_dependency, http_error


def create_file_routes(container) -> APIRouter:
    router = APIRouter(prefix="/api/files", tags=["files"])
    get_staff_user = create_staff_user_dependency(container)

    @router.get("/{file_id}")
    async def download_file(file_id: str, user: User = Depends(get_staff_user)):
        try:
            data, content_type, key = await container.storage.fetch_by_id(file_id)
            # answer-sheets/{exam_id}/{student_id|unknown}/{name}
            parts = key.split("/")
            if len(parts) > 2 and parts[0] == "answer-sheets":
                await container.answer_sheets.require_exam_access(parts[1], user.user_id)
            file_name = key.rsplit("/", 1)[-1]
            return Response(
                content=data,
                media_type=content_type,
                headers={"Content-Disposition": f'inline; filename="{file_name}"'},
            )
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    return router
