"""Shared route helpers: principal resolution and error translation."""

import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, Request

from ..errors import SheetSenseError
from ..models import AnswerSheet
from ..services import User

logger = logging.getLogger(__name__)

STAFF_ROLES = ("teacher", "admin", "super_admin")


def create_current_user_dependency(container):
    """Build the get_current_user dependency bound to the container's authenticator."""

    async def get_current_user(request: Request) -> User:
        session_token = request.cookies.get("session_token")

        if not session_token:
            auth_header = request.headers.get("Authorization")
            if auth_header and auth_header.startswith("Bearer "):
                session_token = auth_header.split(" ")[1]

        if not session_token:
            raise HTTPException(status_code=401, detail="Not authenticated")

        user = await container.authenticator.resolve(session_token)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired session")
        return user

    return get_current_user


def create_staff_user_dependency(container):
    """get_current_user restricted to staff; students are rejected with 403."""
    get_current_user = create_current_user_dependency(container)

    async def get_staff_user(user: User = Depends(get_current_user)) -> User:
        if user.role not in STAFF_ROLES:
            raise HTTPException(status_code=403, detail="Only teachers and admins can manage answer sheets")
        return user

    return get_staff_user


def http_error(e: Exception) -> HTTPException:
    """Map a domain error to its HTTP status; anything else is a 500."""
    if isinstance(e, SheetSenseError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    logger.error(f"❌ Unhandled error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


def sheet_response(sheet: AnswerSheet) -> Dict[str, Any]:
    data = sheet.model_dump(mode="json")
    data["effective_marks"] = sheet.effective_marks()
    return data
