"""
Notification inbox routes.

Endpoints:
- GET /api/notifications
- PUT /api/notifications/read-all
- PUT /api/notifications/{notification_id}/read
- PUT /api/notifications/{notification_id}/dismiss
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..services import User
from .deps import create_current_user_dependency, http_error


def create_notification_routes(container) -> APIRouter:
    router = APIRouter(prefix="/api/notifications", tags=["notifications"])
    get_current_user = create_current_user_dependency(container)
    notifications = container.notifications

    @router.get("")
    async def list_notifications(status: Optional[str] = None, limit: int = 50, user: User = Depends(get_current_user)):
        try:
            return await notifications.list_notifications(user.user_id, status, min(max(limit, 1), 200))
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.put("/read-all")
    async def mark_all_read(user: User = Depends(get_current_user)):
        try:
            updated = await notifications.mark_all_read(user.user_id)
            return {"updated": updated}
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.put("/{notification_id}/read")
    async def mark_read(notification_id: str, user: User = Depends(get_current_user)):
        try:
            notification = await notifications.mark_read(notification_id, user.user_id)
            return notification.model_dump(mode="json")
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    @router.put("/{notification_id}/dismiss")
    async def dismiss(notification_id: str, user: User = Depends(get_current_user)):
        try:
            notification = await notifications.dismiss(notification_id, user.user_id)
            return notification.model_dump(mode="json")
        except HTTPException:
            raise
        except Exception as e:
            raise http_error(e)

    return router
