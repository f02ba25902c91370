"""In-app notification API endpoints."""

from typing import List
from fastapi import APIRouter, Depends, Query

from backoffice.api.v1.dependencies import get_current_user_id, to_http_exception
from backoffice.models import get_db
from backoffice.core import NotificationService, WorkflowError
from backoffice.models.schemas import NotificationResponse

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
):
    """List the caller's notifications, newest first"""
    service = NotificationService(db_session)
    notifications = await service.list_for_user(user_id, unread_only=unread_only, limit=limit)
    return [NotificationResponse(**n.to_dict()) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
):
    """Mark one of the caller's notifications as read"""
    service = NotificationService(db_session)

    try:
        notification = await service.mark_read(notification_id, user_id)
        return NotificationResponse(**notification.to_dict())
    except WorkflowError as e:
        raise to_http_exception(e)
