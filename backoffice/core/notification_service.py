"""
In-app notifications for workflow assignees.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import List, Optional
import structlog

from backoffice.models.orm import Notification
from backoffice.models.schemas import NotificationKind
from backoffice.core.exceptions import NotFoundError

logger = structlog.get_logger()


class NotificationService:
    """
    Creates and reads per-user notifications.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: Optional[str] = None,
        link: Optional[str] = None,
    ) -> Notification:
        """Create a notification for one user"""
        notification = Notification(
            user_id=user_id,
            kind=kind.value,
            title=title,
            message=message,
            link=link,
            is_read=False,
        )
        self.db.add(notification)
        await self.db.commit()

        logger.info(
            "notification_created",
            notification_id=notification.id,
            user_id=user_id,
            kind=kind.value,
        )
        return notification

    async def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        """List a user's notifications, newest first"""
        query = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id)
            .limit(limit)
        )
        if unread_only:
            query = query.where(Notification.is_read.is_(False))

        result = await self.db.execute(query)
        return result.scalars().all()

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """Mark one of the user's notifications as read"""
        await self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        notification = result.scalar_one_or_none()

        if not notification:
            raise NotFoundError("Notification", notification_id)

        return notification
