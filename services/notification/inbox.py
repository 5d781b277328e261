"""The user's in-app notification inbox."""

import logging
from typing import List

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from services.db.models import Notification
from services.errors import NotificationNotFound
from services.utils.timezone import utcnow

log = logging.getLogger(__name__)


class NotificationInbox:
    """Read side of what NotificationEngine writes. Every query is scoped to one user."""

    def __init__(self, session: Session):
        self.session = session

    def list(self, user_id: str, unread_only: bool = False, limit: int = 50, offset: int = 0) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read == False)  # noqa: E712
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
        return list(self.session.exec(stmt).all())

    def unread_count(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        )
        return self.session.exec(stmt).one()

    def mark_read(self, notification_id: int, user_id: str):
        """Idempotent; someone else's notification looks the same as a missing one."""
        now_time = utcnow()
        result = self.session.exec(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True, read_at=func.coalesce(Notification.read_at, now_time), updated_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotificationNotFound()
        self.session.commit()

    def mark_all_read(self, user_id: str) -> int:
        now_time = utcnow()
        result = self.session.exec(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
            .values(is_read=True, read_at=now_time, updated_at=now_time)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        log.debug(f"Marked {result.rowcount} notifications read for {user_id}")
        return result.rowcount

    def delete(self, notification_id: int, user_id: str):
        result = self.session.exec(
            delete(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotificationNotFound()
        self.session.commit()
