from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from services.db.connection import session_scope
from services.db.models import Notification, User
from services.notification.inbox import NotificationInbox
from services.utils.timezone import make_aware
from web.dependencies import require_user

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return make_aware(dt).isoformat() if dt else None


def notification_payload(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "event_id": notification.event_id,
        "data": notification.data,
        "is_read": notification.is_read,
        "read_at": _iso(notification.read_at),
        "created_at": _iso(notification.created_at),
    }


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_user),
):
    with session_scope() as db:
        inbox = NotificationInbox(db)
        notifications = inbox.list(user.user_id, unread_only=unread_only, limit=limit, offset=offset)
        return {
            "notifications": [notification_payload(n) for n in notifications],
            "unread_count": inbox.unread_count(user.user_id),
        }


@router.get("/unread-count")
async def unread_count(user: User = Depends(require_user)):
    with session_scope() as db:
        return {"count": NotificationInbox(db).unread_count(user.user_id)}


@router.patch("/read-all")
async def mark_all_read(user: User = Depends(require_user)):
    with session_scope() as db:
        return {"success": True, "count": NotificationInbox(db).mark_all_read(user.user_id)}


@router.patch("/{notification_id}/read")
async def mark_read(notification_id: int, user: User = Depends(require_user)):
    with session_scope() as db:
        NotificationInbox(db).mark_read(notification_id, user.user_id)
        return {"success": True}


@router.delete("/{notification_id}")
async def delete_notification(notification_id: int, user: User = Depends(require_user)):
    with session_scope() as db:
        NotificationInbox(db).delete(notification_id, user.user_id)
        return {"success": True}
