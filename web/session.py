"""
Cookie sessions persisted in the ``user_session`` table.
"""
from typing import Any, Dict, Optional

from fastapi import Request, Response

from services.config import config
from services.db.connection import session_scope
from services.db.models import User, UserSession

SESSION_COOKIE_NAME = "mt_session"


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    """Look up a live session and its user."""
    if not session_id:
        return None

    with session_scope() as db:
        session = db.get(UserSession, session_id)
        if not session or session.is_expired():
            return None
        user = db.get(User, session.user_id)
        if not user or user.is_deleted or not user.active:
            return None
        return {
            "session_id": session.session_id,
            "user_id": user.user_id,
            "role": user.role.value,
            "provider": session.provider,
            "created_at": session.created_at.isoformat(),
        }


def delete_session(session_id: str) -> bool:
    if not session_id:
        return False

    with session_scope() as db:
        session = db.get(UserSession, session_id)
        if session:
            db.delete(session)
            return True
    return False


def set_session_cookie(response: Response, session_id: str, request: Optional[Request] = None):
    if request is not None:
        is_secure = request.url.scheme == "https"
    else:
        is_secure = config.WEB_BASE_URL.startswith("https")

    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_id,
        max_age=config.SESSION_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
        secure=is_secure,
    )
