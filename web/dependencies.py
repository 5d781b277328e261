import logging
from typing import Dict, Optional

from fastapi import HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from services.db.connection import session_scope
from services.db.models import User, UserRole
from web.session import SESSION_COOKIE_NAME, get_session

logger = logging.getLogger(__name__)


# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address)


# --- Auth Dependencies ---
def get_current_user(request: Request) -> Optional[Dict]:
    """Session data for the request's cookie, or None."""
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    return get_session(session_id)


def require_user(request: Request) -> User:
    """Logged-in user, 401 otherwise."""
    session_data = get_current_user(request)
    if not session_data:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")

    with session_scope() as db:
        user = db.get(User, session_data["user_id"])
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")
        return user


def require_role(*roles: UserRole):
    """Dependency factory: the user must hold one of ``roles`` (admins always pass)."""
    def _dependency(request: Request) -> User:
        user = require_user(request)
        if user.role != UserRole.ADMIN and user.role not in roles:
            logger.warning(f"⚠️ {user.user_id} ({user.role.value}) denied {request.url.path}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user
    return _dependency


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
