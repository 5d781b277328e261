"""
Login sessions and single-use nonces.
"""
from datetime import datetime, timedelta
from typing import Optional
import secrets

from sqlmodel import Field, SQLModel

from services.utils.timezone import make_aware, utcnow


class UserSession(SQLModel, table=True):
    """Persisted cookie session."""
    __tablename__ = "user_session"

    session_id: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=32)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
    provider: str = Field(default="email", max_length=32)  # email, wallet
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)

    @classmethod
    def create(cls, user_id: str, provider: str = "email", expires_days: int = 30,
               ip_address: str = None, user_agent: str = None) -> "UserSession":
        """Create a new session."""
        now_time = utcnow()
        return cls(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now_time,
            expires_at=now_time + timedelta(days=expires_days),
            provider=provider,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None
        )

    def is_expired(self) -> bool:
        return utcnow() > make_aware(self.expires_at)


class NonceRecord(SQLModel, table=True):
    """Replay-guard entry: a row existing (and not expired) means the nonce is spent."""
    __tablename__ = "nonce_record"

    key: str = Field(primary_key=True, max_length=255)  # "<scope>:<nonce>"
    consumed_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
