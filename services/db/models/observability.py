"""Audit trail, in-app notifications and the outbound send queue."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from .base import NotificationType, SendChannel, SendQueueStatus, TimeStamped, utcnow


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True, max_length=64)
    entity: str = Field(max_length=64)
    entity_id: Optional[str] = Field(default=None, max_length=64, index=True)
    user_id: Optional[str] = Field(default=None, max_length=32, index=True)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    ts: datetime = Field(default_factory=utcnow, index=True)


class Notification(TimeStamped, SQLModel, table=True):
    """In-app notification shown in the user's inbox."""
    __tablename__ = "notification"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=32)
    event_id: Optional[str] = Field(default=None, max_length=32)
    type: NotificationType = Field(default=NotificationType.SYSTEM, index=True)
    title: str = Field(max_length=256)
    message: str = Field(max_length=2048)
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    is_read: bool = Field(default=False, index=True)
    read_at: Optional[datetime] = Field(default=None)


class SendQueue(TimeStamped, SQLModel, table=True):
    """Outbound delivery queue with retry and backfill."""
    __tablename__ = "send_queue"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Target
    user_id: str = Field(index=True, max_length=32)
    channel: SendChannel = Field(default=SendChannel.EMAIL, index=True)

    # Payload
    scope: str = Field(index=True, max_length=64)  # purchase_confirmation, ticket_transfer, flash_sale, ...
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))

    # Status
    status: SendQueueStatus = Field(default=SendQueueStatus.PENDING, index=True)
    retry_count: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, max_length=512)
    next_retry_at: Optional[datetime] = Field(default=None, index=True)
    sent_at: Optional[datetime] = Field(default=None)

    # Reference (for deduplication)
    ref_id: Optional[str] = Field(default=None, max_length=64, index=True, description="e.g. Order.id")
