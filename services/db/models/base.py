"""Base models and enums shared across SQLModel tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp.

    SQLModel defaults to naive datetimes; every table stores UTC through this
    helper so comparisons never mix local and UTC wall clocks.
    """

    return datetime.now(timezone.utc)


def new_id() -> str:
    """Opaque primary key. Ids end up inside credentials, so never sequential."""
    return uuid.uuid4().hex


class TimeStamped(SQLModel, table=False):
    """Mixin that stores creation/update timestamps in UTC."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class SoftDelete(SQLModel, table=False):
    """Mixin for soft-delete semantics."""

    is_deleted: bool = Field(default=False, nullable=False)
    deleted_at: Optional[datetime] = Field(default=None, nullable=True)


class UserRole(str, Enum):
    ATTENDEE = "ATTENDEE"
    ORGANIZER = "ORGANIZER"
    ADMIN = "ADMIN"


class EventStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    POSTPONED = "POSTPONED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class TicketTier(str, Enum):
    """Admission class a promo code can be restricted to."""
    REGULAR = "REGULAR"
    VIP = "VIP"
    VVIP = "VVIP"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PurchaseStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    # Transfer is a transition, not a resting state: the instance goes back to
    # ACTIVE under its new owner. Kept for clients that mirror the enum.
    TRANSFERRED = "TRANSFERRED"
    REFUNDED = "REFUNDED"


class RefundRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationType(str, Enum):
    TICKET_PURCHASE = "TICKET_PURCHASE"
    TICKET_TRANSFER = "TICKET_TRANSFER"
    EVENT_REMINDER = "EVENT_REMINDER"
    FLASH_SALE = "FLASH_SALE"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    EVENT_POSTPONED = "EVENT_POSTPONED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    SYSTEM = "SYSTEM"


class SendChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"
    PUSH = "push"


class SendQueueStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"
