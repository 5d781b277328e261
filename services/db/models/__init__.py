"""Aggregate exports for SQLModel tables."""

from .base import (
    EventStatus,
    NotificationType,
    OrderStatus,
    PurchaseStatus,
    RefundRequestStatus,
    SendChannel,
    SendQueueStatus,
    SoftDelete,
    TicketTier,
    TimeStamped,
    UserRole,
    new_id,
    utcnow,
)
from .event import Event, TicketCategory
from .flash_sale import FlashSale
from .observability import AuditLog, Notification, SendQueue
from .order import Order, OrderItem, TicketPurchase
from .refund import RefundRequest
from .session import NonceRecord, UserSession
from .user import User

__all__ = [
    "AuditLog",
    "Event",
    "EventStatus",
    "FlashSale",
    "NonceRecord",
    "Notification",
    "NotificationType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PurchaseStatus",
    "RefundRequest",
    "RefundRequestStatus",
    "SendChannel",
    "SendQueue",
    "SendQueueStatus",
    "SoftDelete",
    "TicketCategory",
    "TicketPurchase",
    "TicketTier",
    "TimeStamped",
    "User",
    "UserRole",
    "UserSession",
    "new_id",
    "utcnow",
]
