"""Refund requests reviewed by admins."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from .base import RefundRequestStatus, TimeStamped, new_id


class RefundRequest(TimeStamped, SQLModel, table=True):
    __tablename__ = "refund_request"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    order_id: str = Field(foreign_key="orders.id", index=True)
    user_id: str = Field(foreign_key="user.user_id", index=True)
    reason: str = Field(max_length=1024)
    amount: float
    status: RefundRequestStatus = Field(default=RefundRequestStatus.PENDING, index=True)
    reviewed_by: Optional[str] = Field(default=None, max_length=32)
    reviewed_at: Optional[datetime] = Field(default=None)
    notes: Optional[str] = Field(default=None, max_length=1024)
