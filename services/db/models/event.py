"""Events and their ticket categories (inventory pools)."""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from .base import EventStatus, TicketTier, TimeStamped, new_id


class Event(TimeStamped, SQLModel, table=True):
    __tablename__ = "event"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    organizer_id: str = Field(foreign_key="user.user_id", index=True)
    title: str = Field(max_length=256, index=True)
    description: str = Field(default="", max_length=4096)
    location: str = Field(default="", max_length=256)
    start_time: datetime = Field(index=True)
    end_time: datetime
    status: EventStatus = Field(default=EventStatus.DRAFT, index=True)

    # Postponement / cancellation
    original_start_time: Optional[datetime] = Field(default=None)
    status_reason: Optional[str] = Field(default=None, max_length=1024)
    postponed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)


class TicketCategory(TimeStamped, SQLModel, table=True):
    """A priced admission class with its own capacity pool.

    ``available_quantity`` is only ever changed through the conditional
    UPDATEs in ``services.inventory``; the CHECK constraints are the last line.
    """

    __tablename__ = "ticket_category"
    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_category_available_non_negative"),
        CheckConstraint("available_quantity <= total_quantity", name="ck_category_available_le_total"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    event_id: str = Field(foreign_key="event.id", index=True)
    tier: TicketTier = Field(default=TicketTier.REGULAR, index=True)
    name: str = Field(max_length=128)
    description: Optional[str] = Field(default=None, max_length=1024)
    price: float = Field(ge=0)

    total_quantity: int = Field(ge=0)
    available_quantity: int = Field(ge=0)
    max_per_purchase: int = Field(default=10, ge=1)

    # Group discount
    group_discount_enabled: bool = Field(default=False)
    group_min_size: Optional[int] = Field(default=None)
    group_max_size: Optional[int] = Field(default=None)
    group_discount_percent: Optional[float] = Field(default=None)

    # Sales window, both ends optional
    sales_start_time: Optional[datetime] = Field(default=None)
    sales_end_time: Optional[datetime] = Field(default=None)
