"""Orders, line items and individually redeemable ticket instances."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from .base import OrderStatus, PurchaseStatus, TimeStamped, new_id, utcnow


class Order(TimeStamped, SQLModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(foreign_key="user.user_id", index=True)
    event_id: str = Field(foreign_key="event.id", index=True)
    subtotal: float = Field(default=0.0)
    discount_amount: float = Field(default=0.0)
    total_amount: float
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    flash_sale_id: Optional[str] = Field(default=None, foreign_key="flash_sale.id")
    gateway_tx_id: Optional[str] = Field(default=None, max_length=128)
    paid_at: Optional[datetime] = Field(default=None)


class OrderItem(SQLModel, table=True):
    """Line item. ``price_at_time`` is the list price when the order was placed
    and is never recomputed afterwards."""

    __tablename__ = "order_item"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    order_id: str = Field(foreign_key="orders.id", index=True)
    ticket_id: str = Field(foreign_key="ticket_category.id", index=True)
    quantity: int = Field(ge=1)
    price_at_time: float


class TicketPurchase(SQLModel, table=True):
    """One admitted attendee. Each instance carries its own credential."""

    __tablename__ = "ticket_purchase"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    user_id: str = Field(foreign_key="user.user_id", index=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    ticket_id: str = Field(foreign_key="ticket_category.id", index=True)
    event_id: str = Field(foreign_key="event.id", index=True)
    purchased_at: datetime = Field(default_factory=utcnow)
    status: PurchaseStatus = Field(default=PurchaseStatus.ACTIVE, index=True)

    # Issue time baked into the credential; a credential with any other
    # issue time is not recognised.
    credential_issued_at: datetime = Field(default_factory=utcnow)
    used_at: Optional[datetime] = Field(default=None)
    refunded_at: Optional[datetime] = Field(default=None)

    # User ids in holding order, first is the buyer, last is the holder
    transfer_path: Optional[List[str]] = Field(
        default=None,
        sa_column=Column(JSON, nullable=True)
    )
    transferred_at: Optional[datetime] = Field(default=None)
