"""Flash sales and promo codes."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, CheckConstraint, Column
from sqlmodel import Field, SQLModel

from .base import TimeStamped, new_id


class FlashSale(TimeStamped, SQLModel, table=True):
    """Time-boxed discount, optionally behind a unique promo code.

    ``current_redemptions`` only moves through the conditional increment in
    ``FlashSaleService.redeem``.
    """

    __tablename__ = "flash_sale"
    __table_args__ = (
        CheckConstraint(
            "max_redemptions IS NULL OR current_redemptions <= max_redemptions",
            name="ck_flash_sale_redemptions_le_max",
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    event_id: str = Field(foreign_key="event.id", index=True)
    name: str = Field(max_length=128)
    description: Optional[str] = Field(default=None, max_length=1024)

    discount_percent: float = Field(ge=0, le=100)
    # Flat amount off the order total; takes precedence over the percentage
    discount_amount: Optional[float] = Field(default=None, ge=0)

    start_time: datetime = Field(index=True)
    end_time: datetime = Field(index=True)
    is_active: bool = Field(default=True, index=True)

    max_redemptions: Optional[int] = Field(default=None, ge=1)
    current_redemptions: int = Field(default=0, ge=0)
    promo_code: Optional[str] = Field(default=None, unique=True, index=True, max_length=64)

    # TicketTier values; empty list means every tier
    ticket_categories: List[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, default=list)
    )
