"""Ticket category capacity ledger.

Every change to ``available_quantity`` is a single conditional UPDATE checked
by affected row count, so two sessions can never both pass the availability
check against the same stale value. Methods do not commit: they run inside the
caller's transaction (purchase, refund, cancel).
"""

import logging
from typing import Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from services.db.models import TicketCategory
from services.db.models.base import utcnow
from services.errors import (
    CategoryNotFound,
    InsufficientInventory,
    InvalidInput,
    InvalidQuantity,
    InventoryCapacityExceeded,
)

log = logging.getLogger(__name__)


class InventoryLedger:
    """Atomic reserve/release on ticket categories."""

    def __init__(self, session: Session):
        self.session = session

    def _snapshot(self, category_id: str) -> Tuple[int, int]:
        row = self.session.exec(
            select(TicketCategory.available_quantity, TicketCategory.total_quantity)
            .where(TicketCategory.id == category_id)
        ).first()
        if row is None:
            raise CategoryNotFound()
        return row[0], row[1]

    def _load(self, category_id: str) -> TicketCategory:
        category = self.session.get(TicketCategory, category_id)
        if category is None:
            raise CategoryNotFound()
        self.session.refresh(category)
        return category

    def available(self, category_id: str) -> int:
        return self._snapshot(category_id)[0]

    def reserve(self, category_id: str, quantity: int) -> TicketCategory:
        """Take ``quantity`` units out of the pool.

        Raises:
            InvalidQuantity: quantity < 1
            CategoryNotFound: unknown category
            InsufficientInventory: fewer than ``quantity`` units left; the
                message names how many remain
        """
        if quantity < 1:
            raise InvalidQuantity()

        stmt = (
            update(TicketCategory)
            .where(TicketCategory.id == category_id)
            .where(TicketCategory.available_quantity >= quantity)
            .values(
                available_quantity=TicketCategory.available_quantity - quantity,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        if result.rowcount == 0:
            remaining, _ = self._snapshot(category_id)
            log.info(f"Reserve rejected: category={category_id} wanted={quantity} remaining={remaining}")
            raise InsufficientInventory(remaining=remaining)

        return self._load(category_id)

    def release(self, category_id: str, quantity: int) -> TicketCategory:
        """Return ``quantity`` units to the pool (refund, cancellation)."""
        if quantity < 1:
            raise InvalidQuantity()

        stmt = (
            update(TicketCategory)
            .where(TicketCategory.id == category_id)
            .where(TicketCategory.available_quantity + quantity <= TicketCategory.total_quantity)
            .values(
                available_quantity=TicketCategory.available_quantity + quantity,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        if result.rowcount == 0:
            available, total = self._snapshot(category_id)
            log.error(
                f"❌ Release would overflow capacity: category={category_id} "
                f"qty={quantity} available={available} total={total}"
            )
            raise InventoryCapacityExceeded("Released quantity exceeds category capacity")

        return self._load(category_id)

    def adjust_total(self, category_id: str, new_total: int) -> TicketCategory:
        """Change capacity, shifting availability by the same delta.

        Refused when ``new_total`` is below the number of units already sold.
        """
        if new_total < 0:
            raise InvalidInput("Total quantity cannot be negative")

        sold = TicketCategory.total_quantity - TicketCategory.available_quantity
        stmt = (
            update(TicketCategory)
            .where(TicketCategory.id == category_id)
            .where(sold <= new_total)
            .values(
                available_quantity=TicketCategory.available_quantity + new_total - TicketCategory.total_quantity,
                total_quantity=new_total,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        if result.rowcount == 0:
            available, total = self._snapshot(category_id)
            raise InventoryCapacityExceeded(
                f"{total - available} tickets already sold; capacity cannot go below that"
            )

        return self._load(category_id)
