"""Order pricing: list price, group discount, promo discount."""
from typing import NamedTuple, Optional

from services.db.models import FlashSale, TicketCategory


class OrderAmounts(NamedTuple):
    unit_price: float
    subtotal: float
    discount: float
    total: float


def group_discount_percent(category: TicketCategory, quantity: int) -> float:
    if not category.group_discount_enabled or not category.group_discount_percent:
        return 0.0
    if category.group_min_size and quantity < category.group_min_size:
        return 0.0
    if category.group_max_size and quantity > category.group_max_size:
        return 0.0
    return float(category.group_discount_percent)


def compute_amounts(category: TicketCategory, quantity: int, sale: Optional[FlashSale] = None) -> OrderAmounts:
    """Price an order.

    The group discount applies first. A promo then takes its flat
    ``discount_amount`` off the remainder if set, else its percentage.
    The total never goes below zero.
    """
    unit_price = float(category.price)
    subtotal = round(unit_price * quantity, 2)

    discounted = subtotal * (1 - group_discount_percent(category, quantity) / 100)
    if sale is not None:
        if sale.discount_amount:
            discounted -= sale.discount_amount
        else:
            discounted *= 1 - sale.discount_percent / 100

    total = round(max(discounted, 0.0), 2)
    return OrderAmounts(unit_price, subtotal, round(subtotal - total, 2), total)
