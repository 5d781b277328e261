"""
Ticket purchase.

One purchase is one transaction: reserve inventory, claim the promo code,
create the order, its line item and one ``TicketPurchase`` per admitted
person. Confirmation email, notifications and the audit row are only
produced after that transaction has committed, and their failures never
undo the purchase.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from services.audit import log_audit
from services.db.models import (
    Event,
    Order,
    OrderItem,
    OrderStatus,
    TicketCategory,
    TicketPurchase,
    User,
)
from services.errors import (
    CategoryNotFound,
    InvalidQuantity,
    QuantityAboveLimit,
    SalesWindowClosed,
    ServiceError,
    TransientInfrastructureError,
    UserNotFound,
)
from services.events.service import SELLING_STATUSES
from services.flashsales.service import FlashSaleService
from services.inventory import InventoryLedger
from services.notification.engine import NotificationEngine, notification_engine
from services.tickets.credentials import CredentialCodec
from services.tickets.pricing import compute_amounts
from services.utils.timezone import make_aware, utcnow

log = logging.getLogger(__name__)


def check_sales_window(category: TicketCategory, at=None):
    at = at or utcnow()
    if category.sales_start_time and at < make_aware(category.sales_start_time):
        raise SalesWindowClosed("Ticket sales have not started yet")
    if category.sales_end_time and at > make_aware(category.sales_end_time):
        raise SalesWindowClosed("Ticket sales have ended")


class PurchaseService:
    def __init__(self, session: Session, codec: Optional[CredentialCodec] = None,
                 notifier: Optional[NotificationEngine] = None):
        self.session = session
        self.codec = codec or CredentialCodec()
        self.notifier = notifier or notification_engine

    def _precheck(self, user_id: str, ticket_id: str, quantity: int) -> TicketCategory:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise InvalidQuantity()

        category = self.session.get(TicketCategory, ticket_id)
        if category is None:
            raise CategoryNotFound()
        if self.session.get(User, user_id) is None:
            raise UserNotFound()

        if quantity > category.max_per_purchase:
            raise QuantityAboveLimit(f"Maximum {category.max_per_purchase} tickets per purchase")

        event = self.session.get(Event, category.event_id)
        if event.status not in SELLING_STATUSES:
            raise SalesWindowClosed("This event is not selling tickets")
        check_sales_window(category)
        return category

    def purchase(self, user_id: str, ticket_id: str, quantity: int,
                 promo_code: Optional[str] = None, ip_address: Optional[str] = None) -> Dict:
        """
        Buy ``quantity`` tickets of category ``ticket_id``.

        Returns:
            dict with the order and one credential (payload + QR image) per ticket

        Raises:
            InvalidQuantity, QuantityAboveLimit, CategoryNotFound, SalesWindowClosed,
            InsufficientInventory, PromoCode*, TransientInfrastructureError
        """
        category = self._precheck(user_id, ticket_id, quantity)
        event_id = category.event_id

        try:
            # The conditional decrement is the first write; nothing else is
            # created unless it succeeds.
            category = InventoryLedger(self.session).reserve(ticket_id, quantity)

            sale = None
            if promo_code:
                sale = FlashSaleService(self.session).claim(event_id, promo_code, category)

            amounts = compute_amounts(category, quantity, sale)
            order = Order(
                user_id=user_id,
                event_id=event_id,
                subtotal=amounts.subtotal,
                discount_amount=amounts.discount,
                total_amount=amounts.total,
                status=OrderStatus.PENDING,
                flash_sale_id=sale.id if sale else None,
            )
            self.session.add(order)
            self.session.flush()

            self.session.add(OrderItem(
                order_id=order.id,
                ticket_id=ticket_id,
                quantity=quantity,
                price_at_time=amounts.unit_price,
            ))

            issued_at = utcnow().replace(microsecond=0)
            tickets: List[TicketPurchase] = [
                TicketPurchase(
                    user_id=user_id,
                    order_id=order.id,
                    ticket_id=ticket_id,
                    event_id=event_id,
                    purchased_at=issued_at,
                    credential_issued_at=issued_at,
                    transfer_path=[user_id],
                )
                for _ in range(quantity)
            ]
            self.session.add_all(tickets)
            self.session.commit()
        except ServiceError:
            self.session.rollback()
            raise
        except OperationalError as e:
            self.session.rollback()
            log.error(f"❌ Store unavailable during purchase of {ticket_id} by {user_id}: {e}")
            raise TransientInfrastructureError()

        log.info(
            f"✓ Order {order.id}: user={user_id} category={ticket_id} qty={quantity} "
            f"total={order.total_amount} remaining={category.available_quantity}"
        )

        credentials = [self.codec.issue(t) for t in tickets]

        self.notifier.notify_purchase(order.id)
        log_audit("TICKET_PURCHASE", "Order", order.id, user_id, {
            "ticket_id": ticket_id,
            "quantity": quantity,
            "total_amount": order.total_amount,
            "flash_sale_id": order.flash_sale_id,
        }, ip_address=ip_address)

        return {
            "order_id": order.id,
            "status": order.status.value,
            "subtotal": order.subtotal,
            "discount_amount": order.discount_amount,
            "total_amount": order.total_amount,
            "quantity": quantity,
            "qr_code": credentials[0]["qr_code"],
            "tickets": credentials,
        }
