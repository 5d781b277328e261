"""
Ticket instance state machine.

    ACTIVE -> USED        gate scan, one time only
    ACTIVE -> ACTIVE      transfer, new owner, same credential
    ACTIVE -> REFUNDED    refund or cancellation of the whole order

Each transition is one conditional UPDATE guarded on the current status, so
two racing scans (or a scan racing a refund) have exactly one winner.
"""
import logging
from collections import Counter
from typing import Dict, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from services.audit import log_audit
from services.auth.wallet import is_address
from services.db.models import (
    Event,
    Order,
    OrderStatus,
    PurchaseStatus,
    TicketCategory,
    TicketPurchase,
    User,
)
from services.errors import (
    AlreadyUsed,
    CredentialNotRecognized,
    InvalidInput,
    InvalidOrderState,
    NotTransferable,
    OrderNotFound,
    OrderNotPaid,
    PartiallyUsed,
    TicketNotFound,
    Unauthorized,
    UserNotFound,
)
from services.events.service import ensure_can_manage
from services.inventory import InventoryLedger
from services.notification.engine import NotificationEngine, notification_engine
from services.tickets.credentials import CredentialCodec, issued_at_seconds
from services.utils.timezone import make_aware, utcnow

log = logging.getLogger(__name__)


class TicketLifecycle:
    def __init__(self, session: Session, codec: Optional[CredentialCodec] = None,
                 notifier: Optional[NotificationEngine] = None):
        self.session = session
        self.codec = codec or CredentialCodec()
        self.notifier = notifier or notification_engine

    # --- gate ---

    def validate(self, token: str, event_id: Optional[str] = None, scanner: Optional[User] = None) -> Dict:
        """Admit the holder of ``token``: ACTIVE -> USED.

        ``event_id`` is the event the gate is scanning for; a ticket for any
        other event is not recognised there. ``scanner`` must manage the event.

        Raises:
            InvalidCredentialFormat, CredentialNotRecognized, OrderNotPaid, AlreadyUsed
        """
        payload = self.codec.decode(token)

        purchase = self.session.get(TicketPurchase, payload.purchase_id)
        if (
            purchase is None
            or purchase.order_id != payload.order_id
            or purchase.ticket_id != payload.ticket_id
            or issued_at_seconds(purchase.credential_issued_at) != int(payload.issued_at.timestamp())
        ):
            log.warning(f"⚠️ Unrecognised credential for ticket {payload.purchase_id}")
            raise CredentialNotRecognized()

        if event_id and purchase.event_id != event_id:
            log.warning(f"⚠️ Ticket {purchase.id} for event {purchase.event_id} scanned at event {event_id}")
            raise CredentialNotRecognized("Ticket is not valid for this event")

        event = self.session.get(Event, purchase.event_id)
        if scanner is not None:
            ensure_can_manage(event, scanner)

        order = self.session.get(Order, purchase.order_id)
        if order.status != OrderStatus.PAID:
            raise OrderNotPaid()
        if purchase.status != PurchaseStatus.ACTIVE:
            raise self._not_active(purchase)

        now_time = utcnow()
        stmt = (
            update(TicketPurchase)
            .where(TicketPurchase.id == purchase.id)
            .where(TicketPurchase.status == PurchaseStatus.ACTIVE)
            .values(status=PurchaseStatus.USED, used_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if self.session.exec(stmt).rowcount == 0:
            self.session.rollback()
            self.session.refresh(purchase)
            raise self._not_active(purchase)
        self.session.commit()
        self.session.refresh(purchase)

        attendee = self.session.get(User, purchase.user_id)
        category = self.session.get(TicketCategory, purchase.ticket_id)
        log.info(f"✓ Admitted ticket {purchase.id} ({category.name}) for {attendee.display_name} at {event.title}")
        log_audit("TICKET_VALIDATED", "TicketPurchase", purchase.id, scanner.user_id if scanner else None,
                  {"event_id": event.id, "holder": attendee.user_id})

        return {
            "valid": True,
            "purchase_id": purchase.id,
            "order_id": purchase.order_id,
            "used_at": make_aware(purchase.used_at).isoformat(),
            "attendee": {
                "id": attendee.user_id,
                "name": attendee.display_name,
                "email": attendee.email,
            },
            "event": {
                "id": event.id,
                "title": event.title,
                "location": event.location,
                "start_time": make_aware(event.start_time).isoformat(),
            },
            "ticket_category": {
                "id": category.id,
                "name": category.name,
                "tier": category.tier.value,
            },
        }

    @staticmethod
    def _not_active(purchase: TicketPurchase):
        if purchase.status == PurchaseStatus.REFUNDED:
            return AlreadyUsed("Ticket has been refunded")
        used_at = f" at {make_aware(purchase.used_at).isoformat()}" if purchase.used_at else ""
        return AlreadyUsed(f"Ticket already used{used_at}")

    # --- transfer ---

    def transfer(self, purchase_id: str, from_user_id: str, to_email: str) -> Dict:
        """Hand an ACTIVE ticket to another registered user, found by email or wallet address.

        The credential stays the same.
        """
        purchase = self.session.get(TicketPurchase, purchase_id)
        if purchase is None:
            raise TicketNotFound()
        if purchase.user_id != from_user_id:
            raise Unauthorized("You do not own this ticket")
        if purchase.status != PurchaseStatus.ACTIVE:
            raise NotTransferable(f"Ticket is {purchase.status.value.lower()} and cannot be transferred")

        recipient_key = to_email.strip().lower()
        if is_address(recipient_key):
            match = User.wallet_address == recipient_key
        else:
            match = User.email == recipient_key
        recipient = self.session.exec(
            select(User).where(match, User.is_deleted == False)  # noqa: E712
        ).first()
        if recipient is None or not recipient.active:
            raise UserNotFound("Recipient not found")
        if recipient.user_id == from_user_id:
            raise InvalidInput("You cannot transfer a ticket to yourself")

        now_time = utcnow()
        stmt = (
            update(TicketPurchase)
            .where(TicketPurchase.id == purchase_id)
            .where(TicketPurchase.user_id == from_user_id)
            .where(TicketPurchase.status == PurchaseStatus.ACTIVE)
            .values(user_id=recipient.user_id, transferred_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if self.session.exec(stmt).rowcount == 0:
            self.session.rollback()
            raise NotTransferable("Ticket changed while transferring, please retry")

        self.session.refresh(purchase)
        purchase.transfer_path = list(purchase.transfer_path or [from_user_id]) + [recipient.user_id]
        self.session.add(purchase)
        self.session.commit()
        self.session.refresh(purchase)

        log.info(f"✓ Ticket {purchase_id} transferred {from_user_id} -> {recipient.user_id}")
        self.notifier.notify_transfer(purchase.id, from_user_id)
        log_audit("TICKET_TRANSFER", "TicketPurchase", purchase.id, from_user_id, {"to": recipient.user_id})
        return {
            "message": f"Ticket transferred to {recipient.email}",
            "purchase_id": purchase.id,
            "recipient_id": recipient.user_id,
            "recipient_email": recipient.email,
            "transfer_path": purchase.transfer_path,
        }

    # --- refund / cancel ---

    def refund(self, order_id: str) -> List[TicketPurchase]:
        """PAID order -> REFUNDED, every ticket ACTIVE -> REFUNDED, inventory returned.

        All or nothing: if any ticket of the order was already used the whole
        refund fails with ``PartiallyUsed``. Not committed here; runs inside
        the caller's transaction (refund review).
        """
        return self._retire_order(order_id, OrderStatus.PAID, OrderStatus.REFUNDED)

    def cancel(self, order_id: str) -> List[TicketPurchase]:
        """Unpaid order -> CANCELLED; its tickets are retired and inventory returned."""
        return self._retire_order(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED)

    def _retire_order(self, order_id: str, expected: OrderStatus, target: OrderStatus) -> List[TicketPurchase]:
        order = self.session.get(Order, order_id)
        if order is None:
            raise OrderNotFound()

        now_time = utcnow()
        result = self.session.exec(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, updated_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.refresh(order)
            raise InvalidOrderState(f"Order is {order.status.value}, expected {expected.value}")

        self.session.exec(
            update(TicketPurchase)
            .where(TicketPurchase.order_id == order_id, TicketPurchase.status == PurchaseStatus.ACTIVE)
            .values(status=PurchaseStatus.REFUNDED, refunded_at=now_time)
            .execution_options(synchronize_session=False)
        )

        used = self.session.exec(
            select(func.count()).select_from(TicketPurchase).where(
                TicketPurchase.order_id == order_id,
                TicketPurchase.status == PurchaseStatus.USED,
            )
        ).one()
        if used:
            self.session.rollback()
            log.info(f"Refund of order {order_id} refused: {used} ticket(s) already used")
            raise PartiallyUsed(f"{used} ticket(s) in this order have already been used")

        retired = list(self.session.exec(
            select(TicketPurchase).where(
                TicketPurchase.order_id == order_id,
                TicketPurchase.status == PurchaseStatus.REFUNDED,
            )
        ).all())
        for ticket in retired:
            self.session.refresh(ticket)

        ledger = InventoryLedger(self.session)
        for ticket_id, count in Counter(t.ticket_id for t in retired).items():
            ledger.release(ticket_id, count)

        self.session.refresh(order)
        log.info(f"Order {order_id} {expected.value} -> {target.value}, {len(retired)} ticket(s) retired")
        return retired
