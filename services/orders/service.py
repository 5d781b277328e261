"""Orders after checkout: tickets view, payment status, cancellation, refunds."""

import logging
from typing import Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from services.audit import log_audit
from services.db.models import (
    Event,
    Order,
    OrderItem,
    OrderStatus,
    PurchaseStatus,
    RefundRequest,
    RefundRequestStatus,
    TicketCategory,
    TicketPurchase,
    User,
    UserRole,
)
from services.errors import (
    DuplicateResource,
    InvalidOrderState,
    OrderNotFound,
    PartiallyUsed,
    RefundRequestNotFound,
    ServiceError,
    Unauthorized,
)
from services.notification.engine import NotificationEngine, notification_engine
from services.tickets.credentials import CredentialCodec
from services.tickets.lifecycle import TicketLifecycle
from services.utils.timezone import make_aware, utcnow

log = logging.getLogger(__name__)


def _iso(dt):
    return make_aware(dt).isoformat() if dt else None


class OrderService:
    def __init__(self, session: Session, codec: Optional[CredentialCodec] = None,
                 notifier: Optional[NotificationEngine] = None):
        self.session = session
        self.codec = codec or CredentialCodec()
        self.notifier = notifier or notification_engine

    def get_order(self, order_id: str) -> Order:
        order = self.session.get(Order, order_id)
        if not order:
            raise OrderNotFound()
        return order

    # --- attendee views ---

    def list_my_tickets(self, user_id: str) -> List[Dict]:
        """Orders the user placed or holds tickets from, newest first.

        Each order lists only the tickets the user currently holds, so a ticket
        given away disappears from the buyer's view and shows up for the recipient.
        """
        held = list(self.session.exec(
            select(TicketPurchase).where(TicketPurchase.user_id == user_id)
        ).all())
        held_order_ids = {t.order_id for t in held}

        stmt = select(Order).where(or_(Order.user_id == user_id, Order.id.in_(list(held_order_ids))))
        orders = sorted(self.session.exec(stmt).all(), key=lambda o: make_aware(o.created_at), reverse=True)

        result = []
        for order in orders:
            event = self.session.get(Event, order.event_id)
            items = self.session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
            result.append({
                "id": order.id,
                "status": order.status.value,
                "total_amount": order.total_amount,
                "discount_amount": order.discount_amount,
                "created_at": _iso(order.created_at),
                "paid_at": _iso(order.paid_at),
                "is_buyer": order.user_id == user_id,
                "event": {
                    "id": event.id,
                    "title": event.title,
                    "location": event.location,
                    "start_time": _iso(event.start_time),
                },
                "items": [
                    {
                        "ticket_id": item.ticket_id,
                        "name": self.session.get(TicketCategory, item.ticket_id).name,
                        "quantity": item.quantity,
                        "price_at_time": item.price_at_time,
                    }
                    for item in items
                ],
                "tickets": [
                    {
                        "purchase_id": t.id,
                        "ticket_id": t.ticket_id,
                        "status": t.status.value,
                        "used_at": _iso(t.used_at),
                    }
                    for t in held if t.order_id == order.id
                ],
            })
        return result

    def get_credentials(self, order_id: str, user_id: str) -> Dict:
        """QR credentials for the tickets of ``order_id`` that ``user_id`` holds."""
        order = self.get_order(order_id)
        held = list(self.session.exec(
            select(TicketPurchase).where(
                TicketPurchase.order_id == order_id,
                TicketPurchase.user_id == user_id,
            )
        ).all())
        if order.user_id != user_id and not held:
            raise Unauthorized("Unauthorized: This is not your ticket")

        live = [t for t in held if t.status != PurchaseStatus.REFUNDED]
        return {
            "order_id": order.id,
            "status": order.status.value,
            "tickets": [dict(self.codec.issue(t), status=t.status.value) for t in live],
        }

    # --- payment status ---

    def mark_paid(self, order_id: str, gateway_tx_id: Optional[str] = None) -> Order:
        """PENDING -> PAID; what the payment gateway callback invokes."""
        order = self.get_order(order_id)
        now_time = utcnow()
        result = self.session.exec(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.PAID, paid_at=now_time, gateway_tx_id=gateway_tx_id, updated_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.refresh(order)
            raise InvalidOrderState(f"Order is {order.status.value}, only PENDING orders can be paid")
        self.session.commit()
        self.session.refresh(order)
        log.info(f"✓ Order {order_id} paid (tx={gateway_tx_id})")
        log_audit("ORDER_PAID", "Order", order_id, order.user_id, {"gateway_tx_id": gateway_tx_id})
        return order

    def cancel(self, order_id: str, actor: User) -> Order:
        order = self.get_order(order_id)
        if actor.role != UserRole.ADMIN and order.user_id != actor.user_id:
            raise Unauthorized("You can only cancel your own orders")

        lifecycle = TicketLifecycle(self.session, self.codec)
        retired = lifecycle.cancel(order_id)
        self.session.commit()
        self.session.refresh(order)
        log_audit("ORDER_CANCELLED", "Order", order_id, actor.user_id, {"tickets": len(retired)})
        return order

    # --- refunds ---

    def request_refund(self, order_id: str, user: User, reason: str) -> RefundRequest:
        order = self.get_order(order_id)
        if order.user_id != user.user_id:
            raise Unauthorized("You can only request refunds for your own orders")
        if order.status != OrderStatus.PAID:
            raise InvalidOrderState("Only paid orders can be refunded")

        used = self.session.exec(
            select(TicketPurchase).where(
                TicketPurchase.order_id == order_id,
                TicketPurchase.status == PurchaseStatus.USED,
            )
        ).first()
        if used:
            raise PartiallyUsed()

        existing = self.session.exec(
            select(RefundRequest).where(
                RefundRequest.order_id == order_id,
                RefundRequest.status == RefundRequestStatus.PENDING,
            )
        ).first()
        if existing:
            raise DuplicateResource("A refund request for this order is already pending")

        request = RefundRequest(
            order_id=order_id,
            user_id=user.user_id,
            reason=reason,
            amount=order.total_amount,
        )
        self.session.add(request)
        self.session.commit()
        self.session.refresh(request)
        log.info(f"Refund requested for order {order_id} by {user.user_id}")
        log_audit("REFUND_REQUESTED", "RefundRequest", request.id, user.user_id,
                  {"order_id": order_id, "amount": request.amount})
        return request

    def list_refund_requests(self, status: Optional[RefundRequestStatus] = None,
                             page: int = 1, limit: int = 20) -> Dict:
        stmt = select(RefundRequest)
        count_stmt = select(func.count()).select_from(RefundRequest)
        if status:
            stmt = stmt.where(RefundRequest.status == status)
            count_stmt = count_stmt.where(RefundRequest.status == status)
        total = self.session.exec(count_stmt).one()
        page_items = list(self.session.exec(
            stmt.order_by(RefundRequest.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all())
        return {
            "requests": page_items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }

    def review_refund_request(self, request_id: str, admin: User, approve: bool,
                              notes: Optional[str] = None) -> RefundRequest:
        """Approve or reject. Approval refunds the whole order in the same transaction."""
        if admin.role != UserRole.ADMIN:
            raise Unauthorized("Admin access required")

        request = self.session.get(RefundRequest, request_id)
        if not request:
            raise RefundRequestNotFound()

        status = RefundRequestStatus.APPROVED if approve else RefundRequestStatus.REJECTED
        now_time = utcnow()
        result = self.session.exec(
            update(RefundRequest)
            .where(RefundRequest.id == request_id, RefundRequest.status == RefundRequestStatus.PENDING)
            .values(status=status, reviewed_by=admin.user_id, reviewed_at=now_time, notes=notes, updated_at=now_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidOrderState("Refund request has already been reviewed")

        if approve:
            try:
                TicketLifecycle(self.session, self.codec).refund(request.order_id)
            except ServiceError:
                self.session.rollback()
                raise

        self.session.commit()
        self.session.refresh(request)
        log.info(f"Refund request {request_id} {status.value.lower()} by {admin.user_id}")

        self.notifier.notify_refund(request.id)
        log_audit("REFUND_REQUEST_REVIEWED", "RefundRequest", request_id, admin.user_id, {
            "status": status.value,
            "notes": notes,
            "amount": request.amount,
            "order_id": request.order_id,
        })
        return request
