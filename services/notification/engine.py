import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from sqlmodel import Session, select

from services.config import config
from services.db.connection import session_scope
from services.db.models import (
    Event,
    FlashSale,
    Notification,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    PurchaseStatus,
    RefundRequest,
    SendChannel,
    SendQueue,
    SendQueueStatus,
    TicketCategory,
    TicketPurchase,
    User,
)
from services.email import send_template
from services.utils.timezone import format_local, make_aware, utcnow

log = logging.getLogger(__name__)

PushSender = Callable[[str, Dict], Awaitable[bool]]


class NotificationEngine:
    """
    Notification engine: turns business events into in-app notifications and
    queued email/push deliveries.

    Producers call the ``notify_*`` helpers after their own transaction has
    committed; these never raise, a failed enqueue only gets logged.
    ``process_queue`` is the consumer side.

    Usage:
        engine = NotificationEngine()
        engine.notify_purchase(order_id)
        await engine.process_queue()
    """

    def __init__(self, push_sender: Optional[PushSender] = None):
        """
        Args:
            push_sender: async callable(user_id, payload) -> bool for real-time
                push; pushes are dropped (marked sent) when not configured
        """
        self.push_sender = push_sender

    # --- producer side ---

    def enqueue(self, session: Session, user: User, scope: str, title: str, message: str,
                email_fields: Optional[Dict] = None, ref_id: Optional[str] = None,
                notification_type: NotificationType = NotificationType.SYSTEM,
                event_id: Optional[str] = None, push: bool = False) -> int:
        """Write the in-app notification and queue email/push. Not committed here."""
        session.add(Notification(
            user_id=user.user_id,
            event_id=event_id,
            type=notification_type,
            title=title,
            message=message,
            data={"ref_id": ref_id} if ref_id else None,
        ))
        count = 1

        channels = []
        if email_fields is not None:
            channels.append(SendChannel.EMAIL)
        if push:
            channels.append(SendChannel.PUSH)

        for channel in channels:
            if ref_id and self._already_queued(session, user.user_id, channel, scope, ref_id):
                log.debug(f"Skipping duplicate {channel.value} for user {user.user_id}, ref {ref_id}")
                continue
            payload = {"title": title, "message": message}
            if channel == SendChannel.EMAIL:
                payload.update({"to": user.email, "template": scope, "fields": email_fields})
            session.add(SendQueue(
                user_id=user.user_id,
                channel=channel,
                scope=scope,
                payload=payload,
                status=SendQueueStatus.PENDING,
                ref_id=ref_id,
            ))
            count += 1
        return count

    def _already_queued(self, session: Session, user_id: str, channel: SendChannel, scope: str, ref_id: str) -> bool:
        stmt = select(SendQueue).where(
            SendQueue.user_id == user_id,
            SendQueue.channel == channel,
            SendQueue.scope == scope,
            SendQueue.ref_id == ref_id,
        )
        return session.exec(stmt).first() is not None

    def _safely(self, what: str, fn: Callable[[Session], int]) -> int:
        try:
            with session_scope() as session:
                return fn(session)
        except Exception as e:
            log.error(f"❌ Failed to enqueue {what}: {e}", exc_info=True)
            return 0

    def notify_purchase(self, order_id: str) -> int:
        def _run(session: Session) -> int:
            order = session.get(Order, order_id)
            if not order:
                return 0
            user = session.get(User, order.user_id)
            event = session.get(Event, order.event_id)
            item = session.exec(select(OrderItem).where(OrderItem.order_id == order_id)).first()
            category = session.get(TicketCategory, item.ticket_id) if item else None
            quantity = item.quantity if item else 0
            return self.enqueue(
                session, user,
                scope="purchase_confirmation",
                title="Ticket Purchase Confirmed",
                message=f"You purchased {quantity} ticket(s) for {event.title}",
                email_fields={
                    "name": user.display_name,
                    "quantity": quantity,
                    "category_name": category.name if category else "",
                    "event_title": event.title,
                    "order_id": order.id,
                    "total_amount": order.total_amount,
                    "event_time": format_local(event.start_time),
                    "location": event.location,
                },
                ref_id=order.id,
                notification_type=NotificationType.TICKET_PURCHASE,
                event_id=event.id,
                push=True,
            )
        return self._safely(f"purchase notification for order {order_id}", _run)

    def notify_transfer(self, purchase_id: str, sender_id: str) -> int:
        def _run(session: Session) -> int:
            purchase = session.get(TicketPurchase, purchase_id)
            sender = session.get(User, sender_id)
            recipient = session.get(User, purchase.user_id)
            event = session.get(Event, purchase.event_id)
            category = session.get(TicketCategory, purchase.ticket_id)
            hop = len(purchase.transfer_path or [])
            return self.enqueue(
                session, recipient,
                scope="ticket_transfer",
                title="Ticket Received",
                message=f"{sender.display_name} transferred a ticket for {event.title} to you",
                email_fields={
                    "name": recipient.display_name,
                    "sender_name": sender.display_name,
                    "category_name": category.name,
                    "event_title": event.title,
                    "event_time": format_local(event.start_time),
                },
                ref_id=f"{purchase.id}:{hop}",
                notification_type=NotificationType.TICKET_TRANSFER,
                event_id=event.id,
                push=True,
            )
        return self._safely(f"transfer notification for ticket {purchase_id}", _run)

    def notify_refund(self, refund_request_id: str) -> int:
        def _run(session: Session) -> int:
            request = session.get(RefundRequest, refund_request_id)
            user = session.get(User, request.user_id)
            order = session.get(Order, request.order_id)
            event = session.get(Event, order.event_id)
            status = request.status.value.lower()
            return self.enqueue(
                session, user,
                scope="refund_processed",
                title=f"Refund {status}",
                message=f"Your refund request for {event.title} was {status}",
                email_fields={
                    "name": user.display_name,
                    "order_id": order.id,
                    "event_title": event.title,
                    "status": status,
                    "amount": request.amount,
                    "notes": request.notes or "",
                },
                ref_id=request.id,
                notification_type=NotificationType.REFUND_PROCESSED,
                event_id=event.id,
            )
        return self._safely(f"refund notification for request {refund_request_id}", _run)

    def _ticket_holders(self, session: Session, event_id: str) -> List[User]:
        """Active users holding an ACTIVE ticket from a PAID order of the event."""
        stmt = (
            select(TicketPurchase.user_id)
            .join(Order, Order.id == TicketPurchase.order_id)
            .where(
                TicketPurchase.event_id == event_id,
                TicketPurchase.status == PurchaseStatus.ACTIVE,
                Order.status == OrderStatus.PAID,
            )
            .distinct()
        )
        users = [session.get(User, user_id) for user_id in session.exec(stmt).all()]
        return [u for u in users if u and u.active]

    def notify_welcome(self, user_id: str) -> int:
        def _run(session: Session) -> int:
            user = session.get(User, user_id)
            if not user:
                return 0
            return self.enqueue(
                session, user,
                scope="welcome",
                title="Welcome to MobiTickets",
                message="Your account is ready. Browse events and buy tickets.",
                email_fields={"name": user.display_name},
                ref_id=user.user_id,
            )
        return self._safely(f"welcome mail for {user_id}", _run)

    def notify_event_change(self, event_id: str, cancelled: bool, reason: str,
                            old_start: Optional[datetime] = None) -> int:
        """Tell ticket holders the event was postponed or cancelled. Returns users notified."""
        def _run(session: Session) -> int:
            event = session.get(Event, event_id)
            if cancelled:
                scope, notification_type = "event_cancelled", NotificationType.EVENT_CANCELLED
                title = f"Event Cancelled: {event.title}"
                message = (f"\"{event.title}\" has been cancelled. Reason: {reason}. "
                           "Refund processing will begin shortly.")
                fields = {"event_title": event.title, "reason": reason}
                ref_id = f"{event.id}:cancelled"
            else:
                scope, notification_type = "event_postponed", NotificationType.EVENT_POSTPONED
                old_time = format_local(old_start or event.start_time)
                new_time = format_local(event.start_time)
                title = f"Event Postponed: {event.title}"
                message = (f"\"{event.title}\" moved from {old_time} to {new_time}. Reason: {reason}. "
                           "Your tickets remain valid for the new date.")
                fields = {"event_title": event.title, "reason": reason,
                          "old_time": old_time, "new_time": new_time}
                ref_id = f"{event.id}:postponed:{int(make_aware(event.start_time).timestamp())}"

            holders = self._ticket_holders(session, event.id)
            for user in holders:
                self.enqueue(
                    session, user,
                    scope=scope,
                    title=title,
                    message=message,
                    email_fields=dict(fields, name=user.display_name),
                    ref_id=ref_id,
                    notification_type=notification_type,
                    event_id=event.id,
                    push=True,
                )
            log.info(f"Event {event.id} {scope}: notified {len(holders)} attendees")
            return len(holders)
        return self._safely(f"{'cancellation' if cancelled else 'postponement'} notice for event {event_id}", _run)

    def notify_flash_sale(self, sale_id: str) -> int:
        """Tell everyone holding an active ticket for the sale's event. Returns users notified."""
        def _run(session: Session) -> int:
            sale = session.get(FlashSale, sale_id)
            event = session.get(Event, sale.event_id)
            ends_at = format_local(sale.end_time)
            promo_line = f"Use code: {sale.promo_code}" if sale.promo_code else ""
            message = f"Save {sale.discount_percent:g}% on tickets for \"{event.title}\"! Offer ends {ends_at}. {promo_line}".strip()
            notified = 0
            for user in self._ticket_holders(session, sale.event_id):
                self.enqueue(
                    session, user,
                    scope="flash_sale",
                    title=f"⚡ Flash Sale: {sale.name}",
                    message=message,
                    email_fields={
                        "name": user.display_name,
                        "sale_name": sale.name,
                        "discount_percent": sale.discount_percent,
                        "event_title": event.title,
                        "ends_at": ends_at,
                        "promo_line": promo_line,
                    },
                    ref_id=sale.id,
                    notification_type=NotificationType.FLASH_SALE,
                    event_id=event.id,
                    push=True,
                )
                notified += 1
            log.info(f"Flash sale {sale.id}: notified {notified} attendees")
            return notified
        return self._safely(f"flash sale notification for {sale_id}", _run)

    # --- consumer side ---

    async def process_queue(self, limit: int = 50) -> int:
        """
        Deliver due queue items.

        Returns:
            Number of items delivered
        """
        loop = asyncio.get_running_loop()
        items = await loop.run_in_executor(None, self._get_pending_items, limit)

        sent_count = 0
        for item in items:
            try:
                delivered = await self._deliver(item)
            except Exception as e:
                log.error(f"Failed to deliver {item.channel.value} to user {item.user_id}: {e}")
                await loop.run_in_executor(None, self._mark_failed, item.id, str(e))
                continue

            if delivered:
                await loop.run_in_executor(None, self._mark_sent, item.id)
                sent_count += 1
            else:
                await loop.run_in_executor(None, self._mark_failed, item.id, "delivery rejected")

        if items:
            log.info(f"NotificationEngine: delivered {sent_count}/{len(items)} queued items")
        return sent_count

    async def _deliver(self, item: SendQueue) -> bool:
        payload = item.payload or {}
        if item.channel == SendChannel.EMAIL:
            return await send_template(payload["to"], payload["template"], **(payload.get("fields") or {}))
        if item.channel == SendChannel.PUSH:
            if not self.push_sender:
                log.debug(f"No push transport configured, dropping push for user {item.user_id}")
                return True
            return await self.push_sender(item.user_id, payload)
        log.warning(f"Unknown channel {item.channel} on queue item {item.id}")
        return True

    def _get_pending_items(self, limit: int) -> List[SendQueue]:
        with session_scope() as db:
            stmt = (
                select(SendQueue)
                .where(
                    SendQueue.status.in_([SendQueueStatus.PENDING, SendQueueStatus.RETRYING]),
                    (SendQueue.next_retry_at.is_(None)) | (SendQueue.next_retry_at <= utcnow()),
                )
                .order_by(SendQueue.created_at)
                .limit(limit)
            )
            return list(db.exec(stmt).all())

    def _mark_sent(self, item_id: int):
        with session_scope() as session:
            item = session.get(SendQueue, item_id)
            if item:
                item.status = SendQueueStatus.SENT
                item.sent_at = utcnow()
                item.updated_at = utcnow()
                session.add(item)

    def _mark_failed(self, item_id: int, error: str):
        """Schedule a retry with exponential backoff, or give up after NOTIFY_MAX_RETRY."""
        with session_scope() as session:
            item = session.get(SendQueue, item_id)
            if item:
                item.retry_count += 1
                item.error_message = error[:500] if error else None

                if item.retry_count >= config.NOTIFY_MAX_RETRY:
                    item.status = SendQueueStatus.FAILED
                    log.warning(f"⚠️ Giving up on queue item {item.id} after {item.retry_count} attempts")
                else:
                    item.status = SendQueueStatus.RETRYING
                    delay = config.NOTIFY_RETRY_BASE_SECONDS * (2 ** (item.retry_count - 1))
                    item.next_retry_at = utcnow() + timedelta(seconds=delay)

                item.updated_at = utcnow()
                session.add(item)


notification_engine = NotificationEngine()
