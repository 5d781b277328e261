"""Organizer catalogue: events and ticket categories."""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from services.audit import log_audit
from services.config import config
from services.db.models import Event, EventStatus, TicketCategory, TicketTier, User, UserRole
from services.errors import (
    CategoryNotFound,
    EventNotFound,
    InvalidInput,
    ServiceError,
    Unauthorized,
)
from services.inventory import InventoryLedger
from services.notification.engine import NotificationEngine, notification_engine
from services.utils.timezone import make_aware, utcnow

log = logging.getLogger(__name__)

# Events that accept purchases and show in the public catalogue
SELLING_STATUSES = (EventStatus.PUBLISHED, EventStatus.POSTPONED)


def ensure_can_manage(event: Event, user: User):
    """Organizers manage their own events; admins manage everything."""
    if user.role == UserRole.ADMIN:
        return
    if user.role != UserRole.ORGANIZER or event.organizer_id != user.user_id:
        raise Unauthorized("You can only manage your own events")


class EventService:
    def __init__(self, session: Session):
        self.session = session

    def get_event(self, event_id: str) -> Event:
        event = self.session.get(Event, event_id)
        if not event:
            raise EventNotFound()
        return event

    def get_category(self, category_id: str) -> TicketCategory:
        category = self.session.get(TicketCategory, category_id)
        if not category:
            raise CategoryNotFound()
        return category

    def list_categories(self, event_id: str) -> List[TicketCategory]:
        stmt = select(TicketCategory).where(TicketCategory.event_id == event_id).order_by(TicketCategory.price)
        return list(self.session.exec(stmt).all())

    def create_event(self, organizer: User, title: str, start_time: datetime, end_time: datetime,
                     description: str = "", location: str = "") -> Event:
        if organizer.role not in (UserRole.ORGANIZER, UserRole.ADMIN):
            raise Unauthorized("Only organizers can create events")
        start_time, end_time = make_aware(start_time), make_aware(end_time)
        if end_time <= start_time:
            raise InvalidInput("Event must end after it starts")

        event = Event(
            organizer_id=organizer.user_id,
            title=title,
            description=description,
            location=location,
            start_time=start_time,
            end_time=end_time,
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        log.info(f"✓ Event created: {event.id} '{title}' by {organizer.user_id}")
        return event

    def list_events(self, upcoming: bool = False) -> List[Event]:
        """Public catalogue, soonest first. Drafts and cancelled events stay out."""
        stmt = select(Event).where(Event.status.in_(SELLING_STATUSES)).order_by(Event.start_time)
        events = list(self.session.exec(stmt).all())
        if upcoming:
            now_time = utcnow()
            events = [e for e in events if make_aware(e.start_time) >= now_time]
        return events

    def publish_event(self, event_id: str, user: User) -> Event:
        event = self.get_event(event_id)
        ensure_can_manage(event, user)
        if event.status == EventStatus.CANCELLED:
            raise InvalidInput("Cancelled events cannot be published")
        if not self.list_categories(event_id):
            raise InvalidInput("Event must have at least one ticket category before publishing")
        if make_aware(event.start_time) <= utcnow():
            raise InvalidInput("Event start time must be in the future")

        event.status = EventStatus.PUBLISHED
        event.updated_at = utcnow()
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        log.info(f"✓ Event published: {event.id}")
        log_audit("EVENT_PUBLISHED", "Event", event.id, user.user_id)
        return event

    def postpone_event(self, event_id: str, user: User, start_time: datetime, end_time: datetime,
                       reason: str, notifier: Optional[NotificationEngine] = None) -> Tuple[Event, int]:
        """Move the event to a new date. Tickets stay valid; holders are told.

        Returns:
            (event, number of attendees notified)
        """
        event = self.get_event(event_id)
        ensure_can_manage(event, user)
        if event.status in (EventStatus.CANCELLED, EventStatus.COMPLETED):
            raise InvalidInput(f"A {event.status.value.lower()} event cannot be postponed")
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required")
        start_time, end_time = make_aware(start_time), make_aware(end_time)
        if end_time <= start_time:
            raise InvalidInput("Event must end after it starts")
        if start_time <= utcnow():
            raise InvalidInput("New start time must be in the future")

        old_start = make_aware(event.start_time)
        if event.original_start_time is None:
            event.original_start_time = old_start
        event.start_time = start_time
        event.end_time = end_time
        event.status = EventStatus.POSTPONED
        event.status_reason = reason.strip()
        event.postponed_at = utcnow()
        event.updated_at = utcnow()
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        log.info(f"Event {event.id} postponed to {start_time.isoformat()}")

        notified = (notifier or notification_engine).notify_event_change(
            event.id, cancelled=False, reason=event.status_reason, old_start=old_start,
        )
        log_audit("EVENT_POSTPONED", "Event", event.id, user.user_id, {
            "old_start_time": old_start.isoformat(),
            "new_start_time": start_time.isoformat(),
            "reason": event.status_reason,
            "notified": notified,
        })
        return event, notified

    def cancel_event(self, event_id: str, user: User, reason: str,
                     notifier: Optional[NotificationEngine] = None) -> Tuple[Event, int]:
        """Stop the event for good. Sales close at once; holders are told.

        Returns:
            (event, number of attendees notified)
        """
        event = self.get_event(event_id)
        ensure_can_manage(event, user)
        if event.status in (EventStatus.CANCELLED, EventStatus.COMPLETED):
            raise InvalidInput(f"Event is already {event.status.value.lower()}")
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required")

        event.status = EventStatus.CANCELLED
        event.status_reason = reason.strip()
        event.cancelled_at = utcnow()
        event.updated_at = utcnow()
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        log.warning(f"⚠️ Event {event.id} cancelled by {user.user_id}: {event.status_reason}")

        notified = (notifier or notification_engine).notify_event_change(
            event.id, cancelled=True, reason=event.status_reason,
        )
        log_audit("EVENT_CANCELLED", "Event", event.id, user.user_id, {
            "reason": event.status_reason,
            "notified": notified,
        })
        return event, notified

    def create_category(self, event_id: str, user: User, name: str, price: float, total_quantity: int,
                        tier: TicketTier = TicketTier.REGULAR, max_per_purchase: Optional[int] = None,
                        description: Optional[str] = None, group_discount_enabled: bool = False,
                        group_min_size: Optional[int] = None, group_max_size: Optional[int] = None,
                        group_discount_percent: Optional[float] = None,
                        sales_start_time: Optional[datetime] = None,
                        sales_end_time: Optional[datetime] = None) -> TicketCategory:
        event = self.get_event(event_id)
        ensure_can_manage(event, user)

        if price < 0:
            raise InvalidInput("Price cannot be negative")
        if total_quantity < 0:
            raise InvalidInput("Total quantity cannot be negative")
        if sales_start_time and sales_end_time and make_aware(sales_end_time) <= make_aware(sales_start_time):
            raise InvalidInput("Sales window must end after it starts")
        if group_discount_enabled:
            _check_group_discount(group_min_size, group_max_size, group_discount_percent)

        category = TicketCategory(
            event_id=event_id,
            tier=tier,
            name=name,
            description=description,
            price=price,
            total_quantity=total_quantity,
            available_quantity=total_quantity,
            max_per_purchase=max_per_purchase or config.MAX_PER_PURCHASE_DEFAULT,
            group_discount_enabled=group_discount_enabled,
            group_min_size=group_min_size,
            group_max_size=group_max_size,
            group_discount_percent=group_discount_percent,
            sales_start_time=make_aware(sales_start_time) if sales_start_time else None,
            sales_end_time=make_aware(sales_end_time) if sales_end_time else None,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        log.info(f"✓ Category {category.id} ({name}, {total_quantity} @ {price}) added to event {event_id}")
        return category

    def update_category(self, category_id: str, user: User, **changes) -> TicketCategory:
        """Update price, limits, sales window or capacity.

        Capacity goes through the ledger so it never drops below what is sold.
        Existing orders keep their price snapshot.
        """
        category = self.get_category(category_id)
        ensure_can_manage(self.get_event(category.event_id), user)

        new_total = changes.pop("total_quantity", None)
        for key in ("sales_start_time", "sales_end_time"):
            if changes.get(key) is not None:
                changes[key] = make_aware(changes[key])
        if changes.get("price") is not None and changes["price"] < 0:
            raise InvalidInput("Price cannot be negative")

        allowed = {
            "name", "description", "price", "max_per_purchase", "tier",
            "group_discount_enabled", "group_min_size", "group_max_size", "group_discount_percent",
            "sales_start_time", "sales_end_time",
        }
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidInput(f"Field '{sorted(unknown)[0]}' cannot be updated")
        changes = {key: value for key, value in changes.items() if value is not None}

        def merged(key):
            return changes.get(key, getattr(category, key))

        if merged("group_discount_enabled"):
            _check_group_discount(merged("group_min_size"), merged("group_max_size"), merged("group_discount_percent"))
        start, end = merged("sales_start_time"), merged("sales_end_time")
        if start and end and make_aware(end) <= make_aware(start):
            raise InvalidInput("Sales window must end after it starts")

        try:
            for key, value in changes.items():
                setattr(category, key, value)
            category.updated_at = utcnow()
            self.session.add(category)
            self.session.flush()

            if new_total is not None:
                category = InventoryLedger(self.session).adjust_total(category_id, new_total)
        except ServiceError:
            self.session.rollback()
            raise

        self.session.commit()
        self.session.refresh(category)
        return category


def _check_group_discount(min_size, max_size, percent):
    if not percent or not 0 < percent <= 100:
        raise InvalidInput("Group discount percent must be between 0 and 100")
    if not min_size or min_size < 2:
        raise InvalidInput("Group discount needs a minimum group size of at least 2")
    if max_size and max_size < min_size:
        raise InvalidInput("Group maximum size must not be below the minimum")
