"""Flash sales and promo code redemption.

``validate_promo_code`` is a read-only preview for the checkout page. The
purchase path uses ``claim`` instead, which re-checks and then increments the
redemption counter with one conditional UPDATE in the purchase transaction.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, update
from sqlmodel import Session, select

from services.db.models import Event, FlashSale, TicketCategory, User
from services.errors import (
    DuplicateResource,
    EventNotFound,
    FlashSaleNotFound,
    InvalidInput,
    PromoCodeExhausted,
    PromoCodeInvalid,
    PromoCodeNotApplicable,
)
from services.events.service import ensure_can_manage
from services.utils.timezone import make_aware, utcnow

log = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def is_live(sale: FlashSale, at: Optional[datetime] = None) -> bool:
    at = at or utcnow()
    return sale.is_active and make_aware(sale.start_time) <= at <= make_aware(sale.end_time)


def applies_to(sale: FlashSale, category: TicketCategory) -> bool:
    """Empty list means every category. Entries are tiers or category ids."""
    if not sale.ticket_categories:
        return True
    tier = category.tier.value if hasattr(category.tier, "value") else category.tier
    return tier in sale.ticket_categories or category.id in sale.ticket_categories


def discount_terms(sale: FlashSale) -> Dict:
    remaining = None
    if sale.max_redemptions is not None:
        remaining = max(sale.max_redemptions - sale.current_redemptions, 0)
    return {
        "flash_sale_id": sale.id,
        "name": sale.name,
        "discount_percent": sale.discount_percent,
        "discount_amount": sale.discount_amount,
        "promo_code": sale.promo_code,
        "ends_at": make_aware(sale.end_time).isoformat(),
        "remaining_redemptions": remaining,
    }


class FlashSaleService:
    def __init__(self, session: Session):
        self.session = session

    # --- organizer CRUD ---

    def _get_event(self, event_id: str) -> Event:
        event = self.session.get(Event, event_id)
        if not event:
            raise EventNotFound()
        return event

    def get(self, sale_id: str) -> FlashSale:
        sale = self.session.get(FlashSale, sale_id)
        if not sale:
            raise FlashSaleNotFound()
        return sale

    def _ensure_code_free(self, code: str, exclude_id: Optional[str] = None):
        stmt = select(FlashSale).where(FlashSale.promo_code == code)
        existing = self.session.exec(stmt).first()
        if existing and existing.id != exclude_id:
            raise DuplicateResource("Promo code already exists")

    def create(self, user: User, event_id: str, name: str, discount_percent: float,
               start_time: datetime, end_time: datetime, description: Optional[str] = None,
               discount_amount: Optional[float] = None, max_redemptions: Optional[int] = None,
               promo_code: Optional[str] = None, ticket_categories: Optional[List[str]] = None) -> FlashSale:
        ensure_can_manage(self._get_event(event_id), user)

        start_time, end_time = make_aware(start_time), make_aware(end_time)
        if end_time <= start_time:
            raise InvalidInput("End time must be after start time")
        if not 0 < discount_percent <= 100:
            raise InvalidInput("Discount percent must be between 1 and 100")

        promo_code = normalize_code(promo_code)
        if promo_code:
            self._ensure_code_free(promo_code)

        sale = FlashSale(
            event_id=event_id,
            name=name,
            description=description,
            discount_percent=discount_percent,
            discount_amount=discount_amount,
            start_time=start_time,
            end_time=end_time,
            max_redemptions=max_redemptions,
            promo_code=promo_code,
            ticket_categories=list(ticket_categories or []),
        )
        self.session.add(sale)
        self.session.commit()
        self.session.refresh(sale)
        log.info(f"✓ Flash sale {sale.id} '{name}' created for event {event_id} (code={promo_code})")
        return sale

    def list_for_event(self, event_id: str, user: User) -> List[FlashSale]:
        ensure_can_manage(self._get_event(event_id), user)
        stmt = select(FlashSale).where(FlashSale.event_id == event_id).order_by(FlashSale.start_time.desc())
        return list(self.session.exec(stmt).all())

    def list_active(self, event_id: Optional[str] = None) -> List[FlashSale]:
        stmt = select(FlashSale).where(FlashSale.is_active == True)  # noqa: E712
        if event_id:
            stmt = stmt.where(FlashSale.event_id == event_id)
        now_time = utcnow()
        sales = [s for s in self.session.exec(stmt).all() if is_live(s, now_time)]
        return sorted(sales, key=lambda s: make_aware(s.end_time))

    def update(self, sale_id: str, user: User, **changes) -> FlashSale:
        sale = self.get(sale_id)
        ensure_can_manage(self._get_event(sale.event_id), user)

        if "promo_code" in changes:
            changes["promo_code"] = normalize_code(changes["promo_code"])
            if changes["promo_code"]:
                self._ensure_code_free(changes["promo_code"], exclude_id=sale.id)
        for key in ("start_time", "end_time"):
            if changes.get(key) is not None:
                changes[key] = make_aware(changes[key])
        if "ticket_categories" in changes:
            changes["ticket_categories"] = list(changes["ticket_categories"] or [])

        allowed = {
            "name", "description", "discount_percent", "discount_amount", "start_time", "end_time",
            "is_active", "max_redemptions", "promo_code", "ticket_categories",
        }
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidInput(f"Field '{sorted(unknown)[0]}' cannot be updated")

        start_time = changes.get("start_time") or make_aware(sale.start_time)
        end_time = changes.get("end_time") or make_aware(sale.end_time)
        if end_time <= start_time:
            raise InvalidInput("End time must be after start time")
        cap = changes.get("max_redemptions", sale.max_redemptions)
        if cap is not None and cap < sale.current_redemptions:
            raise InvalidInput(f"Already redeemed {sale.current_redemptions} times")
        if changes.get("discount_percent") is not None and not 0 < changes["discount_percent"] <= 100:
            raise InvalidInput("Discount percent must be between 1 and 100")

        for key, value in changes.items():
            setattr(sale, key, value)

        sale.updated_at = utcnow()
        self.session.add(sale)
        self.session.commit()
        self.session.refresh(sale)
        return sale

    def delete(self, sale_id: str, user: User) -> bool:
        sale = self.get(sale_id)
        ensure_can_manage(self._get_event(sale.event_id), user)
        # orders keep a reference to the sale they redeemed
        if sale.current_redemptions:
            raise InvalidInput("Flash sale has been redeemed; deactivate it instead")
        self.session.delete(sale)
        self.session.commit()
        log.info(f"Flash sale {sale_id} deleted by {user.user_id}")
        return True

    # --- redemption ---

    def _check(self, event_id: str, code: str, category: TicketCategory) -> FlashSale:
        code = normalize_code(code)
        sale = None
        if code:
            stmt = select(FlashSale).where(FlashSale.promo_code == code, FlashSale.event_id == event_id)
            sale = self.session.exec(stmt).first()
        if sale is None or not is_live(sale):
            raise PromoCodeInvalid()
        if sale.max_redemptions is not None and sale.current_redemptions >= sale.max_redemptions:
            raise PromoCodeExhausted()
        if category.event_id != event_id or not applies_to(sale, category):
            raise PromoCodeNotApplicable()
        return sale

    def validate_promo_code(self, event_id: str, code: str, category_id: str) -> Dict:
        """Preview the discount a code would give. Does not redeem."""
        category = self.session.get(TicketCategory, category_id)
        if category is None:
            raise PromoCodeNotApplicable()
        return discount_terms(self._check(event_id, code, category))

    def redeem(self, sale_id: str) -> FlashSale:
        """Count one redemption, unless the cap is already reached.

        Runs in the caller's transaction; not committed here.
        """
        stmt = (
            update(FlashSale)
            .where(FlashSale.id == sale_id)
            .where(FlashSale.is_active == True)  # noqa: E712
            .where(or_(
                FlashSale.max_redemptions.is_(None),
                FlashSale.current_redemptions < FlashSale.max_redemptions,
            ))
            .values(current_redemptions=FlashSale.current_redemptions + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        if result.rowcount == 0:
            sale = self.session.get(FlashSale, sale_id)
            if sale is None:
                raise FlashSaleNotFound()
            self.session.refresh(sale)
            if not sale.is_active:
                raise PromoCodeInvalid()
            log.info(f"Promo {sale.promo_code} exhausted ({sale.current_redemptions}/{sale.max_redemptions})")
            raise PromoCodeExhausted()

        sale = self.session.get(FlashSale, sale_id)
        self.session.refresh(sale)
        return sale

    def claim(self, event_id: str, code: str, category: TicketCategory) -> FlashSale:
        """Validate and redeem in one step, inside the purchase transaction."""
        sale = self._check(event_id, code, category)
        return self.redeem(sale.id)

    def notify_attendees(self, sale_id: str, user: User, notifier) -> int:
        """Announce the sale to current ticket holders of its event."""
        sale = self.get(sale_id)
        ensure_can_manage(self._get_event(sale.event_id), user)
        return notifier.notify_flash_sale(sale.id)
