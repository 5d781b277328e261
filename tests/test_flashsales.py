"""Flash sales: organizer CRUD, promo validation and the redemption cap."""
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlmodel import select

from conftest import get_user
from services.db.connection import session_scope
from services.db.models import FlashSale, Notification, NotificationType, TicketCategory
from services.errors import (
    ConflictError,
    DuplicateResource,
    InvalidInput,
    PromoCodeExhausted,
    PromoCodeInvalid,
    PromoCodeNotApplicable,
    Unauthorized,
)
from services.flashsales.service import FlashSaleService
from services.notification.engine import notification_engine
from services.orders.service import OrderService
from services.tickets import PurchaseService
from services.utils.timezone import utcnow


def create_sale(seed, owner=None, **fields):
    now = utcnow()
    params = {
        "name": "Launch Week",
        "discount_percent": 10.0,
        "start_time": now - timedelta(hours=1),
        "end_time": now + timedelta(days=1),
        "promo_code": "JAZZ10",
    }
    params.update(fields)
    with session_scope() as session:
        return FlashSaleService(session).create(get_user(owner or seed.organizer), seed.event_id, **params)


def validate(seed, code, category_id=None):
    with session_scope() as session:
        return FlashSaleService(session).validate_promo_code(seed.event_id, code, category_id or seed.regular_id)


def buy(user_id, ticket_id, quantity=1, promo_code=None):
    with session_scope() as session:
        return PurchaseService(session).purchase(user_id, ticket_id, quantity, promo_code)


def test_validate_returns_terms_without_redeeming(seed):
    sale = create_sale(seed, max_redemptions=5)
    terms = validate(seed, " jazz10 ")
    assert terms["flash_sale_id"] == sale.id
    assert terms["discount_percent"] == 10.0
    assert terms["remaining_redemptions"] == 5

    with session_scope() as session:
        assert session.get(FlashSale, sale.id).current_redemptions == 0


def test_validate_rejections(seed):
    now = utcnow()
    create_sale(seed, promo_code="GONE", start_time=now - timedelta(days=2), end_time=now - timedelta(days=1))
    create_sale(seed, promo_code="VIPONLY", ticket_categories=["VIP"])
    paused = create_sale(seed, promo_code="PAUSED")
    with session_scope() as session:
        FlashSaleService(session).update(paused.id, get_user(seed.organizer), is_active=False)

    with pytest.raises(PromoCodeInvalid):
        validate(seed, "NOSUCHCODE")
    with pytest.raises(PromoCodeInvalid):
        validate(seed, "GONE")
    with pytest.raises(PromoCodeInvalid):
        validate(seed, "PAUSED")
    with pytest.raises(PromoCodeNotApplicable):
        validate(seed, "VIPONLY", seed.regular_id)
    assert validate(seed, "VIPONLY", seed.vip_id)["promo_code"] == "VIPONLY"


def test_applicable_categories_accept_ids(seed):
    create_sale(seed, promo_code="REGONLY", ticket_categories=[seed.regular_id])
    assert validate(seed, "REGONLY", seed.regular_id)["promo_code"] == "REGONLY"
    with pytest.raises(PromoCodeNotApplicable):
        validate(seed, "REGONLY", seed.vip_id)


def test_exhausted_code(seed):
    create_sale(seed, max_redemptions=1)
    buy(seed.alice, seed.regular_id, promo_code="JAZZ10")

    with pytest.raises(PromoCodeExhausted):
        validate(seed, "JAZZ10")
    with pytest.raises(PromoCodeExhausted):
        buy(seed.bob, seed.regular_id, promo_code="JAZZ10")


def test_concurrent_checkouts_respect_cap(seed):
    cap, shoppers = 3, 12
    sale = create_sale(seed, max_redemptions=cap)

    def attempt(_):
        try:
            buy(seed.alice, seed.regular_id, promo_code="JAZZ10")
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=shoppers) as pool:
        outcomes = list(pool.map(attempt, range(shoppers)))

    assert outcomes.count("ok") == cap
    with session_scope() as session:
        assert session.get(FlashSale, sale.id).current_redemptions == cap
        # rejected checkouts gave their reservation back
        assert session.get(TicketCategory, seed.regular_id).available_quantity == 100 - cap


def test_flat_amount_takes_precedence(seed):
    create_sale(seed, discount_amount=300.0)
    result = buy(seed.alice, seed.regular_id, promo_code="JAZZ10")
    assert (result["discount_amount"], result["total_amount"]) == (300.0, 700.0)


def test_create_checks(seed):
    now = utcnow()
    with pytest.raises(InvalidInput):
        create_sale(seed, promo_code="BACKWARDS", start_time=now, end_time=now - timedelta(hours=1))
    create_sale(seed)
    with pytest.raises(DuplicateResource):
        create_sale(seed, promo_code="jazz10")
    with pytest.raises(Unauthorized):
        create_sale(seed, owner=seed.rival, promo_code="RIVAL")
    with pytest.raises(Unauthorized):
        create_sale(seed, owner=seed.alice, promo_code="SNEAKY")


def test_update_cannot_lower_cap_below_redemptions(seed):
    sale = create_sale(seed, max_redemptions=5)
    buy(seed.alice, seed.regular_id, promo_code="JAZZ10")
    buy(seed.bob, seed.regular_id, promo_code="JAZZ10")

    with session_scope() as session:
        with pytest.raises(InvalidInput):
            FlashSaleService(session).update(sale.id, get_user(seed.organizer), max_redemptions=1)


def test_list_active_only_live_sales(seed):
    now = utcnow()
    live = create_sale(seed)
    create_sale(seed, promo_code="LATER", start_time=now + timedelta(days=1), end_time=now + timedelta(days=2))
    with session_scope() as session:
        assert [s.id for s in FlashSaleService(session).list_active(seed.event_id)] == [live.id]


def test_notify_attendees_reaches_paid_holders(seed):
    sale = create_sale(seed)
    paid = buy(seed.alice, seed.regular_id)
    buy(seed.bob, seed.regular_id)  # unpaid, not notified
    with session_scope() as session:
        OrderService(session).mark_paid(paid["order_id"])

    with session_scope() as session:
        service = FlashSaleService(session)
        with pytest.raises(Unauthorized):
            service.notify_attendees(sale.id, get_user(seed.rival), notification_engine)
        assert service.notify_attendees(sale.id, get_user(seed.organizer), notification_engine) == 1

    with session_scope() as session:
        notes = session.exec(select(Notification).where(Notification.type == NotificationType.FLASH_SALE)).all()
        assert [n.user_id for n in notes] == [seed.alice]
