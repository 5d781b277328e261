"""Purchase orchestration: atomic reserve, order creation, credentials."""
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlmodel import select

from conftest import add_category, get_user
from services.db.connection import session_scope
from services.db.models import (
    Order,
    OrderItem,
    OrderStatus,
    SendChannel,
    SendQueue,
    TicketCategory,
    TicketPurchase,
)
from services.errors import (
    CategoryNotFound,
    ConflictError,
    InsufficientInventory,
    InvalidQuantity,
    PromoCodeInvalid,
    QuantityAboveLimit,
    SalesWindowClosed,
)
from services.events.service import EventService
from services.flashsales.service import FlashSaleService
from services.notification.engine import NotificationEngine
from services.tickets import CredentialCodec, PurchaseService
from services.utils.timezone import utcnow


def buy(user_id, ticket_id, quantity=1, promo_code=None, notifier=None):
    with session_scope() as session:
        return PurchaseService(session, notifier=notifier).purchase(user_id, ticket_id, quantity, promo_code)


def category(category_id) -> TicketCategory:
    with session_scope() as session:
        return session.get(TicketCategory, category_id)


def test_purchase_reserves_and_issues_one_credential_per_ticket(seed):
    result = buy(seed.alice, seed.regular_id, 3)

    assert category(seed.regular_id).available_quantity == 97
    assert result["status"] == OrderStatus.PENDING.value
    assert result["total_amount"] == 3000.0
    assert len(result["tickets"]) == 3
    assert result["qr_code"].startswith("data:image/png;base64,")

    codec = CredentialCodec()
    purchase_ids = set()
    for ticket in result["tickets"]:
        payload = codec.decode(ticket["payload"])
        assert payload.order_id == result["order_id"]
        assert payload.ticket_id == seed.regular_id
        purchase_ids.add(payload.purchase_id)
    assert len(purchase_ids) == 3

    with session_scope() as session:
        order = session.get(Order, result["order_id"])
        assert order.status == OrderStatus.PENDING
        item = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).one()
        assert (item.quantity, item.price_at_time) == (3, 1000.0)
        tickets = session.exec(select(TicketPurchase).where(TicketPurchase.order_id == order.id)).all()
        assert {t.id for t in tickets} == purchase_ids
        assert all(t.transfer_path == [seed.alice] for t in tickets)


def test_insufficient_inventory_leaves_no_trace(seed):
    last_one = add_category(seed.event_id, "Last Seat", 1500.0, 1)

    with pytest.raises(InsufficientInventory) as exc:
        buy(seed.alice, last_one, 2)

    assert exc.value.message == "Only 1 ticket remains"
    assert category(last_one).available_quantity == 1
    with session_scope() as session:
        assert session.exec(select(Order)).all() == []
        assert session.exec(select(TicketPurchase)).all() == []


def test_concurrent_buyers_never_oversell(seed):
    capacity, buyers = 5, 20
    scarce = add_category(seed.event_id, "Front Row", 2500.0, capacity)

    def attempt(_):
        try:
            buy(seed.alice, scarce, 1)
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=buyers) as pool:
        outcomes = list(pool.map(attempt, range(buyers)))

    assert outcomes.count("ok") == capacity
    assert outcomes.count("conflict") == buyers - capacity
    assert category(scarce).available_quantity == 0
    with session_scope() as session:
        sold = session.exec(select(TicketPurchase).where(TicketPurchase.ticket_id == scarce)).all()
        assert len(sold) == capacity


def test_price_change_does_not_touch_existing_orders(seed):
    first = buy(seed.alice, seed.regular_id, 1)

    with session_scope() as session:
        EventService(session).update_category(seed.regular_id, get_user(seed.organizer), price=2000.0)

    second = buy(seed.bob, seed.regular_id, 1)

    with session_scope() as session:
        old_item = session.exec(select(OrderItem).where(OrderItem.order_id == first["order_id"])).one()
        new_item = session.exec(select(OrderItem).where(OrderItem.order_id == second["order_id"])).one()
        assert old_item.price_at_time == 1000.0
        assert session.get(Order, first["order_id"]).total_amount == 1000.0
        assert new_item.price_at_time == 2000.0


def test_preconditions(seed):
    with pytest.raises(InvalidQuantity):
        buy(seed.alice, seed.regular_id, 0)
    with pytest.raises(QuantityAboveLimit):
        buy(seed.alice, seed.regular_id, 11)
    with pytest.raises(CategoryNotFound):
        buy(seed.alice, "no-such-category", 1)
    assert category(seed.regular_id).available_quantity == 100


def test_sales_window(seed):
    now = utcnow()
    closed = add_category(seed.event_id, "Early Bird", 700.0, 50,
                          sales_start_time=now - timedelta(days=3), sales_end_time=now - timedelta(days=1))
    upcoming = add_category(seed.event_id, "Late Release", 1200.0, 50,
                            sales_start_time=now + timedelta(days=1))

    with pytest.raises(SalesWindowClosed, match="ended"):
        buy(seed.alice, closed, 1)
    with pytest.raises(SalesWindowClosed, match="not started"):
        buy(seed.alice, upcoming, 1)
    assert category(closed).available_quantity == 50


def test_group_discount(seed):
    group = add_category(seed.event_id, "Group Pass", 1000.0, 50, group_discount_enabled=True,
                         group_min_size=5, group_max_size=10, group_discount_percent=10.0)

    small = buy(seed.alice, group, 4)
    assert (small["subtotal"], small["discount_amount"], small["total_amount"]) == (4000.0, 0.0, 4000.0)

    large = buy(seed.alice, group, 5)
    assert (large["subtotal"], large["discount_amount"], large["total_amount"]) == (5000.0, 500.0, 4500.0)


def test_promo_code_discount_and_rollback(seed):
    now = utcnow()
    with session_scope() as session:
        FlashSaleService(session).create(
            get_user(seed.organizer), seed.event_id, "Launch Week", 20.0,
            now - timedelta(hours=1), now + timedelta(days=1), promo_code="jazz20",
        )

    result = buy(seed.alice, seed.regular_id, 2, promo_code="JAZZ20")
    assert (result["subtotal"], result["discount_amount"], result["total_amount"]) == (2000.0, 400.0, 1600.0)
    assert category(seed.regular_id).available_quantity == 98

    # a rejected code undoes the inventory reservation made before it was checked
    with pytest.raises(PromoCodeInvalid):
        buy(seed.alice, seed.regular_id, 2, promo_code="NOPE")
    assert category(seed.regular_id).available_quantity == 98


def test_purchase_enqueues_confirmation(seed):
    result = buy(seed.alice, seed.regular_id, 1)
    with session_scope() as session:
        queued = session.exec(select(SendQueue).where(SendQueue.ref_id == result["order_id"])).all()
    assert {item.channel for item in queued} == {SendChannel.EMAIL, SendChannel.PUSH}


def test_notification_failure_does_not_undo_purchase(seed, monkeypatch):
    notifier = NotificationEngine()

    def broken(*args, **kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(notifier, "enqueue", broken)

    result = buy(seed.alice, seed.regular_id, 1, notifier=notifier)
    with session_scope() as session:
        assert session.get(Order, result["order_id"]) is not None
    assert category(seed.regular_id).available_quantity == 99
