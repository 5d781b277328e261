"""Ticket instance state machine: gate scans, transfers, refunds, cancellation."""
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import update
from sqlmodel import select

from conftest import get_user
from services.db.connection import session_scope
from services.db.models import (
    Order,
    OrderStatus,
    PurchaseStatus,
    RefundRequest,
    RefundRequestStatus,
    TicketCategory,
    TicketPurchase,
    User,
)
from services.errors import (
    AlreadyUsed,
    CredentialNotRecognized,
    DuplicateResource,
    InvalidInput,
    InvalidOrderState,
    NotTransferable,
    OrderNotPaid,
    PartiallyUsed,
    Unauthorized,
    UserNotFound,
)
from services.orders.service import OrderService
from services.tickets import PurchaseService, TicketLifecycle
from services.utils.timezone import utcnow


def buy(user_id, ticket_id, quantity=1, paid=True):
    with session_scope() as session:
        result = PurchaseService(session).purchase(user_id, ticket_id, quantity)
    if paid:
        with session_scope() as session:
            OrderService(session).mark_paid(result["order_id"], "MPESA-TEST")
    return result


def scan(token, seed, scanner=None):
    with session_scope() as session:
        return TicketLifecycle(session).validate(token, seed.event_id, get_user(scanner or seed.organizer))


def ticket(purchase_id) -> TicketPurchase:
    with session_scope() as session:
        return session.get(TicketPurchase, purchase_id)


def available(category_id) -> int:
    with session_scope() as session:
        return session.get(TicketCategory, category_id).available_quantity


# --- gate ---

def test_scan_admits_once(seed):
    result = buy(seed.alice, seed.regular_id)
    token = result["tickets"][0]["payload"]

    admitted = scan(token, seed)
    assert admitted["valid"] is True
    assert admitted["attendee"]["name"] == "Alice Wanjiru"
    assert admitted["event"]["title"] == "Nairobi Jazz Night"
    assert admitted["ticket_category"]["name"] == "Regular"
    assert ticket(admitted["purchase_id"]).status == PurchaseStatus.USED

    with pytest.raises(AlreadyUsed, match="already used"):
        scan(token, seed)


def test_each_unit_is_admitted_separately(seed):
    result = buy(seed.alice, seed.regular_id, 2)
    first, second = (t["payload"] for t in result["tickets"])

    scan(first, seed)
    assert scan(second, seed)["valid"] is True
    with pytest.raises(AlreadyUsed):
        scan(first, seed)


def test_concurrent_scans_have_one_winner(seed):
    token = buy(seed.alice, seed.regular_id)["tickets"][0]["payload"]

    def attempt(_):
        try:
            scan(token, seed)
            return "admitted"
        except AlreadyUsed:
            return "rejected"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    assert outcomes.count("admitted") == 1
    assert outcomes.count("rejected") == 7


def test_unpaid_order_is_not_admitted(seed):
    token = buy(seed.alice, seed.regular_id, paid=False)["tickets"][0]["payload"]
    with pytest.raises(OrderNotPaid):
        scan(token, seed)


def test_ticket_for_another_event_is_not_recognized(seed):
    token = buy(seed.alice, seed.regular_id)["tickets"][0]["payload"]
    with session_scope() as session:
        with pytest.raises(CredentialNotRecognized):
            TicketLifecycle(session).validate(token, "some-other-event", get_user(seed.admin))


def test_only_the_event_organizer_can_scan(seed):
    token = buy(seed.alice, seed.regular_id)["tickets"][0]["payload"]
    with pytest.raises(Unauthorized):
        scan(token, seed, scanner=seed.rival)
    assert scan(token, seed, scanner=seed.admin)["valid"] is True


def test_credential_must_match_stored_issue_time(seed):
    result = buy(seed.alice, seed.regular_id)
    purchase_id = result["tickets"][0]["purchase_id"]
    with session_scope() as session:
        session.exec(
            update(TicketPurchase)
            .where(TicketPurchase.id == purchase_id)
            .values(credential_issued_at=utcnow().replace(microsecond=0, year=2020))
        )

    with pytest.raises(CredentialNotRecognized):
        scan(result["tickets"][0]["payload"], seed)


# --- transfer ---

def test_transfer_moves_ticket_and_keeps_credential(seed):
    result = buy(seed.alice, seed.regular_id)
    purchase_id = result["tickets"][0]["purchase_id"]

    with session_scope() as session:
        moved = TicketLifecycle(session).transfer(purchase_id, seed.alice, " BOB@mobitickets.co.ke ")
    assert moved["recipient_id"] == seed.bob
    assert moved["transfer_path"] == [seed.alice, seed.bob]

    moved_ticket = ticket(purchase_id)
    assert moved_ticket.user_id == seed.bob
    assert moved_ticket.status == PurchaseStatus.ACTIVE

    with session_scope() as session:
        orders = OrderService(session)
        assert [t["purchase_id"] for t in orders.get_credentials(result["order_id"], seed.bob)["tickets"]] == [purchase_id]
        assert orders.get_credentials(result["order_id"], seed.alice)["tickets"] == []
        assert orders.list_my_tickets(seed.alice)[0]["tickets"] == []
        assert orders.list_my_tickets(seed.bob)[0]["is_buyer"] is False

    # same QR, new holder
    assert scan(result["tickets"][0]["payload"], seed)["attendee"]["id"] == seed.bob


def test_transfer_guards(seed):
    result = buy(seed.alice, seed.regular_id)
    purchase_id = result["tickets"][0]["purchase_id"]

    with session_scope() as session:
        lifecycle = TicketLifecycle(session)
        with pytest.raises(Unauthorized):
            lifecycle.transfer(purchase_id, seed.bob, "bob@mobitickets.co.ke")
        with pytest.raises(InvalidInput):
            lifecycle.transfer(purchase_id, seed.alice, "alice@mobitickets.co.ke")
        with pytest.raises(UserNotFound):
            lifecycle.transfer(purchase_id, seed.alice, "nobody@mobitickets.co.ke")

    scan(result["tickets"][0]["payload"], seed)
    with session_scope() as session:
        with pytest.raises(NotTransferable):
            TicketLifecycle(session).transfer(purchase_id, seed.alice, "bob@mobitickets.co.ke")


def test_transfer_to_wallet_account(seed):
    address = "0x" + "ab" * 20
    with session_scope() as session:
        holder = User(email=f"{address}@wallet", wallet_address=address)
        session.add(holder)
        session.flush()
        holder_id = holder.user_id

    first = buy(seed.alice, seed.regular_id)["tickets"][0]["purchase_id"]
    second = buy(seed.alice, seed.regular_id)["tickets"][0]["purchase_id"]
    with session_scope() as session:
        lifecycle = TicketLifecycle(session)
        assert lifecycle.transfer(first, seed.alice, "0x" + "AB" * 20)["recipient_id"] == holder_id
        assert lifecycle.transfer(second, seed.alice, f"{address}@wallet")["recipient_id"] == holder_id
    assert ticket(first).user_id == holder_id


# --- refunds ---

def test_refund_approval_retires_tickets_and_restores_inventory(seed):
    result = buy(seed.alice, seed.vip_id, 2)
    assert available(seed.vip_id) == 8

    with session_scope() as session:
        request = OrderService(session).request_refund(result["order_id"], get_user(seed.alice), "Cannot attend")
        assert request.amount == 10000.0
        with pytest.raises(DuplicateResource):
            OrderService(session).request_refund(result["order_id"], get_user(seed.alice), "Again")

    with session_scope() as session:
        reviewed = OrderService(session).review_refund_request(request.id, get_user(seed.admin), approve=True)
        assert reviewed.status == RefundRequestStatus.APPROVED

    assert available(seed.vip_id) == 10
    with session_scope() as session:
        assert session.get(Order, result["order_id"]).status == OrderStatus.REFUNDED
        statuses = {t.status for t in session.exec(
            select(TicketPurchase).where(TicketPurchase.order_id == result["order_id"])
        ).all()}
        assert statuses == {PurchaseStatus.REFUNDED}

    with pytest.raises(OrderNotPaid):
        scan(result["tickets"][0]["payload"], seed)

    with session_scope() as session:
        with pytest.raises(InvalidOrderState, match="already been reviewed"):
            OrderService(session).review_refund_request(request.id, get_user(seed.admin), approve=True)


def test_refund_is_all_or_nothing(seed):
    result = buy(seed.alice, seed.vip_id, 2)
    scan(result["tickets"][0]["payload"], seed)

    with session_scope() as session:
        with pytest.raises(PartiallyUsed):
            TicketLifecycle(session).refund(result["order_id"])

    with session_scope() as session:
        assert session.get(Order, result["order_id"]).status == OrderStatus.PAID
        statuses = sorted(t.status.value for t in session.exec(
            select(TicketPurchase).where(TicketPurchase.order_id == result["order_id"])
        ).all())
        assert statuses == ["ACTIVE", "USED"]
    assert available(seed.vip_id) == 8

    with session_scope() as session:
        with pytest.raises(PartiallyUsed):
            OrderService(session).request_refund(result["order_id"], get_user(seed.alice), "Left early")


def test_rejected_refund_leaves_order_paid(seed):
    result = buy(seed.alice, seed.regular_id)
    with session_scope() as session:
        request = OrderService(session).request_refund(result["order_id"], get_user(seed.alice), "Changed plans")
    with session_scope() as session:
        OrderService(session).review_refund_request(request.id, get_user(seed.admin), approve=False, notes="Too late")

    with session_scope() as session:
        assert session.get(Order, result["order_id"]).status == OrderStatus.PAID
        assert session.get(RefundRequest, request.id).notes == "Too late"
    assert scan(result["tickets"][0]["payload"], seed)["valid"] is True


def test_refund_requests_are_paged(seed):
    order_ids = [buy(seed.alice, seed.regular_id)["order_id"] for _ in range(3)]
    with session_scope() as session:
        orders = OrderService(session)
        for order_id in order_ids:
            orders.request_refund(order_id, get_user(seed.alice), "Double booked")

    with session_scope() as session:
        orders = OrderService(session)
        newest = orders.list_refund_requests(limit=1)
        second = orders.list_refund_requests(page=2, limit=1)
        pending = orders.list_refund_requests(RefundRequestStatus.PENDING, page=2, limit=2)
        none_approved = orders.list_refund_requests(RefundRequestStatus.APPROVED)

    assert newest["pagination"] == {"page": 1, "limit": 1, "total": 3, "total_pages": 3}
    assert newest["requests"][0].order_id == order_ids[-1]
    assert second["requests"][0].order_id == order_ids[-2]
    assert len(pending["requests"]) == 1
    assert pending["pagination"]["total_pages"] == 2
    assert none_approved["pagination"]["total"] == 0
    assert none_approved["requests"] == []


def test_refund_requires_owner_and_paid_order(seed):
    unpaid = buy(seed.alice, seed.regular_id, paid=False)
    with session_scope() as session:
        orders = OrderService(session)
        with pytest.raises(Unauthorized):
            orders.request_refund(unpaid["order_id"], get_user(seed.bob), "Not mine")
        with pytest.raises(InvalidOrderState):
            orders.request_refund(unpaid["order_id"], get_user(seed.alice), "Unpaid")
        with pytest.raises(Unauthorized):
            orders.get_credentials(unpaid["order_id"], seed.bob)


# --- payment status / cancellation ---

def test_cancel_pending_order_releases_inventory(seed):
    result = buy(seed.alice, seed.vip_id, 3, paid=False)
    assert available(seed.vip_id) == 7

    with session_scope() as session:
        order = OrderService(session).cancel(result["order_id"], get_user(seed.alice))
        assert order.status == OrderStatus.CANCELLED

    assert available(seed.vip_id) == 10
    assert ticket(result["tickets"][0]["purchase_id"]).status == PurchaseStatus.REFUNDED

    with session_scope() as session:
        with pytest.raises(InvalidOrderState):
            OrderService(session).mark_paid(result["order_id"])


def test_paid_order_cannot_be_cancelled_or_paid_twice(seed):
    result = buy(seed.alice, seed.regular_id)
    with session_scope() as session:
        orders = OrderService(session)
        with pytest.raises(InvalidOrderState):
            orders.cancel(result["order_id"], get_user(seed.admin))
        with pytest.raises(InvalidOrderState):
            orders.mark_paid(result["order_id"])
        with pytest.raises(Unauthorized):
            orders.cancel(result["order_id"], get_user(seed.bob))
