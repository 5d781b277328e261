from concurrent.futures import ThreadPoolExecutor

from sqlmodel import select

from services.auth.replay_guard import ReplayGuard
from services.db.connection import session_scope
from services.db.models import NonceRecord


def consume(nonce, ttl=600, scope="wallet"):
    with session_scope() as session:
        return ReplayGuard(session, scope).consume(nonce, ttl)


def test_nonce_is_single_use(store):
    assert consume("abc123") is True
    assert consume("abc123") is False


def test_scopes_are_independent(store):
    assert consume("abc123", scope="wallet") is True
    assert consume("abc123", scope="email-link") is True


def test_expired_nonce_can_be_consumed_again(store):
    assert consume("short-lived", ttl=0) is True
    assert consume("short-lived") is True
    assert consume("short-lived") is False


def test_purge_expired(store):
    consume("old-1", ttl=0)
    consume("old-2", ttl=0)
    consume("fresh", ttl=600)

    with session_scope() as session:
        assert ReplayGuard(session).purge_expired() == 2
        keys = [r.key for r in session.exec(select(NonceRecord)).all()]
    assert keys == ["wallet:fresh"]


def test_concurrent_consumers_one_winner(store):
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: consume("raced"), range(10)))
    assert results.count(True) == 1
