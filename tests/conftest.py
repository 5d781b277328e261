"""Shared fixtures: a scratch SQLite store per test, seeded users and an event."""
import os
import tempfile
from datetime import timedelta
from types import SimpleNamespace

# Settings are read once at import time, so they have to be in place before
# anything under services/ or web/ is imported.
_scratch = tempfile.mkdtemp(prefix="mobitickets-tests-")
os.environ["MOBI_LOG_DIR"] = os.path.join(_scratch, "logs")
os.environ["MOBI_DB_PATH"] = os.path.join(_scratch, "default.db")
os.environ["MOBI_NOTIFY_WORKER_INTERVAL"] = "0"
os.environ["MOBI_SMTP_USERNAME"] = ""
os.environ["MOBI_SMTP_PASSWORD"] = ""
os.environ["MOBI_RATE_LIMIT_PURCHASE"] = "1000/minute"
os.environ["MOBI_RATE_LIMIT_LOGIN"] = "1000/minute"
os.environ["MOBI_RATE_LIMIT_VALIDATE"] = "1000/minute"
os.environ.pop("MOBI_TURNSTILE_SECRET_KEY", None)
os.environ.pop("MOBI_DATABASE_URL", None)

import pytest  # noqa: E402

from services.auth.service import hash_password  # noqa: E402
from services.db.connection import session_scope  # noqa: E402
from services.db.init import init_db  # noqa: E402
from services.db.models import (  # noqa: E402
    Event,
    EventStatus,
    TicketCategory,
    TicketTier,
    User,
    UserRole,
)
from services.utils.timezone import utcnow  # noqa: E402

PASSWORD = "correct-horse-battery"


@pytest.fixture
def store(tmp_path):
    """Fresh file-backed store; threads in concurrency tests share it."""
    return init_db(str(tmp_path / "test.db"), drop_existing=True)


def add_category(event_id: str, name: str = "Regular", price: float = 1000.0, total: int = 100,
                 tier: TicketTier = TicketTier.REGULAR, **fields) -> str:
    with session_scope() as session:
        category = TicketCategory(
            event_id=event_id,
            name=name,
            tier=tier,
            price=price,
            total_quantity=total,
            available_quantity=total,
            **fields,
        )
        session.add(category)
        session.flush()
        return category.id


@pytest.fixture
def seed(store):
    """Users of every role, one published event and two categories."""
    password_hash = hash_password(PASSWORD)
    with session_scope() as session:
        users = {
            "admin": User(email="admin@mobitickets.co.ke", full_name="Ada Admin",
                          role=UserRole.ADMIN, password_hash=password_hash),
            "organizer": User(email="olive@mobitickets.co.ke", full_name="Olive Organizer",
                              role=UserRole.ORGANIZER, password_hash=password_hash),
            "rival": User(email="rex@mobitickets.co.ke", full_name="Rex Rival",
                          role=UserRole.ORGANIZER, password_hash=password_hash),
            "alice": User(email="alice@mobitickets.co.ke", full_name="Alice Wanjiru",
                          password_hash=password_hash),
            "bob": User(email="bob@mobitickets.co.ke", full_name="Bob Otieno",
                        password_hash=password_hash),
        }
        session.add_all(users.values())
        session.flush()

        start = utcnow() + timedelta(days=14)
        event = Event(
            organizer_id=users["organizer"].user_id,
            title="Nairobi Jazz Night",
            location="KICC Grounds",
            start_time=start,
            end_time=start + timedelta(hours=5),
            status=EventStatus.PUBLISHED,
        )
        session.add(event)
        session.flush()
        ids = {key: user.user_id for key, user in users.items()}
        event_id = event.id

    return SimpleNamespace(
        event_id=event_id,
        regular_id=add_category(event_id, "Regular", 1000.0, 100),
        vip_id=add_category(event_id, "VIP", 5000.0, 10, tier=TicketTier.VIP),
        **ids,
    )


def get_user(user_id: str) -> User:
    with session_scope() as session:
        return session.get(User, user_id)


@pytest.fixture
def client(seed):
    from fastapi.testclient import TestClient

    from web.dependencies import limiter
    from web_app import app

    limiter.reset()
    return TestClient(app)


@pytest.fixture
def login_as(seed):
    """Factory returning a TestClient logged in as one of the seeded users."""
    from fastapi.testclient import TestClient

    from web_app import app

    def _login(email: str) -> TestClient:
        c = TestClient(app)
        resp = c.post("/auth/login", json={"method": "email", "email": email, "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        return c

    return _login
