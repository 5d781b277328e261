"""Engine and session management for the SQLModel store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from services.config import config

log = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _resolve_url(db_path: Optional[str]) -> str:
    if db_path is None:
        if config.DATABASE_URL:
            return config.DATABASE_URL
        db_path = config.DB_PATH
    if "://" in db_path:
        return db_path
    if db_path == ":memory:":
        return "sqlite://"
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def _build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    if url == "sqlite://":
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=20,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return engine


def get_engine(db_path: Optional[str] = None) -> Engine:
    """Return the process-wide engine.

    Passing ``db_path`` (a file path, ``":memory:"`` or a full SQLAlchemy URL)
    replaces the current engine; tests use this to point the service layer at
    a scratch database.
    """
    global _engine
    if db_path is not None:
        if _engine is not None:
            _engine.dispose()
        _engine = _build_engine(_resolve_url(db_path))
        log.info(f"Engine bound to {_engine.url}")
    elif _engine is None:
        _engine = _build_engine(_resolve_url(None))
        log.info(f"Engine bound to {_engine.url}")
    return _engine


@contextmanager
def session_scope() -> Iterator[Session]:
    """Transactional scope: commit on success, rollback on error."""
    session = Session(get_engine(), expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
