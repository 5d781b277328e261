"""Single-use nonce store backed by the ``nonce_record`` table."""

import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session

from services.db.models import NonceRecord
from services.utils.timezone import utcnow

log = logging.getLogger(__name__)

_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class ReplayGuard:
    """``consume`` is "set if not exists": the primary key decides the winner.

    Expired entries for the same key are dropped first, so a nonce becomes
    usable again once its TTL has passed.
    """

    def __init__(self, session: Session, scope: str = "default"):
        self.session = session
        self.scope = scope

    def _key(self, nonce: str) -> str:
        return f"{self.scope}:{nonce}"

    def consume(self, nonce: str, ttl_seconds: int) -> bool:
        """True if ``nonce`` was fresh and is now spent, False if already seen."""
        key = self._key(nonce)
        now_time = utcnow()

        self.session.exec(
            delete(NonceRecord)
            .where(NonceRecord.key == key, NonceRecord.expires_at <= now_time)
            .execution_options(synchronize_session=False)
        )

        dialect = self.session.get_bind().dialect.name
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Replay guard does not support the {dialect} dialect")

        stmt = (
            insert(NonceRecord)
            .values(key=key, consumed_at=now_time, expires_at=now_time + timedelta(seconds=ttl_seconds))
            .on_conflict_do_nothing(index_elements=["key"])
        )
        result = self.session.exec(stmt)
        self.session.commit()

        fresh = result.rowcount == 1
        if not fresh:
            log.warning(f"⚠️ Replayed nonce rejected: {key}")
        return fresh

    def purge_expired(self) -> int:
        result = self.session.exec(
            delete(NonceRecord)
            .where(NonceRecord.expires_at <= utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount
