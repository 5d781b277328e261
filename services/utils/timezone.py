"""
Timezone helpers.

The store keeps every timestamp in UTC. SQLite hands datetimes back naive, so
anything read from the database goes through ``make_aware`` before it is
compared with ``utcnow()``. ``to_local`` is only for rendering (emails, gate
display).

    from services.utils.timezone import utcnow, make_aware
"""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from services.config import config

# Display timezone
TIMEZONE = ZoneInfo(config.TIMEZONE)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def now() -> datetime:
    """Current time in the display timezone."""
    return datetime.now(TIMEZONE)


def make_aware(dt: datetime) -> datetime:
    """
    Attach UTC to a naive datetime read back from the store.

    Args:
        dt: naive or aware datetime

    Returns:
        datetime: aware datetime (unchanged if it already had tzinfo)
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_local(dt: datetime) -> datetime:
    """Convert a stored (UTC) datetime to the display timezone."""
    return make_aware(dt).astimezone(TIMEZONE)


def format_local(dt: datetime, fmt: str = "%d %b %Y, %H:%M") -> str:
    return to_local(dt).strftime(fmt)
