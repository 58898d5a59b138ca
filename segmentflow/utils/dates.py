"""Timestamp helpers.

All analytics arithmetic happens on timezone-aware UTC datetimes. Some
drivers (SQLite) hand back naive values for ``DateTime(timezone=True)``
columns, so anything read from the database goes through ``ensure_utc``
before it is compared.
"""

from datetime import datetime, timezone
from typing import Optional

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the commerce API (``Z`` suffix allowed)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days between two instants, floored."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return int(delta.total_seconds() // SECONDS_PER_DAY)


def days_since(value: datetime, now: Optional[datetime] = None) -> int:
    return days_between(now or utcnow(), value)
