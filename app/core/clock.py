"""
Time helpers.

All timestamps are stored as naive UTC datetimes so that PostgreSQL
(TIMESTAMP WITHOUT TIME ZONE) and SQLite compare them the same way.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC, pass naive values through"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Unix timestamp (as sent by Stripe) to naive UTC"""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
