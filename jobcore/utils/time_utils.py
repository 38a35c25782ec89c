"""
Time helpers

All timestamps in the job store are UTC. SQLite hands back naive datetimes, so
values read from it are normalized with ``as_utc`` before comparison.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Treat naive datetimes as UTC and convert aware ones to UTC.

    Args:
        value: Datetime to normalize, or None

    Returns:
        Aware UTC datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_midnight_utc(now: Optional[datetime] = None) -> datetime:
    """
    Start of the current day in server local time, expressed in UTC.

    Args:
        now: Reference time (defaults to the current time)

    Returns:
        Aware UTC datetime of local midnight
    """
    local_now = (now or utcnow()).astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for a stored timestamp, or None"""
    value = as_utc(value)
    return value.isoformat() if value else None
