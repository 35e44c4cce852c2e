"""
Timestamp utilities for consistent time handling across the system.

All persisted timestamps are timezone-aware UTC and serialized as ISO 8601.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to an aware UTC datetime.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_iso(value: Optional[datetime] = None) -> str:
    """Serialize a datetime (current time if None) as ISO 8601 UTC."""
    value = value or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """Parse an ISO string, unix seconds or datetime into an aware UTC datetime.

    Args:
        value: Stored timestamp value
        default: Returned when value is empty or unparseable (epoch if None)

    Returns:
        datetime object
    """
    fallback = default or datetime.fromtimestamp(0, tz=timezone.utc)
    if value is None or value == '':
        return fallback
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return to_datetime(value)
    try:
        text = str(value)
        if text.isdigit():
            return to_datetime(int(text))
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        return fallback


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    """Datetime `days` before now (or the given reference)."""
    return (now or utc_now()) - timedelta(days=days)
