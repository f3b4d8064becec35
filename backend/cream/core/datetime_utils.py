"""Datetime utilities for consistent timezone handling across the application."""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Get current UTC time - standardized across the application.

    Returns:
        Current datetime in UTC timezone.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is UTC timezone-aware.

    Naive datetimes are assumed to already be in UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_unix_timestamp(value: Union[int, float, str, datetime, None]) -> Optional[datetime]:
    """Convert a UNIX timestamp (as Stripe sends them) to an aware UTC datetime.

    ISO8601 strings and datetimes are accepted as-is so models can be built
    from either Stripe payloads or already-normalized data.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and not value.lstrip("-").isdigit():
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as an ISO8601 string in UTC, e.g. for metadata flags."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")
