"""Timestamp helpers shared by the models and stores.

All persisted timestamps are timezone-aware UTC and serialized as ISO 8601.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime to an ISO 8601 string."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an optional ISO 8601 string into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
