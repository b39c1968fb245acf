"""Datetime utilities with consistent UTC timezone handling.

Every timestamp that crosses the sync subsystem (mapping timestamps, audit
entries, queue schedules, remote ``updated_at`` values) goes through these
helpers so comparisons never mix naive and aware datetimes.
"""

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Return current datetime in UTC timezone."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def min_utc() -> datetime:
    """Return datetime.min with UTC timezone for comparison fallbacks."""
    return datetime.min.replace(tzinfo=timezone.utc)


def truncate_to_second(dt: datetime) -> datetime:
    """Drop sub-second precision so remote and local clocks compare fairly."""
    return ensure_aware(dt).replace(microsecond=0)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info."""
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Accepts the trailing ``Z`` designator used by most commerce APIs.

    Args:
        value: ISO string, or None

    Returns:
        Timezone-aware datetime, or None if value was empty

    Raises:
        ValueError: If the string is not a valid ISO timestamp
    """
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value))
