"""
UTC Datetime Helper Utilities

All datetime objects in the engine are timezone-aware and in UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """
    Current time in UTC with timezone information.

    Use this instead of datetime.now() everywhere in the code so tests can
    patch a single clock.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Guarantee that a datetime carries the UTC timezone.

    - None stays None
    - naive datetimes are assumed to be UTC
    - aware datetimes in another zone are converted
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime for persistence"""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Inverse of to_iso()"""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
