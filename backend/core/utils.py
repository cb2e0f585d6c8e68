"""Shared utility functions for the backend.core package."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def safe_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except Exception:
        return None


def safe_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except Exception:
        return None


def relative_change(previous: Any, current: Any) -> float:
    """Signed relative change from previous to current.

    Missing or unparsable values count as zero. A rise from zero is reported
    as exactly 1.0 (a 100% increase), not as a ratio.

    Examples:
        >>> relative_change(100, 103)
        0.03
        >>> relative_change(0, 5)
        1.0
    """
    old = safe_float(previous) or 0.0
    new = safe_float(current) or 0.0
    if old == 0 and new == 0:
        return 0.0
    if old == 0 and new > 0:
        return 1.0
    return (new - old) / (old if old != 0 else 1.0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime | str | None) -> datetime:
    """Coerce a datetime, ISO string or None (now) to an aware UTC datetime.

    Naive datetimes are assumed to already be UTC.
    """
    if value is None:
        return utc_now()
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_to_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def format_timestamp(value: datetime) -> str:
    """Canonical storage format: second precision, explicit UTC offset.

    Fixed width keeps lexicographic SQL comparison chronological.
    """
    return to_utc(value).replace(microsecond=0).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return to_utc(value)
    except ValueError:
        return None


def hours_between(start: datetime, end: datetime) -> int:
    """Whole hours from start to end, floored (negative when end is earlier)."""
    return int((to_utc(end) - to_utc(start)) // timedelta(hours=1))
