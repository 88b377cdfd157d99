"""Timestamp utilities for Mneme.

All stored timestamps are ISO-8601 UTC strings with millisecond precision
and a trailing "Z" (e.g. "2026-01-31T09:15:02.123Z"). Strings in this
format sort lexicographically in time order, which the SQL queries rely on.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def format_timestamp(dt: datetime) -> str:
    """Format a datetime as a canonical UTC timestamp string.

    Naive datetimes are assumed to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return f"{dt.strftime(TIMESTAMP_FORMAT)}.{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp string into an aware UTC datetime.

    Accepts the canonical format as well as any ISO-8601 string that
    datetime.fromisoformat understands.

    Raises:
        ValueError: If the value cannot be parsed
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: Optional[str]) -> Optional[str]:
    """Convert any accepted timestamp string to the canonical format."""
    if value is None:
        return None
    return format_timestamp(parse_timestamp(value))


def now_timestamp() -> str:
    """Get the current time as a canonical timestamp string."""
    return format_timestamp(datetime.now(timezone.utc))


def next_timestamp(previous: Optional[str]) -> str:
    """Get a timestamp strictly later than `previous`.

    Used for updated_at bumps so that they stay monotonic per record even
    when the wall clock has not advanced by a full millisecond or has
    stepped backwards.
    """
    now = now_timestamp()
    if previous is None or now > previous:
        return now
    return format_timestamp(parse_timestamp(previous) + timedelta(milliseconds=1))


def shift_timestamp(value: str, seconds: float) -> str:
    """Shift a timestamp by a number of seconds (negative goes back)."""
    return format_timestamp(parse_timestamp(value) + timedelta(seconds=seconds))
