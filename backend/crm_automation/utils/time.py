"""Time Utilities - UTC timestamps and formatting"""
from datetime import datetime, timezone
from typing import Any, Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(dt: datetime) -> datetime:
    """
    Convert a datetime to the naive-UTC form MongoDB hands back

    Filters must compare like with like, so every datetime written to or
    queried against a collection goes through here.
    """
    return ensure_utc(dt).replace(tzinfo=None)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a record value to an aware UTC datetime

    Accepts datetimes, ISO strings and epoch seconds/milliseconds.
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.isoparse(value))
        except (ValueError, OverflowError):
            return None
    return None
