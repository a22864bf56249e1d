"""Time and timezone utilities."""

import re
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import pytz
from dateutil import parser as date_parser

from capturebot.core.logging import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

_TIME_OF_DAY_RE = re.compile(r'^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$')


def get_current_utc_time() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


def normalize_timezone(dt: datetime, target_tz: timezone = timezone.utc) -> datetime:
    """
    Normalize datetime to target timezone.

    Naive datetimes (as returned by SQLite) are assumed to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(target_tz)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-ish timestamp string into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return normalize_timezone(value)

    try:
        return normalize_timezone(date_parser.isoparse(value))
    except (ValueError, TypeError):
        pass

    try:
        return normalize_timezone(date_parser.parse(value))
    except (ValueError, TypeError, OverflowError):
        logger.warning(f"Could not parse timestamp: {value}")
        return None


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from ``earlier`` to ``later``."""
    delta = normalize_timezone(later) - normalize_timezone(earlier)
    return delta.total_seconds() / SECONDS_PER_DAY


def resolve_timezone(name: Optional[str], fallback: str) -> pytz.BaseTzInfo:
    """
    Resolve an IANA timezone name, falling back when it is missing or unknown.
    """
    if name:
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown timezone '{name}', falling back to {fallback}")
    return pytz.timezone(fallback)


def to_local_time(dt: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """Convert an instant to wall-clock time in ``tz``."""
    return normalize_timezone(dt).astimezone(tz)


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """
    Parse an "HH:MM" string.

    Raises:
        ValueError: if the string is malformed or out of range
    """
    match = _TIME_OF_DAY_RE.match(value or '')
    if not match:
        raise ValueError(f"Invalid time of day: {value!r}")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time of day out of range: {value!r}")
    return hour, minute


def sunday_based_weekday(dt: datetime) -> int:
    """Day of week with 0 = Sunday, 6 = Saturday."""
    return (dt.weekday() + 1) % 7
