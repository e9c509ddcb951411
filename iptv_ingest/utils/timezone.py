"""
Date and Time utilities

Every source encodes time differently: XMLTV uses '20080715003000 -0600',
Xtream Codes sends unix timestamps, Stalker portals send local wall-clock
strings. This module turns all of them into timezone-aware UTC datetimes.
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def ensure_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC, treating naive values as already UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_iso8601_string(date_str: str) -> str:
    """Normalize ISO8601 string by replacing 'Z' with '+00:00'

    Args:
        date_str: ISO8601 datetime string

    Returns:
        Normalized string with explicit timezone offset
    """
    return date_str.replace('Z', '+00:00') if date_str.endswith('Z') else date_str


def parse_iso8601_to_utc(date_str: str) -> datetime:
    """
    Parse ISO8601 date string and convert to UTC datetime

    Args:
        date_str: ISO8601 datetime string (e.g., '2025-10-09T00:00:00Z' or '2025-10-09T00:00:00+01:00')

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the date string format is invalid
    """
    try:
        normalized = _normalize_iso8601_string(date_str)
        return ensure_utc(datetime.fromisoformat(normalized))
    except (ValueError, AttributeError, TypeError) as e:
        raise DateFormatError(f"Invalid ISO8601 datetime format: '{date_str}'") from e


def parse_xmltv_time(time_str: str) -> datetime:
    """
    Convert XMLTV time format to UTC

    Args:
        time_str: XMLTV time like '20080715003000 -0600' (offset optional, seconds optional)

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the value cannot be parsed
    """
    try:
        parts = time_str.strip().split()
        time_part = parts[0]
        tz_part = parts[1] if len(parts) > 1 else '+0000'

        # Some generators glue the offset to the timestamp: 20080715003000+0100
        if len(time_part) > 14 and time_part[14] in '+-':
            time_part, tz_part = time_part[:14], time_part[14:]

        fmt = '%Y%m%d%H%M%S' if len(time_part) >= 14 else '%Y%m%d%H%M'
        dt = datetime.strptime(time_part[:14], fmt)

        tz_sign = 1 if tz_part[0] == '+' else -1
        tz_digits = tz_part[1:].replace(':', '')
        tz_hours = int(tz_digits[0:2])
        tz_mins = int(tz_digits[2:4] or 0)
        tz_offset_minutes = tz_sign * (tz_hours * 60 + tz_mins)
    except (ValueError, IndexError, AttributeError) as e:
        raise DateFormatError(f"Invalid XMLTV datetime format: '{time_str}'") from e

    dt_utc = dt - timedelta(minutes=tz_offset_minutes)
    return dt_utc.replace(tzinfo=timezone.utc)


def from_unix_timestamp(value: int | float | str) -> datetime:
    """
    Convert a unix timestamp (seconds, possibly sent as a string) to UTC

    Raises:
        DateFormatError: If the value is not numeric
    """
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise DateFormatError(f"Invalid unix timestamp: '{value}'") from e


def parse_local_datetime(date_str: str, tz_name: str = "UTC") -> datetime:
    """
    Parse a 'YYYY-MM-DD HH:MM:SS' wall-clock string in the given IANA timezone

    Stalker portals report programme times in the timezone sent in the
    session cookie.

    Raises:
        DateFormatError: If the value or the timezone is invalid
    """
    try:
        zone = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise DateFormatError(f"Unknown timezone: '{tz_name}'") from e

    try:
        dt = datetime.strptime(date_str.strip(), '%Y-%m-%d %H:%M:%S')
    except (ValueError, AttributeError) as e:
        raise DateFormatError(f"Invalid portal datetime format: '{date_str}'") from e

    return dt.replace(tzinfo=zone).astimezone(timezone.utc)


def convert_to_timezone(value: datetime, target_tz: str) -> str:
    """
    Convert a UTC datetime to an ISO8601 string in the target timezone

    Args:
        value: Timezone-aware datetime
        target_tz: Target timezone (IANA format or 'UTC')

    Returns:
        ISO8601 timestamp in target timezone
    """
    dt = ensure_utc(value)

    if target_tz == "UTC":
        return dt.isoformat()

    return dt.astimezone(ZoneInfo(target_tz)).isoformat()
