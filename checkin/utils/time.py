"""
Time utilities.

Instants are persisted as naive UTC and handled as aware datetimes
everywhere else.
"""

from datetime import datetime, time, timezone
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateutil_parser

from checkin.domain.errors import ConfigurationError

UTC = timezone.utc


def utc_now() -> datetime:
    """Get the current time in UTC."""
    return datetime.now(UTC)


def resolve_zone(tz: Union[str, ZoneInfo]) -> ZoneInfo:
    """
    Resolve an IANA zone name.

    Raises:
        ConfigurationError: if the zone is unknown
    """
    if isinstance(tz, ZoneInfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {tz!r}") from e


def as_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to an aware UTC datetime.

    Naive datetimes are assumed to already be UTC (as stored in the database).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_storage(dt: datetime) -> datetime:
    """Convert a datetime to the naive UTC form used for persistence."""
    return as_utc(dt).replace(tzinfo=None)


def to_zone(dt: datetime, tz: Union[str, ZoneInfo]) -> datetime:
    """Convert a datetime (naive means UTC) to the given zone."""
    return as_utc(dt).astimezone(resolve_zone(tz))


def parse_time_of_day(value: Union[str, time]) -> time:
    """
    Parse a time-of-day such as "09:35", "9:35am" or "7pm".

    Args:
        value: String or time instance

    Returns:
        Naive time with seconds dropped

    Raises:
        ValueError: if the value cannot be parsed
    """
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    try:
        parsed = dateutil_parser.parse(value.strip())
    except (ValueError, OverflowError, TypeError) as e:
        raise ValueError(f"Invalid time of day: {value!r}") from e
    return time(parsed.hour, parsed.minute)


def format_local(dt: datetime, tz: Union[str, ZoneInfo], include_date: bool = True) -> str:
    """
    Format an instant for display in a reminder's zone.

    Args:
        dt: Instant to format (naive means UTC)
        tz: Zone to display in
        include_date: Whether to include the date

    Returns:
        Formatted string
    """
    local = to_zone(dt, tz)
    if include_date:
        return local.strftime("%a %B %d, %Y at %I:%M %p %Z")
    return local.strftime("%I:%M %p %Z")
