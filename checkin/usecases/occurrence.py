"""
Next-occurrence calculation for reminder recurrence patterns.

Everything here is pure: no clock reads, no I/O.
"""

from datetime import date, datetime, time, timedelta
from typing import Union
from zoneinfo import ZoneInfo

from checkin.domain.errors import ConfigurationError
from checkin.domain.reminder import Recurrence, RecurrencePattern
from checkin.utils.time import UTC, as_utc, resolve_zone

CUSTOM_DAYS_SEARCH_LIMIT = 14
WEEKEND = (5, 6)


def next_occurrence(
    recurrence: Recurrence,
    anchor_time: time,
    tz: Union[str, ZoneInfo],
    reference: datetime,
) -> datetime:
    """
    Compute the next instant a reminder is due.

    Args:
        recurrence: Pattern and its parameters
        anchor_time: Local time-of-day the reminder fires at
        tz: Zone the anchor time is expressed in
        reference: Instant to search from (naive means UTC)

    Returns:
        Aware datetime in the reminder's zone. For recurring patterns it is
        strictly after ``reference``; for ``once`` it is the scheduled
        instant, even if that has already passed.

    Raises:
        ConfigurationError: for an unknown zone or an unusable pattern
    """
    zone = resolve_zone(tz)

    if recurrence.pattern is RecurrencePattern.ONCE:
        if recurrence.scheduled_at is None:
            raise ConfigurationError("one-time reminder has no scheduled instant")
        return as_utc(recurrence.scheduled_at).astimezone(zone)

    ref_utc = as_utc(reference)
    today = ref_utc.astimezone(zone).date()

    def at(day: date) -> datetime:
        local = datetime.combine(day, anchor_time, tzinfo=zone)
        # Normalise wall times that fall inside a DST gap
        return local.astimezone(UTC).astimezone(zone)

    def still_ahead(day: date) -> bool:
        return at(day).astimezone(UTC) > ref_utc

    if recurrence.pattern is RecurrencePattern.DAILY:
        day = today if still_ahead(today) else today + timedelta(days=1)
        return at(day)

    if recurrence.pattern is RecurrencePattern.WEEKDAYS:
        day = today if still_ahead(today) else today + timedelta(days=1)
        while day.weekday() in WEEKEND:
            day += timedelta(days=1)
        return at(day)

    if recurrence.pattern is RecurrencePattern.WEEKLY:
        if recurrence.weekly_day is None or not 0 <= recurrence.weekly_day <= 6:
            raise ConfigurationError(f"invalid weekly day: {recurrence.weekly_day!r}")
        offset = (recurrence.weekly_day - today.weekday()) % 7
        if offset == 0 and not still_ahead(today):
            offset = 7
        return at(today + timedelta(days=offset))

    if recurrence.pattern is RecurrencePattern.CUSTOM:
        days = set(recurrence.custom_days)
        if not days:
            raise ConfigurationError("custom-days reminder has no days selected")
        if not days <= set(range(7)):
            raise ConfigurationError(f"invalid custom days: {sorted(days)}")
        for offset in range(CUSTOM_DAYS_SEARCH_LIMIT + 1):
            day = today + timedelta(days=offset)
            if day.weekday() in days and (offset > 0 or still_ahead(today)):
                return at(day)
        raise ConfigurationError(f"no matching day within {CUSTOM_DAYS_SEARCH_LIMIT} days")

    raise ConfigurationError(f"unsupported recurrence pattern: {recurrence.pattern!r}")


def advance_occurrence(
    recurrence: Recurrence,
    anchor_time: time,
    tz: Union[str, ZoneInfo],
    fulfilled: datetime,
    now: datetime,
) -> datetime:
    """
    Next occurrence after a dispatch of ``fulfilled`` handled at ``now``.

    Searching from the later of the two keeps the series moving forward and
    stops a late catch-up from producing another occurrence that is already
    in the past.
    """
    reference = max(as_utc(fulfilled), as_utc(now))
    return next_occurrence(recurrence, anchor_time, tz, reference)
