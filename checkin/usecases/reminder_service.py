"""
Reminder service for reminder lifecycle operations.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.config.settings import Settings, get_settings
from checkin.domain.errors import ConfigurationError
from checkin.domain.reminder import (
    Recurrence,
    RecurrencePattern,
    Reminder,
    ReminderCreate,
    ReminderKind,
    ReminderStatus,
)
from checkin.infrastructure.reminder_store import ReminderStore
from checkin.usecases.occurrence import next_occurrence
from checkin.utils.time import as_utc, format_local, resolve_zone, to_storage, utc_now

logger = logging.getLogger(__name__)


class ReminderService:
    """Service class for reminder operations."""

    def __init__(self, session_factory: async_sessionmaker, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = ReminderStore(session_factory)

    async def create_reminder(self, data: ReminderCreate, now: Optional[datetime] = None) -> Reminder:
        """
        Create a reminder and compute its first occurrence.

        A naive ``scheduled_at`` is read as wall time in the reminder's zone.

        Args:
            data: Validated reminder fields
            now: Creation instant (defaults to the wall clock)

        Returns:
            The persisted reminder

        Raises:
            ConfigurationError: for an unusable schedule or a one-time
                reminder that is not in the future
        """
        now = as_utc(now or utc_now())
        tz = data.timezone or self.settings.timezone
        zone = resolve_zone(tz)

        scheduled_at = None
        if data.scheduled_at is not None:
            local = data.scheduled_at
            if local.tzinfo is None:
                local = local.replace(tzinfo=zone)
            scheduled_at = as_utc(local)

        if data.pattern is RecurrencePattern.ONCE and scheduled_at <= now:
            raise ConfigurationError(
                f"one-time reminder must be in the future, got {scheduled_at.isoformat()}"
            )

        anchor = data.anchor_time
        if anchor is None:
            anchor = scheduled_at.astimezone(zone).time().replace(second=0, microsecond=0)

        recurrence = Recurrence(
            pattern=data.pattern,
            weekly_day=int(data.weekly_day) if data.weekly_day is not None else None,
            custom_days=frozenset(int(day) for day in data.custom_days),
            scheduled_at=scheduled_at,
        )
        first = next_occurrence(recurrence, anchor, zone, now)

        reminder = Reminder(
            id=str(uuid4()),
            account_id=data.account_id,
            recipient_id=data.recipient_id,
            title=data.title,
            kind=data.kind,
            parent_id=data.parent_id,
            pattern=data.pattern,
            weekly_day=recurrence.weekly_day,
            custom_days=sorted(recurrence.custom_days) or None,
            scheduled_at=to_storage(scheduled_at) if scheduled_at else None,
            anchor_time=anchor,
            timezone=tz,
            next_occurrence_at=to_storage(first),
            status=ReminderStatus.ACTIVE,
            response_requirement=data.response_requirement,
            completion_count=0,
        )
        await self.store.add(reminder)

        logger.info(
            f"Created reminder: {reminder.id} - {reminder.title} "
            f"({reminder.pattern.value}), first due {format_local(first, zone)}"
        )
        return reminder

    async def pause(self, reminder_id: str) -> Optional[Reminder]:
        """Stop a reminder from being scanned until it is resumed."""
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            return None

        if reminder.status != ReminderStatus.ACTIVE:
            logger.info(f"Reminder {reminder_id} is {reminder.status.value}; not pausing")
            return reminder

        await self.store.set_status(reminder_id, ReminderStatus.PAUSED)
        logger.info(f"Paused reminder {reminder_id}")
        return await self.store.get(reminder_id)

    async def resume(self, reminder_id: str, now: Optional[datetime] = None) -> Optional[Reminder]:
        """
        Reactivate a paused reminder.

        The next occurrence is recomputed from ``now`` so occurrences that
        fell inside the pause are not replayed.
        """
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            return None

        if reminder.status != ReminderStatus.PAUSED:
            logger.info(f"Reminder {reminder_id} is {reminder.status.value}; not resuming")
            return reminder

        now = as_utc(now or utc_now())
        upcoming = next_occurrence(reminder.recurrence, reminder.anchor_time, reminder.timezone, now)
        await self.store.set_status(reminder_id, ReminderStatus.ACTIVE, next_occurrence_at=upcoming)
        logger.info(f"Resumed reminder {reminder_id}, next due {format_local(upcoming, reminder.timezone)}")
        return await self.store.get(reminder_id)

    async def schedule_follow_up(self, reminder_id: str, now: Optional[datetime] = None) -> Optional[Reminder]:
        """
        Schedule a one-shot nudge for a reminder that got an incomplete reply.

        Follow-ups are never chained, and a reminder has at most one
        outstanding follow-up.

        Args:
            reminder_id: The reminder being followed up
            now: Instant the reply was handled (defaults to the wall clock)

        Returns:
            The follow-up reminder, or None if none can be scheduled
        """
        parent = await self.store.get(reminder_id)
        if parent is None:
            logger.warning(f"Cannot follow up unknown reminder {reminder_id}")
            return None

        if parent.kind == ReminderKind.FOLLOW_UP:
            logger.info(f"Reminder {reminder_id} is already a follow-up; not chaining")
            return None

        existing = await self.store.find_active_follow_up(parent.id)
        if existing is not None:
            logger.info(f"Follow-up {existing.id} already scheduled for {reminder_id}")
            return existing

        now = as_utc(now or utc_now())
        due = now + timedelta(minutes=self.settings.follow_up_delay_minutes)
        local_due = due.astimezone(resolve_zone(parent.timezone))

        follow_up = Reminder(
            id=str(uuid4()),
            account_id=parent.account_id,
            recipient_id=parent.recipient_id,
            title=parent.title,
            kind=ReminderKind.FOLLOW_UP,
            parent_id=parent.id,
            pattern=RecurrencePattern.ONCE,
            scheduled_at=to_storage(due),
            anchor_time=local_due.time().replace(second=0, microsecond=0),
            timezone=parent.timezone,
            next_occurrence_at=to_storage(due),
            status=ReminderStatus.ACTIVE,
            response_requirement=parent.response_requirement,
            completion_count=0,
        )
        await self.store.add(follow_up)

        logger.info(f"Scheduled follow-up {follow_up.id} for reminder {reminder_id} at {due.isoformat()}")
        return follow_up
