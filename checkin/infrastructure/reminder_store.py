"""
Reminder persistence: due-item queries and schedule write-back.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.domain.dispatch_record import DispatchRecord, DispatchStatus
from checkin.domain.recipient import Recipient
from checkin.domain.reminder import Reminder, ReminderKind, ReminderStatus
from checkin.domain.response import PendingResponseContext
from checkin.utils.time import as_utc, to_storage

logger = logging.getLogger(__name__)


class ReminderStore:
    """Queries and single-row writes against the reminders table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def add(self, reminder: Reminder) -> Reminder:
        """Persist a new reminder."""
        async with self.session_factory() as session:
            session.add(reminder)
            await session.commit()
        return reminder

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        """Get a reminder by ID."""
        async with self.session_factory() as session:
            return await session.get(Reminder, reminder_id)

    async def find_active_follow_up(self, parent_id: str) -> Optional[Reminder]:
        """Get the follow-up still scheduled for ``parent_id``, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reminder)
                .where(
                    Reminder.parent_id == parent_id,
                    Reminder.kind == ReminderKind.FOLLOW_UP,
                    Reminder.status == ReminderStatus.ACTIVE,
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def fetch_due(self, window_start: datetime, window_end: datetime) -> List[Reminder]:
        """
        Active reminders whose next occurrence lies in [window_start, window_end].
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reminder)
                .where(
                    Reminder.status == ReminderStatus.ACTIVE,
                    Reminder.next_occurrence_at >= to_storage(window_start),
                    Reminder.next_occurrence_at <= to_storage(window_end),
                )
                .order_by(Reminder.next_occurrence_at)
            )
            return list(result.scalars().all())

    async def fetch_missed(
        self,
        before: datetime,
        limit: int,
        exclude_unconfirmed: bool = False
    ) -> List[Reminder]:
        """
        Active reminders whose next occurrence is older than ``before``.

        Oldest first, capped at ``limit`` so recovery from a long outage is
        spread over several ticks.

        Args:
            before: Start of the current scan window
            limit: Maximum reminders to return
            exclude_unconfirmed: Leave out reminders held back until their recipient confirms

        Returns:
            Missed reminders, oldest first
        """
        query = select(Reminder).where(
            Reminder.status == ReminderStatus.ACTIVE,
            Reminder.next_occurrence_at < to_storage(before),
        )
        if exclude_unconfirmed:
            query = (
                query.outerjoin(Recipient, Recipient.id == Reminder.recipient_id)
                .where(or_(
                    Recipient.id.is_(None),
                    Recipient.confirmed.is_(True),
                    Reminder.kind == ReminderKind.CONFIRMATION,
                ))
            )

        async with self.session_factory() as session:
            result = await session.execute(
                query.order_by(Reminder.next_occurrence_at).limit(limit)
            )
            return list(result.scalars().all())

    async def advance(
        self,
        reminder_id: str,
        expected_next: datetime,
        new_next: datetime,
        dispatched_at: datetime
    ) -> bool:
        """
        Move a recurring reminder to its next occurrence.

        Compare-and-swap on the occurrence just handled, so a concurrent
        reschedule is never overwritten.

        Returns:
            True if the reminder still pointed at ``expected_next``
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder)
                .where(
                    Reminder.id == reminder_id,
                    Reminder.next_occurrence_at == to_storage(expected_next),
                )
                .values(
                    next_occurrence_at=to_storage(new_next),
                    last_dispatched_at=to_storage(dispatched_at),
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"Reminder {reminder_id} changed under the scanner; not advanced")
            return False
        return True

    async def archive(self, reminder_id: str, expected_next: datetime, dispatched_at: datetime) -> bool:
        """Archive a one-time reminder after its single dispatch."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder)
                .where(
                    Reminder.id == reminder_id,
                    Reminder.next_occurrence_at == to_storage(expected_next),
                )
                .values(
                    status=ReminderStatus.ARCHIVED,
                    last_dispatched_at=to_storage(dispatched_at),
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()
        return result.rowcount == 1

    async def set_status(
        self,
        reminder_id: str,
        status: ReminderStatus,
        next_occurrence_at: Optional[datetime] = None
    ) -> bool:
        """Change lifecycle status, optionally resetting the next occurrence."""
        values = {"status": status, "updated_at": datetime.utcnow()}
        if next_occurrence_at is not None:
            values["next_occurrence_at"] = to_storage(next_occurrence_at)

        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder).where(Reminder.id == reminder_id).values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def record_completion(self, reminder_id: str, completed_at: datetime) -> bool:
        """Count a completion reply against a reminder."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Reminder)
                .where(Reminder.id == reminder_id)
                .values(
                    last_completed_at=to_storage(completed_at),
                    completion_count=Reminder.completion_count + 1,
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()
        return result.rowcount == 1

    async def pending_contexts(self, recipient_id: str, since: datetime) -> List[PendingResponseContext]:
        """
        Reminders sent to a recipient since ``since`` that have not been answered.

        Args:
            recipient_id: Recipient the reply came from
            since: Oldest dispatch that can still be answered

        Returns:
            Contexts, most recently dispatched first
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reminder, DispatchRecord.updated_at)
                .join(DispatchRecord, DispatchRecord.reminder_id == Reminder.id)
                .where(
                    Reminder.recipient_id == recipient_id,
                    Reminder.status != ReminderStatus.PAUSED,
                    DispatchRecord.status == DispatchStatus.SENT,
                    DispatchRecord.updated_at >= to_storage(since),
                )
            )
            rows = result.all()

        latest: Dict[str, tuple] = {}
        for reminder, sent_at in rows:
            current = latest.get(reminder.id)
            if current is None or sent_at > current[1]:
                latest[reminder.id] = (reminder, sent_at)

        contexts = []
        for reminder, sent_at in latest.values():
            if reminder.last_completed_at is not None and reminder.last_completed_at >= sent_at:
                continue
            contexts.append(PendingResponseContext(
                reminder_id=reminder.id,
                recipient_id=reminder.recipient_id,
                title=reminder.title,
                kind=reminder.kind,
                response_requirement=reminder.response_requirement,
                last_dispatched_at=as_utc(sent_at),
            ))

        contexts.sort(key=lambda c: c.last_dispatched_at, reverse=True)
        return contexts
