"""
Idempotency ledger for reminder dispatches.

A claim is a plain INSERT against the (reminder_id, occurrence_at) unique
key, committed on its own, so whichever worker commits first owns the
occurrence and every other worker gets an IntegrityError.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.domain.dispatch_record import DispatchRecord, DispatchStatus
from checkin.utils.time import to_storage, utc_now

logger = logging.getLogger(__name__)


class DispatchLedger:
    """Claim-then-finalize store for dispatch records."""

    def __init__(self, session_factory: async_sessionmaker, worker_id: str = ""):
        self.session_factory = session_factory
        self.worker_id = worker_id

    async def claim(self, reminder_id: str, occurrence_at: datetime) -> Optional[DispatchRecord]:
        """
        Reserve one occurrence for dispatch.

        Args:
            reminder_id: The reminder's ID
            occurrence_at: The due instant being fulfilled

        Returns:
            The new claimed record, or None if the occurrence was already claimed
        """
        record = DispatchRecord(
            reminder_id=reminder_id,
            occurrence_at=to_storage(occurrence_at),
            status=DispatchStatus.CLAIMED,
            worker_id=self.worker_id or None,
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Occurrence {reminder_id}@{occurrence_at} already claimed")
                return None
        return record

    async def finalize(
        self,
        record_id: int,
        status: DispatchStatus,
        carrier_message_id: Optional[str] = None,
        carrier_status: Optional[str] = None,
        error_category: Optional[str] = None,
        error_detail: Optional[str] = None
    ) -> bool:
        """
        Move a claimed record to its final status.

        Returns:
            True if the record was still claimed and is now final
        """
        if status is DispatchStatus.CLAIMED:
            raise ValueError("finalize needs a terminal status")

        async with self.session_factory() as session:
            result = await session.execute(
                update(DispatchRecord)
                .where(
                    DispatchRecord.id == record_id,
                    DispatchRecord.status == DispatchStatus.CLAIMED
                )
                .values(
                    status=status,
                    carrier_message_id=carrier_message_id,
                    carrier_status=carrier_status,
                    error_category=error_category,
                    error_detail=error_detail[:500] if error_detail else None,
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"Dispatch record {record_id} was not claimed; left unchanged")
            return False
        return True

    async def get(self, reminder_id: str, occurrence_at: datetime) -> Optional[DispatchRecord]:
        """Fetch the record for one occurrence, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DispatchRecord).where(
                    DispatchRecord.reminder_id == reminder_id,
                    DispatchRecord.occurrence_at == to_storage(occurrence_at)
                )
            )
            return result.scalar_one_or_none()

    async def history(self, reminder_id: str) -> List[DispatchRecord]:
        """All records for a reminder, oldest occurrence first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DispatchRecord)
                .where(DispatchRecord.reminder_id == reminder_id)
                .order_by(DispatchRecord.occurrence_at)
            )
            return list(result.scalars().all())

    async def expire_stale_claims(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Fail claims that were never finalized, e.g. after a worker crash.

        Args:
            older_than: Age after which a claim is considered abandoned
            now: Current instant (defaults to the wall clock)

        Returns:
            Number of records finalized
        """
        cutoff = to_storage((now or utc_now()) - older_than)
        async with self.session_factory() as session:
            result = await session.execute(
                update(DispatchRecord)
                .where(
                    DispatchRecord.status == DispatchStatus.CLAIMED,
                    DispatchRecord.created_at < cutoff
                )
                .values(
                    status=DispatchStatus.FAILED,
                    error_category="claim_expired",
                    error_detail="claim was never finalized",
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()

        if result.rowcount:
            logger.warning(f"Expired {result.rowcount} stale dispatch claims")
        return result.rowcount
