"""
Quota counter persistence.

Opening a new billing period is driven by the billing side of the host
application; the quota guard only reads and increments the open counter.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin.domain.quota import QuotaCounter
from checkin.utils.time import to_storage

logger = logging.getLogger(__name__)


def current_period_query(account_id: str, now: datetime):
    """Select the counter whose period contains ``now``."""
    stored_now = to_storage(now)
    return select(QuotaCounter).where(
        QuotaCounter.account_id == account_id,
        QuotaCounter.period_start <= stored_now,
        QuotaCounter.period_end > stored_now,
    )


async def get_current_counter(
    session: AsyncSession,
    account_id: str,
    now: datetime
) -> Optional[QuotaCounter]:
    """Get the account's counter for the period containing ``now``."""
    result = await session.execute(
        current_period_query(account_id, now)
        .order_by(QuotaCounter.period_start.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def open_quota_period(
    session_factory: async_sessionmaker,
    account_id: str,
    period_start: datetime,
    period_end: datetime,
    limit: int
) -> QuotaCounter:
    """
    Start a new billing period for an account with a zeroed counter.

    Args:
        session_factory: Session factory for the quota store
        account_id: Account the counter belongs to
        period_start: Inclusive start of the period
        period_end: Exclusive end of the period
        limit: Messages allowed within the period

    Returns:
        The new counter

    Raises:
        ValueError: for an invalid period or limit, including one that
            overlaps a period already open for the account
    """
    if period_end <= period_start:
        raise ValueError("period_end must be after period_start")
    if limit < 0:
        raise ValueError("limit must not be negative")

    start, end = to_storage(period_start), to_storage(period_end)
    counter = QuotaCounter(
        account_id=account_id,
        period_start=start,
        period_end=end,
        limit=limit,
        used=0,
    )
    async with session_factory() as session:
        overlapping = await session.execute(
            select(QuotaCounter.id).where(
                QuotaCounter.account_id == account_id,
                QuotaCounter.period_start < end,
                QuotaCounter.period_end > start,
            ).limit(1)
        )
        if overlapping.scalar_one_or_none() is not None:
            raise ValueError(f"Quota period for {account_id} overlaps an existing period")

        session.add(counter)
        await session.commit()

    logger.info(f"Opened quota period for {account_id}: {limit} messages until {period_end}")
    return counter
