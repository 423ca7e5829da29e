"""
Per-account send quota enforcement.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.domain.quota import QuotaCounter
from checkin.infrastructure.quota_store import current_period_query, get_current_counter
from checkin.utils.time import utc_now

logger = logging.getLogger(__name__)


class QuotaGuard:
    """Gate every outbound send on the account's billing-period counter."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def try_consume(
        self,
        account_id: str,
        amount: int = 1,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Atomically use ``amount`` messages from the account's current period.

        The check and the increment are one conditional UPDATE on the single
        counter whose period contains ``now``, so concurrent scanner processes
        can never push ``used`` past ``limit``.

        Args:
            account_id: Account being charged
            amount: Messages to consume
            now: Current instant (defaults to the wall clock)

        Returns:
            True if the send is permitted; False means do not send
        """
        if amount < 1:
            raise ValueError("amount must be at least 1")

        now = now or utc_now()
        current_id = (
            current_period_query(account_id, now)
            .with_only_columns(QuotaCounter.id)
            .order_by(QuotaCounter.period_start.desc())
            .limit(1)
            .correlate(None)
            .scalar_subquery()
        )
        async with self.session_factory() as session:
            result = await session.execute(
                update(QuotaCounter)
                .where(
                    QuotaCounter.id == current_id,
                    QuotaCounter.used + amount <= QuotaCounter.limit,
                )
                .values(used=QuotaCounter.used + amount)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        permitted = result.rowcount > 0
        if not permitted:
            logger.info(f"Quota denied for account {account_id} (amount={amount})")
        return permitted

    async def remaining(self, account_id: str, now: Optional[datetime] = None) -> int:
        """
        Messages still available in the account's current period.

        Returns:
            Remaining count, or 0 when no period is open
        """
        async with self.session_factory() as session:
            counter = await get_current_counter(session, account_id, now or utc_now())
        if counter is None:
            return 0
        return max(counter.limit - counter.used, 0)
