"""
Recipient directory: address lookup and reachability flags.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.domain.recipient import Recipient

logger = logging.getLogger(__name__)


class RecipientDirectory:
    """Lookup and remediation flags for text-message recipients."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, recipient_id: str) -> Optional[Recipient]:
        """Get a recipient by ID."""
        async with self.session_factory() as session:
            return await session.get(Recipient, recipient_id)

    async def find_by_address(self, address: str) -> Optional[Recipient]:
        """Find the recipient texting from ``address`` (E.164)."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Recipient).where(Recipient.address == address).limit(1)
            )
            return result.scalar_one_or_none()

    async def _set_flags(self, recipient_id: str, **values) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Recipient)
                .where(Recipient.id == recipient_id)
                .values(updated_at=datetime.utcnow(), **values)
            )
            await session.commit()
        return result.rowcount == 1

    async def mark_confirmed(self, recipient_id: str) -> bool:
        """Record that the recipient agreed to receive reminders."""
        logger.info(f"Recipient {recipient_id} confirmed")
        return await self._set_flags(recipient_id, confirmed=True)

    async def mark_opted_out(self, recipient_id: str) -> bool:
        """Record a STOP-style opt-out; the scanner stops sending afterwards."""
        logger.info(f"Recipient {recipient_id} opted out")
        return await self._set_flags(recipient_id, opted_out=True)

    async def mark_unreachable(self, recipient_id: str, reason: str) -> bool:
        """Flag an address the carrier permanently rejected."""
        logger.warning(f"Recipient {recipient_id} marked unreachable: {reason}")
        return await self._set_flags(
            recipient_id, unreachable=True, unreachable_reason=reason[:255]
        )
