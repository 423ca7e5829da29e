"""
Direct sends: one-off texts to a recipient outside the reminder schedule.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.domain.errors import DeliveryError
from checkin.domain.recipient import is_e164
from checkin.infrastructure.recipient_store import RecipientDirectory
from checkin.infrastructure.twilio_sms import DeliveryGateway
from checkin.usecases.quota_guard import QuotaGuard
from checkin.utils.time import as_utc, utc_now

logger = logging.getLogger(__name__)


class DirectSendStatus(str, Enum):
    """Outcome of a direct send."""
    SENT = "sent"
    REJECTED = "rejected"
    QUOTA_DENIED = "quota_denied"
    FAILED = "failed"


class DirectSendResult(BaseModel):
    """What happened to a direct send."""
    status: DirectSendStatus
    message_id: Optional[str] = None
    carrier_status: Optional[str] = None
    reason: Optional[str] = None
    sent_at: Optional[datetime] = None


class DirectSender:
    """Sends ad hoc texts, charged against the same quota as scheduled reminders."""

    def __init__(self, session_factory: async_sessionmaker, gateway: DeliveryGateway):
        self.gateway = gateway
        self.quota = QuotaGuard(session_factory)
        self.recipients = RecipientDirectory(session_factory)

    async def send_now(
        self,
        account_id: str,
        recipient_id: str,
        body: str,
        now: Optional[datetime] = None
    ) -> DirectSendResult:
        """
        Send one text immediately.

        Args:
            account_id: Account paying for the message
            recipient_id: Recipient to text
            body: Message text
            now: Send instant for quota accounting (defaults to the wall clock)

        Returns:
            DirectSendResult; nothing is sent unless status is SENT
        """
        now = as_utc(now or utc_now())

        if not body or not body.strip():
            return self._rejected(recipient_id, "empty_body")

        recipient = await self.recipients.get(recipient_id)
        if recipient is None or recipient.account_id != account_id:
            return self._rejected(recipient_id, "unknown_recipient")
        if recipient.opted_out:
            return self._rejected(recipient_id, "recipient_opted_out")
        if recipient.unreachable:
            return self._rejected(recipient_id, "recipient_unreachable")
        if not is_e164(recipient.address):
            return self._rejected(recipient_id, "invalid_address")

        if not await self.quota.try_consume(account_id, now=now):
            return DirectSendResult(status=DirectSendStatus.QUOTA_DENIED, reason="quota_exceeded")

        try:
            result = await self.gateway.send(recipient.address, body)
        except DeliveryError as e:
            logger.error(f"Direct send to {recipient_id} failed: {e}")
            if e.is_permanent:
                await self.recipients.mark_unreachable(recipient.id, f"{e.category.value}: {e.detail}")
            return DirectSendResult(status=DirectSendStatus.FAILED, reason=e.category.value)

        logger.info(
            f"Direct send to {recipient_id} for account {account_id}. "
            f"SID: {result.message_id}, status: {result.status}"
        )
        return DirectSendResult(
            status=DirectSendStatus.SENT,
            message_id=result.message_id,
            carrier_status=result.status,
            sent_at=now,
        )

    def _rejected(self, recipient_id: str, reason: str) -> DirectSendResult:
        logger.warning(f"Direct send to {recipient_id} rejected: {reason}")
        return DirectSendResult(status=DirectSendStatus.REJECTED, reason=reason)
