"""
Inbound reply handling: correlate, classify, apply and audit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.config.settings import Settings, get_settings
from checkin.domain.recipient import Recipient
from checkin.domain.reminder import ReminderStatus
from checkin.domain.response import (
    ClassifiedResponse,
    InboundMessage,
    InboundResponse,
    Polarity,
    SuggestedAction,
)
from checkin.infrastructure.recipient_store import RecipientDirectory
from checkin.infrastructure.reminder_store import ReminderStore
from checkin.usecases.classifier import ResponseClassifier, get_classifier
from checkin.usecases.reminder_service import ReminderService
from checkin.utils.time import as_utc, to_storage

logger = logging.getLogger(__name__)


class ResponseService:
    """Turns inbound texts into reminder state changes."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        classifier: Optional[ResponseClassifier] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.classifier = classifier or get_classifier()
        self.recipients = RecipientDirectory(session_factory)
        self.reminders = ReminderStore(session_factory)
        self.reminder_service = ReminderService(session_factory, self.settings)

    async def handle_inbound(self, message: InboundMessage) -> ClassifiedResponse:
        """
        Classify an inbound text and act on the verdict.

        Args:
            message: The carrier's inbound message

        Returns:
            The classifier's verdict
        """
        received_at = as_utc(message.received_at)
        recipient = await self.recipients.find_by_address(message.sender_address)

        contexts = []
        if recipient is None:
            logger.warning(f"Reply from unknown address {message.sender_address}")
        else:
            since = received_at - timedelta(minutes=self.settings.response_window_minutes)
            contexts = await self.reminders.pending_contexts(recipient.id, since)

        verdict = self.classifier.classify(
            message.body,
            message.has_attachment,
            recipient.id if recipient else None,
            contexts,
        )
        needs_review = await self._apply(verdict, recipient, received_at)
        await self._record(message, recipient, verdict, needs_review, received_at)

        logger.info(
            f"Reply {message.carrier_message_id} classified as {verdict.polarity.value} "
            f"-> {verdict.action.value} (reminder={verdict.matched_reminder_id}, "
            f"confidence={verdict.confidence})"
        )
        return verdict

    async def _apply(
        self,
        verdict: ClassifiedResponse,
        recipient: Optional[Recipient],
        received_at: datetime
    ) -> bool:
        """Apply the verdict; returns whether the reply needs a human to look at it."""
        if verdict.polarity is Polarity.OPT_OUT:
            if recipient is not None:
                await self.recipients.mark_opted_out(recipient.id)
            return False

        action = verdict.action
        reminder_id = verdict.matched_reminder_id

        if action is SuggestedAction.FLAG_FOR_REVIEW:
            return True

        if action is SuggestedAction.MARK_CONFIRMED:
            if recipient is not None:
                await self.recipients.mark_confirmed(recipient.id)
            if reminder_id:
                await self.reminders.record_completion(reminder_id, received_at)
            return False

        if action is SuggestedAction.MARK_COMPLETE:
            await self._complete(reminder_id, received_at)
            return False

        if action is SuggestedAction.SCHEDULE_FOLLOW_UP:
            follow_up = await self.reminder_service.schedule_follow_up(reminder_id, now=received_at)
            return follow_up is None

        return False

    async def _complete(self, reminder_id: str, completed_at: datetime) -> None:
        reminder = await self.reminders.get(reminder_id)
        if reminder is None:
            return

        await self.reminders.record_completion(reminder.id, completed_at)

        # A completed parent no longer needs its nudge, and answering the
        # nudge completes the parent.
        if reminder.parent_id:
            await self.reminders.record_completion(reminder.parent_id, completed_at)
        else:
            pending = await self.reminders.find_active_follow_up(reminder.id)
            if pending is not None:
                await self.reminders.set_status(pending.id, ReminderStatus.ARCHIVED)
                logger.info(f"Cancelled follow-up {pending.id}; reminder {reminder.id} completed")

    async def _record(
        self,
        message: InboundMessage,
        recipient: Optional[Recipient],
        verdict: ClassifiedResponse,
        needs_review: bool,
        received_at: datetime
    ) -> None:
        async with self.session_factory() as session:
            session.add(InboundResponse(
                sender_address=message.sender_address,
                recipient_id=recipient.id if recipient else None,
                carrier_message_id=message.carrier_message_id,
                body=(message.body or "")[:1000],
                attachment_count=len(message.attachment_refs),
                matched_reminder_id=verdict.matched_reminder_id,
                polarity=verdict.polarity,
                action=verdict.action,
                confidence=verdict.confidence,
                needs_review=needs_review,
                received_at=to_storage(received_at),
            ))
            await session.commit()
