"""
Due-item scanner: finds reminders whose occurrence has come up and sends
each occurrence at most once, however many scanner instances overlap.
"""

import asyncio
import logging
import os
import socket
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkin.config.settings import Settings, UnconfirmedPolicy, get_settings
from checkin.domain.dispatch_record import DispatchRecord, DispatchStatus
from checkin.domain.errors import ConfigurationError, DeliveryError
from checkin.domain.recipient import Recipient
from checkin.domain.reminder import Reminder, ReminderKind, ReminderStatus
from checkin.infrastructure.dispatch_ledger import DispatchLedger
from checkin.infrastructure.recipient_store import RecipientDirectory
from checkin.infrastructure.reminder_store import ReminderStore
from checkin.infrastructure.twilio_sms import DeliveryGateway, format_reminder_message
from checkin.usecases.occurrence import advance_occurrence
from checkin.usecases.quota_guard import QuotaGuard
from checkin.utils.time import as_utc, utc_now

logger = logging.getLogger(__name__)


class CandidateOutcome(str, Enum):
    """What happened to one due reminder during a tick."""
    SENT = "sent"
    FAILED = "failed"
    QUOTA_DENIED = "quota_denied"
    ALREADY_CLAIMED = "already_claimed"
    DEFERRED = "deferred"
    ERROR = "error"


class ScanSummary(BaseModel):
    """Counters for one scanner tick."""
    started_at: datetime
    candidates: int = 0
    missed: int = 0
    sent: int = 0
    failed: int = 0
    quota_denied: int = 0
    already_claimed: int = 0
    deferred: int = 0
    errors: int = 0
    expired_claims: int = 0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DueItemScanner:
    """Runs one scan per tick; safe to run concurrently in several processes."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: DeliveryGateway,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.worker_id = self.settings.worker_id or default_worker_id()
        self.reminders = ReminderStore(session_factory)
        self.ledger = DispatchLedger(session_factory, worker_id=self.worker_id)
        self.quota = QuotaGuard(session_factory)
        self.recipients = RecipientDirectory(session_factory)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.settings.scan_window_seconds)

    @property
    def stale_claim_age(self) -> timedelta:
        return timedelta(minutes=self.settings.stale_claim_minutes)

    async def run_tick(self, now: Optional[datetime] = None) -> ScanSummary:
        """
        Scan for due reminders and dispatch them.

        Args:
            now: Tick instant (defaults to the wall clock)

        Returns:
            Per-outcome counters for the tick
        """
        now = as_utc(now or utc_now())
        summary = ScanSummary(started_at=now)

        # Claim age is measured against the wall clock, not the tick instant
        summary.expired_claims = await self.ledger.expire_stale_claims(self.stale_claim_age)

        window_start = now - self.window
        due = await self.reminders.fetch_due(window_start, now)
        missed = await self.reminders.fetch_missed(
            window_start,
            self.settings.missed_batch_size,
            exclude_unconfirmed=self.settings.unconfirmed_policy is UnconfirmedPolicy.DEFER,
        )

        for reminder in missed:
            lag = now - as_utc(reminder.next_occurrence_at)
            logger.warning(
                f"Missed occurrence for reminder {reminder.id}: due "
                f"{as_utc(reminder.next_occurrence_at).isoformat()}, {lag} behind"
            )

        candidates = [(r, True) for r in missed] + [(r, False) for r in due]
        summary.candidates = len(candidates)
        summary.missed = len(missed)

        semaphore = asyncio.Semaphore(self.settings.scan_concurrency)

        async def run(reminder: Reminder, is_missed: bool) -> CandidateOutcome:
            async with semaphore:
                return await self.process_candidate(reminder, now, is_missed)

        outcomes = await asyncio.gather(*(run(r, m) for r, m in candidates))

        for outcome in outcomes:
            field = {
                CandidateOutcome.SENT: "sent",
                CandidateOutcome.FAILED: "failed",
                CandidateOutcome.QUOTA_DENIED: "quota_denied",
                CandidateOutcome.ALREADY_CLAIMED: "already_claimed",
                CandidateOutcome.DEFERRED: "deferred",
                CandidateOutcome.ERROR: "errors",
            }[outcome]
            setattr(summary, field, getattr(summary, field) + 1)

        if summary.candidates:
            logger.info(f"Scan complete: {summary.model_dump_json()}")
        return summary

    async def process_candidate(
        self,
        reminder: Reminder,
        now: datetime,
        is_missed: bool = False
    ) -> CandidateOutcome:
        """
        Claim, send and advance a single due reminder.

        Failures are contained here so one bad reminder cannot stop the tick.
        """
        occurrence = as_utc(reminder.next_occurrence_at)
        try:
            recipient = await self.recipients.get(reminder.recipient_id)

            if self._should_defer(reminder, recipient):
                logger.info(f"Deferring reminder {reminder.id}: recipient not confirmed yet")
                return CandidateOutcome.DEFERRED

            record = await self.ledger.claim(reminder.id, occurrence)
            if record is None:
                await self._recover_unadvanced(reminder, occurrence, now)
                return CandidateOutcome.ALREADY_CLAIMED

            try:
                outcome = await self._dispatch(reminder, recipient, record, now, is_missed)
            except Exception as e:
                logger.exception(f"Dispatch of reminder {reminder.id} failed unexpectedly")
                await self.ledger.finalize(
                    record.id,
                    DispatchStatus.FAILED,
                    error_category="internal_error",
                    error_detail=str(e),
                )
                outcome = CandidateOutcome.ERROR

            await self._advance(reminder, occurrence, now)
            return outcome
        except Exception:
            logger.exception(f"Error processing reminder {reminder.id}")
            return CandidateOutcome.ERROR

    def _should_defer(self, reminder: Reminder, recipient: Optional[Recipient]) -> bool:
        return (
            recipient is not None
            and not recipient.confirmed
            and reminder.kind is not ReminderKind.CONFIRMATION
            and self.settings.unconfirmed_policy is UnconfirmedPolicy.DEFER
        )

    def _skip_reason(
        self,
        reminder: Reminder,
        recipient: Optional[Recipient],
        is_missed: bool
    ) -> Optional[str]:
        if recipient is None:
            return "unknown_recipient"
        if recipient.opted_out:
            return "recipient_opted_out"
        if recipient.unreachable:
            return "recipient_unreachable"
        if (
            not recipient.confirmed
            and reminder.kind is not ReminderKind.CONFIRMATION
            and self.settings.unconfirmed_policy is UnconfirmedPolicy.SKIP
        ):
            return "recipient_unconfirmed"
        if is_missed and not self.settings.send_missed_occurrences:
            return "missed_occurrence"
        return None

    async def _dispatch(
        self,
        reminder: Reminder,
        recipient: Optional[Recipient],
        record: DispatchRecord,
        now: datetime,
        is_missed: bool
    ) -> CandidateOutcome:
        reason = self._skip_reason(reminder, recipient, is_missed)
        if reason:
            logger.warning(f"Not sending reminder {reminder.id}: {reason}")
            await self.ledger.finalize(record.id, DispatchStatus.FAILED, error_category=reason)
            return CandidateOutcome.FAILED

        if not await self.quota.try_consume(reminder.account_id, now=now):
            await self.ledger.finalize(
                record.id,
                DispatchStatus.FAILED,
                error_category="quota_exceeded",
                error_detail="quota exceeded",
            )
            return CandidateOutcome.QUOTA_DENIED

        body = format_reminder_message(
            title=reminder.title,
            recipient_name=recipient.display_name,
            kind=reminder.kind,
            requirement=reminder.response_requirement,
        )

        try:
            result = await self.gateway.send(recipient.address, body)
        except DeliveryError as e:
            logger.error(f"Delivery of reminder {reminder.id} failed: {e}")
            await self.ledger.finalize(
                record.id,
                DispatchStatus.FAILED,
                error_category=e.category.value,
                error_detail=e.detail,
            )
            if e.is_permanent:
                await self.recipients.mark_unreachable(recipient.id, f"{e.category.value}: {e.detail}")
            return CandidateOutcome.FAILED

        await self.ledger.finalize(
            record.id,
            DispatchStatus.SENT,
            carrier_message_id=result.message_id,
            carrier_status=result.status,
        )
        logger.info(f"Sent reminder {reminder.id} to {recipient.id}. SID: {result.message_id}")
        return CandidateOutcome.SENT

    async def _advance(self, reminder: Reminder, occurrence: datetime, now: datetime) -> None:
        if not reminder.pattern.is_recurring:
            await self.reminders.archive(reminder.id, occurrence, now)
            logger.info(f"Archived one-time reminder {reminder.id}")
            return

        try:
            new_next = advance_occurrence(
                reminder.recurrence, reminder.anchor_time, reminder.timezone, occurrence, now
            )
        except ConfigurationError as e:
            logger.error(f"Pausing reminder {reminder.id}: {e}")
            await self.reminders.set_status(reminder.id, ReminderStatus.PAUSED)
            return

        if await self.reminders.advance(reminder.id, occurrence, new_next, now):
            logger.info(f"Reminder {reminder.id} next due {new_next.isoformat()}")

    async def _recover_unadvanced(self, reminder: Reminder, occurrence: datetime, now: datetime) -> None:
        """
        Advance a reminder whose occurrence was finalized long ago but never
        moved on, e.g. because the owning worker died mid-tick.
        """
        record = await self.ledger.get(reminder.id, occurrence)
        if record is None or record.status is DispatchStatus.CLAIMED:
            return
        if as_utc(record.updated_at) > utc_now() - self.stale_claim_age:
            return
        logger.warning(f"Recovering reminder {reminder.id} left at {occurrence.isoformat()}")
        await self._advance(reminder, occurrence, now)
