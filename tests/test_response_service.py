"""
Tests for inbound reply handling.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from checkin.domain.dispatch_record import DispatchRecord, DispatchStatus
from checkin.domain.reminder import ReminderKind, ReminderStatus, ResponseRequirement
from checkin.domain.response import InboundMessage, InboundResponse, Polarity, SuggestedAction
from checkin.infrastructure.recipient_store import RecipientDirectory
from checkin.infrastructure.reminder_store import ReminderStore
from checkin.usecases.classifier import ResponseClassifier
from checkin.usecases.response_service import ResponseService
from checkin.utils.time import as_utc, to_storage, utc_now

from conftest import add_recipient, add_reminder

ADDRESS = "+15551230001"


async def mark_sent(session_factory, reminder, minutes_ago=5):
    sent_at = to_storage(utc_now() - timedelta(minutes=minutes_ago))
    async with session_factory() as session:
        session.add(DispatchRecord(
            reminder_id=reminder.id,
            occurrence_at=to_storage(as_utc(reminder.next_occurrence_at)),
            status=DispatchStatus.SENT,
            carrier_message_id="SMsent",
            created_at=sent_at,
            updated_at=sent_at,
        ))
        await session.commit()


def inbound(body="", attachments=None, sid="SMin1") -> InboundMessage:
    return InboundMessage(
        sender_address=ADDRESS,
        body=body,
        attachment_refs=attachments or [],
        received_at=utc_now(),
        carrier_message_id=sid,
    )


@pytest.fixture
def service(session_factory, test_settings):
    return ResponseService(session_factory, test_settings, classifier=ResponseClassifier())


class TestHandleInbound:
    """Tests for ResponseService.handle_inbound."""

    @pytest.mark.asyncio
    async def test_done_records_completion(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder)

        verdict = await service.handle_inbound(inbound("Done"))

        stored = await ReminderStore(session_factory).get(reminder.id)
        assert verdict.action == SuggestedAction.MARK_COMPLETE
        assert stored.completion_count == 1
        assert stored.last_completed_at is not None

    @pytest.mark.asyncio
    async def test_answered_reminder_is_no_longer_pending(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder)

        await service.handle_inbound(inbound("Done", sid="SMa"))
        verdict = await service.handle_inbound(inbound("Done", sid="SMb"))

        stored = await ReminderStore(session_factory).get(reminder.id)
        assert verdict.matched_reminder_id is None
        assert verdict.action == SuggestedAction.FLAG_FOR_REVIEW
        assert stored.completion_count == 1

    @pytest.mark.asyncio
    async def test_reply_outside_window_is_unmatched(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder, minutes_ago=90)

        verdict = await service.handle_inbound(inbound("Done"))

        assert verdict.matched_reminder_id is None

    @pytest.mark.asyncio
    async def test_stop_opts_out(self, service, session_factory):
        await add_recipient(session_factory)

        verdict = await service.handle_inbound(inbound("STOP"))

        recipient = await RecipientDirectory(session_factory).get("rcpt-1")
        assert verdict.polarity == Polarity.OPT_OUT
        assert recipient.opted_out is True

    @pytest.mark.asyncio
    async def test_yes_confirms_recipient(self, service, session_factory):
        await add_recipient(session_factory, confirmed=False)
        reminder = await add_reminder(session_factory, kind=ReminderKind.CONFIRMATION)
        await mark_sent(session_factory, reminder)

        verdict = await service.handle_inbound(inbound("YES"))

        recipient = await RecipientDirectory(session_factory).get("rcpt-1")
        assert verdict.action == SuggestedAction.MARK_CONFIRMED
        assert recipient.confirmed is True

    @pytest.mark.asyncio
    async def test_photo_reply_completes_photo_reminder(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(
            session_factory, response_requirement=ResponseRequirement.ATTACHMENT
        )
        await mark_sent(session_factory, reminder)

        verdict = await service.handle_inbound(inbound(attachments=["https://api.twilio.com/media/1"]))

        assert verdict.action == SuggestedAction.MARK_COMPLETE
        assert verdict.matched_reminder_id == reminder.id

    @pytest.mark.asyncio
    async def test_negative_schedules_follow_up(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder)

        verdict = await service.handle_inbound(inbound("not yet"))

        follow_up = await ReminderStore(session_factory).find_active_follow_up(reminder.id)
        assert verdict.action == SuggestedAction.SCHEDULE_FOLLOW_UP
        assert follow_up is not None
        assert follow_up.kind == ReminderKind.FOLLOW_UP

    @pytest.mark.asyncio
    async def test_completion_cancels_pending_follow_up(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder)

        await service.handle_inbound(inbound("not yet", sid="SMa"))
        follow_up = await ReminderStore(session_factory).find_active_follow_up(reminder.id)
        await service.handle_inbound(inbound("done", sid="SMb"))

        cancelled = await ReminderStore(session_factory).get(follow_up.id)
        assert cancelled.status == ReminderStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_unknown_sender_is_audited_for_review(self, service, session_factory):
        verdict = await service.handle_inbound(inbound("done"))

        async with session_factory() as session:
            rows = (await session.execute(select(InboundResponse))).scalars().all()

        assert verdict.action == SuggestedAction.FLAG_FOR_REVIEW
        assert len(rows) == 1
        assert rows[0].recipient_id is None
        assert rows[0].needs_review is True

    @pytest.mark.asyncio
    async def test_audit_row_written(self, service, session_factory):
        await add_recipient(session_factory)
        reminder = await add_reminder(session_factory)
        await mark_sent(session_factory, reminder)

        await service.handle_inbound(inbound("Done", sid="SMaudit"))

        async with session_factory() as session:
            row = (await session.execute(select(InboundResponse))).scalar_one()

        assert row.carrier_message_id == "SMaudit"
        assert row.matched_reminder_id == reminder.id
        assert row.action == SuggestedAction.MARK_COMPLETE
        assert row.needs_review is False
