"""
SMS webhook endpoint for receiving replies from Twilio.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Request, Form, HTTPException
from fastapi.responses import Response
from twilio.request_validator import RequestValidator
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from checkin.config.settings import get_settings
from checkin.infrastructure.database import async_session_factory
from checkin.usecases.response_service import ResponseService
from checkin.domain.processed_message import ProcessedMessage
from checkin.domain.recipient import is_e164
from checkin.domain.response import InboundMessage
from checkin.utils.time import utc_now

logger = logging.getLogger(__name__)
router = APIRouter()
settings = get_settings()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def twiml_response() -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml")


async def is_message_processed(message_sid: str) -> bool:
    """
    Check if a message has already been processed.

    Args:
        message_sid: Twilio message SID

    Returns:
        True if message was already processed
    """
    async with async_session_factory() as session:
        result = await session.execute(
            select(ProcessedMessage).where(ProcessedMessage.message_sid == message_sid)
        )
        return result.scalar_one_or_none() is not None


async def mark_message_processed(message_sid: str) -> bool:
    """
    Mark a message as processed.

    Args:
        message_sid: Twilio message SID

    Returns:
        False if another request marked it first
    """
    async with async_session_factory() as session:
        session.add(ProcessedMessage(
            message_sid=message_sid,
            processed_at=datetime.utcnow()
        ))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
    return True


async def cleanup_old_processed_messages(days: int = 7) -> int:
    """
    Remove processed messages older than specified days.

    Args:
        days: Number of days to retain messages

    Returns:
        Number of rows removed
    """
    async with async_session_factory() as session:
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await session.execute(
            delete(ProcessedMessage).where(ProcessedMessage.processed_at < cutoff)
        )
        await session.commit()
    return result.rowcount


async def validate_twilio_signature(request: Request) -> bool:
    """
    Validate the Twilio webhook signature against the posted form fields.

    Args:
        request: FastAPI request object

    Returns:
        True if signature is valid
    """
    if not settings.validate_twilio_signature:
        return True

    validator = RequestValidator(settings.twilio_auth_token)
    signature = request.headers.get("X-Twilio-Signature", "")

    # Starlette caches the parsed form, so this does not re-read the stream
    form = await request.form()
    params = {key: value for key, value in form.items()}

    return validator.validate(str(request.url), params, signature)


def media_urls(form, num_media: int) -> List[str]:
    """Collect MediaUrl0..MediaUrlN from the posted form."""
    urls = []
    for index in range(num_media):
        url = form.get(f"MediaUrl{index}")
        if url:
            urls.append(url)
    return urls


@router.post("/webhook/sms")
async def sms_webhook(
    request: Request,
    Body: str = Form(default=""),
    From: str = Form(...),
    MessageSid: str = Form(...),
    NumMedia: str = Form(default="0"),
    MediaUrl0: Optional[str] = Form(default=None),
    MediaContentType0: Optional[str] = Form(default=None),
):
    """
    Handle an inbound text from Twilio.

    The reply is classified against the sender's pending reminders; nothing
    is texted back, so the TwiML response is always empty.
    """
    if not await validate_twilio_signature(request):
        logger.warning(f"Invalid Twilio signature for message {MessageSid}")
        raise HTTPException(status_code=403, detail="Invalid signature")

    sender = From.strip()
    if not is_e164(sender):
        logger.warning(f"Rejecting message {MessageSid} from non-E.164 sender {sender!r}")
        raise HTTPException(status_code=400, detail="Sender must be an E.164 number")

    if await is_message_processed(MessageSid):
        logger.info(f"Message {MessageSid} already processed, skipping")
        return twiml_response()

    # Mark message as processed immediately to prevent race conditions
    if not await mark_message_processed(MessageSid):
        logger.info(f"Message {MessageSid} claimed by a concurrent request, skipping")
        return twiml_response()

    try:
        num_media = int(NumMedia)
    except ValueError:
        num_media = 0

    attachments = media_urls(await request.form(), num_media)
    if MediaUrl0 and not attachments:
        attachments = [MediaUrl0]

    logger.info(
        f"Received message from {sender}, SID: {MessageSid}, "
        f"media: {len(attachments)} ({MediaContentType0 or 'none'})"
    )

    try:
        service = ResponseService(async_session_factory)
        await service.handle_inbound(InboundMessage(
            sender_address=sender,
            body=Body.strip(),
            attachment_refs=attachments,
            received_at=utc_now(),
            carrier_message_id=MessageSid,
        ))
    except Exception as e:
        logger.exception(f"Error processing message {MessageSid}: {e}")

    return twiml_response()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "checkin-reminders"}
