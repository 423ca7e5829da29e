"""
Twilio SMS delivery gateway.

Sends are attempted exactly once per call; a lost or timed-out send is
reported as a failure rather than retried, since Twilio message creation
is not idempotent. Status lookups are reads and are retried.
"""

import asyncio
import logging
from functools import lru_cache
from typing import Optional, Protocol

import requests
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from checkin.config.settings import Settings, get_settings
from checkin.domain.errors import DeliveryError, DeliveryErrorCategory
from checkin.domain.reminder import ReminderKind, ResponseRequirement

logger = logging.getLogger(__name__)

# https://www.twilio.com/docs/api/errors
INVALID_ADDRESS_CODES = {21211, 21214, 21217, 21401, 21407, 21421, 21614}
PERMANENT_REJECTION_CODES = {21610, 21612, 30003, 30004, 30005, 30006}
# Sender account problems: credentials, From number, region, content filtering
CARRIER_CONFIGURATION_CODES = {20003, 21408, 21606, 21659, 30002, 30007}
RATE_LIMIT_CODES = {14107, 20429, 30022}


class SendResult(BaseModel):
    """Carrier acknowledgement of a handed-off message."""
    message_id: str
    status: str


class DeliveryGateway(Protocol):
    """What the scanner needs from a text-message carrier."""

    async def send(self, to_address: str, body: str) -> SendResult:
        ...

    async def fetch_status(self, message_id: str) -> str:
        ...


def classify_twilio_error(error: TwilioRestException) -> DeliveryErrorCategory:
    """
    Map a Twilio REST error onto a delivery error category.

    Only codes that name the recipient's number as the problem are
    permanent; sender account errors and unknown codes are not.

    Args:
        error: Exception raised by the Twilio client

    Returns:
        The matching category
    """
    code = error.code
    if code in RATE_LIMIT_CODES or error.status == 429:
        return DeliveryErrorCategory.RATE_LIMITED
    if code in INVALID_ADDRESS_CODES:
        return DeliveryErrorCategory.INVALID_ADDRESS
    if code in PERMANENT_REJECTION_CODES:
        return DeliveryErrorCategory.PERMANENT_REJECTION
    if error.status is not None and error.status >= 500:
        return DeliveryErrorCategory.TRANSIENT_NETWORK
    if code in CARRIER_CONFIGURATION_CODES or error.status in (401, 403):
        logger.error(f"Twilio rejected the sender account: {code} {error.msg}")
    return DeliveryErrorCategory.CARRIER_CONFIGURATION


class TwilioSmsGateway:
    """Delivery gateway backed by the Twilio Messages API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[Client] = None
    ):
        self.settings = settings or get_settings()
        self.timeout = self.settings.delivery_timeout_seconds
        self.from_number = self.settings.twilio_sms_number
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=self.timeout),
            )
        return self._client

    def _create_message(self, to_address: str, body: str):
        return self.client.messages.create(
            body=body,
            from_=self.from_number,
            to=to_address
        )

    async def send(self, to_address: str, body: str) -> SendResult:
        """
        Send one SMS.

        Args:
            to_address: Recipient in E.164 format
            body: Message text

        Returns:
            Carrier message SID and initial status

        Raises:
            DeliveryError: for any carrier, network or timeout failure
        """
        try:
            msg = await asyncio.wait_for(
                asyncio.to_thread(self._create_message, to_address, body),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise DeliveryError(
                DeliveryErrorCategory.TRANSIENT_NETWORK,
                f"carrier did not answer within {self.timeout}s"
            ) from e
        except TwilioRestException as e:
            raise DeliveryError(classify_twilio_error(e), e.msg, carrier_code=e.code) from e
        except requests.RequestException as e:
            raise DeliveryError(DeliveryErrorCategory.TRANSIENT_NETWORK, str(e)) from e

        logger.info(f"SMS handed to carrier. SID: {msg.sid}, status: {msg.status}")
        return SendResult(message_id=msg.sid, status=str(msg.status))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((requests.RequestException, TwilioRestException)),
        reraise=True
    )
    def _fetch_message(self, message_id: str):
        return self.client.messages(message_id).fetch()

    async def fetch_status(self, message_id: str) -> str:
        """
        Look up the carrier's current status for a sent message.

        Args:
            message_id: Carrier message SID

        Returns:
            Status string such as "queued", "delivered" or "undelivered"
        """
        msg = await asyncio.to_thread(self._fetch_message, message_id)
        return str(msg.status)


def response_instructions(requirement: ResponseRequirement, follow_up: bool = False) -> str:
    """Reply instructions matching what the reminder needs back."""
    if requirement is ResponseRequirement.BOTH:
        return "Send a photo and text if you've finished." if follow_up else "Reply with a photo and text when done."
    if requirement is ResponseRequirement.ATTACHMENT:
        return "Send a photo if you've finished." if follow_up else "Reply with a photo when done."
    if requirement in (ResponseRequirement.TEXT, ResponseRequirement.EITHER):
        return "Reply DONE if you've finished." if follow_up else "Reply DONE when complete."
    return "Reply if you've finished." if follow_up else "Reply when done."


def format_reminder_message(
    title: str,
    recipient_name: str,
    kind: ReminderKind = ReminderKind.TASK,
    requirement: ResponseRequirement = ResponseRequirement.TEXT
) -> str:
    """
    Build the text body for a reminder occurrence.

    Args:
        title: Reminder title
        recipient_name: How to greet the recipient
        kind: Task, confirmation or follow-up
        requirement: What the reply must carry

    Returns:
        Message body
    """
    if kind is ReminderKind.CONFIRMATION:
        return (
            f"Hello {recipient_name}! Your family member wants to send you helpful "
            f"daily reminders via text.\n\n"
            f"Reply YES to start receiving reminders. Reply STOP anytime to unsubscribe."
        )
    if kind is ReminderKind.FOLLOW_UP:
        return (
            f"{recipient_name}, friendly reminder about: {title}\n\n"
            f"{response_instructions(requirement, follow_up=True)}"
        )
    return f"Hi {recipient_name}! Time to: {title}\n\n{response_instructions(requirement)}"


@lru_cache()
def get_gateway() -> TwilioSmsGateway:
    """Get the shared Twilio gateway."""
    return TwilioSmsGateway()
