"""
Pytest configuration and fixtures for Check-in Reminders tests.
"""

import os
import tempfile

# Settings are read at import time by several modules
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest123")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_token")
os.environ.setdefault("TWILIO_SMS_NUMBER", "+14155238886")
os.environ.setdefault("VALIDATE_TWILIO_SIGNATURE", "false")
os.environ.setdefault("DATA_DIR", tempfile.gettempdir())

import asyncio
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from checkin.config.settings import Settings
from checkin.domain.errors import DeliveryError
from checkin.domain.recipient import Recipient
from checkin.domain.reminder import (
    Base,
    RecurrencePattern,
    Reminder,
    ReminderKind,
    ReminderStatus,
    ResponseRequirement,
)
from checkin.infrastructure.quota_store import open_quota_period
from checkin.infrastructure.twilio_sms import SendResult
from checkin.utils.time import to_storage


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

UTC = timezone.utc
# A Monday
NOW = datetime(2030, 1, 7, 9, 0, 30, tzinfo=UTC)


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed engine with a real connection pool, for concurrency tests."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the in-memory test engine."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def file_session_factory(file_engine) -> async_sessionmaker:
    """Session factory bound to the file-backed test engine."""
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests; the in-memory engine shares one connection, so no fan-out."""
    return Settings(
        timezone="UTC",
        scan_interval_seconds=60,
        scan_window_seconds=120,
        scan_concurrency=1,
        worker_id="test-worker",
        response_window_minutes=30,
        follow_up_delay_minutes=30,
    )


class FakeGateway:
    """In-memory delivery gateway that records every send."""

    def __init__(self, error: Optional[DeliveryError] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.sent: List[tuple] = []

    async def send(self, to_address: str, body: str) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append((to_address, body))
        return SendResult(message_id=f"SM{len(self.sent):032d}", status="queued")

    async def fetch_status(self, message_id: str) -> str:
        return "delivered"


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


async def add_recipient(
    session_factory,
    recipient_id: str = "rcpt-1",
    address: str = "+15551230001",
    confirmed: bool = True,
    **fields
) -> Recipient:
    recipient = Recipient(
        id=recipient_id,
        account_id=fields.pop("account_id", "acct-1"),
        display_name=fields.pop("display_name", "Grandma Rose"),
        address=address,
        confirmed=confirmed,
        **fields
    )
    async with session_factory() as session:
        session.add(recipient)
        await session.commit()
    return recipient


async def add_reminder(
    session_factory,
    next_occurrence_at: datetime = NOW,
    pattern: RecurrencePattern = RecurrencePattern.DAILY,
    **fields
) -> Reminder:
    reminder = Reminder(
        account_id=fields.pop("account_id", "acct-1"),
        recipient_id=fields.pop("recipient_id", "rcpt-1"),
        title=fields.pop("title", "Take blood pressure medication"),
        kind=fields.pop("kind", ReminderKind.TASK),
        pattern=pattern,
        anchor_time=fields.pop("anchor_time", time(9, 0)),
        timezone=fields.pop("timezone", "UTC"),
        next_occurrence_at=to_storage(next_occurrence_at),
        status=fields.pop("status", ReminderStatus.ACTIVE),
        response_requirement=fields.pop("response_requirement", ResponseRequirement.TEXT),
        completion_count=0,
        **fields
    )
    async with session_factory() as session:
        session.add(reminder)
        await session.commit()
    return reminder


async def open_period(session_factory, limit: int = 100, account_id: str = "acct-1"):
    return await open_quota_period(
        session_factory,
        account_id,
        NOW - timedelta(days=6),
        NOW + timedelta(days=25),
        limit,
    )
