"""
Database setup and session management.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from checkin.config.settings import get_settings
from checkin.domain.reminder import Base
# Imported so their tables are registered on Base.metadata
from checkin.domain.dispatch_record import DispatchRecord  # noqa: F401
from checkin.domain.processed_message import ProcessedMessage  # noqa: F401
from checkin.domain.quota import QuotaCounter  # noqa: F401
from checkin.domain.recipient import Recipient  # noqa: F401
from checkin.domain.response import InboundResponse  # noqa: F401

settings = get_settings()

# Scanner workers need their own connections so a claim in one
# session cannot be rolled back by another; no StaticPool here.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    connect_args={"check_same_thread": False, "timeout": 15},
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_database() -> None:
    """Initialize database and create tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

