"""
Recipient directory model.

Recipients are the people reminders are texted to. Profile management lives
outside this service; this table only carries what delivery and reply
correlation need.
"""

import re
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Boolean

from checkin.domain.reminder import Base

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


class Recipient(Base):
    """SQLAlchemy model for a text-message recipient."""

    __tablename__ = "recipients"

    id = Column(String(64), primary_key=True)
    account_id = Column(String(64), nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    address = Column(String(20), nullable=False, unique=True)  # E.164
    confirmed = Column(Boolean, default=False, nullable=False)
    opted_out = Column(Boolean, default=False, nullable=False)
    unreachable = Column(Boolean, default=False, nullable=False)
    unreachable_reason = Column(String(255), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Recipient(id={self.id}, address={self.address})>"


def is_e164(address: str) -> bool:
    """Whether ``address`` is a phone number in E.164 format."""
    return bool(address) and E164_PATTERN.match(address) is not None
