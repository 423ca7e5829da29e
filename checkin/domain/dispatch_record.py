"""
Dispatch ledger entries.

One row per (reminder, occurrence) pair; the unique constraint is what
keeps overlapping scans from sending the same occurrence twice.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, DateTime, Integer, UniqueConstraint, Enum as SQLEnum
)

from checkin.domain.reminder import Base


class DispatchStatus(str, Enum):
    """Dispatch record status. Only claimed -> sent and claimed -> failed are allowed."""
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"


class DispatchRecord(Base):
    """SQLAlchemy model for a claimed or finalized send of one occurrence."""

    __tablename__ = "dispatch_records"
    __table_args__ = (
        UniqueConstraint("reminder_id", "occurrence_at", name="uq_dispatch_occurrence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String(36), nullable=False, index=True)
    occurrence_at = Column(DateTime, nullable=False)
    status = Column(SQLEnum(DispatchStatus), default=DispatchStatus.CLAIMED, nullable=False)
    carrier_message_id = Column(String(64), nullable=True)
    carrier_status = Column(String(32), nullable=True)
    error_category = Column(String(32), nullable=True)
    error_detail = Column(String(500), nullable=True)
    worker_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<DispatchRecord(reminder={self.reminder_id}, "
            f"occurrence={self.occurrence_at}, status={self.status})>"
        )
