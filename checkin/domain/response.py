"""
Inbound reply models: classifier inputs, verdicts and the audit table.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import Column, String, DateTime, Integer, Float, Boolean, Enum as SQLEnum
from pydantic import BaseModel, Field

from checkin.domain.reminder import Base, ReminderKind, ResponseRequirement


class Polarity(str, Enum):
    """How a reply reads."""
    POSITIVE = "positive"
    NEGATIVE = "negative"
    HELP_REQUESTED = "help_requested"
    OPT_OUT = "opt_out"
    UNCLEAR = "unclear"


class SuggestedAction(str, Enum):
    """What should happen because of a reply."""
    MARK_COMPLETE = "mark_complete"
    MARK_CONFIRMED = "mark_confirmed"
    FLAG_FOR_REVIEW = "flag_for_review"
    SCHEDULE_FOLLOW_UP = "schedule_follow_up"
    IGNORE = "ignore"


class PendingResponseContext(BaseModel):
    """A recently dispatched reminder that is still waiting for a reply."""
    reminder_id: str
    recipient_id: str
    title: str = ""
    kind: ReminderKind = ReminderKind.TASK
    response_requirement: ResponseRequirement
    last_dispatched_at: datetime

    @property
    def expects_confirmation(self) -> bool:
        return self.kind is ReminderKind.CONFIRMATION


class ClassifiedResponse(BaseModel):
    """Classifier verdict for one inbound message."""
    matched_reminder_id: Optional[str] = None
    polarity: Polarity
    confidence: float = Field(..., ge=0.0, le=1.0)
    action: SuggestedAction
    reason: str = ""


class InboundMessage(BaseModel):
    """An inbound text as delivered by the carrier webhook."""
    sender_address: str
    body: str = ""
    attachment_refs: List[str] = Field(default_factory=list)
    received_at: datetime
    carrier_message_id: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        return bool(self.attachment_refs)


class InboundResponse(Base):
    """SQLAlchemy model for the audit trail of classified replies."""

    __tablename__ = "inbound_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_address = Column(String(20), nullable=False)
    recipient_id = Column(String(64), nullable=True, index=True)
    carrier_message_id = Column(String(64), nullable=True)
    body = Column(String(1000), nullable=False, default="")
    attachment_count = Column(Integer, default=0, nullable=False)
    matched_reminder_id = Column(String(36), nullable=True, index=True)
    polarity = Column(SQLEnum(Polarity), nullable=False)
    action = Column(SQLEnum(SuggestedAction), nullable=False)
    confidence = Column(Float, nullable=False)
    needs_review = Column(Boolean, default=False, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<InboundResponse(id={self.id}, action={self.action})>"
