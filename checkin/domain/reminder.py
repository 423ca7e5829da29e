"""
Reminder domain model and schemas.
"""

import uuid
from datetime import datetime, time
from enum import Enum, IntEnum
from typing import FrozenSet, List, Optional

from sqlalchemy import (
    Column, String, DateTime, Integer, Time, JSON, Index, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, Field, field_validator, model_validator

from checkin.utils.time import parse_time_of_day, resolve_zone

Base = declarative_base()


class ReminderStatus(str, Enum):
    """Reminder lifecycle status."""
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class RecurrencePattern(str, Enum):
    """How a reminder repeats."""
    ONCE = "once"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    CUSTOM = "custom"

    @property
    def is_recurring(self) -> bool:
        return self is not RecurrencePattern.ONCE


class ResponseRequirement(str, Enum):
    """What a reply must carry to count as completing the reminder."""
    TEXT = "text"
    ATTACHMENT = "attachment"
    EITHER = "either"
    BOTH = "both"
    NONE = "none"

    def is_satisfied_by(self, has_text: bool, has_attachment: bool) -> bool:
        if self is ResponseRequirement.TEXT:
            return has_text
        if self is ResponseRequirement.ATTACHMENT:
            return has_attachment
        if self is ResponseRequirement.BOTH:
            return has_text and has_attachment
        return has_text or has_attachment

    @property
    def specificity(self) -> int:
        return {
            ResponseRequirement.BOTH: 3,
            ResponseRequirement.TEXT: 2,
            ResponseRequirement.ATTACHMENT: 2,
            ResponseRequirement.EITHER: 1,
            ResponseRequirement.NONE: 0,
        }[self]


class ReminderKind(str, Enum):
    """What a reminder asks of the recipient."""
    TASK = "task"
    CONFIRMATION = "confirmation"  # opt-in request, answered with YES
    FOLLOW_UP = "follow_up"


class Weekday(IntEnum):
    """Weekdays numbered like datetime.weekday()."""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def parse(cls, value) -> "Weekday":
        """Accept a Weekday, an int, a full name or a three-letter abbreviation."""
        if isinstance(value, str):
            key = value.strip().upper()
            for day in cls:
                if day.name == key or day.name[:3] == key:
                    return day
            raise ValueError(f"Unknown weekday: {value!r}")
        return cls(value)


class Reminder(Base):
    """SQLAlchemy model for reminders."""

    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_status_next", "status", "next_occurrence_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    kind = Column(SQLEnum(ReminderKind), default=ReminderKind.TASK, nullable=False)
    parent_id = Column(String(36), nullable=True)
    pattern = Column(SQLEnum(RecurrencePattern), nullable=False)
    weekly_day = Column(Integer, nullable=True)
    custom_days = Column(JSON, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    anchor_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False)
    next_occurrence_at = Column(DateTime, nullable=False)
    status = Column(SQLEnum(ReminderStatus), default=ReminderStatus.ACTIVE, nullable=False)
    response_requirement = Column(
        SQLEnum(ResponseRequirement), default=ResponseRequirement.TEXT, nullable=False
    )
    last_dispatched_at = Column(DateTime, nullable=True)
    last_completed_at = Column(DateTime, nullable=True)
    completion_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def recurrence(self) -> "Recurrence":
        return Recurrence(
            pattern=self.pattern,
            weekly_day=self.weekly_day,
            custom_days=frozenset(self.custom_days or ()),
            scheduled_at=self.scheduled_at,
        )

    def __repr__(self) -> str:
        return f"<Reminder(id={self.id}, title={self.title}, status={self.status})>"


# Pydantic Schemas

class Recurrence(BaseModel):
    """The schedule half of a reminder, as consumed by the occurrence calculator."""
    pattern: RecurrencePattern
    weekly_day: Optional[int] = None
    custom_days: FrozenSet[int] = frozenset()
    scheduled_at: Optional[datetime] = None

    class Config:
        frozen = True


class ReminderCreate(BaseModel):
    """Schema for creating a reminder."""
    account_id: str = Field(..., min_length=1, max_length=64)
    recipient_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=255)
    kind: ReminderKind = ReminderKind.TASK
    parent_id: Optional[str] = None
    pattern: RecurrencePattern
    anchor_time: Optional[time] = None  # defaults to the local time of scheduled_at
    weekly_day: Optional[Weekday] = None
    custom_days: List[Weekday] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    timezone: Optional[str] = None
    response_requirement: ResponseRequirement = ResponseRequirement.TEXT

    @field_validator("anchor_time", mode="before")
    @classmethod
    def parse_anchor(cls, value):
        return None if value is None else parse_time_of_day(value)

    @field_validator("weekly_day", mode="before")
    @classmethod
    def parse_weekly_day(cls, value):
        return None if value is None else Weekday.parse(value)

    @field_validator("custom_days", mode="before")
    @classmethod
    def parse_custom_days(cls, value):
        if value is None:
            return []
        return [Weekday.parse(day) for day in value]

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value):
        if value is not None:
            resolve_zone(value)
        return value

    @model_validator(mode="after")
    def check_pattern_fields(self) -> "ReminderCreate":
        if self.pattern is RecurrencePattern.ONCE and self.scheduled_at is None:
            raise ValueError("a one-time reminder needs scheduled_at")
        if self.pattern is not RecurrencePattern.ONCE and self.anchor_time is None:
            raise ValueError("a recurring reminder needs anchor_time")
        if self.pattern is RecurrencePattern.WEEKLY and self.weekly_day is None:
            raise ValueError("a weekly reminder needs weekly_day")
        if self.pattern is RecurrencePattern.CUSTOM and not self.custom_days:
            raise ValueError("a custom-days reminder needs at least one day")
        return self

