"""
Reminder Model
One-off and recurring reminders delivered by an outbound call
"""
import pytz
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from enum import Enum

from carecall.domain.models.schedule import ProcessingClaim
from carecall.utils.clock import ensure_utc


MAX_SNOOZE_COUNT = 3
MAX_MESSAGE_LENGTH = 500

# Allowed snooze offsets in minutes; 1440 means "tomorrow at the same time"
SNOOZE_OPTIONS_MINUTES = (15, 30, 60, 120, 1440)
SNOOZE_TOMORROW = 1440


class ReminderStatus(str, Enum):
    """Lifecycle status of a reminder series"""
    SCHEDULED = "scheduled"
    SENT = "sent"
    MISSED = "missed"
    CANCELED = "canceled"


class RecurrenceFrequency(str, Enum):
    """How a recurring reminder advances"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ReminderEventType(str, Enum):
    """Audit events written for reminder changes"""
    CREATED = "created"
    EDITED = "edited"
    DELIVERED = "delivered"
    MISSED = "missed"
    SKIPPED = "skipped"
    SNOOZED = "snoozed"
    PAUSED = "paused"
    RESUMED = "resumed"
    CANCELED = "canceled"


class ReminderRecurrence(BaseModel):
    """Recurrence rule for a repeating reminder"""
    frequency: RecurrenceFrequency = RecurrenceFrequency.DAILY
    interval: int = Field(default=1, ge=1)
    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday .. 6=Saturday")
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    ends_at: Optional[datetime] = None
    time_of_day: Optional[str] = Field(
        default=None, description="Nominal local HH:MM[:SS] every occurrence is built from"
    )

    model_config = {"use_enum_values": True}

    @field_validator("days_of_week")
    @classmethod
    def _validate_days(cls, value: List[int]) -> List[int]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError(f"day of week out of range: {day}")
        return sorted(set(value))


class Reminder(BaseModel):
    """
    A reminder delivered by phone.

    Only the worker holding `processing_claim` advances a reminder to its
    next occurrence or ends the series.
    """

    id: str
    account_id: str
    line_id: str

    due_at: datetime
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    timezone: str = "America/Los_Angeles"

    is_recurring: bool = False
    recurrence: Optional[ReminderRecurrence] = None

    is_paused: bool = False
    paused_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    original_due_at: Optional[datetime] = None
    current_snooze_count: int = Field(default=0, ge=0, le=MAX_SNOOZE_COUNT)
    occurrence_count: int = Field(default=0, ge=0)

    status: ReminderStatus = ReminderStatus.SCHEDULED
    last_delivery_status: Optional[str] = None

    processing_claim: Optional[ProcessingClaim] = None

    model_config = {"use_enum_values": True}

    @model_validator(mode="after")
    def _pin_time_of_day(self) -> "Reminder":
        # An occurrence shifted out of a DST gap must not move the series
        if self.recurrence is None or self.recurrence.time_of_day is not None:
            return self
        try:
            tz = pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            return self
        local = ensure_utc(self.scheduled_slot).astimezone(tz)
        self.recurrence = self.recurrence.model_copy(update={"time_of_day": local.strftime("%H:%M:%S")})
        return self

    @property
    def idempotency_key(self) -> str:
        """Call-session key for the occurrence currently due."""
        return f"reminder:{self.id}:{self.due_at.isoformat()}"

    @property
    def scheduled_slot(self) -> datetime:
        """The nominal occurrence instant, ignoring any snooze."""
        return self.original_due_at or self.due_at

    @property
    def is_active(self) -> bool:
        return self.status == ReminderStatus.SCHEDULED
