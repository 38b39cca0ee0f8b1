"""
Schedule Rule Model
A recurring outbound call slot for one line
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum

from carecall.utils.clock import utcnow


class ScheduleResult(str, Enum):
    """Outcome recorded for the last processed occurrence"""
    SUCCESS = "success"
    MISSED = "missed"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    FAILED = "failed"


class RetryPolicy(BaseModel):
    """Bounded retry of a failed placement within a window"""
    max_retries: int = Field(default=2, ge=0, le=10)
    retry_window_minutes: int = Field(default=30, ge=0)


class ProcessingClaim(BaseModel):
    """Row-level claim held by one scheduler worker"""
    claimed_by: str
    claimed_at: datetime

    def is_valid(self, now: datetime, ttl_seconds: int) -> bool:
        return (now - self.claimed_at).total_seconds() < ttl_seconds


class ScheduleRule(BaseModel):
    """
    Recurring call schedule.

    `next_run_at` always holds the next occurrence matching
    `days_of_week` / `time_of_day` / `timezone`. It only moves after the
    claiming worker finishes or skips a run.
    A one-off schedule runs once and is left with no next run.
    """

    id: str
    account_id: str
    line_id: str

    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday .. 6=Saturday")
    time_of_day: str = Field(default="10:00", description="HH:MM local time")
    timezone: str = "America/Los_Angeles"
    enabled: bool = True
    one_off: bool = Field(default=False, description="Runs once at next_run_at, then stops")

    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_result: Optional[ScheduleResult] = None

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    retry_count: int = Field(default=0, ge=0)

    processing_claim: Optional[ProcessingClaim] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"use_enum_values": True}

    @property
    def idempotency_key(self) -> str:
        """Call-session key for the occurrence currently due."""
        stamp = self.next_run_at.isoformat() if self.next_run_at else "none"
        return f"schedule:{self.id}:{stamp}"

    def can_retry(self, retry_delay_minutes: int) -> tuple[bool, str]:
        """
        Decide whether a failed placement gets another attempt.

        Retries are spaced `retry_delay_minutes` apart and must all land
        inside the policy's window measured from the original slot.

        Returns:
            (should_retry, reason)
        """
        if self.retry_count >= self.retry_policy.max_retries:
            return False, "max_retries_reached"

        offset = (self.retry_count + 1) * retry_delay_minutes
        if offset > self.retry_policy.retry_window_minutes:
            return False, "retry_window_exceeded"

        return True, f"retry_{self.retry_count + 1}_of_{self.retry_policy.max_retries}"
