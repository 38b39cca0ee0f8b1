"""
Scheduler Lease Model
Singleton-per-role row granting one worker the right to run a tick
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum


class LeaseRole(str, Enum):
    """Scheduler roles protected by a lease"""
    SCHEDULES = "schedules"
    REMINDERS = "reminders"


class SchedulerLease(BaseModel):
    """Current holder of a role lease"""
    role: LeaseRole
    held_by: Optional[str] = None
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None

    model_config = {"use_enum_values": True}

    def is_held(self, now: datetime) -> bool:
        """True while a non-expired holder exists."""
        return bool(self.held_by) and self.expires_at is not None and self.expires_at > now

    def is_held_by(self, worker_id: str, now: datetime) -> bool:
        return self.is_held(now) and self.held_by == worker_id
