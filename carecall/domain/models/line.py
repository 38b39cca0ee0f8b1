"""
Line and Account Models
A line is one care recipient's phone; the account owns plan and minutes
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


PAYG_PLAN_ID = "payg"


class LineStatus(str, Enum):
    """Status of a phone line"""
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class AccountStatus(str, Enum):
    """Billing status of an account"""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class AccessDenial(str, Enum):
    """Why a line may not be called"""
    DISABLED = "disabled"
    ACCOUNT_CANCELED = "account_canceled"
    INBOUND_BLOCKED = "inbound_blocked"
    DO_NOT_CALL = "do_not_call"
    NOT_VERIFIED = "not_verified"
    MINUTES_EXHAUSTED = "minutes_exhausted"


class Line(BaseModel):
    """A care recipient's phone line and its call preferences."""

    id: str
    account_id: str
    phone_e164: str
    display_name: str = ""
    timezone: str = "America/Los_Angeles"
    status: LineStatus = LineStatus.ACTIVE

    # Calling preferences
    quiet_hours_start: str = Field(default="21:00", description="HH:MM local")
    quiet_hours_end: str = Field(default="09:00", description="HH:MM local")
    do_not_call: bool = False
    inbound_allowed: bool = True
    phone_verified_at: Optional[datetime] = None
    allow_voice_reminder_control: bool = True
    preferred_language: str = "en"
    voicemail_behavior: str = Field(default="brief", description="none, brief or detailed")

    last_successful_call_at: Optional[datetime] = None

    model_config = {"use_enum_values": True}


class Account(BaseModel):
    """Billing owner of one or more lines."""

    id: str
    name: str = ""
    status: AccountStatus = AccountStatus.TRIAL
    plan_id: str = "free_trial"
    minutes_included: int = Field(default=20, ge=0)
    cycle_start: Optional[datetime] = None
    cycle_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None

    model_config = {"use_enum_values": True}

    @property
    def is_trial(self) -> bool:
        return self.status == AccountStatus.TRIAL

    @property
    def is_payg(self) -> bool:
        return self.plan_id == PAYG_PLAN_ID


class LineAccessCheck(BaseModel):
    """Result of an eligibility check for placing or taking a call"""

    allowed: bool
    reason: Optional[AccessDenial] = None
    minutes_remaining: Optional[int] = None

    model_config = {"use_enum_values": True}
