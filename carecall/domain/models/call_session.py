"""
Call Session Model
Persistent record of one call attempt and its status state machine
"""
from pydantic import BaseModel, Field
from typing import Dict, FrozenSet, Optional, Tuple
from datetime import datetime
from enum import Enum

from carecall.utils.clock import utcnow


class CallDirection(str, Enum):
    """Who initiated the call"""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallSessionStatus(str, Enum):
    """Call session status"""
    CREATED = "created"            # Session row written, carrier not yet ringing
    RINGING = "ringing"            # Carrier reports ringing
    IN_PROGRESS = "in_progress"    # Callee answered, media flowing
    COMPLETED = "completed"        # Normal termination
    FAILED = "failed"              # Busy, no answer, carrier or stream error
    CANCELED = "canceled"          # Withdrawn before answer


class CallEndReason(str, Enum):
    """Why a call ended"""
    HANGUP = "hangup"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    TRIAL_CAP = "trial_cap"
    MINUTES_CAP = "minutes_cap"
    ERROR = "error"


class CallEventType(str, Enum):
    """Timeline events recorded against a session"""
    DTMF = "dtmf"
    TOOL_CALL = "tool_call"
    STATE_CHANGE = "state_change"
    ERROR = "error"
    SAFETY_TIER = "safety_tier"


class CallReason(str, Enum):
    """What triggered an outbound call"""
    SCHEDULED = "scheduled"
    REMINDER = "reminder"
    MANUAL = "manual"
    TEST = "test"


TERMINAL_STATUSES: Tuple[str, ...] = (
    CallSessionStatus.COMPLETED.value,
    CallSessionStatus.FAILED.value,
    CallSessionStatus.CANCELED.value,
)

# Busy and no-answer are modelled as FAILED with the matching end reason
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    CallSessionStatus.CREATED.value: frozenset({
        CallSessionStatus.RINGING.value,
        CallSessionStatus.IN_PROGRESS.value,
        CallSessionStatus.FAILED.value,
        CallSessionStatus.CANCELED.value,
    }),
    CallSessionStatus.RINGING.value: frozenset({
        CallSessionStatus.IN_PROGRESS.value,
        CallSessionStatus.FAILED.value,
        CallSessionStatus.CANCELED.value,
    }),
    CallSessionStatus.IN_PROGRESS.value: frozenset({
        CallSessionStatus.COMPLETED.value,
        CallSessionStatus.FAILED.value,
    }),
    CallSessionStatus.COMPLETED.value: frozenset(),
    CallSessionStatus.FAILED.value: frozenset(),
    CallSessionStatus.CANCELED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Check a status change against the call session state machine."""
    current = current.value if isinstance(current, Enum) else current
    target = target.value if isinstance(target, Enum) else target
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class CallSession(BaseModel):
    """
    One call attempt.

    Outbound sessions created by the scheduler carry an idempotency key
    unique per occurrence, so a re-delivered claim finds the existing
    session instead of dialing twice.
    """

    # ========== Identity ==========
    id: str = Field(..., description="Call session UUID")
    account_id: str
    line_id: str
    direction: CallDirection = CallDirection.OUTBOUND
    reason: CallReason = CallReason.SCHEDULED
    idempotency_key: Optional[str] = None
    carrier_call_sid: Optional[str] = None

    # ========== Status ==========
    status: CallSessionStatus = CallSessionStatus.CREATED
    end_reason: Optional[CallEndReason] = None
    answered_by: Optional[str] = None

    # ========== Timing ==========
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    seconds_connected: Optional[int] = Field(default=None, ge=0)
    ledger_settled_at: Optional[datetime] = None

    # ========== Activity ==========
    tool_invocations: int = Field(default=0, ge=0)

    # ========== Reminder link ==========
    reminder_id: Optional[str] = None
    reminder_message: Optional[str] = None

    model_config = {"use_enum_values": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_reminder_call(self) -> bool:
        return self.reminder_id is not None

    @property
    def needs_settlement(self) -> bool:
        """Answered, finished and not yet written to the minute ledger."""
        return self.is_terminal and self.connected_at is not None and self.ledger_settled_at is None

    def compute_seconds_connected(self, ended_at: datetime) -> int:
        """Whole seconds between answer and hangup (0 if never answered)."""
        if not self.connected_at:
            return 0
        return max(0, int((ended_at - self.connected_at).total_seconds()))


class CallEvent(BaseModel):
    """Timeline entry for a call session"""
    call_session_id: str
    type: CallEventType
    payload: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"use_enum_values": True}
