"""
Error Taxonomy
Exception types shared by the scheduler, orchestrator, bridge and ledger

Contention (lease or claim not acquired) is normal control flow and is
reported through return values, never through these exceptions.
"""
from typing import Optional


class CareCallError(Exception):
    """Base class for all carecall errors"""


class ContentionError(CareCallError):
    """Another worker holds the lease or claim"""


class IneligibleError(CareCallError):
    """Line may not be called right now (opt-out, quiet hours, allowance)"""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Line not eligible: {reason}")


class PlacementError(CareCallError):
    """Carrier rejected or timed out placing an outbound call"""


class StreamError(CareCallError):
    """Realtime AI channel failed to connect or dropped mid-call"""


class BillingError(CareCallError):
    """Ledger write or usage report failed"""


class ToolDispatchError(CareCallError):
    """Internal tool endpoint could not be reached"""


class InvalidTransitionError(CareCallError):
    """Call session status change not allowed by the state machine"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid call session transition: {current} -> {target}")


class InvalidRecurrenceError(CareCallError):
    """Recurrence rule or timezone cannot produce an occurrence"""


class ReminderStateError(CareCallError):
    """Reminder is not in a state that allows the requested action"""


class SnoozeLimitError(ReminderStateError):
    """Reminder has already been snoozed the maximum number of times"""
