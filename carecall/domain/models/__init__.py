"""Domain models"""

# Lines and accounts
from .line import (
    LineStatus,
    AccountStatus,
    AccessDenial,
    Line,
    Account,
    LineAccessCheck,
    PAYG_PLAN_ID,
)

# Scheduling
from .schedule import (
    ScheduleResult,
    RetryPolicy,
    ProcessingClaim,
    ScheduleRule,
)

from .reminder import (
    ReminderStatus,
    RecurrenceFrequency,
    ReminderEventType,
    ReminderRecurrence,
    Reminder,
    MAX_SNOOZE_COUNT,
    SNOOZE_OPTIONS_MINUTES,
)

from .lease import (
    LeaseRole,
    SchedulerLease,
)

# Calls and billing
from .call_session import (
    CallDirection,
    CallSessionStatus,
    CallEndReason,
    CallEventType,
    CallReason,
    CallSession,
    CallEvent,
    can_transition,
)

from .ledger import (
    BillableType,
    MinuteLedgerEntry,
)

__all__ = [
    # Lines and accounts
    "LineStatus",
    "AccountStatus",
    "AccessDenial",
    "Line",
    "Account",
    "LineAccessCheck",
    "PAYG_PLAN_ID",
    # Scheduling
    "ScheduleResult",
    "RetryPolicy",
    "ProcessingClaim",
    "ScheduleRule",
    "ReminderStatus",
    "RecurrenceFrequency",
    "ReminderEventType",
    "ReminderRecurrence",
    "Reminder",
    "MAX_SNOOZE_COUNT",
    "SNOOZE_OPTIONS_MINUTES",
    "LeaseRole",
    "SchedulerLease",
    # Calls and billing
    "CallDirection",
    "CallSessionStatus",
    "CallEndReason",
    "CallEventType",
    "CallReason",
    "CallSession",
    "CallEvent",
    "can_transition",
    "BillableType",
    "MinuteLedgerEntry",
]
