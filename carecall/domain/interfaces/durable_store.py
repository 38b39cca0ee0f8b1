"""
Durable Store Interface
Abstract base class for the row store backing schedules, reminders,
call sessions and the minute ledger
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from carecall.domain.models.line import Line, Account
from carecall.domain.models.schedule import ScheduleRule
from carecall.domain.models.reminder import Reminder
from carecall.domain.models.call_session import CallSession, CallEvent
from carecall.domain.models.ledger import MinuteLedgerEntry


class DurableStore(ABC):
    """
    Row storage plus the atomic claim RPCs used by scheduler workers.

    Every claim/complete method is a single atomic conditional write in
    the backing engine. Claim methods never block: on contention they
    return an empty list (or False) and the caller retries next tick.
    """

    # =========================================================================
    # Claims
    # =========================================================================

    @abstractmethod
    async def claim_due_schedules(
        self,
        worker_id: str,
        batch_size: int,
        claim_ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> List[ScheduleRule]:
        """
        Claim enabled schedules whose next_run_at has passed.

        Claims older than `claim_ttl_seconds` are cleared first so items
        abandoned by a crashed worker become claimable again.
        """
        pass

    @abstractmethod
    async def complete_schedule_processing(
        self,
        schedule_id: str,
        worker_id: str,
        result: str,
        next_run_at: Optional[datetime],
        reset_retry_count: bool = False,
        now: Optional[datetime] = None
    ) -> bool:
        """Record the run outcome, move next_run_at and release the claim (owner only)."""
        pass

    @abstractmethod
    async def increment_schedule_retry(
        self,
        schedule_id: str,
        worker_id: str,
        next_run_at: datetime,
        now: Optional[datetime] = None
    ) -> bool:
        """Mark the run failed, bump retry_count, set the retry slot and release (owner only)."""
        pass

    @abstractmethod
    async def claim_due_reminders(
        self,
        worker_id: str,
        batch_size: int,
        claim_ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> List[Reminder]:
        """Claim scheduled, unpaused reminders that are due and not snoozed."""
        pass

    @abstractmethod
    async def complete_reminder_processing(
        self,
        reminder_id: str,
        worker_id: str,
        updates: Dict[str, Any]
    ) -> bool:
        """Apply the occurrence outcome and release the claim in one write (owner only)."""
        pass

    # =========================================================================
    # Schedules
    # =========================================================================

    @abstractmethod
    async def create_schedule(self, schedule: ScheduleRule) -> ScheduleRule:
        pass

    @abstractmethod
    async def get_recurring_schedule(self, line_id: str) -> Optional[ScheduleRule]:
        """The line's enabled recurring (not one-off) schedule, newest first."""
        pass

    @abstractmethod
    async def update_schedule(self, schedule_id: str, updates: Dict[str, Any]) -> Optional[ScheduleRule]:
        pass

    # =========================================================================
    # Lines and accounts
    # =========================================================================

    @abstractmethod
    async def get_line(self, line_id: str) -> Optional[Line]:
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def update_line(self, line_id: str, updates: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_memory_summary(self, line_id: str) -> Optional[str]:
        """Short summary of durable memories for prompt building."""
        pass

    # =========================================================================
    # Reminders
    # =========================================================================

    @abstractmethod
    async def create_reminder(self, reminder: Reminder) -> Reminder:
        pass

    @abstractmethod
    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        pass

    @abstractmethod
    async def list_reminders_for_line(
        self,
        line_id: str,
        status: str = "scheduled",
        limit: int = 10
    ) -> List[Reminder]:
        """Reminders on a line with `status`, soonest due first."""
        pass

    @abstractmethod
    async def update_reminder(self, reminder_id: str, updates: Dict[str, Any]) -> Optional[Reminder]:
        pass

    @abstractmethod
    async def insert_reminder_event(self, event: Dict[str, Any]) -> None:
        pass

    # =========================================================================
    # Call sessions
    # =========================================================================

    @abstractmethod
    async def create_call_session(self, session: CallSession) -> Tuple[CallSession, bool]:
        """
        Insert a session unless one with the same idempotency key exists.

        Returns:
            (session, created) where `session` is the stored row
        """
        pass

    @abstractmethod
    async def get_call_session(self, session_id: str) -> Optional[CallSession]:
        pass

    @abstractmethod
    async def get_call_session_by_carrier_sid(self, call_sid: str) -> Optional[CallSession]:
        pass

    @abstractmethod
    async def update_call_session(
        self,
        session_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[CallSession]:
        """
        Update a session row.

        With `expected_status` the write only happens if the row still has
        that status; None is returned when the condition fails.
        """
        pass

    @abstractmethod
    async def list_unsettled_sessions(self, limit: int) -> List[CallSession]:
        """Finished, answered sessions without `ledger_settled_at`, oldest end first."""
        pass

    @abstractmethod
    async def increment_tool_invocations(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def insert_call_event(self, event: CallEvent) -> None:
        pass

    # =========================================================================
    # Minute ledger
    # =========================================================================

    @abstractmethod
    async def insert_ledger_entries(self, entries: List[MinuteLedgerEntry]) -> bool:
        """
        Insert all entries atomically.

        Returns:
            False when any idempotency key already exists (nothing written)
        """
        pass

    @abstractmethod
    async def list_ledger_entries_for_session(self, call_session_id: str) -> List[MinuteLedgerEntry]:
        pass

    @abstractmethod
    async def sum_cycle_minutes(
        self,
        account_id: str,
        cycle_start: Optional[datetime],
        cycle_end: Optional[datetime]
    ) -> int:
        """Billable minutes recorded for an account inside a cycle."""
        pass

    @abstractmethod
    async def list_unreported_entries(self, limit: int) -> List[MinuteLedgerEntry]:
        """
        Metered entries not yet reported to billing, oldest first.

        Only entries whose account has a billing customer are returned, so
        rows that cannot be reported never fill the batch.
        """
        pass

    @abstractmethod
    async def mark_entry_reported(self, entry_id: str, usage_record_id: str) -> None:
        pass
