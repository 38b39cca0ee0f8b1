"""
In-Memory Store
Process-local DurableStore and LeaseStore for development and tests

A single asyncio.Lock serializes every claim and conditional write, which
gives the same atomicity the Postgres RPCs provide across processes.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.interfaces.lease_store import LeaseStore
from carecall.domain.models.line import Line, Account
from carecall.domain.models.schedule import ScheduleRule, ProcessingClaim
from carecall.domain.models.reminder import Reminder, ReminderStatus
from carecall.domain.models.call_session import CallSession, CallEvent
from carecall.domain.models.ledger import MinuteLedgerEntry
from carecall.domain.models.lease import SchedulerLease
from carecall.utils.clock import utcnow

logger = logging.getLogger(__name__)


class InMemoryDurableStore(DurableStore):
    """Dictionary-backed DurableStore."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.lines: Dict[str, Line] = {}
        self.accounts: Dict[str, Account] = {}
        self.schedules: Dict[str, ScheduleRule] = {}
        self.reminders: Dict[str, Reminder] = {}
        self.sessions: Dict[str, CallSession] = {}
        self.call_events: List[CallEvent] = []
        self.reminder_events: List[Dict[str, Any]] = []
        self.ledger: Dict[str, MinuteLedgerEntry] = {}
        self.memory_summaries: Dict[str, str] = {}

    # ========== Seeding ==========

    def add_line(self, line: Line) -> None:
        self.lines[line.id] = line

    def add_account(self, account: Account) -> None:
        self.accounts[account.id] = account

    def add_schedule(self, schedule: ScheduleRule) -> None:
        self.schedules[schedule.id] = schedule

    def add_reminder(self, reminder: Reminder) -> None:
        self.reminders[reminder.id] = reminder

    # =========================================================================
    # Claims
    # =========================================================================

    async def claim_due_schedules(
        self,
        worker_id: str,
        batch_size: int,
        claim_ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> List[ScheduleRule]:
        now = now or utcnow()
        async with self._lock:
            self._clear_stale_claims(self.schedules, now, claim_ttl_seconds)

            due = [
                s for s in self.schedules.values()
                if s.enabled
                and s.next_run_at is not None
                and s.next_run_at <= now
                and s.processing_claim is None
            ]
            due.sort(key=lambda s: s.next_run_at)

            claimed = []
            claim = ProcessingClaim(claimed_by=worker_id, claimed_at=now)
            for schedule in due[:batch_size]:
                updated = schedule.model_copy(update={"processing_claim": claim})
                self.schedules[schedule.id] = updated
                claimed.append(updated.model_copy())
            return claimed

    async def complete_schedule_processing(
        self,
        schedule_id: str,
        worker_id: str,
        result: str,
        next_run_at: Optional[datetime],
        reset_retry_count: bool = False,
        now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        async with self._lock:
            schedule = self.schedules.get(schedule_id)
            if not self._owns(schedule, worker_id):
                return False

            updates: Dict[str, Any] = {
                "last_run_at": now,
                "last_result": result,
                "next_run_at": next_run_at,
                "processing_claim": None,
            }
            if reset_retry_count:
                updates["retry_count"] = 0
            self.schedules[schedule_id] = schedule.model_copy(update=updates)
            return True

    async def increment_schedule_retry(
        self,
        schedule_id: str,
        worker_id: str,
        next_run_at: datetime,
        now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        async with self._lock:
            schedule = self.schedules.get(schedule_id)
            if not self._owns(schedule, worker_id):
                return False

            self.schedules[schedule_id] = schedule.model_copy(update={
                "last_run_at": now,
                "last_result": "failed",
                "retry_count": schedule.retry_count + 1,
                "next_run_at": next_run_at,
                "processing_claim": None,
            })
            return True

    async def claim_due_reminders(
        self,
        worker_id: str,
        batch_size: int,
        claim_ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> List[Reminder]:
        now = now or utcnow()
        async with self._lock:
            self._clear_stale_claims(self.reminders, now, claim_ttl_seconds)

            due = [
                r for r in self.reminders.values()
                if r.status == ReminderStatus.SCHEDULED
                and not r.is_paused
                and r.due_at <= now
                and (r.snoozed_until is None or r.snoozed_until <= now)
                and r.processing_claim is None
            ]
            due.sort(key=lambda r: r.due_at)

            claimed = []
            claim = ProcessingClaim(claimed_by=worker_id, claimed_at=now)
            for reminder in due[:batch_size]:
                updated = reminder.model_copy(update={"processing_claim": claim})
                self.reminders[reminder.id] = updated
                claimed.append(updated.model_copy())
            return claimed

    async def complete_reminder_processing(
        self,
        reminder_id: str,
        worker_id: str,
        updates: Dict[str, Any]
    ) -> bool:
        async with self._lock:
            reminder = self.reminders.get(reminder_id)
            if not self._owns(reminder, worker_id):
                return False

            self.reminders[reminder_id] = reminder.model_copy(
                update={**updates, "processing_claim": None}
            )
            return True

    @staticmethod
    def _owns(row: Any, worker_id: str) -> bool:
        return (
            row is not None
            and row.processing_claim is not None
            and row.processing_claim.claimed_by == worker_id
        )

    @staticmethod
    def _clear_stale_claims(rows: Dict[str, Any], now: datetime, ttl_seconds: int) -> None:
        for row_id, row in list(rows.items()):
            claim = row.processing_claim
            if claim is not None and not claim.is_valid(now, ttl_seconds):
                logger.info(
                    f"Clearing stale claim on {row_id} held by {claim.claimed_by}",
                    extra={"row_id": row_id, "claimed_by": claim.claimed_by}
                )
                rows[row_id] = row.model_copy(update={"processing_claim": None})

    # =========================================================================
    # Schedules
    # =========================================================================

    async def create_schedule(self, schedule: ScheduleRule) -> ScheduleRule:
        async with self._lock:
            self.schedules[schedule.id] = schedule.model_copy()
            return schedule.model_copy()

    async def get_recurring_schedule(self, line_id: str) -> Optional[ScheduleRule]:
        candidates = [
            s for s in self.schedules.values()
            if s.line_id == line_id and s.enabled and not s.one_off
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at).model_copy()

    async def update_schedule(self, schedule_id: str, updates: Dict[str, Any]) -> Optional[ScheduleRule]:
        async with self._lock:
            schedule = self.schedules.get(schedule_id)
            if schedule is None:
                return None
            updated = schedule.model_copy(update=updates)
            self.schedules[schedule_id] = updated
            return updated.model_copy()

    # =========================================================================
    # Lines and accounts
    # =========================================================================

    async def get_line(self, line_id: str) -> Optional[Line]:
        line = self.lines.get(line_id)
        return line.model_copy() if line else None

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def update_line(self, line_id: str, updates: Dict[str, Any]) -> None:
        async with self._lock:
            line = self.lines.get(line_id)
            if line:
                self.lines[line_id] = line.model_copy(update=updates)

    async def get_memory_summary(self, line_id: str) -> Optional[str]:
        return self.memory_summaries.get(line_id)

    # =========================================================================
    # Reminders
    # =========================================================================

    async def create_reminder(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            self.reminders[reminder.id] = reminder.model_copy()
            return reminder.model_copy()

    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        reminder = self.reminders.get(reminder_id)
        return reminder.model_copy() if reminder else None

    async def list_reminders_for_line(
        self,
        line_id: str,
        status: str = "scheduled",
        limit: int = 10
    ) -> List[Reminder]:
        matching = [r for r in self.reminders.values() if r.line_id == line_id and r.status == status]
        matching.sort(key=lambda r: r.due_at)
        return [r.model_copy() for r in matching[:limit]]

    async def update_reminder(self, reminder_id: str, updates: Dict[str, Any]) -> Optional[Reminder]:
        async with self._lock:
            reminder = self.reminders.get(reminder_id)
            if reminder is None:
                return None
            updated = reminder.model_copy(update=updates)
            self.reminders[reminder_id] = updated
            return updated.model_copy()

    async def insert_reminder_event(self, event: Dict[str, Any]) -> None:
        self.reminder_events.append(dict(event))

    # =========================================================================
    # Call sessions
    # =========================================================================

    async def create_call_session(self, session: CallSession) -> Tuple[CallSession, bool]:
        async with self._lock:
            if session.idempotency_key:
                for existing in self.sessions.values():
                    if existing.idempotency_key == session.idempotency_key:
                        return existing.model_copy(), False
            self.sessions[session.id] = session.model_copy()
            return session.model_copy(), True

    async def get_call_session(self, session_id: str) -> Optional[CallSession]:
        session = self.sessions.get(session_id)
        return session.model_copy() if session else None

    async def get_call_session_by_carrier_sid(self, call_sid: str) -> Optional[CallSession]:
        for session in self.sessions.values():
            if session.carrier_call_sid == call_sid:
                return session.model_copy()
        return None

    async def update_call_session(
        self,
        session_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[CallSession]:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if expected_status is not None and session.status != expected_status:
                return None
            updated = session.model_copy(update=updates)
            self.sessions[session_id] = updated
            return updated.model_copy()

    async def list_unsettled_sessions(self, limit: int) -> List[CallSession]:
        pending = [s for s in self.sessions.values() if s.needs_settlement]
        pending.sort(key=lambda s: s.ended_at or s.created_at)
        return [s.model_copy() for s in pending[:limit]]

    async def increment_tool_invocations(self, session_id: str) -> None:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session:
                self.sessions[session_id] = session.model_copy(
                    update={"tool_invocations": session.tool_invocations + 1}
                )

    async def insert_call_event(self, event: CallEvent) -> None:
        self.call_events.append(event)

    # =========================================================================
    # Minute ledger
    # =========================================================================

    async def insert_ledger_entries(self, entries: List[MinuteLedgerEntry]) -> bool:
        async with self._lock:
            if any(e.idempotency_key in self.ledger for e in entries):
                return False
            for entry in entries:
                stored = entry.model_copy(update={"id": entry.id or str(uuid.uuid4())})
                self.ledger[entry.idempotency_key] = stored
            return True

    async def list_ledger_entries_for_session(self, call_session_id: str) -> List[MinuteLedgerEntry]:
        return [
            e.model_copy() for e in self.ledger.values()
            if e.call_session_id == call_session_id
        ]

    async def sum_cycle_minutes(
        self,
        account_id: str,
        cycle_start: Optional[datetime],
        cycle_end: Optional[datetime]
    ) -> int:
        total = 0
        for entry in self.ledger.values():
            if entry.account_id != account_id:
                continue
            if cycle_start and entry.created_at < cycle_start:
                continue
            if cycle_end and entry.created_at >= cycle_end:
                continue
            total += entry.billable_minutes
        return total

    async def list_unreported_entries(self, limit: int) -> List[MinuteLedgerEntry]:
        pending = [
            e for e in self.ledger.values()
            if e.is_metered and not e.reported_to_billing
            and self._has_billing_customer(e.account_id)
        ]
        pending.sort(key=lambda e: e.created_at)
        return [e.model_copy() for e in pending[:limit]]

    def _has_billing_customer(self, account_id: str) -> bool:
        account = self.accounts.get(account_id)
        return account is not None and bool(account.stripe_customer_id)

    async def mark_entry_reported(self, entry_id: str, usage_record_id: str) -> None:
        async with self._lock:
            for key, entry in self.ledger.items():
                if entry.id == entry_id:
                    self.ledger[key] = entry.model_copy(update={
                        "reported_to_billing": True,
                        "billing_usage_record_id": usage_record_id,
                    })
                    return


class InMemoryLeaseStore(LeaseStore):
    """Dictionary-backed LeaseStore; the clock is injectable for tests."""

    def __init__(self, clock=utcnow):
        self._lock = asyncio.Lock()
        self._leases: Dict[str, SchedulerLease] = {}
        self._clock = clock

    async def try_acquire(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            lease = self._leases.get(role)
            if lease and lease.is_held(now) and lease.held_by != worker_id:
                return False

            renewing = lease is not None and lease.is_held_by(worker_id, now)
            self._leases[role] = SchedulerLease(
                role=role,
                held_by=worker_id,
                acquired_at=lease.acquired_at if renewing else now,
                expires_at=now + timedelta(seconds=ttl_seconds),
                heartbeat_at=now,
            )
            return True

    async def heartbeat(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            lease = self._leases.get(role)
            if lease is None or not lease.is_held_by(worker_id, now):
                return False
            self._leases[role] = lease.model_copy(update={
                "expires_at": now + timedelta(seconds=ttl_seconds),
                "heartbeat_at": now,
            })
            return True

    async def release(self, role: str, worker_id: str) -> bool:
        async with self._lock:
            lease = self._leases.get(role)
            if lease is None or lease.held_by != worker_id:
                return False
            self._leases[role] = SchedulerLease(role=role)
            return True

    async def get(self, role: str) -> Optional[SchedulerLease]:
        lease = self._leases.get(role)
        return lease.model_copy() if lease else None
