"""
Supabase Store
DurableStore and LeaseStore backed by Postgres through Supabase

Claims and leases go through the RPC functions in
database/scheduler_rpc.sql; each is a single conditional UPDATE using
FOR UPDATE SKIP LOCKED, so concurrent workers never claim the same row.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client, create_client

from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.interfaces.lease_store import LeaseStore
from carecall.domain.models.line import Line, Account
from carecall.domain.models.schedule import ScheduleRule, ProcessingClaim
from carecall.domain.models.reminder import Reminder
from carecall.domain.models.call_session import CallSession, CallEvent, TERMINAL_STATUSES
from carecall.domain.models.ledger import MinuteLedgerEntry, METERED_TYPES
from carecall.domain.models.lease import SchedulerLease
from carecall.utils.clock import isoformat, parse_timestamp

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _serialize(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Convert python values to JSON-compatible column values."""
    row = {}
    for key, value in updates.items():
        if isinstance(value, datetime):
            row[key] = isoformat(value)
        elif isinstance(value, Enum):
            row[key] = value.value
        elif hasattr(value, "model_dump"):
            row[key] = value.model_dump(mode="json")
        else:
            row[key] = value
    return row


def _claim_from_row(row: Dict[str, Any]) -> Optional[ProcessingClaim]:
    claimed_by = row.pop("processing_claimed_by", None)
    claimed_at = row.pop("processing_claimed_at", None)
    if claimed_by and claimed_at:
        return ProcessingClaim(claimed_by=claimed_by, claimed_at=parse_timestamp(claimed_at))
    return None


def schedule_from_row(row: Dict[str, Any]) -> ScheduleRule:
    row = dict(row)
    claim = _claim_from_row(row)
    return ScheduleRule(**row, processing_claim=claim)


def reminder_from_row(row: Dict[str, Any]) -> Reminder:
    row = dict(row)
    claim = _claim_from_row(row)
    return Reminder(**row, processing_claim=claim)


class SupabaseDurableStore(DurableStore, LeaseStore):
    """
    Supabase-backed store.

    Table names follow the schema in database/scheduler_rpc.sql.
    """

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_credentials(cls, url: Optional[str], key: Optional[str]) -> "SupabaseDurableStore":
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        return cls(create_client(url, key))

    # =========================================================================
    # Leases
    # =========================================================================

    async def try_acquire(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        response = self._client.rpc("try_acquire_scheduler_lease", {
            "p_lease_id": role,
            "p_worker_id": worker_id,
            "p_ttl_seconds": ttl_seconds,
        }).execute()
        return bool(response.data)

    async def heartbeat(self, role: str, worker_id: str, ttl_seconds: int) -> bool:
        response = self._client.rpc("heartbeat_scheduler_lease", {
            "p_lease_id": role,
            "p_worker_id": worker_id,
            "p_ttl_seconds": ttl_seconds,
        }).execute()
        return bool(response.data)

    async def release(self, role: str, worker_id: str) -> bool:
        response = self._client.rpc("release_scheduler_lease", {
            "p_lease_id": role,
            "p_worker_id": worker_id,
        }).execute()
        return bool(response.data)

    async def get(self, role: str) -> Optional[SchedulerLease]:
        response = self._client.table("scheduler_leases").select("*").eq("id", role).execute()
        if not response.data:
            return None
        row = response.data[0]
        return SchedulerLease(
            role=role,
            held_by=row.get("held_by"),
            acquired_at=parse_timestamp(row.get("acquired_at")),
            expires_at=parse_timestamp(row.get("expires_at")),
            heartbeat_at=parse_timestamp(row.get("heartbeat_at")),
        )

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
        response = self._client.rpc("claim_due_schedules", {
            "p_worker_id": worker_id,
            "p_batch_size": batch_size,
            "p_claim_ttl_seconds": claim_ttl_seconds,
        }).execute()
        return [schedule_from_row(row) for row in (response.data or [])]

    async def complete_schedule_processing(
        self,
        schedule_id: str,
        worker_id: str,
        result: str,
        next_run_at: Optional[datetime],
        reset_retry_count: bool = False,
        now: Optional[datetime] = None
    ) -> bool:
        response = self._client.rpc("complete_schedule_processing", {
            "p_schedule_id": schedule_id,
            "p_worker_id": worker_id,
            "p_result": result,
            "p_next_run_at": isoformat(next_run_at),
            "p_reset_retry_count": reset_retry_count,
        }).execute()
        return bool(response.data)

    async def increment_schedule_retry(
        self,
        schedule_id: str,
        worker_id: str,
        next_run_at: datetime,
        now: Optional[datetime] = None
    ) -> bool:
        response = self._client.rpc("increment_schedule_retry", {
            "p_schedule_id": schedule_id,
            "p_worker_id": worker_id,
            "p_next_run_at": isoformat(next_run_at),
        }).execute()
        return bool(response.data)

    async def claim_due_reminders(
        self,
        worker_id: str,
        batch_size: int,
        claim_ttl_seconds: int,
        now: Optional[datetime] = None
    ) -> List[Reminder]:
        response = self._client.rpc("claim_due_reminders", {
            "p_worker_id": worker_id,
            "p_batch_size": batch_size,
            "p_claim_ttl_seconds": claim_ttl_seconds,
        }).execute()
        return [reminder_from_row(row) for row in (response.data or [])]

    async def complete_reminder_processing(
        self,
        reminder_id: str,
        worker_id: str,
        updates: Dict[str, Any]
    ) -> bool:
        response = self._client.rpc("complete_reminder_processing", {
            "p_reminder_id": reminder_id,
            "p_worker_id": worker_id,
            "p_updates": _serialize(updates),
        }).execute()
        return bool(response.data)

    # =========================================================================
    # Schedules
    # =========================================================================

    async def create_schedule(self, schedule: ScheduleRule) -> ScheduleRule:
        row = schedule.model_dump(mode="json", exclude={"processing_claim"})
        response = self._client.table("schedules").insert(row).execute()
        return schedule_from_row(response.data[0])

    async def get_recurring_schedule(self, line_id: str) -> Optional[ScheduleRule]:
        response = self._client.table("schedules").select("*").eq(
            "line_id", line_id
        ).eq("enabled", True).eq("one_off", False).order(
            "created_at", desc=True
        ).limit(1).execute()
        if not response.data:
            return None
        return schedule_from_row(response.data[0])

    async def update_schedule(self, schedule_id: str, updates: Dict[str, Any]) -> Optional[ScheduleRule]:
        response = self._client.table("schedules").update(
            _serialize(updates)
        ).eq("id", schedule_id).execute()
        if not response.data:
            return None
        return schedule_from_row(response.data[0])

    # =========================================================================
    # Lines and accounts
    # =========================================================================

    async def get_line(self, line_id: str) -> Optional[Line]:
        response = self._client.table("lines").select("*").eq("id", line_id).execute()
        if not response.data:
            logger.error(f"Line not found by ID: {line_id}")
            return None
        return Line(**response.data[0])

    async def get_account(self, account_id: str) -> Optional[Account]:
        response = self._client.table("accounts").select("*").eq("id", account_id).execute()
        if not response.data:
            logger.error(f"Account not found: {account_id}")
            return None
        return Account(**response.data[0])

    async def update_line(self, line_id: str, updates: Dict[str, Any]) -> None:
        self._client.table("lines").update(_serialize(updates)).eq("id", line_id).execute()

    async def get_memory_summary(self, line_id: str) -> Optional[str]:
        response = self._client.table("line_memories").select(
            "summary"
        ).eq("line_id", line_id).order("updated_at", desc=True).limit(1).execute()
        if response.data:
            return response.data[0].get("summary")
        return None

    # =========================================================================
    # Reminders
    # =========================================================================

    async def create_reminder(self, reminder: Reminder) -> Reminder:
        row = reminder.model_dump(mode="json", exclude={"processing_claim"})
        response = self._client.table("reminders").insert(row).execute()
        return reminder_from_row(response.data[0])

    async def get_reminder(self, reminder_id: str) -> Optional[Reminder]:
        response = self._client.table("reminders").select("*").eq("id", reminder_id).execute()
        if not response.data:
            return None
        return reminder_from_row(response.data[0])

    async def list_reminders_for_line(
        self,
        line_id: str,
        status: str = "scheduled",
        limit: int = 10
    ) -> List[Reminder]:
        response = self._client.table("reminders").select("*").eq(
            "line_id", line_id
        ).eq("status", status).order("due_at").limit(limit).execute()
        return [reminder_from_row(row) for row in (response.data or [])]

    async def update_reminder(self, reminder_id: str, updates: Dict[str, Any]) -> Optional[Reminder]:
        response = self._client.table("reminders").update(
            _serialize(updates)
        ).eq("id", reminder_id).execute()
        if not response.data:
            return None
        return reminder_from_row(response.data[0])

    async def insert_reminder_event(self, event: Dict[str, Any]) -> None:
        self._client.table("reminder_events").insert(_serialize(event)).execute()

    # =========================================================================
    # Call sessions
    # =========================================================================

    async def create_call_session(self, session: CallSession) -> Tuple[CallSession, bool]:
        row = session.model_dump(mode="json")
        try:
            response = self._client.table("call_sessions").insert(row).execute()
            return CallSession(**response.data[0]), True
        except APIError as e:
            if e.code != UNIQUE_VIOLATION or not session.idempotency_key:
                raise

        logger.info(
            f"Call session already exists for key {session.idempotency_key}",
            extra={"idempotency_key": session.idempotency_key}
        )
        existing = self._client.table("call_sessions").select("*").eq(
            "idempotency_key", session.idempotency_key
        ).execute()
        return CallSession(**existing.data[0]), False

    async def get_call_session(self, session_id: str) -> Optional[CallSession]:
        response = self._client.table("call_sessions").select("*").eq("id", session_id).execute()
        if not response.data:
            return None
        return CallSession(**response.data[0])

    async def get_call_session_by_carrier_sid(self, call_sid: str) -> Optional[CallSession]:
        response = self._client.table("call_sessions").select("*").eq(
            "carrier_call_sid", call_sid
        ).execute()
        if not response.data:
            return None
        return CallSession(**response.data[0])

    async def update_call_session(
        self,
        session_id: str,
        updates: Dict[str, Any],
        expected_status: Optional[str] = None
    ) -> Optional[CallSession]:
        query = self._client.table("call_sessions").update(_serialize(updates)).eq("id", session_id)
        if expected_status is not None:
            query = query.eq("status", expected_status)
        response = query.execute()
        if not response.data:
            return None
        return CallSession(**response.data[0])

    async def list_unsettled_sessions(self, limit: int) -> List[CallSession]:
        response = self._client.table("call_sessions").select("*").in_(
            "status", list(TERMINAL_STATUSES)
        ).not_.is_("connected_at", "null").is_(
            "ledger_settled_at", "null"
        ).order("ended_at").limit(limit).execute()
        return [CallSession(**row) for row in (response.data or [])]

    async def increment_tool_invocations(self, session_id: str) -> None:
        self._client.rpc("increment_tool_invocations", {"p_call_session_id": session_id}).execute()

    async def insert_call_event(self, event: CallEvent) -> None:
        self._client.table("call_events").insert(event.model_dump(mode="json")).execute()

    # =========================================================================
    # Minute ledger
    # =========================================================================

    async def insert_ledger_entries(self, entries: List[MinuteLedgerEntry]) -> bool:
        rows = [entry.model_dump(mode="json", exclude_none=True) for entry in entries]
        try:
            # A multi-row INSERT is one statement: all rows land or none do
            self._client.table("minute_ledger").insert(rows).execute()
            return True
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return False
            raise

    async def list_ledger_entries_for_session(self, call_session_id: str) -> List[MinuteLedgerEntry]:
        response = self._client.table("minute_ledger").select("*").eq(
            "call_session_id", call_session_id
        ).execute()
        return [MinuteLedgerEntry(**row) for row in (response.data or [])]

    async def sum_cycle_minutes(
        self,
        account_id: str,
        cycle_start: Optional[datetime],
        cycle_end: Optional[datetime]
    ) -> int:
        query = self._client.table("minute_ledger").select("billable_minutes").eq("account_id", account_id)
        if cycle_start:
            query = query.gte("created_at", isoformat(cycle_start))
        if cycle_end:
            query = query.lt("created_at", isoformat(cycle_end))
        response = query.execute()
        return sum(row.get("billable_minutes", 0) for row in (response.data or []))

    async def list_unreported_entries(self, limit: int) -> List[MinuteLedgerEntry]:
        # Inner join drops rows whose account has no billing customer yet
        response = self._client.table("minute_ledger").select(
            "*, accounts!inner(stripe_customer_id)"
        ).in_(
            "billable_type", list(METERED_TYPES)
        ).eq("reported_to_billing", False).not_.is_(
            "accounts.stripe_customer_id", "null"
        ).order("created_at").limit(limit).execute()
        entries = []
        for row in response.data or []:
            row.pop("accounts", None)
            entries.append(MinuteLedgerEntry(**row))
        return entries

    async def mark_entry_reported(self, entry_id: str, usage_record_id: str) -> None:
        self._client.table("minute_ledger").update({
            "reported_to_billing": True,
            "billing_usage_record_id": usage_record_id,
        }).eq("id", entry_id).eq("reported_to_billing", False).execute()
