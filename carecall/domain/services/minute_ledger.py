"""
Minute Ledger
Settles billable minutes for ended call sessions and reports metered usage

A session is settled at most once: the first pass writes its entries in a
single insert keyed by stable idempotency keys, and any later pass finds
those entries and returns them unchanged.
"""
import logging
import math
from typing import List, Optional, Tuple

from carecall.core.exceptions import BillingError
from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.interfaces.usage_reporter import UsageReporter
from carecall.domain.models.call_session import CallSession
from carecall.domain.models.ledger import BillableType, MinuteLedgerEntry
from carecall.domain.models.line import Account

logger = logging.getLogger(__name__)


# Ledger defaults (overridable from config ledger.*)
MIN_BILLABLE_SECONDS = 30
LOW_MINUTES_THRESHOLD = 15
CRITICAL_MINUTES_THRESHOLD = 5


def billable_minutes(
    seconds_connected: int,
    is_reminder_call: bool = False,
    min_billable_seconds: int = MIN_BILLABLE_SECONDS
) -> int:
    """
    Round connected seconds up to whole minutes.

    Calls shorter than `min_billable_seconds` are free, except reminder
    calls which always cost at least one minute.
    """
    seconds = max(0, int(seconds_connected or 0))
    if seconds < min_billable_seconds:
        return 1 if is_reminder_call else 0
    return max(1, math.ceil(seconds / 60))


def split_minutes(
    account: Account,
    minutes: int,
    used_this_cycle: int
) -> List[Tuple[BillableType, int]]:
    """
    Classify a call's minutes, splitting at the allotment boundary.

    Trial accounts draw on trial minutes, subscribed accounts on their
    included minutes; whatever does not fit becomes overage. Pay-as-you-go
    accounts are metered in full.

    Example: trial account, 1 trial minute left, 3 billable minutes
        -> [(trial, 1), (overage, 2)]
    """
    if minutes <= 0:
        return []
    if account.is_payg:
        return [(BillableType.PAYG, minutes)]

    first_type = BillableType.TRIAL if account.is_trial else BillableType.INCLUDED
    remaining = max(0, account.minutes_included - used_this_cycle)
    covered = min(minutes, remaining)

    parts: List[Tuple[BillableType, int]] = []
    if covered > 0:
        parts.append((first_type, covered))
    if minutes - covered > 0:
        parts.append((BillableType.OVERAGE, minutes - covered))
    return parts


def ledger_key(call_session_id: str, billable_type: Optional[BillableType] = None) -> str:
    if billable_type is None:
        return f"call_{call_session_id}"
    value = billable_type.value if isinstance(billable_type, BillableType) else billable_type
    return f"call_{call_session_id}:{value}"


class MinuteLedger:
    """
    Writes minute ledger entries and reports overage/payg usage.

    Reporting failures never propagate: the entry stays unreported and
    `report_pending_usage` picks it up on a later pass.
    """

    def __init__(
        self,
        store: DurableStore,
        usage_reporter: Optional[UsageReporter] = None,
        min_billable_seconds: int = MIN_BILLABLE_SECONDS,
        low_minutes_threshold: int = LOW_MINUTES_THRESHOLD,
        critical_minutes_threshold: int = CRITICAL_MINUTES_THRESHOLD
    ):
        self.store = store
        self.usage_reporter = usage_reporter
        self.min_billable_seconds = min_billable_seconds
        self.low_minutes_threshold = low_minutes_threshold
        self.critical_minutes_threshold = critical_minutes_threshold

    # =========================================================================
    # Allowance
    # =========================================================================

    async def get_minutes_remaining(self, account: Account, pending_minutes: int = 0) -> Optional[int]:
        """
        Minutes left in the account's allotment (None for pay-as-you-go).

        `pending_minutes` lets a live call subtract what it has used so far.
        """
        if account.is_payg:
            return None
        used = await self.store.sum_cycle_minutes(account.id, account.cycle_start, account.cycle_end)
        return max(0, account.minutes_included - used - pending_minutes)

    def should_warn_low_minutes(self, remaining: Optional[int]) -> Optional[str]:
        """Returns "critical", "low" or None."""
        if remaining is None:
            return None
        if remaining <= self.critical_minutes_threshold:
            return "critical"
        if remaining <= self.low_minutes_threshold:
            return "low"
        return None

    # =========================================================================
    # Settlement
    # =========================================================================

    async def record_usage(self, session: CallSession, account: Optional[Account] = None) -> List[MinuteLedgerEntry]:
        """
        Settle an ended call session.

        Returns:
            The session's ledger entries (existing ones on a repeat pass,
            empty when nothing was billable)
        """
        existing = await self.store.list_ledger_entries_for_session(session.id)
        if existing:
            logger.info(
                f"Session {session.id} already settled ({len(existing)} entries)",
                extra={"call_session_id": session.id}
            )
            return existing

        minutes = billable_minutes(
            session.seconds_connected or 0,
            is_reminder_call=session.is_reminder_call,
            min_billable_seconds=self.min_billable_seconds
        )
        if minutes == 0:
            logger.debug(f"Session {session.id} below billable threshold")
            return []

        account = account or await self.store.get_account(session.account_id)
        if account is None:
            raise BillingError(f"Account {session.account_id} not found for session {session.id}")

        used = await self.store.sum_cycle_minutes(account.id, account.cycle_start, account.cycle_end)
        parts = split_minutes(account, minutes, used)
        single = len(parts) == 1

        entries = [
            MinuteLedgerEntry(
                account_id=session.account_id,
                line_id=session.line_id,
                call_session_id=session.id,
                billable_minutes=part_minutes,
                billable_type=billable_type,
                seconds_connected=session.seconds_connected or 0,
                idempotency_key=ledger_key(session.id, None if single else billable_type),
                cycle_start=account.cycle_start,
                cycle_end=account.cycle_end,
            )
            for billable_type, part_minutes in parts
        ]

        inserted = await self.store.insert_ledger_entries(entries)
        if not inserted:
            logger.info(
                f"Ledger entries for session {session.id} already exist",
                extra={"call_session_id": session.id}
            )
            return await self.store.list_ledger_entries_for_session(session.id)

        stored = await self.store.list_ledger_entries_for_session(session.id)
        logger.info(
            f"Recorded {minutes} min for session {session.id}: "
            + ", ".join(f"{t.value}={m}" for t, m in parts),
            extra={"call_session_id": session.id, "account_id": account.id, "minutes": minutes}
        )

        for entry in stored:
            if entry.is_metered:
                await self._report_entry(entry, account)

        return await self.store.list_ledger_entries_for_session(session.id)

    # =========================================================================
    # Usage reporting
    # =========================================================================

    async def report_pending_usage(self, limit: int = 50) -> int:
        """
        Retry metered entries that were not reported yet.

        Returns:
            Number of entries reported in this pass
        """
        if self.usage_reporter is None:
            return 0

        reported = 0
        for entry in await self.store.list_unreported_entries(limit):
            account = await self.store.get_account(entry.account_id)
            if account is None:
                logger.warning(f"Skipping usage report for {entry.idempotency_key}: account missing")
                continue
            if await self._report_entry(entry, account):
                reported += 1

        if reported:
            logger.info(f"Reported {reported} pending usage entries")
        return reported

    async def _report_entry(self, entry: MinuteLedgerEntry, account: Account) -> bool:
        if self.usage_reporter is None or entry.reported_to_billing:
            return False
        if not account.stripe_customer_id:
            logger.warning(
                f"Account {account.id} has no billing customer, leaving {entry.idempotency_key} unreported",
                extra={"account_id": account.id}
            )
            return False

        try:
            record_id = await self.usage_reporter.report_usage(entry, account)
        except BillingError as e:
            logger.error(
                f"Usage report failed for {entry.idempotency_key}: {e}",
                extra={"account_id": account.id, "idempotency_key": entry.idempotency_key},
                exc_info=True
            )
            return False

        await self.store.mark_entry_reported(entry.id, record_id)
        return True
