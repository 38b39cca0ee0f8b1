"""
Unit Tests for Minute Ledger
Tests for rounding, bucket splits, idempotent settlement and usage reporting
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from carecall.core.exceptions import BillingError
from carecall.domain.models.call_session import CallSession, CallSessionStatus
from carecall.domain.models.ledger import BillableType, MinuteLedgerEntry
from carecall.domain.models.line import Account, AccountStatus
from carecall.domain.services.minute_ledger import (
    MinuteLedger,
    billable_minutes,
    ledger_key,
    split_minutes,
)
from carecall.infrastructure.storage.memory_store import InMemoryDurableStore


@pytest.fixture
def store():
    return InMemoryDurableStore()


@pytest.fixture
def trial_account(store):
    account = Account(
        id="acct-1",
        name="Rivera Family",
        status=AccountStatus.TRIAL,
        minutes_included=20,
        stripe_customer_id="cus_123",
    )
    store.add_account(account)
    return account


@pytest.fixture
def reporter():
    reporter = AsyncMock()
    reporter.report_usage = AsyncMock(return_value="meter_evt_1")
    return reporter


def ended_session(seconds: int, session_id: str = "sess-1", reminder_id=None) -> CallSession:
    connected_at = datetime(2024, 6, 1, 15, 0, tzinfo=timezone.utc)
    return CallSession(
        id=session_id,
        account_id="acct-1",
        line_id="line-1",
        status=CallSessionStatus.COMPLETED,
        connected_at=connected_at,
        ended_at=connected_at + timedelta(seconds=seconds),
        seconds_connected=seconds,
        reminder_id=reminder_id,
    )


def prior_usage(store: InMemoryDurableStore, minutes: int) -> None:
    store.ledger["call_prior"] = MinuteLedgerEntry(
        id="entry-prior",
        account_id="acct-1",
        line_id="line-1",
        call_session_id="prior",
        billable_minutes=minutes,
        billable_type=BillableType.TRIAL,
        seconds_connected=minutes * 60,
        idempotency_key="call_prior",
    )


class TestBillableMinutes:
    """Tests for billable_minutes rounding"""

    @pytest.mark.parametrize("seconds,expected", [
        (0, 0),
        (29, 0),
        (30, 1),
        (60, 1),
        (61, 2),
        (125, 3),
    ])
    def test_companion_call_rounding(self, seconds, expected):
        """Test seconds round up to whole minutes above the free threshold"""
        assert billable_minutes(seconds) == expected

    def test_short_reminder_call_costs_one_minute(self):
        """Test reminder calls below the threshold still bill one minute"""
        assert billable_minutes(10, is_reminder_call=True) == 1


class TestSplitMinutes:
    """Tests for allotment boundary splits"""

    def test_trial_split_at_boundary(self):
        """Test 3 minutes with 1 trial minute left"""
        account = Account(id="a", status=AccountStatus.TRIAL, minutes_included=20)

        assert split_minutes(account, 3, 19) == [(BillableType.TRIAL, 1), (BillableType.OVERAGE, 2)]

    def test_included_fully_covered(self):
        """Test subscribed accounts draw on included minutes"""
        account = Account(id="a", status=AccountStatus.ACTIVE, plan_id="care", minutes_included=300)

        assert split_minutes(account, 5, 10) == [(BillableType.INCLUDED, 5)]

    def test_all_overage_when_exhausted(self):
        """Test no allotment left means everything is overage"""
        account = Account(id="a", status=AccountStatus.ACTIVE, plan_id="care", minutes_included=300)

        assert split_minutes(account, 4, 320) == [(BillableType.OVERAGE, 4)]

    def test_payg_is_metered_in_full(self):
        """Test pay-as-you-go accounts bill every minute as payg"""
        account = Account(id="a", status=AccountStatus.ACTIVE, plan_id="payg", minutes_included=0)

        assert split_minutes(account, 7, 0) == [(BillableType.PAYG, 7)]

    def test_zero_minutes(self):
        """Test nothing to split"""
        account = Account(id="a")

        assert split_minutes(account, 0, 0) == []


class TestRecordUsage:
    """Tests for MinuteLedger.record_usage"""

    @pytest.mark.asyncio
    async def test_split_entries_use_typed_keys(self, store, trial_account, reporter):
        """Test 125s with 1 trial minute left writes trial and overage rows"""
        prior_usage(store, 19)
        ledger = MinuteLedger(store, usage_reporter=reporter)

        entries = await ledger.record_usage(ended_session(125))

        by_key = {e.idempotency_key: e for e in entries}
        assert set(by_key) == {"call_sess-1:trial", "call_sess-1:overage"}
        assert by_key["call_sess-1:trial"].billable_minutes == 1
        assert by_key["call_sess-1:overage"].billable_minutes == 2

    @pytest.mark.asyncio
    async def test_single_bucket_uses_plain_key(self, store, trial_account):
        """Test an unsplit call gets the plain session key"""
        ledger = MinuteLedger(store)

        entries = await ledger.record_usage(ended_session(90))

        assert [e.idempotency_key for e in entries] == ["call_sess-1"]
        assert entries[0].billable_type == BillableType.TRIAL.value

    @pytest.mark.asyncio
    async def test_overage_reported_once(self, store, trial_account, reporter):
        """Test only the metered part is reported"""
        prior_usage(store, 19)
        ledger = MinuteLedger(store, usage_reporter=reporter)

        entries = await ledger.record_usage(ended_session(125))

        reporter.report_usage.assert_awaited_once()
        reported_entry = reporter.report_usage.call_args.args[0]
        assert reported_entry.billable_type == BillableType.OVERAGE.value
        overage = [e for e in entries if e.billable_type == BillableType.OVERAGE.value][0]
        assert overage.reported_to_billing
        assert overage.billing_usage_record_id == "meter_evt_1"

    @pytest.mark.asyncio
    async def test_second_settlement_is_a_no_op(self, store, trial_account, reporter):
        """Test settling the same session twice writes and reports once"""
        prior_usage(store, 19)
        ledger = MinuteLedger(store, usage_reporter=reporter)
        session = ended_session(125)

        first = await ledger.record_usage(session)
        second = await ledger.record_usage(session)

        assert len(store.ledger) == 3  # prior + trial + overage
        assert {e.idempotency_key for e in first} == {e.idempotency_key for e in second}
        assert reporter.report_usage.await_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_key_insert_rejected(self, store):
        """Test the store refuses a second row with the same key"""
        entry = MinuteLedgerEntry(
            account_id="acct-1",
            line_id="line-1",
            call_session_id="sess-1",
            billable_minutes=2,
            billable_type=BillableType.TRIAL,
            seconds_connected=100,
            idempotency_key="call_sess-1",
        )

        assert await store.insert_ledger_entries([entry])
        assert not await store.insert_ledger_entries([entry])
        assert len(store.ledger) == 1

    @pytest.mark.asyncio
    async def test_below_threshold_writes_nothing(self, store, trial_account):
        """Test a 20s companion call is free"""
        ledger = MinuteLedger(store)

        assert await ledger.record_usage(ended_session(20)) == []
        assert store.ledger == {}

    @pytest.mark.asyncio
    async def test_missing_account_raises(self, store):
        """Test settlement without an account is a billing error"""
        ledger = MinuteLedger(store)

        with pytest.raises(BillingError):
            await ledger.record_usage(ended_session(120))

    @pytest.mark.asyncio
    async def test_payg_entry(self, store, reporter):
        """Test pay-as-you-go calls are a single metered row"""
        store.add_account(Account(
            id="acct-1", status=AccountStatus.ACTIVE, plan_id="payg",
            minutes_included=0, stripe_customer_id="cus_123",
        ))
        ledger = MinuteLedger(store, usage_reporter=reporter)

        entries = await ledger.record_usage(ended_session(200))

        assert len(entries) == 1
        assert entries[0].idempotency_key == "call_sess-1"
        assert entries[0].billable_type == BillableType.PAYG.value
        assert entries[0].billable_minutes == 4
        reporter.report_usage.assert_awaited_once()


class TestUsageReporting:
    """Tests for report retries"""

    @pytest.mark.asyncio
    async def test_failed_report_is_retried_later(self, store, trial_account, reporter):
        """Test a billing failure leaves the entry for report_pending_usage"""
        prior_usage(store, 20)
        reporter.report_usage.side_effect = BillingError("stripe down")
        ledger = MinuteLedger(store, usage_reporter=reporter)

        entries = await ledger.record_usage(ended_session(120))

        assert not entries[0].reported_to_billing
        assert len(await store.list_unreported_entries(10)) == 1

        reporter.report_usage.side_effect = None
        reporter.report_usage.return_value = "meter_evt_2"

        assert await ledger.report_pending_usage() == 1
        assert await store.list_unreported_entries(10) == []
        assert await ledger.report_pending_usage() == 0

    @pytest.mark.asyncio
    async def test_no_customer_left_unreported(self, store, reporter):
        """Test accounts without a billing customer are skipped"""
        store.add_account(Account(id="acct-1", status=AccountStatus.ACTIVE, plan_id="payg", minutes_included=0))
        ledger = MinuteLedger(store, usage_reporter=reporter)

        await ledger.record_usage(ended_session(120))

        reporter.report_usage.assert_not_awaited()
        assert len(store.ledger) == 1
        assert await store.list_unreported_entries(10) == []

    @pytest.mark.asyncio
    async def test_unbillable_rows_do_not_block_batch(self, store, trial_account, reporter):
        """Test a full batch of customerless rows leaves room for billable ones"""
        store.add_account(Account(id="acct-2", status=AccountStatus.ACTIVE, plan_id="payg", minutes_included=0))
        old = datetime(2024, 6, 1, tzinfo=timezone.utc)
        for i in range(50):
            store.ledger[f"call_free-{i}"] = MinuteLedgerEntry(
                id=f"entry-free-{i}",
                account_id="acct-2",
                line_id="line-2",
                call_session_id=f"free-{i}",
                billable_minutes=1,
                billable_type=BillableType.OVERAGE,
                seconds_connected=60,
                idempotency_key=f"call_free-{i}",
                created_at=old + timedelta(minutes=i),
            )
        store.ledger["call_paid"] = MinuteLedgerEntry(
            id="entry-paid",
            account_id="acct-1",
            line_id="line-1",
            call_session_id="paid",
            billable_minutes=2,
            billable_type=BillableType.OVERAGE,
            seconds_connected=120,
            idempotency_key="call_paid",
            created_at=old + timedelta(days=1),
        )
        ledger = MinuteLedger(store, usage_reporter=reporter)

        assert await ledger.report_pending_usage(50) == 1
        assert store.ledger["call_paid"].reported_to_billing
        reporter.report_usage.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_reporter(self, store, trial_account):
        """Test report_pending_usage without a reporter"""
        ledger = MinuteLedger(store)

        assert await ledger.report_pending_usage() == 0


class TestMinutesRemaining:
    """Tests for allowance queries and warnings"""

    @pytest.mark.asyncio
    async def test_remaining_subtracts_pending(self, store, trial_account):
        """Test used and in-call minutes reduce the allowance"""
        prior_usage(store, 5)
        ledger = MinuteLedger(store)

        assert await ledger.get_minutes_remaining(trial_account, pending_minutes=3) == 12

    @pytest.mark.asyncio
    async def test_remaining_floors_at_zero(self, store, trial_account):
        """Test over-used allowance reports zero"""
        prior_usage(store, 25)
        ledger = MinuteLedger(store)

        assert await ledger.get_minutes_remaining(trial_account) == 0

    @pytest.mark.asyncio
    async def test_payg_has_no_allowance(self, store):
        """Test pay-as-you-go returns None"""
        ledger = MinuteLedger(store)
        account = Account(id="acct-1", plan_id="payg")

        assert await ledger.get_minutes_remaining(account) is None

    def test_warning_levels(self, store):
        """Test critical and low thresholds"""
        ledger = MinuteLedger(store)

        assert ledger.should_warn_low_minutes(5) == "critical"
        assert ledger.should_warn_low_minutes(15) == "low"
        assert ledger.should_warn_low_minutes(16) is None
        assert ledger.should_warn_low_minutes(None) is None

    def test_ledger_keys(self):
        """Test key format for single and split rows"""
        assert ledger_key("abc") == "call_abc"
        assert ledger_key("abc", BillableType.OVERAGE) == "call_abc:overage"
