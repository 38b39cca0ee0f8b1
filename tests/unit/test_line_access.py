"""
Unit Tests for Line Access
Tests for quiet hours and the ordered eligibility checks
"""
import pytest
from datetime import datetime, timezone

from carecall.domain.models.call_session import CallDirection
from carecall.domain.models.ledger import BillableType, MinuteLedgerEntry
from carecall.domain.models.line import AccessDenial, Account, AccountStatus, Line, LineStatus
from carecall.domain.services.line_access import LineAccessService, is_in_quiet_hours
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.infrastructure.storage.memory_store import InMemoryDurableStore


def make_line(**overrides) -> Line:
    fields = {
        "id": "line-1",
        "account_id": "acct-1",
        "phone_e164": "+15551234567",
        "display_name": "Margaret",
        "timezone": "America/New_York",
        "quiet_hours_start": "21:00",
        "quiet_hours_end": "09:00",
        "phone_verified_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Line(**fields)


@pytest.fixture
def store():
    store = InMemoryDurableStore()
    store.add_account(Account(id="acct-1", status=AccountStatus.TRIAL, minutes_included=20))
    return store


@pytest.fixture
def service(store):
    return LineAccessService(store, MinuteLedger(store))


class TestQuietHours:
    """Tests for is_in_quiet_hours"""

    @pytest.mark.parametrize("check_time,expected", [
        (datetime(2024, 6, 2, 2, 0, tzinfo=timezone.utc), True),    # 22:00 EDT
        (datetime(2024, 6, 2, 1, 0, tzinfo=timezone.utc), True),    # 21:00 EDT, start inclusive
        (datetime(2024, 6, 2, 12, 59, tzinfo=timezone.utc), True),  # 08:59 EDT
        (datetime(2024, 6, 2, 13, 0, tzinfo=timezone.utc), False),  # 09:00 EDT, end exclusive
        (datetime(2024, 6, 2, 16, 0, tzinfo=timezone.utc), False),  # 12:00 EDT
    ])
    def test_window_spanning_midnight(self, check_time, expected):
        """Test a 21:00-09:00 window in the line's timezone"""
        in_quiet, _ = is_in_quiet_hours(make_line(), check_time)

        assert in_quiet is expected

    def test_same_day_window(self):
        """Test a window that does not wrap"""
        line = make_line(quiet_hours_start="12:00", quiet_hours_end="14:00")

        assert is_in_quiet_hours(line, datetime(2024, 6, 2, 17, 0, tzinfo=timezone.utc))[0]  # 13:00 EDT
        assert not is_in_quiet_hours(line, datetime(2024, 6, 2, 19, 0, tzinfo=timezone.utc))[0]

    def test_equal_bounds_disable_quiet_hours(self):
        """Test start == end means no quiet hours"""
        line = make_line(quiet_hours_start="00:00", quiet_hours_end="00:00")

        assert is_in_quiet_hours(line, datetime(2024, 6, 2, 4, 0, tzinfo=timezone.utc)) == (False, "no_quiet_hours")

    def test_malformed_bounds_allow(self):
        """Test unparseable quiet hours fail open"""
        line = make_line(quiet_hours_start="late", quiet_hours_end="early")

        assert not is_in_quiet_hours(line, datetime(2024, 6, 2, 4, 0, tzinfo=timezone.utc))[0]


class TestLineAccess:
    """Tests for LineAccessService.check_line_access"""

    @pytest.mark.asyncio
    async def test_allowed(self, service):
        """Test an eligible line reports remaining minutes"""
        check = await service.check_line_access(make_line())

        assert check.allowed
        assert check.reason is None
        assert check.minutes_remaining == 20

    @pytest.mark.asyncio
    async def test_disabled_line_wins_over_other_denials(self, service):
        """Test the first failing check is reported"""
        line = make_line(status=LineStatus.DISABLED, do_not_call=True, phone_verified_at=None)

        check = await service.check_line_access(line)

        assert not check.allowed
        assert check.reason == AccessDenial.DISABLED.value

    @pytest.mark.asyncio
    async def test_canceled_account(self, store, service):
        """Test canceled accounts are denied"""
        store.add_account(Account(id="acct-1", status=AccountStatus.CANCELED))

        check = await service.check_line_access(make_line())

        assert check.reason == AccessDenial.ACCOUNT_CANCELED.value

    @pytest.mark.asyncio
    async def test_do_not_call_only_blocks_outbound(self, service):
        """Test do_not_call applies to outbound calls only"""
        line = make_line(do_not_call=True)

        outbound = await service.check_line_access(line, direction=CallDirection.OUTBOUND)
        inbound = await service.check_line_access(line, direction=CallDirection.INBOUND)

        assert outbound.reason == AccessDenial.DO_NOT_CALL.value
        assert inbound.allowed

    @pytest.mark.asyncio
    async def test_inbound_blocked(self, service):
        """Test inbound_allowed=False blocks inbound calls"""
        check = await service.check_line_access(make_line(inbound_allowed=False), direction=CallDirection.INBOUND)

        assert check.reason == AccessDenial.INBOUND_BLOCKED.value

    @pytest.mark.asyncio
    async def test_unverified_phone(self, service):
        """Test lines without a verified phone are denied"""
        check = await service.check_line_access(make_line(phone_verified_at=None))

        assert check.reason == AccessDenial.NOT_VERIFIED.value

    @pytest.mark.asyncio
    async def test_trial_minutes_exhausted(self, store, service):
        """Test a trial account with no minutes left"""
        store.ledger["call_prior"] = MinuteLedgerEntry(
            id="e1", account_id="acct-1", line_id="line-1", call_session_id="prior",
            billable_minutes=20, billable_type=BillableType.TRIAL,
            seconds_connected=1200, idempotency_key="call_prior",
        )

        check = await service.check_line_access(make_line())

        assert check.reason == AccessDenial.MINUTES_EXHAUSTED.value
        assert check.minutes_remaining == 0

    @pytest.mark.asyncio
    async def test_pending_minutes_count_against_trial(self, service):
        """Test in-call minutes are subtracted"""
        check = await service.check_line_access(make_line(), pending_minutes=20)

        assert check.reason == AccessDenial.MINUTES_EXHAUSTED.value


class TestCanPlaceCall:
    """Tests for the scheduler's outbound gate"""

    @pytest.mark.asyncio
    async def test_quiet_hours_block(self, service):
        """Test quiet hours deny scheduled placement"""
        allowed, reason = await service.can_place_call(
            make_line(), datetime(2024, 6, 2, 2, 0, tzinfo=timezone.utc)
        )

        assert not allowed
        assert reason == "quiet_hours"

    @pytest.mark.asyncio
    async def test_access_denial_reported_first(self, service):
        """Test eligibility is checked before quiet hours"""
        allowed, reason = await service.can_place_call(
            make_line(do_not_call=True), datetime(2024, 6, 2, 2, 0, tzinfo=timezone.utc)
        )

        assert not allowed
        assert reason == "do_not_call"

    @pytest.mark.asyncio
    async def test_allowed_outside_quiet_hours(self, service):
        """Test daytime placement is allowed"""
        allowed, reason = await service.can_place_call(
            make_line(), datetime(2024, 6, 2, 16, 0, tzinfo=timezone.utc)
        )

        assert allowed
        assert reason == "ok"
