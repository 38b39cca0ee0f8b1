"""
Unit Tests for Scheduler Worker
Tests for schedule and reminder processing against the in-memory store
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from carecall.core.config import Settings
from carecall.core.container import ServiceContainer
from carecall.core.exceptions import PlacementError
from carecall.domain.models.call_session import CallEndReason, CallSession, CallSessionStatus
from carecall.domain.models.line import Account, AccountStatus, Line
from carecall.domain.models.reminder import (
    RecurrenceFrequency,
    Reminder,
    ReminderRecurrence,
    ReminderStatus,
)
from carecall.domain.models.schedule import ScheduleResult, ScheduleRule
from carecall.domain.services.call_orchestrator import CallOrchestrator
from carecall.domain.services.call_session_service import CallSessionService
from carecall.domain.services.lease_manager import LeaseManager
from carecall.domain.services.line_access import LineAccessService
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.domain.services.reminder_control import ReminderControlService
from carecall.domain.services.session_registry import SessionRegistry
from carecall.infrastructure.storage.memory_store import InMemoryDurableStore, InMemoryLeaseStore
from carecall.utils.clock import utcnow
from carecall.workers.scheduler_worker import SchedulerWorker


@pytest.fixture
def store():
    store = InMemoryDurableStore()
    store.add_account(Account(id="acct-1", status=AccountStatus.TRIAL, minutes_included=20))
    store.add_line(Line(
        id="line-1",
        account_id="acct-1",
        phone_e164="+15551234567",
        display_name="Margaret",
        timezone="America/New_York",
        quiet_hours_start="00:00",
        quiet_hours_end="00:00",
        phone_verified_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))
    return store


@pytest.fixture
def carrier():
    carrier = MagicMock()
    carrier.name = "fake"
    carrier.place_call = AsyncMock(return_value="CA123")
    return carrier


@pytest.fixture
def container(store, carrier):
    ledger = MinuteLedger(store)
    sessions = CallSessionService(store, ledger)
    line_access = LineAccessService(store, ledger)
    return ServiceContainer(
        settings=Settings(),
        config=MagicMock(),
        store=store,
        ledger=ledger,
        sessions=sessions,
        line_access=line_access,
        reminders=ReminderControlService(store),
        registry=SessionRegistry(),
        carrier=carrier,
        orchestrator=CallOrchestrator(sessions, carrier, line_access),
    )


@pytest.fixture
def lease_store():
    return InMemoryLeaseStore()


@pytest.fixture
def worker(container, store, lease_store):
    lease_manager = LeaseManager(lease_store, store, worker_id="worker-a")
    return SchedulerWorker(container=container, lease_manager=lease_manager, config={"retry_delay_minutes": 15})


def due_schedule(**overrides) -> ScheduleRule:
    fields = {
        "id": "sched-1",
        "account_id": "acct-1",
        "line_id": "line-1",
        "days_of_week": [0, 1, 2, 3, 4, 5, 6],
        "time_of_day": "10:00",
        "timezone": "America/New_York",
        "next_run_at": utcnow() - timedelta(minutes=1),
    }
    fields.update(overrides)
    return ScheduleRule(**fields)


def due_reminder(**overrides) -> Reminder:
    fields = {
        "id": "rem-1",
        "account_id": "acct-1",
        "line_id": "line-1",
        "due_at": utcnow() - timedelta(minutes=1),
        "message": "Take your blood pressure pill",
        "timezone": "America/New_York",
    }
    fields.update(overrides)
    return Reminder(**fields)


class TestSchedules:
    """Tests for schedule processing"""

    @pytest.mark.asyncio
    async def test_due_schedule_places_call(self, worker, store, carrier):
        """Test a due schedule dials once and moves to its next run"""
        schedule = due_schedule()
        store.add_schedule(schedule)

        result = await worker.tick()

        assert result["schedules"] == 1
        carrier.place_call.assert_awaited_once()
        updated = store.schedules["sched-1"]
        assert updated.last_result == ScheduleResult.SUCCESS.value
        assert updated.next_run_at > utcnow()
        assert updated.processing_claim is None
        session = next(iter(store.sessions.values()))
        assert session.idempotency_key == schedule.idempotency_key
        assert session.reason == "scheduled"
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_one_off_runs_once(self, worker, store, carrier):
        """Test a one-time call is left with no next run"""
        store.add_schedule(due_schedule(one_off=True))

        await worker.tick()
        second = await worker.tick()

        assert second["schedules"] == 0
        carrier.place_call.assert_awaited_once()
        updated = store.schedules["sched-1"]
        assert updated.last_result == ScheduleResult.SUCCESS.value
        assert updated.next_run_at is None
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_placement_failure_schedules_retry(self, worker, store, carrier):
        """Test a failed placement is retried 15 minutes later"""
        carrier.place_call.side_effect = PlacementError("carrier rejected")
        store.add_schedule(due_schedule())
        before = utcnow()

        await worker.tick()

        updated = store.schedules["sched-1"]
        assert updated.retry_count == 1
        assert updated.last_result == ScheduleResult.FAILED.value
        assert before + timedelta(minutes=15) <= updated.next_run_at <= utcnow() + timedelta(minutes=15)
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, worker, store, carrier):
        """Test the schedule moves on once retries are used up"""
        carrier.place_call.side_effect = PlacementError("carrier rejected")
        store.add_schedule(due_schedule(retry_count=2))

        await worker.tick()

        updated = store.schedules["sched-1"]
        assert updated.retry_count == 0
        assert updated.last_result == ScheduleResult.FAILED.value
        assert updated.next_run_at > utcnow()
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_redelivered_failed_claim_retried(self, worker, store, carrier):
        """Test a claim whose earlier attempt failed before dialing is retried"""
        schedule = due_schedule()
        store.add_schedule(schedule)
        store.sessions["sess-old"] = CallSession(
            id="sess-old",
            account_id="acct-1",
            line_id="line-1",
            idempotency_key=schedule.idempotency_key,
            status=CallSessionStatus.FAILED,
            end_reason=CallEndReason.ERROR,
        )

        await worker.tick()

        carrier.place_call.assert_not_awaited()
        updated = store.schedules["sched-1"]
        assert updated.retry_count == 1
        assert updated.last_result == ScheduleResult.FAILED.value
        await worker.shutdown()

    def test_retry_window(self):
        """Test retries must land inside the policy window"""
        schedule = due_schedule()

        assert schedule.can_retry(15) == (True, "retry_1_of_2")
        assert schedule.model_copy(update={"retry_count": 1}).can_retry(15) == (True, "retry_2_of_2")
        assert schedule.model_copy(update={"retry_count": 2}).can_retry(15)[0] is False
        assert schedule.can_retry(45) == (False, "retry_window_exceeded")

    @pytest.mark.asyncio
    async def test_opted_out_line_suppressed(self, worker, store, carrier):
        """Test do_not_call suppresses the run without dialing"""
        store.lines["line-1"] = store.lines["line-1"].model_copy(update={"do_not_call": True})
        store.add_schedule(due_schedule())

        await worker.tick()

        carrier.place_call.assert_not_awaited()
        assert store.schedules["sched-1"].last_result == ScheduleResult.SUPPRESSED_QUIET_HOURS.value
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_quiet_hours_suppressed(self, worker, store, carrier):
        """Test quiet hours suppress a scheduled run"""
        store.lines["line-1"] = store.lines["line-1"].model_copy(
            update={"quiet_hours_start": "00:00", "quiet_hours_end": "23:59"}
        )
        schedule = due_schedule()
        store.add_schedule(schedule)
        quiet_now = datetime(2024, 6, 3, 16, 0, tzinfo=timezone.utc)  # 12:00 EDT

        result = await worker.process_schedule(
            (await worker.lease_manager.claim_schedules(10))[0], quiet_now
        )

        assert result == ScheduleResult.SUPPRESSED_QUIET_HOURS
        carrier.place_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_line_fails(self, worker, store, carrier):
        """Test a schedule pointing at a deleted line"""
        store.add_schedule(due_schedule(line_id="gone"))

        await worker.tick()

        assert store.schedules["sched-1"].last_result == ScheduleResult.FAILED.value
        carrier.place_call.assert_not_awaited()
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere(self, worker, store, lease_store, carrier):
        """Test nothing is processed without the lease"""
        await lease_store.try_acquire("schedules", "worker-b", 60)
        await lease_store.try_acquire("reminders", "worker-b", 60)
        store.add_schedule(due_schedule())
        store.add_reminder(due_reminder())

        result = await worker.tick()

        assert result["schedules"] == 0
        assert result["reminders"] == 0
        carrier.place_call.assert_not_awaited()
        await worker.shutdown()


class TestReminders:
    """Tests for reminder processing"""

    @pytest.mark.asyncio
    async def test_one_off_delivered(self, worker, store, carrier):
        """Test a one-off reminder is sent and recorded"""
        store.add_reminder(due_reminder())

        result = await worker.tick()

        assert result["reminders"] == 1
        updated = store.reminders["rem-1"]
        assert updated.status == ReminderStatus.SENT.value
        assert updated.last_delivery_status == "delivered"
        session = next(iter(store.sessions.values()))
        assert session.reminder_id == "rem-1"
        assert session.reminder_message == "Take your blood pressure pill"
        assert store.reminder_events[-1]["event_type"] == "delivered"
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_recurring_advances(self, worker, store):
        """Test a daily reminder moves to its next future slot"""
        store.add_reminder(due_reminder(
            is_recurring=True,
            recurrence=ReminderRecurrence(frequency=RecurrenceFrequency.DAILY),
        ))

        await worker.tick()

        updated = store.reminders["rem-1"]
        assert updated.status == ReminderStatus.SCHEDULED.value
        assert updated.due_at > utcnow()
        assert updated.occurrence_count == 1
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_opted_out_reminder_missed(self, worker, store, carrier):
        """Test an ineligible line misses the occurrence"""
        store.lines["line-1"] = store.lines["line-1"].model_copy(update={"do_not_call": True})
        store.add_reminder(due_reminder())

        await worker.tick()

        carrier.place_call.assert_not_awaited()
        updated = store.reminders["rem-1"]
        assert updated.status == ReminderStatus.MISSED.value
        assert store.reminder_events[-1]["details"]["reason"] == "do_not_call"
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_behind_worker_skips_past_slots(self, worker):
        """Test a reminder days overdue jumps to the next future slot"""
        now = datetime(2024, 6, 10, 15, 0, tzinfo=timezone.utc)
        reminder = due_reminder(
            due_at=datetime(2024, 6, 5, 14, 0, tzinfo=timezone.utc),
            is_recurring=True,
            recurrence=ReminderRecurrence(frequency=RecurrenceFrequency.DAILY),
        )

        updates = SchedulerWorker._reminder_outcome_updates(reminder, delivered=True, now=now)

        assert updates["due_at"] == datetime(2024, 6, 11, 14, 0, tzinfo=timezone.utc)
        assert updates["occurrence_count"] == 1
        assert updates["last_delivery_status"] == "delivered"

    @pytest.mark.asyncio
    async def test_series_end_marks_sent(self, worker):
        """Test the final occurrence ends the series"""
        now = datetime(2024, 6, 5, 14, 1, tzinfo=timezone.utc)
        reminder = due_reminder(
            due_at=datetime(2024, 6, 5, 14, 0, tzinfo=timezone.utc),
            is_recurring=True,
            recurrence=ReminderRecurrence(
                frequency=RecurrenceFrequency.DAILY,
                ends_at=datetime(2024, 6, 5, 23, 0, tzinfo=timezone.utc),
            ),
        )

        updates = SchedulerWorker._reminder_outcome_updates(reminder, delivered=True, now=now)

        assert "due_at" not in updates
        assert updates["status"] == ReminderStatus.SENT.value


class TestUsageAndStats:
    """Tests for usage retries and stats"""

    @pytest.mark.asyncio
    async def test_tick_retries_pending_usage(self, worker, container):
        """Test each tick reports pending usage"""
        container.ledger.report_pending_usage = AsyncMock(return_value=2)

        result = await worker.tick()

        assert result["usage_reported"] == 2
        container.ledger.report_pending_usage.assert_awaited_once_with(50)
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_tick_settles_unsettled_sessions(self, worker, store):
        """Test a finished call missing from the ledger is settled on the next tick"""
        connected_at = utcnow() - timedelta(minutes=5)
        store.sessions["sess-1"] = CallSession(
            id="sess-1",
            account_id="acct-1",
            line_id="line-1",
            status=CallSessionStatus.COMPLETED,
            connected_at=connected_at,
            ended_at=connected_at + timedelta(seconds=90),
            seconds_connected=90,
        )

        result = await worker.tick()

        assert result["sessions_settled"] == 1
        assert [e.billable_minutes for e in await store.list_ledger_entries_for_session("sess-1")] == [2]
        assert store.sessions["sess-1"].ledger_settled_at is not None
        assert worker.get_stats()["sessions_settled"] == 1
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_stats(self, worker, store):
        """Test counters after a tick"""
        store.add_schedule(due_schedule())

        await worker.tick()
        stats = worker.get_stats()

        assert stats["ticks"] == 1
        assert stats["calls_placed"] == 1
        assert stats["schedules_processed"] == 1
        assert stats["worker_id"] == "worker-a"
        await worker.shutdown()
