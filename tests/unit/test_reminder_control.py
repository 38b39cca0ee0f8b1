"""
Unit Tests for Reminder Controls
Tests for create, edit, snooze limits, skip, pause/resume and cancel
"""
import pytest
from datetime import datetime, timedelta, timezone

from carecall.core.exceptions import ReminderStateError, SnoozeLimitError
from carecall.domain.models.reminder import (
    RecurrenceFrequency,
    Reminder,
    ReminderRecurrence,
    ReminderStatus,
)
from carecall.domain.services.reminder_control import ReminderControlService, compute_snooze_until
from carecall.infrastructure.storage.memory_store import InMemoryDurableStore


NOW = datetime(2024, 6, 3, 14, 0, tzinfo=timezone.utc)  # Monday 10:00 EDT


def make_reminder(**overrides) -> Reminder:
    fields = {
        "id": "rem-1",
        "account_id": "acct-1",
        "line_id": "line-1",
        "due_at": NOW,
        "message": "Take your blood pressure pill",
        "timezone": "America/New_York",
    }
    fields.update(overrides)
    return Reminder(**fields)


def daily(**overrides) -> ReminderRecurrence:
    return ReminderRecurrence(frequency=RecurrenceFrequency.DAILY, **overrides)


@pytest.fixture
def store():
    return InMemoryDurableStore()


@pytest.fixture
def service(store):
    return ReminderControlService(store)


class TestSnooze:
    """Tests for snooze"""

    @pytest.mark.asyncio
    async def test_snooze_moves_due_and_keeps_slot(self, store, service):
        """Test a 15-minute snooze"""
        store.add_reminder(make_reminder())

        updated = await service.snooze("rem-1", 15, now=NOW)

        assert updated.due_at == NOW + timedelta(minutes=15)
        assert updated.snoozed_until == NOW + timedelta(minutes=15)
        assert updated.original_due_at == NOW
        assert updated.current_snooze_count == 1

    @pytest.mark.asyncio
    async def test_repeat_snooze_keeps_original_slot(self, store, service):
        """Test original_due_at is the first slot after several snoozes"""
        store.add_reminder(make_reminder())

        await service.snooze("rem-1", 15, now=NOW)
        updated = await service.snooze("rem-1", 30, now=NOW + timedelta(minutes=15))

        assert updated.original_due_at == NOW
        assert updated.due_at == NOW + timedelta(minutes=45)
        assert updated.current_snooze_count == 2

    @pytest.mark.asyncio
    async def test_fourth_snooze_refused(self, store, service):
        """Test the snooze cap of three per occurrence"""
        store.add_reminder(make_reminder())
        for _ in range(3):
            await service.snooze("rem-1", 15, now=NOW)

        with pytest.raises(SnoozeLimitError):
            await service.snooze("rem-1", 15, now=NOW)

        assert store.reminders["rem-1"].current_snooze_count == 3

    @pytest.mark.asyncio
    async def test_invalid_offset_refused(self, store, service):
        """Test offsets outside the allowed list"""
        store.add_reminder(make_reminder())

        with pytest.raises(ReminderStateError):
            await service.snooze("rem-1", 45, now=NOW)

    @pytest.mark.asyncio
    async def test_paused_reminder_cannot_snooze(self, store, service):
        """Test snoozing a paused reminder is refused"""
        store.add_reminder(make_reminder(is_paused=True))

        with pytest.raises(ReminderStateError):
            await service.snooze("rem-1", 15, now=NOW)

    def test_tomorrow_keeps_local_time(self):
        """Test the tomorrow option lands on the same local time next day"""
        reminder = make_reminder()

        result = compute_snooze_until(reminder, 1440, NOW)

        assert result == datetime(2024, 6, 4, 14, 0, tzinfo=timezone.utc)

    def test_tomorrow_across_fall_back(self):
        """Test tomorrow keeps 10:00 local when DST ends overnight"""
        saturday = datetime(2024, 11, 2, 14, 0, tzinfo=timezone.utc)  # 10:00 EDT
        reminder = make_reminder(due_at=saturday)

        result = compute_snooze_until(reminder, 1440, saturday)

        assert result == datetime(2024, 11, 3, 15, 0, tzinfo=timezone.utc)  # 10:00 EST

    @pytest.mark.asyncio
    async def test_snooze_writes_event(self, store, service):
        """Test an audit event is recorded"""
        store.add_reminder(make_reminder())

        await service.snooze("rem-1", 60, now=NOW)

        assert store.reminder_events[-1]["event_type"] == "snoozed"
        assert store.reminder_events[-1]["details"]["minutes"] == 60


class TestSkip:
    """Tests for skip"""

    @pytest.mark.asyncio
    async def test_skip_advances_recurring(self, store, service):
        """Test skipping moves a daily series to tomorrow"""
        store.add_reminder(make_reminder(is_recurring=True, recurrence=daily()))

        updated = await service.skip("rem-1", now=NOW)

        assert updated.due_at == NOW + timedelta(days=1)
        assert updated.status == ReminderStatus.SCHEDULED.value

    @pytest.mark.asyncio
    async def test_skip_after_snooze_uses_original_slot(self, store, service):
        """Test skip advances from the nominal slot, not the snoozed time"""
        store.add_reminder(make_reminder(is_recurring=True, recurrence=daily()))
        await service.snooze("rem-1", 30, now=NOW)

        updated = await service.skip("rem-1", now=NOW)

        assert updated.due_at == NOW + timedelta(days=1)
        assert updated.current_snooze_count == 0
        assert updated.original_due_at is None
        assert updated.snoozed_until is None

    @pytest.mark.asyncio
    async def test_skip_last_occurrence_cancels(self, store, service):
        """Test skipping the final occurrence ends the series"""
        store.add_reminder(make_reminder(
            is_recurring=True,
            recurrence=daily(ends_at=NOW + timedelta(hours=2)),
        ))

        updated = await service.skip("rem-1", now=NOW)

        assert updated.status == ReminderStatus.CANCELED.value

    @pytest.mark.asyncio
    async def test_skip_one_off_refused(self, store, service):
        """Test one-off reminders cannot be skipped"""
        store.add_reminder(make_reminder())

        with pytest.raises(ReminderStateError):
            await service.skip("rem-1", now=NOW)


class TestPauseResume:
    """Tests for pause and resume"""

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self, store, service):
        """Test pausing twice writes one event"""
        store.add_reminder(make_reminder())

        first = await service.pause("rem-1", now=NOW)
        second = await service.pause("rem-1", now=NOW)

        assert first.is_paused and second.is_paused
        assert [e["event_type"] for e in store.reminder_events] == ["paused"]

    @pytest.mark.asyncio
    async def test_resume_future_slot_kept(self, store, service):
        """Test resuming before the slot keeps it"""
        due = NOW + timedelta(hours=3)
        store.add_reminder(make_reminder(due_at=due))
        await service.pause("rem-1", now=NOW)

        updated = await service.resume("rem-1", now=NOW)

        assert not updated.is_paused
        assert updated.due_at == due

    @pytest.mark.asyncio
    async def test_resume_recurring_skips_past_slots(self, store, service):
        """Test resuming a daily series days later never fires past slots"""
        store.add_reminder(make_reminder(is_recurring=True, recurrence=daily()))
        await service.pause("rem-1", now=NOW)
        later = NOW + timedelta(days=3, hours=1)

        updated = await service.resume("rem-1", now=later)

        assert updated.due_at == NOW + timedelta(days=4)
        assert updated.status == ReminderStatus.SCHEDULED.value

    @pytest.mark.asyncio
    async def test_resume_past_one_off_is_missed(self, store, service):
        """Test a one-off whose slot passed while paused becomes missed"""
        store.add_reminder(make_reminder())
        await service.pause("rem-1", now=NOW - timedelta(hours=1))

        updated = await service.resume("rem-1", now=NOW + timedelta(hours=1))

        assert updated.status == ReminderStatus.MISSED.value

    @pytest.mark.asyncio
    async def test_resume_requires_pause(self, store, service):
        """Test resuming an active reminder is refused"""
        store.add_reminder(make_reminder())

        with pytest.raises(ReminderStateError):
            await service.resume("rem-1", now=NOW)


class TestCancel:
    """Tests for cancel"""

    @pytest.mark.asyncio
    async def test_cancel(self, store, service):
        """Test cancel ends the reminder and clears pause"""
        store.add_reminder(make_reminder(is_paused=True))

        updated = await service.cancel("rem-1", now=NOW)

        assert updated.status == ReminderStatus.CANCELED.value
        assert not updated.is_paused

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, service):
        """Test cancel of a missing reminder"""
        with pytest.raises(ReminderStateError):
            await service.cancel("missing")


class TestCreateAndEdit:
    """Tests for create, list and edit"""

    @pytest.mark.asyncio
    async def test_create_records_event(self, store, service):
        """Test a new reminder is stored scheduled with an audit row"""
        created = await service.create(
            "acct-1", "line-1", "  Call the pharmacy  ", NOW + timedelta(hours=2),
            "America/New_York", call_session_id="sess-1", now=NOW,
        )

        assert store.reminders[created.id].message == "Call the pharmacy"
        assert created.status == ReminderStatus.SCHEDULED.value
        assert not created.is_recurring
        assert store.reminder_events[-1]["event_type"] == "created"

    @pytest.mark.asyncio
    async def test_create_recurring_pins_local_time(self, service):
        """Test a recurring reminder remembers its local time of day"""
        created = await service.create(
            "acct-1", "line-1", "Walk", NOW + timedelta(hours=1), "America/New_York",
            recurrence=daily(), now=NOW,
        )

        assert created.is_recurring
        assert created.recurrence.time_of_day == "11:00:00"

    @pytest.mark.asyncio
    async def test_create_in_past_refused(self, store, service):
        """Test the first occurrence must be in the future"""
        with pytest.raises(ReminderStateError):
            await service.create("acct-1", "line-1", "Late", NOW - timedelta(minutes=1), "UTC", now=NOW)

        assert store.reminders == {}

    @pytest.mark.asyncio
    async def test_create_empty_message_refused(self, service):
        """Test blank messages are rejected"""
        with pytest.raises(ReminderStateError):
            await service.create("acct-1", "line-1", "   ", NOW + timedelta(hours=1), "UTC", now=NOW)

    @pytest.mark.asyncio
    async def test_list_upcoming_in_due_order(self, store, service):
        """Test only scheduled reminders for the line, soonest first"""
        store.add_reminder(make_reminder(id="later", due_at=NOW + timedelta(days=2)))
        store.add_reminder(make_reminder(id="sooner", due_at=NOW + timedelta(hours=1)))
        store.add_reminder(make_reminder(id="done", status=ReminderStatus.CANCELED))
        store.add_reminder(make_reminder(id="other", line_id="line-2"))

        upcoming = await service.list_upcoming("line-1")

        assert [r.id for r in upcoming] == ["sooner", "later"]

    @pytest.mark.asyncio
    async def test_edit_time_clears_snooze(self, store, service):
        """Test a new time resets the snooze state and moves the slot"""
        store.add_reminder(make_reminder(
            recurrence=daily(), is_recurring=True,
            snoozed_until=NOW + timedelta(minutes=15), original_due_at=NOW, current_snooze_count=1,
        ))
        new_time = NOW + timedelta(hours=3)

        updated, changes = await service.edit("rem-1", due_at=new_time, now=NOW)

        assert changes == ["time"]
        assert updated.due_at == new_time
        assert updated.snoozed_until is None
        assert updated.current_snooze_count == 0
        assert updated.recurrence.time_of_day == "13:00:00"
        assert store.reminder_events[-1]["event_type"] == "edited"

    @pytest.mark.asyncio
    async def test_edit_message(self, store, service):
        """Test changing only the message"""
        store.add_reminder(make_reminder())

        updated, changes = await service.edit("rem-1", message="Take two pills", now=NOW)

        assert changes == ["message"]
        assert updated.message == "Take two pills"
        assert updated.due_at == NOW

    @pytest.mark.asyncio
    async def test_edit_without_changes_refused(self, store, service):
        """Test an edit that changes nothing"""
        store.add_reminder(make_reminder())

        with pytest.raises(ReminderStateError):
            await service.edit("rem-1", message="Take your blood pressure pill", now=NOW)

    @pytest.mark.asyncio
    async def test_edit_canceled_refused(self, store, service):
        """Test finished reminders cannot be edited"""
        store.add_reminder(make_reminder(status=ReminderStatus.CANCELED))

        with pytest.raises(ReminderStateError):
            await service.edit("rem-1", message="New", now=NOW)
