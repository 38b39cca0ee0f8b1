"""
Reminder Control Service
Create, edit, skip, pause, resume, snooze and cancel operations on reminders

Controls act on the stored row directly; the scheduler only picks up a
reminder again once it is scheduled, unpaused, due and not snoozed.
Each operation writes an audit row to reminder_events.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from carecall.core.exceptions import ReminderStateError, SnoozeLimitError
from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.models.reminder import (
    MAX_MESSAGE_LENGTH,
    MAX_SNOOZE_COUNT,
    SNOOZE_OPTIONS_MINUTES,
    SNOOZE_TOMORROW,
    Reminder,
    ReminderEventType,
    ReminderRecurrence,
    ReminderStatus,
)
from carecall.domain.services.recurrence import (
    build_zoned_datetime,
    get_next_reminder_occurrence,
    get_next_reminder_occurrence_after,
    to_local,
)
from carecall.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def compute_snooze_until(reminder: Reminder, minutes: int, now: datetime) -> datetime:
    """
    Resolve a snooze offset to an instant.

    "Tomorrow" keeps the local wall-clock time of the current slot, so it
    stays correct across a daylight-saving change.
    """
    if minutes == SNOOZE_TOMORROW:
        local_slot = to_local(reminder.scheduled_slot, reminder.timezone)
        local_now = to_local(now, reminder.timezone)
        return build_zoned_datetime(
            local_now.date() + timedelta(days=1),
            local_slot.time().replace(microsecond=0),
            reminder.timezone
        )
    return now + timedelta(minutes=minutes)


def next_occurrence_updates(reminder: Reminder) -> Dict[str, Any]:
    """
    Row updates that move a reminder past its current occurrence.

    Recurring series advance to the next slot and stay scheduled; when the
    series is finished (or the reminder is one-off) the caller decides the
    terminal status, signalled here by `due_at` being absent.
    """
    updates: Dict[str, Any] = {
        "snoozed_until": None,
        "original_due_at": None,
        "current_snooze_count": 0,
    }
    if reminder.is_recurring and reminder.recurrence is not None:
        next_due = get_next_reminder_occurrence(
            reminder.recurrence,
            reminder.scheduled_slot,
            reminder.timezone
        )
        if next_due is not None:
            updates["due_at"] = next_due
    return updates


class ReminderControlService:
    """Reminder state changes requested by users or by the voice agent."""

    def __init__(self, store: DurableStore):
        self.store = store

    async def _load(self, reminder_id: str) -> Reminder:
        reminder = await self.store.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderStateError(f"Reminder {reminder_id} not found")
        return reminder

    async def _record(
        self,
        reminder: Reminder,
        event_type: ReminderEventType,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> None:
        await self.store.insert_reminder_event({
            "reminder_id": reminder.id,
            "account_id": reminder.account_id,
            "line_id": reminder.line_id,
            "event_type": event_type.value,
            "details": details or {},
            "created_at": now or utcnow(),
        })

    # ========== Create / list / edit ==========

    @staticmethod
    def _clean_message(message: str) -> str:
        cleaned = (message or "").strip()
        if not cleaned:
            raise ReminderStateError("Reminder message is empty")
        if len(cleaned) > MAX_MESSAGE_LENGTH:
            raise ReminderStateError(f"Reminder message is longer than {MAX_MESSAGE_LENGTH} characters")
        return cleaned

    async def create(
        self,
        account_id: str,
        line_id: str,
        message: str,
        due_at: datetime,
        timezone: str,
        recurrence: Optional[ReminderRecurrence] = None,
        call_session_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reminder:
        """
        Create a reminder whose first occurrence is `due_at`.

        Raises:
            ReminderStateError: for an empty or overlong message, or a
                first occurrence that is not in the future
        """
        now = now or utcnow()
        due_at = ensure_utc(due_at)
        if due_at <= now:
            raise ReminderStateError("Reminder time is in the past")

        reminder = Reminder(
            id=str(uuid.uuid4()),
            account_id=account_id,
            line_id=line_id,
            due_at=due_at,
            message=self._clean_message(message),
            timezone=timezone,
            is_recurring=recurrence is not None,
            recurrence=recurrence,
        )
        stored = await self.store.create_reminder(reminder)
        await self._record(stored, ReminderEventType.CREATED, {
            "due_at": due_at.isoformat(),
            "is_recurring": stored.is_recurring,
            "call_session_id": call_session_id,
        }, now)

        logger.info(
            f"Created reminder {stored.id} for line {line_id} due {due_at.isoformat()}",
            extra={"reminder_id": stored.id, "line_id": line_id}
        )
        return stored

    async def list_upcoming(self, line_id: str, limit: int = 10) -> List[Reminder]:
        return await self.store.list_reminders_for_line(line_id, ReminderStatus.SCHEDULED.value, limit)

    async def edit(
        self,
        reminder_id: str,
        message: Optional[str] = None,
        due_at: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Reminder, List[str]]:
        """
        Change a scheduled reminder's message and/or next occurrence.

        A new time also becomes the local time of every later occurrence
        of a recurring series, and clears any snooze.

        Returns:
            (updated reminder, names of the changed fields)
        """
        now = now or utcnow()
        reminder = await self._load(reminder_id)
        if reminder.status != ReminderStatus.SCHEDULED:
            raise ReminderStateError(f"Cannot edit a {reminder.status} reminder")

        updates: Dict[str, Any] = {}
        changes: List[str] = []

        if message is not None and message.strip() and message.strip() != reminder.message:
            updates["message"] = self._clean_message(message)
            changes.append("message")

        if due_at is not None:
            due_at = ensure_utc(due_at)
            if due_at <= now:
                raise ReminderStateError("Reminder time is in the past")
            updates.update({
                "due_at": due_at,
                "snoozed_until": None,
                "original_due_at": None,
                "current_snooze_count": 0,
            })
            if reminder.recurrence is not None:
                local = to_local(due_at, reminder.timezone)
                updates["recurrence"] = reminder.recurrence.model_copy(
                    update={"time_of_day": local.strftime("%H:%M:%S")}
                )
            changes.append("time")

        if not changes:
            raise ReminderStateError("Nothing to change")

        updated = await self.store.update_reminder(reminder_id, updates)
        await self._record(reminder, ReminderEventType.EDITED, {
            "changes": changes,
            "old_message": reminder.message if "message" in changes else None,
            "old_due_at": reminder.due_at.isoformat() if "time" in changes else None,
        }, now)

        logger.info(f"Edited reminder {reminder_id} ({', '.join(changes)})")
        return updated, changes

    # ========== Skip ==========

    async def skip(self, reminder_id: str, now: Optional[datetime] = None) -> Reminder:
        """
        Skip the current occurrence without delivering it.

        Skipping the last occurrence of a series ends it as canceled.
        """
        now = now or utcnow()
        reminder = await self._load(reminder_id)
        if reminder.status != ReminderStatus.SCHEDULED:
            raise ReminderStateError(f"Cannot skip a {reminder.status} reminder")
        if not reminder.is_recurring:
            raise ReminderStateError("Only recurring reminders can be skipped; cancel a one-off instead")

        skipped_slot = reminder.scheduled_slot
        updates = next_occurrence_updates(reminder)
        if "due_at" not in updates:
            updates["status"] = ReminderStatus.CANCELED.value

        updated = await self.store.update_reminder(reminder_id, updates)
        await self._record(reminder, ReminderEventType.SKIPPED, {
            "skipped_due_at": skipped_slot.isoformat(),
            "next_due_at": updates["due_at"].isoformat() if "due_at" in updates else None,
        }, now)

        logger.info(f"Skipped reminder {reminder_id} occurrence {skipped_slot.isoformat()}")
        return updated

    # ========== Pause / resume ==========

    async def pause(self, reminder_id: str, now: Optional[datetime] = None) -> Reminder:
        now = now or utcnow()
        reminder = await self._load(reminder_id)
        if reminder.status != ReminderStatus.SCHEDULED:
            raise ReminderStateError(f"Cannot pause a {reminder.status} reminder")
        if reminder.is_paused:
            return reminder

        updated = await self.store.update_reminder(reminder_id, {"is_paused": True, "paused_at": now})
        await self._record(reminder, ReminderEventType.PAUSED, {}, now)
        logger.info(f"Paused reminder {reminder_id}")
        return updated

    async def resume(self, reminder_id: str, now: Optional[datetime] = None) -> Reminder:
        """
        Resume a paused reminder from now forward.

        Past-due occurrences are never fired: a recurring series moves to
        its first future slot and a past-due one-off becomes missed.
        """
        now = now or utcnow()
        reminder = await self._load(reminder_id)
        if not reminder.is_paused:
            raise ReminderStateError("Reminder is not paused")

        updates: Dict[str, Any] = {
            "is_paused": False,
            "paused_at": None,
            "snoozed_until": None,
            "original_due_at": None,
            "current_snooze_count": 0,
        }

        slot = ensure_utc(reminder.scheduled_slot)
        if slot <= now:
            if reminder.is_recurring and reminder.recurrence is not None:
                next_due = get_next_reminder_occurrence_after(
                    reminder.recurrence, slot, reminder.timezone, now
                )
                if next_due is None:
                    updates["status"] = ReminderStatus.SENT.value
                else:
                    updates["due_at"] = next_due
            else:
                updates["status"] = ReminderStatus.MISSED.value
                updates["last_delivery_status"] = ReminderStatus.MISSED.value
        else:
            updates["due_at"] = slot

        updated = await self.store.update_reminder(reminder_id, updates)
        await self._record(reminder, ReminderEventType.RESUMED, {
            "due_at": updates["due_at"].isoformat() if "due_at" in updates else None,
        }, now)
        logger.info(f"Resumed reminder {reminder_id}")
        return updated

    # ========== Snooze ==========

    async def snooze(self, reminder_id: str, minutes: int, now: Optional[datetime] = None) -> Reminder:
        """
        Push the current occurrence back by an allowed offset.

        Raises:
            SnoozeLimitError: after MAX_SNOOZE_COUNT snoozes of one occurrence
            ReminderStateError: for an invalid offset, a paused reminder or
                one that is no longer scheduled
        """
        now = now or utcnow()
        if minutes not in SNOOZE_OPTIONS_MINUTES:
            raise ReminderStateError(
                f"Invalid snooze duration {minutes}; allowed: {list(SNOOZE_OPTIONS_MINUTES)}"
            )

        reminder = await self._load(reminder_id)
        if reminder.status != ReminderStatus.SCHEDULED:
            raise ReminderStateError(f"Cannot snooze a {reminder.status} reminder")
        if reminder.is_paused:
            raise ReminderStateError("Cannot snooze a paused reminder")
        if reminder.current_snooze_count >= MAX_SNOOZE_COUNT:
            raise SnoozeLimitError(f"Reminder already snoozed {MAX_SNOOZE_COUNT} times")

        snoozed_until = compute_snooze_until(reminder, minutes, now)
        updated = await self.store.update_reminder(reminder_id, {
            "original_due_at": reminder.original_due_at or reminder.due_at,
            "snoozed_until": snoozed_until,
            "due_at": snoozed_until,
            "current_snooze_count": reminder.current_snooze_count + 1,
        })
        await self._record(reminder, ReminderEventType.SNOOZED, {
            "minutes": minutes,
            "snoozed_until": snoozed_until.isoformat(),
            "snooze_count": reminder.current_snooze_count + 1,
        }, now)

        logger.info(
            f"Snoozed reminder {reminder_id} until {snoozed_until.isoformat()} "
            f"({reminder.current_snooze_count + 1}/{MAX_SNOOZE_COUNT})"
        )
        return updated

    # ========== Cancel ==========

    async def cancel(self, reminder_id: str, now: Optional[datetime] = None) -> Reminder:
        now = now or utcnow()
        reminder = await self._load(reminder_id)
        if reminder.status == ReminderStatus.CANCELED:
            return reminder

        updated = await self.store.update_reminder(reminder_id, {
            "status": ReminderStatus.CANCELED.value,
            "is_paused": False,
            "snoozed_until": None,
        })
        await self._record(reminder, ReminderEventType.CANCELED, {}, now)
        logger.info(f"Canceled reminder {reminder_id}")
        return updated
