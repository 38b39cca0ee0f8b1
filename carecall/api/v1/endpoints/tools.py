"""
Tool Endpoints
Reminder, schedule and opt-out tools invoked by the voice agent during a call

Refusals the caller should hear about (limit reached, reminder paused,
control disabled) are returned as 200 with `success: false` and a spoken
message; only malformed or unauthenticated requests get HTTP errors.
"""
import logging
import uuid
from datetime import datetime, time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, ValidationError

from carecall.api.v1.dependencies import get_container, require_internal_secret
from carecall.core.container import ServiceContainer
from carecall.core.exceptions import InvalidRecurrenceError, ReminderStateError, SnoozeLimitError
from carecall.domain.models.call_session import CallEventType
from carecall.domain.models.reminder import (
    MAX_SNOOZE_COUNT,
    SNOOZE_TOMORROW,
    RecurrenceFrequency,
    Reminder,
    ReminderRecurrence,
)
from carecall.domain.models.schedule import ScheduleRule
from carecall.domain.services.recurrence import (
    get_next_occurrence,
    local_to_utc,
    parse_time_of_day,
    to_local,
    weekday_sunday_first,
)
from carecall.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"], dependencies=[Depends(require_internal_secret)])


CONTROL_DISABLED_MESSAGE = (
    "I'm sorry, but your caregiver has disabled reminder management by phone. "
    "Please ask them to make changes through the app."
)
WHICH_REMINDER_MESSAGE = "I'm not sure which reminder you mean. Could you tell me which one?"
NOT_FOUND_MESSAGE = "I couldn't find that reminder. Would you like me to list your reminders?"
BAD_TIME_MESSAGE = "I didn't understand that time. Could you say it differently?"
PAST_TIME_MESSAGE = "That time is in the past. Please choose a future time."
OPTED_OUT_MESSAGE = (
    "I understand you've opted out of calls. If you'd like to receive calls again, "
    "please let your family member know."
)

# Reminders read aloud by list_reminders before summarising the rest
SPOKEN_REMINDER_LIMIT = 3


class ToolRequest(BaseModel):
    """Fields every tool call carries"""
    call_session_id: str = Field(..., alias="callSessionId")
    line_id: str = Field(..., alias="lineId")

    model_config = {"populate_by_name": True}


class ReminderToolRequest(ToolRequest):
    """Common body for reminder control tools"""
    reminder_id: Optional[str] = Field(default=None, alias="reminderId")


class SnoozeReminderRequest(ReminderToolRequest):
    snooze_minutes: int = Field(..., alias="snoozeMinutes")


class SetReminderRequest(ToolRequest):
    message: str
    due_at_local: str = Field(..., alias="dueAtLocal")
    is_recurring: bool = Field(default=False, alias="isRecurring")
    frequency: Optional[str] = None
    interval: int = 1
    days_of_week: List[int] = Field(default_factory=list, alias="daysOfWeek")
    day_of_month: Optional[int] = Field(default=None, alias="dayOfMonth")
    ends_at_local: Optional[str] = Field(default=None, alias="endsAtLocal")


class EditReminderRequest(ReminderToolRequest):
    new_message: Optional[str] = Field(default=None, alias="newMessage")
    new_time_local: Optional[str] = Field(default=None, alias="newTimeLocal")


class OptOutRequest(ToolRequest):
    confirmed: bool = False
    reason: Optional[str] = None


class ScheduleCallRequest(ToolRequest):
    mode: str
    when: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=list, alias="daysOfWeek")
    time_local: Optional[str] = Field(default=None, alias="timeLocal")


def refusal(code: str, message: str) -> dict:
    return {"success": False, "code": code, "message": message}


def describe_snooze(minutes: int) -> str:
    if minutes == SNOOZE_TOMORROW:
        return "until tomorrow"
    if minutes >= 60:
        hours = minutes // 60
        return f"for {hours} hour{'s' if hours > 1 else ''}"
    return f"for {minutes} minutes"


def describe_local_time(instant: datetime, tz_name: str) -> str:
    """Spoken form of an instant in the line's timezone, e.g. "Monday, June 3 at 9:00 AM"."""
    local = to_local(instant, tz_name)
    hour = local.hour % 12 or 12
    return f"{local:%A, %B} {local.day} at {hour}:{local:%M} {local:%p}"


def parse_local_time(value: Optional[str], tz_name: str, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO 8601 time the caller gave in their own timezone.

    Values with an explicit offset are taken as is. A bare date means the
    start of that day, or its last second with `end_of_day`.

    Returns:
        The UTC instant, or None when the value cannot be understood
    """
    if not value:
        return None
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if end_of_day and "T" not in text and " " not in text:
        parsed = datetime.combine(parsed.date(), time(23, 59, 59))
    if parsed.tzinfo is not None:
        return ensure_utc(parsed)
    try:
        return local_to_utc(parsed, tz_name)
    except InvalidRecurrenceError:
        return None


async def resolve_call(body: ToolRequest, container: ServiceContainer):
    """
    Load the call session and line a tool call belongs to.

    Raises:
        HTTPException: 404 when either is missing or they do not match
    """
    session = await container.sessions.get(body.call_session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call session not found")

    line = await container.store.get_line(body.line_id)
    if line is None or line.id != session.line_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Line not found")

    return session, line


async def resolve_reminder(body: ReminderToolRequest, container: ServiceContainer):
    """
    Find the reminder a tool call refers to.

    Falls back to the call's own reminder on reminder calls.

    Returns:
        (reminder, refusal) where exactly one is set
    """
    session, line = await resolve_call(body, container)

    if not line.allow_voice_reminder_control:
        return None, refusal("UNAUTHORIZED", CONTROL_DISABLED_MESSAGE)

    reminder_id = body.reminder_id or session.reminder_id
    if not reminder_id:
        return None, refusal("NOT_FOUND", WHICH_REMINDER_MESSAGE)

    reminder = await container.store.get_reminder(reminder_id)
    if reminder is None or reminder.line_id != line.id:
        return None, refusal("NOT_FOUND", NOT_FOUND_MESSAGE)

    return reminder, None


def reminder_result(reminder: Reminder, message: str) -> dict:
    return {
        "success": True,
        "reminderId": reminder.id,
        "status": reminder.status,
        "isPaused": reminder.is_paused,
        "dueAt": reminder.due_at.isoformat(),
        "message": message,
    }


# ========== Snooze ==========

@router.post("/snooze_reminder")
async def snooze_reminder(
    body: SnoozeReminderRequest,
    container: ServiceContainer = Depends(get_container)
):
    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    try:
        updated = await container.reminders.snooze(reminder.id, body.snooze_minutes)
    except SnoozeLimitError:
        return refusal(
            "SNOOZE_LIMIT_REACHED",
            f"You've already snoozed this reminder {MAX_SNOOZE_COUNT} times. I can't snooze it again.",
        )
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))

    remaining = MAX_SNOOZE_COUNT - updated.current_snooze_count
    if remaining > 0:
        note = f" You can snooze {remaining} more time{'s' if remaining > 1 else ''}."
    else:
        note = " That was your last snooze for this reminder."

    result = reminder_result(
        updated,
        f"Okay, I've snoozed your reminder {describe_snooze(body.snooze_minutes)}.{note} Is there anything else?",
    )
    result["snoozeCount"] = updated.current_snooze_count
    return result


# ========== Pause / Resume ==========

@router.post("/pause_reminder")
async def pause_reminder(
    body: ReminderToolRequest,
    container: ServiceContainer = Depends(get_container)
):
    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    try:
        updated = await container.reminders.pause(reminder.id)
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))
    return reminder_result(updated, "I've paused that reminder. Just let me know when you want it back.")


@router.post("/resume_reminder")
async def resume_reminder(
    body: ReminderToolRequest,
    container: ServiceContainer = Depends(get_container)
):
    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    try:
        updated = await container.reminders.resume(reminder.id)
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))
    return reminder_result(updated, "Your reminder is back on.")


# ========== Skip / Cancel ==========

@router.post("/skip_reminder")
async def skip_reminder(
    body: ReminderToolRequest,
    container: ServiceContainer = Depends(get_container)
):
    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    try:
        updated = await container.reminders.skip(reminder.id)
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))
    return reminder_result(updated, "Okay, I'll skip that one.")


@router.post("/cancel_reminder")
async def cancel_reminder(
    body: ReminderToolRequest,
    container: ServiceContainer = Depends(get_container)
):
    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    updated = await container.reminders.cancel(reminder.id)
    logger.info(f"Reminder {reminder.id} canceled by voice", extra={"call_session_id": body.call_session_id})
    return reminder_result(updated, "I've canceled that reminder.")


# ========== Create / list / edit ==========

@router.post("/set_reminder")
async def set_reminder(
    body: SetReminderRequest,
    container: ServiceContainer = Depends(get_container)
):
    session, line = await resolve_call(body, container)

    due_at = parse_local_time(body.due_at_local, line.timezone)
    if due_at is None:
        return refusal("INVALID_INPUT", BAD_TIME_MESSAGE)
    if due_at <= utcnow():
        return refusal("INVALID_INPUT", PAST_TIME_MESSAGE)

    recurrence = None
    if body.is_recurring:
        ends_at = None
        if body.ends_at_local:
            ends_at = parse_local_time(body.ends_at_local, line.timezone, end_of_day=True)
            if ends_at is None:
                return refusal("INVALID_INPUT", BAD_TIME_MESSAGE)
        try:
            recurrence = ReminderRecurrence(
                frequency=body.frequency or RecurrenceFrequency.DAILY,
                interval=body.interval,
                days_of_week=body.days_of_week,
                day_of_month=body.day_of_month,
                ends_at=ends_at,
            )
        except ValidationError:
            return refusal("INVALID_INPUT", "I couldn't set up that repeating pattern. Could you describe it again?")

    try:
        reminder = await container.reminders.create(
            account_id=session.account_id,
            line_id=line.id,
            message=body.message,
            due_at=due_at,
            timezone=line.timezone,
            recurrence=recurrence,
            call_session_id=session.id,
        )
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))

    when = describe_local_time(reminder.due_at, line.timezone)
    repeat = f", repeating {recurrence.frequency}" if recurrence is not None else ""
    return reminder_result(reminder, f"Okay, I'll remind you on {when}{repeat}.")


@router.post("/list_reminders")
async def list_reminders(
    body: ToolRequest,
    container: ServiceContainer = Depends(get_container)
):
    _, line = await resolve_call(body, container)

    reminders = await container.reminders.list_upcoming(line.id)
    if not reminders:
        return {"success": True, "reminders": [], "message": "You have no upcoming reminders scheduled."}

    items = []
    for index, reminder in enumerate(reminders, start=1):
        note = ""
        if reminder.is_paused:
            note = " (paused)"
        elif reminder.current_snooze_count > 0:
            note = " (snoozed)"
        items.append({
            "id": reminder.id,
            "index": index,
            "message": reminder.message,
            "dateTime": describe_local_time(reminder.due_at, line.timezone),
            "isRecurring": reminder.is_recurring,
            "isPaused": reminder.is_paused,
            "status": note,
        })

    count = len(items)
    spoken = f"You have {count} upcoming reminder{'s' if count > 1 else ''}. "
    for item in items[:SPOKEN_REMINDER_LIMIT]:
        spoken += f'{item["index"]}: "{item["message"]}" on {item["dateTime"]}{item["status"]}. '
    if count > SPOKEN_REMINDER_LIMIT:
        spoken += f"And {count - SPOKEN_REMINDER_LIMIT} more."

    return {"success": True, "reminders": items, "message": spoken.strip()}


@router.post("/edit_reminder")
async def edit_reminder(
    body: EditReminderRequest,
    container: ServiceContainer = Depends(get_container)
):
    if not body.new_message and not body.new_time_local:
        return refusal("INVALID_INPUT", "What would you like to change? I can update the message or the time.")

    reminder, refused = await resolve_reminder(body, container)
    if refused:
        return refused

    new_due_at = None
    if body.new_time_local:
        new_due_at = parse_local_time(body.new_time_local, reminder.timezone)
        if new_due_at is None:
            return refusal("INVALID_INPUT", BAD_TIME_MESSAGE)
        if new_due_at <= utcnow():
            return refusal("INVALID_INPUT", PAST_TIME_MESSAGE)

    try:
        updated, changes = await container.reminders.edit(reminder.id, body.new_message, new_due_at)
    except ReminderStateError as e:
        return refusal("INVALID_INPUT", str(e))

    message = f"I've updated the {' and '.join(changes)} for your reminder."
    if "time" in changes:
        message += f" It's now set for {describe_local_time(updated.due_at, updated.timezone)}."
    message += f' The reminder now says "{updated.message}". Is there anything else?'
    return reminder_result(updated, message)


# ========== Opt-out ==========

@router.post("/request_opt_out")
async def request_opt_out(
    body: OptOutRequest,
    container: ServiceContainer = Depends(get_container)
):
    session, line = await resolve_call(body, container)

    if not body.confirmed:
        return refusal(
            "NOT_CONFIRMED",
            "Please confirm with them that they want no more calls before opting out.",
        )

    await container.store.update_line(line.id, {"do_not_call": True})
    await container.sessions.record_event(session.id, CallEventType.STATE_CHANGE, {
        "event": "opt_out",
        "source": "voice",
        "reason": body.reason,
    })
    logger.info(
        f"Line {line.id} opted out by voice",
        extra={"call_session_id": session.id, "line_id": line.id}
    )
    return {
        "success": True,
        "message": "Opt-out recorded. The user will no longer receive outbound calls.",
    }


# ========== Schedule ==========

@router.post("/schedule_call")
async def schedule_call(
    body: ScheduleCallRequest,
    container: ServiceContainer = Depends(get_container)
):
    session, line = await resolve_call(body, container)
    if line.do_not_call:
        return refusal("OPTED_OUT", OPTED_OUT_MESSAGE)

    now = utcnow()

    if body.mode == "one_off":
        call_at = parse_local_time(body.when, line.timezone)
        if call_at is None:
            return refusal("INVALID_INPUT", BAD_TIME_MESSAGE)
        if call_at <= now:
            return refusal("INVALID_INPUT", PAST_TIME_MESSAGE)

        local = to_local(call_at, line.timezone)
        schedule = await container.store.create_schedule(ScheduleRule(
            id=str(uuid.uuid4()),
            account_id=session.account_id,
            line_id=line.id,
            days_of_week=[weekday_sunday_first(local.date())],
            time_of_day=local.strftime("%H:%M"),
            timezone=line.timezone,
            one_off=True,
            next_run_at=call_at,
        ))
        logger.info(
            f"One-off call scheduled for line {line.id} at {call_at.isoformat()}",
            extra={"call_session_id": session.id, "schedule_id": schedule.id}
        )
        return {
            "success": True,
            "scheduleId": schedule.id,
            "nextRunAt": call_at.isoformat(),
            "message": f"I'll call you on {describe_local_time(call_at, line.timezone)}.",
        }

    if body.mode != "update_recurring":
        return refusal("INVALID_INPUT", "Should that be a one-time call or a change to the regular schedule?")

    days = sorted({d for d in body.days_of_week if 0 <= d <= 6})
    if not days or not body.time_local:
        return refusal("INVALID_INPUT", "Which days and what time would you like me to call?")
    try:
        time_of_day = parse_time_of_day(body.time_local).strftime("%H:%M")
        next_run = get_next_occurrence(days, time_of_day, line.timezone, now)
    except InvalidRecurrenceError:
        return refusal("INVALID_INPUT", BAD_TIME_MESSAGE)

    fields = {
        "days_of_week": days,
        "time_of_day": time_of_day,
        "timezone": line.timezone,
        "next_run_at": next_run,
        "retry_count": 0,
    }
    existing = await container.store.get_recurring_schedule(line.id)
    if existing is not None:
        schedule = await container.store.update_schedule(existing.id, fields)
    else:
        schedule = await container.store.create_schedule(ScheduleRule(
            id=str(uuid.uuid4()),
            account_id=session.account_id,
            line_id=line.id,
            **fields,
        ))

    logger.info(
        f"Recurring schedule {schedule.id} set for line {line.id}, next run {next_run.isoformat()}",
        extra={"call_session_id": session.id, "schedule_id": schedule.id}
    )
    return {
        "success": True,
        "scheduleId": schedule.id,
        "nextRunAt": next_run.isoformat(),
        "message": f"Got it. Your next call will be on {describe_local_time(next_run, line.timezone)}.",
    }
