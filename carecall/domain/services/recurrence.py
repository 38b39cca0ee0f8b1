"""
Recurrence Resolver
Timezone-aware next-occurrence math for schedules and reminders

All functions are pure: they take a reference instant and return aware
UTC datetimes. Local wall-clock times are resolved with pytz so a 09:00
slot stays at 09:00 local across daylight-saving changes.
"""
import calendar
import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

import pytz

from carecall.core.exceptions import InvalidRecurrenceError
from carecall.domain.models.reminder import RecurrenceFrequency, ReminderRecurrence
from carecall.utils.clock import ensure_utc

logger = logging.getLogger(__name__)

# Longest daylight-saving gap handled when shifting a nonexistent time
MAX_GAP_HOURS = 3


def parse_time_of_day(value: str) -> time:
    """
    Parse "HH:MM" or "HH:MM:SS".

    Raises:
        InvalidRecurrenceError: for malformed or out-of-range values
    """
    parts = value.strip().split(":") if value else []
    if len(parts) not in (2, 3):
        raise InvalidRecurrenceError(f"Invalid time of day: {value!r}")
    try:
        numbers = [int(p) for p in parts]
        return time(*numbers)
    except ValueError:
        raise InvalidRecurrenceError(f"Invalid time of day: {value!r}")


def is_valid_timezone(name: Optional[str]) -> bool:
    """True for IANA region names (containing '/') and UTC."""
    if not name:
        return False
    if name != "UTC" and "/" not in name:
        return False
    return name in pytz.all_timezones_set


def get_timezone(name: str):
    if not is_valid_timezone(name):
        raise InvalidRecurrenceError(f"Invalid timezone: {name!r}")
    return pytz.timezone(name)


def weekday_sunday_first(day: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return day.isoweekday() % 7


def build_zoned_datetime(
    local_date: date,
    local_time: time,
    tz_name: str,
    prefer_late_ambiguous: bool = True
) -> datetime:
    """
    Resolve a local wall-clock time on a date to a UTC instant.

    A time inside a spring-forward gap moves forward hour by hour until it
    exists. An ambiguous fall-back time resolves to the later instant when
    `prefer_late_ambiguous` is set, else to the earlier one.
    """
    tz = get_timezone(tz_name)
    naive = datetime.combine(local_date, local_time)

    try:
        local = tz.localize(naive, is_dst=None)
    except pytz.AmbiguousTimeError:
        # Standard time (is_dst=False) is the later of the two instants
        local = tz.localize(naive, is_dst=not prefer_late_ambiguous)
        logger.debug(
            f"Ambiguous local time {naive} in {tz_name}, using offset {local.utcoffset()}",
            extra={"timezone": tz_name, "local_time": naive.isoformat()}
        )
    except pytz.NonExistentTimeError:
        local = None
        for hours in range(1, MAX_GAP_HOURS + 1):
            shifted = naive + timedelta(hours=hours)
            try:
                local = tz.localize(shifted, is_dst=None)
                break
            except pytz.NonExistentTimeError:
                continue
            except pytz.AmbiguousTimeError:
                local = tz.localize(shifted, is_dst=not prefer_late_ambiguous)
                break
        if local is None:
            raise InvalidRecurrenceError(f"Cannot resolve {naive} in {tz_name}")
        logger.debug(
            f"Local time {naive} does not exist in {tz_name}, shifted to {local.isoformat()}",
            extra={"timezone": tz_name, "local_time": naive.isoformat()}
        )

    return local.astimezone(pytz.UTC)


def local_to_utc(local_value: datetime, tz_name: str) -> datetime:
    """Convert a naive local datetime (e.g. from a caller) to UTC."""
    return build_zoned_datetime(
        local_value.date(),
        local_value.time(),
        tz_name,
        prefer_late_ambiguous=False
    )


def to_local(instant: datetime, tz_name: str) -> datetime:
    return ensure_utc(instant).astimezone(get_timezone(tz_name))


# =============================================================================
# Schedules
# =============================================================================

def get_next_occurrence(
    days_of_week: Iterable[int],
    time_of_day: str,
    tz_name: str,
    after: datetime
) -> datetime:
    """
    Earliest instant strictly after `after` falling on one of
    `days_of_week` (0=Sunday) at `time_of_day` local time.
    """
    days = {int(d) for d in days_of_week}
    if not days or any(d < 0 or d > 6 for d in days):
        raise InvalidRecurrenceError(f"Invalid days of week: {sorted(days)}")

    after = ensure_utc(after)
    slot = parse_time_of_day(time_of_day)
    local_day = to_local(after, tz_name).date()

    # Eight days covers "today already passed" plus a full week
    for offset in range(8):
        candidate_day = local_day + timedelta(days=offset)
        if weekday_sunday_first(candidate_day) not in days:
            continue
        candidate = build_zoned_datetime(candidate_day, slot, tz_name)
        if candidate > after:
            return candidate

    raise InvalidRecurrenceError("No occurrence found within a week")


# =============================================================================
# Reminders
# =============================================================================

def _add_months(day: date, months: int, day_of_month: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def get_next_reminder_occurrence(
    recurrence: ReminderRecurrence,
    current_due_at: datetime,
    tz_name: str
) -> Optional[datetime]:
    """
    Next occurrence of a recurring reminder after `current_due_at`.

    The local time comes from `recurrence.time_of_day` when set, so an
    occurrence pushed forward by a spring-forward gap does not carry the
    shift into later occurrences.

    Returns:
        The next UTC instant, or None when it would fall after `ends_at`
        (the series is finished).
    """
    current_local = to_local(current_due_at, tz_name)
    current_day = current_local.date()
    if recurrence.time_of_day:
        slot = parse_time_of_day(recurrence.time_of_day)
    else:
        slot = current_local.time().replace(microsecond=0)
    interval = max(1, recurrence.interval)
    frequency = recurrence.frequency

    if frequency in (RecurrenceFrequency.DAILY, RecurrenceFrequency.CUSTOM):
        next_day = current_day + timedelta(days=interval)

    elif frequency == RecurrenceFrequency.WEEKLY:
        if not recurrence.days_of_week:
            next_day = current_day + timedelta(weeks=interval)
        else:
            next_day = None
            current_weekday = weekday_sunday_first(current_day)
            for offset in range(1, 8):
                candidate = current_day + timedelta(days=offset)
                if weekday_sunday_first(candidate) in recurrence.days_of_week:
                    next_day = candidate
                    break
            if next_day is None:
                raise InvalidRecurrenceError("Weekly recurrence has no valid days")
            # Wrapping into the following week skips interval-1 extra weeks
            if weekday_sunday_first(next_day) <= current_weekday and interval > 1:
                next_day += timedelta(weeks=interval - 1)

    elif frequency == RecurrenceFrequency.MONTHLY:
        target_day = recurrence.day_of_month or current_day.day
        this_month = _add_months(current_day, 0, target_day)
        if this_month > current_day:
            next_day = this_month
        else:
            next_day = _add_months(current_day, interval, target_day)

    else:
        raise InvalidRecurrenceError(f"Unsupported frequency: {frequency}")

    next_at = build_zoned_datetime(next_day, slot, tz_name)

    if recurrence.ends_at is not None and next_at > ensure_utc(recurrence.ends_at):
        return None
    return next_at


def get_next_reminder_occurrence_after(
    recurrence: ReminderRecurrence,
    current_due_at: datetime,
    tz_name: str,
    after: datetime,
    max_steps: int = 1000
) -> Optional[datetime]:
    """
    Step the series forward until an occurrence lands after `after`.

    Used when resuming a paused reminder so past-due slots are never fired.
    """
    after = ensure_utc(after)
    due = ensure_utc(current_due_at)
    for _ in range(max_steps):
        if due > after:
            return due
        due = get_next_reminder_occurrence(recurrence, due, tz_name)
        if due is None:
            return None
    raise InvalidRecurrenceError("Recurrence did not reach the reference instant")
