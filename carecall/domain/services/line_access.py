"""
Line Access Service
Eligibility and quiet-hours checks applied before any call is placed or taken
"""
import logging
from datetime import datetime, time
from typing import Optional

import pytz

from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.models.call_session import CallDirection
from carecall.domain.models.line import (
    AccessDenial,
    Account,
    AccountStatus,
    Line,
    LineAccessCheck,
    LineStatus,
)
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.utils.clock import utcnow

logger = logging.getLogger(__name__)


def is_in_quiet_hours(line: Line, check_time: Optional[datetime] = None) -> tuple[bool, str]:
    """
    Check whether an instant falls inside the line's quiet hours.

    Quiet hours are [start, end) in the line's timezone and may span
    midnight (e.g. 21:00 -> 09:00).

    Returns:
        (in_quiet_hours, reason)
    """
    try:
        tz = pytz.timezone(line.timezone)
    except pytz.exceptions.UnknownTimeZoneError:
        tz = pytz.UTC

    if check_time is None:
        check_time = datetime.now(tz)
    elif check_time.tzinfo is None:
        check_time = pytz.UTC.localize(check_time).astimezone(tz)
    else:
        check_time = check_time.astimezone(tz)

    try:
        start_hour, start_min = map(int, line.quiet_hours_start.split(":")[:2])
        end_hour, end_min = map(int, line.quiet_hours_end.split(":")[:2])
    except (ValueError, AttributeError):
        return False, "invalid_quiet_hours_default_allow"

    start_time = time(start_hour, start_min)
    end_time = time(end_hour, end_min)
    current_time = check_time.time()

    if start_time == end_time:
        return False, "no_quiet_hours"

    if start_time < end_time:
        inside = start_time <= current_time < end_time
    else:
        # Window wraps past midnight
        inside = current_time >= start_time or current_time < end_time

    if inside:
        return True, f"quiet_hours_{line.quiet_hours_start}_{line.quiet_hours_end}"
    return False, "outside_quiet_hours"


class LineAccessService:
    """
    Decides whether a line may be called (or may call in) right now.

    Checks run in a fixed order and the first failure wins: disabled line,
    canceled account, do-not-call (outbound) or inbound block (inbound),
    unverified phone, exhausted trial minutes.
    """

    def __init__(self, store: DurableStore, ledger: MinuteLedger):
        self.store = store
        self.ledger = ledger

    async def check_line_access(
        self,
        line: Line,
        account: Optional[Account] = None,
        direction: CallDirection = CallDirection.OUTBOUND,
        pending_minutes: int = 0
    ) -> LineAccessCheck:
        account = account or await self.store.get_account(line.account_id)
        direction = direction.value if isinstance(direction, CallDirection) else direction

        if line.status == LineStatus.DISABLED:
            return self._deny(line, AccessDenial.DISABLED)

        if account is None or account.status == AccountStatus.CANCELED:
            return self._deny(line, AccessDenial.ACCOUNT_CANCELED)

        if direction == CallDirection.OUTBOUND.value and line.do_not_call:
            return self._deny(line, AccessDenial.DO_NOT_CALL)

        if direction == CallDirection.INBOUND.value and not line.inbound_allowed:
            return self._deny(line, AccessDenial.INBOUND_BLOCKED)

        if line.phone_verified_at is None:
            return self._deny(line, AccessDenial.NOT_VERIFIED)

        minutes_remaining = await self.ledger.get_minutes_remaining(account, pending_minutes)

        if account.is_trial and minutes_remaining is not None and minutes_remaining <= 0:
            return self._deny(line, AccessDenial.MINUTES_EXHAUSTED, minutes_remaining=0)

        return LineAccessCheck(allowed=True, minutes_remaining=minutes_remaining)

    async def can_place_call(self, line: Line, at: Optional[datetime] = None) -> tuple[bool, str]:
        """
        Full outbound gate used by the scheduler.

        Returns:
            (allowed, reason) where reason is "ok", "quiet_hours" or an
            AccessDenial value
        """
        check = await self.check_line_access(line)
        if not check.allowed:
            return False, check.reason

        quiet, _ = is_in_quiet_hours(line, at or utcnow())
        if quiet:
            return False, "quiet_hours"

        return True, "ok"

    @staticmethod
    def _deny(line: Line, reason: AccessDenial, minutes_remaining: Optional[int] = None) -> LineAccessCheck:
        logger.info(
            f"Line {line.id} not eligible: {reason.value}",
            extra={"line_id": line.id, "reason": reason.value}
        )
        return LineAccessCheck(allowed=False, reason=reason, minutes_remaining=minutes_remaining)
