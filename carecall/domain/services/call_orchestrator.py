"""
Call Orchestrator
Places outbound calls for claimed schedules, reminders and manual requests
"""
import asyncio
import logging
from typing import Optional

from carecall.core.exceptions import IneligibleError, PlacementError
from carecall.domain.interfaces.carrier import CarrierProvider
from carecall.domain.models.call_session import CallEndReason, CallReason, CallSession, CallSessionStatus
from carecall.domain.models.line import Line
from carecall.domain.models.reminder import Reminder
from carecall.domain.services.call_session_service import CallSessionService
from carecall.domain.services.line_access import LineAccessService

logger = logging.getLogger(__name__)


class CallOrchestrator:
    """
    Owns the placement step of one call attempt.

    Placement is idempotent per key: when a session already exists for the
    key (a claim re-delivered after a crash) the stored session is returned
    and the carrier is not called again.
    """

    PLACEMENT_TIMEOUT = 15.0  # seconds

    def __init__(
        self,
        sessions: CallSessionService,
        carrier: CarrierProvider,
        line_access: LineAccessService,
        placement_timeout: Optional[float] = None
    ):
        self.sessions = sessions
        self.carrier = carrier
        self.line_access = line_access
        self.placement_timeout = placement_timeout or self.PLACEMENT_TIMEOUT

    async def place_outbound_call(
        self,
        line: Line,
        reason: CallReason,
        idempotency_key: Optional[str] = None,
        reminder: Optional[Reminder] = None
    ) -> CallSession:
        """
        Create the session and ask the carrier to dial.

        Raises:
            PlacementError: carrier rejected or timed out; the session is
                marked failed before raising. A re-delivered key whose
                session failed before dialing raises again.
        """
        session, created = await self.sessions.create(
            account_id=line.account_id,
            line_id=line.id,
            reason=reason,
            idempotency_key=idempotency_key,
            reminder_id=reminder.id if reminder else None,
            reminder_message=reminder.message if reminder else None,
        )

        if not created:
            if session.status == CallSessionStatus.FAILED.value and not session.carrier_call_sid:
                # The earlier attempt never reached the carrier
                logger.warning(
                    f"Session {session.id} for {idempotency_key} failed before dialing",
                    extra={"call_session_id": session.id, "idempotency_key": idempotency_key}
                )
                raise PlacementError(f"Earlier placement for session {session.id} failed")
            logger.info(
                f"Session already exists for {idempotency_key}, not dialing again",
                extra={"call_session_id": session.id, "idempotency_key": idempotency_key}
            )
            return session

        try:
            call_sid = await asyncio.wait_for(
                self.carrier.place_call(to_number=line.phone_e164, call_session_id=session.id),
                timeout=self.placement_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Call placement timed out for session {session.id}",
                extra={"call_session_id": session.id, "line_id": line.id}
            )
            await self.sessions.fail(session.id, CallEndReason.ERROR)
            raise PlacementError(f"Carrier timed out after {self.placement_timeout}s")
        except Exception as e:
            logger.error(
                f"Call placement failed for session {session.id}: {e}",
                extra={"call_session_id": session.id, "line_id": line.id},
                exc_info=True
            )
            await self.sessions.fail(session.id, CallEndReason.ERROR)
            if isinstance(e, PlacementError):
                raise
            raise PlacementError(str(e)) from e

        updated = await self.sessions.attach_carrier_sid(session.id, call_sid)
        logger.info(
            f"Call placed via {self.carrier.name}: session={session.id} sid={call_sid}",
            extra={"call_session_id": session.id, "carrier_call_sid": call_sid}
        )
        return updated or session

    async def place_call_now(self, line: Line, reason: CallReason = CallReason.MANUAL) -> CallSession:
        """
        Manual placement: checks eligibility, ignores quiet hours.

        Raises:
            IneligibleError: the line may not be called
            PlacementError: the carrier failed
        """
        check = await self.line_access.check_line_access(line)
        if not check.allowed:
            raise IneligibleError(check.reason)
        return await self.place_outbound_call(line, reason)
