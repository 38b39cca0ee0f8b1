"""
Call Session Service
Lifecycle of a call session row: creation, validated transitions and settlement
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from carecall.core.exceptions import CareCallError, InvalidTransitionError
from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.models.call_session import (
    CallDirection,
    CallEndReason,
    CallEvent,
    CallEventType,
    CallReason,
    CallSession,
    CallSessionStatus,
    can_transition,
)
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _value(item: Any) -> Any:
    return item.value if hasattr(item, "value") else item


class CallSessionService:
    """
    Creates call sessions and moves them through the status machine.

    Every write is conditional on the status read just before it, so two
    concurrent finishers (a carrier webhook and a closing media stream)
    settle a session exactly once.
    """

    def __init__(self, store: DurableStore, ledger: MinuteLedger):
        self.store = store
        self.ledger = ledger

    # =========================================================================
    # Creation and lookup
    # =========================================================================

    async def create(
        self,
        account_id: str,
        line_id: str,
        direction: CallDirection = CallDirection.OUTBOUND,
        reason: CallReason = CallReason.SCHEDULED,
        idempotency_key: Optional[str] = None,
        reminder_id: Optional[str] = None,
        reminder_message: Optional[str] = None,
        carrier_call_sid: Optional[str] = None
    ) -> Tuple[CallSession, bool]:
        """
        Create a session, or return the one already holding `idempotency_key`.

        Returns:
            (session, created)
        """
        session = CallSession(
            id=str(uuid.uuid4()),
            account_id=account_id,
            line_id=line_id,
            direction=direction,
            reason=reason,
            idempotency_key=idempotency_key,
            reminder_id=reminder_id,
            reminder_message=reminder_message,
            carrier_call_sid=carrier_call_sid,
        )
        stored, created = await self.store.create_call_session(session)
        if created:
            logger.info(
                f"Created call session {stored.id} for line {line_id}",
                extra={"call_session_id": stored.id, "line_id": line_id, "reason": _value(reason)}
            )
        return stored, created

    async def get(self, session_id: str) -> Optional[CallSession]:
        return await self.store.get_call_session(session_id)

    async def get_by_carrier_sid(self, call_sid: str) -> Optional[CallSession]:
        return await self.store.get_call_session_by_carrier_sid(call_sid)

    async def attach_carrier_sid(self, session_id: str, call_sid: str) -> Optional[CallSession]:
        return await self.store.update_call_session(session_id, {
            "carrier_call_sid": call_sid,
            "started_at": utcnow(),
        })

    async def _require(self, session_id: str) -> CallSession:
        session = await self.store.get_call_session(session_id)
        if session is None:
            raise CareCallError(f"Call session {session_id} not found")
        return session

    # =========================================================================
    # Transitions
    # =========================================================================

    async def update_status(
        self,
        session_id: str,
        target: CallSessionStatus,
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> CallSession:
        """
        Move a non-terminal session to `target`.

        Repeating the current status is a no-op. Moving into a terminal
        status goes through complete/fail/cancel so the session is settled.

        Raises:
            InvalidTransitionError: if the state machine forbids the change
        """
        target = _value(target)
        session = await self._require(session_id)
        if session.status == target:
            return session
        if not can_transition(session.status, target):
            raise InvalidTransitionError(session.status, target)

        if target == CallSessionStatus.COMPLETED.value:
            return await self.complete(session_id)
        if target == CallSessionStatus.FAILED.value:
            return await self.fail(session_id)
        if target == CallSessionStatus.CANCELED.value:
            return await self.cancel(session_id)

        now = utcnow()
        updates: Dict[str, Any] = {"status": target, **(extra_fields or {})}
        if target == CallSessionStatus.RINGING.value and session.started_at is None:
            updates["started_at"] = now
        if target == CallSessionStatus.IN_PROGRESS.value:
            updates.setdefault("connected_at", session.connected_at or now)
            if session.started_at is None:
                updates["started_at"] = now

        updated = await self.store.update_call_session(session_id, updates, expected_status=session.status)
        if updated is None:
            latest = await self._require(session_id)
            if latest.status == target:
                return latest
            raise InvalidTransitionError(latest.status, target)

        await self.record_event(session_id, CallEventType.STATE_CHANGE, {
            "from": session.status,
            "to": target,
        })
        return updated

    async def complete(
        self,
        session_id: str,
        end_reason: CallEndReason = CallEndReason.HANGUP,
        ended_at: Optional[datetime] = None
    ) -> CallSession:
        """
        Finish a connected call and settle its minutes.

        A session that never connected ends as failed/no_answer instead.
        Terminal sessions are returned untouched.
        """
        session = await self._require(session_id)
        if session.is_terminal:
            return session
        if session.status != CallSessionStatus.IN_PROGRESS.value:
            return await self.fail(session_id, CallEndReason.NO_ANSWER, ended_at)
        return await self._finalize(session, CallSessionStatus.COMPLETED, end_reason, ended_at)

    async def fail(
        self,
        session_id: str,
        end_reason: CallEndReason = CallEndReason.ERROR,
        ended_at: Optional[datetime] = None
    ) -> CallSession:
        """Mark a session failed; minutes already connected are still settled."""
        session = await self._require(session_id)
        if session.is_terminal:
            return session
        return await self._finalize(session, CallSessionStatus.FAILED, end_reason, ended_at)

    async def cancel(self, session_id: str) -> CallSession:
        session = await self._require(session_id)
        if session.is_terminal:
            return session
        if not can_transition(session.status, CallSessionStatus.CANCELED):
            raise InvalidTransitionError(session.status, CallSessionStatus.CANCELED.value)
        return await self._finalize(session, CallSessionStatus.CANCELED, None, None)

    async def _finalize(
        self,
        session: CallSession,
        status: CallSessionStatus,
        end_reason: Optional[CallEndReason],
        ended_at: Optional[datetime]
    ) -> CallSession:
        ended_at = ended_at or utcnow()
        seconds = session.compute_seconds_connected(ended_at)

        updated = await self.store.update_call_session(session.id, {
            "status": status.value,
            "end_reason": _value(end_reason),
            "ended_at": ended_at,
            "seconds_connected": seconds,
        }, expected_status=session.status)

        if updated is None:
            # Another finisher won the race; its write stands
            latest = await self._require(session.id)
            logger.info(f"Session {session.id} already finalized as {latest.status}")
            return latest

        logger.info(
            f"Call session {session.id} {status.value} ({_value(end_reason)}), {seconds}s connected",
            extra={"call_session_id": session.id, "status": status.value, "seconds_connected": seconds}
        )
        await self.record_event(session.id, CallEventType.STATE_CHANGE, {
            "from": session.status,
            "to": status.value,
            "end_reason": _value(end_reason),
        })

        if session.connected_at is not None:
            await self._settle(updated)

        if status == CallSessionStatus.COMPLETED and seconds > 0:
            await self.store.update_line(updated.line_id, {"last_successful_call_at": ended_at})

        return updated

    async def _settle(self, session: CallSession) -> bool:
        """
        Write the session's minutes to the ledger and stamp it settled.

        Ledger failures are logged and the session stays unsettled, so
        `settle_pending` picks it up on a later pass.
        """
        try:
            await self.ledger.record_usage(session)
        except Exception as e:
            logger.error(
                f"Failed to settle minutes for session {session.id}: {e}",
                extra={"call_session_id": session.id},
                exc_info=True
            )
            return False

        await self.store.update_call_session(session.id, {"ledger_settled_at": utcnow()})
        return True

    async def settle_pending(self, limit: int = 50) -> int:
        """
        Retry settlement for finished calls whose ledger write failed.

        record_usage is keyed per session, so a session that was written
        but not stamped settles again without double counting.

        Returns:
            Number of sessions settled
        """
        sessions = await self.store.list_unsettled_sessions(limit)
        settled = 0
        for session in sessions:
            if await self._settle(session):
                settled += 1
        if settled:
            logger.info(f"Settled {settled} call session(s) on retry")
        return settled

    # =========================================================================
    # Timeline
    # =========================================================================

    async def record_event(
        self,
        session_id: str,
        event_type: CallEventType,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        await self.store.insert_call_event(CallEvent(
            call_session_id=session_id,
            type=event_type,
            payload=payload or {},
        ))

    async def increment_tool_invocations(self, session_id: str) -> None:
        await self.store.increment_tool_invocations(session_id)

    async def record_safety_event(self, session_id: str, tier: str, keyword: str) -> None:
        logger.warning(
            f"Safety keyword ({tier}) detected on session {session_id}",
            extra={"call_session_id": session_id, "tier": tier}
        )
        await self.record_event(session_id, CallEventType.SAFETY_TIER, {
            "tier": tier,
            "keyword": keyword,
        })
