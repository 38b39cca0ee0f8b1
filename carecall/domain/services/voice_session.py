"""
Voice Session
Per-call state machine joining the carrier leg, the realtime bridge and
call-session bookkeeping

Lifecycle:
    start  -> load session/line/account, build prompt, connect bridge,
              mark in_progress, register, arm the trial watchdog
    media  -> forward caller audio to the bridge
    dtmf   -> keypad shortcuts (1 repeat, 9 opt-out, 0 help)
    close  -> cancel watchdog, close bridge, unregister, close carrier
              leg, settle the session; runs once whichever leg ends first
"""
import asyncio
import base64
import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from carecall.core.exceptions import InvalidTransitionError, StreamError
from carecall.domain.interfaces.carrier import CarrierAudioLeg, CarrierProvider
from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.models.call_session import (
    CallEndReason,
    CallEventType,
    CallSession,
    CallSessionStatus,
)
from carecall.domain.models.line import Account, Line
from carecall.domain.services.call_session_service import CallSessionService
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.domain.services.prompt_builder import PromptContext, build_system_prompt
from carecall.domain.services.safety_keywords import SafetyMonitor
from carecall.domain.services.session_registry import SessionRegistry
from carecall.utils.clock import utcnow

logger = logging.getLogger(__name__)


FALLBACK_NOTICE = (
    "I'm sorry, I'm having some technical difficulties right now. "
    "Please try calling back in a few minutes, or press 0 for help."
)
REPEAT_PROMPT = "Please repeat what you just said."
OPT_OUT_CONFIRM_PROMPT = (
    "The user pressed 9 to stop receiving calls. "
    "Ask them to confirm by saying yes or pressing 9 again."
)
OPT_OUT_DONE_PROMPT = "The user confirmed they want to stop receiving calls. Say goodbye warmly and end the call."
HELP_PROMPT = (
    "The user pressed 0 for help. Explain that they can call this number anytime, "
    "and if they need account help, ask their family member to contact support."
)
LOW_MINUTES_PROMPT = (
    "The user has only {minutes} minutes remaining on their trial. "
    "Mention this naturally toward the end of the call."
)
WRAP_UP_PROMPT = (
    "The user has run out of free trial minutes. Politely wrap up the conversation, "
    "tell them their free minutes are used up, and encourage them to ask their family "
    "member to upgrade. Say goodbye warmly."
)
SAFETY_HINTS = {
    "high": "Safety keywords detected (high severity). Assess wellbeing immediately and call "
            "log_safety_concern. Consider suggesting the 988 crisis line.",
    "medium": "Safety keywords detected (medium severity). Assess wellbeing and call "
              "log_safety_concern if warranted.",
    "low": "Possible distress detected. Respond with empathy and assess whether follow-up is needed.",
}

# Close codes for the carrier socket
CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_INTERNAL_ERROR = 1011

BridgeFactory = Callable[["VoiceSession", CallSession, Line, str], Any]


class VoiceSession:
    """
    One live call.

    Owns the bridge and watchdog for the call and is the handle stored in
    the SessionRegistry for out-of-band control.
    """

    TRIAL_CHECK_INTERVAL = 60
    WRAP_UP_GRACE_SECONDS = 30
    OPT_OUT_CONFIRM_WINDOW_SECONDS = 30

    def __init__(
        self,
        carrier_leg: CarrierAudioLeg,
        sessions: CallSessionService,
        store: DurableStore,
        ledger: MinuteLedger,
        registry: SessionRegistry,
        bridge_factory: BridgeFactory,
        carrier: Optional[CarrierProvider] = None,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        config = config or {}
        self.carrier_leg = carrier_leg
        self.sessions = sessions
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.carrier = carrier
        self._bridge_factory = bridge_factory
        self._clock = clock

        self.trial_check_interval = config.get("trial_check_interval_seconds", self.TRIAL_CHECK_INTERVAL)
        self.wrap_up_grace_seconds = config.get("wrap_up_grace_seconds", self.WRAP_UP_GRACE_SECONDS)
        self.opt_out_window = config.get("opt_out_confirm_window_seconds", self.OPT_OUT_CONFIRM_WINDOW_SECONDS)

        self.session: Optional[CallSession] = None
        self.line: Optional[Line] = None
        self.account: Optional[Account] = None
        self.bridge = None
        self.call_sid: Optional[str] = None

        self._connected = False
        self._connected_at: Optional[datetime] = None
        self._closed = False
        self._watchdog_task: Optional[asyncio.Task] = None
        self._wrap_up_task: Optional[asyncio.Task] = None
        self._low_notice_sent = False
        self._wrap_up_sent = False
        self._opt_out_pending_at: Optional[datetime] = None
        self._safety = SafetyMonitor()

    @property
    def call_session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Carrier events
    # =========================================================================

    async def handle_carrier_event(self, message: Dict[str, Any]) -> bool:
        """
        Dispatch one carrier stream message.

        Returns:
            False once the session is finished and the read loop should stop
        """
        event = message.get("event")

        if event == "connected":
            logger.debug("Carrier stream connected")
        elif event == "start":
            start = message.get("start") or {}
            params = start.get("customParameters") or {}
            return await self.start(
                stream_sid=start.get("streamSid") or message.get("streamSid"),
                call_session_id=params.get("callSessionId"),
                call_sid=start.get("callSid") or params.get("callSid"),
            )
        elif event == "media":
            payload = (message.get("media") or {}).get("payload")
            if payload:
                await self.on_carrier_audio(base64.b64decode(payload))
        elif event == "dtmf":
            digit = (message.get("dtmf") or {}).get("digit")
            if digit:
                await self.handle_dtmf(str(digit))
        elif event == "mark":
            logger.debug(f"Mark received: {(message.get('mark') or {}).get('name')}")
        elif event == "stop":
            logger.info("Carrier stream stopped", extra={"call_session_id": self.call_session_id})
            await self.close(CallEndReason.HANGUP)
            return False

        return not self._closed

    async def start(self, stream_sid: Optional[str], call_session_id: Optional[str], call_sid: Optional[str] = None) -> bool:
        if not stream_sid or not call_session_id:
            logger.warning("Stream start without streamSid or callSessionId")
            await self._abort(CLOSE_POLICY)
            return False

        session = await self.sessions.get(call_session_id)
        if session is None or session.is_terminal:
            logger.warning(f"Stream started for unknown or finished session {call_session_id}")
            await self._abort(CLOSE_POLICY)
            return False

        self.session = session
        self.call_sid = call_sid or session.carrier_call_sid
        self.line = await self.store.get_line(session.line_id)
        self.account = await self.store.get_account(session.account_id)
        if self.line is None or self.account is None:
            logger.error(f"Line or account missing for session {session.id}")
            await self.sessions.fail(session.id, CallEndReason.ERROR)
            await self._abort(CLOSE_INTERNAL_ERROR)
            return False

        self.carrier_leg.start(stream_sid)
        if call_sid and not session.carrier_call_sid:
            await self.sessions.attach_carrier_sid(session.id, call_sid)

        instructions = await self._build_instructions()
        self.bridge = self._bridge_factory(self, session, self.line, instructions)

        try:
            await self.bridge.connect()
        except StreamError as e:
            await self._handle_connect_failure(e)
            return False

        try:
            self.session = await self.sessions.update_status(session.id, CallSessionStatus.IN_PROGRESS)
        except InvalidTransitionError as e:
            logger.warning(f"Session {session.id} ended before media started: {e}")
            await self.close()
            return False

        self._connected = True
        self._connected_at = self.session.connected_at or self._clock()
        self.registry.register(session.id, self)

        if self.account.is_trial:
            self._watchdog_task = asyncio.create_task(self._trial_watchdog())

        logger.info(
            "Realtime bridge connected, call in progress",
            extra={"call_session_id": session.id, "stream_sid": stream_sid}
        )
        return True

    async def _build_instructions(self) -> str:
        remaining = await self.ledger.get_minutes_remaining(self.account)
        memory_summary = await self.store.get_memory_summary(self.line.id)
        return build_system_prompt(PromptContext(
            user_name=self.line.display_name or "there",
            language=self.line.preferred_language,
            memory_summary=memory_summary,
            is_first_call=self.line.last_successful_call_at is None,
            reminder_message=self.session.reminder_message if self.session.is_reminder_call else None,
            minutes_remaining=remaining,
            low_minutes=self.ledger.should_warn_low_minutes(remaining) is not None,
            allow_reminder_control=self.line.allow_voice_reminder_control,
        ))

    async def on_carrier_audio(self, audio_chunk: bytes) -> None:
        if self._closed or self.bridge is None or not self._connected:
            return
        await self.bridge.send_audio(audio_chunk)

    # =========================================================================
    # DTMF
    # =========================================================================

    async def handle_dtmf(self, digit: str, now: Optional[datetime] = None) -> None:
        if self.session is None:
            return
        now = now or self._clock()
        logger.info(f"DTMF received: {digit}", extra={"call_session_id": self.session.id})
        await self.sessions.record_event(self.session.id, CallEventType.DTMF, {"digit": digit})

        if digit == "1":
            await self.inject_system_message(REPEAT_PROMPT)

        elif digit == "9":
            pending = self._opt_out_pending_at
            if pending is not None and (now - pending).total_seconds() <= self.opt_out_window:
                self._opt_out_pending_at = None
                await self.store.update_line(self.session.line_id, {"do_not_call": True})
                logger.info(
                    f"Line {self.session.line_id} opted out by keypad",
                    extra={"call_session_id": self.session.id, "line_id": self.session.line_id}
                )
                await self.inject_system_message(OPT_OUT_DONE_PROMPT)
            else:
                self._opt_out_pending_at = now
                await self.inject_system_message(OPT_OUT_CONFIRM_PROMPT)

        elif digit == "0":
            await self.inject_system_message(HELP_PROMPT)

    # =========================================================================
    # Bridge callbacks
    # =========================================================================

    async def on_transcript(self, transcript: str) -> None:
        match = self._safety.check(transcript)
        if match is None or self.session is None:
            return
        tier, keyword = match
        await self.sessions.record_safety_event(self.session.id, tier, keyword)
        await self.inject_system_message(SAFETY_HINTS[tier])

    async def on_tool_call(self, name: str, arguments: Dict[str, Any]) -> None:
        if self.session is None:
            return
        await self.sessions.increment_tool_invocations(self.session.id)
        await self.sessions.record_event(self.session.id, CallEventType.TOOL_CALL, {
            "tool": name,
            "args": arguments,
        })

    async def on_bridge_closed(self, unexpected: bool) -> None:
        if not unexpected or self._closed:
            return
        logger.error("Realtime stream dropped mid-call", extra={"call_session_id": self.call_session_id})
        if self.session is not None:
            await self.sessions.record_event(self.session.id, CallEventType.ERROR, {
                "type": "realtime_stream_dropped",
                "fallbackMessage": FALLBACK_NOTICE,
            })
        await self._play_fallback_notice()
        await self.close(CallEndReason.ERROR)

    # =========================================================================
    # Control (registry)
    # =========================================================================

    async def inject_system_message(self, text: str) -> bool:
        if self._closed or self.bridge is None:
            return False
        return await self.bridge.inject_system_message(text)

    # =========================================================================
    # Trial watchdog
    # =========================================================================

    async def _trial_watchdog(self) -> None:
        try:
            while not self._closed and not self._wrap_up_sent:
                await asyncio.sleep(self.trial_check_interval)
                if self._closed:
                    break
                await self.check_trial_minutes()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Trial watchdog error: {e}", extra={"call_session_id": self.call_session_id}, exc_info=True)

    async def check_trial_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        """
        One watchdog pass: warn once when minutes run low, and when they
        are gone ask the model to wrap up and close after the grace period.
        Both go through the session registry.
        """
        if self.account is None or self._connected_at is None:
            return None
        now = now or self._clock()
        elapsed_minutes = math.ceil(max(0.0, (now - self._connected_at).total_seconds()) / 60)
        remaining = await self.ledger.get_minutes_remaining(self.account, pending_minutes=elapsed_minutes)
        if remaining is None:
            return None

        if remaining <= 0:
            if not self._wrap_up_sent:
                self._wrap_up_sent = True
                logger.info("Trial minutes exhausted mid-call", extra={"call_session_id": self.call_session_id})
                await self.registry.inject_system_message(self.call_session_id, WRAP_UP_PROMPT)
                self._wrap_up_task = asyncio.create_task(self._close_after_grace())
        elif remaining <= self.ledger.critical_minutes_threshold and not self._low_notice_sent:
            self._low_notice_sent = True
            await self.registry.inject_system_message(
                self.call_session_id, LOW_MINUTES_PROMPT.format(minutes=remaining)
            )

        return remaining

    async def _close_after_grace(self) -> None:
        try:
            await asyncio.sleep(self.wrap_up_grace_seconds)
            await self.registry.close_session(self.call_session_id, CallEndReason.TRIAL_CAP)
        except asyncio.CancelledError:
            pass

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self, end_reason: Optional[CallEndReason] = None) -> None:
        """
        Tear down both legs and settle the session. Safe to call from any
        task and more than once; only the first call has any effect.
        """
        if self._closed:
            return
        self._closed = True
        end_reason = end_reason or CallEndReason.HANGUP

        for task in (self._watchdog_task, self._wrap_up_task):
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()

        if self.bridge is not None:
            await self.bridge.close()

        if self.session is not None:
            self.registry.unregister(self.session.id, self)

        await self.carrier_leg.close(CLOSE_NORMAL)

        if self.session is not None and self._connected:
            if end_reason == CallEndReason.ERROR:
                await self.sessions.fail(self.session.id, CallEndReason.ERROR)
            else:
                await self.sessions.complete(self.session.id, end_reason)

        logger.info(
            f"Voice session closed ({end_reason.value if hasattr(end_reason, 'value') else end_reason})",
            extra={"call_session_id": self.call_session_id}
        )

    async def _handle_connect_failure(self, error: Exception) -> None:
        logger.error(
            f"Failed to connect realtime bridge: {error}",
            extra={"call_session_id": self.call_session_id},
            exc_info=True
        )
        await self.sessions.fail(self.session.id, CallEndReason.ERROR)
        await self.sessions.record_event(self.session.id, CallEventType.ERROR, {
            "type": "realtime_connection_failed",
            "error": str(error),
            "fallbackMessage": FALLBACK_NOTICE,
        })
        await self._play_fallback_notice()
        self._closed = True
        if self.bridge is not None:
            await self.bridge.close()
        await self.carrier_leg.close(CLOSE_INTERNAL_ERROR)

    async def _play_fallback_notice(self) -> None:
        if self.carrier is None or not self.call_sid:
            return
        try:
            await self.carrier.say_and_hangup(self.call_sid, FALLBACK_NOTICE)
        except Exception as e:
            logger.error(f"Fallback notice failed: {e}", extra={"call_session_id": self.call_session_id})

    async def _abort(self, code: int) -> None:
        self._closed = True
        await self.carrier_leg.close(code)
