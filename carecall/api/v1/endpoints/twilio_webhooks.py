"""
Twilio Webhook Endpoints
Answer-time TwiML for outbound calls and call status callbacks
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Response
from twilio.twiml.voice_response import Connect, VoiceResponse

from carecall.api.v1.dependencies import get_container, get_twilio_form
from carecall.core.container import ServiceContainer
from carecall.core.exceptions import InvalidTransitionError
from carecall.domain.models.call_session import CallDirection, CallReason, CallSessionStatus
from carecall.domain.services.line_access import is_in_quiet_hours
from carecall.domain.services.voicemail import get_voicemail_message
from carecall.infrastructure.telephony.twilio_caller import map_twilio_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


ERROR_MESSAGE = "I'm sorry, there was an error. Goodbye."
TECHNICAL_ERROR_MESSAGE = "I'm sorry, I'm having technical difficulties. Goodbye."
OPTED_OUT_MESSAGE = "This line has opted out of calls. Goodbye."
QUIET_HOURS_MESSAGE = "I apologize for calling during quiet hours. I'll try again later. Goodbye."
ACCESS_DENIED_MESSAGE = "I'm sorry, there was an issue with your account. Please contact support. Goodbye."

MACHINE_ANSWERS = (
    "machine_start",
    "machine_end_beep",
    "machine_end_silence",
    "machine_end_other",
)


def twiml_response(twiml: VoiceResponse) -> Response:
    return Response(content=str(twiml), media_type="application/xml")


def say_and_hangup(message: str, language: Optional[str] = None) -> Response:
    twiml = VoiceResponse()
    if language:
        twiml.say(message, language=language)
    else:
        twiml.say(message)
    twiml.hangup()
    return twiml_response(twiml)


def hangup_only() -> Response:
    twiml = VoiceResponse()
    twiml.hangup()
    return twiml_response(twiml)


def stream_response(websocket_url: str, call_session_id: str) -> Response:
    """<Connect><Stream> to the media-stream socket, tagged with the session id."""
    twiml = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=websocket_url)
    stream.parameter(name="callSessionId", value=call_session_id)
    twiml.append(connect)
    return twiml_response(twiml)


@router.post("/outbound")
async def twilio_outbound(
    call_session_id: Optional[str] = Query(None, alias="callSessionId"),
    form: Dict[str, str] = Depends(get_twilio_form),
    container: ServiceContainer = Depends(get_container)
):
    """
    Answer URL for calls we placed.

    Re-checks the line at answer time, then either connects the media
    stream or speaks a short notice and hangs up. Answering machines get
    a voicemail according to the line's preference; faxes are hung up on.
    """
    call_sid = form.get("CallSid")
    answered_by = form.get("AnsweredBy")
    logger.info(
        f"Outbound call answered: session={call_session_id} sid={call_sid} answered_by={answered_by}",
        extra={"call_session_id": call_session_id, "carrier_call_sid": call_sid}
    )

    if not call_session_id:
        logger.error("Missing callSessionId in outbound request")
        return say_and_hangup(ERROR_MESSAGE)

    try:
        session = await container.sessions.get(call_session_id)
        if session is None:
            logger.error(f"Call session not found: {call_session_id}")
            return say_and_hangup(ERROR_MESSAGE)

        line = await container.store.get_line(session.line_id)
        account = await container.store.get_account(session.account_id)
        if line is None or account is None:
            logger.error(f"Line or account not found for session {session.id}")
            return say_and_hangup(ERROR_MESSAGE)

        if line.do_not_call:
            logger.info(f"Line {line.id} opted out, ending call", extra={"line_id": line.id})
            return say_and_hangup(OPTED_OUT_MESSAGE)

        if session.reason != CallReason.MANUAL.value:
            in_quiet, _ = is_in_quiet_hours(line)
            if in_quiet:
                logger.info(f"Line {line.id} in quiet hours, ending call", extra={"line_id": line.id})
                return say_and_hangup(QUIET_HOURS_MESSAGE)

        access = await container.line_access.check_line_access(line, account, CallDirection.OUTBOUND)
        if not access.allowed:
            logger.info(
                f"Line access denied for outbound: {access.reason}",
                extra={"line_id": line.id, "reason": access.reason}
            )
            return say_and_hangup(ACCESS_DENIED_MESSAGE)

        updates = {}
        if call_sid and not session.carrier_call_sid:
            updates["carrier_call_sid"] = call_sid
        if answered_by:
            updates["answered_by"] = answered_by
        if updates:
            await container.store.update_call_session(session.id, updates)

        if answered_by == "fax":
            logger.info(f"Fax detected on session {session.id}, ending call")
            return hangup_only()

        if answered_by in MACHINE_ANSWERS:
            logger.info(f"Answering machine on session {session.id}")
            if line.voicemail_behavior == "none":
                return hangup_only()
            message = get_voicemail_message(
                name=line.display_name,
                language=line.preferred_language,
                behavior=line.voicemail_behavior,
                reminder_message=session.reminder_message,
            )
            return say_and_hangup(message)

        logger.info(
            "Connecting outbound call to media stream",
            extra={"call_session_id": session.id, "line_id": line.id}
        )
        return stream_response(container.settings.websocket_url, session.id)

    except Exception as e:
        logger.error(f"Error handling outbound call: {e}", exc_info=True)
        return say_and_hangup(TECHNICAL_ERROR_MESSAGE)


@router.post("/status")
async def twilio_status(
    form: Dict[str, str] = Depends(get_twilio_form),
    container: ServiceContainer = Depends(get_container)
):
    """
    Carrier status callback.

    Unknown calls and unknown statuses are acknowledged and ignored so
    Twilio does not retry them.
    """
    call_sid = form.get("CallSid")
    call_status = form.get("CallStatus")
    logger.info(
        f"Twilio status callback: sid={call_sid} status={call_status}",
        extra={"carrier_call_sid": call_sid, "error_code": form.get("ErrorCode")}
    )

    if not call_sid:
        return {"message": "Status received (missing CallSid)"}

    session = await container.sessions.get_by_carrier_sid(call_sid)
    if session is None:
        logger.info(f"No session found for Twilio SID {call_sid}")
        return {"message": "Status received (unknown call)"}

    mapped = map_twilio_status(call_status)
    if mapped is None:
        logger.warning(f"Unknown Twilio status {call_status} for {call_sid}")
        return {"message": f"Status received: {call_status}"}

    target, end_reason = mapped
    try:
        if target == CallSessionStatus.COMPLETED:
            await container.sessions.complete(session.id, session.end_reason or end_reason)
        elif target == CallSessionStatus.FAILED:
            if form.get("ErrorCode"):
                logger.error(
                    f"Twilio call error {form.get('ErrorCode')}: {form.get('ErrorMessage')}",
                    extra={"call_session_id": session.id}
                )
            await container.sessions.fail(session.id, end_reason)
        elif target == CallSessionStatus.CANCELED:
            await container.sessions.cancel(session.id)
        elif target != CallSessionStatus.CREATED:
            await container.sessions.update_status(session.id, target)
    except InvalidTransitionError as e:
        # Late or out-of-order callback for a session that has moved on
        logger.info(f"Ignoring status {call_status} for session {session.id}: {e}")

    return {"message": f"Status processed: {call_status}"}
