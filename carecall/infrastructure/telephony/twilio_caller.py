"""
Twilio Call Origination Service
Places outbound calls and updates live calls via the Twilio REST API
"""
import asyncio
import logging
from typing import Optional, Tuple

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from carecall.core.exceptions import PlacementError
from carecall.domain.interfaces.carrier import CarrierProvider
from carecall.domain.models.call_session import CallEndReason, CallSessionStatus

logger = logging.getLogger(__name__)


# Twilio CallStatus -> (session status, end reason)
TWILIO_STATUS_MAP = {
    "queued": (CallSessionStatus.CREATED, None),
    "initiated": (CallSessionStatus.CREATED, None),
    "ringing": (CallSessionStatus.RINGING, None),
    "in-progress": (CallSessionStatus.IN_PROGRESS, None),
    "completed": (CallSessionStatus.COMPLETED, CallEndReason.HANGUP),
    "busy": (CallSessionStatus.FAILED, CallEndReason.BUSY),
    "no-answer": (CallSessionStatus.FAILED, CallEndReason.NO_ANSWER),
    "failed": (CallSessionStatus.FAILED, CallEndReason.ERROR),
    "canceled": (CallSessionStatus.CANCELED, None),
}


def map_twilio_status(call_status: str) -> Optional[Tuple[CallSessionStatus, Optional[CallEndReason]]]:
    """Translate a Twilio CallStatus value; None for unknown values."""
    return TWILIO_STATUS_MAP.get((call_status or "").lower())


class TwilioCaller(CarrierProvider):
    """
    Twilio Voice API client for outbound call origination.

    The SDK is synchronous, so every request runs in a worker thread.
    Calls are answered by `/twilio/outbound`, which connects the media
    stream, and report progress to `/twilio/status`.
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        public_base_url: str,
        api_prefix: str = "",
        client: Optional[Client] = None
    ):
        if client is None and (not account_sid or not auth_token):
            raise RuntimeError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set")
        self._client = client or Client(account_sid, auth_token)
        self._from_number = from_number
        self._base_url = f"{public_base_url.rstrip('/')}{api_prefix}"

    @property
    def name(self) -> str:
        return "twilio"

    async def place_call(
        self,
        to_number: str,
        call_session_id: str,
        from_number: Optional[str] = None
    ) -> str:
        caller_id = from_number or self._from_number
        if not caller_id:
            raise PlacementError("No Twilio caller ID configured")

        params = {
            "to": to_number,
            "from_": caller_id,
            "url": f"{self._base_url}/twilio/outbound?callSessionId={call_session_id}",
            "method": "POST",
            "status_callback": f"{self._base_url}/twilio/status",
            "status_callback_event": ["initiated", "ringing", "answered", "completed"],
            "status_callback_method": "POST",
            "machine_detection": "Enable",
            "async_amd": "true",
        }

        try:
            call = await asyncio.to_thread(self._client.calls.create, **params)
        except TwilioRestException as e:
            logger.error(
                f"Twilio rejected call for session {call_session_id}: {e.msg}",
                extra={"call_session_id": call_session_id, "twilio_code": e.code}
            )
            raise PlacementError(f"Twilio error {e.code}: {e.msg}") from e

        logger.info(
            f"Twilio call created: {call.sid}",
            extra={"call_session_id": call_session_id, "carrier_call_sid": call.sid}
        )
        return call.sid

    async def say_and_hangup(self, call_sid: str, message: str) -> bool:
        response = VoiceResponse()
        response.say(message)
        response.hangup()
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, twiml=str(response))
            return True
        except TwilioRestException as e:
            logger.error(f"Failed to play notice on {call_sid}: {e.msg}")
            return False

    async def hangup(self, call_sid: str) -> bool:
        try:
            await asyncio.to_thread(self._client.calls(call_sid).update, status="completed")
            return True
        except TwilioRestException as e:
            logger.error(f"Failed to hang up {call_sid}: {e.msg}")
            return False
