"""
Media Stream WebSocket Endpoint
Carrier leg of the realtime voice bridge

Twilio connects here after /twilio/outbound returns <Connect><Stream>.
Each socket gets one VoiceSession; closing either the carrier socket or
the provider connection tears down both.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from carecall.core.config import Settings
from carecall.core.container import ServiceContainer
from carecall.domain.models.call_session import CallEndReason, CallSession
from carecall.domain.models.line import Line
from carecall.domain.services.voice_session import VoiceSession
from carecall.infrastructure.realtime.grok_bridge import RealtimeVoiceBridge
from carecall.infrastructure.realtime.tool_dispatcher import ToolDispatcher
from carecall.infrastructure.telephony.twilio_media_stream import TwilioMediaStream

logger = logging.getLogger(__name__)
router = APIRouter(tags=["media-stream"])


def build_bridge_factory(settings: Settings, bridge_config: Dict[str, Any]):
    """Factory that wires a provider bridge to one VoiceSession."""

    def factory(voice: VoiceSession, session: CallSession, line: Line, instructions: str) -> RealtimeVoiceBridge:
        dispatcher = ToolDispatcher(
            base_url=settings.telephony_backend_url,
            webhook_secret=settings.internal_api_secret,
            call_session_id=session.id,
            line_id=line.id,
            timeout=bridge_config.get("tool_timeout_seconds", 10),
            transport_retries=bridge_config.get("tool_transport_retries", 2),
        )
        return RealtimeVoiceBridge(
            call_session_id=session.id,
            api_key=settings.xai_api_key,
            realtime_url=settings.xai_realtime_url,
            instructions=instructions,
            carrier_leg=voice.carrier_leg,
            tool_dispatcher=dispatcher,
            voice=settings.grok_voice,
            connect_timeout=bridge_config.get("connect_timeout_seconds", 10),
            on_transcript=voice.on_transcript,
            on_tool_call=voice.on_tool_call,
            on_closed=voice.on_bridge_closed,
        )

    return factory


@router.websocket("/twilio/media-stream")
async def media_stream(websocket: WebSocket):
    """
    Twilio media stream.

    Messages are JSON events (connected, start, media, dtmf, mark, stop).
    The call session id arrives as a custom parameter on `start`.
    """
    await websocket.accept()
    container: ServiceContainer = websocket.app.state.container
    bridge_config = container.config.section("bridge")

    carrier_leg = TwilioMediaStream(websocket, queue_size=bridge_config.get("outbound_queue_size", 500))
    voice = VoiceSession(
        carrier_leg=carrier_leg,
        sessions=container.sessions,
        store=container.store,
        ledger=container.ledger,
        registry=container.registry,
        bridge_factory=build_bridge_factory(container.settings, bridge_config),
        carrier=container.carrier,
        config=bridge_config,
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON media stream frame")
                continue
            if not await voice.handle_carrier_event(message):
                break

    except WebSocketDisconnect:
        logger.info("Media stream disconnected", extra={"call_session_id": voice.call_session_id})
    except Exception as e:
        logger.error(
            f"Media stream error: {e}",
            extra={"call_session_id": voice.call_session_id},
            exc_info=True
        )
        await voice.close(CallEndReason.ERROR)
    finally:
        await voice.close(CallEndReason.HANGUP)
