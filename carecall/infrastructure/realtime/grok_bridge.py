"""
Realtime Voice Bridge
Bidirectional bridge between a carrier audio leg and the xAI realtime API

Protocol (OpenAI-realtime style):
    out: session.update, input_audio_buffer.append, conversation.item.create,
         response.create
    in:  response.audio.delta, input_audio_buffer.speech_started,
         response.function_call_arguments.done, response.done,
         conversation.item.input_audio_transcription.completed, error

Provider events are handled one at a time in arrival order by a single
receive task. Tool calls are handed to the ToolDispatcher, so waiting on
a tool endpoint never stalls audio or barge-in handling.
"""
import asyncio
import base64
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from carecall.core.exceptions import StreamError
from carecall.domain.interfaces.carrier import CarrierAudioLeg
from carecall.infrastructure.realtime.tool_definitions import TOOL_DEFINITIONS
from carecall.infrastructure.realtime.tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


class BridgeState(str, Enum):
    """Lifecycle of the provider connection"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


TranscriptCallback = Callable[[str], Awaitable[None]]
ToolCallCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]
ClosedCallback = Callable[[bool], Awaitable[None]]


class RealtimeVoiceBridge:
    """
    One call's connection to the realtime AI provider.

    Audio from the provider is queued on the carrier leg as it arrives.
    When the provider reports that the user started speaking, the carrier
    leg is cleared before any later provider event is processed.
    """

    # Server VAD tuning sent in session.update
    VAD_THRESHOLD = 0.5
    VAD_PREFIX_PADDING_MS = 300
    VAD_SILENCE_DURATION_MS = 500

    def __init__(
        self,
        call_session_id: str,
        api_key: Optional[str],
        realtime_url: str,
        instructions: str,
        carrier_leg: CarrierAudioLeg,
        tool_dispatcher: ToolDispatcher,
        voice: str = "Ara",
        tools: Optional[List[Dict[str, Any]]] = None,
        connect_timeout: float = 10.0,
        on_transcript: Optional[TranscriptCallback] = None,
        on_tool_call: Optional[ToolCallCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
        connector: Callable[..., Awaitable[Any]] = websockets.connect
    ):
        self.call_session_id = call_session_id
        self.instructions = instructions
        self.carrier_leg = carrier_leg
        self.tool_dispatcher = tool_dispatcher
        self.voice = voice
        self.tools = tools if tools is not None else TOOL_DEFINITIONS
        self.connect_timeout = connect_timeout

        self._api_key = api_key
        self._url = realtime_url
        self._connector = connector
        self._on_transcript = on_transcript
        self._on_tool_call = on_tool_call
        self._on_closed = on_closed

        self._ws = None
        self._receive_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._torn_down = False
        self.state = BridgeState.IDLE

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "response.audio.delta": self._handle_audio_delta,
            "input_audio_buffer.speech_started": self._handle_speech_started,
            "response.function_call_arguments.done": self._handle_function_call,
            "conversation.item.input_audio_transcription.completed": self._handle_transcript,
            "response.done": self._handle_response_done,
            "error": self._handle_error,
        }

        # Stats
        self.audio_chunks_in = 0
        self.audio_chunks_out = 0
        self.barge_ins = 0

    @property
    def is_connected(self) -> bool:
        return self.state == BridgeState.CONNECTED

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> None:
        """
        Open the provider socket and send the session configuration.

        Raises:
            StreamError: missing credentials, timeout or connection failure
        """
        if not self._api_key:
            raise StreamError("XAI_API_KEY is not configured")

        self.state = BridgeState.CONNECTING
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            self._ws = await asyncio.wait_for(
                self._connector(self._url, additional_headers=headers),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            self.state = BridgeState.CLOSED
            raise StreamError(f"Realtime connection timed out after {self.connect_timeout}s")
        except Exception as e:
            self.state = BridgeState.CLOSED
            raise StreamError(f"Realtime connection failed: {e}") from e

        self.state = BridgeState.CONNECTED
        logger.info("Connected to realtime provider", extra={"call_session_id": self.call_session_id})

        await self._send(self.build_session_config())
        self.tool_dispatcher.start(self._send_tool_result)
        self._receive_task = asyncio.create_task(self._receive_loop())

    def build_session_config(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "voice": self.voice,
                "instructions": self.instructions,
                "audio": {
                    "input": {"format": {"type": "audio/pcmu"}},
                    "output": {"format": {"type": "audio/pcmu"}},
                },
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.VAD_THRESHOLD,
                    "prefix_padding_ms": self.VAD_PREFIX_PADDING_MS,
                    "silence_duration_ms": self.VAD_SILENCE_DURATION_MS,
                },
                "tools": self.tools,
            },
        }

    async def close(self) -> None:
        """Idempotent teardown of the provider socket and the tool worker."""
        if self._torn_down:
            return
        self._torn_down = True
        self.state = BridgeState.CLOSING

        await self.tool_dispatcher.close()

        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing realtime socket: {e}")

        self.state = BridgeState.CLOSED
        logger.info(
            f"Realtime bridge closed (in={self.audio_chunks_in}, out={self.audio_chunks_out}, "
            f"barge_ins={self.barge_ins})",
            extra={"call_session_id": self.call_session_id}
        )

    # =========================================================================
    # Outbound messages
    # =========================================================================

    async def _send(self, message: Dict[str, Any]) -> bool:
        if self._ws is None or self.state != BridgeState.CONNECTED:
            return False
        async with self._send_lock:
            try:
                await self._ws.send(json.dumps(message))
                return True
            except websockets.exceptions.ConnectionClosed:
                logger.info("Realtime socket closed while sending", extra={"call_session_id": self.call_session_id})
                return False

    async def send_audio(self, audio_chunk: bytes) -> bool:
        """Forward caller audio (mu-law) to the provider."""
        sent = await self._send({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(audio_chunk).decode("ascii"),
        })
        if sent:
            self.audio_chunks_in += 1
        return sent

    async def inject_system_message(self, text: str) -> bool:
        """Add a system message to the conversation and ask the model to respond."""
        sent = await self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "system",
                "content": [{"type": "input_text", "text": text}],
            },
        })
        if sent:
            await self._send({"type": "response.create"})
        return sent

    async def _send_tool_result(self, call_id: str, name: str, result: Dict[str, Any]) -> None:
        sent = await self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": call_id,
                "output": json.dumps(result),
            },
        })
        if sent:
            await self._send({"type": "response.create"})

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def _receive_loop(self) -> None:
        unexpected = False
        try:
            async for raw in self._ws:
                if self.state != BridgeState.CONNECTED:
                    break
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Non-JSON message from realtime provider")
                    continue
                await self.handle_event(message)
            unexpected = self.state == BridgeState.CONNECTED
        except websockets.exceptions.ConnectionClosed as e:
            unexpected = self.state == BridgeState.CONNECTED
            logger.info(f"Realtime socket closed: {e}", extra={"call_session_id": self.call_session_id})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            unexpected = self.state == BridgeState.CONNECTED
            logger.error(f"Realtime receive error: {e}", extra={"call_session_id": self.call_session_id}, exc_info=True)

        if unexpected:
            logger.error("Realtime provider dropped the connection", extra={"call_session_id": self.call_session_id})
            self.state = BridgeState.CLOSING
        if self._on_closed is not None:
            await self._on_closed(unexpected)

    async def handle_event(self, message: Dict[str, Any]) -> None:
        event_type = message.get("type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Realtime event {event_type}")
            return
        await handler(message)

    async def _handle_audio_delta(self, message: Dict[str, Any]) -> None:
        delta = message.get("delta")
        if not delta:
            return
        try:
            audio = base64.b64decode(delta)
        except (ValueError, TypeError):
            logger.warning("Invalid base64 audio delta")
            return
        await self.carrier_leg.enqueue_audio(audio)
        self.audio_chunks_out += 1

    async def _handle_speech_started(self, message: Dict[str, Any]) -> None:
        # Barge-in: drop everything not yet played before handling more audio
        dropped = await self.carrier_leg.clear()
        self.barge_ins += 1
        logger.info(
            f"Barge-in: dropped {dropped} queued chunks",
            extra={"call_session_id": self.call_session_id}
        )

    async def _handle_function_call(self, message: Dict[str, Any]) -> None:
        call_id = message.get("call_id")
        name = message.get("name")
        arguments = message.get("arguments") or "{}"
        if not call_id or not name:
            logger.warning("Function call event without call_id or name")
            return

        logger.info(f"Tool call requested: {name}", extra={"call_session_id": self.call_session_id, "tool": name})
        if self._on_tool_call is not None:
            try:
                parsed = json.loads(arguments)
            except ValueError:
                parsed = {}
            await self._on_tool_call(name, parsed if isinstance(parsed, dict) else {})

        await self.tool_dispatcher.submit(call_id, name, arguments)

    async def _handle_transcript(self, message: Dict[str, Any]) -> None:
        transcript = message.get("transcript") or message.get("text") or ""
        if transcript and self._on_transcript is not None:
            await self._on_transcript(transcript)

    async def _handle_response_done(self, message: Dict[str, Any]) -> None:
        logger.debug("Realtime response done", extra={"call_session_id": self.call_session_id})

    async def _handle_error(self, message: Dict[str, Any]) -> None:
        logger.error(
            f"Realtime provider error: {message.get('error') or message}",
            extra={"call_session_id": self.call_session_id}
        )
