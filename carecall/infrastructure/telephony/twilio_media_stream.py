"""
Twilio Media Stream
Carrier audio leg over a Twilio <Stream> websocket

Outbound audio is queued and written by one sender task. clear() empties
the local queue and sends Twilio's "clear" event so audio already handed
to the carrier is dropped too.
"""
import asyncio
import base64
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from carecall.domain.interfaces.carrier import CarrierAudioLeg

logger = logging.getLogger(__name__)


class TwilioMediaStream(CarrierAudioLeg):
    """CarrierAudioLeg backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, queue_size: int = 500):
        self._websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sender_task: Optional[asyncio.Task] = None
        self._closed = False
        self.stream_sid: Optional[str] = None

        # Stats
        self.chunks_sent = 0
        self.chunks_dropped = 0

    @property
    def is_open(self) -> bool:
        return not self._closed and self._websocket.client_state == WebSocketState.CONNECTED

    def start(self, stream_sid: str) -> None:
        self.stream_sid = stream_sid
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._sender())

    async def enqueue_audio(self, audio_chunk: bytes) -> None:
        if self._closed:
            return
        if self._queue.full():
            # Oldest audio is the least useful; keep latency bounded
            self._queue.get_nowait()
            self.chunks_dropped += 1
        self._queue.put_nowait(audio_chunk)

    async def clear(self) -> int:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if self.stream_sid and self.is_open:
            await self._send_json({"event": "clear", "streamSid": self.stream_sid})
        return dropped

    async def send_mark(self, name: str) -> None:
        if self.stream_sid and self.is_open:
            await self._send_json({"event": "mark", "streamSid": self.stream_sid, "mark": {"name": name}})

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True

        if self._sender_task is not None and self._sender_task is not asyncio.current_task():
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass

        if self._websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self._websocket.close(code=code)
            except RuntimeError as e:
                logger.debug(f"Media stream already closed: {e}")

        logger.info(
            f"Media stream closed (code={code}, sent={self.chunks_sent}, dropped={self.chunks_dropped})",
            extra={"stream_sid": self.stream_sid}
        )

    async def _sender(self) -> None:
        try:
            while not self._closed:
                chunk = await self._queue.get()
                if self._closed or not self.stream_sid:
                    break
                sent = await self._send_json({
                    "event": "media",
                    "streamSid": self.stream_sid,
                    "media": {"payload": base64.b64encode(chunk).decode("ascii")},
                })
                if not sent:
                    break
                self.chunks_sent += 1
        except asyncio.CancelledError:
            pass

    async def _send_json(self, message: dict) -> bool:
        try:
            await self._websocket.send_json(message)
            return True
        except (RuntimeError, ConnectionError, WebSocketDisconnect) as e:
            logger.debug(f"Media stream send failed: {e}")
            return False
