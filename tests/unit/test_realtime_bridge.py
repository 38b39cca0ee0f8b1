"""
Unit Tests for Realtime Voice Bridge
Tests for session setup, barge-in ordering, tool calls and teardown
"""
import asyncio
import base64
import inspect
import json
import pytest
import websockets
from unittest.mock import AsyncMock, MagicMock

from carecall.core.exceptions import StreamError
from carecall.infrastructure.realtime.grok_bridge import BridgeState, RealtimeVoiceBridge


class FakeCarrierLeg:
    """Carrier leg that records the order of playback operations"""

    def __init__(self):
        self.ops = []

    def start(self, stream_id):
        self.ops.append(("start", stream_id))

    async def enqueue_audio(self, audio_chunk):
        self.ops.append(("audio", audio_chunk))

    async def clear(self):
        self.ops.append(("clear",))
        return 0

    async def close(self, code=1000):
        self.ops.append(("close", code))

    @property
    def is_open(self):
        return True


class FakeRealtimeSocket:
    """Provider socket fed from a queue; None ends the stream"""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, event):
        self._incoming.put_nowait(json.dumps(event))

    def drop(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def audio_delta(data: bytes) -> dict:
    return {"type": "response.audio.delta", "delta": base64.b64encode(data).decode("ascii")}


@pytest.fixture
def carrier_leg():
    return FakeCarrierLeg()


@pytest.fixture
def socket():
    return FakeRealtimeSocket()


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.start = MagicMock()
    dispatcher.submit = AsyncMock()
    dispatcher.close = AsyncMock()
    return dispatcher


def make_bridge(carrier_leg, dispatcher, socket=None, api_key="xai-key", **kwargs) -> RealtimeVoiceBridge:
    async def connector(url, additional_headers=None):
        return socket

    kwargs.setdefault("connector", connector)
    return RealtimeVoiceBridge(
        call_session_id="sess-1",
        api_key=api_key,
        realtime_url="wss://realtime.test",
        instructions="You are CareCall",
        carrier_leg=carrier_leg,
        tool_dispatcher=dispatcher,
        **kwargs
    )


class TestConnect:
    """Tests for connection setup"""

    @pytest.mark.asyncio
    async def test_session_update_sent_first(self, carrier_leg, dispatcher, socket):
        """Test the session configuration is the first message"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)

        await bridge.connect()

        config = socket.sent[0]
        assert config["type"] == "session.update"
        assert config["session"]["instructions"] == "You are CareCall"
        assert config["session"]["audio"]["input"]["format"]["type"] == "audio/pcmu"
        assert config["session"]["turn_detection"]["type"] == "server_vad"
        assert any(tool["name"] == "snooze_reminder" for tool in config["session"]["tools"])
        assert bridge.is_connected
        dispatcher.start.assert_called_once()
        await bridge.close()

    @pytest.mark.asyncio
    async def test_missing_api_key(self, carrier_leg, dispatcher, socket):
        """Test connecting without credentials fails fast"""
        bridge = make_bridge(carrier_leg, dispatcher, socket, api_key=None)

        with pytest.raises(StreamError):
            await bridge.connect()

    @pytest.mark.asyncio
    async def test_connect_timeout(self, carrier_leg, dispatcher):
        """Test a provider that never answers"""
        async def hanging_connector(url, additional_headers=None):
            await asyncio.sleep(1)

        bridge = make_bridge(carrier_leg, dispatcher, connector=hanging_connector, connect_timeout=0.01)

        with pytest.raises(StreamError):
            await bridge.connect()
        assert bridge.state == BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_failure(self, carrier_leg, dispatcher):
        """Test connector errors become StreamError"""
        async def failing_connector(url, additional_headers=None):
            raise OSError("connection refused")

        bridge = make_bridge(carrier_leg, dispatcher, connector=failing_connector)

        with pytest.raises(StreamError):
            await bridge.connect()

    @pytest.mark.asyncio
    async def test_bearer_header(self, carrier_leg, dispatcher, socket):
        """Test the API key is sent as a bearer token"""
        seen = {}

        async def connector(url, additional_headers=None):
            seen["url"] = url
            seen["headers"] = additional_headers
            return socket

        bridge = make_bridge(carrier_leg, dispatcher, connector=connector)
        await bridge.connect()

        assert seen["url"] == "wss://realtime.test"
        assert seen["headers"] == {"Authorization": "Bearer xai-key"}
        await bridge.close()

    def test_default_connector_takes_headers(self):
        """Test the installed websockets client accepts the header keyword"""
        default = inspect.signature(RealtimeVoiceBridge).parameters["connector"].default

        assert default is websockets.connect
        assert "additional_headers" in inspect.signature(websockets.connect).parameters


class TestEvents:
    """Tests for provider event handling"""

    @pytest.mark.asyncio
    async def test_barge_in_clears_before_later_audio(self, carrier_leg, dispatcher, socket):
        """Test clear() runs after earlier audio and before later audio"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)

        await bridge.handle_event(audio_delta(b"first"))
        await bridge.handle_event({"type": "input_audio_buffer.speech_started"})
        await bridge.handle_event(audio_delta(b"second"))

        assert carrier_leg.ops == [("audio", b"first"), ("clear",), ("audio", b"second")]
        assert bridge.barge_ins == 1

    @pytest.mark.asyncio
    async def test_events_processed_in_arrival_order(self, carrier_leg, dispatcher, socket):
        """Test the receive loop keeps provider order"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)
        await bridge.connect()

        socket.push(audio_delta(b"a"))
        socket.push({"type": "input_audio_buffer.speech_started"})
        socket.push(audio_delta(b"b"))
        for _ in range(20):
            await asyncio.sleep(0)
            if len(carrier_leg.ops) == 3:
                break

        assert carrier_leg.ops == [("audio", b"a"), ("clear",), ("audio", b"b")]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_function_call_dispatched(self, carrier_leg, dispatcher, socket):
        """Test tool calls are reported and queued"""
        on_tool_call = AsyncMock()
        bridge = make_bridge(carrier_leg, dispatcher, socket, on_tool_call=on_tool_call)

        await bridge.handle_event({
            "type": "response.function_call_arguments.done",
            "call_id": "call-1",
            "name": "snooze_reminder",
            "arguments": '{"snoozeMinutes": 30}',
        })

        on_tool_call.assert_awaited_once_with("snooze_reminder", {"snoozeMinutes": 30})
        dispatcher.submit.assert_awaited_once_with("call-1", "snooze_reminder", '{"snoozeMinutes": 30}')

    @pytest.mark.asyncio
    async def test_function_call_without_id_ignored(self, carrier_leg, dispatcher, socket):
        """Test incomplete tool call events are dropped"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)

        await bridge.handle_event({"type": "response.function_call_arguments.done", "name": "pause_reminder"})

        dispatcher.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transcript_forwarded(self, carrier_leg, dispatcher, socket):
        """Test user transcripts reach the callback"""
        on_transcript = AsyncMock()
        bridge = make_bridge(carrier_leg, dispatcher, socket, on_transcript=on_transcript)

        await bridge.handle_event({
            "type": "conversation.item.input_audio_transcription.completed",
            "transcript": "I feel so lonely today",
        })

        on_transcript.assert_awaited_once_with("I feel so lonely today")

    @pytest.mark.asyncio
    async def test_tool_result_sent_with_response_request(self, carrier_leg, dispatcher, socket):
        """Test a tool result is followed by response.create"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)
        await bridge.connect()

        await bridge._send_tool_result("call-1", "pause_reminder", {"success": True})

        output, follow_up = socket.sent[-2:]
        assert output["item"]["type"] == "function_call_output"
        assert output["item"]["call_id"] == "call-1"
        assert json.loads(output["item"]["output"]) == {"success": True}
        assert follow_up == {"type": "response.create"}
        await bridge.close()

    @pytest.mark.asyncio
    async def test_inject_system_message(self, carrier_leg, dispatcher, socket):
        """Test injected notices are system messages"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)
        await bridge.connect()

        assert await bridge.inject_system_message("Wrap up now")

        item = socket.sent[-2]["item"]
        assert item["role"] == "system"
        assert item["content"][0]["text"] == "Wrap up now"
        await bridge.close()

    @pytest.mark.asyncio
    async def test_send_before_connect_refused(self, carrier_leg, dispatcher, socket):
        """Test audio is not sent while disconnected"""
        bridge = make_bridge(carrier_leg, dispatcher, socket)

        assert not await bridge.send_audio(b"\x7f" * 160)
        assert socket.sent == []


class TestTeardown:
    """Tests for close and unexpected drops"""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, carrier_leg, dispatcher, socket):
        """Test closing twice tears down once"""
        on_closed = AsyncMock()
        bridge = make_bridge(carrier_leg, dispatcher, socket, on_closed=on_closed)
        await bridge.connect()

        await bridge.close()
        await bridge.close()

        assert socket.closed
        assert bridge.state == BridgeState.CLOSED
        dispatcher.close.assert_awaited_once()
        on_closed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_drop_reported_as_unexpected(self, carrier_leg, dispatcher, socket):
        """Test a provider-side close triggers on_closed(True)"""
        on_closed = AsyncMock()
        bridge = make_bridge(carrier_leg, dispatcher, socket, on_closed=on_closed)
        await bridge.connect()

        socket.drop()
        await asyncio.wait_for(bridge._receive_task, timeout=1)

        on_closed.assert_awaited_once_with(True)
        await bridge.close()
