"""
Unit tests for the WebSocket strategy channel.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch
from websockets.exceptions import ConnectionClosedError, InvalidURI

from strategyflow.envelopes import EnvelopeParseError
from strategyflow.transport import ChannelError, WebSocketChannel, WebSocketTransport


class FakeWebSocket:
    """Async-iterable stand-in for a websockets connection."""

    def __init__(self, messages, error=None, hold_open=False):
        self.messages = list(messages)
        self.error = error
        self.hold_open = hold_open
        self.send = AsyncMock()
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            await asyncio.sleep(0)
            yield message
        if self.error is not None:
            raise self.error
        if self.hold_open:
            await asyncio.Event().wait()


def _frame(kind, **payload):
    return json.dumps({"type": kind, **payload})


BAR = _frame("BAR", bar={"openTime": 100, "high": 2, "low": 1, "close": 1.5})


class TestWebSocketChannel:
    """Test frame delivery and close semantics."""

    @pytest.mark.asyncio
    async def test_delivers_envelopes_then_reports_remote_close(self):
        received, closes = [], []
        channel = WebSocketChannel("s1", FakeWebSocket([BAR, _frame("STRATEGY_STOP")]))
        channel.on_envelope(received.append)
        channel.on_close(closes.append)

        await channel.listen()

        assert [e.type for e in received] == ["BAR", "STRATEGY_STOP"]
        assert closes == [None]
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_invalid_frames_dropped(self):
        received, invalid = [], []
        channel = WebSocketChannel("s1", FakeWebSocket(["{oops", _frame("MYSTERY"), BAR]))
        channel.on_envelope(received.append)
        channel.on_invalid(invalid.append)

        await channel.listen()

        assert len(received) == 1
        assert len(invalid) == 2
        assert all(isinstance(e, EnvelopeParseError) for e in invalid)
        assert channel.stats["invalid_frames"] == 2

    @pytest.mark.asyncio
    async def test_abnormal_close_passes_error(self):
        closes = []
        error = ConnectionClosedError(None, None)
        channel = WebSocketChannel("s1", FakeWebSocket([BAR], error=error))
        channel.on_close(closes.append)

        await channel.listen()

        assert closes == [error]

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self):
        received = []

        async def on_envelope(envelope):
            await asyncio.sleep(0)
            received.append(envelope)

        channel = WebSocketChannel("s1", FakeWebSocket([BAR]))
        channel.on_envelope(on_envelope)
        await channel.listen()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_close_from_callback_stops_delivery(self):
        """Closing inside a callback drops the frames behind it and reports no remote close."""
        received, closes = [], []
        websocket = FakeWebSocket([_frame("ERROR", message="boom"), BAR, BAR])
        channel = WebSocketChannel("s1", websocket)
        channel.on_close(closes.append)

        async def on_envelope(envelope):
            received.append(envelope)
            await channel.close()

        channel.on_envelope(on_envelope)
        channel.start()
        await asyncio.wait_for(channel._listen_task, timeout=1)

        assert [e.type for e in received] == ["ERROR"]
        assert closes == []
        websocket.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_cancels_listener(self):
        closes = []
        websocket = FakeWebSocket([], hold_open=True)
        channel = WebSocketChannel("s1", websocket)
        channel.on_close(closes.append)
        channel.start()
        await asyncio.sleep(0)

        await channel.close()
        await channel.close()

        assert channel._listen_task.done()
        assert closes == []
        websocket.close.assert_awaited_once()
        assert not channel.get_status().connected


class TestWebSocketTransport:
    """Test connecting and subscribing."""

    @pytest.mark.asyncio
    async def test_open_channel_subscribes(self):
        websocket = FakeWebSocket([], hold_open=True)
        transport = WebSocketTransport("ws://engine.test/ws/v1/strategy-events", api_token="tok")

        with patch("strategyflow.transport.websockets.connect", new=AsyncMock(return_value=websocket)) as connect:
            channel = await transport.open_channel("sess-9")

        connect.assert_awaited_once()
        args, kwargs = connect.call_args
        assert args[0] == "ws://engine.test/ws/v1/strategy-events"
        assert kwargs["additional_headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["ping_interval"] == 25
        websocket.send.assert_awaited_once_with("STRATEGY:sess-9")
        assert channel.session_id == "sess-9"
        assert channel.is_open

        await channel.close()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_channel_error(self):
        transport = WebSocketTransport("ws://engine.test/ws/v1/strategy-events")

        with patch("strategyflow.transport.websockets.connect", new=AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(ChannelError, match="refused"):
                await transport.open_channel("sess-9")

    @pytest.mark.asyncio
    async def test_invalid_uri_raises_channel_error(self):
        transport = WebSocketTransport("http://not-a-websocket")

        with patch(
            "strategyflow.transport.websockets.connect",
            new=AsyncMock(side_effect=InvalidURI("http://not-a-websocket", "scheme isn't ws or wss")),
        ):
            with pytest.raises(ChannelError):
                await transport.open_channel("sess-9")
