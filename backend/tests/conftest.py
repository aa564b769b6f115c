"""
Pytest configuration and shared fixtures for strategyflow tests.
"""

import os

# Set up test environment variables BEFORE any imports
# This ensures the config module loads properly during test collection
os.environ.update({
    "ENVIRONMENT": "test",
    "STRATEGYFLOW_API_URL": "http://engine.test/api/v1",
    "STRATEGYFLOW_WS_URL": "ws://engine.test/ws/v1",
})

import pytest
from unittest.mock import AsyncMock, MagicMock

from strategyflow.config import SessionConfig
from strategyflow.envelopes import parse_envelope
from strategyflow.mirror import DurableMirror, InMemoryStore


@pytest.fixture
def bar():
    """Build a BAR envelope."""
    def _bar(time, high, low, close, open=None, instrument="NAS100USD"):
        data = {"openTime": time, "high": high, "low": low, "close": close, "instrument": instrument}
        if open is not None:
            data["open"] = open
        return parse_envelope({"type": "BAR", "bar": data})
    return _bar


@pytest.fixture
def trade():
    """Build a TRADE envelope."""
    def _trade(action, trade_id, **fields):
        payload = {"id": trade_id}
        payload.update(fields)
        return parse_envelope({"type": "TRADE", "action": action, "trade": payload})
    return _trade


@pytest.fixture
def session_config():
    return SessionConfig(
        strategy_class="SMACrossover",
        initial_cash="10000",
        speed="NORMAL",
        period="M30",
        instrument_data={"internalSymbol": "NAS100USD"},
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def mirror(store):
    return DurableMirror(store, namespace="test", candle_max_points=100, equity_max_points=50)


class FakeChannel:
    """In-process stand-in for a WebSocketChannel."""

    def __init__(self, session_id):
        self.session_id = session_id
        self.envelope_callback = None
        self.close_callback = None
        self.invalid_callback = None
        self.closed = False
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self):
        self.closed = True

    def on_envelope(self, callback):
        self.envelope_callback = callback

    def on_close(self, callback):
        self.close_callback = callback

    def on_invalid(self, callback):
        self.invalid_callback = callback

    async def push(self, envelope):
        """Deliver an envelope the way the listener would."""
        if self.closed:
            return
        await self.envelope_callback(envelope)

    async def drop(self, error=None):
        """Simulate the remote side ending the connection."""
        self.closed = True
        await self.close_callback(error)


@pytest.fixture
def fake_transport():
    transport = MagicMock()
    transport.channels = []

    async def open_channel(session_id):
        channel = FakeChannel(session_id)
        transport.channels.append(channel)
        return channel

    transport.open_channel = AsyncMock(side_effect=open_channel)
    return transport


@pytest.fixture
def fake_control():
    control = MagicMock()
    control.create_session_id = AsyncMock(return_value="sess-1")
    control.start_session = AsyncMock(return_value={"status": "started"})
    control.stop_session = AsyncMock(return_value=None)
    return control
