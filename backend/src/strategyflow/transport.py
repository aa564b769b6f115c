"""
Strategy event channel over WebSocket.

One channel per session: the client connects to the engine's
``/strategy-events`` endpoint, subscribes with ``STRATEGY:<session_id>`` and
then receives JSON envelopes until either side closes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosedError, WebSocketException

from .envelopes import EnvelopeParseError, parse_envelope
from .models import ConnectionStatus

logger = logging.getLogger(__name__)

SUBSCRIBE_PREFIX = "STRATEGY:"

Callback = Callable[..., Union[None, Awaitable[None]]]


class ChannelError(Exception):
    """Raised when a strategy channel cannot be opened or used."""
    pass


class Channel(Protocol):
    session_id: str

    def on_envelope(self, callback: Callback) -> None:
        ...

    def on_close(self, callback: Callback) -> None:
        ...

    async def close(self) -> None:
        ...


class Transport(Protocol):
    async def open_channel(self, session_id: str) -> Channel:
        ...


async def _invoke(callback: Optional[Callback], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


class WebSocketChannel:
    """
    A subscribed strategy event stream.

    Callbacks:
    - ``on_envelope(envelope)``: every frame that parses into a known envelope
    - ``on_invalid(error)``: frames that fail to parse (the frame is dropped)
    - ``on_close(error)``: the connection ended without ``close()`` being
      called; ``error`` is None for a clean remote close

    Nothing is delivered after ``close()``.
    """

    def __init__(self, session_id: str, websocket):
        self.session_id = session_id
        self.websocket = websocket
        self._envelope_callback: Optional[Callback] = None
        self._invalid_callback: Optional[Callback] = None
        self._close_callback: Optional[Callback] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._closed = False
        self.connected_at = datetime.now()
        self.stats = {
            "frames_received": 0,
            "envelopes_delivered": 0,
            "invalid_frames": 0,
        }

    @property
    def is_open(self) -> bool:
        return not self._closed

    def on_envelope(self, callback: Callback) -> None:
        self._envelope_callback = callback

    def on_invalid(self, callback: Callback) -> None:
        self._invalid_callback = callback

    def on_close(self, callback: Callback) -> None:
        self._close_callback = callback

    def start(self) -> None:
        """Start the listener task."""
        if self._listen_task is None:
            self._listen_task = asyncio.create_task(self.listen())

    async def handle_message(self, message: Union[str, bytes]) -> None:
        self.stats["frames_received"] += 1
        try:
            envelope = parse_envelope(message)
        except EnvelopeParseError as e:
            self.stats["invalid_frames"] += 1
            logger.warning(f"Dropping invalid frame on {self.session_id}: {e}")
            await _invoke(self._invalid_callback, e)
            return

        self.stats["envelopes_delivered"] += 1
        await _invoke(self._envelope_callback, envelope)

    async def listen(self) -> None:
        """Deliver frames until the connection ends or the channel is closed."""
        error: Optional[Exception] = None
        try:
            logger.info(f"Listening for strategy events on {self.session_id}")
            async for message in self.websocket:
                if self._closed:
                    break
                await self.handle_message(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedError as e:
            logger.warning(f"Strategy channel {self.session_id} closed abnormally: {e}")
            error = e
        except WebSocketException as e:
            logger.error(f"Strategy channel {self.session_id} error: {e}")
            error = e
        except Exception as e:
            logger.error(f"Unexpected error in strategy channel listener: {e}")
            error = e

        if self._closed:
            return

        self._closed = True
        logger.info(f"Strategy channel {self.session_id} ended by remote")
        await _invoke(self._close_callback, error)

    async def close(self) -> None:
        """Close the channel. Safe to call more than once and from a callback."""
        if self._closed and self.websocket is None:
            return
        self._closed = True

        task = self._listen_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.websocket is not None:
            try:
                await self.websocket.close()
            except WebSocketException as e:
                logger.debug(f"Error while closing channel {self.session_id}: {e}")
            self.websocket = None

        logger.info(f"Closed strategy channel {self.session_id}")

    def get_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self.is_open,
            session_id=self.session_id,
            last_connected=self.connected_at,
        )


class WebSocketTransport:
    """Opens strategy channels against the engine's WebSocket endpoint."""

    def __init__(
        self,
        events_url: str,
        api_token: Optional[str] = None,
        ping_interval: int = 25,
        ping_timeout: int = 15,
        close_timeout: int = 10,
        max_size: int = 2**24,
    ):
        self.events_url = events_url
        self.api_token = api_token
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.close_timeout = close_timeout
        self.max_size = max_size

    def _headers(self) -> Dict[str, Any]:
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        return {}

    async def open_channel(self, session_id: str) -> WebSocketChannel:
        """
        Connect and subscribe to ``session_id``.

        The listener starts on the next loop iteration, so callbacks
        registered right after this returns see every frame.

        Raises:
            ChannelError: connection or subscription failed
        """
        try:
            logger.info(f"Connecting to strategy events: {self.events_url}")
            websocket = await websockets.connect(
                self.events_url,
                additional_headers=self._headers(),
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                close_timeout=self.close_timeout,
                max_size=self.max_size,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to strategy events: {e}")
            raise ChannelError(f"Failed to connect to {self.events_url}: {e}") from e

        try:
            await websocket.send(f"{SUBSCRIBE_PREFIX}{session_id}")
        except WebSocketException as e:
            await websocket.close()
            logger.error(f"Failed to subscribe to {session_id}: {e}")
            raise ChannelError(f"Failed to subscribe to {session_id}: {e}") from e

        channel = WebSocketChannel(session_id, websocket)
        channel.start()
        logger.info(f"Subscribed to strategy {session_id}")
        return channel
