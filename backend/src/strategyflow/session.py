"""
Session controller.

Owns one strategy session at a time: drives the lifecycle through the
control plane and the event channel, folds every envelope into the session
state, and writes mirrored slices through to the durable mirror.

Lifecycle rules:
- ERROR from the engine moves the session to ERRORED and always closes the
  channel.
- STRATEGY_STOP moves it to STOPPED, clears async mode and closes the channel.
- A channel that ends on its own while the session is active is a transport
  fault and moves the session to ERRORED.
- Envelopes from a channel that is no longer current, or that arrive while
  the session is not starting or running, are dropped.

No public method raises: control plane and transport failures become the
ERRORED phase with a user-visible ``error_message``.
"""

import functools
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import SessionConfig
from .control_client import ControlPlane, ControlPlaneError
from .envelopes import EnvelopeKind, EnvelopeParseError, envelope_kind, parse_envelope
from .mirror import DurableMirror
from .reducer import MIRRORED_SLICES, SessionState, fold, initial_state
from .state_machine import SessionPhase, SessionStateMachine
from .transport import Channel, ChannelError, Transport

logger = logging.getLogger(__name__)


class SessionController:
    """
    Runs strategy sessions and keeps their reconstructed state.

    Consumers read ``snapshot`` (an immutable SessionState) and may register
    listeners that are called with each new snapshot.
    """

    def __init__(
        self,
        transport: Transport,
        control_plane: ControlPlane,
        mirror: Optional[DurableMirror] = None,
        log_buffer_limit: int = 1000,
    ):
        self._transport = transport
        self._control = control_plane
        self._mirror = mirror
        self._log_buffer_limit = log_buffer_limit

        self._machine = SessionStateMachine()
        self._state = initial_state(log_buffer_limit=log_buffer_limit)
        self._channel: Optional[Channel] = None
        self._owns_session = False
        self._chart_dirty = False
        # Bumped on every start/stop/reset so an in-flight start can tell it was superseded
        self._generation = 0
        self._listeners: List[Callable[[SessionState], None]] = []

        self.stats = {
            "envelopes_received": 0,
            "envelopes_folded": 0,
            "envelopes_dropped_stale": 0,
            "envelopes_dropped_invalid": 0,
            "envelopes_by_kind": {},
            "sessions_started": 0,
            "sessions_stopped": 0,
            "errors": 0,
            "last_envelope_time": None,
        }

    # Read side

    @property
    def snapshot(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._machine.current_phase

    @property
    def state_machine(self) -> SessionStateMachine:
        return self._machine

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    def add_listener(self, callback: Callable[[SessionState], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats["envelopes_by_kind"] = dict(self.stats["envelopes_by_kind"])
        stats["phase"] = self.phase.value
        stats["session_id"] = self._state.session_id
        stats["strategy_class"] = self._state.strategy_class
        stats["channel_open"] = self._channel is not None
        if self._mirror is not None:
            stats["mirror"] = self._mirror.get_stats()
        return stats

    # Phase handling

    def _transition(self, phase: SessionPhase, context: str, **fields) -> bool:
        if not self._machine.transition_to(phase, context):
            return False
        self._state = replace(self._state, phase=phase, **fields)
        return True

    def _reset(self, strategy_class: Optional[str], chart_visible: bool = True) -> None:
        self._generation += 1
        self._chart_dirty = False
        self._state = replace(
            initial_state(strategy_class, chart_visible=chart_visible, log_buffer_limit=self._log_buffer_limit),
            phase=self._machine.current_phase,
        )

    def _attach(self, channel: Channel) -> None:
        self._channel = channel
        channel.on_envelope(functools.partial(self._on_channel_envelope, channel))
        channel.on_close(functools.partial(self._on_channel_close, channel))
        on_invalid = getattr(channel, "on_invalid", None)
        if on_invalid is not None:
            on_invalid(self._on_channel_invalid)

    async def _close_channel(self) -> None:
        channel = self._channel
        self._channel = None
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning(f"Error closing channel for {channel.session_id}: {e}")

    async def _fail(self, message: str) -> None:
        """Move to ERRORED with ``message`` and drop the channel."""
        self.stats["errors"] += 1
        logger.error(f"Session {self._state.session_id} failed: {message}")
        self._flush_chart()
        if not self._transition(SessionPhase.ERRORED, message, error_message=message, async_mode=False):
            self._state = replace(self._state, error_message=message)
        await self._close_channel()
        self._notify()

    def _persist(self, kind: EnvelopeKind, previous: SessionState, state: SessionState) -> None:
        """Write the slice ``kind`` touched through to the mirror."""
        slice_name = MIRRORED_SLICES.get(kind)
        if slice_name is None or self._mirror is None:
            return

        # Ticks on the forming candle are only written once the next candle opens
        if kind == EnvelopeKind.BAR and len(state.candles) == len(previous.candles):
            self._chart_dirty = True
            return

        self._mirror.persist(state, (slice_name,))
        if slice_name == "chart":
            self._chart_dirty = False

    def _flush_chart(self) -> None:
        if self._chart_dirty and self._mirror is not None:
            self._mirror.persist(self._state, ("chart",))
        self._chart_dirty = False

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._machine.current_phase == SessionPhase.STARTING

    # Commands

    async def start(self, config: SessionConfig) -> bool:
        """
        Start a new run of ``config.strategy_class``.

        Any active session is stopped first and all session state (including
        the mirrored slices for the strategy class) is cleared.

        Returns:
            True if the engine accepted the run
        """
        if not config.strategy_class:
            logger.warning("Cannot start a session without a strategy class")
            return False

        if self._machine.is_active:
            await self.stop()

        strategy_class = config.strategy_class
        self._reset(strategy_class, chart_visible=config.show_chart or not config.is_async)
        generation = self._generation
        self._owns_session = True

        if self._mirror is not None:
            self._mirror.clear(strategy_class)
            self._mirror.remember_strategy(strategy_class)
            self._mirror.save_config(config)

        if not self._transition(
            SessionPhase.STARTING,
            f"Starting {strategy_class}",
            async_mode=config.is_async,
            started_at=time.time(),
            error_message=None,
        ):
            return False
        self.stats["sessions_started"] += 1
        self._notify()

        try:
            session_id = await self._control.create_session_id(config)
            if not self._is_current(generation):
                logger.info(f"Start of {strategy_class} superseded before subscribing")
                return False
            self._state = replace(self._state, session_id=session_id)

            channel = await self._transport.open_channel(session_id)
            if not self._is_current(generation):
                logger.info(f"Start of {strategy_class} superseded while connecting")
                await channel.close()
                return False
            self._attach(channel)

            await self._control.start_session(config, session_id)
        except ControlPlaneError as e:
            await self._fail(f"Failed to start strategy: {e}")
            return False
        except ChannelError as e:
            await self._fail(f"Failed to connect to strategy events: {e}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error starting {strategy_class}")
            await self._fail(f"Failed to start strategy: {e}")
            return False

        if generation != self._generation:
            return False
        if self._machine.current_phase == SessionPhase.STARTING:
            self._transition(SessionPhase.RUNNING, "Start acknowledged")
            self._notify()
        return self._machine.current_phase != SessionPhase.ERRORED

    async def view(self, session_id: str, strategy_class: Optional[str] = None) -> bool:
        """
        Attach to a strategy that is already running (e.g. a live strategy).

        Nothing is started remotely and ``stop`` only detaches.
        """
        if self._machine.is_active:
            await self.stop()

        self._reset(strategy_class)
        generation = self._generation
        self._owns_session = False

        if not self._transition(
            SessionPhase.STARTING,
            f"Attaching to {session_id}",
            session_id=session_id,
            started_at=time.time(),
            error_message=None,
        ):
            return False

        try:
            channel = await self._transport.open_channel(session_id)
        except ChannelError as e:
            await self._fail(f"Failed to connect to strategy events: {e}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error attaching to {session_id}")
            await self._fail(f"Failed to connect to strategy events: {e}")
            return False

        if not self._is_current(generation):
            await channel.close()
            return False

        self._attach(channel)
        self._transition(SessionPhase.RUNNING, f"Attached to {session_id}")
        self._notify()
        return True

    async def stop(self) -> bool:
        """
        Stop the active session.

        The channel is closed first; the remote stop is best effort.

        Returns:
            False if there was no active session
        """
        if not self._machine.is_active:
            logger.debug("Stop requested with no active session")
            return False

        session_id = self._state.session_id
        self._generation += 1
        self._transition(SessionPhase.STOPPED, "Stopped by client", async_mode=False)
        self._flush_chart()
        self.stats["sessions_stopped"] += 1
        await self._close_channel()

        if session_id and self._owns_session:
            try:
                await self._control.stop_session(session_id)
            except ControlPlaneError as e:
                logger.warning(f"Remote stop for {session_id} failed: {e}")
            except Exception as e:
                logger.warning(f"Remote stop for {session_id} failed unexpectedly: {e}")

        self._notify()
        return True

    async def switch_strategy(self, strategy_class: str) -> SessionState:
        """
        Select ``strategy_class``: stop any active session, reset, then show
        whatever the mirror holds for that class.
        """
        if self._machine.is_active:
            await self.stop()

        self._transition(SessionPhase.IDLE, f"Switched to {strategy_class}", error_message=None)
        self._reset(strategy_class)

        if self._mirror is not None:
            self._mirror.remember_strategy(strategy_class)
            persisted = self._mirror.rehydrate(strategy_class)
            self._state = persisted.apply_to(self._state)

        logger.info(f"Switched to strategy {strategy_class}")
        self._notify()
        return self._state

    async def restore_last_strategy(self, available: Optional[List[str]] = None) -> Optional[SessionState]:
        """Switch to the last strategy class used, if it is still available."""
        if self._mirror is None:
            return None
        last = self._mirror.last_strategy()
        if not last or (available is not None and last not in available):
            return None
        return await self.switch_strategy(last)

    def last_config(self, strategy_class: str) -> Optional[SessionConfig]:
        if self._mirror is None:
            return None
        return self._mirror.load_config(strategy_class)

    # Inbound events

    async def _on_channel_envelope(self, channel: Channel, envelope) -> None:
        if channel is not self._channel:
            self.stats["envelopes_received"] += 1
            self.stats["envelopes_dropped_stale"] += 1
            logger.debug(f"Dropping envelope from stale channel {channel.session_id}")
            return
        await self.handle_envelope(envelope)

    def _on_channel_invalid(self, error: EnvelopeParseError) -> None:
        self.stats["envelopes_received"] += 1
        self.stats["envelopes_dropped_invalid"] += 1

    async def _on_channel_close(self, channel: Channel, error: Optional[Exception]) -> None:
        if channel is not self._channel:
            return
        self._channel = None
        if self._machine.is_active:
            reason = str(error) if error else "closed by server"
            await self._fail(f"Connection to strategy lost: {reason}")

    async def handle_frame(self, message) -> None:
        """Parse a raw frame and handle it. Invalid frames are logged and dropped."""
        try:
            envelope = parse_envelope(message)
        except EnvelopeParseError as e:
            self.stats["envelopes_received"] += 1
            self.stats["envelopes_dropped_invalid"] += 1
            logger.warning(f"Dropping invalid envelope: {e}")
            return
        await self.handle_envelope(envelope)

    async def handle_envelope(self, envelope) -> None:
        """Route one envelope: lifecycle kinds here, data kinds to the reducer."""
        kind = envelope_kind(envelope)
        self.stats["envelopes_received"] += 1
        self.stats["last_envelope_time"] = datetime.now()
        by_kind = self.stats["envelopes_by_kind"]
        by_kind[kind.value] = by_kind.get(kind.value, 0) + 1

        if not self._machine.is_active:
            self.stats["envelopes_dropped_stale"] += 1
            logger.debug(f"Dropping {kind.value} envelope in phase {self.phase.value}")
            return

        if self._machine.current_phase == SessionPhase.STARTING:
            self._transition(SessionPhase.RUNNING, f"First envelope ({kind.value})")

        if kind == EnvelopeKind.ERROR:
            await self._fail(envelope.message)
            return

        if kind == EnvelopeKind.STRATEGY_STOP:
            self._transition(SessionPhase.STOPPED, "Strategy stopped by engine", async_mode=False)
            self._flush_chart()
            self.stats["sessions_stopped"] += 1
            await self._close_channel()
            self._notify()
            return

        previous = self._state
        try:
            new_state = fold(previous, envelope)
        except Exception as e:
            self.stats["envelopes_dropped_invalid"] += 1
            logger.warning(f"Dropping {kind.value} envelope that failed to fold: {e}")
            return

        self.stats["envelopes_folded"] += 1
        if new_state is previous:
            return

        self._state = new_state
        self._persist(kind, previous, new_state)
        self._notify()

    async def shutdown(self) -> None:
        """Stop any active session and release the channel."""
        await self.stop()
        await self._close_channel()
