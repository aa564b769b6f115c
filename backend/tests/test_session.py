"""
Unit tests for the session controller.

Tests cover:
- start / view / stop lifecycle and failure paths
- ERROR and STRATEGY_STOP handling
- Stale envelope rejection
- Mirror write-through and strategy switching
"""

import asyncio

import pytest

from strategyflow.config import SessionConfig
from strategyflow.control_client import ControlPlaneError
from strategyflow.envelopes import parse_envelope
from strategyflow.reducer import fold, initial_state
from strategyflow.session import SessionController
from strategyflow.state_machine import SessionPhase
from strategyflow.transport import ChannelError


@pytest.fixture
def controller(fake_transport, fake_control, mirror):
    return SessionController(fake_transport, fake_control, mirror=mirror, log_buffer_limit=10)


class TestStart:
    """Test starting sessions."""

    @pytest.mark.asyncio
    async def test_start_runs_two_phase_handshake(self, controller, fake_transport, fake_control, session_config):
        assert await controller.start(session_config)

        fake_control.create_session_id.assert_awaited_once_with(session_config)
        fake_transport.open_channel.assert_awaited_once_with("sess-1")
        fake_control.start_session.assert_awaited_once_with(session_config, "sess-1")

        state = controller.snapshot
        assert state.phase == SessionPhase.RUNNING
        assert state.running
        assert state.session_id == "sess-1"
        assert state.strategy_class == "SMACrossover"
        assert not state.async_mode
        assert state.started_at is not None
        assert controller.get_stats()["sessions_started"] == 1

    @pytest.mark.asyncio
    async def test_instant_speed_sets_async_mode(self, controller):
        config = SessionConfig(strategy_class="SMACrossover", speed="INSTANT", show_chart=False)
        assert await controller.start(config)
        assert controller.snapshot.async_mode
        assert not controller.snapshot.chart_visible

    @pytest.mark.asyncio
    async def test_start_without_strategy_class_refused(self, controller, fake_control):
        assert not await controller.start(SessionConfig())
        assert controller.phase == SessionPhase.IDLE
        fake_control.create_session_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_control_plane_failure_sets_errored(self, controller, fake_control, fake_transport, session_config):
        fake_control.create_session_id.side_effect = ControlPlaneError("503 unavailable", status=503)

        assert not await controller.start(session_config)

        state = controller.snapshot
        assert state.phase == SessionPhase.ERRORED
        assert not state.running
        assert "503 unavailable" in state.error_message
        fake_transport.open_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_channel_failure_sets_errored(self, controller, fake_transport, fake_control, session_config):
        fake_transport.open_channel.side_effect = ChannelError("refused")

        assert not await controller.start(session_config)
        assert controller.phase == SessionPhase.ERRORED
        assert "refused" in controller.snapshot.error_message
        fake_control.start_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_start_failure_closes_channel(self, controller, fake_transport, fake_control, session_config):
        fake_control.start_session.side_effect = ControlPlaneError("bad config", status=400)

        assert not await controller.start(session_config)
        assert controller.phase == SessionPhase.ERRORED
        assert fake_transport.channels[0].closed
        assert controller.channel is None

    @pytest.mark.asyncio
    async def test_first_envelope_marks_running(self, controller, fake_transport, fake_control, session_config, bar):
        """An envelope arriving before the start acknowledgement moves to RUNNING."""
        phases = []

        async def start_session(config, session_id):
            await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))
            phases.append(controller.phase)

        fake_control.start_session.side_effect = start_session

        assert await controller.start(session_config)
        assert phases == [SessionPhase.RUNNING]
        assert len(controller.snapshot.candles) == 1

    @pytest.mark.asyncio
    async def test_start_clears_previous_session(self, controller, fake_transport, session_config, bar):
        await controller.start(session_config)
        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))

        await controller.start(session_config)

        assert len(controller.snapshot.candles) == 0
        assert fake_transport.channels[0].closed
        assert controller.phase == SessionPhase.RUNNING

    @pytest.mark.asyncio
    async def test_stop_during_start_supersedes(self, controller, fake_transport, fake_control, session_config):
        gate = asyncio.Event()

        async def slow_id(config):
            await gate.wait()
            return "sess-slow"

        fake_control.create_session_id.side_effect = slow_id
        task = asyncio.create_task(controller.start(session_config))
        await asyncio.sleep(0)

        assert controller.phase == SessionPhase.STARTING
        assert await controller.stop()
        gate.set()

        assert not await task
        assert controller.phase == SessionPhase.STOPPED
        fake_transport.open_channel.assert_not_awaited()


class TestLifecycleEnvelopes:
    """Test ERROR and STRATEGY_STOP."""

    @pytest.mark.asyncio
    async def test_error_envelope_closes_channel(self, controller, fake_transport, session_config):
        await controller.start(session_config)
        channel = fake_transport.channels[0]

        await channel.push(parse_envelope({"type": "ERROR", "message": "Strategy crashed"}))

        state = controller.snapshot
        assert state.phase == SessionPhase.ERRORED
        assert not state.running
        assert state.error_message == "Strategy crashed"
        assert channel.closed
        assert controller.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_stale_envelopes_after_error_ignored(self, controller, fake_transport, session_config, bar, trade):
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await channel.push(bar(100, high=2, low=1, close=1.5))
        await channel.push(parse_envelope({"type": "ERROR", "message": "boom"}))

        before = controller.snapshot
        # Frames already queued when the channel closed
        await channel.envelope_callback(bar(200, high=2, low=1, close=1.5))
        await channel.envelope_callback(trade("OPEN", "late", entryPrice=1, openTime=1))
        await controller.handle_envelope(bar(300, high=2, low=1, close=1.5))

        assert controller.snapshot is before
        assert len(controller.snapshot.candles) == 1
        assert len(controller.snapshot.ledger) == 0
        assert controller.get_stats()["envelopes_dropped_stale"] == 3

    @pytest.mark.asyncio
    async def test_strategy_stop(self, controller, fake_transport):
        await controller.start(SessionConfig(strategy_class="SMACrossover", speed="INSTANT"))
        assert controller.snapshot.async_mode

        await fake_transport.channels[0].push(parse_envelope({"type": "STRATEGY_STOP"}))

        state = controller.snapshot
        assert state.phase == SessionPhase.STOPPED
        assert not state.async_mode
        assert state.error_message is None
        assert fake_transport.channels[0].closed

    @pytest.mark.asyncio
    async def test_unexpected_close_is_transport_fault(self, controller, fake_transport, session_config):
        await controller.start(session_config)
        await fake_transport.channels[0].drop(ConnectionError("reset by peer"))

        state = controller.snapshot
        assert state.phase == SessionPhase.ERRORED
        assert "reset by peer" in state.error_message
        assert controller.channel is None

    @pytest.mark.asyncio
    async def test_close_after_stop_ignored(self, controller, fake_transport, session_config):
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await controller.stop()

        await channel.close_callback(None)
        assert controller.phase == SessionPhase.STOPPED
        assert controller.snapshot.error_message is None

    @pytest.mark.asyncio
    async def test_invalid_frames_counted(self, controller, session_config):
        await controller.start(session_config)
        await controller.handle_frame("{garbage")
        await controller.handle_frame('{"type": "NOPE"}')

        assert controller.get_stats()["envelopes_dropped_invalid"] == 2
        assert controller.phase == SessionPhase.RUNNING

    @pytest.mark.asyncio
    async def test_malformed_bar_dropped_session_keeps_running(self, controller, fake_transport, session_config, bar):
        """A bar with low above high is dropped; the session and its chart are untouched."""
        await controller.start(session_config)
        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))
        before = controller.snapshot

        await controller.handle_frame({"type": "BAR", "bar": {"openTime": 160, "open": 1, "high": 1, "low": 2, "close": 1}})

        assert controller.phase == SessionPhase.RUNNING
        assert controller.snapshot is before
        assert controller.get_stats()["envelopes_dropped_invalid"] == 1
        assert not fake_transport.channels[0].closed

    @pytest.mark.asyncio
    async def test_fold_failure_dropped(self, controller, fake_transport, session_config, bar, monkeypatch):
        """An envelope whose fold raises is counted and dropped without ending the session."""
        await controller.start(session_config)
        before = controller.snapshot

        def broken_fold(state, envelope):
            raise RuntimeError("fold exploded")

        monkeypatch.setattr("strategyflow.session.fold", broken_fold)
        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))

        stats = controller.get_stats()
        assert controller.phase == SessionPhase.RUNNING
        assert controller.snapshot.candles == before.candles
        assert stats["envelopes_dropped_invalid"] == 1
        assert stats["envelopes_folded"] == 0


class TestStopAndView:
    """Test stopping and attaching."""

    @pytest.mark.asyncio
    async def test_stop(self, controller, fake_transport, fake_control, session_config):
        await controller.start(session_config)
        assert await controller.stop()

        assert controller.phase == SessionPhase.STOPPED
        assert fake_transport.channels[0].closed
        fake_control.stop_session.assert_awaited_once_with("sess-1")

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, controller, fake_control):
        assert not await controller.stop()
        fake_control.stop_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_stop_failure_is_best_effort(self, controller, fake_control, session_config):
        fake_control.stop_session.side_effect = ControlPlaneError("gone")
        await controller.start(session_config)

        assert await controller.stop()
        assert controller.phase == SessionPhase.STOPPED
        assert controller.snapshot.error_message is None

    @pytest.mark.asyncio
    async def test_view_attaches_without_remote_start(self, controller, fake_transport, fake_control, bar):
        assert await controller.view("live-7", strategy_class="Breakout")

        fake_control.create_session_id.assert_not_awaited()
        fake_control.start_session.assert_not_awaited()
        assert controller.phase == SessionPhase.RUNNING
        assert controller.snapshot.session_id == "live-7"

        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))
        assert len(controller.snapshot.candles) == 1

        await controller.stop()
        fake_control.stop_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_view_failure(self, controller, fake_transport):
        fake_transport.open_channel.side_effect = ChannelError("no route")
        assert not await controller.view("live-7")
        assert controller.phase == SessionPhase.ERRORED


class TestMirroring:
    """Test write-through and rehydration."""

    @pytest.mark.asyncio
    async def test_folds_written_through(self, controller, fake_transport, mirror, session_config, bar, trade):
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await channel.push(bar(100, high=2, low=1, close=1.5))
        await channel.push(trade("OPEN", "t1", entryPrice=10, openTime=100))
        await channel.push(parse_envelope({"type": "LOG", "message": "not mirrored", "time": 1}))

        restored = mirror.rehydrate("SMACrossover")
        assert len(restored.candles) == 1
        assert restored.ledger.get("t1").display_seq == 1
        assert restored.account is None

    @pytest.mark.asyncio
    async def test_forming_candle_written_when_next_opens(self, controller, fake_transport, mirror, session_config, bar):
        """Ticks on the forming candle reach the mirror once the next candle opens."""
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await channel.push(bar(100, high=2, low=1, close=1.5))
        writes = mirror.get_stats()["writes"]

        await channel.push(bar(100, high=3, low=1, close=2.5))
        await channel.push(bar(100, high=4, low=1, close=3.5))
        assert mirror.get_stats()["writes"] == writes
        assert mirror.rehydrate("SMACrossover").candles.last.close == 1.5

        await channel.push(bar(160, high=4, low=3, close=3.5))
        restored = mirror.rehydrate("SMACrossover").candles
        assert [c.time for c in restored.candles] == [100, 160]
        assert restored.candles[0].high == 4
        assert restored.candles[0].close == 3.5

    @pytest.mark.asyncio
    async def test_pending_ticks_flushed_on_stop(self, controller, fake_transport, mirror, session_config, bar):
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await channel.push(bar(100, high=2, low=1, close=1.5))
        await channel.push(bar(100, high=3, low=1, close=2.5))

        await controller.stop()

        assert mirror.rehydrate("SMACrossover").candles.last.close == 2.5

    @pytest.mark.asyncio
    async def test_pending_ticks_flushed_on_strategy_stop(self, controller, fake_transport, mirror, session_config, bar):
        await controller.start(session_config)
        channel = fake_transport.channels[0]
        await channel.push(bar(100, high=2, low=1, close=1.5))
        await channel.push(bar(100, high=2, low=0.5, close=0.75))

        await channel.push(parse_envelope({"type": "STRATEGY_STOP"}))

        assert controller.phase == SessionPhase.STOPPED
        assert mirror.rehydrate("SMACrossover").candles.last.low == 0.5

    @pytest.mark.asyncio
    async def test_start_clears_mirror_and_remembers(self, controller, mirror, session_config, populated_mirror):
        await controller.start(session_config)
        assert mirror.rehydrate("SMACrossover").is_empty
        assert mirror.last_strategy() == "SMACrossover"
        assert controller.last_config("SMACrossover").model_dump() == session_config.model_dump()

    @pytest.mark.asyncio
    async def test_switch_strategy_rehydrates(self, controller, fake_transport, mirror, session_config, bar):
        await controller.start(session_config)
        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))

        await controller.switch_strategy("Other")
        assert controller.phase == SessionPhase.IDLE
        assert len(controller.snapshot.candles) == 0
        assert fake_transport.channels[0].closed

        state = await controller.switch_strategy("SMACrossover")
        assert state.strategy_class == "SMACrossover"
        assert len(state.candles) == 1
        assert mirror.last_strategy() == "SMACrossover"

    @pytest.mark.asyncio
    async def test_restore_last_strategy(self, controller, mirror):
        mirror.remember_strategy("Breakout")
        assert await controller.restore_last_strategy(["Other"]) is None

        state = await controller.restore_last_strategy(["Breakout", "Other"])
        assert state.strategy_class == "Breakout"

    @pytest.mark.asyncio
    async def test_listeners_receive_snapshots(self, controller, fake_transport, session_config, bar):
        seen = []
        controller.add_listener(lambda state: seen.append(state.phase))
        await controller.start(session_config)
        await fake_transport.channels[0].push(bar(100, high=2, low=1, close=1.5))

        assert seen[0] == SessionPhase.STARTING
        assert seen[-1] == SessionPhase.RUNNING


@pytest.fixture
def populated_mirror(mirror, bar):
    """Mirror holding a chart slice from an earlier run."""
    state = fold(initial_state("SMACrossover"), bar(100, high=2, low=1, close=1.5))
    mirror.persist(state)
    assert not mirror.rehydrate("SMACrossover").is_empty
    return mirror
