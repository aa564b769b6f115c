"""
Session state aggregate and the envelope dispatch map.

``fold`` is a pure function: it takes the current SessionState and one parsed
envelope and returns the next SessionState. Each data envelope kind is routed
to exactly one slice fold through ``FOLDS``. Lifecycle envelopes (ERROR,
STRATEGY_STOP) are not folded here; the session controller owns the phase.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from .candles import CandleSeries, apply_bar, apply_bar_series
from .decimation import decimate
from .envelopes import (
    AccountEnvelope,
    AllIndicatorsEnvelope,
    AllTradesEnvelope,
    AnalysisEnvelope,
    BarEnvelope,
    BarSeriesEnvelope,
    EnvelopeKind,
    IndicatorEnvelope,
    LogEnvelope,
    ProgressEnvelope,
    TradeEnvelope,
    envelope_kind,
)
from .indicators import IndicatorSet, apply_all_indicators, apply_indicator_point
from .models import AccountSnapshot, AnalysisReport, Candle, EquityPoint, ProgressInfo
from .state_machine import ACTIVE_PHASES, SessionPhase
from .trackers import LogBuffer, apply_account, apply_analysis, apply_log, apply_progress
from .trade_ledger import TradeLedger, apply_all_trades, apply_trade

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Everything known about one strategy session."""
    strategy_class: Optional[str] = None
    session_id: Optional[str] = None
    phase: SessionPhase = SessionPhase.IDLE
    async_mode: bool = False
    chart_visible: bool = True
    started_at: Optional[float] = None
    error_message: Optional[str] = None

    candles: CandleSeries = field(default_factory=CandleSeries)
    ledger: TradeLedger = field(default_factory=TradeLedger)
    indicators: IndicatorSet = field(default_factory=IndicatorSet)
    account: Optional[AccountSnapshot] = None
    analysis: Optional[AnalysisReport] = None
    logs: LogBuffer = field(default_factory=LogBuffer)
    progress: Optional[ProgressInfo] = None

    @property
    def running(self) -> bool:
        return self.phase in ACTIVE_PHASES

    def equity_curve(self, max_points: int = 1000) -> List[EquityPoint]:
        """Decimated equity history of the latest analysis report."""
        if self.analysis is None:
            return []
        return decimate(self.analysis.equity_history, max_points)

    def chart_view(self, max_points: int = 5000) -> List[Candle]:
        return decimate(self.candles.candles, max_points)

    def summary(self) -> Dict[str, object]:
        return {
            "strategy_class": self.strategy_class,
            "session_id": self.session_id,
            "phase": self.phase.value,
            "running": self.running,
            "candles": len(self.candles),
            "trades": len(self.ledger),
            "indicators": len(self.indicators.names),
            "equity": self.account.equity if self.account else None,
            "logs": len(self.logs),
            "progress": self.progress.percent_complete if self.progress else None,
            "error": self.error_message,
        }


def initial_state(
    strategy_class: Optional[str] = None,
    chart_visible: bool = True,
    log_buffer_limit: int = 0,
) -> SessionState:
    """An empty session for ``strategy_class`` with every slice cleared."""
    return SessionState(
        strategy_class=strategy_class,
        chart_visible=chart_visible,
        logs=LogBuffer(limit=log_buffer_limit),
    )


def _fold_bar(state: SessionState, envelope: BarEnvelope) -> SessionState:
    return replace(state, candles=apply_bar(state.candles, envelope.bar.to_candle()))


def _fold_bar_series(state: SessionState, envelope: BarSeriesEnvelope) -> SessionState:
    if not state.chart_visible:
        return state
    return replace(state, candles=apply_bar_series(state.candles, envelope.to_candles()))


def _fold_trade(state: SessionState, envelope: TradeEnvelope) -> SessionState:
    ledger = apply_trade(state.ledger, envelope.trade, envelope.action)
    if ledger is state.ledger:
        return state
    return replace(state, ledger=ledger)


def _fold_all_trades(state: SessionState, envelope: AllTradesEnvelope) -> SessionState:
    return replace(state, ledger=apply_all_trades(state.ledger, envelope.trades))


def _fold_indicator(state: SessionState, envelope: IndicatorEnvelope) -> SessionState:
    indicators = apply_indicator_point(state.indicators, envelope.indicator_name, envelope.value)
    if indicators is state.indicators:
        return state
    return replace(state, indicators=indicators)


def _fold_all_indicators(state: SessionState, envelope: AllIndicatorsEnvelope) -> SessionState:
    return replace(state, indicators=apply_all_indicators(state.indicators, envelope.indicators))


def _fold_account(state: SessionState, envelope: AccountEnvelope) -> SessionState:
    return replace(state, account=apply_account(state.account, envelope))


def _fold_analysis(state: SessionState, envelope: AnalysisEnvelope) -> SessionState:
    return replace(state, analysis=apply_analysis(state.analysis, envelope))


def _fold_log(state: SessionState, envelope: LogEnvelope) -> SessionState:
    return replace(state, logs=apply_log(state.logs, envelope))


def _fold_progress(state: SessionState, envelope: ProgressEnvelope) -> SessionState:
    return replace(state, progress=apply_progress(state.progress, envelope))


FOLDS: Dict[EnvelopeKind, Callable[[SessionState, object], SessionState]] = {
    EnvelopeKind.BAR: _fold_bar,
    EnvelopeKind.BAR_SERIES: _fold_bar_series,
    EnvelopeKind.TRADE: _fold_trade,
    EnvelopeKind.ALL_TRADES: _fold_all_trades,
    EnvelopeKind.INDICATOR: _fold_indicator,
    EnvelopeKind.ALL_INDICATORS: _fold_all_indicators,
    EnvelopeKind.ACCOUNT: _fold_account,
    EnvelopeKind.ASYNC_ACCOUNT: _fold_account,
    EnvelopeKind.ANALYSIS: _fold_analysis,
    EnvelopeKind.LIVE_ANALYSIS: _fold_analysis,
    EnvelopeKind.LOG: _fold_log,
    EnvelopeKind.PROGRESS: _fold_progress,
}

# Mirror slice written after each data kind is folded
MIRRORED_SLICES: Dict[EnvelopeKind, str] = {
    EnvelopeKind.BAR: "chart",
    EnvelopeKind.BAR_SERIES: "chart",
    EnvelopeKind.TRADE: "trades",
    EnvelopeKind.ALL_TRADES: "trades",
    EnvelopeKind.INDICATOR: "indicators",
    EnvelopeKind.ALL_INDICATORS: "indicators",
    EnvelopeKind.ACCOUNT: "account",
    EnvelopeKind.ASYNC_ACCOUNT: "account",
    EnvelopeKind.ANALYSIS: "analysis",
    EnvelopeKind.LIVE_ANALYSIS: "analysis",
}


def fold(state: SessionState, envelope) -> SessionState:
    """
    Apply one envelope to the session state.

    Lifecycle kinds without a fold return ``state`` unchanged.
    """
    kind = envelope_kind(envelope)
    handler = FOLDS.get(kind)
    if handler is None:
        return state
    logger.debug(f"Folding {kind.value} envelope")
    return handler(state, envelope)
