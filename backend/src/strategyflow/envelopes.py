"""
Wire envelopes pushed by the strategy engine over the session channel.

Each inbound frame is a JSON object tagged by ``type``. The engine serialises
prices either as plain numbers or as ``{"value": x}`` objects and timestamps
as epoch seconds, epoch milliseconds or ISO-8601 strings; the annotated types
below normalise all of those at the parse boundary so folds only ever see
floats and epoch seconds.
"""

import json
import time
import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from .models import (
    AccountSnapshot,
    AnalysisReport,
    Candle,
    EquityPoint,
    LogEntry,
    LogLevel,
    ProgressInfo,
    TradeAction,
    TradeSide,
)

logger = logging.getLogger(__name__)

# Epoch values above this are treated as milliseconds
_MILLIS_THRESHOLD = 100_000_000_000


class EnvelopeParseError(Exception):
    """Raised when an inbound frame cannot be turned into a known envelope."""
    pass


class EnvelopeKind(str, Enum):
    BAR = "BAR"
    BAR_SERIES = "BAR_SERIES"
    TRADE = "TRADE"
    ALL_TRADES = "ALL_TRADES"
    INDICATOR = "INDICATOR"
    ALL_INDICATORS = "ALL_INDICATORS"
    ACCOUNT = "ACCOUNT"
    ASYNC_ACCOUNT = "ASYNC_ACCOUNT"
    ANALYSIS = "ANALYSIS"
    LIVE_ANALYSIS = "LIVE_ANALYSIS"
    LOG = "LOG"
    PROGRESS = "PROGRESS"
    ERROR = "ERROR"
    STRATEGY_STOP = "STRATEGY_STOP"


KNOWN_KINDS = frozenset(kind.value for kind in EnvelopeKind)


def _unwrap_number(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("value")
    return value


def to_epoch_seconds(value: Any) -> Any:
    """Normalise an engine timestamp to integer epoch seconds."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if abs(value) >= _MILLIS_THRESHOLD:
            return int(value // 1000)
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return to_epoch_seconds(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Java ZonedDateTime may append a zone id, e.g. "...+01:00[Europe/London]"
        if "[" in text:
            text = text[:text.index("[")]
        return int(datetime.fromisoformat(text).timestamp())
    if isinstance(value, datetime):
        return int(value.timestamp())
    return value


def _instrument_name(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("internalSymbol") or value.get("symbol") or value.get("instrument")
    return value


Price = Annotated[float, BeforeValidator(_unwrap_number)]
OptionalPrice = Annotated[Optional[float], BeforeValidator(_unwrap_number)]
Timestamp = Annotated[int, BeforeValidator(to_epoch_seconds)]
OptionalTimestamp = Annotated[Optional[int], BeforeValidator(to_epoch_seconds)]
Instrument = Annotated[Optional[str], BeforeValidator(_instrument_name)]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WireBar(WireModel):
    open_time: Timestamp = Field(..., alias="openTime")
    open: OptionalPrice = None
    high: Price
    low: Price
    close: Price
    instrument: Instrument = None

    @model_validator(mode="after")
    def check_range(self):
        if self.low > self.high:
            raise ValueError(f"Bar low {self.low} is above high {self.high}")
        return self

    def to_candle(self) -> Candle:
        """Convert to a Candle. A bar update without an open price opens at its close."""
        return Candle(
            time=self.open_time,
            open=self.open if self.open is not None else self.close,
            high=self.high,
            low=self.low,
            close=self.close,
            instrument=self.instrument,
        )


class WireBarSeries(WireModel):
    bars: List[WireBar] = Field(default_factory=list)


class WireTrade(WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    id: str
    instrument: Instrument = None
    quantity: OptionalPrice = None
    entry_price: OptionalPrice = Field(None, alias="entryPrice")
    stop_loss: OptionalPrice = Field(None, alias="stopLoss")
    take_profit: OptionalPrice = Field(None, alias="takeProfit")
    close_price: OptionalPrice = Field(None, alias="closePrice")
    is_long: Optional[bool] = Field(None, alias="long")
    profit: OptionalPrice = None
    open_time: OptionalTimestamp = Field(None, alias="openTime")
    close_time: OptionalTimestamp = Field(None, alias="closeTime")

    @property
    def side(self) -> Optional[TradeSide]:
        if self.is_long is None:
            return None
        return TradeSide.LONG if self.is_long else TradeSide.SHORT


class WireIndicatorValue(WireModel):
    value: float
    date_time: Timestamp = Field(..., alias="dateTime")


class WireAccount(WireModel):
    initial_balance: float = Field(0.0, alias="initialBalance")
    balance: float = 0.0
    equity: float = 0.0

    def to_snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            initial_balance=self.initial_balance,
            balance=round(self.balance, 2),
            equity=round(self.equity, 2),
        )


class WireEquityPoint(WireModel):
    timestamp: Timestamp
    equity: Price


class BarEnvelope(WireModel):
    type: Literal["BAR"]
    bar: WireBar


class BarSeriesEnvelope(WireModel):
    type: Literal["BAR_SERIES"]
    bar_series: WireBarSeries = Field(..., alias="barSeries")

    def to_candles(self) -> List[Candle]:
        return [bar.to_candle() for bar in self.bar_series.bars]


class TradeEnvelope(WireModel):
    type: Literal["TRADE"]
    action: TradeAction
    trade: WireTrade


class AllTradesEnvelope(WireModel):
    type: Literal["ALL_TRADES"]
    trades: Dict[str, WireTrade] = Field(default_factory=dict)


class IndicatorEnvelope(WireModel):
    type: Literal["INDICATOR"]
    indicator_name: str = Field(..., alias="indicatorName")
    value: WireIndicatorValue


class AllIndicatorsEnvelope(WireModel):
    type: Literal["ALL_INDICATORS"]
    indicators: Dict[str, List[WireIndicatorValue]] = Field(default_factory=dict)


class AccountEnvelope(WireModel):
    type: Literal["ACCOUNT", "ASYNC_ACCOUNT"]
    account: WireAccount


class AnalysisEnvelope(WireModel):
    type: Literal["ANALYSIS", "LIVE_ANALYSIS"]
    stats: Dict[str, Any] = Field(default_factory=dict)
    equity_history: List[WireEquityPoint] = Field(default_factory=list, alias="equityHistory")

    def to_report(self) -> AnalysisReport:
        return AnalysisReport(
            kind=self.type,
            stats=self.stats,
            equity_history=tuple(
                EquityPoint(timestamp=p.timestamp, equity=p.equity) for p in self.equity_history
            ),
        )


class LogEnvelope(WireModel):
    type: Literal["LOG"]
    message: str = ""
    log_type: str = Field("INFO", alias="logType")
    time: OptionalTimestamp = None
    timestamp: OptionalTimestamp = None

    def to_entry(self) -> LogEntry:
        level = self.log_type.upper()
        if level == "WARNING":
            level = "WARN"
        try:
            log_level = LogLevel(level)
        except ValueError:
            log_level = LogLevel.INFO
        when = self.time if self.time is not None else self.timestamp
        if when is None:
            when = int(time.time())
        return LogEntry(timestamp=when, level=log_level, message=self.message)


class ProgressEnvelope(WireModel):
    """Progress of an asynchronous run.

    Backtests report ``percentageComplete``/``currentIndex``/``totalDays``;
    batch jobs report ``progressPercentage``/``completedTasks``/
    ``remainingTasks``/``estimatedTimeMs``. Either shape is accepted.
    """
    type: Literal["PROGRESS"]
    percentage_complete: Optional[float] = Field(None, alias="percentageComplete")
    progress_percentage: Optional[float] = Field(None, alias="progressPercentage")
    current_index: Optional[int] = Field(None, alias="currentIndex")
    total_days: Optional[int] = Field(None, alias="totalDays")
    completed_tasks: Optional[int] = Field(None, alias="completedTasks")
    remaining_tasks: Optional[int] = Field(None, alias="remainingTasks")
    estimated_time_ms: Optional[int] = Field(None, alias="estimatedTimeMs")

    def to_progress(self) -> ProgressInfo:
        percent = self.percentage_complete
        if percent is None:
            percent = self.progress_percentage or 0.0
        completed = self.completed_tasks if self.completed_tasks is not None else (self.current_index or 0)
        if self.remaining_tasks is not None:
            remaining = self.remaining_tasks
        elif self.total_days is not None:
            remaining = max(self.total_days - completed, 0)
        else:
            remaining = 0
        return ProgressInfo(
            percent_complete=percent,
            completed_units=completed,
            remaining_units=remaining,
            estimated_ms_remaining=self.estimated_time_ms,
        )


class ErrorEnvelope(WireModel):
    type: Literal["ERROR"]
    message: str = "Unknown error"


class StrategyStopEnvelope(WireModel):
    type: Literal["STRATEGY_STOP"]


Envelope = Annotated[
    Union[
        BarEnvelope,
        BarSeriesEnvelope,
        TradeEnvelope,
        AllTradesEnvelope,
        IndicatorEnvelope,
        AllIndicatorsEnvelope,
        AccountEnvelope,
        AnalysisEnvelope,
        LogEnvelope,
        ProgressEnvelope,
        ErrorEnvelope,
        StrategyStopEnvelope,
    ],
    Field(discriminator="type"),
]

_envelope_adapter = TypeAdapter(Envelope)


def envelope_kind(envelope: BaseModel) -> EnvelopeKind:
    return EnvelopeKind(envelope.type)


def parse_envelope(message: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """
    Parse a raw channel frame into a typed envelope.

    Args:
        message: JSON text/bytes, or an already decoded mapping

    Returns:
        One of the envelope models, selected by ``type``

    Raises:
        EnvelopeParseError: invalid JSON, unknown ``type`` or invalid payload
    """
    if isinstance(message, (str, bytes)):
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            raise EnvelopeParseError(f"Invalid JSON frame: {e}") from e
    else:
        data = message

    if not isinstance(data, dict):
        raise EnvelopeParseError(f"Frame must be a JSON object, got {type(data).__name__}")

    kind = data.get("type")
    if kind not in KNOWN_KINDS:
        raise EnvelopeParseError(f"Unknown envelope type: {kind!r}")

    try:
        return _envelope_adapter.validate_python(data)
    except ValidationError as e:
        raise EnvelopeParseError(f"Invalid {kind} envelope: {e.error_count()} validation error(s)") from e
