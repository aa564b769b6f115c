"""
Pydantic models for strategy session records reconstructed from the event stream.

All records are frozen: folds replace them rather than mutating in place, so a
snapshot handed to a consumer never changes underneath it.
"""

from enum import Enum
from typing import Optional, Tuple, Any, Dict
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TradeSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TradeAction(str, Enum):
    """Action carried by a TRADE envelope."""
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    UPDATE = "UPDATE"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Candle(FrozenModel):
    """A single OHLC bar keyed by its open time."""
    time: int = Field(..., description="Bar open time in epoch seconds")
    open: float = Field(..., description="Open price, immutable once the candle exists")
    high: float = Field(..., description="Highest price seen for this bar")
    low: float = Field(..., description="Lowest price seen for this bar")
    close: float = Field(..., description="Latest close price")
    instrument: Optional[str] = Field(None, description="Instrument symbol")

    @field_validator('low')
    @classmethod
    def validate_low(cls, v, info):
        """Reject bars whose low is above their high."""
        high = info.data.get("high")
        if high is not None and v > high:
            raise ValueError(f"Candle low {v} is above high {high}")
        return v

    def merge(self, other: "Candle") -> "Candle":
        """Extend this candle with a later update for the same bar."""
        return self.model_copy(update={
            "high": max(self.high, other.high),
            "low": min(self.low, other.low),
            "close": other.close,
        })


class TradeRecord(FrozenModel):
    """A trade as shown in the ledger, labelled with a stable display sequence."""
    display_seq: int = Field(..., ge=1, description="User-facing ordinal, assigned once per server id")
    server_id: str = Field(..., description="Identifier assigned by the strategy engine")
    open_time: int = Field(..., description="Open time in epoch seconds")
    close_time: Optional[int] = Field(None, description="Close time in epoch seconds")
    instrument: Optional[str] = None
    side: TradeSide
    entry_price: float
    exit_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    quantity: float
    profit: Optional[float] = None
    status: TradeStatus = TradeStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == TradeStatus.CLOSED

    @property
    def price(self) -> float:
        """Exit price for closed trades, entry price otherwise."""
        if self.is_closed and self.exit_price is not None:
            return self.exit_price
        return self.entry_price


class IndicatorPoint(FrozenModel):
    time: int
    value: float

    @field_validator('value')
    @classmethod
    def validate_non_zero(cls, v):
        """Zero samples are degenerate and never stored."""
        if v == 0:
            raise ValueError("Indicator value must be non-zero")
        return v


class AccountSnapshot(FrozenModel):
    """Latest account values. No history is kept here."""
    initial_balance: float = 0.0
    balance: float = 0.0
    equity: float = 0.0


class EquityPoint(FrozenModel):
    timestamp: int = Field(..., description="Epoch seconds")
    equity: float


class AnalysisReport(FrozenModel):
    """Performance report produced atomically by one ANALYSIS or LIVE_ANALYSIS event."""
    kind: str = Field(..., description="ANALYSIS or LIVE_ANALYSIS")
    stats: Dict[str, Any] = Field(default_factory=dict, description="Opaque performance statistics")
    equity_history: Tuple[EquityPoint, ...] = ()


class LogEntry(FrozenModel):
    timestamp: int = Field(..., description="Epoch seconds")
    level: LogLevel = LogLevel.INFO
    message: str = ""

    @property
    def timestamp_display(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class ProgressInfo(FrozenModel):
    percent_complete: float = 0.0
    completed_units: int = 0
    remaining_units: int = 0
    estimated_ms_remaining: Optional[int] = None


class ConnectionStatus(BaseModel):
    """Strategy channel connection status information."""
    connected: bool = Field(..., description="Whether the channel is open")
    session_id: Optional[str] = Field(None, description="Session the channel is subscribed to")
    last_connected: Optional[datetime] = Field(None, description="Last successful connection time")
    error_message: Optional[str] = Field(None, description="Last error message if any")
