"""
Durable mirror of session slices.

Selected slices of the session state (chart, trades, account, indicators,
analysis) are written through to a key-value store after every fold that
touches them, so a restarted client can show the last known session for a
strategy class before any new envelope arrives.

Keys:
- ``<namespace>:<strategy_class>:<slice>``: one JSON document per slice
- ``<namespace>:<strategy_class>:config``: last run configuration used
- ``<namespace>:last_strategy``: strategy class selected most recently

Persistence never breaks a session: store and JSON failures are logged and
swallowed, and a slice that cannot be read back is treated as absent.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, TypeAdapter, ValidationError

from .candles import CandleSeries
from .config import SessionConfig
from .decimation import decimate
from .indicators import IndicatorSet
from .models import AccountSnapshot, AnalysisReport, Candle, IndicatorPoint, TradeRecord
from .reducer import SessionState
from .trade_ledger import TradeLedger

logger = logging.getLogger(__name__)

SLICES = ("chart", "trades", "account", "indicators", "analysis")

DEFAULT_MIRROR_FILE = "mirror.json"


class KeyValueStore(Protocol):
    """Synchronous string key-value store."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryStore:
    """Dict-backed store, used for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStore:
    """
    Local file-backed store. All keys live in one JSON object on disk.

    The file is loaded once on construction and rewritten on every change.
    Read failures start from an empty store; write failures are logged and
    the in-memory copy stays authoritative.
    """

    def __init__(self, data_dir: str, filename: str = DEFAULT_MIRROR_FILE):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / filename
        self._data: Dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._data = {str(k): v for k, v in data.items() if isinstance(v, str)}
                logger.info(f"Loaded {len(self._data)} mirror keys from {self._path}")
            else:
                logger.warning(f"Ignoring mirror file {self._path}: not a JSON object")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load mirror file {self._path}: {e}")
            self._data = {}

    def _save(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.warning(f"Failed to save mirror file {self._path}: {e}")

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._save()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._save()


class _TradesSlice(BaseModel):
    last_seq: int = 0
    trades: List[TradeRecord] = []


_chart_adapter = TypeAdapter(List[Candle])
_indicators_adapter = TypeAdapter(Dict[str, List[IndicatorPoint]])


@dataclass(frozen=True)
class PersistedSession:
    """Slices read back from the mirror. A missing or unreadable slice is None."""
    candles: Optional[CandleSeries] = None
    ledger: Optional[TradeLedger] = None
    account: Optional[AccountSnapshot] = None
    indicators: Optional[IndicatorSet] = None
    analysis: Optional[AnalysisReport] = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.candles, self.ledger, self.account, self.indicators, self.analysis)
        )

    def apply_to(self, state: SessionState) -> SessionState:
        """Overlay the present slices onto ``state``."""
        update: Dict[str, Any] = {}
        if self.candles is not None:
            update["candles"] = self.candles
        if self.ledger is not None:
            update["ledger"] = self.ledger
        if self.account is not None:
            update["account"] = self.account
        if self.indicators is not None:
            update["indicators"] = self.indicators
        if self.analysis is not None:
            update["analysis"] = self.analysis
        return replace(state, **update) if update else state


class DurableMirror:
    """Write-through persistence of session slices, keyed per strategy class."""

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = "strategyflow",
        candle_max_points: int = 5000,
        equity_max_points: int = 1000,
    ):
        self._store = store
        self._namespace = namespace
        self._candle_max_points = candle_max_points
        self._equity_max_points = equity_max_points
        self.stats = {
            "writes": 0,
            "write_failures": 0,
            "reads": 0,
            "read_failures": 0,
        }

    def key(self, strategy_class: str, slice_name: str) -> str:
        return f"{self._namespace}:{strategy_class}:{slice_name}"

    @property
    def last_strategy_key(self) -> str:
        return f"{self._namespace}:last_strategy"

    # Store access. Every call is guarded; persistence faults never propagate.

    def _write(self, key: str, value: str) -> bool:
        try:
            self._store.set(key, value)
            self.stats["writes"] += 1
            return True
        except Exception as e:
            self.stats["write_failures"] += 1
            logger.warning(f"Mirror write failed for {key}: {e}")
            return False

    def _read(self, key: str) -> Optional[str]:
        try:
            self.stats["reads"] += 1
            return self._store.get(key)
        except Exception as e:
            self.stats["read_failures"] += 1
            logger.warning(f"Mirror read failed for {key}: {e}")
            return None

    def _delete(self, key: str) -> None:
        try:
            self._store.delete(key)
        except Exception as e:
            logger.warning(f"Mirror delete failed for {key}: {e}")

    # Slice encoding

    def _encode(self, state: SessionState, slice_name: str) -> Optional[str]:
        if slice_name == "chart":
            candles = decimate(state.candles.candles, self._candle_max_points)
            return _chart_adapter.dump_json(candles).decode()
        if slice_name == "trades":
            return _TradesSlice(last_seq=state.ledger.last_seq, trades=list(state.ledger.trades)).model_dump_json()
        if slice_name == "account":
            return state.account.model_dump_json() if state.account is not None else None
        if slice_name == "indicators":
            series = {name: list(points) for name, points in state.indicators.series.items()}
            return _indicators_adapter.dump_json(series).decode()
        if slice_name == "analysis":
            if state.analysis is None:
                return None
            history = decimate(state.analysis.equity_history, self._equity_max_points)
            return state.analysis.model_copy(update={"equity_history": tuple(history)}).model_dump_json()
        raise ValueError(f"Unknown mirror slice: {slice_name}")

    def _decode(self, slice_name: str, raw: str):
        if slice_name == "chart":
            candles = sorted(_chart_adapter.validate_json(raw), key=lambda c: c.time)
            return CandleSeries(candles)
        if slice_name == "trades":
            data = _TradesSlice.model_validate_json(raw)
            trades = tuple(sorted(data.trades, key=lambda r: (r.open_time, r.display_seq)))
            last_seq = max([data.last_seq] + [t.display_seq for t in trades])
            return TradeLedger(trades=trades, last_seq=last_seq)
        if slice_name == "account":
            return AccountSnapshot.model_validate_json(raw)
        if slice_name == "indicators":
            series = _indicators_adapter.validate_json(raw)
            return IndicatorSet(series={name: tuple(points) for name, points in series.items()})
        if slice_name == "analysis":
            return AnalysisReport.model_validate_json(raw)
        raise ValueError(f"Unknown mirror slice: {slice_name}")

    # Public API

    def persist(self, state: SessionState, slices: Iterable[str] = SLICES) -> int:
        """
        Write the given slices of ``state`` under its strategy class.

        Returns:
            Number of slices written
        """
        if not state.strategy_class:
            return 0

        written = 0
        for slice_name in slices:
            try:
                value = self._encode(state, slice_name)
            except (ValueError, TypeError) as e:
                self.stats["write_failures"] += 1
                logger.warning(f"Failed to encode {slice_name} slice: {e}")
                continue
            if value is None:
                continue
            if self._write(self.key(state.strategy_class, slice_name), value):
                written += 1
        return written

    def rehydrate(self, strategy_class: str) -> PersistedSession:
        """Read every slice back for ``strategy_class``."""
        loaded: Dict[str, Any] = {}
        for slice_name in SLICES:
            raw = self._read(self.key(strategy_class, slice_name))
            if raw is None:
                continue
            try:
                loaded[slice_name] = self._decode(slice_name, raw)
            except (ValidationError, ValueError, TypeError) as e:
                self.stats["read_failures"] += 1
                logger.warning(f"Discarding unreadable {slice_name} slice for {strategy_class}: {e}")

        session = PersistedSession(
            candles=loaded.get("chart"),
            ledger=loaded.get("trades"),
            account=loaded.get("account"),
            indicators=loaded.get("indicators"),
            analysis=loaded.get("analysis"),
        )
        logger.info(f"Rehydrated {len(loaded)} slice(s) for {strategy_class}")
        return session

    def clear(self, strategy_class: str) -> None:
        """Remove the session slices for ``strategy_class``. The run config is kept."""
        for slice_name in SLICES:
            self._delete(self.key(strategy_class, slice_name))
        logger.debug(f"Cleared mirror slices for {strategy_class}")

    def remember_strategy(self, strategy_class: str) -> None:
        self._write(self.last_strategy_key, strategy_class)

    def last_strategy(self) -> Optional[str]:
        return self._read(self.last_strategy_key) or None

    def save_config(self, session_config: SessionConfig) -> None:
        if not session_config.strategy_class:
            return
        self._write(
            self.key(session_config.strategy_class, "config"),
            session_config.model_dump_json(by_alias=True),
        )

    def load_config(self, strategy_class: str) -> Optional[SessionConfig]:
        raw = self._read(self.key(strategy_class, "config"))
        if raw is None:
            return None
        try:
            return SessionConfig.model_validate_json(raw)
        except ValidationError as e:
            self.stats["read_failures"] += 1
            logger.warning(f"Discarding unreadable run config for {strategy_class}: {e}")
            return None

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
