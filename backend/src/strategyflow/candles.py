"""
Candle aggregation for the session price chart.

Folds BAR updates into an ordered, one-candle-per-time series. The aggregator
does not know the bar interval: it only sees updates for the bar currently
forming and bars already closed, so an update for an existing open time
extends that candle and anything later opens a new one.
"""

import bisect
import logging
from typing import Iterable, List, Optional, Tuple

from .models import Candle

logger = logging.getLogger(__name__)


def _candle_time(candle: Candle) -> int:
    return candle.time


class CandleSeries:
    """
    Candles in strictly ascending ``time`` order.

    A series never changes once built. Closed candles live in a list that
    successive series share: each series reads only the first ``_size``
    entries and those entries are never rewritten, so opening a new candle
    appends in place. The forming candle is held apart, so a tick on it
    only replaces ``_tip``.
    """

    __slots__ = ("_closed", "_size", "_tip", "_view")

    def __init__(self, candles: Iterable[Candle] = ()):
        closed = list(candles)
        tip = closed.pop() if closed else None
        self._closed = closed
        self._size = len(closed)
        self._tip = tip
        self._view: Optional[Tuple[Candle, ...]] = None

    @classmethod
    def _from_parts(cls, closed: List[Candle], size: int, tip: Optional[Candle]) -> "CandleSeries":
        series = cls.__new__(cls)
        series._closed = closed
        series._size = size
        series._tip = tip
        series._view = None
        return series

    def __len__(self) -> int:
        return self._size + (1 if self._tip is not None else 0)

    def __eq__(self, other) -> bool:
        if not isinstance(other, CandleSeries):
            return NotImplemented
        return self.candles == other.candles

    __hash__ = None

    def __repr__(self) -> str:
        return f"CandleSeries({len(self)} candles)"

    @property
    def last(self) -> Optional[Candle]:
        return self._tip

    @property
    def candles(self) -> Tuple[Candle, ...]:
        """All candles as a tuple, built on first read."""
        if self._view is None:
            view = tuple(self._closed[:self._size])
            if self._tip is not None:
                view += (self._tip,)
            self._view = view
        return self._view

    def _open(self, candle: Candle) -> "CandleSeries":
        closed, size = self._closed, self._size
        if self._tip is not None:
            if len(closed) != size:
                # A later series already extended the shared list
                closed = closed[:size]
            closed.append(self._tip)
            size += 1
        return CandleSeries._from_parts(closed, size, candle)


def apply_bar(series: CandleSeries, candle: Candle) -> CandleSeries:
    """Fold one bar update into the series."""
    last = series.last

    if last is None or candle.time > last.time:
        return series._open(candle)

    if candle.time == last.time:
        return CandleSeries._from_parts(series._closed, series._size, last.merge(candle))

    # Late update for an older bar
    candles = list(series.candles)
    index = bisect.bisect_left(candles, candle.time, key=_candle_time)
    if candles[index].time == candle.time:
        candles[index] = candles[index].merge(candle)
        logger.debug(f"Merged late bar update at {candle.time}")
    else:
        candles.insert(index, candle)
        logger.debug(f"Inserted out-of-order bar at {candle.time}")
    return CandleSeries(candles)


def apply_bar_series(series: CandleSeries, candles: Iterable[Candle]) -> CandleSeries:
    """
    Replace the series with a snapshot batch.

    The previous candles are discarded. The batch is sorted by time and any
    duplicate times collapse into one candle.
    """
    ordered = sorted(candles, key=_candle_time)
    result = []
    for candle in ordered:
        if result and result[-1].time == candle.time:
            result[-1] = result[-1].merge(candle)
        else:
            result.append(candle)
    logger.debug(f"Loaded bar series with {len(result)} candles (replaced {len(series)})")
    return CandleSeries(result)
