"""
Indicator store fold: named series of (time, value) samples.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Tuple

from .envelopes import WireIndicatorValue
from .models import IndicatorPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndicatorSet:
    series: Dict[str, Tuple[IndicatorPoint, ...]] = field(default_factory=dict)

    def get(self, name: str) -> Tuple[IndicatorPoint, ...]:
        return self.series.get(name, ())

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self.series.keys())


def _to_point(value: WireIndicatorValue):
    if value.value == 0:
        return None
    return IndicatorPoint(time=value.date_time, value=value.value)


def apply_indicator_point(indicators: IndicatorSet, name: str, value: WireIndicatorValue) -> IndicatorSet:
    """Append one sample to ``name``. Zero samples are dropped."""
    point = _to_point(value)
    if point is None:
        logger.debug(f"Dropped zero sample for indicator {name}")
        return indicators
    series = dict(indicators.series)
    series[name] = series.get(name, ()) + (point,)
    return IndicatorSet(series=series)


def apply_all_indicators(
    indicators: IndicatorSet,
    mapping: Mapping[str, Iterable[WireIndicatorValue]],
) -> IndicatorSet:
    """Replace every series with the snapshot, filtering zero samples."""
    series = {}
    for name, values in mapping.items():
        points = (_to_point(v) for v in values)
        series[name] = tuple(p for p in points if p is not None)
    logger.debug(f"Replaced {len(indicators.series)} indicator series with {len(series)}")
    return IndicatorSet(series=series)
