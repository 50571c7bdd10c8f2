from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

from ..errors import InvalidSignalGeometry
from ..models import Candle, Direction, PatternKind, PatternSignal, make_signal_id

log = logging.getLogger("detectors")

MIN_CANDLES = 20
MIN_RISK_REWARD = 2.0
TOUCH_TOLERANCE_PCT = 0.5


def avg(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def linear_fit(values: Sequence[float]) -> Tuple[float, float]:
    """Least-squares line over x = 0..n-1. Returns (slope, intercept)."""
    n = len(values)
    if n < 2:
        return 0.0, (values[0] if values else 0.0)
    x_mean = (n - 1) / 2.0
    y_mean = avg(values)
    num = 0.0
    den = 0.0
    for i, y in enumerate(values):
        num += (i - x_mean) * (y - y_mean)
        den += (i - x_mean) ** 2
    slope = num / den if den else 0.0
    return slope, y_mean - slope * x_mean


def slope_pct(values: Sequence[float]) -> float:
    """Regression slope as percent of the mean value per bar."""
    m = avg(values)
    if m == 0:
        return 0.0
    slope, _ = linear_fit(values)
    return slope / m * 100.0


def most_touched_level(prices: Sequence[float], tolerance_pct: float = TOUCH_TOLERANCE_PCT) -> Tuple[float, int]:
    """First-fit price binning; returns the bin price with the most members."""
    bins: List[List[float]] = []  # [level, count]
    for p in prices:
        for b in bins:
            if abs(p - b[0]) <= b[0] * tolerance_pct / 100.0:
                b[1] += 1
                break
        else:
            bins.append([p, 1])
    if not bins:
        return 0.0, 0
    best = max(bins, key=lambda b: b[1])
    return best[0], int(best[1])


def count_touches(prices: Sequence[float], level: float, tolerance_pct: float = TOUCH_TOLERANCE_PCT) -> int:
    if level <= 0:
        return 0
    return sum(1 for p in prices if abs(p - level) / level <= tolerance_pct / 100.0)


def volume_increase_pct(candles: Sequence[Candle], recent: int) -> float:
    """Average volume of the last `recent` bars vs. the bars before them, in percent."""
    if len(candles) <= recent:
        return 0.0
    prior = avg([c.volume for c in candles[:-recent]])
    if prior <= 0:
        return 0.0
    return (avg([c.volume for c in candles[-recent:]]) / prior - 1.0) * 100.0


def check_geometry(direction: Direction, entry: float, target: float, stop: float) -> None:
    for v in (entry, target, stop):
        if not math.isfinite(v) or v <= 0:
            raise InvalidSignalGeometry("non-finite or non-positive level", entry=entry, target=target, stop=stop)
    if direction is Direction.BULLISH and not (stop < entry < target):
        raise InvalidSignalGeometry("bullish levels out of order", entry=entry, target=target, stop=stop)
    if direction is Direction.BEARISH and not (target < entry < stop):
        raise InvalidSignalGeometry("bearish levels out of order", entry=entry, target=target, stop=stop)


def emit(
    *,
    symbol: str,
    timeframe: str,
    window: Sequence[Candle],
    anchor_index: int,
    pattern: PatternKind,
    direction: Direction,
    entry: float,
    target: float,
    stop: float,
) -> Optional[PatternSignal]:
    """Build a signal or return None when the geometry is invalid or the reward is too small."""
    try:
        check_geometry(direction, entry, target, stop)
    except InvalidSignalGeometry as e:
        log.debug("geometry_discarded symbol=%s tf=%s pattern=%s err=%s", symbol, timeframe, pattern.label, e)
        return None

    rr = abs(target - entry) / abs(entry - stop)
    if rr < MIN_RISK_REWARD:
        log.debug("rr_discarded symbol=%s tf=%s pattern=%s rr=%.2f", symbol, timeframe, pattern.label, rr)
        return None

    anchor = window[-1]
    return PatternSignal(
        symbol=symbol.upper(),
        timeframe=timeframe,
        pattern=pattern,
        direction=direction,
        entry_price=entry,
        target_price=target,
        stop_loss=stop,
        detected_at_ms=anchor.timestamp_ms,
        anchor_index=anchor_index,
        window=tuple(window),
        signal_id=make_signal_id(symbol, timeframe, pattern.label, direction, anchor.timestamp_ms),
    )
