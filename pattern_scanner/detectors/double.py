from __future__ import annotations

from typing import List, Optional, Sequence

from ..models import Candle, Direction, PatternKind, PatternSignal, PatternType
from .common import MIN_CANDLES, clamp01, emit, volume_increase_pct

LOOKBACK = 40
MAX_EXTREMA_DIFF = 0.02
MIN_SEPARATION = 5
MIN_MIDDLE_DEPTH = 0.03
CONFIRM_PCT = 0.01
MAX_CONFIRM_BARS = 3
STOP_PCT = 0.01
VOLUME_THRESHOLD_PCT = 15.0


def _pick_pair(values: Sequence[float], top: bool):
    """Most extreme bar plus the strongest rival within 2% and >= MIN_SEPARATION bars away."""
    idx = range(len(values))
    if top:
        first = max(idx, key=lambda i: (values[i], i))
    else:
        first = min(idx, key=lambda i: (values[i], -i))
    ref = values[first]
    best = None
    for j, v in enumerate(values):
        if abs(j - first) < MIN_SEPARATION:
            continue
        if abs(v - ref) / ref > MAX_EXTREMA_DIFF:
            continue
        if best is None or (v >= values[best] if top else v <= values[best]):
            best = j
    if best is None:
        return None
    return min(first, best), max(first, best)


def _match(symbol: str, window: Sequence[Candle], anchor_index: int, timeframe: str, top: bool) -> Optional[PatternSignal]:
    body = window[:-1]
    cur = window[-1]
    extremes = [c.high for c in body] if top else [c.low for c in body]
    pair = _pick_pair(extremes, top)
    if pair is None:
        return None
    a, b = pair
    ea, eb = extremes[a], extremes[b]

    middle = body[a + 1:b]
    if top:
        neckline = min(c.low for c in middle)
        if neckline > min(ea, eb) * (1 - MIN_MIDDLE_DEPTH):
            return None
        trigger = eb * (1 - CONFIRM_PCT)
        confirmed = cur.close <= trigger
        pending = all(c.close > trigger for c in body[b + 1:])
    else:
        neckline = max(c.high for c in middle)
        if neckline < max(ea, eb) * (1 + MIN_MIDDLE_DEPTH):
            return None
        trigger = eb * (1 + CONFIRM_PCT)
        confirmed = cur.close >= trigger
        pending = all(c.close < trigger for c in body[b + 1:])

    # only the first close past the trigger, shortly after the second extremum
    if not confirmed or not pending or len(body) - b > MAX_CONFIRM_BARS:
        return None

    extreme = max(ea, eb) if top else min(ea, eb)
    height = abs(extreme - neckline)
    entry = cur.close
    if top:
        target = entry - height
        stop = extreme * (1 + STOP_PCT)
    else:
        target = entry + height
        stop = extreme * (1 - STOP_PCT)

    kind = PatternKind(
        type=PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM,
        pattern_height=height,
        boundary=neckline,
        quality=clamp01(1.0 - (abs(ea - eb) / max(ea, eb)) / MAX_EXTREMA_DIFF),
        strength=clamp01((height / extreme) / 0.10),
        volume_increase_pct=volume_increase_pct(window, 1),
        volume_threshold_pct=VOLUME_THRESHOLD_PCT,
        trendline_break=(cur.close < neckline) if top else (cur.close > neckline),
        touches=2,
    )
    return emit(
        symbol=symbol,
        timeframe=timeframe,
        window=window,
        anchor_index=anchor_index,
        pattern=kind,
        direction=Direction.BEARISH if top else Direction.BULLISH,
        entry=entry,
        target=target,
        stop=stop,
    )


def _scan(symbol: str, candles: Sequence[Candle], timeframe: str, top: bool) -> List[PatternSignal]:
    if len(candles) < MIN_CANDLES:
        return []
    out: List[PatternSignal] = []
    for end in range(MIN_CANDLES, len(candles) + 1):
        window = candles[max(0, end - LOOKBACK):end]
        sig = _match(symbol, window, end - 1, timeframe, top)
        if sig is not None:
            out.append(sig)
    return out


def detect_double_top(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, top=True)


def detect_double_bottom(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, top=False)
