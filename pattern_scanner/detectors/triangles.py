from __future__ import annotations

from typing import List, Optional, Sequence

from ..models import Candle, Direction, PatternKind, PatternSignal, PatternType
from .common import MIN_CANDLES, avg, clamp01, count_touches, emit, volume_increase_pct

WINDOW = 20
SEGMENTS = 4
MIN_TOUCHES = 3
MIN_MONOTONIC_PAIRS = 2
VOLUME_THRESHOLD_PCT = 25.0


def _segments(window: Sequence[Candle]) -> List[Sequence[Candle]]:
    size = len(window) // SEGMENTS
    return [window[k * size:(k + 1) * size] for k in range(SEGMENTS)]


def _match(symbol: str, window: Sequence[Candle], anchor_index: int, timeframe: str, ascending: bool) -> Optional[PatternSignal]:
    highs = [c.high for c in window]
    lows = [c.low for c in window]

    # flat side: mean of the three most extreme bars
    if ascending:
        flat = avg(sorted(highs)[-3:])
        touches = count_touches(highs, flat)
        sloping = [min(c.low for c in seg) for seg in _segments(window)]
        pairs = sum(1 for a, b in zip(sloping, sloping[1:]) if b > a)
        converging = sloping[-1] > sloping[0]
    else:
        flat = avg(sorted(lows)[:3])
        touches = count_touches(lows, flat)
        sloping = [max(c.high for c in seg) for seg in _segments(window)]
        pairs = sum(1 for a, b in zip(sloping, sloping[1:]) if b < a)
        converging = sloping[-1] < sloping[0]

    if touches < MIN_TOUCHES or pairs < MIN_MONOTONIC_PAIRS or not converging:
        return None

    last = window[-1]
    if ascending:
        height = flat - min(lows)
        entry = flat * 1.01
        target = entry + height
        stop = sloping[-1] * 0.99
        trendline_break = last.close > flat
    else:
        height = max(highs) - flat
        entry = flat * 0.99
        target = entry - height
        stop = sloping[-1] * 1.01
        trendline_break = last.close < flat
    if height <= 0:
        return None

    kind = PatternKind(
        type=PatternType.ASCENDING_TRIANGLE if ascending else PatternType.DESCENDING_TRIANGLE,
        pattern_height=height,
        boundary=flat,
        quality=clamp01(0.5 * min(1.0, touches / 5.0) + 0.5 * pairs / (SEGMENTS - 1)),
        strength=clamp01(abs(sloping[-1] - sloping[0]) / height),
        volume_increase_pct=volume_increase_pct(window, 3),
        volume_threshold_pct=VOLUME_THRESHOLD_PCT,
        trendline_break=trendline_break,
        touches=touches,
    )
    return emit(
        symbol=symbol,
        timeframe=timeframe,
        window=window,
        anchor_index=anchor_index,
        pattern=kind,
        direction=Direction.BULLISH if ascending else Direction.BEARISH,
        entry=entry,
        target=target,
        stop=stop,
    )


def _scan(symbol: str, candles: Sequence[Candle], timeframe: str, ascending: bool) -> List[PatternSignal]:
    if len(candles) < MIN_CANDLES:
        return []
    out: List[PatternSignal] = []
    end = WINDOW
    while end <= len(candles):
        sig = _match(symbol, candles[end - WINDOW:end], end - 1, timeframe, ascending)
        if sig is not None:
            out.append(sig)
            end += WINDOW // SEGMENTS
            continue
        end += 1
    return out


def detect_ascending_triangle(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, ascending=True)


def detect_descending_triangle(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, ascending=False)
