from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from ..models import Candle, ChannelType, Direction, PatternKind, PatternSignal, PatternType
from .common import (
    MIN_CANDLES,
    clamp01,
    count_touches,
    emit,
    linear_fit,
    most_touched_level,
    slope_pct,
    volume_increase_pct,
)

WINDOW = 20
BREAKOUT_PCT = 0.01
STOP_INSIDE_PCT = 0.005
FLAT_SLOPE = 0.05
TREND_SLOPE = 0.1
MIN_BOUNDARY_TOUCHES = 2
VOLUME_THRESHOLD_PCT = 50.0


def classify_channel(channel: Sequence[Candle]) -> Optional[ChannelType]:
    """Classify by the mean normalized regression slope of highs and lows."""
    s = (slope_pct([c.high for c in channel]) + slope_pct([c.low for c in channel])) / 2.0
    if abs(s) < FLAT_SLOPE:
        return ChannelType.HORIZONTAL
    if s > TREND_SLOPE:
        return ChannelType.ASCENDING
    if s < -TREND_SLOPE:
        return ChannelType.DESCENDING
    return None


def channel_bounds(channel: Sequence[Candle], ctype: ChannelType) -> Tuple[float, float, int, int]:
    """Upper/lower boundary projected onto the bar after the channel, plus touch counts."""
    highs = [c.high for c in channel]
    lows = [c.low for c in channel]
    if ctype is ChannelType.HORIZONTAL:
        upper, up_touches = most_touched_level(highs)
        lower, low_touches = most_touched_level(lows)
        return upper, lower, up_touches, low_touches

    n = len(channel)
    hs, hi = linear_fit(highs)
    ls, li = linear_fit(lows)
    up_touches = sum(count_touches([h], hs * i + hi) for i, h in enumerate(highs))
    low_touches = sum(count_touches([lo], ls * i + li) for i, lo in enumerate(lows))
    return hs * n + hi, ls * n + li, up_touches, low_touches


def _match(symbol: str, window: Sequence[Candle], anchor_index: int, timeframe: str) -> Optional[PatternSignal]:
    channel = window[:-1]
    cur = window[-1]
    prev = channel[-1]

    ctype = classify_channel(channel)
    if ctype is None:
        return None
    upper, lower, up_t, low_t = channel_bounds(channel, ctype)
    height = upper - lower
    if height <= 0 or up_t < MIN_BOUNDARY_TOUCHES or low_t < MIN_BOUNDARY_TOUCHES:
        return None

    if cur.close > upper * (1 + BREAKOUT_PCT) and prev.close <= upper * (1 + BREAKOUT_PCT):
        direction = Direction.BULLISH
        boundary = upper
        entry = cur.close
        target = entry + height
        stop = upper * (1 - STOP_INSIDE_PCT)
        beyond = (cur.close - upper) / upper
    elif cur.close < lower * (1 - BREAKOUT_PCT) and prev.close >= lower * (1 - BREAKOUT_PCT):
        direction = Direction.BEARISH
        boundary = lower
        entry = cur.close
        target = entry - height
        stop = lower * (1 + STOP_INSIDE_PCT)
        beyond = (lower - cur.close) / lower
    else:
        return None

    kind = PatternKind(
        type=PatternType.CHANNEL_BREAKOUT,
        channel_type=ctype,
        pattern_height=height,
        boundary=boundary,
        quality=clamp01((up_t + low_t) / 8.0),
        strength=clamp01(beyond / (3 * BREAKOUT_PCT)),
        volume_increase_pct=volume_increase_pct(window, 1),
        volume_threshold_pct=VOLUME_THRESHOLD_PCT,
        trendline_break=True,
        touches=up_t + low_t,
    )
    return emit(
        symbol=symbol,
        timeframe=timeframe,
        window=window,
        anchor_index=anchor_index,
        pattern=kind,
        direction=direction,
        entry=entry,
        target=target,
        stop=stop,
    )


def detect_channel_breakout(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    """Breakouts from a 19-bar channel on the 20th bar's close, for every window end."""
    if len(candles) < MIN_CANDLES:
        return []
    out: List[PatternSignal] = []
    for end in range(WINDOW, len(candles) + 1):
        sig = _match(symbol, candles[end - WINDOW:end], end - 1, timeframe)
        if sig is not None:
            out.append(sig)
    return out
