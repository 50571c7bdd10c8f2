from __future__ import annotations

from typing import List, Sequence

from ..models import Candle, Direction, PatternKind, PatternSignal, PatternType
from .common import MIN_CANDLES, avg, clamp01, emit, linear_fit

POLE_LEN = 10
FLAG_LEN = 10
MIN_POLE_MOVE = 0.05
MIN_POLE_AGREEMENT = 0.6
MAX_FLAG_RANGE = 0.10
FLAG_VOLUME_DECAY = 0.8
VOLUME_THRESHOLD_PCT = 20.0


def _vol_avg(candles: Sequence[Candle]) -> float:
    return avg([c.volume for c in candles])


def _scan(symbol: str, candles: Sequence[Candle], timeframe: str, direction: Direction) -> List[PatternSignal]:
    if len(candles) < MIN_CANDLES:
        return []
    bullish = direction is Direction.BULLISH
    out: List[PatternSignal] = []
    span = POLE_LEN + FLAG_LEN
    end = span
    while end <= len(candles):
        window = candles[end - span:end]
        sig = _match(symbol, window, end - 1, timeframe, bullish)
        if sig is not None:
            out.append(sig)
            # the next few windows overlap the same flag
            end += FLAG_LEN // 2
            continue
        end += 1
    return out


def _match(symbol: str, window: Sequence[Candle], anchor_index: int, timeframe: str, bullish: bool):
    pole = window[:POLE_LEN]
    flag = window[POLE_LEN:]

    move = (pole[-1].close - pole[0].open) / pole[0].open
    if bullish and move < MIN_POLE_MOVE:
        return None
    if not bullish and move > -MIN_POLE_MOVE:
        return None
    agreeing = sum(1 for c in pole if (c.is_bullish if bullish else c.is_bearish))
    if agreeing / len(pole) < MIN_POLE_AGREEMENT:
        return None
    if _vol_avg(pole[-3:]) < _vol_avg(pole[:3]):
        return None

    flag_high = max(c.high for c in flag)
    flag_low = min(c.low for c in flag)
    flag_range = (flag_high - flag_low) / flag_low
    if flag_range >= MAX_FLAG_RANGE:
        return None
    if _vol_avg(flag[-3:]) > FLAG_VOLUME_DECAY * _vol_avg(flag[:3]):
        return None

    if bullish:
        pole_height = pole[-1].high - pole[0].low
        entry = flag_high * 1.01
        target = entry + pole_height
        stop = flag_low * 0.99
        slope, intercept = linear_fit([c.high for c in flag])
        trendline_break = flag[-1].close > slope * (len(flag) - 1) + intercept
    else:
        pole_height = pole[0].high - pole[-1].low
        entry = flag_low * 0.99
        target = entry - pole_height
        stop = flag_high * 1.01
        slope, intercept = linear_fit([c.low for c in flag])
        trendline_break = flag[-1].close < slope * (len(flag) - 1) + intercept

    first3 = _vol_avg(pole[:3])
    vol_inc = (_vol_avg(pole[-3:]) / first3 - 1.0) * 100.0 if first3 > 0 else 0.0
    kind = PatternKind(
        type=PatternType.BULL_FLAG if bullish else PatternType.BEAR_FLAG,
        pattern_height=pole_height,
        boundary=flag_high if bullish else flag_low,
        quality=clamp01(1.0 - flag_range / MAX_FLAG_RANGE),
        strength=clamp01(abs(move) / (2 * MIN_POLE_MOVE)),
        volume_increase_pct=vol_inc,
        volume_threshold_pct=VOLUME_THRESHOLD_PCT,
        trendline_break=trendline_break,
    )
    return emit(
        symbol=symbol,
        timeframe=timeframe,
        window=window,
        anchor_index=anchor_index,
        pattern=kind,
        direction=Direction.BULLISH if bullish else Direction.BEARISH,
        entry=entry,
        target=target,
        stop=stop,
    )


def detect_bull_flag(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, Direction.BULLISH)


def detect_bear_flag(symbol: str, candles: Sequence[Candle], timeframe: str) -> List[PatternSignal]:
    return _scan(symbol, candles, timeframe, Direction.BEARISH)
