from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence

from .models import EMA_PERIODS, Candle

RSI_LEN = 14
ATR_LEN = 14


def ema_next(prev_ema: float, x: float, length: int) -> float:
    mult = 2.0 / (length + 1.0)
    return (x - prev_ema) * mult + prev_ema


def ema_series(closes: Sequence[float], length: int) -> List[Optional[float]]:
    """EMA seeded with the SMA of the first `length` closes; unset before that."""
    out: List[Optional[float]] = [None] * len(closes)
    if length <= 0 or len(closes) < length:
        return out
    prev = sum(closes[:length]) / float(length)
    out[length - 1] = prev
    for i in range(length, len(closes)):
        prev = ema_next(prev, closes[i], length)
        out[i] = prev
    return out


def _rsi(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def rsi_series(closes: Sequence[float], length: int = RSI_LEN) -> List[Optional[float]]:
    out: List[Optional[float]] = [None] * len(closes)
    if length <= 0 or len(closes) < length + 1:
        return out
    # Wilder's smoothing, seeded from the first `length` deltas
    gains = 0.0
    losses = 0.0
    for i in range(1, length + 1):
        ch = closes[i] - closes[i - 1]
        if ch >= 0:
            gains += ch
        else:
            losses -= ch
    avg_gain = gains / length
    avg_loss = losses / length
    out[length] = _rsi(avg_gain, avg_loss)
    for i in range(length + 1, len(closes)):
        ch = closes[i] - closes[i - 1]
        gain = ch if ch > 0 else 0.0
        loss = -ch if ch < 0 else 0.0
        avg_gain = (avg_gain * (length - 1) + gain) / length
        avg_loss = (avg_loss * (length - 1) + loss) / length
        out[i] = _rsi(avg_gain, avg_loss)
    return out


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr_series(
    highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], length: int = ATR_LEN
) -> List[Optional[float]]:
    out: List[Optional[float]] = [None] * len(closes)
    if length <= 0 or len(closes) < length + 1:
        return out
    trs = [true_range(highs[i], lows[i], closes[i - 1]) for i in range(1, len(closes))]
    atr = sum(trs[:length]) / length
    out[length] = atr
    for i in range(length + 1, len(closes)):
        atr = (atr * (length - 1) + trs[i - 1]) / length
        out[i] = atr
    return out


def compute(candles: Sequence[Candle]) -> List[Candle]:
    """Return new candles carrying ema7..ema200, rsi14 and atr14.

    Input candles are never modified. Each value depends only on the prefix
    up to its own bar, so enriching a longer series reproduces the values of
    any shorter prefix.
    """
    if not candles:
        return []
    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]

    emas = {p: ema_series(closes, p) for p in EMA_PERIODS}
    rsi = rsi_series(closes, RSI_LEN)
    atr = atr_series(highs, lows, closes, ATR_LEN)

    out: List[Candle] = []
    for i, c in enumerate(candles):
        out.append(
            replace(
                c,
                ema7=emas[7][i],
                ema20=emas[20][i],
                ema50=emas[50][i],
                ema100=emas[100][i],
                ema200=emas[200][i],
                rsi14=rsi[i],
                atr14=atr[i],
            )
        )
    return out
