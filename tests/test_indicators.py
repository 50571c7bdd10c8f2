import math

import pytest

from builders import _c, trend
from pattern_scanner.indicators import atr_series, compute, ema_series, rsi_series


def _wave(n: int):
    out = []
    for i in range(n):
        mid = 100.0 + 10.0 * math.sin(i / 7.0) + 0.05 * i
        o = mid - 0.4 * math.cos(i)
        c = mid + 0.4 * math.cos(i)
        out.append(_c(i, o, max(o, c) + 0.5, min(o, c) - 0.5, c, v=1000 + i))
    return out


def test_ema_seeded_with_sma():
    closes = [float(x) for x in range(1, 11)]
    ema = ema_series(closes, 5)
    assert ema[:4] == [None] * 4
    assert ema[4] == pytest.approx(3.0)
    assert ema[5] == pytest.approx(4.0)


def test_ema_unset_when_too_short():
    assert ema_series([1.0, 2.0], 5) == [None, None]


def test_rsi_saturates_on_monotonic_series():
    rising = [float(x) for x in range(1, 61)]
    falling = list(reversed(rising))
    assert rsi_series(rising)[-1] == pytest.approx(100.0)
    assert rsi_series(falling)[-1] == pytest.approx(0.0)


def test_rsi_first_value_after_length_deltas():
    rsi = rsi_series([float(x) for x in range(30)])
    assert rsi[13] is None
    assert rsi[14] is not None


def test_atr_constant_range():
    candles = [_c(i, 10.0, 11.0, 9.0, 10.0) for i in range(20)]
    atr = atr_series([c.high for c in candles], [c.low for c in candles], [c.close for c in candles])
    assert atr[13] is None
    assert atr[14] == pytest.approx(2.0)
    assert atr[-1] == pytest.approx(2.0)


def test_compute_does_not_mutate_input():
    candles = trend(30, 50.0, 1.0)
    out = compute(candles)
    assert all(c.ema7 is None and c.rsi14 is None for c in candles)
    assert out[-1].ema7 is not None
    assert out[-1].ema20 is not None
    assert out[-1].ema50 is None
    assert out[-1].close == candles[-1].close


def test_compute_is_prefix_stable():
    candles = _wave(260)
    full = compute(candles)
    for k in (1, 20, 51, 199, 200, 201, 259):
        assert compute(candles[:k]) == full[:k]
    assert full[-1].ema200 is not None
