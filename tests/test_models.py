import math

import pytest

from builders import _c, bull_flag
from pattern_scanner.models import (
    Candle,
    CandleSeries,
    Direction,
    PatternKind,
    PatternSignal,
    PatternType,
    make_signal_id,
    series_key,
)


def test_candle_rejects_bad_bars():
    with pytest.raises(ValueError):
        Candle(timestamp_ms=0, open=10, high=9, low=8, close=9.5, volume=1)
    with pytest.raises(ValueError):
        Candle(timestamp_ms=0, open=10, high=11, low=0, close=10, volume=1)
    with pytest.raises(ValueError):
        Candle(timestamp_ms=0, open=10, high=11, low=9, close=10, volume=-1)


def test_series_must_be_strictly_increasing():
    a, b = _c(1, 10, 11, 9, 10), _c(2, 10, 11, 9, 10)
    assert len(CandleSeries("AAPL", "1h", [a, b])) == 2
    with pytest.raises(ValueError):
        CandleSeries("AAPL", "1h", [b, a])
    with pytest.raises(ValueError):
        CandleSeries("AAPL", "1h", [a, a])
    assert CandleSeries("aapl", "1h").key == series_key("AAPL", "1h") == "AAPL:1h"


def test_signal_id_is_stable_and_distinct():
    a = make_signal_id("aapl", "1h", "bull_flag", Direction.BULLISH, 1000)
    assert a == make_signal_id("AAPL", "1h", "bull_flag", Direction.BULLISH, 1000)
    assert a != make_signal_id("AAPL", "4h", "bull_flag", Direction.BULLISH, 1000)
    assert len(a) == 64


def test_signal_derived_values():
    sig = PatternSignal(
        symbol="AAPL",
        timeframe="1h",
        pattern=PatternKind(type=PatternType.BULL_FLAG),
        direction=Direction.BULLISH,
        entry_price=100.0,
        target_price=110.0,
        stop_loss=95.0,
        detected_at_ms=0,
        anchor_index=19,
        window=tuple(bull_flag()),
    )
    assert sig.risk_reward_ratio == pytest.approx(2.0)
    assert sig.potential_profit_pct == pytest.approx(10.0)
    assert "window" not in sig.to_dict()
    assert len(sig.to_dict(include_window=True)["window"]) == 20

    flat = PatternSignal(
        symbol="AAPL",
        timeframe="1h",
        pattern=PatternKind(type=PatternType.BULL_FLAG),
        direction=Direction.BULLISH,
        entry_price=100.0,
        target_price=110.0,
        stop_loss=100.0,
        detected_at_ms=0,
        anchor_index=0,
    )
    assert math.isinf(flat.risk_reward_ratio)
    assert flat.to_dict()["risk_reward_ratio"] == "inf"
