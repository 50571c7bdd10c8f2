from dataclasses import replace

import pytest

from builders import horizontal_breakout, trend
from pattern_scanner.detectors.channels import detect_channel_breakout
from pattern_scanner.indicators import compute
from pattern_scanner.models import BacktestResult, Candle, Direction, PatternType
from pattern_scanner.scoring import (
    Confirmations,
    ScoringWeights,
    calibrate,
    confirms_direction,
    ema_alignment,
    explain,
    multi_timeframe_confirmation,
    score,
)
from pattern_scanner.timeframes import higher_timeframes, timeframe_weight

HOUR = 3_600_000


def _breakout(volume: int = 1600):
    return detect_channel_breakout("AAPL", horizontal_breakout(volume), "1h")[0]


def _result(pattern: PatternType, pl: float, ts: int = 0) -> BacktestResult:
    return BacktestResult(
        signal_id=f"s{ts}",
        symbol="AAPL",
        timeframe="1h",
        pattern_type=pattern,
        direction=Direction.BULLISH,
        entry_date_ms=ts,
        entry_price=100.0,
        target_price=110.0,
        stop_loss=95.0,
        exit_date_ms=ts + HOUR,
        exit_price=100.0 + pl,
        hit_target=pl > 0,
        hit_stop_loss=pl <= 0,
        timeout_exit=False,
        profit_loss_pct=pl,
        max_drawdown_pct=0.0,
        days_to_exit=1 / 24,
    )


def test_breakout_score_with_and_without_volume():
    assert score(_breakout(), Confirmations()) == 82
    assert score(_breakout(volume=1000), Confirmations()) == 74


def test_score_is_deterministic():
    sig = _breakout()
    conf = Confirmations(higher_tf_ratio=0.85, confirming_timeframe="4h", ema_alignment="aligned")
    assert explain(sig, conf) == explain(sig, conf)


def test_higher_timeframe_and_ema_terms():
    sig = _breakout()
    assert score(sig, Confirmations(higher_tf_ratio=0.85, confirming_timeframe="4h")) == 92
    assert score(sig, Confirmations(ema_alignment="mixed")) == 78


def test_score_is_clamped():
    sig = _breakout()
    assert score(sig, Confirmations(), ScoringWeights(breakout_base=500.0)) == 100
    assert score(sig, Confirmations(), ScoringWeights(breakout_base=-500.0)) == 0


def test_breakdown_lists_each_term():
    _, text = explain(_breakout(), Confirmations(higher_tf_ratio=0.85, confirming_timeframe="4h"))
    assert "Base channel_breakout:horizontal (50)" in text
    assert "Volume +60% >= 50% (+10)" in text
    assert "Higher TF 4h confirms" in text
    assert "Timeframe 1h weight x0.8" in text


def test_ema_alignment():
    c = Candle(timestamp_ms=0, open=100, high=101, low=99, close=100, volume=1, ema7=110, ema20=105, ema50=100)
    assert ema_alignment(c, Direction.BULLISH) == "aligned"
    assert ema_alignment(c, Direction.BEARISH) == "mixed"
    assert ema_alignment(replace(c, ema20=None, ema50=None), Direction.BULLISH) is None


def test_confirms_direction_on_trends():
    up = compute(trend(60, 50.0, 1.0))
    down = compute(trend(60, 120.0, -1.0))
    assert confirms_direction(up, Direction.BULLISH)
    assert not confirms_direction(up, Direction.BEARISH)
    assert confirms_direction(down, Direction.BEARISH)
    assert not confirms_direction(down, Direction.BULLISH)
    assert not confirms_direction(compute(trend(30, 50.0, 1.0)), Direction.BULLISH)


def test_multi_timeframe_ratio_is_weighted_share():
    up = compute(trend(60, 50.0, 1.0, step_ms=4 * HOUR))
    down = compute(trend(60, 120.0, -1.0, step_ms=24 * HOUR))
    ratio, tf = multi_timeframe_confirmation("1h", Direction.BULLISH, {"4h": up, "1d": down})
    assert ratio == pytest.approx(0.85 / 2)
    assert tf == "4h"
    assert multi_timeframe_confirmation("1w", Direction.BULLISH, {"4h": up}) == (0.0, None)


def test_timeframe_tables():
    assert timeframe_weight("1m") == pytest.approx(0.6)
    assert timeframe_weight("1w") == pytest.approx(0.95)
    assert timeframe_weight("2h") == pytest.approx(0.7)
    assert higher_timeframes("1h") == ["4h", "1d", "1w"]
    assert higher_timeframes("1w") == []


def test_calibrate_adjusts_patterns_with_enough_trades():
    results = [_result(PatternType.BULL_FLAG, 5.0, ts=i) for i in range(5)]
    results.append(_result(PatternType.BULL_FLAG, -3.0, ts=5))
    results += [_result(PatternType.BEAR_FLAG, 5.0, ts=10 + i) for i in range(2)]
    base = ScoringWeights()
    tuned = calibrate(base, results)
    assert tuned.pattern_adjustments == {"bull_flag": 7.0}
    assert base.pattern_adjustments == {}


def test_calibration_shifts_score():
    sig = _breakout()
    w = ScoringWeights(pattern_adjustments={"channel_breakout": -10.0})
    assert score(sig, Confirmations(), w) == 72
    _, text = explain(sig, Confirmations(), w)
    assert "Calibration (-10)" in text
