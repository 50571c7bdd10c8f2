import math

import pytest

from pattern_scanner.errors import EmptyAggregationInput
from pattern_scanner.models import BacktestResult, Direction, PatternType
from pattern_scanner.performance import aggregate, build_report, by_pattern_type, by_timeframe, performance_summary

DAY = 86_400_000


def _r(pl: float, ts: int = 0, pattern: PatternType = PatternType.BULL_FLAG, tf: str = "1h") -> BacktestResult:
    return BacktestResult(
        signal_id=f"{pattern.value}-{ts}",
        symbol="AAPL",
        timeframe=tf,
        pattern_type=pattern,
        direction=Direction.BULLISH,
        entry_date_ms=ts * DAY,
        entry_price=100.0,
        target_price=110.0,
        stop_loss=95.0,
        exit_date_ms=ts * DAY + DAY,
        exit_price=100.0 + pl,
        hit_target=pl > 0,
        hit_stop_loss=pl < 0,
        timeout_exit=pl == 0,
        profit_loss_pct=pl,
        max_drawdown_pct=abs(min(pl, 0.0)),
        days_to_exit=1.0,
    )


def test_empty_input_raises():
    with pytest.raises(EmptyAggregationInput):
        aggregate([])
    with pytest.raises(EmptyAggregationInput):
        performance_summary([])


def test_symmetric_win_and_loss():
    m = aggregate([_r(10.0, 0), _r(-10.0, 1)])
    assert m.total_trades == 2
    assert m.win_rate == pytest.approx(0.5)
    assert m.profit_factor == pytest.approx(1.0)
    assert m.expectancy == pytest.approx(0.0)
    assert m.risk_reward_ratio == pytest.approx(1.0)
    assert m.max_drawdown == pytest.approx(10.0)
    assert m.average_holding_period == pytest.approx(1.0)


def test_no_losses_gives_infinite_profit_factor():
    m = aggregate([_r(5.0, 0), _r(3.0, 1)])
    assert math.isinf(m.profit_factor)
    assert m.to_dict()["profit_factor"] == "inf"


def test_no_wins_gives_zero_profit_factor():
    m = aggregate([_r(-5.0, 0), _r(-3.0, 1)])
    assert m.profit_factor == 0.0
    assert m.win_rate == 0.0


def test_flat_trade_counts_as_loss():
    m = aggregate([_r(0.0, 0)])
    assert m.winning_trades == 0
    assert m.losing_trades == 1
    assert m.timeout_exit_rate == pytest.approx(1.0)


def test_streaks_follow_entry_order():
    results = [_r(1.0, 3), _r(1.0, 1), _r(-1.0, 5), _r(1.0, 2), _r(-1.0, 4)]
    m = aggregate(results)
    assert m.max_consecutive_wins == 3
    assert m.max_consecutive_losses == 2
    assert m.current_streak == -2


def test_identical_results_are_fully_consistent():
    m = aggregate([_r(5.0, i) for i in range(4)])
    assert m.consistency_score == pytest.approx(100.0)
    assert 0.0 <= aggregate([_r(20.0, 0), _r(-15.0, 1)]).consistency_score <= 100.0


def test_groups_sorted_by_win_rate():
    results = [
        _r(-1.0, 0, PatternType.DOUBLE_TOP),
        _r(5.0, 1, PatternType.BEAR_FLAG),
        _r(-5.0, 2, PatternType.BEAR_FLAG),
        _r(5.0, 3, PatternType.BULL_FLAG),
        _r(5.0, 4, PatternType.BULL_FLAG, tf="4h"),
    ]
    groups = by_pattern_type(results)
    assert [g.key for g in groups] == ["bull_flag", "bear_flag", "double_top"]
    assert groups[0].metrics.total_trades == 2
    assert [g.key for g in by_timeframe(results)] == ["4h", "1h"]


def test_report_and_summary():
    results = [_r(5.0, 0), _r(-2.0, 1, PatternType.DOUBLE_TOP)]
    report = build_report(results)
    d = report.to_dict()
    assert d["overall"]["total_trades"] == 2
    assert [g["key"] for g in d["by_pattern"]] == ["bull_flag", "double_top"]

    text = performance_summary(results)
    assert text.startswith("# Backtest Performance Summary")
    assert "| bull_flag | 1 | 100.0% |" in text
    assert "- Win rate: 50.00% (1W / 1L)" in text
