from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from .errors import EmptyAggregationInput
from .models import BacktestResult, GroupPerformance, PerformanceMetrics


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def _streaks(outcomes: Sequence[bool]) -> Tuple[int, int, int]:
    """(max wins in a row, max losses in a row, current streak signed +wins/-losses)."""
    best_w = best_l = cur = 0
    for won in outcomes:
        if won:
            cur = cur + 1 if cur > 0 else 1
            best_w = max(best_w, cur)
        else:
            cur = cur - 1 if cur < 0 else -1
            best_l = max(best_l, -cur)
    return best_w, best_l, cur


def consistency_score(pls: Sequence[float]) -> float:
    m = _mean(pls)
    raw = 100.0 - _pstdev(pls) / (abs(m) + 0.1) * 10.0
    return max(0.0, min(100.0, raw))


def aggregate(results: Iterable[BacktestResult]) -> PerformanceMetrics:
    ordered = sorted(results, key=lambda r: r.entry_date_ms)
    if not ordered:
        raise EmptyAggregationInput()

    n = len(ordered)
    pls = [r.profit_loss_pct for r in ordered]
    wins = [r.profit_loss_pct for r in ordered if r.successful]
    losses = [r.profit_loss_pct for r in ordered if not r.successful]

    gross_win = sum(wins)
    gross_loss = abs(sum(losses))
    if gross_loss == 0:
        profit_factor = math.inf if wins else 0.0
    else:
        profit_factor = gross_win / gross_loss

    avg_win = _mean(wins)
    avg_loss = _mean(losses)
    if avg_loss == 0:
        rr = math.inf if wins else 0.0
    else:
        rr = avg_win / abs(avg_loss)

    best_w, best_l, current = _streaks([r.successful for r in ordered])
    expectancy = _mean(pls)

    return PerformanceMetrics(
        total_trades=n,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / n,
        average_profit_loss=expectancy,
        average_winning_trade=avg_win,
        average_losing_trade=avg_loss,
        profit_factor=profit_factor,
        expectancy=expectancy,
        max_drawdown=max(r.max_drawdown_pct for r in ordered),
        average_holding_period=_mean([r.days_to_exit for r in ordered]),
        risk_reward_ratio=rr,
        consistency_score=consistency_score(pls),
        max_consecutive_wins=best_w,
        max_consecutive_losses=best_l,
        current_streak=current,
        target_hit_rate=sum(1 for r in ordered if r.hit_target) / n,
        stop_loss_hit_rate=sum(1 for r in ordered if r.hit_stop_loss) / n,
        timeout_exit_rate=sum(1 for r in ordered if r.timeout_exit) / n,
    )


def group_by(results: Iterable[BacktestResult], key: Callable[[BacktestResult], str]) -> List[GroupPerformance]:
    groups: Dict[str, List[BacktestResult]] = {}
    for r in results:
        groups.setdefault(key(r), []).append(r)
    out = [GroupPerformance(key=k, metrics=aggregate(rs)) for k, rs in groups.items()]
    out.sort(key=lambda g: (-g.metrics.win_rate, g.key))
    return out


def by_pattern_type(results: Iterable[BacktestResult]) -> List[GroupPerformance]:
    return group_by(results, lambda r: r.pattern_type.value)


def by_timeframe(results: Iterable[BacktestResult]) -> List[GroupPerformance]:
    return group_by(results, lambda r: r.timeframe)


@dataclass(frozen=True)
class PerformanceReport:
    overall: PerformanceMetrics
    by_pattern: Tuple[GroupPerformance, ...]
    by_timeframe: Tuple[GroupPerformance, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall.to_dict(),
            "by_pattern": [g.to_dict() for g in self.by_pattern],
            "by_timeframe": [g.to_dict() for g in self.by_timeframe],
        }


def build_report(results: Iterable[BacktestResult]) -> PerformanceReport:
    rs = list(results)
    return PerformanceReport(
        overall=aggregate(rs),
        by_pattern=tuple(by_pattern_type(rs)),
        by_timeframe=tuple(by_timeframe(rs)),
    )


def _fmt_pf(x: float) -> str:
    return "inf" if math.isinf(x) else f"{x:.2f}"


def _group_table(title: str, groups: Sequence[GroupPerformance]) -> List[str]:
    lines = [f"## {title}", "", "| Group | Trades | Win rate | Avg P/L % | Profit factor |", "|---|---|---|---|---|"]
    for g in groups:
        m = g.metrics
        lines.append(
            f"| {g.key} | {m.total_trades} | {m.win_rate * 100:.1f}% | {m.average_profit_loss:.2f} | {_fmt_pf(m.profit_factor)} |"
        )
    lines.append("")
    return lines


def performance_summary(results: Iterable[BacktestResult]) -> str:
    """Markdown report over all results, then per pattern and per timeframe."""
    report = build_report(results)
    m = report.overall
    lines = [
        "# Backtest Performance Summary",
        "",
        "## Overall",
        "",
        f"- Total trades: {m.total_trades}",
        f"- Win rate: {m.win_rate * 100:.2f}% ({m.winning_trades}W / {m.losing_trades}L)",
        f"- Average P/L: {m.average_profit_loss:.2f}%",
        f"- Average win / loss: {m.average_winning_trade:.2f}% / {m.average_losing_trade:.2f}%",
        f"- Profit factor: {_fmt_pf(m.profit_factor)}",
        f"- Expectancy: {m.expectancy:.2f}%",
        f"- Max drawdown: {m.max_drawdown:.2f}%",
        f"- Average holding period: {m.average_holding_period:.2f} days",
        f"- Consistency score: {m.consistency_score:.1f}",
        f"- Streaks: {m.max_consecutive_wins} wins / {m.max_consecutive_losses} losses (current {m.current_streak:+d})",
        f"- Exits: target {m.target_hit_rate * 100:.1f}%, stop {m.stop_loss_hit_rate * 100:.1f}%, "
        f"timeout {m.timeout_exit_rate * 100:.1f}%",
        "",
    ]
    lines.extend(_group_table("By pattern", report.by_pattern))
    lines.extend(_group_table("By timeframe", report.by_timeframe))
    return "\n".join(lines)
