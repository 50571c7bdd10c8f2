from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from .models import FreshnessSummary, PatternSignal


def _fmt_ms(ts_ms: Optional[int], tz=timezone.utc) -> str:
    if ts_ms is None:
        return "-"
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.4f}".rstrip("0").rstrip(".")


def format_signal(signal: PatternSignal, *, include_score_breakdown: bool = False) -> str:
    header = f"{signal.symbol} | {signal.timeframe} | {signal.pattern.label} {signal.direction.value.upper()}"
    lines = [
        header,
        f"Detected: {_fmt_ms(signal.detected_at_ms)} UTC | Confidence: {signal.confidence_score}/100",
        f"Entry: {_fmt_price(signal.entry_price)} | Target: {_fmt_price(signal.target_price)} "
        f"| Stop: {_fmt_price(signal.stop_loss)} | R:R {signal.risk_reward_ratio:.2f}",
    ]
    if signal.multi_timeframe_confirmed:
        lines.append(f"Confirmed on {signal.confirming_timeframe}")
    if include_score_breakdown and signal.score_breakdown:
        lines.append("Score breakdown:")
        lines.append(signal.score_breakdown)
    return "\n".join(lines)


def format_freshness(summary: FreshnessSummary) -> str:
    return (
        f"Data: {summary.total} series | real-time {summary.real_time} | delayed {summary.delayed} "
        f"| cached {summary.cached} | error {summary.error}"
    )


def format_scan(signals: Sequence[PatternSignal], failures: Sequence[str] = ()) -> str:
    if not signals:
        lines: List[str] = ["No patterns detected."]
    else:
        ranked = sorted(signals, key=lambda s: (-s.confidence_score, s.symbol, s.timeframe))
        lines = [f"{len(ranked)} pattern(s) detected", ""]
        for s in ranked:
            lines.append(format_signal(s))
            lines.append("")
    for f in failures:
        lines.append(f"FAILED {f}")
    return "\n".join(lines).rstrip() + "\n"


def to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)
