from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import EMA_PERIODS, BacktestResult, Candle, Direction, PatternSignal
from .timeframes import higher_timeframes, timeframe_weight

log = logging.getLogger("scoring")

EMA_TOUCH_PCT = 0.01
EMA_TOUCH_BARS = 3


@dataclass
class ScoringWeights:
    """Tunable heuristic constants for the confidence score."""

    breakout_base: float = 50.0
    pattern_base: float = 60.0
    quality: float = 15.0
    strength: float = 10.0
    volume: float = 10.0
    multi_timeframe: float = 15.0
    trendline_break: float = 10.0
    ema_aligned: float = 10.0
    ema_mixed_penalty: float = 5.0
    # filled by calibrate(); keyed by PatternType value
    pattern_adjustments: Dict[str, float] = field(default_factory=dict)
    calibration_span: float = 20.0
    min_calibration_trades: int = 5


@dataclass(frozen=True)
class Confirmations:
    """Cross-cutting evidence gathered by the orchestrator for one signal."""

    higher_tf_ratio: float = 0.0
    confirming_timeframe: Optional[str] = None
    ema_alignment: Optional[str] = None  # aligned | mixed | None when EMAs are unset


def ema_alignment(candle: Candle, direction: Direction) -> Optional[str]:
    vals = [candle.ema(p) for p in EMA_PERIODS]
    vals = [v for v in vals if v is not None]
    if len(vals) < 2:
        return None
    if direction is Direction.BULLISH:
        ordered = all(a > b for a, b in zip(vals, vals[1:]))
    else:
        ordered = all(a < b for a, b in zip(vals, vals[1:]))
    return "aligned" if ordered else "mixed"


def confirms_direction(candles: Sequence[Candle], direction: Direction) -> bool:
    """Higher-timeframe trend check on EMA-enriched candles."""
    if not candles:
        return False
    last = candles[-1]
    e20, e50 = last.ema20, last.ema50
    if e20 is None or e50 is None:
        return False
    recent = candles[-EMA_TOUCH_BARS:]
    if direction is Direction.BULLISH:
        if last.close > e20 and last.close > e50:
            return True
        return e20 > e50 and any(abs(c.low - e20) / e20 <= EMA_TOUCH_PCT for c in recent)
    if last.close < e20 and last.close < e50:
        return True
    return e20 < e50 and any(abs(c.high - e20) / e20 <= EMA_TOUCH_PCT for c in recent)


def multi_timeframe_confirmation(
    timeframe: str, direction: Direction, candles_by_tf: Mapping[str, Sequence[Candle]]
) -> Tuple[float, Optional[str]]:
    """Weighted share of available higher timeframes agreeing, and the lowest one that does."""
    available = [tf for tf in higher_timeframes(timeframe) if candles_by_tf.get(tf)]
    if not available:
        return 0.0, None
    confirming = [tf for tf in available if confirms_direction(candles_by_tf[tf], direction)]
    ratio = sum(timeframe_weight(tf) for tf in confirming) / len(available)
    return ratio, (confirming[0] if confirming else None)


def explain(signal: PatternSignal, conf: Confirmations, weights: Optional[ScoringWeights] = None) -> Tuple[int, str]:
    w = weights or ScoringWeights()
    p = signal.pattern
    base = w.breakout_base if p.is_breakout else w.pattern_base
    b: List[str] = [f"Base {p.label} ({base:g})"]
    deltas = 0.0

    q = w.quality * p.quality
    deltas += q
    b.append(f"Pattern quality {p.quality:.2f} (+{q:.1f})")

    s = w.strength * p.strength
    deltas += s
    b.append(f"Strength {p.strength:.2f} (+{s:.1f})")

    if p.volume_increase_pct >= p.volume_threshold_pct:
        deltas += w.volume
        b.append(f"Volume +{p.volume_increase_pct:.0f}% >= {p.volume_threshold_pct:.0f}% (+{w.volume:g})")
    elif p.volume_increase_pct >= p.volume_threshold_pct / 2.0:
        deltas += w.volume / 2.0
        b.append(f"Volume +{p.volume_increase_pct:.0f}% partial (+{w.volume / 2.0:g})")
    else:
        b.append(f"Volume {p.volume_increase_pct:+.0f}% (+0)")

    if conf.higher_tf_ratio > 0:
        m = w.multi_timeframe * conf.higher_tf_ratio
        deltas += m
        b.append(f"Higher TF {conf.confirming_timeframe} confirms (+{m:.1f})")
    else:
        b.append("Higher TF none (+0)")

    if p.trendline_break:
        deltas += w.trendline_break
        b.append(f"Trendline break (+{w.trendline_break:g})")
    else:
        b.append("Trendline intact (+0)")

    if conf.ema_alignment == "aligned":
        deltas += w.ema_aligned
        b.append(f"EMA stack aligned (+{w.ema_aligned:g})")
    elif conf.ema_alignment == "mixed":
        deltas -= w.ema_mixed_penalty
        b.append(f"EMA stack mixed (-{w.ema_mixed_penalty:g})")
    else:
        b.append("EMA stack NA (+0)")

    tfw = timeframe_weight(signal.timeframe)
    adj = w.pattern_adjustments.get(p.type.value, 0.0)
    raw = base + tfw * deltas + adj
    b.append(f"Timeframe {signal.timeframe} weight x{tfw:g}")
    if adj:
        b.append(f"Calibration ({adj:+g})")
    final = int(round(max(0.0, min(100.0, raw))))
    return final, "\n".join(b)


def score(signal: PatternSignal, conf: Confirmations, weights: Optional[ScoringWeights] = None) -> int:
    return explain(signal, conf, weights)[0]


def apply_score(signal: PatternSignal, conf: Confirmations, weights: Optional[ScoringWeights] = None) -> PatternSignal:
    value, breakdown = explain(signal, conf, weights)
    return replace(
        signal,
        confidence_score=value,
        multi_timeframe_confirmed=conf.higher_tf_ratio > 0,
        confirming_timeframe=conf.confirming_timeframe,
        score_breakdown=breakdown,
    )


def calibrate(weights: ScoringWeights, results: Iterable[BacktestResult]) -> ScoringWeights:
    """Offline: derive per-pattern score adjustments from backtest win rates."""
    by_pattern: Dict[str, List[BacktestResult]] = {}
    for r in results:
        by_pattern.setdefault(r.pattern_type.value, []).append(r)

    adjustments = dict(weights.pattern_adjustments)
    for pattern, rs in sorted(by_pattern.items()):
        if len(rs) < weights.min_calibration_trades:
            log.info("calibrate_skip pattern=%s trades=%d", pattern, len(rs))
            continue
        win_rate = sum(1 for r in rs if r.successful) / len(rs)
        adjustments[pattern] = float(round((win_rate - 0.5) * weights.calibration_span))
        log.info("calibrate pattern=%s trades=%d win_rate=%.2f adj=%+g", pattern, len(rs), win_rate, adjustments[pattern])
    return replace(weights, pattern_adjustments=adjustments)
