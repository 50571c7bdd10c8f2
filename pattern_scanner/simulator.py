from __future__ import annotations

from typing import Optional, Sequence

from .errors import InsufficientData
from .models import BacktestResult, Candle, Direction, PatternSignal, SignalStatus
from .tracking import next_status

DAY_MS = 86_400_000
DEFAULT_MAX_HOLDING_DAYS = 30


def _pl_pct(direction: Direction, entry: float, exit_price: float) -> float:
    pl = (exit_price - entry) / entry * 100.0
    return pl if direction is Direction.BULLISH else -pl


def _adverse_pct(direction: Direction, entry: float, candle: Candle, floor: Optional[float] = None) -> float:
    """Worst move against the position within one bar, optionally capped at a fill level."""
    if direction is Direction.BULLISH:
        worst = candle.low if floor is None else max(candle.low, floor)
        return max(0.0, (entry - worst) / entry * 100.0)
    worst = candle.high if floor is None else min(candle.high, floor)
    return max(0.0, (worst - entry) / entry * 100.0)


def _status_at(signal: PatternSignal, price: float) -> SignalStatus:
    return next_status(signal.direction, SignalStatus.ACTIVE, signal.target_price, signal.stop_loss, price)


def simulate(
    signal: PatternSignal,
    subsequent_candles: Sequence[Candle],
    max_holding_days: float = DEFAULT_MAX_HOLDING_DAYS,
) -> BacktestResult:
    """Replay `signal` over the bars after its anchor.

    Per bar the stop is checked against the bar's adverse extreme before the
    target is checked against its favourable extreme. Fills happen at the
    threshold level. With no hit inside the holding period the trade exits at
    the last close it saw.
    """
    if not subsequent_candles:
        raise InsufficientData(1, 0, what="subsequent candles")

    d = signal.direction
    entry = signal.entry_price
    entry_ts = signal.detected_at_ms
    horizon_ms = max_holding_days * DAY_MS

    exit_price: Optional[float] = None
    exit_ts: Optional[int] = None
    hit_target = hit_stop = False
    drawdown = 0.0
    last: Optional[Candle] = None

    for c in subsequent_candles:
        if c.timestamp_ms <= entry_ts:
            continue
        if c.timestamp_ms - entry_ts > horizon_ms:
            break
        last = c
        adverse = c.low if d is Direction.BULLISH else c.high
        favourable = c.high if d is Direction.BULLISH else c.low

        if _status_at(signal, adverse) is SignalStatus.FAILED:
            hit_stop = True
            exit_price = signal.stop_loss
            drawdown = max(drawdown, _adverse_pct(d, entry, c, floor=signal.stop_loss))
        elif _status_at(signal, favourable) is SignalStatus.COMPLETED:
            hit_target = True
            exit_price = signal.target_price
            drawdown = max(drawdown, _adverse_pct(d, entry, c))
        else:
            drawdown = max(drawdown, _adverse_pct(d, entry, c))
            continue
        exit_ts = c.timestamp_ms
        break

    if last is None:
        raise InsufficientData(1, 0, what="candles after the signal inside the holding period")

    timeout = exit_price is None
    if timeout:
        exit_price = last.close
        exit_ts = last.timestamp_ms

    return BacktestResult(
        signal_id=signal.signal_id,
        symbol=signal.symbol,
        timeframe=signal.timeframe,
        pattern_type=signal.pattern_type,
        direction=d,
        entry_date_ms=entry_ts,
        entry_price=entry,
        target_price=signal.target_price,
        stop_loss=signal.stop_loss,
        exit_date_ms=exit_ts,
        exit_price=exit_price,
        hit_target=hit_target,
        hit_stop_loss=hit_stop,
        timeout_exit=timeout,
        profit_loss_pct=_pl_pct(d, entry, exit_price),
        max_drawdown_pct=drawdown,
        days_to_exit=(exit_ts - entry_ts) / DAY_MS,
        confidence_score=signal.confidence_score,
        risk_reward_ratio=signal.risk_reward_ratio,
    )
