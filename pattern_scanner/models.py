from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class PatternType(str, Enum):
    BULL_FLAG = "bull_flag"
    BEAR_FLAG = "bear_flag"
    ASCENDING_TRIANGLE = "ascending_triangle"
    DESCENDING_TRIANGLE = "descending_triangle"
    CHANNEL_BREAKOUT = "channel_breakout"
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"


class ChannelType(str, Enum):
    HORIZONTAL = "horizontal"
    ASCENDING = "ascending"
    DESCENDING = "descending"


class SignalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MarketStatus(str, Enum):
    OPEN = "open"
    PRE_MARKET = "pre_market"
    AFTER_HOURS = "after_hours"
    CLOSED = "closed"


class DataSource(str, Enum):
    API = "api"
    CACHE = "cache"
    CACHE_FALLBACK = "cache_fallback"
    ERROR = "error"


def _plain(value: Any) -> Any:
    """Convert a record field into JSON-friendly primitives."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float) and math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _record_dict(obj: Any, skip: Tuple[str, ...] = ()) -> Dict[str, Any]:
    return {f.name: _plain(getattr(obj, f.name)) for f in fields(obj) if f.name not in skip}


EMA_PERIODS = (7, 20, 50, 100, 200)


@dataclass(frozen=True)
class Candle:
    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: int
    ema7: Optional[float] = None
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    ema100: Optional[float] = None
    ema200: Optional[float] = None
    rsi14: Optional[float] = None
    atr14: Optional[float] = None

    def __post_init__(self) -> None:
        if self.low <= 0:
            raise ValueError(f"non-positive price in candle ts={self.timestamp_ms}")
        if self.high < max(self.open, self.close, self.low) or self.low > min(self.open, self.close, self.high):
            raise ValueError(f"inconsistent OHLC in candle ts={self.timestamp_ms}")
        if self.volume < 0:
            raise ValueError(f"negative volume in candle ts={self.timestamp_ms}")

    def ema(self, period: int) -> Optional[float]:
        return getattr(self, f"ema{period}")

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class DataFreshnessMetadata:
    fetched_at_ms: int
    source: DataSource
    market_status: MarketStatus
    is_delayed: bool = False
    data_age_ms: Optional[int] = None  # newest bar age at fetch time
    valid_until_ms: Optional[int] = None
    timeframe: Optional[str] = None
    request_duration_ms: Optional[int] = None
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class CandleSeries:
    """Oldest-first candles for one (symbol, timeframe)."""

    symbol: str
    timeframe: str
    candles: Tuple[Candle, ...] = ()
    metadata: Optional[DataFreshnessMetadata] = None

    def __post_init__(self) -> None:
        candles = tuple(self.candles)
        object.__setattr__(self, "candles", candles)
        for prev, cur in zip(candles, candles[1:]):
            if cur.timestamp_ms <= prev.timestamp_ms:
                raise ValueError(
                    f"candles not strictly increasing symbol={self.symbol} tf={self.timeframe} "
                    f"ts={cur.timestamp_ms} after {prev.timestamp_ms}"
                )

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def key(self) -> str:
        return series_key(self.symbol, self.timeframe)


def series_key(symbol: str, timeframe: str) -> str:
    return f"{symbol.upper()}:{timeframe}"


@dataclass(frozen=True)
class PatternKind:
    """Tagged pattern variant; only the fields relevant to `type` are populated."""

    type: PatternType
    channel_type: Optional[ChannelType] = None
    pattern_height: float = 0.0  # pole height for flags
    boundary: Optional[float] = None
    quality: float = 0.0
    strength: float = 0.0
    volume_increase_pct: float = 0.0
    volume_threshold_pct: float = 0.0
    trendline_break: bool = False
    touches: int = 0

    @property
    def label(self) -> str:
        if self.type is PatternType.CHANNEL_BREAKOUT and self.channel_type is not None:
            return f"{self.type.value}:{self.channel_type.value}"
        return self.type.value

    @property
    def is_breakout(self) -> bool:
        return self.type is PatternType.CHANNEL_BREAKOUT

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


def make_signal_id(symbol: str, timeframe: str, label: str, direction: Direction, anchor_ts_ms: int) -> str:
    base = f"{symbol.upper()}|{timeframe}|{label}|{direction.value}|{int(anchor_ts_ms)}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PatternSignal:
    symbol: str
    timeframe: str
    pattern: PatternKind
    direction: Direction
    entry_price: float
    target_price: float
    stop_loss: float
    detected_at_ms: int
    anchor_index: int
    window: Tuple[Candle, ...] = field(default=(), repr=False, compare=False)
    confidence_score: int = 0
    multi_timeframe_confirmed: bool = False
    confirming_timeframe: Optional[str] = None
    status: SignalStatus = SignalStatus.ACTIVE
    score_breakdown: str = ""
    signal_id: str = ""

    @property
    def pattern_type(self) -> PatternType:
        return self.pattern.type

    @property
    def breakout_type(self) -> Optional[ChannelType]:
        return self.pattern.channel_type

    @property
    def risk_reward_ratio(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return math.inf
        return abs(self.target_price - self.entry_price) / risk

    @property
    def potential_profit_pct(self) -> float:
        return abs(self.target_price - self.entry_price) / self.entry_price * 100.0

    def to_dict(self, include_window: bool = False) -> Dict[str, Any]:
        d = _record_dict(self, skip=("window",))
        d["pattern_type"] = self.pattern_type.value
        d["breakout_type"] = _plain(self.breakout_type)
        d["risk_reward_ratio"] = _plain(self.risk_reward_ratio)
        d["potential_profit_pct"] = self.potential_profit_pct
        if include_window:
            d["window"] = [c.to_dict() for c in self.window]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PatternSignal":
        p = dict(d["pattern"])
        p["type"] = PatternType(p["type"])
        if p.get("channel_type"):
            p["channel_type"] = ChannelType(p["channel_type"])
        window = tuple(Candle(**c) for c in d.get("window") or [])
        return cls(
            symbol=d["symbol"],
            timeframe=d["timeframe"],
            pattern=PatternKind(**p),
            direction=Direction(d["direction"]),
            entry_price=float(d["entry_price"]),
            target_price=float(d["target_price"]),
            stop_loss=float(d["stop_loss"]),
            detected_at_ms=int(d["detected_at_ms"]),
            anchor_index=int(d["anchor_index"]),
            window=window,
            confidence_score=int(d.get("confidence_score", 0)),
            multi_timeframe_confirmed=bool(d.get("multi_timeframe_confirmed", False)),
            confirming_timeframe=d.get("confirming_timeframe"),
            status=SignalStatus(d.get("status", SignalStatus.ACTIVE.value)),
            score_breakdown=d.get("score_breakdown", ""),
            signal_id=d.get("signal_id", ""),
        )


@dataclass(frozen=True)
class BacktestResult:
    signal_id: str
    symbol: str
    timeframe: str
    pattern_type: PatternType
    direction: Direction
    entry_date_ms: int
    entry_price: float
    target_price: float
    stop_loss: float
    exit_date_ms: Optional[int]
    exit_price: Optional[float]
    hit_target: bool
    hit_stop_loss: bool
    timeout_exit: bool
    profit_loss_pct: float
    max_drawdown_pct: float
    days_to_exit: float
    confidence_score: int = 0
    risk_reward_ratio: float = 0.0

    @property
    def successful(self) -> bool:
        return self.profit_loss_pct > 0

    def to_dict(self) -> Dict[str, Any]:
        d = _record_dict(self)
        d["successful"] = self.successful
        return d


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_profit_loss: float
    average_winning_trade: float
    average_losing_trade: float
    profit_factor: float
    expectancy: float
    max_drawdown: float
    average_holding_period: float
    risk_reward_ratio: float
    consistency_score: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    current_streak: int  # >0 wins, <0 losses
    target_hit_rate: float
    stop_loss_hit_rate: float
    timeout_exit_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class GroupPerformance:
    key: str
    metrics: PerformanceMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, **self.metrics.to_dict()}


@dataclass(frozen=True)
class PriceUpdate:
    symbol: str
    price: float
    timestamp_ms: int


@dataclass(frozen=True)
class FreshnessSummary:
    real_time: int = 0
    delayed: int = 0
    cached: int = 0
    error: int = 0
    total: int = 0
    freshest: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)
