from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os
import yaml

from .scoring import ScoringWeights


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class ProviderConfig:
    type: str = "polygon"  # polygon | csv
    api_key: str = ""
    realtime: bool = False
    csv_dir: str = "data"
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20
    rest_max_retries: int = 4
    rest_backoff_s: float = 0.8


@dataclass
class ScanConfig:
    symbols: List[str] = None
    timeframes: List[str] = None
    candles: int = 250
    batch_size: int = 5
    batch_delay_s: float = 1.2
    fetch_concurrency: int = 5


@dataclass
class DetectionConfig:
    cache_ttl_s: float = 60.0
    fingerprint_bars: int = 3
    min_confidence: int = 0


@dataclass
class ScoringConfig:
    breakout_base: float = 50.0
    pattern_base: float = 60.0
    quality: float = 15.0
    strength: float = 10.0
    volume: float = 10.0
    multi_timeframe: float = 15.0
    trendline_break: float = 10.0
    ema_aligned: float = 10.0
    ema_mixed_penalty: float = 5.0
    pattern_adjustments: Dict[str, float] = None
    calibration_span: float = 20.0
    min_calibration_trades: int = 5

    def weights(self) -> ScoringWeights:
        return ScoringWeights(
            breakout_base=self.breakout_base,
            pattern_base=self.pattern_base,
            quality=self.quality,
            strength=self.strength,
            volume=self.volume,
            multi_timeframe=self.multi_timeframe,
            trendline_break=self.trendline_break,
            ema_aligned=self.ema_aligned,
            ema_mixed_penalty=self.ema_mixed_penalty,
            pattern_adjustments=dict(self.pattern_adjustments or {}),
            calibration_span=self.calibration_span,
            min_calibration_trades=self.min_calibration_trades,
        )


@dataclass
class BacktestConfig:
    max_holding_days: float = 30.0
    history_candles: int = 1000
    start: Optional[str] = None  # YYYY-MM-DD
    end: Optional[str] = None


@dataclass
class FreshnessConfig:
    calendar: str = "regular"  # regular | always_open
    timezone: str = "UTC-5"
    open_sub_hour_s: float = 60.0
    open_intraday_s: float = 300.0
    open_daily_s: float = 900.0
    extended_hours_s: float = 600.0
    closed_s: float = 1800.0


@dataclass
class LiveConfig:
    batch_size: int = 100
    flush_interval_s: float = 5.0
    max_pending: int = 1000


@dataclass
class StoreConfig:
    type: str = "jsonl"  # jsonl | memory
    directory: str = "output"


@dataclass
class AppConfig:
    name: str = "Pattern Scanner"
    log_level: str = "INFO"


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    freshness: FreshnessConfig = field(default_factory=FreshnessConfig)
    live: LiveConfig = field(default_factory=LiveConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


def _section(raw: Dict[str, Any], name: str, cls):
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"config section '{name}' must be a mapping")
    try:
        return cls(**data)
    except TypeError as e:
        raise ValueError(f"config section '{name}': {e}") from e


def config_from_dict(raw: Dict[str, Any]) -> Config:
    cfg = Config(
        app=_section(raw, "app", AppConfig),
        provider=_section(raw, "provider", ProviderConfig),
        scan=_section(raw, "scan", ScanConfig),
        detection=_section(raw, "detection", DetectionConfig),
        scoring=_section(raw, "scoring", ScoringConfig),
        backtest=_section(raw, "backtest", BacktestConfig),
        freshness=_section(raw, "freshness", FreshnessConfig),
        live=_section(raw, "live", LiveConfig),
        store=_section(raw, "store", StoreConfig),
    )

    # env overrides (useful on servers)
    cfg.provider.api_key = _env_override(cfg.provider.api_key, "POLYGON_API_KEY")
    cfg.app.log_level = _env_override(cfg.app.log_level, "PATTERN_SCANNER_LOG_LEVEL")
    if cfg.scan.symbols is None:
        cfg.scan.symbols = []
    if cfg.scan.timeframes is None:
        cfg.scan.timeframes = ["1h"]
    cfg.scan.symbols = [s.strip().upper() for s in cfg.scan.symbols if str(s).strip()]

    # Allow SCAN_SYMBOLS="AAPL,MSFT"
    sym_env = os.getenv("SCAN_SYMBOLS")
    if sym_env:
        cfg.scan.symbols = [x.strip().upper() for x in sym_env.split(",") if x.strip()]

    if cfg.scoring.pattern_adjustments is None:
        cfg.scoring.pattern_adjustments = {}
    return cfg


def load_config(path: Optional[str]) -> Config:
    if not path:
        return config_from_dict({})
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return config_from_dict(raw)
