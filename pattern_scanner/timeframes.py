from __future__ import annotations

from typing import Dict, List

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080}

TIMEFRAME_WEIGHTS: Dict[str, float] = {
    "1m": 0.6,
    "5m": 0.65,
    "15m": 0.7,
    "30m": 0.75,
    "1h": 0.8,
    "4h": 0.85,
    "1d": 0.9,
    "1w": 0.95,
}
DEFAULT_TIMEFRAME_WEIGHT = 0.7

HIGHER_TIMEFRAMES: Dict[str, List[str]] = {
    "1m": ["5m", "15m", "1h"],
    "5m": ["15m", "1h", "4h"],
    "15m": ["1h", "4h", "1d"],
    "30m": ["1h", "4h", "1d"],
    "1h": ["4h", "1d", "1w"],
    "4h": ["1d", "1w"],
    "1d": ["1w"],
}


def tf_minutes(tf: str) -> int:
    tf = (tf or "").strip().lower()
    if len(tf) < 2 or tf[-1] not in _UNIT_MINUTES or not tf[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {tf}")
    return int(tf[:-1]) * _UNIT_MINUTES[tf[-1]]


def tf_ms(tf: str) -> int:
    return tf_minutes(tf) * 60_000


def timeframe_weight(tf: str) -> float:
    return TIMEFRAME_WEIGHTS.get((tf or "").lower(), DEFAULT_TIMEFRAME_WEIGHT)


def higher_timeframes(tf: str) -> List[str]:
    return list(HIGHER_TIMEFRAMES.get((tf or "").lower(), []))
