from __future__ import annotations

from typing import Optional


class PatternScannerError(Exception):
    """Base class for every error raised by pattern_scanner."""


class InsufficientData(PatternScannerError):
    """Fewer candles than an operation needs. Callers treat it as an empty result."""

    def __init__(self, needed: int, got: int, what: str = "candles"):
        super().__init__(f"need at least {needed} {what}, got {got}")
        self.needed = needed
        self.got = got


class FetchError(PatternScannerError):
    """Upstream data source failed after retries (timeout, 5xx, rate limit)."""

    def __init__(self, symbol: str, timeframe: str, reason: str, *, status: Optional[int] = None):
        super().__init__(f"fetch failed symbol={symbol} tf={timeframe}: {reason}")
        self.symbol = symbol
        self.timeframe = timeframe
        self.reason = reason
        self.status = status


class NoDataAvailable(PatternScannerError):
    """The source answered successfully but has no bars for the request."""

    def __init__(self, symbol: str, timeframe: str):
        super().__init__(f"no data symbol={symbol} tf={timeframe}")
        self.symbol = symbol
        self.timeframe = timeframe


class EmptyAggregationInput(PatternScannerError):
    def __init__(self, what: str = "backtest results"):
        super().__init__(f"cannot aggregate zero {what}")


class InvalidSignalGeometry(PatternScannerError):
    """Entry/target/stop are non-finite or ordered against the signal direction."""

    def __init__(self, reason: str, *, entry: float, target: float, stop: float):
        super().__init__(f"{reason} entry={entry} target={target} stop={stop}")
        self.entry = entry
        self.target = target
        self.stop = stop
