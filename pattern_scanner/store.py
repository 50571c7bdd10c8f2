from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Protocol

from .models import BacktestResult, PatternSignal

log = logging.getLogger("store")


class SignalStore(Protocol):
    def save_signal(self, signal: PatternSignal) -> None:
        ...

    def save_backtest_result(self, result: BacktestResult) -> None:
        ...

    def load_recent_signals(
        self,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        pattern_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[PatternSignal]:
        ...


def _matches(d: Dict[str, Any], symbol: Optional[str], timeframe: Optional[str], pattern_type: Optional[str]) -> bool:
    if symbol is not None and d.get("symbol") != symbol.upper():
        return False
    if timeframe is not None and d.get("timeframe") != timeframe:
        return False
    if pattern_type is not None and d.get("pattern_type") != pattern_type:
        return False
    return True


class MemoryStore:
    def __init__(self) -> None:
        self.signals: List[PatternSignal] = []
        self.results: List[BacktestResult] = []

    def save_signal(self, signal: PatternSignal) -> None:
        self.signals.append(signal)

    def save_backtest_result(self, result: BacktestResult) -> None:
        self.results.append(result)

    def load_recent_signals(
        self,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        pattern_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[PatternSignal]:
        picked = [s for s in self.signals if _matches(s.to_dict(), symbol, timeframe, pattern_type)]
        picked.sort(key=lambda s: s.detected_at_ms, reverse=True)
        return picked[:limit]


class JsonlStore:
    """Append-only JSON lines: signals.jsonl and backtests.jsonl."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)
        self.signals_path = os.path.join(directory, "signals.jsonl")
        self.results_path = os.path.join(directory, "backtests.jsonl")
        self._lock = threading.Lock()

    def _append(self, path: str, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        with self._lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def save_signal(self, signal: PatternSignal) -> None:
        self._append(self.signals_path, signal.to_dict())

    def save_backtest_result(self, result: BacktestResult) -> None:
        self._append(self.results_path, result.to_dict())

    def load_recent_signals(
        self,
        symbol: Optional[str] = None,
        timeframe: Optional[str] = None,
        pattern_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[PatternSignal]:
        if not os.path.exists(self.signals_path):
            return []
        latest: Dict[str, Dict[str, Any]] = {}
        with open(self.signals_path, "r", encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    d = json.loads(line)
                except ValueError as e:
                    log.warning("skip_bad_line path=%s line=%d err=%s", self.signals_path, n, e)
                    continue
                if _matches(d, symbol, timeframe, pattern_type):
                    # later lines supersede earlier ones for the same signal
                    latest[d.get("signal_id") or f"line{n}"] = d
        ordered = sorted(latest.values(), key=lambda d: int(d.get("detected_at_ms", 0)), reverse=True)
        return [PatternSignal.from_dict(d) for d in ordered[:limit]]
