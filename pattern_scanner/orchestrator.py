from __future__ import annotations

import asyncio
import bisect
import functools
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .detectors.common import MIN_CANDLES
from .detectors.registry import ALL_DETECTORS, Detector
from .freshness import summarize_freshness
from .indicators import compute
from .models import Candle, CandleSeries, FreshnessSummary, PatternSignal, series_key
from .scoring import Confirmations, ScoringWeights, apply_score, ema_alignment, multi_timeframe_confirmation
from .timeframes import tf_ms

log = logging.getLogger("orchestrator")

Tail = Tuple[Tuple[int, float, int], ...]
# (bar count, first timestamp, tail)
Fingerprint = Tuple[int, int, Tail]


def tail_fingerprint(candles: Sequence[Candle], n: int) -> Tail:
    return tuple((c.timestamp_ms, c.close, c.volume) for c in candles[-n:])


@dataclass(frozen=True)
class CacheEntry:
    signals: Tuple[PatternSignal, ...]
    fingerprint: Fingerprint
    created_at: float


class DetectionCache:
    """Short-lived per (symbol, timeframe) detection results.

    Entries are replaced whole, so a reader sees either the previous result or
    the new one.
    """

    def __init__(self, ttl_s: float = 60.0, *, fingerprint_bars: int = 3, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = float(ttl_s)
        self.fingerprint_bars = int(fingerprint_bars)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def fingerprint(self, candles: Sequence[Candle]) -> Fingerprint:
        first = candles[0].timestamp_ms if candles else -1
        return len(candles), first, tail_fingerprint(candles, self.fingerprint_bars)

    def get(self, key: str, fingerprint: Fingerprint) -> Optional[Tuple[PatternSignal, ...]]:
        e = self._entries.get(key)
        if e is None:
            return None
        if self._clock() - e.created_at > self.ttl_s or e.fingerprint != fingerprint:
            return None
        return e.signals

    def latest(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def put(self, key: str, fingerprint: Fingerprint, signals: Sequence[PatternSignal]) -> None:
        self._entries[key] = CacheEntry(signals=tuple(signals), fingerprint=fingerprint, created_at=self._clock())


def _mark_retrieved(fut: "asyncio.Future") -> None:
    if not fut.cancelled():
        fut.exception()


class DetectionOrchestrator:
    def __init__(
        self,
        *,
        cache: Optional[DetectionCache] = None,
        weights: Optional[ScoringWeights] = None,
        detectors: Sequence[Tuple[str, Detector]] = ALL_DETECTORS,
        latest_only: bool = False,
        executor: Optional[Executor] = None,
    ):
        self.cache = cache if cache is not None else DetectionCache()
        self.weights = weights or ScoringWeights()
        self.detectors = tuple(detectors)
        self.latest_only = bool(latest_only)
        self._executor = executor
        self._inflight: Dict[str, "asyncio.Future[Tuple[PatternSignal, ...]]"] = {}
        self.metrics = {"passes": 0, "cache_hits": 0, "coalesced": 0, "detector_errors": 0}

    async def detect_all(
        self, symbol: str, candles_by_timeframe: Mapping[str, CandleSeries]
    ) -> Tuple[List[PatternSignal], FreshnessSummary]:
        symbol = symbol.upper()
        enriched: Dict[str, List[Candle]] = {tf: compute(s.candles) for tf, s in candles_by_timeframe.items()}

        tfs = list(enriched)
        raw = await asyncio.gather(*[self._detect_timeframe(symbol, tf, enriched[tf]) for tf in tfs])

        out: List[PatternSignal] = []
        for tf, signals in zip(tfs, raw):
            stamps = [c.timestamp_ms for c in enriched[tf]]
            for sig in signals:
                # anchors are matched by timestamp; a previous result may come from another slice
                idx = bisect.bisect_left(stamps, sig.detected_at_ms)
                if idx == len(stamps) or stamps[idx] != sig.detected_at_ms:
                    log.debug("anchor_missing symbol=%s tf=%s ts=%d", symbol, tf, sig.detected_at_ms)
                    continue
                if self.latest_only and idx != len(stamps) - 1:
                    continue
                if idx != sig.anchor_index:
                    sig = replace(sig, anchor_index=idx)
                out.append(apply_score(sig, self._confirmations(sig, enriched), self.weights))

        summary = summarize_freshness(
            {tf: s.metadata for tf, s in candles_by_timeframe.items() if s.metadata is not None}
        )
        log.debug("detect_all symbol=%s tfs=%s signals=%d", symbol, tfs, len(out))
        return out, summary

    def _confirmations(self, sig: PatternSignal, enriched: Mapping[str, List[Candle]]) -> Confirmations:
        # higher timeframes only see bars closed by the time the anchor bar closes
        anchor_close = sig.detected_at_ms + tf_ms(sig.timeframe)
        visible: Dict[str, List[Candle]] = {}
        for tf, candles in enriched.items():
            if tf == sig.timeframe:
                continue
            stamps = [c.timestamp_ms for c in candles]
            visible[tf] = candles[: bisect.bisect_right(stamps, anchor_close - tf_ms(tf))]
        ratio, confirming_tf = multi_timeframe_confirmation(sig.timeframe, sig.direction, visible)

        anchor = enriched[sig.timeframe][sig.anchor_index]
        return Confirmations(
            higher_tf_ratio=ratio,
            confirming_timeframe=confirming_tf,
            ema_alignment=ema_alignment(anchor, sig.direction),
        )

    async def _detect_timeframe(self, symbol: str, tf: str, candles: Sequence[Candle]) -> Tuple[PatternSignal, ...]:
        key = series_key(symbol, tf)
        fp = self.cache.fingerprint(candles)
        cached = self.cache.get(key, fp)
        if cached is not None:
            self.metrics["cache_hits"] += 1
            return cached

        # no await between the check and the claim below
        running = self._inflight.get(key)
        if running is not None:
            self.metrics["coalesced"] += 1
            prev = self.cache.latest(key)
            if prev is not None:
                return prev.signals
            return await asyncio.shield(running)

        fut: "asyncio.Future[Tuple[PatternSignal, ...]]" = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_mark_retrieved)
        self._inflight[key] = fut
        try:
            self.metrics["passes"] += 1
            signals = await self._run_detectors(symbol, tf, candles)
            self.cache.put(key, fp, signals)
            fut.set_result(signals)
            return signals
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            raise
        finally:
            self._inflight.pop(key, None)

    async def _run_detectors(self, symbol: str, tf: str, candles: Sequence[Candle]) -> Tuple[PatternSignal, ...]:
        if len(candles) < MIN_CANDLES:
            log.debug("insufficient_data symbol=%s tf=%s bars=%d need=%d", symbol, tf, len(candles), MIN_CANDLES)
            return ()
        loop = asyncio.get_running_loop()
        frozen = tuple(candles)
        jobs = [
            loop.run_in_executor(self._executor, functools.partial(self._safe_detect, name, det, symbol, frozen, tf))
            for name, det in self.detectors
        ]
        results = await asyncio.gather(*jobs)
        merged: List[PatternSignal] = []
        for found in results:
            if found is None:
                self.metrics["detector_errors"] += 1
                continue
            merged.extend(found)
        merged.sort(key=lambda s: (s.anchor_index, s.pattern.label))
        return tuple(merged)

    def _safe_detect(
        self, name: str, det: Detector, symbol: str, candles: Tuple[Candle, ...], tf: str
    ) -> Optional[List[PatternSignal]]:
        try:
            return det(symbol, candles, tf)
        except Exception as e:
            log.warning("detector_failed name=%s symbol=%s tf=%s err=%s", name, symbol, tf, e)
            return None
