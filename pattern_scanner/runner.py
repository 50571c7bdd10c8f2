from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from .config import Config, ProviderConfig, StoreConfig
from .errors import FetchError, InsufficientData
from .freshness import CandleCache, FreshnessPolicy
from .market_hours import make_calendar
from .models import BacktestResult, CandleSeries, FreshnessSummary, PatternSignal, PriceUpdate
from .orchestrator import DetectionCache, DetectionOrchestrator
from .providers.csv_files import CsvFileProvider
from .providers.polygon import PolygonProvider
from .scoring import ScoringWeights, calibrate
from .simulator import simulate
from .store import JsonlStore, MemoryStore, SignalStore
from .tracking import SignalTracker, UpdateBatcher

log = logging.getLogger("runner")

Failure = Tuple[str, str, str]  # symbol, timeframe, error


def parse_day_ms(day: Optional[str]) -> Optional[int]:
    if not day:
        return None
    dt = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def build_provider(pc: ProviderConfig):
    kind = (pc.type or "polygon").lower()
    if kind == "polygon":
        if not pc.api_key:
            raise ValueError("provider.api_key (or POLYGON_API_KEY) is required for the polygon provider")
        return PolygonProvider(
            pc.api_key,
            realtime=pc.realtime,
            rest_timeout_s=pc.rest_timeout_s,
            ws_heartbeat_s=pc.ws_heartbeat_s,
            rest_max_retries=pc.rest_max_retries,
            rest_backoff_s=pc.rest_backoff_s,
        )
    if kind == "csv":
        return CsvFileProvider(pc.csv_dir)
    raise ValueError(f"Unsupported provider type: {pc.type}")


def build_store(sc: StoreConfig) -> SignalStore:
    kind = (sc.type or "jsonl").lower()
    if kind == "jsonl":
        return JsonlStore(sc.directory)
    if kind == "memory":
        return MemoryStore()
    raise ValueError(f"Unsupported store type: {sc.type}")


@dataclass
class ScanOutcome:
    signals: List[PatternSignal] = field(default_factory=list)
    failures: List[Failure] = field(default_factory=list)
    freshness: Dict[str, FreshnessSummary] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    stopped: bool = False


@dataclass
class BacktestOutcome:
    results: List[BacktestResult] = field(default_factory=list)
    signals: int = 0
    failures: List[Failure] = field(default_factory=list)
    calibrated: Optional[ScoringWeights] = None


class PatternRunner:
    def __init__(self, cfg: Config, *, provider=None, store=None, calendar=None):
        self.cfg = cfg
        self.provider = provider if provider is not None else build_provider(cfg.provider)
        self.store: SignalStore = store if store is not None else build_store(cfg.store)

        fc = cfg.freshness
        self.candles = CandleCache(
            self.provider,
            policy=FreshnessPolicy(
                open_sub_hour_s=fc.open_sub_hour_s,
                open_intraday_s=fc.open_intraday_s,
                open_daily_s=fc.open_daily_s,
                extended_hours_s=fc.extended_hours_s,
                closed_s=fc.closed_s,
            ),
            calendar=calendar or make_calendar(fc.calendar, fc.timezone),
        )
        self.weights = cfg.scoring.weights()
        self.orchestrator = DetectionOrchestrator(
            cache=DetectionCache(cfg.detection.cache_ttl_s, fingerprint_bars=cfg.detection.fingerprint_bars),
            weights=self.weights,
            latest_only=True,
        )
        self.tracker = SignalTracker()
        self._stopped = False
        self._live_stop: Optional[asyncio.Event] = None

    def stop(self) -> None:
        """Abandon a running scan before its next symbol, or end live tracking. Finished symbols stay persisted."""
        self._stopped = True
        if self._live_stop is not None:
            self._live_stop.set()

    async def close(self) -> None:
        await self.provider.close()

    def _targets(self, symbols: Optional[Sequence[str]], timeframes: Optional[Sequence[str]]) -> Tuple[List[str], List[str]]:
        syms = [s.upper() for s in (symbols or self.cfg.scan.symbols or [])]
        tfs = list(timeframes or self.cfg.scan.timeframes or [])
        if not syms or not tfs:
            raise ValueError("No symbols/timeframes configured.")
        return syms, tfs

    def _batches(self, symbols: List[str]) -> List[List[str]]:
        n = max(1, int(self.cfg.scan.batch_size))
        return [symbols[i:i + n] for i in range(0, len(symbols), n)]

    async def _fetch_symbol(
        self,
        sym: str,
        tfs: Sequence[str],
        limit: int,
        sem: asyncio.Semaphore,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> Tuple[Dict[str, CandleSeries], List[Failure]]:
        async def _one(tf: str):
            try:
                async with sem:
                    return tf, await self.candles.get(sym, tf, limit, start_ms, end_ms), None
            except FetchError as e:
                return tf, None, str(e)

        series: Dict[str, CandleSeries] = {}
        failures: List[Failure] = []
        for tf, s, err in await asyncio.gather(*[_one(tf) for tf in tfs]):
            if err is not None:
                failures.append((sym, tf, err))
            elif s is not None and len(s) > 0:
                series[tf] = s
        return series, failures

    async def scan(self, symbols: Optional[Sequence[str]] = None, timeframes: Optional[Sequence[str]] = None) -> ScanOutcome:
        syms, tfs = self._targets(symbols, timeframes)
        out = ScanOutcome()
        sem = asyncio.Semaphore(max(1, int(self.cfg.scan.fetch_concurrency)))
        min_conf = int(self.cfg.detection.min_confidence)
        log.info("scan_start symbols=%d timeframes=%s", len(syms), tfs)

        async def _symbol(sym: str):
            if self._stopped:
                return sym, None
            series, failures = await self._fetch_symbol(sym, tfs, int(self.cfg.scan.candles), sem)
            if not series:
                return sym, ([], failures, None)
            signals, summary = await self.orchestrator.detect_all(sym, series)
            return sym, ([s for s in signals if s.confidence_score >= min_conf], failures, summary)

        for bi, batch in enumerate(self._batches(syms)):
            if self._stopped:
                break
            if bi > 0:
                await asyncio.sleep(float(self.cfg.scan.batch_delay_s))
            for sym, res in await asyncio.gather(*[_symbol(s) for s in batch]):
                if res is None:
                    continue
                signals, failures, summary = res
                for sig in signals:
                    self.store.save_signal(sig)
                out.signals.extend(signals)
                out.failures.extend(failures)
                if summary is not None:
                    out.freshness[sym] = summary
                out.completed.append(sym)

        out.stopped = self._stopped
        if out.failures:
            for sym, tf, err in out.failures[:10]:
                log.warning("scan_fetch_failed symbol=%s tf=%s err=%s", sym, tf, err)
            if len(out.failures) > 10:
                log.warning("scan_fetch_failed_more count=%d", len(out.failures))
        log.info(
            "scan_done symbols=%d/%d signals=%d failures=%d stopped=%s",
            len(out.completed),
            len(syms),
            len(out.signals),
            len(out.failures),
            out.stopped,
        )
        return out

    async def backtest(
        self,
        symbols: Optional[Sequence[str]] = None,
        timeframes: Optional[Sequence[str]] = None,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> BacktestOutcome:
        syms, tfs = self._targets(symbols, timeframes)
        bc = self.cfg.backtest
        start_ms = start_ms if start_ms is not None else parse_day_ms(bc.start)
        end_ms = end_ms if end_ms is not None else parse_day_ms(bc.end)
        # every historical window, no reuse between symbols
        orch = DetectionOrchestrator(cache=DetectionCache(ttl_s=0), weights=self.weights, latest_only=False)
        sem = asyncio.Semaphore(max(1, int(self.cfg.scan.fetch_concurrency)))
        out = BacktestOutcome()
        log.info("backtest_start symbols=%d timeframes=%s start=%s end=%s", len(syms), tfs, start_ms, end_ms)

        for bi, batch in enumerate(self._batches(syms)):
            if self._stopped:
                break
            if bi > 0:
                await asyncio.sleep(float(self.cfg.scan.batch_delay_s))
            fetched = await asyncio.gather(
                *[self._fetch_symbol(s, tfs, int(bc.history_candles), sem, start_ms, end_ms) for s in batch]
            )
            for sym, (series, failures) in zip(batch, fetched):
                out.failures.extend(failures)
                if not series:
                    continue
                signals, _ = await orch.detect_all(sym, series)
                out.signals += len(signals)
                for sig in signals:
                    after = series[sig.timeframe].candles[sig.anchor_index + 1:]
                    try:
                        result = simulate(sig, after, bc.max_holding_days)
                    except InsufficientData as e:
                        log.debug("backtest_skip symbol=%s tf=%s pattern=%s err=%s", sym, sig.timeframe, sig.pattern.label, e)
                        continue
                    self.store.save_backtest_result(result)
                    out.results.append(result)

        out.calibrated = calibrate(self.weights, out.results)
        log.info("backtest_done signals=%d results=%d failures=%d", out.signals, len(out.results), len(out.failures))
        return out

    async def _on_batch(self, batch: List[PriceUpdate]) -> None:
        for sig in self.tracker.on_batch(batch):
            self.store.save_signal(sig)
        if self._live_stop is not None and not len(self.tracker):
            self._live_stop.set()

    async def live(
        self,
        symbols: Optional[Sequence[str]] = None,
        timeframes: Optional[Sequence[str]] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> ScanOutcome:
        """Scan once, then follow the resulting signals on the price stream until none stay active."""
        stream = getattr(self.provider, "stream_prices", None)
        if stream is None:
            raise ValueError(f"provider {type(self.provider).__name__} has no price stream")

        outcome = await self.scan(symbols, timeframes)
        for sig in outcome.signals:
            self.tracker.add(sig)
        if not len(self.tracker):
            log.info("live_nothing_to_track")
            return outcome

        lc = self.cfg.live
        batcher = UpdateBatcher(
            self._on_batch,
            batch_size=lc.batch_size,
            flush_interval_s=lc.flush_interval_s,
            max_pending=lc.max_pending,
        )
        stop = stop or asyncio.Event()
        self._live_stop = stop
        consumer = asyncio.create_task(batcher.run(stop))
        tracked = sorted({s.symbol for s in self.tracker.active()})
        log.info("live_start tracking=%d symbols=%s", len(self.tracker), tracked)
        feeder = asyncio.create_task(self._feed(stream(tracked), batcher))
        stopper = asyncio.create_task(stop.wait())
        try:
            # a quiet feed must not hold the loop once stop is set
            await asyncio.wait({feeder, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.set()
            feeder.cancel()
            stopper.cancel()
            await asyncio.gather(feeder, stopper, return_exceptions=True)
            await consumer
            self._live_stop = None
        if not feeder.cancelled():
            feeder.result()
        log.info("live_done still_active=%d", len(self.tracker))
        return outcome

    @staticmethod
    async def _feed(updates: AsyncIterator[PriceUpdate], batcher: UpdateBatcher) -> None:
        async for update in updates:
            await batcher.put(update)
