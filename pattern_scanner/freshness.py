from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from .errors import FetchError, NoDataAvailable
from .market_hours import MarketCalendar, RegularSessionCalendar
from .models import CandleSeries, DataFreshnessMetadata, DataSource, FreshnessSummary, MarketStatus, series_key
from .timeframes import tf_minutes

log = logging.getLogger("freshness")

# lower is staler
_SOURCE_RANK = {
    DataSource.ERROR: 0,
    DataSource.CACHE: 1,
    DataSource.CACHE_FALLBACK: 1,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FreshnessPolicy:
    open_sub_hour_s: float = 60.0
    open_intraday_s: float = 300.0
    open_daily_s: float = 900.0
    extended_hours_s: float = 600.0
    closed_s: float = 1800.0

    def threshold_ms(self, timeframe: str, market_status: MarketStatus) -> int:
        if market_status is MarketStatus.CLOSED:
            secs = self.closed_s
        elif market_status in (MarketStatus.PRE_MARKET, MarketStatus.AFTER_HOURS):
            secs = self.extended_hours_s
        else:
            minutes = tf_minutes(timeframe)
            if minutes < 60:
                secs = self.open_sub_hour_s
            elif minutes < 1440:
                secs = self.open_intraday_s
            else:
                secs = self.open_daily_s
        return int(secs * 1000)

    def valid_until(self, timeframe: str, market_status: MarketStatus, now_ms: Optional[int] = None) -> int:
        now = _now_ms() if now_ms is None else now_ms
        return now + self.threshold_ms(timeframe, market_status)

    def is_stale(self, metadata: DataFreshnessMetadata, market_status: MarketStatus, now_ms: Optional[int] = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        if metadata.source is DataSource.ERROR:
            return True
        if metadata.valid_until_ms is not None:
            return now > metadata.valid_until_ms
        if metadata.timeframe is None:
            return True
        return now - metadata.fetched_at_ms > self.threshold_ms(metadata.timeframe, market_status)


def _rank(meta: DataFreshnessMetadata) -> int:
    if meta.source in _SOURCE_RANK:
        return _SOURCE_RANK[meta.source]
    return 2 if meta.is_delayed else 3


def summarize_freshness(metadata: Mapping[str, DataFreshnessMetadata], top: int = 5) -> FreshnessSummary:
    real_time = delayed = cached = error = 0
    for meta in metadata.values():
        if meta.source is DataSource.ERROR:
            error += 1
        elif meta.source in (DataSource.CACHE, DataSource.CACHE_FALLBACK):
            cached += 1
        elif meta.is_delayed:
            delayed += 1
        else:
            real_time += 1
    ordered = sorted(metadata.items(), key=lambda kv: (_rank(kv[1]), kv[1].fetched_at_ms), reverse=True)
    return FreshnessSummary(
        real_time=real_time,
        delayed=delayed,
        cached=cached,
        error=error,
        total=len(metadata),
        freshest=tuple(label for label, _ in ordered[:top]),
    )


class CandleSource(Protocol):
    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> Tuple[CandleSeries, DataFreshnessMetadata]:
        ...


class CandleCache:
    """Serves candles from memory while fresh, falling back to stale copies on fetch errors."""

    def __init__(
        self,
        source: CandleSource,
        *,
        policy: Optional[FreshnessPolicy] = None,
        calendar: Optional[MarketCalendar] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.source = source
        self.policy = policy or FreshnessPolicy()
        self.calendar = calendar or RegularSessionCalendar()
        self._clock = clock
        self._entries: Dict[str, CandleSeries] = {}

    def _key(self, symbol: str, timeframe: str, limit: int, start_ms: Optional[int], end_ms: Optional[int]) -> str:
        return f"{series_key(symbol, timeframe)}:{limit}:{start_ms}:{end_ms}"

    async def get(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> CandleSeries:
        now = self._clock()
        status = self.calendar.status(now)
        key = self._key(symbol, timeframe, limit, start_ms, end_ms)
        cached = self._entries.get(key)
        if cached is not None and cached.metadata is not None and not self.policy.is_stale(cached.metadata, status, now):
            return replace(cached, metadata=replace(cached.metadata, source=DataSource.CACHE))

        try:
            series, meta = await self.source.fetch_candles(symbol, timeframe, limit, start_ms=start_ms, end_ms=end_ms)
        except NoDataAvailable:
            log.info("no_data symbol=%s tf=%s", symbol, timeframe)
            self._entries.pop(key, None)
            empty = DataFreshnessMetadata(
                fetched_at_ms=now, source=DataSource.API, market_status=status, timeframe=timeframe
            )
            return CandleSeries(symbol=symbol.upper(), timeframe=timeframe, candles=(), metadata=empty)
        except FetchError as e:
            if cached is None or cached.metadata is None:
                raise
            log.warning("fetch_failed_using_stale symbol=%s tf=%s bars=%d err=%s", symbol, timeframe, len(cached), e)
            return replace(
                cached,
                metadata=replace(cached.metadata, source=DataSource.CACHE_FALLBACK, market_status=status),
            )

        meta = replace(
            meta,
            market_status=status,
            timeframe=timeframe,
            valid_until_ms=self.policy.valid_until(timeframe, status, now),
        )
        series = replace(series, metadata=meta)
        self._entries[key] = series
        return series
