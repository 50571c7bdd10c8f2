from __future__ import annotations

import asyncio
import csv
import logging
import os
import time
from typing import List, Optional, Tuple

from ..errors import FetchError, NoDataAvailable
from ..models import Candle, CandleSeries, DataFreshnessMetadata, DataSource, MarketStatus

log = logging.getLogger("csv_files")

COLUMNS = ("timestamp_ms", "open", "high", "low", "close", "volume")


def read_candles(path: str) -> List[Candle]:
    out: List[Candle] = []
    with open(path, "r", encoding="utf-8", newline="") as f:
        for row in csv.DictReader(f):
            out.append(Candle(
                timestamp_ms=int(row["timestamp_ms"]),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=int(round(float(row["volume"]))),
            ))
    out.sort(key=lambda c: c.timestamp_ms)
    return out


def write_candles(path: str, candles: List[Candle]) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(COLUMNS)
        for c in candles:
            w.writerow([c.timestamp_ms, c.open, c.high, c.low, c.close, c.volume])


class CsvFileProvider:
    """Local history in `<directory>/<SYMBOL>_<timeframe>.csv`."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, symbol: str, timeframe: str) -> str:
        return os.path.join(self.directory, f"{symbol.upper()}_{timeframe}.csv")

    async def close(self) -> None:
        return None

    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> Tuple[CandleSeries, DataFreshnessMetadata]:
        path = self.path_for(symbol, timeframe)
        if not os.path.exists(path):
            raise NoDataAvailable(symbol, timeframe)
        try:
            candles = await asyncio.get_running_loop().run_in_executor(None, read_candles, path)
        except (OSError, KeyError, ValueError) as e:
            raise FetchError(symbol, timeframe, f"unreadable {path}: {e}") from e

        if start_ms is not None:
            candles = [c for c in candles if c.timestamp_ms >= start_ms]
        if end_ms is not None:
            candles = [c for c in candles if c.timestamp_ms <= end_ms]
        if start_ms is None and end_ms is None:
            candles = candles[-int(limit):]
        if not candles:
            raise NoDataAvailable(symbol, timeframe)

        meta = DataFreshnessMetadata(
            fetched_at_ms=int(time.time() * 1000),
            source=DataSource.API,
            market_status=MarketStatus.CLOSED,
            is_delayed=True,
            timeframe=timeframe,
        )
        log.debug("csv_loaded symbol=%s tf=%s bars=%d", symbol, timeframe, len(candles))
        return CandleSeries(symbol=symbol.upper(), timeframe=timeframe, candles=candles, metadata=meta), meta
