from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
import websockets

from ..errors import FetchError, NoDataAvailable
from ..models import Candle, CandleSeries, DataFreshnessMetadata, DataSource, MarketStatus, PriceUpdate
from ..timeframes import tf_ms

log = logging.getLogger("polygon")

REST_BASE = "https://api.polygon.io"
WS_URL_DELAYED = "wss://delayed.socket.polygon.io/stocks"
WS_URL_REALTIME = "wss://socket.polygon.io/stocks"
REAL_TIME_THRESHOLD_MS = 15 * 60_000

_SPANS = {"m": "minute", "h": "hour", "d": "day", "w": "week"}
_RETRY_STATUSES = (429, 500, 502, 503, 504)


def _range_params(timeframe: str) -> Tuple[int, str]:
    tf = timeframe.strip().lower()
    unit = _SPANS.get(tf[-1:])
    if unit is None or not tf[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    return int(tf[:-1]), unit


def _day(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def _client_timeout(total_s: float) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(
        total=total_s,
        connect=min(10, total_s),
        sock_read=max(10, int(total_s * 0.75)),
    )


def _auth_headers(api_key: str) -> Dict[str, str]:
    # the key travels in a header, never in the request URL
    return {"Authorization": f"Bearer {api_key}"}


def parse_aggregates(payload: Dict[str, Any]) -> List[Candle]:
    """Normalize an aggregates response into candles, oldest first, dropping duplicate stamps."""
    out: List[Candle] = []
    last_ts: Optional[int] = None
    for row in sorted(payload.get("results") or [], key=lambda r: int(r["t"])):
        ts = int(row["t"])
        if last_ts is not None and ts <= last_ts:
            continue
        out.append(Candle(
            timestamp_ms=ts,
            open=float(row["o"]),
            high=float(row["h"]),
            low=float(row["l"]),
            close=float(row["c"]),
            volume=int(round(float(row.get("v", 0)))),
        ))
        last_ts = ts
    return out


class PolygonProvider:
    def __init__(
        self,
        api_key: str,
        *,
        realtime: bool = False,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.api_key = api_key
        self.realtime = realtime
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s

        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        sess, self._session = self._session, None
        if sess is not None and not sess.closed:
            await sess.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=_client_timeout(self.rest_timeout_s),
                connector=aiohttp.TCPConnector(
                    limit=self.rest_conn_limit,
                    limit_per_host=self.rest_conn_limit_per_host,
                    ttl_dns_cache=300,
                ),
                headers=_auth_headers(self.api_key),
            )
        return self._session

    async def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> Tuple[CandleSeries, DataFreshnessMetadata]:
        symbol = symbol.upper()
        mult, span = _range_params(timeframe)
        now = int(time.time() * 1000)
        end = end_ms if end_ms is not None else now
        # weekends and sessions leave gaps, so ask for a wider range than `limit` bars
        start = start_ms if start_ms is not None else end - tf_ms(timeframe) * int(limit) * 3
        url = f"{REST_BASE}/v2/aggs/ticker/{symbol}/range/{mult}/{span}/{_day(start)}/{_day(end)}"
        params = {"adjusted": "true", "sort": "asc", "limit": 50000}

        sess = await self._get_session()
        t0 = time.monotonic()

        backoff = float(self.rest_backoff_s)
        data: Optional[Dict[str, Any]] = None
        reason = "no attempts"
        status: Optional[int] = None
        retries = 0
        for attempt in range(1, int(self.rest_max_retries) + 1):
            retries = attempt - 1
            try:
                async with sess.get(url, params=params) as resp:
                    status = resp.status
                    if resp.status in _RETRY_STATUSES:
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        reason = f"status {resp.status}"
                        log.warning(
                            "rest_retryable status=%s symbol=%s tf=%s attempt=%d/%d sleep=%.1fs body=%s",
                            resp.status,
                            symbol,
                            timeframe,
                            attempt,
                            self.rest_max_retries,
                            sleep_s,
                            txt[:200],
                        )
                        if attempt < int(self.rest_max_retries):
                            await asyncio.sleep(sleep_s)
                            backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise FetchError(symbol, timeframe, f"status {resp.status} {txt[:300]}", status=resp.status)

                    data = await resp.json(content_type=None)
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                reason = repr(e)
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s tf=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    symbol,
                    timeframe,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if data is None:
            raise FetchError(symbol, timeframe, reason, status=status)
        if str(data.get("status", "OK")).upper() == "ERROR":
            raise FetchError(symbol, timeframe, str(data.get("error") or data.get("message")), status=status)

        candles = parse_aggregates(data)
        if end_ms is None and start_ms is None:
            candles = candles[-int(limit):]
        if not candles:
            raise NoDataAvailable(symbol, timeframe)

        fetched = int(time.time() * 1000)
        age = fetched - candles[-1].timestamp_ms
        meta = DataFreshnessMetadata(
            fetched_at_ms=fetched,
            source=DataSource.API,
            market_status=MarketStatus.CLOSED,  # replaced by the cache layer's calendar
            is_delayed=age > REAL_TIME_THRESHOLD_MS + tf_ms(timeframe),
            data_age_ms=age,
            timeframe=timeframe,
            request_duration_ms=int((time.monotonic() - t0) * 1000),
            retry_count=retries,
        )
        return CandleSeries(symbol=symbol, timeframe=timeframe, candles=candles, metadata=meta), meta

    async def stream_prices(self, symbols: List[str]) -> AsyncIterator[PriceUpdate]:
        """Yields per-minute aggregate closes for `symbols`. Auto-reconnects."""
        ws_url = WS_URL_REALTIME if self.realtime else WS_URL_DELAYED
        params = ",".join(f"AM.{s.upper()}" for s in symbols)

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    await ws.send(json.dumps({"action": "auth", "params": self.api_key}))
                    await ws.send(json.dumps({"action": "subscribe", "params": params}))
                    log.info("ws_subscribed symbols=%d realtime=%s", len(symbols), self.realtime)
                    backoff = 1

                    async for msg in ws:
                        try:
                            events = json.loads(msg)
                        except ValueError:
                            continue
                        for ev in events if isinstance(events, list) else [events]:
                            if not isinstance(ev, dict):
                                continue
                            if ev.get("ev") == "status":
                                if ev.get("status") == "auth_failed":
                                    raise FetchError(",".join(symbols), "stream", "auth_failed")
                                continue
                            if ev.get("ev") != "AM":
                                continue
                            yield PriceUpdate(
                                symbol=str(ev.get("sym", "")).upper(),
                                price=float(ev["c"]),
                                timestamp_ms=int(ev.get("e") or ev.get("s") or 0),
                            )

            except FetchError:
                raise
            except Exception as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
