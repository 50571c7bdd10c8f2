import asyncio
import random
import threading
import time
from dataclasses import replace

from builders import HOUR, _c, bull_flag, trend
from pattern_scanner.detectors.flags import detect_bull_flag
from pattern_scanner.detectors.registry import ALL_DETECTORS
from pattern_scanner.models import (
    CandleSeries,
    DataFreshnessMetadata,
    DataSource,
    Direction,
    MarketStatus,
    PatternType,
)
from pattern_scanner.orchestrator import DetectionCache, DetectionOrchestrator, tail_fingerprint


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def _series(candles, tf="1h", meta=None):
    return CandleSeries(symbol="AAPL", timeframe=tf, candles=tuple(candles), metadata=meta)


def _slow_bull_flag(calls, lock):
    def det(symbol, candles, tf):
        with lock:
            calls.append(symbol)
        time.sleep(0.05)
        return detect_bull_flag(symbol, candles, tf)

    return det


def test_concurrent_callers_share_one_pass():
    calls = []
    orch = DetectionOrchestrator(detectors=(("slow", _slow_bull_flag(calls, threading.Lock())),))
    data = {"1h": _series(bull_flag())}

    async def _run():
        return await asyncio.gather(*[orch.detect_all("AAPL", data) for _ in range(10)])

    outs = asyncio.run(_run())
    assert len(calls) == 1
    assert orch.metrics["passes"] == 1
    assert orch.metrics["coalesced"] == 9
    ids = {tuple(s.signal_id for s in signals) for signals, _ in outs}
    assert len(ids) == 1
    assert all(len(signals) == 1 for signals, _ in outs)


def test_cache_hit_then_ttl_expiry():
    clock = FakeClock()
    orch = DetectionOrchestrator(
        cache=DetectionCache(ttl_s=60, clock=clock), detectors=(("bull_flag", detect_bull_flag),)
    )
    data = {"1h": _series(bull_flag())}

    asyncio.run(orch.detect_all("AAPL", data))
    asyncio.run(orch.detect_all("AAPL", data))
    assert orch.metrics["passes"] == 1
    assert orch.metrics["cache_hits"] == 1

    clock.t = 61
    asyncio.run(orch.detect_all("AAPL", data))
    assert orch.metrics["passes"] == 2


def test_new_bar_invalidates_cache():
    orch = DetectionOrchestrator(detectors=(("bull_flag", detect_bull_flag),))
    candles = bull_flag()
    asyncio.run(orch.detect_all("AAPL", {"1h": _series(candles)}))

    changed = candles[:-1] + [replace(candles[-1], volume=candles[-1].volume + 1)]
    asyncio.run(orch.detect_all("AAPL", {"1h": _series(changed)}))
    assert orch.metrics["passes"] == 2
    assert orch.metrics["cache_hits"] == 0


def test_waiter_gets_previous_result_while_pass_runs():
    calls = []
    orch = DetectionOrchestrator(detectors=(("slow", _slow_bull_flag(calls, threading.Lock())),))
    candles = bull_flag()
    asyncio.run(orch.detect_all("AAPL", {"1h": _series(candles)}))

    changed = {"1h": _series(candles[:-1] + [replace(candles[-1], volume=999)])}

    async def _run():
        return await asyncio.gather(orch.detect_all("AAPL", changed), orch.detect_all("AAPL", changed))

    first, second = asyncio.run(_run())
    assert orch.metrics["passes"] == 2
    assert orch.metrics["coalesced"] == 1
    assert len(calls) == 2
    assert [s.signal_id for s in second[0]] == [s.signal_id for s in first[0]]


def test_failing_detector_does_not_abort_others():
    def boom(symbol, candles, tf):
        raise RuntimeError("bad detector")

    orch = DetectionOrchestrator(detectors=(("boom", boom), ("bull_flag", detect_bull_flag)))
    signals, _ = asyncio.run(orch.detect_all("AAPL", {"1h": _series(bull_flag())}))
    assert [s.pattern_type for s in signals] == [PatternType.BULL_FLAG]
    assert orch.metrics["detector_errors"] == 1


def test_latest_only_keeps_signals_on_last_bar():
    extra = [_c(20 + k, 109.2, 109.6, 109.0, 109.3) for k in range(3)]
    data = {"1h": _series(bull_flag() + extra)}
    dets = (("bull_flag", detect_bull_flag),)

    history, _ = asyncio.run(DetectionOrchestrator(detectors=dets).detect_all("AAPL", data))
    latest, _ = asyncio.run(DetectionOrchestrator(detectors=dets, latest_only=True).detect_all("AAPL", data))
    assert len(history) == 1
    assert latest == []


def test_too_few_candles_is_empty_not_error():
    orch = DetectionOrchestrator()
    signals, summary = asyncio.run(orch.detect_all("AAPL", {"1h": _series(bull_flag()[:19])}))
    assert signals == []
    assert summary.total == 0


def test_higher_timeframe_confirmation():
    dets = (("bull_flag", detect_bull_flag),)
    base = 1000 * HOUR
    up = trend(60, 50.0, 1.0, step_ms=4 * HOUR)
    data = {"1h": _series(bull_flag(base_ms=base)), "4h": _series(up, tf="4h")}
    signals, _ = asyncio.run(DetectionOrchestrator(detectors=dets).detect_all("AAPL", data))
    assert len(signals) == 1
    s = signals[0]
    assert s.multi_timeframe_confirmed
    assert s.confirming_timeframe == "4h"
    assert "Higher TF 4h confirms" in s.score_breakdown

    down = trend(60, 120.0, -1.0, step_ms=4 * HOUR)
    data["4h"] = _series(down, tf="4h")
    signals, _ = asyncio.run(DetectionOrchestrator(detectors=dets).detect_all("AAPL", data))
    assert not signals[0].multi_timeframe_confirmed


def test_higher_timeframe_bars_after_signal_are_ignored():
    dets = (("bull_flag", detect_bull_flag),)
    later = trend(60, 50.0, 1.0, base_ms=2000 * HOUR, step_ms=4 * HOUR)
    data = {"1h": _series(bull_flag(base_ms=1000 * HOUR)), "4h": _series(later, tf="4h")}
    signals, _ = asyncio.run(DetectionOrchestrator(detectors=dets).detect_all("AAPL", data))
    assert not signals[0].multi_timeframe_confirmed


def test_scores_bounded_across_all_detectors():
    r = random.Random(3)
    p = 100.0
    candles = []
    for i in range(300):
        o = p
        c = p * (1 + r.uniform(-0.03, 0.03))
        candles.append(_c(i, o, max(o, c) * 1.004, min(o, c) * 0.996, c, v=r.randint(100, 5000)))
        p = c
    orch = DetectionOrchestrator(detectors=ALL_DETECTORS)
    signals, _ = asyncio.run(orch.detect_all("rnd", {"1h": _series(candles)}))
    for s in signals:
        assert 0 <= s.confidence_score <= 100
        assert s.score_breakdown
        assert s.symbol == "RND"
        if s.direction is Direction.BULLISH:
            assert s.stop_loss < s.entry_price < s.target_price


def test_freshness_summary_from_metadata():
    meta = DataFreshnessMetadata(fetched_at_ms=1, source=DataSource.API, market_status=MarketStatus.OPEN)
    stale = DataFreshnessMetadata(fetched_at_ms=2, source=DataSource.CACHE_FALLBACK, market_status=MarketStatus.OPEN)
    data = {
        "1h": _series(bull_flag(), meta=meta),
        "4h": _series(trend(30, 50.0, 1.0, step_ms=4 * HOUR), tf="4h", meta=stale),
    }
    _, summary = asyncio.run(DetectionOrchestrator().detect_all("AAPL", data))
    assert summary.total == 2
    assert summary.real_time == 1
    assert summary.cached == 1
    assert summary.freshest == ("1h", "4h")


def test_fingerprint_uses_last_bars():
    candles = bull_flag()
    fp = tail_fingerprint(candles, 3)
    assert len(fp) == 3
    assert fp[-1] == (candles[-1].timestamp_ms, candles[-1].close, candles[-1].volume)


def _with_lead(bars: int = 10):
    lead = [_c(i, 100.0, 100.2, 99.8, 100.0) for i in range(bars)]
    return lead + bull_flag(base_ms=bars * HOUR)


def test_fingerprint_covers_series_length_and_start():
    full = _with_lead()
    cache = DetectionCache()
    assert tail_fingerprint(full, 3) == tail_fingerprint(full[10:], 3)
    assert cache.fingerprint(full) != cache.fingerprint(full[10:])
    assert cache.fingerprint(full) == cache.fingerprint(list(full))


def test_same_tail_shorter_history_reruns_detection():
    full = _with_lead()
    orch = DetectionOrchestrator(detectors=(("bull_flag", detect_bull_flag),))
    first, _ = asyncio.run(orch.detect_all("AAPL", {"1h": _series(full)}))
    assert first

    short = full[10:]
    second, _ = asyncio.run(orch.detect_all("AAPL", {"1h": _series(short)}))
    assert orch.metrics["passes"] == 2
    assert orch.metrics["cache_hits"] == 0
    for s in second:
        assert short[s.anchor_index].timestamp_ms == s.detected_at_ms


def test_previous_result_is_reanchored_on_the_new_series():
    calls = []
    orch = DetectionOrchestrator(detectors=(("slow", _slow_bull_flag(calls, threading.Lock())),))
    full = _with_lead()
    before, _ = asyncio.run(orch.detect_all("AAPL", {"1h": _series(full)}))
    short = {"1h": _series(full[10:])}

    async def _run():
        return await asyncio.gather(orch.detect_all("AAPL", short), orch.detect_all("AAPL", short))

    _, (waiter, _) = asyncio.run(_run())
    assert orch.metrics["coalesced"] == 1
    assert [s.signal_id for s in waiter] == [s.signal_id for s in before]
    assert [s.anchor_index for s in waiter] == [s.anchor_index - 10 for s in before]


def test_higher_timeframe_bar_closing_after_anchor_is_ignored():
    dets = (("bull_flag", detect_bull_flag),)
    # 1h anchor opens at 1019h and closes at 1020h
    down = trend(60, 120.0, -1.0, base_ms=(1014 - 59 * 4) * HOUR, step_ms=4 * HOUR)

    def _run(spike_open_h):
        spike = _c(0, 60.0, 200.0, 60.0, 200.0, base_ms=spike_open_h * HOUR, step_ms=4 * HOUR)
        data = {"1h": _series(bull_flag(base_ms=1000 * HOUR)), "4h": _series(down + [spike], tf="4h")}
        signals, _ = asyncio.run(DetectionOrchestrator(detectors=dets).detect_all("AAPL", data))
        return signals[0]

    # opens before the anchor but closes at 1022h
    assert not _run(1018).multi_timeframe_confirmed
    # closes together with the anchor
    assert _run(1016).multi_timeframe_confirmed
