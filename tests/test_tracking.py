import asyncio

import pytest

from builders import bull_flag
from pattern_scanner.detectors.flags import detect_bull_flag
from pattern_scanner.models import Direction, PriceUpdate, SignalStatus
from pattern_scanner.tracking import SignalTracker, UpdateBatcher, next_status, transition


def _u(i: int, price: float = 100.0, symbol: str = "AAPL") -> PriceUpdate:
    return PriceUpdate(symbol=symbol, price=price, timestamp_ms=i)


def test_next_status_bullish():
    args = (Direction.BULLISH, SignalStatus.ACTIVE, 120.0, 90.0)
    assert next_status(*args, 100.0) is SignalStatus.ACTIVE
    assert next_status(*args, 120.0) is SignalStatus.COMPLETED
    assert next_status(*args, 90.0) is SignalStatus.FAILED


def test_next_status_bearish():
    args = (Direction.BEARISH, SignalStatus.ACTIVE, 80.0, 110.0)
    assert next_status(*args, 100.0) is SignalStatus.ACTIVE
    assert next_status(*args, 79.0) is SignalStatus.COMPLETED
    assert next_status(*args, 111.0) is SignalStatus.FAILED


def test_terminal_states_never_change():
    for status in (SignalStatus.COMPLETED, SignalStatus.FAILED):
        assert next_status(Direction.BULLISH, status, 120.0, 90.0, 50.0) is status
        assert next_status(Direction.BULLISH, status, 120.0, 90.0, 500.0) is status


def test_transition_returns_same_object_when_unchanged():
    sig = detect_bull_flag("AAPL", bull_flag(), "1h")[0]
    assert transition(sig, 112.0) is sig
    done = transition(sig, 125.0)
    assert done.status is SignalStatus.COMPLETED
    assert sig.status is SignalStatus.ACTIVE


def test_tracker_moves_signals_out_of_active():
    sig = detect_bull_flag("AAPL", bull_flag(), "1h")[0]
    tracker = SignalTracker()
    tracker.add(sig)
    tracker.add(transition(sig, 125.0))
    assert len(tracker) == 1

    assert tracker.on_price(_u(1, 112.0)) == []
    assert tracker.on_price(_u(2, 200.0, symbol="MSFT")) == []
    changed = tracker.on_batch([_u(3, 112.0), _u(4, 100.0)])
    assert [s.status for s in changed] == [SignalStatus.FAILED]
    assert len(tracker) == 0
    assert tracker.active("aapl") == []


def test_batcher_preserves_order_and_batch_size():
    seen = []

    async def handler(batch):
        seen.append([u.timestamp_ms for u in batch])

    async def _run():
        b = UpdateBatcher(handler, batch_size=100, flush_interval_s=0.05)
        for i in range(250):
            await b.put(_u(i))
        stop = asyncio.Event()
        task = asyncio.create_task(b.run(stop))
        while b.metrics["updates"] < 250:
            await asyncio.sleep(0.01)
        stop.set()
        await task
        return b

    b = asyncio.run(_run())
    assert [len(x) for x in seen] == [100, 100, 50]
    assert [i for batch in seen for i in batch] == list(range(250))
    assert b.metrics["batches"] == 3
    assert b.pending == 0


def test_batcher_applies_backpressure():
    async def handler(batch):
        return None

    async def _run():
        b = UpdateBatcher(handler, max_pending=2)
        await b.put(_u(0))
        assert b.offer(_u(1))
        assert not b.offer(_u(2))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(b.put(_u(3)), 0.05)
        return b

    b = asyncio.run(_run())
    assert b.metrics["rejected"] == 1
    assert b.pending == 2


def test_batcher_survives_handler_errors():
    calls = []

    async def handler(batch):
        calls.append(len(batch))
        raise RuntimeError("downstream down")

    async def _run():
        b = UpdateBatcher(handler, batch_size=2)
        for i in range(3):
            await b.put(_u(i))
        await b.drain()
        return b

    b = asyncio.run(_run())
    assert calls == [2, 1]
    assert b.metrics["handler_errors"] == 2


def test_batcher_rejects_bad_sizes():
    async def handler(batch):
        return None

    with pytest.raises(ValueError):
        UpdateBatcher(handler, batch_size=0)
