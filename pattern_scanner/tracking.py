from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .models import Direction, PatternSignal, PriceUpdate, SignalStatus

log = logging.getLogger("tracking")


def next_status(direction: Direction, status: SignalStatus, target: float, stop: float, price: float) -> SignalStatus:
    """Single price observation against an active signal. Terminal states never change."""
    if status is not SignalStatus.ACTIVE:
        return status
    if direction is Direction.BULLISH:
        if price <= stop:
            return SignalStatus.FAILED
        if price >= target:
            return SignalStatus.COMPLETED
    else:
        if price >= stop:
            return SignalStatus.FAILED
        if price <= target:
            return SignalStatus.COMPLETED
    return SignalStatus.ACTIVE


def transition(signal: PatternSignal, price: float) -> PatternSignal:
    status = next_status(signal.direction, signal.status, signal.target_price, signal.stop_loss, price)
    if status is signal.status:
        return signal
    return replace(signal, status=status)


class SignalTracker:
    """Active signals per symbol, advanced by live price updates."""

    def __init__(self) -> None:
        self._active: Dict[str, Dict[str, PatternSignal]] = {}

    def __len__(self) -> int:
        return sum(len(v) for v in self._active.values())

    def add(self, signal: PatternSignal) -> None:
        if signal.status is not SignalStatus.ACTIVE:
            return
        self._active.setdefault(signal.symbol, {})[signal.signal_id] = signal

    def active(self, symbol: Optional[str] = None) -> List[PatternSignal]:
        if symbol is not None:
            return list(self._active.get(symbol.upper(), {}).values())
        return [s for per in self._active.values() for s in per.values()]

    def on_price(self, update: PriceUpdate) -> List[PatternSignal]:
        per = self._active.get(update.symbol.upper())
        if not per:
            return []
        changed: List[PatternSignal] = []
        for sid, sig in list(per.items()):
            moved = transition(sig, update.price)
            if moved is sig:
                continue
            del per[sid]
            changed.append(moved)
            log.info(
                "signal_%s symbol=%s tf=%s pattern=%s price=%s signal_id=%s",
                moved.status.value,
                moved.symbol,
                moved.timeframe,
                moved.pattern.label,
                update.price,
                sid[:12],
            )
        return changed

    def on_batch(self, updates: Iterable[PriceUpdate]) -> List[PatternSignal]:
        changed: List[PatternSignal] = []
        for u in updates:
            changed.extend(self.on_price(u))
        return changed


BatchHandler = Callable[[List[PriceUpdate]], Awaitable[None]]


class UpdateBatcher:
    """Bounded FIFO between a live feed and a batch consumer.

    Producers wait in `put` once `max_pending` updates are queued. The consumer
    hands the handler at most `batch_size` updates, flushing early when
    `flush_interval_s` elapses.
    """

    def __init__(
        self,
        handler: BatchHandler,
        *,
        batch_size: int = 100,
        flush_interval_s: float = 5.0,
        max_pending: int = 1000,
    ):
        if batch_size <= 0 or max_pending <= 0:
            raise ValueError("batch_size and max_pending must be positive")
        self.handler = handler
        self.batch_size = int(batch_size)
        self.flush_interval_s = float(flush_interval_s)
        self._queue: "asyncio.Queue[PriceUpdate]" = asyncio.Queue(maxsize=int(max_pending))
        self.metrics = {"batches": 0, "updates": 0, "handler_errors": 0, "rejected": 0}

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def put(self, update: PriceUpdate) -> None:
        await self._queue.put(update)

    def offer(self, update: PriceUpdate) -> bool:
        """Non-blocking put; False when the queue is full."""
        try:
            self._queue.put_nowait(update)
            return True
        except asyncio.QueueFull:
            self.metrics["rejected"] += 1
            return False

    async def _collect(self) -> List[PriceUpdate]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.flush_interval_s
        batch: List[PriceUpdate] = []
        while len(batch) < self.batch_size:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                batch.append(await asyncio.wait_for(self._queue.get(), remaining))
            except asyncio.TimeoutError:
                break
        return batch

    async def _flush(self, batch: List[PriceUpdate]) -> None:
        self.metrics["batches"] += 1
        self.metrics["updates"] += len(batch)
        try:
            await self.handler(batch)
        except Exception as e:
            self.metrics["handler_errors"] += 1
            log.warning("batch_handler_failed size=%d err=%s", len(batch), e)

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        while stop is None or not stop.is_set():
            batch = await self._collect()
            if batch:
                await self._flush(batch)
        await self.drain()

    async def drain(self) -> None:
        while not self._queue.empty():
            batch: List[PriceUpdate] = []
            while len(batch) < self.batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            await self._flush(batch)
