# mmbot/market/snapshot_cache.py
import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from mmbot.client.exchange import ExchangeClient
from mmbot.client.models import Depth, Ticker
from mmbot.storage.models import BookLevel, MarketSnapshot

logger = logging.getLogger(__name__)

Subscriber = Callable[[MarketSnapshot], Coroutine[Any, Any, None]]


def build_snapshot(ticker: Ticker, depth: Depth, timestamp: int) -> MarketSnapshot:
    bids = tuple(BookLevel(p, q) for p, q in sorted(depth.bids, key=lambda x: -x[0]))
    asks = tuple(BookLevel(p, q) for p, q in sorted(depth.asks, key=lambda x: x[0]))
    return MarketSnapshot(
        symbol=ticker.symbol,
        last_price=ticker.last,
        best_bid=bids[0].price if bids else ticker.bid,
        best_ask=asks[0].price if asks else ticker.ask,
        bids=bids,
        asks=asks,
        timestamp=timestamp,
        high_24h=ticker.high,
        low_24h=ticker.low,
        volume_24h=ticker.volume,
        change_24h=ticker.change,
    )


class SnapshotCache:
    """Process-wide market snapshots, one background refresher per symbol.

    Readers get the latest published snapshot immediately; a snapshot older
    than ``stale_after`` seconds is reported as unavailable (None).
    """

    def __init__(
        self,
        client: ExchangeClient,
        refresh_seconds: float = 5,
        stale_after: float = 10,
        depth_limit: int = 20,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.refresh_seconds = refresh_seconds
        self.stale_after = stale_after
        self.depth_limit = depth_limit
        self.clock = clock
        self.symbols: set[str] = set()
        self.running = False
        self._snapshots: dict[str, MarketSnapshot] = {}
        self._inflight: dict[str, asyncio.Task[MarketSnapshot | None]] = {}
        self._refreshers: dict[str, asyncio.Task[None]] = {}
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task[None]] = set()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def get_snapshot(self, symbol: str) -> MarketSnapshot | None:
        snapshot = self._snapshots.get(symbol)
        if snapshot is None:
            return None
        if self._now_ms() - snapshot.timestamp > self.stale_after * 1000:
            return None
        return snapshot

    def latest(self, symbol: str) -> MarketSnapshot | None:
        """Last published snapshot regardless of age, for display only"""
        return self._snapshots.get(symbol)

    def is_stale(self, symbol: str) -> bool:
        return symbol in self._snapshots and self.get_snapshot(symbol) is None

    async def refresh(self, symbol: str) -> MarketSnapshot | None:
        """Fetch a new snapshot, joining an in-flight fetch for the same symbol"""
        task = self._inflight.get(symbol)
        if task is None:
            task = asyncio.create_task(self._fetch(symbol))
            self._inflight[symbol] = task
            task.add_done_callback(lambda _: self._inflight.pop(symbol, None))
        return await asyncio.shield(task)

    async def _fetch(self, symbol: str) -> MarketSnapshot | None:
        try:
            ticker, depth = await asyncio.gather(
                self.client.get_ticker(symbol),
                self.client.get_depth(symbol, self.depth_limit),
            )
        except Exception as e:
            if self.is_stale(symbol):
                logger.warning(f"Snapshot for {symbol} is stale, refresh failed: {e}")
            else:
                logger.warning(f"Snapshot refresh failed for {symbol}, keeping previous: {e}")
            return None

        snapshot = build_snapshot(ticker, depth, self._now_ms())
        self._snapshots[symbol] = snapshot
        self._publish(snapshot)
        return snapshot

    def _publish(self, snapshot: MarketSnapshot) -> None:
        for callback in self._subscribers:
            task = asyncio.create_task(self._notify(callback, snapshot))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _notify(self, callback: Subscriber, snapshot: MarketSnapshot) -> None:
        try:
            await callback(snapshot)
        except Exception:
            logger.exception(f"Snapshot subscriber failed for {snapshot.symbol}")

    async def drain(self) -> None:
        """Wait for subscriber callbacks of already published snapshots"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def track(self, symbol: str) -> None:
        self.symbols.add(symbol)
        if self.running and symbol not in self._refreshers:
            self._refreshers[symbol] = asyncio.create_task(self._run(symbol))

    async def _run(self, symbol: str) -> None:
        while self.running:
            await self.refresh(symbol)
            await asyncio.sleep(self.refresh_seconds)

    async def start(self) -> None:
        self.running = True
        for symbol in self.symbols:
            if symbol not in self._refreshers:
                self._refreshers[symbol] = asyncio.create_task(self._run(symbol))
        logger.info(f"Snapshot cache started for {sorted(self.symbols)}")

    async def stop(self) -> None:
        self.running = False
        for task in self._refreshers.values():
            task.cancel()
        for task in self._refreshers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._refreshers.clear()
        await self.drain()
        logger.info("Snapshot cache stopped")
