# tests/conftest.py
import itertools

import pytest

from mmbot.client.exchange import ExchangePool
from mmbot.client.models import Depth, OpenOrder, OrderRequest, PlacedOrder, Ticker
from mmbot.client.vault import CredentialVault
from mmbot.config import Config
from mmbot.errors import OrderNotFoundError
from mmbot.execution.pipeline import ExecutionPipeline
from mmbot.execution.rate_limiter import RateLimiterRegistry
from mmbot.ledger.activity_log import ActivityLog
from mmbot.market.snapshot_cache import SnapshotCache
from mmbot.storage.database import Database
from mmbot.strategies.base import WorkerContext

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExchangeClient:
    """In-memory stand-in for ExchangeClient"""

    def __init__(self):
        self.tickers: dict[str, Ticker] = {}
        self.depths: dict[str, Depth] = {}
        self.balance: dict[str, float] = {}
        self.placed: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.open: dict[str, OpenOrder] = {}
        self.known: dict[str, PlacedOrder] = {}
        # raised in order by place_order before anything is placed
        self.place_errors: list[Exception] = []
        # orders that reach the book even though place_order raises
        self.land_despite_error = False
        # raised in order by find_order
        self.find_errors: list[Exception] = []
        self.find_calls = 0
        self.closed = False
        self._ids = itertools.count(1)

    def set_book(
        self,
        symbol: str,
        last: float,
        bids: list[tuple[float, float]],
        asks: list[tuple[float, float]],
    ) -> None:
        self.tickers[symbol] = Ticker(
            symbol=symbol,
            last=last,
            bid=bids[0][0] if bids else None,
            ask=asks[0][0] if asks else None,
            high=last,
            low=last,
            volume=1000.0,
            change=0.0,
            timestamp=0,
        )
        self.depths[symbol] = Depth(symbol=symbol, bids=bids, asks=asks, timestamp=0)

    async def get_ticker(self, symbol: str) -> Ticker:
        return self.tickers[symbol]

    async def get_depth(self, symbol: str, limit: int = 20) -> Depth:
        return self.depths[symbol]

    def _land(self, req: OrderRequest) -> PlacedOrder:
        order_id = f"ord-{next(self._ids)}"
        placed = PlacedOrder(order_id=order_id, status="open", client_order_id=req.client_order_id)
        self.placed.append(req)
        if req.client_order_id:
            self.known[req.client_order_id] = placed
        if req.type == "LIMIT":
            self.open[order_id] = OpenOrder(
                order_id=order_id,
                symbol=req.symbol,
                side=req.side,
                type=req.type,
                price=req.price,
                amount=req.volume,
                filled=0.0,
                client_order_id=req.client_order_id,
            )
        return placed

    async def place_order(self, req: OrderRequest) -> PlacedOrder:
        if self.place_errors:
            error = self.place_errors.pop(0)
            if self.land_despite_error:
                self._land(req)
            raise error
        return self._land(req)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        if order_id not in self.open:
            raise OrderNotFoundError(f"Order {order_id} not found", "order_not_found")
        del self.open[order_id]
        self.cancelled.append(order_id)

    async def get_open_orders(self, symbol: str) -> list[OpenOrder]:
        return [o for o in self.open.values() if o.symbol == symbol]

    async def find_order(self, symbol: str, client_order_id: str) -> PlacedOrder | None:
        self.find_calls += 1
        if self.find_errors:
            raise self.find_errors.pop(0)
        return self.known.get(client_order_id)

    async def get_balance(self) -> dict[str, float]:
        return dict(self.balance)

    async def close(self) -> None:
        self.closed = True


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def exchange() -> FakeExchangeClient:
    client = FakeExchangeClient()
    client.set_book("GCB/USDT", 1.0, [(0.99, 1000.0)], [(1.01, 1000.0)])
    client.set_book("BTC/USDT", 60000.0, [(59990.0, 1.0)], [(60010.0, 1.0)])
    client.set_book("ETH/USDT", 3000.0, [(2999.0, 10.0)], [(3001.0, 10.0)])
    client.balance = {"GCB": 500.0, "USDT": 2000.0}
    return client


@pytest.fixture
def config() -> Config:
    return Config(
        execution={"max_attempts": 3, "rate_limit_per_second": 1000, "rate_limit_burst": 1000},
        stabilizer={"split_count": 4, "split_interval_seconds": 0, "max_recovery_seconds": 3600},
        scheduled={"interval_seconds": 3600},
        api={"tokens": {"token-1": "user-1", "token-2": "user-2"}, "admins": ["user-1"]},
    )


@pytest.fixture
async def ctx(db, clock, exchange, config) -> WorkerContext:
    cache = SnapshotCache(exchange, stale_after=10, clock=clock)
    pool = ExchangePool("binance", factory=lambda creds: exchange)
    vault = CredentialVault(db)
    limiter = RateLimiterRegistry(
        config.execution.rate_limit_per_second, config.execution.rate_limit_burst
    )
    activity = ActivityLog(db, clock=clock)
    pipeline = ExecutionPipeline(
        db,
        vault,
        pool,
        limiter,
        activity,
        max_attempts=config.execution.max_attempts,
        sleep=_no_sleep,
        clock=clock,
    )
    await vault.save("user-1", "key-1", "secret-1")
    return WorkerContext(
        config=config,
        db=db,
        cache=cache,
        pipeline=pipeline,
        activity=activity,
        clock=clock,
    )
