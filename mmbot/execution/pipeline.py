# mmbot/execution/pipeline.py
"""Order execution pipeline.

The single choke point through which strategies place and cancel orders.
Every placement is keyed by an idempotency key (``strategy_id:sequence``)
and ends in exactly one TradeRecord, whatever the outcome.
"""

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass

from mmbot.client.exchange import ExchangeClient, ExchangePool
from mmbot.client.models import OpenOrder, OrderRequest, PlacedOrder
from mmbot.client.vault import CredentialVault
from mmbot.errors import (
    ConfigurationError,
    OrderNotFoundError,
    RejectedOrderError,
    TransientExchangeError,
)
from mmbot.execution.rate_limiter import RateLimiterRegistry, TokenBucket
from mmbot.ledger.activity_log import ActivityLog
from mmbot.storage.database import Database
from mmbot.storage.models import LogLevel, OrderIntent, TradeRecord

logger = logging.getLogger(__name__)

Persist = Callable[[TradeRecord], Awaitable[TradeRecord]]

# error detail of an order whose exchange state could not be established
UNRESOLVED = "Order state unknown, left for recovery"


@dataclass
class ExecutionRequest:
    strategy_id: str
    strategy_type: str
    user_id: str
    sequence: int
    symbol: str
    side: str  # BUY / SELL
    type: str  # MARKET / LIMIT
    volume: float  # quote notional for MARKET BUY, base amount otherwise
    price: float | None = None
    reference_price: float | None = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.strategy_id}:{self.sequence}"

    @property
    def notional(self) -> float | None:
        if self.type == "MARKET" and self.side == "BUY":
            return self.volume
        price = self.price or self.reference_price
        return self.volume * price if price else None


def client_order_id_for(key: str) -> str:
    return "mm" + hashlib.sha1(key.encode()).hexdigest()[:30]


class ExecutionPipeline:
    def __init__(
        self,
        db: Database,
        vault: CredentialVault,
        pool: ExchangePool,
        limiter: RateLimiterRegistry,
        activity: ActivityLog,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        min_notional: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.vault = vault
        self.pool = pool
        self.limiter = limiter
        self.activity = activity
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.min_notional = min_notional
        self.sleep = sleep
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, strategy_id: str) -> asyncio.Lock:
        lock = self._locks.get(strategy_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[strategy_id] = lock
        return lock

    def _validate(self, request: ExecutionRequest) -> None:
        if request.side not in ("BUY", "SELL"):
            raise RejectedOrderError(f"Invalid side {request.side}", "invalid_order")
        if request.type not in ("MARKET", "LIMIT"):
            raise RejectedOrderError(f"Invalid order type {request.type}", "invalid_order")
        if not request.volume or request.volume <= 0:
            raise RejectedOrderError(f"Invalid volume {request.volume}", "invalid_order")
        if request.type == "LIMIT" and (request.price is None or request.price <= 0):
            raise RejectedOrderError("Limit order needs a positive price", "invalid_order")
        if request.type == "MARKET" and request.price is not None:
            raise RejectedOrderError("Market order must not carry a price", "invalid_order")
        notional = request.notional
        if notional is not None and notional < self.min_notional:
            raise RejectedOrderError(
                f"Order notional {notional:.4f} below minimum {self.min_notional}",
                "invalid_order",
            )

    async def execute(self, request: ExecutionRequest, persist: Persist | None = None) -> TradeRecord:
        key = request.idempotency_key
        existing = await self.db.get_trade_by_key(key)
        if existing is not None:
            logger.info(f"Replay of {key}, returning recorded outcome {existing.outcome}")
            return existing

        async with self._lock_for(request.strategy_id):
            existing = await self.db.get_trade_by_key(key)
            if existing is not None:
                return existing

            try:
                self._validate(request)
            except RejectedOrderError as e:
                return await self._record(request, None, "failed", e.message, persist)

            creds = await self.vault.get_credentials(request.user_id)
            client = self.pool.get(creds)
            bucket = self.limiter.get(creds.api_key)
            cid = client_order_id_for(key)

            intent = await self.db.get_intent(key)
            if intent is not None:
                # submitted before a crash, the outcome was never recorded
                found, known = await self._find(client, bucket, request.symbol, cid)
                if found is not None:
                    return await self._record(request, found.order_id, "success", None, persist)
                if not known:
                    return await self._record(
                        request, None, "error", UNRESOLVED, self._keeping(intent, persist)
                    )
            else:
                intent = OrderIntent(
                    idempotency_key=key,
                    client_order_id=cid,
                    strategy_id=request.strategy_id,
                    user_id=request.user_id,
                    payload=asdict(request),
                    created_at=int(self.clock() * 1000),
                )
                await self.db.insert_intent(intent)

            try:
                order_id, outcome, detail = await self._submit(client, bucket, request, cid)
            except ConfigurationError as e:
                await self._record(request, None, "error", str(e), persist)
                raise
            except Exception as e:
                logger.exception(f"Unexpected failure submitting {key}")
                found, known = await self._find(client, bucket, request.symbol, cid)
                if found is not None:
                    return await self._record(request, found.order_id, "success", None, persist)
                detail = f"{type(e).__name__}: {e}"
                await self._record(
                    request, None, "error", detail, persist if known else self._keeping(intent, persist)
                )
                raise
            if outcome == "error" and detail == UNRESOLVED:
                persist = self._keeping(intent, persist)
            return await self._record(request, order_id, outcome, detail, persist)

    def _keeping(self, intent: OrderIntent, persist: Persist | None) -> Persist:
        """Persist the record but keep the intent for ``recover_pending``"""

        async def write(record: TradeRecord) -> TradeRecord:
            async with self.db.transaction():
                stored = await (persist or self.db.insert_trade_record)(record)
                await self.db.delete_intent(intent.idempotency_key)
                await self.db.insert_intent(intent)
            return stored

        return write

    async def _submit(
        self,
        client: ExchangeClient,
        bucket: TokenBucket,
        request: ExecutionRequest,
        cid: str,
    ) -> tuple[str | None, str, str | None]:
        order = OrderRequest(
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            volume=request.volume,
            price=request.price,
            client_order_id=cid,
            reference_price=request.reference_price,
        )
        last_error: TransientExchangeError | None = None
        for attempt in range(1, self.max_attempts + 1):
            await bucket.acquire()
            try:
                placed = await client.place_order(order)
                return placed.order_id, "success", None
            except RejectedOrderError as e:
                return None, "failed", e.message
            except TransientExchangeError as e:
                last_error = e
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} for {request.idempotency_key} failed: {e}"
                )
                if e.ambiguous:
                    found, known = await self._find(client, bucket, request.symbol, cid)
                    if found is not None:
                        logger.info(f"Order {cid} reached the exchange despite {e.code}")
                        return found.order_id, "success", None
                    if not known:
                        # never resubmit an order that may be live
                        logger.error(f"Order {cid} state unknown after {e.code}, not resubmitting")
                        return None, "error", UNRESOLVED
                if attempt < self.max_attempts:
                    await self.sleep(self.backoff_base * 2 ** (attempt - 1))
        return None, "error", f"Gave up after {self.max_attempts} attempts: {last_error}"

    async def _find(
        self, client: ExchangeClient, bucket: TokenBucket, symbol: str, cid: str
    ) -> tuple[PlacedOrder | None, bool]:
        """Look an order up by client order id, retrying failed lookups.

        The flag is False when the lookup never succeeded and the order's
        state is unknown.
        """
        for attempt in range(1, self.max_attempts + 1):
            await bucket.acquire()
            try:
                return await client.find_order(symbol, cid), True
            except (TransientExchangeError, RejectedOrderError) as e:
                logger.warning(f"Lookup {attempt}/{self.max_attempts} of order {cid} failed: {e}")
                if attempt < self.max_attempts:
                    await self.sleep(self.backoff_base * 2 ** (attempt - 1))
        return None, False

    async def _record(
        self,
        request: ExecutionRequest,
        order_id: str | None,
        outcome: str,
        detail: str | None,
        persist: Persist | None,
    ) -> TradeRecord:
        record = TradeRecord(
            id=None,
            strategy_id=request.strategy_id,
            strategy_type=request.strategy_type,
            user_id=request.user_id,
            idempotency_key=request.idempotency_key,
            order_id=order_id,
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            volume=request.volume,
            price=request.price,
            outcome=outcome,
            error=detail,
            executed_at=int(self.clock() * 1000),
        )
        record = await (persist or self.db.insert_trade_record)(record)

        data = {
            "orderId": order_id,
            "idempotencyKey": request.idempotency_key,
            "side": request.side,
            "type": request.type,
            "volume": request.volume,
            "price": request.price,
        }
        if outcome == "success":
            level = LogLevel.TRADE
            message = f"{request.type} {request.side} {request.volume:g} {request.symbol} placed (order {order_id})"
        else:
            level = LogLevel.ERROR
            message = f"{request.type} {request.side} {request.volume:g} {request.symbol} {outcome}: {detail}"
        await self.activity.log(
            level,
            message,
            strategy_id=request.strategy_id,
            strategy_type=request.strategy_type,
            user_id=request.user_id,
            data=data,
        )
        return record

    async def cancel(self, user_id: str, order_id: str, symbol: str) -> bool:
        """Cancel an order. An order the exchange no longer knows counts as cancelled."""
        creds = await self.vault.get_credentials(user_id)
        client = self.pool.get(creds)
        bucket = self.limiter.get(creds.api_key)
        for attempt in range(1, self.max_attempts + 1):
            await bucket.acquire()
            try:
                await client.cancel_order(order_id, symbol)
                return True
            except OrderNotFoundError:
                return True
            except RejectedOrderError as e:
                logger.warning(f"Cancel of {order_id} rejected: {e}")
                return False
            except TransientExchangeError as e:
                logger.warning(f"Cancel attempt {attempt} of {order_id} failed: {e}")
                if attempt < self.max_attempts:
                    await self.sleep(self.backoff_base * 2 ** (attempt - 1))
        return False

    async def open_orders(self, user_id: str, symbol: str) -> list[OpenOrder]:
        creds = await self.vault.get_credentials(user_id)
        await self.limiter.get(creds.api_key).acquire()
        return await self.pool.get(creds).get_open_orders(symbol)

    async def fetch_balance(self, user_id: str) -> dict[str, float]:
        creds = await self.vault.get_credentials(user_id)
        await self.limiter.get(creds.api_key).acquire()
        return await self.pool.get(creds).get_balance()

    async def recover_pending(self) -> int:
        """Resolve intents left by a crash between submission and ledger write,
        or by an order whose state could not be established at the time.
        """
        resolved = 0
        for intent in await self.db.list_intents():
            key = intent.idempotency_key
            existing = await self.db.get_trade_by_key(key)
            if existing is not None and existing.error != UNRESOLVED:
                await self.db.delete_intent(key)
                continue
            request = ExecutionRequest(**intent.payload)
            try:
                creds = await self.vault.get_credentials(intent.user_id)
            except ConfigurationError as e:
                logger.warning(f"Cannot recover {key}: {e}")
                continue
            client = self.pool.get(creds)
            bucket = self.limiter.get(creds.api_key)
            found, known = await self._find(client, bucket, request.symbol, intent.client_order_id)
            if not known:
                logger.warning(f"Order {intent.client_order_id} for {key} still unresolved")
                continue

            if existing is None:
                if found is not None:
                    await self._record(request, found.order_id, "success", None, None)
                else:
                    await self._record(
                        request, None, "error", "Order not found after restart, not submitted", None
                    )
            elif found is not None:
                await self.db.settle_trade_record(key, found.order_id)
                await self.activity.log(
                    LogLevel.TRADE,
                    f"{request.type} {request.side} {request.volume:g} {request.symbol} "
                    f"confirmed on the exchange (order {found.order_id})",
                    strategy_id=request.strategy_id,
                    strategy_type=request.strategy_type,
                    user_id=request.user_id,
                    data={"orderId": found.order_id, "idempotencyKey": key},
                )
            else:
                await self.db.delete_intent(key)
            resolved += 1
        if resolved:
            logger.info(f"Recovered {resolved} pending order intents")
        return resolved
