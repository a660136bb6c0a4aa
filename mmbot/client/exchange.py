"""ccxt-backed exchange client"""

import logging
from collections.abc import Callable
from typing import Any

import ccxt.async_support as ccxt

from mmbot.client.models import Depth, OpenOrder, OrderRequest, PlacedOrder, Ticker
from mmbot.errors import (
    ConfigurationError,
    OrderNotFoundError,
    RejectedOrderError,
    TransientExchangeError,
)
from mmbot.storage.models import ApiCredentials

logger = logging.getLogger(__name__)


def translate_error(e: Exception) -> Exception:
    """Map a ccxt exception onto the engine error taxonomy"""
    message = str(e) or e.__class__.__name__
    if isinstance(e, ccxt.RequestTimeout):
        return TransientExchangeError(message, "timeout", ambiguous=True)
    if isinstance(e, ccxt.DDoSProtection):
        return TransientExchangeError(message, "rate_limited", ambiguous=False)
    if isinstance(e, ccxt.ExchangeNotAvailable):
        return TransientExchangeError(message, "unavailable", ambiguous=True)
    if isinstance(e, ccxt.NetworkError):
        return TransientExchangeError(message, "network", ambiguous=True)
    if isinstance(e, (ccxt.AuthenticationError, ccxt.AccountSuspended)):
        return ConfigurationError(message)
    if isinstance(e, ccxt.OrderNotFound):
        return OrderNotFoundError(message, "order_not_found")
    if isinstance(e, ccxt.InsufficientFunds):
        return RejectedOrderError(message, "insufficient_funds")
    if isinstance(e, (ccxt.InvalidOrder, ccxt.BadRequest)):
        return RejectedOrderError(message, "invalid_order")
    if isinstance(e, ccxt.ExchangeError):
        return RejectedOrderError(message, "exchange_error")
    return e


def _float(value: Any) -> float | None:
    return float(value) if value is not None else None


class ExchangeClient:
    """Thin async wrapper over a ccxt exchange instance.

    Every call goes through ``_call`` so callers only ever see
    TransientExchangeError, RejectedOrderError or ConfigurationError.
    """

    def __init__(self, exchange: Any):
        self.exchange = exchange

    @classmethod
    def create(
        cls,
        exchange_id: str,
        api_key: str | None = None,
        secret: str | None = None,
        sandbox: bool = False,
    ) -> "ExchangeClient":
        exchange_class = getattr(ccxt, exchange_id)
        options: dict[str, Any] = {
            # authenticated calls are throttled by the engine's token buckets
            "enableRateLimit": api_key is None,
        }
        if api_key:
            options["apiKey"] = api_key
            options["secret"] = secret
        exchange = exchange_class(options)
        if sandbox:
            exchange.set_sandbox_mode(True)
        return cls(exchange)

    async def close(self) -> None:
        await self.exchange.close()

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self.exchange, method)(*args, **kwargs)
        except ccxt.BaseError as e:
            raise translate_error(e) from e

    async def get_ticker(self, symbol: str) -> Ticker:
        data: dict[str, Any] = await self._call("fetch_ticker", symbol)
        return Ticker(
            symbol=symbol,
            last=float(data["last"]),
            bid=_float(data.get("bid")),
            ask=_float(data.get("ask")),
            high=_float(data.get("high")),
            low=_float(data.get("low")),
            volume=_float(data.get("baseVolume")),
            change=_float(data.get("percentage")),
            timestamp=int(data.get("timestamp") or 0),
        )

    async def get_depth(self, symbol: str, limit: int = 20) -> Depth:
        data: dict[str, Any] = await self._call("fetch_order_book", symbol, limit)
        return Depth(
            symbol=symbol,
            bids=[(float(p), float(a)) for p, a, *_ in data.get("bids", [])],
            asks=[(float(p), float(a)) for p, a, *_ in data.get("asks", [])],
            timestamp=int(data.get("timestamp") or 0),
        )

    async def place_order(self, req: OrderRequest) -> PlacedOrder:
        params: dict[str, Any] = {}
        if req.client_order_id:
            params["clientOrderId"] = req.client_order_id
        side = req.side.lower()
        order_type = req.type.lower()

        if order_type == "market" and side == "buy":
            if self.exchange.has.get("createMarketBuyOrderWithCost"):
                data = await self._call(
                    "create_market_buy_order_with_cost", req.symbol, req.volume, params
                )
            else:
                if not req.reference_price:
                    raise RejectedOrderError(
                        "Market buy by cost needs a reference price on this exchange",
                        "invalid_order",
                    )
                amount = req.volume / req.reference_price
                data = await self._call(
                    "create_order", req.symbol, "market", "buy", amount, None, params
                )
        else:
            data = await self._call(
                "create_order", req.symbol, order_type, side, req.volume, req.price, params
            )
        return self._parse_placed(data)

    @staticmethod
    def _parse_placed(data: dict[str, Any]) -> PlacedOrder:
        return PlacedOrder(
            order_id=str(data["id"]),
            status=str(data.get("status") or "open"),
            client_order_id=data.get("clientOrderId"),
            filled=_float(data.get("filled")),
            average=_float(data.get("average")),
            cost=_float(data.get("cost")),
        )

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._call("cancel_order", order_id, symbol)

    async def get_open_orders(self, symbol: str) -> list[OpenOrder]:
        orders: list[dict[str, Any]] = await self._call("fetch_open_orders", symbol)
        return [
            OpenOrder(
                order_id=str(o["id"]),
                symbol=o.get("symbol") or symbol,
                side=str(o.get("side", "")).upper(),
                type=str(o.get("type", "")).upper(),
                price=_float(o.get("price")),
                amount=float(o.get("amount") or 0),
                filled=float(o.get("filled") or 0),
                client_order_id=o.get("clientOrderId"),
            )
            for o in orders
        ]

    async def find_order(self, symbol: str, client_order_id: str) -> PlacedOrder | None:
        """Look an order up by client order id among open and recent orders"""
        candidates: list[dict[str, Any]] = await self._call("fetch_open_orders", symbol)
        if self.exchange.has.get("fetchClosedOrders"):
            candidates += await self._call("fetch_closed_orders", symbol, None, 50)
        for order in candidates:
            if order.get("clientOrderId") == client_order_id:
                return self._parse_placed(order)
        return None

    async def get_balance(self) -> dict[str, float]:
        """Free balance per asset"""
        data: dict[str, Any] = await self._call("fetch_balance")
        free: dict[str, Any] = data.get("free") or {}
        return {asset: float(amount or 0) for asset, amount in free.items()}


ClientFactory = Callable[[ApiCredentials], ExchangeClient]


class ExchangePool:
    """One authenticated client per API key, created on first use"""

    def __init__(
        self,
        exchange_id: str,
        sandbox: bool = False,
        factory: ClientFactory | None = None,
    ):
        self.exchange_id = exchange_id
        self.sandbox = sandbox
        self._factory = factory or self._default_factory
        self._clients: dict[str, ExchangeClient] = {}

    def _default_factory(self, creds: ApiCredentials) -> ExchangeClient:
        return ExchangeClient.create(
            self.exchange_id, creds.api_key, creds.api_secret, sandbox=self.sandbox
        )

    def get(self, creds: ApiCredentials) -> ExchangeClient:
        client = self._clients.get(creds.api_key)
        if client is None:
            client = self._factory(creds)
            logger.info(f"Exchange client created for user {creds.user_id}")
            self._clients[creds.api_key] = client
        return client

    async def evict(self, api_key: str) -> None:
        client = self._clients.pop(api_key, None)
        if client:
            await client.close()

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

