"""Exchange data models"""

from dataclasses import dataclass


@dataclass
class Ticker:
    """24h ticker"""

    symbol: str
    last: float
    bid: float | None
    ask: float | None
    high: float | None
    low: float | None
    volume: float | None
    change: float | None
    timestamp: int


@dataclass
class Depth:
    """Order book, [price, amount] pairs"""

    symbol: str
    bids: list[tuple[float, float]]
    asks: list[tuple[float, float]]
    timestamp: int


@dataclass
class OrderRequest:
    """Order sent to the exchange.

    ``volume`` is the quote (USDT) notional for MARKET BUY orders and the base
    amount for every other order. ``reference_price`` is used to convert a
    market buy notional into an amount on venues that cannot buy by cost.
    """

    symbol: str
    side: str  # BUY / SELL
    type: str  # MARKET / LIMIT
    volume: float
    price: float | None = None
    client_order_id: str | None = None
    reference_price: float | None = None


@dataclass
class PlacedOrder:
    """Exchange acknowledgement of an order"""

    order_id: str
    status: str
    client_order_id: str | None = None
    filled: float | None = None
    average: float | None = None
    cost: float | None = None


@dataclass
class OpenOrder:
    """Working order on the book"""

    order_id: str
    symbol: str
    side: str
    type: str
    price: float | None
    amount: float
    filled: float
    client_order_id: str | None = None
