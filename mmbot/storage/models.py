# mmbot/storage/models.py
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class ConditionField(Enum):
    GCB_QUANTITY = "GCB_QUANTITY"
    USDT_QUANTITY = "USDT_QUANTITY"
    GCB_PRICE = "GCB_PRICE"
    USDT_PRICE = "USDT_PRICE"
    BTC_PRICE = "BTC_PRICE"
    ETH_PRICE = "ETH_PRICE"


class ConditionOperator(Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"


class ActionType(Enum):
    BUY_MARKET = "BUY_MARKET"
    SELL_MARKET = "SELL_MARKET"
    BUY_LIMIT = "BUY_LIMIT"
    SELL_LIMIT = "SELL_LIMIT"


class ActionField(Enum):
    GCB_QUANTITY = "GCB_QUANTITY"
    USDT_VALUE = "USDT_VALUE"


class LogLevel(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    TRADE = "trade"
    CALCULATE = "calculate"
    MONITOR = "monitor"


class StrategyType(Enum):
    CONDITION = "condition"
    STABILIZER = "stabilizer"
    SCHEDULED = "scheduled"
    MARKET_MAKER = "market_maker"
    MANUAL = "manual"


@dataclass(frozen=True)
class BookLevel:
    price: float
    quantity: float


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    last_price: float
    best_bid: float | None
    best_ask: float | None
    bids: tuple[BookLevel, ...]  # descending by price
    asks: tuple[BookLevel, ...]  # ascending by price
    timestamp: int
    high_24h: float | None = None
    low_24h: float | None = None
    volume_24h: float | None = None
    change_24h: float | None = None


@dataclass
class BotCondition:
    id: str
    user_id: str
    name: str
    is_active: bool
    condition_field: ConditionField
    condition_operator: ConditionOperator
    condition_value: float
    action_type: ActionType
    action_field: ActionField
    action_value: float
    limit_price: float | None = None
    trigger_count: int = 0
    last_triggered: int | None = None
    consecutive_failures: int = 0
    sequence: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class StabilizerBot:
    id: str
    user_id: str
    name: str
    symbol: str
    target_price: float
    status: str = "created"  # created / running / stopped
    phase: str = "idle"  # idle / monitoring / recovering
    execution_count: int = 0
    total_usdt_spent: float = 0.0
    successful_orders: int = 0
    failed_orders: int = 0
    last_executed_at: int | None = None
    last_checked_at: int | None = None
    last_market_price: float | None = None
    last_final_price: float | None = None
    recovery_started_at: int | None = None
    sequence: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class ScheduledBot:
    id: str
    user_id: str
    name: str
    symbol: str
    total_usdt_budget: float
    duration_hours: int
    bid_offset_percent: float
    usdt_per_hour: float
    interval_ms: int
    total_buys: int
    spent_usdt: float = 0.0
    accumulated_gcb: float = 0.0
    executed_buys: int = 0
    next_buy_at: int | None = None
    started_at: int | None = None
    last_buy_at: int | None = None
    status: str = "created"  # created / running / stopped / completed
    sequence: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class ScheduledBotTrade:
    id: int | None
    scheduled_bot_id: str
    user_id: str
    symbol: str
    market_buy_order_id: str | None
    limit_buy_order_id: str | None
    market_buy_price: float
    limit_buy_price: float
    market_buy_volume: float
    limit_buy_volume: float
    market_buy_status: str  # success / failed
    limit_buy_status: str  # placed / failed
    executed_at: int


@dataclass
class MarketMakerBot:
    id: str
    user_id: str
    name: str
    symbol: str
    target_price: float
    spread_percent: float  # fraction, 0.02 = 2%
    order_size: float
    increment_step: float
    current_order_size: float
    price_floor: float | None = None
    price_ceil: float | None = None
    rung_offset: float | None = None  # distance of each side from the target
    execution_count: int = 0
    target_reached: bool = False
    telegram_enabled: bool = False
    telegram_user_id: str | None = None
    working_order_ids: list[str] = field(default_factory=list)
    last_executed_at: int | None = None
    status: str = "created"  # created / running / stopped / target_reached
    sequence: int = 0
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class TradeRecord:
    id: int | None
    strategy_id: str
    strategy_type: str
    user_id: str
    idempotency_key: str
    order_id: str | None
    symbol: str
    side: str  # BUY / SELL
    type: str  # MARKET / LIMIT
    volume: float
    price: float | None  # None for market orders
    outcome: str  # success / failed / error
    error: str | None
    executed_at: int


@dataclass
class ActivityLogEntry:
    id: int | None
    strategy_id: str | None  # None for global entries
    strategy_type: str | None
    user_id: str | None
    level: LogLevel
    message: str
    data: dict | None
    timestamp: int


@dataclass
class OrderIntent:
    idempotency_key: str
    client_order_id: str
    strategy_id: str
    user_id: str
    payload: dict
    created_at: int


@dataclass
class ApiCredentials:
    user_id: str
    api_key: str
    api_secret: str
    updated_at: int


@dataclass
class UserSettings:
    user_id: str
    bot_enabled: bool
    bot_enabled_at: int | None
    bot_disabled_at: int | None
