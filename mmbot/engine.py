# mmbot/engine.py
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mmbot.client.models import Depth, OpenOrder
from mmbot.errors import BotNotFoundError, BotStateError, EngineCapacityError
from mmbot.execution.pipeline import ExecutionRequest
from mmbot.storage.models import (
    ActivityLogEntry,
    ApiCredentials,
    BotCondition,
    LogLevel,
    MarketMakerBot,
    MarketSnapshot,
    ScheduledBot,
    ScheduledBotTrade,
    StabilizerBot,
    StrategyType,
    TradeRecord,
    UserSettings,
    new_id,
)
from mmbot.strategies.base import BaseWorker, WorkerContext
from mmbot.strategies.conditions import ConditionEvaluator, build_condition, validate_condition
from mmbot.strategies.market_maker import MarketMakerWorker, build_market_maker_bot
from mmbot.strategies.scheduled import ScheduledWorker, build_scheduled_bot
from mmbot.strategies.stabilizer import StabilizerWorker

logger = logging.getLogger(__name__)


@dataclass
class BotKind:
    strategy_type: StrategyType
    get: Callable[[str], Awaitable[Any]]
    list: Callable[..., Awaitable[list[Any]]]
    update: Callable[[Any], Awaitable[None]]
    delete: Callable[[str], Awaitable[None]]
    worker: Callable[[WorkerContext, Any], BaseWorker]


CONDITION_FIELDS = {
    "name",
    "is_active",
    "condition_field",
    "condition_operator",
    "condition_value",
    "action_type",
    "action_field",
    "action_value",
    "limit_price",
}


class Engine:
    """Owns every strategy worker and the condition evaluator.

    API handlers go through the engine; it enforces ownership (a user only
    ever sees their own bots), the worker limit and per-bot serialization of
    lifecycle calls.
    """

    def __init__(self, ctx: WorkerContext, evaluator: ConditionEvaluator | None = None):
        self.ctx = ctx
        self.db = ctx.db
        self.config = ctx.config
        self.evaluator = evaluator or ConditionEvaluator(ctx)
        self.max_workers = ctx.config.engine.max_workers
        self.workers: dict[str, BaseWorker] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.started_at: float | None = None
        self.kinds: dict[StrategyType, BotKind] = {
            StrategyType.STABILIZER: BotKind(
                StrategyType.STABILIZER,
                self.db.get_stabilizer,
                self.db.list_stabilizers,
                self.db.update_stabilizer,
                self.db.delete_stabilizer,
                StabilizerWorker,
            ),
            StrategyType.SCHEDULED: BotKind(
                StrategyType.SCHEDULED,
                self.db.get_scheduled,
                self.db.list_scheduled,
                self.db.update_scheduled,
                self.db.delete_scheduled,
                ScheduledWorker,
            ),
            StrategyType.MARKET_MAKER: BotKind(
                StrategyType.MARKET_MAKER,
                self.db.get_market_maker,
                self.db.list_market_makers,
                self.db.update_market_maker,
                self.db.delete_market_maker,
                MarketMakerWorker,
            ),
        }

    # ---- process lifecycle ----

    async def start(self) -> None:
        self.started_at = self.ctx.clock()
        await self.ctx.pipeline.recover_pending()
        await self.evaluator.recover()
        await self._reset_stuck_stabilizers()

        for kind in self.kinds.values():
            for bot in await kind.list(status="running"):
                try:
                    await self._launch(kind.worker(self.ctx, bot))
                except Exception:
                    logger.exception(f"Failed to restart {kind.strategy_type.value} bot {bot.id}")

        await self.evaluator.start()
        logger.info(f"Engine started with {self.running_count()} workers")

    async def stop(self) -> None:
        await self.evaluator.stop()
        workers = list(self.workers.values())
        self.workers.clear()
        results = await asyncio.gather(
            *(w.stop(shutdown=True) for w in workers), return_exceptions=True
        )
        for worker, result in zip(workers, results):
            if isinstance(result, Exception):
                logger.error(f"Stopping {worker.bot_id} failed: {result}")
        logger.info("Engine stopped")

    async def _reset_stuck_stabilizers(self) -> None:
        for bot in await self.db.list_stabilizers():
            if bot.phase == "recovering" and bot.status != "running":
                bot.phase = "idle"
                bot.recovery_started_at = None
                await self.db.update_stabilizer(bot)
                logger.warning(f"Stabilizer {bot.id} was left recovering, reset")

    # ---- worker registry ----

    def uptime(self) -> float:
        return self.ctx.clock() - self.started_at if self.started_at else 0.0

    def running_count(self) -> int:
        return sum(1 for w in self.workers.values() if not w.done())

    def is_running(self, bot_id: str) -> bool:
        worker = self.workers.get(bot_id)
        return worker is not None and not worker.done()

    def _lock_for(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bot_id] = lock
        return lock

    async def _launch(self, worker: BaseWorker) -> None:
        if self.is_running(worker.bot_id):
            raise BotStateError(f"Bot {worker.bot_id} is already running")
        if self.running_count() >= self.max_workers:
            raise EngineCapacityError(f"Worker limit of {self.max_workers} reached")
        self.workers.pop(worker.bot_id, None)
        await worker.start()
        if worker.running:
            self.workers[worker.bot_id] = worker

    async def _halt(self, bot_id: str) -> BaseWorker | None:
        worker = self.workers.pop(bot_id, None)
        if worker is not None:
            await worker.stop()
        return worker

    async def _owned(self, kind: BotKind, user_id: str, bot_id: str) -> Any:
        bot = await kind.get(bot_id)
        if bot is None or bot.user_id != user_id:
            raise BotNotFoundError(f"{kind.strategy_type.value} bot {bot_id} not found")
        return bot

    # ---- generic bot lifecycle ----

    async def list_bots(self, strategy_type: StrategyType, user_id: str) -> list[Any]:
        bots = await self.kinds[strategy_type].list(user_id=user_id)
        for i, bot in enumerate(bots):
            worker = self.workers.get(bot.id)
            if worker is not None and not worker.done():
                bots[i] = worker.bot
        return bots

    async def get_bot(self, strategy_type: StrategyType, user_id: str, bot_id: str) -> Any:
        return await self._owned(self.kinds[strategy_type], user_id, bot_id)

    async def start_bot(self, strategy_type: StrategyType, user_id: str, bot_id: str) -> Any:
        kind = self.kinds[strategy_type]
        async with self._lock_for(bot_id):
            bot = await self._owned(kind, user_id, bot_id)
            if self.is_running(bot_id):
                raise BotStateError(f"Bot {bot_id} is already running")
            if bot.status == "completed":
                raise BotStateError(f"Bot {bot_id} has completed and cannot be restarted")
            worker = kind.worker(self.ctx, bot)
            await self._launch(worker)
            return worker.bot

    async def stop_bot(self, strategy_type: StrategyType, user_id: str, bot_id: str) -> Any:
        kind = self.kinds[strategy_type]
        async with self._lock_for(bot_id):
            bot = await self._owned(kind, user_id, bot_id)
            worker = await self._halt(bot_id)
            if worker is not None:
                return worker.bot
            if bot.status != "running":
                raise BotStateError(f"Bot {bot_id} is not running")
            # persisted as running but no live worker
            bot.status = "stopped"
            await kind.update(bot)
            return bot

    async def delete_bot(self, strategy_type: StrategyType, user_id: str, bot_id: str) -> None:
        kind = self.kinds[strategy_type]
        async with self._lock_for(bot_id):
            await self._owned(kind, user_id, bot_id)
            await self._halt(bot_id)
            await kind.delete(bot_id)
        self._locks.pop(bot_id, None)
        logger.info(f"Deleted {strategy_type.value} bot {bot_id}")

    async def _register(self, kind: StrategyType, bot: Any, insert: Callable[[Any], Awaitable[None]]) -> Any:
        await insert(bot)
        await self.ctx.activity.log(
            LogLevel.INFO,
            f"Bot '{bot.name}' created",
            strategy_id=bot.id,
            strategy_type=kind.value,
            user_id=bot.user_id,
        )
        return bot

    # ---- stabilizers ----

    async def create_stabilizer(
        self, user_id: str, name: str, target_price: float, symbol: str | None = None
    ) -> StabilizerBot:
        if target_price <= 0:
            raise ValueError("targetPrice must be positive")
        bot = StabilizerBot(
            id=new_id(),
            user_id=user_id,
            name=name,
            symbol=symbol or self.config.exchange.trading_symbol,
            target_price=target_price,
        )
        return await self._register(StrategyType.STABILIZER, bot, self.db.insert_stabilizer)

    # ---- scheduled ----

    async def create_scheduled(
        self,
        user_id: str,
        name: str,
        total_usdt_budget: float,
        duration_hours: int,
        bid_offset_percent: float,
        symbol: str | None = None,
    ) -> ScheduledBot:
        bot = build_scheduled_bot(
            user_id,
            name,
            symbol or self.config.exchange.trading_symbol,
            total_usdt_budget,
            duration_hours,
            bid_offset_percent,
            interval_seconds=self.config.scheduled.interval_seconds,
        )
        return await self._register(StrategyType.SCHEDULED, bot, self.db.insert_scheduled)

    async def scheduled_trades(
        self, user_id: str, bot_id: str, limit: int = 100
    ) -> list[ScheduledBotTrade]:
        await self._owned(self.kinds[StrategyType.SCHEDULED], user_id, bot_id)
        return await self.db.get_scheduled_trades(bot_id, limit)

    # ---- market makers ----

    async def create_market_maker(self, user_id: str, name: str, **params: Any) -> MarketMakerBot:
        symbol = params.pop("symbol", None) or self.config.exchange.trading_symbol
        bot = build_market_maker_bot(user_id, name, symbol, **params)
        return await self._register(StrategyType.MARKET_MAKER, bot, self.db.insert_market_maker)

    # ---- conditions ----

    async def create_condition(self, user_id: str, **fields: Any) -> BotCondition:
        condition = build_condition(user_id, **fields)
        await self.db.insert_condition(condition)
        self.evaluator.track(condition)
        await self.ctx.activity.log(
            LogLevel.INFO,
            f"Condition '{condition.name}' created",
            strategy_id=condition.id,
            strategy_type=StrategyType.CONDITION.value,
            user_id=user_id,
        )
        return condition

    async def list_conditions(self, user_id: str) -> list[BotCondition]:
        return await self.db.list_conditions(user_id=user_id)

    async def _owned_condition(self, user_id: str, condition_id: str) -> BotCondition:
        condition = await self.db.get_condition(condition_id)
        if condition is None or condition.user_id != user_id:
            raise BotNotFoundError(f"Condition {condition_id} not found")
        return condition

    async def update_condition(
        self, user_id: str, condition_id: str, changes: dict[str, Any]
    ) -> BotCondition:
        unknown = set(changes) - CONDITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown condition fields: {', '.join(sorted(unknown))}")
        async with self._lock_for(condition_id):
            condition = await self._owned_condition(user_id, condition_id)
            was_active = condition.is_active
            for name, value in changes.items():
                setattr(condition, name, value)
            validate_condition(condition)
            if condition.is_active and not was_active:
                condition.consecutive_failures = 0
            await self.db.update_condition(condition)
        self.evaluator.track(condition)
        return condition

    async def delete_condition(self, user_id: str, condition_id: str) -> None:
        async with self._lock_for(condition_id):
            await self._owned_condition(user_id, condition_id)
            await self.db.delete_condition(condition_id)
        self._locks.pop(condition_id, None)

    async def start_conditions(self) -> None:
        if self.evaluator.running:
            raise BotStateError("Condition evaluator is already running")
        await self.evaluator.start()

    async def stop_conditions(self) -> None:
        if not self.evaluator.running:
            raise BotStateError("Condition evaluator is not running")
        await self.evaluator.stop()

    async def status(self) -> dict[str, Any]:
        status = await self.evaluator.status()
        status["workers"] = self.running_count()
        return status

    # ---- users ----

    async def set_user_enabled(self, user_id: str, enabled: bool) -> UserSettings:
        settings = await self.db.set_bot_enabled(user_id, enabled)
        await self.ctx.activity.log(
            LogLevel.INFO,
            f"Automation {'enabled' if enabled else 'disabled'} for user",
            user_id=user_id,
        )
        return settings

    async def user_status(self, user_id: str) -> UserSettings:
        return await self.db.get_user_settings(user_id)

    # ---- credentials ----

    async def save_credentials(self, user_id: str, api_key: str, api_secret: str) -> ApiCredentials:
        vault = self.ctx.pipeline.vault
        old = await self.db.get_credentials(user_id)
        creds = await vault.save(user_id, api_key, api_secret)
        if old is not None:
            await self.ctx.pipeline.pool.evict(old.api_key)
        return creds

    async def get_credentials(self, user_id: str) -> ApiCredentials | None:
        return await self.db.get_credentials(user_id)

    async def delete_credentials(self, user_id: str) -> None:
        removed = await self.ctx.pipeline.vault.remove(user_id)
        if removed is not None:
            await self.ctx.pipeline.pool.evict(removed.api_key)

    # ---- manual trading ----

    async def place_order(
        self,
        user_id: str,
        side: str,
        type: str,
        volume: float,
        price: float | None = None,
        symbol: str | None = None,
        request_id: str | None = None,
    ) -> TradeRecord:
        symbol = symbol or self.config.exchange.trading_symbol
        snapshot = await self.market_data(symbol)
        request = ExecutionRequest(
            strategy_id=f"manual-{request_id or new_id()}",
            strategy_type=StrategyType.MANUAL.value,
            user_id=user_id,
            sequence=0,
            symbol=symbol,
            side=side,
            type=type,
            volume=volume,
            price=price,
            reference_price=snapshot.last_price if snapshot else None,
        )
        return await self.ctx.pipeline.execute(request)

    async def cancel_order(self, user_id: str, order_id: str, symbol: str | None = None) -> bool:
        symbol = symbol or self.config.exchange.trading_symbol
        cancelled = await self.ctx.pipeline.cancel(user_id, order_id, symbol)
        await self.ctx.activity.log(
            LogLevel.TRADE if cancelled else LogLevel.WARNING,
            f"Order {order_id} " + ("cancelled" if cancelled else "could not be cancelled"),
            strategy_type=StrategyType.MANUAL.value,
            user_id=user_id,
            data={"orderId": order_id, "symbol": symbol},
        )
        return cancelled

    async def open_orders(self, user_id: str, symbol: str | None = None) -> list[OpenOrder]:
        return await self.ctx.pipeline.open_orders(
            user_id, symbol or self.config.exchange.trading_symbol
        )

    async def balance(self, user_id: str) -> dict[str, float]:
        return await self.ctx.pipeline.fetch_balance(user_id)

    # ---- ledger / logs / market ----

    async def logs(
        self,
        user_id: str,
        strategy_id: str | None = None,
        strategy_type: StrategyType | None = None,
        level: LogLevel | None = None,
        limit: int = 100,
    ) -> list[ActivityLogEntry]:
        return await self.ctx.activity.get_logs(
            strategy_id=strategy_id,
            strategy_type=strategy_type.value if strategy_type else None,
            user_id=user_id,
            level=level,
            limit=limit,
        )

    async def admin_logs(self, level: LogLevel | None = None, limit: int = 100) -> list[ActivityLogEntry]:
        return await self.ctx.activity.get_logs(level=level, limit=limit)

    async def trades(
        self,
        user_id: str,
        strategy_id: str | None = None,
        strategy_type: StrategyType | None = None,
        limit: int = 100,
    ) -> list[TradeRecord]:
        return await self.db.get_trades(
            strategy_id=strategy_id,
            strategy_type=strategy_type.value if strategy_type else None,
            user_id=user_id,
            limit=limit,
        )

    async def market_data(self, symbol: str | None = None) -> MarketSnapshot | None:
        symbol = symbol or self.config.exchange.trading_symbol
        snapshot = self.ctx.cache.get_snapshot(symbol)
        if snapshot is None:
            snapshot = await self.ctx.cache.refresh(symbol)
        return snapshot

    async def depth(self, symbol: str | None = None, limit: int = 20) -> Depth:
        return await self.ctx.cache.client.get_depth(
            symbol or self.config.exchange.trading_symbol, limit
        )

    async def cleanup(self) -> dict[str, int]:
        settings = self.config.activity_log
        await self.ctx.activity.flush()
        removed = await self.db.cleanup_logs(settings.retention_days, settings.max_entries)
        if removed["expired"] or removed["overflow"]:
            logger.info(
                f"Activity log cleanup: {removed['expired']} expired, {removed['overflow']} over limit"
            )
        return removed
