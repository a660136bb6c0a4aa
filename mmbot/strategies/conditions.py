# mmbot/strategies/conditions.py
"""Condition evaluator.

Re-evaluates every active user condition whenever a relevant market snapshot
is published and hands satisfied actions to the execution pipeline. Trade
outcome and condition state are written in one transaction.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

from mmbot.errors import ConfigurationError, ExchangeError
from mmbot.execution.pipeline import ExecutionRequest
from mmbot.storage.models import (
    ActionField,
    ActionType,
    BotCondition,
    ConditionField,
    ConditionOperator,
    LogLevel,
    MarketSnapshot,
    StrategyType,
    TradeRecord,
    new_id,
)
from mmbot.strategies.base import WorkerContext

logger = logging.getLogger(__name__)

USDT_PRICE = 1.0


@dataclass(frozen=True)
class FieldSource:
    kind: str  # price / balance / constant
    key: str


FIELD_SOURCES: dict[ConditionField, FieldSource] = {
    ConditionField.GCB_PRICE: FieldSource("price", "trading_symbol"),
    ConditionField.BTC_PRICE: FieldSource("price", "btc_symbol"),
    ConditionField.ETH_PRICE: FieldSource("price", "eth_symbol"),
    ConditionField.USDT_PRICE: FieldSource("constant", "USDT"),
    ConditionField.GCB_QUANTITY: FieldSource("balance", "base"),
    ConditionField.USDT_QUANTITY: FieldSource("balance", "quote"),
}

ACTIONS: dict[ActionType, tuple[str, str]] = {
    ActionType.BUY_MARKET: ("BUY", "MARKET"),
    ActionType.SELL_MARKET: ("SELL", "MARKET"),
    ActionType.BUY_LIMIT: ("BUY", "LIMIT"),
    ActionType.SELL_LIMIT: ("SELL", "LIMIT"),
}


def compare(value: float, operator: ConditionOperator, threshold: float, epsilon: float = 1e-9) -> bool:
    equal = abs(value - threshold) <= epsilon * max(1.0, abs(threshold))
    if operator == ConditionOperator.ABOVE:
        return value > threshold
    if operator == ConditionOperator.BELOW:
        return value < threshold
    if operator == ConditionOperator.EQUAL:
        return equal
    return not equal


def order_volume(condition: BotCondition, snapshot: MarketSnapshot) -> float | None:
    """Order volume for the condition's action.

    Market buys are sized in quote notional, everything else in base
    quantity. None when the book side needed for the conversion is empty.
    """
    side, order_type = ACTIONS[condition.action_type]
    value = condition.action_value
    in_base = condition.action_field == ActionField.GCB_QUANTITY

    if order_type == "MARKET" and side == "BUY":
        if not in_base:
            return value
        return value * snapshot.best_ask if snapshot.best_ask else None
    if in_base:
        return value
    if order_type == "MARKET":
        return value / snapshot.best_bid if snapshot.best_bid else None
    return value / condition.limit_price if condition.limit_price else None


def build_condition(
    user_id: str,
    name: str,
    condition_field: ConditionField,
    condition_operator: ConditionOperator,
    condition_value: float,
    action_type: ActionType,
    action_field: ActionField,
    action_value: float,
    limit_price: float | None = None,
    is_active: bool = True,
) -> BotCondition:
    condition = BotCondition(
        id=new_id(),
        user_id=user_id,
        name=name,
        is_active=is_active,
        condition_field=condition_field,
        condition_operator=condition_operator,
        condition_value=condition_value,
        action_type=action_type,
        action_field=action_field,
        action_value=action_value,
        limit_price=limit_price,
    )
    validate_condition(condition)
    return condition


def validate_condition(condition: BotCondition) -> None:
    _, order_type = ACTIONS[condition.action_type]
    if condition.action_value <= 0:
        raise ValueError("actionValue must be positive")
    if order_type == "LIMIT":
        if condition.limit_price is None or condition.limit_price <= 0:
            raise ValueError("Limit actions need a positive limitPrice")
    else:
        condition.limit_price = None


class ConditionEvaluator:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.exchange = ctx.config.exchange
        self.settings = ctx.config.conditions
        self.running = False
        self.started_at: float | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._paused_users: set[str] = set()
        ctx.cache.subscribe(self.on_snapshot)

    def symbol_for(self, field: ConditionField) -> str:
        source = FIELD_SOURCES[field]
        if source.kind == "price":
            return getattr(self.exchange, source.key)
        return self.exchange.trading_symbol

    def track(self, condition: BotCondition) -> None:
        self.ctx.cache.track(self.symbol_for(condition.condition_field))

    async def start(self) -> None:
        self.ctx.cache.track(self.exchange.trading_symbol)
        for condition in await self.ctx.db.list_conditions(active_only=True):
            self.track(condition)
        self.running = True
        self.started_at = self.ctx.clock()
        logger.info("Condition evaluator started")
        await self.ctx.activity.log(LogLevel.INFO, "Condition evaluator started")

    async def stop(self) -> None:
        self.running = False
        self.started_at = None
        logger.info("Condition evaluator stopped")
        await self.ctx.activity.log(LogLevel.INFO, "Condition evaluator stopped")

    async def status(self) -> dict[str, Any]:
        active = await self.ctx.db.list_conditions(active_only=True)
        snapshot = self.ctx.cache.latest(self.exchange.trading_symbol)
        return {
            "running": self.running,
            "started_at": self.started_at,
            "uptime": self.ctx.clock() - self.started_at if self.started_at else 0,
            "active_conditions": len(active),
            "snapshot": snapshot,
        }

    def _lock_for(self, condition_id: str) -> asyncio.Lock:
        lock = self._locks.get(condition_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[condition_id] = lock
        return lock

    def apply_record(self, condition: BotCondition, record: TradeRecord) -> None:
        condition.sequence += 1
        if record.outcome == "success":
            condition.trigger_count += 1
            condition.last_triggered = record.executed_at
            condition.consecutive_failures = 0
        else:
            condition.consecutive_failures += 1
            if condition.consecutive_failures >= self.settings.max_consecutive_failures:
                condition.is_active = False

    async def recover(self) -> int:
        """Re-apply ledger outcomes whose condition update was lost"""
        recovered = 0
        for condition in await self.ctx.db.list_conditions():
            applied = 0
            while True:
                record = await self.ctx.db.get_trade_by_key(f"{condition.id}:{condition.sequence}")
                if record is None:
                    break
                self.apply_record(condition, record)
                applied += 1
            if applied:
                await self.ctx.db.update_condition(condition)
                recovered += applied
                logger.info(f"Condition {condition.id}: re-applied {applied} recorded outcomes")
        return recovered

    async def on_snapshot(self, snapshot: MarketSnapshot) -> None:
        if not self.running:
            return
        conditions = [
            c
            for c in await self.ctx.db.list_conditions(active_only=True)
            if self.symbol_for(c.condition_field) == snapshot.symbol
        ]
        if not conditions:
            return

        enabled: dict[str, bool] = {}
        for c in conditions:
            if c.user_id not in enabled:
                settings = await self.ctx.db.get_user_settings(c.user_id)
                enabled[c.user_id] = settings.bot_enabled
        conditions = [c for c in conditions if enabled[c.user_id]]

        # one balance read per user per pass
        balances: dict[str, asyncio.Task[dict[str, float] | None]] = {}
        for c in conditions:
            if FIELD_SOURCES[c.condition_field].kind == "balance" and c.user_id not in balances:
                balances[c.user_id] = asyncio.create_task(self._fetch_balance(c.user_id))

        await asyncio.gather(*(self.evaluate(c, balances) for c in conditions))
        await asyncio.gather(*balances.values())

    async def _fetch_balance(self, user_id: str) -> dict[str, float] | None:
        try:
            balance = await self.ctx.pipeline.fetch_balance(user_id)
        except ConfigurationError as e:
            self._pause(user_id, str(e))
            return None
        except ExchangeError as e:
            logger.warning(f"Balance read for {user_id} failed: {e}")
            return None
        self._resume(user_id)
        return balance

    def _pause(self, user_id: str, reason: str) -> None:
        if user_id not in self._paused_users:
            self._paused_users.add(user_id)
            logger.warning(f"Conditions of user {user_id} paused: {reason}")

    def _resume(self, user_id: str) -> None:
        if user_id in self._paused_users:
            self._paused_users.discard(user_id)
            logger.info(f"Conditions of user {user_id} resumed")

    async def _field_value(
        self,
        condition: BotCondition,
        balances: dict[str, asyncio.Task[dict[str, float] | None]],
    ) -> float | None:
        source = FIELD_SOURCES[condition.condition_field]
        if source.kind == "constant":
            return USDT_PRICE
        if source.kind == "price":
            snapshot = self.ctx.cache.get_snapshot(getattr(self.exchange, source.key))
            return snapshot.last_price if snapshot else None
        balance = await balances[condition.user_id]
        if balance is None:
            return None
        base, quote = self.exchange.trading_symbol.split("/")
        asset = base if source.key == "base" else quote
        return balance.get(asset, 0.0)

    async def evaluate(
        self,
        condition: BotCondition,
        balances: dict[str, asyncio.Task[dict[str, float] | None]] | None = None,
    ) -> TradeRecord | None:
        lock = self._lock_for(condition.id)
        if lock.locked():
            logger.debug(f"Condition {condition.id} still executing, tick skipped")
            return None
        async with lock:
            return await self._evaluate(condition, balances or {})

    async def _evaluate(
        self,
        condition: BotCondition,
        balances: dict[str, asyncio.Task[dict[str, float] | None]],
    ) -> TradeRecord | None:
        fresh = await self.ctx.db.get_condition(condition.id)
        if fresh is None or not fresh.is_active:
            return None
        condition = fresh

        now = self.ctx.now_ms()
        cooldown_ms = self.settings.cooldown_seconds * 1000
        if cooldown_ms and condition.last_triggered and now - condition.last_triggered < cooldown_ms:
            return None

        if condition.user_id not in balances and FIELD_SOURCES[condition.condition_field].kind == "balance":
            balances[condition.user_id] = asyncio.create_task(self._fetch_balance(condition.user_id))
        value = await self._field_value(condition, balances)
        if value is None:
            return None
        if not compare(
            value,
            condition.condition_operator,
            condition.condition_value,
            self.settings.equal_epsilon,
        ):
            return None

        log = self.ctx.activity.bind(condition.id, StrategyType.CONDITION.value, condition.user_id)
        trading = self.ctx.cache.get_snapshot(self.exchange.trading_symbol)
        if trading is None:
            await log.monitor(f"Condition '{condition.name}' met but no fresh market data")
            return None
        volume = order_volume(condition, trading)
        if volume is None:
            await log.warning(f"Condition '{condition.name}' met but the order book is empty")
            return None

        await log.calculate(
            f"Condition '{condition.name}' met: {condition.condition_field.value} {value:g} "
            f"{condition.condition_operator.value} {condition.condition_value:g}",
            {"value": value, "volume": volume},
        )
        side, order_type = ACTIONS[condition.action_type]
        request = ExecutionRequest(
            strategy_id=condition.id,
            strategy_type=StrategyType.CONDITION.value,
            user_id=condition.user_id,
            sequence=condition.sequence,
            symbol=self.exchange.trading_symbol,
            side=side,
            type=order_type,
            volume=volume,
            price=condition.limit_price if order_type == "LIMIT" else None,
            reference_price=trading.best_ask if side == "BUY" else trading.best_bid,
        )

        updated = replace(condition)

        async def persist(record: TradeRecord) -> TradeRecord:
            async with self.ctx.db.transaction():
                stored = await self.ctx.db.insert_trade_record(record)
                self.apply_record(updated, stored)
                await self.ctx.db.update_condition(updated)
            return stored

        try:
            record = await self.ctx.pipeline.execute(request, persist=persist)
        except ConfigurationError as e:
            self._pause(condition.user_id, str(e))
            return None
        self._resume(condition.user_id)

        if not updated.is_active:
            await log.error(
                f"Condition '{condition.name}' deactivated after "
                f"{updated.consecutive_failures} consecutive failures"
            )
        return record
