# tests/strategies/test_conditions.py
import pytest

from mmbot.errors import RejectedOrderError
from mmbot.storage.models import (
    ActionField,
    ActionType,
    BookLevel,
    ConditionField,
    ConditionOperator,
    LogLevel,
    MarketSnapshot,
)
from mmbot.strategies.conditions import (
    ConditionEvaluator,
    build_condition,
    compare,
    order_volume,
)

SYMBOL = "GCB/USDT"


def _snapshot(best_bid: float = 0.99, best_ask: float = 1.01) -> MarketSnapshot:
    return MarketSnapshot(
        symbol=SYMBOL,
        last_price=1.0,
        best_bid=best_bid,
        best_ask=best_ask,
        bids=(BookLevel(best_bid, 100),),
        asks=(BookLevel(best_ask, 100),),
        timestamp=0,
    )


async def _condition(ctx, user_id: str = "user-1", **overrides):
    values = dict(
        name="dip buy",
        condition_field=ConditionField.GCB_PRICE,
        condition_operator=ConditionOperator.BELOW,
        condition_value=1.5,
        action_type=ActionType.BUY_MARKET,
        action_field=ActionField.USDT_VALUE,
        action_value=20.0,
    )
    values.update(overrides)
    condition = build_condition(user_id, **values)
    await ctx.db.insert_condition(condition)
    return condition


def test_compare_operators():
    assert compare(2, ConditionOperator.ABOVE, 1)
    assert not compare(1, ConditionOperator.ABOVE, 1)
    assert compare(0.5, ConditionOperator.BELOW, 1)
    assert compare(0.1 + 0.2, ConditionOperator.EQUAL, 0.3)
    assert not compare(0.31, ConditionOperator.EQUAL, 0.3)
    assert compare(0.31, ConditionOperator.NOT_EQUAL, 0.3)


def test_order_volume_conversions():
    def make(action_type, action_field, value, limit_price=None):
        return build_condition(
            "u",
            "c",
            ConditionField.GCB_PRICE,
            ConditionOperator.ABOVE,
            1,
            action_type,
            action_field,
            value,
            limit_price=limit_price,
        )

    snap = _snapshot()
    assert order_volume(make(ActionType.BUY_MARKET, ActionField.USDT_VALUE, 20), snap) == 20
    assert order_volume(make(ActionType.BUY_MARKET, ActionField.GCB_QUANTITY, 10), snap) == pytest.approx(10.1)
    assert order_volume(make(ActionType.SELL_MARKET, ActionField.USDT_VALUE, 99), snap) == pytest.approx(100)
    assert order_volume(make(ActionType.SELL_LIMIT, ActionField.USDT_VALUE, 100, 2.0), snap) == 50
    assert order_volume(make(ActionType.BUY_LIMIT, ActionField.GCB_QUANTITY, 7, 0.5), snap) == 7
    assert order_volume(make(ActionType.SELL_MARKET, ActionField.USDT_VALUE, 99), _snapshot(best_bid=None)) is None


def test_limit_action_needs_price():
    with pytest.raises(ValueError):
        build_condition(
            "u", "c", ConditionField.GCB_PRICE, ConditionOperator.ABOVE, 1,
            ActionType.BUY_LIMIT, ActionField.USDT_VALUE, 10,
        )
    market = build_condition(
        "u", "c", ConditionField.GCB_PRICE, ConditionOperator.ABOVE, 1,
        ActionType.BUY_MARKET, ActionField.USDT_VALUE, 10, limit_price=0.5,
    )
    assert market.limit_price is None


async def test_satisfied_condition_trades_once_per_evaluation(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx)
    await ctx.cache.refresh(SYMBOL)

    record = await evaluator.evaluate(condition)

    assert record.outcome == "success"
    assert [(o.side, o.type, o.volume) for o in exchange.placed] == [("BUY", "MARKET", 20.0)]
    stored = await ctx.db.get_condition(condition.id)
    assert stored.trigger_count == 1
    assert stored.sequence == 1
    assert stored.last_triggered is not None


async def test_unsatisfied_condition_does_nothing(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx, condition_operator=ConditionOperator.ABOVE)
    await ctx.cache.refresh(SYMBOL)

    assert await evaluator.evaluate(condition) is None
    assert exchange.placed == []


async def test_inactive_condition_never_trades(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    await evaluator.start()
    await _condition(ctx, is_active=False)

    await ctx.cache.refresh(SYMBOL)
    await ctx.cache.drain()

    assert exchange.placed == []


async def test_snapshot_drives_evaluation(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    await evaluator.start()
    condition = await _condition(ctx)

    await ctx.cache.refresh(SYMBOL)
    await ctx.cache.drain()

    assert len(exchange.placed) == 1
    assert (await ctx.db.get_condition(condition.id)).trigger_count == 1


async def test_disabled_user_is_skipped(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    await evaluator.start()
    await _condition(ctx)
    await ctx.db.set_bot_enabled("user-1", False)

    await ctx.cache.refresh(SYMBOL)
    await ctx.cache.drain()

    assert exchange.placed == []


async def test_stopped_evaluator_ignores_snapshots(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    await _condition(ctx)

    await ctx.cache.refresh(SYMBOL)
    await ctx.cache.drain()

    assert exchange.placed == []


async def test_balance_condition(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(
        ctx,
        condition_field=ConditionField.GCB_QUANTITY,
        condition_operator=ConditionOperator.ABOVE,
        condition_value=100,
        action_type=ActionType.SELL_MARKET,
        action_field=ActionField.GCB_QUANTITY,
        action_value=10,
    )
    await ctx.cache.refresh(SYMBOL)

    record = await evaluator.evaluate(condition)

    assert record.outcome == "success"
    assert [(o.side, o.volume) for o in exchange.placed] == [("SELL", 10)]


async def test_usdt_price_is_constant(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(
        ctx,
        condition_field=ConditionField.USDT_PRICE,
        condition_operator=ConditionOperator.EQUAL,
        condition_value=1.0,
    )
    await ctx.cache.refresh(SYMBOL)

    record = await evaluator.evaluate(condition)

    assert record.outcome == "success"


async def test_repeated_failures_deactivate(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx)
    await ctx.cache.refresh(SYMBOL)
    exchange.place_errors = [RejectedOrderError("insufficient balance", "insufficient_funds")] * 3

    for _ in range(3):
        record = await evaluator.evaluate(condition)
        assert record.outcome == "failed"

    stored = await ctx.db.get_condition(condition.id)
    assert stored.is_active is False
    assert stored.consecutive_failures == 3
    assert await evaluator.evaluate(condition) is None
    errors = await ctx.activity.get_logs(strategy_id=condition.id, level=LogLevel.ERROR)
    assert any("deactivated" in e.message for e in errors)


async def test_cooldown_between_triggers(ctx, exchange, clock):
    ctx.config.conditions.cooldown_seconds = 60
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx)
    await ctx.cache.refresh(SYMBOL)

    assert await evaluator.evaluate(condition) is not None
    assert await evaluator.evaluate(condition) is None

    clock.advance(61)
    await ctx.cache.refresh(SYMBOL)
    assert await evaluator.evaluate(condition) is not None
    assert len(exchange.placed) == 2


async def test_missing_credentials_pause_user(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx, user_id="user-2")
    await ctx.cache.refresh(SYMBOL)

    assert await evaluator.evaluate(condition) is None
    assert "user-2" in evaluator._paused_users
    assert exchange.placed == []


async def test_recover_applies_orphaned_outcomes(ctx, exchange):
    evaluator = ConditionEvaluator(ctx)
    condition = await _condition(ctx)
    await ctx.cache.refresh(SYMBOL)
    await evaluator.evaluate(condition)

    # state write lost, ledger kept
    stale = await ctx.db.get_condition(condition.id)
    stale.sequence = 0
    stale.trigger_count = 0
    await ctx.db.update_condition(stale)

    assert await evaluator.recover() == 1
    stored = await ctx.db.get_condition(condition.id)
    assert stored.sequence == 1
    assert stored.trigger_count == 1
