# tests/strategies/test_market_maker.py
from unittest.mock import AsyncMock, MagicMock

import pytest

from mmbot.errors import TransientExchangeError
from mmbot.storage.models import LogLevel
from mmbot.strategies.market_maker import (
    MarketMakerWorker,
    build_market_maker_bot,
    compute_rung,
    next_rung_offset,
)

SYMBOL = "GCB/USDT"


async def _worker(ctx, **params) -> MarketMakerWorker:
    values = dict(target_price=1.2, spread_percent=0.02, order_size=10.0, increment_step=5.0)
    values.update(params)
    bot = build_market_maker_bot("user-1", "mm", SYMBOL, **values)
    await ctx.db.insert_market_maker(bot)
    worker = MarketMakerWorker(ctx, bot)
    worker.running = True
    return worker


def test_build_validates_inputs():
    with pytest.raises(ValueError):
        build_market_maker_bot("u", "mm", SYMBOL, 1.0, 2.0, 10)
    with pytest.raises(ValueError):
        build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.02, 0)
    with pytest.raises(ValueError):
        build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.02, 10, price_floor=2, price_ceil=1)
    with pytest.raises(ValueError):
        build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.02, 10, telegram_enabled=True)


def test_rung_clamped_to_bounds():
    bot = build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.1, 10)
    assert compute_rung(bot) == (0.95, 1.05)

    bot = build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.1, 10, price_floor=0.97, price_ceil=1.02)
    assert compute_rung(bot) == (0.97, 1.02)


async def test_cycle_places_both_sides_and_grows_size(ctx, exchange):
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx)

    await worker.tick()

    assert [(o.side, o.price, o.volume) for o in exchange.placed] == [
        ("BUY", 1.188, 10.0),
        ("SELL", 1.212, 10.0),
    ]
    assert len(worker.bot.working_order_ids) == 2
    assert worker.bot.current_order_size == 15.0
    assert worker.bot.execution_count == 1


async def test_next_cycle_cancels_previous_orders(ctx, exchange):
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx)
    await worker.tick()
    first_ids = list(worker.bot.working_order_ids)

    await worker.tick()

    assert sorted(exchange.cancelled) == sorted(first_ids)
    assert len(exchange.open) == 2
    assert [o.volume for o in exchange.placed[2:]] == [15.0, 15.0]
    stored = await ctx.db.get_market_maker(worker.bot.id)
    assert stored.sequence == 4


async def test_target_reached_latches_and_notifies(ctx, exchange):
    notifier = MagicMock()
    notifier.send_message = AsyncMock(return_value=True)
    ctx.notifier = notifier
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx, telegram_enabled=True, telegram_user_id="555")
    await worker.tick()

    exchange.set_book(SYMBOL, 1.25, [(1.24, 10)], [(1.26, 10)])
    await ctx.cache.refresh(SYMBOL)
    await worker.tick()

    assert exchange.open == {}
    assert worker.running is False
    stored = await ctx.db.get_market_maker(worker.bot.id)
    assert stored.status == "target_reached"
    assert stored.target_reached is True
    notifier.send_message.assert_called_once()
    assert notifier.send_message.call_args.kwargs["chat_id"] == "555"

    # latched: even if the price drops back nothing is placed
    exchange.set_book(SYMBOL, 1.0, [(0.99, 10)], [(1.01, 10)])
    await ctx.cache.refresh(SYMBOL)
    placed = len(exchange.placed)
    await worker.tick()
    assert len(exchange.placed) == placed


async def test_restart_after_target_resets_size(ctx, exchange):
    worker = await _worker(ctx)
    worker.bot.target_reached = True
    worker.bot.status = "target_reached"
    worker.bot.current_order_size = 40.0
    await worker.save()

    restarted = MarketMakerWorker(ctx, await ctx.db.get_market_maker(worker.bot.id))
    await restarted.on_start()

    assert restarted.bot.target_reached is False
    assert restarted.bot.current_order_size == 10.0
    assert restarted.bot.status == "running"


async def test_stop_cancels_working_orders(ctx, exchange):
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx)
    await worker.tick()

    await worker.on_stop()

    assert exchange.open == {}
    stored = await ctx.db.get_market_maker(worker.bot.id)
    assert stored.status == "stopped"
    assert stored.working_order_ids == []


def test_rung_tightens_by_step_but_never_reaches_target():
    bot = build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.1, 10, increment_step=0.02)
    rungs = []
    for _ in range(4):
        rungs.append(compute_rung(bot))
        bot.rung_offset = next_rung_offset(bot)

    assert rungs == [(0.95, 1.05), (0.97, 1.03), (0.98, 1.02), (0.98, 1.02)]


def test_large_step_does_not_widen_rung():
    bot = build_market_maker_bot("u", "mm", SYMBOL, 1.0, 0.1, 10, increment_step=5.0)
    bot.rung_offset = next_rung_offset(bot)
    assert compute_rung(bot) == (0.95, 1.05)


async def test_cycles_walk_prices_and_size(ctx, exchange):
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx, increment_step=0.003)

    for _ in range(3):
        await worker.tick()

    prices = [(o.side, o.price) for o in exchange.placed]
    assert prices == [
        ("BUY", 1.188),
        ("SELL", 1.212),
        ("BUY", 1.191),
        ("SELL", 1.209),
        ("BUY", 1.194),
        ("SELL", 1.206),
    ]
    sizes = [o.volume for o in exchange.placed[::2]]
    assert sizes == pytest.approx([10.0, 10.003, 10.006])
    stored = await ctx.db.get_market_maker(worker.bot.id)
    assert stored.rung_offset == 0.003


async def test_unconfirmed_cancel_skips_placement(ctx, exchange):
    await ctx.cache.refresh(SYMBOL)
    worker = await _worker(ctx)
    await worker.tick()
    working = list(worker.bot.working_order_ids)
    exchange.cancel_order = AsyncMock(side_effect=TransientExchangeError("timeout", "timeout"))

    await worker.tick()

    assert len(exchange.placed) == 2
    assert worker.bot.working_order_ids == working
    assert worker.bot.execution_count == 1
    warnings = await ctx.activity.get_logs(strategy_id=worker.bot.id, level=LogLevel.WARNING)
    assert any("placement skipped" in w.message for w in warnings)


async def test_restart_after_target_resets_ladder(ctx, exchange):
    worker = await _worker(ctx, increment_step=0.003)
    worker.bot.target_reached = True
    worker.bot.status = "target_reached"
    worker.bot.rung_offset = 0.003
    await worker.save()

    restarted = MarketMakerWorker(ctx, await ctx.db.get_market_maker(worker.bot.id))
    await restarted.on_start()

    assert restarted.bot.rung_offset is None
    assert compute_rung(restarted.bot) == (1.188, 1.212)
