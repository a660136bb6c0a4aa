# mmbot/strategies/market_maker.py
import logging
from dataclasses import replace

from mmbot.errors import ConfigurationError, ExchangeError
from mmbot.execution.pipeline import ExecutionRequest
from mmbot.notifier.formatter import format_target_reached
from mmbot.storage.models import MarketMakerBot, MarketSnapshot, StrategyType, TradeRecord, new_id
from mmbot.strategies.base import BaseWorker, WorkerContext

logger = logging.getLogger(__name__)


def build_market_maker_bot(
    user_id: str,
    name: str,
    symbol: str,
    target_price: float,
    spread_percent: float,
    order_size: float,
    increment_step: float = 0.0,
    price_floor: float | None = None,
    price_ceil: float | None = None,
    telegram_enabled: bool = False,
    telegram_user_id: str | None = None,
) -> MarketMakerBot:
    if target_price <= 0:
        raise ValueError("targetPrice must be positive")
    if not 0 < spread_percent < 1:
        raise ValueError("spreadPercent must be a fraction between 0 and 1")
    if order_size <= 0:
        raise ValueError("orderSize must be positive")
    if increment_step < 0:
        raise ValueError("incrementStep must not be negative")
    if price_floor is not None and price_ceil is not None and price_floor > price_ceil:
        raise ValueError("priceFloor must not exceed priceCeil")
    if telegram_enabled and not telegram_user_id:
        raise ValueError("telegramUserId is required when Telegram is enabled")
    return MarketMakerBot(
        id=new_id(),
        user_id=user_id,
        name=name,
        symbol=symbol,
        target_price=target_price,
        spread_percent=spread_percent,
        order_size=order_size,
        increment_step=increment_step,
        current_order_size=order_size,
        price_floor=price_floor,
        price_ceil=price_ceil,
        telegram_enabled=telegram_enabled,
        telegram_user_id=telegram_user_id if telegram_enabled else None,
    )


def rung_offset(bot: MarketMakerBot) -> float:
    """Distance of each side from the target for the next cycle"""
    if bot.rung_offset is not None:
        return bot.rung_offset
    return bot.target_price * bot.spread_percent / 2


def next_rung_offset(bot: MarketMakerBot) -> float:
    """Tighten the ladder by one step, never below one step from the target"""
    offset = rung_offset(bot)
    step = bot.increment_step
    return round(max(offset - step, min(offset, step)), 12)


def compute_rung(bot: MarketMakerBot) -> tuple[float, float]:
    """Bid and ask straddling the target, clamped into [floor, ceil]"""
    offset = rung_offset(bot)
    bid = bot.target_price - offset
    ask = bot.target_price + offset
    if bot.price_floor is not None:
        bid = max(bid, bot.price_floor)
        ask = max(ask, bot.price_floor)
    if bot.price_ceil is not None:
        bid = min(bid, bot.price_ceil)
        ask = min(ask, bot.price_ceil)
    return round(bid, 8), round(ask, 8)


class MarketMakerWorker(BaseWorker):
    strategy_type = StrategyType.MARKET_MAKER
    bot: MarketMakerBot

    def __init__(self, ctx: WorkerContext, bot: MarketMakerBot):
        super().__init__(ctx, bot)
        self.settings = ctx.config.market_maker

    @property
    def interval(self) -> float:
        return self.settings.cycle_seconds

    async def save(self) -> None:
        await self.ctx.db.update_market_maker(self.bot)

    def apply_record(self, bot: MarketMakerBot, record: TradeRecord) -> None:
        bot.sequence += 1
        if record.outcome == "success" and record.order_id:
            bot.working_order_ids = [*bot.working_order_ids, record.order_id]

    async def on_start(self) -> None:
        if self.bot.target_reached or self.bot.status == "target_reached":
            self.bot.target_reached = False
            self.bot.current_order_size = self.bot.order_size
            self.bot.rung_offset = None
            await self.log.info(f"Restarted after target, ladder reset to order size {self.bot.order_size:g}")
        await self.catch_up_ledger()
        self.bot.status = "running"
        await self.save()
        self.ctx.cache.track(self.bot.symbol)
        await self.log.info(
            f"Market maker started, target {self.bot.target_price:g} spread {self.bot.spread_percent:.2%}"
        )

    async def on_stop(self) -> None:
        if self.bot.status == "target_reached":
            return
        try:
            await self._cancel_working()
        except ConfigurationError as e:
            await self.log.warning(f"Working orders left open: {e}")
        self.bot.status = "stopped"
        await self.save()
        await self.log.info("Market maker stopped")

    async def tick(self) -> None:
        if self.bot.target_reached:
            self.running = False
            return

        snapshot = self.ctx.cache.get_snapshot(self.bot.symbol)
        if snapshot is None:
            await self.log.monitor(f"No fresh market data for {self.bot.symbol}, cycle skipped")
            return

        if snapshot.last_price >= self.bot.target_price:
            await self._reach_target(snapshot)
            return

        if not await self._cancel_working():
            await self.log.warning(
                f"Could not confirm cancellation of {len(self.bot.working_order_ids)} orders, "
                "placement skipped this cycle"
            )
            return

        bid, ask = compute_rung(self.bot)
        size = self.bot.current_order_size
        await self.log.calculate(
            f"Rung bid {bid:g} / ask {ask:g} size {size:g}, last price {snapshot.last_price:g}",
            {"bid": bid, "ask": ask, "size": size, "price": snapshot.last_price},
        )
        placed = 0
        for side, price in (("BUY", bid), ("SELL", ask)):
            request = ExecutionRequest(
                strategy_id=self.bot.id,
                strategy_type=self.strategy_type.value,
                user_id=self.bot.user_id,
                sequence=self.bot.sequence,
                symbol=self.bot.symbol,
                side=side,
                type="LIMIT",
                volume=size,
                price=price,
            )
            record = await self.ctx.pipeline.execute(request, persist=self._persist)
            if record.outcome == "success":
                placed += 1

        self.bot.execution_count += 1
        self.bot.current_order_size += self.bot.increment_step
        self.bot.rung_offset = next_rung_offset(self.bot)
        self.bot.last_executed_at = self.ctx.now_ms()
        await self.save()
        await self.log.success(
            f"Cycle {self.bot.execution_count}: {placed}/2 orders working, "
            f"next size {self.bot.current_order_size:g}"
        )

    async def _persist(self, record: TradeRecord) -> TradeRecord:
        updated = replace(self.bot)
        async with self.ctx.db.transaction():
            stored = await self.ctx.db.insert_trade_record(record)
            self.apply_record(updated, stored)
            await self.ctx.db.update_market_maker(updated)
        self.bot = updated
        return stored

    async def _open_order_ids(self) -> set[str]:
        orders = await self.ctx.pipeline.open_orders(self.bot.user_id, self.bot.symbol)
        return {o.order_id for o in orders}

    async def _cancel_working(self) -> bool:
        """Cancel every working order. True when none is left open."""
        pending = list(self.bot.working_order_ids)
        if not pending:
            return True
        try:
            for _ in range(self.settings.cancel_attempts):
                open_ids = await self._open_order_ids()
                pending = [oid for oid in pending if oid in open_ids]
                if not pending:
                    break
                for order_id in pending:
                    await self.ctx.pipeline.cancel(self.bot.user_id, order_id, self.bot.symbol)
            else:
                open_ids = await self._open_order_ids()
                pending = [oid for oid in pending if oid in open_ids]
        except ExchangeError as e:
            logger.warning(f"Market maker {self.bot.id} could not verify cancellations: {e}")
            self.bot.working_order_ids = pending
            await self.save()
            return False

        self.bot.working_order_ids = pending
        await self.save()
        return not pending

    async def _reach_target(self, snapshot: MarketSnapshot) -> None:
        self.bot.target_reached = True
        self.bot.status = "target_reached"
        self.bot.last_executed_at = self.ctx.now_ms()
        await self.save()
        try:
            if not await self._cancel_working():
                await self.log.warning(
                    f"{len(self.bot.working_order_ids)} working orders could not be cancelled"
                )
        except ConfigurationError as e:
            await self.log.warning(f"Working orders left open: {e}")

        logger.info(f"Market maker {self.bot.id} reached target at {snapshot.last_price}")
        await self.log.success(
            f"Target {self.bot.target_price:g} reached at {snapshot.last_price:g}, bot stopped",
            {"price": snapshot.last_price},
        )
        if self.bot.telegram_enabled and self.bot.telegram_user_id and self.ctx.notifier:
            await self.ctx.notifier.send_message(
                format_target_reached(self.bot, snapshot.last_price),
                chat_id=self.bot.telegram_user_id,
            )
        self.running = False
