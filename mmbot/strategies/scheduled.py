# mmbot/strategies/scheduled.py
import logging
from dataclasses import replace

from mmbot.execution.pipeline import ExecutionRequest
from mmbot.storage.models import (
    MarketSnapshot,
    ScheduledBot,
    ScheduledBotTrade,
    StrategyType,
    TradeRecord,
    new_id,
)
from mmbot.strategies.base import BaseWorker, WorkerContext

logger = logging.getLogger(__name__)


def build_scheduled_bot(
    user_id: str,
    name: str,
    symbol: str,
    total_usdt_budget: float,
    duration_hours: int,
    bid_offset_percent: float,
    interval_seconds: int = 3600,
) -> ScheduledBot:
    if total_usdt_budget <= 0:
        raise ValueError("totalUsdtBudget must be positive")
    if int(duration_hours) != duration_hours or duration_hours < 1:
        raise ValueError("durationHours must be a positive integer")
    if not 0 <= bid_offset_percent < 100:
        raise ValueError("bidOffsetPercent must be between 0 and 100")
    duration_hours = int(duration_hours)
    return ScheduledBot(
        id=new_id(),
        user_id=user_id,
        name=name,
        symbol=symbol,
        total_usdt_budget=total_usdt_budget,
        duration_hours=duration_hours,
        bid_offset_percent=bid_offset_percent,
        usdt_per_hour=total_usdt_budget / duration_hours,
        interval_ms=interval_seconds * 1000,
        total_buys=duration_hours,
    )


class ScheduledWorker(BaseWorker):
    """Spends a fixed budget in equal hourly slots.

    Each slot is a market buy of half the slot amount plus a limit buy of
    the other half a little under the best ask. The two legs use
    consecutive sequence numbers, so an odd sequence means the market leg
    of the current slot is done and only the limit leg is left.
    """

    strategy_type = StrategyType.SCHEDULED
    bot: ScheduledBot

    def __init__(self, ctx: WorkerContext, bot: ScheduledBot):
        super().__init__(ctx, bot)
        self.settings = ctx.config.scheduled

    @property
    def interval(self) -> float:
        return self.settings.poll_seconds

    async def save(self) -> None:
        await self.ctx.db.update_scheduled(self.bot)

    def apply_record(
        self, bot: ScheduledBot, record: TradeRecord, best_ask: float | None = None
    ) -> None:
        bot.sequence += 1
        if record.outcome == "success":
            if record.type == "MARKET":
                notional = record.volume
                if best_ask:
                    bot.accumulated_gcb += notional / best_ask
            else:
                notional = record.volume * (record.price or 0)
            bot.spent_usdt = min(bot.spent_usdt + notional, bot.total_usdt_budget)
        if record.type == "LIMIT":
            # the limit leg closes the slot
            now = self.ctx.now_ms()
            bot.executed_buys += 1
            bot.last_buy_at = now
            bot.next_buy_at = (bot.next_buy_at or now) + bot.interval_ms
            if bot.executed_buys >= bot.total_buys:
                bot.status = "completed"

    async def on_start(self) -> None:
        if self.bot.status == "completed" or self.bot.executed_buys >= self.bot.total_buys:
            self.running = False
            return
        await self.catch_up_ledger()
        now = self.ctx.now_ms()
        self.bot.status = "running"
        if self.bot.started_at is None:
            self.bot.started_at = now
        if self.bot.next_buy_at is None:
            self.bot.next_buy_at = now
        await self.save()
        self.ctx.cache.track(self.bot.symbol)
        await self.log.info(
            f"Scheduled bot started: {self.bot.executed_buys}/{self.bot.total_buys} buys done, "
            f"{self.bot.usdt_per_hour:.2f} USDT per slot"
        )

    async def on_stop(self) -> None:
        if self.bot.status != "completed":
            self.bot.status = "stopped"
            await self.save()
        await self.log.info("Scheduled bot stopped")

    def slots_due(self, now: int) -> int:
        if self.bot.next_buy_at is None or now < self.bot.next_buy_at:
            return 0
        due = 1 + (now - self.bot.next_buy_at) // self.bot.interval_ms
        return min(due, self.bot.total_buys - self.bot.executed_buys)

    async def tick(self) -> None:
        if self.bot.sequence % 2 == 1:
            snapshot = self.ctx.cache.get_snapshot(self.bot.symbol)
            if snapshot is None:
                await self.log.monitor("No market data to finish the pending slot, retrying")
                return
            market = await self.ctx.db.get_trade_by_key(f"{self.bot.id}:{self.bot.sequence - 1}")
            if market is None:
                raise RuntimeError(f"Market leg {self.bot.id}:{self.bot.sequence - 1} missing from ledger")
            await self._limit_leg(snapshot, market)
            if self._finished():
                return

        due = self.slots_due(self.ctx.now_ms())
        if due == 0:
            return
        snapshot = self.ctx.cache.get_snapshot(self.bot.symbol)
        if snapshot is None or not snapshot.best_ask:
            await self.log.monitor(f"No market data for {self.bot.symbol}, slot retried next tick")
            return

        if due > 1 and self.settings.missed_policy == "skip":
            skipped = due - 1
            self.bot.executed_buys += skipped
            self.bot.next_buy_at += skipped * self.bot.interval_ms
            await self.save()
            logger.warning(f"Scheduled bot {self.bot.id} skipped {skipped} missed slots")
            await self.log.warning(
                f"Skipped {skipped} missed executions while the bot was not running, "
                "their budget stays unspent",
                {"skipped": skipped},
            )
            due = 1

        for _ in range(due):
            await self._run_slot(snapshot)
            if self._finished() or not self.running:
                return
            snapshot = self.ctx.cache.get_snapshot(self.bot.symbol) or snapshot

    def _finished(self) -> bool:
        if self.bot.status == "completed":
            self.running = False
            return True
        return False

    async def _run_slot(self, snapshot: MarketSnapshot) -> None:
        remaining = self.bot.total_usdt_budget - self.bot.spent_usdt
        amount = min(self.bot.usdt_per_hour, remaining)
        half = amount / 2
        best_ask = snapshot.best_ask
        await self.log.calculate(
            f"Slot {self.bot.executed_buys + 1}/{self.bot.total_buys}: {amount:.2f} USDT, "
            f"best ask {best_ask}",
            {"amount": amount, "bestAsk": best_ask},
        )

        request = ExecutionRequest(
            strategy_id=self.bot.id,
            strategy_type=self.strategy_type.value,
            user_id=self.bot.user_id,
            sequence=self.bot.sequence,
            symbol=self.bot.symbol,
            side="BUY",
            type="MARKET",
            volume=half,
            reference_price=best_ask,
        )

        async def persist(record: TradeRecord) -> TradeRecord:
            updated = replace(self.bot)
            async with self.ctx.db.transaction():
                stored = await self.ctx.db.insert_trade_record(record)
                self.apply_record(updated, stored, best_ask)
                await self.ctx.db.update_scheduled(updated)
            self.bot = updated
            return stored

        market = await self.ctx.pipeline.execute(request, persist=persist)
        await self._limit_leg(snapshot, market)

    async def _limit_leg(self, snapshot: MarketSnapshot, market: TradeRecord) -> None:
        half = market.volume
        price = round(snapshot.best_ask * (1 - self.bot.bid_offset_percent / 100), 8)
        request = ExecutionRequest(
            strategy_id=self.bot.id,
            strategy_type=self.strategy_type.value,
            user_id=self.bot.user_id,
            sequence=self.bot.sequence,
            symbol=self.bot.symbol,
            side="BUY",
            type="LIMIT",
            volume=half / price,
            price=price,
        )

        async def persist(record: TradeRecord) -> TradeRecord:
            updated = replace(self.bot)
            now = self.ctx.now_ms()
            async with self.ctx.db.transaction():
                stored = await self.ctx.db.insert_trade_record(record)
                self.apply_record(updated, stored)
                await self.ctx.db.insert_scheduled_trade(
                    ScheduledBotTrade(
                        id=None,
                        scheduled_bot_id=updated.id,
                        user_id=updated.user_id,
                        symbol=updated.symbol,
                        market_buy_order_id=market.order_id,
                        limit_buy_order_id=stored.order_id,
                        market_buy_price=snapshot.best_ask,
                        limit_buy_price=price,
                        market_buy_volume=market.volume,
                        limit_buy_volume=stored.volume,
                        market_buy_status="success" if market.outcome == "success" else "failed",
                        limit_buy_status="placed" if stored.outcome == "success" else "failed",
                        executed_at=now,
                    )
                )
                await self.ctx.db.update_scheduled(updated)
            self.bot = updated
            return stored

        await self.ctx.pipeline.execute(request, persist=persist)
        if self.bot.status == "completed":
            logger.info(f"Scheduled bot {self.bot.id} completed")
            await self.log.success(
                f"All {self.bot.total_buys} buys executed, spent {self.bot.spent_usdt:.2f} USDT, "
                f"accumulated ~{self.bot.accumulated_gcb:.4f}",
                {"spentUsdt": self.bot.spent_usdt, "accumulated": self.bot.accumulated_gcb},
            )
        else:
            await self.log.success(
                f"Slot {self.bot.executed_buys}/{self.bot.total_buys} done, "
                f"spent {self.bot.spent_usdt:.2f}/{self.bot.total_usdt_budget:.2f} USDT"
            )
