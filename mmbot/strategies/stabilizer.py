# mmbot/strategies/stabilizer.py
import logging
from dataclasses import replace

from mmbot.errors import InternalInvariantError
from mmbot.execution.pipeline import ExecutionRequest
from mmbot.storage.models import MarketSnapshot, StabilizerBot, StrategyType, TradeRecord
from mmbot.strategies.base import BaseWorker, WorkerContext
from mmbot.strategies.price_impact import PriceImpactModel, ask_walk_cost, split_notional

logger = logging.getLogger(__name__)


class StabilizerWorker(BaseWorker):
    """Buys the book back up to the target price whenever it trades below it.

    phase: idle -> monitoring -> recovering -> monitoring, and idle on stop.
    """

    strategy_type = StrategyType.STABILIZER
    bot: StabilizerBot

    def __init__(
        self,
        ctx: WorkerContext,
        bot: StabilizerBot,
        impact_model: PriceImpactModel = ask_walk_cost,
    ):
        super().__init__(ctx, bot)
        self.settings = ctx.config.stabilizer
        self.impact_model = impact_model
        self.failed_recoveries = 0

    @property
    def interval(self) -> float:
        return self.settings.check_interval_seconds

    async def save(self) -> None:
        await self.ctx.db.update_stabilizer(self.bot)

    def apply_record(self, bot: StabilizerBot, record: TradeRecord) -> None:
        bot.sequence += 1
        bot.last_executed_at = record.executed_at
        if record.outcome == "success":
            bot.successful_orders += 1
            bot.total_usdt_spent += record.volume
        else:
            bot.failed_orders += 1

    async def on_start(self) -> None:
        if self.bot.phase == "recovering":
            logger.warning(f"Stabilizer {self.bot.id} was left recovering, resetting to monitoring")
            await self.log.warning("Recovery interrupted by restart, reset to monitoring")
        await self.catch_up_ledger()
        self.bot.status = "running"
        self.bot.phase = "monitoring"
        self.bot.recovery_started_at = None
        await self.save()
        self.ctx.cache.track(self.bot.symbol)
        await self.log.info(f"Stabilizer started, target {self.bot.target_price} on {self.bot.symbol}")

    async def on_stop(self) -> None:
        self.bot.status = "stopped"
        self.bot.phase = "idle"
        self.bot.recovery_started_at = None
        await self.save()
        await self.log.info("Stabilizer stopped")

    async def tick(self) -> None:
        snapshot = self.ctx.cache.get_snapshot(self.bot.symbol)
        self.bot.last_checked_at = self.ctx.now_ms()
        if snapshot is None:
            await self.log.monitor(f"No fresh market data for {self.bot.symbol}, check skipped")
            await self.save()
            return

        self.bot.last_market_price = snapshot.last_price
        if snapshot.last_price >= self.bot.target_price:
            await self.log.monitor(
                f"Price {snapshot.last_price} at or above target {self.bot.target_price}",
                {"price": snapshot.last_price},
            )
            await self.save()
            return

        await self.recover(snapshot)

    async def recover(self, snapshot: MarketSnapshot) -> None:
        target = self.bot.target_price
        total = self.impact_model(snapshot.asks, target)
        if self.settings.max_recovery_usdt is not None:
            total = min(total, self.settings.max_recovery_usdt)
        await self.log.calculate(
            f"Price {snapshot.last_price} below target {target}, recovery needs {total:.2f} USDT",
            {"price": snapshot.last_price, "target": target, "usdt": total},
        )
        if total <= 0:
            await self.save()
            return

        split = self.settings.split_count
        min_notional = self.ctx.pipeline.min_notional
        if total / split < min_notional:
            await self.log.calculate(
                f"Recovery of {total:.2f} USDT is too small for {split} orders "
                f"of at least {min_notional:g} USDT, skipped"
            )
            await self.save()
            return

        chunks = split_notional(total, split)
        self.bot.phase = "recovering"
        self.bot.recovery_started_at = self.ctx.now_ms()
        await self.save()
        failed = False
        try:
            failed = await self._run_sequence(chunks, snapshot)
        except InternalInvariantError as e:
            logger.error(f"Stabilizer {self.bot.id}: {e}")
            await self.log.error(f"{e}, reset to monitoring")
        finally:
            self.bot.phase = "monitoring" if self.running else "idle"
            self.bot.recovery_started_at = None
            await self.save()

        if not failed:
            self.failed_recoveries = 0
            return
        self.failed_recoveries += 1
        limit = self.settings.max_failed_recoveries
        if self.failed_recoveries >= limit:
            logger.error(f"Stabilizer {self.bot.id} stopped after {limit} failed recoveries")
            await self.log.error(f"{limit} consecutive recoveries failed, stabilizer stopped")
            self.running = False
            self.bot.status = "stopped"
            self.bot.phase = "idle"
            await self.save()

    async def _run_sequence(self, chunks: list[float], snapshot: MarketSnapshot) -> bool:
        """Place the recovery orders. True when one of them did not succeed."""
        started = self.bot.recovery_started_at or self.ctx.now_ms()
        limit_ms = self.settings.max_recovery_seconds * 1000
        placed = 0
        failed = False
        for i, amount in enumerate(chunks):
            remaining = len(chunks) - i
            if i > 0:
                await self._sleep(self.settings.split_interval_seconds)
            if not self.running:
                await self.log.warning(f"Stopped during recovery, {remaining} orders not placed")
                break
            if self.ctx.now_ms() - started > limit_ms:
                raise InternalInvariantError(
                    f"Recovery exceeded {self.settings.max_recovery_seconds}s with {remaining} orders left"
                )

            reference = self.ctx.cache.get_snapshot(self.bot.symbol) or snapshot
            request = ExecutionRequest(
                strategy_id=self.bot.id,
                strategy_type=self.strategy_type.value,
                user_id=self.bot.user_id,
                sequence=self.bot.sequence,
                symbol=self.bot.symbol,
                side="BUY",
                type="MARKET",
                volume=amount,
                reference_price=reference.best_ask,
            )
            record = await self.ctx.pipeline.execute(request, persist=self._persist)
            if record.outcome != "success":
                skipped = remaining - 1
                await self.log.warning(
                    f"Recovery order {i + 1}/{len(chunks)} {record.outcome}, "
                    f"{skipped} remaining orders skipped"
                )
                failed = True
                break
            placed += 1

        fresh = await self.ctx.cache.refresh(self.bot.symbol)
        if fresh is not None:
            self.bot.last_final_price = fresh.last_price
        self.bot.execution_count += 1
        await self.log.success(
            f"Recovery finished: {placed}/{len(chunks)} orders placed, "
            f"price now {self.bot.last_final_price}",
            {"placed": placed, "planned": len(chunks), "finalPrice": self.bot.last_final_price},
        )
        return failed

    async def _persist(self, record: TradeRecord) -> TradeRecord:
        updated = replace(self.bot)
        async with self.ctx.db.transaction():
            stored = await self.ctx.db.insert_trade_record(record)
            self.apply_record(updated, stored)
            await self.ctx.db.update_stabilizer(updated)
        self.bot = updated
        return stored
