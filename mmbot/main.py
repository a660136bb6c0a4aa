# mmbot/main.py
import asyncio
import logging
import signal
import time
from datetime import UTC, datetime
from pathlib import Path

from mmbot.api.server import ApiServer
from mmbot.client.exchange import ExchangeClient, ExchangePool
from mmbot.client.vault import CredentialVault
from mmbot.config import Config, load_config
from mmbot.engine import Engine
from mmbot.execution.pipeline import ExecutionPipeline
from mmbot.execution.rate_limiter import RateLimiterRegistry
from mmbot.ledger.activity_log import ActivityLog
from mmbot.market.snapshot_cache import SnapshotCache
from mmbot.notifier.formatter import format_status
from mmbot.notifier.telegram import TelegramNotifier
from mmbot.storage.database import Database
from mmbot.storage.models import StrategyType
from mmbot.strategies.base import WorkerContext

logger = logging.getLogger(__name__)


class MMBot:
    def __init__(self, config: Config):
        self.config = config
        self.db = Database(config.database.path)
        self.public_client = ExchangeClient.create(config.exchange.id, sandbox=config.exchange.sandbox)
        self.cache = SnapshotCache(
            self.public_client,
            refresh_seconds=config.market.refresh_seconds,
            stale_after=config.market.stale_after,
            depth_limit=config.exchange.depth_limit,
        )
        self.pool = ExchangePool(config.exchange.id, sandbox=config.exchange.sandbox)
        self.vault = CredentialVault(self.db)
        self.limiter = RateLimiterRegistry(
            config.execution.rate_limit_per_second, config.execution.rate_limit_burst
        )
        self.activity = ActivityLog(
            self.db,
            flush_seconds=config.activity_log.flush_seconds,
            buffer_size=config.activity_log.buffer_size,
        )
        self.pipeline = ExecutionPipeline(
            self.db,
            self.vault,
            self.pool,
            self.limiter,
            self.activity,
            max_attempts=config.execution.max_attempts,
            backoff_base=config.execution.backoff_base_seconds,
            min_notional=config.execution.min_notional_usdt,
        )

        self.notifier: TelegramNotifier | None = None
        if config.telegram:
            self.notifier = TelegramNotifier(config.telegram.bot_token, config.telegram.admin_chat_id)
            self.notifier.on_status = self._status_text

        ctx = WorkerContext(
            config=config,
            db=self.db,
            cache=self.cache,
            pipeline=self.pipeline,
            activity=self.activity,
            notifier=self.notifier,
        )
        self.engine = Engine(ctx)
        self.api = ApiServer(self.engine, config.api)
        self.running = False

    async def _status_text(self) -> str:
        status = await self.engine.status()
        symbol = self.config.exchange.trading_symbol
        snapshot = self.cache.latest(symbol)
        counts = {kind: 0 for kind in StrategyType}
        for worker in self.engine.workers.values():
            counts[worker.strategy_type] += 1
        today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        return format_status(
            {
                "uptime": self.engine.uptime(),
                "running": status["running"],
                "symbol": symbol,
                "price": snapshot.last_price if snapshot else None,
                "active_conditions": status["active_conditions"],
                "stabilizers": counts[StrategyType.STABILIZER],
                "scheduled": counts[StrategyType.SCHEDULED],
                "market_makers": counts[StrategyType.MARKET_MAKER],
                "spent_today": await self.db.spent_since(int(today.timestamp() * 1000)),
            }
        )

    async def _cleanup_old_data(self) -> None:
        interval = self.config.engine.cleanup_hours * 3600
        last_run = 0.0
        while self.running:
            try:
                if time.time() - last_run >= interval:
                    await self.engine.cleanup()
                    last_run = time.time()
            except Exception as e:
                logger.error(f"Cleanup error: {e}")
            await asyncio.sleep(60)

    async def run(self) -> None:
        self.running = True
        Path(self.config.database.path).parent.mkdir(parents=True, exist_ok=True)
        await self.db.init()

        await self.activity.start()
        await self.cache.start()
        await self.engine.start()
        await self.api.start()

        if self.notifier:
            try:
                await self.notifier.start_polling()
            except Exception as e:
                logger.error(f"Telegram polling failed to start: {e}")

        tasks = [asyncio.create_task(self._cleanup_old_data())]

        logger.info("MMBot started")

        # Wait for shutdown signal
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await stop_event.wait()

        # Cleanup
        self.running = False
        for task in tasks:
            task.cancel()
        await self.api.stop()
        await self.engine.stop()
        if self.notifier:
            await self.notifier.stop_polling()
        await self.cache.stop()
        await self.activity.stop()
        await self.pool.close()
        await self.public_client.close()
        await self.db.close()

        logger.info("MMBot stopped")


async def main() -> None:
    config = load_config(Path("config.yaml"))
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    bot = MMBot(config)
    await bot.run()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
