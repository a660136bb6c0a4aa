# mmbot/strategies/base.py
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mmbot.config import Config
from mmbot.errors import ConfigurationError
from mmbot.execution.pipeline import ExecutionPipeline
from mmbot.ledger.activity_log import ActivityLog
from mmbot.market.snapshot_cache import SnapshotCache
from mmbot.storage.database import Database
from mmbot.storage.models import StrategyType, TradeRecord

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Shared services handed to every strategy worker"""

    config: Config
    db: Database
    cache: SnapshotCache
    pipeline: ExecutionPipeline
    activity: ActivityLog
    notifier: Any = None
    clock: Callable[[], float] = time.time

    def now_ms(self) -> int:
        return int(self.clock() * 1000)


class BaseWorker(ABC):
    """One asyncio task driving one persisted bot.

    ``tick`` runs every ``interval`` seconds until ``stop`` is called or the
    worker finishes on its own. Exceptions raised by a tick are logged and
    never leave the worker. A ConfigurationError pauses trading until a
    later tick succeeds.
    """

    strategy_type: StrategyType

    def __init__(self, ctx: WorkerContext, bot: Any):
        self.ctx = ctx
        self.bot = bot
        self.running = False
        self.paused = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self.log = ctx.activity.bind(bot.id, self.strategy_type.value, bot.user_id)

    @property
    def bot_id(self) -> str:
        return self.bot.id

    @property
    @abstractmethod
    def interval(self) -> float:
        pass

    @abstractmethod
    async def tick(self) -> None:
        pass

    @abstractmethod
    async def save(self) -> None:
        """Persist ``self.bot``"""

    def apply_record(self, bot: Any, record: TradeRecord) -> None:
        """Fold a ledger outcome into bot state. Must advance ``bot.sequence``."""
        bot.sequence += 1

    async def on_start(self) -> None:
        pass

    async def on_stop(self) -> None:
        pass

    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def start(self) -> None:
        self.running = True
        self._stop_event.clear()
        await self.on_start()
        if not self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.__class__.__name__} started for {self.bot_id}")

    async def stop(self, shutdown: bool = False) -> None:
        """Stop the worker. On process shutdown the persisted status is kept
        so the bot is restarted on the next boot."""
        self.running = False
        self._stop_event.set()
        if self._task and self._task is not asyncio.current_task():
            # in-flight orders finish, sleeps wake early
            await self._task
        if not shutdown:
            await self.on_stop()
        logger.info(f"{self.__class__.__name__} stopped for {self.bot_id}")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns False when stopped."""
        if not self.running:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return self.running
        return False

    async def catch_up_ledger(self) -> int:
        """Apply ledger records written after the last persisted state update.

        Happens when an order outcome was resolved at startup from a leftover
        order intent and the bot state never saw it.
        """
        applied = 0
        while True:
            key = f"{self.bot.id}:{self.bot.sequence}"
            record = await self.ctx.db.get_trade_by_key(key)
            if record is None:
                break
            self.apply_record(self.bot, record)
            applied += 1
        if applied:
            logger.info(f"Applied {applied} recovered ledger records to {self.bot_id}")
            await self.save()
        return applied

    async def _run(self) -> None:
        while self.running:
            try:
                await self.tick()
                if self.paused:
                    self.paused = False
                    logger.info(f"{self.bot_id} resumed")
                    await self.log.info("Resumed, credentials available again")
            except ConfigurationError as e:
                if not self.paused:
                    self.paused = True
                    logger.warning(f"{self.bot_id} paused: {e}")
                    await self.log.warning(f"Paused: {e}")
            except Exception as e:
                logger.exception(f"{self.__class__.__name__} {self.bot_id} tick failed")
                try:
                    await self.log.error(f"Tick failed: {e}")
                except Exception:
                    logger.exception(f"Could not record failure of {self.bot_id}")
            if not await self._sleep(self.interval):
                break
