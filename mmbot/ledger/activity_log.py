# mmbot/ledger/activity_log.py
import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from mmbot.storage.database import Database
from mmbot.storage.models import ActivityLogEntry, LogLevel

logger = logging.getLogger(__name__)

# written straight to the store, never buffered
CRITICAL_LEVELS = {LogLevel.TRADE, LogLevel.ERROR}

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.TRADE: logging.INFO,
    LogLevel.CALCULATE: logging.DEBUG,
    LogLevel.MONITOR: logging.DEBUG,
}


class ActivityLog:
    """Append-only activity log shared by all strategies.

    ``trade`` and ``error`` entries are persisted before ``log`` returns.
    Other levels are buffered in memory and flushed in batches; when the
    buffer is full the oldest buffered entry is dropped and counted.
    """

    def __init__(
        self,
        db: Database,
        flush_seconds: float = 1.0,
        buffer_size: int = 5000,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.flush_seconds = flush_seconds
        self.buffer_size = buffer_size
        self.clock = clock
        self.dropped = 0
        self.running = False
        self._buffer: deque[ActivityLogEntry] = deque()
        self._task: asyncio.Task[None] | None = None

    async def log(
        self,
        level: LogLevel,
        message: str,
        strategy_id: str | None = None,
        strategy_type: str | None = None,
        user_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=None,
            strategy_id=strategy_id,
            strategy_type=strategy_type,
            user_id=user_id,
            level=level,
            message=message,
            data=data,
            timestamp=int(self.clock() * 1000),
        )
        logger.log(
            _PY_LEVELS[level],
            f"[{strategy_type or 'engine'}:{strategy_id or '-'}] {message}",
        )
        if level in CRITICAL_LEVELS:
            await self.db.insert_logs([entry])
        else:
            if len(self._buffer) >= self.buffer_size:
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(entry)
        return entry

    def bind(self, strategy_id: str, strategy_type: str, user_id: str) -> "StrategyLog":
        return StrategyLog(self, strategy_id, strategy_type, user_id)

    async def flush(self) -> int:
        if not self._buffer:
            return 0
        entries = list(self._buffer)
        self._buffer.clear()
        try:
            await self.db.insert_logs(entries)
        except Exception:
            logger.exception(f"Failed to flush {len(entries)} activity log entries")
            self._buffer.extendleft(reversed(entries))
            while len(self._buffer) > self.buffer_size:
                self._buffer.popleft()
                self.dropped += 1
            return 0
        return len(entries)

    async def get_logs(
        self,
        strategy_id: str | None = None,
        strategy_type: str | None = None,
        user_id: str | None = None,
        level: LogLevel | None = None,
        limit: int = 100,
    ) -> list[ActivityLogEntry]:
        await self.flush()
        return await self.db.get_logs(
            strategy_id=strategy_id,
            strategy_type=strategy_type,
            user_id=user_id,
            level=level,
            limit=limit,
        )

    async def _run(self) -> None:
        while self.running:
            await asyncio.sleep(self.flush_seconds)
            await self.flush()

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.flush()
        if self.dropped:
            logger.warning(f"Activity log dropped {self.dropped} buffered entries")


class StrategyLog:
    """ActivityLog bound to one strategy instance"""

    def __init__(self, log: ActivityLog, strategy_id: str, strategy_type: str, user_id: str):
        self._log = log
        self.strategy_id = strategy_id
        self.strategy_type = strategy_type
        self.user_id = user_id

    async def write(
        self, level: LogLevel, message: str, data: dict[str, Any] | None = None
    ) -> ActivityLogEntry:
        return await self._log.log(
            level,
            message,
            strategy_id=self.strategy_id,
            strategy_type=self.strategy_type,
            user_id=self.user_id,
            data=data,
        )

    async def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.INFO, message, data)

    async def success(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.SUCCESS, message, data)

    async def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.WARNING, message, data)

    async def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.ERROR, message, data)

    async def calculate(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.CALCULATE, message, data)

    async def monitor(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.write(LogLevel.MONITOR, message, data)
