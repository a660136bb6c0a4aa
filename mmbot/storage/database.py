# mmbot/storage/database.py
import asyncio
import json
import time
import types
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import fields
from enum import Enum
from typing import Any, Union, get_args, get_origin

import aiosqlite

from .models import (
    ActivityLogEntry,
    ApiCredentials,
    BotCondition,
    LogLevel,
    MarketMakerBot,
    OrderIntent,
    ScheduledBot,
    ScheduledBotTrade,
    StabilizerBot,
    TradeRecord,
    UserSettings,
)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS bot_conditions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        is_active INTEGER NOT NULL,
        condition_field TEXT NOT NULL,
        condition_operator TEXT NOT NULL,
        condition_value REAL NOT NULL,
        action_type TEXT NOT NULL,
        action_field TEXT NOT NULL,
        action_value REAL NOT NULL,
        limit_price REAL,
        trigger_count INTEGER NOT NULL DEFAULT 0,
        last_triggered INTEGER,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        sequence INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_conditions_user ON bot_conditions(user_id);

    CREATE TABLE IF NOT EXISTS stabilizer_bots (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        symbol TEXT NOT NULL,
        target_price REAL NOT NULL,
        status TEXT NOT NULL,
        phase TEXT NOT NULL,
        execution_count INTEGER NOT NULL DEFAULT 0,
        total_usdt_spent REAL NOT NULL DEFAULT 0,
        successful_orders INTEGER NOT NULL DEFAULT 0,
        failed_orders INTEGER NOT NULL DEFAULT 0,
        last_executed_at INTEGER,
        last_checked_at INTEGER,
        last_market_price REAL,
        last_final_price REAL,
        recovery_started_at INTEGER,
        sequence INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_stabilizer_user ON stabilizer_bots(user_id);

    CREATE TABLE IF NOT EXISTS scheduled_bots (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        symbol TEXT NOT NULL,
        total_usdt_budget REAL NOT NULL,
        duration_hours INTEGER NOT NULL,
        bid_offset_percent REAL NOT NULL,
        usdt_per_hour REAL NOT NULL,
        interval_ms INTEGER NOT NULL,
        total_buys INTEGER NOT NULL,
        spent_usdt REAL NOT NULL DEFAULT 0,
        accumulated_gcb REAL NOT NULL DEFAULT 0,
        executed_buys INTEGER NOT NULL DEFAULT 0,
        next_buy_at INTEGER,
        started_at INTEGER,
        last_buy_at INTEGER,
        status TEXT NOT NULL,
        sequence INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        CHECK (executed_buys <= total_buys),
        CHECK (spent_usdt <= total_usdt_budget + 1e-6)
    );
    CREATE INDEX IF NOT EXISTS idx_scheduled_user ON scheduled_bots(user_id);

    CREATE TABLE IF NOT EXISTS scheduled_bot_trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scheduled_bot_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        market_buy_order_id TEXT,
        limit_buy_order_id TEXT,
        market_buy_price REAL NOT NULL,
        limit_buy_price REAL NOT NULL,
        market_buy_volume REAL NOT NULL,
        limit_buy_volume REAL NOT NULL,
        market_buy_status TEXT NOT NULL,
        limit_buy_status TEXT NOT NULL,
        executed_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_scheduled_trades_bot
        ON scheduled_bot_trades(scheduled_bot_id, executed_at);

    CREATE TABLE IF NOT EXISTS market_maker_bots (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        symbol TEXT NOT NULL,
        target_price REAL NOT NULL,
        spread_percent REAL NOT NULL,
        order_size REAL NOT NULL,
        increment_step REAL NOT NULL,
        current_order_size REAL NOT NULL,
        price_floor REAL,
        price_ceil REAL,
        rung_offset REAL,
        execution_count INTEGER NOT NULL DEFAULT 0,
        target_reached INTEGER NOT NULL DEFAULT 0,
        telegram_enabled INTEGER NOT NULL DEFAULT 0,
        telegram_user_id TEXT,
        working_order_ids TEXT NOT NULL DEFAULT '[]',
        last_executed_at INTEGER,
        status TEXT NOT NULL,
        sequence INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_mm_user ON market_maker_bots(user_id);

    CREATE TABLE IF NOT EXISTS trade_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT NOT NULL,
        strategy_type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        idempotency_key TEXT NOT NULL UNIQUE,
        order_id TEXT,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        type TEXT NOT NULL,
        volume REAL NOT NULL,
        price REAL,
        outcome TEXT NOT NULL,
        error TEXT,
        executed_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_trades_strategy ON trade_records(strategy_id, executed_at);
    CREATE INDEX IF NOT EXISTS idx_trades_user ON trade_records(user_id, executed_at);

    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT,
        strategy_type TEXT,
        user_id TEXT,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        data TEXT,
        timestamp INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_logs_strategy ON activity_logs(strategy_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_logs_level ON activity_logs(level, timestamp);

    CREATE TABLE IF NOT EXISTS order_intents (
        idempotency_key TEXT PRIMARY KEY,
        client_order_id TEXT NOT NULL,
        strategy_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS api_credentials (
        user_id TEXT PRIMARY KEY,
        api_key TEXT NOT NULL,
        api_secret TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_settings (
        user_id TEXT PRIMARY KEY,
        bot_enabled INTEGER NOT NULL DEFAULT 1,
        bot_enabled_at INTEGER,
        bot_disabled_at INTEGER
    );
"""


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    if tp is bool:
        return bool(value)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    origin = get_origin(tp)
    if tp is dict or origin in (list, dict):
        return json.loads(value)
    if origin in (Union, types.UnionType):
        args = [a for a in get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return _decode(args[0], value)
    return value


def _columns(cls: type, skip_id: bool = False) -> list[str]:
    return [f.name for f in fields(cls) if not (skip_id and f.name == "id")]


def _from_row(cls: type, row: aiosqlite.Row) -> Any:
    return cls(**{f.name: _decode(f.type, row[f.name]) for f in fields(cls)})


class Database:
    """Durable keyed store for every engine entity.

    Writes are serialized through ``transaction()``; nested calls from the
    same task join the outer transaction, so a strategy can write a trade
    record and its own state update atomically.
    """

    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._in_tx: ContextVar[bool] = ContextVar(f"mmbot_tx_{id(self)}", default=False)

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA journal_mode=WAL")
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        assert self.conn is not None
        if self._in_tx.get():
            yield self.conn
            return
        async with self._lock:
            token = self._in_tx.set(True)
            try:
                yield self.conn
                await self.conn.commit()
            except BaseException:
                await self.conn.rollback()
                raise
            finally:
                self._in_tx.reset(token)

    # ---- generic helpers ----

    async def _insert(self, table: str, obj: Any, skip_id: bool = False) -> int:
        cols = _columns(type(obj), skip_id)
        values = [_encode(getattr(obj, c)) for c in cols]
        async with self.transaction() as conn:
            cursor = await conn.execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))})",
                values,
            )
            return cursor.lastrowid or 0

    async def _update(self, table: str, obj: Any) -> None:
        obj.updated_at = int(time.time() * 1000)
        cols = [c for c in _columns(type(obj)) if c != "id"]
        values = [_encode(getattr(obj, c)) for c in cols]
        async with self.transaction() as conn:
            await conn.execute(
                f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
                [*values, obj.id],
            )

    async def _get(self, table: str, cls: type, bot_id: str) -> Any:
        assert self.conn is not None
        cursor = await self.conn.execute(f"SELECT * FROM {table} WHERE id = ?", (bot_id,))
        row = await cursor.fetchone()
        return _from_row(cls, row) if row else None

    async def _list(
        self,
        table: str,
        cls: type,
        user_id: str | None = None,
        status: str | None = None,
    ) -> list[Any]:
        assert self.conn is not None
        where: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            where.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            where.append("status = ?")
            params.append(status)
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC"
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_from_row(cls, row) for row in rows]

    async def _delete(self, table: str, bot_id: str) -> None:
        async with self.transaction() as conn:
            await conn.execute(f"DELETE FROM {table} WHERE id = ?", (bot_id,))

    # ---- bot conditions ----

    async def insert_condition(self, condition: BotCondition) -> None:
        await self._insert("bot_conditions", condition)

    async def get_condition(self, condition_id: str) -> BotCondition | None:
        return await self._get("bot_conditions", BotCondition, condition_id)

    async def list_conditions(
        self, user_id: str | None = None, active_only: bool = False
    ) -> list[BotCondition]:
        conditions = await self._list("bot_conditions", BotCondition, user_id=user_id)
        if active_only:
            return [c for c in conditions if c.is_active]
        return conditions

    async def update_condition(self, condition: BotCondition) -> None:
        await self._update("bot_conditions", condition)

    async def delete_condition(self, condition_id: str) -> None:
        await self._delete("bot_conditions", condition_id)

    # ---- stabilizer bots ----

    async def insert_stabilizer(self, bot: StabilizerBot) -> None:
        await self._insert("stabilizer_bots", bot)

    async def get_stabilizer(self, bot_id: str) -> StabilizerBot | None:
        return await self._get("stabilizer_bots", StabilizerBot, bot_id)

    async def list_stabilizers(
        self, user_id: str | None = None, status: str | None = None
    ) -> list[StabilizerBot]:
        return await self._list("stabilizer_bots", StabilizerBot, user_id, status)

    async def update_stabilizer(self, bot: StabilizerBot) -> None:
        await self._update("stabilizer_bots", bot)

    async def delete_stabilizer(self, bot_id: str) -> None:
        await self._delete("stabilizer_bots", bot_id)

    # ---- scheduled bots ----

    async def insert_scheduled(self, bot: ScheduledBot) -> None:
        await self._insert("scheduled_bots", bot)

    async def get_scheduled(self, bot_id: str) -> ScheduledBot | None:
        return await self._get("scheduled_bots", ScheduledBot, bot_id)

    async def list_scheduled(
        self, user_id: str | None = None, status: str | None = None
    ) -> list[ScheduledBot]:
        return await self._list("scheduled_bots", ScheduledBot, user_id, status)

    async def update_scheduled(self, bot: ScheduledBot) -> None:
        await self._update("scheduled_bots", bot)

    async def delete_scheduled(self, bot_id: str) -> None:
        await self._delete("scheduled_bots", bot_id)

    async def insert_scheduled_trade(self, trade: ScheduledBotTrade) -> int:
        return await self._insert("scheduled_bot_trades", trade, skip_id=True)

    async def get_scheduled_trades(self, bot_id: str, limit: int = 100) -> list[ScheduledBotTrade]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT * FROM scheduled_bot_trades WHERE scheduled_bot_id = ?
               ORDER BY executed_at DESC, id DESC LIMIT ?""",
            (bot_id, limit),
        )
        rows = await cursor.fetchall()
        return [_from_row(ScheduledBotTrade, row) for row in rows]

    # ---- market maker bots ----

    async def insert_market_maker(self, bot: MarketMakerBot) -> None:
        await self._insert("market_maker_bots", bot)

    async def get_market_maker(self, bot_id: str) -> MarketMakerBot | None:
        return await self._get("market_maker_bots", MarketMakerBot, bot_id)

    async def list_market_makers(
        self, user_id: str | None = None, status: str | None = None
    ) -> list[MarketMakerBot]:
        return await self._list("market_maker_bots", MarketMakerBot, user_id, status)

    async def update_market_maker(self, bot: MarketMakerBot) -> None:
        await self._update("market_maker_bots", bot)

    async def delete_market_maker(self, bot_id: str) -> None:
        await self._delete("market_maker_bots", bot_id)

    # ---- trade ledger ----

    async def insert_trade_record(self, record: TradeRecord) -> TradeRecord:
        """Append a trade record and resolve its order intent.

        If a record with the same idempotency key already exists it is
        returned unchanged and nothing is written.
        """
        async with self.transaction() as conn:
            existing = await self.get_trade_by_key(record.idempotency_key)
            if existing is not None:
                return existing
            cols = _columns(TradeRecord, skip_id=True)
            cursor = await conn.execute(
                f"INSERT INTO trade_records ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' * len(cols))})",
                [_encode(getattr(record, c)) for c in cols],
            )
            record.id = cursor.lastrowid
            await conn.execute(
                "DELETE FROM order_intents WHERE idempotency_key = ?",
                (record.idempotency_key,),
            )
        return record

    async def get_trade_by_key(self, key: str) -> TradeRecord | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT * FROM trade_records WHERE idempotency_key = ?", (key,)
        )
        row = await cursor.fetchone()
        return _from_row(TradeRecord, row) if row else None

    async def get_trades(
        self,
        strategy_id: str | None = None,
        strategy_type: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[TradeRecord]:
        assert self.conn is not None
        where: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("strategy_id", strategy_id),
            ("strategy_type", strategy_type),
            ("user_id", user_id),
        ):
            if value is not None:
                where.append(f"{column} = ?")
                params.append(value)
        sql = "SELECT * FROM trade_records"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY executed_at DESC, id DESC LIMIT ?"
        params.append(limit)
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_from_row(TradeRecord, row) for row in rows]

    async def spent_since(self, since_ms: int) -> float:
        """USDT committed by successful buys since ``since_ms``"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN type = 'MARKET' THEN volume ELSE volume * price END), 0)
            FROM trade_records
            WHERE side = 'BUY' AND outcome = 'success' AND executed_at >= ?
            """,
            (since_ms,),
        )
        row = await cursor.fetchone()
        return float(row[0]) if row else 0.0

    # ---- order intents ----

    async def insert_intent(self, intent: OrderIntent) -> None:
        await self._insert("order_intents", intent)

    async def get_intent(self, key: str) -> OrderIntent | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT * FROM order_intents WHERE idempotency_key = ?", (key,)
        )
        row = await cursor.fetchone()
        return _from_row(OrderIntent, row) if row else None

    async def list_intents(self) -> list[OrderIntent]:
        assert self.conn is not None
        cursor = await self.conn.execute("SELECT * FROM order_intents ORDER BY created_at")
        rows = await cursor.fetchall()
        return [_from_row(OrderIntent, row) for row in rows]

    async def delete_intent(self, key: str) -> None:
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM order_intents WHERE idempotency_key = ?", (key,))

    async def settle_trade_record(self, key: str, order_id: str) -> None:
        """Mark an unresolved record as placed once the order is found"""
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE trade_records SET outcome = 'success', order_id = ?, error = NULL "
                "WHERE idempotency_key = ?",
                (order_id, key),
            )
            await conn.execute("DELETE FROM order_intents WHERE idempotency_key = ?", (key,))

    # ---- activity log ----

    async def insert_logs(self, entries: list[ActivityLogEntry]) -> None:
        if not entries:
            return
        cols = _columns(ActivityLogEntry, skip_id=True)
        async with self.transaction() as conn:
            await conn.executemany(
                f"INSERT INTO activity_logs ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' * len(cols))})",
                [[_encode(getattr(e, c)) for c in cols] for e in entries],
            )

    async def get_logs(
        self,
        strategy_id: str | None = None,
        strategy_type: str | None = None,
        user_id: str | None = None,
        level: LogLevel | None = None,
        limit: int = 100,
    ) -> list[ActivityLogEntry]:
        assert self.conn is not None
        where: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("strategy_id", strategy_id),
            ("strategy_type", strategy_type),
            ("user_id", user_id),
            ("level", level.value if level else None),
        ):
            if value is not None:
                where.append(f"{column} = ?")
                params.append(value)
        sql = "SELECT * FROM activity_logs"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [_from_row(ActivityLogEntry, row) for row in rows]

    async def cleanup_logs(self, retention_days: int, max_entries: int) -> dict[str, int]:
        """Rotate the activity log by age, then by count"""
        cutoff = int(time.time() * 1000) - retention_days * 86400 * 1000
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM activity_logs WHERE timestamp < ?", (cutoff,)
            )
            expired = cursor.rowcount
            cursor = await conn.execute(
                """DELETE FROM activity_logs WHERE id NOT IN
                   (SELECT id FROM activity_logs ORDER BY id DESC LIMIT ?)""",
                (max_entries,),
            )
            overflow = cursor.rowcount
        return {"expired": expired, "overflow": overflow}

    # ---- credentials ----

    async def save_credentials(self, creds: ApiCredentials) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO api_credentials (user_id, api_key, api_secret, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                     api_key = excluded.api_key,
                     api_secret = excluded.api_secret,
                     updated_at = excluded.updated_at""",
                (creds.user_id, creds.api_key, creds.api_secret, creds.updated_at),
            )

    async def get_credentials(self, user_id: str) -> ApiCredentials | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT * FROM api_credentials WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        return _from_row(ApiCredentials, row) if row else None

    async def delete_credentials(self, user_id: str) -> None:
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM api_credentials WHERE user_id = ?", (user_id,))

    # ---- user settings ----

    async def get_user_settings(self, user_id: str) -> UserSettings:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return UserSettings(
                user_id=user_id, bot_enabled=True, bot_enabled_at=None, bot_disabled_at=None
            )
        return _from_row(UserSettings, row)

    async def set_bot_enabled(self, user_id: str, enabled: bool) -> UserSettings:
        now = int(time.time() * 1000)
        settings = await self.get_user_settings(user_id)
        settings.bot_enabled = enabled
        if enabled:
            settings.bot_enabled_at = now
        else:
            settings.bot_disabled_at = now
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO user_settings (user_id, bot_enabled, bot_enabled_at, bot_disabled_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                     bot_enabled = excluded.bot_enabled,
                     bot_enabled_at = excluded.bot_enabled_at,
                     bot_disabled_at = excluded.bot_disabled_at""",
                (user_id, int(enabled), settings.bot_enabled_at, settings.bot_disabled_at),
            )
        return settings
