# mmbot/config.py
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel


class ExchangeConfig(BaseModel):
    id: str = "binance"
    sandbox: bool = False
    trading_symbol: str = "GCB/USDT"
    btc_symbol: str = "BTC/USDT"
    eth_symbol: str = "ETH/USDT"
    depth_limit: int = 20


class MarketConfig(BaseModel):
    refresh_seconds: float = 5
    stale_after_seconds: float | None = None

    @property
    def stale_after(self) -> float:
        if self.stale_after_seconds is not None:
            return self.stale_after_seconds
        return self.refresh_seconds * 2


class ExecutionConfig(BaseModel):
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    rate_limit_per_second: float = 5.0
    rate_limit_burst: int = 5
    min_notional_usdt: float = 1.0


class ConditionsConfig(BaseModel):
    max_consecutive_failures: int = 3
    cooldown_seconds: int = 0
    equal_epsilon: float = 1e-9


class StabilizerConfig(BaseModel):
    check_interval_seconds: float = 5
    split_count: int = 4
    split_interval_seconds: float = 10
    max_recovery_usdt: float | None = None
    max_recovery_seconds: float = 120
    max_failed_recoveries: int = 3


class ScheduledConfig(BaseModel):
    interval_seconds: int = 3600
    poll_seconds: float = 5
    missed_policy: Literal["skip", "catch_up"] = "skip"


class MarketMakerConfig(BaseModel):
    cycle_seconds: float = 30
    cancel_attempts: int = 3


class ActivityLogConfig(BaseModel):
    flush_seconds: float = 1.0
    buffer_size: int = 5000
    retention_days: int = 14
    max_entries: int = 100_000


class DatabaseConfig(BaseModel):
    path: str = "data/mmbot.db"


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3001
    tokens: dict[str, str] = {}
    admins: list[str] = []  # user ids allowed to read every log


class TelegramConfig(BaseModel):
    bot_token: str
    admin_chat_id: str | None = None


class EngineConfig(BaseModel):
    max_workers: int = 200
    cleanup_hours: int = 24


class LoggingConfig(BaseModel):
    level: str = "INFO"


class Config(BaseModel):
    exchange: ExchangeConfig = ExchangeConfig()
    market: MarketConfig = MarketConfig()
    execution: ExecutionConfig = ExecutionConfig()
    conditions: ConditionsConfig = ConditionsConfig()
    stabilizer: StabilizerConfig = StabilizerConfig()
    scheduled: ScheduledConfig = ScheduledConfig()
    market_maker: MarketMakerConfig = MarketMakerConfig()
    activity_log: ActivityLogConfig = ActivityLogConfig()
    database: DatabaseConfig = DatabaseConfig()
    api: ApiConfig = ApiConfig()
    telegram: TelegramConfig | None = None
    engine: EngineConfig = EngineConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f)
    return Config(**(data or {}))
