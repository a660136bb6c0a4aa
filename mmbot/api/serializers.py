# mmbot/api/serializers.py
from dataclasses import fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic.alias_generators import to_camel

from mmbot.storage.models import MarketSnapshot

# integer millisecond fields rendered as ISO-8601
TIMESTAMP_FIELDS = {"last_triggered", "timestamp"}


def iso(ms: int | None) -> str | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, UTC).isoformat().replace("+00:00", "Z")


def _is_timestamp(name: str) -> bool:
    return name.endswith("_at") or name in TIMESTAMP_FIELDS


def to_json(obj: Any, **extra: Any) -> dict[str, Any]:
    """Dataclass -> camelCase dict, ``id`` as ``_id``, enums as values"""
    data: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif _is_timestamp(f.name) and isinstance(value, int):
            value = iso(value)
        key = "_id" if f.name == "id" else to_camel(f.name)
        data[key] = value
    data.update(extra)
    return data


def market_data(snapshot: MarketSnapshot) -> dict[str, Any]:
    return {
        "symbol": snapshot.symbol,
        "price": snapshot.last_price,
        "bestBid": snapshot.best_bid,
        "bestAsk": snapshot.best_ask,
        "high24h": snapshot.high_24h,
        "low24h": snapshot.low_24h,
        "volume24h": snapshot.volume_24h,
        "change24h": snapshot.change_24h,
        "timestamp": iso(snapshot.timestamp),
    }


def mask_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}{'*' * (len(api_key) - 8)}{api_key[-4:]}"
