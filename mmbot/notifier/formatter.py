# mmbot/notifier/formatter.py
from datetime import UTC, datetime
from typing import Any

from mmbot.storage.models import MarketMakerBot


def _format_usdt(value: float) -> str:
    if abs(value) >= 1_000_000:
        return f"{value / 1_000_000:.2f}M USDT"
    elif abs(value) >= 1_000:
        return f"{value / 1_000:.2f}K USDT"
    else:
        return f"{value:,.2f} USDT"


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC")


def format_uptime(seconds: float) -> str:
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{days}d {hours}h {minutes}m"


def format_target_reached(bot: MarketMakerBot, price: float) -> str:
    return f"""🎯 <b>{bot.name}</b> reached its target

{bot.symbol}: {price:g} (target {bot.target_price:g})
Cycles run: {bot.execution_count}
Last order size: {bot.current_order_size:g}

All working orders were cancelled and the bot has stopped.
⏰ {_now()}"""


def format_status(data: dict[str, Any]) -> str:
    price = data.get("price")
    price_line = f"{price:g}" if price is not None else "n/a"
    evaluator = "🟢 running" if data["running"] else "🔴 stopped"

    return f"""🔧 <b>MMBot status</b>

Uptime: {format_uptime(data["uptime"])}
Condition evaluator: {evaluator}
{data["symbol"]}: {price_line}

Active conditions: {data["active_conditions"]}
Stabilizers running: {data["stabilizers"]}
Scheduled bots running: {data["scheduled"]}
Market makers running: {data["market_makers"]}
Spent today: {_format_usdt(data.get("spent_today", 0.0))}"""
