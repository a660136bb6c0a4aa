# tests/notifier/test_formatter.py
from mmbot.notifier.formatter import format_status, format_target_reached, format_uptime
from mmbot.strategies.market_maker import build_market_maker_bot


def test_format_uptime():
    assert format_uptime(0) == "0d 0h 0m"
    assert format_uptime(90061) == "1d 1h 1m"


def test_format_target_reached():
    bot = build_market_maker_bot("u", "Ladder", "GCB/USDT", 1.2, 0.02, 10)
    bot.execution_count = 7

    msg = format_target_reached(bot, 1.25)

    assert "<b>Ladder</b>" in msg
    assert "GCB/USDT: 1.25 (target 1.2)" in msg
    assert "Cycles run: 7" in msg


def test_format_status():
    msg = format_status(
        {
            "uptime": 3720,
            "running": True,
            "symbol": "GCB/USDT",
            "price": 0.98,
            "active_conditions": 3,
            "stabilizers": 1,
            "scheduled": 2,
            "market_makers": 0,
            "spent_today": 1500.0,
        }
    )

    assert "Uptime: 0d 1h 2m" in msg
    assert "🟢 running" in msg
    assert "GCB/USDT: 0.98" in msg
    assert "Active conditions: 3" in msg
    assert "Spent today: 1.50K USDT" in msg


def test_format_status_without_price():
    msg = format_status(
        {
            "uptime": 0,
            "running": False,
            "symbol": "GCB/USDT",
            "price": None,
            "active_conditions": 0,
            "stabilizers": 0,
            "scheduled": 0,
            "market_makers": 0,
        }
    )

    assert "GCB/USDT: n/a" in msg
    assert "🔴 stopped" in msg
    assert "Spent today: 0.00 USDT" in msg
