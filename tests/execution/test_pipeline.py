# tests/execution/test_pipeline.py
import pytest

from mmbot.client.models import OrderRequest
from mmbot.errors import ConfigurationError, RejectedOrderError, TransientExchangeError
from mmbot.execution.pipeline import ExecutionRequest, client_order_id_for
from mmbot.storage.models import LogLevel, OrderIntent


def _request(sequence: int = 0, **overrides) -> ExecutionRequest:
    values = dict(
        strategy_id="bot-1",
        strategy_type="stabilizer",
        user_id="user-1",
        sequence=sequence,
        symbol="GCB/USDT",
        side="BUY",
        type="MARKET",
        volume=25.0,
        reference_price=1.01,
    )
    values.update(overrides)
    return ExecutionRequest(**values)


async def test_success_writes_record_and_trade_log(ctx, exchange):
    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "success"
    assert record.order_id == "ord-1"
    assert record.idempotency_key == "bot-1:0"
    assert exchange.placed[0].client_order_id == client_order_id_for("bot-1:0")
    assert await ctx.db.list_intents() == []

    logs = await ctx.activity.get_logs(strategy_id="bot-1", level=LogLevel.TRADE)
    assert len(logs) == 1
    assert logs[0].data["idempotencyKey"] == "bot-1:0"


async def test_replay_returns_recorded_outcome(ctx, exchange):
    first = await ctx.pipeline.execute(_request())
    second = await ctx.pipeline.execute(_request(volume=999.0))

    assert second.id == first.id
    assert second.volume == 25.0
    assert len(exchange.placed) == 1


async def test_replay_after_restart_never_resubmits(ctx, exchange, db):
    # crashed after submission, before the outcome was recorded
    request = _request()
    await exchange.place_order(
        OrderRequest(
            symbol="GCB/USDT",
            side="BUY",
            type="MARKET",
            volume=25.0,
            client_order_id=client_order_id_for(request.idempotency_key),
        )
    )
    await db.insert_intent(
        OrderIntent(
            idempotency_key=request.idempotency_key,
            client_order_id=client_order_id_for(request.idempotency_key),
            strategy_id="bot-1",
            user_id="user-1",
            payload={
                "strategy_id": "bot-1",
                "strategy_type": "stabilizer",
                "user_id": "user-1",
                "sequence": 0,
                "symbol": "GCB/USDT",
                "side": "BUY",
                "type": "MARKET",
                "volume": 25.0,
                "price": None,
                "reference_price": 1.01,
            },
            created_at=0,
        )
    )

    resolved = await ctx.pipeline.recover_pending()
    assert resolved == 1

    record = await db.get_trade_by_key("bot-1:0")
    assert record.outcome == "success"
    assert record.order_id == "ord-1"

    again = await ctx.pipeline.execute(request)
    assert again.id == record.id
    assert len(exchange.placed) == 1


async def test_recover_pending_marks_unsubmitted_as_error(ctx, exchange, db):
    await db.insert_intent(
        OrderIntent(
            idempotency_key="bot-1:0",
            client_order_id=client_order_id_for("bot-1:0"),
            strategy_id="bot-1",
            user_id="user-1",
            payload={
                "strategy_id": "bot-1",
                "strategy_type": "stabilizer",
                "user_id": "user-1",
                "sequence": 0,
                "symbol": "GCB/USDT",
                "side": "BUY",
                "type": "MARKET",
                "volume": 25.0,
                "price": None,
                "reference_price": None,
            },
            created_at=0,
        )
    )

    await ctx.pipeline.recover_pending()

    record = await db.get_trade_by_key("bot-1:0")
    assert record.outcome == "error"
    assert exchange.placed == []


async def test_rejection_is_not_retried(ctx, exchange):
    exchange.place_errors = [RejectedOrderError("insufficient balance", "insufficient_funds")]

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "failed"
    assert record.error == "insufficient balance"
    assert exchange.placed == []
    errors = await ctx.activity.get_logs(strategy_id="bot-1", level=LogLevel.ERROR)
    assert len(errors) == 1


async def test_transient_errors_retried_then_succeed(ctx, exchange):
    exchange.place_errors = [TransientExchangeError("429", "rate_limited")]

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "success"
    assert len(exchange.placed) == 1


async def test_gives_up_after_max_attempts(ctx, exchange):
    exchange.place_errors = [TransientExchangeError("502", "unavailable")] * 3

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "error"
    assert "3 attempts" in record.error
    assert exchange.placed == []


async def test_ambiguous_timeout_finds_landed_order(ctx, exchange):
    exchange.place_errors = [TransientExchangeError("timeout", "timeout", ambiguous=True)]
    exchange.land_despite_error = True

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "success"
    assert exchange.find_calls == 1
    # found by client order id, not submitted twice
    assert len(exchange.placed) == 1


async def test_ambiguous_timeout_with_failed_lookup_is_not_resubmitted(ctx, exchange, db):
    timeout = TransientExchangeError("timeout", "timeout", ambiguous=True)
    exchange.place_errors = [timeout]
    exchange.land_despite_error = True
    exchange.find_errors = [timeout] * 3

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "error"
    assert len(exchange.placed) == 1
    assert exchange.find_calls == 3
    assert [i.idempotency_key for i in await db.list_intents()] == ["bot-1:0"]

    # the exchange answers again on the next boot
    assert await ctx.pipeline.recover_pending() == 1

    settled = await db.get_trade_by_key("bot-1:0")
    assert settled.outcome == "success"
    assert settled.order_id == "ord-1"
    assert settled.error is None
    assert await db.list_intents() == []
    assert len(exchange.placed) == 1


async def test_unresolved_order_not_on_exchange_keeps_error(ctx, exchange, db):
    timeout = TransientExchangeError("timeout", "timeout", ambiguous=True)
    exchange.place_errors = [timeout]
    exchange.find_errors = [timeout] * 3

    await ctx.pipeline.execute(_request())
    await ctx.pipeline.recover_pending()

    record = await db.get_trade_by_key("bot-1:0")
    assert record.outcome == "error"
    assert await db.list_intents() == []
    assert exchange.placed == []


async def test_unexpected_submit_failure_is_recorded(ctx, exchange, db):
    exchange.place_errors = [KeyError("id")]

    with pytest.raises(KeyError):
        await ctx.pipeline.execute(_request())

    record = await db.get_trade_by_key("bot-1:0")
    assert record.outcome == "error"
    assert "KeyError" in record.error
    assert await db.list_intents() == []
    errors = await ctx.activity.get_logs(strategy_id="bot-1", level=LogLevel.ERROR)
    assert len(errors) == 1


async def test_unexpected_failure_after_order_landed_is_success(ctx, exchange):
    exchange.place_errors = [KeyError("id")]
    exchange.land_despite_error = True

    record = await ctx.pipeline.execute(_request())

    assert record.outcome == "success"
    assert record.order_id == "ord-1"
    assert len(exchange.placed) == 1


async def test_invalid_request_recorded_as_failed(ctx, exchange):
    record = await ctx.pipeline.execute(_request(type="LIMIT", price=None, volume=10.0))
    assert record.outcome == "failed"

    below_min = await ctx.pipeline.execute(_request(sequence=1, volume=0.5))
    assert below_min.outcome == "failed"
    assert "minimum" in below_min.error

    assert exchange.placed == []


async def test_missing_credentials_raise_without_record(ctx, exchange):
    with pytest.raises(ConfigurationError):
        await ctx.pipeline.execute(_request(user_id="user-2"))

    assert await ctx.db.get_trade_by_key("bot-1:0") is None


async def test_auth_failure_mid_submit_records_error(ctx, exchange):
    exchange.place_errors = [ConfigurationError("key revoked")]

    with pytest.raises(ConfigurationError):
        await ctx.pipeline.execute(_request())

    record = await ctx.db.get_trade_by_key("bot-1:0")
    assert record.outcome == "error"


async def test_persist_hook_replaces_default_write(ctx):
    seen = []

    async def persist(record):
        seen.append(record.idempotency_key)
        return await ctx.db.insert_trade_record(record)

    await ctx.pipeline.execute(_request(), persist=persist)

    assert seen == ["bot-1:0"]


async def test_cancel_treats_unknown_order_as_cancelled(ctx, exchange):
    await ctx.pipeline.execute(_request(type="LIMIT", side="SELL", volume=10.0, price=1.2))
    order_id = next(iter(exchange.open))

    assert await ctx.pipeline.cancel("user-1", order_id, "GCB/USDT") is True
    assert exchange.open == {}
    assert await ctx.pipeline.cancel("user-1", order_id, "GCB/USDT") is True


def test_client_order_id_is_stable():
    assert client_order_id_for("a:1") == client_order_id_for("a:1")
    assert client_order_id_for("a:1") != client_order_id_for("a:2")
    assert len(client_order_id_for("a:1")) == 32
