# mmbot/api/server.py
"""REST surface consumed by the dashboard.

Every response uses the envelope ``{"code": "0", "msg": "success", "data": ...}``;
errors carry a non-zero code and ``data: null``.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from mmbot.api.schemas import (
    ConditionCreate,
    ConditionUpdate,
    CredentialsSave,
    MarketMakerCreate,
    OrderCancel,
    OrderPlace,
    ScheduledCreate,
    StabilizerCreate,
)
from mmbot.api.serializers import iso, market_data, mask_key, to_json
from mmbot.config import ApiConfig
from mmbot.engine import Engine
from mmbot.errors import (
    BotNotFoundError,
    BotStateError,
    ConfigurationError,
    EngineCapacityError,
    ExchangeError,
)
from mmbot.notifier.formatter import format_uptime
from mmbot.storage.models import LogLevel, StrategyType

logger = logging.getLogger(__name__)

ENGINE = web.AppKey("engine", Engine)
TOKENS = web.AppKey("tokens", dict)

PUBLIC_PREFIXES = ("/api/health", "/api/market/")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def ok(data: Any = None, msg: str = "success") -> web.Response:
    return web.json_response({"code": "0", "msg": msg, "data": data})


def fail(status: int, msg: str) -> web.Response:
    return web.json_response({"code": str(status), "msg": msg, "data": None}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BotNotFoundError as e:
        return fail(404, str(e))
    except BotStateError as e:
        return fail(409, str(e))
    except EngineCapacityError as e:
        return fail(429, str(e))
    except ConfigurationError as e:
        return fail(400, str(e))
    except ExchangeError as e:
        logger.warning(f"{request.method} {request.path} exchange error: {e}")
        return fail(502, e.message)
    except ValueError as e:
        # includes pydantic validation errors
        return fail(400, str(e))
    except Exception:
        logger.exception(f"{request.method} {request.path} failed")
        return fail(500, "Internal server error")


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.path.startswith(PUBLIC_PREFIXES):
        return await handler(request)
    header = request.headers.get("Authorization", "")
    token = header[7:] if header.startswith("Bearer ") else ""
    user_id = request.app[TOKENS].get(token) if token else None
    if user_id is None:
        return fail(401, "Unauthorized")
    request["user_id"] = user_id
    return await handler(request)


def _engine(request: web.Request) -> Engine:
    return request.app[ENGINE]


def _limit(request: web.Request, default: int = 100) -> int:
    try:
        limit = int(request.query.get("limit", default))
    except ValueError:
        raise ValueError("limit must be an integer")
    return max(1, min(limit, 1000))


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise ValueError("Request body must be JSON")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _bot_json(engine: Engine, bot: Any) -> dict[str, Any]:
    running = engine.is_running(bot.id)
    return to_json(bot, isRunning=running, isActive=bot.status == "running")


def _log_json(entry: Any) -> dict[str, Any]:
    return {
        "_id": entry.id,
        "botId": entry.strategy_id,
        "strategyType": entry.strategy_type,
        "timestamp": iso(entry.timestamp),
        "level": entry.level.value,
        "message": entry.message,
        "data": entry.data,
    }


def _trade_json(record: Any) -> dict[str, Any]:
    return to_json(record, status=record.outcome)


# ---- health / market ----


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "database": "connected"})


async def market_depth(request: web.Request) -> web.Response:
    symbol = request.query.get("symbol") or None
    depth = await _engine(request).depth(symbol, _limit(request, 20))
    return ok(
        {
            "symbol": depth.symbol,
            "bids": [[str(p), str(q)] for p, q in depth.bids],
            "asks": [[str(p), str(q)] for p, q in depth.asks],
        }
    )


# ---- conditions ----


async def create_condition(request: web.Request) -> web.Response:
    body = ConditionCreate.model_validate(await _body(request))
    condition = await _engine(request).create_condition(request["user_id"], **body.model_dump())
    return ok(to_json(condition), "Condition created")


async def list_conditions(request: web.Request) -> web.Response:
    conditions = await _engine(request).list_conditions(request["user_id"])
    return ok([to_json(c) for c in conditions])


async def update_condition(request: web.Request) -> web.Response:
    body = ConditionUpdate.model_validate(await _body(request))
    condition = await _engine(request).update_condition(
        request["user_id"], request.match_info["id"], body.model_dump(exclude_unset=True)
    )
    return ok(to_json(condition), "Condition updated")


async def delete_condition(request: web.Request) -> web.Response:
    await _engine(request).delete_condition(request["user_id"], request.match_info["id"])
    return ok(None, "Condition deleted")


# ---- global evaluator ----


async def _status_json(engine: Engine) -> dict[str, Any]:
    status = await engine.status()
    snapshots = {}
    for symbol in {
        engine.config.exchange.trading_symbol,
        engine.config.exchange.btc_symbol,
        engine.config.exchange.eth_symbol,
    }:
        snapshot = engine.ctx.cache.latest(symbol)
        if snapshot is not None:
            snapshots[symbol] = market_data(snapshot)
    return {
        "isRunning": status["running"],
        "marketData": snapshots,
        "activeConditionsCount": status["active_conditions"],
        "workers": status["workers"],
        "uptime": format_uptime(status["uptime"]),
    }


async def start_bot(request: web.Request) -> web.Response:
    engine = _engine(request)
    await engine.start_conditions()
    return ok(await _status_json(engine), "Bot started")


async def stop_bot(request: web.Request) -> web.Response:
    engine = _engine(request)
    await engine.stop_conditions()
    return ok(await _status_json(engine), "Bot stopped")


async def bot_status(request: web.Request) -> web.Response:
    return ok(await _status_json(_engine(request)))


async def bot_logs(request: web.Request) -> web.Response:
    level = request.query.get("level")
    logs = await _engine(request).logs(
        request["user_id"],
        strategy_type=StrategyType.CONDITION,
        level=LogLevel(level) if level else None,
        limit=_limit(request),
    )
    return ok([_log_json(e) for e in logs])


async def admin_logs(request: web.Request) -> web.Response:
    engine = _engine(request)
    if request["user_id"] not in engine.config.api.admins:
        return fail(403, "Admin access required")
    level = request.query.get("level")
    logs = await engine.admin_logs(level=LogLevel(level) if level else None, limit=_limit(request))
    return ok([_log_json(e) for e in logs])


async def bot_trades(request: web.Request) -> web.Response:
    trades = await _engine(request).trades(
        request["user_id"], strategy_type=StrategyType.CONDITION, limit=_limit(request, 50)
    )
    return ok([_trade_json(t) for t in trades])


async def bot_market_data(request: web.Request) -> web.Response:
    engine = _engine(request)
    symbol = engine.config.exchange.trading_symbol
    snapshot = await engine.market_data(symbol)
    data = {symbol: market_data(snapshot)} if snapshot else {}
    for other in (engine.config.exchange.btc_symbol, engine.config.exchange.eth_symbol):
        latest = engine.ctx.cache.latest(other)
        if latest is not None:
            data[other] = market_data(latest)
    return ok(data)


# ---- per-user switch ----


def _settings_json(settings: Any) -> dict[str, Any]:
    return {
        "botEnabled": settings.bot_enabled,
        "botEnabledAt": iso(settings.bot_enabled_at),
        "botDisabledAt": iso(settings.bot_disabled_at),
    }


async def enable_user(request: web.Request) -> web.Response:
    settings = await _engine(request).set_user_enabled(request["user_id"], True)
    return ok(_settings_json(settings), "Bot enabled")


async def disable_user(request: web.Request) -> web.Response:
    settings = await _engine(request).set_user_enabled(request["user_id"], False)
    return ok(_settings_json(settings), "Bot disabled")


async def user_status(request: web.Request) -> web.Response:
    settings = await _engine(request).user_status(request["user_id"])
    return ok(_settings_json(settings))


# ---- strategy bots ----


def bot_routes(prefix: str, strategy_type: StrategyType, create: Handler) -> list[web.RouteDef]:
    """Lifecycle routes shared by stabilizer, scheduled and market maker bots"""

    async def list_bots(request: web.Request) -> web.Response:
        engine = _engine(request)
        bots = await engine.list_bots(strategy_type, request["user_id"])
        return ok([_bot_json(engine, b) for b in bots])

    async def start(request: web.Request) -> web.Response:
        engine = _engine(request)
        bot = await engine.start_bot(strategy_type, request["user_id"], request.match_info["id"])
        return ok(_bot_json(engine, bot), "Bot started")

    async def stop(request: web.Request) -> web.Response:
        engine = _engine(request)
        bot = await engine.stop_bot(strategy_type, request["user_id"], request.match_info["id"])
        return ok(_bot_json(engine, bot), "Bot stopped")

    async def delete(request: web.Request) -> web.Response:
        await _engine(request).delete_bot(strategy_type, request["user_id"], request.match_info["id"])
        return ok(None, "Bot deleted")

    async def logs(request: web.Request) -> web.Response:
        engine = _engine(request)
        bot_id = request.match_info.get("id")
        if bot_id:
            await engine.get_bot(strategy_type, request["user_id"], bot_id)
        entries = await engine.logs(
            request["user_id"], strategy_id=bot_id, strategy_type=strategy_type, limit=_limit(request)
        )
        return ok([_log_json(e) for e in entries])

    async def status(request: web.Request) -> web.Response:
        engine = _engine(request)
        bots = await engine.list_bots(strategy_type, request["user_id"])
        running = [b for b in bots if engine.is_running(b.id)]
        return ok(
            {
                "isRunning": bool(running),
                "runningBots": len(running),
                "totalBots": len(bots),
                "config": _kind_config(engine, strategy_type),
                "uptime": format_uptime(engine.uptime()),
            }
        )

    return [
        web.post(f"{prefix}/create", create),
        web.get(f"{prefix}/list", list_bots),
        web.get(f"{prefix}/logs", logs),
        web.get(f"{prefix}/status", status),
        web.post(f"{prefix}/{{id}}/start", start),
        web.post(f"{prefix}/{{id}}/stop", stop),
        web.get(f"{prefix}/{{id}}/logs", logs),
        web.delete(f"{prefix}/{{id}}", delete),
    ]


def _kind_config(engine: Engine, strategy_type: StrategyType) -> dict[str, Any]:
    section = {
        StrategyType.STABILIZER: engine.config.stabilizer,
        StrategyType.SCHEDULED: engine.config.scheduled,
        StrategyType.MARKET_MAKER: engine.config.market_maker,
    }[strategy_type]
    return section.model_dump()


async def create_stabilizer(request: web.Request) -> web.Response:
    engine = _engine(request)
    body = StabilizerCreate.model_validate(await _body(request))
    bot = await engine.create_stabilizer(request["user_id"], **body.model_dump())
    return ok(_bot_json(engine, bot), "Stabilizer bot created")


async def create_scheduled(request: web.Request) -> web.Response:
    engine = _engine(request)
    body = ScheduledCreate.model_validate(await _body(request))
    bot = await engine.create_scheduled(request["user_id"], **body.model_dump())
    return ok(_bot_json(engine, bot), "Scheduled bot created")


async def scheduled_trades(request: web.Request) -> web.Response:
    trades = await _engine(request).scheduled_trades(
        request["user_id"], request.match_info["id"], _limit(request)
    )
    return ok([to_json(t) for t in trades])


async def create_market_maker(request: web.Request) -> web.Response:
    engine = _engine(request)
    body = MarketMakerCreate.model_validate(await _body(request))
    params = body.model_dump()
    bot = await engine.create_market_maker(request["user_id"], params.pop("name"), **params)
    return ok(_bot_json(engine, bot), "Market maker bot created")


# ---- credentials ----


async def get_credentials(request: web.Request) -> web.Response:
    creds = await _engine(request).get_credentials(request["user_id"])
    return ok(
        {
            "hasCredentials": creds is not None,
            "apiKey": mask_key(creds.api_key) if creds else None,
            "valid": creds is not None,
            "updatedAt": iso(creds.updated_at) if creds else None,
        }
    )


async def save_credentials(request: web.Request) -> web.Response:
    body = CredentialsSave.model_validate(await _body(request))
    creds = await _engine(request).save_credentials(request["user_id"], body.api_key, body.api_secret)
    return ok(
        {
            "hasCredentials": True,
            "apiKey": mask_key(creds.api_key),
            "valid": True,
            "updatedAt": iso(creds.updated_at),
        },
        "API credentials saved",
    )


async def delete_credentials(request: web.Request) -> web.Response:
    await _engine(request).delete_credentials(request["user_id"])
    return ok(
        {"hasCredentials": False, "apiKey": None, "valid": False, "updatedAt": None},
        "API credentials removed",
    )


# ---- manual trading ----


async def place_order(request: web.Request) -> web.Response:
    body = OrderPlace.model_validate(await _body(request))
    record = await _engine(request).place_order(request["user_id"], **body.model_dump())
    if record.outcome == "failed":
        return fail(400, record.error or "Order rejected")
    if record.outcome == "error":
        return fail(502, record.error or "Order failed")
    return ok(_trade_json(record), "Order placed")


async def cancel_order(request: web.Request) -> web.Response:
    body = OrderCancel.model_validate(await _body(request))
    engine = _engine(request)
    if not await engine.cancel_order(request["user_id"], body.order_id, body.symbol):
        return fail(502, f"Order {body.order_id} could not be cancelled")
    return ok({"orderId": body.order_id}, "Order cancelled")


async def open_orders(request: web.Request) -> web.Response:
    orders = await _engine(request).open_orders(request["user_id"], request.query.get("symbol") or None)
    return ok([to_json(o) for o in orders])


async def balance(request: web.Request) -> web.Response:
    return ok(await _engine(request).balance(request["user_id"]))


def create_app(engine: Engine, tokens: dict[str, str]) -> web.Application:
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[ENGINE] = engine
    app[TOKENS] = dict(tokens)
    app.add_routes(
        [
            web.get("/api/health", health),
            web.get("/api/market/depth", market_depth),
            web.post("/api/bot/conditions", create_condition),
            web.get("/api/bot/conditions", list_conditions),
            web.put("/api/bot/conditions/{id}", update_condition),
            web.delete("/api/bot/conditions/{id}", delete_condition),
            web.post("/api/bot/start", start_bot),
            web.post("/api/bot/stop", stop_bot),
            web.get("/api/bot/status", bot_status),
            web.get("/api/bot/logs", bot_logs),
            web.get("/api/bot/admin-logs", admin_logs),
            web.get("/api/bot/trades", bot_trades),
            web.get("/api/bot/market-data", bot_market_data),
            web.post("/api/bot/user/enable", enable_user),
            web.post("/api/bot/user/disable", disable_user),
            web.get("/api/bot/user/status", user_status),
            web.get("/api/bot/scheduled/{id}/trades", scheduled_trades),
            web.get("/api/users/api-credentials", get_credentials),
            web.post("/api/users/api-credentials", save_credentials),
            web.delete("/api/users/api-credentials", delete_credentials),
            web.get("/api/users/balance", balance),
            web.post("/api/users/balance", balance),
            web.post("/api/trade/place-order", place_order),
            web.post("/api/trade/cancel-order", cancel_order),
            web.get("/api/trade/open-orders", open_orders),
        ]
    )
    app.add_routes(bot_routes("/api/bot/stabilizer", StrategyType.STABILIZER, create_stabilizer))
    app.add_routes(bot_routes("/api/bot/scheduled", StrategyType.SCHEDULED, create_scheduled))
    app.add_routes(
        bot_routes("/api/bot/market-maker", StrategyType.MARKET_MAKER, create_market_maker)
    )
    return app


class ApiServer:
    def __init__(self, engine: Engine, config: ApiConfig):
        self.config = config
        self.app = create_app(engine, config.tokens)
        self.runner: web.AppRunner | None = None

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"API listening on {self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
