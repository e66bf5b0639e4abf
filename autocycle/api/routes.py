"""REST API endpoint handlers — read-only views of state, knowledge and tasks."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web

from autocycle import __version__
from autocycle.api import ctx_key

log = structlog.get_logger()


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _envelope(data) -> dict:
    return {
        "data": data,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        },
    }


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


async def system_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    data = orch.monitor.status(orch.scheduler.status())
    data["status"] = "stopping" if orch.stopping else "running"
    data["version"] = __version__
    data["knowledge_growth"] = orch.monitor.growth()["growth"]
    return web.json_response(_envelope(data))


async def state_handler(request: web.Request) -> web.Response:
    state = request.app[ctx_key]["orchestrator"].state
    counters = state.counters
    data = {
        "cycles_completed": counters.cycles_completed,
        "last_cycle_at": _ts(counters.last_cycle_at),
        "total_value_generated": str(counters.total_value_generated),
        "actions_executed": counters.actions_executed,
        "dirty": state.dirty,
        "last_saved_at": _ts(state.last_saved_at),
        "consecutive_save_failures": state.consecutive_failures,
        "awaiting_read_back": state.unread,
        "last_error": state.last_error,
    }
    return web.json_response(_envelope(data))


async def actions_handler(request: web.Request) -> web.Response:
    state = request.app[ctx_key]["orchestrator"].state
    limit = max(1, min(_safe_int(request.query.get("limit", "50"), 50), 500))
    actions = state.actions[-limit:]
    data = [
        {
            "strategy_id": a.strategy_id,
            "value": str(a.value),
            "timestamp": _ts(a.timestamp),
            "succeeded": a.succeeded,
        }
        for a in reversed(actions)
    ]
    return web.json_response(_envelope(data))


async def strategies_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    usage = orch.state.strategy_usage
    data = []
    for priority, strategy in enumerate(orch.strategies, start=1):
        u = usage.get(strategy.strategy_id)
        data.append({
            "strategy_id": strategy.strategy_id,
            "priority": priority,
            "attempts": u.attempts if u else 0,
            "successes": u.successes if u else 0,
            "no_opportunity": u.no_opportunity if u else 0,
            "failures": u.failures if u else 0,
            "total_value": str(u.total_value) if u else "0",
            "last_used_at": _ts(u.last_used_at) if u else None,
        })
    return web.json_response(_envelope(data))


async def knowledge_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    snapshot = orch.knowledge.snapshot()
    data = {
        "size": len(snapshot),
        "entries": [
            {"key": key, "produced_at": _ts(entry.produced_at)}
            for key, entry in sorted(snapshot.items())
        ],
        "growth": orch.monitor.growth(),
    }
    return web.json_response(_envelope(data))


async def health_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    status = "stopping" if orch.stopping else "ok"
    return web.json_response(_envelope({"status": status, "uptime_seconds": int(orch.monitor.uptime_seconds())}))


async def tasks_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    return web.json_response(_envelope(orch.scheduler.status()))


async def activity_handler(request: web.Request) -> web.Response:
    orch = request.app[ctx_key]["orchestrator"]
    limit = max(1, min(_safe_int(request.query.get("limit", "50"), 50), 500))
    category = request.query.get("category")
    return web.json_response(_envelope(orch.activity.recent(limit, category)))


def setup_routes(app: web.Application) -> None:
    """Register all REST routes."""
    app.router.add_get("/v1/health", health_handler)
    app.router.add_get("/v1/system", system_handler)
    app.router.add_get("/v1/state", state_handler)
    app.router.add_get("/v1/actions", actions_handler)
    app.router.add_get("/v1/strategies", strategies_handler)
    app.router.add_get("/v1/knowledge", knowledge_handler)
    app.router.add_get("/v1/tasks", tasks_handler)
    app.router.add_get("/v1/activity", activity_handler)
