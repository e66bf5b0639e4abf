"""Monitoring API app factory.

Every route except the liveness probe requires `Authorization: Bearer <key>`.
With no key configured the API refuses all authenticated routes rather than
serving them open.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from aiohttp import web

from autocycle import __version__
from autocycle.api import api_key_key, ctx_key
from autocycle.api.routes import setup_routes

if TYPE_CHECKING:
    from autocycle.orchestrator.orchestrator import Orchestrator

log = structlog.get_logger()

PUBLIC_PATHS = frozenset({"/v1/health"})


def error_response(status: int, code: str, message: str) -> web.Response:
    body = {
        "error": {"code": code, "message": message},
        "meta": {"timestamp": datetime.now(timezone.utc).isoformat(), "version": __version__},
    }
    return web.json_response(body, status=status)


def _bearer_token(request: web.Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in PUBLIC_PATHS:
        return await handler(request)

    expected = request.app[api_key_key]
    if not expected:
        return error_response(401, "unauthorized", "API key not configured")
    token = _bearer_token(request)
    if token is None or not hmac.compare_digest(token.encode(), expected.encode()):
        log.info("api.auth_rejected", path=request.path, remote=request.remote)
        return error_response(401, "unauthorized", "Invalid or missing API key")
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Unhandled handler errors become a 500 without internals in the body."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.exception("api.unhandled_error", path=request.path, error_type=type(e).__name__)
        return error_response(500, "internal_error", "An unexpected error occurred")


def create_app(orchestrator: Orchestrator, api_key: str | None = None) -> web.Application:
    """Build the app; `api_key` overrides the configured key (tests)."""
    if api_key is None:
        api_key = orchestrator.config.api.api_key or ""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[api_key_key] = api_key
    app[ctx_key] = {"orchestrator": orchestrator, "started_at": datetime.now(timezone.utc)}
    setup_routes(app)
    return app
