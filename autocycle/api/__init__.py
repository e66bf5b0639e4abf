"""Status API — read-only HTTP view of the running orchestrator."""

from aiohttp import web

ctx_key: web.AppKey[dict] = web.AppKey("ctx", dict)
api_key_key: web.AppKey[str] = web.AppKey("api_key", str)
