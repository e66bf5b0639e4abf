"""structlog configuration for the daemon.

Console rendering by default; AUTOCYCLE_JSON_LOGS=1 switches to one JSON
object per line for log shippers. Every event carries the process name so
mixed logs from several instances stay attributable.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

# stdlib loggers that are too chatty at INFO
NOISY_LOGGERS = ("apscheduler", "aiohttp.access", "aiosqlite")

_TRUTHY = {"1", "true", "yes", "on"}


def json_logs_enabled() -> bool:
    return os.environ.get("AUTOCYCLE_JSON_LOGS", "").strip().lower() in _TRUTHY


def _processors(as_json: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if as_json:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer()]
    return chain


def setup_logging(log_level: str = "INFO", *, as_json: bool | None = None) -> None:
    """Route structlog and the stdlib root logger to stderr at `log_level`."""
    if as_json is None:
        as_json = json_logs_enabled()
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=_processors(as_json),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(process="autocycle", pid=os.getpid())

    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
