"""autocycle — process entry point.

Wires all components and manages the process lifecycle.

Startup: load config -> logging -> lockfile -> backend -> strategies + research provider
         -> orchestrator -> status API (optional) -> run until SIGTERM/SIGINT
Shutdown: orchestrator drains and flushes -> stop API -> release lockfile

Exit status: 0 after a clean final flush, 1 if the final flush failed or
startup failed, 2 for invalid configuration.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import structlog
from aiohttp import web

from autocycle.api.server import create_app as create_api_app
from autocycle.knowledge.providers import load_knowledge_provider
from autocycle.orchestrator.orchestrator import Orchestrator
from autocycle.shell.backends import Backend, create_backend
from autocycle.shell.config import Config, load_config
from autocycle.strategy.loader import load_strategies
from autocycle.utils.logging import setup_logging

log = structlog.get_logger()

LOCK_NAME = "autocycle.pid"


class AlreadyRunningError(RuntimeError):
    """Another live process holds the data directory's lockfile."""


def _read_pid(lock_file: Path) -> int | None:
    try:
        return int(lock_file.read_text().strip())
    except FileNotFoundError:
        return None
    except (ValueError, OSError):
        log.warning("lockfile.corrupt", path=str(lock_file))
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True
    return True


def _acquire_lock(lock_file: Path) -> None:
    """Claim the data directory for this process by writing our pid."""
    me = os.getpid()
    holder = _read_pid(lock_file)
    # a recycled pid (pid 1 after a container restart) is our own stale lock
    if holder is not None and holder != me:
        if _pid_alive(holder):
            raise AlreadyRunningError(f"{lock_file} is held by running pid {holder}")
        log.warning("lockfile.stale", old_pid=holder, path=str(lock_file))
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text(str(me))


def _release_lock(lock_file: Path) -> None:
    if _read_pid(lock_file) != os.getpid():
        return
    try:
        lock_file.unlink()
    except OSError as e:
        log.warning("lockfile.release_failed", path=str(lock_file), error=str(e))


async def _start_api(orchestrator: Orchestrator, config: Config) -> web.AppRunner:
    runner = web.AppRunner(create_api_app(orchestrator))
    await runner.setup()
    site = web.TCPSite(runner, config.api.host, config.api.port)
    await site.start()
    log.info("api.started", host=config.api.host, port=config.api.port)
    return runner


async def main() -> int:
    try:
        config = load_config()
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    setup_logging(config.log_level)

    lock_file = Path(config.data_dir) / LOCK_NAME
    try:
        _acquire_lock(lock_file)
    except AlreadyRunningError as e:
        print(f"ERROR: {e}. Exiting.", file=sys.stderr)
        return 1

    backend: Backend | None = None
    api_runner: web.AppRunner | None = None
    try:
        backend = await create_backend(config.persistence.backend, config.data_dir)
        orchestrator = Orchestrator(
            config, backend,
            strategies=load_strategies(config),
            knowledge_provider=load_knowledge_provider(config),
        )

        # SIGTERM and SIGINT both request a graceful stop
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, orchestrator.request_stop)

        if config.api.enabled:
            api_runner = await _start_api(orchestrator, config)

        return await orchestrator.run()
    except Exception as e:
        log.critical("autocycle.startup_failed", error=str(e), error_type=type(e).__name__)
        if backend is not None:
            await backend.close()
        return 1
    finally:
        if api_runner is not None:
            await api_runner.cleanup()
        _release_lock(lock_file)


def run() -> None:
    """Console script `autocycle`."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
