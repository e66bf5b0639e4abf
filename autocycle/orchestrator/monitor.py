"""System Monitor — status snapshots and knowledge growth history.

The growth history keeps the last N knowledge-base sizes with their sample
times and is persisted to knowledge_growth.json so it survives restarts.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from autocycle.knowledge.registry import KnowledgeRegistry
    from autocycle.shell.activity import ActivityLogger
    from autocycle.shell.backends import Backend
    from autocycle.shell.state import DurableStateStore

log = structlog.get_logger()

GROWTH_ARTIFACT = "knowledge_growth.json"


class SystemMonitor:
    def __init__(
        self,
        backend: Backend,
        state: DurableStateStore,
        knowledge: KnowledgeRegistry,
        activity: ActivityLogger | None = None,
        *,
        history: int = 100,
        storage_timeout: float = 10.0,
    ) -> None:
        self._backend = backend
        self._state = state
        self._knowledge = knowledge
        self._activity = activity
        self._timeout = storage_timeout
        self._samples: deque[tuple[datetime, int]] = deque(maxlen=history)
        self.started_at = datetime.now(timezone.utc)

    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def status(self, tasks: list[dict] | None = None) -> dict:
        """Point-in-time system status."""
        counters = self._state.counters
        uptime = int(self.uptime_seconds())
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": uptime,
            "uptime": f"{uptime // 3600}h {uptime % 3600 // 60}m",
            "cycles_completed": counters.cycles_completed,
            "last_cycle_at": counters.last_cycle_at.isoformat() if counters.last_cycle_at else None,
            "knowledge_entries": self._knowledge.size(),
            "total_value_generated": str(counters.total_value_generated),
            "actions_executed": counters.actions_executed,
            "state_dirty": self._state.dirty,
            "save_failures": self._state.consecutive_failures,
            "last_saved_at": self._state.last_saved_at.isoformat() if self._state.last_saved_at else None,
            "alerts": self._activity.alert_count if self._activity else 0,
            "tasks": tasks or [],
        }

    # --- Knowledge growth ---

    def record_growth(self, size: int, at: datetime | None = None) -> None:
        self._samples.append((at or datetime.now(timezone.utc), size))

    def growth(self) -> dict:
        samples = list(self._samples)
        if not samples:
            return {"samples": 0, "current": None, "growth": 0, "history": []}
        return {
            "samples": len(samples),
            "current": samples[-1][1],
            "growth": samples[-1][1] - samples[0][1],
            "since": samples[0][0].isoformat(),
            "history": [{"ts": ts.isoformat(), "size": size} for ts, size in samples],
        }

    async def load_growth(self) -> int:
        """Restore growth history. Missing or unreadable history starts empty."""
        try:
            data = await asyncio.wait_for(self._backend.read(GROWTH_ARTIFACT), timeout=self._timeout)
        except Exception as e:
            log.warning("monitor.growth_load_failed", error=str(e))
            return 0
        if data is None:
            return 0
        try:
            doc = json.loads(data.decode("utf-8"))
            samples = [(datetime.fromisoformat(s["ts"]), int(s["size"])) for s in doc["samples"]]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, ArithmeticError, RecursionError) as e:
            log.warning("monitor.growth_corrupt", error=repr(e))
            return 0
        self._samples.clear()
        self._samples.extend(samples)
        return len(self._samples)

    async def save_growth(self) -> bool:
        doc = {"samples": [{"ts": ts.isoformat(), "size": size} for ts, size in self._samples]}
        try:
            await asyncio.wait_for(
                self._backend.write(GROWTH_ARTIFACT, json.dumps(doc, indent=2).encode("utf-8")),
                timeout=self._timeout,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("monitor.growth_save_failed", error=str(e))
            return False
