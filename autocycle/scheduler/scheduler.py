"""Cycle Scheduler — independent interval tasks on one APScheduler instance.

Each registered task becomes one interval job. Ticks of different tasks run
as separate asyncio tasks and may overlap; a task never overlaps itself (a
tick arriving while the previous one is still running is dropped and
counted). A handler failure or timeout is contained here: it is logged and
counted, last_run_at still advances, and the next tick fires normally.

Shutdown pauses ticking first, drains in-flight handlers within a grace
period, then shuts the APScheduler instance down.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

log = structlog.get_logger()

Handler = Callable[[], Awaitable[Any]]

_CANCEL_WAIT_SECONDS = 5.0


class DuplicateTaskError(ValueError):
    """A task id was registered twice."""


class TaskState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ScheduleTask:
    id: str
    interval: float
    handler: Handler
    timeout: Optional[float] = None
    first_run_delay: Optional[float] = None
    last_run_at: Optional[datetime] = None
    state: TaskState = TaskState.IDLE
    runs: int = 0
    failures: int = 0
    dropped_ticks: int = 0
    last_error: Optional[str] = None
    last_duration: Optional[float] = None


class CycleScheduler:
    def __init__(self, timezone: str = "UTC") -> None:
        self._timezone = timezone
        self._tasks: dict[str, ScheduleTask] = {}
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: dict[asyncio.Task, str] = {}
        self._stopping = False

    @property
    def tasks(self) -> dict[str, ScheduleTask]:
        return dict(self._tasks)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running and not self._stopping

    def register(
        self,
        task_id: str,
        interval: float,
        handler: Handler,
        *,
        timeout: float | None = None,
        first_run_delay: float | None = None,
    ) -> ScheduleTask:
        """Add a task. Only allowed before start()."""
        if self._scheduler is not None:
            raise RuntimeError(f"Cannot register '{task_id}' after the scheduler has started")
        if task_id in self._tasks:
            raise DuplicateTaskError(f"Task id already registered: '{task_id}'")
        if interval <= 0:
            raise ValueError(f"Task '{task_id}' interval must be > 0, got {interval}")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"Task '{task_id}' timeout must be > 0, got {timeout}")

        task = ScheduleTask(id=task_id, interval=interval, handler=handler,
                            timeout=timeout, first_run_delay=first_run_delay)
        self._tasks[task_id] = task
        log.info("scheduler.task_registered", task=task_id, interval=interval)
        return task

    def start(self) -> None:
        """Arm one interval job per task. Must be called from inside the event loop."""
        if self._scheduler is not None:
            raise RuntimeError("Scheduler already started")

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)

        now = datetime.now(timezone.utc)
        for task in self._tasks.values():
            delay = task.interval if task.first_run_delay is None else task.first_run_delay
            self._scheduler.add_job(
                self.fire, IntervalTrigger(seconds=task.interval, timezone=self._timezone),
                args=[task.id], id=task.id, name=task.id,
                next_run_time=now + timedelta(seconds=delay),
                max_instances=1, coalesce=True, misfire_grace_time=None,
            )
        self._scheduler.start()
        log.info("scheduler.started", tasks=list(self._tasks))

    def _on_max_instances(self, event: JobSubmissionEvent) -> None:
        task = self._tasks.get(event.job_id)
        if task is not None:
            task.dropped_ticks += 1
        log.warning("scheduler.tick_dropped", task=event.job_id, reason="previous tick still running")

    async def fire(self, task_id: str) -> bool:
        """Run one tick of a task.

        Returns True when the handler completed without error, False when the
        tick was dropped or the handler failed. Never raises for handler errors.
        """
        task = self._tasks[task_id]
        if self._stopping:
            log.info("scheduler.tick_skipped", task=task_id, reason="stopping")
            return False
        if task.state is TaskState.RUNNING:
            task.dropped_ticks += 1
            log.warning("scheduler.tick_dropped", task=task_id, reason="previous tick still running")
            return False

        task.state = TaskState.RUNNING
        current = asyncio.current_task()
        if current is not None:
            self._inflight[current] = task_id
        loop = asyncio.get_running_loop()
        started = loop.time()
        ok = False
        try:
            if task.timeout is not None:
                await asyncio.wait_for(task.handler(), timeout=task.timeout)
            else:
                await task.handler()
            ok = True
            task.last_error = None
        except asyncio.TimeoutError:
            task.failures += 1
            task.last_error = f"timed out after {task.timeout}s"
            log.error("scheduler.task_timeout", task=task_id, timeout=task.timeout)
        except asyncio.CancelledError:
            log.warning("scheduler.task_cancelled", task=task_id)
            raise
        except Exception as e:
            task.failures += 1
            task.last_error = str(e) or type(e).__name__
            log.error("scheduler.task_failed", task=task_id, error=task.last_error,
                      error_type=type(e).__name__)
        finally:
            task.runs += 1
            task.last_run_at = datetime.now(timezone.utc)
            task.last_duration = round(loop.time() - started, 3)
            task.state = TaskState.IDLE
            if current is not None:
                self._inflight.pop(current, None)

        if ok:
            log.debug("scheduler.task_completed", task=task_id, duration=task.last_duration)
        return ok

    async def stop(self, grace: float = 30.0) -> bool:
        """Stop admitting ticks, drain in-flight handlers, shut down.

        Returns True if every in-flight handler finished within the grace period.
        """
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.pause()

        me = asyncio.current_task()
        pending = {t: tid for t, tid in self._inflight.items() if t is not me and not t.done()}
        clean = True
        if pending:
            log.info("scheduler.draining", tasks=sorted(pending.values()), grace=grace)
            _, still_running = await asyncio.wait(set(pending), timeout=grace)
            if still_running:
                clean = False
                log.warning("scheduler.drain_timeout", grace=grace,
                            tasks=sorted(pending[t] for t in still_running))
                for t in still_running:
                    t.cancel()
                await asyncio.wait(still_running, timeout=_CANCEL_WAIT_SECONDS)

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        log.info("scheduler.stopped", clean=clean)
        return clean

    async def run(self, stop_event: asyncio.Event, grace: float = 30.0) -> bool:
        """start(), block until stop_event is set, then stop()."""
        self.start()
        await stop_event.wait()
        return await self.stop(grace)

    def status(self) -> list[dict]:
        result = []
        for task in self._tasks.values():
            next_run = None
            if self._scheduler is not None and not self._stopping:
                job = self._scheduler.get_job(task.id)
                if job is not None and job.next_run_time is not None:
                    next_run = job.next_run_time.isoformat()
            result.append({
                "id": task.id,
                "interval_seconds": task.interval,
                "state": task.state.value,
                "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
                "next_run_at": next_run,
                "runs": task.runs,
                "failures": task.failures,
                "dropped_ticks": task.dropped_ticks,
                "last_error": task.last_error,
                "last_duration_seconds": task.last_duration,
            })
        return result
