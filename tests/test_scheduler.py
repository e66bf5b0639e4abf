"""Cycle scheduler: registration rules, per-task containment, overlap and drain."""

import asyncio

import pytest
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent

from autocycle.scheduler.scheduler import CycleScheduler, DuplicateTaskError, TaskState


async def _noop():
    pass


def test_duplicate_task_id_rejected():
    scheduler = CycleScheduler()
    scheduler.register("a", 10, _noop)
    with pytest.raises(DuplicateTaskError):
        scheduler.register("a", 20, _noop)


@pytest.mark.parametrize("interval", [0, -5])
def test_non_positive_interval_rejected(interval):
    with pytest.raises(ValueError):
        CycleScheduler().register("a", interval, _noop)


@pytest.mark.asyncio
async def test_register_after_start_rejected():
    scheduler = CycleScheduler()
    scheduler.register("a", 60, _noop)
    scheduler.start()
    try:
        with pytest.raises(RuntimeError):
            scheduler.register("b", 60, _noop)
    finally:
        await scheduler.stop(grace=1)


@pytest.mark.asyncio
async def test_failing_handler_is_contained_and_runs_again():
    calls = 0

    async def failing():
        nonlocal calls
        calls += 1
        raise RuntimeError("handler exploded")

    scheduler = CycleScheduler()
    task = scheduler.register("bad", 60, failing)

    assert await scheduler.fire("bad") is False
    first_run = task.last_run_at
    assert first_run is not None
    assert task.failures == 1
    assert task.last_error == "handler exploded"
    assert task.state is TaskState.IDLE

    assert await scheduler.fire("bad") is False
    assert calls == 2
    assert task.last_run_at >= first_run


@pytest.mark.asyncio
async def test_handler_timeout_is_a_failure():
    async def slow():
        await asyncio.sleep(5)

    scheduler = CycleScheduler()
    task = scheduler.register("slow", 60, slow, timeout=0.05)
    assert await scheduler.fire("slow") is False
    assert task.failures == 1
    assert "timed out" in task.last_error
    assert task.last_run_at is not None


@pytest.mark.asyncio
async def test_overlapping_tick_of_same_task_is_dropped():
    release = asyncio.Event()
    started = 0

    async def blocking():
        nonlocal started
        started += 1
        await release.wait()

    scheduler = CycleScheduler()
    task = scheduler.register("blocking", 60, blocking)

    first = asyncio.create_task(scheduler.fire("blocking"))
    await asyncio.sleep(0.01)
    assert task.state is TaskState.RUNNING
    assert await scheduler.fire("blocking") is False
    assert task.dropped_ticks == 1

    release.set()
    assert await first is True
    assert started == 1
    assert task.runs == 1


@pytest.mark.asyncio
async def test_max_instances_event_counts_as_dropped_tick():
    scheduler = CycleScheduler()
    task = scheduler.register("a", 60, _noop)
    scheduler._on_max_instances(JobSubmissionEvent(EVENT_JOB_MAX_INSTANCES, "a", "default", []))
    assert task.dropped_ticks == 1


@pytest.mark.asyncio
async def test_slow_task_does_not_delay_other_tasks():
    fast_runs = 0
    slow_started = asyncio.Event()

    async def fast():
        nonlocal fast_runs
        fast_runs += 1

    async def slow():
        slow_started.set()
        await asyncio.sleep(10)

    scheduler = CycleScheduler()
    scheduler.register("slow", 60, slow, first_run_delay=0)
    scheduler.register("fast", 0.05, fast, first_run_delay=0)
    scheduler.start()
    try:
        await asyncio.wait_for(slow_started.wait(), timeout=2)
        await asyncio.sleep(0.4)
        assert fast_runs >= 3
        assert scheduler.tasks["slow"].state is TaskState.RUNNING
    finally:
        await scheduler.stop(grace=0.1)


@pytest.mark.asyncio
async def test_failing_task_fires_again_on_schedule():
    async def failing():
        raise ConnectionError("unreachable")

    scheduler = CycleScheduler()
    task = scheduler.register("flaky", 0.05, failing, first_run_delay=0)
    scheduler.start()
    try:
        await asyncio.sleep(0.4)
    finally:
        await scheduler.stop(grace=1)
    assert task.runs >= 2
    assert task.failures == task.runs


@pytest.mark.asyncio
async def test_stop_drains_in_flight_handlers():
    finished = asyncio.Event()

    async def short():
        await asyncio.sleep(0.1)
        finished.set()

    scheduler = CycleScheduler()
    scheduler.register("short", 60, short)
    scheduler.start()
    inflight = asyncio.create_task(scheduler.fire("short"))
    await asyncio.sleep(0.01)

    assert await scheduler.stop(grace=2) is True
    assert finished.is_set()
    assert await inflight is True


@pytest.mark.asyncio
async def test_stop_cancels_stragglers_after_grace():
    async def stuck():
        await asyncio.sleep(30)

    scheduler = CycleScheduler()
    scheduler.register("stuck", 60, stuck)
    scheduler.start()
    inflight = asyncio.create_task(scheduler.fire("stuck"))
    await asyncio.sleep(0.01)

    assert await scheduler.stop(grace=0.1) is False
    assert inflight.cancelled()
    assert scheduler.tasks["stuck"].state is TaskState.IDLE


@pytest.mark.asyncio
async def test_no_ticks_admitted_after_stop():
    calls = 0

    async def count():
        nonlocal calls
        calls += 1

    scheduler = CycleScheduler()
    scheduler.register("count", 60, count)
    scheduler.start()
    await scheduler.stop(grace=1)
    assert await scheduler.fire("count") is False
    assert calls == 0


@pytest.mark.asyncio
async def test_run_until_stop_event():
    stop = asyncio.Event()
    scheduler = CycleScheduler()
    scheduler.register("a", 60, _noop)
    runner = asyncio.create_task(scheduler.run(stop, grace=1))
    await asyncio.sleep(0.05)
    assert scheduler.running is True
    stop.set()
    assert await runner is True
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_status_reports_every_task():
    scheduler = CycleScheduler()
    scheduler.register("a", 60, _noop)
    scheduler.register("b", 120, _noop)
    scheduler.start()
    try:
        await scheduler.fire("a")
        status = {s["id"]: s for s in scheduler.status()}
    finally:
        await scheduler.stop(grace=1)
    assert set(status) == {"a", "b"}
    assert status["a"]["runs"] == 1
    assert status["a"]["last_run_at"] is not None
    assert status["b"]["next_run_at"] is not None
    assert status["b"]["state"] == "idle"
