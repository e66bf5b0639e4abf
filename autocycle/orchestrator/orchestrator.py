"""Orchestrator — wires the shell together and owns the fixed task set.

Startup: load state -> restore knowledge -> health check -> register tasks -> start scheduler
Shutdown: stop ticking -> drain handlers -> final state + knowledge flush -> close backend

Scheduled tasks (ids are fixed, intervals come from [scheduler] config):
- learning_cycle:   research every configured topic, store results, snapshot knowledge
- value_generation: try strategies in order, first success wins, record the outcome
- health_check:     probe backend and providers, log status, sample knowledge growth
- knowledge_backup: copy the knowledge snapshot into the rolling backup window
- state_snapshot:   flush state and knowledge if either changed (persistence retry path)

Every handler ends with a state save, whatever happened inside it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Sequence

import structlog

from autocycle.knowledge.backup import KnowledgeBackup
from autocycle.knowledge.registry import (
    KNOWLEDGE_ARTIFACT,
    KnowledgeRegistry,
    decode_snapshot,
    encode_snapshot,
)
from autocycle.orchestrator.monitor import SystemMonitor
from autocycle.scheduler.scheduler import CycleScheduler
from autocycle.shell.activity import ActivityLogger
from autocycle.shell.backends import Backend, PersistenceError, read_with_retry
from autocycle.shell.config import Config
from autocycle.shell.contract import CycleContext, KnowledgeProvider, StrategyBase, StrategyOutcome
from autocycle.shell.state import DurableStateStore
from autocycle.shell.writer import ArtifactWriter
from autocycle.strategy.executor import StrategyExecutor

log = structlog.get_logger()


class Orchestrator:
    def __init__(
        self,
        config: Config,
        backend: Backend,
        strategies: Sequence[StrategyBase],
        knowledge_provider: KnowledgeProvider,
        activity: ActivityLogger | None = None,
    ) -> None:
        self._config = config
        self._backend = backend
        self._strategies = list(strategies)
        self._provider = knowledge_provider
        self._activity = activity or ActivityLogger()

        timeouts = config.timeouts
        self._state = DurableStateStore(
            backend, self._activity,
            storage_timeout=timeouts.storage_seconds,
            alert_after_failures=config.persistence.alert_after_failures,
            read_attempts=config.persistence.read_attempts,
            read_retry_delay=config.persistence.read_retry_delay_seconds,
        )
        self._knowledge = KnowledgeRegistry()
        self._backup = KnowledgeBackup(backend, config.backup.retention,
                                       storage_timeout=timeouts.storage_seconds)
        self._executor = StrategyExecutor(timeout=timeouts.strategy_seconds)
        self._scheduler = CycleScheduler(timezone=config.timezone)
        self._monitor = SystemMonitor(backend, self._state, self._knowledge, self._activity,
                                      history=config.monitor.growth_history,
                                      storage_timeout=timeouts.storage_seconds)

        self._stop_event = asyncio.Event()
        self._knowledge_writer = ArtifactWriter(backend, KNOWLEDGE_ARTIFACT, timeout=timeouts.storage_seconds,
                                                on_written=self._on_knowledge_written,
                                                on_failed=self._on_knowledge_save_failed)
        self._knowledge_saved_revision = 0
        self._knowledge_failures = 0
        # set when the startup read of the snapshot failed: it must not be overwritten yet
        self._knowledge_unread = False
        self._value_runs = 0
        self._started = False
        self._exit_code: int | None = None

    # --- Accessors (status API, tests) ---

    @property
    def config(self) -> Config:
        return self._config

    @property
    def state(self) -> DurableStateStore:
        return self._state

    @property
    def knowledge(self) -> KnowledgeRegistry:
        return self._knowledge

    @property
    def scheduler(self) -> CycleScheduler:
        return self._scheduler

    @property
    def monitor(self) -> SystemMonitor:
        return self._monitor

    @property
    def activity(self) -> ActivityLogger:
        return self._activity

    @property
    def backup(self) -> KnowledgeBackup:
        return self._backup

    @property
    def strategies(self) -> list[StrategyBase]:
        return list(self._strategies)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("Orchestrator already started")
        log.info("orchestrator.starting", strategies=[s.strategy_id for s in self._strategies])

        # 1. Durable state + knowledge snapshot
        counters = await self._state.load()
        await self._restore_knowledge()
        await self._monitor.load_growth()

        # 2. Best-effort health check
        try:
            await self._probe_health()
        except Exception as e:
            log.warning("orchestrator.startup_health_failed", error=str(e))

        # 3. Fixed task set
        self._register_tasks()

        # 4. Start ticking
        self._scheduler.start()
        self._started = True
        self._activity.system(
            f"Started: {counters.cycles_completed} cycles, {self._knowledge.size()} knowledge entries, "
            f"{counters.total_value_generated} value generated",
        )

    def _register_tasks(self) -> None:
        s = self._config.scheduler
        register = self._scheduler.register
        timeout = s.task_timeout_seconds
        register("learning_cycle", s.learning_interval_seconds, self.learning_cycle,
                 timeout=timeout, first_run_delay=s.first_learning_delay_seconds)
        register("value_generation", s.value_interval_seconds, self.value_generation, timeout=timeout)
        register("health_check", s.health_interval_seconds, self.health_check, timeout=timeout)
        register("knowledge_backup", s.backup_interval_seconds, self.knowledge_backup, timeout=timeout)
        register("state_snapshot", s.snapshot_interval_seconds, self.state_snapshot, timeout=timeout)

    def request_stop(self) -> None:
        """Signal-safe: ask run() to shut down."""
        if not self._stop_event.is_set():
            log.info("orchestrator.stop_requested")
            self._stop_event.set()

    async def run(self) -> int:
        """start(), wait for a stop request, shutdown(). Returns the process exit code."""
        await self.start()
        await self._stop_event.wait()
        return await self.shutdown()

    async def shutdown(self) -> int:
        """Graceful shutdown. Returns 0 when the final flush succeeded, 1 otherwise."""
        if self._exit_code is not None:
            return self._exit_code
        self._stop_event.set()
        log.info("orchestrator.stopping")

        # 1-2. Stop ticking, drain in-flight handlers
        drained = True
        if self._started:
            drained = await self._scheduler.stop(self._config.scheduler.shutdown_grace_seconds)

        # 3. Final flush (waits for any save already in progress)
        state_ok = await self._state.save()
        knowledge_ok = await self._flush_knowledge_if_dirty()
        await self._monitor.save_growth()

        # 4. Close storage
        try:
            await self._backend.close()
        except Exception as e:
            log.warning("orchestrator.backend_close_failed", error=str(e))

        self._exit_code = 0 if state_ok and knowledge_ok else 1
        counters = self._state.counters
        self._activity.system(
            f"Stopped: {counters.cycles_completed} cycles, {counters.total_value_generated} value generated",
            severity="info" if self._exit_code == 0 else "error",
            detail={"drained": drained, "state_saved": state_ok, "knowledge_saved": knowledge_ok},
        )
        log.info("orchestrator.stopped", exit_code=self._exit_code, drained=drained)
        return self._exit_code

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep up to delay seconds. Returns True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    # --- Scheduled handlers ---

    async def learning_cycle(self) -> None:
        """Research every configured topic and store the results."""
        topics = self._config.learning.topics()
        delay = self._config.learning.topic_delay_seconds
        timeout = self._config.timeouts.research_seconds
        learned = failed = 0
        try:
            log.info("learning.cycle_start", topics=len(topics))
            for i, (key, topic) in enumerate(topics):
                if self._stop_event.is_set():
                    log.info("learning.interrupted", remaining=len(topics) - i)
                    break
                try:
                    payload = await asyncio.wait_for(self._provider.research(topic), timeout=timeout)
                    self._knowledge.put(key, payload)
                    learned += 1
                except asyncio.TimeoutError:
                    failed += 1
                    log.warning("learning.topic_timeout", key=key, timeout=timeout)
                except Exception as e:
                    failed += 1
                    log.warning("learning.topic_failed", key=key, error=str(e), error_type=type(e).__name__)

                if i < len(topics) - 1 and delay > 0 and await self._wait_for_stop(delay):
                    log.info("learning.interrupted", remaining=len(topics) - i - 1)
                    break

            counters = self._state.record_cycle()
            await self._save_knowledge()
            self._activity.learn(
                f"Learning cycle {counters.cycles_completed}: {learned} topics learned, {failed} failed",
                severity="info" if failed == 0 else "warning",
                detail={"learned": learned, "failed": failed, "knowledge_entries": self._knowledge.size()},
            )
        finally:
            await self._state.save()

    async def value_generation(self) -> StrategyOutcome:
        """Try the strategies in order; the first success wins."""
        try:
            self._value_runs += 1
            ctx = CycleContext(
                cycle=self._value_runs,
                started_at=datetime.now(timezone.utc),
                counters=self._state.counters,
                knowledge=MappingProxyType(self._knowledge.snapshot()),
            )
            outcome = await self._executor.attempt(self._strategies, ctx)
            self._state.record_outcome(outcome)
            if outcome.success:
                self._activity.value(
                    f"{outcome.strategy_id} generated {outcome.value}",
                    detail={"strategy": outcome.strategy_id, "value": str(outcome.value),
                            "attempts": len(outcome.attempts)},
                )
            else:
                self._activity.value("No opportunity found", detail={"attempts": len(outcome.attempts)})
            return outcome
        finally:
            await self._state.save()

    async def health_check(self) -> dict:
        """Probe collaborators, log the system status, record knowledge growth."""
        try:
            health = await self._probe_health()
            self._monitor.record_growth(self._knowledge.size())
            await self._monitor.save_growth()

            status = self._monitor.status()
            growth = self._monitor.growth()
            log.info("health.status", uptime=status["uptime"], cycles=status["cycles_completed"],
                     knowledge=status["knowledge_entries"], value=status["total_value_generated"],
                     actions=status["actions_executed"], knowledge_growth=growth["growth"])
            return {"health": health, "status": status}
        finally:
            await self._state.save()

    async def knowledge_backup(self) -> str | None:
        """Refresh the knowledge snapshot, then copy it into the backup window."""
        try:
            await self._flush_knowledge_if_dirty()
            name = await self._backup.backup()
            if name:
                self._activity.persist(f"Knowledge backup created: {name}")
            return name
        finally:
            await self._state.save()

    async def state_snapshot(self) -> bool:
        """Persistence retry path: flush whatever changed since the last successful save."""
        state_ok = await self._state.flush_if_dirty()
        knowledge_ok = await self._flush_knowledge_if_dirty()
        return state_ok and knowledge_ok

    # --- Health ---

    async def _probe_health(self) -> dict[str, bool]:
        timeout = self._config.timeouts.health_seconds

        async def _probe(name: str, check) -> tuple[str, bool]:
            try:
                return name, bool(await asyncio.wait_for(check(), timeout=timeout))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("health.probe_failed", component=name, error=str(e) or type(e).__name__)
                return name, False

        probes = [_probe(f"backend:{self._backend.name}", self._backend.ping),
                  _probe("knowledge_provider", self._provider.health_check)]
        probes += [_probe(f"strategy:{s.strategy_id}", s.health_check) for s in self._strategies]
        results = dict(await asyncio.gather(*probes))

        unhealthy = sorted(name for name, ok in results.items() if not ok)
        if unhealthy:
            self._activity.system(f"Unhealthy components: {', '.join(unhealthy)}", severity="warning",
                                  detail={"unhealthy": unhealthy})
        else:
            log.debug("health.all_ok", components=len(results))
        return results

    # --- Knowledge persistence ---

    async def _restore_knowledge(self) -> None:
        """Load the knowledge snapshot, falling back to the newest readable backup."""
        timeout = self._config.timeouts.storage_seconds
        persistence = self._config.persistence
        try:
            data = await read_with_retry(self._backend, KNOWLEDGE_ARTIFACT, timeout=timeout,
                                         attempts=persistence.read_attempts,
                                         delay=persistence.read_retry_delay_seconds)
        except Exception as e:
            data = None
            self._knowledge_unread = True
            log.error("knowledge.unreadable", artifact=KNOWLEDGE_ARTIFACT, error=str(e) or type(e).__name__)
            self._activity.alert(
                f"{KNOWLEDGE_ARTIFACT} could not be read at startup; snapshots are held until it can be",
                detail={"artifact": KNOWLEDGE_ARTIFACT, "error": str(e) or type(e).__name__},
            )

        if data is not None:
            try:
                entries = decode_snapshot(data)
            except ValueError as e:
                log.warning("knowledge.corrupt", artifact=KNOWLEDGE_ARTIFACT, error=str(e))
            else:
                self._knowledge.restore(entries)
                self._knowledge_saved_revision = self._knowledge.revision
                log.info("knowledge.restored", artifact=KNOWLEDGE_ARTIFACT, entries=len(entries))
                return

        try:
            backups = list(reversed(await self._backup.list_backups()))
        except Exception as e:
            log.warning("knowledge.backup_list_failed", error=str(e))
            backups = []

        for name in backups:
            try:
                data = await asyncio.wait_for(self._backend.read(name), timeout=timeout)
            except Exception as e:
                log.warning("knowledge.load_failed", artifact=name, error=str(e))
                continue
            if data is None:
                continue
            try:
                entries = decode_snapshot(data)
            except ValueError as e:
                log.warning("knowledge.corrupt", artifact=name, error=str(e))
                continue
            self._knowledge.restore(entries)
            self._activity.persist(f"Knowledge restored from backup {name}", severity="warning")
            log.info("knowledge.restored", artifact=name, entries=len(entries))
            return

        log.info("knowledge.cold_start")

    async def _reconcile_knowledge(self) -> bool:
        """Read the snapshot the startup load missed and adopt its newer entries.

        Returns False while the snapshot is still unreadable.
        """
        try:
            data = await asyncio.wait_for(self._backend.read(KNOWLEDGE_ARTIFACT),
                                          timeout=self._config.timeouts.storage_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("knowledge.still_unreadable", error=str(e) or type(e).__name__)
            return False

        if self._knowledge_unread:
            adopted = 0
            if data is not None:
                try:
                    adopted = self._knowledge.merge(decode_snapshot(data))
                except ValueError as e:
                    log.warning("knowledge.corrupt", artifact=KNOWLEDGE_ARTIFACT, error=str(e))
            self._knowledge_unread = False
            log.info("knowledge.reconciled", adopted=adopted, entries=self._knowledge.size())
            self._activity.persist(f"{KNOWLEDGE_ARTIFACT} read back; {adopted} entries adopted")
        return True

    async def _save_knowledge(self) -> bool:
        if self._knowledge_unread and not await self._reconcile_knowledge():
            self._on_knowledge_save_failed(PersistenceError(
                f"{KNOWLEDGE_ARTIFACT} has not been read back yet; refusing to overwrite it"))
            return False
        revision, entries = self._knowledge.versioned_snapshot()
        return await self._knowledge_writer.submit(revision, encode_snapshot(entries))

    def _on_knowledge_save_failed(self, error: Exception) -> None:
        self._knowledge_failures += 1
        log.error("knowledge.save_failed", error=str(error) or type(error).__name__,
                  consecutive=self._knowledge_failures)
        if self._knowledge_failures == self._config.persistence.alert_after_failures:
            self._activity.alert(
                f"Knowledge persistence failing: {self._knowledge_failures} consecutive save failures",
                detail={"artifact": KNOWLEDGE_ARTIFACT, "error": str(error)},
            )

    def _on_knowledge_written(self, revision: int) -> None:
        if self._knowledge_failures:
            log.info("knowledge.save_recovered", after_failures=self._knowledge_failures)
        self._knowledge_failures = 0
        self._knowledge_saved_revision = max(self._knowledge_saved_revision, revision)
        log.debug("knowledge.saved", revision=revision)

    async def _flush_knowledge_if_dirty(self) -> bool:
        if self._knowledge.revision == self._knowledge_saved_revision and not self._knowledge_unread:
            return True
        return await self._save_knowledge()
