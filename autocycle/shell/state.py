"""Durable State Store — cycle counters, action log and strategy usage.

Single owner of the process's accumulating state. Handlers mutate it through
record_cycle() / record_outcome(); nothing else touches the fields.

Persistence rules:
- load() never raises. A missing or corrupt artifact is a cold start with
  zero-valued counters; corrupt bytes are kept aside as <artifact>.corrupt.
- A read that keeps failing is different: the artifact may hold good data.
  The store cold-starts but holds back every save until a read succeeds,
  then folds the persisted history under whatever was recorded since.
- save() writes a consistent snapshot through an ArtifactWriter, so an
  older snapshot never lands after a newer one. A failed save leaves memory
  authoritative and the store dirty; the next flush retries. Repeated
  failures raise one operator alert per streak.
- The in-memory lock covers mutation and snapshotting only, never I/O.
"""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

import structlog

from autocycle.shell.backends import PersistenceError, read_with_retry
from autocycle.shell.contract import (
    ZERO,
    ActionRecord,
    AttemptStatus,
    CycleCounters,
    StrategyOutcome,
    StrategyUsage,
)
from autocycle.shell.writer import ArtifactWriter

if TYPE_CHECKING:
    from autocycle.shell.activity import ActivityLogger
    from autocycle.shell.backends import Backend

log = structlog.get_logger()

STATE_ARTIFACT = "state.json"
FORMAT_VERSION = 1


# --- Encoding ---

def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return max(a, b)


def _decimal(value, field: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{field} is not a decimal: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"{field} is not finite: {value!r}")
    return result


def encode_state(
    counters: CycleCounters,
    actions: list[ActionRecord] | tuple[ActionRecord, ...],
    usage: dict[str, StrategyUsage],
) -> bytes:
    doc = {
        "version": FORMAT_VERSION,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "counters": {
            "cycles_completed": counters.cycles_completed,
            "last_cycle_at": _ts(counters.last_cycle_at),
            "total_value_generated": str(counters.total_value_generated),
            "actions_executed": counters.actions_executed,
        },
        "actions": [
            {
                "strategy_id": a.strategy_id,
                "value": str(a.value),
                "timestamp": _ts(a.timestamp),
                "succeeded": a.succeeded,
            }
            for a in actions
        ],
        "strategy_usage": {
            sid: {
                "attempts": u.attempts,
                "successes": u.successes,
                "no_opportunity": u.no_opportunity,
                "failures": u.failures,
                "total_value": str(u.total_value),
                "last_used_at": _ts(u.last_used_at),
            }
            for sid, u in usage.items()
        },
    }
    return json.dumps(doc, indent=2).encode("utf-8")


def decode_state(data: bytes) -> tuple[CycleCounters, list[ActionRecord], dict[str, StrategyUsage]]:
    """Parse a state artifact. Raises ValueError on anything malformed."""
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise ValueError(f"state artifact is not valid JSON: {e!r}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("counters"), dict):
        raise ValueError("state artifact has no counters object")
    version = doc.get("version", FORMAT_VERSION)
    if not isinstance(version, int) or version > FORMAT_VERSION:
        raise ValueError(f"unsupported state artifact version: {version!r}")

    try:
        c = doc["counters"]
        counters = CycleCounters(
            cycles_completed=int(c.get("cycles_completed", 0)),
            last_cycle_at=_parse_ts(c.get("last_cycle_at")),
            total_value_generated=_decimal(c.get("total_value_generated", "0"), "total_value_generated"),
            actions_executed=int(c.get("actions_executed", 0)),
        )
        actions = [
            ActionRecord(
                strategy_id=str(a["strategy_id"]),
                value=_decimal(a["value"], "action.value"),
                timestamp=_parse_ts(a["timestamp"]),
                succeeded=bool(a["succeeded"]),
            )
            for a in doc.get("actions", [])
        ]
        usage = {
            str(sid): StrategyUsage(
                attempts=int(u.get("attempts", 0)),
                successes=int(u.get("successes", 0)),
                no_opportunity=int(u.get("no_opportunity", 0)),
                failures=int(u.get("failures", 0)),
                total_value=_decimal(u.get("total_value", "0"), "usage.total_value"),
                last_used_at=_parse_ts(u.get("last_used_at")),
            )
            for sid, u in doc.get("strategy_usage", {}).items()
        }
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"state artifact is missing fields: {e}") from e
    except (ArithmeticError, RecursionError) as e:
        raise ValueError(f"state artifact has out-of-range values: {e!r}") from e

    if (counters.cycles_completed < 0 or counters.actions_executed < 0
            or counters.total_value_generated < 0):
        raise ValueError("state artifact has negative counters")
    return counters, actions, usage


# --- Store ---

class DurableStateStore:
    """Owns CycleCounters, the append-only action log and per-strategy usage."""

    def __init__(
        self,
        backend: Backend,
        activity: ActivityLogger | None = None,
        *,
        storage_timeout: float = 10.0,
        alert_after_failures: int = 3,
        artifact: str = STATE_ARTIFACT,
        read_attempts: int = 3,
        read_retry_delay: float = 0.5,
    ) -> None:
        self._backend = backend
        self._activity = activity
        self._timeout = storage_timeout
        self._alert_after = alert_after_failures
        self._artifact = artifact
        self._read_attempts = read_attempts
        self._read_retry_delay = read_retry_delay

        self._lock = threading.Lock()
        self._writer = ArtifactWriter(backend, artifact, timeout=storage_timeout,
                                      on_written=self._on_save_succeeded,
                                      on_failed=self._on_save_failed)
        # set when the startup read failed: the artifact must not be overwritten yet
        self._unread = False

        self._counters = CycleCounters()
        self._actions: list[ActionRecord] = []
        self._usage: dict[str, StrategyUsage] = {}
        self._revision = 0
        self._saved_revision = 0

        self._consecutive_failures = 0
        self._alerted = False
        self.last_saved_at: datetime | None = None
        self.last_error: str | None = None

    # --- Queries ---

    @property
    def counters(self) -> CycleCounters:
        with self._lock:
            return self._counters.copy()

    @property
    def actions(self) -> tuple[ActionRecord, ...]:
        with self._lock:
            return tuple(self._actions)

    @property
    def strategy_usage(self) -> dict[str, StrategyUsage]:
        with self._lock:
            return {sid: u.copy() for sid, u in self._usage.items()}

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._revision > self._saved_revision

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # --- Mutations (memory only) ---

    def record_cycle(self, at: datetime | None = None) -> CycleCounters:
        """Count one completed cycle."""
        at = at or datetime.now(timezone.utc)
        with self._lock:
            self._counters.cycles_completed += 1
            self._counters.last_cycle_at = at
            self._revision += 1
            return self._counters.copy()

    def record_outcome(self, outcome: StrategyOutcome, at: datetime | None = None) -> list[ActionRecord]:
        """Append one ActionRecord per invoked strategy and fold the outcome into the counters."""
        at = at or datetime.now(timezone.utc)
        records = [
            ActionRecord(
                strategy_id=attempt.strategy_id,
                value=attempt.value if attempt.status is AttemptStatus.SUCCESS else ZERO,
                timestamp=at,
                succeeded=attempt.status is AttemptStatus.SUCCESS,
            )
            for attempt in outcome.attempts
        ]
        with self._lock:
            for attempt, record in zip(outcome.attempts, records):
                usage = self._usage.setdefault(attempt.strategy_id, StrategyUsage())
                usage.attempts += 1
                usage.last_used_at = at
                if attempt.status is AttemptStatus.SUCCESS:
                    usage.successes += 1
                    usage.total_value += record.value
                elif attempt.status is AttemptStatus.NO_OPPORTUNITY:
                    usage.no_opportunity += 1
                else:
                    usage.failures += 1
                self._actions.append(record)
            if outcome.success:
                self._counters.total_value_generated += outcome.value
                self._counters.actions_executed += 1
            self._revision += 1
        return records

    def reset(self) -> None:
        """Explicit reset: zero the counters and clear history."""
        with self._lock:
            self._counters = CycleCounters()
            self._actions = []
            self._usage = {}
            self._unread = False
            self._revision += 1
        log.warning("state.reset")

    @property
    def unread(self) -> bool:
        """True while saves are held back because the artifact could not be read."""
        return self._unread

    # --- Persistence ---

    async def load(self) -> CycleCounters:
        """Load persisted state. Never raises; falls back to zero-valued defaults."""
        unread = False
        try:
            data = await read_with_retry(self._backend, self._artifact, timeout=self._timeout,
                                         attempts=self._read_attempts, delay=self._read_retry_delay)
        except Exception as e:
            data, unread = None, True
            log.error("state.unreadable", artifact=self._artifact, error=str(e) or type(e).__name__)
            if self._activity:
                self._activity.alert(
                    f"{self._artifact} could not be read at startup; saves are held until it can be",
                    detail={"artifact": self._artifact, "error": str(e) or type(e).__name__},
                )

        counters, actions, usage = CycleCounters(), [], {}
        if data is None:
            log.info("state.cold_start", artifact=self._artifact)
        else:
            try:
                counters, actions, usage = decode_state(data)
                log.info("state.loaded", cycles=counters.cycles_completed,
                         actions=len(actions), value=str(counters.total_value_generated))
            except ValueError as e:
                log.warning("state.corrupt", artifact=self._artifact, error=str(e))
                await self._preserve_corrupt(data)

        with self._lock:
            self._counters = counters
            self._actions = actions
            self._usage = usage
            self._unread = unread
            self._revision = 0
            self._saved_revision = 0
            return self._counters.copy()

    async def _preserve_corrupt(self, data: bytes) -> None:
        """Keep the unreadable artifact aside so the next save doesn't destroy it."""
        name = f"{self._artifact}.corrupt"
        try:
            await asyncio.wait_for(self._backend.write(name, data), timeout=self._timeout)
            log.warning("state.corrupt_preserved", artifact=name)
        except Exception as e:
            log.warning("state.corrupt_preserve_failed", artifact=name, error=str(e))

    async def _reconcile(self) -> bool:
        """Read the artifact the startup load missed and fold it under memory.

        Everything recorded since startup counts on top of the persisted
        history. Returns False while the artifact is still unreadable.
        """
        try:
            data = await asyncio.wait_for(self._backend.read(self._artifact), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("state.still_unreadable", artifact=self._artifact, error=str(e) or type(e).__name__)
            return False

        persisted = None
        if data is not None:
            try:
                persisted = decode_state(data)
            except ValueError as e:
                log.warning("state.corrupt", artifact=self._artifact, error=str(e))
                await self._preserve_corrupt(data)

        with self._lock:
            if not self._unread:
                return True
            if persisted is not None:
                self._fold_persisted(*persisted)
            self._unread = False
            self._revision += 1
            cycles = self._counters.cycles_completed
        log.info("state.reconciled", artifact=self._artifact, cycles=cycles,
                 persisted=persisted is not None)
        if self._activity:
            self._activity.persist(f"{self._artifact} read back; saves resumed")
        return True

    def _fold_persisted(
        self,
        counters: CycleCounters,
        actions: list[ActionRecord],
        usage: dict[str, StrategyUsage],
    ) -> None:
        # caller holds self._lock
        mine = self._counters
        mine.cycles_completed += counters.cycles_completed
        mine.total_value_generated += counters.total_value_generated
        mine.actions_executed += counters.actions_executed
        mine.last_cycle_at = _latest(mine.last_cycle_at, counters.last_cycle_at)
        self._actions = actions + self._actions
        for sid, old in usage.items():
            u = self._usage.setdefault(sid, StrategyUsage())
            u.attempts += old.attempts
            u.successes += old.successes
            u.no_opportunity += old.no_opportunity
            u.failures += old.failures
            u.total_value += old.total_value
            u.last_used_at = _latest(u.last_used_at, old.last_used_at)

    async def save(self) -> bool:
        """Persist the current state. Returns False on a persistence failure."""
        if self._unread and not await self._reconcile():
            self._on_save_failed(PersistenceError(
                f"{self._artifact} has not been read back yet; refusing to overwrite it"))
            return False

        with self._lock:
            revision = self._revision
            counters = self._counters.copy()
            actions = tuple(self._actions)
            usage = {sid: u.copy() for sid, u in self._usage.items()}
        return await self._writer.submit(revision, encode_state(counters, actions, usage))

    async def flush_if_dirty(self) -> bool:
        """Save only when something changed since the last successful save."""
        if not self.dirty and not self._unread:
            return True
        return await self.save()

    def _on_save_failed(self, error: Exception) -> None:
        self._consecutive_failures += 1
        self.last_error = str(error) or type(error).__name__
        log.error("state.save_failed", artifact=self._artifact, error=self.last_error,
                  error_type=type(error).__name__, consecutive=self._consecutive_failures)
        if self._consecutive_failures >= self._alert_after and not self._alerted:
            self._alerted = True
            if self._activity:
                self._activity.alert(
                    f"State persistence failing: {self._consecutive_failures} consecutive save failures",
                    detail={"artifact": self._artifact, "error": self.last_error},
                )

    def _on_save_succeeded(self, revision: int) -> None:
        if self._consecutive_failures:
            log.info("state.save_recovered", after_failures=self._consecutive_failures)
            if self._activity:
                self._activity.persist(
                    f"State persistence recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._alerted = False
        self.last_error = None
        self.last_saved_at = datetime.now(timezone.utc)
        with self._lock:
            self._saved_revision = max(self._saved_revision, revision)
