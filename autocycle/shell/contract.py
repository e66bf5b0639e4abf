"""IO Contract — the types exchanged between the shell and its collaborators.

Strategy providers receive a CycleContext and return a StrategyResult.
Knowledge providers receive a topic and return an opaque payload.
The shell owns everything else (counters, action log, knowledge snapshot).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

ZERO = Decimal("0")


# --- Enums ---

class AttemptStatus(Enum):
    SUCCESS = "success"
    NO_OPPORTUNITY = "no_opportunity"
    FAILED = "failed"
    TIMEOUT = "timeout"


# --- Persistent state ---

@dataclass
class CycleCounters:
    cycles_completed: int = 0
    last_cycle_at: Optional[datetime] = None
    total_value_generated: Decimal = ZERO
    actions_executed: int = 0

    def copy(self) -> CycleCounters:
        return replace(self)


@dataclass(frozen=True)
class ActionRecord:
    strategy_id: str
    value: Decimal
    timestamp: datetime
    succeeded: bool


@dataclass
class StrategyUsage:
    """Running usage history for one strategy id."""
    attempts: int = 0
    successes: int = 0
    no_opportunity: int = 0
    failures: int = 0
    total_value: Decimal = ZERO
    last_used_at: Optional[datetime] = None

    def copy(self) -> StrategyUsage:
        return replace(self)


@dataclass(frozen=True)
class KnowledgeEntry:
    key: str
    payload: Any
    produced_at: datetime


# --- Strategy IO ---

@dataclass(frozen=True)
class CycleContext:
    """Read-only view handed to strategies on every attempt."""
    cycle: int
    started_at: datetime
    counters: CycleCounters
    knowledge: Mapping[str, KnowledgeEntry] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class StrategyResult:
    success: bool
    value: Decimal = ZERO
    strategy_id: str = ""


@dataclass(frozen=True)
class StrategyAttempt:
    strategy_id: str
    status: AttemptStatus
    value: Decimal = ZERO
    error: Optional[str] = None


@dataclass(frozen=True)
class StrategyOutcome:
    success: bool
    value: Decimal = ZERO
    strategy_id: Optional[str] = None
    attempts: tuple[StrategyAttempt, ...] = ()


# --- Collaborator interfaces ---

class StrategyBase:
    """Base class for action strategies.

    Strategies MUST implement: strategy_id, run()
    Strategies MAY override: health_check()

    run() returns success=False when nothing was found this cycle. That is a
    normal outcome, not an error. Raise for failures (network, timeouts).
    """

    @property
    def strategy_id(self) -> str:
        raise NotImplementedError

    async def run(self, ctx: CycleContext) -> StrategyResult:
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True


class KnowledgeProvider:
    """Base class for research collaborators."""

    async def research(self, topic: str) -> Any:
        """Return a JSON-serialisable payload for the topic. Raise on failure."""
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True
