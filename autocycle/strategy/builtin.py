"""Built-in strategies.

SimulatedStrategy finds an opportunity with a fixed probability and reports
a random value below max_value. It performs no external actions.
"""

from __future__ import annotations

import asyncio
import random
from decimal import Decimal

from autocycle.shell.contract import CycleContext, StrategyBase, StrategyResult


class SimulatedStrategy(StrategyBase):
    def __init__(
        self,
        strategy_id: str,
        probability: float = 0.2,
        max_value: float = 500,
        latency_seconds: float = 0.0,
        seed: int | None = None,
    ) -> None:
        if not (0 <= probability <= 1):
            raise ValueError(f"probability must be 0-1, got {probability}")
        if max_value < 0:
            raise ValueError(f"max_value must be >= 0, got {max_value}")
        self._id = strategy_id
        self._probability = probability
        self._max_value = max_value
        self._latency = latency_seconds
        self._rng = random.Random(seed)

    @property
    def strategy_id(self) -> str:
        return self._id

    async def run(self, ctx: CycleContext) -> StrategyResult:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._rng.random() >= self._probability:
            return StrategyResult(success=False, strategy_id=self._id)
        value = Decimal(str(round(self._rng.random() * self._max_value, 2)))
        return StrategyResult(success=True, value=value, strategy_id=self._id)
