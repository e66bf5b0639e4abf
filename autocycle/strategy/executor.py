"""Strategy Executor — first-success selection over an ordered strategy list.

Strategies are tried in the given order. The first one reporting success
wins and the rest are not invoked. "No opportunity" (success=False) and a
failed call (exception, timeout, malformed result) are both non-fatal, but
they are logged and recorded differently.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Sequence

import structlog

from autocycle.shell.contract import (
    ZERO,
    AttemptStatus,
    CycleContext,
    StrategyAttempt,
    StrategyBase,
    StrategyOutcome,
    StrategyResult,
)

log = structlog.get_logger()


class MalformedResultError(ValueError):
    """A strategy returned something that is not a usable StrategyResult."""


def validate_result(result: object) -> StrategyResult:
    """Check a strategy's return value. Raises MalformedResultError."""
    if not isinstance(result, StrategyResult):
        raise MalformedResultError(f"expected StrategyResult, got {type(result).__name__}")
    if not result.strategy_id:
        raise MalformedResultError("result has no strategy_id")
    if not result.success:
        return result
    if isinstance(result.value, bool) or not isinstance(result.value, (Decimal, int, float)):
        raise MalformedResultError(f"value is not numeric: {result.value!r}")
    try:
        value = Decimal(str(result.value))
    except InvalidOperation as e:
        raise MalformedResultError(f"value is not numeric: {result.value!r}") from e
    if not value.is_finite() or value < 0:
        raise MalformedResultError(f"value must be a finite number >= 0, got {result.value!r}")
    return StrategyResult(success=True, value=value, strategy_id=result.strategy_id)


class StrategyExecutor:
    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    async def attempt(self, strategies: Sequence[StrategyBase], ctx: CycleContext) -> StrategyOutcome:
        attempts: list[StrategyAttempt] = []

        for strategy in strategies:
            sid = strategy.strategy_id
            try:
                raw = await asyncio.wait_for(strategy.run(ctx), timeout=self._timeout)
                result = validate_result(raw)
            except asyncio.TimeoutError:
                log.warning("strategy.timeout", strategy=sid, timeout=self._timeout, cycle=ctx.cycle)
                attempts.append(StrategyAttempt(sid, AttemptStatus.TIMEOUT,
                                                error=f"timed out after {self._timeout}s"))
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("strategy.failed", strategy=sid, error=str(e),
                            error_type=type(e).__name__, cycle=ctx.cycle)
                attempts.append(StrategyAttempt(sid, AttemptStatus.FAILED, error=str(e) or type(e).__name__))
                continue

            if not result.success:
                log.info("strategy.no_opportunity", strategy=sid, cycle=ctx.cycle)
                attempts.append(StrategyAttempt(sid, AttemptStatus.NO_OPPORTUNITY))
                continue

            log.info("strategy.succeeded", strategy=sid, value=str(result.value), cycle=ctx.cycle)
            attempts.append(StrategyAttempt(sid, AttemptStatus.SUCCESS, value=result.value))
            return StrategyOutcome(success=True, value=result.value, strategy_id=sid,
                                   attempts=tuple(attempts))

        log.info("strategy.exhausted", attempted=len(attempts), cycle=ctx.cycle)
        return StrategyOutcome(success=False, value=ZERO, strategy_id=None, attempts=tuple(attempts))
