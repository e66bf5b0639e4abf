"""Shared fixtures: stub collaborators and fault-injecting backends."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from autocycle.shell.backends import FileBackend, PersistenceError
from autocycle.shell.config import Config
from autocycle.shell.contract import (
    CycleContext,
    KnowledgeProvider,
    StrategyBase,
    StrategyResult,
)


class StubStrategy(StrategyBase):
    """Returns a fixed result, raises, or hangs; counts invocations."""

    def __init__(self, strategy_id, value=None, exc=None, delay=0.0, result=None):
        self._id = strategy_id
        self._value = value
        self._exc = exc
        self._delay = delay
        self._result = result
        self.calls = 0
        self.healthy = True

    @property
    def strategy_id(self):
        return self._id

    async def run(self, ctx: CycleContext):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._exc is not None:
            raise self._exc
        if self._result is not None:
            return self._result
        if self._value is None:
            return StrategyResult(success=False, strategy_id=self._id)
        return StrategyResult(success=True, value=Decimal(str(self._value)), strategy_id=self._id)

    async def health_check(self):
        return self.healthy


class StubProvider(KnowledgeProvider):
    """Echoes the topic; topics listed in `failing` raise."""

    def __init__(self, failing=(), on_research=None):
        self.failing = set(failing)
        self.calls: list[str] = []
        self.on_research = on_research
        self.healthy = True

    async def research(self, topic):
        self.calls.append(topic)
        if self.on_research:
            self.on_research(topic)
        if topic in self.failing:
            raise ConnectionError(f"{topic} unreachable")
        return {"topic": topic, "key_points": [f"about {topic}"]}

    async def health_check(self):
        if not self.healthy:
            raise ConnectionError("provider down")
        return True


class FlakyBackend(FileBackend):
    """FileBackend whose next `fail_writes` writes raise PersistenceError.

    `fail_reads` maps an artifact name to how many of its reads raise next.
    """

    def __init__(self, directory, fail_writes=0, write_delay=0.0, fail_reads=None):
        super().__init__(directory)
        self.fail_writes = fail_writes
        self.write_delay = write_delay
        self.fail_reads = dict(fail_reads or {})
        self.write_calls = 0

    async def read(self, name):
        if self.fail_reads.get(name, 0) > 0:
            self.fail_reads[name] -= 1
            raise PersistenceError("storage briefly unavailable")
        return await super().read(name)

    async def write(self, name, data):
        self.write_calls += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise PersistenceError("disk unavailable")
        await super().write(name, data)


@pytest.fixture
def stub_strategy():
    return StubStrategy


@pytest.fixture
def stub_provider():
    return StubProvider


@pytest.fixture
def flaky_backend():
    return FlakyBackend


@pytest.fixture
def config(tmp_path):
    """Small, fast configuration rooted in a temp data directory."""
    cfg = Config()
    cfg.data_dir = str(tmp_path)
    cfg.learning.groups = {"defi": ["lending", "staking"], "nft": ["minting"]}
    cfg.learning.topic_delay_seconds = 0
    cfg.scheduler.shutdown_grace_seconds = 1
    cfg.timeouts.strategy_seconds = 1
    cfg.timeouts.research_seconds = 1
    cfg.timeouts.storage_seconds = 2
    cfg.backup.retention = 3
    cfg.persistence.read_retry_delay_seconds = 0
    return cfg
