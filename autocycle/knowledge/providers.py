"""Knowledge providers — research collaborators for the learning cycle.

SimulatedResearchProvider stands in for real research sources. It queries
several simulated sources concurrently, merges whatever succeeded, and falls
back to generic content when every source failed.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from autocycle.shell.contract import KnowledgeProvider
from autocycle.strategy.loader import resolve_import_path

if TYPE_CHECKING:
    from autocycle.shell.config import Config

log = structlog.get_logger()


class SimulatedResearchProvider(KnowledgeProvider):
    """Offline research: deterministic key points per source, optional latency and failures."""

    SOURCES = {
        "repositories": (
            ["Popular {t} repositories analysis", "Recent {t} development trends",
             "Community best practices for {t}"],
            ["github.com/search?q={t}"],
        ),
        "documentation": (
            ["Official {t} documentation review", "{t} API references", "{t} implementation guides"],
            ["docs/{t}"],
        ),
        "forums": (
            ["Community discussions about {t}", "Common {t} issues and solutions", "Expert opinions on {t}"],
            ["forum/{t}"],
        ),
    }

    def __init__(
        self,
        latency_seconds: float = 0.0,
        failure_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        if not (0 <= failure_rate <= 1):
            raise ValueError(f"failure_rate must be 0-1, got {failure_rate}")
        self._latency = latency_seconds
        self._failure_rate = failure_rate
        self._rng = random.Random(seed)

    async def _search(self, source: str, topic: str) -> dict:
        if self._latency:
            await asyncio.sleep(self._latency * self._rng.random())
        if self._rng.random() < self._failure_rate:
            raise ConnectionError(f"{source} unavailable")
        points, sources = self.SOURCES[source]
        return {
            "key_points": [p.format(t=topic) for p in points],
            "sources": [s.format(t=topic) for s in sources],
        }

    async def research(self, topic: str) -> Any:
        results = await asyncio.gather(
            *(self._search(source, topic) for source in self.SOURCES),
            return_exceptions=True,
        )

        key_points: list[str] = []
        sources: list[str] = []
        failed = []
        for name, result in zip(self.SOURCES, results):
            if isinstance(result, BaseException):
                failed.append(name)
                continue
            key_points.extend(result["key_points"])
            sources.extend(result["sources"])

        if failed:
            log.debug("research.sources_failed", topic=topic, sources=failed)
        if not key_points:
            key_points = [
                f"Understanding {topic} fundamentals",
                f"Security considerations for {topic}",
                f"Best practices in {topic} implementation",
            ]

        return {
            "topic": topic,
            "summary": f"Research on {topic}",
            "key_points": key_points,
            "sources": sources,
            "researched_at": datetime.now(timezone.utc).isoformat(),
        }


def load_knowledge_provider(config: Config) -> KnowledgeProvider:
    """Instantiate the configured knowledge provider class ('module:Class')."""
    spec = config.knowledge.provider
    cls = resolve_import_path(spec.import_path)
    provider = cls(**spec.params)
    if not isinstance(provider, KnowledgeProvider):
        raise RuntimeError(f"{spec.import_path} must inherit from KnowledgeProvider")
    log.info("knowledge.provider_loaded", provider=spec.import_path)
    return provider
