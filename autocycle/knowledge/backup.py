"""Knowledge Backup — rolling window of knowledge snapshot copies.

Each backup copies the current knowledge snapshot artifact to
backups/knowledge_backup_<UTC timestamp>_<seq>.json, then deletes everything
beyond the newest `retention` backups. Timestamps are fixed-width so
name order is chronological order.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from autocycle.knowledge.registry import KNOWLEDGE_ARTIFACT

if TYPE_CHECKING:
    from autocycle.shell.backends import Backend

log = structlog.get_logger()

BACKUP_PREFIX = "backups/knowledge_backup_"


class KnowledgeBackup:
    def __init__(
        self,
        backend: Backend,
        retention: int = 10,
        *,
        storage_timeout: float = 10.0,
        source: str = KNOWLEDGE_ARTIFACT,
    ) -> None:
        if retention < 1:
            raise ValueError(f"retention must be >= 1, got {retention}")
        self._backend = backend
        self._retention = retention
        self._timeout = storage_timeout
        self._source = source
        self._seq = 0

    @property
    def retention(self) -> int:
        return self._retention

    def _next_name(self, now: datetime) -> str:
        # Sequence suffix keeps names distinct and ordered within one timestamp
        self._seq += 1
        return f"{BACKUP_PREFIX}{now.strftime('%Y%m%dT%H%M%S%fZ')}_{self._seq:06d}.json"

    async def backup(self, data: bytes | None = None) -> str | None:
        """Write one backup. Reads the snapshot artifact when data is not given.

        Returns the backup name, or None when there was nothing to back up.
        Storage errors propagate to the caller (the scheduled task logs them).
        """
        if data is None:
            data = await asyncio.wait_for(self._backend.read(self._source), timeout=self._timeout)
        if data is None:
            log.info("backup.skipped", reason="no snapshot yet")
            return None

        name = self._next_name(datetime.now(timezone.utc))
        await asyncio.wait_for(self._backend.write(name, data), timeout=self._timeout)
        log.info("backup.created", name=name, bytes=len(data))

        await self.prune()
        return name

    async def prune(self) -> list[str]:
        """Delete all but the newest `retention` backups. Returns deleted names."""
        names = await asyncio.wait_for(self._backend.list_names(BACKUP_PREFIX), timeout=self._timeout)
        stale = names[: max(0, len(names) - self._retention)]
        for name in stale:
            await asyncio.wait_for(self._backend.delete(name), timeout=self._timeout)
            log.info("backup.deleted", name=name)
        return stale

    async def list_backups(self) -> list[str]:
        return await asyncio.wait_for(self._backend.list_names(BACKUP_PREFIX), timeout=self._timeout)
