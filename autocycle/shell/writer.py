"""Single writer per artifact.

Callers snapshot under their own in-memory lock, then submit the encoded
bytes here. At most one backend write per artifact is in flight; snapshots
submitted meanwhile collapse into the newest one, which is written next.
No lock is held while the backend write runs, and an older snapshot can
never land after a newer one.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

import structlog

if TYPE_CHECKING:
    from autocycle.shell.backends import Backend

log = structlog.get_logger()


class ArtifactWriter:
    def __init__(
        self,
        backend: Backend,
        artifact: str,
        *,
        timeout: float,
        on_written: Callable[[int], None] | None = None,
        on_failed: Callable[[Exception], None] | None = None,
    ) -> None:
        self._backend = backend
        self._artifact = artifact
        self._timeout = timeout
        self._on_written = on_written
        self._on_failed = on_failed
        self._pending: tuple[int, bytes] | None = None
        self._waiters: list[tuple[int, asyncio.Future]] = []
        self._task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(self, revision: int, data: bytes) -> bool:
        """Write `data` (state as of `revision`). True once a write covering it succeeded.

        Cancelling the caller does not cancel the write.
        """
        if self._pending is None or revision >= self._pending[0]:
            self._pending = (revision, data)
        done = asyncio.get_running_loop().create_future()
        self._waiters.append((revision, done))
        if not self.busy:
            self._task = asyncio.create_task(self._drain(), name=f"write:{self._artifact}")
        return await asyncio.shield(done)

    async def _drain(self) -> None:
        try:
            while self._pending is not None:
                revision, data = self._pending
                self._pending = None
                ok = await self._write_once(revision, data)
                waiting = []
                for rev, fut in self._waiters:
                    if rev > revision:
                        waiting.append((rev, fut))
                    elif not fut.done():
                        fut.set_result(ok)
                self._waiters = waiting
        finally:
            # cancelled mid-drain: nobody is left to write for these callers
            for _, fut in self._waiters:
                if not fut.done():
                    fut.set_result(False)
            self._waiters = []

    async def _write_once(self, revision: int, data: bytes) -> bool:
        try:
            await asyncio.wait_for(self._backend.write(self._artifact, data), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._on_failed:
                self._on_failed(e)
            else:
                log.error("writer.write_failed", artifact=self._artifact, error=str(e) or type(e).__name__)
            return False
        if self._on_written:
            self._on_written(revision)
        return True
