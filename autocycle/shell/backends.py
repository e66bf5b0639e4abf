"""Persistence backends — named byte artifacts with atomic writes.

Two implementations share one async interface:
- FileBackend: one file per artifact under a data directory.
  Writes go to a temp file in the same directory, are fsync'd, then
  os.replace()'d over the target, so readers see the old or the new
  content and never a partial file.
- SqliteBackend: one row per artifact in the aiosqlite `artifacts` table.
  Each write is a single committed upsert.

read() returns None when the artifact does not exist. Every other failure
raises PersistenceError.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import threading
from pathlib import Path

import structlog

from autocycle.shell.database import Database

log = structlog.get_logger()


class PersistenceError(Exception):
    """A storage read/write failed. In-memory state remains authoritative."""


class Backend:
    """Interface for artifact storage."""

    name = "base"

    async def read(self, name: str) -> bytes | None:
        raise NotImplementedError

    async def write(self, name: str, data: bytes) -> None:
        raise NotImplementedError

    async def delete(self, name: str) -> None:
        raise NotImplementedError

    async def list_names(self, prefix: str = "") -> list[str]:
        """Artifact names starting with prefix, sorted ascending."""
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class FileBackend(Backend):
    name = "file"

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        # Write ordering: a write abandoned by a timed-out caller can still be
        # running in its worker thread and must not replace a newer one.
        self._seq = 0
        self._committed: dict[Path, int] = {}
        self._commit_lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, name: str) -> Path:
        path = (self._dir / name).resolve()
        if self._dir.resolve() not in path.parents:
            raise PersistenceError(f"Artifact name escapes data directory: {name!r}")
        return path

    async def read(self, name: str) -> bytes | None:
        path = self._path(name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"read {name} failed: {e}") from e

    async def write(self, name: str, data: bytes) -> None:
        path = self._path(name)
        self._seq += 1
        try:
            await asyncio.to_thread(self._atomic_write, path, data, self._seq)
        except OSError as e:
            raise PersistenceError(f"write {name} failed: {e}") from e

    def _atomic_write(self, path: Path, data: bytes, seq: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            with self._commit_lock:
                if self._committed.get(path, 0) > seq:
                    os.unlink(tmp_path)
                    return
                os.replace(tmp_path, path)
                self._committed[path] = seq
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def delete(self, name: str) -> None:
        path = self._path(name)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise PersistenceError(f"delete {name} failed: {e}") from e

    async def list_names(self, prefix: str = "") -> list[str]:
        def _scan() -> list[str]:
            names = []
            for path in self._dir.rglob("*"):
                if not path.is_file() or path.name.startswith("."):
                    continue
                rel = path.relative_to(self._dir).as_posix()
                if rel.startswith(prefix):
                    names.append(rel)
            return sorted(names)

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise PersistenceError(f"list {prefix!r} failed: {e}") from e

    async def ping(self) -> bool:
        return await asyncio.to_thread(os.access, self._dir, os.W_OK)


class SqliteBackend(Backend):
    name = "sqlite"

    def __init__(self, db: Database) -> None:
        self._db = db

    async def read(self, name: str) -> bytes | None:
        try:
            return await self._db.get_artifact(name)
        except Exception as e:
            raise PersistenceError(f"read {name} failed: {e}") from e

    async def write(self, name: str, data: bytes) -> None:
        try:
            await self._db.put_artifact(name, data)
        except Exception as e:
            raise PersistenceError(f"write {name} failed: {e}") from e

    async def delete(self, name: str) -> None:
        try:
            await self._db.delete_artifact(name)
        except Exception as e:
            raise PersistenceError(f"delete {name} failed: {e}") from e

    async def list_names(self, prefix: str = "") -> list[str]:
        try:
            return await self._db.artifact_names(prefix)
        except Exception as e:
            raise PersistenceError(f"list {prefix!r} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return await self._db.quick_check()
        except Exception as e:
            log.warning("backend.ping_failed", backend=self.name, error=str(e))
            return False

    async def close(self) -> None:
        await self._db.close()


async def create_backend(kind: str, data_dir: str | Path) -> Backend:
    """Build the configured backend. SQLite databases are connected before return."""
    Path(data_dir).mkdir(parents=True, exist_ok=True)
    if kind == "file":
        backend: Backend = FileBackend(data_dir)
    elif kind == "sqlite":
        db = Database(str(Path(data_dir) / "autocycle.db"))
        await db.connect()
        backend = SqliteBackend(db)
    else:
        raise ValueError(f"Unknown persistence backend: {kind!r}")
    log.info("backend.ready", backend=backend.name, data_dir=str(data_dir))
    return backend


async def read_with_retry(
    backend: Backend,
    name: str,
    *,
    timeout: float,
    attempts: int = 3,
    delay: float = 0.5,
) -> bytes | None:
    """read() with a per-attempt timeout, retried on failure.

    A missing artifact (None) is an answer, not a failure. Raises the last
    error once every attempt has failed.
    """
    last_error: Exception | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return await asyncio.wait_for(backend.read(name), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            log.warning("backend.read_retry", artifact=name, attempt=attempt, attempts=attempts,
                        error=str(e) or type(e).__name__)
        if attempt < attempts and delay:
            await asyncio.sleep(delay * attempt)
    raise last_error
