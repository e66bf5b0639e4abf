"""SQLite artifact store — backs the sqlite persistence backend.

One row per named artifact. Every put is a single upsert committed on its
own, so a crash leaves either the previous body or the new one.
"""

from __future__ import annotations

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS artifacts (
    name TEXT PRIMARY KEY,
    body BLOB NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


class Database:
    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=FULL")

        cursor = await self._conn.execute("PRAGMA user_version")
        version = (await cursor.fetchone())[0]
        if version > SCHEMA_VERSION:
            await self._conn.close()
            self._conn = None
            raise RuntimeError(f"{self._path} has schema v{version}, newer than supported v{SCHEMA_VERSION}")
        await self._conn.executescript(SCHEMA)
        await self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await self._conn.commit()
        log.info("database.connected", path=self._path, schema=SCHEMA_VERSION)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            log.info("database.closed", path=self._path)

    # --- Artifacts ---

    async def get_artifact(self, name: str) -> bytes | None:
        cursor = await self.conn.execute("SELECT body FROM artifacts WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return bytes(row["body"]) if row else None

    async def put_artifact(self, name: str, body: bytes) -> None:
        await self.conn.execute(
            """INSERT INTO artifacts (name, body, size, updated_at)
               VALUES (?, ?, ?, datetime('now'))
               ON CONFLICT(name) DO UPDATE SET
                   body = excluded.body, size = excluded.size, updated_at = excluded.updated_at""",
            (name, body, len(body)),
        )
        await self.conn.commit()

    async def delete_artifact(self, name: str) -> None:
        await self.conn.execute("DELETE FROM artifacts WHERE name = ?", (name,))
        await self.conn.commit()

    async def artifact_names(self, prefix: str = "") -> list[str]:
        # substr() instead of LIKE so '_' and '%' in prefixes match literally
        cursor = await self.conn.execute(
            "SELECT name FROM artifacts WHERE substr(name, 1, ?) = ? ORDER BY name ASC",
            (len(prefix), prefix),
        )
        return [row["name"] for row in await cursor.fetchall()]

    async def quick_check(self) -> bool:
        cursor = await self.conn.execute("PRAGMA quick_check")
        row = await cursor.fetchone()
        return row is not None and row[0] == "ok"
