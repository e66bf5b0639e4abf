"""Persistence backends: file and sqlite share one contract."""

import os

import aiosqlite
import pytest
import pytest_asyncio

from autocycle.shell.backends import FileBackend, PersistenceError, SqliteBackend, create_backend
from autocycle.shell.database import SCHEMA_VERSION, Database


@pytest_asyncio.fixture(params=["file", "sqlite"])
async def backend(request, tmp_path):
    b = await create_backend(request.param, tmp_path)
    yield b
    await b.close()


@pytest.mark.asyncio
async def test_read_missing_returns_none(backend):
    assert await backend.read("state.json") is None


@pytest.mark.asyncio
async def test_write_then_read(backend):
    await backend.write("state.json", b'{"v": 1}')
    assert await backend.read("state.json") == b'{"v": 1}'

    await backend.write("state.json", b'{"v": 2}')
    assert await backend.read("state.json") == b'{"v": 2}'


@pytest.mark.asyncio
async def test_list_names_by_prefix_sorted(backend):
    for name in ("backups/kb_3.json", "backups/kb_1.json", "state.json", "backups/kb_2.json"):
        await backend.write(name, b"x")
    assert await backend.list_names("backups/") == [
        "backups/kb_1.json", "backups/kb_2.json", "backups/kb_3.json",
    ]
    assert "state.json" in await backend.list_names()


@pytest.mark.asyncio
async def test_delete(backend):
    await backend.write("a.json", b"1")
    await backend.delete("a.json")
    assert await backend.read("a.json") is None
    await backend.delete("a.json")  # deleting a missing artifact is not an error


@pytest.mark.asyncio
async def test_ping(backend):
    assert await backend.ping() is True


@pytest.mark.asyncio
async def test_prefix_wildcards_match_literally(tmp_path):
    backend = await create_backend("sqlite", tmp_path)
    try:
        assert isinstance(backend, SqliteBackend)
        await backend.write("a_b", b"1")
        await backend.write("axb", b"2")
        await backend.write("a%c", b"3")
        assert await backend.list_names("a_") == ["a_b"]
        assert await backend.list_names("a%") == ["a%c"]
    finally:
        await backend.close()


@pytest.mark.asyncio
async def test_file_write_leaves_no_temp_files(tmp_path):
    backend = FileBackend(tmp_path)
    for i in range(5):
        await backend.write("state.json", str(i).encode())
    assert sorted(os.listdir(tmp_path)) == ["state.json"]
    assert (tmp_path / "state.json").read_bytes() == b"4"


def test_file_stale_write_does_not_replace_newer(tmp_path):
    backend = FileBackend(tmp_path)
    path = tmp_path / "state.json"
    backend._atomic_write(path, b"newer", 2)
    backend._atomic_write(path, b"older", 1)  # abandoned write finishing late
    assert path.read_bytes() == b"newer"
    assert sorted(os.listdir(tmp_path)) == ["state.json"]


@pytest.mark.asyncio
async def test_file_rejects_names_outside_directory(tmp_path):
    backend = FileBackend(tmp_path / "data")
    with pytest.raises(PersistenceError):
        await backend.write("../escape.json", b"x")


@pytest.mark.asyncio
async def test_file_write_error_is_persistence_error(tmp_path):
    backend = FileBackend(tmp_path)
    (tmp_path / "blocked").write_text("a file, not a directory")
    with pytest.raises(PersistenceError):
        await backend.write("blocked/state.json", b"x")


@pytest.mark.asyncio
async def test_create_backend_unknown_kind(tmp_path):
    with pytest.raises(ValueError, match="Unknown persistence backend"):
        await create_backend("redis", tmp_path)


@pytest.mark.asyncio
async def test_sqlite_refuses_newer_schema(tmp_path):
    path = str(tmp_path / "autocycle.db")
    async with aiosqlite.connect(path) as conn:
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        await conn.commit()

    db = Database(path)
    with pytest.raises(RuntimeError, match="newer than supported"):
        await db.connect()
    with pytest.raises(RuntimeError):
        db.conn
