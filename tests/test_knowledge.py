"""Knowledge registry, snapshot encoding, backups and research providers."""

from datetime import datetime, timezone

import pytest

from autocycle.knowledge.backup import BACKUP_PREFIX, KnowledgeBackup
from autocycle.knowledge.providers import SimulatedResearchProvider, load_knowledge_provider
from autocycle.knowledge.registry import (
    KNOWLEDGE_ARTIFACT,
    KnowledgeRegistry,
    decode_snapshot,
    encode_snapshot,
)
from autocycle.shell.backends import FileBackend
from autocycle.shell.config import Config, ProviderSpec
from autocycle.shell.contract import KnowledgeEntry


# --- Registry ---

def test_put_overwrites():
    registry = KnowledgeRegistry()
    registry.put("defi_lending", {"v": 1})
    registry.put("defi_lending", {"v": 2})
    assert registry.get("defi_lending").payload == {"v": 2}
    assert registry.size() == 1
    assert len(registry) == 1
    assert "defi_lending" in registry


def test_put_rejects_empty_key():
    with pytest.raises(ValueError):
        KnowledgeRegistry().put("", {})


def test_snapshot_is_a_copy():
    registry = KnowledgeRegistry()
    registry.put("a", 1)
    snap = registry.snapshot()
    registry.put("b", 2)
    assert list(snap) == ["a"]
    assert registry.keys() == ["a", "b"]


def test_revision_tracks_mutations():
    registry = KnowledgeRegistry()
    before = registry.revision
    registry.put("a", 1)
    registry.restore({})
    assert registry.revision == before + 2


def test_snapshot_encoding_round_trip():
    produced = datetime(2024, 5, 1, tzinfo=timezone.utc)
    registry = KnowledgeRegistry()
    registry.put("nft_minting", {"key_points": ["x"]}, produced)
    decoded = decode_snapshot(encode_snapshot(registry.snapshot()))
    assert decoded == registry.snapshot()


@pytest.mark.parametrize("data", [
    b"\xff",
    b"[]",
    b'{"entries": {"k": {"produced_at": "now"}}}',
    b"[" * 200_000,
])
def test_decode_snapshot_rejects_malformed(data):
    with pytest.raises(ValueError):
        decode_snapshot(data)


@pytest.mark.parametrize("payload", [{"when": datetime(2024, 5, 1)}, {1, 2}, float("nan")])
def test_put_rejects_payloads_that_would_not_round_trip(payload):
    registry = KnowledgeRegistry()
    with pytest.raises(ValueError, match="JSON-serialisable"):
        registry.put("defi_lending", payload)
    assert registry.size() == 0
    assert registry.revision == 0


def test_merge_adopts_missing_and_newer_entries_only():
    old = datetime(2024, 5, 1, tzinfo=timezone.utc)
    new = datetime(2024, 6, 1, tzinfo=timezone.utc)
    registry = KnowledgeRegistry()
    registry.put("kept", {"v": "mine"}, new)
    registry.put("stale", {"v": "mine"}, old)
    before = registry.revision

    persisted = {
        "kept": KnowledgeEntry("kept", {"v": "disk"}, old),
        "stale": KnowledgeEntry("stale", {"v": "disk"}, new),
        "extra": KnowledgeEntry("extra", {"v": "disk"}, old),
    }
    assert registry.merge(persisted) == 2
    assert registry.get("kept").payload == {"v": "mine"}
    assert registry.get("stale").payload == {"v": "disk"}
    assert registry.get("extra").payload == {"v": "disk"}
    assert registry.revision == before + 1
    assert registry.merge(persisted) == 0


# --- Backups ---

@pytest.mark.asyncio
async def test_backup_retention_keeps_newest(tmp_path):
    backend = FileBackend(tmp_path)
    backup = KnowledgeBackup(backend, retention=3)
    await backend.write(KNOWLEDGE_ARTIFACT, b'{"entries": {}}')

    created = [await backup.backup() for _ in range(5)]
    remaining = await backup.list_backups()
    assert len(remaining) == 3
    assert remaining == sorted(created)[-3:]
    assert all(name.startswith(BACKUP_PREFIX) for name in remaining)


@pytest.mark.asyncio
async def test_backup_without_snapshot_is_skipped(tmp_path):
    backup = KnowledgeBackup(FileBackend(tmp_path))
    assert await backup.backup() is None
    assert await backup.list_backups() == []


@pytest.mark.asyncio
async def test_backup_copies_snapshot_bytes(tmp_path):
    backend = FileBackend(tmp_path)
    await backend.write(KNOWLEDGE_ARTIFACT, b'{"entries": {"a": 1}}')
    name = await KnowledgeBackup(backend).backup()
    assert await backend.read(name) == b'{"entries": {"a": 1}}'


def test_backup_retention_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        KnowledgeBackup(FileBackend(tmp_path), retention=0)


# --- Providers ---

@pytest.mark.asyncio
async def test_simulated_research_merges_sources():
    payload = await SimulatedResearchProvider(seed=1).research("staking")
    assert payload["topic"] == "staking"
    assert len(payload["key_points"]) == 9
    assert len(payload["sources"]) == 3
    assert all("staking" in point for point in payload["key_points"])


@pytest.mark.asyncio
async def test_simulated_research_falls_back_when_all_sources_fail():
    payload = await SimulatedResearchProvider(failure_rate=1.0).research("bridges")
    assert payload["sources"] == []
    assert payload["key_points"] == [
        "Understanding bridges fundamentals",
        "Security considerations for bridges",
        "Best practices in bridges implementation",
    ]


def test_load_knowledge_provider_default():
    provider = load_knowledge_provider(Config())
    assert isinstance(provider, SimulatedResearchProvider)


def test_load_knowledge_provider_rejects_wrong_type():
    config = Config()
    config.knowledge.provider = ProviderSpec("collections:OrderedDict")
    with pytest.raises(RuntimeError, match="KnowledgeProvider"):
        load_knowledge_provider(config)
