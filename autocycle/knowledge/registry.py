"""Knowledge Registry — key -> KnowledgeEntry map with last-write-wins puts.

The registry itself is memory only. Snapshots are encoded with
encode_snapshot() and written by the orchestrator's persistence handlers.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any

import structlog

from autocycle.shell.contract import KnowledgeEntry

log = structlog.get_logger()

KNOWLEDGE_ARTIFACT = "knowledge_base.json"
FORMAT_VERSION = 1


class KnowledgeRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, KnowledgeEntry] = {}
        self._lock = threading.Lock()
        self._revision = 0

    def put(self, key: str, payload: Any, produced_at: datetime | None = None) -> KnowledgeEntry:
        """Insert or overwrite the entry for key.

        Payloads must survive a JSON snapshot unchanged; anything else is
        rejected here rather than stringified at save time.
        """
        if not key:
            raise ValueError("Knowledge key must be a non-empty string")
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError, RecursionError) as e:
            raise ValueError(f"Knowledge payload for {key!r} is not JSON-serialisable: {e}") from e
        entry = KnowledgeEntry(key=key, payload=payload,
                               produced_at=produced_at or datetime.now(timezone.utc))
        with self._lock:
            self._entries[key] = entry
            self._revision += 1
        return entry

    def get(self, key: str) -> KnowledgeEntry | None:
        with self._lock:
            return self._entries.get(key)

    def snapshot(self) -> dict[str, KnowledgeEntry]:
        with self._lock:
            return dict(self._entries)

    def versioned_snapshot(self) -> tuple[int, dict[str, KnowledgeEntry]]:
        """Entries together with the revision they belong to."""
        with self._lock:
            return self._revision, dict(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def revision(self) -> int:
        """Bumped on every mutation; lets persistence skip unchanged snapshots."""
        return self._revision

    def restore(self, entries: dict[str, KnowledgeEntry]) -> None:
        """Replace all entries (startup recovery)."""
        with self._lock:
            self._entries = dict(entries)
            self._revision += 1

    def merge(self, entries: dict[str, KnowledgeEntry]) -> int:
        """Adopt entries that are missing here or newer than ours. Returns how many."""
        adopted = 0
        with self._lock:
            for key, entry in entries.items():
                current = self._entries.get(key)
                if current is None or _utc(entry.produced_at) > _utc(current.produced_at):
                    self._entries[key] = entry
                    adopted += 1
            if adopted:
                self._revision += 1
        return adopted


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def encode_snapshot(entries: dict[str, KnowledgeEntry]) -> bytes:
    doc = {
        "version": FORMAT_VERSION,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "entries": {
            key: {"payload": entry.payload, "produced_at": entry.produced_at.isoformat()}
            for key, entry in sorted(entries.items())
        },
    }
    return json.dumps(doc, indent=2).encode("utf-8")


def decode_snapshot(data: bytes) -> dict[str, KnowledgeEntry]:
    """Parse a knowledge snapshot. Raises ValueError on anything malformed."""
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise ValueError(f"knowledge snapshot is not valid JSON: {e!r}") from e
    if not isinstance(doc, dict) or not isinstance(doc.get("entries"), dict):
        raise ValueError("knowledge snapshot has no entries object")

    entries = {}
    for key, raw in doc["entries"].items():
        if not isinstance(raw, dict) or "payload" not in raw:
            raise ValueError(f"knowledge entry {key!r} is malformed")
        try:
            produced_at = datetime.fromisoformat(raw["produced_at"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"knowledge entry {key!r} has a bad timestamp") from e
        entries[key] = KnowledgeEntry(key=key, payload=raw["payload"], produced_at=produced_at)
    return entries
