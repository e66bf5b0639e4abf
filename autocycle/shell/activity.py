"""Activity Log — unified operator timeline.

Central writer for system events. Keeps a bounded in-memory timeline (served
by the status API) and emits a structlog entry for every event. alert() is
the operator channel: used when something needs a human, e.g. storage has
been failing for several flushes in a row.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone

import structlog

log = structlog.get_logger()

SEVERITIES = ("info", "warning", "error", "critical")


class ActivityLogger:
    """Keeps recent activity entries and mirrors them to structlog."""

    def __init__(self, max_entries: int = 500) -> None:
        self._entries: deque[dict] = deque(maxlen=max_entries)
        self._next_id = 1
        self._alerts = 0

    @property
    def alert_count(self) -> int:
        return self._alerts

    def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | None = None,
    ) -> dict:
        """Record an entry and emit it through structlog at the matching level."""
        if severity not in SEVERITIES:
            severity = "info"
        entry = {
            "id": self._next_id,
            "ts": datetime.now(timezone.utc).isoformat(),
            "cat": category,
            "sev": severity,
            "msg": summary,
            "detail": detail or {},
        }
        self._next_id += 1
        self._entries.append(entry)

        emit = log.error if severity in ("error", "critical") else (
            log.warning if severity == "warning" else log.info)
        emit("activity", category=category, severity=severity, summary=summary, detail=detail or {})
        return entry

    # --- Convenience methods ---

    def system(self, summary: str, severity: str = "info", detail: dict | None = None) -> dict:
        return self.log("SYSTEM", summary, severity, detail)

    def learn(self, summary: str, severity: str = "info", detail: dict | None = None) -> dict:
        return self.log("LEARN", summary, severity, detail)

    def value(self, summary: str, severity: str = "info", detail: dict | None = None) -> dict:
        return self.log("VALUE", summary, severity, detail)

    def persist(self, summary: str, severity: str = "info", detail: dict | None = None) -> dict:
        return self.log("PERSIST", summary, severity, detail)

    def alert(self, summary: str, detail: dict | None = None) -> dict:
        """Operator channel."""
        self._alerts += 1
        return self.log("ALERT", summary, "critical", detail)

    # --- Query methods ---

    def recent(self, limit: int = 30, category: str | None = None) -> list[dict]:
        """Return last N entries in chronological order (oldest first)."""
        entries = [e for e in self._entries if category is None or e["cat"] == category]
        return entries[-limit:] if limit > 0 else []
