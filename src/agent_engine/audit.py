# audit.py
# Append-only audit log shared by every run.
#
# Entries are frozen on creation and never mutated or removed. Appends are
# serialized by a lock so concurrent runs (tasks or threads) may share one log.

import threading
from typing import Any

from agent_engine.models import AuditLevel, AuditLogEntry

_STEP_KEYS = ("stepId", "failedStepId", "activeStepId")


def entry_mentions_step(entry: AuditLogEntry, step_id: str) -> bool:
    """True when the entry's metadata correlates it with `step_id`."""
    metadata = entry.metadata
    if any(metadata.get(key) == step_id for key in _STEP_KEYS):
        return True
    steps = metadata.get("steps")
    if isinstance(steps, list):
        return any(isinstance(step, dict) and step.get("id") == step_id for step in steps)
    return False


class AuditLog:
    """In-process audit store. Queries return entries most-recent-first."""

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._lock = threading.Lock()

    def append(
        self,
        run_id: str | None,
        level: AuditLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(run_id=run_id, level=level, message=message, metadata=metadata or {})
        with self._lock:
            self._entries.append(entry)
        return entry

    def _matching(self, run_id: str | None, step_id: str | None) -> list[AuditLogEntry]:
        with self._lock:
            entries = list(self._entries)
        return [
            entry
            for entry in entries
            if entry.run_id == run_id and (step_id is None or entry_mentions_step(entry, step_id))
        ]

    def query(
        self,
        run_id: str | None,
        step_id: str | None = None,
        limit: int | None = None,
        entry_type: str | None = None,
    ) -> list[AuditLogEntry]:
        matches = self._matching(run_id, step_id)
        if entry_type is not None:
            matches = [entry for entry in matches if entry.metadata.get("type") == entry_type]
        matches.reverse()
        return matches if limit is None else matches[:limit]

    def count(self, run_id: str | None, step_id: str | None = None) -> int:
        return len(self._matching(run_id, step_id))
