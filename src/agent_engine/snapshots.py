# snapshots.py
# Append-only store of point-in-time observations of the controlled surface.

import threading

from agent_engine.models import Snapshot


class SnapshotStore:
    """Snapshots keyed by run and step, returned most-recent-first."""

    def __init__(self) -> None:
        self._snapshots: list[Snapshot] = []
        self._lock = threading.Lock()

    def add(self, snapshot: Snapshot) -> Snapshot:
        with self._lock:
            self._snapshots.append(snapshot)
        return snapshot

    def query(self, run_id: str, step_id: str | None = None, limit: int | None = None) -> list[Snapshot]:
        with self._lock:
            snapshots = list(self._snapshots)
        matches = [
            snap
            for snap in reversed(snapshots)
            if snap.run_id == run_id and (step_id is None or snap.step_id == step_id)
        ]
        return matches if limit is None else matches[:limit]

    def latest(self, run_id: str, step_id: str | None = None) -> Snapshot | None:
        matches = self.query(run_id, step_id, limit=1)
        return matches[0] if matches else None

    def get(self, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            return next((snap for snap in self._snapshots if snap.id == snapshot_id), None)
