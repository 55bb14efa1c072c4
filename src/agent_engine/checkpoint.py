# checkpoint.py
# Durable run state.
#
# The manager is the single writer of checkpoint records. Every save replaces
# the whole document; stores only ever see complete JSON payloads.

import os
import tempfile
import threading
from pathlib import Path

from agent_engine.errors import ApprovalMismatchError, RunNotFoundError
from agent_engine.models import AgentCheckpoint, PlanStep, StepStatus, utcnow
from agent_engine.plan import PlanModel


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryCheckpointStore:
    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, run_id: str) -> str | None:
        with self._lock:
            return self._records.get(run_id)

    def write(self, run_id: str, payload: str) -> None:
        with self._lock:
            self._records[run_id] = payload

    def list_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._records)


class FileCheckpointStore:
    """
    One `<run_id>.json` file per run under `directory`.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so readers see either the old or the new document.
    """

    def __init__(self, directory: str | os.PathLike) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        safe = "".join(ch for ch in run_id if ch.isalnum() or ch in "-_")
        if not safe:
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self._dir / f"{safe}.json"

    def read(self, run_id: str) -> str | None:
        path = self._path(run_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, run_id: str, payload: str) -> None:
        path = self._path(run_id)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def list_run_ids(self) -> list[str]:
        return sorted(path.stem for path in self._dir.glob("*.json"))


# ---------------------------------------------------------------------------
# Briefs
# ---------------------------------------------------------------------------


def build_brief(steps: list[PlanStep], max_items: int = 3) -> tuple[str, list[str], list[str]]:
    """Compact narrative of a plan: (brief, next actions, risks)."""
    done = [s.title for s in steps if s.status == StepStatus.COMPLETED]
    pending = [s.title for s in steps if s.status in (StepStatus.PENDING, StepStatus.RUNNING)]
    failed = [s for s in steps if s.status == StepStatus.FAILED]

    parts = [f"{len(done)}/{len(steps)} steps completed"]
    if done:
        parts.append(f"last done: {done[-1]}")
    if failed:
        parts.append(f"{len(failed)} failed")
    brief = "; ".join(parts) + "."

    risks = [f"{s.title}: {s.error}" if s.error else s.title for s in failed]
    risks += [s.error for s in steps if s.status == StepStatus.PENDING and s.error]
    return brief, pending[:max_items], risks[:max_items]


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class CheckpointManager:
    def __init__(self, store: InMemoryCheckpointStore | FileCheckpointStore | None = None) -> None:
        self._store = store if store is not None else InMemoryCheckpointStore()

    def save(self, run_id: str, checkpoint: AgentCheckpoint) -> AgentCheckpoint:
        if checkpoint.run_id != run_id:
            raise ValueError(f"Checkpoint for '{checkpoint.run_id}' saved under '{run_id}'.")
        stamped = checkpoint.model_copy(update={"updated_at": utcnow()})
        self._store.write(run_id, stamped.model_dump_json())
        return stamped

    def _read(self, run_id: str) -> AgentCheckpoint | None:
        raw = self._store.read(run_id)
        return AgentCheckpoint.model_validate_json(raw) if raw is not None else None

    def _read_required(self, run_id: str) -> AgentCheckpoint:
        checkpoint = self._read(run_id)
        if checkpoint is None:
            raise RunNotFoundError(f"Agent run '{run_id}' not found.")
        return checkpoint

    def load_with_resets(self, run_id: str) -> tuple[AgentCheckpoint | None, list[str]]:
        """
        Latest checkpoint of the run plus the ids of steps reset on load.

        A step found running was interrupted mid-flight and has no reliable
        result, so it comes back as pending with its attempts untouched.
        """
        checkpoint = self._read(run_id)
        if checkpoint is None:
            return None, []
        plan = PlanModel(checkpoint.steps)
        reset = plan.normalize_interrupted()
        if reset:
            checkpoint = checkpoint.model_copy(update={"steps": plan.steps()})
        return checkpoint, reset

    def load(self, run_id: str) -> AgentCheckpoint | None:
        return self.load_with_resets(run_id)[0]

    def require(self, run_id: str) -> AgentCheckpoint:
        checkpoint = self.load(run_id)
        if checkpoint is None:
            raise RunNotFoundError(f"Agent run '{run_id}' not found.")
        return checkpoint

    def list_run_ids(self) -> list[str]:
        return self._store.list_run_ids()

    def request_resume(self, run_id: str) -> AgentCheckpoint:
        checkpoint = self._read_required(run_id)
        return self.save(run_id, checkpoint.model_copy(update={"resume_requested_at": utcnow()}))

    def grant_approval(self, run_id: str, step_id: str) -> AgentCheckpoint:
        checkpoint = self._read_required(run_id)
        if checkpoint.approval_requested_step_id != step_id:
            raise ApprovalMismatchError(
                f"Run '{run_id}' is not awaiting approval for step '{step_id}'."
            )
        return self.save(
            run_id,
            checkpoint.model_copy(
                update={"approval_granted_step_id": step_id, "resume_requested_at": utcnow()}
            ),
        )
