import pytest

from agent_engine.checkpoint import (
    CheckpointManager,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    build_brief,
)
from agent_engine.errors import ApprovalMismatchError, RunNotFoundError
from agent_engine.models import AgentCheckpoint, AgentPlanSettings, PlanStep, RunStatus, StepStatus


def _checkpoint(run_id="run-1", **kwargs):
    steps = [
        PlanStep(id="stepA", title="Open homepage", tool="playwright-goto", status=StepStatus.COMPLETED),
        PlanStep(id="stepB", title="Capture page", tool="playwright-snapshot", status=StepStatus.RUNNING, attempts=1),
    ]
    return AgentCheckpoint(run_id=run_id, goal="check homepage status", steps=steps, active_step_id="stepB", **kwargs)


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------

def test_load_unknown_run_returns_none():
    manager = CheckpointManager()
    assert manager.load("missing") is None
    with pytest.raises(RunNotFoundError):
        manager.require("missing")

def test_running_step_comes_back_pending_with_attempts_unchanged():
    manager = CheckpointManager()
    manager.save("run-1", _checkpoint())

    checkpoint, reset = manager.load_with_resets("run-1")
    step = next(s for s in checkpoint.steps if s.id == "stepB")
    assert reset == ["stepB"]
    assert step.status == StepStatus.PENDING
    assert step.attempts == 1
    assert checkpoint.active_step_id == "stepB"

def test_save_replaces_whole_document_and_stamps_time():
    manager = CheckpointManager()
    first = manager.save("run-1", _checkpoint(settings=AgentPlanSettings(max_steps=4)))
    second = manager.save("run-1", first.model_copy(update={"status": RunStatus.COMPLETED, "steps": []}))

    loaded = manager.load("run-1")
    assert loaded.status == RunStatus.COMPLETED
    assert loaded.steps == []
    assert loaded.settings.max_steps == 4
    assert second.updated_at >= first.updated_at

def test_save_under_another_run_id_is_refused():
    with pytest.raises(ValueError):
        CheckpointManager().save("run-2", _checkpoint("run-1"))

def test_file_store_round_trip(tmp_path):
    manager = CheckpointManager(FileCheckpointStore(tmp_path))
    manager.save("run-1", _checkpoint())
    manager.save("run-2", _checkpoint("run-2"))

    assert manager.list_run_ids() == ["run-1", "run-2"]
    assert manager.load("run-2").goal == "check homepage status"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["run-1.json", "run-2.json"]

def test_file_store_rejects_unusable_run_ids(tmp_path):
    store = FileCheckpointStore(tmp_path)
    with pytest.raises(ValueError):
        store.write("../", "{}")

def test_in_memory_store_lists_runs():
    store = InMemoryCheckpointStore()
    store.write("a", "{}")
    store.write("b", "{}")
    assert store.list_run_ids() == ["a", "b"]


# ---------------------------------------------------------------------------
# Approval gate
# ---------------------------------------------------------------------------

def test_grant_approval_requires_matching_step():
    manager = CheckpointManager()
    manager.save("run-1", _checkpoint(status=RunStatus.WAITING_HUMAN, approval_requested_step_id="stepB"))

    with pytest.raises(ApprovalMismatchError):
        manager.grant_approval("run-1", "stepA")

    granted = manager.grant_approval("run-1", "stepB")
    assert granted.approval_granted_step_id == "stepB"
    assert granted.resume_requested_at is not None

def test_request_resume_stamps_timestamp():
    manager = CheckpointManager()
    manager.save("run-1", _checkpoint())
    assert manager.request_resume("run-1").resume_requested_at is not None


# ---------------------------------------------------------------------------
# Briefs
# ---------------------------------------------------------------------------

def test_build_brief_summarizes_progress():
    steps = [
        PlanStep(id="a", title="Open homepage", status=StepStatus.COMPLETED),
        PlanStep(id="b", title="Log in", status=StepStatus.FAILED, attempts=2, error="bad password"),
        PlanStep(id="c", title="Read inbox"),
    ]
    brief, next_actions, risks = build_brief(steps)
    assert brief == "1/3 steps completed; last done: Open homepage; 1 failed."
    assert next_actions == ["Read inbox"]
    assert risks == ["Log in: bad password"]
