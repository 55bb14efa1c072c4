import asyncio
from datetime import timedelta

import pytest

from agent_engine.checkpoint import CheckpointManager, FileCheckpointStore, InMemoryCheckpointStore
from agent_engine.errors import ApprovalMismatchError, ReasonerError
from agent_engine.models import (
    AgentCheckpoint,
    AgentPlanPreferences,
    AgentPlanSettings,
    PlannerCritique,
    PlanProposal,
    PlanStep,
    ReasonerDecision,
    RunStatus,
    StepPhase,
    StepStatus,
    ToolResult,
    ValidationFailure,
    utcnow,
)

URL = "https://example.com"

# Settings that keep the loop guard and re-planning out of scenarios not about them.
QUIET = AgentPlanSettings(loop_guard_threshold=5, max_replan_calls=0)


def _goto(step_id="stepA", **kwargs):
    return PlanStep(id=step_id, title="Open homepage", tool="playwright-goto", args={"url": URL}, **kwargs)


def _snapshot(step_id="stepB", **kwargs):
    return PlanStep(id=step_id, title="Capture homepage", tool="playwright-snapshot", **kwargs)


def _types(engine, run_id):
    return [entry.metadata.get("type") for entry in engine.get_audits(run_id, limit=500)]


def _step(outcome, step_id):
    return next(step for step in outcome.steps if step.id == step_id)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

def test_homepage_scenario_completes(make_engine, tool):
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto(), _snapshot(depends_on=["stepA"])])])

    outcome = asyncio.run(engine.run("check homepage status"))

    assert outcome.status == RunStatus.COMPLETED
    assert [s.status for s in outcome.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert [call[0] for call in tool.calls] == ["goto", "snapshot"]

    snapshots = engine.get_snapshots(outcome.run_id, step_id="stepB")
    assert len(snapshots) == 1
    assert _step(outcome, "stepB").snapshot_id == snapshots[0].id
    assert engine.get_snapshot(snapshots[0].id).step_id == "stepB"
    assert tool.closed == [outcome.run_id]

    types = _types(engine, outcome.run_id)
    assert types.count("tool-action") == 2
    assert "run-started" in types
    assert "run-finished" in types
    assert len(types) > 2

    checkpoint = engine.get_checkpoint(outcome.run_id)
    assert checkpoint.status == RunStatus.COMPLETED
    assert checkpoint.active_step_id is None
    assert checkpoint.checkpoint_brief.startswith("2/2 steps completed")

def test_log_count_tracks_step_audits(make_engine):
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto()])])
    outcome = asyncio.run(engine.run("check homepage status"))
    assert _step(outcome, "stepA").log_count == len(engine.get_audits(outcome.run_id, step_id="stepA"))

def test_reasoning_step_uses_decision_as_response(make_engine, tool):
    engine, _ = make_engine(
        plans=[PlanProposal(steps=[PlanStep(id="think", title="Summarize the page")])],
        decisions=[ReasonerDecision(action="respond", reason="The homepage is up.")],
    )
    outcome = asyncio.run(engine.run("check homepage status"))
    assert outcome.status == RunStatus.COMPLETED
    assert outcome.response == "The homepage is up."
    assert tool.calls == []


# ---------------------------------------------------------------------------
# Failures and retries
# ---------------------------------------------------------------------------

def test_exhausted_step_fails_terminally(make_engine, tool):
    tool.fail_actions = {"goto"}
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto("stepX", max_attempts=2)])])

    outcome = asyncio.run(engine.run("check homepage status", settings=QUIET))

    step = _step(outcome, "stepX")
    assert step.attempts == 2
    assert step.status == StepStatus.FAILED
    assert step.error == "goto failed"
    assert [call[0] for call in tool.calls] == ["goto", "goto"]
    assert outcome.status == RunStatus.FAILED

def test_independent_steps_continue_after_failure(make_engine):
    engine, _ = make_engine(
        plans=[PlanProposal(steps=[_snapshot("stepB", success_criteria="shows a login form"), _goto("stepA")])],
        verdicts={"stepB": ["failed", "failed"]},
    )
    outcome = asyncio.run(engine.run("check homepage status", settings=QUIET))

    assert _step(outcome, "stepB").status == StepStatus.FAILED
    assert _step(outcome, "stepA").status == StepStatus.COMPLETED
    assert outcome.status == RunStatus.PARTIAL_FAILURE
    assert "Success criteria not met" in _step(outcome, "stepB").error

def test_failed_attempt_triggers_replan(make_engine, tool):
    tool.fail_actions = {"goto"}
    fixed = PlanStep(id="stepA", title="Open homepage over http", tool="snapshot")
    engine, reasoner = make_engine(plans=[PlanProposal(steps=[_goto()]), PlanProposal(steps=[fixed])])

    outcome = asyncio.run(engine.run("check homepage status", settings=AgentPlanSettings(loop_guard_threshold=5)))

    assert [c.mode for c in reasoner.contexts] == ["initial", "failure"]
    assert reasoner.contexts[1].failed_step_id == "stepA"
    assert reasoner.contexts[1].last_error == "goto failed"
    step = _step(outcome, "stepA")
    assert step.title == "Open homepage over http"
    assert step.attempts == 1
    assert outcome.status == RunStatus.COMPLETED

def test_stalled_run_fails_without_replan_budget(make_engine, tool):
    tool.fail_actions = {"goto"}
    engine, _ = make_engine(
        plans=[PlanProposal(steps=[_goto(max_attempts=1), _snapshot(depends_on=["stepA"])])],
    )
    outcome = asyncio.run(engine.run("check homepage status", settings=QUIET))

    assert outcome.status == RunStatus.FAILED
    assert outcome.error.startswith("Run stalled")
    assert _step(outcome, "stepB").status == StepStatus.PENDING
    assert outcome.error_id
    finished = engine.get_audits(outcome.run_id, limit=500)[0]
    assert finished.metadata["type"] == "run-finished"
    assert finished.metadata["errorId"] == outcome.error_id
    assert engine.get_checkpoint(outcome.run_id).last_error_id == outcome.error_id

def test_stalled_run_replans_around_failed_step(make_engine, tool):
    tool.fail_actions = {"goto"}
    rerouted = _snapshot()
    engine, reasoner = make_engine(
        plans=[
            PlanProposal(steps=[_goto(max_attempts=1), _snapshot(depends_on=["stepA"])]),
            PlanProposal(),
            PlanProposal(steps=[rerouted]),
        ],
    )

    outcome = asyncio.run(
        engine.run("check homepage status", settings=AgentPlanSettings(loop_guard_threshold=5, max_replan_calls=2))
    )

    assert [c.mode for c in reasoner.contexts] == ["initial", "failure", "stalled"]
    assert _step(outcome, "stepA").status == StepStatus.FAILED
    assert _step(outcome, "stepB").status == StepStatus.COMPLETED
    assert _step(outcome, "stepB").depends_on == []
    assert outcome.status == RunStatus.PARTIAL_FAILURE
    assert outcome.error == "goto failed"
    step_error_ids = [e.metadata.get("errorId") for e in engine.get_audits(outcome.run_id, step_id="stepA")]
    assert outcome.error_id in step_error_ids

def test_failure_replan_merges_alternative_branch(make_engine, tool):
    tool.fail_actions = {"goto"}
    mirror = _snapshot("mirror", phase=StepPhase.RECOVER)
    engine, reasoner = make_engine(
        plans=[PlanProposal(steps=[_goto(max_attempts=1)]), PlanProposal(alternatives=[mirror])],
    )

    outcome = asyncio.run(engine.run("check homepage status", settings=AgentPlanSettings(loop_guard_threshold=5)))

    assert [c.mode for c in reasoner.contexts] == ["initial", "failure"]
    assert _step(outcome, "mirror").status == StepStatus.COMPLETED
    assert _step(outcome, "mirror").phase == StepPhase.RECOVER
    assert outcome.status == RunStatus.PARTIAL_FAILURE

def test_cadence_replan_after_completions(make_engine):
    steps = [_goto("a"), _snapshot("b"), PlanStep(id="c", title="Summarize")]
    engine, reasoner = make_engine(plans=[PlanProposal(steps=steps)])

    asyncio.run(engine.run("check homepage status", settings=AgentPlanSettings(replan_every_steps=2, loop_guard_threshold=5)))

    assert [c.mode for c in reasoner.contexts] == ["initial", "cadence"]
    assert [s.id for s in reasoner.contexts[1].previous_plan] == ["a", "b", "c"]


# ---------------------------------------------------------------------------
# Loop guard
# ---------------------------------------------------------------------------

def test_loop_signal_backs_off_and_inserts_recovery_step(make_engine, tool):
    tool.fail_actions = {"goto"}
    engine, reasoner = make_engine(plans=[PlanProposal(steps=[_goto("stepX")])])

    outcome = asyncio.run(engine.run("check homepage status"))

    assert engine.sleeps == [2.0]
    assert "loop-detected" in _types(engine, outcome.run_id)
    assert [c.mode for c in reasoner.contexts] == ["initial", "failure", "loop"]
    assert reasoner.contexts[2].loop_signal.pattern == "repeat-same-step"

    recover = [s for s in outcome.steps if s.phase == StepPhase.RECOVER]
    assert len(recover) == 1
    assert recover[0].status == StepStatus.COMPLETED
    assert outcome.status == RunStatus.PARTIAL_FAILURE
    assert engine.get_checkpoint(outcome.run_id).loop_streak == 0


# ---------------------------------------------------------------------------
# Human approval
# ---------------------------------------------------------------------------

def test_risky_step_waits_for_approval(make_engine, tool):
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto()])])
    preferences = AgentPlanPreferences(require_human_approval=True)

    async def scenario():
        run_id = engine.start_run("Log in to the admin dashboard", preferences=preferences)
        first = await engine.resume_run(run_id)
        still_waiting = await engine.resume_run(run_id)
        with pytest.raises(ApprovalMismatchError):
            engine.approve_step(run_id, "someOtherStep")
        engine.approve_step(run_id, first.approval_step_id)
        return first, still_waiting, await engine.resume_run(run_id)

    first, still_waiting, final = asyncio.run(scenario())

    assert first.status == RunStatus.WAITING_HUMAN
    assert first.approval_step_id == "stepA"
    assert still_waiting.status == RunStatus.WAITING_HUMAN
    assert final.status == RunStatus.COMPLETED
    assert [call[0] for call in tool.calls] == ["goto"]

    checkpoint = engine.get_checkpoint(final.run_id)
    assert checkpoint.approval_requested_step_id is None
    assert checkpoint.resume_processed_at is not None

def test_wait_human_decision_suspends_without_consuming_attempt(make_engine):
    engine, _ = make_engine(
        plans=[PlanProposal(steps=[PlanStep(id="otp", title="Enter the one-time code")])],
        decisions=[ReasonerDecision(action="wait_human", reason="A person must read the code.")],
    )

    async def scenario():
        waiting = await engine.run("open my account")
        engine.approve_step(waiting.run_id, "otp")
        return waiting, await engine.resume_run(waiting.run_id)

    waiting, final = asyncio.run(scenario())

    assert waiting.status == RunStatus.WAITING_HUMAN
    assert _step(waiting, "otp").attempts == 0
    assert _step(waiting, "otp").status == StepStatus.PENDING
    assert final.status == RunStatus.COMPLETED

def test_wait_human_without_plan_holds_until_approved(make_engine, tool):
    engine, _ = make_engine(decisions=[ReasonerDecision(action="wait_human", reason="Which account should be used?")])

    async def scenario():
        waiting = await engine.run("look up my order history")
        still_waiting = await engine.resume_run(waiting.run_id)
        engine.approve_step(waiting.run_id, waiting.approval_step_id)
        return waiting, still_waiting, await engine.resume_run(waiting.run_id)

    waiting, still_waiting, final = asyncio.run(scenario())

    assert waiting.status == RunStatus.WAITING_HUMAN
    assert waiting.approval_step_id == waiting.steps[0].id
    assert still_waiting.status == RunStatus.WAITING_HUMAN
    assert final.status == RunStatus.COMPLETED
    assert final.response == "Answered from the page."
    assert tool.closed == [final.run_id]


# ---------------------------------------------------------------------------
# Cancellation and resumption
# ---------------------------------------------------------------------------

def test_cancel_idle_run_marks_it_stopped(make_engine, tool):
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto()])])

    async def scenario():
        run_id = engine.start_run("check homepage status")
        assert engine.cancel_run(run_id) is True
        return await engine.resume_run(run_id)

    outcome = asyncio.run(scenario())
    assert outcome.status == RunStatus.STOPPED
    assert tool.calls == []
    assert engine.cancel_run(outcome.run_id) is False

def test_cancel_during_run_stops_at_next_iteration(make_engine, tool):
    engine, _ = make_engine(plans=[PlanProposal(steps=[_goto(), _snapshot()])])
    tool.on_call = engine.cancel_run

    outcome = asyncio.run(engine.run("check homepage status"))

    assert outcome.status == RunStatus.STOPPED
    assert _step(outcome, "stepA").status == StepStatus.COMPLETED
    assert _step(outcome, "stepB").status == StepStatus.PENDING
    assert len(tool.calls) == 1

def test_resume_after_crash_resets_running_step(make_engine, tool):
    engine, _ = make_engine()
    crashed = AgentCheckpoint(
        run_id="crashed-run",
        goal="check homepage status",
        status=RunStatus.RUNNING,
        steps=[_goto(status=StepStatus.RUNNING, attempts=1)],
        active_step_id="stepA",
    )
    engine.checkpoints.save("crashed-run", crashed)

    outcome = asyncio.run(engine.resume_run("crashed-run"))

    assert outcome.status == RunStatus.COMPLETED
    assert _step(outcome, "stepA").attempts == 1
    assert "checkpoint-load" in _types(engine, "crashed-run")

def test_stale_running_runs_are_queued_for_resume(make_engine):
    store = InMemoryCheckpointStore()
    long_ago = utcnow() - timedelta(hours=1)
    for checkpoint in [
        AgentCheckpoint(run_id="stale", goal="check homepage status", status=RunStatus.RUNNING, steps=[_goto()], updated_at=long_ago),
        AgentCheckpoint(run_id="fresh", goal="check homepage status", status=RunStatus.RUNNING, steps=[_goto()]),
        AgentCheckpoint(run_id="done", goal="check homepage status", status=RunStatus.COMPLETED, updated_at=long_ago),
    ]:
        store.write(checkpoint.run_id, checkpoint.model_dump_json())
    engine, _ = make_engine(checkpoints=CheckpointManager(store))

    assert engine.recover_stale_runs() == ["stale"]
    assert engine.get_checkpoint("stale").resume_requested_at is not None
    assert "run-recovered" in _types(engine, "stale")
    assert engine.recover_stale_runs() == []

    outcome = asyncio.run(engine.resume_run("stale"))
    assert outcome.status == RunStatus.COMPLETED

def test_unknown_run_resumes_as_failed(make_engine):
    engine, _ = make_engine()
    outcome = asyncio.run(engine.resume_run("nope"))
    assert outcome.status == RunStatus.FAILED
    assert outcome.error_id


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def test_planner_failure_surfaces_error_id(make_engine):
    engine, _ = make_engine(plans=[ReasonerError("planner offline")])

    outcome = asyncio.run(engine.run("check homepage status", settings=QUIET))

    assert outcome.status == RunStatus.FAILED
    assert "planner offline" in outcome.error
    assert outcome.error_id
    error_ids = [e.metadata.get("errorId") for e in engine.get_audits(outcome.run_id)]
    assert outcome.error_id in error_ids

def test_planner_fault_is_retried_within_budget(make_engine):
    engine, reasoner = make_engine(plans=[RuntimeError("socket closed"), PlanProposal(steps=[_goto()])])

    outcome = asyncio.run(engine.run("check homepage status"))

    assert outcome.status == RunStatus.COMPLETED
    assert "planner-error" in _types(engine, outcome.run_id)
    assert engine.get_checkpoint(outcome.run_id).replan_calls == 1

def test_safety_checks_run_first(make_engine):
    engine, reasoner = make_engine(
        plans=[PlanProposal(steps=[_goto()])],
        critique=PlannerCritique(safety_checks=["Confirm the page is public."], risks=["Page may require login."]),
    )
    outcome = asyncio.run(engine.run("check homepage status"))

    assert outcome.steps[0].title == "Safety check: Confirm the page is public."
    assert outcome.steps[0].phase == StepPhase.OBSERVE
    assert outcome.status == RunStatus.COMPLETED
    assert reasoner.critiqued == [["stepA"]]

def test_success_signals_become_verify_steps_after_the_plan(make_engine):
    engine, reasoner = make_engine(
        plans=[PlanProposal(steps=[_goto(), _snapshot()], success_signals=["Example Domain heading"])],
    )
    outcome = asyncio.run(engine.run("check homepage status"))

    verify = outcome.steps[-1]
    assert verify.title == "Verify: Example Domain heading"
    assert verify.phase == StepPhase.VERIFY
    assert verify.tool is None
    assert verify.status == StepStatus.COMPLETED
    started = [
        e.metadata["stepId"]
        for e in reversed(engine.get_audits(outcome.run_id, limit=500))
        if e.metadata.get("type") == "step-start"
    ]
    assert started == ["stepA", "stepB", verify.id]
    assert reasoner.critiqued == [["stepA", "stepB"]]

def test_empty_plan_answers_directly(make_engine, tool):
    engine, _ = make_engine(decisions=[ReasonerDecision(action="respond", reason="2 + 2 = 4")])
    outcome = asyncio.run(engine.run("what is 2 + 2"))
    assert outcome.status == RunStatus.COMPLETED
    assert outcome.response == "2 + 2 = 4"
    assert tool.calls == []

def test_playbook_reaches_next_run(make_engine, tool):
    tool.fail_actions = {"goto"}
    engine, reasoner = make_engine(
        plans=[PlanProposal(steps=[_goto(max_attempts=1)]), PlanProposal(steps=[_snapshot()])],
    )

    async def scenario():
        await engine.run("check homepage status", settings=QUIET)
        await engine.run("check homepage status again", settings=QUIET)

    asyncio.run(scenario())

    assert reasoner.contexts[0].playbook is None
    playbook = reasoner.contexts[1].playbook
    assert playbook.startswith("Self-improvement playbook:")
    assert "Avoid: Open homepage: goto failed" in playbook


# ---------------------------------------------------------------------------
# Control surface
# ---------------------------------------------------------------------------

def test_corrupt_checkpoint_file_does_not_break_new_runs(make_engine, tmp_path):
    (tmp_path / "oldrun.json").write_text("{not json", encoding="utf-8")
    engine, _ = make_engine(
        plans=[PlanProposal(steps=[_goto()])],
        checkpoints=CheckpointManager(FileCheckpointStore(tmp_path)),
    )

    async def scenario():
        return await engine.run("check homepage status"), await engine.resume_run("oldrun")

    fresh, corrupt = asyncio.run(scenario())

    assert fresh.status == RunStatus.COMPLETED
    assert corrupt.status == RunStatus.FAILED
    assert corrupt.error.startswith("Checkpoint unreadable")
    assert corrupt.error_id
    types = _types(engine, "oldrun")
    assert "checkpoint-error" in types
    assert "run-error" in types

def test_request_control(make_engine, tool):
    engine, _ = make_engine()

    async def scenario():
        run_id = engine.start_run("check homepage status")
        unknown = await engine.request_control("nope", "goto", {"url": URL})
        direct = await engine.request_control(run_id, "goto", {"url": URL})
        invalid = await engine.request_control(run_id, "click", {})
        return unknown, direct, invalid

    unknown, direct, invalid = asyncio.run(scenario())

    assert isinstance(unknown, ValidationFailure)
    assert unknown.error == "Agent run not found."
    assert isinstance(direct, ToolResult) and direct.ok
    assert isinstance(invalid, ValidationFailure)
    assert len(tool.calls) == 1

def test_query_limits_are_clamped(make_engine):
    engine, _ = make_engine()
    run_id = engine.start_run("check homepage status")
    for i in range(20):
        engine.audit_log.append(run_id, "info", f"event {i}", {"stepId": "s1" if i % 2 else "s2"})

    assert len(engine.get_audits(run_id, limit=1)) == 10
    assert len(engine.get_audits(run_id, limit=10_000)) == 21
    assert engine.get_audits(run_id)[0].message == "event 19"
    assert len(engine.get_audits(run_id, step_id="s1")) == 10
    assert engine.get_snapshots(run_id, limit=0) == []

def test_start_run_requires_goal(make_engine):
    engine, _ = make_engine()
    with pytest.raises(ValueError):
        engine.start_run("   ")
