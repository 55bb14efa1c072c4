# scheduler.py
# The per-run execution loop.
#
# One ExecutionLoop drives one run: it alone mutates that run's PlanModel,
# executes at most one step at a time, and checkpoints after every change to
# the active step or a step status. Control flow:
#
#   load checkpoint → (initial plan) → loop:
#     cancelled? → ready step? → approval gate → dispatch (gateway | reasoner)
#     → judge → mark → audit + checkpoint → loop guard → re-plan cadence
#
# Faults never escape run(): they end the run as FAILED with an error id.

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from agent_engine.audit import AuditLog
from agent_engine.checkpoint import CheckpointManager, build_brief
from agent_engine.config import EngineConfig
from agent_engine.display import Display
from agent_engine.errors import PlanValidationError, ReasonerError, new_error_id
from agent_engine.gateway import ToolGateway, resolve_action
from agent_engine.loop_guard import STEP_RESULT, LoopGuard, history_from_audit
from agent_engine.models import (
    AgentPlanSettings,
    DecisionContext,
    DispatchResult,
    LoopSignal,
    PlanningContext,
    PlanProposal,
    PlanStep,
    ReasonerDecision,
    RunOutcome,
    RunStatus,
    StepPhase,
    StepStatus,
    ToolResult,
    ValidationFailure,
    utcnow,
)
from agent_engine.plan import PlanModel
from agent_engine.reasoner import Reasoner
from agent_engine.snapshots import SnapshotStore

T = TypeVar("T")

APPROVAL_PATTERN = re.compile(
    r"login|log in|sign in|signup|register|checkout|purchase|pay|payment|card|delete|remove|"
    r"cancel|unsubscribe|transfer|withdraw|submit order|place order|invoice|billing|confirm|"
    r"approve|admin",
    re.IGNORECASE,
)

SUMMARY_EVERY_OUTCOMES = 4
MAX_SAFETY_STEPS = 3
MAX_VERIFY_STEPS = 3
OBSERVATION_LIMIT = 2000


def requires_human_approval(step: PlanStep, goal: str) -> bool:
    """Browser steps touching accounts, money or irreversible changes need a person."""
    if step.tool is None:
        return False
    return bool(APPROVAL_PATTERN.search(f"{step.title} {goal}"))


def dispatch_budget(settings: AgentPlanSettings) -> int:
    return settings.max_steps * settings.max_step_attempts


class ExecutionLoop:
    def __init__(
        self,
        run_id: str,
        reasoner: Reasoner,
        gateway: ToolGateway,
        checkpoints: CheckpointManager,
        audit_log: AuditLog,
        snapshots: SnapshotStore,
        config: EngineConfig,
        display: Display | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        should_stop: Callable[[], bool] = lambda: False,
        playbook: str | None = None,
    ) -> None:
        self.run_id = run_id
        self._reasoner = reasoner
        self._gateway = gateway
        self._checkpoints = checkpoints
        self._audit_log = audit_log
        self._snapshots = snapshots
        self._config = config
        self._display = display or Display(enabled=False)
        self._sleep = sleep
        self._should_stop = should_stop
        self._playbook = playbook
        self.state = None
        self.plan: PlanModel | None = None
        self.guard: LoopGuard | None = None
        self._current_url: str | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> RunOutcome:
        """Drive the run until it finishes or suspends. Always returns an outcome."""
        try:
            return await self._run()
        except Exception as exc:
            error_id = getattr(exc, "error_id", None) or new_error_id()
            error = str(exc) or exc.__class__.__name__
            self._display.fault("Run failed", error, error_id)
            self._audit("error", "Run failed.", {"type": "run-error", "error": error, "errorId": error_id})
            if self.state is None:
                return RunOutcome(run_id=self.run_id, status=RunStatus.FAILED, error=error, error_id=error_id)
            return self._finish(RunStatus.FAILED, error=error, error_id=error_id)

    async def _run(self) -> RunOutcome:
        checkpoint, reset = self._checkpoints.load_with_resets(self.run_id)
        if checkpoint is None:
            error_id = new_error_id()
            self._audit("error", "Run not found.", {"type": "run-error", "errorId": error_id})
            return RunOutcome(
                run_id=self.run_id,
                status=RunStatus.FAILED,
                error="Agent run not found.",
                error_id=error_id,
            )
        self.state = checkpoint
        if checkpoint.status.is_terminal:
            return self._outcome()

        settings = checkpoint.settings
        self.plan = PlanModel(checkpoint.steps, dispatch_budget=dispatch_budget(settings))
        self.guard = LoopGuard.from_settings(settings, streak=checkpoint.loop_streak)
        latest = self._snapshots.latest(self.run_id)
        self._current_url = latest.url if latest else None

        self._display.run_started(self.run_id, checkpoint.goal, resumed=bool(checkpoint.steps))
        if reset:
            self._audit(
                "info",
                "Checkpoint loaded.",
                {"type": "checkpoint-load", "activeStepId": checkpoint.active_step_id, "reset": reset},
            )
            self._display.checkpoint_loaded(self.run_id, reset)

        if checkpoint.status == RunStatus.WAITING_HUMAN and checkpoint.approval_requested_step_id:
            if checkpoint.approval_granted_step_id != checkpoint.approval_requested_step_id:
                return self._outcome()
            self._audit(
                "info",
                "Approval granted.",
                {"type": "approval-granted", "stepId": checkpoint.approval_granted_step_id},
            )

        self.state.status = RunStatus.RUNNING
        if self.state.resume_requested_at is not None:
            self.state.resume_processed_at = utcnow()
        self._persist()
        self._audit("info", "Agent loop started.", {"type": "loop-start", "activeStepId": self.state.active_step_id})

        if len(self.plan) == 0:
            outcome = await self._initial_plan()
            if outcome is not None:
                return outcome
        return await self._loop()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _loop(self) -> RunOutcome:
        # a granted step is still the next ready step after resume
        while True:
            if self._should_stop():
                self._audit("warning", "Run cancelled.", {"type": "run-cancelled"})
                return self._finish(RunStatus.STOPPED, error="Run cancelled.")

            step = self.plan.ready_step()
            if step is None:
                if self.plan.budget_exhausted() and self.plan.has_pending():
                    return self._finish_from_plan(error="Step budget exhausted.")
                if self.plan.is_stalled():
                    if await self._replan("stalled"):
                        continue
                    return self._finish(
                        RunStatus.FAILED,
                        error="Run stalled: pending steps have unmet dependencies.",
                    )
                return self._finish_from_plan()

            if self._needs_approval(step):
                return self._suspend_for_human(step, "Step requires human approval before it runs.")

            outcome = await self._execute_step(step)
            if outcome is not None:
                return outcome

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _reasoner_call(self, call: Awaitable[T], label: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._config.reasoner_timeout_s)
        except ReasonerError:
            raise
        except Exception as exc:
            raise ReasonerError(f"Reasoner {label} failed: {exc or exc.__class__.__name__}") from exc

    def _settings(self) -> AgentPlanSettings:
        return self.state.settings

    def _apply_proposal(self, proposal: PlanProposal) -> None:
        if proposal.task_type:
            self.state.task_type = proposal.task_type
        if proposal.settings_overrides:
            settings = self.state.settings.with_overrides(proposal.settings_overrides)
            if settings != self.state.settings:
                self.state.settings = settings
                self.plan.dispatch_budget = dispatch_budget(settings)
                self.guard = LoopGuard.from_settings(settings, streak=self.guard.streak)
                self._audit(
                    "info",
                    "Settings overridden by re-plan.",
                    {"type": "settings-override", "settings": settings.model_dump()},
                )

    async def _self_check(self, steps: list[PlanStep]):
        if self.state.self_checks >= self._settings().max_self_checks:
            return None
        self.state.self_checks += 1
        try:
            critique = await self._reasoner_call(self._reasoner.critique(steps), "critique")
        except ReasonerError as exc:
            self._audit(
                "warning",
                "Plan critique failed.",
                {"type": "critique-error", "error": str(exc), "errorId": exc.error_id},
            )
            return None
        if critique.risks:
            risks = list(dict.fromkeys([*(self.state.checkpoint_risks or []), *critique.risks]))
            self.state.checkpoint_risks = risks[:MAX_SAFETY_STEPS * 2]
        self._audit("info", "Plan critiqued.", {"type": "critique", **critique.model_dump()})
        return critique

    def _safety_steps(self, checks: list[str]) -> list[PlanStep]:
        return [
            PlanStep(
                title=f"Safety check: {check}",
                phase=StepPhase.OBSERVE,
                max_attempts=self._settings().max_step_attempts,
            )
            for check in checks[:MAX_SAFETY_STEPS]
        ]

    def _verification_steps(self, signals: list[str], planned: list[PlanStep]) -> list[PlanStep]:
        # below every planned step so they run once the plan has played out
        priority = min((step.priority for step in planned), default=0) - 1
        return [
            PlanStep(
                title=f"Verify: {signal}",
                phase=StepPhase.VERIFY,
                priority=priority,
                max_attempts=self._settings().max_step_attempts,
            )
            for signal in signals[:MAX_VERIFY_STEPS]
        ]

    async def _initial_plan(self) -> RunOutcome | None:
        settings = self._settings()
        context = PlanningContext(
            mode="initial",
            playbook=self._playbook,
            preferences=self.state.preferences,
            max_steps=settings.max_steps,
            max_step_attempts=settings.max_step_attempts,
            observation=self._latest_observation(),
        )
        while True:
            try:
                proposal = await self._reasoner_call(self._reasoner.plan(self.state.goal, context), "plan")
                planned = (proposal.steps or proposal.alternatives)[: settings.max_steps]
                steps = planned
                if planned:
                    critique = await self._self_check(planned)
                    if critique and critique.safety_checks:
                        steps = self._safety_steps(critique.safety_checks) + steps
                    steps = steps + self._verification_steps(proposal.success_signals, planned)
                applied = self.plan.add_or_replace_steps(steps)
                break
            except (ReasonerError, PlanValidationError) as exc:
                error_id = getattr(exc, "error_id", None) or new_error_id()
                self._audit(
                    "error",
                    "Planner failed.",
                    {"type": "planner-error", "error": str(exc), "errorId": error_id},
                )
                self._display.fault("Planner failed", str(exc), error_id)
                if self.state.replan_calls >= settings.max_replan_calls:
                    raise
                self.state.replan_calls += 1

        self._apply_proposal(proposal)
        if proposal.summary:
            self.state.checkpoint_brief = proposal.summary
        self._audit(
            "info",
            "Plan created.",
            {
                "type": "plan",
                "summary": proposal.summary,
                "taskType": proposal.task_type,
                "steps": [step.model_dump(mode="json") for step in self.plan.steps()],
            },
        )
        self._display.plan_applied(self.plan.steps(), "initial", applied, [])
        if self.plan.steps():
            self.state.active_step_id = None
            self._persist()
            return None
        return await self._handle_empty_plan()

    async def _handle_empty_plan(self) -> RunOutcome | None:
        """No steps proposed: let the reasoner answer, defer to a person, or act once."""
        placeholder = PlanStep(title=self.state.goal, max_attempts=self._settings().max_step_attempts)
        decision = await self._reasoner_call(
            self._reasoner.decide(DecisionContext(goal=self.state.goal, step=placeholder)),
            "decide",
        )
        self._audit(
            "info",
            "Decision made without a plan.",
            {"type": "decision", "action": decision.action, "reason": decision.reason},
        )
        if decision.action == "respond":
            self.state.response = decision.reason
            return self._finish(RunStatus.COMPLETED)
        if decision.action == "wait_human":
            # the placeholder becomes the step awaiting approval
            self.plan.add_or_replace_steps([placeholder])
            return self._suspend_for_human(placeholder, decision.reason or "Reasoner asked for human input.")
        self.plan.add_or_replace_steps(
            [placeholder.model_copy(update={"tool": decision.tool_name or "snapshot"})]
        )
        self._persist()
        return None

    async def _replan(
        self,
        mode: str,
        failed_step: PlanStep | None = None,
        loop_signal: LoopSignal | None = None,
    ) -> bool:
        """One bounded re-planning pass. True when at least one step was applied."""
        settings = self._settings()
        if self.state.replan_calls >= settings.max_replan_calls:
            self._audit("warning", "Re-plan budget exhausted.", {"type": "replan-skipped", "mode": mode})
            return False
        self.state.replan_calls += 1
        context = PlanningContext(
            mode=mode,
            preferences=self.state.preferences,
            max_steps=settings.max_steps,
            max_step_attempts=settings.max_step_attempts,
            previous_plan=self.plan.steps(),
            last_error=self.state.last_error,
            failed_step_id=failed_step.id if failed_step else None,
            loop_signal=loop_signal,
            observation=self._latest_observation(),
        )
        try:
            proposal = await self._reasoner_call(self._reasoner.plan(self.state.goal, context), "re-plan")
            steps = proposal.steps
            if mode == "failure":
                steps = steps + proposal.alternatives
            elif not steps:
                steps = proposal.alternatives
            applied = self.plan.add_or_replace_steps(steps[: settings.max_steps])
        except (ReasonerError, PlanValidationError) as exc:
            error_id = getattr(exc, "error_id", None) or new_error_id()
            self._audit(
                "error",
                "Re-plan failed.",
                {"type": "replan-error", "mode": mode, "error": str(exc), "errorId": error_id},
            )
            self._display.fault("Re-plan failed", str(exc), error_id)
            self._persist()
            return False

        self._apply_proposal(proposal)
        rejected = list(self.plan.rejected_ids)
        if applied:
            await self._self_check([step for step in self.plan.steps() if step.id in applied])
        self._audit(
            "info",
            "Plan updated.",
            {
                "type": "replan",
                "mode": mode,
                "applied": applied,
                "rejected": rejected,
                "failedStepId": failed_step.id if failed_step else None,
                "steps": [{"id": step_id} for step_id in applied],
            },
        )
        self._display.plan_applied(self.plan.steps(), mode, applied, rejected)
        self._persist()
        return bool(applied)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _needs_approval(self, step: PlanStep) -> bool:
        if not self.state.preferences.require_human_approval:
            return False
        if self.state.approval_granted_step_id == step.id:
            return False
        return requires_human_approval(step, self.state.goal)

    def _suspend_for_human(self, step: PlanStep, reason: str) -> RunOutcome:
        self.state.status = RunStatus.WAITING_HUMAN
        self.state.approval_requested_step_id = step.id
        self.state.approval_granted_step_id = None
        self.state.active_step_id = step.id
        self._audit(
            "warning",
            "Human approval required.",
            {"type": "approval-requested", "stepId": step.id, "reason": reason},
        )
        self._display.approval_required(step, reason)
        self._persist()
        return self._outcome()

    async def _dispatch(self, step: PlanStep) -> DispatchResult:
        if step.tool:
            action = resolve_action(step.tool) or step.tool
            return await self._gateway.execute(self.run_id, action, step.args, step_id=step.id)

        decision = await self._reasoner_call(
            self._reasoner.decide(
                DecisionContext(
                    goal=self.state.goal,
                    step=step,
                    observation=self._latest_observation(),
                    last_error=self.state.last_error,
                )
            ),
            "decide",
        )
        if decision.action == "tool":
            action = resolve_action(decision.tool_name) or (decision.tool_name or "")
            return await self._gateway.execute(self.run_id, action, step.args, step_id=step.id)
        return decision

    def _observation(self, result: DispatchResult) -> str:
        if isinstance(result, ReasonerDecision):
            return result.reason
        output = result.output if isinstance(result, ToolResult) else None
        if output is None:
            return ""
        lines = [f"url: {output.url or ''}", f"title: {output.title or ''}"]
        if output.text:
            lines.append(output.text[:OBSERVATION_LIMIT])
        return "\n".join(lines)

    def _latest_observation(self) -> str | None:
        snapshot = self._snapshots.latest(self.run_id)
        if snapshot is None:
            return None
        return f"url: {snapshot.url}\ntitle: {snapshot.title or ''}\n{snapshot.text[:OBSERVATION_LIMIT]}"

    async def _execute_step(self, step: PlanStep) -> RunOutcome | None:
        running = self.plan.mark_running(step.id)
        self.state.active_step_id = step.id
        self._persist()
        self._audit(
            "info",
            "Step started.",
            {
                "type": "step-start",
                "stepId": step.id,
                "title": step.title,
                "tool": step.tool,
                "attempt": step.attempts + 1,
            },
        )
        self._display.step_started(running, self.plan.dispatch_count(), self.plan.dispatch_budget)

        result: DispatchResult | None = None
        error: str | None = None
        error_id: str | None = None
        try:
            result = await self._dispatch(running)
        except ReasonerError as exc:
            error, error_id = f"Reasoner failed: {exc}", exc.error_id
            self._audit(
                "error",
                "Step decision failed.",
                {"type": "decision-error", "stepId": step.id, "error": str(exc), "errorId": error_id},
            )

        if isinstance(result, ReasonerDecision) and result.action == "wait_human":
            self.plan.release(step.id)
            return self._suspend_for_human(running, result.reason or "Reasoner asked for human input.")

        observation = ""
        if isinstance(result, ValidationFailure) or (isinstance(result, ToolResult) and not result.ok):
            verdict, error, error_id = StepStatus.FAILED, result.error, result.error_id
        elif error is not None:
            verdict = StepStatus.FAILED
        else:
            observation = self._observation(result)
            if isinstance(result, ReasonerDecision):
                self.state.response = result.reason
            try:
                judged = await self._reasoner_call(
                    self._reasoner.judge_step_outcome(running, observation), "judge"
                )
            except ReasonerError as exc:
                judged = "failed"
                error, error_id = f"Outcome judgement failed: {exc}", exc.error_id
            verdict = StepStatus.COMPLETED if judged == "completed" else StepStatus.FAILED
            if verdict == StepStatus.FAILED and error is None:
                error = f"Success criteria not met: {step.success_criteria or step.title}"

        if isinstance(result, ToolResult) and result.ok and result.output is not None:
            self._current_url = result.output.url or self._current_url
            if result.output.snapshot_id:
                self.plan.annotate(step.id, snapshot_id=result.output.snapshot_id)

        if verdict == StepStatus.COMPLETED:
            updated = self.plan.mark_completed(step.id)
        else:
            error_id = error_id or new_error_id()
            updated = self.plan.mark_failed(step.id, error)
            self.state.last_error = error
            self.state.last_error_id = error_id
        self.state.active_step_id = None
        if self.state.approval_granted_step_id == step.id:
            self.state.approval_requested_step_id = None
            self.state.approval_granted_step_id = None

        self._audit(
            "info" if verdict == StepStatus.COMPLETED else "warning",
            "Step completed." if verdict == StepStatus.COMPLETED else "Step failed.",
            {
                "type": STEP_RESULT,
                "stepId": step.id,
                "title": step.title,
                "url": self._current_url,
                "status": verdict.value,
                "stepStatus": updated.status.value,
                "attempts": updated.attempts,
                "error": error,
                "errorId": error_id,
            },
        )
        self.plan.annotate(step.id, log_count=self._audit_log.count(self.run_id, step.id))
        self._display.step_finished(updated, observation or error)
        self._maybe_compact(step.id)
        self._persist()

        if await self._check_loop(updated):
            return None
        if verdict == StepStatus.FAILED:
            await self._replan("failure", failed_step=updated)
        elif self._cadence_due():
            await self._replan("cadence")
        return None

    def _cadence_due(self) -> bool:
        every = self._settings().replan_every_steps
        completed = self.plan.completed_count()
        return (
            len(self.plan) >= 3
            and self.plan.has_pending()
            and completed > 0
            and completed % every == 0
        )

    # ------------------------------------------------------------------
    # Loop guard
    # ------------------------------------------------------------------

    async def _check_loop(self, step: PlanStep) -> bool:
        history = history_from_audit(
            self._audit_log, self.run_id, self.guard.history_window(self._config.loop_guard_window)
        )
        verdict = self.guard.evaluate(history)
        self.state.loop_streak = self.guard.streak
        if verdict.signal is None:
            return False

        signal = verdict.signal
        self._audit(
            "warning",
            "Loop detected.",
            {
                "type": "loop-detected",
                "stepId": step.id,
                "reason": signal.reason,
                "pattern": signal.pattern,
                "backoffMs": verdict.backoff_ms,
                "loop": signal.model_dump(mode="json"),
            },
        )
        self._display.loop_detected(signal, verdict.backoff_ms)
        self._persist()
        if verdict.backoff_ms > 0:
            await self._sleep(verdict.backoff_ms / 1000)

        if await self._replan("loop", failed_step=step, loop_signal=signal):
            return True

        pending = [s.priority for s in self.plan.steps() if s.status == StepStatus.PENDING]
        recover = PlanStep(
            title=f"Recover: {signal.reason}",
            phase=StepPhase.RECOVER,
            priority=max(pending, default=0) + 1,
            max_attempts=self._settings().max_step_attempts,
            expected_observation="A different approach than the repeated steps.",
        )
        self.plan.add_or_replace_steps([recover])
        self._audit(
            "info",
            "Recovery step added.",
            {"type": "recover-step", "steps": [{"id": recover.id}], "pattern": signal.pattern},
        )
        self._persist()
        return True

    # ------------------------------------------------------------------
    # Checkpointing and outcomes
    # ------------------------------------------------------------------

    def _audit(self, level: str, message: str, metadata: dict[str, Any]) -> None:
        try:
            self._audit_log.append(self.run_id, level, message, metadata)
        except Exception as exc:
            self._display.fault("Audit write failed", str(exc), metadata.get("errorId") or new_error_id())

    def _persist(self) -> None:
        if self.plan is not None:
            self.state.steps = self.plan.steps()
        if self.guard is not None:
            self.state.loop_streak = self.guard.streak
        try:
            self.state = self._checkpoints.save(self.run_id, self.state)
        except Exception as exc:
            error_id = new_error_id()
            self._display.fault("Checkpoint save failed", str(exc), error_id)
            self._audit(
                "error",
                "Checkpoint save failed.",
                {"type": "checkpoint-error", "error": str(exc), "errorId": error_id},
            )

    def _refresh_brief(self, step_id: str | None) -> None:
        brief, next_actions, risks = build_brief(self.plan.steps())
        self.state.checkpoint_brief = brief
        self.state.checkpoint_next_actions = next_actions
        self.state.checkpoint_risks = risks or self.state.checkpoint_risks
        self.state.checkpoint_step_id = step_id
        self.state.checkpoint_created_at = utcnow()
        self.state.summary_checkpoint = self.plan.dispatch_count()

    def _maybe_compact(self, step_id: str) -> None:
        if self.plan.dispatch_count() - self.state.summary_checkpoint >= SUMMARY_EVERY_OUTCOMES:
            self._refresh_brief(step_id)
            self._audit(
                "info",
                "Checkpoint brief updated.",
                {"type": "checkpoint-brief", "stepId": step_id, "brief": self.state.checkpoint_brief},
            )

    def _finish_from_plan(self, error: str | None = None) -> RunOutcome:
        if self.plan.all_completed():
            return self._finish(RunStatus.COMPLETED)
        error_id = None
        failed = self.plan.failed_steps()
        if error is None and failed:
            # the run fails with its last step failure and that failure's id
            error = self.state.last_error or failed[-1].error
            error_id = self.state.last_error_id
        if self.plan.completed_count() == 0:
            return self._finish(RunStatus.FAILED, error=error or "No step completed.", error_id=error_id)
        return self._finish(RunStatus.PARTIAL_FAILURE, error=error, error_id=error_id)

    def _finish(self, status: RunStatus, error: str | None = None, error_id: str | None = None) -> RunOutcome:
        self.state.status = status
        self.state.active_step_id = None
        if error:
            error_id = error_id or new_error_id()
            self.state.last_error = error
            self.state.last_error_id = error_id
        if self.plan is not None:
            self._refresh_brief(None)
        if self.state.response is None and status == RunStatus.COMPLETED:
            self.state.response = self.state.checkpoint_brief
        self._audit(
            "info" if status == RunStatus.COMPLETED else "warning",
            "Run finished.",
            {"type": "run-finished", "status": status.value, "error": error, "errorId": error_id},
        )
        self._persist()
        outcome = self._outcome(error=error, error_id=error_id)
        self._display.run_finished(outcome)
        return outcome

    def _outcome(self, error: str | None = None, error_id: str | None = None) -> RunOutcome:
        state = self.state
        if error is None and state.status != RunStatus.COMPLETED:
            error = state.last_error
            error_id = error_id or state.last_error_id
        return RunOutcome(
            run_id=self.run_id,
            status=state.status,
            response=state.response,
            error=error,
            error_id=error_id,
            approval_step_id=(
                state.approval_requested_step_id if state.status == RunStatus.WAITING_HUMAN else None
            ),
            steps=self.plan.steps() if self.plan is not None else list(state.steps),
        )
