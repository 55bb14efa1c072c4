# engine.py
# The control surface of the engine.
#
# AgentEngine wires the shared stores to one ToolGateway and hands each run
# to its own ExecutionLoop. Callers never touch the plan or the stores
# directly: they start, resume, approve and cancel runs, issue direct control
# actions, and read audits, snapshots and checkpoints back.

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from agent_engine.audit import AuditLog
from agent_engine.checkpoint import CheckpointManager
from agent_engine.config import EngineConfig
from agent_engine.display import Display
from agent_engine.errors import EngineError, new_error_id
from agent_engine.gateway import Tool, ToolGateway
from agent_engine.models import (
    AgentCheckpoint,
    AgentPlanPreferences,
    AgentPlanSettings,
    AuditLogEntry,
    GatewayResult,
    RunOutcome,
    RunStatus,
    Snapshot,
    ValidationFailure,
    clamp_int,
    utcnow,
)
from agent_engine.playbook import PlaybookSynthesizer
from agent_engine.reasoner import Reasoner
from agent_engine.scheduler import ExecutionLoop
from agent_engine.snapshots import SnapshotStore

AUDIT_LIMIT = (10, 500, 200)
SNAPSHOT_LIMIT = (1, 50, 5)
STALE_RUN_THRESHOLD_S = 600


class AgentEngine:
    """
    Runs goals to completion against one Tool and one Reasoner.

    Example:
        engine = AgentEngine(OpenAIReasoner(config), PlaywrightTool(), config=config)
        outcome = await engine.run("check homepage status")

    Runs may be awaited concurrently; each run is driven by at most one
    ExecutionLoop at a time.
    """

    def __init__(
        self,
        reasoner: Reasoner,
        tool: Tool,
        audit_log: AuditLog | None = None,
        snapshot_store: SnapshotStore | None = None,
        checkpoints: CheckpointManager | None = None,
        config: EngineConfig | None = None,
        display: Display | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or EngineConfig()
        self.display = display or Display(enabled=self.config.debug)
        self.audit_log = audit_log or AuditLog()
        self.snapshots = snapshot_store or SnapshotStore()
        self.checkpoints = checkpoints or CheckpointManager()
        self.gateway = ToolGateway(
            tool,
            self.audit_log,
            self.snapshots,
            timeout_s=self.config.tool_timeout_s,
            display=self.display,
        )
        self.playbooks = PlaybookSynthesizer(self.checkpoints, self.audit_log)
        self._reasoner = reasoner
        self._sleep = sleep
        self._active: set[str] = set()
        self._cancelled: set[str] = set()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_run(
        self,
        goal: str,
        preferences: AgentPlanPreferences | None = None,
        settings: AgentPlanSettings | None = None,
    ) -> str:
        """Persist a fresh run and return its id. Nothing executes until resume_run()."""
        goal = (goal or "").strip()
        if not goal:
            raise ValueError("Goal is required.")
        run_id = uuid.uuid4().hex
        self.checkpoints.save(
            run_id,
            AgentCheckpoint(
                run_id=run_id,
                goal=goal,
                settings=settings or AgentPlanSettings(),
                preferences=preferences or AgentPlanPreferences(),
            ),
        )
        self.audit_log.append(run_id, "info", "Agent run created.", {"type": "run-started", "goal": goal})
        return run_id

    async def resume_run(self, run_id: str) -> RunOutcome:
        """Drive the run from its latest checkpoint until it finishes or suspends."""
        if run_id in self._active:
            raise EngineError(f"Agent run '{run_id}' is already executing.")

        try:
            playbook = self._prepare_resume(run_id)
        except Exception as exc:
            return self._preflight_failure(run_id, exc)

        loop = ExecutionLoop(
            run_id,
            self._reasoner,
            self.gateway,
            self.checkpoints,
            self.audit_log,
            self.snapshots,
            self.config,
            display=self.display,
            sleep=self._sleep,
            should_stop=lambda: run_id in self._cancelled,
            playbook=playbook,
        )
        self._active.add(run_id)
        try:
            outcome = await loop.run()
        finally:
            self._active.discard(run_id)
            self._cancelled.discard(run_id)
        if outcome.status.is_terminal:
            await self.gateway.close_run(run_id)
        return outcome

    def _prepare_resume(self, run_id: str) -> str | None:
        """Stamp a resume on a planned run; a fresh run gets the playbook instead."""
        checkpoint = self.checkpoints.load(run_id)
        if checkpoint is None or checkpoint.status.is_terminal:
            return None
        if checkpoint.steps:
            self.checkpoints.request_resume(run_id)
            return None
        playbook = self.playbooks.synthesize(exclude={run_id})
        if playbook:
            self.display.playbook(playbook)
            self.audit_log.append(run_id, "info", "Playbook prepared.", {"type": "playbook", "playbook": playbook})
        return playbook

    def _preflight_failure(self, run_id: str, exc: Exception) -> RunOutcome:
        error_id = getattr(exc, "error_id", None) or new_error_id()
        error = f"Checkpoint unreadable: {str(exc) or exc.__class__.__name__}"
        self.display.fault("Run failed", error, error_id)
        self.audit_log.append(run_id, "error", "Run failed.", {"type": "run-error", "error": error, "errorId": error_id})
        return RunOutcome(run_id=run_id, status=RunStatus.FAILED, error=error, error_id=error_id)

    async def run(
        self,
        goal: str,
        preferences: AgentPlanPreferences | None = None,
        settings: AgentPlanSettings | None = None,
    ) -> RunOutcome:
        return await self.resume_run(self.start_run(goal, preferences, settings))

    def approve_step(self, run_id: str, step_id: str) -> AgentCheckpoint:
        """Grant the pending approval; the next resume_run() executes the step."""
        checkpoint = self.checkpoints.grant_approval(run_id, step_id)
        self.audit_log.append(run_id, "info", "Step approved.", {"type": "approval-recorded", "stepId": step_id})
        return checkpoint

    def cancel_run(self, run_id: str) -> bool:
        """
        Stop a run. An executing run stops at the top of its next iteration;
        an idle one is marked stopped immediately. False if already finished.
        """
        checkpoint = self.checkpoints.require(run_id)
        if run_id in self._active:
            self._cancelled.add(run_id)
            self.audit_log.append(run_id, "warning", "Cancellation requested.", {"type": "run-cancel-requested"})
            return True
        if checkpoint.status.is_terminal:
            return False
        error_id = new_error_id()
        self.checkpoints.save(
            run_id,
            checkpoint.model_copy(
                update={
                    "status": RunStatus.STOPPED,
                    "active_step_id": None,
                    "last_error": "Run cancelled.",
                    "last_error_id": error_id,
                }
            ),
        )
        self.audit_log.append(run_id, "warning", "Run cancelled.", {"type": "run-cancelled", "errorId": error_id})
        return True

    def recover_stale_runs(self, threshold_s: float = STALE_RUN_THRESHOLD_S) -> list[str]:
        """
        Find runs a crashed process left `running` with no checkpoint for
        `threshold_s` seconds and stamp a resume request on each. Returns their
        ids; the caller decides when to resume_run() them.
        """
        cutoff = utcnow() - timedelta(seconds=threshold_s)
        recovered = []
        for run_id in self.checkpoints.list_run_ids():
            if run_id in self._active:
                continue
            try:
                checkpoint = self.checkpoints.load(run_id)
            except (ValidationError, OSError) as exc:
                self._unreadable(run_id, exc)
                continue
            if checkpoint is None or checkpoint.status != RunStatus.RUNNING:
                continue
            if checkpoint.updated_at >= cutoff:
                continue
            self.checkpoints.request_resume(run_id)
            self.audit_log.append(
                run_id,
                "warning",
                "Auto-resume queued for stuck run.",
                {"type": "run-recovered", "reason": "stale-running", "thresholdS": threshold_s},
            )
            recovered.append(run_id)
        return recovered

    def _unreadable(self, run_id: str, exc: Exception) -> None:
        error_id = new_error_id()
        self.display.fault("Checkpoint unreadable", str(exc), error_id)
        self.audit_log.append(
            run_id, "warning", "Checkpoint unreadable.", {"type": "checkpoint-error", "error": str(exc), "errorId": error_id}
        )

    # ------------------------------------------------------------------
    # Direct control and reads
    # ------------------------------------------------------------------

    async def request_control(self, run_id: str, action: str, args: dict[str, Any] | None = None) -> GatewayResult:
        if self.checkpoints.load(run_id) is None:
            error_id = new_error_id()
            self.audit_log.append(
                None,
                "warning",
                "Control action rejected.",
                {"type": "tool-action", "action": action, "runId": run_id, "error": "Agent run not found.", "errorId": error_id},
            )
            return ValidationFailure(error="Agent run not found.", error_id=error_id)
        return await self.gateway.execute(run_id, action, args)

    def get_audits(self, run_id: str, step_id: str | None = None, limit: Any = 200) -> list[AuditLogEntry]:
        low, high, default = AUDIT_LIMIT
        return self.audit_log.query(run_id, step_id=step_id, limit=clamp_int(limit, low, high, default))

    def get_snapshots(self, run_id: str, step_id: str | None = None, limit: Any = 5) -> list[Snapshot]:
        low, high, default = SNAPSHOT_LIMIT
        return self.snapshots.query(run_id, step_id=step_id, limit=clamp_int(limit, low, high, default))

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return self.snapshots.get(snapshot_id)

    def get_checkpoint(self, run_id: str) -> AgentCheckpoint | None:
        return self.checkpoints.load(run_id)
