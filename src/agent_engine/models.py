# models.py
# Data contracts for the task-execution engine.
# No business logic lives here: schema, defaults and validation only.

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepPhase(str, Enum):
    OBSERVE = "observe"
    ACT = "act"
    VERIFY = "verify"
    RECOVER = "recover"


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    WAITING_HUMAN = "waiting_human"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


_TERMINAL_RUN_STATUSES = {
    RunStatus.COMPLETED,
    RunStatus.PARTIAL_FAILURE,
    RunStatus.FAILED,
    RunStatus.STOPPED,
}

AuditLevel = Literal["info", "warning", "error"]
TaskType = Literal["web_task", "extract_info"]
StepVerdict = Literal["completed", "failed"]


# ---------------------------------------------------------------------------
# Settings and preferences
# ---------------------------------------------------------------------------


def clamp_int(value: Any, low: int, high: int, fallback: int) -> int:
    """Coerce `value` to an int within [low, high]; non-numeric input yields `fallback`."""
    if isinstance(value, bool):
        return fallback
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return fallback
    return min(max(round(numeric), low), high)


class AgentPlanSettings(BaseModel):
    """Run-wide tunables. Frozen once a run starts; a re-plan may supply overrides."""

    model_config = ConfigDict(frozen=True)

    # field -> (low, high, default)
    BOUNDS: ClassVar[dict[str, tuple[int, int, int]]] = {
        "max_steps": (1, 20, 12),
        "max_step_attempts": (1, 5, 2),
        "max_replan_calls": (0, 6, 2),
        "replan_every_steps": (1, 10, 2),
        "max_self_checks": (0, 8, 4),
        "loop_guard_threshold": (1, 5, 2),
        "loop_backoff_base_ms": (250, 20000, 2000),
        "loop_backoff_max_ms": (1000, 60000, 12000),
    }

    max_steps: int = 12
    max_step_attempts: int = 2
    max_replan_calls: int = 2
    replan_every_steps: int = 2
    max_self_checks: int = 4
    loop_guard_threshold: int = 2
    loop_backoff_base_ms: int = 2000
    loop_backoff_max_ms: int = 12000

    @model_validator(mode="before")
    @classmethod
    def _clamp(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        clamped = dict(data)
        for name, (low, high, default) in cls.BOUNDS.items():
            if name in clamped:
                clamped[name] = clamp_int(clamped[name], low, high, default)
        return clamped

    def with_overrides(self, overrides: dict[str, Any] | None) -> "AgentPlanSettings":
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in self.BOUNDS}
        return AgentPlanSettings.model_validate({**self.model_dump(), **known})


class AgentPlanPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    require_human_approval: bool = False
    planner_model: str | None = None


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A unit of planned work with explicit dependencies and a bounded retry budget."""

    id: str = Field(default_factory=lambda: f"step-{uuid.uuid4().hex[:12]}")
    title: str
    status: StepStatus = StepStatus.PENDING
    tool: str | None = Field(default=None, description="External tool name, or None for a reasoning step.")
    args: dict[str, Any] = Field(default_factory=dict)
    phase: StepPhase | None = None
    priority: int = 0
    depends_on: list[str] = Field(default_factory=list)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=2, ge=1)
    expected_observation: str | None = None
    success_criteria: str | None = None
    snapshot_id: str | None = None
    log_count: int = 0
    error: str | None = None

    @field_validator("depends_on")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(dep for dep in value if dep))

    @model_validator(mode="after")
    def _attempts_within_budget(self) -> "PlanStep":
        if self.attempts > self.max_attempts:
            raise ValueError(
                f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            )
        return self


class PlannerCritique(BaseModel):
    assumptions: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    unknowns: list[str] = Field(default_factory=list)
    safety_checks: list[str] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)


class PlanProposal(BaseModel):
    """What the Reasoner returns from a planning pass."""

    steps: list[PlanStep] = Field(default_factory=list)
    task_type: TaskType | None = None
    summary: str | None = None
    settings_overrides: dict[str, Any] | None = None
    # observable signs the goal is met, checked by verify steps after the plan
    success_signals: list[str] = Field(default_factory=list)
    # recover-phase fallback steps for when the proposed path fails
    alternatives: list[PlanStep] = Field(default_factory=list)


class LoopSignal(BaseModel):
    reason: str
    pattern: str
    titles: list[str]
    urls: list[str | None]
    statuses: list[StepStatus]


class PlanningContext(BaseModel):
    mode: Literal["initial", "replan", "failure", "cadence", "stalled", "loop"] = "initial"
    playbook: str | None = None
    preferences: AgentPlanPreferences = Field(default_factory=AgentPlanPreferences)
    max_steps: int = 12
    max_step_attempts: int = 2
    previous_plan: list[PlanStep] = Field(default_factory=list)
    last_error: str | None = None
    failed_step_id: str | None = None
    loop_signal: LoopSignal | None = None
    observation: str | None = None


class DecisionContext(BaseModel):
    goal: str
    step: PlanStep
    observation: str | None = None
    last_error: str | None = None


# ---------------------------------------------------------------------------
# Observations and records
# ---------------------------------------------------------------------------


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    run_id: str | None
    level: AuditLevel
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    run_id: str
    step_id: str | None = None
    url: str = ""
    title: str | None = None
    text: str = ""
    elements: list[dict[str, Any]] | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ToolOutput(BaseModel):
    url: str | None = None
    title: str | None = None
    text: str | None = None
    elements: list[dict[str, Any]] | None = None
    snapshot_id: str | None = None


# ---------------------------------------------------------------------------
# Tagged dispatch results
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    kind: Literal["tool"] = "tool"
    ok: bool
    output: ToolOutput | None = None
    error: str | None = None
    error_id: str | None = None


class ValidationFailure(BaseModel):
    """A request rejected before it reached the external Tool."""

    kind: Literal["validation"] = "validation"
    ok: Literal[False] = False
    error: str
    error_id: str | None = None


class ReasonerDecision(BaseModel):
    kind: Literal["decision"] = "decision"
    action: Literal["respond", "tool", "wait_human"]
    reason: str = ""
    tool_name: str | None = None


GatewayResult = Union[ToolResult, ValidationFailure]
DispatchResult = Union[ToolResult, ValidationFailure, ReasonerDecision]


# ---------------------------------------------------------------------------
# Checkpoint and outcome
# ---------------------------------------------------------------------------


class AgentCheckpoint(BaseModel):
    """Durable snapshot of one run. Always written as a whole document."""

    run_id: str
    goal: str
    status: RunStatus = RunStatus.CREATED
    steps: list[PlanStep] = Field(default_factory=list)
    active_step_id: str | None = None
    last_error: str | None = None
    last_error_id: str | None = None
    task_type: TaskType | None = None
    resume_requested_at: datetime | None = None
    resume_processed_at: datetime | None = None
    approval_requested_step_id: str | None = None
    approval_granted_step_id: str | None = None
    checkpoint_brief: str | None = None
    checkpoint_next_actions: list[str] | None = None
    checkpoint_risks: list[str] | None = None
    checkpoint_step_id: str | None = None
    checkpoint_created_at: datetime | None = None
    summary_checkpoint: int = 0
    settings: AgentPlanSettings = Field(default_factory=AgentPlanSettings)
    preferences: AgentPlanPreferences = Field(default_factory=AgentPlanPreferences)
    replan_calls: int = 0
    self_checks: int = 0
    loop_streak: int = 0
    response: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class RunOutcome(BaseModel):
    run_id: str
    status: RunStatus
    response: str | None = None
    error: str | None = None
    error_id: str | None = None
    approval_step_id: str | None = None
    steps: list[PlanStep] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Learning distilled from one finished run."""

    summary: str | None = None
    mistakes: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    guardrails: list[str] = Field(default_factory=list)
    tool_adjustments: list[str] = Field(default_factory=list)
