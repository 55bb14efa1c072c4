# agent_engine
# Autonomous task-execution engine for a browsing agent.

from agent_engine.engine import AgentEngine
from agent_engine.models import (
    AgentCheckpoint,
    AgentPlanPreferences,
    AgentPlanSettings,
    PlanStep,
    RunOutcome,
    RunStatus,
    StepStatus,
)

__all__ = [
    "AgentEngine",
    "AgentCheckpoint",
    "AgentPlanPreferences",
    "AgentPlanSettings",
    "PlanStep",
    "RunOutcome",
    "RunStatus",
    "StepStatus",
]
