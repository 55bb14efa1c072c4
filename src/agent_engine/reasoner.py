# reasoner.py
# The Reasoner contract and its OpenAI-compatible implementation.
#
# The engine owns all control flow. The model is a passive responder: it
# proposes steps, critiques them, picks an action for reasoning steps and
# judges step outcomes. Every reply is JSON, parsed and validated here.

import json
import re
import uuid
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from agent_engine.config import EngineConfig
from agent_engine.errors import ReasonerError
from agent_engine.models import (
    DecisionContext,
    PlanningContext,
    PlannerCritique,
    PlanProposal,
    PlanStep,
    ReasonerDecision,
    StepPhase,
    StepVerdict,
)


class Reasoner(Protocol):
    async def plan(self, goal: str, context: PlanningContext) -> PlanProposal: ...

    async def critique(self, steps: list[PlanStep]) -> PlannerCritique: ...

    async def decide(self, context: DecisionContext) -> ReasonerDecision: ...

    async def judge_step_outcome(self, step: PlanStep, observation: str) -> StepVerdict: ...


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

PLANNER_PROMPT = """\
You are the planner of a browsing agent. Output ONLY a JSON object:

{
  "taskType": "web_task" | "extract_info",
  "summary": "1-2 sentence plan summary",
  "steps": [
    {
      "id": "optional; reuse an id from previousPlan to rewrite that pending step",
      "title": "what the step does",
      "tool": "goto" | "reload" | "snapshot" | "none",
      "args": {"url": "<absolute URL, required for goto>"},
      "phase": "observe" | "act" | "verify" | "recover",
      "priority": <integer, higher runs first>,
      "dependsOn": [<index into this steps array, or a step id, or a step title>],
      "expectedObservation": "what should be visible afterwards",
      "successCriteria": "how to tell the step succeeded"
    }
  ],
  "successSignals": ["observable sign that the goal is met"],
  "alternatives": [
    {"title": "fallback route", "rationale": "why it may work", "steps": [<step objects as above>]}
  ],
  "settingsOverrides": {}
}

Rules:
- Use at most MAX_STEPS steps.
- Use "none" for steps that only need judgement, not the browser.
- When mode is not "initial", only return new steps or rewrites of pending
  steps; completed, running and failed steps cannot be changed.
- When mode is "failure", use alternatives for 1-4 fallback steps that route
  around the failed step.
- Never create circular dependencies.\
"""

CRITIQUE_PROMPT = """\
You review an agent plan before it runs. Output ONLY a JSON object with keys
assumptions, risks, unknowns, safetyChecks, questions, each an array of short
strings. safetyChecks are observable checks worth running before acting.\
"""

DECIDE_PROMPT = """\
You decide how a browsing agent handles a step that has no fixed tool.
Output ONLY a JSON object: {"action": "respond" | "tool" | "wait_human",
"reason": "...", "toolName": "goto" | "reload" | "snapshot" | null}.
Use "respond" when the step can be answered from the observation, "tool" when
a browser action is needed, "wait_human" when a person must act or decide.\
"""

JUDGE_PROMPT = """\
You judge whether an agent step met its success criteria given the
observation. Output ONLY a JSON object: {"status": "completed" | "failed",
"reason": "..."}.\
"""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_json_object(content: str) -> dict[str, Any]:
    """
    Extract a JSON object from a model reply, tolerating ```json fences and
    prose around the object. Raises ReasonerError when nothing parses.
    """
    raw = (content or "").strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", raw, re.DOTALL | re.IGNORECASE)
    if fenced:
        raw = fenced.group(1).strip()
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise ReasonerError(f"Reply contains no JSON object: {_clip(content)}")
    try:
        parsed = json.loads(raw[start : end + 1], strict=False)
    except json.JSONDecodeError as exc:
        raise ReasonerError(f"Reply JSON is malformed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ReasonerError("Reply JSON is not an object.")
    return parsed


def _clip(value: str, limit: int = 200) -> str:
    return value if len(value) <= limit else value[:limit] + "…"


def normalize_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def normalize_phase(value: Any) -> StepPhase | None:
    if not isinstance(value, str):
        return None
    try:
        return StepPhase(value.strip().lower())
    except ValueError:
        return None


def _resolve_dependencies(
    raw: Any,
    spec_ids: list[str],
    specs: list[dict[str, Any]],
    known_ids: set[str],
) -> list[str]:
    if not isinstance(raw, list):
        return []
    titles = {
        str(spec.get("title", "")).strip().lower(): spec_ids[i] for i, spec in enumerate(specs)
    }
    resolved = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            if 0 <= item < len(spec_ids):
                resolved.append(spec_ids[item])
        elif isinstance(item, str) and item.strip():
            name = item.strip()
            if name in spec_ids or name in known_ids:
                resolved.append(name)
            elif name.lower() in titles:
                resolved.append(titles[name.lower()])
    return resolved


def build_steps_from_specs(
    specs: Any,
    max_attempts: int,
    known_ids: set[str] | None = None,
    max_steps: int | None = None,
) -> list[PlanStep]:
    """
    Turn raw step specs from a model reply into PlanSteps.

    Dependencies may name a spec by index, by id (its own or one already in
    the plan) or by title; anything unresolvable is dropped.
    """
    if not isinstance(specs, list):
        return []
    specs = [spec for spec in specs if isinstance(spec, dict)]
    if max_steps is not None:
        specs = specs[:max_steps]
    known_ids = known_ids or set()
    spec_ids = [
        str(spec["id"]).strip() if str(spec.get("id") or "").strip() else f"step-{uuid.uuid4().hex[:12]}"
        for spec in specs
    ]

    steps = []
    for index, spec in enumerate(specs):
        tool = spec.get("tool")
        if not isinstance(tool, str) or tool.strip().lower() in ("", "none"):
            tool = None
        args = spec.get("args") if isinstance(spec.get("args"), dict) else {}
        priority = spec.get("priority")
        steps.append(
            PlanStep(
                id=spec_ids[index],
                title=str(spec.get("title") or "").strip() or "Review the page state.",
                tool=tool.strip() if tool else None,
                args=args,
                phase=normalize_phase(spec.get("phase")),
                priority=priority if isinstance(priority, int) and not isinstance(priority, bool) else 0,
                depends_on=[
                    dep
                    for dep in _resolve_dependencies(spec.get("dependsOn"), spec_ids, specs, known_ids)
                    if dep != spec_ids[index]
                ],
                max_attempts=max_attempts,
                expected_observation=(spec.get("expectedObservation") or None),
                success_criteria=(spec.get("successCriteria") or None),
            )
        )
    return steps


def build_alternative_steps(
    alternatives: Any,
    max_attempts: int,
    known_ids: set[str] | None = None,
    max_steps: int | None = None,
) -> list[PlanStep]:
    """
    Fallback branches from a model reply. An alternative contributes its own
    steps, or one step named by its title when it has none. Steps without a
    phase are recover steps.
    """
    if not isinstance(alternatives, list):
        return []
    steps = []
    for alternative in alternatives:
        if not isinstance(alternative, dict):
            continue
        raw = alternative.get("steps")
        specs = [spec for spec in raw if isinstance(spec, dict)] if isinstance(raw, list) else []
        title = str(alternative.get("title") or "").strip()
        if not specs and title:
            specs = [{"title": title}]
        for step in build_steps_from_specs(specs, max_attempts, known_ids):
            steps.append(step if step.phase else step.model_copy(update={"phase": StepPhase.RECOVER}))
    return steps[:max_steps] if max_steps is not None else steps


def _step_brief(step: PlanStep) -> dict[str, Any]:
    return {
        "id": step.id,
        "title": step.title,
        "status": step.status.value,
        "tool": step.tool,
        "args": step.args,
        "dependsOn": step.depends_on,
        "expectedObservation": step.expected_observation,
        "successCriteria": step.success_criteria,
        "error": step.error,
    }


# ---------------------------------------------------------------------------
# OpenAIReasoner
# ---------------------------------------------------------------------------


class OpenAIReasoner:
    """
    Reasoner over any OpenAI-compatible chat completions endpoint
    (OpenRouter by default).

    Example:
        reasoner = OpenAIReasoner(EngineConfig.from_env())
        proposal = await reasoner.plan("check homepage status", PlanningContext())
    """

    def __init__(self, config: EngineConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client or AsyncOpenAI(base_url=config.base_url, api_key=config.api_key)

    # ------------------------------------------------------------------
    # Low-level model call
    # ------------------------------------------------------------------

    async def _call_model(self, system: str, payload: dict[str, Any], model: str | None = None) -> dict[str, Any]:
        try:
            response = await self._client.chat.completions.create(
                model=model or self._config.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": json.dumps(payload, default=str)},
                ],
                temperature=0.2,
            )
        except OpenAIError as exc:
            raise ReasonerError(f"Model call failed: {exc}") from exc
        content = response.choices[0].message.content or ""
        return parse_json_object(content)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def plan(self, goal: str, context: PlanningContext) -> PlanProposal:
        payload = {
            "goal": goal,
            "mode": context.mode,
            "playbook": context.playbook,
            "previousPlan": [_step_brief(step) for step in context.previous_plan],
            "lastError": context.last_error,
            "failedStepId": context.failed_step_id,
            "loopSignal": context.loop_signal.model_dump(mode="json") if context.loop_signal else None,
            "observation": context.observation,
        }
        parsed = await self._call_model(
            PLANNER_PROMPT.replace("MAX_STEPS", str(context.max_steps)),
            payload,
            model=context.preferences.planner_model,
        )
        known_ids = {step.id for step in context.previous_plan}
        steps = build_steps_from_specs(
            parsed.get("steps"),
            max_attempts=context.max_step_attempts,
            known_ids=known_ids,
            max_steps=context.max_steps,
        )
        alternatives = build_alternative_steps(
            parsed.get("alternatives"),
            max_attempts=context.max_step_attempts,
            known_ids=known_ids,
            max_steps=context.max_steps,
        )
        task_type = parsed.get("taskType")
        overrides = parsed.get("settingsOverrides")
        summary = parsed.get("summary")
        return PlanProposal(
            steps=steps,
            task_type=task_type if task_type in ("web_task", "extract_info") else None,
            summary=summary.strip() if isinstance(summary, str) and summary.strip() else None,
            settings_overrides=overrides if isinstance(overrides, dict) and overrides else None,
            success_signals=normalize_string_list(parsed.get("successSignals")),
            alternatives=alternatives,
        )

    async def critique(self, steps: list[PlanStep]) -> PlannerCritique:
        parsed = await self._call_model(CRITIQUE_PROMPT, {"steps": [_step_brief(step) for step in steps]})
        return PlannerCritique(
            assumptions=normalize_string_list(parsed.get("assumptions")),
            risks=normalize_string_list(parsed.get("risks")),
            unknowns=normalize_string_list(parsed.get("unknowns")),
            safety_checks=normalize_string_list(parsed.get("safetyChecks")),
            questions=normalize_string_list(parsed.get("questions")),
        )

    async def decide(self, context: DecisionContext) -> ReasonerDecision:
        parsed = await self._call_model(
            DECIDE_PROMPT,
            {
                "goal": context.goal,
                "step": _step_brief(context.step),
                "observation": context.observation,
                "lastError": context.last_error,
            },
        )
        action = parsed.get("action")
        reason = parsed.get("reason") if isinstance(parsed.get("reason"), str) else ""
        if action == "tool":
            tool_name = parsed.get("toolName")
            return ReasonerDecision(
                action="tool",
                reason=reason or "Model selected a browser action.",
                tool_name=tool_name if isinstance(tool_name, str) else "snapshot",
            )
        if action == "wait_human":
            return ReasonerDecision(action="wait_human", reason=reason or "Model requires human input.")
        return ReasonerDecision(action="respond", reason=reason or "Model responded without a tool.")

    async def judge_step_outcome(self, step: PlanStep, observation: str) -> StepVerdict:
        if not step.success_criteria and not step.expected_observation:
            return "completed"
        parsed = await self._call_model(
            JUDGE_PROMPT,
            {"step": _step_brief(step), "observation": _clip(observation or "", 4000)},
        )
        status = str(parsed.get("status", "")).strip().lower()
        if status not in ("completed", "failed"):
            raise ReasonerError(f"Judge returned unknown status '{status}'.")
        return status
