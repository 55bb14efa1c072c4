import pytest

from agent_engine.engine import AgentEngine
from agent_engine.models import PlannerCritique, PlanProposal, ReasonerDecision


class FakeTool:
    """In-memory stand-in for a browser. Records every call."""

    def __init__(self, fail_actions=(), on_call=None):
        self.calls = []
        self.fail_actions = set(fail_actions)
        self.on_call = on_call
        self.url = "about:blank"
        self.closed = []

    def _record(self, action, run_id, *args):
        self.calls.append((action, run_id, *args))
        if self.on_call is not None:
            self.on_call(run_id)
        if action in self.fail_actions:
            raise RuntimeError(f"{action} failed")

    async def goto(self, run_id, url):
        self._record("goto", run_id, url)
        self.url = url
        return {"url": url, "title": "Example Domain"}

    async def reload(self, run_id):
        self._record("reload", run_id)
        return {"url": self.url, "title": "Example Domain"}

    async def snapshot(self, run_id):
        self._record("snapshot", run_id)
        return {
            "url": self.url,
            "title": "Example Domain",
            "text": "Example Domain. This domain is for use in examples.",
            "elements": [{"tag": "a", "text": "More information...", "href": "https://iana.org"}],
        }

    async def close_run(self, run_id):
        self.closed.append(run_id)


class ScriptedReasoner:
    """
    Replays queued plans and decisions. Queued exceptions are raised.
    Verdicts are queued per step id; steps without a queue are completed.
    """

    def __init__(self, plans=(), decisions=(), verdicts=None, critique=None):
        self.plans = list(plans)
        self.decisions = list(decisions)
        self.verdicts = {step_id: list(queue) for step_id, queue in (verdicts or {}).items()}
        self.critique_result = critique or PlannerCritique()
        self.contexts = []
        self.critiqued = []

    async def plan(self, goal, context):
        self.contexts.append(context)
        if not self.plans:
            return PlanProposal()
        item = self.plans.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def critique(self, steps):
        self.critiqued.append([step.id for step in steps])
        return self.critique_result

    async def decide(self, context):
        if self.decisions:
            return self.decisions.pop(0)
        return ReasonerDecision(action="respond", reason="Answered from the page.")

    async def judge_step_outcome(self, step, observation):
        queue = self.verdicts.get(step.id)
        if queue:
            return queue.pop(0)
        return "completed"


@pytest.fixture
def tool():
    return FakeTool()


@pytest.fixture
def make_engine(tool):
    """Factory: make_engine(plans=[...], ...) -> (engine, reasoner). Sleeps are recorded, not awaited."""

    def factory(plans=(), decisions=(), verdicts=None, critique=None, **engine_kwargs):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        reasoner = ScriptedReasoner(plans, decisions, verdicts, critique)
        engine = AgentEngine(reasoner, engine_kwargs.pop("tool", tool), sleep=fake_sleep, **engine_kwargs)
        engine.sleeps = sleeps
        return engine, reasoner

    return factory
