# plan.py
# The step graph of one run and its state machine.
#
#   pending -> running -> completed
#                      -> pending   (failed attempt, budget left)
#                      -> failed    (budget spent, terminal)
#
# completed and terminal failed never change again. Steps live in an
# id-indexed arena whose insertion order is the tie-breaker for scheduling.

from collections import deque
from collections.abc import Iterable

from agent_engine.errors import InvalidTransitionError, PlanValidationError
from agent_engine.models import PlanStep, StepStatus


def find_cycle(graph: dict[str, list[str]]) -> list[str]:
    """
    Return the ids left unsorted by Kahn's algorithm over `graph`
    (step id -> dependency ids). An empty list means the graph is acyclic.
    """
    indegree = {node: 0 for node in graph}
    dependents: dict[str, list[str]] = {node: [] for node in graph}
    for node, deps in graph.items():
        for dep in deps:
            if dep not in graph:
                continue
            indegree[node] += 1
            dependents[dep].append(node)

    queue = deque(node for node, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        node = queue.popleft()
        visited += 1
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if visited == len(graph):
        return []
    return [node for node, degree in indegree.items() if degree > 0]


class PlanModel:
    """
    Owns the PlanStep arena for one run.

    Callers receive copies; only the methods below mutate the stored steps.
    `dispatch_budget` bounds the total number of executions (attempts plus
    completions) across the run; None means unbounded.
    """

    def __init__(self, steps: Iterable[PlanStep] = (), dispatch_budget: int | None = None) -> None:
        self._steps: dict[str, PlanStep] = {}
        self.dispatch_budget = dispatch_budget
        self.rejected_ids: list[str] = []
        for step in steps:
            self._steps[step.id] = step.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, step_id: str) -> PlanStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    def steps(self) -> list[PlanStep]:
        return [step.model_copy(deep=True) for step in self._steps.values()]

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def _with_status(self, status: StepStatus) -> list[PlanStep]:
        return [step for step in self._steps.values() if step.status == status]

    def has_pending(self) -> bool:
        return bool(self._with_status(StepStatus.PENDING))

    def all_completed(self) -> bool:
        return bool(self._steps) and all(
            step.status == StepStatus.COMPLETED for step in self._steps.values()
        )

    def failed_steps(self) -> list[PlanStep]:
        return [step.model_copy(deep=True) for step in self._with_status(StepStatus.FAILED)]

    def completed_count(self) -> int:
        return len(self._with_status(StepStatus.COMPLETED))

    def dispatch_count(self) -> int:
        return sum(step.attempts for step in self._steps.values()) + self.completed_count()

    def budget_exhausted(self) -> bool:
        return self.dispatch_budget is not None and self.dispatch_count() >= self.dispatch_budget

    def _is_ready(self, step: PlanStep) -> bool:
        if step.status != StepStatus.PENDING:
            return False
        for dep in step.depends_on:
            dependency = self._steps.get(dep)
            if dependency is None or dependency.status != StepStatus.COMPLETED:
                return False
        return True

    def is_stalled(self) -> bool:
        """Pending work exists but nothing is runnable and nothing is running."""
        if not self.has_pending() or self._with_status(StepStatus.RUNNING):
            return False
        return not any(self._is_ready(step) for step in self._steps.values())

    def ready_step(self) -> PlanStep | None:
        """
        Next runnable step: pending, dependencies completed, highest priority,
        earliest inserted on ties. None while a step is running or once the
        dispatch budget is spent.
        """
        if self.budget_exhausted() or self._with_status(StepStatus.RUNNING):
            return None
        candidates = [step for step in self._steps.values() if self._is_ready(step)]
        if not candidates:
            return None
        # max() keeps the first of equal keys, which is insertion order.
        return max(candidates, key=lambda step: step.priority).model_copy(deep=True)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def add_or_replace_steps(self, steps: Iterable[PlanStep]) -> list[str]:
        """
        Merge planned steps into the arena and return the ids applied.

        A step whose id matches a pending step replaces it; ids of running,
        completed or failed steps are rejected and recorded in `rejected_ids`.
        The whole batch is validated before anything is applied.
        """
        incoming: dict[str, PlanStep] = {}
        rejected: list[str] = []
        for step in steps:
            existing = self._steps.get(step.id)
            if existing is not None and existing.status != StepStatus.PENDING:
                rejected.append(step.id)
                continue
            attempts = step.attempts
            if existing is not None:
                attempts = max(existing.attempts, step.attempts)
            incoming[step.id] = step.model_copy(
                deep=True,
                update={
                    "status": StepStatus.PENDING,
                    "attempts": attempts,
                    # a pending step always keeps at least one try
                    "max_attempts": max(step.max_attempts, attempts + 1),
                },
            )

        candidate = {**self._steps, **incoming}
        self._validate(candidate, incoming)

        for step_id, step in incoming.items():
            self._steps[step_id] = step
        self.rejected_ids = rejected
        return list(incoming)

    @staticmethod
    def _validate(candidate: dict[str, PlanStep], incoming: dict[str, PlanStep]) -> None:
        for step in incoming.values():
            if step.id in step.depends_on:
                raise PlanValidationError(f"Step '{step.id}' depends on itself.")
            unknown = [dep for dep in step.depends_on if dep not in candidate]
            if unknown:
                raise PlanValidationError(
                    f"Step '{step.id}' depends on unknown step(s): {', '.join(unknown)}."
                )
        cycle = find_cycle({step_id: list(step.depends_on) for step_id, step in candidate.items()})
        if cycle:
            raise PlanValidationError(f"Dependency cycle between steps: {', '.join(cycle)}.")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require(self, step_id: str, expected: StepStatus, action: str) -> PlanStep:
        step = self._steps.get(step_id)
        if step is None:
            raise InvalidTransitionError(f"Cannot {action} unknown step '{step_id}'.")
        if step.status != expected:
            raise InvalidTransitionError(
                f"Cannot {action} step '{step_id}' in status '{step.status.value}'."
            )
        return step

    def mark_running(self, step_id: str) -> PlanStep:
        step = self._require(step_id, StepStatus.PENDING, "start")
        running = self._with_status(StepStatus.RUNNING)
        if running:
            raise InvalidTransitionError(
                f"Cannot start '{step_id}' while '{running[0].id}' is running."
            )
        if not self._is_ready(step):
            raise InvalidTransitionError(f"Step '{step_id}' has incomplete dependencies.")
        if self.budget_exhausted():
            raise InvalidTransitionError("Dispatch budget exhausted.")
        step.status = StepStatus.RUNNING
        return step.model_copy(deep=True)

    def mark_completed(self, step_id: str) -> PlanStep:
        step = self._require(step_id, StepStatus.RUNNING, "complete")
        step.status = StepStatus.COMPLETED
        step.error = None
        return step.model_copy(deep=True)

    def mark_failed(self, step_id: str, error: str | None = None) -> PlanStep:
        """Consume one attempt; back to pending while budget remains, else terminal."""
        step = self._require(step_id, StepStatus.RUNNING, "fail")
        step.attempts += 1
        step.error = error
        step.status = StepStatus.FAILED if step.attempts >= step.max_attempts else StepStatus.PENDING
        return step.model_copy(deep=True)

    def release(self, step_id: str) -> PlanStep:
        """Return a running step to pending without consuming an attempt."""
        step = self._require(step_id, StepStatus.RUNNING, "release")
        step.status = StepStatus.PENDING
        return step.model_copy(deep=True)

    def normalize_interrupted(self) -> list[str]:
        """Reset steps left running by an interrupted process; attempts are kept."""
        reset = []
        for step in self._with_status(StepStatus.RUNNING):
            step.status = StepStatus.PENDING
            reset.append(step.id)
        return reset

    def annotate(self, step_id: str, *, snapshot_id: str | None = None, log_count: int | None = None) -> None:
        step = self._steps.get(step_id)
        if step is None:
            return
        if snapshot_id is not None:
            step.snapshot_id = snapshot_id
        if log_count is not None:
            step.log_count = log_count
