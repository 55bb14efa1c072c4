# errors.py
# Exception hierarchy for the engine.
#
# Exceptions stay inside the engine. The control surface converts them into
# structured results (ValidationFailure, RunOutcome) carrying an error_id.

import uuid


def new_error_id() -> str:
    """Correlation id used to cross-reference a surfaced error with audit entries."""
    return uuid.uuid4().hex


class EngineError(Exception):
    """Base class for every engine-raised error."""


class PlanValidationError(EngineError):
    """Raised when a merged step set is malformed: unknown deps, self deps, cycles."""


class InvalidTransitionError(EngineError):
    """Raised when a step status change violates the step state machine."""


class ReasonerError(EngineError):
    """Raised when a Reasoner call faults, times out, or returns unusable output."""

    def __init__(self, message: str, error_id: str | None = None) -> None:
        super().__init__(message)
        self.error_id = error_id or new_error_id()


class ToolError(EngineError):
    """Raised by Tool adapters when the external driver cannot complete an action."""


class ApprovalMismatchError(EngineError):
    """Raised when an approval names a step other than the one awaiting approval."""


class RunNotFoundError(EngineError):
    """Raised when a run id has no checkpoint."""
