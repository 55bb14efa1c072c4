# playbook.py
# Self-improvement synthesis, off the hot path.
#
# Finished runs are distilled into RunSummary buckets; the buckets of many
# runs are deduplicated, capped and rendered into a short advisory block that
# the planner receives verbatim on the next run's first planning call.

from collections.abc import Iterable

from pydantic import ValidationError

from agent_engine.audit import AuditLog
from agent_engine.checkpoint import CheckpointManager, build_brief
from agent_engine.errors import new_error_id
from agent_engine.models import AgentCheckpoint, AuditLogEntry, RunSummary, StepStatus

HEADER = "Self-improvement playbook:"

# (label, bucket, cap) in render order
_BUCKETS = (
    ("Avoid", "mistakes", 4),
    ("Improve", "improvements", 4),
    ("Guardrails", "guardrails", 4),
    ("Tool tweaks", "tool_adjustments", 3),
)
_SUMMARY_CAP = 2


def _dedupe(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(value.strip() for value in values if value and value.strip()))


def build_playbook(summaries: Iterable[RunSummary]) -> str | None:
    """Render the playbook, or None when every bucket is empty."""
    summaries = list(summaries)
    lines = []

    learned = _dedupe(s.summary for s in summaries if s.summary)
    if learned:
        lines.append(f"Recent learning: {' | '.join(learned[:_SUMMARY_CAP])}")

    for label, bucket, cap in _BUCKETS:
        entries = _dedupe(entry for s in summaries for entry in getattr(s, bucket))
        if entries:
            lines.append(f"{label}: {' | '.join(entries[:cap])}")

    if not lines:
        return None
    return "\n".join([HEADER, *lines])


def summarize_run(checkpoint: AgentCheckpoint, audits: Iterable[AuditLogEntry]) -> RunSummary:
    """Derive the learning buckets of one finished run from its checkpoint and audits."""
    brief = checkpoint.checkpoint_brief or build_brief(checkpoint.steps)[0]
    mistakes = [
        f"{step.title}: {step.error}" if step.error else step.title
        for step in checkpoint.steps
        if step.status == StepStatus.FAILED
    ]
    improvements = [
        f"Retrying helped: {step.title}"
        for step in checkpoint.steps
        if step.status == StepStatus.COMPLETED and step.attempts > 0
    ]
    guardrails = []
    tool_adjustments = []
    for entry in audits:
        kind = entry.metadata.get("type")
        if kind == "loop-detected":
            guardrails.append(str(entry.metadata.get("reason") or entry.message))
        elif kind == "tool-action" and entry.level == "error":
            tool_adjustments.append(f"{entry.metadata.get('action')} failed: {entry.metadata.get('error')}")
    return RunSummary(
        summary=f"{checkpoint.goal} ({checkpoint.status.value}): {brief}",
        mistakes=mistakes,
        improvements=improvements,
        guardrails=guardrails,
        tool_adjustments=tool_adjustments,
    )


class PlaybookSynthesizer:
    """Builds the playbook from the most recent finished runs in the stores."""

    def __init__(self, checkpoints: CheckpointManager, audit_log: AuditLog, max_runs: int = 10) -> None:
        self._checkpoints = checkpoints
        self._audit = audit_log
        self._max_runs = max_runs

    def summaries(self, exclude: Iterable[str] = ()) -> list[RunSummary]:
        excluded = set(exclude)
        finished = []
        for run_id in self._checkpoints.list_run_ids():
            if run_id in excluded:
                continue
            try:
                checkpoint = self._checkpoints.load(run_id)
            except (ValidationError, OSError) as exc:
                # a corrupt record only costs its own summary
                self._audit.append(
                    run_id,
                    "warning",
                    "Checkpoint skipped by playbook.",
                    {"type": "checkpoint-error", "error": str(exc), "errorId": new_error_id()},
                )
                continue
            if checkpoint is not None and checkpoint.status.is_terminal:
                finished.append(checkpoint)
        finished.sort(key=lambda cp: cp.updated_at, reverse=True)
        return [
            summarize_run(checkpoint, self._audit.query(checkpoint.run_id))
            for checkpoint in finished[: self._max_runs]
        ]

    def synthesize(self, exclude: Iterable[str] = ()) -> str | None:
        return build_playbook(self.summaries(exclude))
