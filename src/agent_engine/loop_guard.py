# loop_guard.py
# Detects repetitive, non-progressing step behaviour and prices it in backoff.
#
# Input is the tail of the run's `step-result` audit entries. The only state
# carried between evaluations is the streak of consecutive detections.

from typing import NamedTuple

from agent_engine.audit import AuditLog
from agent_engine.models import AgentPlanSettings, LoopSignal, StepStatus

STEP_RESULT = "step-result"


class StepTrace(NamedTuple):
    title: str
    url: str | None
    status: StepStatus


class LoopVerdict(NamedTuple):
    signal: LoopSignal | None
    backoff_ms: int


def _signal(reason: str, pattern: str, traces: list[StepTrace]) -> LoopSignal:
    return LoopSignal(
        reason=reason,
        pattern=pattern,
        titles=[t.title for t in traces],
        urls=[t.url for t in traces],
        statuses=[t.status for t in traces],
    )


def detect_loop_pattern(recent: list[StepTrace], threshold: int) -> LoopSignal | None:
    """
    Inspect `recent` (oldest first) for one of three patterns:

      repeat-same-step     last `threshold` traces share (title, url, status)
      alternate-two-steps  last 2*threshold traces alternate between two titles
      same-url-failures    last `threshold` traces failed on one URL
    """
    threshold = max(1, threshold)
    if len(recent) < threshold:
        return None

    tail = recent[-threshold:]
    keys = {(t.title.strip().lower(), t.url, t.status) for t in tail}
    if len(keys) == 1 and threshold > 1:
        return _signal("Repeated the same step multiple times.", "repeat-same-step", tail)

    window = recent[-2 * threshold:]
    if len(window) == 2 * threshold and threshold > 1:
        titles = [t.title.strip().lower() for t in window]
        first, second = titles[0], titles[1]
        alternating = first != second and all(
            title == (first if i % 2 == 0 else second) for i, title in enumerate(titles)
        )
        if alternating:
            return _signal("Alternating between the same two steps.", "alternate-two-steps", window)

    urls = {t.url for t in tail}
    if (
        len(urls) == 1
        and tail[0].url
        and all(t.status == StepStatus.FAILED for t in tail)
    ):
        return _signal("Repeated failures on the same URL.", "same-url-failures", tail)

    return None


def history_from_audit(audit_log: AuditLog, run_id: str, window: int) -> list[StepTrace]:
    """Most recent `window` step outcomes of a run, oldest first."""
    entries = audit_log.query(run_id, limit=window, entry_type=STEP_RESULT)
    traces = []
    for entry in reversed(entries):
        metadata = entry.metadata
        traces.append(
            StepTrace(
                title=str(metadata.get("title", "")),
                url=metadata.get("url"),
                status=StepStatus(metadata.get("status", StepStatus.FAILED.value)),
            )
        )
    return traces


class LoopGuard:
    """
    Wraps detect_loop_pattern with the exponential backoff policy:

        delay = min(max_ms, base_ms * 2 ** streak)

    The streak grows by one per consecutive detection and drops to zero on the
    first evaluation without a signal.
    """

    def __init__(self, threshold: int, base_ms: int, max_ms: int, streak: int = 0) -> None:
        self.threshold = threshold
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.streak = streak

    @classmethod
    def from_settings(cls, settings: AgentPlanSettings, streak: int = 0) -> "LoopGuard":
        return cls(
            threshold=settings.loop_guard_threshold,
            base_ms=settings.loop_backoff_base_ms,
            max_ms=settings.loop_backoff_max_ms,
            streak=streak,
        )

    def history_window(self, window: int) -> int:
        """Traces to inspect; alternate-two-steps needs 2 * threshold of them."""
        return max(window, 2 * self.threshold)

    def backoff_ms(self) -> int:
        return min(self.max_ms, self.base_ms * 2 ** self.streak)

    def evaluate(self, recent: list[StepTrace]) -> LoopVerdict:
        signal = detect_loop_pattern(recent, self.threshold)
        if signal is None:
            self.streak = 0
            return LoopVerdict(None, 0)
        delay = self.backoff_ms()
        self.streak += 1
        return LoopVerdict(signal, delay)
