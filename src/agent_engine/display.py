# display.py
# All terminal output for the engine.
#
# The scheduler and gateway never format strings for operators; they call
# named methods here. The durable record is the audit log, this is the
# human-facing echo of it. A disabled Display swallows everything.
#
# Colour language:
#   cyan: run lifecycle / planning
#   yellow: loop guard, approvals, checkpoints
#   green: completed steps and runs
#   red: failures and faults (always with an error id)
#   magenta: step dispatch

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from agent_engine.models import LoopSignal, PlanStep, RunOutcome, RunStatus, StepStatus

_STATUS_STYLE = {
    StepStatus.PENDING: "dim white",
    StepStatus.RUNNING: "bold magenta",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "bold red",
}

_RUN_STYLE = {
    RunStatus.COMPLETED: "green",
    RunStatus.PARTIAL_FAILURE: "yellow",
    RunStatus.WAITING_HUMAN: "yellow",
    RunStatus.STOPPED: "yellow",
    RunStatus.FAILED: "red",
}


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


class Display:
    def __init__(self, enabled: bool = True, console: Console | None = None) -> None:
        self.console = console or Console(quiet=not enabled)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run_started(self, run_id: str, goal: str, resumed: bool = False) -> None:
        self.console.print()
        self.console.print(Rule(f"[cyan]{'RESUME' if resumed else 'RUN'} {run_id[:12]}[/cyan]", style="cyan"))
        self.console.print(
            Panel(
                f"[white]{goal}[/white]",
                title=_label("GOAL", "cyan"),
                border_style="cyan",
                padding=(0, 2),
            )
        )

    def run_finished(self, outcome: RunOutcome) -> None:
        color = _RUN_STYLE.get(outcome.status, "cyan")
        lines = [f"[bold {color}]{outcome.status.value}[/bold {color}]"]
        if outcome.response:
            lines.append(f"[white]{_mono(outcome.response, 400)}[/white]")
        if outcome.error:
            lines.append(f"[red]{outcome.error}[/red]")
        if outcome.error_id:
            lines.append(f"[dim]error id: {outcome.error_id}[/dim]")
        self.console.print()
        self.console.print(
            Panel("\n".join(lines), title=_label("RUN OUTCOME", color), border_style=color, padding=(0, 2))
        )

    def playbook(self, text: str) -> None:
        self.console.print(Panel(f"[dim]{text}[/dim]", title=_label("PLAYBOOK", "cyan"), border_style="cyan"))

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_applied(self, steps: list[PlanStep], reason: str, applied: list[str], rejected: list[str]) -> None:
        table = Table(box=box.SIMPLE_HEAVY, border_style="cyan", header_style="bold cyan", padding=(0, 1))
        table.add_column("ID", style="dim", width=14)
        table.add_column("Status", width=10)
        table.add_column("Tool", style="bold white", width=20)
        table.add_column("Pri", justify="right", width=4)
        table.add_column("Depends on", style="dim", width=18)
        table.add_column("Title", style="white")

        for step in steps:
            marker = "*" if step.id in applied else ""
            table.add_row(
                _mono(step.id, 12) + marker,
                Text(step.status.value, style=_STATUS_STYLE[step.status]),
                step.tool or "-",
                str(step.priority),
                _mono(", ".join(step.depends_on), 16) or "-",
                step.title,
            )

        subtitle = f"[dim]{len(applied)} applied"
        if rejected:
            subtitle += f", {len(rejected)} rejected"
        subtitle += "[/dim]"
        self.console.print()
        self.console.print(
            Panel(table, title=_label(f"PLAN: {reason.upper()}", "cyan"), subtitle=subtitle, border_style="cyan")
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def step_started(self, step: PlanStep, dispatched: int, budget: int | None) -> None:
        total = budget if budget is not None else "∞"
        self.console.print()
        self.console.print(
            f"[bold magenta]  STEP [{dispatched + 1}/{total}][/bold magenta]  "
            f"[white]{step.title}[/white] [dim]({step.tool or 'reasoner'}, attempt {step.attempts + 1}/{step.max_attempts})[/dim]"
        )
        if step.args:
            self.console.print(f"  [dim]args: {_mono(json.dumps(step.args), 100)}[/dim]")

    def step_finished(self, step: PlanStep, observation: str | None) -> None:
        style = _STATUS_STYLE[step.status]
        self.console.print(f"  [{style}]↳ {step.status.value}[/{style}]  [dim]{_mono(observation or step.error or '', 100)}[/dim]")

    # ------------------------------------------------------------------
    # Guards and gates
    # ------------------------------------------------------------------

    def loop_detected(self, signal: LoopSignal, backoff_ms: int) -> None:
        self.console.print()
        self.console.print(
            Panel(
                f"[bold yellow]{signal.reason}[/bold yellow]\n"
                f"[dim]pattern: {signal.pattern} · backoff: {backoff_ms} ms[/dim]\n"
                f"[white]{' → '.join(signal.titles)}[/white]",
                title=_label("LOOP GUARD", "yellow"),
                border_style="yellow",
                padding=(0, 2),
            )
        )

    def approval_required(self, step: PlanStep, reason: str) -> None:
        self.console.print()
        self.console.print(
            Panel(
                f"[bold yellow]{step.title}[/bold yellow]\n[dim]{reason}[/dim]\n"
                f"[white]approve with step id[/white] [bold]{step.id}[/bold]",
                title=_label("HUMAN APPROVAL REQUIRED", "yellow"),
                border_style="yellow",
                padding=(0, 2),
            )
        )

    def checkpoint_loaded(self, run_id: str, reset_ids: list[str]) -> None:
        note = f" · reset to pending: {', '.join(reset_ids)}" if reset_ids else ""
        self.console.print(f"[yellow]  ↺ checkpoint loaded[/yellow] [dim]{run_id[:12]}{note}[/dim]")

    def fault(self, label: str, error: str, error_id: str) -> None:
        self.console.print(
            _label("FAULT", "red"),
            f"[red] {label}:[/red] [white]{_mono(error)}[/white] [dim](error id {error_id})[/dim]",
        )
