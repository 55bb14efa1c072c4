# gateway.py
# The only path from the engine to the external Tool.
#
# Contract: execute() never raises for tool faults. Every call yields exactly
# one audit entry, and every successful snapshot exactly one Snapshot record.

import asyncio
from typing import Any, Protocol

from agent_engine.audit import AuditLog
from agent_engine.display import Display
from agent_engine.errors import new_error_id
from agent_engine.models import (
    GatewayResult,
    Snapshot,
    ToolOutput,
    ToolResult,
    ValidationFailure,
)
from agent_engine.snapshots import SnapshotStore

ACTIONS = ("goto", "reload", "snapshot")

# Step tool names understood by the engine, mapped to gateway actions.
TOOL_ACTIONS = {
    "goto": "goto",
    "reload": "reload",
    "snapshot": "snapshot",
    "playwright-goto": "goto",
    "playwright-reload": "reload",
    "playwright-snapshot": "snapshot",
}


def resolve_action(tool_name: str | None) -> str | None:
    if not tool_name:
        return None
    return TOOL_ACTIONS.get(tool_name.strip().lower())


class Tool(Protocol):
    async def goto(self, run_id: str, url: str) -> dict[str, Any]: ...

    async def reload(self, run_id: str) -> dict[str, Any]: ...

    async def snapshot(self, run_id: str) -> dict[str, Any]: ...

    # optional: async def close_run(self, run_id: str) -> None


class ToolGateway:
    def __init__(
        self,
        tool: Tool,
        audit_log: AuditLog,
        snapshot_store: SnapshotStore,
        timeout_s: float = 30.0,
        display: Display | None = None,
    ) -> None:
        self._tool = tool
        self._audit = audit_log
        self._snapshots = snapshot_store
        self._timeout_s = timeout_s
        self._display = display or Display(enabled=False)

    def _record(self, run_id: str, level: str, message: str, metadata: dict[str, Any]) -> None:
        try:
            self._audit.append(run_id, level, message, metadata)
        except Exception as exc:
            self._display.fault("Audit write failed", str(exc), metadata.get("errorId") or new_error_id())

    def _reject(self, run_id: str, error: str, metadata: dict[str, Any]) -> ValidationFailure:
        error_id = new_error_id()
        self._record(run_id, "warning", "Control action rejected.", {**metadata, "error": error, "errorId": error_id})
        return ValidationFailure(error=error, error_id=error_id)

    async def _dispatch(self, run_id: str, action: str, url: str) -> dict[str, Any]:
        if action == "goto":
            return await self._tool.goto(run_id, url)
        if action == "reload":
            return await self._tool.reload(run_id)
        return await self._tool.snapshot(run_id)

    async def execute(
        self,
        run_id: str,
        action: str,
        args: dict[str, Any] | None = None,
        step_id: str | None = None,
    ) -> GatewayResult:
        args = args or {}
        metadata: dict[str, Any] = {"type": "tool-action", "action": action, "stepId": step_id}

        if action not in ACTIONS:
            return self._reject(run_id, "Invalid control action.", metadata)
        url = str(args.get("url") or "").strip()
        if action == "goto" and not url:
            return self._reject(run_id, "URL is required for goto action.", metadata)

        try:
            observation = await asyncio.wait_for(
                self._dispatch(run_id, action, url), timeout=self._timeout_s
            )
            output = ToolOutput(
                url=observation.get("url") or url or None,
                title=observation.get("title"),
            )
            if action == "snapshot":
                snapshot = self._snapshots.add(
                    Snapshot(
                        run_id=run_id,
                        step_id=step_id,
                        url=output.url or "",
                        title=output.title,
                        text=observation.get("text") or "",
                        elements=observation.get("elements"),
                    )
                )
                output.snapshot_id = snapshot.id
                output.text = snapshot.text
                output.elements = snapshot.elements
        except Exception as exc:
            error_id = new_error_id()
            if isinstance(exc, asyncio.TimeoutError):
                error = f"Tool action '{action}' timed out after {self._timeout_s}s."
            else:
                error = str(exc) or exc.__class__.__name__
            self._record(
                run_id,
                "error",
                "Control action failed.",
                {**metadata, "url": url or None, "error": error, "errorId": error_id},
            )
            self._display.fault(f"Tool {action} failed", error, error_id)
            return ToolResult(ok=False, error=error, error_id=error_id)

        self._record(
            run_id,
            "info",
            "Control action completed.",
            {**metadata, "url": output.url, "title": output.title, "snapshotId": output.snapshot_id},
        )
        return ToolResult(ok=True, output=output)

    async def close_run(self, run_id: str) -> None:
        """Release the Tool's per-run resources. Tools without close_run hold none."""
        close = getattr(self._tool, "close_run", None)
        if close is None:
            return
        try:
            await asyncio.wait_for(close(run_id), timeout=self._timeout_s)
        except Exception as exc:
            error_id = new_error_id()
            error = str(exc) or exc.__class__.__name__
            self._record(run_id, "warning", "Tool cleanup failed.", {"type": "tool-close", "error": error, "errorId": error_id})
            self._display.fault("Tool cleanup failed", error, error_id)
