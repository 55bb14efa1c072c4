# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Swap AGENT_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import asyncio
import sys

from agent_engine.checkpoint import CheckpointManager, FileCheckpointStore, InMemoryCheckpointStore
from agent_engine.config import EngineConfig
from agent_engine.display import Display
from agent_engine.engine import AgentEngine
from agent_engine.reasoner import OpenAIReasoner
from agent_engine.tools import PlaywrightTool

# Demo goals; pass your own on the command line instead.
GOALS = [
    # Single page, read-only: goto then snapshot
    "Open https://example.com and report the page title and main heading.",

    # Extraction across one page with a judgement step
    "Go to https://news.ycombinator.com and list the titles of the top five stories.",
]


def build_engine(config: EngineConfig) -> tuple[AgentEngine, PlaywrightTool]:
    store = FileCheckpointStore(config.checkpoint_dir) if config.checkpoint_dir else InMemoryCheckpointStore()
    tool = PlaywrightTool(
        browser=config.browser,
        headless=config.headless,
        navigation_timeout_ms=int(config.tool_timeout_s * 1000),
    )
    engine = AgentEngine(
        OpenAIReasoner(config),
        tool,
        checkpoints=CheckpointManager(store),
        config=config,
        display=Display(enabled=True),
    )
    return engine, tool


async def _run_goals(goals: list[str]) -> None:
    engine, tool = build_engine(EngineConfig.from_env())
    try:
        for goal in goals:
            outcome = await engine.run(goal)
            print(f"\n[RESULT] {outcome.status.value}\n{outcome.response or outcome.error or ''}\n")
    finally:
        await tool.close()


def main() -> None:
    asyncio.run(_run_goals(sys.argv[1:] or GOALS))


if __name__ == "__main__":
    main()
