# config.py
# Engine configuration. Values come from the environment (and a .env file),
# are frozen into an EngineConfig and passed to constructors explicitly.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class EngineConfig(BaseModel):
    """Process-independent settings for one engine instance."""

    model_config = ConfigDict(frozen=True)

    debug: bool = False
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    browser: str = "chromium"
    headless: bool = True
    tool_timeout_s: float = 30.0
    reasoner_timeout_s: float = 60.0
    loop_guard_window: int = 8
    checkpoint_dir: str | None = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        load_dotenv()
        return cls(
            debug=_env_bool("AGENT_DEBUG"),
            api_key=os.getenv("OPENROUTER_API_KEY"),
            base_url=os.getenv("AGENT_BASE_URL", DEFAULT_BASE_URL),
            model=os.getenv("AGENT_MODEL", DEFAULT_MODEL),
            browser=os.getenv("AGENT_BROWSER", "chromium"),
            headless=_env_bool("AGENT_HEADLESS", True),
            tool_timeout_s=_env_float("AGENT_TOOL_TIMEOUT_S", 30.0),
            reasoner_timeout_s=_env_float("AGENT_REASONER_TIMEOUT_S", 60.0),
            checkpoint_dir=os.getenv("AGENT_CHECKPOINT_DIR") or None,
        )
