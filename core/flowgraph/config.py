"""Shared flowgraph configuration utilities.

Centralises reading of ~/.flowgraph/configuration.json so that editors and
executors share one implementation for model defaults and limits.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_TOOL_ITERATIONS = 10
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_HISTORY_DEBOUNCE_MS = 300

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWGRAPH_CONFIG_FILE = Path.home() / ".flowgraph" / "configuration.json"


def get_flowgraph_config() -> dict[str, Any]:
    """Load flowgraph configuration from ~/.flowgraph/configuration.json."""
    if not FLOWGRAPH_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWGRAPH_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_model() -> str:
    """Return the configured default model id (e.g. 'openai/gpt-4o-mini')."""
    llm = get_flowgraph_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    return get_flowgraph_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_flowgraph_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_api_base() -> str | None:
    return get_flowgraph_config().get("llm", {}).get("api_base")


def _execution_setting(key: str, default: int) -> int:
    return get_flowgraph_config().get("execution", {}).get(key, default)


def _editor_setting(key: str, default: int) -> int:
    return get_flowgraph_config().get("editor", {}).get(key, default)


# ---------------------------------------------------------------------------
# RuntimeConfig – shared by editors and executors
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.flowgraph/configuration.json."""

    model: str = field(default_factory=get_default_model)
    temperature: float = 0.7
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = field(default_factory=get_api_base)
    max_retries: int = field(
        default_factory=lambda: _execution_setting("max_retries", DEFAULT_MAX_RETRIES)
    )
    max_tool_iterations: int = field(
        default_factory=lambda: _execution_setting(
            "max_tool_iterations", DEFAULT_MAX_TOOL_ITERATIONS
        )
    )
    history_limit: int = field(
        default_factory=lambda: _editor_setting("history_limit", DEFAULT_HISTORY_LIMIT)
    )
    history_debounce_ms: int = field(
        default_factory=lambda: _editor_setting("history_debounce_ms", DEFAULT_HISTORY_DEBOUNCE_MS)
    )
