"""
Auto Mode Configuration
=======================

Environment variable configuration for the orchestrator, plus model alias
and thinking level resolution.

Usage:
    from automode.config import AutoModeConfig, resolve_model_string

    config = AutoModeConfig.from_env()
    model = resolve_model_string("opus", config.default_model)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

CLAUDE_MODEL_MAP = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-20250514",
    "opus": "claude-opus-4-5-20251101",
}

DEFAULT_MODEL = CLAUDE_MODEL_MAP["sonnet"]

THINKING_TOKEN_BUDGETS = {
    "low": 1024,
    "medium": 4096,
    "high": 8192,
    "ultrathink": 16000,
}

ENV_MAX_CONCURRENCY = "AUTOMODE_MAX_CONCURRENCY"
ENV_DEFAULT_MODEL = "AUTOMODE_DEFAULT_MODEL"
ENV_MODEL_PLANNER = "AUTOMODE_MODEL_PLANNER"
ENV_PLANNER_ALLOWED_TOOLS = "AUTOMODE_PLANNER_ALLOWED_TOOLS"
ENV_PERSONA_MANIFEST = "AUTOMODE_PERSONA_MANIFEST"
ENV_GLOBAL_SETTINGS = "AUTOMODE_GLOBAL_SETTINGS"
ENV_WRITE_DEBOUNCE_MS = "AUTOMODE_WRITE_DEBOUNCE_MS"
ENV_CAPACITY_WAIT = "AUTOMODE_CAPACITY_WAIT"
ENV_IDLE_WAIT = "AUTOMODE_IDLE_WAIT"
ENV_ADMIT_WAIT = "AUTOMODE_ADMIT_WAIT"
ENV_ERROR_WAIT = "AUTOMODE_ERROR_WAIT"

DEFAULT_PLANNER_TOOLS = ["Read", "Glob", "Grep"]


# =============================================================================
# Model resolution
# =============================================================================

def resolve_model_string(model_key: str | None, default_model: str = DEFAULT_MODEL) -> str:
    """
    Resolve a model alias to a full model id.

    Full ``claude-`` ids pass through lower-cased, known aliases map through
    CLAUDE_MODEL_MAP, and anything else is returned as given.
    """
    if not model_key or not model_key.strip():
        return default_model

    trimmed = model_key.strip()
    lowered = trimmed.lower()

    if "claude-" in lowered:
        return lowered

    resolved = CLAUDE_MODEL_MAP.get(lowered)
    if resolved:
        _logger.debug("Resolved model alias '%s' -> '%s'", lowered, resolved)
        return resolved

    return trimmed


def thinking_tokens_for_level(level: str | None) -> int | None:
    """Max thinking tokens for a thinking level, or None for none/unknown."""
    if not level:
        return None
    return THINKING_TOKEN_BUDGETS.get(level.strip().lower())


# =============================================================================
# Environment Variable Reading
# =============================================================================

def _read_number(
    env: Mapping[str, str],
    name: str,
    default: float,
    minimum: float,
    cast: type = float,
):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        _logger.warning(
            "Invalid value for %s: '%s'. Defaulting to %s", name, raw, default
        )
        return default
    if value < minimum:
        _logger.warning(
            "Value for %s below minimum %s: '%s'. Defaulting to %s", name, minimum, raw, default
        )
        return default
    return value


def _read_list(env: Mapping[str, str], name: str, default: list[str]) -> list[str]:
    raw = env.get(name, "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class AutoModeConfig:
    """
    Orchestrator settings.

    Scheduler waits are in seconds.
    """

    max_concurrency: int = 3
    default_model: str = DEFAULT_MODEL
    planner_model: str | None = None
    planner_allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_PLANNER_TOOLS))
    persona_manifest: str | None = None
    global_settings_path: str | None = None
    write_debounce_ms: int = 500
    capacity_wait: float = 5.0
    idle_wait: float = 10.0
    admit_wait: float = 2.0
    error_wait: float = 5.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "AutoModeConfig":
        """Build a config from ``env`` (os.environ after loading .env by default)."""
        if env is None:
            load_dotenv()
            env = os.environ

        default_model = resolve_model_string(env.get(ENV_DEFAULT_MODEL), DEFAULT_MODEL)
        planner_raw = env.get(ENV_MODEL_PLANNER, "").strip()

        return cls(
            max_concurrency=_read_number(env, ENV_MAX_CONCURRENCY, 3, 1, int),
            default_model=default_model,
            planner_model=resolve_model_string(planner_raw) if planner_raw else None,
            planner_allowed_tools=_read_list(env, ENV_PLANNER_ALLOWED_TOOLS, DEFAULT_PLANNER_TOOLS),
            persona_manifest=env.get(ENV_PERSONA_MANIFEST, "").strip() or None,
            global_settings_path=env.get(ENV_GLOBAL_SETTINGS, "").strip() or None,
            write_debounce_ms=_read_number(env, ENV_WRITE_DEBOUNCE_MS, 500, 0, int),
            capacity_wait=_read_number(env, ENV_CAPACITY_WAIT, 5.0, 0),
            idle_wait=_read_number(env, ENV_IDLE_WAIT, 10.0, 0),
            admit_wait=_read_number(env, ENV_ADMIT_WAIT, 2.0, 0),
            error_wait=_read_number(env, ENV_ERROR_WAIT, 5.0, 0),
        )

    def uses_separate_planner(self, executor_model: str) -> bool:
        return bool(self.planner_model) and self.planner_model != executor_model
