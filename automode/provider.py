"""
Agent Execution Provider
========================

The orchestrator talks to the language model through a single capability:
given ``ExecuteOptions``, produce an async stream of typed messages.

Message variants:
    TextMessage      - assistant text
    ToolUseMessage   - assistant tool invocation
    ResultSuccess    - terminal success, optionally with structured output
    ResultError      - terminal failure reported by the provider

A stream may end without a terminal result; callers treat that as
"ended, no explicit outcome".

``ClaudeAgentProvider`` adapts the Claude Agent SDK's ``ClaudeSDKClient``
stream to these variants.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, Union

from automode.cancellation import CancellationToken

_logger = logging.getLogger(__name__)

# Environment variables to pass through to Claude CLI for API configuration
API_ENV_VARS = [
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_AUTH_TOKEN",
    "API_TIMEOUT_MS",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_DEFAULT_OPUS_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
]

DEFAULT_MAX_TURNS = 1000

# Tools available to a full implementation session
DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebSearch",
    "WebFetch",
]

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]


# =============================================================================
# Message sum type
# =============================================================================

@dataclass(frozen=True)
class TextMessage:
    text: str


@dataclass(frozen=True)
class ToolUseMessage:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None


@dataclass(frozen=True)
class ResultSuccess:
    result: str | None = None
    structured_output: Any = None


@dataclass(frozen=True)
class ResultError:
    subtype: str
    error: str | None = None


ProviderMessage = Union[TextMessage, ToolUseMessage, ResultSuccess, ResultError]


@dataclass
class ExecuteOptions:
    """Everything one agent call needs."""

    prompt: str
    model: str
    cwd: str
    system_prompt: str | None = None
    max_turns: int | None = None
    allowed_tools: list[str] | None = None
    max_thinking_tokens: int | None = None
    output_format: dict[str, Any] | None = None
    cancel_token: CancellationToken | None = None
    setting_sources: list[str] = field(default_factory=lambda: ["project"])


class AgentProvider(Protocol):
    """Anything that can stream ProviderMessages for an ExecuteOptions."""

    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        ...


# =============================================================================
# Claude Agent SDK adapter
# =============================================================================

class ClaudeAgentProvider:
    """
    Provider backed by the Claude Agent SDK.

    Each call opens its own ``ClaudeSDKClient`` session, sends the prompt and
    translates the response stream. Closing the generator early (for example
    after a stop marker, or on cancellation) tears the session down.
    """

    def __init__(self, permission_mode: str = "bypassPermissions"):
        self.permission_mode = permission_mode

    def build_options(self, options: ExecuteOptions):
        from claude_agent_sdk import ClaudeAgentOptions

        sdk_env: dict[str, str] = {}
        for var in API_ENV_VARS:
            value = os.getenv(var)
            if value:
                sdk_env[var] = value

        kwargs: dict[str, Any] = {
            "model": options.model,
            "cli_path": shutil.which("claude"),
            "system_prompt": options.system_prompt,
            "setting_sources": options.setting_sources,
            "allowed_tools": options.allowed_tools or list(DEFAULT_ALLOWED_TOOLS),
            "max_turns": options.max_turns or DEFAULT_MAX_TURNS,
            "cwd": options.cwd,
            "env": sdk_env,
            "permission_mode": self.permission_mode,
        }
        if options.max_thinking_tokens:
            kwargs["max_thinking_tokens"] = options.max_thinking_tokens
        if options.output_format:
            kwargs["output_format"] = options.output_format
        return ClaudeAgentOptions(**kwargs)

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        from claude_agent_sdk import ClaudeSDKClient

        sdk_options = self.build_options(options)
        _logger.debug("Starting SDK session model=%s cwd=%s", options.model, options.cwd)

        async with ClaudeSDKClient(options=sdk_options) as client:
            await client.query(options.prompt)

            async for msg in client.receive_response():
                for translated in translate_sdk_message(msg):
                    yield translated


def translate_sdk_message(msg: Any) -> list[ProviderMessage]:
    """Map one SDK message to zero or more ProviderMessages."""
    msg_type = type(msg).__name__
    translated: list[ProviderMessage] = []

    if msg_type == "AssistantMessage" and hasattr(msg, "content"):
        for block in msg.content:
            block_type = type(block).__name__

            if block_type == "TextBlock" and hasattr(block, "text"):
                translated.append(TextMessage(text=block.text))

            elif block_type == "ToolUseBlock" and hasattr(block, "name"):
                translated.append(ToolUseMessage(
                    name=getattr(block, "name", "unknown"),
                    input=getattr(block, "input", {}) or {},
                    tool_use_id=getattr(block, "id", None),
                ))

    elif msg_type == "ResultMessage":
        subtype = getattr(msg, "subtype", "success") or "success"
        if subtype == "success" and not getattr(msg, "is_error", False):
            translated.append(ResultSuccess(
                result=getattr(msg, "result", None),
                structured_output=getattr(msg, "structured_output", None),
            ))
        else:
            translated.append(ResultError(
                subtype=subtype,
                error=getattr(msg, "result", None),
            ))

    return translated
