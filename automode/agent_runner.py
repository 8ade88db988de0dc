"""
Agent Runner
============

Consumes one provider stream for a feature run:

- assistant text goes to the narrative log and out as progress events
- tool uses are logged and emitted as tool events
- text is scanned for credential failures and, optionally, protocol markers
- terminal result errors become ProviderError subclasses

The whole stream is raced against the run's cancellation token, so stopping
a feature closes the provider session wherever it is.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from automode.cancellation import CancellationToken
from automode.errors import (
    STRUCTURED_OUTPUT_RETRIES_SUBTYPE,
    AuthenticationError,
    ProviderError,
    StructuredOutputExhaustedError,
    contains_auth_error,
)
from automode.events import AutoModeEvents, AutoModeEventType
from automode.marker_parser import Marker, MarkerEvent, MarkerParser
from automode.models import Feature
from automode.output_writer import AgentOutputWriter
from automode.provider import (
    AgentProvider,
    ExecuteOptions,
    ResultError,
    ResultSuccess,
    TextMessage,
    ToolUseMessage,
)

_logger = logging.getLogger(__name__)


@dataclass
class AgentOutcome:
    """
    What one agent call produced.

    Attributes:
        text: Assistant text of this call, concatenated
        result: Final result text, if the stream ended with a success result
        structured_output: Schema-constrained output, if requested and returned
        marker: The stop marker that ended the stream early, if any
        completed: True when a terminal success result was received
    """

    text: str = ""
    result: str | None = None
    structured_output: Any = None
    marker: MarkerEvent | None = None
    completed: bool = False


class AgentRunner:
    def __init__(
        self,
        provider: AgentProvider,
        events: AutoModeEvents,
        feature_id: str,
        project_path: str,
        writer: AgentOutputWriter | None,
        cancel_token: CancellationToken,
    ):
        self.provider = provider
        self.events = events
        self.feature_id = feature_id
        self.project_path = project_path
        self.writer = writer
        self.cancel_token = cancel_token
        self.call_count = 0

    async def run(
        self,
        options: ExecuteOptions,
        stop_on: Iterable[Marker] | None = None,
        log_output: bool = True,
    ) -> AgentOutcome:
        """
        Run one agent call to completion.

        Args:
            options: Call options; the run's cancellation token is attached
            stop_on: Markers that end the stream as soon as they are seen
            log_output: Append streamed text and tool uses to the narrative log

        Raises:
            FeatureCancelledError: If the run is stopped mid-call
            AuthenticationError: If the output reports a credential failure
            ProviderError: If the provider ends with an error result
        """
        options = replace(options, cancel_token=self.cancel_token)
        self.call_count += 1
        _logger.debug(
            "Agent call #%d for %s (model=%s, max_turns=%s)",
            self.call_count, self.feature_id, options.model, options.max_turns,
        )
        writer = self.writer if log_output else None
        return await self.cancel_token.race(self._consume(options, stop_on, writer))

    async def _consume(
        self,
        options: ExecuteOptions,
        stop_on: Iterable[Marker] | None,
        writer: AgentOutputWriter | None,
    ) -> AgentOutcome:
        markers = tuple(stop_on or ())
        parser = MarkerParser(markers) if markers else None
        outcome = AgentOutcome()

        async with aclosing(self.provider.execute_query(options)) as stream:
            async for msg in stream:
                if isinstance(msg, TextMessage):
                    if contains_auth_error(msg.text):
                        raise AuthenticationError(feature_id=self.feature_id)
                    outcome.text += msg.text
                    if writer is not None:
                        writer.append_text(msg.text)
                    self.events.emit(
                        AutoModeEventType.PROGRESS,
                        featureId=self.feature_id,
                        projectPath=self.project_path,
                        content=msg.text,
                    )
                    if parser is not None:
                        outcome.marker = self._first_valid(parser.feed(msg.text))
                        if outcome.marker is not None:
                            _logger.info(
                                "Marker %s detected for %s", outcome.marker.marker.value, self.feature_id
                            )
                            break

                elif isinstance(msg, ToolUseMessage):
                    if writer is not None:
                        writer.append_tool(msg.name, msg.input)
                    self.events.emit(
                        AutoModeEventType.TOOL,
                        featureId=self.feature_id,
                        projectPath=self.project_path,
                        tool=msg.name,
                        input=msg.input,
                    )

                elif isinstance(msg, ResultSuccess):
                    outcome.completed = True
                    outcome.result = msg.result
                    outcome.structured_output = msg.structured_output

                elif isinstance(msg, ResultError):
                    if msg.subtype == STRUCTURED_OUTPUT_RETRIES_SUBTYPE:
                        raise StructuredOutputExhaustedError(feature_id=self.feature_id)
                    raise ProviderError(
                        msg.error or f"Agent execution failed ({msg.subtype})",
                        self.feature_id,
                        subtype=msg.subtype,
                    )

        if parser is not None and outcome.marker is None:
            for event in parser.finish():
                _logger.warning("%s for %s: %s", event.marker.value, self.feature_id, event.error)
        return outcome

    def _first_valid(self, found: list[MarkerEvent]) -> MarkerEvent | None:
        for event in found:
            if event.error:
                _logger.warning("Ignoring malformed %s for %s: %s", event.marker.value, self.feature_id, event.error)
                continue
            return event
        return None


@dataclass
class RunContext:
    """
    Everything the controllers share while one feature runs.

    ``options()`` builds ExecuteOptions with the run's defaults; planner
    calls swap in the planner model and tool list when a separate planner
    is configured.
    """

    feature: Feature
    project_path: str
    work_dir: str
    model: str
    cancel_token: CancellationToken
    writer: AgentOutputWriter
    runner: AgentRunner
    system_prompt: str | None = None
    artifacts_dir: str = ""
    max_thinking_tokens: int | None = None
    max_turns: int | None = None
    planner_model: str | None = None
    planner_tools: list[str] = field(default_factory=list)

    @property
    def feature_id(self) -> str:
        return self.feature.id

    @property
    def uses_separate_planner(self) -> bool:
        return self.planner_model is not None

    def options(self, prompt: str, **overrides: Any) -> ExecuteOptions:
        options = ExecuteOptions(
            prompt=prompt,
            model=self.model,
            cwd=self.work_dir,
            system_prompt=self.system_prompt,
            max_turns=self.max_turns,
            max_thinking_tokens=self.max_thinking_tokens,
            cancel_token=self.cancel_token,
        )
        return replace(options, **overrides)

    def planner_options(self, prompt: str, **overrides: Any) -> ExecuteOptions:
        if not self.uses_separate_planner:
            return self.options(prompt, **overrides)
        return self.options(
            prompt,
            model=self.planner_model,
            allowed_tools=list(self.planner_tools),
            **overrides,
        )
