"""
Party Synthesis
===============

One-shot structured-output call in which the model simulates a panel of
personas and returns a single recommendation. The result is validated,
written to ``<artifactsDir>/party-synthesis/<featureId>.json`` and a
Markdown summary is appended to the feature's narrative log.

No retries happen here: a provider that gives up on the schema ends the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from automode.agent_runner import RunContext
from automode.errors import ProviderError
from automode.feature_store import atomic_write_text
from automode.personas import PERSONA_PREFIX
from automode.prompts import build_party_synthesis_prompt
from automode.provider import READ_ONLY_TOOLS

_logger = logging.getLogger(__name__)

PARTY_SYNTHESIS_MAX_TURNS = 80
PARTY_SYNTHESIS_DIR = "party-synthesis"

PARTY_SYNTHESIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "agents": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": 'Agent identifier (e.g., "bmad:pm")'},
                    "position": {"type": "string", "description": "The agent's position or contribution"},
                },
                "required": ["id", "position"],
            },
            "description": "Agents who took part in the synthesis",
        },
        "consensus": {
            "type": ["string", "null"],
            "description": "Synthesized consensus, or null if there is no agreement",
        },
        "dissent": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Points of disagreement",
        },
        "recommendation": {"type": "string", "description": "Final actionable recommendation"},
        "markdownSummary": {"type": "string", "description": "Human-readable markdown summary"},
    },
    "required": ["agents", "consensus", "dissent", "recommendation", "markdownSummary"],
    "additionalProperties": False,
}


class PartyAgentPosition(BaseModel):
    id: str
    position: str


class PartySynthesisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agents: list[PartyAgentPosition]
    consensus: Optional[str] = None
    dissent: list[str] = Field(default_factory=list)
    recommendation: str
    markdown_summary: str = Field(alias="markdownSummary")


def party_synthesis_artifact_path(project_path: str | Path, artifacts_dir: str, feature_id: str) -> Path:
    return Path(project_path) / artifacts_dir / PARTY_SYNTHESIS_DIR / f"{feature_id}.json"


def render_summary(result: PartySynthesisResult, title: str, date: str | None = None) -> str:
    """Dated Markdown block appended to agent-output.md."""
    date = date or datetime.now(timezone.utc).date().isoformat()
    agents = ", ".join(a.id.replace(PERSONA_PREFIX, "") for a in result.agents)
    header = "\n".join([
        "---",
        f"## Party Synthesis: {title}",
        f"**Date:** {date} | **Agents:** {agents}",
        "---",
        "",
    ])
    return f"{header}{result.markdown_summary.strip()}\n"


class PartySynthesisRunner:
    async def run(
        self,
        ctx: RunContext,
        previous_context: str | None = None,
        follow_up_instructions: str | None = None,
    ) -> PartySynthesisResult:
        """
        Run the synthesis call and persist its outputs.

        Raises:
            StructuredOutputExhaustedError: If the provider gave up on the schema
            ProviderError: If no usable structured output came back
        """
        feature = ctx.feature
        prompt = build_party_synthesis_prompt(feature, previous_context, follow_up_instructions)
        options = ctx.options(
            prompt,
            max_turns=PARTY_SYNTHESIS_MAX_TURNS,
            allowed_tools=list(READ_ONLY_TOOLS),
            output_format={"type": "json_schema", "schema": PARTY_SYNTHESIS_SCHEMA},
        )
        # Streamed text only feeds the JSON fallback; the log gets the rendered summary
        outcome = await ctx.runner.run(options, log_output=False)

        raw = outcome.structured_output
        if raw is None:
            try:
                raw = json.loads(outcome.text)
            except json.JSONDecodeError:
                raise ProviderError("Party synthesis did not return structured output", ctx.feature_id)

        try:
            result = PartySynthesisResult.model_validate(raw)
        except ValidationError as e:
            raise ProviderError(f"Party synthesis output is invalid: {e}", ctx.feature_id)

        path = party_synthesis_artifact_path(ctx.project_path, ctx.artifacts_dir, ctx.feature_id)
        document = json.dumps(result.model_dump(by_alias=True), indent=2) + "\n"
        await asyncio.to_thread(atomic_write_text, path, document)
        _logger.info("Party synthesis for %s written to %s", ctx.feature_id, path)

        ctx.writer.append_text(render_summary(result, feature.display_title or ctx.feature_id))
        return result
