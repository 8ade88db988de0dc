"""
Persona Resolver
================

Turns agent identifiers into system prompt fragments and model defaults.

Personas come from a manifest CSV with the columns
``name, displayName, title, icon, role, identity, communicationStyle,
principles, module, path``. Identifiers use a ``bmad:`` prefix; the prefix
is optional on input. The party-synthesis persona is built in and needs no
manifest row.

One identifier resolves to that persona's prompt; several resolve to a
multi-agent collaboration prompt led by the first.
"""

from __future__ import annotations

import asyncio
import csv
import html
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path

_logger = logging.getLogger(__name__)

PERSONA_PREFIX = "bmad:"
PARTY_SYNTHESIS_ID = "bmad:party-synthesis"

DEFAULT_PERSONA_MODEL = "opus"
DEFAULT_THINKING_BUDGET = 16000

# Personas whose defaults differ from DEFAULT_PERSONA_MODEL/DEFAULT_THINKING_BUDGET
PERSONA_DEFAULT_OVERRIDES: dict[str, tuple[str, int]] = {
    "bmad:marketing-outreach": ("opus", 10000),
}

PARTY_SYNTHESIS_PANEL = (
    ("Sage", "strategist-marketer", "business why and who, product strategy, requirements"),
    ("Theo", "technologist-architect", "technical how, architecture, implementation"),
    ("Finn", "fulfillization-manager", "turning the vision into delivered work"),
    ("Cerberus", "security-guardian", "security posture, risk, supply chain"),
    ("Stermark", "financial-strategist", "financial planning, ROI, resource allocation"),
    ("Axel", "operations-commander", "operations, process, delivery"),
    ("Apex", "apex", "performance engineering and rapid implementation"),
    ("Zen", "zen", "clean architecture, maintainability, test strategy"),
    ("Echon", "echon", "post-launch reliability, customer success, growth"),
)


def normalize_persona_id(persona_id: str) -> str:
    persona_id = persona_id.strip()
    if not persona_id or persona_id.startswith(PERSONA_PREFIX):
        return persona_id
    return f"{PERSONA_PREFIX}{persona_id}"


def is_party_synthesis(agent_ids: list[str] | None) -> bool:
    """True when the only selected agent is the party-synthesis persona."""
    return (
        agent_ids is not None
        and len(agent_ids) == 1
        and normalize_persona_id(agent_ids[0]) == PARTY_SYNTHESIS_ID
    )


def persona_defaults(persona_id: str) -> tuple[str, int]:
    return PERSONA_DEFAULT_OVERRIDES.get(
        normalize_persona_id(persona_id), (DEFAULT_PERSONA_MODEL, DEFAULT_THINKING_BUDGET)
    )


@dataclass(frozen=True)
class ManifestRow:
    name: str
    display_name: str
    title: str = ""
    icon: str = ""
    role: str = ""
    identity: str = ""
    communication_style: str = ""
    principles: str = ""
    module: str = ""
    path: str = ""


@dataclass
class ResolvedPersona:
    system_prompt: str
    model: str | None = None
    thinking_budget: int | None = None


@dataclass
class ResolvedAgentCollab:
    agent_ids: list[str]
    combined_system_prompt: str
    model: str | None = None
    thinking_budget: int | None = None
    agent_names: list[str] = field(default_factory=list)


def parse_manifest(content: str) -> list[ManifestRow]:
    """Parse the manifest CSV. Cells are trimmed and HTML entities decoded."""
    reader = csv.DictReader(io.StringIO(content))
    rows = []
    for raw in reader:
        cells = {key.strip(): html.unescape((value or "").strip()) for key, value in raw.items() if key}
        if not cells.get("name"):
            continue
        rows.append(ManifestRow(
            name=cells["name"],
            display_name=cells.get("displayName") or cells["name"],
            title=cells.get("title", ""),
            icon=cells.get("icon", ""),
            role=cells.get("role", ""),
            identity=cells.get("identity", ""),
            communication_style=cells.get("communicationStyle", ""),
            principles=cells.get("principles", ""),
            module=cells.get("module", ""),
            path=cells.get("path", ""),
        ))
    return rows


def build_party_synthesis_persona_prompt(artifacts_dir: str | None = None) -> str:
    lines = [
        "You are running Party Mode Synthesis.",
        "Hold a short internal deliberation between these executive personas:",
    ]
    lines.extend(f"- {name} ({pid}): {focus}" for name, pid, focus in PARTY_SYNTHESIS_PANEL)
    lines.append("Then produce one synthesized recommendation. Be concise, specific and actionable.")
    if artifacts_dir:
        lines.append(f"Write any requested artifacts to: {artifacts_dir}")
    return "\n".join(lines)


class PersonaResolver:
    """Resolves persona ids against a manifest file loaded once on first use."""

    def __init__(self, manifest_path: str | Path | None = None):
        self.manifest_path = Path(manifest_path) if manifest_path else None
        self._rows: list[ManifestRow] | None = None

    async def _load_rows(self) -> list[ManifestRow]:
        if self._rows is not None:
            return self._rows
        if self.manifest_path is None:
            self._rows = []
            return self._rows
        try:
            content = await asyncio.to_thread(self.manifest_path.read_text, encoding="utf-8")
        except OSError as e:
            _logger.warning("Could not load persona manifest at %s: %s", self.manifest_path, e)
            self._rows = []
            return self._rows
        self._rows = parse_manifest(content)
        return self._rows

    async def get_row(self, persona_id: str) -> ManifestRow | None:
        name = normalize_persona_id(persona_id)[len(PERSONA_PREFIX):]
        for row in await self._load_rows():
            if row.name == name:
                return row
        return None

    async def resolve_persona(
        self,
        persona_id: str | None,
        artifacts_dir: str | None = None,
        project_path: str | None = None,
    ) -> ResolvedPersona | None:
        if not persona_id or not persona_id.strip():
            return None
        persona_id = normalize_persona_id(persona_id)

        if persona_id == PARTY_SYNTHESIS_ID:
            return ResolvedPersona(
                system_prompt=build_party_synthesis_persona_prompt(artifacts_dir),
                model=DEFAULT_PERSONA_MODEL,
                thinking_budget=DEFAULT_THINKING_BUDGET,
            )

        row = await self.get_row(persona_id)
        if row is None:
            _logger.warning("Unknown persona %s", persona_id)
            return None

        parts = [f'You are acting as agent "{row.display_name}" ({row.title}).']
        for label, value in (
            ("Role", row.role),
            ("Identity", row.identity),
            ("Communication Style", row.communication_style),
            ("Principles", row.principles),
        ):
            if value:
                parts.append(f"{label}: {value}")
        parts.append("")
        parts.append("Follow all project context rules before making changes.")
        if artifacts_dir:
            parts.append(f"Artifacts directory (git-friendly): {artifacts_dir}")
        if project_path:
            parts.append(f"Installed workflows, if any, live at: {Path(project_path) / '_bmad'}")

        model, budget = persona_defaults(persona_id)
        return ResolvedPersona(system_prompt="\n".join(parts), model=model, thinking_budget=budget)

    async def resolve_agent_collab(
        self,
        agent_ids: list[str],
        artifacts_dir: str | None = None,
        project_path: str | None = None,
        verbose: bool = False,
    ) -> ResolvedAgentCollab | None:
        agent_ids = [a for a in agent_ids if a and a.strip()]
        if not agent_ids:
            return None

        agents: list[tuple[str, str, str]] = []
        for agent_id in agent_ids:
            resolved = await self.resolve_persona(agent_id, artifacts_dir, project_path)
            row = await self.get_row(agent_id)
            agents.append((
                row.display_name if row else agent_id,
                row.icon if row else "",
                resolved.system_prompt if resolved else "",
            ))

        model, budget = persona_defaults(agent_ids[0])
        return ResolvedAgentCollab(
            agent_ids=agent_ids,
            combined_system_prompt=build_collaboration_prompt(agents, verbose),
            model=model,
            thinking_budget=budget,
            agent_names=[name for name, _, _ in agents],
        )


def build_collaboration_prompt(agents: list[tuple[str, str, str]], verbose: bool = False) -> str:
    """
    Combine several persona prompts.

    Args:
        agents: (name, icon, system prompt) per agent, lead first
        verbose: Ask for an explicit XML section per agent plus a synthesis
    """
    if len(agents) == 1:
        return agents[0][2]

    lead = agents[0][0]
    roster = "\n".join(
        f"{i}. {icon + ' ' if icon else ''}**{name}**" for i, (name, icon, _) in enumerate(agents, 1)
    )
    contexts = "\n\n".join(
        f"### Agent {i}: {name}\n{prompt}" for i, (name, _, prompt) in enumerate(agents, 1)
    )

    if not verbose:
        return (
            "# Multi-Agent Collaboration Mode\n\n"
            f"You are working in collaborative mode with {len(agents)} agents.\n\n"
            f"## Agent Team\n{roster}\n\n"
            "## Collaboration Protocol\n"
            f"1. {lead} leads the analysis\n"
            "2. Each other agent reviews it and adds their expertise in turn\n"
            "3. Disagreements are stated as explicit trade-offs\n"
            "4. The response ends with one synthesized recommendation\n\n"
            f"## Agent Contexts\n{contexts}\n\n---"
        )

    sections = []
    for i, (name, icon, _) in enumerate(agents):
        if i == 0:
            sections.append(
                f'<agent name="{name}" icon="{icon}" role="lead">\n'
                f"[{name}'s full analysis and recommendations as lead]\n</agent>"
            )
        else:
            sections.append(
                f'<agent name="{name}" icon="{icon}">\n'
                f"[{name}'s perspective, additions or concerns]\n</agent>"
            )

    return (
        "# Multi-Agent Collaboration Mode (Verbose)\n\n"
        f"You are working in verbose collaborative mode with {len(agents)} agents. "
        "Each agent states its perspective explicitly.\n\n"
        f"## Agent Team\n{roster}\n\n"
        "## Collaboration Protocol\n"
        f"1. {lead} leads the analysis\n"
        "2. Each other agent contributes its own expertise\n"
        "3. Trade-offs and disagreements are called out\n"
        "4. A synthesis closes the response\n\n"
        f"## Agent Contexts\n{contexts}\n\n"
        "## Output Format (REQUIRED)\n\n"
        "Give every agent its own tagged section:\n\n"
        + "\n\n".join(sections)
        + "\n\n<synthesis>\n[Recommendation combining the agents' inputs]\n</synthesis>\n\n"
        "Every agent section needs 2-5 sentences of substance, and the synthesis must "
        "reference specific agent inputs.\n\n---"
    )
