"""
Project context files.

Markdown and text files in ``<project>/.automaker/context/`` are prepended
to every system prompt. When the SDK already loads CLAUDE.md through its
project setting sources, CLAUDE.md is left out here to avoid duplication.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from automode.feature_store import automaker_dir

_logger = logging.getLogger(__name__)

CONTEXT_EXTENSIONS = (".md", ".txt")
CLAUDE_MD = "claude.md"


@dataclass(frozen=True)
class ContextFile:
    name: str
    content: str


def context_dir(project_path: str | Path) -> Path:
    return automaker_dir(project_path) / "context"


def _read_context_files(project_path: str | Path) -> list[ContextFile]:
    root = context_dir(project_path)
    if not root.is_dir():
        return []
    files = []
    for path in sorted(root.iterdir()):
        if not path.is_file() or path.suffix.lower() not in CONTEXT_EXTENSIONS:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            _logger.warning("Skipping unreadable context file %s: %s", path, e)
            continue
        if content.strip():
            files.append(ContextFile(name=path.name, content=content.strip()))
    return files


async def load_context_files(project_path: str | Path) -> list[ContextFile]:
    return await asyncio.to_thread(_read_context_files, project_path)


def build_context_prompt(files: list[ContextFile], auto_load_claude_md: bool) -> str:
    """Render context files as one system prompt section ('' when empty)."""
    if auto_load_claude_md:
        files = [f for f in files if f.name.lower() != CLAUDE_MD]
    if not files:
        return ""

    sections = [f"## {f.name}\n\n{f.content}" for f in files]
    return (
        "# Project Context Files\n\n"
        "The following project rules and conventions apply to all work in this repository.\n\n"
        + "\n\n---\n\n".join(sections)
    )
