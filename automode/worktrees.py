"""
Worktree lookup.

Finds the working copy checked out to a feature branch by reading
``git worktree list --porcelain``. Lookup only; creating or removing
worktrees is someone else's job.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

_logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = "refs/heads/"


def parse_worktree_list(output: str) -> list[tuple[str, str | None]]:
    """
    Parse porcelain output into (path, branch) pairs.

    Detached worktrees have branch None.
    """
    entries: list[tuple[str, str | None]] = []
    current_path: str | None = None
    current_branch: str | None = None

    for line in output.splitlines() + [""]:
        if line.startswith("worktree "):
            current_path = line[len("worktree "):]
        elif line.startswith("branch "):
            ref = line[len("branch "):]
            current_branch = ref[len(BRANCH_REF_PREFIX):] if ref.startswith(BRANCH_REF_PREFIX) else ref
        elif line == "" and current_path:
            entries.append((current_path, current_branch))
            current_path = None
            current_branch = None

    return entries


class WorktreeResolver:
    async def _list_worktrees(self, project_path: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git", "worktree", "list", "--porcelain",
            cwd=project_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise RuntimeError(stderr.decode("utf-8", errors="replace").strip() or "git failed")
        return stdout.decode("utf-8", errors="replace")

    async def find_worktree_for_branch(self, project_path: str, branch_name: str) -> str | None:
        """Absolute path of the worktree on ``branch_name``, or None."""
        try:
            output = await self._list_worktrees(project_path)
        except (OSError, RuntimeError) as e:
            _logger.debug("Worktree lookup failed in %s: %s", project_path, e)
            return None

        for path, branch in parse_worktree_list(output):
            if branch == branch_name:
                resolved = Path(path)
                if not resolved.is_absolute():
                    resolved = Path(project_path) / resolved
                return str(resolved.resolve())
        return None

    async def build_repo_map(self, work_dir: str) -> str:
        """Compact listing of tracked and untracked file paths for a planner."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", "ls-files", "--cached", "--others", "--exclude-standard",
                cwd=work_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as e:
            return f"Repo map unavailable: {e}"
        if proc.returncode != 0:
            return f"Repo map unavailable: {stderr.decode('utf-8', errors='replace').strip()}"

        files = [
            line.strip().replace("\\", "/")
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        return format_repo_map(files)


def format_repo_map(files: list[str], max_chars: int = 20_000) -> str:
    if not files:
        return "(no tracked/untracked files found)"

    root_files: list[str] = []
    by_top_dir: dict[str, list[str]] = {}
    for file in files:
        parts = file.split("/")
        if len(parts) == 1:
            root_files.append(file)
        else:
            by_top_dir.setdefault(f"{parts[0]}/", []).append(file)

    lines: list[str] = []
    if root_files:
        shown = ", ".join(root_files[:25])
        more = ", ..." if len(root_files) > 25 else ""
        lines.append(f"Root files ({len(root_files)}): {shown}{more}")
        lines.append("")

    lines.append("Top directories (paths only):")
    top_dirs = sorted(by_top_dir.items(), key=lambda item: len(item[1]), reverse=True)
    for directory, members in top_dirs[:12]:
        lines.append(f"- {directory} ({len(members)} files) e.g., {', '.join(members[:8])}")

    text = "\n".join(lines).strip()
    if len(text) > max_chars:
        return f"{text[:max_chars]}\n\n[TRUNCATED]"
    return text
