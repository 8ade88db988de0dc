"""
Task Spec Parser
================

Extracts the ordered task list from a generated plan.

Plans carry their tasks in a fenced block:

    ```tasks
    ## Phase 1: Foundation
    - [ ] T001: Create the model | File: src/models.py
    - [ ] T002: Add the migration
    ## Phase 2: API
    - [ ] T003: Expose the endpoint | File: src/api.py
    ```

A ``## <label>`` line sets the phase for the tasks below it. Without a
fenced block, task lines anywhere in the document are used, with no phase.
"""

from __future__ import annotations

import logging
import re

from automode.models import ParsedTask, TaskStatus

_logger = logging.getLogger(__name__)

TASKS_BLOCK_RE = re.compile(r"```tasks\s*([\s\S]*?)```")
PHASE_HEADER_RE = re.compile(r"^##\s*(.+)$")
TASK_LINE_RE = re.compile(r"- \[ \] (T\d{3}):\s*([^|]+)(?:\|\s*File:\s*(.+))?$")
SIMPLE_TASK_LINE_RE = re.compile(r"- \[ \] (T\d{3}):\s*(.+)$")
LOOSE_TASK_LINE_RE = re.compile(r"- \[ \] T\d{3}:.*$", re.MULTILINE)
PHASE_NUMBER_RE = re.compile(r"Phase\s*(\d+)", re.IGNORECASE)


def parse_task_line(line: str, phase: str | None = None) -> ParsedTask | None:
    """Parse ``- [ ] T###: description | File: path``. The file part is optional."""
    match = TASK_LINE_RE.search(line)
    if match:
        file_path = match.group(3).strip() if match.group(3) else None
        return ParsedTask(
            id=match.group(1),
            description=match.group(2).strip(),
            file_path=file_path or None,
            phase=phase,
            status=TaskStatus.PENDING,
        )

    match = SIMPLE_TASK_LINE_RE.search(line)
    if match:
        return ParsedTask(
            id=match.group(1),
            description=match.group(2).strip(),
            phase=phase,
            status=TaskStatus.PENDING,
        )
    return None


def parse_tasks_from_spec(spec_content: str) -> list[ParsedTask]:
    """
    Parse every task in a plan, in declaration order.

    Task ids must be unique and increasing. A line repeating an earlier id,
    or going backwards, is skipped.
    """
    candidates: list[ParsedTask] = []

    block = TASKS_BLOCK_RE.search(spec_content)
    if block is None:
        for line in LOOSE_TASK_LINE_RE.findall(spec_content):
            parsed = parse_task_line(line)
            if parsed:
                candidates.append(parsed)
    else:
        phase: str | None = None
        for line in block.group(1).split("\n"):
            stripped = line.strip()
            header = PHASE_HEADER_RE.match(stripped)
            if header:
                phase = header.group(1).strip()
                continue
            if stripped.startswith("- [ ]"):
                parsed = parse_task_line(stripped, phase)
                if parsed:
                    candidates.append(parsed)

    tasks: list[ParsedTask] = []
    for task in candidates:
        if tasks and task.id <= tasks[-1].id:
            _logger.warning("Skipping out-of-order or duplicate task id %s", task.id)
            continue
        tasks.append(task)
    return tasks


def phase_number(phase: str | None) -> int | None:
    """Number from a ``Phase N`` label, if present."""
    if not phase:
        return None
    match = PHASE_NUMBER_RE.search(phase)
    return int(match.group(1)) if match else None
