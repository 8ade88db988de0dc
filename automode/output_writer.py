"""
Agent Output Writer
===================

Accumulates a feature's narrative log in memory and persists it to
``agent-output.md`` with debounced writes: a burst of streamed chunks
becomes a single write once the stream has been quiet for the debounce
delay. ``flush()`` cancels any scheduled write and writes immediately; the
execution controller calls it unconditionally when a run ends.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from automode.feature_store import FeatureStore

_logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 500

FOLLOW_UP_SEPARATOR = "\n\n---\n\n## Follow-up Session\n\n"
RESUME_SEPARATOR = "\n\n---\n\n## Resumed Session\n\n"


class AgentOutputWriter:
    def __init__(
        self,
        store: FeatureStore,
        project_path: str,
        feature_id: str,
        initial_content: str = "",
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.store = store
        self.project_path = project_path
        self.feature_id = feature_id
        self.debounce_seconds = debounce_ms / 1000
        self._content = initial_content
        self._timer: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self.write_count = 0

    @property
    def content(self) -> str:
        return self._content

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def append_text(self, text: str) -> None:
        """Append an assistant text block, separated from earlier content by a blank line."""
        if self._content and not self._content.endswith("\n\n"):
            self._content += "\n" if self._content.endswith("\n") else "\n\n"
        self._content += text
        self.schedule_write()

    def append_tool(self, name: str, tool_input: dict[str, Any] | None) -> None:
        if self._content and not self._content.endswith("\n"):
            self._content += "\n"
        self._content += f"\n🔧 Tool: {name}\n"
        if tool_input:
            self._content += f"Input: {json.dumps(tool_input, indent=2, default=str)}\n"
        self.schedule_write()

    def append_raw(self, text: str) -> None:
        self._content += text
        self.schedule_write()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def schedule_write(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._start_write)

    def _start_write(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._write())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self) -> None:
        async with self._write_lock:
            try:
                await self.store.write_agent_output(
                    self.project_path, self.feature_id, self._content
                )
                self.write_count += 1
            except OSError as e:
                _logger.error("Failed to write agent output for %s: %s", self.feature_id, e)

    async def flush(self) -> None:
        """Cancel any scheduled write and persist the current content now."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._write()
