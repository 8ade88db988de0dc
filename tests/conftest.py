"""
Shared Test Fixtures
====================

- FakeProvider: plays back one scripted message list per agent call and
  records the ExecuteOptions it was called with
- EventRecorder: collects ``auto-mode:event`` payloads
- helpers to lay out ``.automaker/features/<id>/feature.json`` on disk
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

root = Path(__file__).parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from automode.config import AutoModeConfig
from automode.events import AutoModeEvents, EventEmitter
from automode.feature_store import FeatureStore
from automode.orchestrator import AutoModeOrchestrator
from automode.provider import ResultSuccess, TextMessage

# Script entry that parks the stream until the call is cancelled
BLOCK = object()


class FakeProvider:
    """Scripted stand-in for the agent execution provider."""

    def __init__(self, scripts=None, default=None):
        self.scripts = list(scripts or [])
        self.default = default if default is not None else [
            TextMessage("Implemented."),
            ResultSuccess(result="Implemented."),
        ]
        self.calls = []
        self.closed = 0
        self.blocked = asyncio.Event()

    @property
    def prompts(self):
        return [c.prompt for c in self.calls]

    async def execute_query(self, options):
        index = len(self.calls)
        self.calls.append(options)
        script = self.scripts[index] if index < len(self.scripts) else self.default
        try:
            for msg in script:
                if msg is BLOCK:
                    self.blocked.set()
                    await asyncio.Event().wait()
                yield msg
                await asyncio.sleep(0)
        finally:
            self.closed += 1


class FakeWorktrees:
    """Worktree lookup with a fixed branch -> path table."""

    def __init__(self, worktrees=None, repo_map="src/app.py"):
        self.worktrees = dict(worktrees or {})
        self.repo_map = repo_map
        self.lookups = []

    async def find_worktree_for_branch(self, project_path, branch_name):
        self.lookups.append(branch_name)
        return self.worktrees.get(branch_name)

    async def build_repo_map(self, work_dir):
        return self.repo_map


class EventRecorder:
    def __init__(self, emitter: EventEmitter):
        self.events = []
        emitter.subscribe(self)

    def __call__(self, event_type, payload):
        self.events.append(payload)

    def types(self):
        return [e["type"] for e in self.events]

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]

    async def wait_for(self, event_type, count=1, timeout=5.0):
        """Wait until ``count`` events of ``event_type`` were seen."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.of_type(event_type)) < count:
            if loop.time() > deadline:
                raise AssertionError(f"Timed out waiting for {event_type}; saw {self.types()}")
            await asyncio.sleep(0.01)
        return self.of_type(event_type)[count - 1]


def write_feature(project_path, feature_id, **fields):
    """Write a feature.json with camelCase ``fields`` and return its path."""
    feature_dir = Path(project_path) / ".automaker" / "features" / feature_id
    feature_dir.mkdir(parents=True, exist_ok=True)
    data = {"id": feature_id, "description": f"Implement {feature_id}", "status": "backlog"}
    data.update(fields)
    path = feature_dir / "feature.json"
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def read_feature(project_path, feature_id):
    path = Path(project_path) / ".automaker" / "features" / feature_id / "feature.json"
    return json.loads(path.read_text(encoding="utf-8"))


def read_agent_output(project_path, feature_id):
    path = Path(project_path) / ".automaker" / "features" / feature_id / "agent-output.md"
    return path.read_text(encoding="utf-8") if path.exists() else ""


def text_result(text):
    """Script for one call that writes ``text`` and ends successfully."""
    return [TextMessage(text), ResultSuccess(result=text)]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def project(tmp_path):
    return str(tmp_path)


@pytest.fixture
def emitter():
    return EventEmitter(throttle_config={})


@pytest.fixture
def events(emitter):
    return AutoModeEvents(emitter)


@pytest.fixture
def recorder(emitter):
    return EventRecorder(emitter)


@pytest.fixture
def store():
    return FeatureStore()


@pytest.fixture
def config():
    return AutoModeConfig(
        write_debounce_ms=10,
        capacity_wait=0.01,
        idle_wait=0.05,
        admit_wait=0.01,
        error_wait=0.01,
    )


@pytest.fixture
def make_orchestrator(store, events, config):
    """Build an orchestrator around a FakeProvider (and optional fakes)."""

    def factory(provider=None, worktrees=None, **overrides):
        provider = provider or FakeProvider()
        return AutoModeOrchestrator(
            store=store,
            events=events,
            provider_factory=lambda: provider,
            config=overrides.pop("config", config),
            worktrees=worktrees or FakeWorktrees(),
            **overrides,
        )

    return factory
