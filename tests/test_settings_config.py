"""
Settings, Configuration and Context Tests
=========================================
"""

import json

import pytest

from automode.config import (
    CLAUDE_MODEL_MAP,
    DEFAULT_MODEL,
    AutoModeConfig,
    resolve_model_string,
    thinking_tokens_for_level,
)
from automode.context import build_context_prompt, load_context_files
from automode.settings import (
    DEFAULT_ARTIFACTS_DIR,
    SettingsStore,
    normalize_artifacts_dir,
)


# =============================================================================
# Model resolution
# =============================================================================

class TestModelResolution:
    def test_aliases(self):
        assert resolve_model_string("opus") == CLAUDE_MODEL_MAP["opus"]
        assert resolve_model_string("Sonnet") == CLAUDE_MODEL_MAP["sonnet"]

    def test_full_ids_pass_through_lowercased(self):
        assert resolve_model_string("Claude-Custom-1") == "claude-custom-1"

    def test_empty_uses_default(self):
        assert resolve_model_string(None) == DEFAULT_MODEL
        assert resolve_model_string("  ", "fallback") == "fallback"

    def test_unknown_returned_as_given(self):
        assert resolve_model_string("gpt-local") == "gpt-local"

    def test_thinking_levels(self):
        assert thinking_tokens_for_level("high") == 8192
        assert thinking_tokens_for_level("none") is None
        assert thinking_tokens_for_level(None) is None


# =============================================================================
# AutoModeConfig.from_env
# =============================================================================

class TestConfigFromEnv:
    def test_defaults(self):
        config = AutoModeConfig.from_env({})
        assert config.max_concurrency == 3
        assert config.default_model == DEFAULT_MODEL
        assert config.planner_model is None
        assert config.write_debounce_ms == 500

    def test_overrides(self):
        config = AutoModeConfig.from_env({
            "AUTOMODE_MAX_CONCURRENCY": "5",
            "AUTOMODE_DEFAULT_MODEL": "opus",
            "AUTOMODE_MODEL_PLANNER": "haiku",
            "AUTOMODE_PLANNER_ALLOWED_TOOLS": "Read, Grep",
            "AUTOMODE_IDLE_WAIT": "0.5",
        })
        assert config.max_concurrency == 5
        assert config.default_model == CLAUDE_MODEL_MAP["opus"]
        assert config.planner_model == CLAUDE_MODEL_MAP["haiku"]
        assert config.planner_allowed_tools == ["Read", "Grep"]
        assert config.idle_wait == 0.5

    def test_invalid_values_fall_back(self):
        config = AutoModeConfig.from_env({
            "AUTOMODE_MAX_CONCURRENCY": "many",
            "AUTOMODE_CAPACITY_WAIT": "-1",
        })
        assert config.max_concurrency == 3
        assert config.capacity_wait == 5.0

    def test_separate_planner(self):
        config = AutoModeConfig(planner_model="claude-haiku")
        assert config.uses_separate_planner("claude-opus") is True
        assert config.uses_separate_planner("claude-haiku") is False
        assert AutoModeConfig().uses_separate_planner("claude-opus") is False


# =============================================================================
# Settings
# =============================================================================

class TestArtifactsDir:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, DEFAULT_ARTIFACTS_DIR),
            ("  ", DEFAULT_ARTIFACTS_DIR),
            ("/etc/out", DEFAULT_ARTIFACTS_DIR),
            ("C:\\out", DEFAULT_ARTIFACTS_DIR),
            ("../outside", DEFAULT_ARTIFACTS_DIR),
            ("docs\\artifacts", "docs/artifacts"),
            ("docs/artifacts", "docs/artifacts"),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_artifacts_dir(value) == expected


class TestSettingsStore:
    @pytest.mark.asyncio
    async def test_nested_artifacts_dir(self, project, tmp_path):
        settings_file = tmp_path / ".automaker" / "settings.json"
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text(json.dumps({"bmad": {"artifactsDir": "out/bmad"}}))

        assert await SettingsStore().get_artifacts_dir(project) == "out/bmad"

    @pytest.mark.asyncio
    async def test_malformed_settings_use_defaults(self, project, tmp_path):
        settings_file = tmp_path / ".automaker" / "settings.json"
        settings_file.parent.mkdir(parents=True)
        settings_file.write_text("{broken")

        assert await SettingsStore().get_artifacts_dir(project) == DEFAULT_ARTIFACTS_DIR

    @pytest.mark.asyncio
    async def test_profiles_and_claude_md_precedence(self, project, tmp_path):
        global_file = tmp_path / "global.json"
        global_file.write_text(json.dumps({
            "autoLoadClaudeMd": True,
            "aiProfiles": [{"id": "p1", "name": "Fast", "model": "haiku", "agentIds": ["pm"]}],
        }))
        store = SettingsStore(global_file)

        profile = (await store.get_global_settings()).find_profile("p1")
        assert profile.model == "haiku"
        assert profile.agent_ids == ["pm"]
        assert await store.get_auto_load_claude_md(project) is True

        project_file = tmp_path / ".automaker" / "settings.json"
        project_file.parent.mkdir(parents=True)
        project_file.write_text(json.dumps({"autoLoadClaudeMd": False}))
        assert await store.get_auto_load_claude_md(project) is False


# =============================================================================
# Context files
# =============================================================================

class TestContextFiles:
    @pytest.mark.asyncio
    async def test_no_context_dir(self, project):
        assert build_context_prompt(await load_context_files(project), False) == ""

    @pytest.mark.asyncio
    async def test_claude_md_skipped_when_auto_loaded(self, project, tmp_path):
        context = tmp_path / ".automaker" / "context"
        context.mkdir(parents=True)
        (context / "CLAUDE.md").write_text("claude rules")
        (context / "style.md").write_text("use tabs")
        (context / "image.png").write_bytes(b"\x89PNG")

        files = await load_context_files(project)
        assert [f.name for f in files] == ["CLAUDE.md", "style.md"]

        prompt = build_context_prompt(files, auto_load_claude_md=True)
        assert "use tabs" in prompt
        assert "claude rules" not in prompt
        assert "claude rules" in build_context_prompt(files, auto_load_claude_md=False)
