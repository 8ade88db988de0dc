"""
Orchestrator Lifecycle Tests
============================

End-to-end runs against a scripted provider:

- skip-mode runs ending verified or waiting_approval
- party synthesis as a single structured call
- stop, duplicate start and failure handling
- resume, follow-up, pipeline steps and project analysis
"""

import json
from pathlib import Path

import pytest

from automode.config import CLAUDE_MODEL_MAP, AutoModeConfig
from automode.errors import AlreadyRunningError
from automode.output_writer import FOLLOW_UP_SEPARATOR, RESUME_SEPARATOR
from automode.provider import READ_ONLY_TOOLS, ResultError, ResultSuccess, TextMessage, ToolUseMessage
from conftest import (
    BLOCK,
    FakeProvider,
    FakeWorktrees,
    read_agent_output,
    read_feature,
    text_result,
    write_feature,
)


SYNTHESIS = {
    "agents": [
        {"id": "bmad:pm", "position": "Ship a thin slice first."},
        {"id": "bmad:architect", "position": "Keep the storage layer boring."},
    ],
    "consensus": "Ship the MVP behind a flag",
    "dissent": [],
    "recommendation": "Build the MVP",
    "markdownSummary": "### Verdict\nBuild the MVP behind a flag.",
}


# =============================================================================
# Skip mode
# =============================================================================

class TestSkipMode:
    @pytest.mark.asyncio
    async def test_run_ends_verified(self, make_orchestrator, recorder, project):
        """A plain run makes one agent call and auto-verifies."""
        write_feature(project, "f1")
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)

        await orchestrator.execute_feature(project, "f1")

        assert read_feature(project, "f1")["status"] == "verified"
        assert len(provider.calls) == 1
        assert "## Feature Implementation Task" in provider.prompts[0]
        assert read_agent_output(project, "f1") == "Implemented."

        completions = recorder.of_type("auto_mode_feature_complete")
        assert len(completions) == 1
        assert completions[0]["passes"] is True
        assert completions[0]["message"].startswith("Feature completed - auto-verified")
        assert recorder.types()[0] == "auto_mode_feature_start"
        assert orchestrator.is_feature_running("f1") is False

    @pytest.mark.asyncio
    async def test_skip_tests_waits_for_approval(self, make_orchestrator, recorder, project):
        write_feature(project, "f1", skipTests=True)
        orchestrator = make_orchestrator()

        await orchestrator.execute_feature(project, "f1")

        data = read_feature(project, "f1")
        assert data["status"] == "waiting_approval"
        assert "justFinishedAt" in data
        message = recorder.of_type("auto_mode_feature_complete")[0]["message"]
        assert "auto-verified" not in message

    @pytest.mark.asyncio
    async def test_progress_and_tool_events(self, make_orchestrator, recorder, project):
        write_feature(project, "f1")
        provider = FakeProvider(scripts=[[
            TextMessage("Looking around."),
            ToolUseMessage("Read", {"file_path": "src/app.py"}),
            TextMessage("Done."),
            ResultSuccess(result="Done."),
        ]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        progress = [e["content"] for e in recorder.of_type("auto_mode_progress")]
        assert progress == ["Looking around.", "Done."]
        assert recorder.of_type("auto_mode_tool")[0]["tool"] == "Read"
        log = read_agent_output(project, "f1")
        assert "🔧 Tool: Read" in log
        assert log.endswith("Done.")

    @pytest.mark.asyncio
    async def test_lite_mode_without_approval_is_single_call(self, make_orchestrator, recorder, project):
        write_feature(project, "f1", planningMode="lite")
        provider = FakeProvider()

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert len(provider.calls) == 1
        assert "Planning Phase (Lite)" in provider.prompts[0]
        assert recorder.of_type("planning_started")[0]["mode"] == "lite"
        assert recorder.of_type("plan_approval_required") == []


# =============================================================================
# Agent selection
# =============================================================================

class TestAgentSelection:
    @pytest.mark.asyncio
    async def test_profile_model_and_thinking(self, make_orchestrator, project, tmp_path):
        settings_file = tmp_path / "global-settings.json"
        settings_file.write_text(json.dumps({
            "aiProfiles": [{
                "id": "fast",
                "model": "haiku",
                "thinkingLevel": "high",
                "systemPrompt": "Prefer small diffs.",
            }],
        }))
        write_feature(project, "f1", aiProfileId="fast")
        provider = FakeProvider()
        config = AutoModeConfig(global_settings_path=str(settings_file), write_debounce_ms=10)

        await make_orchestrator(provider, config=config).execute_feature(project, "f1")

        options = provider.calls[0]
        assert options.model == CLAUDE_MODEL_MAP["haiku"]
        assert options.max_thinking_tokens == 8192
        assert "Prefer small diffs." in options.system_prompt

    @pytest.mark.asyncio
    async def test_context_files_in_system_prompt(self, make_orchestrator, project, tmp_path):
        context = tmp_path / ".automaker" / "context"
        context.mkdir(parents=True)
        (context / "rules.md").write_text("Always use tabs.")
        write_feature(project, "f1", model="opus")
        provider = FakeProvider()

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert "Always use tabs." in provider.calls[0].system_prompt
        assert provider.calls[0].model == CLAUDE_MODEL_MAP["opus"]


# =============================================================================
# Party synthesis
# =============================================================================

class TestPartySynthesis:
    @pytest.mark.asyncio
    async def test_single_structured_call(self, make_orchestrator, recorder, project):
        """One call, one artifact, one summary in the log."""
        write_feature(project, "f1", title="Pricing page", agentIds=["party-synthesis"])
        provider = FakeProvider(scripts=[[ResultSuccess(result="ok", structured_output=SYNTHESIS)]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert len(provider.calls) == 1
        options = provider.calls[0]
        assert options.output_format["type"] == "json_schema"
        assert options.allowed_tools == READ_ONLY_TOOLS
        assert options.model == CLAUDE_MODEL_MAP["opus"]

        artifact = Path(project) / ".automaker" / "bmad-output" / "party-synthesis" / "f1.json"
        saved = json.loads(artifact.read_text())
        assert saved["recommendation"] == "Build the MVP"
        assert saved["markdownSummary"].startswith("### Verdict")

        log = read_agent_output(project, "f1")
        assert log.count("## Party Synthesis: Pricing page") == 1
        assert "**Agents:** pm, architect" in log

        assert read_feature(project, "f1")["status"] == "verified"
        message = recorder.of_type("auto_mode_feature_complete")[0]["message"]
        assert message.startswith("Party synthesis completed")

    @pytest.mark.asyncio
    async def test_streamed_text_stays_out_of_log(self, make_orchestrator, project):
        """The log holds the rendered summary only, never the raw model output."""
        write_feature(project, "f1", title="Pricing page", agentIds=["party-synthesis"])
        provider = FakeProvider(scripts=[[
            TextMessage(json.dumps(SYNTHESIS)),
            ToolUseMessage("Read", {"file_path": "README.md"}),
            ResultSuccess(result="ok", structured_output=SYNTHESIS),
        ]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        log = read_agent_output(project, "f1")
        assert '"recommendation"' not in log
        assert "Tool: Read" not in log
        assert log.lstrip().startswith("---\n## Party Synthesis: Pricing page")
        assert "### Verdict\nBuild the MVP behind a flag." in log

    @pytest.mark.asyncio
    async def test_falls_back_to_streamed_json(self, make_orchestrator, project):
        write_feature(project, "f1", agentIds=["party-synthesis"])
        provider = FakeProvider(scripts=[[TextMessage(json.dumps(SYNTHESIS)), ResultSuccess(result="ok")]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        log = read_agent_output(project, "f1")
        assert log.count("## Party Synthesis:") == 1
        assert '"markdownSummary"' not in log
        assert read_feature(project, "f1")["status"] == "verified"

    @pytest.mark.asyncio
    async def test_structured_output_exhausted(self, make_orchestrator, recorder, project):
        write_feature(project, "f1", agentIds=["bmad:party-synthesis"])
        provider = FakeProvider(scripts=[[ResultError(subtype="error_max_structured_output_retries")]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        error = recorder.of_type("auto_mode_error")[0]
        assert error["errorType"] == "structured_output"
        assert read_feature(project, "f1")["status"] == "backlog"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_structured_output(self, make_orchestrator, recorder, project):
        write_feature(project, "f1", agentIds=["party-synthesis"])
        provider = FakeProvider(scripts=[[ResultSuccess(structured_output={"agents": "nobody"})]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert recorder.of_type("auto_mode_error")[0]["errorType"] == "execution"


# =============================================================================
# Registry, stop and failures
# =============================================================================

class TestRunRegistry:
    @pytest.mark.asyncio
    async def test_duplicate_start_and_stop(self, make_orchestrator, recorder, project):
        write_feature(project, "f1")
        provider = FakeProvider(scripts=[[TextMessage("working"), BLOCK]])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        await provider.blocked.wait()

        with pytest.raises(AlreadyRunningError):
            orchestrator.start_feature(project, "f1")
        status = orchestrator.get_status()
        assert status["isRunning"] is True
        assert status["runningFeatures"] == ["f1"]
        assert orchestrator.get_running_agents()[0]["featureId"] == "f1"

        assert await orchestrator.stop_feature("f1") is True
        await task

        completion = recorder.of_type("auto_mode_feature_complete")
        assert len(completion) == 1
        assert completion[0]["passes"] is False
        assert completion[0]["message"] == "Feature stopped by user"
        assert read_feature(project, "f1")["status"] == "in_progress"
        assert read_agent_output(project, "f1") == "working"
        assert provider.closed == 1
        assert orchestrator.running_count == 0

    @pytest.mark.asyncio
    async def test_stop_unknown_feature(self, make_orchestrator):
        assert await make_orchestrator().stop_feature("nope") is False

    @pytest.mark.asyncio
    async def test_provider_error_resets_to_backlog(self, make_orchestrator, recorder, project):
        write_feature(project, "f1")
        provider = FakeProvider(scripts=[[
            TextMessage("Trying"),
            ResultError(subtype="error_during_execution", error="boom"),
        ]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert read_feature(project, "f1")["status"] == "backlog"
        error = recorder.of_type("auto_mode_error")[0]
        assert error["error"] == "boom"
        assert error["errorType"] == "execution"
        assert recorder.of_type("auto_mode_feature_complete") == []

    @pytest.mark.asyncio
    async def test_auth_failure_in_stream(self, make_orchestrator, recorder, project):
        write_feature(project, "f1")
        provider = FakeProvider(scripts=[[TextMessage("Invalid API key · Fix external API key")]])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert recorder.of_type("auto_mode_error")[0]["errorType"] == "authentication"

    @pytest.mark.asyncio
    async def test_missing_feature(self, make_orchestrator, recorder, project):
        await make_orchestrator().execute_feature(project, "ghost")

        error = recorder.of_type("auto_mode_error")[0]
        assert error["errorType"] == "not_found"
        assert error["error"] == "Feature ghost not found"

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_features(self, make_orchestrator, recorder, project):
        write_feature(project, "a")
        write_feature(project, "b")
        provider = FakeProvider(default=[TextMessage("working"), BLOCK])
        orchestrator = make_orchestrator(provider)

        orchestrator.start_feature(project, "a")
        orchestrator.start_feature(project, "b")
        await recorder.wait_for("auto_mode_progress", count=2)

        await orchestrator.shutdown()

        assert orchestrator.running_count == 0
        assert [e["passes"] for e in recorder.of_type("auto_mode_feature_complete")] == [False, False]


# =============================================================================
# Resume and follow-up
# =============================================================================

class TestResume:
    @pytest.mark.asyncio
    async def test_existing_context_is_resumed(self, make_orchestrator, project, store):
        write_feature(project, "f1")
        await store.write_agent_output(project, "f1", "Earlier work")
        provider = FakeProvider()

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert "## Continuing Feature Implementation" in provider.prompts[0]
        assert "Earlier work" in provider.prompts[0]
        assert read_agent_output(project, "f1") == "Earlier work" + RESUME_SEPARATOR + "Implemented."

    @pytest.mark.asyncio
    async def test_resume_without_context_starts_fresh(self, make_orchestrator, project):
        write_feature(project, "f1")
        provider = FakeProvider()

        await make_orchestrator(provider).resume_feature(project, "f1")

        assert "Continuing" not in provider.prompts[0]
        assert read_agent_output(project, "f1") == "Implemented."


class TestFollowUp:
    @pytest.mark.asyncio
    async def test_follow_up_appends_and_skips_pipeline(self, make_orchestrator, recorder, project, store, tmp_path):
        write_feature(project, "f1", status="verified")
        await store.write_agent_output(project, "f1", "First pass")
        pipeline = tmp_path / ".automaker" / "pipeline.json"
        pipeline.write_text(json.dumps({"steps": [{"id": "review", "name": "Review", "order": 1}]}))
        image = tmp_path / "mockup.png"
        image.write_bytes(b"png")
        worktree = tmp_path / "wt"
        worktree.mkdir()
        worktrees = FakeWorktrees({"feature/f1": str(worktree)})
        provider = FakeProvider()

        await make_orchestrator(provider, worktrees).follow_up_feature(
            project, "f1", "Rename the button", image_paths=[str(image)]
        )

        options = provider.calls[0]
        assert options.cwd == str(worktree)
        assert "Rename the button" in options.prompt
        assert "First pass" in options.prompt
        assert "mockup.png" in options.prompt
        assert worktrees.lookups == ["feature/f1"]
        assert len(provider.calls) == 1
        assert recorder.of_type("pipeline_step_started") == []

        assert read_agent_output(project, "f1") == "First pass" + FOLLOW_UP_SEPARATOR + "Implemented."
        images = read_feature(project, "f1")["imagePaths"]
        assert images[0]["filename"] == "mockup.png"
        assert images[0]["mimeType"] == "image/png"
        assert recorder.of_type("auto_mode_feature_complete")[0]["message"].startswith("Follow-up completed")


# =============================================================================
# Pipeline
# =============================================================================

class TestPipeline:
    @pytest.mark.asyncio
    async def test_steps_run_in_order_after_implementation(self, make_orchestrator, recorder, project, tmp_path):
        (tmp_path / ".automaker").mkdir()
        (tmp_path / ".automaker" / "pipeline.json").write_text(json.dumps({
            "version": 1,
            "steps": [
                {"id": "docs", "name": "Docs", "order": 2, "instructions": "Update the docs."},
                {"id": "review", "name": "Code Review", "order": 1, "instructions": "Review the diff."},
            ],
        }))
        write_feature(project, "f1")
        provider = FakeProvider(scripts=[text_result("Implemented."), text_result("Reviewed.")])

        await make_orchestrator(provider).execute_feature(project, "f1")

        started = recorder.of_type("pipeline_step_started")
        assert [e["stepId"] for e in started] == ["review", "docs"]
        assert [e["stepIndex"] for e in started] == [0, 1]
        assert len(recorder.of_type("pipeline_step_complete")) == 2

        assert len(provider.calls) == 3
        assert "Pipeline Step: Code Review" in provider.prompts[1]
        assert "Implemented." in provider.prompts[1]
        assert "Reviewed." in provider.prompts[2]
        assert read_feature(project, "f1")["status"] == "verified"

    @pytest.mark.asyncio
    async def test_malformed_pipeline_is_ignored(self, make_orchestrator, recorder, project, tmp_path):
        (tmp_path / ".automaker").mkdir()
        (tmp_path / ".automaker" / "pipeline.json").write_text("{oops")
        write_feature(project, "f1")
        provider = FakeProvider()

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert len(provider.calls) == 1
        assert recorder.of_type("pipeline_step_started") == []


# =============================================================================
# Project analysis
# =============================================================================

class TestProjectAnalysis:
    @pytest.mark.asyncio
    async def test_analysis_written(self, make_orchestrator, recorder, project):
        provider = FakeProvider(scripts=[text_result("# Architecture\nFastAPI app")])

        await make_orchestrator(provider).analyze_project(project)

        analysis = Path(project) / ".automaker" / "project-analysis.md"
        assert analysis.read_text() == "# Architecture\nFastAPI app"
        assert provider.calls[0].allowed_tools == READ_ONLY_TOOLS
        assert provider.calls[0].max_turns == 5
        assert recorder.of_type("auto_mode_feature_complete")[0]["message"] == "Project analysis completed"
        assert not (Path(project) / ".automaker" / "features").exists()

    @pytest.mark.asyncio
    async def test_analysis_failure(self, make_orchestrator, recorder, project):
        provider = FakeProvider(scripts=[[ResultError(subtype="error_during_execution", error="no access")]])

        await make_orchestrator(provider).analyze_project(project)

        assert recorder.of_type("auto_mode_error")[0]["error"] == "no access"
        assert recorder.of_type("auto_mode_feature_complete") == []
