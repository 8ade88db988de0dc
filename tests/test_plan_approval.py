"""
Plan Approval Tests
===================

Spec generation, human review and the multi-agent task loop that follows.
"""

import pytest

from automode.config import AutoModeConfig
from automode.errors import FeatureCancelledError
from automode.provider import TextMessage
from conftest import FakeProvider, read_agent_output, read_feature, write_feature


PLAN_V1 = """# Specification

Add a login form.

```tasks
## Phase 1: Foundation
- [ ] T001: Create the user model | File: src/models.py
- [ ] T002: Add password hashing | File: src/auth.py

## Phase 2: UI
- [ ] T003: Build the login form | File: src/login.tsx
```
"""

PLAN_V2 = """# Specification (revised)

```tasks
- [ ] T001: Create the user model with tests | File: src/models.py
- [ ] T002: Build the login form | File: src/login.tsx
```
"""


def plan_script(plan):
    """An agent turn that writes ``plan`` and then the review marker."""
    return [TextMessage(plan), TextMessage("[SPEC_GENERATED] Please review the specification above.")]


def spec_feature(project, feature_id="f1", **fields):
    fields.setdefault("planningMode", "spec")
    fields.setdefault("requirePlanApproval", True)
    return write_feature(project, feature_id, **fields)


# =============================================================================
# Approval
# =============================================================================

class TestPlanApproval:
    @pytest.mark.asyncio
    async def test_approved_plan_runs_tasks_in_order(self, make_orchestrator, recorder, project):
        """Three parsed tasks run as three separate agent calls after approval."""
        spec_feature(project)
        provider = FakeProvider(scripts=[plan_script(PLAN_V1)])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        required = await recorder.wait_for("plan_approval_required")

        assert [t["id"] for t in required["tasks"]] == ["T001", "T002", "T003"]
        assert required["planVersion"] == 1
        assert required["planningMode"] == "spec"
        assert "[SPEC_GENERATED]" not in required["planContent"]
        assert orchestrator.has_pending_approval("f1")
        assert read_feature(project, "f1")["planSpec"]["status"] == "generated"
        assert provider.closed == 1

        assert await orchestrator.resolve_plan_approval("f1", True) == {"success": True}
        await task

        assert len(provider.calls) == 4
        for call, task_id in zip(provider.calls[1:], ["T001", "T002", "T003"]):
            assert f"# Task Execution: {task_id}" in call.prompt
            assert call.max_turns == 50

        completed = recorder.of_type("auto_mode_task_complete")
        assert [e["tasksCompleted"] for e in completed] == [1, 2, 3]
        assert [e["taskId"] for e in recorder.of_type("auto_mode_task_started")] == ["T001", "T002", "T003"]
        phases = recorder.of_type("auto_mode_phase_complete")
        assert [(e["phase"], e["phaseNumber"]) for e in phases] == [
            ("Phase 1: Foundation", 1),
            ("Phase 2: UI", 2),
        ]
        assert recorder.of_type("plan_approved")[0]["hasEdits"] is False

        data = read_feature(project, "f1")
        assert data["status"] == "verified"
        plan = data["planSpec"]
        assert plan["status"] == "approved"
        assert plan["reviewedByUser"] is True
        assert plan["tasksCompleted"] == 3
        assert [t["status"] for t in plan["tasks"]] == ["completed"] * 3
        assert "currentTaskId" not in plan

    @pytest.mark.asyncio
    async def test_approval_with_edits(self, make_orchestrator, recorder, project):
        spec_feature(project)
        provider = FakeProvider(scripts=[plan_script(PLAN_V1)])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        await orchestrator.resolve_plan_approval("f1", True, edited_plan=PLAN_V2)
        await task

        approved = recorder.of_type("plan_approved")[0]
        assert approved["hasEdits"] is True
        assert approved["planVersion"] == 2
        assert len(provider.calls) == 3
        assert "with tests" in provider.calls[1].prompt
        assert read_feature(project, "f1")["planSpec"]["content"] == PLAN_V2

    @pytest.mark.asyncio
    async def test_second_resolution_is_an_error(self, make_orchestrator, recorder, project):
        spec_feature(project)
        orchestrator = make_orchestrator(FakeProvider(scripts=[plan_script(PLAN_V1)]))

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        await orchestrator.resolve_plan_approval("f1", True)
        second = await orchestrator.resolve_plan_approval("f1", True, project_path_fallback=project)
        await task

        assert second == {"success": False, "error": "No pending approval for feature f1"}

    @pytest.mark.asyncio
    async def test_no_marker_means_output_is_implementation(self, make_orchestrator, recorder, project):
        spec_feature(project, requirePlanApproval=False)
        provider = FakeProvider()

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert len(provider.calls) == 1
        assert recorder.of_type("plan_auto_approved") == []
        assert read_feature(project, "f1")["status"] == "verified"

    @pytest.mark.asyncio
    async def test_auto_approval_without_review(self, make_orchestrator, recorder, project):
        spec_feature(project, planningMode="full", requirePlanApproval=False)
        provider = FakeProvider(scripts=[plan_script(PLAN_V2)])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert recorder.of_type("plan_approval_required") == []
        assert recorder.of_type("plan_auto_approved")[0]["planningMode"] == "full"
        plan = read_feature(project, "f1")["planSpec"]
        assert plan["status"] == "approved"
        assert plan["reviewedByUser"] is False
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_plan_without_tasks_implemented_in_one_call(self, make_orchestrator, recorder, project):
        spec_feature(project, requirePlanApproval=False)
        provider = FakeProvider(scripts=[plan_script("Just change the button colour.")])

        await make_orchestrator(provider).execute_feature(project, "f1")

        assert len(provider.calls) == 2
        assert "The plan has been approved. Implement it now." in provider.calls[1].prompt
        assert recorder.of_type("auto_mode_task_started") == []

    @pytest.mark.asyncio
    async def test_separate_planner_model(self, make_orchestrator, project):
        spec_feature(project, requirePlanApproval=False)
        provider = FakeProvider(scripts=[plan_script(PLAN_V2)])
        config = AutoModeConfig(planner_model="claude-planner-1", write_debounce_ms=10)

        await make_orchestrator(provider, config=config).execute_feature(project, "f1")

        planner_call, task_call = provider.calls[0], provider.calls[1]
        assert planner_call.model == "claude-planner-1"
        assert planner_call.allowed_tools == ["Read", "Glob", "Grep"]
        assert planner_call.prompt.startswith("## Planning Context (paths only)")
        assert "src/app.py" in planner_call.prompt
        assert task_call.model == config.default_model


# =============================================================================
# Rejection and revision
# =============================================================================

class TestPlanRevision:
    @pytest.mark.asyncio
    async def test_feedback_regenerates_before_any_task(self, make_orchestrator, recorder, project):
        spec_feature(project)
        provider = FakeProvider(scripts=[plan_script(PLAN_V1), plan_script(PLAN_V2)])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        await orchestrator.resolve_plan_approval("f1", False, feedback="Add tests to the model task")
        second = await recorder.wait_for("plan_approval_required", count=2)

        assert second["planVersion"] == 2
        assert [t["id"] for t in second["tasks"]] == ["T001", "T002"]
        revision = recorder.of_type("plan_revision_requested")[0]
        assert revision["feedback"] == "Add tests to the model task"
        assert revision["planVersion"] == 2
        assert recorder.of_type("auto_mode_task_started") == []
        assert "## Previous Plan (v1)" in provider.calls[1].prompt
        assert "Add tests to the model task" in provider.calls[1].prompt

        await orchestrator.resolve_plan_approval("f1", True)
        await task

        assert len(provider.calls) == 4
        assert read_feature(project, "f1")["planSpec"]["version"] == 2

    @pytest.mark.asyncio
    async def test_rejection_without_feedback_cancels_plan(self, make_orchestrator, recorder, project):
        spec_feature(project)
        provider = FakeProvider(scripts=[plan_script(PLAN_V1)])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        await orchestrator.resolve_plan_approval("f1", False)
        await task

        assert len(recorder.of_type("plan_rejected")) == 1
        assert recorder.of_type("auto_mode_error")[0]["errorType"] == "plan_cancelled"
        data = read_feature(project, "f1")
        assert data["status"] == "backlog"
        assert data["planSpec"]["status"] == "rejected"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_replanning_continues_version_sequence(self, make_orchestrator, recorder, project):
        spec_feature(project, planSpec={"status": "rejected", "content": "old plan", "version": 3})
        provider = FakeProvider(scripts=[plan_script(PLAN_V2)])
        orchestrator = make_orchestrator(provider)

        task = orchestrator.start_feature(project, "f1")
        required = await recorder.wait_for("plan_approval_required")
        assert required["planVersion"] == 4
        await orchestrator.resolve_plan_approval("f1", True)
        await task


# =============================================================================
# Stop while waiting
# =============================================================================

class TestStopDuringApproval:
    @pytest.mark.asyncio
    async def test_stop_rejects_pending_approval(self, make_orchestrator, recorder, project):
        spec_feature(project)
        orchestrator = make_orchestrator(FakeProvider(scripts=[plan_script(PLAN_V1)]))

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        future = orchestrator.pending_approvals.get("f1").future

        await orchestrator.stop_feature("f1")
        await task

        assert future.done()
        assert isinstance(future.exception(), FeatureCancelledError)
        assert orchestrator.has_pending_approval("f1") is False
        completion = recorder.of_type("auto_mode_feature_complete")[0]
        assert completion["passes"] is False

        data = read_feature(project, "f1")
        assert data["status"] == "in_progress"
        assert data["planSpec"]["status"] == "generated"
        assert "Create the user model" in read_agent_output(project, "f1")

    @pytest.mark.asyncio
    async def test_cancel_plan_approval(self, make_orchestrator, recorder, project):
        spec_feature(project)
        orchestrator = make_orchestrator(FakeProvider(scripts=[plan_script(PLAN_V1)]))

        task = orchestrator.start_feature(project, "f1")
        await recorder.wait_for("plan_approval_required")
        assert orchestrator.cancel_plan_approval("f1") is True
        await task

        completion = recorder.of_type("auto_mode_feature_complete")[0]
        assert completion["passes"] is False
        assert completion["message"] == "Plan approval cancelled"


# =============================================================================
# Recovery from disk
# =============================================================================

class TestApprovalRecovery:
    @pytest.mark.asyncio
    async def test_approval_restarts_feature_from_stored_plan(self, make_orchestrator, recorder, project):
        spec_feature(
            project,
            status="in_progress",
            planSpec={"status": "generated", "content": PLAN_V1, "version": 1},
        )
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)

        result = await orchestrator.resolve_plan_approval(
            "f1", True, feedback="Go", project_path_fallback=project
        )
        assert result == {"success": True}
        await recorder.wait_for("auto_mode_feature_complete")

        prompt = provider.prompts[0]
        assert prompt.startswith("The plan has been approved.")
        assert "User feedback: Go" in prompt
        assert "Create the user model" in prompt

        approved = recorder.of_type("plan_approved")[0]
        assert approved["hasEdits"] is False
        data = read_feature(project, "f1")
        assert data["status"] == "verified"
        assert data["planSpec"]["status"] == "approved"
        assert data["planSpec"]["reviewedByUser"] is True

    @pytest.mark.asyncio
    async def test_rejection_from_disk(self, make_orchestrator, recorder, project):
        spec_feature(
            project,
            status="in_progress",
            planSpec={"status": "generated", "content": PLAN_V1, "version": 1},
        )
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)

        result = await orchestrator.resolve_plan_approval(
            "f1", False, feedback="Not now", project_path_fallback=project
        )

        assert result == {"success": True}
        assert recorder.of_type("plan_rejected")[0]["feedback"] == "Not now"
        data = read_feature(project, "f1")
        assert data["status"] == "backlog"
        assert data["planSpec"]["status"] == "rejected"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_no_plan_to_recover(self, make_orchestrator, project):
        spec_feature(project)
        result = await make_orchestrator().resolve_plan_approval("f1", True, project_path_fallback=project)
        assert result["success"] is False
