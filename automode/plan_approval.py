"""
Plan/Approval Controller
========================

Owns a feature's plan from generation to approval.

Generation is an ordinary agent call whose stream is cut at the
``[SPEC_GENERATED]`` marker; everything before the marker is the plan.
When the feature requires approval, the controller registers a pending
continuation, announces ``plan_approval_required`` and suspends until
``resolve`` delivers a PlanDecision:

- approved, no edits    -> keep the generated plan
- approved, with edits  -> adopt the edited plan (new version)
- rejected, with either -> revise: regenerate with the feedback (new version)
- rejected, with neither -> PlanCancelledError

Plans that do not need approval are approved as soon as they are generated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from automode.agent_runner import RunContext
from automode.continuations import ContinuationRegistry
from automode.errors import PlanCancelledError
from automode.events import AutoModeEvents, AutoModeEventType
from automode.feature_store import FeatureStore
from automode.marker_parser import Marker
from automode.models import PlanSpec, PlanStatus
from automode.prompts import build_revision_prompt, prepend_planner_context
from automode.task_parser import parse_tasks_from_spec
from automode.worktrees import WorktreeResolver

_logger = logging.getLogger(__name__)

# Turn budget for a plan revision when the run has no explicit max
DEFAULT_REVISION_TURNS = 100


@dataclass(frozen=True)
class PlanDecision:
    """A reviewer's answer to ``plan_approval_required``."""

    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None

    @property
    def has_edits(self) -> bool:
        return bool(self.edited_plan)


@dataclass
class ApprovedPlan:
    plan: PlanSpec
    feedback: str | None = None


class PlanApprovalController:
    def __init__(
        self,
        store: FeatureStore,
        events: AutoModeEvents,
        registry: ContinuationRegistry[PlanDecision],
        worktrees: WorktreeResolver,
    ):
        self.store = store
        self.events = events
        self.registry = registry
        self.worktrees = worktrees

    # -------------------------------------------------------------------------
    # External decisions
    # -------------------------------------------------------------------------

    def has_pending(self, feature_id: str) -> bool:
        return feature_id in self.registry

    def resolve(self, feature_id: str, decision: PlanDecision) -> bool:
        """Hand a decision to a waiting run. False when no run is waiting."""
        resolved = self.registry.resolve(feature_id, decision)
        if resolved:
            _logger.info(
                "Plan decision for %s: approved=%s edits=%s",
                feature_id, decision.approved, decision.has_edits,
            )
        return resolved

    def cancel(self, feature_id: str) -> bool:
        return self.registry.cancel(feature_id, "Plan approval cancelled")

    def wait_for_plan_approval(self, feature_id: str, project_path: str) -> asyncio.Future:
        """Register the pending approval and return its unsettled future."""
        return self.registry.register(feature_id, project_path=project_path)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, ctx: RunContext, prompt: str) -> ApprovedPlan | None:
        """
        Generate the plan and drive it to approval.

        Returns None when the agent finished without emitting the marker,
        in which case its output already is the implementation.

        Raises:
            PlanCancelledError: If the plan is rejected without feedback
            FeatureCancelledError: If the run is stopped while waiting
        """
        feature = ctx.feature
        plan = PlanSpec.restart_from(feature.plan_spec)
        plan.transition_to(PlanStatus.GENERATING)
        await self._persist(ctx, plan)

        if ctx.uses_separate_planner:
            prompt = await self._with_planner_context(ctx, prompt)
        outcome = await ctx.runner.run(ctx.planner_options(prompt), stop_on=[Marker.SPEC_GENERATED])
        if outcome.marker is None:
            _logger.warning(
                "Feature %s finished without [SPEC_GENERATED]; treating the output as the implementation",
                ctx.feature_id,
            )
            return None

        self._accept_generated(plan, outcome.marker.preceding_text)
        await self._persist(ctx, plan)
        _logger.info(
            "Plan v%d generated for %s with %d tasks", plan.version, ctx.feature_id, plan.tasks_total
        )

        feedback: str | None = None
        requires_approval = feature.require_plan_approval
        while requires_approval:
            decision = await self._await_decision(ctx, plan)

            if decision.approved:
                if decision.has_edits:
                    plan.set_content(decision.edited_plan)
                    plan.set_tasks(parse_tasks_from_spec(plan.content))
                    await self._persist(ctx, plan)
                self.events.emit(
                    AutoModeEventType.PLAN_APPROVED,
                    featureId=ctx.feature_id,
                    projectPath=ctx.project_path,
                    hasEdits=decision.has_edits,
                    planVersion=plan.version,
                )
                feedback = decision.feedback
                break

            if not decision.feedback and not decision.has_edits:
                plan.transition_to(PlanStatus.REJECTED)
                await self._persist(ctx, plan)
                self.events.emit(
                    AutoModeEventType.PLAN_REJECTED,
                    featureId=ctx.feature_id,
                    projectPath=ctx.project_path,
                )
                raise PlanCancelledError(feature_id=ctx.feature_id)

            await self._revise(ctx, plan, decision)

        if not requires_approval:
            self.events.emit(
                AutoModeEventType.PLAN_AUTO_APPROVED,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                planContent=plan.content,
                planningMode=feature.planning_mode.value,
            )

        plan.transition_to(PlanStatus.APPROVED)
        plan.reviewed_by_user = requires_approval
        await self._persist(ctx, plan)
        return ApprovedPlan(plan=plan, feedback=feedback)

    async def _await_decision(self, ctx: RunContext, plan: PlanSpec) -> PlanDecision:
        # Register before announcing so an immediate answer always finds the entry
        future = self.wait_for_plan_approval(ctx.feature_id, ctx.project_path)
        try:
            self.events.emit(
                AutoModeEventType.PLAN_APPROVAL_REQUIRED,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                planContent=plan.content,
                planningMode=ctx.feature.planning_mode.value,
                planVersion=plan.version,
                tasks=[t.to_dict() for t in plan.tasks],
            )
            _logger.info("Waiting for approval of plan v%d for %s", plan.version, ctx.feature_id)
            return await ctx.cancel_token.race(future)
        finally:
            self.registry.discard(ctx.feature_id, future)

    async def _revise(self, ctx: RunContext, plan: PlanSpec, decision: PlanDecision) -> None:
        previous_plan = decision.edited_plan or plan.content or ""
        previous_version = plan.version

        plan.transition_to(PlanStatus.GENERATING)
        await self._persist(ctx, plan)
        self.events.emit(
            AutoModeEventType.PLAN_REVISION_REQUESTED,
            featureId=ctx.feature_id,
            projectPath=ctx.project_path,
            feedback=decision.feedback,
            hasEdits=decision.has_edits,
            planVersion=plan.version,
        )
        _logger.info("Revising plan for %s as v%d", ctx.feature_id, plan.version)

        prompt = build_revision_prompt(previous_plan, previous_version, decision.feedback)
        if ctx.uses_separate_planner:
            prompt = await self._with_planner_context(ctx, prompt)
        options = ctx.planner_options(prompt, max_turns=ctx.max_turns or DEFAULT_REVISION_TURNS)
        outcome = await ctx.runner.run(options, stop_on=[Marker.SPEC_GENERATED])

        revised = outcome.marker.preceding_text if outcome.marker else outcome.text
        self._accept_generated(plan, revised)
        await self._persist(ctx, plan)

    @staticmethod
    def _accept_generated(plan: PlanSpec, text: str) -> None:
        plan.set_content(text.strip())
        plan.set_tasks(parse_tasks_from_spec(plan.content))
        plan.transition_to(PlanStatus.GENERATED)

    async def _with_planner_context(self, ctx: RunContext, prompt: str) -> str:
        repo_map = await self.worktrees.build_repo_map(ctx.work_dir)
        return prepend_planner_context(
            prompt, repo_map, ctx.planner_tools, ctx.planner_model, ctx.model
        )

    async def _persist(self, ctx: RunContext, plan: PlanSpec) -> None:
        ctx.feature.plan_spec = plan
        await self.store.update_plan_spec(ctx.project_path, ctx.feature_id, plan)
