"""
Auto Mode Orchestrator
======================

Owns the running-feature registry and drives one feature at a time through
its lifecycle:

    backlog -> in_progress -> [planning -> approval -> tasks] -> pipeline
            -> waiting_approval | verified

Each run is an asyncio task. A feature is registered synchronously before
the task is spawned, so a second start for the same id fails immediately
with AlreadyRunningError. The registry entry and any pending continuation
are dropped in a ``finally`` however the run ends.

Failures never escape a run task: cancellation becomes a
``auto_mode_feature_complete`` event with ``passes=False``, anything else
resets the feature to backlog and emits ``auto_mode_error``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Callable, Coroutine

from automode.agent_runner import AgentRunner, RunContext
from automode.cancellation import CancellationToken
from automode.config import AutoModeConfig, resolve_model_string, thinking_tokens_for_level
from automode.context import build_context_prompt, load_context_files
from automode.continuations import ContinuationRegistry
from automode.errors import (
    AlreadyRunningError,
    AutoModeError,
    FeatureNotFoundError,
    classify_error,
)
from automode.events import AutoModeEvents, AutoModeEventType, EventEmitter
from automode.feature_store import FeatureStore, atomic_write_text, automaker_dir
from automode.models import (
    Feature,
    FeatureStatus,
    PlanningMode,
    PlanStatus,
    RunningFeature,
    WizardAnswer,
)
from automode.output_writer import FOLLOW_UP_SEPARATOR, RESUME_SEPARATOR, AgentOutputWriter
from automode.party_synthesis import PartySynthesisRunner
from automode.personas import PersonaResolver, ResolvedPersona, is_party_synthesis, normalize_persona_id
from automode.pipeline import PipelineRunner, load_pipeline_config
from automode.plan_approval import PlanApprovalController, PlanDecision
from automode.prompts import (
    PROJECT_ANALYSIS_PROMPT,
    build_base_system_prompt,
    build_feature_prompt,
    build_follow_up_prompt,
    build_recovery_prompt,
    build_resume_prompt,
    build_wizard_plan_prompt,
    combine_system_prompt,
    get_planning_prompt_prefix,
    plan_approval_capable,
)
from automode.provider import READ_ONLY_TOOLS, AgentProvider, ClaudeAgentProvider, ExecuteOptions
from automode.scheduler import AutoLoopScheduler
from automode.settings import AIProfile, SettingsStore
from automode.task_executor import TaskExecutor
from automode.task_parser import parse_tasks_from_spec
from automode.wizard import WizardController
from automode.worktrees import WorktreeResolver

_logger = logging.getLogger(__name__)

PROJECT_ANALYSIS_FILE = "project-analysis.md"
PROJECT_ANALYSIS_MAX_TURNS = 5


def effective_agent_ids(feature: Feature, profile: AIProfile | None) -> list[str]:
    """Agent ids for a run: the feature's own choice wins over its profile's."""
    if feature.agent_ids:
        ids = list(feature.agent_ids)
    elif feature.persona_id:
        ids = [feature.persona_id]
    elif profile is not None and profile.agent_ids:
        ids = list(profile.agent_ids)
    elif profile is not None and profile.persona_id:
        ids = [profile.persona_id]
    else:
        ids = []
    return [normalize_persona_id(i) for i in ids if i and i.strip()]


class AutoModeOrchestrator:
    def __init__(
        self,
        store: FeatureStore | None = None,
        events: AutoModeEvents | None = None,
        provider_factory: Callable[[], AgentProvider] | None = None,
        config: AutoModeConfig | None = None,
        settings: SettingsStore | None = None,
        personas: PersonaResolver | None = None,
        worktrees: WorktreeResolver | None = None,
    ):
        self.config = config or AutoModeConfig()
        self.store = store or FeatureStore()
        self.events = events or AutoModeEvents(EventEmitter())
        self.provider_factory = provider_factory or ClaudeAgentProvider
        self.settings = settings or SettingsStore(self.config.global_settings_path)
        self.personas = personas or PersonaResolver(self.config.persona_manifest)
        self.worktrees = worktrees or WorktreeResolver()

        self.running_features: dict[str, RunningFeature] = {}
        self.pending_approvals: ContinuationRegistry[PlanDecision] = ContinuationRegistry("plan approval")
        self.pending_wizard_answers: ContinuationRegistry[WizardAnswer] = ContinuationRegistry("wizard answer")

        self.plan_controller = PlanApprovalController(
            self.store, self.events, self.pending_approvals, self.worktrees
        )
        self.wizard = WizardController(self.store, self.events, self.pending_wizard_answers)
        self.task_executor = TaskExecutor(self.store, self.events)
        self.party_synthesis = PartySynthesisRunner()
        self.pipeline = PipelineRunner(self.store, self.events)
        self.scheduler = AutoLoopScheduler(self, self.store, self.events, self.config)

        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # Running-feature registry
    # =========================================================================

    @property
    def running_count(self) -> int:
        return len(self.running_features)

    def is_feature_running(self, feature_id: str) -> bool:
        return feature_id in self.running_features

    def _register(self, feature_id: str, project_path: str, is_auto_mode: bool) -> RunningFeature:
        if feature_id in self.running_features:
            raise AlreadyRunningError(feature_id)
        entry = RunningFeature(
            feature_id=feature_id,
            project_path=project_path,
            cancel_token=CancellationToken(feature_id),
            is_auto_mode=is_auto_mode,
            start_time=time.time(),
        )
        self.running_features[feature_id] = entry
        return entry

    def _spawn(self, entry: RunningFeature, work: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._run_guarded(entry, work), name=f"feature-{entry.feature_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_guarded(self, entry: RunningFeature, work: Coroutine[Any, Any, None]) -> None:
        fid, project = entry.feature_id, entry.project_path
        try:
            await work
        except Exception as exc:
            info = classify_error(exc)
            if info.is_cancellation:
                _logger.info("Feature %s stopped: %s", fid, info.message)
                self.events.emit(
                    AutoModeEventType.FEATURE_COMPLETE,
                    featureId=fid,
                    projectPath=project,
                    passes=False,
                    message=info.message,
                )
            else:
                if isinstance(exc, AutoModeError):
                    _logger.error("Feature %s failed (%s): %s", fid, info.type.value, info.message)
                else:
                    _logger.error("Feature %s failed", fid, exc_info=True)
                await self._reset_to_backlog(entry)
                self.events.emit(
                    AutoModeEventType.AUTO_MODE_ERROR,
                    featureId=fid,
                    projectPath=project,
                    error=info.message,
                    errorType=info.type.value,
                )
        finally:
            if self.running_features.get(fid) is entry:
                del self.running_features[fid]
            self.pending_approvals.cancel(fid)
            self.pending_wizard_answers.cancel(fid)

    async def _reset_to_backlog(self, entry: RunningFeature) -> None:
        try:
            await self.store.update_status(entry.project_path, entry.feature_id, FeatureStatus.BACKLOG)
        except OSError as e:
            _logger.error("Could not reset %s to backlog: %s", entry.feature_id, e)

    # =========================================================================
    # Public run operations
    # =========================================================================

    def start_feature(
        self,
        project_path: str,
        feature_id: str,
        use_worktrees: bool = False,
        is_auto_mode: bool = False,
        continuation_prompt: str | None = None,
    ) -> asyncio.Task:
        """
        Register ``feature_id`` and run it in the background.

        Raises:
            AlreadyRunningError: If the feature is already running
        """
        entry = self._register(feature_id, project_path, is_auto_mode)
        return self._spawn(entry, self._execute(entry, use_worktrees, continuation_prompt))

    async def execute_feature(
        self,
        project_path: str,
        feature_id: str,
        use_worktrees: bool = False,
        is_auto_mode: bool = False,
        continuation_prompt: str | None = None,
    ) -> None:
        await self.start_feature(
            project_path, feature_id, use_worktrees, is_auto_mode, continuation_prompt
        )

    def start_resume(self, project_path: str, feature_id: str, use_worktrees: bool = False) -> asyncio.Task:
        entry = self._register(feature_id, project_path, False)
        return self._spawn(entry, self._resume(entry, use_worktrees))

    async def resume_feature(self, project_path: str, feature_id: str, use_worktrees: bool = False) -> None:
        """Continue a feature from its narrative log, or start fresh without one."""
        await self.start_resume(project_path, feature_id, use_worktrees)

    def start_follow_up(
        self,
        project_path: str,
        feature_id: str,
        prompt: str,
        image_paths: list[str] | None = None,
        use_worktrees: bool = True,
    ) -> asyncio.Task:
        entry = self._register(feature_id, project_path, False)
        return self._spawn(
            entry, self._follow_up(entry, prompt, list(image_paths or []), use_worktrees)
        )

    async def follow_up_feature(
        self,
        project_path: str,
        feature_id: str,
        prompt: str,
        image_paths: list[str] | None = None,
        use_worktrees: bool = True,
    ) -> None:
        """
        Run extra instructions against a finished feature.

        The previous narrative log is kept and the new session is appended
        after a follow-up separator. No planning and no pipeline steps run.
        """
        await self.start_follow_up(project_path, feature_id, prompt, image_paths, use_worktrees)

    async def stop_feature(self, feature_id: str) -> bool:
        """Cancel a running feature. Returns False if it was not running."""
        entry = self.running_features.get(feature_id)
        if entry is None:
            return False
        self.pending_approvals.cancel(feature_id)
        self.pending_wizard_answers.cancel(feature_id)
        entry.cancel_token.cancel()
        _logger.info("Stop requested for feature %s", feature_id)
        return True

    async def shutdown(self) -> None:
        """Stop the auto loop and every running feature, then wait for them."""
        await self.stop_auto_loop()
        for feature_id in list(self.running_features):
            await self.stop_feature(feature_id)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # Run bodies
    # =========================================================================

    async def _load(self, entry: RunningFeature) -> Feature:
        feature = await self.store.load_feature(entry.project_path, entry.feature_id)
        if feature is None:
            raise FeatureNotFoundError(entry.feature_id)
        return feature

    async def _execute(
        self,
        entry: RunningFeature,
        use_worktrees: bool,
        continuation_prompt: str | None,
    ) -> None:
        feature = await self._load(entry)
        if continuation_prompt is None:
            if await self.store.context_exists(entry.project_path, entry.feature_id):
                _logger.info("Feature %s has existing context; resuming", entry.feature_id)
                await self._resume_loaded(entry, feature, use_worktrees)
                return
            await self._run_feature(entry, feature, use_worktrees)
            return

        previous = await self.store.read_agent_output(entry.project_path, entry.feature_id)
        await self._run_feature(
            entry,
            feature,
            use_worktrees,
            prompt=continuation_prompt,
            previous_content=previous,
            separator=RESUME_SEPARATOR,
        )

    async def _resume(self, entry: RunningFeature, use_worktrees: bool) -> None:
        feature = await self._load(entry)
        await self._resume_loaded(entry, feature, use_worktrees)

    async def _resume_loaded(self, entry: RunningFeature, feature: Feature, use_worktrees: bool) -> None:
        previous = await self.store.read_agent_output(entry.project_path, entry.feature_id)
        if not previous.strip():
            await self._run_feature(entry, feature, use_worktrees)
            return
        await self._run_feature(
            entry,
            feature,
            use_worktrees,
            prompt=build_resume_prompt(feature, previous),
            previous_content=previous,
            separator=RESUME_SEPARATOR,
        )

    async def _follow_up(
        self,
        entry: RunningFeature,
        instructions: str,
        image_paths: list[str],
        use_worktrees: bool,
    ) -> None:
        project, fid = entry.project_path, entry.feature_id
        feature = await self._load(entry)
        previous = await self.store.read_agent_output(project, fid)

        if image_paths:
            copied = await self.store.copy_images(project, fid, image_paths)
            if copied:
                added = [
                    {
                        "path": path,
                        "filename": Path(path).name,
                        "mimeType": mimetypes.guess_type(path)[0] or "image/png",
                    }
                    for path in copied
                ]

                def add_images(f: Feature) -> None:
                    f.image_paths = list(f.image_paths) + added

                feature = await self.store.update(project, fid, add_images) or feature

        await self._run_feature(
            entry,
            feature,
            use_worktrees,
            prompt=build_follow_up_prompt(feature, previous, instructions),
            previous_content=previous,
            separator=FOLLOW_UP_SEPARATOR,
            follow_up=instructions,
            run_pipeline=False,
            label="Follow-up",
            branch_name=feature.branch_name or f"feature/{fid}",
        )

    async def _run_feature(
        self,
        entry: RunningFeature,
        feature: Feature,
        use_worktrees: bool,
        prompt: str | None = None,
        previous_content: str = "",
        separator: str = "",
        follow_up: str | None = None,
        run_pipeline: bool = True,
        label: str = "Feature",
        branch_name: str | None = None,
    ) -> None:
        project, fid = entry.project_path, entry.feature_id
        work_dir = await self._resolve_work_dir(entry, branch_name or feature.branch_name, use_worktrees)

        await self.store.update_status(project, fid, FeatureStatus.IN_PROGRESS)
        feature.status = FeatureStatus.IN_PROGRESS.value
        self.events.emit(
            AutoModeEventType.FEATURE_START,
            featureId=fid,
            projectPath=project,
            feature={"id": fid, "title": feature.display_title, "description": feature.description},
        )

        seed = previous_content + separator if previous_content.strip() else ""
        ctx, agent_ids = await self._build_context(entry, feature, work_dir, seed)

        try:
            if is_party_synthesis(agent_ids):
                await self.party_synthesis.run(ctx, previous_content or None, follow_up)
                message = "Party synthesis completed"
            else:
                if prompt is not None:
                    await ctx.runner.run(ctx.options(prompt))
                else:
                    await self._implement(ctx)
                if run_pipeline:
                    await self._run_pipeline(ctx)
                message = f"{label} completed"
        finally:
            await ctx.writer.flush()

        if feature.skip_tests:
            final_status = FeatureStatus.WAITING_APPROVAL
        else:
            final_status = FeatureStatus.VERIFIED
            message += " - auto-verified"
        await self.store.update_status(project, fid, final_status)

        elapsed = int(time.time() - entry.start_time)
        _logger.info("Feature %s finished as %s in %ds", fid, final_status.value, elapsed)
        self.events.emit(
            AutoModeEventType.FEATURE_COMPLETE,
            featureId=fid,
            projectPath=project,
            passes=True,
            message=f"{message} in {elapsed}s",
        )

    async def _implement(self, ctx: RunContext) -> None:
        feature = ctx.feature
        mode = feature.planning_mode
        if mode == PlanningMode.SKIP:
            await ctx.runner.run(ctx.options(build_feature_prompt(feature)))
            return

        self.events.emit(
            AutoModeEventType.PLANNING_STARTED,
            featureId=ctx.feature_id,
            projectPath=ctx.project_path,
            mode=mode.value,
            message=f"Starting {mode.value} planning phase",
        )
        if mode == PlanningMode.WIZARD:
            wizard = await self.wizard.run(ctx)
            prompt = build_wizard_plan_prompt(feature, wizard.questions_asked, wizard.answers)
        else:
            prompt = get_planning_prompt_prefix(feature) + build_feature_prompt(feature)

        if not plan_approval_capable(mode, feature.require_plan_approval):
            await ctx.runner.run(ctx.options(prompt))
            return

        approved = await self.plan_controller.run(ctx, prompt)
        if approved is not None:
            await self.task_executor.run(ctx, approved.plan, approved.feedback)

    async def _run_pipeline(self, ctx: RunContext) -> None:
        config = await load_pipeline_config(ctx.project_path)
        if config is None or not config.steps:
            return
        await self.pipeline.run(ctx, config.sorted_steps())

    async def _resolve_work_dir(
        self, entry: RunningFeature, branch_name: str | None, use_worktrees: bool
    ) -> str:
        entry.branch_name = branch_name
        if use_worktrees and branch_name:
            path = await self.worktrees.find_worktree_for_branch(entry.project_path, branch_name)
            if path:
                entry.worktree_path = path
                _logger.info("Feature %s runs in worktree %s", entry.feature_id, path)
                return path
            _logger.warning(
                "No worktree found for branch %s; running %s in the project root",
                branch_name, entry.feature_id,
            )
        return entry.project_path

    async def _build_context(
        self,
        entry: RunningFeature,
        feature: Feature,
        work_dir: str,
        initial_output: str,
    ) -> tuple[RunContext, list[str]]:
        project = entry.project_path
        global_settings = await self.settings.get_global_settings()
        profile = global_settings.find_profile(feature.ai_profile_id)
        artifacts_dir = await self.settings.get_artifacts_dir(project)
        auto_load = await self.settings.get_auto_load_claude_md(project)
        context_prompt = build_context_prompt(await load_context_files(project), auto_load)

        agent_ids = effective_agent_ids(feature, profile)
        persona = await self._resolve_agents(agent_ids, artifacts_dir, project, feature.verbose_collaboration)

        system_prompt = combine_system_prompt(
            context_prompt,
            persona.system_prompt if persona else None,
            profile.system_prompt if profile else None,
            build_base_system_prompt(artifacts_dir),
        )
        model = resolve_model_string(
            (persona.model if persona else None) or feature.model or (profile.model if profile else None),
            self.config.default_model,
        )
        if persona is not None and persona.thinking_budget is not None:
            thinking = persona.thinking_budget
        else:
            thinking = thinking_tokens_for_level(
                feature.thinking_level or (profile.thinking_level if profile else None)
            )

        writer = AgentOutputWriter(
            self.store, project, feature.id, initial_output, self.config.write_debounce_ms
        )
        runner = AgentRunner(
            self.provider_factory(), self.events, feature.id, project, writer, entry.cancel_token
        )
        ctx = RunContext(
            feature=feature,
            project_path=project,
            work_dir=work_dir,
            model=model,
            cancel_token=entry.cancel_token,
            writer=writer,
            runner=runner,
            system_prompt=system_prompt or None,
            artifacts_dir=artifacts_dir,
            max_thinking_tokens=thinking,
        )
        if self.config.uses_separate_planner(model):
            ctx.planner_model = self.config.planner_model
            ctx.planner_tools = list(self.config.planner_allowed_tools)
        _logger.info(
            "Feature %s: model=%s agents=%s planner=%s",
            feature.id, model, agent_ids or "-", ctx.planner_model or "-",
        )
        return ctx, agent_ids

    async def _resolve_agents(
        self,
        agent_ids: list[str],
        artifacts_dir: str,
        project_path: str,
        verbose: bool,
    ) -> ResolvedPersona | None:
        if not agent_ids:
            return None
        if len(agent_ids) == 1:
            return await self.personas.resolve_persona(agent_ids[0], artifacts_dir, project_path)
        collab = await self.personas.resolve_agent_collab(agent_ids, artifacts_dir, project_path, verbose)
        if collab is None:
            return None
        return ResolvedPersona(
            system_prompt=collab.combined_system_prompt,
            model=collab.model,
            thinking_budget=collab.thinking_budget,
        )

    # =========================================================================
    # Human-in-the-loop
    # =========================================================================

    def has_pending_approval(self, feature_id: str) -> bool:
        return self.plan_controller.has_pending(feature_id)

    def cancel_plan_approval(self, feature_id: str) -> bool:
        return self.plan_controller.cancel(feature_id)

    async def resolve_plan_approval(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
        project_path_fallback: str | None = None,
    ) -> dict[str, Any]:
        """
        Deliver a plan decision.

        With no run waiting in memory (for example after a restart), a
        persisted plan in ``generated`` state is approved or rejected from
        disk; an approval then restarts the feature with a continuation
        prompt built from the stored plan.
        """
        decision = PlanDecision(approved=approved, edited_plan=edited_plan, feedback=feedback)
        if self.plan_controller.resolve(feature_id, decision):
            return {"success": True}

        if project_path_fallback and not self.is_feature_running(feature_id):
            feature = await self.store.load_feature(project_path_fallback, feature_id)
            if feature is not None and feature.plan_spec is not None and feature.plan_spec.status == PlanStatus.GENERATED:
                await self._recover_plan_approval(project_path_fallback, feature, decision)
                return {"success": True}

        _logger.warning("No pending approval for feature %s", feature_id)
        return {"success": False, "error": f"No pending approval for feature {feature_id}"}

    async def _recover_plan_approval(self, project_path: str, feature: Feature, decision: PlanDecision) -> None:
        plan = feature.plan_spec
        fid = feature.id
        _logger.info("Recovering plan approval for %s from disk (approved=%s)", fid, decision.approved)

        if not decision.approved:
            plan.transition_to(PlanStatus.REJECTED)
            await self.store.update_plan_spec(project_path, fid, plan)
            await self.store.update_status(project_path, fid, FeatureStatus.BACKLOG)
            self.events.emit(
                AutoModeEventType.PLAN_REJECTED,
                featureId=fid,
                projectPath=project_path,
                feedback=decision.feedback,
            )
            return

        if decision.has_edits:
            plan.set_content(decision.edited_plan)
            plan.set_tasks(parse_tasks_from_spec(decision.edited_plan))
        plan.transition_to(PlanStatus.APPROVED)
        plan.reviewed_by_user = True
        await self.store.update_plan_spec(project_path, fid, plan)
        self.events.emit(
            AutoModeEventType.PLAN_APPROVED,
            featureId=fid,
            projectPath=project_path,
            hasEdits=decision.has_edits,
            planVersion=plan.version,
        )
        self.start_feature(
            project_path,
            fid,
            use_worktrees=True,
            continuation_prompt=build_recovery_prompt(plan.content or "", decision.feedback),
        )

    async def submit_wizard_answer(
        self,
        project_path: str,
        feature_id: str,
        question_id: str,
        answer: WizardAnswer,
    ) -> dict[str, Any]:
        return self.wizard.submit_answer(project_path, feature_id, question_id, answer)

    # =========================================================================
    # Status and utilities
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        return {
            "isRunning": bool(self.running_features),
            "runningFeatures": list(self.running_features),
            "runningCount": self.running_count,
            "autoLoopRunning": self.scheduler.is_running,
        }

    def get_running_agents(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.running_features.values()]

    async def context_exists(self, project_path: str, feature_id: str) -> bool:
        return await self.store.context_exists(project_path, feature_id)

    async def analyze_project(self, project_path: str) -> None:
        """Read-only survey of the project written to .automaker/project-analysis.md."""
        analysis_id = f"analysis-{int(time.time() * 1000)}"
        self.events.emit(
            AutoModeEventType.FEATURE_START,
            featureId=analysis_id,
            projectPath=project_path,
            feature={
                "id": analysis_id,
                "title": "Project Analysis",
                "description": "Analyzing project structure",
            },
        )
        token = CancellationToken(analysis_id)
        runner = AgentRunner(self.provider_factory(), self.events, analysis_id, project_path, None, token)
        try:
            outcome = await runner.run(
                ExecuteOptions(
                    prompt=PROJECT_ANALYSIS_PROMPT,
                    model=self.config.default_model,
                    cwd=project_path,
                    max_turns=PROJECT_ANALYSIS_MAX_TURNS,
                    allowed_tools=list(READ_ONLY_TOOLS),
                )
            )
            content = outcome.result or outcome.text
            path = automaker_dir(project_path) / PROJECT_ANALYSIS_FILE
            await asyncio.to_thread(atomic_write_text, path, content)
        except Exception as exc:
            info = classify_error(exc)
            _logger.error("Project analysis failed for %s: %s", project_path, info.message)
            self.events.emit(
                AutoModeEventType.AUTO_MODE_ERROR,
                featureId=analysis_id,
                projectPath=project_path,
                error=info.message,
                errorType=info.type.value,
            )
            return

        self.events.emit(
            AutoModeEventType.FEATURE_COMPLETE,
            featureId=analysis_id,
            projectPath=project_path,
            passes=True,
            message="Project analysis completed",
        )

    # =========================================================================
    # Auto loop
    # =========================================================================

    async def start_auto_loop(
        self,
        project_path: str,
        max_concurrency: int | None = None,
        use_worktrees: bool = True,
    ) -> None:
        self.scheduler.start(project_path, max_concurrency, use_worktrees)

    async def stop_auto_loop(self) -> int:
        return await self.scheduler.stop()
