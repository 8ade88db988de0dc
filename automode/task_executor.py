"""
Multi-Agent Task Executor
=========================

Implements an approved plan one task at a time. Every task gets its own
agent session with a focused prompt and a reduced turn budget; tasks run
strictly in order since later tasks build on earlier edits.
"""

from __future__ import annotations

import logging

from automode.agent_runner import RunContext
from automode.errors import FeatureCancelledError
from automode.events import AutoModeEvents, AutoModeEventType
from automode.feature_store import FeatureStore
from automode.models import PlanSpec, TaskStatus
from automode.prompts import build_approved_plan_prompt, build_task_prompt
from automode.task_parser import phase_number

_logger = logging.getLogger(__name__)

DEFAULT_TASK_TURN_BASE = 100
MAX_TASK_TURNS = 50


def task_turn_budget(max_turns: int | None) -> int:
    return min(max_turns or DEFAULT_TASK_TURN_BASE, MAX_TASK_TURNS)


class TaskExecutor:
    def __init__(self, store: FeatureStore, events: AutoModeEvents):
        self.store = store
        self.events = events

    async def run(self, ctx: RunContext, plan: PlanSpec, feedback: str | None = None) -> None:
        """
        Execute every task of ``plan``.

        A plan without parsed tasks is implemented in a single call instead.
        """
        if not plan.tasks:
            _logger.info("Plan for %s has no parsed tasks; implementing it in one pass", ctx.feature_id)
            prompt = build_approved_plan_prompt(plan.content or "", feedback)
            await ctx.runner.run(ctx.options(prompt))
            return

        tasks = plan.tasks
        total = len(tasks)
        budget = task_turn_budget(ctx.max_turns)

        for index, task in enumerate(tasks):
            ctx.cancel_token.raise_if_cancelled()

            plan.current_task_id = task.id
            plan.set_task_status(task.id, TaskStatus.IN_PROGRESS)
            await self._persist(ctx, plan)
            self.events.emit(
                AutoModeEventType.TASK_STARTED,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                taskId=task.id,
                taskDescription=task.description,
                taskIndex=index,
                tasksTotal=total,
            )
            _logger.info("Starting task %s (%d/%d) for %s", task.id, index + 1, total, ctx.feature_id)

            prompt = build_task_prompt(task, tasks, index, plan.content or "", feedback)
            try:
                await ctx.runner.run(ctx.options(prompt, max_turns=budget))
            except FeatureCancelledError:
                raise
            except Exception:
                plan.set_task_status(task.id, TaskStatus.FAILED)
                await self._persist(ctx, plan)
                raise

            plan.set_task_status(task.id, TaskStatus.COMPLETED)
            plan.record_task_completed(index + 1)
            await self._persist(ctx, plan)
            self.events.emit(
                AutoModeEventType.TASK_COMPLETE,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                taskId=task.id,
                tasksCompleted=plan.tasks_completed,
                tasksTotal=total,
            )

            next_task = tasks[index + 1] if index + 1 < total else None
            if task.phase and (next_task is None or next_task.phase != task.phase):
                self.events.emit(
                    AutoModeEventType.PHASE_COMPLETE,
                    featureId=ctx.feature_id,
                    projectPath=ctx.project_path,
                    phase=task.phase,
                    phaseNumber=phase_number(task.phase),
                )

        plan.current_task_id = None
        await self._persist(ctx, plan)
        _logger.info("All %d tasks completed for %s", total, ctx.feature_id)

    async def _persist(self, ctx: RunContext, plan: PlanSpec) -> None:
        ctx.feature.plan_spec = plan
        await self.store.update_plan_spec(ctx.project_path, ctx.feature_id, plan)
