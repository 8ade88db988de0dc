"""
Pipeline Step Runner
====================

Post-implementation steps configured in ``<project>/.automaker/pipeline.json``:

    {"version": 1, "steps": [{"id": "review", "name": "Code Review",
                              "order": 1, "instructions": "..."}]}

Steps run in ``order``. Each one sees the narrative log as it is on disk,
so it builds on everything earlier steps wrote. A missing or malformed
config means no pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from automode.agent_runner import RunContext
from automode.events import AutoModeEvents, AutoModeEventType
from automode.feature_store import FeatureStore, automaker_dir
from automode.models import pipeline_status
from automode.prompts import build_pipeline_step_prompt

_logger = logging.getLogger(__name__)

PIPELINE_FILE = "pipeline.json"


class PipelineStep(BaseModel):
    id: str
    name: str
    order: int = 0
    instructions: str = ""


class PipelineConfig(BaseModel):
    version: int = 1
    steps: list[PipelineStep] = Field(default_factory=list)

    def sorted_steps(self) -> list[PipelineStep]:
        return sorted(self.steps, key=lambda s: s.order)


def pipeline_config_path(project_path: str | Path) -> Path:
    return automaker_dir(project_path) / PIPELINE_FILE


def _read_pipeline_config(path: Path) -> PipelineConfig | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        _logger.warning("Could not read pipeline config %s: %s", path, e)
        return None
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        _logger.warning("Invalid pipeline config %s: %s", path, e)
        return None


async def load_pipeline_config(project_path: str | Path) -> PipelineConfig | None:
    return await asyncio.to_thread(_read_pipeline_config, pipeline_config_path(project_path))


class PipelineRunner:
    def __init__(self, store: FeatureStore, events: AutoModeEvents):
        self.store = store
        self.events = events

    async def run(self, ctx: RunContext, steps: list[PipelineStep]) -> None:
        total = len(steps)
        for index, step in enumerate(steps):
            ctx.cancel_token.raise_if_cancelled()

            await self.store.update_status(ctx.project_path, ctx.feature_id, pipeline_status(step.id))
            self.events.emit(
                AutoModeEventType.PROGRESS,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                content=f"Starting pipeline step {index + 1}/{total}: {step.name}",
            )
            self.events.emit(
                AutoModeEventType.PIPELINE_STEP_STARTED,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                stepId=step.id,
                stepName=step.name,
                stepIndex=index,
                totalSteps=total,
            )
            _logger.info("Pipeline step %s (%d/%d) for %s", step.id, index + 1, total, ctx.feature_id)

            # Earlier output must be on disk before it is read back
            await ctx.writer.flush()
            previous = await self.store.read_agent_output(ctx.project_path, ctx.feature_id)

            prompt = build_pipeline_step_prompt(step.name, step.instructions, ctx.feature, previous)
            await ctx.runner.run(ctx.options(prompt))
            await ctx.writer.flush()

            self.events.emit(
                AutoModeEventType.PIPELINE_STEP_COMPLETE,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                stepId=step.id,
                stepName=step.name,
                stepIndex=index,
                totalSteps=total,
            )
