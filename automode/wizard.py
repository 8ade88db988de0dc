"""
Wizard Controller
=================

Bounded clarifying-question loop run before planning in ``wizard`` mode.

Each turn is one short read-only agent call whose output is scanned for
``[WIZARD_QUESTION]{json}`` or ``[WIZARD_COMPLETE]``:

- a valid question suspends the run until ``submit_answer`` supplies an answer
- completion is ignored until MIN_QUESTIONS have been asked
- MAX_QUESTIONS ends the loop whether or not the agent says it is done
- a turn with neither marker (or an invalid question) asks a generic
  fallback question instead of failing

The asked questions and answers are persisted under ``feature.wizard`` as
the loop goes, and returned for the plan-generation prompt.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from automode.agent_runner import RunContext
from automode.continuations import ContinuationRegistry
from automode.events import AutoModeEvents, AutoModeEventType
from automode.feature_store import FeatureStore
from automode.marker_parser import Marker
from automode.models import (
    WizardAnswer,
    WizardOption,
    WizardQuestion,
    WizardState,
    WizardStatus,
    utc_now_iso,
)
from automode.prompts import WIZARD_SYSTEM_PROMPT, build_wizard_turn_prompt, combine_system_prompt
from automode.provider import READ_ONLY_TOOLS

_logger = logging.getLogger(__name__)

MIN_QUESTIONS = 2
MAX_QUESTIONS = 5
WIZARD_MAX_TURNS = 3

# Early completions tolerated in a row before a fallback question is forced
MAX_PREMATURE_COMPLETIONS = 3

FALLBACK_OPTIONS = (
    ("Performance", "Optimize for speed and efficiency", "performance"),
    ("Simplicity", "Keep the implementation simple and maintainable", "simplicity"),
    ("Features", "Include comprehensive functionality", "features"),
    ("Testing", "Focus on test coverage and reliability", "testing"),
)


def validate_question(payload: dict[str, Any] | None) -> WizardQuestion | None:
    """A WizardQuestion if the payload has an id, a question and options, else None."""
    if not isinstance(payload, dict):
        return None
    options = payload.get("options")
    if not payload.get("id") or not payload.get("question"):
        return None
    if not isinstance(options, list) or not options:
        return None
    if not all(isinstance(o, dict) for o in options):
        return None
    return WizardQuestion.from_dict(payload)


def fallback_question() -> WizardQuestion:
    return WizardQuestion(
        id=f"Q_fallback_{int(time.time() * 1000)}",
        header="Clarify",
        question="What aspect of this task should I focus on most?",
        options=[WizardOption(label, description, value) for label, description, value in FALLBACK_OPTIONS],
        multi_select=False,
    )


class WizardController:
    def __init__(
        self,
        store: FeatureStore,
        events: AutoModeEvents,
        registry: ContinuationRegistry[WizardAnswer],
    ):
        self.store = store
        self.events = events
        self.registry = registry

    # -------------------------------------------------------------------------
    # External answers
    # -------------------------------------------------------------------------

    def submit_answer(
        self,
        project_path: str,
        feature_id: str,
        question_id: str,
        answer: WizardAnswer,
    ) -> dict[str, Any]:
        """Deliver an answer to the waiting run. Returns an API-shaped result."""
        pending = self.registry.get(feature_id)
        if pending is None:
            return {"success": False, "error": f"No pending wizard question for feature {feature_id}"}

        expected = pending.context.get("question_id")
        if expected != question_id:
            return {
                "success": False,
                "error": f"Question {question_id} is not the pending question for feature {feature_id}",
            }
        if pending.context.get("project_path") != project_path:
            _logger.warning(
                "Wizard answer for %s came with project %s, run uses %s",
                feature_id, project_path, pending.context.get("project_path"),
            )
            return {
                "success": False,
                "error": f"Project {project_path} does not match the pending question for feature {feature_id}",
            }

        asked = int(pending.context.get("questions_asked", 0))
        self.registry.resolve(feature_id, answer)
        _logger.info("Wizard answer received for %s (%s)", feature_id, question_id)
        return {
            "success": True,
            "questionsRemaining": max(0, MAX_QUESTIONS - asked),
            "wizardComplete": False,
        }

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self, ctx: RunContext) -> WizardState:
        feature = ctx.feature
        wizard = feature.wizard or WizardState()
        if wizard.status == WizardStatus.COMPLETE and wizard.questions_asked:
            _logger.info("Reusing completed wizard answers for %s", ctx.feature_id)
            return wizard

        if not wizard.questions_asked:
            wizard.started_at = utc_now_iso()
        wizard.status = WizardStatus.ASKING
        await self._persist(ctx, wizard)

        system_prompt = combine_system_prompt(ctx.system_prompt, WIZARD_SYSTEM_PROMPT)
        premature = 0

        while len(wizard.questions_asked) < MAX_QUESTIONS:
            ctx.cancel_token.raise_if_cancelled()
            asked = len(wizard.questions_asked)

            prompt = build_wizard_turn_prompt(feature, asked, wizard.answers)
            options = ctx.options(
                prompt,
                system_prompt=system_prompt,
                max_turns=WIZARD_MAX_TURNS,
                allowed_tools=list(READ_ONLY_TOOLS),
            )
            outcome = await ctx.runner.run(
                options, stop_on=[Marker.WIZARD_QUESTION, Marker.WIZARD_COMPLETE]
            )
            found = outcome.marker

            if found is not None and found.marker == Marker.WIZARD_COMPLETE:
                if asked >= MIN_QUESTIONS:
                    _logger.info("Wizard complete for %s after %d questions", ctx.feature_id, asked)
                    break
                premature += 1
                _logger.info(
                    "Ignoring wizard completion for %s after %d questions (minimum %d)",
                    ctx.feature_id, asked, MIN_QUESTIONS,
                )
                if premature < MAX_PREMATURE_COMPLETIONS:
                    continue
                question = fallback_question()
            else:
                question = validate_question(found.payload if found else None)
                if question is None:
                    _logger.warning("No valid wizard question from %s; asking fallback", ctx.feature_id)
                    question = fallback_question()

            premature = 0
            wizard.answers[question.id] = await self._ask(ctx, wizard, question)
            wizard.current_question_id = None
            await self._persist(ctx, wizard)

        wizard.status = WizardStatus.COMPLETE
        wizard.current_question_id = None
        wizard.completed_at = utc_now_iso()
        await self._persist(ctx, wizard)
        self.events.emit(
            AutoModeEventType.WIZARD_COMPLETE,
            featureId=ctx.feature_id,
            projectPath=ctx.project_path,
            answers=dict(wizard.answers),
        )
        return wizard

    async def _ask(self, ctx: RunContext, wizard: WizardState, question: WizardQuestion) -> WizardAnswer:
        wizard.questions_asked.append(question)
        wizard.current_question_id = question.id
        asked = len(wizard.questions_asked)

        future = self.registry.register(
            ctx.feature_id,
            question_id=question.id,
            project_path=ctx.project_path,
            questions_asked=asked,
        )
        try:
            await self._persist(ctx, wizard)
            self.events.emit(
                AutoModeEventType.WIZARD_QUESTION,
                featureId=ctx.feature_id,
                projectPath=ctx.project_path,
                question=question.to_dict(),
                questionIndex=asked - 1,
                totalQuestions=MAX_QUESTIONS,
            )
            _logger.info("Wizard question %d for %s: %s", asked, ctx.feature_id, question.id)
            return await ctx.cancel_token.race(future)
        finally:
            self.registry.discard(ctx.feature_id, future)

    async def _persist(self, ctx: RunContext, wizard: WizardState) -> None:
        ctx.feature.wizard = wizard
        await self.store.update_wizard_state(ctx.project_path, ctx.feature_id, wizard)
