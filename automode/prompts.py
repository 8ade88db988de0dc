"""
Prompt Builders
===============

Every prompt the orchestrator sends to an agent is assembled here, so the
marker protocol (``[SPEC_GENERATED]``, ``[WIZARD_QUESTION]``,
``[WIZARD_COMPLETE]``) and the ``tasks`` block format are described in one
place.
"""

from __future__ import annotations

import json
from typing import Any

from automode.models import Feature, ParsedTask, PlanningMode, WizardQuestion

FEATURE_REQUEST_SEPARATOR = "\n\n---\n\n## Feature Request\n\n"

# Upcoming tasks shown to a task agent for orientation
UPCOMING_TASK_WINDOW = 3

_TASK_FORMAT_RULES = """Task ID rules:
   - Sequential: T001, T002, T003, ...
   - Description: a clear action ("Create user model", "Add API endpoint")
   - File: the primary file affected
   - Order by dependency, foundations first"""

_NO_PREAMBLE = (
    "IMPORTANT: Do not output exploration notes, tool usage or thinking before the plan. "
    "Analyze the codebase silently, then output ONLY the structured plan."
)

_LITE_OUTLINE = """Write a brief planning outline:

1. **Goal**: what we are accomplishing (1 sentence)
2. **Approach**: how we will do it (2-3 sentences)
3. **Files to Touch**: files and the change to each
4. **Tasks**: numbered task list (3-7 items)
5. **Risks**: gotchas to watch for"""

PLANNING_PROMPTS: dict[str, str] = {
    "lite": f"""## Planning Phase (Lite)

{_NO_PREAMBLE}

{_LITE_OUTLINE}

After the outline, output:
"[PLAN_GENERATED] Planning outline complete."

Then continue with the implementation.""",

    "lite_with_approval": f"""## Planning Phase (Lite)

{_NO_PREAMBLE}

{_LITE_OUTLINE}

After the outline, output on its own line:
"[SPEC_GENERATED] Please review the planning outline above."

Do NOT start implementing until the outline is approved.""",

    "spec": f"""## Specification Phase

{_NO_PREAMBLE}

Write a specification with an actionable task breakdown, then wait for approval.

1. **Problem**: the problem from the user's perspective
2. **Solution**: the approach in 1-2 sentences
3. **Acceptance Criteria**: 3-5 items as GIVEN [context], WHEN [action], THEN [outcome]
4. **Files to Modify**: table of file, purpose and action (create/modify/delete)
5. **Implementation Tasks**, in exactly this format:
   ```tasks
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]
   ```
   {_TASK_FORMAT_RULES}
6. **Verification**: how to confirm the feature works

After the specification, output on its own line:
"[SPEC_GENERATED] Please review the specification above."

Do NOT start implementing until the specification is approved.""",

    "full": f"""## Full Specification Phase

{_NO_PREAMBLE}

Write a comprehensive specification with a phased task breakdown, then wait for approval.

1. **Problem Statement**: 2-3 sentences from the user's perspective
2. **User Story**: As a [user], I want [goal], so that [benefit]
3. **Acceptance Criteria**: happy path, edge cases and error handling, each as GIVEN/WHEN/THEN
4. **Technical Context**: affected files, dependencies, constraints, patterns to follow
5. **Non-Goals**: what this feature does not include
6. **Implementation Tasks**, grouped into phases in exactly this format:
   ```tasks
   ## Phase 1: Foundation
   - [ ] T001: [Description] | File: [path/to/file]

   ## Phase 2: Core Implementation
   - [ ] T002: [Description] | File: [path/to/file]

   ## Phase 3: Integration & Testing
   - [ ] T003: [Description] | File: [path/to/file]
   ```
   {_TASK_FORMAT_RULES}
   - Task ids continue across phases
7. **Success Metrics**: measurable completion criteria
8. **Risks & Mitigations**

After the specification, output on its own line:
"[SPEC_GENERATED] Please review the specification above."

Do NOT start implementing until the specification is approved.""",
}

WIZARD_SYSTEM_PROMPT = """You are in WIZARD MODE: ask 2-5 clarifying questions before any planning.

## Output Format
Ask one question per turn, written exactly as:
[WIZARD_QUESTION]{"id":"Q1","header":"Short Label","question":"Full question?","multiSelect":false,"options":[{"label":"Option 1","description":"What it means","value":"value1"},{"label":"Option 2","description":"What it means","value":"value2"}]}

When you have enough information, write:
[WIZARD_COMPLETE]

## Rules
- 2-5 questions in total
- 2-4 options per question
- Clarify scope, approach, constraints or preferences specific to this task
"""

PROJECT_ANALYSIS_PROMPT = """Analyze this project and summarize:
1. Project structure and architecture
2. Main technologies and frameworks
3. Key components and what they are responsible for
4. Build and test commands
5. Existing conventions and patterns

Format the result as a structured markdown document."""


# =============================================================================
# Planning
# =============================================================================

def plan_approval_capable(mode: PlanningMode, require_plan_approval: bool) -> bool:
    """True for modes that produce a reviewable plan ending in [SPEC_GENERATED]."""
    if mode in (PlanningMode.SPEC, PlanningMode.FULL, PlanningMode.WIZARD):
        return True
    return mode == PlanningMode.LITE and require_plan_approval


def get_planning_prompt_prefix(feature: Feature) -> str:
    """Planning instructions to put in front of the feature prompt ('' for none)."""
    mode = feature.planning_mode
    if mode in (PlanningMode.SKIP, PlanningMode.WIZARD):
        return ""

    key = mode.value
    if mode == PlanningMode.LITE and feature.require_plan_approval:
        key = "lite_with_approval"
    return PLANNING_PROMPTS[key] + FEATURE_REQUEST_SEPARATOR


def _image_lines(feature: Feature) -> list[str]:
    lines = []
    for idx, image in enumerate(feature.image_paths, 1):
        if isinstance(image, dict):
            path = str(image.get("path", ""))
            filename = image.get("filename") or path.rsplit("/", 1)[-1]
            mime_type = image.get("mimeType") or "image/*"
        else:
            path = str(image)
            filename = path.rsplit("/", 1)[-1]
            mime_type = "image/*"
        lines.append(f"   {idx}. {filename} ({mime_type})\n      Path: {path}")
    return lines


def build_feature_prompt(feature: Feature) -> str:
    """The feature request itself, with images and verification instructions."""
    prompt = (
        "## Feature Implementation Task\n\n"
        f"**Feature ID:** {feature.id}\n"
        f"**Title:** {feature.display_title}\n"
        f"**Description:** {feature.description}\n"
    )

    if feature.spec:
        prompt += f"\n**Specification:**\n{feature.spec}\n"

    if feature.image_paths:
        images = "\n".join(_image_lines(feature))
        prompt += (
            "\n**Context Images:**\n"
            f"{len(feature.image_paths)} image(s) are attached for context. "
            "Read them with the Read tool before implementing:\n\n"
            f"{images}\n"
        )

    prompt += (
        "\n## Instructions\n\n"
        "1. Explore the codebase to understand its structure\n"
        "2. Plan the implementation\n"
        "3. Make the code changes\n"
        "4. Follow existing patterns and conventions\n"
    )

    if not feature.skip_tests:
        prompt += (
            "\n## Verification (REQUIRED)\n\n"
            "Once implemented, write a temporary test that exercises the feature, run it, "
            "fix the implementation until it passes, then delete the temporary test.\n"
        )

    prompt += (
        "\nWhen done, wrap your final summary in <summary> tags:\n\n"
        "<summary>\n"
        "## Summary: [Feature Title]\n\n"
        "### Changes Implemented\n- ...\n\n"
        "### Files Modified\n- ...\n\n"
        "### Notes for Developer\n- ...\n"
        "</summary>"
    )
    return prompt


def build_resume_prompt(feature: Feature, previous_context: str) -> str:
    return (
        "## Continuing Feature Implementation\n\n"
        f"{build_feature_prompt(feature)}\n\n"
        "## Previous Context\n"
        "Output from the previous attempt. Continue from where it stopped:\n\n"
        f"{previous_context}\n\n"
        "## Instructions\n"
        "Review the previous work and finish the implementation. "
        "If it already looks complete, verify that it works."
    )


def build_follow_up_prompt(feature: Feature, previous_context: str, instructions: str) -> str:
    prompt = f"## Follow-up on Feature Implementation\n\n{build_feature_prompt(feature)}\n"
    if previous_context:
        prompt += (
            "\n## Previous Agent Work\n"
            "Output from the previous implementation attempt:\n\n"
            f"{previous_context}\n"
        )
    prompt += (
        f"\n## Follow-up Instructions\n{instructions}\n\n"
        "## Task\n"
        "Apply the follow-up instructions. Review the previous work and make the requested changes."
    )
    return prompt


def build_revision_prompt(previous_plan: str, previous_version: int, feedback: str | None) -> str:
    return (
        "The user asked for revisions to the plan.\n\n"
        f"## Previous Plan (v{previous_version})\n{previous_plan}\n\n"
        f"## User Feedback\n{feedback or 'Revise the plan to match the edits above.'}\n\n"
        "## Instructions\n"
        "Regenerate the specification with the feedback applied. Keep the ```tasks block format. "
        "When done, output on its own line:\n"
        '"[SPEC_GENERATED] Please review the revised specification above."\n'
    )


def build_approved_plan_prompt(plan_content: str, feedback: str | None = None) -> str:
    """Single-call implementation of an approved plan that has no parsed tasks."""
    prompt = "The plan has been approved. Implement it now.\n"
    if feedback:
        prompt += f"\n## User Feedback\n{feedback}\n"
    prompt += (
        f"\n## Approved Plan\n\n{plan_content}\n\n"
        "## Instructions\n\n"
        "Implement every change the plan describes."
    )
    return prompt


def build_recovery_prompt(plan_content: str, feedback: str | None = None) -> str:
    """Continuation used when an approval arrives after the waiting run is gone."""
    prompt = "The plan has been approved."
    if feedback:
        prompt += f"\n\nUser feedback: {feedback}\n\n"
    else:
        prompt += " "
    prompt += f"Proceed with the implementation described in the plan:\n\n{plan_content}\n\nImplement the feature now."
    return prompt


def prepend_planner_context(
    prompt: str,
    repo_map: str,
    allowed_tools: list[str],
    planner_model: str,
    execution_model: str,
) -> str:
    allowed = ", ".join(allowed_tools) if allowed_tools else "(no tools allowed)"
    return (
        "## Planning Context (paths only)\n\n"
        "You are producing a plan only. Do NOT implement code in this step.\n\n"
        f"- Planner model: {planner_model}\n"
        f"- Execution model: {execution_model}\n"
        f"- Planner allowed tools: {allowed}\n\n"
        f"### Repo Map (paths only)\n{repo_map}\n\n---\n\n"
        f"{prompt}"
    )


# =============================================================================
# Tasks
# =============================================================================

def build_task_prompt(
    task: ParsedTask,
    all_tasks: list[ParsedTask],
    task_index: int,
    plan_content: str,
    user_feedback: str | None = None,
) -> str:
    """Focused prompt for one task: the task, its neighbours and the plan for reference."""
    completed = all_tasks[:task_index]
    remaining = all_tasks[task_index + 1:]

    lines = [
        f"# Task Execution: {task.id}",
        "",
        "You are executing one task of a larger feature implementation.",
        "",
        "## Your Current Task",
        "",
        f"**Task ID:** {task.id}",
        f"**Description:** {task.description}",
    ]
    if task.file_path:
        lines.append(f"**Primary File:** {task.file_path}")
    if task.phase:
        lines.append(f"**Phase:** {task.phase}")
    lines += ["", "## Context", ""]

    if completed:
        lines.append(f"### Already Completed ({len(completed)} tasks)")
        lines += [f"- [x] {t.id}: {t.description}" for t in completed]
        lines.append("")

    if remaining:
        lines.append(f"### Coming Up Next ({len(remaining)} tasks remaining)")
        lines += [f"- [ ] {t.id}: {t.description}" for t in remaining[:UPCOMING_TASK_WINDOW]]
        if len(remaining) > UPCOMING_TASK_WINDOW:
            lines.append(f"... and {len(remaining) - UPCOMING_TASK_WINDOW} more tasks")
        lines.append("")

    if user_feedback:
        lines += ["### User Feedback", user_feedback, ""]

    lines += [
        "### Reference: Full Plan",
        "<details>",
        plan_content,
        "</details>",
        "",
        "## Instructions",
        "",
        f'1. Complete ONLY task {task.id}: "{task.description}"',
        "2. Do not work on other tasks",
        "3. Follow the existing codebase patterns",
        "4. Summarize what you implemented when done",
        "",
        f"Begin task {task.id} now.",
    ]
    return "\n".join(lines)


# =============================================================================
# Pipeline
# =============================================================================

def build_pipeline_step_prompt(
    step_name: str,
    instructions: str,
    feature: Feature,
    previous_context: str,
) -> str:
    prompt = (
        f"## Pipeline Step: {step_name}\n\n"
        "This is an automated step that runs after the feature was implemented.\n\n"
        f"### Feature Context\n{build_feature_prompt(feature)}\n\n"
    )
    if previous_context:
        prompt += f"### Previous Work\nOutput from earlier work on this feature:\n\n{previous_context}\n\n"
    prompt += (
        f"### Pipeline Step Instructions\n{instructions}\n\n"
        "### Task\n"
        "Carry out the step instructions above, building on the previous work."
    )
    return prompt


# =============================================================================
# Wizard
# =============================================================================

def build_wizard_turn_prompt(
    feature: Feature,
    questions_asked: int,
    answers: dict[str, Any],
) -> str:
    prompt = f"You are in WIZARD MODE gathering requirements.\n\nTASK: {feature.description}"
    if questions_asked > 0:
        prompt += f"\n\nQuestions asked: {questions_asked}, Answers: {json.dumps(answers)}"
    return prompt


def format_answer(answer: Any) -> str:
    if isinstance(answer, list):
        return ", ".join(str(a) for a in answer)
    return str(answer)


def build_wizard_plan_prompt(
    feature: Feature,
    questions: list[WizardQuestion],
    answers: dict[str, Any],
) -> str:
    """Plan-generation prompt folding in the wizard's questions and answers."""
    qa = "\n\n".join(
        f"**Q{i}: {q.question}**\nAnswer: {format_answer(answers.get(q.id, ''))}"
        for i, q in enumerate(questions, 1)
    )
    spec_section = f"\n## Additional Specification\n{feature.spec}\n" if feature.spec else ""
    return (
        "## Wizard Requirements Gathered\n\n"
        "The user answered these clarifying questions:\n\n"
        f"{qa}\n\n---\n\n"
        f"## Feature to Implement\n\n{feature.description}\n{spec_section}\n---\n\n"
        "## Your Task\n\n"
        "Write a detailed implementation plan that honours every answer above. "
        "List the implementation tasks in a ```tasks block using the "
        "`- [ ] T001: Description | File: path` format.\n\n"
        "When the plan is complete, output the marker:\n"
        "[SPEC_GENERATED]\n"
    )


# =============================================================================
# Party synthesis / system prompts
# =============================================================================

def build_party_synthesis_prompt(
    feature: Feature,
    previous_context: str | None = None,
    follow_up_instructions: str | None = None,
) -> str:
    parts = [
        "You are running Party Mode Synthesis.",
        "Simulate a short deliberation between several expert personas and return one "
        "synthesized recommendation.",
        "",
        "## Task",
        f"**Title:** {feature.display_title or feature.id}",
        "**Description:**",
        feature.description,
    ]
    if feature.spec:
        parts.append(f"\n**Specification:**\n{feature.spec}")
    if previous_context:
        parts.append(f"\n## Previous Context\n{previous_context}\n")
    if follow_up_instructions:
        parts.append(f"\n## Follow-up Request\n{follow_up_instructions}\n")
    parts += [
        "",
        "## Output Requirements",
        "- The output MUST match the provided JSON schema.",
        "- Pick 3-6 relevant personas for `agents`.",
        "- Each agent entry has `id` (persona identifier, e.g. \"bmad:pm\") and `position` "
        "(1-2 sentences on its stance).",
        "- Set `consensus` to null when the agents do not agree.",
        "- `markdownSummary` is human-readable Markdown with headings and bullets.",
    ]
    return "\n".join(parts)


def build_base_system_prompt(artifacts_dir: str) -> str:
    return "\n".join([
        "You are running inside an autonomous feature execution engine.",
        "Respect project context files and the existing codebase conventions.",
        "Do not edit feature metadata under .automaker/features/*; the engine manages it.",
        f"Write any generated artifacts as text files under: {artifacts_dir} (relative to project root).",
        "Keep artifacts git-friendly: no binaries, stable filenames, predictable formatting.",
    ])


def combine_system_prompt(*parts: str | None) -> str:
    return "\n\n".join(p for p in parts if p)
