"""
Auto Mode Data Models
=====================

Feature metadata as stored in ``.automaker/features/<id>/feature.json`` and the
in-memory records the orchestrator keeps while a feature runs.

On disk every document uses camelCase keys. The dataclasses here expose
snake_case attributes and round-trip unknown keys through ``extra`` so that
fields owned by other tools survive a read-modify-write.

PlanSpec State Machine:
    pending -> generating -> generated -> {approved | rejected}
    generated -> generating  (revision re-entry, bumps version)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from automode.cancellation import CancellationToken
from automode.errors import InvalidPlanTransition

_logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Enums
# =============================================================================

class FeatureStatus(str, Enum):
    """Fixed feature statuses. Pipeline steps add ``pipeline_<stepId>``."""

    BACKLOG = "backlog"
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"


# Statuses the scheduler treats as ready to run
SCHEDULABLE_STATUSES = frozenset({
    FeatureStatus.PENDING.value,
    FeatureStatus.READY.value,
    FeatureStatus.BACKLOG.value,
})

PIPELINE_STATUS_PREFIX = "pipeline_"


def pipeline_status(step_id: str) -> str:
    """Status marker for a feature currently inside a pipeline step."""
    return f"{PIPELINE_STATUS_PREFIX}{step_id}"


class PlanningMode(str, Enum):
    SKIP = "skip"
    LITE = "lite"
    SPEC = "spec"
    FULL = "full"
    WIZARD = "wizard"


class PlanStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WizardStatus(str, Enum):
    PENDING = "pending"
    ASKING = "asking"
    COMPLETE = "complete"


# Valid plan transitions adjacency map
VALID_PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.PENDING: frozenset({PlanStatus.GENERATING}),
    PlanStatus.GENERATING: frozenset({PlanStatus.GENERATED}),
    PlanStatus.GENERATED: frozenset({
        PlanStatus.APPROVED,
        PlanStatus.REJECTED,
        PlanStatus.GENERATING,  # revision re-entry
    }),
    PlanStatus.APPROVED: frozenset(),
    PlanStatus.REJECTED: frozenset(),
}


def _enum_or_default(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        _logger.warning(
            "Unknown %s value %r, using '%s'", enum_cls.__name__, value, default.value
        )
        return default


def _split_known(data: dict[str, Any], known: tuple[str, ...]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


# =============================================================================
# Tasks
# =============================================================================

@dataclass
class ParsedTask:
    """One ``T###`` task extracted from a generated plan."""

    id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: TaskStatus = TaskStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
        }
        if self.file_path is not None:
            data["filePath"] = self.file_path
        if self.phase is not None:
            data["phase"] = self.phase
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParsedTask":
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            file_path=data.get("filePath"),
            phase=data.get("phase"),
            status=_enum_or_default(TaskStatus, data.get("status", "pending"), TaskStatus.PENDING),
        )


# =============================================================================
# Plan Spec
# =============================================================================

_PLAN_KEYS = (
    "status", "content", "version", "generatedAt", "approvedAt", "reviewedByUser",
    "tasks", "tasksTotal", "tasksCompleted", "currentTaskId",
)


@dataclass
class PlanSpec:
    """
    A feature's plan and its review state.

    ``version`` only ever grows: revision re-entry bumps it, and so does any
    content change made outside of generation (an edited plan on approval).
    """

    status: PlanStatus = PlanStatus.PENDING
    content: str | None = None
    version: int = 1
    generated_at: str | None = None
    approved_at: str | None = None
    reviewed_by_user: bool = False
    tasks: list[ParsedTask] = field(default_factory=list)
    tasks_total: int = 0
    tasks_completed: int = 0
    current_task_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def restart_from(cls, previous: "PlanSpec | None") -> "PlanSpec":
        """Fresh plan for a new planning run, continuing the version sequence."""
        if previous is None or previous.content is None:
            return cls(version=previous.version if previous else 1)
        return cls(version=previous.version + 1)

    # -------------------------------------------------------------------------
    # State Machine Methods
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return not VALID_PLAN_TRANSITIONS[self.status]

    def can_transition_to(self, target: PlanStatus) -> bool:
        return target in VALID_PLAN_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, target: PlanStatus) -> None:
        """
        Move to ``target`` enforcing the plan state machine.

        Raises:
            InvalidPlanTransition: If the transition is not allowed
        """
        target = PlanStatus(target)
        if not self.can_transition_to(target):
            raise InvalidPlanTransition(self.status.value, target.value)

        old_status = self.status
        if old_status == PlanStatus.GENERATED and target == PlanStatus.GENERATING:
            self.version += 1

        self.status = target
        if target == PlanStatus.GENERATED:
            self.generated_at = utc_now_iso()
        elif target == PlanStatus.APPROVED:
            self.approved_at = utc_now_iso()

        _logger.debug(
            "Plan transition '%s' -> '%s' (v%d)", old_status.value, target.value, self.version
        )

    def set_content(self, content: str) -> None:
        """Replace the plan text. Edits outside of generation start a new version."""
        if (
            self.status != PlanStatus.GENERATING
            and self.content is not None
            and content != self.content
        ):
            self.version += 1
        self.content = content

    def set_tasks(self, tasks: list[ParsedTask]) -> None:
        self.tasks = list(tasks)
        self.tasks_total = len(tasks)
        self.tasks_completed = 0
        self.current_task_id = None

    def record_task_completed(self, completed: int) -> None:
        self.tasks_completed = max(self.tasks_completed, min(completed, self.tasks_total))

    def set_task_status(self, task_id: str, status: TaskStatus) -> None:
        for task in self.tasks:
            if task.id == task_id:
                task.status = status
                return

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "status": self.status.value,
            "version": self.version,
            "reviewedByUser": self.reviewed_by_user,
            "tasks": [t.to_dict() for t in self.tasks],
            "tasksTotal": self.tasks_total,
            "tasksCompleted": self.tasks_completed,
        })
        for key, value in (
            ("content", self.content),
            ("generatedAt", self.generated_at),
            ("approvedAt", self.approved_at),
            ("currentTaskId", self.current_task_id),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanSpec":
        tasks = [ParsedTask.from_dict(t) for t in data.get("tasks") or []]
        return cls(
            status=_enum_or_default(PlanStatus, data.get("status", "pending"), PlanStatus.PENDING),
            content=data.get("content"),
            version=int(data.get("version") or 1),
            generated_at=data.get("generatedAt"),
            approved_at=data.get("approvedAt"),
            reviewed_by_user=bool(data.get("reviewedByUser", False)),
            tasks=tasks,
            tasks_total=int(data.get("tasksTotal", len(tasks)) or 0),
            tasks_completed=int(data.get("tasksCompleted", 0) or 0),
            current_task_id=data.get("currentTaskId"),
            extra=_split_known(data, _PLAN_KEYS),
        )


# =============================================================================
# Wizard
# =============================================================================

@dataclass
class WizardOption:
    label: str
    description: str
    value: str

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "description": self.description, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WizardOption":
        label = str(data.get("label") or "")
        return cls(
            label=label,
            description=str(data.get("description") or ""),
            value=str(data.get("value") or label),
        )


@dataclass
class WizardQuestion:
    """A clarifying question asked during wizard mode."""

    id: str
    question: str
    header: str = "Question"
    options: list[WizardOption] = field(default_factory=list)
    multi_select: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "header": self.header,
            "options": [o.to_dict() for o in self.options],
            "multiSelect": self.multi_select,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WizardQuestion":
        return cls(
            id=str(data["id"]),
            question=str(data["question"]),
            header=str(data.get("header") or "Question"),
            options=[WizardOption.from_dict(o) for o in data.get("options") or []],
            multi_select=data.get("multiSelect") is True,
        )


# Answers are a single value or a list for multi-select questions
WizardAnswer = str | list[str]


@dataclass
class WizardState:
    status: WizardStatus = WizardStatus.PENDING
    current_question_id: str | None = None
    questions_asked: list[WizardQuestion] = field(default_factory=list)
    answers: dict[str, WizardAnswer] = field(default_factory=dict)
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "questionsAsked": [q.to_dict() for q in self.questions_asked],
            "answers": dict(self.answers),
        }
        for key, value in (
            ("currentQuestionId", self.current_question_id),
            ("startedAt", self.started_at),
            ("completedAt", self.completed_at),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WizardState":
        return cls(
            status=_enum_or_default(WizardStatus, data.get("status", "pending"), WizardStatus.PENDING),
            current_question_id=data.get("currentQuestionId"),
            questions_asked=[WizardQuestion.from_dict(q) for q in data.get("questionsAsked") or []],
            answers=dict(data.get("answers") or {}),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


# =============================================================================
# Feature
# =============================================================================

# (attribute, json key) for plain scalar/list fields
_FEATURE_FIELDS: tuple[tuple[str, str], ...] = (
    ("id", "id"),
    ("description", "description"),
    ("title", "title"),
    ("category", "category"),
    ("spec", "spec"),
    ("status", "status"),
    ("require_plan_approval", "requirePlanApproval"),
    ("agent_ids", "agentIds"),
    ("persona_id", "personaId"),
    ("ai_profile_id", "aiProfileId"),
    ("verbose_collaboration", "verboseCollaboration"),
    ("model", "model"),
    ("thinking_level", "thinkingLevel"),
    ("branch_name", "branchName"),
    ("dependencies", "dependencies"),
    ("skip_tests", "skipTests"),
    ("priority", "priority"),
    ("image_paths", "imagePaths"),
    ("updated_at", "updatedAt"),
    ("just_finished_at", "justFinishedAt"),
)

_FEATURE_KEYS = tuple(key for _, key in _FEATURE_FIELDS) + ("planningMode", "planSpec", "wizard")


@dataclass
class Feature:
    """
    A unit of work tracked from backlog to verified.

    Owned by the feature store. The orchestrator loads it at run start and
    writes status, planSpec and wizard sub-objects back as side effects.
    """

    id: str
    description: str = ""
    title: str | None = None
    category: str | None = None
    spec: str | None = None
    status: str = FeatureStatus.BACKLOG.value
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    plan_spec: PlanSpec | None = None
    agent_ids: list[str] = field(default_factory=list)
    persona_id: str | None = None
    ai_profile_id: str | None = None
    verbose_collaboration: bool = False
    model: str | None = None
    thinking_level: str | None = None
    branch_name: str | None = None
    dependencies: list[str] = field(default_factory=list)
    wizard: WizardState | None = None
    skip_tests: bool = False
    priority: int | None = None
    image_paths: list[Any] = field(default_factory=list)
    updated_at: str | None = None
    just_finished_at: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        for attr, key in _FEATURE_FIELDS:
            value = getattr(self, attr)
            if value is None:
                continue
            data[key] = value
        data["planningMode"] = self.planning_mode.value
        if self.plan_spec is not None:
            data["planSpec"] = self.plan_spec.to_dict()
        if self.wizard is not None:
            data["wizard"] = self.wizard.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feature":
        kwargs: dict[str, Any] = {}
        for attr, key in _FEATURE_FIELDS:
            if key in data and data[key] is not None:
                kwargs[attr] = data[key]
        kwargs["id"] = str(data["id"])
        kwargs["planning_mode"] = _enum_or_default(
            PlanningMode, data.get("planningMode") or "skip", PlanningMode.SKIP
        )
        if data.get("planSpec"):
            kwargs["plan_spec"] = PlanSpec.from_dict(data["planSpec"])
        if data.get("wizard"):
            kwargs["wizard"] = WizardState.from_dict(data["wizard"])
        kwargs["extra"] = _split_known(data, _FEATURE_KEYS)
        return cls(**kwargs)

    @property
    def display_title(self) -> str:
        """Explicit title, else the first line of the description (max 60 chars)."""
        if self.title and self.title.strip():
            return self.title.strip()
        if not self.description or not self.description.strip():
            return "Untitled Feature"
        first_line = self.description.split("\n")[0].strip()
        if len(first_line) <= 60:
            return first_line
        return first_line[:57] + "..."


# =============================================================================
# In-memory run records
# =============================================================================

@dataclass
class RunningFeature:
    """
    Registry entry marking a feature as busy.

    Created before any I/O when a run is admitted and removed in a finally
    block however the run ends.
    """

    feature_id: str
    project_path: str
    cancel_token: CancellationToken
    is_auto_mode: bool = False
    worktree_path: str | None = None
    branch_name: str | None = None
    start_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "featureId": self.feature_id,
            "projectPath": self.project_path,
            "projectName": Path(self.project_path).name,
            "isAutoMode": self.is_auto_mode,
            "worktreePath": self.worktree_path,
            "branchName": self.branch_name,
            "startTime": self.start_time,
        }


@dataclass
class AutoLoopState:
    project_path: str
    max_concurrency: int
    cancel_token: CancellationToken
    use_worktrees: bool = True
    is_running: bool = True
