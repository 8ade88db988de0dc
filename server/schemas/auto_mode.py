"""
Auto Mode Pydantic Schemas
==========================

Request/Response schemas for the auto-mode API endpoints.

Field names are camelCase on the wire, matching the feature.json contract
and the event payloads.
"""
from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Requests
# =============================================================================

class StartAutoModeRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    use_worktrees: bool = True


class RunFeatureRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1)
    use_worktrees: bool = False


class StopFeatureRequest(CamelModel):
    feature_id: str = Field(..., min_length=1)


class ResumeFeatureRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1)
    use_worktrees: bool = False


class FollowUpFeatureRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    image_paths: list[str] = Field(default_factory=list)
    use_worktrees: bool = True


class ApprovePlanRequest(CamelModel):
    feature_id: str = Field(..., min_length=1)
    approved: bool
    edited_plan: Optional[str] = None
    feedback: Optional[str] = None
    project_path: Optional[str] = Field(
        default=None,
        description="Lets a plan persisted before a restart be approved from disk",
    )


class WizardAnswerRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    answer: Union[str, list[str]]


class FeatureRefRequest(CamelModel):
    project_path: str = Field(..., min_length=1)
    feature_id: str = Field(..., min_length=1)


class AnalyzeProjectRequest(CamelModel):
    project_path: str = Field(..., min_length=1)


# =============================================================================
# Responses
# =============================================================================

class ActionResponse(CamelModel):
    success: bool
    message: Optional[str] = None


class StopAutoModeResponse(CamelModel):
    success: bool
    running_features: int = Field(..., description="Features still finishing their current run")


class StopFeatureResponse(CamelModel):
    success: bool
    stopped: bool


class ApprovePlanResponse(CamelModel):
    success: bool
    approved: bool
    message: Optional[str] = None


class WizardAnswerResponse(CamelModel):
    success: bool
    questions_remaining: int
    wizard_complete: bool


class ContextExistsResponse(CamelModel):
    success: bool
    exists: bool


class AutoModeStatusResponse(CamelModel):
    success: bool = True
    is_running: bool
    running_features: list[str]
    running_count: int
    auto_loop_running: bool


class RunningAgentsResponse(CamelModel):
    success: bool = True
    agents: list[dict[str, Any]]
