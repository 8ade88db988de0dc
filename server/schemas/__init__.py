"""
Pydantic Schemas Package
========================

Request/response schemas for the auto-mode API.
"""

from .auto_mode import (
    ActionResponse,
    AnalyzeProjectRequest,
    ApprovePlanRequest,
    ApprovePlanResponse,
    AutoModeStatusResponse,
    ContextExistsResponse,
    FeatureRefRequest,
    FollowUpFeatureRequest,
    ResumeFeatureRequest,
    RunFeatureRequest,
    RunningAgentsResponse,
    StartAutoModeRequest,
    StopAutoModeResponse,
    StopFeatureRequest,
    StopFeatureResponse,
    WizardAnswerRequest,
    WizardAnswerResponse,
)

__all__ = [
    "ActionResponse",
    "AnalyzeProjectRequest",
    "ApprovePlanRequest",
    "ApprovePlanResponse",
    "AutoModeStatusResponse",
    "ContextExistsResponse",
    "FeatureRefRequest",
    "FollowUpFeatureRequest",
    "ResumeFeatureRequest",
    "RunFeatureRequest",
    "RunningAgentsResponse",
    "StartAutoModeRequest",
    "StopAutoModeResponse",
    "StopFeatureRequest",
    "StopFeatureResponse",
    "WizardAnswerRequest",
    "WizardAnswerResponse",
]
