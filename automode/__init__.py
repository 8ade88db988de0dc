"""
Auto Mode
=========

Autonomous feature execution: scheduling, planning with human approval,
wizard Q&A, task-by-task implementation and post-processing pipelines.
"""

from automode.config import AutoModeConfig
from automode.errors import (
    AlreadyRunningError,
    AutoLoopAlreadyRunningError,
    AutoModeError,
    ErrorType,
    FeatureCancelledError,
    FeatureNotFoundError,
    PlanCancelledError,
    ProviderError,
)
from automode.events import AUTO_MODE_EVENT, AutoModeEvents, AutoModeEventType, EventEmitter
from automode.feature_store import FeatureStore
from automode.models import Feature, FeatureStatus, PlanningMode, PlanSpec, PlanStatus
from automode.orchestrator import AutoModeOrchestrator

__all__ = [
    "AUTO_MODE_EVENT",
    "AlreadyRunningError",
    "AutoLoopAlreadyRunningError",
    "AutoModeConfig",
    "AutoModeError",
    "AutoModeEventType",
    "AutoModeEvents",
    "AutoModeOrchestrator",
    "ErrorType",
    "EventEmitter",
    "Feature",
    "FeatureCancelledError",
    "FeatureNotFoundError",
    "FeatureStatus",
    "FeatureStore",
    "PlanCancelledError",
    "PlanSpec",
    "PlanStatus",
    "PlanningMode",
    "ProviderError",
]
