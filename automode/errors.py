"""
Auto Mode Errors
================

Exception taxonomy for the feature execution orchestrator.

Every error raised while a feature runs is contained to that feature: the
execution controller classifies it with ``classify_error`` and turns it into
exactly one completion-class event. Classification drives three outcomes:

- cancellation: the run was stopped on purpose. Status is left untouched so
  the feature can be resumed, and the completion event reports passes=False.
- plan_cancelled / execution / authentication / structured_output / not_found:
  the run failed. Status rolls back to backlog and an error event is emitted.
- admission conflicts (AlreadyRunningError) never start a run at all.

Usage:
    from automode.errors import classify_error

    try:
        await run()
    except Exception as exc:
        info = classify_error(exc)
        if info.is_cancellation:
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Closed set of error categories reported in auto_mode_error events."""

    AUTHENTICATION = "authentication"
    CANCELLATION = "cancellation"
    PLAN_CANCELLED = "plan_cancelled"
    STRUCTURED_OUTPUT = "structured_output"
    EXECUTION = "execution"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


# Substrings in streamed assistant text that indicate a credential failure
AUTH_ERROR_PATTERNS = (
    "Invalid API key",
    "authentication_failed",
    "Fix external API key",
)

AUTH_ERROR_MESSAGE = (
    "Authentication failed: Invalid or expired API key. "
    "Please check your ANTHROPIC_API_KEY, or run 'claude login' to re-authenticate."
)

# Result subtype the provider reports when schema-constrained output kept failing
STRUCTURED_OUTPUT_RETRIES_SUBTYPE = "error_max_structured_output_retries"


# =============================================================================
# Exceptions
# =============================================================================

class AutoModeError(Exception):
    """
    Base class for all orchestrator errors.

    Attributes:
        error_type: The ErrorType this exception classifies as
        feature_id: Feature the error belongs to, when known
    """

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(self, message: str, feature_id: str | None = None):
        self.feature_id = feature_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for event payloads."""
        return {
            "error_type": self.error_type.value,
            "message": str(self),
            "feature_id": self.feature_id,
        }


class FeatureCancelledError(AutoModeError):
    """
    Raised when a run is stopped by the user.

    Pending plan approvals and wizard questions are rejected with this error
    when their feature is stopped, so a waiting controller can tell a stop
    apart from a provider failure.
    """

    error_type = ErrorType.CANCELLATION

    def __init__(self, message: str = "Feature stopped by user", feature_id: str | None = None):
        super().__init__(message, feature_id)


class PlanCancelledError(AutoModeError):
    """Raised when a plan is rejected without feedback or edits."""

    error_type = ErrorType.PLAN_CANCELLED

    def __init__(self, message: str = "Plan cancelled by user", feature_id: str | None = None):
        super().__init__(message, feature_id)


class AlreadyRunningError(AutoModeError):
    """Raised when a feature is admitted while it already has a run in flight."""

    error_type = ErrorType.EXECUTION

    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} is already running", feature_id)


class AutoLoopAlreadyRunningError(AutoModeError):
    """Raised when the auto loop is started twice."""

    error_type = ErrorType.EXECUTION

    def __init__(self, message: str = "Auto mode is already running"):
        super().__init__(message)


class FeatureNotFoundError(AutoModeError):
    """Raised when feature.json cannot be loaded for a run."""

    error_type = ErrorType.NOT_FOUND

    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} not found", feature_id)


class ProviderError(AutoModeError):
    """
    Terminal error reported by the agent execution provider.

    Attributes:
        subtype: Provider result subtype, when the error came from a result message
    """

    error_type = ErrorType.EXECUTION

    def __init__(
        self,
        message: str,
        feature_id: str | None = None,
        subtype: str | None = None,
    ):
        self.subtype = subtype
        super().__init__(message, feature_id)


class AuthenticationError(ProviderError):
    """Credential failure detected in streamed provider output."""

    error_type = ErrorType.AUTHENTICATION

    def __init__(self, message: str = AUTH_ERROR_MESSAGE, feature_id: str | None = None):
        super().__init__(message, feature_id)


class StructuredOutputExhaustedError(ProviderError):
    """The provider gave up producing schema-valid structured output."""

    error_type = ErrorType.STRUCTURED_OUTPUT

    def __init__(
        self,
        message: str = "Could not produce valid party synthesis structured output",
        feature_id: str | None = None,
    ):
        super().__init__(message, feature_id, subtype=STRUCTURED_OUTPUT_RETRIES_SUBTYPE)


class InvalidPlanTransition(AutoModeError):
    """
    Raised when a PlanSpec status change violates the plan state machine.

    Attributes:
        current_state: Status before the attempted transition
        target_state: Status that was requested
    """

    error_type = ErrorType.EXECUTION

    def __init__(self, current_state: str, target_state: str, feature_id: str | None = None):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid plan transition '{current_state}' -> '{target_state}'",
            feature_id,
        )


# =============================================================================
# Classification
# =============================================================================

@dataclass(frozen=True)
class ErrorInfo:
    """Classified view of an exception."""

    type: ErrorType
    message: str
    is_cancellation: bool
    is_auth: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "is_cancellation": self.is_cancellation,
            "is_auth": self.is_auth,
        }


def contains_auth_error(text: str) -> bool:
    """Check streamed text for credential failure patterns."""
    return any(pattern in text for pattern in AUTH_ERROR_PATTERNS)


def classify_error(error: BaseException) -> ErrorInfo:
    """
    Map an exception to an ErrorInfo.

    Orchestrator exceptions carry their own type. Anything else is an
    execution error, except text that matches a credential failure.
    """
    if isinstance(error, AutoModeError):
        error_type = error.error_type
    elif contains_auth_error(str(error)):
        error_type = ErrorType.AUTHENTICATION
    elif isinstance(error, Exception):
        error_type = ErrorType.EXECUTION
    else:
        error_type = ErrorType.UNKNOWN

    message = str(error) or type(error).__name__
    return ErrorInfo(
        type=error_type,
        message=message,
        is_cancellation=error_type == ErrorType.CANCELLATION,
        is_auth=error_type == ErrorType.AUTHENTICATION,
    )
