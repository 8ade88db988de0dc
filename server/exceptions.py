"""
API Error Handling
==================

Every error leaving the auto-mode API has the same JSON body:

    {"error_code": "CONFLICT", "message": "Feature f1 is already running",
     "details": {"feature_id": "f1"}}

Orchestrator errors raised while an endpoint admits work are translated
here rather than in each route:

- AlreadyRunningError, AutoLoopAlreadyRunningError -> 409 CONFLICT
- FeatureNotFoundError                             -> 404 NOT_FOUND
- anything else                                    -> 500 INTERNAL_ERROR

Request body problems are 422 VALIDATION_ERROR; failed plan or wizard
resolutions are 400 BAD_REQUEST.
"""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from automode.errors import (
    AlreadyRunningError,
    AutoLoopAlreadyRunningError,
    AutoModeError,
    FeatureNotFoundError,
)

_logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Body of every error response."""

    error_code: str = Field(..., description="Machine-readable error code")
    message: str
    details: dict[str, Any] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "BAD_REQUEST",
                "message": "No pending approval for feature f1",
                "details": {"feature_id": "f1"},
            }
        }
    )


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_REQUEST = "BAD_REQUEST"


# =============================================================================
# API errors
# =============================================================================

class APIError(Exception):
    """An error with a fixed HTTP status and error code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self) -> JSONResponse:
        body = ErrorResponse(error_code=self.error_code, message=self.message, details=self.details)
        return JSONResponse(status_code=self.status_code, content=body.model_dump(exclude_none=True))


class BadRequestError(APIError):
    """The request was well-formed but cannot be applied (e.g. nothing pending)."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = ErrorCode.BAD_REQUEST


class NotFoundError(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND


class ConflictError(APIError):
    """A feature run or the auto loop is already active."""

    status_code = status.HTTP_409_CONFLICT
    error_code = ErrorCode.CONFLICT


class ValidationError(APIError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = ErrorCode.VALIDATION_ERROR


# HTTPException status -> error code; unlisted statuses are internal errors
_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.BAD_REQUEST,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.CONFLICT,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
}


def to_api_error(exc: AutoModeError) -> APIError:
    """Translate an orchestrator error into the API error it is reported as."""
    details = {"feature_id": exc.feature_id} if exc.feature_id else None
    if isinstance(exc, (AlreadyRunningError, AutoLoopAlreadyRunningError)):
        return ConflictError(str(exc), details)
    if isinstance(exc, FeatureNotFoundError):
        return NotFoundError(str(exc), details)
    return APIError(str(exc), details)


# =============================================================================
# Handlers
# =============================================================================

async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.to_response()


async def auto_mode_error_handler(request: Request, exc: AutoModeError) -> JSONResponse:
    error = to_api_error(exc)
    if error.status_code >= 500:
        _logger.error("Unhandled orchestrator error on %s: %s", request.url.path, exc)
    return error.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten pydantic error locations into dotted field names."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "unknown"
        errors.append({
            "field": field,
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        })

    if len(errors) == 1:
        message = f"Invalid field '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Request has {len(errors)} invalid fields"
    return ValidationError(message, {"errors": errors}).to_response()


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error = APIError(str(exc.detail) if exc.detail else "An error occurred")
    error.status_code = exc.status_code
    error.error_code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return error.to_response()


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(AutoModeError, auto_mode_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
