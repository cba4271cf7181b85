"""Error handling middleware for consistent JSON error responses.

Every error body has the shape:
- error: Machine-readable code
- message: Human-readable description
- detail: Optional additional information
- request_id: Correlation ID

Lifecycle errors map as follows:
- InvalidTransitionError -> 409 invalid_transition
- DuplicateActiveRequestError -> 422 validation_error, errors.owner_id = ["not_unique"]
- PortabilityRequestNotFoundError -> 404 not_found
- NoFailedJobsError -> 409 no_failed_jobs
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from portability.api.middleware.request_id import get_request_id
from portability.services.lifecycle import (
    DuplicateActiveRequestError,
    NoFailedJobsError,
    PortabilityRequestNotFoundError,
)
from portability.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors with structured details."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            error: Machine-readable error code (e.g., "validation_error").
            message: Human-readable error description.
            status_code: HTTP status code to return.
            detail: Optional additional details.
        """
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class NotFoundError(APIError):
    """Resource not found error (404)."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            error="not_found",
            message=f"{resource} not found: {identifier}",
            status_code=404,
        )


class ConflictError(APIError):
    """The resource is not in a state allowing the operation (409)."""

    def __init__(
        self,
        message: str,
        detail: dict[str, Any] | None = None,
        error: str = "invalid_transition",
    ) -> None:
        super().__init__(
            error=error,
            message=message,
            status_code=409,
            detail=detail,
        )


class ValidationAPIError(APIError):
    """Field-level validation error (422)."""

    def __init__(self, message: str, errors: dict[str, list[str]]) -> None:
        super().__init__(
            error="validation_error",
            message=message,
            status_code=422,
            detail={"errors": errors},
        )


def to_api_error(exc: Exception) -> APIError | None:
    """Translate a lifecycle exception to its API error, None if unmapped."""
    if isinstance(exc, PortabilityRequestNotFoundError):
        return NotFoundError("Portability request", str(exc.request_id))
    if isinstance(exc, InvalidTransitionError):
        return ConflictError(
            str(exc),
            detail={"state": exc.from_state.value, "event": exc.event.value},
        )
    if isinstance(exc, DuplicateActiveRequestError):
        return ValidationAPIError(str(exc), errors={exc.field: [exc.code]})
    if isinstance(exc, NoFailedJobsError):
        return ConflictError(str(exc), error="no_failed_jobs")
    return None


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build a standardized error response."""
    body: dict[str, Any] = {
        "error": error,
        "message": message,
    }

    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    if detail:
        body["detail"] = detail

    return JSONResponse(status_code=status_code, content=body)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Converts exceptions raised by routes into JSON error responses.

    Unexpected exceptions are logged and returned as 500 internal_error.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except APIError as exc:
            return build_error_response(exc.error, exc.message, exc.status_code, exc.detail)
        except HTTPException as exc:
            return build_error_response("http_error", str(exc.detail), exc.status_code)
        except ValidationError as exc:
            return build_error_response(
                error="validation_error",
                message="Request validation failed",
                status_code=422,
                detail={"errors": exc.errors()},
            )
        except Exception as exc:
            api_error = to_api_error(exc)
            if api_error is not None:
                return build_error_response(
                    api_error.error, api_error.message, api_error.status_code, api_error.detail
                )
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return build_error_response(
                error="internal_error",
                message="An internal error occurred",
                status_code=500,
            )
