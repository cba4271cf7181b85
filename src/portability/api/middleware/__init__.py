"""API middleware: request ID tracking and JSON error responses."""

from portability.api.middleware.errors import (
    APIError,
    ConflictError,
    ErrorHandlerMiddleware,
    NotFoundError,
    ValidationAPIError,
)
from portability.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "ConflictError",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "RequestIDMiddleware",
    "ValidationAPIError",
    "get_request_id",
]
