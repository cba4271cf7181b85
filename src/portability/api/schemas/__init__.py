"""Request and response models for the HTTP API."""

from portability.api.schemas.portability import (
    CreatePortabilityRequest,
    PortabilityRequestListResponse,
    PortabilityRequestResponse,
    RetryFailedJobsResponse,
)

__all__ = [
    "CreatePortabilityRequest",
    "PortabilityRequestListResponse",
    "PortabilityRequestResponse",
    "RetryFailedJobsResponse",
]
