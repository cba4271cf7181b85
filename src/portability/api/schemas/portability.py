"""Pydantic schemas for the portability request endpoints."""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from portability.db.models.base import RequestState  # noqa: TC001
from portability.services.state_machine import RequestEvent, allowed_events


class CreatePortabilityRequest(BaseModel):
    """Request schema for creating a portability request.

    requested_by is left empty when the owner asks for their own data; the
    created notice is only sent in that case.
    """

    owner_type: str = Field(..., min_length=1, max_length=100, description="Owner entity type")
    owner_id: str = Field(..., min_length=1, max_length=255, description="Owner entity id")
    requested_by: str | None = Field(
        None,
        min_length=1,
        max_length=255,
        description="Initiator when not the owner (e.g. an administrator)",
    )

    model_config = ConfigDict(extra="forbid")


class PortabilityRequestResponse(BaseModel):
    """A portability request and the events it currently accepts."""

    request_id: UUID = Field(..., description="Request identifier")
    owner_type: str = Field(..., description="Owner entity type")
    owner_id: str = Field(..., description="Owner entity id")
    requested_by: str | None = Field(None, description="Initiator when not the owner")
    state: RequestState = Field(..., description="Current lifecycle state")
    attachment_ref: str | None = Field(None, description="Storage reference of the archive")
    expire_at: datetime | None = Field(None, description="When the archive is deleted")
    created_at: datetime | None = Field(None, description="Creation timestamp")
    updated_at: datetime | None = Field(None, description="Last change timestamp")
    allowed_events: list[RequestEvent] = Field(
        default_factory=list, description="Events valid from the current state"
    )

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_request(cls, request: object) -> PortabilityRequestResponse:
        response = cls.model_validate(request)
        response.allowed_events = allowed_events(response.state)
        return response


class PortabilityRequestListResponse(BaseModel):
    """Active requests of an owner."""

    items: list[PortabilityRequestResponse] = Field(..., description="Active requests")
    total: int = Field(..., ge=0, description="Number of requests")


class RetryFailedJobsResponse(BaseModel):
    """Jobs requeued for a request."""

    request_id: UUID = Field(..., description="Request identifier")
    job_ids: list[UUID] = Field(..., description="Requeued job identifiers")
