"""Portability request endpoints.

Creation and the administrator transitions (approve, deny, cancel) are
exposed here. run and complete are driven by the export job, never by a
client.

Operators requeue the dead-lettered jobs of a request (a failed export
build, for instance) with POST /{id}/retry.

Lifecycle errors are translated by ErrorHandlerMiddleware:
- unknown request: 404 not_found
- event not valid from the current state: 409 invalid_transition
- active request already exists: 422 validation_error on owner_id
- nothing to retry: 409 no_failed_jobs
"""

from __future__ import annotations

from collections.abc import AsyncGenerator  # noqa: TC003
from typing import Annotated
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from portability.api.schemas.portability import (
    CreatePortabilityRequest,
    PortabilityRequestListResponse,
    PortabilityRequestResponse,
    RetryFailedJobsResponse,
)
from portability.services.lifecycle import PortabilityLifecycleService

router = APIRouter(prefix="/portability-requests", tags=["portability"])


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session.

    Uses the application's async session factory.
    """
    from portability.db import get_async_session

    async with get_async_session() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_lifecycle_service(db: DbSession) -> PortabilityLifecycleService:
    return PortabilityLifecycleService(db)


LifecycleService = Annotated[PortabilityLifecycleService, Depends(get_lifecycle_service)]


@router.post(
    "",
    response_model=PortabilityRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a portability request",
)
async def create_request(
    body: CreatePortabilityRequest,
    service: LifecycleService,
) -> PortabilityRequestResponse:
    """Create a request in waiting_for_approval (or approved with skip_approval)."""
    request = await service.create_request(
        owner_type=body.owner_type,
        owner_id=body.owner_id,
        requested_by=body.requested_by,
    )
    return PortabilityRequestResponse.from_request(request)


@router.get(
    "",
    response_model=PortabilityRequestListResponse,
    summary="List an owner's active requests",
)
async def list_active_requests(
    service: LifecycleService,
    owner_type: Annotated[str, Query(min_length=1)],
    owner_id: Annotated[str, Query(min_length=1)],
    requested_by: Annotated[str | None, Query()] = None,
) -> PortabilityRequestListResponse:
    requests = await service.find_active_requests(owner_type, owner_id, requested_by)
    items = [PortabilityRequestResponse.from_request(r) for r in requests]
    return PortabilityRequestListResponse(items=items, total=len(items))


@router.get(
    "/{request_id}",
    response_model=PortabilityRequestResponse,
    summary="Get a portability request",
)
async def get_request(request_id: UUID, service: LifecycleService) -> PortabilityRequestResponse:
    request = await service.get_request(request_id)
    return PortabilityRequestResponse.from_request(request)


@router.post(
    "/{request_id}/approve",
    response_model=PortabilityRequestResponse,
    summary="Approve a waiting request",
)
async def approve_request(
    request_id: UUID, service: LifecycleService
) -> PortabilityRequestResponse:
    """Approve the request; the export is queued once the approval is stored."""
    await service.approve(request_id)
    return PortabilityRequestResponse.from_request(await service.get_request(request_id))


@router.post(
    "/{request_id}/deny",
    response_model=PortabilityRequestResponse,
    summary="Deny a waiting request",
)
async def deny_request(request_id: UUID, service: LifecycleService) -> PortabilityRequestResponse:
    await service.deny(request_id)
    return PortabilityRequestResponse.from_request(await service.get_request(request_id))


@router.post(
    "/{request_id}/cancel",
    response_model=PortabilityRequestResponse,
    summary="Cancel a waiting request",
)
async def cancel_request(
    request_id: UUID, service: LifecycleService
) -> PortabilityRequestResponse:
    await service.cancel(request_id)
    return PortabilityRequestResponse.from_request(await service.get_request(request_id))


@router.post(
    "/{request_id}/retry",
    response_model=RetryFailedJobsResponse,
    summary="Requeue the failed jobs of a request",
)
async def retry_failed_jobs(
    request_id: UUID, service: LifecycleService
) -> RetryFailedJobsResponse:
    """Requeue dead-lettered jobs; a failed export resumes from the running state."""
    job_ids = await service.retry_failed_jobs(request_id)
    return RetryFailedJobsResponse(request_id=request_id, job_ids=job_ids)
