"""Portability request lifecycle service.

This module drives requests through the state machine:
- Creation behind the active-request uniqueness guard
- Optional immediate approval (skip_approval)
- Named transitions: approve, cancel, deny, run, complete
- Requeueing of dead-lettered jobs (failed exports)
- Side effects run only after the new state is committed

Every transition commits the new state before its side effect starts. A
failing side effect is logged and re-raised to the caller, but the state
change stays: the persisted state is the record of lifecycle progress.

Side effects by event:
    approve   approval hook, then a portability_build_export job
    cancel    none
    deny      denied notice
    run       one portability_notify_service job per configured service
    complete  portability_delete_artifact job at expire_at, completed notice
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import select

from portability.db.models.base import ACTIVE_STATES, RequestState
from portability.db.models.requests import PortabilityRequest
from portability.services.collaborators import NoticeKind, resolve
from portability.services.job_queue import JobQueueService, JobType
from portability.services.state_machine import (
    InvalidTransitionError,
    RequestEvent,
    next_state,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from portability.core.config import PortabilitySettings
    from portability.services.collaborators import Collaborators

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of a committed transition.

    Attributes:
        request_id: Request that moved.
        event: Event applied.
        previous_state: State before the transition.
        new_state: State after the transition.
    """

    request_id: uuid.UUID
    event: RequestEvent
    previous_state: RequestState
    new_state: RequestState


class DuplicateActiveRequestError(Exception):
    """Raised when the owner already has an active request from the same requester.

    Attributes:
        field: Name of the field the validation error is reported on.
        code: Machine-readable validation code.
    """

    field = "owner_id"
    code = "not_unique"

    def __init__(self, owner_type: str, owner_id: str, requested_by: str | None) -> None:
        self.owner_type = owner_type
        self.owner_id = owner_id
        self.requested_by = requested_by
        super().__init__(
            f"An active portability request already exists for {owner_type} {owner_id}"
        )


class PortabilityRequestNotFoundError(Exception):
    """Raised when a portability request is not found."""

    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Portability request {request_id} not found")


class NoFailedJobsError(Exception):
    """Raised when a request has no dead-lettered job to retry."""

    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Portability request {request_id} has no failed jobs")


class PortabilityLifecycleService:
    """Service owning portability request state changes.

    Example:
        service = PortabilityLifecycleService(session)
        request = await service.create_request("User", "42")
        result = await service.approve(request.request_id)
    """

    # Time an export stays downloadable once done
    EXPIRY_DELAY: ClassVar[timedelta] = timedelta(days=2)

    def __init__(
        self,
        session: AsyncSession,
        settings: PortabilitySettings | None = None,
        collaborators: Collaborators | None = None,
        job_queue: JobQueueService | None = None,
    ) -> None:
        """Initialize the lifecycle service.

        Args:
            session: SQLAlchemy async session. The service commits on it.
            settings: Portability settings. Defaults to the process settings.
            collaborators: Registry, mailer, store and hook. Defaults to the
                process-wide set.
            job_queue: Queue used for side-effect jobs. Defaults to a queue on
                the same session.
        """
        if settings is None:
            from portability.core.settings import get_settings

            settings = get_settings().portability
        if collaborators is None:
            from portability.services.collaborators import get_collaborators

            collaborators = get_collaborators()

        self._session = session
        self._settings = settings
        self._collaborators = collaborators
        self._jobs = job_queue or JobQueueService(session)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_request(self, request_id: uuid.UUID) -> PortabilityRequest:
        """Get a request by ID.

        Raises:
            PortabilityRequestNotFoundError: If the request does not exist.
        """
        query = select(PortabilityRequest).where(PortabilityRequest.request_id == request_id)
        result = await self._session.execute(query)
        request = result.scalar_one_or_none()

        if request is None:
            raise PortabilityRequestNotFoundError(request_id)

        return request

    async def find_active_requests(
        self,
        owner_type: str,
        owner_id: str,
        requested_by: str | None = None,
    ) -> list[PortabilityRequest]:
        """Return the owner's active requests made by the same requester.

        An absent requested_by only matches requests the owner made themselves.
        """
        requester = (
            PortabilityRequest.requested_by.is_(None)
            if requested_by is None
            else PortabilityRequest.requested_by == requested_by
        )
        query = select(PortabilityRequest).where(
            PortabilityRequest.owner_type == owner_type,
            PortabilityRequest.owner_id == owner_id,
            requester,
            PortabilityRequest.state.in_(ACTIVE_STATES),
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def find_expired_artifacts(
        self,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[PortabilityRequest]:
        """Return done requests whose archive is past expire_at and still attached."""
        cutoff = now or datetime.now(UTC)
        query = (
            select(PortabilityRequest)
            .where(
                PortabilityRequest.state == RequestState.DONE,
                PortabilityRequest.expire_at <= cutoff,
                PortabilityRequest.attachment_ref.is_not(None),
            )
            .order_by(PortabilityRequest.expire_at)
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_request(
        self,
        owner_type: str,
        owner_id: str,
        requested_by: str | None = None,
    ) -> PortabilityRequest:
        """Create a request in waiting_for_approval.

        Owner-initiated requests (no requested_by) send the created notice.
        With skip_approval configured the request is approved right away,
        before the created notice; a failing notice leaves it approved.

        Args:
            owner_type: Owner entity type.
            owner_id: Owner entity id.
            requested_by: Initiator when not the owner.

        Returns:
            The created request.

        Raises:
            DuplicateActiveRequestError: If an active request already exists
                for the same owner and requester. Nothing is created.
        """
        if await self.find_active_requests(owner_type, owner_id, requested_by):
            logger.warning(
                "Duplicate active portability request rejected",
                extra={
                    "owner_type": owner_type,
                    "owner_id": owner_id,
                    "requested_by": requested_by,
                },
            )
            raise DuplicateActiveRequestError(owner_type, owner_id, requested_by)

        now = datetime.now(UTC)
        request = PortabilityRequest(
            request_id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            owner_type=owner_type,
            owner_id=owner_id,
            requested_by=requested_by,
            state=RequestState.WAITING_FOR_APPROVAL,
        )
        self._session.add(request)
        await self._session.commit()

        logger.info(
            "Portability request created: %s",
            request.request_id,
            extra={
                "request_id": str(request.request_id),
                "owner_type": owner_type,
                "owner_id": owner_id,
                "requested_by": requested_by,
            },
        )

        # The created notice never blocks the automatic approval
        try:
            if self._settings.skip_approval:
                await self.approve(request.request_id)
        finally:
            if requested_by is None:
                await self._after_commit(
                    "created notice",
                    request,
                    lambda: self._send_notice(NoticeKind.CREATED, request),
                )

        return request

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def approve(self, request_id: uuid.UUID) -> TransitionResult:
        """Approve a waiting request and queue its export."""
        request, result = await self._transition(request_id, RequestEvent.APPROVE)

        async def effect() -> None:
            hook = self._collaborators.approval_hook
            if hook is not None:
                await resolve(hook.on_approval(request))
            await self._enqueue(JobType.BUILD_EXPORT, request)
            await self._session.commit()

        await self._after_commit("export scheduling", request, effect)
        return result

    async def cancel(self, request_id: uuid.UUID) -> TransitionResult:
        """Cancel a waiting request."""
        _, result = await self._transition(request_id, RequestEvent.CANCEL)
        return result

    async def deny(self, request_id: uuid.UUID) -> TransitionResult:
        """Deny a waiting request and notify the owner."""
        request, result = await self._transition(request_id, RequestEvent.DENY)
        await self._after_commit(
            "denied notice", request, lambda: self._send_notice(NoticeKind.DENIED, request)
        )
        return result

    async def run(self, request_id: uuid.UUID) -> TransitionResult:
        """Start the export and fan out one notification job per service.

        Each service is notified by its own job, so a failing service never
        blocks the others nor the export build.
        """
        request, result = await self._transition(request_id, RequestEvent.RUN)

        async def effect() -> None:
            for service_name in sorted(self._settings.services):
                await self._enqueue(
                    JobType.NOTIFY_SERVICE,
                    request,
                    payload={"service_name": service_name},
                )
            await self._session.commit()

        await self._after_commit("service notification fan-out", request, effect)
        return result

    async def complete(self, request_id: uuid.UUID) -> TransitionResult:
        """Mark the export done, schedule its deletion and notify the owner.

        expire_at is written in the same commit as the done state.
        """
        request, result = await self._transition(request_id, RequestEvent.COMPLETE)

        async def effect() -> None:
            await self._enqueue(JobType.DELETE_ARTIFACT, request, run_at=request.expire_at)
            await self._session.commit()
            await self._send_notice(NoticeKind.COMPLETED, request)

        await self._after_commit("completion", request, effect)
        return result

    # -------------------------------------------------------------------------
    # Attachment
    # -------------------------------------------------------------------------

    async def attach_artifact(self, request_id: uuid.UUID, ref: str) -> PortabilityRequest:
        """Record the stored archive of a running request.

        Raises:
            PortabilityRequestNotFoundError: If the request does not exist.
            ValueError: If the request is not running or already has an archive.
        """
        request = await self.get_request(request_id)
        if request.state != RequestState.RUNNING:
            raise ValueError(
                f"Cannot attach an archive to request {request_id} in state {request.state.value}"
            )
        if request.attachment_ref is not None:
            raise ValueError(f"Request {request_id} already has an archive attached")

        request.attachment_ref = ref
        request.updated_at = datetime.now(UTC)
        await self._session.commit()

        logger.info(
            "Archive attached to request %s",
            request_id,
            extra={"request_id": str(request_id), "attachment_ref": ref},
        )
        return request

    async def clear_artifact(self, request: PortabilityRequest) -> str | None:
        """Clear the archive reference of a request.

        The change is flushed; the caller's transaction commits it.

        Returns:
            The cleared reference, None if there was nothing to clear.
        """
        ref = request.attachment_ref
        if ref is None:
            return None

        request.attachment_ref = None
        request.updated_at = datetime.now(UTC)
        await self._session.flush()

        logger.info(
            "Archive reference cleared for request %s",
            request.request_id,
            extra={"request_id": str(request.request_id), "attachment_ref": ref},
        )
        return ref

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def retry_failed_jobs(self, request_id: uuid.UUID) -> list[uuid.UUID]:
        """Requeue the dead-lettered jobs of a request.

        A failed export build leaves the request running without an archive,
        and no transition reverts it: retrying its job resumes the export.
        Failed service notifications and deletions are requeued the same way.

        Returns:
            IDs of the requeued jobs.

        Raises:
            PortabilityRequestNotFoundError: If the request does not exist.
            NoFailedJobsError: If no job of the request is dead-lettered.
        """
        request = await self.get_request(request_id)
        failed = await self._jobs.get_failed_jobs(correlation_id=str(request.request_id))
        if not failed:
            raise NoFailedJobsError(request_id)

        job_ids = [job.job_id for job in failed]
        for job_id in job_ids:
            await self._jobs.retry_failed_job(job_id)
        await self._session.commit()

        logger.info(
            "Failed jobs requeued for request %s",
            request_id,
            extra={
                "request_id": str(request_id),
                "state": request.state.value,
                "job_ids": [str(job_id) for job_id in job_ids],
            },
        )
        return job_ids

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        request_id: uuid.UUID,
        event: RequestEvent,
    ) -> tuple[PortabilityRequest, TransitionResult]:
        """Validate, write and commit a transition.

        Raises:
            PortabilityRequestNotFoundError: If the request does not exist.
            InvalidTransitionError: If the event does not apply. State is unchanged.
        """
        request = await self.get_request(request_id)
        previous = request.state

        try:
            target = next_state(previous, event, request_id)
        except InvalidTransitionError:
            logger.warning(
                "Invalid transition attempted",
                extra={
                    "request_id": str(request_id),
                    "event": event.value,
                    "from_state": previous.value,
                },
            )
            raise

        now = datetime.now(UTC)
        request.state = target
        request.updated_at = now
        if target == RequestState.DONE:
            request.expire_at = now + self.EXPIRY_DELAY

        await self._session.commit()

        logger.info(
            "State transition committed: %s %s -> %s",
            request_id,
            previous.value,
            target.value,
            extra={
                "request_id": str(request_id),
                "event": event.value,
                "from_state": previous.value,
                "to_state": target.value,
            },
        )

        return request, TransitionResult(
            request_id=request_id,
            event=event,
            previous_state=previous,
            new_state=target,
        )

    async def _after_commit(
        self,
        name: str,
        request: PortabilityRequest,
        effect: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            await effect()
        except Exception:
            logger.exception(
                "Side effect failed after commit: %s",
                name,
                extra={"request_id": str(request.request_id), "state": request.state.value},
            )
            raise

    async def _enqueue(
        self,
        job_type: JobType,
        request: PortabilityRequest,
        *,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
    ) -> None:
        await self._jobs.enqueue(
            job_type,
            payload={"request_id": str(request.request_id), **(payload or {})},
            run_at=run_at,
            correlation_id=str(request.request_id),
        )

    async def _send_notice(self, kind: NoticeKind, request: PortabilityRequest) -> None:
        mailer = self._collaborators.mailer
        if mailer is None:
            logger.debug(
                "No mailer configured, %s notice not sent",
                kind.value,
                extra={"request_id": str(request.request_id)},
            )
            return

        owner = await self.load_owner(request)
        await mailer.send_mail(kind, request, owner)

    async def load_owner(self, request: PortabilityRequest) -> Any:
        """Resolve the request's owner through the data registry.

        Raises:
            CollaboratorError: If no registry is configured.
            LookupError: If the owner no longer exists.
        """
        registry = self._collaborators.require_registry()
        owner = await resolve(registry.get_owner(request.owner_type, request.owner_id))
        if owner is None:
            raise LookupError(f"Owner not found: {request.owner_type} {request.owner_id}")
        return owner
