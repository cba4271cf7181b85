"""PostgreSQL-backed job queue for lifecycle side effects.

Side effects committed by the lifecycle service (notifying external
services, building the export, deleting the archive once it expires) run
out of band as jobs. Workers compete for them with
SELECT ... FOR UPDATE SKIP LOCKED so a job is handled by one worker at a
time.

The retry policy lives here, not in the lifecycle: a failing job is
rescheduled with exponential backoff until max_attempts, then kept in
FAILED status (dead letter) for inspection and manual retry.

Usage:
    queue = JobQueueService(session)
    await queue.enqueue(
        JobType.BUILD_EXPORT,
        payload={"request_id": str(request_id)},
        correlation_id=str(request_id),
    )
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from portability.db.models.base import JobStatus
from portability.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Job types, one per worker handler."""

    NOTIFY_SERVICE = "portability_notify_service"
    BUILD_EXPORT = "portability_build_export"
    DELETE_ARTIFACT = "portability_delete_artifact"


class JobQueueError(Exception):
    """Base exception for job queue operations."""


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""


def _elapsed_ms(job: Job, now: datetime) -> int | None:
    if job.started_at is None:
        return None
    return int((now - job.started_at).total_seconds() * 1000)


class JobQueueService:
    """Job queue backed by the jobs table.

    Attributes:
        session: SQLAlchemy async session for database operations.
        default_queue: Queue name used when none is given.
        default_max_attempts: Attempts before a job is dead-lettered.
        default_lock_timeout: Lock timeout in seconds stored on new jobs.
        default_base_backoff: First retry delay in seconds.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = "default",
        default_max_attempts: int = 3,
        default_lock_timeout: int = 300,
        default_base_backoff: int = 60,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_lock_timeout = default_lock_timeout
        self.default_base_backoff = default_base_backoff

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
        queue: str | None = None,
        priority: int = 100,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        """Add a job to the queue.

        The job is flushed, not committed: it becomes visible to workers
        when the caller commits its transaction.

        Args:
            job_type: Handler the job is routed to.
            payload: Handler arguments (JSON-serializable).
            run_at: Earliest processing time. Defaults to now.
            queue: Queue name. Defaults to default_queue.
            priority: Lower runs first.
            max_attempts: Overrides default_max_attempts.
            correlation_id: Tracing id, the portability request id in practice.

        Returns:
            UUID of the created job.

        Raises:
            JobQueueError: If the job cannot be stored.
        """
        type_name = job_type.value if isinstance(job_type, JobType) else job_type

        job = Job(
            job_type=type_name,
            status=JobStatus.PENDING,
            run_at=run_at or datetime.now(UTC),
            payload_json=payload,
            queue=queue or self.default_queue,
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            lock_timeout_seconds=self.default_lock_timeout,
            base_backoff_seconds=self.default_base_backoff,
            correlation_id=correlation_id,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue %s job: %s", type_name, e)
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, run_at=%s",
            job.job_id,
            type_name,
            job.queue,
            job.run_at.isoformat(),
        )
        return job.job_id

    async def claim_job(
        self,
        worker_id: str,
        queue: str | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Lock and return the next due job, or None when the queue is idle.

        Args:
            worker_id: Identifier recorded in locked_by.
            queue: Queue to claim from. Defaults to default_queue.
            job_types: Restrict claiming to these job types.

        Raises:
            JobQueueError: If the claim query fails.
        """
        now = datetime.now(UTC)
        stmt = (
            select(Job)
            .where(
                Job.queue == (queue or self.default_queue),
                Job.status == JobStatus.PENDING,
                Job.run_at <= now,
            )
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_types:
            stmt = stmt.where(Job.job_type.in_(job_types))

        try:
            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempts += 1
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", e)
            raise JobQueueError(f"Failed to claim job: {e}") from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(
        self,
        job_id: uuid.UUID,
        result: dict[str, Any] | None = None,
    ) -> None:
        """Mark a job as completed and store the handler result.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)
        try:
            job = await self._require_job(job_id)
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.result_json = result
            job.duration_ms = _elapsed_ms(job, now)
            job.locked_at = None
            job.locked_by = None
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to complete job %s: %s", job_id, e)
            raise JobQueueError(f"Failed to complete job: {e}") from e

        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%s",
            job_id,
            job.job_type,
            job.duration_ms,
        )

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a failure and reschedule the job or dead-letter it.

        The retry delay is base_backoff_seconds * 2^(attempts - 1).

        Args:
            job_id: UUID of the job that failed.
            error: Failure description stored in last_error.

        Returns:
            True if the job will be retried, False if it was dead-lettered.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)
        try:
            job = await self._require_job(job_id)
            job.last_error = error
            job.locked_at = None
            job.locked_by = None

            if job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED
                job.completed_at = now
                job.duration_ms = _elapsed_ms(job, now)
                await self.session.flush()
                logger.warning(
                    "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                    job_id,
                    job.job_type,
                    job.attempts,
                    error,
                )
                return False

            backoff_seconds = job.base_backoff_seconds * (2 ** (job.attempts - 1))
            job.run_at = now + timedelta(seconds=backoff_seconds)
            job.status = JobStatus.PENDING
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to record failure of job %s: %s", job_id, e)
            raise JobQueueError(f"Failed to fail job: {e}") from e

        logger.info(
            "Job scheduled for retry: job_id=%s, job_type=%s, attempt=%d/%d, retry_at=%s",
            job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            job.run_at.isoformat(),
        )
        return True

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        """Retrieve a job by ID, or None."""
        stmt = select(Job).where(Job.job_id == job_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_failed_jobs(
        self,
        queue: str | None = None,
        job_type: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """Return dead-lettered jobs, most recent first."""
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.FAILED)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )
        if queue:
            stmt = stmt.where(Job.queue == queue)
        if job_type:
            stmt = stmt.where(Job.job_type == job_type)
        if correlation_id:
            stmt = stmt.where(Job.correlation_id == correlation_id)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def retry_failed_job(self, job_id: uuid.UUID) -> None:
        """Move a dead-lettered job back to pending with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the job is not in FAILED status.
        """
        try:
            job = await self._require_job(job_id)
            if job.status != JobStatus.FAILED:
                raise JobQueueError(
                    f"Can only retry FAILED jobs, current status: {job.status.value}"
                )

            job.status = JobStatus.PENDING
            job.run_at = datetime.now(UTC)
            job.attempts = 0
            job.completed_at = None
            job.last_error = None
            job.duration_ms = None
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to retry job %s: %s", job_id, e)
            raise JobQueueError(f"Failed to retry job: {e}") from e

        logger.info("Failed job requeued: job_id=%s, job_type=%s", job_id, job.job_type)

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Release jobs whose worker died while holding the lock.

        Args:
            stale_threshold_seconds: Lock age after which a running job is
                considered abandoned.

        Returns:
            Number of jobs put back to pending.

        Raises:
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)
        stmt = (
            update(Job)
            .where(
                Job.status == JobStatus.RUNNING,
                Job.locked_at < now - timedelta(seconds=stale_threshold_seconds),
            )
            .values(status=JobStatus.PENDING, locked_at=None, locked_by=None, run_at=now)
            .returning(Job.job_id)
        )

        try:
            result = await self.session.execute(stmt)
            released = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to cleanup stale jobs: %s", e)
            raise JobQueueError(f"Failed to cleanup stale jobs: {e}") from e

        if released:
            logger.warning("Reset %d stale jobs: %s", len(released), released)
        return len(released)

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job
