"""Periodic job scheduling.

Archive deletion is scheduled per request at its expire_at. The hourly
sweep catches archives whose deletion job was lost or dead-lettered.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from portability.db.models.base import JobStatus
from portability.db.models.jobs import Job
from portability.services.job_queue import JobQueueService, JobType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """Definition of a periodic job.

    Attributes:
        job_type: Type of job to enqueue.
        interval: Time between two enqueues.
        payload: Job payload.
        queue: Queue to enqueue on.
        priority: Job priority (lower = higher priority).
        enabled: Whether the schedule is active.
        last_scheduled: When the job was last enqueued.
    """

    job_type: str
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str = "default"
    priority: int = 100
    enabled: bool = True
    last_scheduled: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.last_scheduled is None:
            return True
        return now >= self.last_scheduled + self.interval


# Sweep of expired archives; no request_id in the payload selects sweep mode
DEFAULT_SCHEDULES = [
    ScheduledJob(
        job_type=JobType.DELETE_ARTIFACT.value,
        interval=timedelta(hours=1),
        payload={"batch_size": 100},
        priority=150,
    ),
]


class Scheduler:
    """Enqueues periodic jobs that are due.

    A schedule is skipped while a job of the same type is pending or
    running on its queue, so a slow sweep is never stacked.
    """

    def __init__(self, session: AsyncSession, schedules: list[ScheduledJob] | None = None) -> None:
        self.session = session
        self.schedules = list(schedules or [])
        self._job_queue = JobQueueService(session)

    def add_schedule(self, schedule: ScheduledJob) -> None:
        self.schedules.append(schedule)

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Enqueue every due schedule.

        Returns:
            Job types that were enqueued.
        """
        now = now or datetime.now(UTC)
        enqueued: list[str] = []

        for schedule in self.schedules:
            if not schedule.enabled or not schedule.is_due(now):
                continue

            if await self._has_open_job(schedule):
                logger.debug("Open job exists, skipping schedule: job_type=%s", schedule.job_type)
                continue

            await self._job_queue.enqueue(
                job_type=schedule.job_type,
                payload=dict(schedule.payload),
                queue=schedule.queue,
                priority=schedule.priority,
            )
            schedule.last_scheduled = now
            enqueued.append(schedule.job_type)

            logger.info(
                "Scheduled job: job_type=%s, queue=%s, next_due=%s",
                schedule.job_type,
                schedule.queue,
                (now + schedule.interval).isoformat(),
            )

        return enqueued

    async def _has_open_job(self, schedule: ScheduledJob) -> bool:
        stmt = (
            select(Job.job_id)
            .where(
                Job.job_type == schedule.job_type,
                Job.queue == schedule.queue,
                Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
                Job.correlation_id.is_(None),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None


async def run_scheduler_loop(
    session_factory: async_sessionmaker[AsyncSession],
    schedules: list[ScheduledJob] | None = None,
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Check schedules every check_interval seconds until shutdown.

    Args:
        session_factory: Factory for database sessions.
        schedules: Schedules to run. Defaults to DEFAULT_SCHEDULES.
        check_interval: Seconds between checks.
        shutdown_event: Event ending the loop.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()
    # Copies keep last_scheduled local to this loop
    active = [replace(s) for s in (schedules if schedules is not None else DEFAULT_SCHEDULES)]

    logger.info(
        "Scheduler starting: check_interval=%ss, schedules=%d", check_interval, len(active)
    )

    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                if await Scheduler(session, active).tick():
                    await session.commit()
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")
