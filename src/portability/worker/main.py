"""Portability worker entry point.

The worker:
- Polls the job queue and dispatches jobs to their handlers
- Commits on success; rolls back and records the failure otherwise, so the
  job queue retries or dead-letters the job
- Runs the scheduler that enqueues the periodic archive sweep
- Shuts down gracefully on SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portability.db import create_session_factory, to_async_url
from portability.services.job_queue import JobQueueService, JobType
from portability.worker.scheduler import run_scheduler_loop

if TYPE_CHECKING:
    from portability.db.models.jobs import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncSession, "Job"], Coroutine[Any, Any, dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        database_url: PostgreSQL connection URL (psycopg async driver).
        worker_id: Unique identifier for this worker instance.
        poll_interval: Seconds between job queue polls when idle.
        queues: Queue names to process.
        job_types: Job types to process. Empty means all types.
        stale_job_threshold_seconds: How long before a running job is considered stale.
        shutdown_timeout: Seconds to wait for graceful shutdown.
        pool_size: Database connection pool size.
        run_scheduler: Whether this worker also enqueues periodic jobs.
        scheduler_interval: Seconds between scheduler checks.
    """

    database_url: str
    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    queues: list[str] = field(default_factory=lambda: ["default"])
    job_types: list[str] = field(default_factory=list)
    stale_job_threshold_seconds: int = 600
    shutdown_timeout: float = 30.0
    pool_size: int = 5
    run_scheduler: bool = True
    scheduler_interval: float = 60.0


class Worker:
    """Background worker processing portability jobs.

    Jobs are claimed with SELECT ... FOR UPDATE SKIP LOCKED, so several
    workers can run side by side.

    Example:
        worker = Worker(WorkerConfig(database_url="postgresql+psycopg://..."))
        register_default_handlers(worker)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration settings.
            session_factory: Session factory to use instead of creating an engine.
        """
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._current_job: Job | None = None
        self._handlers: dict[str, JobHandler] = {}
        self._engine = None
        self._session_factory = session_factory
        self._started_at: datetime | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    @property
    def handlers(self) -> dict[str, JobHandler]:
        return dict(self._handlers)

    def register_handler(self, job_type: str | JobType, handler: JobHandler) -> None:
        """Register the handler of a job type."""
        type_name = job_type.value if isinstance(job_type, JobType) else job_type
        self._handlers[type_name] = handler
        logger.debug("Registered handler for job_type=%s", type_name)

    async def start(self) -> None:
        """Process jobs until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, queues=%s, handlers=%s",
            self.config.worker_id,
            self.config.queues,
            sorted(self._handlers),
        )

        if self._session_factory is None:
            self._engine, self._session_factory = create_session_factory(
                self.config.database_url, pool_size=self.config.pool_size
            )

        scheduler_task = None
        if self.config.run_scheduler:
            scheduler_task = asyncio.create_task(
                run_scheduler_loop(
                    self._session_factory,
                    check_interval=self.config.scheduler_interval,
                    shutdown_event=self._shutdown_event,
                )
            )

        try:
            await self._run_loop()
        finally:
            if scheduler_task is not None:
                await scheduler_task
            if self._engine is not None:
                await self._engine.dispose()

            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d",
                self.config.worker_id,
                self._jobs_processed,
                self._jobs_failed,
            )

    async def stop(self) -> None:
        """Request graceful shutdown."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                for queue in self.config.queues:
                    if self._shutdown_event.is_set():
                        break
                    await self._process_queue(queue)

                if not self._shutdown_event.is_set():
                    await self._cleanup_stale_jobs()

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval,
                    )

            except Exception as e:
                # The loop outlives database hiccups; the error is logged and retried
                logger.exception("Error in worker loop: %s", e)
                await asyncio.sleep(1.0)

    async def _process_queue(self, queue: str) -> bool:
        """Claim and process one job from a queue.

        Returns:
            True if a job was claimed.
        """
        async with self._session_factory() as session:
            job_queue = JobQueueService(session)
            job = await job_queue.claim_job(
                worker_id=self.config.worker_id,
                queue=queue,
                job_types=self.config.job_types or None,
            )
            if job is None:
                return False

            # Identifiers are read before the handler runs: a rollback expires them
            job_id = job.job_id
            job_type = job.job_type
            self._current_job = job

            try:
                handler = self._handlers.get(job_type)
                if handler is None:
                    error_msg = f"No handler registered for job_type={job_type}"
                    logger.error(error_msg)
                    await job_queue.fail_job(job_id, error_msg)
                    await session.commit()
                    self._jobs_failed += 1
                    return True

                result = await handler(session, job)

                await job_queue.complete_job(job_id, result)
                await session.commit()
                self._jobs_processed += 1

            except Exception as e:
                logger.exception(
                    "Job failed: job_id=%s, job_type=%s, error=%s",
                    job_id,
                    job_type,
                    e,
                )
                await session.rollback()

                async with self._session_factory() as fail_session:
                    will_retry = await JobQueueService(fail_session).fail_job(job_id, str(e))
                    await fail_session.commit()

                if not will_retry:
                    self._jobs_failed += 1

            finally:
                self._current_job = None

        return True

    async def _cleanup_stale_jobs(self) -> None:
        async with self._session_factory() as session:
            count = await JobQueueService(session).cleanup_stale_jobs(
                stale_threshold_seconds=self.config.stale_job_threshold_seconds
            )
            if count > 0:
                await session.commit()


_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


def _get_config_from_env() -> WorkerConfig:
    """Build WorkerConfig from environment variables.

    Environment variables:
        PORTABILITY_DATABASE__URL or DATABASE_URL: PostgreSQL URL (required)
        WORKER_ID: Unique worker identifier (auto-generated if not set)
        WORKER_POLL_INTERVAL: Seconds between polls (default: 1.0)
        WORKER_QUEUES: Comma-separated list of queues (default: "default")
        WORKER_JOB_TYPES: Comma-separated list of job types (default: all)
        WORKER_STALE_THRESHOLD: Seconds before job considered stale (default: 600)
        WORKER_SHUTDOWN_TIMEOUT: Seconds for graceful shutdown (default: 30)
        WORKER_POOL_SIZE: Database connection pool size (default: 5)
        WORKER_RUN_SCHEDULER: "false" to disable the scheduler (default: true)

    Raises:
        ValueError: If no database URL is set.
    """
    database_url = os.environ.get("PORTABILITY_DATABASE__URL") or os.environ.get("DATABASE_URL")
    if not database_url:
        msg = "PORTABILITY_DATABASE__URL or DATABASE_URL environment variable is required"
        raise ValueError(msg)

    def _split(value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    return WorkerConfig(
        database_url=to_async_url(database_url),
        worker_id=os.environ.get("WORKER_ID", f"worker-{uuid.uuid4().hex[:8]}"),
        poll_interval=float(os.environ.get("WORKER_POLL_INTERVAL", "1.0")),
        queues=_split(os.environ.get("WORKER_QUEUES", "default")),
        job_types=_split(os.environ.get("WORKER_JOB_TYPES", "")),
        stale_job_threshold_seconds=int(os.environ.get("WORKER_STALE_THRESHOLD", "600")),
        shutdown_timeout=float(os.environ.get("WORKER_SHUTDOWN_TIMEOUT", "30")),
        pool_size=int(os.environ.get("WORKER_POOL_SIZE", "5")),
        run_scheduler=os.environ.get("WORKER_RUN_SCHEDULER", "true").lower() != "false",
    )


def register_default_handlers(worker: Worker) -> None:
    """Register the portability job handlers."""
    from portability.worker.handlers.artifact_cleanup import delete_artifact_handler
    from portability.worker.handlers.export import build_export_handler
    from portability.worker.handlers.notify_service import notify_service_handler

    worker.register_handler(JobType.NOTIFY_SERVICE, notify_service_handler)
    worker.register_handler(JobType.BUILD_EXPORT, build_export_handler)
    worker.register_handler(JobType.DELETE_ARTIFACT, delete_artifact_handler)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    config = _get_config_from_env()
    worker = Worker(config)
    register_default_handlers(worker)

    worker_task = asyncio.create_task(worker.start())
    await shutdown_event.wait()
    await worker.stop()

    try:
        await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
    except TimeoutError:
        logger.warning("Worker did not stop within timeout, forcing shutdown")
        worker_task.cancel()


def run() -> NoReturn:
    """Run the worker process (console script entry point)."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("Portability worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Portability worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
