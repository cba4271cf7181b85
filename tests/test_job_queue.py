"""Tests for the PostgreSQL-backed job queue service.

Tests cover:
- Enqueue defaults and flush-only persistence
- Claiming with attempt accounting
- Completion, retry with exponential backoff and dead letter
- Dead-lettered jobs of a request and their manual retry
- Database errors wrapped in JobQueueError
"""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from portability.db.models.base import JobStatus
from portability.db.models.jobs import Job
from portability.services.job_queue import (
    JobNotFoundError,
    JobQueueError,
    JobQueueService,
    JobType,
)


def _job(**overrides) -> Job:
    values = {
        "job_id": uuid.uuid4(),
        "job_type": JobType.BUILD_EXPORT.value,
        "status": JobStatus.PENDING,
        "run_at": datetime.now(UTC),
        "queue": "default",
        "priority": 100,
        "attempts": 0,
        "max_attempts": 3,
        "base_backoff_seconds": 60,
        "lock_timeout_seconds": 300,
    }
    values.update(overrides)
    return Job(**values)


@pytest.fixture
def returning(mock_session, result_of):
    """Make every execute() on mock_session return the given job."""

    def _configure(job: Job | None):
        mock_session.execute.return_value = result_of(job)
        return mock_session

    return _configure


class TestEnqueue:
    """Tests for enqueue."""

    async def test_defaults(self, mock_session):
        """Test a job is pending, due now, on the default queue."""
        service = JobQueueService(mock_session)

        await service.enqueue(JobType.NOTIFY_SERVICE, payload={"service_name": "forum"})

        job = mock_session.add.call_args.args[0]
        assert job.job_type == "portability_notify_service"
        assert job.status == JobStatus.PENDING
        assert job.payload_json == {"service_name": "forum"}
        assert job.queue == "default"
        assert job.priority == 100
        assert job.max_attempts == 3
        assert job.base_backoff_seconds == 60
        assert job.run_at <= datetime.now(UTC)
        mock_session.flush.assert_awaited_once()
        mock_session.commit.assert_not_awaited()

    async def test_scheduled_job(self, mock_session):
        """Test run_at and correlation id are kept."""
        service = JobQueueService(mock_session)
        run_at = datetime.now(UTC) + timedelta(days=2)

        await service.enqueue(
            JobType.DELETE_ARTIFACT,
            payload={"request_id": "r-1"},
            run_at=run_at,
            correlation_id="r-1",
            priority=150,
        )

        job = mock_session.add.call_args.args[0]
        assert job.run_at == run_at
        assert job.correlation_id == "r-1"
        assert job.priority == 150

    async def test_custom_defaults(self):
        session = MagicMock()
        service = JobQueueService(session, default_queue="exports", default_max_attempts=5)
        assert service.default_queue == "exports"
        assert service.default_max_attempts == 5

    async def test_database_error(self, mock_session):
        mock_session.flush.side_effect = SQLAlchemyError("connection lost")
        service = JobQueueService(mock_session)

        with pytest.raises(JobQueueError, match="Failed to enqueue job"):
            await service.enqueue(JobType.BUILD_EXPORT)


class TestClaim:
    """Tests for claim_job."""

    async def test_claim_marks_running(self, returning):
        job = _job()
        session = returning(job)

        claimed = await JobQueueService(session).claim_job("worker-1")

        assert claimed is job
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "worker-1"
        assert job.locked_at is not None
        assert job.attempts == 1
        session.flush.assert_awaited_once()

    async def test_idle_queue(self, returning):
        session = returning(None)

        assert await JobQueueService(session).claim_job("worker-1") is None
        session.flush.assert_not_awaited()

    async def test_claim_query_skips_locked_rows(self, returning):
        session = returning(None)

        await JobQueueService(session).claim_job("worker-1", job_types=["a"])

        statement = session.execute.call_args.args[0]
        assert statement._for_update_arg.skip_locked is True

    async def test_database_error(self, mock_session):
        mock_session.execute.side_effect = SQLAlchemyError("connection lost")

        with pytest.raises(JobQueueError, match="Failed to claim job"):
            await JobQueueService(mock_session).claim_job("worker-1")


class TestCompleteAndFail:
    """Tests for complete_job and fail_job."""

    async def test_complete(self, returning):
        job = _job(status=JobStatus.RUNNING, started_at=datetime.now(UTC) - timedelta(seconds=3))
        session = returning(job)

        await JobQueueService(session).complete_job(job.job_id, {"built": True})

        assert job.status == JobStatus.COMPLETED
        assert job.result_json == {"built": True}
        assert job.duration_ms >= 3000
        assert job.locked_by is None

    async def test_complete_unknown_job(self, returning):
        session = returning(None)

        with pytest.raises(JobNotFoundError):
            await JobQueueService(session).complete_job(uuid.uuid4())

    @pytest.mark.parametrize(("attempts", "delay"), [(1, 60), (2, 120)])
    async def test_retry_backoff(self, returning, attempts, delay):
        """Test the retry delay doubles with every attempt."""
        job = _job(status=JobStatus.RUNNING, attempts=attempts, started_at=datetime.now(UTC))
        session = returning(job)
        before = datetime.now(UTC)

        will_retry = await JobQueueService(session).fail_job(job.job_id, "timeout")

        assert will_retry is True
        assert job.status == JobStatus.PENDING
        assert job.last_error == "timeout"
        assert abs((job.run_at - (before + timedelta(seconds=delay))).total_seconds()) < 2

    async def test_dead_letter(self, returning):
        """Test the job stays failed once max_attempts is reached."""
        job = _job(status=JobStatus.RUNNING, attempts=3, started_at=datetime.now(UTC))
        session = returning(job)

        will_retry = await JobQueueService(session).fail_job(job.job_id, "service down")

        assert will_retry is False
        assert job.status == JobStatus.FAILED
        assert job.completed_at is not None


class TestFailedJobs:
    """Tests for get_failed_jobs and retry_failed_job."""

    async def test_failed_jobs_of_request(self, mock_session, result_of):
        job = _job(status=JobStatus.FAILED, correlation_id="r-1")
        mock_session.execute.return_value = result_of([job])

        jobs = await JobQueueService(mock_session).get_failed_jobs(correlation_id="r-1")

        assert jobs == [job]
        statement = str(mock_session.execute.call_args.args[0])
        assert "jobs.correlation_id = " in statement
        assert "jobs.status = " in statement

    async def test_retry_failed_job(self, returning):
        job = _job(status=JobStatus.FAILED, attempts=3, last_error="boom")
        session = returning(job)

        await JobQueueService(session).retry_failed_job(job.job_id)

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.last_error is None

    async def test_retry_requires_failed_status(self, returning):
        session = returning(_job(status=JobStatus.PENDING))

        with pytest.raises(JobQueueError, match="Can only retry FAILED jobs"):
            await JobQueueService(session).retry_failed_job(uuid.uuid4())


class TestMaintenance:
    """Tests for stale job cleanup."""

    async def test_cleanup_stale_jobs(self, mock_session):
        released = [uuid.uuid4(), uuid.uuid4()]
        result = MagicMock()
        result.scalars.return_value.all.return_value = released
        mock_session.execute = AsyncMock(return_value=result)

        count = await JobQueueService(mock_session).cleanup_stale_jobs(600)

        assert count == 2
