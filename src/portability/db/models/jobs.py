"""Job queue model for PostgreSQL-backed background processing.

Lifecycle side effects (service notifications, export builds, artifact
deletion) are stored here and picked up by workers:
- SKIP LOCKED for concurrent worker safety
- Retry with exponential backoff
- Dead letter handling for failed jobs
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, DateTime, Enum, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from portability.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class Job(Base):
    """Background job.

    The payload identifies the portability request (and the service name for
    notifications); correlation_id carries the request id so every job of a
    workflow can be traced together.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Determines which handler processes the job
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Not processed before this instant (scheduled deletion uses expire_at)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lock_timeout_seconds: Mapped[int] = mapped_column(default=300, nullable=False)

    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Seconds before the first retry, doubled on each further attempt
    base_backoff_seconds: Mapped[int] = mapped_column(default=60, nullable=False)

    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Lower = higher priority
    priority: Mapped[int] = mapped_column(default=100, nullable=False)

    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)

    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # Primary query for workers: pending jobs ready to run, ordered by priority
        Index(
            "ix_jobs_queue_pending",
            "queue",
            "status",
            "run_at",
            "priority",
        ),
        Index("ix_jobs_job_type", "job_type"),
        Index("ix_jobs_correlation_id", "correlation_id"),
        Index("ix_jobs_completed_at", "completed_at"),
    )
