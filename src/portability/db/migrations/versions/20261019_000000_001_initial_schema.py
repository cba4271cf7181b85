"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- portability_requests (request lifecycle)
- jobs (background processing)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: portability requests and job queue."""
    request_state = postgresql.ENUM(
        "waiting_for_approval",
        "pending",
        "running",
        "done",
        "denied",
        "canceled",
        name="portability_request_state",
        create_type=False,
    )
    request_state.create(op.get_bind(), checkfirst=True)

    job_status = postgresql.ENUM(
        "pending",
        "running",
        "completed",
        "failed",
        name="job_status",
        create_type=False,
    )
    job_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "portability_requests",
        sa.Column(
            "request_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("owner_type", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("requested_by", sa.String(255), nullable=True),
        sa.Column(
            "state",
            request_state,
            nullable=False,
            server_default=sa.text("'waiting_for_approval'"),
        ),
        sa.Column("attachment_ref", sa.String(1000), nullable=True),
        sa.Column("expire_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("request_id", name=op.f("pk_portability_requests")),
    )
    op.create_index(
        op.f("ix_portability_requests_owner_active"),
        "portability_requests",
        ["owner_type", "owner_id", "requested_by", "state"],
        unique=False,
    )
    op.create_index(
        op.f("ix_portability_requests_expire_at"),
        "portability_requests",
        ["expire_at"],
        unique=False,
    )

    op.create_table(
        "jobs",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column(
            "lock_timeout_seconds",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("300"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "base_backoff_seconds",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("60"),
        ),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("queue", sa.String(100), nullable=False, server_default="default"),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        op.f("ix_jobs_queue_pending"),
        "jobs",
        ["queue", "status", "run_at", "priority"],
        unique=False,
    )
    op.create_index(op.f("ix_jobs_job_type"), "jobs", ["job_type"], unique=False)
    op.create_index(op.f("ix_jobs_correlation_id"), "jobs", ["correlation_id"], unique=False)
    op.create_index(op.f("ix_jobs_completed_at"), "jobs", ["completed_at"], unique=False)


def downgrade() -> None:
    """Revert migration: portability requests and job queue."""
    op.drop_table("jobs")
    op.drop_table("portability_requests")

    op.execute("DROP TYPE IF EXISTS job_status")
    op.execute("DROP TYPE IF EXISTS portability_request_state")
