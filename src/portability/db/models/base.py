"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]


class Base(DeclarativeBase):
    """Declarative base for all models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class RequestState(enum.Enum):
    """Portability request lifecycle states.

    States:
        WAITING_FOR_APPROVAL: Created, waiting for an administrator decision
        PENDING: Approved, export job enqueued
        RUNNING: Export in progress, external services notified
        DONE: Archive attached, scheduled for deletion at expire_at
        DENIED: Rejected by an administrator
        CANCELED: Withdrawn before approval
    """

    WAITING_FOR_APPROVAL = "waiting_for_approval"
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DENIED = "denied"
    CANCELED = "canceled"


# A request in one of these states blocks a new one for the same owner/requester
ACTIVE_STATES = frozenset(
    {
        RequestState.WAITING_FOR_APPROVAL,
        RequestState.PENDING,
        RequestState.RUNNING,
    }
)

TERMINAL_STATES = frozenset(
    {
        RequestState.DONE,
        RequestState.DENIED,
        RequestState.CANCELED,
    }
)


class JobStatus(enum.Enum):
    """Status of a background job.

    Values:
        PENDING: Job is waiting to be processed
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max retries (dead letter)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
