"""SQLAlchemy ORM models.

- base: Common metadata, column types and enums
- requests: Portability requests and their lifecycle state
- jobs: PostgreSQL-backed job queue
"""

from portability.db.models.base import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    Base,
    JobStatus,
    RequestState,
    metadata,
)
from portability.db.models.jobs import Job
from portability.db.models.requests import PortabilityRequest

__all__ = [
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "Base",
    "Job",
    "JobStatus",
    "PortabilityRequest",
    "RequestState",
    "metadata",
]
