"""Portability worker service.

PostgreSQL-backed background job runner for:
- Notification of external services when an export starts
- Export archive generation and completion
- Deletion of expired archives (scheduled and periodic sweep)

Usage:
    python -m portability.worker
    portability-worker
"""

from portability.worker.main import Worker, WorkerConfig, register_default_handlers, run

__all__ = ["Worker", "WorkerConfig", "register_default_handlers", "run"]
