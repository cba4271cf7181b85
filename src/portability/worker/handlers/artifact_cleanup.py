"""Handler deleting export archives once they expire.

This handler operates in two modes:
1. Single request mode: the job scheduled at a request's expire_at
2. Sweep mode: periodic pass over every done request past expire_at that
   still references an archive

Deleting twice is a no-op: a request without a reference is skipped and a
missing stored object is not an error.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from portability.core.settings import get_settings
from portability.services.collaborators import call_blocking, get_collaborators
from portability.services.job_queue import JobQueueService, JobType
from portability.services.lifecycle import PortabilityLifecycleService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from portability.db.models.jobs import Job
    from portability.db.models.requests import PortabilityRequest
    from portability.services.collaborators import ArtifactStore

logger = logging.getLogger(__name__)


async def delete_artifact_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle portability_delete_artifact jobs.

    Expected job payload:
        request_id: (optional) UUID of the request whose archive expired
        batch_size: (optional) Maximum requests per sweep (default: 100)

    Args:
        session: Database session for the transaction.
        job: The job being processed.

    Returns:
        Result dict with the cleared request ids.
    """
    payload = job.payload_json or {}
    request_id = payload.get("request_id")
    batch_size = int(payload.get("batch_size", 100))

    collaborators = get_collaborators()
    lifecycle = PortabilityLifecycleService(session, get_settings().portability, collaborators)
    store = collaborators.require_store()
    now = datetime.now(UTC)

    if request_id:
        request = await lifecycle.get_request(uuid.UUID(request_id))
        cleared = await _delete_artifact(lifecycle, store, request)
        return {
            "mode": "single",
            "cleared_ids": [request_id] if cleared else [],
            "checked_at": now.isoformat(),
        }

    expired = await lifecycle.find_expired_artifacts(now, batch_size)
    cleared_ids: list[str] = []
    failed_ids: list[str] = []

    for request in expired:
        try:
            await _delete_artifact(lifecycle, store, request)
            cleared_ids.append(str(request.request_id))
        except Exception as e:
            logger.exception(
                "Failed to delete archive: request_id=%s, error=%s",
                request.request_id,
                e,
            )
            failed_ids.append(str(request.request_id))

    # A full clean batch means more may be waiting
    if len(expired) >= batch_size and not failed_ids:
        await JobQueueService(session).enqueue(
            job_type=JobType.DELETE_ARTIFACT,
            payload={"batch_size": batch_size},
            priority=150,
        )
        logger.info("Scheduled continuation job for remaining expired archives")

    logger.info(
        "Archive sweep complete: cleared=%d, failed=%d",
        len(cleared_ids),
        len(failed_ids),
    )
    return {
        "mode": "sweep",
        "cleared_ids": cleared_ids,
        "failed_ids": failed_ids,
        "checked_at": now.isoformat(),
    }


async def _delete_artifact(
    lifecycle: PortabilityLifecycleService,
    store: ArtifactStore,
    request: PortabilityRequest,
) -> bool:
    """Delete the stored archive, then clear the reference.

    Returns:
        False if the request had no archive.
    """
    ref = request.attachment_ref
    if ref is None:
        logger.info(
            "No archive to delete",
            extra={"request_id": str(request.request_id)},
        )
        return False

    await call_blocking(store.delete, ref)
    await lifecycle.clear_artifact(request)
    return True
