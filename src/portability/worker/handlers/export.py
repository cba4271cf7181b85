"""Handler building the export of an approved request.

The job enqueued on approval runs three steps in order:
1. run the request (which fans out the service notification jobs)
2. build the archive, store it and attach it to the request
3. complete the request

Notification jobs are not awaited; they proceed alongside the build. The
handler is safe to redeliver: a running request is not run again, an
attached archive is not rebuilt and a done request is left alone.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from portability.core.settings import get_settings
from portability.db.models.base import RequestState
from portability.services.collaborators import call_blocking, get_collaborators
from portability.services.export_builder import ExportBuilder
from portability.services.lifecycle import PortabilityLifecycleService
from portability.services.storage import artifact_key

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from portability.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def build_export_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle portability_build_export jobs.

    Expected job payload:
        request_id: UUID of the approved request

    Args:
        session: Database session for the transaction.
        job: The job being processed.

    Returns:
        Result dict with the attachment reference and final state.

    Raises:
        ValueError: If request_id is missing.
        InvalidTransitionError: If the request is neither pending nor running.
        ExportBuildError: If the data dump cannot be built. The request stays
            running without an archive and the job is retried.
    """
    payload = job.payload_json or {}
    raw_id = payload.get("request_id")
    if not raw_id:
        msg = "request_id is required in job payload"
        raise ValueError(msg)
    request_id = uuid.UUID(raw_id)

    settings = get_settings().portability
    collaborators = get_collaborators()
    lifecycle = PortabilityLifecycleService(session, settings, collaborators)

    request = await lifecycle.get_request(request_id)
    if request.state == RequestState.DONE:
        logger.info(
            "Export already completed, nothing to do",
            extra={"request_id": raw_id},
        )
        return {"request_id": raw_id, "skipped": True, "state": request.state.value}

    if request.state != RequestState.RUNNING:
        # Raises InvalidTransitionError unless the request is pending
        await lifecycle.run(request_id)

    built = False
    if request.attachment_ref is None:
        owner = await lifecycle.load_owner(request)
        builder = ExportBuilder(collaborators.require_registry(), settings.scratch_dir)
        store = collaborators.require_store()

        async with builder.build(request, owner) as artifact:
            key = artifact_key(request_id, artifact.archive_name)
            ref = await call_blocking(store.store, key, artifact.archive_path)

        await lifecycle.attach_artifact(request_id, ref)
        built = True
    else:
        logger.info(
            "Archive already attached, completing request",
            extra={"request_id": raw_id, "attachment_ref": request.attachment_ref},
        )

    await lifecycle.complete(request_id)

    return {
        "request_id": raw_id,
        "skipped": False,
        "built": built,
        "attachment_ref": request.attachment_ref,
        "state": request.state.value,
        "expire_at": request.expire_at.isoformat() if request.expire_at else None,
    }
