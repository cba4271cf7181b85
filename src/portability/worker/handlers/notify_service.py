"""Handler notifying one external service that an export is running.

One job is enqueued per configured service when a request enters running,
so a service that is down only fails (and retries) its own job.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from portability.core.settings import get_settings
from portability.services.collaborators import get_collaborators, owner_attribute
from portability.services.dispatcher import ServiceNotifier
from portability.services.lifecycle import PortabilityLifecycleService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from portability.db.models.jobs import Job

logger = logging.getLogger(__name__)


async def notify_service_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle portability_notify_service jobs.

    Expected job payload:
        request_id: UUID of the portability request
        service_name: Configured service to notify

    Args:
        session: Database session for the transaction.
        job: The job being processed.

    Returns:
        Result dict with the service name, outcome and HTTP status.

    Raises:
        ValueError: If required payload fields are missing.
        ServiceNotificationError: If the service answered with a fatal status.
        httpx.HTTPError: If the service could not be reached.
    """
    payload = job.payload_json or {}
    request_id = payload.get("request_id")
    service_name = payload.get("service_name")
    if not request_id or not service_name:
        msg = "request_id and service_name are required in job payload"
        raise ValueError(msg)

    settings = get_settings().portability
    lifecycle = PortabilityLifecycleService(session, settings, get_collaborators())

    request = await lifecycle.get_request(uuid.UUID(request_id))
    owner = await lifecycle.load_owner(request)
    identifier = str(owner_attribute(owner, settings.finder))

    async with ServiceNotifier(settings) as notifier:
        result = await notifier.notify_service(service_name, identifier)

    return {"request_id": request_id, **result.to_dict()}
