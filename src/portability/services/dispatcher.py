"""Notification of external services when an export starts running.

Each configured service receives a signed POST at host + portability_path
with the form body {user, hash}. Services answer with:

    2xx  processed, the service is exporting its data for the owner
    404  the service holds nothing about the owner (still a success)
    401  the signature was refused
    422  the parameters were refused
    5xx  the service failed

Every other status is unexpected. Fatal outcomes are raised so the job
carrying the notification fails and is retried by the job queue; they never
affect the notification of the other services, which run as separate jobs.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from portability.services.signature import sign

if TYPE_CHECKING:
    from portability.core.config import PortabilitySettings

logger = logging.getLogger(__name__)


class ServiceNotificationError(Exception):
    """Base exception for service notification failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.service_name = service_name
        self.status_code = status_code
        self.body = body
        super().__init__(f"{service_name}: {message}")


class ServiceUnauthorizedError(ServiceNotificationError):
    """The service refused the signature (401)."""

    def __init__(self, service_name: str, body: str | None = None) -> None:
        super().__init__(service_name, "unauthorized by service", 401, body)


class ServiceRejectedError(ServiceNotificationError):
    """The service refused the parameters (422)."""

    def __init__(self, service_name: str, body: str) -> None:
        super().__init__(service_name, f"service rejected parameters: {body}", 422, body)


class ServiceInternalError(ServiceNotificationError):
    """The service failed while handling the notification (5xx)."""

    def __init__(self, service_name: str, status_code: int, body: str) -> None:
        super().__init__(
            service_name, f"service internal error ({status_code}): {body}", status_code, body
        )


class ServiceUnhandledStatusError(ServiceNotificationError):
    """The service answered with a status outside the protocol."""

    def __init__(self, service_name: str, status_code: int, body: str) -> None:
        super().__init__(
            service_name, f"unhandled status code {status_code}: {body}", status_code, body
        )


class DispatchOutcome(enum.Enum):
    """Successful notification outcomes."""

    DELIVERED = "delivered"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Outcome of notifying one service.

    Attributes:
        service_name: Configured service name.
        outcome: DELIVERED, NOT_FOUND or SKIPPED.
        status_code: HTTP status, None when skipped.
        body: Response body, None when skipped.
    """

    service_name: str
    outcome: DispatchOutcome
    status_code: int | None = None
    body: str | None = None

    def to_dict(self) -> dict[str, str | int | None]:
        return {
            "service_name": self.service_name,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
        }


def classify_response(service_name: str, response: httpx.Response) -> DispatchResult:
    """Map a service response to an outcome.

    Args:
        service_name: Service that answered.
        response: The HTTP response.

    Returns:
        DispatchResult for 2xx and 404 responses.

    Raises:
        ServiceUnauthorizedError: On 401.
        ServiceRejectedError: On 422.
        ServiceInternalError: On 5xx.
        ServiceUnhandledStatusError: On any other status.
    """
    status = response.status_code
    if 200 <= status < 300:
        return DispatchResult(service_name, DispatchOutcome.DELIVERED, status, response.text)
    if status == 404:
        return DispatchResult(service_name, DispatchOutcome.NOT_FOUND, status, response.text)
    if status == 401:
        raise ServiceUnauthorizedError(service_name, response.text)
    if status == 422:
        raise ServiceRejectedError(service_name, response.text)
    if 500 <= status < 600:
        raise ServiceInternalError(service_name, status, response.text)
    raise ServiceUnhandledStatusError(service_name, status, response.text)


class ServiceNotifier:
    """Sends signed notifications to the configured external services.

    Example:
        async with ServiceNotifier(settings.portability) as notifier:
            result = await notifier.notify_service("forum", "owner@example.com")
    """

    def __init__(
        self,
        settings: PortabilitySettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the notifier.

        Args:
            settings: Portability settings holding services and tokens.
            client: Pre-built HTTP client. It is not closed on exit.
        """
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> ServiceNotifier:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.notify_timeout)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "ServiceNotifier must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    def endpoint(self, service_name: str) -> str | None:
        """Return the notification URL of a service, None when it has no host.

        Raises:
            ServiceNotificationError: If the service is not configured.
        """
        service = self._settings.services.get(service_name)
        if service is None:
            raise ServiceNotificationError(service_name, "service is not configured")
        if not service.host:
            return None
        return f"{service.host}{self._settings.portability_path}"

    async def notify_service(self, service_name: str, identifier: str) -> DispatchResult:
        """Notify one service that the owner's export is running.

        Args:
            service_name: Key of the service in the configuration.
            identifier: Owner identifier resolved through the finder attribute.

        Returns:
            DispatchResult with outcome DELIVERED, NOT_FOUND or SKIPPED.

        Raises:
            ServiceNotificationError: Unknown service or a fatal response.
            httpx.HTTPError: Transport failure (timeout, connection refused).
        """
        url = self.endpoint(service_name)
        if url is None:
            logger.info(
                "Service has no host configured, skipping notification",
                extra={"service_name": service_name},
            )
            return DispatchResult(service_name, DispatchOutcome.SKIPPED)

        signed = sign(identifier, self._settings.service_token(service_name))
        response = await self._get_client().post(
            url,
            data=signed.as_payload(),
            timeout=self._settings.notify_timeout,
        )

        try:
            result = classify_response(service_name, response)
        except ServiceNotificationError as e:
            logger.error(
                "Service notification failed: %s",
                e,
                extra={"service_name": service_name, "status_code": e.status_code},
            )
            raise

        logger.info(
            "Service notified: %s -> %s",
            service_name,
            result.outcome.value,
            extra={"service_name": service_name, "status_code": result.status_code},
        )
        return result
