"""Collaborators of the request lifecycle.

The lifecycle does not know how owners are stored, how their data is
collected, how notices are delivered or where archives go. Those concerns
are provided by the embedding application through the protocols below:

- DataRegistry: resolves owners and dumps everything held about them
- ApprovalHook: optional action run when a request is approved
- MailNotifier: created/denied/completed notices
- ArtifactStore: keeps the generated archive until it expires

Registry and hook are configured as "module:attribute" paths; the default
mailer and store are built from the SMTP and S3 settings.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

    from portability.core.config import Settings
    from portability.db.models.requests import PortabilityRequest

logger = logging.getLogger(__name__)


class NoticeKind(str, Enum):
    """Notices sent to the owner during the request lifecycle."""

    CREATED = "created"
    DENIED = "denied"
    COMPLETED = "completed"


@runtime_checkable
class DataRegistry(Protocol):
    """Source of owners and of their exportable data.

    Methods may be plain or coroutine functions.
    """

    def get_owner(self, owner_type: str, owner_id: str) -> Any:
        """Return the owner entity, or None if it no longer exists."""
        ...

    def data_dump(self, owner: Any) -> Mapping[str, Any]:
        """Return a JSON-serializable document of everything held about owner."""
        ...


@runtime_checkable
class ApprovalHook(Protocol):
    """Action run after a request is approved, before the export is queued."""

    def on_approval(self, request: PortabilityRequest) -> Any: ...


@runtime_checkable
class MailNotifier(Protocol):
    """Delivers lifecycle notices."""

    async def send_mail(
        self,
        kind: NoticeKind,
        request: PortabilityRequest,
        owner: Any,
    ) -> Any: ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Storage of generated export archives."""

    def store(self, key: str, path: Path) -> str:
        """Upload the archive at path and return its reference."""
        ...

    def delete(self, ref: str) -> None:
        """Remove an archive. Deleting a missing archive is not an error."""
        ...


async def resolve(value: Any) -> Any:
    """Await value if it is awaitable, so collaborators can be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value


async def call_blocking(func: Callable[..., Any], *args: Any) -> Any:
    """Call a collaborator method without blocking the event loop.

    Coroutine functions are awaited directly; plain functions (boto3 uploads,
    for instance) run in a worker thread.
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    return await resolve(await asyncio.to_thread(func, *args))


class CollaboratorError(Exception):
    """Raised when a configured collaborator cannot be loaded."""


def owner_attribute(owner: Any, name: str) -> Any:
    """Read an attribute of an owner entity or a key of an owner mapping.

    Raises:
        LookupError: If the owner has no such attribute.
    """
    if isinstance(owner, dict):
        if name not in owner:
            raise LookupError(f"Owner has no {name!r} key")
        return owner[name]
    try:
        return getattr(owner, name)
    except AttributeError as e:
        raise LookupError(f"{type(owner).__name__} has no {name!r} attribute") from e


def load_object(path: str) -> Any:
    """Import an object from a "module:attribute" path.

    Classes are instantiated without arguments; other objects are returned
    as is.

    Args:
        path: Dotted module path and attribute name separated by a colon.

    Returns:
        The loaded object or an instance of the loaded class.

    Raises:
        CollaboratorError: If the module or attribute cannot be found.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise CollaboratorError(f"Expected 'module:attribute', got: {path}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CollaboratorError(f"Cannot import module {module_name}: {e}") from e

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise CollaboratorError(f"{module_name} has no attribute {attribute}") from e

    if inspect.isclass(target):
        return target()
    return target


@dataclass(slots=True)
class Collaborators:
    """Collaborator set used by the lifecycle service and the worker.

    Attributes:
        registry: Owner lookup and data dump. Required to build exports.
        mailer: Notice delivery.
        store: Archive storage.
        approval_hook: Optional approval action.
    """

    registry: DataRegistry | None
    mailer: MailNotifier | None
    store: ArtifactStore | None
    approval_hook: ApprovalHook | None = None

    def require_registry(self) -> DataRegistry:
        if self.registry is None:
            raise CollaboratorError(
                "No data registry configured. Set PORTABILITY_PORTABILITY__REGISTRY."
            )
        return self.registry

    def require_store(self) -> ArtifactStore:
        if self.store is None:
            raise CollaboratorError("No artifact store configured")
        return self.store


_collaborators: Collaborators | None = None


def build_collaborators(settings: Settings) -> Collaborators:
    """Build the default collaborator set from settings."""
    from portability.services.email import PortabilityMailer
    from portability.services.storage import ArtifactStorageClient

    portability = settings.portability
    registry = load_object(portability.registry) if portability.registry else None
    hook = load_object(portability.approval_hook) if portability.approval_hook else None

    collaborators = Collaborators(
        registry=registry,
        mailer=PortabilityMailer(settings.smtp, app_name=settings.app_name),
        store=ArtifactStorageClient.from_settings(settings.s3),
        approval_hook=hook,
    )
    logger.info(
        "Collaborators loaded: registry=%s, approval_hook=%s",
        portability.registry,
        portability.approval_hook,
    )
    return collaborators


def get_collaborators() -> Collaborators:
    """Return the process-wide collaborator set, building it on first use."""
    global _collaborators

    if _collaborators is None:
        from portability.core.settings import get_settings

        _collaborators = build_collaborators(get_settings())
    return _collaborators


def set_collaborators(collaborators: Collaborators | None) -> None:
    """Install a collaborator set (embedding application, tests).

    Passing None resets to the settings-based default on next use.
    """
    global _collaborators
    _collaborators = collaborators
