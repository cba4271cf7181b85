"""Portability service layer.

- PortabilityLifecycleService: Request state changes and their side effects
- state_machine: Pure transition table
- signature: HMAC-SHA512 signing of owner identifiers
- ServiceNotifier: Signed notification of external services
- ExportBuilder: JSON data dump packaged as a ZIP archive
- ArtifactStorageClient: S3-compatible archive storage
- PortabilityMailer: SMTP notices rendered with Jinja2
- JobQueueService: PostgreSQL-backed background job processing
"""

from portability.services.collaborators import (
    Collaborators,
    NoticeKind,
    get_collaborators,
    set_collaborators,
)
from portability.services.dispatcher import (
    DispatchOutcome,
    DispatchResult,
    ServiceInternalError,
    ServiceNotificationError,
    ServiceNotifier,
    ServiceRejectedError,
    ServiceUnauthorizedError,
    ServiceUnhandledStatusError,
    classify_response,
)
from portability.services.export_builder import ExportArtifact, ExportBuilder, ExportBuildError
from portability.services.job_queue import (
    JobNotFoundError,
    JobQueueError,
    JobQueueService,
    JobType,
)
from portability.services.lifecycle import (
    DuplicateActiveRequestError,
    NoFailedJobsError,
    PortabilityLifecycleService,
    PortabilityRequestNotFoundError,
    TransitionResult,
)
from portability.services.signature import SignedIdentifier, sign, sign_for_owner, verify
from portability.services.state_machine import InvalidTransitionError, RequestEvent, next_state

__all__ = [
    "Collaborators",
    "DispatchOutcome",
    "DispatchResult",
    "DuplicateActiveRequestError",
    "ExportArtifact",
    "ExportBuildError",
    "ExportBuilder",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobQueueError",
    "JobQueueService",
    "JobType",
    "NoFailedJobsError",
    "NoticeKind",
    "PortabilityLifecycleService",
    "PortabilityRequestNotFoundError",
    "RequestEvent",
    "ServiceInternalError",
    "ServiceNotificationError",
    "ServiceNotifier",
    "ServiceRejectedError",
    "ServiceUnauthorizedError",
    "ServiceUnhandledStatusError",
    "SignedIdentifier",
    "TransitionResult",
    "classify_response",
    "get_collaborators",
    "next_state",
    "set_collaborators",
    "sign",
    "sign_for_owner",
    "verify",
]
