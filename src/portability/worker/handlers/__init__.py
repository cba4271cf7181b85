"""Job handlers for the portability worker.

- notify_service: Notify one external service that an export is running
- export: Run, build, attach and complete an approved request
- artifact_cleanup: Delete expired archives (single request or sweep)
"""

from portability.worker.handlers.artifact_cleanup import delete_artifact_handler
from portability.worker.handlers.export import build_export_handler
from portability.worker.handlers.notify_service import notify_service_handler

__all__ = [
    "build_export_handler",
    "delete_artifact_handler",
    "notify_service_handler",
]
