"""Export archive generation.

The owner's data dump is serialized to <request_id>.json and compressed into
a single-entry ZIP archive named by a random token. Both files live in a
scratch directory created for the build and removed when the build context
exits, whether the build succeeded or not.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import enum
import hashlib
import json
import logging
import secrets
import shutil
import tempfile
import uuid
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from portability.services.collaborators import resolve

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from portability.db.models.requests import PortabilityRequest
    from portability.services.collaborators import DataRegistry

logger = logging.getLogger(__name__)

# Read size when hashing archives
_CHUNK_SIZE = 64 * 1024


class ExportBuildError(Exception):
    """Raised when the owner's data cannot be retrieved or serialized."""

    def __init__(self, request_id: uuid.UUID, reason: str) -> None:
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Export of request {request_id} failed: {reason}")


@dataclass(frozen=True, slots=True)
class ExportArtifact:
    """A built export archive, valid until the build context exits.

    Attributes:
        archive_path: Path of the ZIP archive.
        json_path: Path of the serialized document.
        entry_name: Name of the single archive entry (<request_id>.json).
        size_bytes: Archive size.
        sha256: Hex digest of the archive.
    """

    archive_path: Path
    json_path: Path
    entry_name: str
    size_bytes: int
    sha256: str

    @property
    def archive_name(self) -> str:
        return self.archive_path.name


def _json_default(value: Any) -> Any:
    if isinstance(value, dt.datetime | dt.date | dt.time):
        return value.isoformat()
    if isinstance(value, uuid.UUID | decimal.Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, set | frozenset | tuple):
        return list(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_document(document: Any) -> bytes:
    """Serialize a data dump to UTF-8 JSON.

    Raises:
        TypeError: If the document holds values that cannot be represented.
        ValueError: On circular references or non-finite floats.
    """
    return json.dumps(
        document,
        default=_json_default,
        ensure_ascii=False,
        allow_nan=False,
        indent=2,
    ).encode("utf-8")


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ExportBuilder:
    """Builds export archives from a data registry.

    Example:
        builder = ExportBuilder(registry)
        async with builder.build(request, owner) as artifact:
            ref = store.store(key, artifact.archive_path)
    """

    def __init__(self, registry: DataRegistry, scratch_dir: str | Path | None = None) -> None:
        """Initialize the builder.

        Args:
            registry: Source of the owner's data dump.
            scratch_dir: Parent of the per-build scratch directories.
                Defaults to the system temp directory.
        """
        self._registry = registry
        self._scratch_dir = Path(scratch_dir) if scratch_dir else None

    @asynccontextmanager
    async def build(
        self,
        request: PortabilityRequest,
        owner: Any,
    ) -> AsyncIterator[ExportArtifact]:
        """Build the archive for a request and yield it.

        Args:
            request: Request being exported; its id names the JSON entry.
            owner: Owner entity passed to the registry.

        Yields:
            ExportArtifact for the built archive.

        Raises:
            ExportBuildError: If the data dump or its serialization fails.
        """
        request_id = request.request_id
        scratch = Path(
            tempfile.mkdtemp(prefix=f"portability-{secrets.token_hex(8)}-", dir=self._scratch_dir)
        )
        try:
            try:
                document = await resolve(self._registry.data_dump(owner))
            except Exception as e:
                logger.exception("Data dump failed", extra={"request_id": str(request_id)})
                raise ExportBuildError(request_id, f"data retrieval failed: {e}") from e

            try:
                content = serialize_document(document)
            except (TypeError, ValueError) as e:
                raise ExportBuildError(request_id, f"serialization failed: {e}") from e

            entry_name = f"{request_id}.json"
            json_path = scratch / entry_name
            json_path.write_bytes(content)

            archive_path = scratch / f"{secrets.token_hex(16)}.zip"
            with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.write(json_path, arcname=entry_name)

            artifact = ExportArtifact(
                archive_path=archive_path,
                json_path=json_path,
                entry_name=entry_name,
                size_bytes=archive_path.stat().st_size,
                sha256=_sha256_file(archive_path),
            )
            logger.info(
                "Export archive built: request_id=%s, size_bytes=%d",
                request_id,
                artifact.size_bytes,
                extra={"request_id": str(request_id), "sha256": artifact.sha256},
            )

            yield artifact
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
            logger.debug("Scratch directory removed: %s", scratch)
