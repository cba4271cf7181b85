"""S3-compatible storage of export archives.

Archives are uploaded under portability/<request_id>/<archive name> in a
single bucket. The object key is the reference kept on the request; it is
deleted when the request expires.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from uuid import UUID

    from portability.core.config import S3Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "portability"

# Metadata key for storing SHA-256 digest
DIGEST_METADATA_KEY = "sha256-digest"


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an archive does not exist."""


def artifact_key(request_id: UUID | str, archive_name: str) -> str:
    """Build the object key of a request's archive."""
    return f"{KEY_PREFIX}/{request_id}/{archive_name}"


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class ArtifactStorageClient:
    """Stores export archives in an S3-compatible bucket.

    The client uses synchronous boto3; archives are small single-file
    uploads made from worker jobs.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
        client: Any | None = None,
    ) -> None:
        """Initialize the storage client.

        Args:
            endpoint_url: S3-compatible endpoint URL, None for AWS.
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            bucket: Bucket holding the archives.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
            client: Pre-built boto3 S3 client.
        """
        self.bucket = bucket
        self._region = region

        if client is None:
            config = Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_retries, "mode": "standard"},
                signature_version="s3v4",
            )
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=config,
            )
        self._client = client

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ArtifactStorageClient:
        """Create a client from S3Settings."""
        return cls(
            endpoint_url=settings.endpoint or None,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            bucket=settings.bucket,
            region=settings.region,
        )

    def ensure_bucket(self) -> bool:
        """Create the bucket if it does not exist.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the bucket cannot be checked or created.
        """
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return False
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}", operation="head_bucket"
                ) from e

        try:
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=self.bucket)
            else:
                self._client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise StorageError(f"Failed to create bucket: {e}", operation="create_bucket") from e

        logger.info("Created bucket: %s", self.bucket)
        return True

    def store(self, key: str, path: Path | str) -> str:
        """Upload an archive.

        Args:
            key: Object key, see artifact_key().
            path: Local archive path.

        Returns:
            The object key, used as the request's attachment reference.

        Raises:
            StorageError: If the upload fails.
        """
        data = Path(path).read_bytes()
        digest = hashlib.sha256(data).hexdigest()

        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/zip",
                Metadata={DIGEST_METADATA_KEY: digest},
            )
        except ClientError as e:
            raise StorageError(f"Upload failed: {e}", key=key, operation="store") from e

        logger.info(
            "Archive stored: bucket=%s, key=%s, size_bytes=%d",
            self.bucket,
            key,
            len(data),
        )
        return key

    def delete(self, ref: str) -> None:
        """Delete an archive. A missing archive is not an error.

        Raises:
            StorageError: If the delete fails.
        """
        try:
            self._client.delete_object(Bucket=self.bucket, Key=ref)
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey"):
                logger.debug("Archive already absent: %s", ref)
                return
            raise StorageError(f"Delete failed: {e}", key=ref, operation="delete") from e

        logger.info("Archive deleted: bucket=%s, key=%s", self.bucket, ref)

    def exists(self, ref: str) -> bool:
        """Check whether an archive exists.

        Raises:
            StorageError: If the check fails for reasons other than not found.
        """
        try:
            self._client.head_object(Bucket=self.bucket, Key=ref)
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey"):
                return False
            raise StorageError(f"Existence check failed: {e}", key=ref, operation="exists") from e
        return True

    def get_digest(self, ref: str) -> str | None:
        """Return the SHA-256 digest recorded at upload time.

        Raises:
            ObjectNotFoundError: If the archive does not exist.
            StorageError: If the lookup fails.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=ref)
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey"):
                raise ObjectNotFoundError(
                    f"Archive not found: {ref}", key=ref, operation="get_digest"
                ) from e
            raise StorageError(
                f"Metadata lookup failed: {e}", key=ref, operation="get_digest"
            ) from e
        return response.get("Metadata", {}).get(DIGEST_METADATA_KEY)
