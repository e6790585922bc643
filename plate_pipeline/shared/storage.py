"""Artifact store: persists processed images to S3-compatible storage."""

from __future__ import annotations

import asyncio
from typing import Protocol

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

from plate_pipeline.config import Settings, get_settings
from plate_pipeline.observability import get_logger

logger = get_logger("storage")

# S3 error codes that will not go away by trying again
PERMANENT_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "InvalidAccessKeyId",
        "InvalidArgument",
        "InvalidBucketName",
        "InvalidObjectState",
        "KeyTooLongError",
        "NoSuchBucket",
        "SignatureDoesNotMatch",
        "403",
        "404",
    }
)


class ArtifactStoreError(Exception):
    """Base class for upload failures."""

    transient = False


class TransientStoreError(ArtifactStoreError):
    """Network failure, throttling or a server-side error."""

    transient = True


class PermanentStoreError(ArtifactStoreError):
    """Invalid key, denied access, missing bucket or unreadable local file."""

    pass


class ArtifactStore(Protocol):
    """Uploads a local file and returns a stable remote reference."""

    async def upload(self, local_path: str, destination_key: str) -> str: ...


def build_destination_key(base_path: str, file_name: str) -> str:
    """Destination key: the configured base path followed by the file name."""
    return f"{base_path}{file_name}"


def _client_error_code(error: BaseException | None) -> str | None:
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return None


def classify_error(error: BaseException) -> ArtifactStoreError:
    """Map a boto3/botocore/OS exception to a transient or permanent store error."""
    if isinstance(error, ArtifactStoreError):
        return error

    # upload_file wraps the ClientError raised by the transfer manager
    cause = error
    if isinstance(error, S3UploadFailedError):
        cause = error.__cause__ or error.__context__ or error

    code = _client_error_code(cause)
    if code is not None:
        if code in PERMANENT_ERROR_CODES:
            return PermanentStoreError(f"{code}: {cause}")
        return TransientStoreError(f"{code}: {cause}")

    if isinstance(cause, (NoCredentialsError, PartialCredentialsError, ParamValidationError)):
        return PermanentStoreError(str(cause))
    if isinstance(cause, OSError):
        # Local file missing or unreadable
        return PermanentStoreError(f"{type(cause).__name__}: {cause}")
    if isinstance(cause, (BotoCoreError, S3UploadFailedError)):
        return TransientStoreError(str(cause))
    return TransientStoreError(f"{type(cause).__name__}: {cause}")


class S3ArtifactStore:
    """Artifact store backed by a boto3 S3 client.

    boto3 clients are thread-safe, so one client is shared by every worker;
    each upload runs in a thread so it only suspends the calling worker.
    """

    def __init__(self, settings: Settings | None = None, client=None):
        settings = settings or get_settings()
        self.bucket = settings.s3_bucket
        self.s3_client = client or boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            config=Config(
                connect_timeout=settings.s3_connect_timeout,
                read_timeout=settings.s3_read_timeout,
                retries={"max_attempts": settings.s3_max_attempts, "mode": "standard"},
                signature_version="s3v4",
            ),
        )

    async def verify(self) -> None:
        """Check the bucket exists and is reachable (called at worker startup)."""
        try:
            await asyncio.to_thread(self.s3_client.head_bucket, Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise classify_error(e) from e
        logger.info("bucket_verified", bucket=self.bucket)

    async def upload(self, local_path: str, destination_key: str) -> str:
        """Upload `local_path` to `destination_key` and return the key."""
        try:
            await asyncio.to_thread(
                self.s3_client.upload_file, local_path, self.bucket, destination_key
            )
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
            raise classify_error(e) from e

        logger.debug("artifact_uploaded", bucket=self.bucket, key=destination_key)
        return destination_key
