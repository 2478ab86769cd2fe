"""Snapshot bucket client management (S3 / R2 / MinIO)."""

import logging
from types import TracebackType

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError
from types_aiobotocore_s3 import S3Client

from tenanthub.app.config import StorageConfig, get_settings
from tenanthub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_session: aioboto3.Session | None = None

# botocore retries are disabled; with_retry owns the retry policy
_CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})


def _client_kwargs(storage: StorageConfig) -> dict:
    return {
        "endpoint_url": storage.endpoint_url or None,
        "aws_access_key_id": storage.access_key,
        "aws_secret_access_key": storage.secret_key,
        "region_name": storage.region,
        "config": _CLIENT_CONFIG,
    }


async def init_storage() -> None:
    global _session

    _session = aioboto3.Session()

    storage = get_settings().storage
    try:
        async with _session.client("s3", **_client_kwargs(storage)) as s3:
            try:
                await s3.head_bucket(Bucket=storage.bucket_name)
                logger.info(
                    "Snapshot bucket connected",
                    extra={
                        "event": LogEvent.S3_CONNECTED,
                        "bucket": storage.bucket_name,
                        "endpoint": storage.endpoint_url,
                    },
                )
            except ClientError:
                await s3.create_bucket(Bucket=storage.bucket_name)
                logger.info(
                    "Snapshot bucket created",
                    extra={
                        "event": LogEvent.S3_BUCKET_CREATED,
                        "bucket": storage.bucket_name,
                        "endpoint": storage.endpoint_url,
                    },
                )
    except Exception as e:
        logger.error(
            "Snapshot storage connection failed",
            extra={
                "event": LogEvent.S3_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
                "bucket": storage.bucket_name,
                "endpoint": storage.endpoint_url,
            },
        )
        raise


async def close_storage() -> None:
    global _session
    _session = None


class S3ClientContext:
    """Async context manager yielding a short-lived S3 client."""

    def __init__(self) -> None:
        self._context: object | None = None

    async def __aenter__(self) -> S3Client:
        if _session is None:
            raise RuntimeError("Storage not initialized")

        self._context = _session.client("s3", **_client_kwargs(get_settings().storage))
        return await self._context.__aenter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._context:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)


def get_s3_client() -> S3ClientContext:
    return S3ClientContext()
