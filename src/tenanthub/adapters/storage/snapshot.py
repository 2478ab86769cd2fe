"""S3 snapshot store for instance state files.

Key layout: {prefix}/{instance_id}/pb_data.db

- Uploads replace the single snapshot object (last write wins)
- Downloads land in a sibling temp file and are renamed into place, so a
  partial transfer never replaces the previous state file
- Transient errors are retried with exponential backoff
"""

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from tenanthub.core.errors import SnapshotTransferError
from tenanthub.core.interfaces import SnapshotStorage
from tenanthub.core.logging_schema import Component, ErrorClass, LogEvent
from tenanthub.core.retryable import s3_error_code, with_retry
from tenanthub.infra.s3 import get_s3_client

logger = logging.getLogger(__name__)

SNAPSHOT_FILENAME = "pb_data.db"

_MISSING_CODES = frozenset({"NoSuchKey", "NotFound", "404"})

ClientFactory = Callable[[], AbstractAsyncContextManager[Any]]


def _is_missing(exc: ClientError) -> bool:
    return s3_error_code(exc) in _MISSING_CODES


class SnapshotStore(SnapshotStorage):
    """Snapshot storage backed by one S3 bucket."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "instances",
        client_factory: ClientFactory = get_s3_client,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._client_factory = client_factory
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

    def key_for(self, instance_id: str) -> str:
        return f"{self._prefix}/{instance_id}/{SNAPSHOT_FILENAME}"

    async def _retry(self, coro_factory):
        return await with_retry(
            coro_factory,
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
        )

    async def upload(self, instance_id: str, local_path: Path) -> None:
        """Upload ``local_path`` as the instance snapshot.

        Raises:
            SnapshotTransferError: On read failure or exhausted retries
        """
        key = self.key_for(instance_id)
        try:
            body = await asyncio.to_thread(Path(local_path).read_bytes)

            async def _put() -> None:
                async with self._client_factory() as s3:
                    await s3.put_object(Bucket=self._bucket, Key=key, Body=body)

            await self._retry(_put)
        except (ClientError, BotoCoreError, OSError) as exc:
            self._log_failure("upload", instance_id, key, exc)
            raise SnapshotTransferError(f"Snapshot upload failed for {instance_id}") from exc

        logger.info(
            "Snapshot uploaded",
            extra={
                "event": LogEvent.SNAPSHOT_UPLOADED,
                "component": Component.SNAPSHOT,
                "instance_id": instance_id,
                "key": key,
                "size_bytes": len(body),
            },
        )

    async def download(self, instance_id: str, output_path: Path) -> bool:
        """Download the snapshot into ``output_path``.

        Returns:
            False when no snapshot exists (first boot)

        Raises:
            SnapshotTransferError: Any failure other than a missing object
        """
        key = self.key_for(instance_id)
        output_path = Path(output_path)

        async def _get() -> bytes | None:
            async with self._client_factory() as s3:
                try:
                    resp = await s3.get_object(Bucket=self._bucket, Key=key)
                except ClientError as exc:
                    if _is_missing(exc):
                        return None
                    raise
                return await resp["Body"].read()

        try:
            data = await self._retry(_get)
            if data is None:
                logger.info(
                    "No snapshot found",
                    extra={
                        "event": LogEvent.SNAPSHOT_MISSING,
                        "component": Component.SNAPSHOT,
                        "instance_id": instance_id,
                        "key": key,
                    },
                )
                return False
            await asyncio.to_thread(_write_atomic, output_path, data)
        except (ClientError, BotoCoreError, OSError) as exc:
            self._log_failure("download", instance_id, key, exc)
            raise SnapshotTransferError(f"Snapshot download failed for {instance_id}") from exc

        logger.info(
            "Snapshot downloaded",
            extra={
                "event": LogEvent.SNAPSHOT_DOWNLOADED,
                "component": Component.SNAPSHOT,
                "instance_id": instance_id,
                "key": key,
                "size_bytes": len(data),
            },
        )
        return True

    async def exists(self, instance_id: str) -> bool:
        key = self.key_for(instance_id)

        async def _head() -> bool:
            async with self._client_factory() as s3:
                try:
                    await s3.head_object(Bucket=self._bucket, Key=key)
                except ClientError as exc:
                    if _is_missing(exc):
                        return False
                    raise
                return True

        try:
            return await self._retry(_head)
        except (ClientError, BotoCoreError) as exc:
            self._log_failure("head", instance_id, key, exc)
            raise SnapshotTransferError(f"Snapshot lookup failed for {instance_id}") from exc

    async def delete(self, instance_id: str) -> None:
        """Delete the snapshot. Deleting a missing object succeeds."""
        key = self.key_for(instance_id)

        async def _delete() -> None:
            async with self._client_factory() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)

        try:
            await self._retry(_delete)
        except (ClientError, BotoCoreError) as exc:
            if isinstance(exc, ClientError) and _is_missing(exc):
                return
            self._log_failure("delete", instance_id, key, exc)
            raise SnapshotTransferError(f"Snapshot delete failed for {instance_id}") from exc

        logger.info(
            "Snapshot deleted",
            extra={
                "event": LogEvent.SNAPSHOT_DELETED,
                "component": Component.SNAPSHOT,
                "instance_id": instance_id,
                "key": key,
            },
        )

    def _log_failure(self, op: str, instance_id: str, key: str, exc: Exception) -> None:
        logger.error(
            "Snapshot %s failed: %s",
            op,
            exc,
            extra={
                "event": LogEvent.S3_ERROR,
                "component": Component.SNAPSHOT,
                "error_class": ErrorClass.TRANSIENT,
                "instance_id": instance_id,
                "key": key,
                "error_type": type(exc).__name__,
            },
        )


def _write_atomic(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f".{target.name}.part")
    try:
        tmp.write_bytes(data)
        os.replace(tmp, target)
    finally:
        tmp.unlink(missing_ok=True)
