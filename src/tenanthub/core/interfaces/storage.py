"""Snapshot storage interface."""

from abc import ABC, abstractmethod
from pathlib import Path


class SnapshotStorage(ABC):
    """Durable copy of each instance's state file.

    Implementations: SnapshotStore (S3 / R2 / MinIO)
    """

    @abstractmethod
    def key_for(self, instance_id: str) -> str:
        """Deterministic object key for an instance."""
        ...

    @abstractmethod
    async def upload(self, instance_id: str, local_path: Path) -> None:
        ...

    @abstractmethod
    async def download(self, instance_id: str, output_path: Path) -> bool:
        """Fetch the snapshot into ``output_path``.

        Returns:
            False when no snapshot exists (first boot)
        """
        ...

    @abstractmethod
    async def exists(self, instance_id: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, instance_id: str) -> None:
        ...
