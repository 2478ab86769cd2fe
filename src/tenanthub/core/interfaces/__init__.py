"""Core interfaces for the control plane."""

from tenanthub.core.interfaces.runtime import (
    Endpoint,
    ExitCallback,
    InstanceRuntime,
    RuntimeHandle,
)
from tenanthub.core.interfaces.storage import SnapshotStorage

__all__ = [
    "Endpoint",
    "ExitCallback",
    "InstanceRuntime",
    "RuntimeHandle",
    "SnapshotStorage",
]
