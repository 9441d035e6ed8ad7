"""Utility exports for filesystem and concurrency helpers."""

from quality_gate.utils.concurrency import BoundedSemaphore, CancellationToken, WorkerPool
from quality_gate.utils.fs import atomic_write

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
]
