"""Shared async, hashing and filesystem helpers."""

from policy_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    default_worker_count,
)
from policy_orchestrator.utils.fs import atomic_write
from policy_orchestrator.utils.hashing import sha256_file, sha256_json, sha256_text

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "default_worker_count",
    "sha256_file",
    "sha256_json",
    "sha256_text",
]
