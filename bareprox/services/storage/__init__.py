"""
Storage-array client factory and exports.
"""
from bareprox.services.storage.base import (
    StorageClient,
    StorageError,
    StorageConnectionError,
    StorageNotFoundError,
    SnapshotLock,
    SnapshotResult,
    DeleteSnapshotResult,
    CloneResult,
    VolumeInfo,
    MountInfo,
    ReplicationStatus,
    retention_delta,
)
from bareprox.services.storage.ontap import OntapStorageClient


def create_storage_client(kind: str = "ontap", **options) -> StorageClient:
    """
    Factory function to create storage-array clients.

    Args:
        kind: Array family
        **options: Passed to the client constructor

    Returns:
        Initialized storage client

    Raises:
        StorageError: If the array family is not supported
    """
    if kind.lower() == "ontap":
        return OntapStorageClient(**options)
    raise StorageError(f"Unsupported storage type: {kind}")


__all__ = [
    "StorageClient",
    "StorageError",
    "StorageConnectionError",
    "StorageNotFoundError",
    "SnapshotLock",
    "SnapshotResult",
    "DeleteSnapshotResult",
    "CloneResult",
    "VolumeInfo",
    "MountInfo",
    "ReplicationStatus",
    "retention_delta",
    "OntapStorageClient",
    "create_storage_client",
]
