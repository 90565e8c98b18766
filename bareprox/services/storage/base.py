"""
Base storage-array client interface.

The orchestrators only talk to the array through :class:`StorageClient`:
snapshots of a backed-up volume, FlexClones used as restore staging areas,
NFS export policy plumbing for those clones, and SnapMirror replication.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from bareprox.core.exceptions import RemoteOperationError

logger = logging.getLogger(__name__)

RETENTION_UNITS = {
    "Hours": timedelta(hours=1),
    "Days": timedelta(days=1),
    "Weeks": timedelta(weeks=1),
}


def retention_delta(count: int, unit: str) -> timedelta:
    """
    Convert a retention count and unit to a duration.

    Raises:
        ValueError: If the unit is not Hours, Days or Weeks
    """
    try:
        return RETENTION_UNITS[unit] * int(count)
    except KeyError:
        raise ValueError(f"Unknown retention unit '{unit}'")


@dataclass
class SnapshotLock:
    """SnapLock expiry requested for a new snapshot."""
    count: int
    unit: str


@dataclass
class SnapshotResult:
    success: bool
    snapshot_name: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    expiry_time: Optional[datetime] = None


@dataclass
class DeleteSnapshotResult:
    success: bool
    error_message: Optional[str] = None
    not_found: bool = False

    @property
    def is_gone(self) -> bool:
        """True when the snapshot no longer exists, whether deleted now or absent before."""
        return self.success or self.not_found


@dataclass
class CloneResult:
    success: bool
    clone_volume_name: Optional[str] = None
    job_uuid: Optional[str] = None
    message: Optional[str] = None


@dataclass
class VolumeInfo:
    uuid: str
    name: Optional[str] = None
    svm_name: Optional[str] = None
    state: Optional[str] = None


@dataclass
class MountInfo:
    volume_name: str
    vserver: str
    mount_ip: str

    @property
    def mount_path(self) -> str:
        return f"{self.mount_ip}:/{self.volume_name}"


@dataclass
class ReplicationStatus:
    """Live state of a SnapMirror relationship."""
    uuid: str
    state: Optional[str] = None
    transfer_state: Optional[str] = None
    healthy: bool = True
    lag_time: Optional[str] = None
    source_volume: Optional[str] = None
    destination_volume: Optional[str] = None
    unhealthy_reasons: List[str] = field(default_factory=list)

    @property
    def is_in_sync(self) -> bool:
        return (self.state or "").lower() == "snapmirrored" and (self.transfer_state or "").lower() == "success"


class StorageClient(ABC):
    """Abstract base class for storage-array clients."""

    @abstractmethod
    async def create_snapshot(
        self,
        controller_id: int,
        volume_name: str,
        label: str,
        lock: Optional[SnapshotLock] = None,
    ) -> SnapshotResult:
        """
        Snapshot a volume.

        Args:
            controller_id: Controller owning the volume
            volume_name: Volume to snapshot
            label: SnapMirror label, also embedded in the snapshot name
            lock: SnapLock expiry, or None for an unlocked snapshot

        Returns:
            SnapshotResult with the generated snapshot name
        """
        pass

    @abstractmethod
    async def delete_snapshot(self, controller_id: int, volume_name: str, snapshot_name: str) -> DeleteSnapshotResult:
        """
        Delete a snapshot.

        Returns:
            DeleteSnapshotResult; ``not_found`` is set when the volume or
            snapshot no longer exists
        """
        pass

    @abstractmethod
    async def list_snapshots(self, controller_id: int, volume_name: str) -> List[str]:
        """Snapshot names of a volume (empty if the volume does not exist)."""
        pass

    @abstractmethod
    async def clone_volume_from_snapshot(
        self,
        controller_id: int,
        volume_name: str,
        snapshot_name: str,
        clone_name: str,
    ) -> CloneResult:
        """Create a FlexClone of ``volume_name`` from ``snapshot_name``."""
        pass

    @abstractmethod
    async def copy_export_policy(self, controller_id: int, source_volume: str, target_volume: str) -> bool:
        """Apply the source volume's export policy to the target once it is online."""
        pass

    @abstractmethod
    async def ensure_export_policy_on_secondary(
        self,
        policy_name: str,
        primary_controller_id: int,
        secondary_controller_id: int,
        svm_name: str,
    ) -> bool:
        """Create ``policy_name`` with its rules on the secondary SVM unless it exists."""
        pass

    @abstractmethod
    async def set_export_policy(self, controller_id: int, volume_name: str, policy_name: str) -> bool:
        pass

    @abstractmethod
    async def set_export_path(self, controller_id: int, volume_uuid: str, export_path: str) -> bool:
        pass

    @abstractmethod
    async def lookup_volume(self, controller_id: int, volume_name: str) -> Optional[VolumeInfo]:
        pass

    @abstractmethod
    async def get_volume_mount_info(self, controller_id: int, volume_name: str) -> Optional[MountInfo]:
        """First NFS data interface address serving the volume's SVM."""
        pass

    @abstractmethod
    async def delete_volume(self, controller_id: int, volume_name: str) -> bool:
        """Unexport and delete a volume."""
        pass

    @abstractmethod
    async def trigger_replication_update(self, controller_id: int, relation_uuid: str) -> bool:
        """Start a transfer on a SnapMirror relationship (``controller_id`` is the destination)."""
        pass

    @abstractmethod
    async def get_replication_relation(self, controller_id: int, relation_uuid: str) -> ReplicationStatus:
        """Live relationship state read from the destination controller."""
        pass


class StorageError(RemoteOperationError):
    """Base exception for storage-array operations."""
    pass


class StorageConnectionError(StorageError):
    """Exception raised when the array management endpoint is unreachable."""
    pass


class StorageNotFoundError(StorageError):
    """Exception raised when a volume, snapshot or policy does not exist."""
    pass
