"""
Shared fixtures: a throwaway SQLite database per test and fake collaborators
standing in for the hypervisor and the storage array.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bareprox.core.encryption import CredentialCipher
from bareprox.models import (
    Base,
    NetappController,
    ProxmoxCluster,
    ProxmoxHost,
    SnapMirrorRelation,
)
from bareprox.services.jobs import JobWriter
from bareprox.services.proxmox import ProxmoxVm
from bareprox.services.storage import (
    CloneResult,
    DeleteSnapshotResult,
    MountInfo,
    ReplicationStatus,
    SnapshotResult,
    StorageClient,
    VolumeInfo,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bareprox-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def cipher():
    return CredentialCipher("unit-test-secret")


@pytest.fixture
def jobs(session_factory):
    return JobWriter(session_factory)


@pytest.fixture
def notifier():
    mock = AsyncMock()
    mock.notify_backup.return_value = True
    mock.notify_restore.return_value = True
    return mock


@pytest.fixture
async def inventory(session_factory, cipher):
    """One two-node cluster, a primary and a secondary controller and a SnapMirror relation."""
    async with session_factory() as db:
        cluster = ProxmoxCluster(name="lab", username="root@pam", password_enc=cipher.encrypt("secret"))
        cluster.hosts = [
            ProxmoxHost(hostname="pve1", host_address="10.0.0.11"),
            ProxmoxHost(hostname="pve2", host_address="10.0.0.12"),
        ]
        primary = NetappController(
            hostname="ontap-a", ip_address="10.0.1.10", is_primary=True,
            username="admin", password_enc=cipher.encrypt("pw"),
        )
        secondary = NetappController(
            hostname="ontap-b", ip_address="10.0.2.10", is_primary=False,
            username="admin", password_enc=cipher.encrypt("pw"),
        )
        db.add_all([cluster, primary, secondary])
        await db.flush()
        relation = SnapMirrorRelation(
            uuid="rel-1",
            source_controller_id=primary.id,
            source_volume="nfs1",
            destination_controller_id=secondary.id,
            destination_volume="nfs1_dest",
        )
        db.add(relation)
        await db.commit()
        return {
            "cluster_id": cluster.id,
            "primary_id": primary.id,
            "secondary_id": secondary.id,
            "relation_uuid": relation.uuid,
        }


class FakeProxmox:
    """Records hypervisor calls; VMs and power states are configured per test."""

    def __init__(self, vms: Optional[List[ProxmoxVm]] = None, power: Optional[Dict[int, str]] = None):
        self.vms = vms or []
        self.power = power or {}
        self.calls: List[tuple] = []
        self.snapshot_chain = False
        self.mount_ok = True
        self.task_ok = True

    async def is_snapshot_chain_active(self, cluster, storage_name):
        return self.snapshot_chain

    async def get_vms_on_storage(self, cluster, storage_name):
        return list(self.vms)

    async def get_vm_status(self, cluster, node, address, vmid):
        return self.power.get(vmid, "running")

    async def pause_vm(self, cluster, node, address, vmid):
        self.calls.append(("pause", vmid))
        return True

    async def unpause_vm(self, cluster, node, address, vmid):
        self.calls.append(("unpause", vmid))
        return True

    async def create_snapshot(self, cluster, node, address, vmid, name, description, with_memory=False):
        self.calls.append(("snapshot", vmid, name))
        return f"UPID:{node}:{vmid}"

    async def wait_for_task(self, cluster, node, address, upid, timeout=None, cancel_event=None):
        self.calls.append(("wait_task", upid))
        return self.task_ok

    async def delete_snapshot(self, cluster, node, address, vmid, name):
        self.calls.append(("delete_snapshot", vmid, name))

    async def get_vm_config(self, cluster, address, vmid):
        return {"name": f"vm{vmid}", "scsi0": f"nfs1:{vmid}/vm-{vmid}-disk-0.qcow2,size=32G"}

    async def mount_nfs_storage(self, cluster, node, address, storage_name, server, export,
                                snapshot_chain_active=False):
        self.calls.append(("mount", node, storage_name))
        return self.mount_ok

    async def unmount_nfs_storage(self, cluster, storage_name):
        self.calls.append(("unmount", storage_name))

    async def shutdown_and_remove_vm(self, cluster, node, address, vmid):
        self.calls.append(("shutdown_remove", node, vmid))

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeStorage(StorageClient):
    """In-memory stand-in for the storage array."""

    def __init__(self):
        self.snapshots: Dict[tuple, List[str]] = {}
        self.calls: List[tuple] = []
        self.snapshot_ok = True
        self.clone_ok = True
        self.trigger_ok = True
        self.in_sync = True
        self.delete_result: Optional[DeleteSnapshotResult] = None
        self.unreachable: Set[int] = set()
        self.snapshot_name = "nfs1_daily_2026-10-18-10-00-00"

    async def create_snapshot(self, controller_id, volume_name, label, lock=None):
        self.calls.append(("create_snapshot", controller_id, volume_name, label, lock))
        if not self.snapshot_ok:
            return SnapshotResult(success=False, error_message="snapshot failed")
        self.snapshots.setdefault((controller_id, volume_name), []).append(self.snapshot_name)
        return SnapshotResult(
            success=True, snapshot_name=self.snapshot_name, created_at=datetime.now(timezone.utc)
        )

    async def delete_snapshot(self, controller_id, volume_name, snapshot_name):
        self.calls.append(("delete_snapshot", controller_id, volume_name, snapshot_name))
        names = self.snapshots.get((controller_id, volume_name), [])
        if self.delete_result is not None:
            if self.delete_result.is_gone and snapshot_name in names:
                names.remove(snapshot_name)
            return self.delete_result
        if snapshot_name not in names:
            return DeleteSnapshotResult(success=False, not_found=True, error_message="not found")
        names.remove(snapshot_name)
        return DeleteSnapshotResult(success=True)

    async def list_snapshots(self, controller_id, volume_name):
        if controller_id in self.unreachable:
            raise ConnectionError(f"controller {controller_id} unreachable")
        return list(self.snapshots.get((controller_id, volume_name), []))

    async def clone_volume_from_snapshot(self, controller_id, volume_name, snapshot_name, clone_name):
        self.calls.append(("clone", controller_id, volume_name, snapshot_name, clone_name))
        if not self.clone_ok:
            return CloneResult(success=False, message="clone failed")
        return CloneResult(success=True, clone_volume_name=clone_name)

    async def copy_export_policy(self, controller_id, source_volume, target_volume):
        self.calls.append(("copy_export_policy", controller_id, source_volume, target_volume))
        return True

    async def ensure_export_policy_on_secondary(self, policy_name, primary_controller_id,
                                                secondary_controller_id, svm_name):
        self.calls.append(("ensure_policy", policy_name, secondary_controller_id, svm_name))
        return True

    async def set_export_policy(self, controller_id, volume_name, policy_name):
        self.calls.append(("set_export_policy", controller_id, volume_name, policy_name))
        return True

    async def set_export_path(self, controller_id, volume_uuid, export_path):
        self.calls.append(("set_export_path", controller_id, volume_uuid, export_path))
        return True

    async def lookup_volume(self, controller_id, volume_name):
        return VolumeInfo(uuid=f"uuid-{volume_name}", name=volume_name, svm_name="svm1")

    async def get_volume_mount_info(self, controller_id, volume_name):
        return MountInfo(volume_name=volume_name, vserver="svm1", mount_ip="10.0.1.50")

    async def delete_volume(self, controller_id, volume_name):
        self.calls.append(("delete_volume", controller_id, volume_name))
        return True

    async def trigger_replication_update(self, controller_id, relation_uuid):
        self.calls.append(("trigger", controller_id, relation_uuid))
        return self.trigger_ok

    async def get_replication_relation(self, controller_id, relation_uuid):
        if self.in_sync:
            return ReplicationStatus(uuid=relation_uuid, state="snapmirrored", transfer_state="success")
        return ReplicationStatus(uuid=relation_uuid, state="snapmirrored", transfer_state="transferring")

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def storage():
    return FakeStorage()
