"""
VM reconstruction on a mounted clone.
"""
from unittest.mock import AsyncMock

import pytest

from bareprox.core.exceptions import RemoteOperationError
from bareprox.models import ProxmoxCluster, ProxmoxHost
from bareprox.services.proxmox.config_rewriter import parse_vm_config
from bareprox.services.proxmox.restore import (
    ProxmoxRestore,
    VmRebuildOptions,
    newest_real_snapshot,
    pick_rollback_target,
)
from bareprox.services.proxmox.service import ProxmoxSnapshot

CLONE = "restore_17_20261018100000"

DOCUMENT = parse_vm_config(
    "name: web\n"
    "net0: virtio=BC:24:11:AA:BB:CC,bridge=vmbr0\n"
    "scsi0: nfs1:101/vm-101-disk-0.qcow2,size=32G\n"
)

SNAPSHOTS = [
    ProxmoxSnapshot(name="current"),
    ProxmoxSnapshot(name="BareProx-daily_2026-10-18-02-00-00", snaptime=200),
    ProxmoxSnapshot(name="manual", snaptime=300),
]


@pytest.fixture
def host():
    return ProxmoxHost(hostname="pve2", host_address="10.0.0.12", is_online=True)


@pytest.fixture
def cluster(host):
    return ProxmoxCluster(name="lab", username="root@pam", hosts=[host])


@pytest.fixture
def proxmox():
    service = AsyncMock()
    service.get_next_vmid.return_value = 205
    service.upload_vm_config.return_value = True
    service.list_snapshots.return_value = []
    service.rollback_snapshot.return_value = True
    service.set_vm_network.return_value = True
    return service


@pytest.fixture
def repairer():
    fake = AsyncMock()
    fake.repair.return_value = True
    return fake


@pytest.fixture
def rebuilder(proxmox, repairer):
    return ProxmoxRestore(proxmox, repairer=repairer)


def test_rollback_target_prefers_backup_snapshots():
    assert pick_rollback_target(SNAPSHOTS).name == "BareProx-daily_2026-10-18-02-00-00"
    assert pick_rollback_target(SNAPSHOTS[::2]).name == "manual"
    assert pick_rollback_target([ProxmoxSnapshot(name="current")]) is None
    assert newest_real_snapshot(SNAPSHOTS).name == "manual"


async def test_restore_as_new_renames_and_uploads(rebuilder, proxmox, repairer, cluster, host):
    proxmox.list_snapshots.return_value = SNAPSHOTS
    options = VmRebuildOptions(new_vm_name="web-copy", rollback_snapshot=True, generate_new_mac_addresses=True)

    vmid = await rebuilder.restore_as_new(cluster, host, DOCUMENT, CLONE, options)

    assert vmid == 205
    proxmox.rename_vm_directory.assert_awaited_once_with(cluster, "10.0.0.12", CLONE, "101", "205")
    _, address, uploaded_vmid, text = proxmox.upload_vm_config.await_args.args
    assert (address, uploaded_vmid) == ("10.0.0.12", 205)
    assert f"scsi0: {CLONE}:205/vm-205-disk-0.qcow2,size=32G" in text
    assert "name: web-copy" in text

    repairer.repair.assert_awaited_once_with(cluster, "pve2", CLONE, 205)
    rollback_args = proxmox.rollback_snapshot.await_args
    assert rollback_args.args[-1] == "BareProx-daily_2026-10-18-02-00-00"
    assert rollback_args.kwargs == {"start": False}
    proxmox.delete_snapshot.assert_awaited_once_with(
        cluster, "pve2", "10.0.0.12", 205, "BareProx-daily_2026-10-18-02-00-00"
    )
    proxmox.set_vm_network.assert_awaited_once_with(cluster, "10.0.0.12", 205, "0", "virtio,bridge=vmbr0")


async def test_failed_upload_raises(rebuilder, proxmox, cluster, host):
    proxmox.upload_vm_config.return_value = False

    with pytest.raises(RemoteOperationError):
        await rebuilder.restore_as_new(cluster, host, DOCUMENT, CLONE, VmRebuildOptions())


async def test_restore_in_place_keeps_id(rebuilder, proxmox, repairer, cluster, host):
    vmid = await rebuilder.restore_in_place(cluster, host, DOCUMENT, CLONE, 101, VmRebuildOptions())

    assert vmid == 101
    proxmox.rename_vm_directory.assert_not_awaited()
    text = proxmox.upload_vm_config.await_args.args[3]
    assert f"scsi0: {CLONE}:101/vm-101-disk-0.qcow2,size=32G" in text
    assert f"storage: {CLONE}" in text
    repairer.repair.assert_not_awaited()
    proxmox.rollback_snapshot.assert_not_awaited()


async def test_post_restore_handling_never_raises(rebuilder, proxmox, cluster, host):
    proxmox.list_snapshots.side_effect = RemoteOperationError("node unreachable")

    await rebuilder.handle_post_restore_snapshots(cluster, host, CLONE, 205, rollback=True)

    proxmox.rollback_snapshot.assert_not_awaited()
