"""
VM reconstruction from a stored configuration on a mounted clone.

Two paths exist. A new VM gets the next free id: its image directory on the
clone is renamed and every id and storage reference is rewritten. Replacing
the original keeps the id and only moves disks to the clone storage. Both
paths then repair external snapshot chains and optionally roll back to the
backup snapshot.
"""
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from bareprox.core.exceptions import RemoteOperationError
from bareprox.models import ProxmoxCluster, ProxmoxHost
from bareprox.services.proxmox.config_rewriter import (
    build_replacement_config,
    build_restored_config,
    mac_regeneration_values,
    peek_old_vmid,
)
from bareprox.services.proxmox.hosts import host_address
from bareprox.services.proxmox.service import ProxmoxService, ProxmoxSnapshot
from bareprox.services.proxmox.snapchains import SnapshotChainRepairer

logger = logging.getLogger(__name__)

BACKUP_SNAPSHOT_PREFIX = "BareProx-"


@dataclass
class VmRebuildOptions:
    """Operator choices that shape the rebuilt VM."""
    new_vm_name: Optional[str] = None
    start_disconnected: bool = False
    generate_new_uuid: bool = False
    generate_new_mac_addresses: bool = False
    rollback_snapshot: bool = False


def pick_rollback_target(snapshots: List[ProxmoxSnapshot]) -> Optional[ProxmoxSnapshot]:
    """Newest ``BareProx-`` snapshot, else the newest snapshot other than ``current``."""
    by_age = sorted(snapshots, key=lambda s: s.snaptime, reverse=True)
    for snapshot in by_age:
        if snapshot.name.lower().startswith(BACKUP_SNAPSHOT_PREFIX.lower()):
            return snapshot
    return newest_real_snapshot(by_age)


def newest_real_snapshot(snapshots: List[ProxmoxSnapshot]) -> Optional[ProxmoxSnapshot]:
    candidates = [s for s in snapshots if s.name.lower() != "current"]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s.snaptime)


class ProxmoxRestore:
    """Rebuilds VMs from stored configurations."""

    def __init__(
        self,
        proxmox: Optional[ProxmoxService] = None,
        repairer: Optional[SnapshotChainRepairer] = None,
    ):
        self.proxmox = proxmox or ProxmoxService()
        self.repairer = repairer or SnapshotChainRepairer(self.proxmox.shell)

    async def restore_as_new(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        document: Mapping[str, Any],
        clone_storage: str,
        options: VmRebuildOptions,
    ) -> int:
        """
        Create a new VM from ``document`` with its disks on ``clone_storage``.

        Args:
            cluster: Target cluster
            host: Node that receives the VM
            document: Stored ``{"config": ..., "snapshots": ...}`` document
            clone_storage: Proxmox storage name of the mounted clone
            options: Naming, identity and network choices

        Returns:
            The id of the new VM

        Raises:
            ValidationFailure: If the document has no usable disk references
            RemoteOperationError: If renaming the image directory or uploading fails
        """
        address = host_address(host)
        new_vmid = await self.proxmox.get_next_vmid(cluster)

        old_vmid = peek_old_vmid(document)
        rewritten = build_restored_config(
            document,
            str(new_vmid),
            clone_storage,
            new_vm_name=options.new_vm_name,
            start_disconnected=options.start_disconnected,
            generate_new_uuid=options.generate_new_uuid,
        )

        await self.proxmox.rename_vm_directory(cluster, address, clone_storage, old_vmid, str(new_vmid))
        await self._upload(cluster, address, new_vmid, rewritten.text)
        logger.info(f"Created VM {new_vmid} from backup of VM {old_vmid} on {host.hostname}")

        await self.handle_post_restore_snapshots(
            cluster, host, clone_storage, new_vmid, options.rollback_snapshot
        )

        if options.generate_new_mac_addresses:
            await self.regenerate_mac_addresses(cluster, address, new_vmid, rewritten.payload)

        return new_vmid

    async def restore_in_place(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        document: Mapping[str, Any],
        clone_storage: str,
        vmid: int,
        options: VmRebuildOptions,
    ) -> int:
        """
        Rebuild a VM under its original id with its disks on ``clone_storage``.

        The original VM must already be removed. No renaming happens.
        """
        address = host_address(host)
        rewritten = build_replacement_config(
            document, str(vmid), clone_storage, start_disconnected=options.start_disconnected
        )
        await self._upload(cluster, address, int(rewritten.vmid), rewritten.text)
        logger.info(f"Rebuilt VM {rewritten.vmid} in place on {host.hostname}")

        await self.handle_post_restore_snapshots(
            cluster, host, clone_storage, int(rewritten.vmid), options.rollback_snapshot
        )
        return int(rewritten.vmid)

    async def _upload(self, cluster: ProxmoxCluster, address: str, vmid: int, text: str):
        if not await self.proxmox.upload_vm_config(cluster, address, vmid, text):
            raise RemoteOperationError(f"Uploading configuration for VM {vmid} failed.")

    async def handle_post_restore_snapshots(
        self,
        cluster: ProxmoxCluster,
        host: ProxmoxHost,
        storage_name: str,
        vmid: int,
        rollback: bool,
    ):
        """
        Repair snapshot chains and optionally roll back. Never raises.

        The chain is repaired when the VM has any snapshot besides
        ``current``. On rollback the target snapshot is deleted afterwards
        even if the rollback itself failed.
        """
        node = host.hostname
        address = host_address(host)
        try:
            snapshots = await self.proxmox.list_snapshots(cluster, node, address, vmid)

            if newest_real_snapshot(snapshots) is not None:
                if await self.repairer.repair(cluster, node, storage_name, vmid):
                    logger.info(f"Repaired external snapshot chain for VM {vmid}")
                else:
                    logger.warning(f"Snapshot chain repair failed for VM {vmid}; continuing")

            if not rollback:
                return

            target = pick_rollback_target(snapshots)
            if target is None:
                logger.info(f"No snapshot to roll back to for VM {vmid}")
                return

            if not await self.proxmox.rollback_snapshot(cluster, node, address, vmid, target.name, start=False):
                logger.warning(f"Rollback of VM {vmid} to '{target.name}' did not complete OK")

            try:
                await self.proxmox.delete_snapshot(cluster, node, address, vmid, target.name)
                logger.info(f"Deleted snapshot '{target.name}' after rollback on VM {vmid}")
            except Exception as e:
                logger.warning(f"Failed to delete snapshot '{target.name}' on VM {vmid}: {e}")
        except Exception as e:
            logger.warning(f"Post-restore snapshot handling skipped for VM {vmid}: {e}")

    async def regenerate_mac_addresses(
        self,
        cluster: ProxmoxCluster,
        address: str,
        vmid: int,
        payload: Mapping[str, str],
    ) -> int:
        """
        Re-set every NIC without its MAC so Proxmox assigns a fresh one.

        Returns:
            Number of adapters updated
        """
        updated = 0
        for index, definition in mac_regeneration_values(payload):
            if await self.proxmox.set_vm_network(cluster, address, vmid, index, definition):
                logger.info(f"Regenerated MAC for net{index} on VM {vmid}")
                updated += 1
            else:
                logger.warning(f"Failed to regenerate MAC for net{index} on VM {vmid}")
        return updated
