"""
Proxmox VM operations used by the backup and restore workflows.

API calls go through :class:`ProxmoxClient`; file-level operations on the
nodes (reading and uploading ``.conf`` files, renaming image directories,
``qm set``) go through :class:`RemoteShell`.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from bareprox.core.config import settings
from bareprox.core.exceptions import (
    OperationTimeout,
    RemoteOperationError,
    ValidationFailure,
)
from bareprox.models import ProxmoxCluster
from bareprox.services.proxmox.client import ProxmoxClient
from bareprox.services.proxmox.config_rewriter import DISK_KEY_RE, parse_vm_config
from bareprox.services.proxmox.hosts import host_address, queryable_hosts
from bareprox.services.proxmox.ssh import RemoteShell, quote_bash

logger = logging.getLogger(__name__)

NFS_CONTENT_TYPES = "images,backup,iso,vztmpl"


@dataclass
class ProxmoxVm:
    """A VM as seen during storage discovery."""
    vmid: int
    name: str
    node: str
    address: str


@dataclass
class ProxmoxSnapshot:
    """One entry of a VM's snapshot list."""
    name: str
    snaptime: int = 0
    vmstate: int = 0
    description: Optional[str] = None


def _truthy_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return False


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ProxmoxService:
    """Hypervisor collaborator of the orchestrators."""

    def __init__(
        self,
        client: Optional[ProxmoxClient] = None,
        shell: Optional[RemoteShell] = None,
        poll_interval: Optional[float] = None,
        mount_verify_attempts: Optional[int] = None,
        mount_verify_interval: float = 1.0,
    ):
        self.client = client or ProxmoxClient()
        self.shell = shell or RemoteShell()
        self.poll_interval = settings.PROXMOX_TASK_POLL_SECONDS if poll_interval is None else poll_interval
        self.mount_verify_attempts = mount_verify_attempts or settings.PROXMOX_MOUNT_VERIFY_ATTEMPTS
        self.mount_verify_interval = mount_verify_interval
        self.snapshot_timeout = settings.PROXMOX_SNAPSHOT_TIMEOUT_MINUTES * 60
        self.shutdown_timeout = settings.PROXMOX_SHUTDOWN_TIMEOUT_MINUTES * 60

    def _url(self, address: str, path: str) -> str:
        return self.client.build_url(address, path)

    # ------------------------------------------------------------------ #
    # Inventory
    # ------------------------------------------------------------------ #

    async def get_vms_on_storage(self, cluster: ProxmoxCluster, storage_name: str) -> List[ProxmoxVm]:
        """
        VMs with at least one disk on ``storage_name``.

        Every queryable node is listed; a node that cannot be listed is
        logged and skipped.

        Args:
            cluster: Cluster to search
            storage_name: Proxmox storage id (matched case-insensitively)

        Returns:
            Eligible VMs in node order
        """
        wanted = storage_name.lower()
        result: List[ProxmoxVm] = []

        for host in queryable_hosts(cluster):
            node = host.hostname
            address = host_address(host)
            try:
                vms = await self.client.get_json(cluster, self._url(address, f"nodes/{node}/qemu")) or []
            except Exception as e:
                logger.warning(f"Failed to list VMs on node {node}: {e}")
                continue

            for vm in vms:
                vmid = str(vm.get("vmid", ""))
                if not vmid.isdigit():
                    continue
                name = vm.get("name") or f"VM {vmid}"

                try:
                    config = await self.client.get_json(
                        cluster, self._url(address, f"nodes/{node}/qemu/{vmid}/config")
                    ) or {}
                except Exception as e:
                    logger.warning(f"Failed to read config of VM {vmid} on {node}: {e}")
                    continue

                for key, value in config.items():
                    if not DISK_KEY_RE.match(key) or not isinstance(value, str):
                        continue
                    if value.split(":", 1)[0].strip().lower() == wanted:
                        result.append(ProxmoxVm(vmid=int(vmid), name=name, node=node, address=address))
                        break

        logger.debug(f"Found {len(result)} VM(s) on storage '{storage_name}'")
        return result

    async def get_vm_status(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int) -> str:
        """Power state (``running``, ``stopped``, ...) of a VM."""
        data = await self.client.get_json(
            cluster, self._url(address, f"nodes/{node}/qemu/{vmid}/status/current")
        ) or {}
        return str(data.get("status") or "")

    async def pause_vm(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int) -> bool:
        """
        Suspend a running VM.

        Returns:
            True if the VM was running and a suspend was issued
        """
        if await self.get_vm_status(cluster, node, address, vmid) != "running":
            return False
        await self.client.send(cluster, "POST", self._url(address, f"nodes/{node}/qemu/{vmid}/status/suspend"))
        logger.info(f"Paused VM {vmid} on {node}")
        return True

    async def unpause_vm(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int) -> bool:
        """Resume a VM only if QEMU reports it paused."""
        data = await self.client.get_json(
            cluster, self._url(address, f"nodes/{node}/qemu/{vmid}/status/current")
        ) or {}
        if str(data.get("qmpstatus") or "") != "paused":
            return False
        await self.client.send(cluster, "POST", self._url(address, f"nodes/{node}/qemu/{vmid}/status/resume"))
        logger.info(f"Resumed VM {vmid} on {node}")
        return True

    async def get_vm_config(self, cluster: ProxmoxCluster, address: str, vmid: int) -> Dict[str, Any]:
        """
        Read a VM's ``.conf`` from the node and parse it.

        Raises:
            RemoteOperationError: If the file cannot be read
        """
        result = await self.shell.run_on(cluster, address, f"cat /etc/pve/qemu-server/{int(vmid)}.conf")
        if not result.ok:
            raise RemoteOperationError(
                f"Failed to read config of VM {vmid} on {address}: {result.stderr.strip()}"
            )
        return parse_vm_config(result.stdout)

    async def get_next_vmid(self, cluster: ProxmoxCluster) -> int:
        data = await self.client.get_json(cluster, "api2/json/cluster/nextid")
        try:
            return int(data)
        except (TypeError, ValueError):
            raise RemoteOperationError(f"Unexpected response from cluster/nextid: {data!r}")

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    async def list_snapshots(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int) -> List[ProxmoxSnapshot]:
        data = await self.client.get_json(cluster, self._url(address, f"nodes/{node}/qemu/{vmid}/snapshot"))
        if not isinstance(data, list):
            return []
        return [
            ProxmoxSnapshot(
                name=str(item.get("name") or ""),
                snaptime=_as_int(item.get("snaptime")),
                vmstate=_as_int(item.get("vmstate")),
                description=item.get("description") if isinstance(item.get("description"), str) else None,
            )
            for item in data
        ]

    async def create_snapshot(
        self,
        cluster: ProxmoxCluster,
        node: str,
        address: str,
        vmid: int,
        name: str,
        description: str,
        with_memory: bool = False,
    ) -> Optional[str]:
        """
        Start a VM snapshot.

        Returns:
            UPID of the snapshot task
        """
        response = await self.client.send(
            cluster,
            "POST",
            self._url(address, f"nodes/{node}/qemu/{vmid}/snapshot"),
            data={"snapname": name, "description": description, "vmstate": "1" if with_memory else "0"},
        )
        return (response.json() or {}).get("data")

    async def delete_snapshot(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int, name: str):
        await self.client.send(
            cluster, "DELETE", self._url(address, f"nodes/{node}/qemu/{vmid}/snapshot/{quote(name, safe='')}")
        )

    async def wait_for_task(
        self,
        cluster: ProxmoxCluster,
        node: str,
        address: str,
        upid: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        return await self.client.wait_for_task(
            cluster, node, address, upid, timeout or self.snapshot_timeout, cancel_event=cancel_event
        )

    async def rollback_snapshot(
        self,
        cluster: ProxmoxCluster,
        node: str,
        address: str,
        vmid: int,
        name: str,
        start: bool = False,
    ) -> bool:
        """
        Roll a VM back to a snapshot and wait for the task.

        Never raises; failures are logged and reported as False.
        """
        url = self._url(address, f"nodes/{node}/qemu/{vmid}/snapshot/{quote(name, safe='')}/rollback")
        try:
            response = await self.client.send(cluster, "POST", url, data={"start": "1" if start else "0"})
            upid = (response.json() or {}).get("data")
            if not upid:
                logger.warning(f"No UPID returned for rollback of VM {vmid} to '{name}'")
                return False
            if not await self.wait_for_task(cluster, node, address, upid):
                logger.warning(f"Rollback task of VM {vmid} to '{name}' did not complete OK")
                return False
            return True
        except Exception as e:
            logger.warning(f"Rollback of VM {vmid} to '{name}' failed: {e}")
            return False

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #

    async def is_snapshot_chain_active(self, cluster: ProxmoxCluster, storage_name: str) -> bool:
        """Whether the storage is configured with ``snapshot-as-volume-chain``."""
        data = await self.client.get_json(cluster, f"api2/json/storage/{quote(storage_name, safe='')}") or {}
        return _truthy_flag(data.get("snapshot-as-volume-chain"))

    async def mount_nfs_storage(
        self,
        cluster: ProxmoxCluster,
        node: str,
        address: str,
        storage_name: str,
        server_ip: str,
        export_path: str,
        snapshot_chain_active: bool = False,
    ) -> bool:
        """
        Register an NFS export as Proxmox storage and wait until it is usable.

        The registration call's own errors are ignored (the storage may
        already exist); readiness is decided by polling its status.

        Returns:
            True once the storage reports active with capacity and its
            content listing succeeds
        """
        form = {
            "type": "nfs",
            "storage": storage_name,
            "server": server_ip,
            "export": export_path,
            "content": NFS_CONTENT_TYPES,
            "options": "vers=3",
            "snapshot-as-volume-chain": "1" if snapshot_chain_active else "0",
        }
        try:
            await self.client.send(cluster, "POST", self._url(address, "storage"), data=form)
        except Exception as e:
            logger.warning(f"Storage registration for '{storage_name}' reported: {e}")

        storage_url = self._url(address, f"nodes/{node}/storage/{quote(storage_name, safe='')}")
        status_url = f"{storage_url}/status"
        for attempt in range(self.mount_verify_attempts):
            try:
                status = await self.client.get_json(cluster, status_url) or {}
                state = str(status.get("state") or "")
                if (
                    _truthy_flag(status.get("active"))
                    and _as_int(status.get("total")) > 0
                    and state in ("", "available")
                ):
                    await self.client.send(cluster, "GET", f"{storage_url}/content")
                    logger.info(f"Storage '{storage_name}' mounted on {node}")
                    return True
            except Exception as e:
                logger.debug(f"Storage '{storage_name}' not ready on {node} (attempt {attempt + 1}): {e}")
            await asyncio.sleep(self.mount_verify_interval)

        logger.warning(f"Storage '{storage_name}' did not become available on {node}")
        return False

    async def unmount_nfs_storage(self, cluster: ProxmoxCluster, storage_name: str):
        """
        Remove the storage definition, then the mount point on every node.

        The mount point is only removed once it is no longer mounted, and
        ``rmdir`` refuses to delete a directory that still has content.
        """
        await self.client.send(cluster, "DELETE", f"api2/json/storage/{quote(storage_name, safe='')}")
        mount_point = quote_bash(f"/mnt/pve/{storage_name}")
        command = (
            f"if mountpoint -q {mount_point}; then umount {mount_point}; fi"
            f" && if [ -d {mount_point} ]; then rmdir {mount_point}; fi"
        )
        for host in cluster.hosts or []:
            address = host_address(host)
            try:
                result = await self.shell.run_on(cluster, address, command)
                if not result.ok:
                    logger.warning(f"Cleanup of {mount_point} on {host.hostname} exited {result.exit_status}")
            except Exception as e:
                logger.warning(f"Cleanup of {mount_point} on {host.hostname} failed: {e}")

    # ------------------------------------------------------------------ #
    # VM lifecycle
    # ------------------------------------------------------------------ #

    async def shutdown_and_remove_vm(self, cluster: ProxmoxCluster, node: str, address: str, vmid: int):
        """
        Stop a VM if it runs and purge it.

        Raises:
            OperationTimeout: If the VM is still running after the shutdown ceiling
        """
        if await self.get_vm_status(cluster, node, address, vmid) == "running":
            await self.client.send(cluster, "POST", self._url(address, f"nodes/{node}/qemu/{vmid}/status/stop"))

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.shutdown_timeout
            while await self.get_vm_status(cluster, node, address, vmid) != "stopped":
                if loop.time() >= deadline:
                    raise OperationTimeout(f"VM {vmid} did not stop within {self.shutdown_timeout}s")
                await asyncio.sleep(self.poll_interval)

        await self.client.send(cluster, "DELETE", self._url(address, f"nodes/{node}/qemu/{vmid}?purge=1"))
        logger.info(f"Removed VM {vmid} from {node}")

    async def rename_vm_directory(
        self,
        cluster: ProxmoxCluster,
        address: str,
        storage_name: str,
        old_vmid: str,
        new_vmid: str,
    ) -> bool:
        """
        Rename ``images/<old>`` to ``images/<new>`` on a storage, renaming the files inside.

        Raises:
            ValidationFailure: If either id is not numeric
            RemoteOperationError: If the remote script fails
        """
        old_vmid, new_vmid = str(old_vmid).strip(), str(new_vmid).strip()
        if not old_vmid.isdigit() or not new_vmid.isdigit():
            raise ValidationFailure(f"VM ids must be numeric (got '{old_vmid}' and '{new_vmid}').")
        if old_vmid == new_vmid:
            return True

        script = RENAME_SCRIPT_HEADER.format(
            storage=quote_bash(storage_name), old=old_vmid, new=new_vmid
        ) + RENAME_SCRIPT_BODY
        result = await self.shell.run_script(cluster, address, script)
        if not result.ok:
            raise RemoteOperationError(
                f"Renaming images/{old_vmid} to images/{new_vmid} on '{storage_name}' failed "
                f"(exit {result.exit_status}): {(result.stderr or result.stdout).strip()}"
            )
        logger.debug(result.stdout.strip())
        return True

    async def upload_vm_config(self, cluster: ProxmoxCluster, address: str, vmid: int, content: str) -> bool:
        result = await self.shell.write_file(cluster, address, f"/etc/pve/qemu-server/{int(vmid)}.conf", content)
        if not result.ok:
            logger.error(f"Uploading config for VM {vmid} to {address} failed: {result.stderr.strip()}")
        return result.ok

    async def set_vm_network(self, cluster: ProxmoxCluster, address: str, vmid: int, index: str, definition: str) -> bool:
        """Replace one network adapter definition through ``qm set``."""
        command = f"qm set {int(vmid)} -net{index} {quote_bash(definition)}"
        result = await self.shell.run_on(cluster, address, command)
        if not result.ok:
            logger.warning(f"'{command}' exited {result.exit_status}: {result.stderr.strip()}")
        return result.ok


RENAME_SCRIPT_HEADER = """set -euo pipefail
export LC_ALL=C
storage={storage}
oldid={old}
newid={new}
"""

RENAME_SCRIPT_BODY = r"""
base=""
if [ -d "/mnt/pve/$storage/images/$oldid" ]; then
  base="/mnt/pve/$storage"
else
  conf_path="$(pvesm config "$storage" 2>/dev/null | awk -F': ' '/^path: /{print $2}')" || true
  [ -n "$conf_path" ] && base="$conf_path"
fi
[ -z "$base" ] && { echo "ERR: cannot resolve path for storage '$storage'" >&2; exit 2; }

src="$base/images/$oldid"
dst="$base/images/$newid"
[ -d "$src" ] || { echo "ERR: source dir not found: $src" >&2; exit 3; }
[ -e "$dst" ] && { echo "ERR: destination exists: $dst" >&2; exit 4; }

mv -- "$src" "$dst"
cd "$dst"
for f in *; do
  [ -e "$f" ] || continue
  case "$f" in
    *"$oldid"*)
      b="${f//$oldid/$newid}"
      mv -T -- "$f" "$b"
      echo "REN: $f -> $b"
      ;;
  esac
done
echo "OK: renamed directory $src -> $dst"
"""
