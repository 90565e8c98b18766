"""
Repair of qcow2 backing-file chains after a restored VM changed id.

External snapshots on a ``snapshot-as-volume-chain`` storage reference their
backing images by file name. Once the image directory has been renamed from
the old VM id to the new one, those references dangle. The repair procedure
in ``scripts/repair_snapshot_chain.sh`` rebases every such overlay onto the
renamed candidate, runs idempotently, and only warns about images it cannot
fix.
"""
import logging
from pathlib import Path
from typing import Optional

from bareprox.models import ProxmoxCluster
from bareprox.services.proxmox.hosts import host_address, require_host
from bareprox.services.proxmox.ssh import RemoteShell, quote_bash

logger = logging.getLogger(__name__)

SCRIPT_PATH = Path(__file__).parent / "scripts" / "repair_snapshot_chain.sh"
REPAIR_TIMEOUT_SECONDS = 300


def load_script_body() -> str:
    return SCRIPT_PATH.read_text(encoding="utf-8")


def render_repair_script(storage_name: str, vmid: int) -> str:
    """
    Complete bash procedure for one VM on one storage.

    Args:
        storage_name: Proxmox storage id holding ``images/<vmid>``
        vmid: Numeric id of the restored VM

    Returns:
        Script text with the parameter preamble prepended
    """
    header = (
        "set -euo pipefail\n"
        f"storage={quote_bash(storage_name)}\n"
        f"vmid={int(vmid)}\n"
        "\n"
    )
    return header + load_script_body()


class SnapshotChainRepairer:
    """Runs the chain-repair procedure on the node hosting a VM."""

    def __init__(self, shell: Optional[RemoteShell] = None, timeout: float = REPAIR_TIMEOUT_SECONDS):
        self.shell = shell or RemoteShell()
        self.timeout = timeout

    async def repair(self, cluster: ProxmoxCluster, node: str, storage_name: str, vmid: int) -> bool:
        """
        Repair the backing chain of ``vmid`` on ``storage_name``.

        Args:
            cluster: Cluster owning the node
            node: Node name or address
            storage_name: Storage the VM's disks live on
            vmid: VM id

        Returns:
            True if the procedure exited 0; failures are logged, never raised
        """
        try:
            address = host_address(require_host(cluster, node))
            script = render_repair_script(storage_name, vmid)
            result = await self.shell.run_script(cluster, address, script, timeout=self.timeout)

            output = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
            if result.ok:
                logger.info(f"Chain repair for VM {vmid} on '{storage_name}' finished (rc=0)")
                if output:
                    logger.debug(output)
                return True

            logger.warning(
                f"Chain repair for VM {vmid} on '{storage_name}' exited rc={result.exit_status}: {output}"
            )
            return False
        except Exception as e:
            logger.error(f"Chain repair for VM {vmid} on '{storage_name}' failed: {e}")
            return False
