"""
Backing-chain repair script rendering and execution.
"""
from unittest.mock import AsyncMock

from bareprox.models import ProxmoxCluster
from bareprox.services.proxmox.snapchains import SnapshotChainRepairer, load_script_body, render_repair_script
from bareprox.services.proxmox.ssh import CommandResult


def test_script_has_parameter_preamble():
    script = render_repair_script("nfs1", 205)

    assert script.startswith("set -euo pipefail\nstorage='nfs1'\nvmid=205\n\n")
    assert script.endswith(load_script_body())
    assert "qemu-img rebase -u" in script


def test_storage_name_is_quoted():
    script = render_repair_script("it's", 7)
    assert "storage='it'\"'\"'s'\n" in script


async def test_repair_runs_on_the_vm_node(inventory, session_factory):
    async with session_factory() as db:
        cluster = await db.get(ProxmoxCluster, inventory["cluster_id"])

    shell = AsyncMock()
    shell.run_script.return_value = CommandResult(exit_status=0, stdout="OK: chain repair attempted", stderr="")
    repairer = SnapshotChainRepairer(shell=shell, timeout=5)

    assert await repairer.repair(cluster, "pve2", "restore_17", 205)

    _, address, script = shell.run_script.await_args.args
    assert address == "10.0.0.12"
    assert "vmid=205" in script
    assert shell.run_script.await_args.kwargs == {"timeout": 5}


async def test_repair_failures_are_reported_not_raised(inventory, session_factory):
    async with session_factory() as db:
        cluster = await db.get(ProxmoxCluster, inventory["cluster_id"])

    shell = AsyncMock()
    shell.run_script.return_value = CommandResult(exit_status=3, stdout="", stderr="ERR: dir not found")
    repairer = SnapshotChainRepairer(shell=shell)

    assert not await repairer.repair(cluster, "pve2", "restore_17", 205)
    assert not await repairer.repair(cluster, "pve9", "restore_17", 205)
