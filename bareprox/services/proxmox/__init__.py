"""
Proxmox VE integration: API client, node shell access, VM operations,
configuration rewriting and restore reconstruction.
"""
from bareprox.services.proxmox.auth import ProxmoxAuthenticator
from bareprox.services.proxmox.client import ProxmoxClient
from bareprox.services.proxmox.ssh import RemoteShell, CommandResult
from bareprox.services.proxmox.service import ProxmoxService, ProxmoxVm, ProxmoxSnapshot
from bareprox.services.proxmox.snapchains import SnapshotChainRepairer, render_repair_script
from bareprox.services.proxmox.restore import ProxmoxRestore

__all__ = [
    "ProxmoxAuthenticator",
    "ProxmoxClient",
    "RemoteShell",
    "CommandResult",
    "ProxmoxService",
    "ProxmoxVm",
    "ProxmoxSnapshot",
    "SnapshotChainRepairer",
    "render_repair_script",
    "ProxmoxRestore",
]
