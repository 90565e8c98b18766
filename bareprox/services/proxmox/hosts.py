"""
Host selection helpers for a Proxmox cluster.
"""
from typing import List, Optional

from bareprox.core.exceptions import NotFoundError, ServiceUnavailableError
from bareprox.models import ProxmoxCluster, ProxmoxHost


def queryable_hosts(cluster: ProxmoxCluster) -> List[ProxmoxHost]:
    """Online hosts of the cluster, or every configured host when none is marked online."""
    configured = list(cluster.hosts or [])
    online = [h for h in configured if h.is_online]
    return online or configured


def first_queryable_host(cluster: ProxmoxCluster) -> ProxmoxHost:
    hosts = queryable_hosts(cluster)
    if not hosts:
        raise ServiceUnavailableError(f"No Proxmox hosts available for cluster '{cluster.name}'.")
    return hosts[0]


def host_address(host: ProxmoxHost) -> str:
    return host.host_address or host.hostname


def find_host(cluster: ProxmoxCluster, node_or_address: str) -> Optional[ProxmoxHost]:
    """Match a host by node name or address, case-insensitively."""
    needle = (node_or_address or "").lower()
    for host in cluster.hosts or []:
        if (host.hostname or "").lower() == needle or (host.host_address or "").lower() == needle:
            return host
    return None


def require_host(cluster: ProxmoxCluster, node_or_address: str) -> ProxmoxHost:
    host = find_host(cluster, node_or_address)
    if host is None:
        raise NotFoundError(f"Node '{node_or_address}' not found in cluster '{cluster.name}'.")
    return host
