"""
Hypervisor operations that shell out to the nodes or delegate to the client.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from bareprox.models import ProxmoxCluster, ProxmoxHost
from bareprox.services.proxmox.service import ProxmoxService
from bareprox.services.proxmox.ssh import CommandResult


@pytest.fixture
def cluster():
    return ProxmoxCluster(
        name="lab",
        username="root@pam",
        hosts=[
            ProxmoxHost(hostname="pve1", host_address="10.0.0.11"),
            ProxmoxHost(hostname="pve2", host_address="10.0.0.12"),
        ],
    )


@pytest.fixture
def client():
    return AsyncMock()


@pytest.fixture
def shell():
    fake = AsyncMock()
    fake.run_on.return_value = CommandResult(exit_status=0, stdout="", stderr="")
    return fake


@pytest.fixture
def service(client, shell):
    return ProxmoxService(client=client, shell=shell, poll_interval=0, mount_verify_attempts=1)


async def test_unmount_never_deletes_a_mounted_clone(service, client, shell, cluster):
    await service.unmount_nfs_storage(cluster, "restore_17")

    client.send.assert_awaited_once_with(cluster, "DELETE", "api2/json/storage/restore_17")
    assert [call.args[1] for call in shell.run_on.await_args_list] == ["10.0.0.11", "10.0.0.12"]

    command = shell.run_on.await_args.args[2]
    assert "rm -rf" not in command
    assert "|| true" not in command
    assert "then umount '/mnt/pve/restore_17'; fi && " in command
    assert command.endswith("then rmdir '/mnt/pve/restore_17'; fi")


async def test_unmount_failure_on_one_node_is_logged(service, shell, cluster):
    shell.run_on.side_effect = [
        CommandResult(exit_status=32, stdout="", stderr="umount: target is busy"),
        CommandResult(exit_status=0, stdout="", stderr=""),
    ]

    await service.unmount_nfs_storage(cluster, "restore_17")

    assert shell.run_on.await_count == 2


async def test_task_wait_forwards_the_cancel_signal(service, client, cluster):
    client.wait_for_task.return_value = True
    cancel = asyncio.Event()

    assert await service.wait_for_task(cluster, "pve1", "10.0.0.11", "UPID:x", cancel_event=cancel)

    client.wait_for_task.assert_awaited_once_with(
        cluster, "pve1", "10.0.0.11", "UPID:x", service.snapshot_timeout, cancel_event=cancel
    )
