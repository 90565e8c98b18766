"""
Remote command execution: argv construction and child process lifetime.
"""
import asyncio

import pytest

from bareprox.core.exceptions import OperationTimeout
from bareprox.services.proxmox.ssh import RemoteShell, quote_bash


class HangingProcess:
    """An ssh child that never finishes on its own."""

    def __init__(self):
        self.returncode = None
        self.started = asyncio.Event()
        self.killed = False
        self.reaped = False

    async def communicate(self, data=None):
        self.started.set()
        await asyncio.Event().wait()

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        self.reaped = True
        return self.returncode


@pytest.fixture
def process(monkeypatch):
    child = HangingProcess()

    async def spawn(*argv, **kwargs):
        return child

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn)
    return child


@pytest.fixture
def shell(cipher):
    return RemoteShell(cipher=cipher, ssh_binary="ssh", sshpass_binary="sshpass", connect_timeout=5)


def test_password_goes_through_the_environment(shell):
    argv, env = shell.build_command("10.0.0.11", "root", "pw")

    assert argv[:2] == ["sshpass", "-e"]
    assert argv[-1] == "root@10.0.0.11"
    assert "pw" not in argv
    assert env["SSHPASS"] == "pw"


def test_key_auth_uses_batch_mode(shell):
    argv, _ = shell.build_command("10.0.0.11", "root", None)

    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv


def test_quote_bash():
    assert quote_bash("/mnt/pve/it's") == "'/mnt/pve/it'\"'\"'s'"


async def test_cancelled_command_kills_the_child(shell, process):
    task = asyncio.create_task(shell.run("10.0.0.11", "root", "pw", "sleep 600"))
    await process.started.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert process.killed
    assert process.reaped


async def test_timed_out_command_kills_the_child(shell, process):
    with pytest.raises(OperationTimeout):
        await shell.run("10.0.0.11", "root", "pw", "sleep 600", timeout=0.01)

    assert process.killed
    assert process.reaped
