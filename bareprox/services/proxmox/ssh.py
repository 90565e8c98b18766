"""
Remote command execution on Proxmox nodes over the system ssh client.

Password authentication goes through ``sshpass -e`` so the secret is passed
in the environment rather than on the command line. Scripts and file
contents are streamed on stdin.
"""
import asyncio
import logging
import os
from contextlib import suppress
from dataclasses import dataclass
from typing import List, Optional, Tuple, Dict

from bareprox.core.config import settings
from bareprox.core.encryption import CredentialCipher, get_cipher
from bareprox.core.exceptions import OperationTimeout
from bareprox.models import ProxmoxCluster

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Exit status and captured output of a remote command."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class RemoteShell:
    """Run commands on cluster nodes as the cluster's login user."""

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        ssh_binary: Optional[str] = None,
        sshpass_binary: Optional[str] = None,
        connect_timeout: Optional[int] = None,
        default_timeout: Optional[float] = None,
    ):
        self._cipher = cipher
        self.ssh_binary = ssh_binary or settings.SSH_BINARY
        self.sshpass_binary = sshpass_binary or settings.SSHPASS_BINARY
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT
        self.default_timeout = default_timeout or settings.SSH_COMMAND_TIMEOUT_SECONDS

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    def build_command(self, host: str, user: str, password: Optional[str]) -> Tuple[List[str], Dict[str, str]]:
        """
        Build the ssh argv and environment for a target.

        Returns:
            Tuple of (argv without the remote command, environment)
        """
        cmd = [
            self.ssh_binary,
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        env = dict(os.environ)
        if password:
            env["SSHPASS"] = password
            cmd = [self.sshpass_binary, "-e"] + cmd
        else:
            cmd.extend(["-o", "BatchMode=yes"])
        cmd.append(f"{user}@{host}")
        return cmd, env

    async def run(
        self,
        host: str,
        user: str,
        password: Optional[str],
        command: str,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run ``command`` on ``host``.

        Args:
            host: Node address
            user: Login user
            password: Password, or None to rely on key authentication
            command: Remote command line
            stdin: Text streamed to the command's standard input
            timeout: Seconds before the ssh process is killed

        Returns:
            CommandResult with exit status and output

        Raises:
            OperationTimeout: If the command outlives ``timeout``
        """
        argv, env = self.build_command(host, user, password)
        argv.append(command)

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode() if stdin is not None else None),
                timeout=timeout or self.default_timeout,
            )
        except asyncio.TimeoutError:
            await self._reap(process)
            raise OperationTimeout(f"Remote command on {host} timed out after {timeout or self.default_timeout}s")
        except asyncio.CancelledError:
            await self._reap(process)
            raise

        result = CommandResult(
            exit_status=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if not result.ok:
            logger.debug(f"Remote command on {host} exited {result.exit_status}: {result.stderr.strip()}")
        return result

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process):
        """Kill a still-running ssh child and wait for it to exit."""
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.kill()
        await process.wait()

    async def run_on(
        self,
        cluster: ProxmoxCluster,
        address: str,
        command: str,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command on a node with the cluster's credentials."""
        password = self.cipher.decrypt(cluster.password_enc)
        return await self.run(address, cluster.ssh_user, password, command, stdin=stdin, timeout=timeout)

    async def run_script(
        self,
        cluster: ProxmoxCluster,
        address: str,
        script: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Pipe a bash script to the node, stripping carriage returns remotely."""
        normalized = script.replace("\r\n", "\n").replace("\r", "\n")
        return await self.run_on(cluster, address, "tr -d '\\r' | bash -s", stdin=normalized, timeout=timeout)

    async def write_file(self, cluster: ProxmoxCluster, address: str, path: str, content: str) -> CommandResult:
        """Overwrite a remote file with ``content``."""
        return await self.run_on(cluster, address, f"cat > {quote_bash(path)}", stdin=content)


def quote_bash(value: Optional[str]) -> str:
    """Single-quote a value for bash."""
    return "'" + (value or "").replace("'", "'\"'\"'") + "'"
