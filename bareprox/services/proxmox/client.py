"""
Resilient HTTP client for the Proxmox VE API.

Every call goes through :meth:`ProxmoxClient.send`, which resolves relative
URLs against a reachable node, retries once after credential recovery on
401/403, and converts transport failures into ``ServiceUnavailableError``.
Long-running operations return a UPID that :meth:`ProxmoxClient.wait_for_task`
polls until the task stops.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

import requests

from bareprox.core.config import settings
from bareprox.core.exceptions import (
    AuthenticationError,
    RemoteOperationError,
    ServiceUnavailableError,
)
from bareprox.models import ProxmoxCluster
from bareprox.services.proxmox.auth import ProxmoxAuthenticator
from bareprox.services.jobs import sleep_or_cancel
from bareprox.services.proxmox.hosts import first_queryable_host, host_address

logger = logging.getLogger(__name__)

AUTH_FAILURE_CODES = (401, 403)


class ProxmoxClient:
    """Authenticated, retrying access to one or more Proxmox clusters."""

    def __init__(
        self,
        authenticator: Optional[ProxmoxAuthenticator] = None,
        port: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        """
        Args:
            authenticator: Credential provider (default builds one from settings)
            port: Proxmox API port
            verify_ssl: Verify node certificates
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between task status polls
        """
        self.auth = authenticator or ProxmoxAuthenticator()
        self.port = port or settings.PROXMOX_PORT
        self.timeout = timeout or settings.PROXMOX_HTTP_TIMEOUT
        self.poll_interval = settings.PROXMOX_TASK_POLL_SECONDS if poll_interval is None else poll_interval
        self.http = requests.Session()
        self.http.verify = settings.PROXMOX_VERIFY_SSL if verify_ssl is None else verify_ssl
        self.executor = ThreadPoolExecutor(max_workers=8)

    async def _run_in_executor(self, func, *args):
        """Run blocking HTTP call in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    def build_url(self, address: str, path: str) -> str:
        """Absolute API URL for ``path`` (relative to ``/api2/json``) on a given node."""
        return f"https://{address}:{self.port}/api2/json/{path.lstrip('/')}"

    def resolve_url(self, cluster: ProxmoxCluster, url: str) -> str:
        """
        Turn a relative URL into an absolute one.

        Absolute URLs pass through untouched. Relative ones are anchored on
        the first online host, else the first configured host.

        Raises:
            ServiceUnavailableError: If the cluster has no usable host
        """
        if urlparse(url).scheme in ("http", "https"):
            return url
        host = first_queryable_host(cluster)
        address = host_address(host)
        if not address:
            raise ServiceUnavailableError("Selected Proxmox host has no usable address/hostname.")
        return f"https://{address}:{self.port}/{url.lstrip('/')}"

    async def send(
        self,
        cluster: ProxmoxCluster,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """
        Send a request, recovering once from an authentication failure.

        On 401/403 in token mode the API token is recreated and the request
        retried; if recovery fails the request is retried once with a ticket
        instead. In ticket mode the ticket is refreshed and the request retried.

        Args:
            cluster: Target cluster
            method: HTTP method
            url: Absolute URL or path relative to the node root (``/api2/json/...``)
            data: Form fields for POST/PUT

        Returns:
            The successful response

        Raises:
            RemoteOperationError: Non-2xx answer other than 401/403
            AuthenticationError: All recovery attempts were rejected
            ServiceUnavailableError: No host or host unreachable
        """
        absolute_url = self.resolve_url(cluster, url)
        logger.debug(f"▶ Proxmox {method} {absolute_url}")

        response = await self._send_once(cluster, method, absolute_url, data)
        if response.ok:
            return response
        if response.status_code not in AUTH_FAILURE_CODES:
            raise self._remote_error(method, absolute_url, response)

        logger.info(f"Auth issue ({response.status_code}) on {absolute_url}. Attempting recovery.")

        if cluster.use_api_token:
            recovered = await self.auth.recover_api_token(cluster)
            logger.info(f"Proxmox token recovery {'succeeded' if recovered else 'failed'}.")
            if recovered:
                response = await self._send_once(cluster, method, absolute_url, data)
                return self._ensure_success(method, absolute_url, response)

            # This request alone falls back to a ticket; the cluster stays in token mode
            if not await self.auth.authenticate(cluster):
                raise AuthenticationError(
                    f"Proxmox rejected token and ticket credentials for cluster '{cluster.name}'."
                )
            response = await self._send_once(cluster, method, absolute_url, data, use_api_token=False)
            return self._ensure_success(method, absolute_url, response)

        if not await self.auth.authenticate(cluster):
            raise AuthenticationError(f"Re-authentication failed for cluster '{cluster.name}'.")
        response = await self._send_once(cluster, method, absolute_url, data)
        return self._ensure_success(method, absolute_url, response)

    async def get_json(self, cluster: ProxmoxCluster, url: str) -> Any:
        """GET and return the ``data`` member of the JSON envelope."""
        response = await self.send(cluster, "GET", url)
        return (response.json() or {}).get("data")

    async def wait_for_task(
        self,
        cluster: ProxmoxCluster,
        node: str,
        address: str,
        upid: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Poll a task until it stops.

        Args:
            cluster: Cluster owning the task
            node: Node name the task runs on
            address: Address of that node
            upid: Task identifier
            timeout: Ceiling in seconds
            cancel_event: Ends the wait between polls when set

        Returns:
            True when the task stopped with an ``OK`` exit status; False on a
            failed exit status or when the ceiling is reached

        Raises:
            JobCancelled: If ``cancel_event`` was set while waiting
        """
        url = self.build_url(address, f"nodes/{node}/tasks/{quote(upid, safe='')}/status")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            try:
                response = await self.send(cluster, "GET", url)
                data = (response.json() or {}).get("data") or {}
                if str(data.get("status", "")).lower() == "stopped":
                    exit_status = str(data.get("exitstatus") or "")
                    ok = exit_status.upper().startswith("OK")
                    if not ok:
                        logger.warning(f"Task {upid} exited with status: {exit_status or '(null)'}")
                    return ok
            except Exception as e:
                logger.warning(f"Failed to check task status for UPID {upid}: {e}")

            await sleep_or_cancel(self.poll_interval, cancel_event)

        logger.warning(f"Timeout waiting for task {upid}")
        return False

    async def _send_once(
        self,
        cluster: ProxmoxCluster,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]],
        use_api_token: Optional[bool] = None,
    ) -> requests.Response:
        headers = await self.auth.get_headers(cluster, use_api_token=use_api_token)
        try:
            return await self._run_in_executor(self._request, method, url, headers, data)
        except (requests.ConnectionError, requests.Timeout) as e:
            await self.auth.record_status(cluster, f"Error: {e}")
            raise ServiceUnavailableError(f"Proxmox host unreachable for {url}: {e}") from e

    def _request(self, method: str, url: str, headers: Dict[str, str], data: Optional[Dict[str, Any]]):
        return self.http.request(method, url, headers=headers, data=data, timeout=self.timeout)

    def _ensure_success(self, method: str, url: str, response: requests.Response) -> requests.Response:
        if response.ok:
            return response
        if response.status_code in AUTH_FAILURE_CODES:
            raise AuthenticationError(
                f"Proxmox {method} {url} still rejected ({response.status_code}) after credential recovery."
            )
        raise self._remote_error(method, url, response)

    @staticmethod
    def _remote_error(method: str, url: str, response: requests.Response) -> RemoteOperationError:
        body = response.text
        logger.debug(f"◀ Proxmox {response.status_code} {response.reason}\nBody:\n{body}")
        return RemoteOperationError(
            f"Proxmox {method} {url} failed: {response.status_code} {response.reason}",
            status_code=response.status_code,
            body=body,
        )
