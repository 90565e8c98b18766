"""
Proxmox API credentials: ticket login, API token headers and token recovery.

Tickets and token secrets are cached on the cluster row, Fernet-encrypted.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
import urllib3
from sqlalchemy import update

from bareprox.core.config import settings
from bareprox.core.encryption import CredentialCipher, get_cipher
from bareprox.models import AsyncSessionLocal, ProxmoxCluster, utcnow
from bareprox.services.proxmox.hosts import first_queryable_host, host_address

logger = logging.getLogger(__name__)

if not settings.PROXMOX_VERIFY_SSL:
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class ProxmoxAuthenticator:
    """Builds request headers for a cluster and refreshes its credentials."""

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        session_factory=None,
        port: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
    ):
        self._cipher = cipher
        self.session_factory = session_factory or AsyncSessionLocal
        self.port = port or settings.PROXMOX_PORT
        self.timeout = timeout or settings.PROXMOX_HTTP_TIMEOUT
        self.http = requests.Session()
        self.http.verify = settings.PROXMOX_VERIFY_SSL if verify_ssl is None else verify_ssl
        self.executor = ThreadPoolExecutor(max_workers=2)

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def _run_in_executor(self, func, *args):
        """Run blocking HTTP call in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    def _url(self, address: str, path: str) -> str:
        return f"https://{address}:{self.port}/api2/json/{path.lstrip('/')}"

    async def get_headers(self, cluster: ProxmoxCluster, use_api_token: Optional[bool] = None) -> Dict[str, str]:
        """
        Headers for the cluster's credential mode.

        Args:
            cluster: Cluster whose cached credentials are used
            use_api_token: Mode for this request only; None follows the cluster setting

        Returns:
            ``Authorization`` header in token mode, cookie plus CSRF header otherwise
        """
        token_mode = cluster.use_api_token if use_api_token is None else use_api_token
        if token_mode and cluster.api_token_id and cluster.api_token_secret_enc:
            secret = self.cipher.decrypt(cluster.api_token_secret_enc)
            return {"Authorization": f"PVEAPIToken={cluster.api_token_id}={secret}"}

        if not cluster.ticket_enc or not cluster.csrf_token_enc:
            await self.authenticate(cluster)
        return self._ticket_headers(cluster)

    def _ticket_headers(self, cluster: ProxmoxCluster) -> Dict[str, str]:
        ticket = self.cipher.decrypt(cluster.ticket_enc) or ""
        csrf = self.cipher.decrypt(cluster.csrf_token_enc) or ""
        return {
            "Cookie": f"PVEAuthCookie={ticket}",
            "CSRFPreventionToken": csrf,
        }

    async def authenticate(self, cluster: ProxmoxCluster) -> bool:
        """
        Log in with username and password and cache a fresh ticket.

        Returns:
            True on success; the failure reason is recorded in ``last_status``
        """
        try:
            address = host_address(first_queryable_host(cluster))
            password = self.cipher.decrypt(cluster.password_enc) or ""
            response = await self._run_in_executor(
                self._post_form,
                self._url(address, "access/ticket"),
                {"username": cluster.username, "password": password},
                None,
            )
            response.raise_for_status()
            data = response.json().get("data") or {}
            ticket = data.get("ticket")
            csrf = data.get("CSRFPreventionToken")
            if not ticket or not csrf:
                raise ValueError("ticket response did not contain ticket and CSRF token")

            await self._persist(
                cluster,
                ticket_enc=self.cipher.encrypt(ticket),
                csrf_token_enc=self.cipher.encrypt(csrf),
                ticket_issued_at=utcnow(),
                last_status="Working",
                last_checked=utcnow(),
            )
            logger.info(f"Authenticated against Proxmox cluster '{cluster.name}'")
            return True
        except Exception as e:
            logger.warning(f"Proxmox authentication failed for cluster '{cluster.name}': {e}")
            await self.record_status(cluster, f"Error: {e}")
            return False

    async def recover_api_token(self, cluster: ProxmoxCluster) -> bool:
        """
        Recreate the cluster's API token after it was rejected.

        Logs in with the password, deletes the token if it still exists and
        creates it again with privilege separation disabled, storing the new
        secret.
        """
        if not cluster.api_token_id:
            return False
        try:
            if not await self.authenticate(cluster):
                return False

            user, _, token_name = cluster.api_token_id.partition("!")
            if not token_name:
                user, token_name = cluster.username, cluster.api_token_id

            address = host_address(first_queryable_host(cluster))
            url = self._url(address, f"access/users/{quote(user, safe='')}/token/{quote(token_name, safe='')}")
            headers = self._ticket_headers(cluster)

            try:
                await self._run_in_executor(self._delete, url, headers)
            except requests.RequestException as e:
                logger.debug(f"Deleting stale API token {cluster.api_token_id} failed: {e}")

            response = await self._run_in_executor(self._post_form, url, {"privsep": "0"}, headers)
            response.raise_for_status()
            data = response.json().get("data") or {}
            secret = data.get("value")
            if not secret:
                raise ValueError("token creation response did not contain a secret")

            await self._persist(
                cluster,
                api_token_id=data.get("full-tokenid") or f"{user}!{token_name}",
                api_token_secret_enc=self.cipher.encrypt(secret),
            )
            logger.info(f"Recreated API token for cluster '{cluster.name}'")
            return True
        except Exception as e:
            logger.warning(f"API token recovery failed for cluster '{cluster.name}': {e}")
            return False

    async def record_status(self, cluster: ProxmoxCluster, status: str):
        """Record the cluster's last-known status, never raising."""
        try:
            await self._persist(cluster, last_status=status[:500], last_checked=utcnow())
        except Exception as e:
            logger.error(f"Failed to record status for cluster '{cluster.name}': {e}")

    async def _persist(self, cluster: ProxmoxCluster, **values: Any):
        for key, value in values.items():
            setattr(cluster, key, value)
        if cluster.id is None:
            return
        async with self.session_factory() as db:
            await db.execute(
                update(ProxmoxCluster).where(ProxmoxCluster.id == cluster.id).values(**values)
            )
            await db.commit()

    def _post_form(self, url: str, data: Dict[str, str], headers: Optional[Dict[str, str]]):
        return self.http.post(url, data=data, headers=headers, timeout=self.timeout)

    def _delete(self, url: str, headers: Dict[str, str]):
        return self.http.delete(url, headers=headers, timeout=self.timeout)
