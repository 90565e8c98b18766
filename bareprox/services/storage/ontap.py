"""
NetApp ONTAP storage client over the ONTAP REST API (``https://<controller>/api/``).

Controllers are read from the database; their passwords are decrypted per
call and sent as HTTP basic auth. Blocking ``requests`` calls run in a
thread pool.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
import urllib3
from sqlalchemy import select

from bareprox.core.config import settings
from bareprox.core.encryption import CredentialCipher, get_cipher
from bareprox.core.exceptions import NotFoundError
from bareprox.core.timezone import app_now
from bareprox.models import AsyncSessionLocal, NetappController
from bareprox.services.storage.base import (
    CloneResult,
    DeleteSnapshotResult,
    MountInfo,
    ReplicationStatus,
    SnapshotLock,
    SnapshotResult,
    StorageClient,
    StorageConnectionError,
    StorageError,
    VolumeInfo,
    retention_delta,
)

logger = logging.getLogger(__name__)

if not settings.NETAPP_VERIFY_SSL:
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# Export rule properties copied from primary to secondary
EXPORT_RULE_FIELDS = (
    "clients", "protocols", "ro_rule", "rw_rule",
    "anonymous_user", "superuser", "allow_device_creation", "ntfs_unix_security",
    "chown_mode", "allow_suid",
)


def snapshot_name_for(label: str, created: datetime) -> str:
    """Snapshot name ``BP_<label>-<yyyy-MM-dd-HH_mm-ss>``."""
    return f"BP_{label}-{created:%Y-%m-%d-%H_%M-%S}"


class OntapStorageClient(StorageClient):
    """ONTAP REST implementation of :class:`StorageClient`."""

    def __init__(
        self,
        session_factory=None,
        cipher: Optional[CredentialCipher] = None,
        verify_ssl: Optional[bool] = None,
        timeout: Optional[int] = None,
        retry_delay: float = 1.0,
    ):
        """
        Args:
            session_factory: Async session factory used to load controllers
            cipher: Credential cipher (default from ``ENCRYPTION_KEY``)
            verify_ssl: Verify controller certificates
            timeout: Per-request timeout in seconds
            retry_delay: Base delay between readiness and PATCH retries
        """
        self.session_factory = session_factory or AsyncSessionLocal
        self._cipher = cipher
        self.timeout = timeout or settings.NETAPP_HTTP_TIMEOUT
        self.retry_delay = retry_delay
        self.http = requests.Session()
        self.http.verify = settings.NETAPP_VERIFY_SSL if verify_ssl is None else verify_ssl
        self.executor = ThreadPoolExecutor(max_workers=4)

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    async def _run_in_executor(self, func, *args):
        """Run blocking HTTP call in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    # ------------------------------------------------------------------ #
    # Plumbing
    # ------------------------------------------------------------------ #

    async def _controller(self, controller_id: int) -> NetappController:
        async with self.session_factory() as db:
            result = await db.execute(select(NetappController).where(NetappController.id == controller_id))
            controller = result.scalar_one_or_none()
        if controller is None:
            raise NotFoundError(f"NetApp controller #{controller_id} not found.")
        return controller

    @staticmethod
    def _base_url(controller: NetappController) -> str:
        return f"https://{controller.ip_address}/api/"

    async def _call(
        self,
        controller: NetappController,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        url = f"{self._base_url(controller)}{path.lstrip('/')}"
        auth = (controller.username, self.cipher.decrypt(controller.password_enc) or "")
        try:
            return await self._run_in_executor(self._request, method, url, auth, params, body)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise StorageConnectionError(f"NetApp controller {controller.hostname} unreachable: {e}") from e

    def _request(self, method, url, auth, params, body):
        return self.http.request(method, url, auth=auth, params=params, json=body, timeout=self.timeout)

    @staticmethod
    def _check(response: requests.Response, action: str) -> requests.Response:
        if not response.ok:
            raise StorageError(
                f"{action} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    async def _records(self, controller: NetappController, path: str, params: Dict[str, Any], action: str) -> List[Dict[str, Any]]:
        response = self._check(await self._call(controller, "GET", path, params=params), action)
        return (response.json() or {}).get("records") or []

    async def _find_volume(self, controller: NetappController, volume_name: str, fields: str = "uuid") -> Optional[Dict[str, Any]]:
        records = await self._records(
            controller, "storage/volumes", {"name": volume_name, "fields": fields}, f"Volume lookup '{volume_name}'"
        )
        return records[0] if records else None

    async def _find_snapshot_uuid(self, controller: NetappController, volume_uuid: str, snapshot_name: str) -> Optional[str]:
        records = await self._records(
            controller, f"storage/volumes/{volume_uuid}/snapshots", {"fields": "name,uuid"}, "Snapshot lookup"
        )
        for record in records:
            if record.get("name") == snapshot_name:
                return record.get("uuid")
        return None

    # ------------------------------------------------------------------ #
    # Snapshots
    # ------------------------------------------------------------------ #

    async def create_snapshot(
        self,
        controller_id: int,
        volume_name: str,
        label: str,
        lock: Optional[SnapshotLock] = None,
    ) -> SnapshotResult:
        try:
            controller = await self._controller(controller_id)
            volume = await self._find_volume(controller, volume_name)
            if volume is None:
                return SnapshotResult(
                    success=False,
                    error_message=f"No matching NetApp volume for storage name '{volume_name}'.",
                )

            created = app_now()
            name = snapshot_name_for(label, created)
            body: Dict[str, Any] = {"name": name, "snapmirror_label": label}

            expiry = None
            if lock is not None:
                expiry = created + retention_delta(lock.count, lock.unit)
                if expiry <= created:
                    return SnapshotResult(
                        success=False,
                        error_message=f"Expiry time '{expiry:%Y-%m-%d %H:%M:%S}' must be in the future.",
                    )
                stamp = expiry.isoformat(timespec="seconds")
                body["expiry_time"] = stamp
                body["snaplock"] = {"expiry_time": stamp}

            self._check(
                await self._call(controller, "POST", f"storage/volumes/{volume['uuid']}/snapshots", body=body),
                f"Snapshot create on '{volume_name}'",
            )
            logger.info(f"Created snapshot {name} on volume {volume_name}")
            return SnapshotResult(success=True, snapshot_name=name, created_at=created, expiry_time=expiry)

        except Exception as e:
            logger.error(f"Failed to create snapshot on '{volume_name}': {e}")
            return SnapshotResult(success=False, error_message=str(e))

    async def delete_snapshot(self, controller_id: int, volume_name: str, snapshot_name: str) -> DeleteSnapshotResult:
        try:
            controller = await self._controller(controller_id)
            volume = await self._find_volume(controller, volume_name)
            if volume is None:
                return DeleteSnapshotResult(
                    success=False, not_found=True, error_message=f"Volume '{volume_name}' not found."
                )

            snapshot_uuid = await self._find_snapshot_uuid(controller, volume["uuid"], snapshot_name)
            if snapshot_uuid is None:
                return DeleteSnapshotResult(
                    success=False,
                    not_found=True,
                    error_message=f"Snapshot '{snapshot_name}' not found on volume '{volume_name}'.",
                )

            response = await self._call(
                controller, "DELETE", f"storage/volumes/{volume['uuid']}/snapshots/{snapshot_uuid}"
            )
            if response.ok:
                logger.info(f"Deleted snapshot {snapshot_name} from {volume_name}")
                return DeleteSnapshotResult(success=True)
            return DeleteSnapshotResult(
                success=False,
                error_message=f"Failed to delete snapshot: {response.status_code} - {response.text}",
            )

        except Exception as e:
            logger.error(f"Failed to delete snapshot {snapshot_name} on '{volume_name}': {e}")
            return DeleteSnapshotResult(success=False, error_message=str(e))

    async def list_snapshots(self, controller_id: int, volume_name: str) -> List[str]:
        controller = await self._controller(controller_id)
        volume = await self._find_volume(controller, volume_name)
        if volume is None:
            return []
        records = await self._records(
            controller, f"storage/volumes/{volume['uuid']}/snapshots", {"fields": "name"}, "Snapshot list"
        )
        return [r["name"] for r in records if r.get("name")]

    # ------------------------------------------------------------------ #
    # Clones and exports
    # ------------------------------------------------------------------ #

    async def clone_volume_from_snapshot(
        self,
        controller_id: int,
        volume_name: str,
        snapshot_name: str,
        clone_name: str,
    ) -> CloneResult:
        try:
            controller = await self._controller(controller_id)
            volume = await self._find_volume(controller, volume_name, fields="uuid,svm.name")
            if volume is None:
                return CloneResult(success=False, message=f"Volume '{volume_name}' not found.")

            clone: Dict[str, Any] = {"parent_volume": {"uuid": volume["uuid"]}, "is_flexclone": True}
            if snapshot_name:
                snapshot_uuid = await self._find_snapshot_uuid(controller, volume["uuid"], snapshot_name)
                if snapshot_uuid is None:
                    return CloneResult(success=False, message=f"Snapshot '{snapshot_name}' not found.")
                clone["parent_snapshot"] = {"uuid": snapshot_uuid}

            body = {
                "name": clone_name,
                "clone": clone,
                "svm": {"name": (volume.get("svm") or {}).get("name")},
            }
            response = await self._call(controller, "POST", "storage/volumes", body=body)
            if response.status_code in (201, 202):
                job_uuid = ((response.json() or {}).get("job") or {}).get("uuid")
                logger.info(f"Clone {clone_name} of {volume_name}@{snapshot_name} accepted (job {job_uuid})")
                return CloneResult(success=True, clone_volume_name=clone_name, job_uuid=job_uuid)

            return CloneResult(success=False, message=f"Clone failed ({response.status_code}): {response.text}")

        except Exception as e:
            logger.error(f"Clone of {volume_name}@{snapshot_name} failed: {e}")
            return CloneResult(success=False, message=str(e))

    async def _wait_for_online(self, controller: NetappController, volume_name: str, attempts: int) -> Optional[str]:
        for _ in range(attempts):
            volume = await self._find_volume(controller, volume_name, fields="uuid,state")
            if volume and str(volume.get("state") or "").lower() == "online":
                return volume.get("uuid")
            await asyncio.sleep(self.retry_delay)
        return None

    async def copy_export_policy(self, controller_id: int, source_volume: str, target_volume: str) -> bool:
        controller = await self._controller(controller_id)

        source = await self._find_volume(controller, source_volume, fields="nas.export_policy.name")
        policy_name = (((source or {}).get("nas") or {}).get("export_policy") or {}).get("name")
        if not policy_name:
            logger.error(f"Volume '{source_volume}' has no export policy to copy")
            return False

        target_uuid = await self._wait_for_online(controller, target_volume, attempts=30)
        if not target_uuid:
            logger.error(f"Clone volume '{target_volume}' did not become available within timeout.")
            return False

        body = {"nas": {"export_policy": {"name": policy_name}}}
        for attempt in range(1, 4):
            response = await self._call(controller, "PATCH", f"storage/volumes/{target_uuid}", body=body)
            if response.ok:
                logger.info(f"Applied export policy '{policy_name}' to {target_volume}")
                return True
            logger.warning(f"Attempt {attempt}/3: export policy patch failed: {response.text}")
            await asyncio.sleep(2 * self.retry_delay)

        logger.error(f"Failed to apply export policy after multiple retries for volume '{target_volume}'.")
        return False

    async def _policy_id(self, controller: NetappController, policy_name: str, svm_name: Optional[str]) -> Optional[str]:
        params = {"name": policy_name}
        if svm_name:
            params["svm.name"] = svm_name
        response = await self._call(controller, "GET", "protocols/nfs/export-policies", params=params)
        if not response.ok:
            return None
        records = (response.json() or {}).get("records") or []
        if records and records[0].get("id") is not None:
            return str(records[0]["id"])
        return None

    async def ensure_export_policy_on_secondary(
        self,
        policy_name: str,
        primary_controller_id: int,
        secondary_controller_id: int,
        svm_name: str,
    ) -> bool:
        primary = await self._controller(primary_controller_id)
        secondary = await self._controller(secondary_controller_id)

        existing = await self._records(
            secondary,
            "protocols/nfs/export-policies",
            {"name": policy_name, "svm.name": svm_name},
            "Export policy lookup on secondary",
        )
        if existing:
            return True

        # SVM-scoped lookup first, then cluster-wide
        primary_policy_id = await self._policy_id(primary, policy_name, svm_name)
        if primary_policy_id is None:
            primary_policy_id = await self._policy_id(primary, policy_name, None)
        if primary_policy_id is None:
            logger.error(f"Export policy '{policy_name}' not found on primary controller {primary.hostname}")
            return False

        detail = await self._call(
            primary, "GET", f"protocols/nfs/export-policies/{primary_policy_id}", params={"fields": "svm,id,rules,name"}
        )
        if not detail.ok:
            return False
        rules = (detail.json() or {}).get("rules")
        if not isinstance(rules, list):
            return False

        created = await self._call(
            secondary, "POST", "protocols/nfs/export-policies", body={"name": policy_name, "svm": {"name": svm_name}}
        )
        if not created.ok:
            logger.error(f"Creating export policy '{policy_name}' on {secondary.hostname} failed: {created.text}")
            return False

        created_id = None
        try:
            created_id = (created.json() or {}).get("id")
        except ValueError:
            pass
        if created_id is None:
            created_id = await self._policy_id(secondary, policy_name, svm_name)
        if created_id is None:
            return False

        for rule in rules:
            index = rule.get("index")
            if not isinstance(index, int):
                continue
            rule_resp = await self._call(primary, "GET", f"protocols/nfs/export-policies/{primary_policy_id}/rules/{index}")
            if not rule_resp.ok:
                logger.warning(f"Failed to fetch export policy rule {index} of '{policy_name}'")
                continue
            details = rule_resp.json() or {}
            payload = {k: details[k] for k in EXPORT_RULE_FIELDS if details.get(k) is not None}
            post = await self._call(secondary, "POST", f"protocols/nfs/export-policies/{created_id}/rules", body=payload)
            if not post.ok:
                logger.warning(f"Failed to copy export rule {index} of '{policy_name}': {post.text}")

        logger.info(f"Created export policy '{policy_name}' on {secondary.hostname}/{svm_name}")
        return True

    async def set_export_policy(self, controller_id: int, volume_name: str, policy_name: str) -> bool:
        controller = await self._controller(controller_id)

        uuid = None
        for _ in range(15):
            try:
                volume = await self._find_volume(controller, volume_name, fields="uuid,state")
                uuid = (volume or {}).get("uuid")
            except StorageError as e:
                logger.debug(f"Volume lookup for '{volume_name}' failed: {e}")
            if uuid:
                break
            await asyncio.sleep(self.retry_delay / 2)
        if not uuid:
            logger.error(f"Set export policy: volume '{volume_name}' not found.")
            return False

        body = {"nas": {"export_policy": {"name": policy_name}}}
        for attempt in range(1, 6):
            response = await self._call(controller, "PATCH", f"storage/volumes/{uuid}", body=body)
            if response.ok:
                verify = await self._call(
                    controller, "GET", f"storage/volumes/{uuid}", params={"fields": "nas.export_policy.name"}
                )
                if verify.ok:
                    applied = (((verify.json() or {}).get("nas") or {}).get("export_policy") or {}).get("name")
                    if (applied or "").lower() == policy_name.lower():
                        return True
                    logger.info(f"Export policy verify mismatch (expected '{policy_name}', got '{applied}'), attempt {attempt}")
            elif response.status_code in (409, 423):
                logger.warning(f"Export policy PATCH busy/locked (attempt {attempt}): {response.text}")
            else:
                logger.warning(f"Export policy PATCH failed (attempt {attempt}, {response.status_code}): {response.text}")
            await asyncio.sleep(0.4 * attempt * self.retry_delay)

        logger.error(f"Failed to apply export policy '{policy_name}' to volume '{volume_name}' after retries.")
        return False

    async def set_export_path(self, controller_id: int, volume_uuid: str, export_path: str) -> bool:
        controller = await self._controller(controller_id)
        body = {"nas": {"path": export_path}}

        for attempt in range(1, 7):
            try:
                response = await self._call(controller, "PATCH", f"storage/volumes/{volume_uuid}", body=body)
                if response.ok:
                    check = await self._call(controller, "GET", f"storage/volumes/{volume_uuid}", params={"fields": "nas.path"})
                    if check.ok:
                        actual = ((check.json() or {}).get("nas") or {}).get("path")
                        if actual == export_path:
                            return True
                        logger.info(f"Export path not yet applied: expected={export_path} actual={actual}")
                else:
                    logger.error(f"Export path PATCH failed: {response.status_code}")
            except StorageConnectionError as e:
                logger.warning(f"Export path attempt {attempt} failed: {e}")

            if attempt < 6:
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))

        return False

    # ------------------------------------------------------------------ #
    # Volumes
    # ------------------------------------------------------------------ #

    async def lookup_volume(self, controller_id: int, volume_name: str) -> Optional[VolumeInfo]:
        controller = await self._controller(controller_id)
        try:
            volume = await self._find_volume(controller, volume_name, fields="uuid,name,svm.name,state")
        except StorageError as e:
            logger.warning(f"Volume lookup for '{volume_name}' failed: {e}")
            return None
        if not volume or not volume.get("uuid"):
            return None
        return VolumeInfo(
            uuid=volume["uuid"],
            name=volume.get("name") or volume_name,
            svm_name=(volume.get("svm") or {}).get("name"),
            state=volume.get("state"),
        )

    async def get_volume_mount_info(self, controller_id: int, volume_name: str) -> Optional[MountInfo]:
        controller = await self._controller(controller_id)
        volume = await self._find_volume(controller, volume_name, fields="name,svm.name")
        svm_name = ((volume or {}).get("svm") or {}).get("name")
        if not svm_name:
            return None

        interfaces = await self._records(
            controller,
            "network/ip/interfaces",
            {"fields": "ip.address,svm.name,services", "services": "data_nfs"},
            "Interface lookup",
        )
        for interface in interfaces:
            ip = (interface.get("ip") or {}).get("address")
            if ip and (interface.get("svm") or {}).get("name") == svm_name:
                return MountInfo(volume_name=volume_name, vserver=svm_name, mount_ip=ip)
        return None

    async def delete_volume(self, controller_id: int, volume_name: str) -> bool:
        controller = await self._controller(controller_id)
        try:
            volume = await self._find_volume(controller, volume_name)
        except StorageError as e:
            logger.warning(f"Volume lookup for '{volume_name}' failed: {e}")
            return False
        if not volume or not volume.get("uuid"):
            return False

        unexport = await self._call(controller, "PATCH", f"storage/volumes/{volume['uuid']}", body={"nas": {"path": ""}})
        if not unexport.ok:
            logger.warning(f"Failed to unexport volume {volume_name}: {unexport.status_code}")

        response = await self._call(controller, "DELETE", f"storage/volumes/{volume['uuid']}")
        if response.ok:
            logger.info(f"Deleted volume {volume_name}")
        return response.ok

    # ------------------------------------------------------------------ #
    # Replication
    # ------------------------------------------------------------------ #

    async def trigger_replication_update(self, controller_id: int, relation_uuid: str) -> bool:
        controller = await self._controller(controller_id)
        response = await self._call(controller, "POST", f"snapmirror/relationships/{relation_uuid}/transfers", body={})
        if not response.ok:
            logger.error(
                f"Failed to trigger SnapMirror update for {relation_uuid} on controller {controller_id}: {response.status_code}"
            )
            return False
        logger.info(f"Triggered SnapMirror update for {relation_uuid} on controller {controller_id}")
        return True

    async def get_replication_relation(self, controller_id: int, relation_uuid: str) -> ReplicationStatus:
        controller = await self._controller(controller_id)
        response = self._check(
            await self._call(controller, "GET", f"snapmirror/relationships/{relation_uuid}"),
            f"SnapMirror relationship {relation_uuid}",
        )
        data = response.json() or {}
        return ReplicationStatus(
            uuid=data.get("uuid") or relation_uuid,
            state=data.get("state"),
            transfer_state=(data.get("transfer") or {}).get("state"),
            healthy=bool(data.get("healthy", True)),
            lag_time=data.get("lag_time"),
            source_volume=_volume_from_path((data.get("source") or {}).get("path")),
            destination_volume=_volume_from_path((data.get("destination") or {}).get("path")),
            unhealthy_reasons=[
                r.get("message", "") for r in data.get("unhealthy_reason") or [] if isinstance(r, dict)
            ],
        )


def _volume_from_path(path: Optional[str]) -> Optional[str]:
    """``svm:volume`` to ``volume``."""
    if not path:
        return None
    return path.split(":", 1)[-1]
