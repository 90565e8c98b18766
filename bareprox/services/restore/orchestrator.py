"""
Restore orchestration.

A restore is accepted immediately: the job is created as ``queued`` and the
pipeline runs later on the background task queue. The pipeline clones the
backed-up volume from the chosen snapshot, exports the clone, mounts it on
the target node and rebuilds the VM from the configuration stored with the
backup. Once the clone exists, any failure deletes it again.
"""
import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from bareprox.core.exceptions import JobCancelled, NotFoundError, ValidationFailure
from bareprox.models import (
    AsyncSessionLocal,
    BackupRecord,
    JobType,
    JobStatus,
    NetappSnapshot,
    ProxmoxCluster,
    ProxmoxHost,
    SelectedNetappVolume,
    SnapMirrorRelation,
    VmResultStatus,
    utcnow,
)
from bareprox.services.jobs import JobWriter
from bareprox.services.notifications import EmailNotifier
from bareprox.services.proxmox import ProxmoxRestore, ProxmoxService
from bareprox.services.proxmox.hosts import host_address
from bareprox.services.proxmox.restore import VmRebuildOptions
from bareprox.services.queue import BackgroundTaskQueue
from bareprox.services.storage import StorageClient, StorageError, create_storage_client

logger = logging.getLogger(__name__)

RESTORE_TARGETS = ("Primary", "Secondary")
RESTORE_TYPES = ("CreateNew", "ReplaceOriginal")


@dataclass
class RestoreRequest:
    """What to restore, from which copy, to where."""
    backup_id: int
    vmid: int
    vm_name: str
    controller_id: int
    volume_name: str
    snapshot_name: str
    host_address: str
    target: str = "Primary"
    restore_type: str = "CreateNew"
    original_host_address: Optional[str] = None
    cluster_id: Optional[int] = None
    new_vm_name: Optional[str] = None
    start_disconnected: bool = False
    generate_new_uuid: bool = False
    generate_new_mac_addresses: bool = False
    rollback_snapshot: bool = False

    @property
    def is_secondary(self) -> bool:
        return self.target.lower() == "secondary"

    @property
    def replaces_original(self) -> bool:
        return self.restore_type.lower() == "replaceoriginal"

    def rebuild_options(self) -> VmRebuildOptions:
        return VmRebuildOptions(
            new_vm_name=self.new_vm_name,
            start_disconnected=self.start_disconnected,
            generate_new_uuid=self.generate_new_uuid,
            generate_new_mac_addresses=self.generate_new_mac_addresses,
            rollback_snapshot=self.rollback_snapshot,
        )

    def validate(self):
        """
        Raises:
            ValidationFailure: If a required field is missing or has an unknown value
        """
        if not self.backup_id or int(self.backup_id) < 1:
            raise ValidationFailure("A backup must be selected.")
        if int(self.vmid) < 1:
            raise ValidationFailure("VM id must be a positive integer.")
        for name in ("volume_name", "snapshot_name", "host_address"):
            if not (getattr(self, name) or "").strip():
                raise ValidationFailure(f"{name.replace('_', ' ').capitalize()} is required.")
        if self.target.lower() not in [t.lower() for t in RESTORE_TARGETS]:
            raise ValidationFailure(f"Unknown restore target '{self.target}'.")
        if self.restore_type.lower() not in [t.lower() for t in RESTORE_TYPES]:
            raise ValidationFailure(f"Unknown restore type '{self.restore_type}'.")
        if self.replaces_original and not (self.original_host_address or "").strip():
            raise ValidationFailure("Original host is required to replace the original VM.")


class RestoreService:
    """Accepts restore requests and runs the restore pipeline."""

    def __init__(
        self,
        queue: BackgroundTaskQueue,
        session_factory=None,
        proxmox: Optional[ProxmoxService] = None,
        storage: Optional[StorageClient] = None,
        rebuilder: Optional[ProxmoxRestore] = None,
        jobs: Optional[JobWriter] = None,
        notifier: Optional[EmailNotifier] = None,
    ):
        self.queue = queue
        self.session_factory = session_factory or AsyncSessionLocal
        self.proxmox = proxmox or ProxmoxService()
        self.storage = storage or create_storage_client(session_factory=self.session_factory)
        self.rebuilder = rebuilder or ProxmoxRestore(self.proxmox)
        self.jobs = jobs or JobWriter(self.session_factory)
        self.notifier = notifier or EmailNotifier(self.session_factory)

    async def run_restore(self, request: RestoreRequest) -> bool:
        """Accept a restore. Returns True once the work item is queued."""
        await self.enqueue_restore(request)
        return True

    async def enqueue_restore(self, request: RestoreRequest) -> int:
        """
        Validate a restore request, create its queued job and enqueue it.

        Returns:
            The job id

        Raises:
            ValidationFailure: If the request is malformed
            NotFoundError: If the backup record does not exist
            ServiceUnavailableError: If the background queue is full (the job is failed)
        """
        request.validate()
        async with self.session_factory() as db:
            if await db.get(BackupRecord, request.backup_id) is None:
                raise NotFoundError(f"Backup record {request.backup_id} not found.")

        job_id = await self.jobs.create_job(
            JobType.RESTORE, request.vm_name, payload=asdict(request), status=JobStatus.QUEUED
        )

        async def work(cancel_event: asyncio.Event):
            await self.execute(job_id, request, cancel_event)

        try:
            self.queue.enqueue(work, name=f"restore job {job_id}")
        except Exception as e:
            await self.jobs.fail_job(job_id, str(e))
            raise

        logger.info(
            f"Restore of VM {request.vmid} from {request.snapshot_name} queued as job {job_id}",
            extra={"job_id": job_id},
        )
        return job_id

    async def execute(self, job_id: int, request: RestoreRequest, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """
        Run the restore pipeline for a queued job.

        Returns:
            True if the VM was rebuilt
        """
        if await self.jobs.is_cancel_requested(job_id):
            await self.jobs.cancel_job(job_id)
            return False
        if not await self.jobs.mark_running(job_id):
            logger.info(f"Restore job {job_id} is no longer pending; skipping", extra={"job_id": job_id})
            return False

        row = await self.jobs.begin_vm(
            job_id, request.vmid, request.vm_name, request.host_address, request.volume_name,
            status=VmResultStatus.RUNNING,
        )
        await self.jobs.log_vm(row, "Restore job started.")
        logger.info(f"Restore job {job_id} started for VM {request.vmid}", extra={"job_id": job_id})

        clone_name = f"restore_{job_id}_{utcnow():%Y%m%d%H%M%S}"
        clone_created = False
        mounted_cluster: Optional[ProxmoxCluster] = None
        target_host: Optional[ProxmoxHost] = None
        new_vmid: Optional[int] = None

        try:
            record = await self._load_backup_record(request.backup_id)
            document = self._config_document(record)
            snapshot_chain = bool(record.snapshot_as_volume_chain)

            await self.jobs.log_vm(
                row,
                f"Cloning volume '{request.volume_name}' from snapshot '{request.snapshot_name}' -> '{clone_name}'.",
            )
            clone = await self.storage.clone_volume_from_snapshot(
                request.controller_id, request.volume_name, request.snapshot_name, clone_name
            )
            if not clone.success:
                raise StorageError(clone.message or f"Cloning '{request.volume_name}' failed.")
            clone_created = True
            await self.jobs.log_vm(row, f"Clone created: '{clone_name}'.")
            await self.jobs.set_stage(job_id, "Cloned volume")
            await self._check_cancelled(job_id, cancel_event)

            await self._apply_export_policy(row, request, clone_name)
            await self.jobs.set_stage(job_id, "Export policy applied")
            await self._check_cancelled(job_id, cancel_event)

            volume = await self.storage.lookup_volume(request.controller_id, clone_name)
            if volume is None:
                raise StorageError(f"UUID not found for clone '{clone_name}'.")
            export_path = f"/{clone_name}"
            await self.jobs.log_vm(row, f"Setting export path '{export_path}'.")
            if not await self.storage.set_export_path(request.controller_id, volume.uuid, export_path):
                raise StorageError(f"Failed to export clone '{clone_name}'.")
            await self.jobs.set_stage(job_id, "Export path set")
            await self._check_cancelled(job_id, cancel_event)

            mount = await self.storage.get_volume_mount_info(request.controller_id, clone_name)
            if mount is None:
                raise StorageError(f"Mount info not found for clone '{clone_name}'.")

            cluster = await self._load_cluster(request.cluster_id)
            target_host = self._match_host(cluster, request.host_address)
            if target_host is None:
                raise NotFoundError("Selected target host not found in cluster.")

            await self.jobs.log_vm(
                row, f"Mounting NFS on host '{target_host.hostname}' ({target_host.host_address})."
            )
            mounted_cluster = cluster
            mounted = await self.proxmox.mount_nfs_storage(
                cluster,
                target_host.hostname,
                host_address(target_host),
                clone_name,
                mount.mount_ip,
                export_path,
                snapshot_chain_active=snapshot_chain,
            )
            if not mounted:
                raise StorageError("Failed to mount clone on target host.")
            await self.jobs.set_stage(job_id, "Mounted on target host")
            await self._check_cancelled(job_id, cancel_event)

            await self.jobs.log_vm(
                row, f"Starting restore to host '{target_host.hostname}' (type: {request.restore_type})."
            )
            options = request.rebuild_options()
            if request.replaces_original:
                original_host = self._match_host(cluster, request.original_host_address)
                if original_host is None:
                    raise NotFoundError(
                        f"Original host '{request.original_host_address}' not found in cluster."
                    )
                await self.jobs.log_vm(
                    row, f"Shutting down and removing original VM {request.vmid} on '{original_host.hostname}'."
                )
                await self.proxmox.shutdown_and_remove_vm(
                    cluster, original_host.hostname, host_address(original_host), request.vmid
                )
                new_vmid = await self.rebuilder.restore_in_place(
                    cluster, target_host, document, clone_name, request.vmid, options
                )
            else:
                new_vmid = await self.rebuilder.restore_as_new(
                    cluster, target_host, document, clone_name, options
                )

            await self.jobs.log_vm(row, f"Restore completed (VM {new_vmid}).")
            await self.jobs.mark_vm_success(row)
            await self.jobs.complete_job(job_id)
            logger.info(f"Restore job {job_id} completed (VM {new_vmid})", extra={"job_id": job_id})
            await self.notifier.notify_restore(
                job_id, request.vm_name, "Success", snapshot_name=request.snapshot_name,
                target_host=target_host.hostname, new_vmid=new_vmid,
            )
            return True

        except asyncio.CancelledError:
            await self._discard_clone(job_id, request, clone_name, clone_created, mounted_cluster)
            await self.jobs.mark_vm_failure(row, "Job was cancelled.")
            await self.jobs.cancel_job(job_id)
            raise

        except Exception as e:
            message = str(e)
            if isinstance(e, JobCancelled):
                logger.info(f"Restore job {job_id} cancelled", extra={"job_id": job_id})
            else:
                logger.error(f"Restore job {job_id} failed: {message}", exc_info=True, extra={"job_id": job_id})
            await self._discard_clone(job_id, request, clone_name, clone_created, mounted_cluster)
            await self.jobs.log_vm(row, message, "Error")
            await self.jobs.mark_vm_failure(row, message)
            if isinstance(e, JobCancelled):
                await self.jobs.cancel_job(job_id, message)
            else:
                await self.jobs.fail_job(job_id, message)
            await self.notifier.notify_restore(
                job_id, request.vm_name, "Error", notes=message, snapshot_name=request.snapshot_name,
                target_host=target_host.hostname if target_host else request.host_address,
            )
            return False

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    async def _load_backup_record(self, backup_id: int) -> BackupRecord:
        async with self.session_factory() as db:
            record = await db.get(BackupRecord, backup_id)
        if record is None:
            raise NotFoundError(f"Backup record {backup_id} not found.")
        return record

    @staticmethod
    def _config_document(record: BackupRecord) -> Dict[str, Any]:
        if not record.configuration_json:
            raise ValidationFailure(f"Backup record {record.id} has no stored VM configuration.")
        try:
            document = json.loads(record.configuration_json)
        except ValueError as e:
            raise ValidationFailure(f"Stored configuration of backup record {record.id} is not valid JSON: {e}")
        if not isinstance(document, dict):
            raise ValidationFailure(f"Stored configuration of backup record {record.id} is malformed.")
        return document

    async def _load_cluster(self, cluster_id: Optional[int]) -> ProxmoxCluster:
        async with self.session_factory() as db:
            if cluster_id is not None:
                cluster = await db.get(ProxmoxCluster, cluster_id)
            else:
                result = await db.execute(
                    select(ProxmoxCluster)
                    .where(ProxmoxCluster.hosts.any())
                    .order_by(ProxmoxCluster.id)
                    .limit(1)
                )
                cluster = result.scalar_one_or_none()
        if cluster is None:
            raise NotFoundError("Proxmox cluster not found.")
        return cluster

    @staticmethod
    def _match_host(cluster: ProxmoxCluster, address: Optional[str]) -> Optional[ProxmoxHost]:
        wanted = (address or "").strip().lower()
        if not wanted:
            return None
        for host in cluster.hosts or []:
            if (host.host_address or "").lower() == wanted or (host.hostname or "").lower() == wanted:
                return host
        return None

    async def _apply_export_policy(self, row: int, request: RestoreRequest, clone_name: str):
        if not request.is_secondary:
            await self.jobs.log_vm(row, "Copying export policy on primary.")
            if not await self.storage.copy_export_policy(request.controller_id, request.volume_name, clone_name):
                raise StorageError("Failed to apply export policy on primary clone.")
            return

        await self.jobs.log_vm(row, "Applying export policy on secondary.")
        primary_controller_id, primary_volume = await self._primary_source(request)

        async with self.session_factory() as db:
            policy_name = (await db.execute(
                select(SelectedNetappVolume.export_policy_name)
                .where(SelectedNetappVolume.controller_id == primary_controller_id)
                .where(func.lower(SelectedNetappVolume.volume_name) == (primary_volume or "").lower())
                .limit(1)
            )).scalar_one_or_none()
            svm_name = (await db.execute(
                select(SelectedNetappVolume.vserver)
                .where(SelectedNetappVolume.controller_id == request.controller_id)
                .where(func.lower(SelectedNetappVolume.volume_name) == request.volume_name.lower())
                .limit(1)
            )).scalar_one_or_none()

        if not policy_name:
            raise NotFoundError(f"No export policy for {primary_volume}@{primary_controller_id}")
        if not svm_name:
            raise NotFoundError("Missing SVM on secondary.")

        await self.storage.ensure_export_policy_on_secondary(
            policy_name, primary_controller_id, request.controller_id, svm_name
        )
        if not await self.storage.set_export_policy(request.controller_id, clone_name, policy_name):
            raise StorageError("Failed to set export policy on cloned volume (secondary).")

    async def _primary_source(self, request: RestoreRequest):
        """Primary controller and volume of a secondary copy."""
        async with self.session_factory() as db:
            record = await db.get(BackupRecord, request.backup_id)
            if record is not None:
                snapshot = (await db.execute(
                    select(NetappSnapshot)
                    .where(NetappSnapshot.job_id == record.job_id)
                    .where(NetappSnapshot.snapshot_name == record.snapshot_name)
                    .limit(1)
                )).scalar_one_or_none()
                if snapshot is not None:
                    return snapshot.primary_controller_id, snapshot.primary_volume

            relation = (await db.execute(
                select(SnapMirrorRelation)
                .where(SnapMirrorRelation.destination_controller_id == request.controller_id)
                .where(func.lower(SnapMirrorRelation.destination_volume) == request.volume_name.lower())
                .limit(1)
            )).scalar_one_or_none()

        if relation is None:
            raise NotFoundError(
                f"No replication relation with destination '{request.volume_name}' "
                f"on controller {request.controller_id}."
            )
        return relation.source_controller_id, relation.source_volume

    async def _check_cancelled(self, job_id: int, cancel_event: Optional[asyncio.Event]):
        """
        Raises:
            JobCancelled: If the worker is stopping or the job was flagged for cancellation
        """
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelled("Job was cancelled.")
        if await self.jobs.is_cancel_requested(job_id):
            raise JobCancelled("Job was cancelled.")

    async def _discard_clone(
        self,
        job_id: int,
        request: RestoreRequest,
        clone_name: str,
        clone_created: bool,
        mounted_cluster: Optional[ProxmoxCluster],
    ):
        """Unmount and delete a clone left behind by a failed restore. Never raises."""
        if not clone_created:
            return
        if mounted_cluster is not None:
            try:
                await self.proxmox.unmount_nfs_storage(mounted_cluster, clone_name)
            except Exception as e:
                logger.warning(
                    f"Failed to remove storage '{clone_name}' from the cluster: {e}", extra={"job_id": job_id}
                )
        try:
            if await self.storage.delete_volume(request.controller_id, clone_name):
                logger.info(f"Deleted clone '{clone_name}' after failed restore", extra={"job_id": job_id})
            else:
                logger.warning(f"Clone '{clone_name}' could not be deleted", extra={"job_id": job_id})
        except Exception as e:
            logger.error(f"Failed to delete clone '{clone_name}': {e}", extra={"job_id": job_id})
