"""
Backup orchestration.

A backup job snapshots one Proxmox storage (a NetApp volume) and records
every VM found on it:

1. Create the job and its per-VM result rows
2. Read power states, mark excluded and stopped VMs as skipped
3. Optionally pause running VMs (IO freeze) and take Proxmox snapshots
4. Take the storage snapshot (optionally SnapLock-locked)
5. Persist one BackupRecord per VM and one NetappSnapshot row
6. Remove the transient Proxmox snapshots
7. Optionally trigger SnapMirror and wait for the snapshot on the secondary
8. Complete the job and send the outcome notification

Paused VMs are resumed as soon as the storage snapshot call returns, and on
any failure before that. Transient Proxmox snapshots are removed whatever
happens after they were created.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy import func, select, update

from bareprox.core.config import settings
from bareprox.core.exceptions import (
    ConflictEmptyError,
    JobCancelled,
    NotFoundError,
    ValidationFailure,
)
from bareprox.core.timezone import app_now
from bareprox.models import (
    AsyncSessionLocal,
    BackupRecord,
    JobStatus,
    JobType,
    NetappSnapshot,
    ProxmoxCluster,
    SnapMirrorRelation,
    utcnow,
)
from bareprox.services.backup.replication import ReplicationWaiter
from bareprox.services.jobs import CancelWatch, JobWriter
from bareprox.services.notifications import EmailNotifier
from bareprox.services.proxmox import ProxmoxService, ProxmoxVm
from bareprox.services.storage import (
    SnapshotLock,
    StorageClient,
    StorageError,
    create_storage_client,
    retention_delta,
)

logger = logging.getLogger(__name__)

PROXMOX_SNAPSHOT_DESCRIPTION = "Backup created via BareProx"


@dataclass
class BackupRequest:
    """Parameters of one backup run (API call or schedule firing)."""
    cluster_id: int
    controller_id: int
    storage_name: str
    label: str
    is_application_aware: bool = False
    enable_io_freeze: bool = False
    use_proxmox_snapshot: bool = False
    with_memory: bool = False
    retention_count: int = 7
    retention_unit: str = "Days"
    replicate_to_secondary: bool = False
    enable_locking: bool = False
    lock_retention_count: Optional[int] = None
    lock_retention_unit: Optional[str] = None
    excluded_vm_ids: List[str] = field(default_factory=list)
    schedule_id: Optional[int] = None
    notification_recipients: Optional[List[str]] = None

    def excluded_set(self) -> Set[int]:
        """Excluded VM ids; entries that are not integers are ignored."""
        result = set()
        for value in self.excluded_vm_ids or []:
            try:
                result.add(int(str(value).strip()))
            except ValueError:
                continue
        return result

    def snapshot_lock(self) -> Optional[SnapshotLock]:
        if not self.enable_locking:
            return None
        return SnapshotLock(count=int(self.lock_retention_count), unit=self.lock_retention_unit)

    def validate(self):
        """
        Raises:
            ValidationFailure: If a required field is missing or inconsistent
        """
        if not (self.storage_name or "").strip():
            raise ValidationFailure("Storage name is required.")
        if not (self.label or "").strip():
            raise ValidationFailure("Label is required.")
        if self.retention_count is None or int(self.retention_count) < 1:
            raise ValidationFailure("Retention count must be at least 1.")
        try:
            retention_delta(self.retention_count, self.retention_unit)
        except ValueError as e:
            raise ValidationFailure(str(e))
        if self.enable_locking:
            if not self.lock_retention_count or int(self.lock_retention_count) < 1:
                raise ValidationFailure("Lock retention count is required when locking is enabled.")
            try:
                retention_delta(self.lock_retention_count, self.lock_retention_unit or "")
            except ValueError as e:
                raise ValidationFailure(str(e))


@dataclass
class BackupOutcome:
    job_id: int
    status: JobStatus

    @property
    def success(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.WARNING)


@dataclass
class _BackupRun:
    """Mutable state of one run, shared between the steps and the compensations."""
    request: BackupRequest
    excluded: Set[int]
    job_id: Optional[int] = None
    cluster: Optional[ProxmoxCluster] = None
    vms: List[ProxmoxVm] = field(default_factory=list)
    rows: Dict[int, int] = field(default_factory=dict)
    power: Dict[int, str] = field(default_factory=dict)
    paused: List[ProxmoxVm] = field(default_factory=list)
    hv_snapshots: Dict[int, str] = field(default_factory=dict)
    hv_snapshots_cleaned: bool = False
    warned: Set[int] = field(default_factory=set)
    had_warnings: bool = False
    skipped_count: int = 0
    snapshot_name: Optional[str] = None
    cancel: Optional[asyncio.Event] = None

    def is_stopped(self, vm: ProxmoxVm) -> bool:
        return self.power.get(vm.vmid, "").lower() == "stopped"

    def is_skipped(self, vm: ProxmoxVm) -> bool:
        return vm.vmid in self.excluded or self.is_stopped(vm)

    def warn(self, vmid: Optional[int] = None):
        self.had_warnings = True
        if vmid is not None:
            self.warned.add(vmid)


class BackupService:
    """Runs backup jobs against one cluster and one storage controller."""

    def __init__(
        self,
        session_factory=None,
        proxmox: Optional[ProxmoxService] = None,
        storage: Optional[StorageClient] = None,
        jobs: Optional[JobWriter] = None,
        notifier: Optional[EmailNotifier] = None,
        replication_waiter: Optional[ReplicationWaiter] = None,
        snapshot_timeout: Optional[float] = None,
        cancel_poll_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.proxmox = proxmox or ProxmoxService()
        self.storage = storage or create_storage_client(session_factory=self.session_factory)
        self.jobs = jobs or JobWriter(self.session_factory)
        self.notifier = notifier or EmailNotifier(self.session_factory)
        self.replication_waiter = replication_waiter or ReplicationWaiter(self.storage)
        self.snapshot_timeout = (
            settings.PROXMOX_SNAPSHOT_TIMEOUT_MINUTES * 60 if snapshot_timeout is None else snapshot_timeout
        )
        self.cancel_poll_interval = cancel_poll_interval

    async def start_backup(self, request: BackupRequest, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """
        Run a backup job to completion.

        Returns:
            True if the job completed (possibly with warnings), False if it
            failed or was cancelled
        """
        outcome = await self.run_backup(request, cancel_event)
        return outcome.success

    async def run_backup(self, request: BackupRequest, cancel_event: Optional[asyncio.Event] = None) -> "BackupOutcome":
        """
        Run a backup job to completion and report its job id and final status.

        Args:
            request: What to back up and how
            cancel_event: The worker's stop event. It and the job's cancel
                flag are checked at step boundaries and abort the snapshot
                and replication waits

        Returns:
            The job id and its terminal status

        Raises:
            ValidationFailure: If the request is malformed (no job is created)
        """
        request.validate()
        run = _BackupRun(request=request, excluded=request.excluded_set())
        storage_name = request.storage_name
        label = request.label
        watch: Optional[CancelWatch] = None

        try:
            run.job_id = await self.jobs.create_job(
                JobType.BACKUP,
                storage_name,
                payload={"storageName": storage_name, "label": label, "excludedCount": len(run.excluded)},
            )
            logger.info(f"Backup job {run.job_id} started for storage '{storage_name}'", extra={"job_id": run.job_id})
            watch = CancelWatch(self.jobs, run.job_id, parent=cancel_event, interval=self.cancel_poll_interval)
            run.cancel = watch.start()

            run.cluster = await self._load_cluster(request.cluster_id)
            snapshot_chain = await self._snapshot_chain_active(run.cluster, storage_name)

            run.vms = await self.proxmox.get_vms_on_storage(run.cluster, storage_name)
            if not run.vms:
                raise ConflictEmptyError(f"No VMs found in storage '{storage_name}'.")

            for vm in run.vms:
                run.rows[vm.vmid] = await self.jobs.begin_vm(run.job_id, vm.vmid, vm.name, vm.node, storage_name)

            await self._read_power_states(run)
            await self._mark_skipped(run)
            active = [vm for vm in run.vms if not run.is_skipped(vm)]

            if request.is_application_aware and request.enable_io_freeze:
                await self._pause_vms(run, active)
            await self._check_cancelled(run, cancel_event)

            if request.is_application_aware and request.use_proxmox_snapshot:
                await self._take_proxmox_snapshots(run, active)
            await self._check_cancelled(run, cancel_event)

            result = await self.storage.create_snapshot(
                request.controller_id, storage_name, label, lock=request.snapshot_lock()
            )
            await self._resume_paused(run)
            if not result.success:
                raise StorageError(result.error_message or f"Storage snapshot of '{storage_name}' failed.")
            run.snapshot_name = result.snapshot_name

            await self.jobs.set_stage(run.job_id, "NetApp snapshot created")
            for vm in run.vms:
                await self.jobs.log_vm(run.rows[vm.vmid], f"Storage snapshot created: {run.snapshot_name}")

            await self._store_backup_records(run, snapshot_chain)
            await self._store_snapshot_record(run)

            if run.hv_snapshots:
                await self._cleanup_proxmox_snapshots(run)

            if request.replicate_to_secondary:
                await self._replicate(run)

            await self._check_cancelled(run, cancel_event)

            final = JobStatus.WARNING if run.had_warnings else JobStatus.COMPLETED
            await self.jobs.complete_job(run.job_id, final)
            logger.info(f"Backup job {run.job_id} finished: {final.value}", extra={"job_id": run.job_id})
            await self.notifier.notify_backup(
                run.job_id,
                storage_name,
                label,
                "Warning" if run.had_warnings else "Success",
                snapshot_name=run.snapshot_name,
                total_vms=len(run.vms),
                skipped_vms=run.skipped_count,
                warned_vms=len(run.warned),
                recipients=request.notification_recipients,
            )
            return BackupOutcome(run.job_id, final)

        except JobCancelled as e:
            logger.info(f"Backup job {run.job_id} cancelled", extra={"job_id": run.job_id})
            await self.jobs.cancel_job(run.job_id, str(e))
            await self.notifier.notify_backup(
                run.job_id, storage_name, label, "Error", notes=str(e),
                recipients=request.notification_recipients,
            )
            return BackupOutcome(run.job_id, JobStatus.CANCELLED)

        except asyncio.CancelledError:
            if run.job_id is not None:
                await self.jobs.cancel_job(run.job_id)
            raise

        except Exception as e:
            if run.job_id is None:
                raise
            logger.error(
                f"Backup job {run.job_id} for '{storage_name}' failed: {e}", exc_info=True, extra={"job_id": run.job_id}
            )
            await self.jobs.fail_job(run.job_id, str(e))
            await self.notifier.notify_backup(
                run.job_id, storage_name, label, "Error", notes=str(e),
                snapshot_name=run.snapshot_name, recipients=request.notification_recipients,
            )
            return BackupOutcome(run.job_id, JobStatus.FAILED)

        finally:
            if watch is not None:
                await watch.stop()
            await self._compensate(run)

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    async def _load_cluster(self, cluster_id: int) -> ProxmoxCluster:
        async with self.session_factory() as db:
            cluster = await db.get(ProxmoxCluster, cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster with ID {cluster_id} not found.")
        if not cluster.hosts:
            raise ValidationFailure("Cluster not properly configured.")
        return cluster

    async def _snapshot_chain_active(self, cluster: ProxmoxCluster, storage_name: str) -> bool:
        try:
            active = await self.proxmox.is_snapshot_chain_active(cluster, storage_name)
            logger.info(f"Snapshot-as-volume-chain on '{storage_name}': {active}")
            return active
        except Exception as e:
            logger.warning(
                f"Could not determine snapshot-as-volume-chain state for storage '{storage_name}'. "
                f"Defaulting to false. ({e})"
            )
            return False

    async def _read_power_states(self, run: _BackupRun):
        async def read(vm: ProxmoxVm):
            try:
                return vm.vmid, await self.proxmox.get_vm_status(run.cluster, vm.node, vm.address, vm.vmid)
            except Exception as e:
                logger.warning(f"Could not read power state of VM {vm.vmid}: {e}", extra={"job_id": run.job_id})
                return vm.vmid, ""

        for vmid, state in await asyncio.gather(*(read(vm) for vm in run.vms)):
            run.power[vmid] = state or ""

    async def _mark_skipped(self, run: _BackupRun):
        for vm in run.vms:
            row = run.rows[vm.vmid]
            if vm.vmid in run.excluded:
                await self.jobs.mark_vm_skipped(row, "Excluded by user")
                run.skipped_count += 1
            elif run.is_stopped(vm):
                await self.jobs.mark_vm_skipped(row, "VM is powered off")
                run.skipped_count += 1

    async def _pause_vms(self, run: _BackupRun, vms: List[ProxmoxVm]):
        async def pause(vm: ProxmoxVm):
            row = run.rows[vm.vmid]
            try:
                paused = await self.proxmox.pause_vm(run.cluster, vm.node, vm.address, vm.vmid)
            except Exception as e:
                logger.warning(f"Pause failed for VM {vm.vmid} on {vm.node}: {e}", extra={"job_id": run.job_id})
                await self.jobs.set_io_freeze_result(row, attempted=True, succeeded=False, was_running=True)
                await self.jobs.log_vm(row, f"IO freeze failed: {e}", "Warning")
                run.warn(vm.vmid)
                return

            await self.jobs.set_io_freeze_result(row, attempted=True, succeeded=paused, was_running=True)
            if paused:
                run.paused.append(vm)
                await self.jobs.log_vm(row, "IO freeze requested")
            else:
                await self.jobs.log_vm(row, "IO freeze skipped (VM not running)", "Warning")
                run.warn(vm.vmid)

        await asyncio.gather(*(pause(vm) for vm in vms))
        if run.paused:
            await self.jobs.set_stage(run.job_id, "Paused VMs")

    async def _take_proxmox_snapshots(self, run: _BackupRun, vms: List[ProxmoxVm]):
        name = f"BareProx-{run.request.label}_{app_now():%Y-%m-%d-%H-%M-%S}"
        await self.jobs.set_stage(run.job_id, "Creating Proxmox snapshots")

        async def create(vm: ProxmoxVm):
            row = run.rows[vm.vmid]
            try:
                upid = await self.proxmox.create_snapshot(
                    run.cluster, vm.node, vm.address, vm.vmid, name,
                    PROXMOX_SNAPSHOT_DESCRIPTION, with_memory=run.request.with_memory,
                )
            except Exception as e:
                logger.warning(f"Snapshot creation failed for VM {vm.vmid}: {e}", extra={"job_id": run.job_id})
                await self.jobs.log_vm(row, f"Snapshot request failed: {e}", "Error")
                run.warn(vm.vmid)
                return None

            await self.jobs.mark_vm_snapshot_requested(row, name, upid)
            await self.jobs.log_vm(row, f"Snapshot requested (UPID={upid or 'n/a'})")
            if not upid:
                logger.warning(f"Snapshot creation returned empty UPID for VM {vm.vmid}", extra={"job_id": run.job_id})
                await self.jobs.log_vm(row, "Snapshot UPID was empty", "Warning")
                run.warn(vm.vmid)
                return None

            run.hv_snapshots[vm.vmid] = name
            return vm, upid

        requested = [r for r in await asyncio.gather(*(create(vm) for vm in vms)) if r]

        await self.jobs.set_stage(run.job_id, "Waiting for Proxmox snapshots")

        async def wait(vm: ProxmoxVm, upid: str):
            row = run.rows[vm.vmid]
            try:
                done = await self.proxmox.wait_for_task(
                    run.cluster, vm.node, vm.address, upid, timeout=self.snapshot_timeout, cancel_event=run.cancel
                )
            except JobCancelled:
                await self.jobs.log_vm(row, "Snapshot wait aborted: job cancelled", "Warning")
                return
            except Exception as e:
                logger.warning(f"Waiting for snapshot task of VM {vm.vmid} failed: {e}", extra={"job_id": run.job_id})
                done = False

            if done:
                await self.jobs.mark_vm_snapshot_taken(row)
                await self.jobs.log_vm(row, "Snapshot completed")
            else:
                logger.warning(f"Snapshot task for VM {vm.vmid} timed out", extra={"job_id": run.job_id})
                await self.jobs.log_vm(row, "Snapshot wait timed out", "Warning")
                run.warn(vm.vmid)

        await asyncio.gather(*(wait(vm, upid) for vm, upid in requested))
        await self.jobs.set_stage(run.job_id, "Proxmox snapshots completed")

    async def _store_backup_records(self, run: _BackupRun, snapshot_chain: bool):
        request = run.request

        for vm in run.vms:
            row = run.rows[vm.vmid]
            skipped = run.is_skipped(vm)
            try:
                config = await self.proxmox.get_vm_config(run.cluster, vm.address, vm.vmid)
                async with self.session_factory() as db:
                    record = BackupRecord(
                        job_id=run.job_id,
                        schedule_id=request.schedule_id,
                        vmid=vm.vmid,
                        vm_name=vm.name,
                        host_name=vm.node,
                        storage_name=request.storage_name,
                        snapshot_name=run.snapshot_name,
                        controller_id=request.controller_id,
                        label=request.label,
                        retention_count=request.retention_count,
                        retention_unit=request.retention_unit,
                        timestamp=utcnow(),
                        configuration_json=json.dumps(config),
                        is_application_aware=request.is_application_aware and not skipped,
                        enable_io_freeze=request.enable_io_freeze and not skipped,
                        use_proxmox_snapshot=request.use_proxmox_snapshot and not skipped,
                        with_memory=request.with_memory and not skipped,
                        snapshot_as_volume_chain=snapshot_chain,
                        replicate_to_secondary=False,
                    )
                    db.add(record)
                    await db.commit()
                    record_id = record.id

                if skipped:
                    await self.jobs.log_vm(row, "BackupRecord stored (VM skipped earlier)")
                    continue

                if vm.vmid in run.warned:
                    await self.jobs.mark_vm_warning(row, "Completed with warnings")
                else:
                    await self.jobs.mark_vm_success(row, backup_record_id=record_id)
                await self.jobs.log_vm(row, "BackupRecord stored")

            except Exception as e:
                logger.error(f"Failed to persist BackupRecord for VM {vm.vmid}: {e}", extra={"job_id": run.job_id})
                await self.jobs.mark_vm_failure(row, f"Failed to persist BackupRecord: {e}")
                run.warn(vm.vmid)

    async def _store_snapshot_record(self, run: _BackupRun):
        async with self.session_factory() as db:
            db.add(
                NetappSnapshot(
                    job_id=run.job_id,
                    snapshot_name=run.snapshot_name,
                    primary_volume=run.request.storage_name,
                    primary_controller_id=run.request.controller_id,
                    snapmirror_label=run.request.label,
                    exists_on_primary=True,
                    exists_on_secondary=False,
                    is_replicated=False,
                    last_checked=utcnow(),
                )
            )
            await db.commit()

    async def _cleanup_proxmox_snapshots(self, run: _BackupRun):
        vms = [vm for vm in run.vms if vm.vmid in run.hv_snapshots]

        async def delete(vm: ProxmoxVm):
            name = run.hv_snapshots[vm.vmid]
            try:
                await self.proxmox.delete_snapshot(run.cluster, vm.node, vm.address, vm.vmid, name)
            except Exception as e:
                logger.warning(
                    f"Failed to delete Proxmox snapshot {name} of VM {vm.vmid}: {e}", extra={"job_id": run.job_id}
                )
                return
            if run.job_id is not None and vm.vmid in run.rows:
                await self.jobs.log_vm(run.rows[vm.vmid], "Proxmox snapshot deleted after storage snapshot")

        await asyncio.gather(*(delete(vm) for vm in vms))
        run.hv_snapshots_cleaned = True
        logger.info("Proxmox snapshots deleted after storage snapshot", extra={"job_id": run.job_id})

    async def _find_relation(self, controller_id: int, volume_name: str) -> Optional[SnapMirrorRelation]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SnapMirrorRelation)
                .where(SnapMirrorRelation.source_controller_id == controller_id)
                .where(func.lower(SnapMirrorRelation.source_volume) == volume_name.lower())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _log_all(self, run: _BackupRun, message: str, level: str = "Info"):
        for vm in run.vms:
            await self.jobs.log_vm(run.rows[vm.vmid], message, level)

    async def _replicate(self, run: _BackupRun):
        request = run.request
        relation = await self._find_relation(request.controller_id, request.storage_name)
        if relation is None:
            raise NotFoundError(f"No SnapMirror relation found for source volume '{request.storage_name}'.")

        await self.jobs.set_stage(run.job_id, "Triggering SnapMirror update")
        if not await self.replication_waiter.trigger(relation):
            await self.jobs.set_stage(run.job_id, "Replication skipped (trigger failed)")
            await self._log_all(run, "Replication skipped (trigger failed)", "Warning")
            run.warn()
            return

        await self.jobs.set_stage(run.job_id, "Waiting for SnapMirror to catch up")
        replicated = await self.replication_waiter.wait(relation, run.snapshot_name, run.cancel)

        if not replicated:
            await self.jobs.set_stage(run.job_id, "Replication not confirmed (timeout/no snapshot)")
            await self._log_all(run, "Replication not confirmed (timeout/no snapshot)", "Warning")
            run.warn()
            return

        async with self.session_factory() as db:
            await db.execute(
                update(NetappSnapshot)
                .where(NetappSnapshot.job_id == run.job_id)
                .where(NetappSnapshot.snapshot_name == run.snapshot_name)
                .values(
                    exists_on_secondary=True,
                    secondary_volume=relation.destination_volume,
                    secondary_controller_id=relation.destination_controller_id,
                    is_replicated=True,
                    last_checked=utcnow(),
                )
            )
            await db.execute(
                update(BackupRecord)
                .where(BackupRecord.job_id == run.job_id)
                .values(replicate_to_secondary=True)
            )
            await db.commit()

        await self.jobs.set_stage(run.job_id, "Replication completed")
        await self._log_all(run, f"Replicated to secondary ({relation.destination_volume})")

    async def _check_cancelled(self, run: _BackupRun, cancel_event: Optional[asyncio.Event]):
        if any(event is not None and event.is_set() for event in (cancel_event, run.cancel)):
            raise JobCancelled("Job was cancelled.")
        if await self.jobs.is_cancel_requested(run.job_id):
            raise JobCancelled("Job was cancelled.")

    # ------------------------------------------------------------------ #
    # Compensations
    # ------------------------------------------------------------------ #

    async def _resume_paused(self, run: _BackupRun):
        """Resume every VM this run paused. Never raises."""
        paused, run.paused = run.paused, []
        for vm in paused:
            try:
                await self.proxmox.unpause_vm(run.cluster, vm.node, vm.address, vm.vmid)
            except Exception as e:
                logger.error(f"Failed to resume VM {vm.vmid} on {vm.node}: {e}", extra={"job_id": run.job_id})

    async def _compensate(self, run: _BackupRun):
        """Resume paused VMs and drop leftover Proxmox snapshots. Never raises."""
        await self._resume_paused(run)

        if run.hv_snapshots and not run.hv_snapshots_cleaned:
            try:
                await self._cleanup_proxmox_snapshots(run)
            except Exception as e:
                logger.error(f"Proxmox snapshot cleanup for job {run.job_id} failed: {e}", extra={"job_id": run.job_id})
