"""
Restore orchestration: queueing, the clone/export/mount pipeline and clean-up.
"""
import asyncio
import json

import pytest
from sqlalchemy import select

from bareprox.core.exceptions import NotFoundError, ServiceUnavailableError, ValidationFailure
from bareprox.models import (
    BackupRecord,
    Job,
    JobStatus,
    JobType,
    JobVmResult,
    SelectedNetappVolume,
    VmResultStatus,
    utcnow,
)
from bareprox.services.queue import BackgroundTaskQueue
from bareprox.services.restore import RestoreRequest, RestoreService

from tests.conftest import FakeProxmox


class FakeRebuilder:
    def __init__(self, proxmox: FakeProxmox):
        self.proxmox = proxmox

    async def restore_as_new(self, cluster, host, document, clone_name, options):
        self.proxmox.calls.append(("restore_as_new", host.hostname, clone_name))
        return 200

    async def restore_in_place(self, cluster, host, document, clone_name, vmid, options):
        self.proxmox.calls.append(("restore_in_place", host.hostname, clone_name, vmid))
        return vmid


@pytest.fixture
async def backup_record(session_factory, inventory, jobs):
    job_id = await jobs.create_job(JobType.BACKUP, "nfs1", status=JobStatus.COMPLETED)
    async with session_factory() as db:
        record = BackupRecord(
            job_id=job_id,
            vmid=101,
            vm_name="web",
            host_name="pve1",
            storage_name="nfs1",
            snapshot_name="nfs1_daily_2026-10-18-10-00-00",
            controller_id=inventory["primary_id"],
            label="daily",
            retention_count=7,
            retention_unit="Days",
            timestamp=utcnow(),
            configuration_json=json.dumps({"name": "web", "scsi0": "nfs1:101/vm-101-disk-0.qcow2"}),
        )
        db.add(record)
        await db.commit()
        return record


@pytest.fixture
def proxmox():
    return FakeProxmox()


@pytest.fixture
def service(session_factory, storage, jobs, notifier, proxmox):
    return RestoreService(
        BackgroundTaskQueue(maxsize=2),
        session_factory=session_factory,
        proxmox=proxmox,
        storage=storage,
        rebuilder=FakeRebuilder(proxmox),
        jobs=jobs,
        notifier=notifier,
    )


def make_request(record, inventory, **overrides):
    values = dict(
        backup_id=record.id,
        vmid=101,
        vm_name="web",
        controller_id=inventory["primary_id"],
        volume_name="nfs1",
        snapshot_name=record.snapshot_name,
        host_address="10.0.0.12",
        cluster_id=inventory["cluster_id"],
    )
    values.update(overrides)
    return RestoreRequest(**values)


async def run_queued(service):
    work = await service.queue.dequeue()
    await work.item(asyncio.Event())
    service.queue.task_done()


async def test_restore_is_queued_then_rebuilt_as_new(service, storage, proxmox, jobs, backup_record, inventory):
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))

    job = await jobs.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert service.queue.qsize() == 1

    await run_queued(service)

    job = await jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert storage.names()[:3] == ["clone", "copy_export_policy", "set_export_path"]
    clone_name = storage.calls[0][4]
    assert clone_name.startswith(f"restore_{job_id}_")
    assert ("mount", "pve2", clone_name) in proxmox.calls
    assert ("restore_as_new", "pve2", clone_name) in proxmox.calls
    assert "delete_volume" not in storage.names()


async def test_clone_failure_fails_job_without_mount(service, storage, proxmox, jobs, notifier,
                                                     session_factory, backup_record, inventory):
    storage.clone_ok = False
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))

    await run_queued(service)

    job = await jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "clone failed"
    assert "mount" not in proxmox.names()
    assert "delete_volume" not in storage.names()
    async with session_factory() as db:
        row = (await db.execute(select(JobVmResult).where(JobVmResult.job_id == job_id))).scalar_one()
    assert row.status == VmResultStatus.FAILED
    assert notifier.notify_restore.await_args.args[2] == "Error"


async def test_mount_failure_discards_clone(service, storage, proxmox, jobs, backup_record, inventory):
    proxmox.mount_ok = False
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))

    await run_queued(service)

    assert (await jobs.get_job(job_id)).status == JobStatus.FAILED
    assert "unmount" in proxmox.names()
    assert storage.names()[-1] == "delete_volume"


async def test_replace_original_shuts_down_before_rebuild(service, proxmox, jobs, backup_record, inventory):
    job_id = await service.enqueue_restore(
        make_request(backup_record, inventory, restore_type="ReplaceOriginal", original_host_address="pve1")
    )

    await run_queued(service)

    assert (await jobs.get_job(job_id)).status == JobStatus.COMPLETED
    names = proxmox.names()
    assert names.index("shutdown_remove") < names.index("restore_in_place")
    assert ("shutdown_remove", "pve1", 101) in proxmox.calls
    restored = [c for c in proxmox.calls if c[0] == "restore_in_place"][0]
    assert restored[3] == 101


async def test_replace_original_requires_original_host(service, backup_record, inventory):
    with pytest.raises(ValidationFailure):
        await service.enqueue_restore(make_request(backup_record, inventory, restore_type="ReplaceOriginal"))


async def test_unknown_target_host_fails(service, storage, jobs, backup_record, inventory):
    job_id = await service.enqueue_restore(make_request(backup_record, inventory, host_address="10.9.9.9"))

    await run_queued(service)

    job = await jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Selected target host not found in cluster."
    assert storage.names()[-1] == "delete_volume"


async def test_secondary_restore_applies_policy_on_secondary(service, storage, jobs, session_factory,
                                                             backup_record, inventory):
    async with session_factory() as db:
        db.add_all([
            SelectedNetappVolume(controller_id=inventory["primary_id"], vserver="svm1",
                                 volume_name="nfs1", export_policy_name="pve-hosts"),
            SelectedNetappVolume(controller_id=inventory["secondary_id"], vserver="svm-dr",
                                 volume_name="nfs1_dest"),
        ])
        await db.commit()

    job_id = await service.enqueue_restore(make_request(
        backup_record, inventory, target="Secondary",
        controller_id=inventory["secondary_id"], volume_name="nfs1_dest",
    ))
    await run_queued(service)

    assert (await jobs.get_job(job_id)).status == JobStatus.COMPLETED
    assert ("ensure_policy", "pve-hosts", inventory["secondary_id"], "svm-dr") in storage.calls
    assert "copy_export_policy" not in storage.names()


async def test_unknown_backup_is_rejected(service, session_factory, backup_record, inventory):
    with pytest.raises(NotFoundError):
        await service.enqueue_restore(make_request(backup_record, inventory, backup_id=9999))
    async with session_factory() as db:
        restore_jobs = (await db.execute(select(Job).where(Job.related_entity == "web"))).scalars().all()
    assert restore_jobs == []


async def test_full_queue_fails_the_new_job(service, jobs, session_factory, backup_record, inventory):
    request = make_request(backup_record, inventory)
    await service.enqueue_restore(request)
    await service.enqueue_restore(request)

    with pytest.raises(ServiceUnavailableError):
        await service.enqueue_restore(request)

    async with session_factory() as db:
        failed = (await db.execute(select(Job).where(Job.status == JobStatus.FAILED))).scalars().all()
    assert len(failed) == 1


async def test_cancelled_while_queued_never_runs(service, storage, jobs, backup_record, inventory):
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))
    assert await jobs.request_cancel(job_id)

    await run_queued(service)

    assert (await jobs.get_job(job_id)).status == JobStatus.CANCELLED
    assert storage.calls == []


async def test_cancel_flag_after_clone_discards_it(service, storage, proxmox, jobs, notifier,
                                                   backup_record, inventory):
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))
    clone = storage.clone_volume_from_snapshot

    async def clone_then_cancel(*args):
        result = await clone(*args)
        assert await jobs.request_cancel(job_id)
        return result

    storage.clone_volume_from_snapshot = clone_then_cancel

    await run_queued(service)

    job = await jobs.get_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert storage.names() == ["clone", "delete_volume"]
    assert "mount" not in proxmox.names()
    assert "restore_as_new" not in proxmox.names()
    assert notifier.notify_restore.await_args.args[2] == "Error"


async def test_cancel_flag_after_mount_unmounts_and_discards(service, storage, proxmox, jobs,
                                                             backup_record, inventory):
    job_id = await service.enqueue_restore(make_request(backup_record, inventory))
    mount = proxmox.mount_nfs_storage

    async def mount_then_cancel(*args, **kwargs):
        mounted = await mount(*args, **kwargs)
        assert await jobs.request_cancel(job_id)
        return mounted

    proxmox.mount_nfs_storage = mount_then_cancel

    await run_queued(service)

    assert (await jobs.get_job(job_id)).status == JobStatus.CANCELLED
    assert proxmox.names()[-1] == "unmount"
    assert "restore_as_new" not in proxmox.names()
    assert storage.names()[-1] == "delete_volume"
