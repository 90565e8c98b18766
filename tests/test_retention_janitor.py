"""
Retention sweep: expired snapshot deletion and replicated snapshot tracking.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from bareprox.models import (
    BackupRecord,
    Job,
    JobStatus,
    JobType,
    JobVmResult,
    NetappSnapshot,
    utcnow,
)
from bareprox.services.retention import RetentionJanitor, is_expired
from bareprox.services.storage import DeleteSnapshotResult

SNAPSHOT = "nfs1_daily_2026-10-01-02-00-00"


async def seed_backup(session_factory, jobs, controller_id, age_days=10, vmids=(101, 102), tracked=True):
    job_id = await jobs.create_job(JobType.BACKUP, "nfs1", status=JobStatus.COMPLETED)
    for vmid in vmids:
        await jobs.begin_vm(job_id, vmid, f"vm{vmid}", "pve1", "nfs1")
    async with session_factory() as db:
        for vmid in vmids:
            db.add(BackupRecord(
                job_id=job_id,
                vmid=vmid,
                vm_name=f"vm{vmid}",
                host_name="pve1",
                storage_name="nfs1",
                snapshot_name=SNAPSHOT,
                controller_id=controller_id,
                label="daily",
                retention_count=7,
                retention_unit="Days",
                timestamp=utcnow() - timedelta(days=age_days),
            ))
        if tracked:
            db.add(NetappSnapshot(
                job_id=job_id,
                snapshot_name=SNAPSHOT,
                primary_volume="nfs1",
                primary_controller_id=controller_id,
                snapmirror_label="daily",
            ))
        await db.commit()
    return job_id


async def count(session_factory, model):
    async with session_factory() as db:
        return len((await db.execute(select(model))).scalars().all())


@pytest.fixture
def janitor(storage, session_factory):
    return RetentionJanitor(storage, session_factory=session_factory, interval=0)


def test_is_expired():
    record = BackupRecord(id=1, retention_count=2, retention_unit="Hours", timestamp=utcnow() - timedelta(hours=3))
    assert is_expired(record, utcnow())
    record.retention_unit = "Days"
    assert not is_expired(record, utcnow())
    record.retention_unit = "Fortnights"
    assert not is_expired(record, utcnow())


async def test_expired_backup_is_deleted_with_its_rows(janitor, storage, session_factory, jobs, inventory):
    primary = inventory["primary_id"]
    storage.snapshots[(primary, "nfs1")] = [SNAPSHOT, "nfs1_daily_newer"]
    job_id = await seed_backup(session_factory, jobs, primary)

    summary = await janitor.cleanup_expired()

    assert summary == {"removed": 1, "preserved": 0, "failed": 0}
    assert storage.snapshots[(primary, "nfs1")] == ["nfs1_daily_newer"]
    assert await count(session_factory, BackupRecord) == 0
    assert await count(session_factory, NetappSnapshot) == 0
    assert await count(session_factory, JobVmResult) == 0
    assert await jobs.get_job(job_id) is None


async def test_snapshot_already_gone_counts_as_deleted(janitor, storage, session_factory, jobs, inventory):
    await seed_backup(session_factory, jobs, inventory["primary_id"])

    summary = await janitor.cleanup_expired()

    assert summary["removed"] == 1
    assert await count(session_factory, BackupRecord) == 0


async def test_failed_delete_keeps_rows(janitor, storage, session_factory, jobs, inventory):
    primary = inventory["primary_id"]
    storage.snapshots[(primary, "nfs1")] = [SNAPSHOT]
    storage.delete_result = DeleteSnapshotResult(success=False, error_message="snapshot is busy")
    await seed_backup(session_factory, jobs, primary)

    summary = await janitor.cleanup_expired()

    assert summary["failed"] == 1
    assert await count(session_factory, BackupRecord) == 2
    assert await count(session_factory, Job) == 1


async def test_unexpired_backup_is_left_alone(janitor, storage, session_factory, jobs, inventory):
    await seed_backup(session_factory, jobs, inventory["primary_id"], age_days=1)

    summary = await janitor.cleanup_expired()

    assert summary == {"removed": 0, "preserved": 0, "failed": 0}
    assert storage.calls == []


async def test_secondary_copy_preserves_rows(janitor, storage, session_factory, jobs, inventory):
    primary, secondary = inventory["primary_id"], inventory["secondary_id"]
    storage.snapshots[(primary, "nfs1")] = [SNAPSHOT]
    storage.snapshots[(secondary, "nfs1_dest")] = [SNAPSHOT]
    job_id = await seed_backup(session_factory, jobs, primary)

    summary = await janitor.cleanup_expired()

    assert summary["preserved"] == 1
    assert await count(session_factory, BackupRecord) == 2
    async with session_factory() as db:
        snapshot = (await db.execute(select(NetappSnapshot).where(NetappSnapshot.job_id == job_id))).scalar_one()
    assert not snapshot.exists_on_primary
    assert snapshot.exists_on_secondary
    assert snapshot.secondary_volume == "nfs1_dest"
    assert snapshot.is_replicated


async def test_tracking_inserts_untracked_replicated_snapshot(janitor, storage, session_factory, jobs, inventory):
    primary, secondary = inventory["primary_id"], inventory["secondary_id"]
    storage.snapshots[(secondary, "nfs1_dest")] = [SNAPSHOT, "hourly.unrelated"]
    job_id = await seed_backup(session_factory, jobs, primary, age_days=1, tracked=False)

    touched = await janitor.track_snapshots()

    assert touched == 1
    async with session_factory() as db:
        snapshot = (await db.execute(select(NetappSnapshot))).scalar_one()
    assert snapshot.job_id == job_id
    assert snapshot.snapmirror_label == "daily"
    assert snapshot.exists_on_secondary and not snapshot.exists_on_primary
    assert snapshot.secondary_controller_id == secondary


async def test_tracking_refreshes_existing_row(janitor, storage, session_factory, jobs, inventory):
    primary, secondary = inventory["primary_id"], inventory["secondary_id"]
    storage.snapshots[(primary, "nfs1")] = [SNAPSHOT]
    storage.snapshots[(secondary, "nfs1_dest")] = [SNAPSHOT]
    await seed_backup(session_factory, jobs, primary, age_days=1)

    summary = await janitor.sweep()

    assert summary["tracked"] == 1
    assert await count(session_factory, NetappSnapshot) == 1
    async with session_factory() as db:
        snapshot = (await db.execute(select(NetappSnapshot))).scalar_one()
    assert snapshot.exists_on_primary and snapshot.is_replicated


async def test_unlisted_secondary_keeps_rows_and_flags(janitor, storage, session_factory, jobs, inventory):
    primary, secondary = inventory["primary_id"], inventory["secondary_id"]
    storage.snapshots[(primary, "nfs1")] = [SNAPSHOT]
    storage.snapshots[(secondary, "nfs1_dest")] = [SNAPSHOT]
    storage.unreachable.add(secondary)
    job_id = await seed_backup(session_factory, jobs, primary)

    summary = await janitor.cleanup_expired()

    assert summary == {"removed": 0, "preserved": 0, "failed": 1}
    assert await count(session_factory, BackupRecord) == 2
    assert await jobs.get_job(job_id) is not None
    async with session_factory() as db:
        snapshot = (await db.execute(select(NetappSnapshot).where(NetappSnapshot.job_id == job_id))).scalar_one()
    assert not snapshot.exists_on_primary
    assert not snapshot.exists_on_secondary
    assert not snapshot.is_replicated
    assert snapshot.secondary_volume is None

    storage.unreachable.clear()
    summary = await janitor.cleanup_expired()

    assert summary["preserved"] == 1
    async with session_factory() as db:
        snapshot = (await db.execute(select(NetappSnapshot).where(NetappSnapshot.job_id == job_id))).scalar_one()
    assert snapshot.exists_on_secondary and snapshot.is_replicated
