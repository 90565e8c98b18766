"""
Retention sweep for storage snapshots.

Every ``JANITOR_INTERVAL_SECONDS`` two passes run:

1. Expired backups: BackupRecords past their retention are grouped per
   snapshot, the primary snapshot is deleted and verified gone, then the
   rows are removed. A copy that still exists on the secondary keeps the
   rows (restorable from the secondary) and only updates the tracking row.
2. Tracking: every SnapMirror destination volume is listed and the
   NetappSnapshot rows of backed-up snapshots are refreshed or created.

Delete failures leave everything in place for the next sweep. When the
secondary cannot be listed the primary is recorded as gone but the rows and
the secondary flags stay as they were.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select

from bareprox.core.config import settings
from bareprox.models import (
    AsyncSessionLocal,
    BackupRecord,
    Job,
    JobVmLog,
    JobVmResult,
    NetappController,
    NetappSnapshot,
    SnapMirrorRelation,
    as_utc,
    utcnow,
)
from bareprox.services.storage import StorageClient, create_storage_client, retention_delta

logger = logging.getLogger(__name__)

GroupKey = Tuple[int, str, str, int]


def is_expired(record: BackupRecord, now: datetime) -> bool:
    """Whether a record's retention has elapsed. Unknown units never expire."""
    try:
        keep = retention_delta(record.retention_count, record.retention_unit)
    except ValueError:
        logger.warning(f"Backup record {record.id} has unknown retention unit '{record.retention_unit}'")
        return False
    return as_utc(record.timestamp) + keep < now


def _contains(names: List[str], wanted: str) -> bool:
    wanted = wanted.lower()
    return any((n or "").lower() == wanted for n in names)


class RetentionJanitor:
    """Deletes expired snapshots and keeps snapshot tracking current."""

    def __init__(
        self,
        storage: Optional[StorageClient] = None,
        session_factory=None,
        interval: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.storage = storage or create_storage_client(session_factory=self.session_factory)
        self.interval = settings.JANITOR_INTERVAL_SECONDS if interval is None else interval

    async def run(self, stop_event: asyncio.Event):
        """Sweep until ``stop_event`` is set."""
        logger.info(f"Retention janitor started (every {self.interval:.0f}s)")
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Janitor pass failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Retention janitor stopped")

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        summary = await self.cleanup_expired(now)
        summary["tracked"] = await self.track_snapshots(now)
        return summary

    # ------------------------------------------------------------------ #
    # Expired backups
    # ------------------------------------------------------------------ #

    async def cleanup_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Delete snapshots whose BackupRecords expired.

        Args:
            now: Reference time (aware UTC)

        Returns:
            Counts of ``removed`` and ``preserved`` snapshot groups and
            ``failed`` deletes
        """
        now = now or utcnow()
        summary = {"removed": 0, "preserved": 0, "failed": 0}

        async with self.session_factory() as db:
            records = (await db.execute(select(BackupRecord))).scalars().all()
            relations = (await db.execute(select(SnapMirrorRelation))).scalars().all()

        relation_lookup = {
            (r.source_controller_id, (r.source_volume or "").lower()): r for r in relations
        }

        groups: Dict[GroupKey, List[BackupRecord]] = defaultdict(list)
        for record in records:
            if is_expired(record, now):
                groups[(record.job_id, record.storage_name, record.snapshot_name, record.controller_id)].append(record)

        for (job_id, storage_name, snapshot_name, controller_id), group in groups.items():
            try:
                result = await self.storage.delete_snapshot(controller_id, storage_name, snapshot_name)
            except Exception as e:
                logger.error(f"Error deleting primary snapshot {snapshot_name}: {e}")
                summary["failed"] += 1
                continue

            if not result.is_gone:
                logger.warning(f"Could not delete expired snapshot {snapshot_name}: {result.error_message}")
                summary["failed"] += 1
                continue

            try:
                remaining = await self.storage.list_snapshots(controller_id, storage_name)
            except Exception as e:
                logger.error(f"Could not verify deletion of {snapshot_name} on {storage_name}: {e}")
                summary["failed"] += 1
                continue
            if _contains(remaining, snapshot_name):
                logger.warning(f"Snapshot {snapshot_name} still listed on {storage_name} after delete")
                summary["failed"] += 1
                continue

            relation = relation_lookup.get((controller_id, storage_name.lower()))
            on_secondary = False
            if relation is not None:
                on_secondary = await self._exists_on_secondary(relation, snapshot_name)

            if on_secondary is None:
                await self._mark_primary_gone(job_id, snapshot_name, now)
                logger.warning(
                    f"Secondary state of {snapshot_name} unknown; keeping rows until the next sweep"
                )
                summary["failed"] += 1
                continue

            if on_secondary:
                await self._mark_primary_gone(job_id, snapshot_name, now, relation)
                logger.info(
                    f"Primary snapshot expired but secondary copy exists for {snapshot_name}, preserving record"
                )
                summary["preserved"] += 1
                continue

            await self._remove_rows(job_id, snapshot_name, [r.id for r in group])
            logger.info(f"Removed all DB rows for snapshot {snapshot_name}, job {job_id}")
            summary["removed"] += 1

        return summary

    async def _exists_on_secondary(self, relation: SnapMirrorRelation, snapshot_name: str) -> Optional[bool]:
        """
        Whether the destination volume lists ``snapshot_name``.

        Returns:
            True or False from the listing, None when the listing failed
        """
        try:
            names = await self.storage.list_snapshots(relation.destination_controller_id, relation.destination_volume)
        except Exception as e:
            logger.warning(f"Could not list snapshots on {relation.destination_volume}: {e}")
            return None
        return _contains(names, snapshot_name)

    async def _mark_primary_gone(
        self,
        job_id: int,
        snapshot_name: str,
        now: datetime,
        confirmed_on: Optional[SnapMirrorRelation] = None,
    ):
        """Record the primary copy as deleted; secondary flags only change when ``confirmed_on`` is given."""
        async with self.session_factory() as db:
            snapshot = (await db.execute(
                select(NetappSnapshot)
                .where(NetappSnapshot.job_id == job_id)
                .where(NetappSnapshot.snapshot_name == snapshot_name)
            )).scalar_one_or_none()
            if snapshot is not None:
                snapshot.exists_on_primary = False
                if confirmed_on is not None:
                    snapshot.exists_on_secondary = True
                    snapshot.secondary_controller_id = confirmed_on.destination_controller_id
                    snapshot.secondary_volume = confirmed_on.destination_volume
                    snapshot.is_replicated = True
                snapshot.last_checked = now
                await db.commit()

    async def _remove_rows(self, job_id: int, snapshot_name: str, record_ids: List[int]):
        async with self.session_factory() as db:
            await db.execute(
                delete(NetappSnapshot)
                .where(NetappSnapshot.job_id == job_id)
                .where(NetappSnapshot.snapshot_name == snapshot_name)
            )
            await db.execute(delete(BackupRecord).where(BackupRecord.id.in_(record_ids)))

            left = (await db.execute(
                select(BackupRecord.id).where(BackupRecord.job_id == job_id).limit(1)
            )).scalar_one_or_none()
            if left is None:
                row_ids = select(JobVmResult.id).where(JobVmResult.job_id == job_id)
                await db.execute(delete(JobVmLog).where(JobVmLog.vm_result_id.in_(row_ids)))
                await db.execute(delete(JobVmResult).where(JobVmResult.job_id == job_id))
                await db.execute(delete(NetappSnapshot).where(NetappSnapshot.job_id == job_id))
                await db.execute(delete(Job).where(Job.id == job_id))
            await db.commit()

    # ------------------------------------------------------------------ #
    # Tracking
    # ------------------------------------------------------------------ #

    async def track_snapshots(self, now: Optional[datetime] = None) -> int:
        """
        Refresh NetappSnapshot rows from the replication destinations.

        Returns:
            Number of rows updated or created
        """
        now = now or utcnow()
        touched = 0

        async with self.session_factory() as db:
            controller_ids = set((await db.execute(select(NetappController.id))).scalars().all())
            relations = (await db.execute(select(SnapMirrorRelation))).scalars().all()
            tracked = (await db.execute(select(NetappSnapshot))).scalars().all()
            lookup = {(s.job_id, s.snapshot_name.lower()): s for s in tracked}

            for relation in relations:
                if (
                    relation.source_controller_id not in controller_ids
                    or relation.destination_controller_id not in controller_ids
                ):
                    logger.warning(
                        f"Skipping relation {relation.uuid} because source or destination controller is invalid "
                        f"({relation.source_controller_id} -> {relation.destination_controller_id})"
                    )
                    continue

                try:
                    secondary = await self.storage.list_snapshots(
                        relation.destination_controller_id, relation.destination_volume
                    )
                    primary = await self.storage.list_snapshots(relation.source_controller_id, relation.source_volume)
                except Exception as e:
                    logger.warning(f"Snapshot listing for relation {relation.uuid} failed: {e}")
                    continue

                for name in secondary:
                    record = (await db.execute(
                        select(BackupRecord)
                        .where(BackupRecord.storage_name == relation.source_volume)
                        .where(BackupRecord.snapshot_name == name)
                        .limit(1)
                    )).scalar_one_or_none()
                    if record is None:
                        continue

                    on_primary = _contains(primary, name)
                    snapshot = lookup.get((record.job_id, name.lower()))
                    if snapshot is None:
                        snapshot = NetappSnapshot(
                            job_id=record.job_id,
                            snapshot_name=name,
                            primary_volume=relation.source_volume,
                            primary_controller_id=relation.source_controller_id,
                            snapmirror_label=record.label,
                        )
                        db.add(snapshot)
                        lookup[(record.job_id, name.lower())] = snapshot

                    snapshot.exists_on_primary = on_primary
                    snapshot.exists_on_secondary = True
                    snapshot.secondary_controller_id = relation.destination_controller_id
                    snapshot.secondary_volume = relation.destination_volume
                    snapshot.is_replicated = True
                    snapshot.last_checked = now
                    touched += 1

            await db.commit()

        return touched
