"""
Waits for a SnapMirror transfer to deliver a snapshot to the secondary.
"""
import asyncio
import logging
import time
from typing import Optional

from bareprox.core.config import settings
from bareprox.models import SnapMirrorRelation
from bareprox.services.jobs import sleep_or_cancel
from bareprox.services.storage.base import StorageClient

logger = logging.getLogger(__name__)


class ReplicationWaiter:
    """
    Polls a relationship until the expected snapshot is on the destination.

    A poll succeeds when the relationship is ``snapmirrored``, the last
    transfer is ``success`` and the snapshot name is listed on the
    destination volume (case-insensitive). There is no backoff.
    """

    def __init__(
        self,
        storage: StorageClient,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.storage = storage
        self.poll_interval = settings.REPLICATION_POLL_SECONDS if poll_interval is None else poll_interval
        self.timeout = settings.REPLICATION_TIMEOUT_MINUTES * 60 if timeout is None else timeout

    async def trigger(self, relation: SnapMirrorRelation) -> bool:
        """Start a transfer. Errors are logged and reported as False."""
        try:
            return await self.storage.trigger_replication_update(relation.destination_controller_id, relation.uuid)
        except Exception as e:
            logger.warning(f"SnapMirror: failed to trigger update for relation {relation.uuid}: {e}")
            return False

    async def wait(
        self,
        relation: SnapMirrorRelation,
        snapshot_name: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Block until ``snapshot_name`` is replicated or the ceiling elapses.

        Args:
            relation: Relationship to watch; status and snapshot list are
                read from its destination controller
            snapshot_name: Snapshot expected on the destination volume
            cancel_event: Aborts the wait when set

        Returns:
            True if replication was confirmed, False on timeout

        Raises:
            JobCancelled: If ``cancel_event`` was set while waiting
        """
        if not snapshot_name:
            return False

        wanted = snapshot_name.lower()
        deadline = time.monotonic() + self.timeout
        polls = 0

        while time.monotonic() < deadline:
            await sleep_or_cancel(self.poll_interval, cancel_event)
            polls += 1

            try:
                status = await self.storage.get_replication_relation(
                    relation.destination_controller_id, relation.uuid
                )
            except Exception as e:
                logger.warning(f"SnapMirror: status poll for {relation.uuid} failed: {e}")
                continue

            if not status.is_in_sync:
                logger.debug(
                    f"SnapMirror {relation.uuid}: state={status.state} transfer={status.transfer_state}"
                )
                continue

            try:
                names = await self.storage.list_snapshots(
                    relation.destination_controller_id, relation.destination_volume
                )
            except Exception as e:
                logger.warning(f"SnapMirror: listing snapshots on {relation.destination_volume} failed: {e}")
                continue

            if any((name or "").lower() == wanted for name in names):
                logger.info(
                    f"Snapshot {snapshot_name} present on {relation.destination_volume} after {polls} poll(s)"
                )
                return True

        logger.warning(
            f"SnapMirror: {snapshot_name} not confirmed on {relation.destination_volume} "
            f"within {self.timeout:.0f}s"
        )
        return False
