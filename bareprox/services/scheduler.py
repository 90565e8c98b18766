"""
Scheduled backup dispatch.

Every ``SCHEDULER_INTERVAL_SECONDS`` the enabled schedules are evaluated in
the application time zone. A due schedule gets a backup work item on the
background queue and its ``last_run`` stamped, whether or not the backup
later succeeds, so a failing schedule fires at most once per slot.
"""
import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import select

from bareprox.core.config import settings
from bareprox.core.timezone import app_now
from bareprox.models import (
    AsyncSessionLocal,
    BackupSchedule,
    NetappController,
    ProxmoxCluster,
    ScheduleKind,
    as_utc,
)
from bareprox.services.backup import BackupRequest, BackupService
from bareprox.services.notifications import parse_recipients
from bareprox.services.queue import BackgroundTaskQueue

logger = logging.getLogger(__name__)


def parse_time_of_day(value: Optional[str]) -> Optional[time]:
    """``HH:MM`` or ``HH:MM:SS`` to a time, None when empty or malformed."""
    if not value:
        return None
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except ValueError:
            continue
    return None


def parse_hour_range(value: Optional[str]):
    """``"8-17"`` to ``(8, 17)``, None when malformed."""
    parts = [p.strip() for p in (value or "").split("-") if p.strip()]
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def is_due(schedule: BackupSchedule, now: datetime, window_seconds: Optional[float] = None) -> bool:
    """
    Whether a schedule should fire at ``now``.

    Hourly schedules fire at minute 0 of every hour inside the inclusive
    ``start-end`` range held in ``frequency``. Daily and Weekly schedules
    fire inside ``[time_of_day, time_of_day + window)``; ``frequency`` may
    hold a comma-separated day list (``Mon,Wed``). Either kind fires at most
    once per slot, judged by ``last_run``.

    Args:
        schedule: Schedule to evaluate
        now: Aware time in the application zone
        window_seconds: Firing window of Daily/Weekly slots (dispatch interval)

    Returns:
        True if the schedule is due
    """
    window = settings.SCHEDULER_INTERVAL_SECONDS if window_seconds is None else window_seconds
    last_run = as_utc(schedule.last_run)

    kind = (schedule.schedule_type or "").strip().lower()

    if kind == ScheduleKind.HOURLY.value.lower():
        hours = parse_hour_range(schedule.frequency)
        if hours is None:
            return False
        if now.minute != 0:
            return False
        start_hour, end_hour = hours
        if now.hour < start_hour or now.hour > end_hour:
            return False
        this_hour = now.replace(minute=0, second=0, microsecond=0)
        return last_run is None or last_run < this_hour

    if kind in (ScheduleKind.DAILY.value.lower(), ScheduleKind.WEEKLY.value.lower()):
        at = parse_time_of_day(schedule.time_of_day)
        if at is None:
            return False

        days = [d.strip().lower() for d in (schedule.frequency or "").split(",") if d.strip()]
        if days and now.strftime("%a").lower() not in days:
            return False

        scheduled = now.replace(hour=at.hour, minute=at.minute, second=at.second, microsecond=0)
        if now < scheduled or now >= scheduled + timedelta(seconds=window):
            return False
        return last_run is None or last_run < scheduled

    return False


def backup_request_for(schedule: BackupSchedule) -> BackupRequest:
    """Build the backup request a schedule describes."""
    excluded = sorted({v.strip() for v in (schedule.excluded_vm_ids or "").split(",") if v.strip()})
    recipients = parse_recipients(schedule.notification_emails) if schedule.notifications_enabled else []
    return BackupRequest(
        cluster_id=schedule.cluster_id,
        controller_id=schedule.controller_id,
        storage_name=schedule.storage_name,
        label=(schedule.schedule_type or "").lower(),
        is_application_aware=schedule.is_application_aware,
        enable_io_freeze=schedule.enable_io_freeze,
        use_proxmox_snapshot=schedule.use_proxmox_snapshot,
        with_memory=schedule.with_memory,
        retention_count=schedule.retention_count,
        retention_unit=schedule.retention_unit,
        replicate_to_secondary=schedule.replicate_to_secondary,
        enable_locking=schedule.enable_locking,
        lock_retention_count=schedule.lock_retention_count if schedule.enable_locking else None,
        lock_retention_unit=schedule.lock_retention_unit if schedule.enable_locking else None,
        excluded_vm_ids=excluded,
        schedule_id=schedule.id,
        notification_recipients=recipients or None,
    )


class ScheduleDispatcher:
    """Periodic loop that turns due schedules into queued backups."""

    def __init__(
        self,
        queue: BackgroundTaskQueue,
        backup_service: BackupService,
        session_factory=None,
        interval: Optional[float] = None,
    ):
        self.queue = queue
        self.backup_service = backup_service
        self.session_factory = session_factory or AsyncSessionLocal
        self.interval = settings.SCHEDULER_INTERVAL_SECONDS if interval is None else interval

    async def run(self, stop_event: asyncio.Event):
        """Dispatch until ``stop_event`` is set. Errors of one pass are logged."""
        logger.info(f"Schedule dispatcher started (every {self.interval:.0f}s)")
        while not stop_event.is_set():
            try:
                await self.dispatch_due()
            except Exception as e:
                logger.error(f"Error dispatching scheduled backups: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Schedule dispatcher stopped")

    async def dispatch_due(self, now: Optional[datetime] = None) -> List[int]:
        """
        Queue a backup for every due schedule.

        Args:
            now: Evaluation time in the application zone (defaults to now)

        Returns:
            Ids of the schedules that were dispatched
        """
        now = now or app_now()
        dispatched: List[int] = []

        async with self.session_factory() as db:
            result = await db.execute(select(BackupSchedule).where(BackupSchedule.is_enabled.is_(True)))
            schedules = result.scalars().all()

            for schedule in schedules:
                if not is_due(schedule, now):
                    continue

                controller = await db.get(NetappController, schedule.controller_id)
                cluster = await db.get(ProxmoxCluster, schedule.cluster_id)
                if controller is None or cluster is None:
                    logger.warning(f"Missing controller or cluster for schedule {schedule.id}")
                    continue

                request = backup_request_for(schedule)
                try:
                    self.queue.enqueue(self._work_item(request), name=f"scheduled backup '{schedule.name}'")
                    logger.info(f"Starting background backup for storage {schedule.storage_name} (schedule {schedule.id})")
                except Exception as e:
                    logger.error(f"Backup dispatch failed for {schedule.storage_name}: {e}")

                schedule.last_run = as_utc(now)
                dispatched.append(schedule.id)

            await db.commit()

        return dispatched

    def _work_item(self, request: BackupRequest):
        async def work(cancel_event: asyncio.Event):
            await self.backup_service.start_backup(request, cancel_event)
        return work
