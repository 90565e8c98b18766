"""
Schedule evaluation and dispatch.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from bareprox.models import BackupSchedule
from bareprox.services.queue import BackgroundTaskQueue
from bareprox.services.scheduler import (
    ScheduleDispatcher,
    backup_request_for,
    is_due,
    parse_hour_range,
    parse_time_of_day,
)

# 2026-10-18 is a Sunday
SUNDAY_9AM = datetime(2026, 10, 18, 9, 0, 5, tzinfo=timezone.utc)


def schedule(**overrides):
    values = dict(
        id=1,
        name="nightly",
        is_enabled=True,
        cluster_id=1,
        controller_id=1,
        storage_name="nfs1",
        schedule_type="Hourly",
        frequency="8-17",
        time_of_day=None,
        retention_count=7,
        retention_unit="Days",
        is_application_aware=False,
        enable_io_freeze=False,
        use_proxmox_snapshot=False,
        with_memory=False,
        replicate_to_secondary=False,
        enable_locking=False,
        notifications_enabled=False,
        last_run=None,
    )
    values.update(overrides)
    return BackupSchedule(**values)


def test_parse_helpers():
    assert parse_hour_range("8-17") == (8, 17)
    assert parse_hour_range("8") is None
    assert parse_hour_range("a-b") is None
    assert parse_time_of_day("02:30").hour == 2
    assert parse_time_of_day("02:30:15").second == 15
    assert parse_time_of_day("25:00") is None


def test_hourly_fires_once_per_hour():
    s = schedule()
    assert is_due(s, SUNDAY_9AM)

    s.last_run = SUNDAY_9AM
    assert not is_due(s, SUNDAY_9AM + timedelta(seconds=20))
    assert not is_due(s, SUNDAY_9AM.replace(minute=30))
    assert is_due(s, SUNDAY_9AM + timedelta(hours=1))


@pytest.mark.parametrize("hour, expected", [(7, False), (8, True), (17, True), (18, False)])
def test_hourly_range_is_inclusive(hour, expected):
    assert is_due(schedule(), SUNDAY_9AM.replace(hour=hour)) is expected


def test_daily_window():
    s = schedule(schedule_type="Daily", frequency=None, time_of_day="09:00")
    assert is_due(s, SUNDAY_9AM, window_seconds=30)
    assert not is_due(s, SUNDAY_9AM + timedelta(seconds=40), window_seconds=30)
    assert not is_due(s, SUNDAY_9AM - timedelta(minutes=1), window_seconds=30)

    s.last_run = SUNDAY_9AM
    assert not is_due(s, SUNDAY_9AM + timedelta(seconds=10), window_seconds=30)
    assert is_due(s, SUNDAY_9AM + timedelta(days=1), window_seconds=30)


def test_weekly_day_list():
    s = schedule(schedule_type="Weekly", frequency="Mon,Wed", time_of_day="09:00")
    assert not is_due(s, SUNDAY_9AM, window_seconds=30)
    assert is_due(s, SUNDAY_9AM + timedelta(days=1), window_seconds=30)


def test_unknown_type_never_fires():
    assert not is_due(schedule(schedule_type="Monthly"), SUNDAY_9AM)


def test_backup_request_for_schedule():
    s = schedule(
        excluded_vm_ids="103, 101,,103",
        notifications_enabled=True,
        notification_emails="ops@example.com; dba@example.com",
        enable_locking=True,
        lock_retention_count=3,
        lock_retention_unit="Days",
    )
    request = backup_request_for(s)
    assert request.label == "hourly"
    assert request.excluded_vm_ids == ["101", "103"]
    assert request.schedule_id == 1
    assert request.lock_retention_count == 3
    assert request.notification_recipients == ["ops@example.com", "dba@example.com"]


async def test_dispatch_enqueues_once_and_stamps_last_run(session_factory, inventory):
    async with session_factory() as db:
        db.add(schedule(
            id=None,
            cluster_id=inventory["cluster_id"],
            controller_id=inventory["primary_id"],
        ))
        db.add(schedule(id=None, name="orphan", cluster_id=999, controller_id=inventory["primary_id"]))
        db.add(schedule(id=None, name="off", is_enabled=False, cluster_id=inventory["cluster_id"],
                        controller_id=inventory["primary_id"]))
        await db.commit()

    queue = BackgroundTaskQueue(maxsize=10)
    backup_service = AsyncMock()
    dispatcher = ScheduleDispatcher(queue, backup_service, session_factory=session_factory, interval=0)

    first = await dispatcher.dispatch_due(SUNDAY_9AM)
    second = await dispatcher.dispatch_due(SUNDAY_9AM + timedelta(seconds=30))

    assert len(first) == 1
    assert second == []
    assert queue.qsize() == 1

    async with session_factory() as db:
        stamped = await db.get(BackupSchedule, first[0])
    assert stamped.last_run is not None

    work = await queue.dequeue()
    cancel = asyncio.Event()
    await work.item(cancel)
    request, event = backup_service.start_backup.await_args.args
    assert request.storage_name == "nfs1"
    assert request.label == "hourly"
    assert event is cancel
