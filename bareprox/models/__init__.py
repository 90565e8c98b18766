"""
Database models package.
"""
from bareprox.models.base import Base, get_db, init_db, AsyncSessionLocal, utcnow, as_utc
from bareprox.models.inventory import (
    ProxmoxCluster,
    ProxmoxHost,
    NetappController,
    SelectedNetappVolume,
    SnapMirrorRelation,
)
from bareprox.models.backup import (
    Job,
    JobType,
    JobStatus,
    TERMINAL_JOB_STATUSES,
    BackupRecord,
    NetappSnapshot,
    BackupSchedule,
    ScheduleKind,
    RetentionUnit,
    JobVmResult,
    JobVmLog,
    VmResultStatus,
)
from bareprox.models.settings import EmailSettings

__all__ = [
    # Base
    "Base",
    "get_db",
    "init_db",
    "AsyncSessionLocal",
    "utcnow",
    "as_utc",
    # Inventory
    "ProxmoxCluster",
    "ProxmoxHost",
    "NetappController",
    "SelectedNetappVolume",
    "SnapMirrorRelation",
    # Jobs and backups
    "Job",
    "JobType",
    "JobStatus",
    "TERMINAL_JOB_STATUSES",
    "BackupRecord",
    "NetappSnapshot",
    "BackupSchedule",
    "ScheduleKind",
    "RetentionUnit",
    "JobVmResult",
    "JobVmLog",
    "VmResultStatus",
    # Settings
    "EmailSettings",
]
