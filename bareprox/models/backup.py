"""
Job, backup record, storage snapshot, schedule and per-VM result models.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy import (
    String, Integer, Boolean, JSON, ForeignKey, DateTime, Enum as SQLEnum, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
import enum

from bareprox.models.base import Base


class JobType(str, enum.Enum):
    """Kind of tracked operation."""
    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, enum.Enum):
    """Job lifecycle status."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    WARNING = "warning"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.WARNING,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


class VmResultStatus(str, enum.Enum):
    """Outcome of one VM inside a job."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    WARNING = "warning"
    FAILED = "failed"


class RetentionUnit(str, enum.Enum):
    """Unit for retention and SnapLock expiry counts."""
    HOURS = "Hours"
    DAYS = "Days"
    WEEKS = "Weeks"


class ScheduleKind(str, enum.Enum):
    """Backup schedule recurrence types."""
    HOURLY = "Hourly"
    DAILY = "Daily"
    WEEKLY = "Weekly"


def _enum_column(enum_cls):
    return SQLEnum(enum_cls, values_callable=lambda x: [e.value for e in x])


class Job(Base):
    """One tracked backup or restore execution."""

    __tablename__ = "jobs"

    type: Mapped[JobType] = mapped_column(_enum_column(JobType), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus),
        default=JobStatus.QUEUED,
        nullable=False,
        index=True
    )
    stage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_entity: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    vm_results: Mapped[List["JobVmResult"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobVmResult.id",
    )


class BackupRecord(Base):
    """Per-VM record of one storage snapshot taken during a backup job."""

    __tablename__ = "backup_records"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    schedule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    vmid: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    vm_name: Mapped[str] = mapped_column(String(255), nullable=False)
    host_name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    snapshot_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    controller_id: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(100), nullable=False)
    retention_count: Mapped[int] = mapped_column(Integer, nullable=False)
    retention_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    configuration_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Consistency flags, all false for excluded or stopped VMs
    is_application_aware: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enable_io_freeze: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    use_proxmox_snapshot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    with_memory: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    snapshot_as_volume_chain: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    replicate_to_secondary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class NetappSnapshot(Base):
    """Existence and replication tracking of one storage-array snapshot."""

    __tablename__ = "netapp_snapshots"
    __table_args__ = (
        UniqueConstraint("job_id", "snapshot_name", name="uq_netapp_snapshots_job_snapshot"),
    )

    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    snapshot_name: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_volume: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_controller_id: Mapped[int] = mapped_column(Integer, nullable=False)
    secondary_volume: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    secondary_controller_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    snapmirror_label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    exists_on_primary: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    exists_on_secondary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_replicated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class BackupSchedule(Base):
    """Recurring backup definition evaluated by the schedule dispatcher."""

    __tablename__ = "backup_schedules"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cluster_id: Mapped[int] = mapped_column(Integer, nullable=False)
    controller_id: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_name: Mapped[str] = mapped_column(String(255), nullable=False)
    selected_volume_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Recurrence
    schedule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    frequency: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    time_of_day: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    # Consistency
    is_application_aware: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enable_io_freeze: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    use_proxmox_snapshot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    with_memory: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    excluded_vm_ids: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Retention and replication
    retention_count: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    retention_unit: Mapped[str] = mapped_column(String(20), default="Days", nullable=False)
    replicate_to_secondary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # SnapLock
    enable_locking: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lock_retention_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lock_retention_unit: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Notifications
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_on_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_on_error: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notification_emails: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class JobVmResult(Base):
    """Outcome of one VM inside a backup or restore job."""

    __tablename__ = "job_vm_results"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    vmid: Mapped[int] = mapped_column(Integer, nullable=False)
    vm_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    host_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    storage_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[VmResultStatus] = mapped_column(
        _enum_column(VmResultStatus),
        default=VmResultStatus.PENDING,
        nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    was_running: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    io_freeze_attempted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    io_freeze_succeeded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    snapshot_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    snapshot_taken: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    proxmox_snapshot_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    snapshot_upid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    backup_record_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    job: Mapped["Job"] = relationship(back_populates="vm_results")
    logs: Mapped[List["JobVmLog"]] = relationship(
        back_populates="vm_result",
        cascade="all, delete-orphan",
        order_by="JobVmLog.id",
    )


class JobVmLog(Base):
    """Append-only, ordered log line attached to a per-VM result."""

    __tablename__ = "job_vm_logs"

    vm_result_id: Mapped[int] = mapped_column(
        ForeignKey("job_vm_results.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    vm_result: Mapped["JobVmResult"] = relationship(back_populates="logs")
