"""
Job and per-VM result bookkeeping.

Every method opens its own session from the session factory and commits
before returning, so concurrent work items never share a session and each
step is visible to observers as soon as it happens.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Dict, Optional

from sqlalchemy import select

from bareprox.core.config import settings
from bareprox.core.exceptions import JobCancelled
from bareprox.models import (
    AsyncSessionLocal,
    Job,
    JobStatus,
    JobType,
    JobVmLog,
    JobVmResult,
    VmResultStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class JobWriter:
    """Persists job state transitions and per-VM progress."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal

    # ------------------------------------------------------------------ #
    # Job level
    # ------------------------------------------------------------------ #

    async def create_job(
        self,
        job_type: JobType,
        related_entity: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        status: JobStatus = JobStatus.RUNNING,
    ) -> int:
        """
        Insert a job row.

        Args:
            job_type: Backup or restore
            related_entity: Storage or VM the job is about
            payload: Request details kept for inspection
            status: Initial status (``queued`` for deferred work)

        Returns:
            The new job id
        """
        async with self.session_factory() as db:
            job = Job(
                type=job_type,
                status=status,
                related_entity=(related_entity or "").strip() or None,
                payload=payload,
                started_at=utcnow(),
            )
            db.add(job)
            await db.commit()
            logger.info(f"Created {job_type.value} job {job.id} for {job.related_entity}")
            return job.id

    async def get_job(self, job_id: int) -> Optional[Job]:
        async with self.session_factory() as db:
            return await db.get(Job, job_id)

    async def mark_running(self, job_id: int) -> bool:
        """Move a queued job to running. Returns False if it is already terminal."""
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None or job.status.is_terminal:
                return False
            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            await db.commit()
            return True

    async def set_stage(self, job_id: int, stage: str):
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return
            job.stage = stage[:255]
            await db.commit()
        logger.debug(f"Job {job_id}: {stage}")

    async def _finish(self, job_id: int, status: JobStatus, error: Optional[str] = None) -> bool:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return False
            if job.status.is_terminal:
                logger.debug(f"Job {job_id} already {job.status.value}; ignoring {status.value}")
                return False
            job.status = status
            if error:
                job.error_message = error
            job.completed_at = utcnow()
            await db.commit()
        logger.info(f"Job {job_id} finished: {status.value}" + (f" ({error})" if error else ""))
        return True

    async def complete_job(self, job_id: int, status: JobStatus = JobStatus.COMPLETED) -> bool:
        """Mark the job ``completed`` (or ``warning``)."""
        return await self._finish(job_id, status)

    async def fail_job(self, job_id: int, message: str) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, message)

    async def cancel_job(self, job_id: int, message: str = "Job was cancelled.") -> bool:
        return await self._finish(job_id, JobStatus.CANCELLED, message)

    async def request_cancel(self, job_id: int) -> bool:
        """
        Flag a job for cancellation.

        Returns:
            False if the job does not exist or is already terminal
        """
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None or job.status.is_terminal:
                return False
            job.cancel_requested = True
            await db.commit()
            logger.info(f"Cancellation requested for job {job_id}")
            return True

    async def is_cancel_requested(self, job_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.cancel_requested, Job.status).where(Job.id == job_id)
            )
            row = result.one_or_none()
        if row is None:
            return False
        cancel_requested, status = row
        return bool(cancel_requested) or status == JobStatus.CANCELLED

    # ------------------------------------------------------------------ #
    # Per-VM rows
    # ------------------------------------------------------------------ #

    async def begin_vm(
        self,
        job_id: int,
        vmid: int,
        vm_name: Optional[str],
        host_name: Optional[str],
        storage_name: Optional[str],
        status: VmResultStatus = VmResultStatus.PENDING,
    ) -> int:
        async with self.session_factory() as db:
            row = JobVmResult(
                job_id=job_id,
                vmid=int(vmid),
                vm_name=vm_name,
                host_name=host_name,
                storage_name=storage_name,
                status=status,
                started_at=utcnow(),
            )
            db.add(row)
            await db.commit()
            return row.id

    async def _update_vm(self, row_id: int, **values: Any):
        async with self.session_factory() as db:
            row = await db.get(JobVmResult, row_id)
            if row is None:
                return
            for key, value in values.items():
                setattr(row, key, value)
            await db.commit()

    async def mark_vm_skipped(self, row_id: int, reason: str):
        await self._update_vm(row_id, status=VmResultStatus.SKIPPED, reason=reason, completed_at=utcnow())

    async def mark_vm_warning(self, row_id: int, note: Optional[str] = None):
        values: Dict[str, Any] = {"status": VmResultStatus.WARNING, "completed_at": utcnow()}
        if note:
            values["reason"] = note[:500]
        await self._update_vm(row_id, **values)

    async def mark_vm_success(self, row_id: int, backup_record_id: Optional[int] = None):
        await self._update_vm(
            row_id, status=VmResultStatus.SUCCESS, backup_record_id=backup_record_id, completed_at=utcnow()
        )

    async def mark_vm_failure(self, row_id: int, error: str):
        await self._update_vm(row_id, status=VmResultStatus.FAILED, error_message=error, completed_at=utcnow())

    async def set_io_freeze_result(self, row_id: int, attempted: bool, succeeded: bool, was_running: bool):
        await self._update_vm(
            row_id, io_freeze_attempted=attempted, io_freeze_succeeded=succeeded, was_running=was_running
        )

    async def mark_vm_snapshot_requested(self, row_id: int, snapshot_name: str, upid: Optional[str]):
        await self._update_vm(
            row_id, snapshot_requested=True, proxmox_snapshot_name=snapshot_name, snapshot_upid=upid
        )

    async def mark_vm_snapshot_taken(self, row_id: int):
        await self._update_vm(row_id, snapshot_taken=True)

    async def log_vm(self, row_id: int, message: str, level: str = "Info"):
        """Append a log line to a per-VM result."""
        async with self.session_factory() as db:
            db.add(JobVmLog(vm_result_id=row_id, timestamp=utcnow(), level=level, message=message))
            await db.commit()


async def sleep_or_cancel(seconds: float, cancel_event: Optional[asyncio.Event]):
    """
    Sleep, waking early when ``cancel_event`` is set.

    Raises:
        JobCancelled: If the event is (or becomes) set
    """
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    if cancel_event.is_set():
        raise JobCancelled("Job was cancelled.")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise JobCancelled("Job was cancelled.")


class CancelWatch:
    """
    Job-scoped cancellation signal.

    The event is set once the job's cancel flag is raised through the API
    or ``parent`` (the worker's stop event) is set, so long waits can hand it
    to :func:`sleep_or_cancel` and wake up within one poll interval.
    """

    def __init__(
        self,
        jobs: JobWriter,
        job_id: int,
        parent: Optional[asyncio.Event] = None,
        interval: Optional[float] = None,
    ):
        self.jobs = jobs
        self.job_id = job_id
        self.parent = parent
        self.interval = settings.JOB_CANCEL_POLL_SECONDS if interval is None else interval
        self.event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Event:
        if self.parent is not None and self.parent.is_set():
            self.event.set()
        if self._task is None:
            self._task = asyncio.create_task(self._poll(), name=f"cancel watch job {self.job_id}")
        return self.event

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _poll(self):
        while not self.event.is_set():
            if self.parent is not None and self.parent.is_set():
                self.event.set()
                return
            try:
                if await self.jobs.is_cancel_requested(self.job_id):
                    logger.info(f"Job {self.job_id} cancel flag seen; aborting waits", extra={"job_id": self.job_id})
                    self.event.set()
                    return
            except Exception as e:
                logger.warning(f"Could not read cancel flag of job {self.job_id}: {e}")

            if self.parent is None:
                await asyncio.sleep(self.interval)
            else:
                try:
                    await asyncio.wait_for(self.parent.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
