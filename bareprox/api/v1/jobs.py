"""
Job API endpoints.
"""
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Dict, Any

from bareprox.models import get_db, Job, JobStatus, JobType, JobVmResult, VmResultStatus
from bareprox.services.jobs import JobWriter
from bareprox.api.v1.deps import get_job_writer

router = APIRouter()


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: JobType
    status: JobStatus
    stage: Optional[str] = None
    related_entity: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class JobsListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int
    limit: int
    offset: int


class VmLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    level: str
    message: str


class VmResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vmid: int
    vm_name: Optional[str] = None
    host_name: Optional[str] = None
    storage_name: Optional[str] = None
    status: VmResultStatus
    reason: Optional[str] = None
    error_message: Optional[str] = None
    was_running: bool
    io_freeze_attempted: bool
    io_freeze_succeeded: bool
    snapshot_requested: bool
    snapshot_taken: bool
    proxmox_snapshot_name: Optional[str] = None
    backup_record_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[VmLogResponse] = []


@router.get("", response_model=JobsListResponse)
async def list_jobs(
    status: Optional[JobStatus] = None,
    job_type: Optional[JobType] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, newest first."""
    conditions = []
    if status:
        conditions.append(Job.status == status)
    if job_type:
        conditions.append(Job.type == job_type)

    count_stmt = select(func.count(Job.id))
    stmt = select(Job)
    if conditions:
        count_stmt = count_stmt.where(and_(*conditions))
        stmt = stmt.where(and_(*conditions))
    total = (await db.execute(count_stmt)).scalar()

    stmt = stmt.order_by(Job.id.desc()).limit(limit).offset(offset)
    jobs = (await db.execute(stmt)).scalars().all()
    return JobsListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, db: AsyncSession = Depends(get_db)):
    """Get job details."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.model_validate(job)


@router.get("/{job_id}/vms", response_model=List[VmResultResponse])
async def get_job_vms(job_id: int, db: AsyncSession = Depends(get_db)):
    """Per-VM results of a job with their log lines."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    stmt = (
        select(JobVmResult)
        .where(JobVmResult.job_id == job_id)
        .options(selectinload(JobVmResult.logs))
        .order_by(JobVmResult.id)
    )
    rows = (await db.execute(stmt)).scalars().all()
    return [VmResultResponse.model_validate(row) for row in rows]


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: int, jobs: JobWriter = Depends(get_job_writer)):
    """
    Request cancellation of a queued or running job.

    The job stops at its next step boundary; compensations still run.
    """
    job = await jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status.is_terminal:
        raise HTTPException(status_code=400, detail=f"Cannot cancel job with status {job.status.value}")

    if not await jobs.request_cancel(job_id):
        raise HTTPException(status_code=409, detail="Job finished before it could be cancelled")
    return {"message": "Cancellation requested", "job_id": job_id}
