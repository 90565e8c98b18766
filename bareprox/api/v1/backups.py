"""
Backup API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from typing import List, Optional

from bareprox.core.exceptions import BareProxError
from bareprox.models import JobStatus
from bareprox.services.backup import BackupRequest, BackupService
from bareprox.api.v1.deps import get_backup_service, http_error

router = APIRouter()


class BackupCreate(BaseModel):
    cluster_id: int
    controller_id: int
    storage_name: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    is_application_aware: bool = False
    enable_io_freeze: bool = False
    use_proxmox_snapshot: bool = False
    with_memory: bool = False
    retention_count: int = Field(default=7, ge=1)
    retention_unit: str = "Days"
    replicate_to_secondary: bool = False
    enable_locking: bool = False
    lock_retention_count: Optional[int] = None
    lock_retention_unit: Optional[str] = None
    excluded_vm_ids: List[str] = []
    notification_recipients: Optional[List[str]] = None

    def to_request(self) -> BackupRequest:
        return BackupRequest(**self.model_dump())


class BackupRunResponse(BaseModel):
    job_id: int
    status: JobStatus
    success: bool


@router.post("", response_model=BackupRunResponse, status_code=status.HTTP_200_OK)
async def run_backup(
    body: BackupCreate,
    service: BackupService = Depends(get_backup_service),
):
    """
    Run a backup of one storage and wait for it to finish.

    The job outcome is returned even when the job failed; the failure
    reason is stored on the job.
    """
    try:
        outcome = await service.run_backup(body.to_request())
    except BareProxError as e:
        raise http_error(e)
    if outcome.job_id is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Backup job was not created")
    return BackupRunResponse(job_id=outcome.job_id, status=outcome.status, success=outcome.success)
