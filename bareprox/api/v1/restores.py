"""
Restore API endpoints.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from typing import Optional

from bareprox.core.exceptions import BareProxError
from bareprox.services.restore import RestoreRequest, RestoreService
from bareprox.api.v1.deps import get_restore_service, http_error

router = APIRouter()


class RestoreCreate(BaseModel):
    backup_id: int = Field(..., ge=1)
    vmid: int = Field(..., ge=1)
    vm_name: str
    controller_id: int
    volume_name: str
    snapshot_name: str
    host_address: str
    target: str = "Primary"
    restore_type: str = "CreateNew"
    original_host_address: Optional[str] = None
    cluster_id: Optional[int] = None
    new_vm_name: Optional[str] = None
    start_disconnected: bool = False
    generate_new_uuid: bool = False
    generate_new_mac_addresses: bool = False
    rollback_snapshot: bool = False

    def to_request(self) -> RestoreRequest:
        return RestoreRequest(**self.model_dump())


class RestoreAccepted(BaseModel):
    job_id: int
    message: str


@router.post("", response_model=RestoreAccepted, status_code=status.HTTP_202_ACCEPTED)
async def start_restore(
    body: RestoreCreate,
    service: RestoreService = Depends(get_restore_service),
):
    """Queue a restore. Progress is followed through the jobs endpoints."""
    try:
        job_id = await service.enqueue_restore(body.to_request())
    except BareProxError as e:
        raise http_error(e)
    return RestoreAccepted(job_id=job_id, message="Restore job queued")
