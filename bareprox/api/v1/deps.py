"""
Shared router dependencies.

The services are built once in the application lifespan and kept on
``app.state``; routers only look them up.
"""
from fastapi import HTTPException, Request, status

from bareprox.core.exceptions import (
    BareProxError,
    ConflictEmptyError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationFailure,
)
from bareprox.services.backup import BackupService
from bareprox.services.jobs import JobWriter
from bareprox.services.restore import RestoreService


def get_backup_service(request: Request) -> BackupService:
    return request.app.state.backup_service


def get_restore_service(request: Request) -> RestoreService:
    return request.app.state.restore_service


def get_job_writer(request: Request) -> JobWriter:
    return request.app.state.job_writer


def http_error(error: BareProxError) -> HTTPException:
    """Translate an orchestration error to the matching HTTP error."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ValidationFailure):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, ConflictEmptyError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ServiceUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
