"""
Logs API endpoints.
"""
from fastapi import APIRouter, Query
from pydantic import BaseModel
from typing import List, Optional, Dict

from bareprox.core.logging_handler import get_log_handler

router = APIRouter()


class LogEntry(BaseModel):
    """Log entry model."""
    timestamp: str
    level: str
    logger: str
    message: str
    module: str
    funcName: str
    lineno: int
    job_id: Optional[int] = None
    exception: Optional[str] = None


class LogsResponse(BaseModel):
    logs: List[LogEntry]
    total: int
    offset: int
    limit: int


class LogStats(BaseModel):
    total: int
    max_records: int
    by_level: Dict[str, int]


@router.get("", response_model=LogsResponse)
async def get_logs(
    level: Optional[str] = Query(None, description="Filter by log level"),
    logger: Optional[str] = Query(None, description="Filter by logger name"),
    search: Optional[str] = Query(None, description="Search in log messages"),
    job_id: Optional[int] = Query(None, description="Only records logged for this job"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Buffered application logs, most recent first."""
    logs = get_log_handler().get_logs(
        level=level,
        logger=logger,
        search=search,
        job_id=job_id,
        limit=limit,
        offset=offset
    )
    return {"logs": logs, "total": len(logs), "offset": offset, "limit": limit}


@router.get("/stats", response_model=LogStats)
async def get_log_stats():
    return get_log_handler().get_stats()
