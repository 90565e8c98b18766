"""
Main FastAPI application.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from bareprox.core.config import settings
from bareprox.core.logging_handler import setup_logging, setup_file_logging
from bareprox.api.v1 import backups, restores, jobs, logs
from bareprox.models import AsyncSessionLocal, init_db
from bareprox.services.backup import BackupService
from bareprox.services.jobs import JobWriter
from bareprox.services.notifications import EmailNotifier
from bareprox.services.proxmox import ProxmoxService
from bareprox.services.queue import BackgroundTaskQueue, TaskQueueWorker
from bareprox.services.restore import RestoreService
from bareprox.services.retention import RetentionJanitor
from bareprox.services.scheduler import ScheduleDispatcher
from bareprox.services.storage import create_storage_client

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, session_factory=None):
    """Create the shared collaborators and orchestrators on ``app.state``."""
    session_factory = session_factory or AsyncSessionLocal
    proxmox = ProxmoxService()
    storage = create_storage_client(session_factory=session_factory)
    jobs_writer = JobWriter(session_factory)
    notifier = EmailNotifier(session_factory)
    queue = BackgroundTaskQueue()

    app.state.task_queue = queue
    app.state.job_writer = jobs_writer
    app.state.backup_service = BackupService(
        session_factory=session_factory,
        proxmox=proxmox,
        storage=storage,
        jobs=jobs_writer,
        notifier=notifier,
    )
    app.state.restore_service = RestoreService(
        queue,
        session_factory=session_factory,
        proxmox=proxmox,
        storage=storage,
        jobs=jobs_writer,
        notifier=notifier,
    )
    app.state.dispatcher = ScheduleDispatcher(queue, app.state.backup_service, session_factory=session_factory)
    app.state.janitor = RetentionJanitor(storage, session_factory=session_factory)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    print(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    setup_logging(settings.LOG_LEVEL)
    if settings.FILE_LOGGING_ENABLED:
        setup_file_logging(
            log_dir=settings.LOG_DIR,
            max_bytes=settings.LOG_MAX_BYTES,
            backup_count=settings.LOG_BACKUP_COUNT,
            level=settings.LOG_LEVEL,
        )

    if settings.DB_CREATE_TABLES:
        await init_db()

    build_services(app)

    worker = TaskQueueWorker(app.state.task_queue)
    loops = []
    if settings.BACKGROUND_LOOPS_ENABLED:
        worker.start()
        loops = [
            asyncio.create_task(app.state.dispatcher.run(worker.stop_event), name="bareprox-scheduler"),
            asyncio.create_task(app.state.janitor.run(worker.stop_event), name="bareprox-janitor"),
        ]
        logger.info("Background scheduler, janitor and queue workers started")

    yield

    # Shutdown
    print("Shutting down...")
    await worker.stop()
    for task in loops:
        task.cancel()
    await asyncio.gather(*loops, return_exceptions=True)


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Backup and restore orchestration for Proxmox VMs on NetApp ONTAP storage",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(backups.router, prefix=f"{settings.API_V1_PREFIX}/backups", tags=["Backups"])
app.include_router(restores.router, prefix=f"{settings.API_V1_PREFIX}/restores", tags=["Restores"])
app.include_router(jobs.router, prefix=f"{settings.API_V1_PREFIX}/jobs", tags=["Jobs"])
app.include_router(logs.router, prefix=f"{settings.API_V1_PREFIX}/logs", tags=["Logs"])


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bareprox.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
