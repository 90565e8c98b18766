"""
Restore orchestration.
"""
from bareprox.services.restore.orchestrator import (
    RESTORE_TARGETS,
    RESTORE_TYPES,
    RestoreRequest,
    RestoreService,
)

__all__ = [
    "RESTORE_TARGETS",
    "RESTORE_TYPES",
    "RestoreRequest",
    "RestoreService",
]
