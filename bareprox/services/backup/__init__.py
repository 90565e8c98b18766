"""
Backup orchestration and the replication wait it embeds.
"""
from bareprox.services.backup.orchestrator import BackupOutcome, BackupRequest, BackupService
from bareprox.services.backup.replication import ReplicationWaiter
from bareprox.services.jobs import sleep_or_cancel

__all__ = [
    "BackupOutcome",
    "BackupRequest",
    "BackupService",
    "ReplicationWaiter",
    "sleep_or_cancel",
]
