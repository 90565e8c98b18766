"""
Error taxonomy shared by the orchestrators and their collaborators.
"""
from typing import Optional


class BareProxError(Exception):
    """Base exception for orchestration failures."""
    pass


class NotFoundError(BareProxError):
    """A cluster, host, VM set, volume or replication relation does not exist."""
    pass


class ValidationFailure(BareProxError):
    """A request is malformed or internally inconsistent."""
    pass


class RemoteOperationError(BareProxError):
    """A remote command exited non-zero or an API call returned an unsuccessful body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(BareProxError):
    """Every re-authentication and credential recovery attempt was exhausted."""
    pass


class ServiceUnavailableError(BareProxError):
    """A remote host could not be reached, or a local queue is saturated."""
    pass


class OperationTimeout(BareProxError):
    """A task or replication wait exceeded its ceiling."""
    pass


class ConflictEmptyError(BareProxError):
    """No VMs or volumes matched the request."""
    pass


class JobCancelled(BareProxError):
    """Cancellation was requested and observed at a step boundary."""
    pass


__all__ = [
    "BareProxError",
    "NotFoundError",
    "ValidationFailure",
    "RemoteOperationError",
    "AuthenticationError",
    "ServiceUnavailableError",
    "OperationTimeout",
    "ConflictEmptyError",
    "JobCancelled",
]
