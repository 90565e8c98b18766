"""
Retention of storage snapshots and their backup records.
"""
from bareprox.services.retention.janitor import RetentionJanitor, is_expired

__all__ = ["RetentionJanitor", "is_expired"]
