"""
Application time zone helpers.

Timestamps are stored in UTC. Snapshot names, notification bodies and
schedule evaluation use the operator's zone from ``APP_TIMEZONE``.
"""
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bareprox.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=8)
def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown APP_TIMEZONE '{name}', falling back to UTC")
        return timezone.utc


def app_timezone(name: Optional[str] = None):
    """Configured zone, or ``name`` when given."""
    return _zone(name or settings.APP_TIMEZONE)


def to_app_time(value: datetime, zone_name: Optional[str] = None) -> datetime:
    """Convert a UTC (or naive UTC) timestamp to the application zone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(app_timezone(zone_name))


def app_now(zone_name: Optional[str] = None) -> datetime:
    return datetime.now(app_timezone(zone_name))
