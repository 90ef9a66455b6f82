"""
Accounting window resolution.

A window is a pure function of wall-clock time and the configured zone.
Resolving one must never fail: every quota decision depends on it, so an
unknown zone degrades to a UTC date instead of raising.
"""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from .config import DEFAULT_TIMEZONE, QuotaLimitsConfig
from .models import DAILY, UsageWindow

logger = logging.getLogger(__name__)


def _load_zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        logger.debug(f"Unknown time zone {name!r}, falling back to UTC: {e}")
        return None


def resolve_window(
    config: Optional[QuotaLimitsConfig] = None,
    now: Optional[datetime] = None,
) -> UsageWindow:
    """
    Resolve the current daily window.

    Args:
        config: Quota config; its time_zone selects the calendar (default
            Asia/Singapore)
        now: Reference instant, defaults to the current time. Naive values
            are taken as UTC.

    Returns:
        UsageWindow whose id is the local calendar date
    """
    zone_name = (config.time_zone if config else None) or DEFAULT_TIMEZONE
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    zone = _load_zone(zone_name)
    if zone is None:
        return UsageWindow(
            kind=DAILY,
            id=now.astimezone(timezone.utc).date().isoformat(),
            time_zone="UTC",
        )
    return UsageWindow(kind=DAILY, id=now.astimezone(zone).date().isoformat(), time_zone=zone_name)
