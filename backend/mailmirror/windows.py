"""Time windows and list queries for initial, recovery and reconciliation passes."""
import calendar
from datetime import datetime, timedelta
from typing import Optional

from .config import settings


def initial_sync_start(install_time: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    if install_time is not None:
        return install_time - timedelta(seconds=settings.timestamp_buffer_s)
    return now - timedelta(days=settings.initial_sync_fallback_days)


def recovery_start(
    last_success: Optional[datetime],
    install_time: Optional[datetime],
    now: Optional[datetime] = None,
) -> datetime:
    now = now or datetime.utcnow()
    if last_success is not None:
        return last_success - timedelta(seconds=settings.recovery_buffer_s)
    if install_time is not None:
        return install_time - timedelta(seconds=settings.timestamp_buffer_s)
    return now - timedelta(days=settings.recovery_fallback_days)


def reconciliation_start(
    last_success: Optional[datetime],
    install_time: Optional[datetime],
    now: Optional[datetime] = None,
) -> datetime:
    """Last success minus the buffer, at most 24h back and never before install time minus the buffer."""
    now = now or datetime.utcnow()
    if last_success is None:
        start = now - timedelta(seconds=settings.reconciliation_fallback_s)
    else:
        start = last_success - timedelta(seconds=settings.timestamp_buffer_s)
    start = max(start, now - timedelta(seconds=settings.max_reconciliation_window_s))
    if install_time is not None:
        start = max(start, install_time - timedelta(seconds=settings.timestamp_buffer_s))
    return start


def reconciliation_max_results(start: datetime, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    whole_hours = max(0, int((now - start).total_seconds() // 3600))
    return min(200, max(50, whole_hours * 20))


def to_epoch(value: datetime) -> int:
    """Naive datetimes are UTC throughout the mirror."""
    return calendar.timegm(value.utctimetuple())


def build_query(start: datetime) -> str:
    return f"after:{to_epoch(start)} -label:spam -label:drafts"
