"""Sync time windows and list queries."""
from datetime import datetime, timedelta

from mailmirror.windows import (
    build_query,
    initial_sync_start,
    reconciliation_max_results,
    reconciliation_start,
    recovery_start,
    to_epoch,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_initial_sync_start():
    install = datetime(2026, 2, 1)
    assert initial_sync_start(install, NOW) == install - timedelta(minutes=5)
    assert initial_sync_start(None, NOW) == NOW - timedelta(days=30)


def test_recovery_start():
    assert recovery_start(NOW - timedelta(hours=1), None, NOW) == NOW - timedelta(hours=1, minutes=10)
    assert recovery_start(None, datetime(2026, 2, 1), NOW) == datetime(2026, 2, 1) - timedelta(minutes=5)
    assert recovery_start(None, None, NOW) == NOW - timedelta(days=7)


def test_reconciliation_start_is_clamped():
    # Last success long ago: at most 24h back.
    assert reconciliation_start(NOW - timedelta(days=3), None, NOW) == NOW - timedelta(hours=24)
    # Never before the install time minus the buffer.
    install = NOW - timedelta(hours=2)
    assert reconciliation_start(NOW - timedelta(hours=10), install, NOW) == install - timedelta(minutes=5)
    assert reconciliation_start(None, None, NOW) == NOW - timedelta(hours=1)
    assert reconciliation_start(NOW - timedelta(minutes=30), None, NOW) == NOW - timedelta(minutes=35)


def test_reconciliation_max_results():
    assert reconciliation_max_results(NOW - timedelta(minutes=30), NOW) == 50
    assert reconciliation_max_results(NOW - timedelta(hours=4), NOW) == 80
    assert reconciliation_max_results(NOW - timedelta(hours=24), NOW) == 200


def test_build_query_uses_epoch_seconds():
    start = datetime(2026, 1, 1, 0, 0, 0)
    assert to_epoch(start) == 1767225600
    assert build_query(start) == "after:1767225600 -label:spam -label:drafts"
