#!/usr/bin/env python3
"""
Run mail sync passes from the command line (no Redis/Celery, no API server).

Usage (from backend/; use the project venv):
  ./.venv/bin/python scripts/run_sync.py incremental

Common examples:
  # First backfill of the install window
  ./.venv/bin/python scripts/run_sync.py initial

  # Delta sync from the stored history cursor (falls back to initial if there is none)
  ./.venv/bin/python scripts/run_sync.py incremental

  # Refetch messages the sync gave up on
  ./.venv/bin/python scripts/run_sync.py retry-abandoned

  # Show failure counters and abandoned messages
  ./.venv/bin/python scripts/run_sync.py diagnostics

  # Record the install timestamp (bounds how far back initial sync reaches)
  ./.venv/bin/python scripts/run_sync.py record-install --at 2026-01-01T00:00:00
"""

from __future__ import annotations

import argparse
import json
import os
import sys

from datetime import datetime, timezone

# Ensure backend is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from mailmirror.account import record_install_time
from mailmirror.coordinator import get_coordinator
from mailmirror.database import SessionLocal, init_db
from mailmirror.errors import format_sync_error
from mailmirror.gmail_service import GmailAuthRequiredError
from mailmirror.store import Store


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    s = value.strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _print_progress(fraction: float, message: str) -> None:
    print(f"[{int(fraction * 100):3d}%] {message}", flush=True)


def main() -> int:
    p = argparse.ArgumentParser(description="Run mail mirror sync passes.")
    p.add_argument(
        "command",
        choices=["initial", "incremental", "retry-abandoned", "diagnostics", "record-install"],
    )
    p.add_argument("--at", default=None, help="Install timestamp (ISO 8601, UTC). Defaults to now.")
    args = p.parse_args()

    init_db()
    coordinator = get_coordinator()

    if args.command == "diagnostics":
        print(json.dumps(coordinator.diagnostics(), indent=2))
        return 0

    if args.command == "record-install":
        when = _parse_dt(args.at)
        if args.at and when is None:
            print(f"Invalid --at value: {args.at}", file=sys.stderr)
            return 2
        db = SessionLocal()
        try:
            store = Store(db)
            recorded = record_install_time(store, when)
            store.commit()
        finally:
            db.close()
        print(f"Install timestamp: {recorded.isoformat()}")
        return 0

    coordinator.subscribe(_print_progress)
    try:
        if args.command == "initial":
            result = coordinator.perform_initial_sync()
        elif args.command == "incremental":
            result = coordinator.perform_incremental_sync()
        else:
            print(json.dumps(coordinator.retry_abandoned(), indent=2))
            return 0
    except GmailAuthRequiredError as e:
        print(f"Gmail authorization required: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Sync failed: {format_sync_error(e)}", file=sys.stderr)
        return 1

    if result is None:
        print(coordinator.get_state()["message"] or "Nothing to do")
        return 0
    print(
        json.dumps(
            {
                "mode": result.mode,
                "processed": result.processed,
                "failed": len(result.failed_ids),
                "cursor_advanced": result.cursor_advanced,
                "history_id": result.history_id,
                "pending_attachments": len(result.pending_attachments),
            },
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
