"""Persisted sync progress (SyncState row), read by sync-status and SSE across processes."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .models import SyncState
from .store import commit_with_retry

_DEFAULT_STATE = {
    "status": "idle",
    "mode": None,
    "progress": 0,
    "message": "",
    "processed": 0,
    "failed": 0,
    "error": None,
    "last_synced_at": None,
}


def get_sync_state(db: Session) -> Optional[SyncState]:
    return db.query(SyncState).order_by(SyncState.id.desc()).first()


def _row(db: Session) -> SyncState:
    row = get_sync_state(db)
    if row is None:
        row = SyncState(status="idle")
        db.add(row)
    return row


def set_sync_state_syncing(db: Session, mode: Optional[str] = None):
    def _apply():
        row = _row(db)
        row.status = "syncing"
        row.mode = mode
        row.progress = 0
        row.message = "Connecting to Gmail…"
        row.error = None
        row.processed = 0
        row.failed = 0
        row.updated_at = datetime.utcnow()

    commit_with_retry(db, _apply)


def set_sync_state_finished(
    db: Session,
    status: str,
    message: str,
    processed: int = 0,
    failed: int = 0,
    error: Optional[str] = None,
):
    """status is the pass outcome: idle (success), cancelled or failed."""
    now = datetime.utcnow()

    def _apply():
        row = _row(db)
        row.status = status
        row.message = (message or "")[:255]
        row.error = error
        row.processed = processed
        row.failed = failed
        if status == "idle":
            row.progress = 100
            row.last_synced_at = now
        row.updated_at = now

    commit_with_retry(db, _apply)


def get_state_from_db(db: Session) -> dict:
    row = get_sync_state(db)
    if not row:
        return dict(_DEFAULT_STATE)
    return {
        "status": row.status or "idle",
        "mode": row.mode,
        "progress": row.progress if row.progress is not None else 0,
        "message": (row.message or "").strip(),
        "processed": row.processed if row.processed is not None else 0,
        "failed": row.failed if row.failed is not None else 0,
        "error": row.error,
        "last_synced_at": row.last_synced_at.isoformat() if row.last_synced_at else None,
    }


def overlay_live_state(state: dict, live: dict) -> dict:
    """While a pass runs in this process, its in-memory progress is fresher than the row."""
    if live.get("status") != "syncing":
        return state
    merged = dict(state)
    merged["status"] = "syncing"
    merged["mode"] = live.get("mode") or state.get("mode")
    merged["progress"] = int(round(float(live.get("progress") or 0) * 100))
    merged["message"] = live.get("message") or state.get("message")
    return merged
