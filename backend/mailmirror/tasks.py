"""Celery tasks: mail sync (initial/incremental). Progress and outcome are persisted in sync_state."""
from celery import shared_task

from .coordinator import get_coordinator
from .database import SessionLocal
from .errors import format_sync_error
from .sync_state_db import set_sync_state_finished, set_sync_state_syncing


@shared_task(bind=True, name="mailmirror.tasks.run_mail_sync")
def run_mail_sync(self, mode: str = "incremental"):
    """
    Run one sync pass. mode: initial | incremental.
    A pass already running in this worker makes this a no-op (returns skipped).
    """
    if mode not in ("initial", "incremental"):
        raise ValueError(f"unknown sync mode: {mode}")
    coordinator = get_coordinator()
    db = SessionLocal()
    started = []

    def _mark_started():
        started.append(mode)
        set_sync_state_syncing(db, mode)

    try:
        if mode == "initial":
            result = coordinator.perform_initial_sync(on_begin=_mark_started)
        else:
            result = coordinator.perform_incremental_sync(on_begin=_mark_started)
        if not started:
            return {"mode": mode, "skipped": True}
        state = coordinator.get_state()
        if result is None:
            set_sync_state_finished(db, state["last_outcome"], state["message"], error=state["error"])
            return {"mode": mode, "skipped": False, "outcome": state["last_outcome"]}
        set_sync_state_finished(db, "idle", result.status_text, processed=result.processed, failed=len(result.failed_ids))
        return {
            "mode": result.mode,
            "skipped": False,
            "outcome": "idle",
            "processed": result.processed,
            "failed": len(result.failed_ids),
            "cursor_advanced": result.cursor_advanced,
            "history_id": result.history_id,
        }
    except Exception as e:
        set_sync_state_finished(db, "failed", f"Sync failed: {format_sync_error(e)}", error=format_sync_error(e))
        raise
    finally:
        db.close()
