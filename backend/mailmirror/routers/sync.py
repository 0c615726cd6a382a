"""Mail sync API: POST sync with mode, cancel, GET sync-status, GET sync-events (SSE), diagnostics."""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ..coordinator import get_coordinator
from ..database import SessionLocal, get_sync_db
from ..errors import format_sync_error
from ..gmail_service import GmailAuthRequiredError, gmail_creds_ready_for_background
from ..schemas import (
    SyncCancelResponse,
    SyncDiagnosticsResponse,
    SyncStartResponse,
    SyncStatusResponse,
)
from ..sync_state_db import (
    get_state_from_db,
    overlay_live_state,
    set_sync_state_finished,
    set_sync_state_syncing,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])

SYNC_MODES = ("initial", "incremental")


def _run_sync_task(mode: str):
    """Background task: one pass through the coordinator, with the outcome persisted to sync_state."""
    coordinator = get_coordinator()
    session = SessionLocal()
    started = []

    def _mark_started():
        started.append(mode)
        set_sync_state_syncing(session, mode)

    try:
        if mode == "initial":
            result = coordinator.perform_initial_sync(on_begin=_mark_started)
        else:
            result = coordinator.perform_incremental_sync(on_begin=_mark_started)
        if not started:
            # Lost the single-flight race; the running pass owns the sync_state row.
            logger.info(f"Background {mode} sync skipped; another pass is running")
            return
        state = coordinator.get_state()
        if result is None:
            set_sync_state_finished(session, state["last_outcome"], state["message"], error=state["error"])
        else:
            set_sync_state_finished(
                session, "idle", result.status_text, processed=result.processed, failed=len(result.failed_ids)
            )
    except GmailAuthRequiredError as e:
        set_sync_state_finished(session, "failed", "Sync failed: Authentication failed", error=str(e))
    except Exception as e:
        logger.error(f"Background sync failed: {e}")
        set_sync_state_finished(session, "failed", f"Sync failed: {format_sync_error(e)}", error=format_sync_error(e))
    finally:
        session.close()


@router.post("/sync", response_model=SyncStartResponse)
async def start_sync(background_tasks: BackgroundTasks, mode: Optional[str] = "incremental"):
    """Start a sync pass. mode=initial|incremental. Poll GET /api/sync-status or GET /api/sync-events for progress."""
    if mode not in SYNC_MODES:
        raise HTTPException(status_code=400, detail=f"mode must be one of {', '.join(SYNC_MODES)}")
    if not gmail_creds_ready_for_background():
        raise HTTPException(
            status_code=400,
            detail="Gmail authorization required. Create a token for this account, then try Sync again.",
        )
    if get_coordinator().is_syncing:
        raise HTTPException(status_code=409, detail="A sync is already in progress.")
    background_tasks.add_task(_run_sync_task, mode)
    return {"message": "Mail sync started.", "status": "syncing", "mode": mode}


@router.post("/sync/cancel", response_model=SyncCancelResponse)
def cancel_sync():
    cancelled = get_coordinator().cancel_sync()
    return {
        "cancelled": cancelled,
        "message": "Cancellation requested." if cancelled else "No sync is running.",
    }


@router.get("/sync-status", response_model=SyncStatusResponse)
def sync_status(db: Session = Depends(get_sync_db)):
    """Current sync progress: status, mode, progress percent, message, processed, failed, error."""
    return overlay_live_state(get_state_from_db(db), get_coordinator().get_state())


async def _sse_generator():
    """Yield SSE events with sync progress until the pass is no longer syncing."""
    coordinator = get_coordinator()
    while True:
        session = SessionLocal()
        try:
            state = overlay_live_state(get_state_from_db(session), coordinator.get_state())
        finally:
            session.close()
        yield {"data": json.dumps(state)}
        if state.get("status") != "syncing":
            break
        await asyncio.sleep(0.5)


@router.get("/sync-events")
async def sync_events():
    """SSE stream of sync progress."""
    return EventSourceResponse(_sse_generator())


@router.get("/sync/diagnostics", response_model=SyncDiagnosticsResponse)
def sync_diagnostics():
    """Abandoned messages, failure counters and the last successful sync time."""
    return get_coordinator().diagnostics()
