"""Persisted sync state and the live-progress overlay."""
from mailmirror.sync_state_db import (
    get_state_from_db,
    overlay_live_state,
    set_sync_state_finished,
    set_sync_state_syncing,
)


def test_state_lifecycle(db_session):
    assert get_state_from_db(db_session)["status"] == "idle"

    set_sync_state_syncing(db_session, "incremental")
    state = get_state_from_db(db_session)
    assert state["status"] == "syncing"
    assert state["mode"] == "incremental"
    assert state["progress"] == 0

    set_sync_state_finished(db_session, "cancelled", "Sync cancelled")
    state = get_state_from_db(db_session)
    assert state["status"] == "cancelled"
    assert state["last_synced_at"] is None

    set_sync_state_syncing(db_session, "initial")
    set_sync_state_finished(db_session, "idle", "Sync complete", processed=7, failed=1)
    state = get_state_from_db(db_session)
    assert state["status"] == "idle"
    assert state["progress"] == 100
    assert state["processed"] == 7
    assert state["failed"] == 1
    assert state["last_synced_at"] is not None


def test_overlay_live_state():
    stored = {"status": "idle", "mode": None, "progress": 100, "message": "Sync complete"}
    assert overlay_live_state(stored, {"status": "idle"}) is stored
    live = {"status": "syncing", "mode": "initial", "progress": 0.257, "message": "Downloading messages… (5/20)"}
    merged = overlay_live_state(stored, live)
    assert merged["status"] == "syncing"
    assert merged["progress"] == 26
    assert merged["mode"] == "initial"
    assert stored["status"] == "idle"
