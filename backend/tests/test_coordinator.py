"""Sync coordinator: single flight, cancellation, failure state, listeners, diagnostics."""
import threading

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from mailmirror.config import settings
from mailmirror.coordinator import SyncCoordinator
from mailmirror.errors import AuthenticationError, StoreCommitError
from mailmirror.failures import FailureTracker
from mailmirror.models import Account, Message
from mailmirror.store import Store

from conftest import FakeMailClient, make_raw_message


class BlockingClient(FakeMailClient):
    """get_profile blocks until the test releases it."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_profile(self):
        self.entered.set()
        self.release.wait(5)
        return super().get_profile()


class DeniedClient(FakeMailClient):
    def get_profile(self):
        raise AuthenticationError("token revoked")


def _coordinator(client, session_factory):
    return SyncCoordinator(client_factory=lambda: client, session_factory=session_factory)


def test_second_sync_while_running_is_a_no_op(session_factory):
    client = BlockingClient()
    client.add(make_raw_message("m1"))
    coordinator = _coordinator(client, session_factory)
    results = []
    worker = threading.Thread(target=lambda: results.append(coordinator.perform_initial_sync()))
    worker.start()
    try:
        assert client.entered.wait(5)
        assert coordinator.is_syncing
        assert coordinator.begin_sync("incremental") is False
        assert coordinator.perform_incremental_sync() is None
        assert coordinator.get_state()["status"] == "syncing"
        assert coordinator.get_state()["mode"] == "initial"
    finally:
        client.release.set()
        worker.join(10)

    assert results[0].processed == 1
    state = coordinator.get_state()
    assert state["status"] == "idle"
    assert state["last_outcome"] == "idle"
    assert state["progress"] == 1.0


def test_cancel_rolls_back_the_pass(session_factory, db_session):
    client = FakeMailClient()
    client.add(make_raw_message("m1"))
    coordinator = _coordinator(client, session_factory)

    def cancel_after_labels(fraction, text):
        if fraction >= 0.10:
            coordinator.cancel_sync()

    coordinator.subscribe(cancel_after_labels)
    assert coordinator.perform_initial_sync() is None

    state = coordinator.get_state()
    assert state["status"] == "idle"
    assert state["last_outcome"] == "cancelled"
    store = Store(db_session)
    assert store.count(Message) == 0
    assert store.count(Account) == 0


def test_cancel_when_idle_is_rejected(session_factory):
    assert _coordinator(FakeMailClient(), session_factory).cancel_sync() is False


def test_failure_re_raises_and_records_state(session_factory):
    coordinator = _coordinator(DeniedClient(), session_factory)
    with pytest.raises(AuthenticationError):
        coordinator.perform_initial_sync()
    state = coordinator.get_state()
    assert state["status"] == "idle"
    assert state["last_outcome"] == "failed"
    assert state["error"] == "Authentication failed"
    # A failed pass does not wedge the coordinator.
    assert coordinator.begin_sync("initial") is True


def test_listeners_can_unsubscribe(session_factory, fake_client):
    fake_client.add(make_raw_message("m1"))
    coordinator = _coordinator(fake_client, session_factory)
    seen = []
    unsubscribe = coordinator.subscribe(lambda fraction, text: seen.append((fraction, text)))
    coordinator.perform_initial_sync()
    assert seen[-1] == (1.0, "Sync complete")
    count = len(seen)

    unsubscribe()
    unsubscribe()
    fake_client.list_ids = []
    coordinator.perform_incremental_sync()
    assert len(seen) == count


def test_broken_listener_does_not_break_the_pass(session_factory, fake_client):
    coordinator = _coordinator(fake_client, session_factory)

    def broken(fraction, text):
        raise RuntimeError("listener bug")

    coordinator.subscribe(broken)
    result = coordinator.perform_initial_sync()
    assert result is not None
    assert coordinator.get_state()["last_outcome"] == "idle"


def test_diagnostics_and_abandoned_retry(session_factory, fake_client, db_session):
    fake_client.add(make_raw_message("m1"))
    coordinator = _coordinator(fake_client, session_factory)
    coordinator.perform_initial_sync()

    diagnostics = coordinator.diagnostics()
    assert diagnostics["history_id"] == "100"
    assert diagnostics["consecutive_failures"] == 0
    assert diagnostics["abandoned_count"] == 0
    assert diagnostics["last_successful_sync"] is not None

    store = Store(db_session)
    FailureTracker(store).abandon(["m1", "gone"], reason="test")
    store.commit()
    assert coordinator.diagnostics()["abandoned_count"] == 2

    result = coordinator.retry_abandoned()
    assert result == {"retried": 2, "recovered": 1, "still_failing": 1}
    remaining = coordinator.diagnostics()["abandoned_messages"]
    assert [row["message_id"] for row in remaining] == ["gone"]
    assert remaining[0]["retry_count"] == 1


def _lock_first_commits(monkeypatch, times: int) -> list:
    """Every Session's first `times` commits (counted together) fail with a SQLite lock."""
    real_commit = Session.commit
    calls = []

    def commit(self):
        calls.append(1)
        if len(calls) <= times:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        real_commit(self)

    monkeypatch.setattr(Session, "commit", commit)
    return calls


def test_locked_commit_re_runs_the_pass(session_factory, fake_client, db_session, monkeypatch):
    fake_client.add(make_raw_message("m1"), make_raw_message("m2", minutes=5))
    coordinator = _coordinator(fake_client, session_factory)
    calls = _lock_first_commits(monkeypatch, times=1)

    result = coordinator.perform_initial_sync()

    assert len(calls) == 2
    assert result.cursor_advanced is True
    store = Store(db_session)
    assert store.count(Message) == 2
    assert store.get_account().history_id == "100"
    assert coordinator.get_state()["last_outcome"] == "idle"


def test_commit_that_keeps_failing_fails_the_pass(session_factory, fake_client, db_session, monkeypatch):
    fake_client.add(make_raw_message("m1"))
    coordinator = _coordinator(fake_client, session_factory)
    monkeypatch.setattr(settings, "store_commit_max_retries", 1)
    calls = _lock_first_commits(monkeypatch, times=100)

    with pytest.raises(StoreCommitError):
        coordinator.perform_initial_sync()

    assert len(calls) == 2
    state = coordinator.get_state()
    assert state["last_outcome"] == "failed"
    assert state["error"] == "Could not save changes"
    monkeypatch.undo()
    store = Store(db_session)
    assert store.count(Message) == 0
    assert store.get_account() is None


class CancellingClient(FakeMailClient):
    """Cancels the running pass from inside the first message fetch."""

    def __init__(self):
        super().__init__()
        self.coordinator = None

    def get_message(self, message_id, fmt="full"):
        self.coordinator.cancel_sync()
        return super().get_message(message_id, fmt)


def test_cancelled_abandoned_retry_records_nothing(session_factory, db_session):
    client = CancellingClient()
    coordinator = _coordinator(client, session_factory)
    client.coordinator = coordinator
    store = Store(db_session)
    FailureTracker(store).abandon([f"gone-{i}" for i in range(30)], reason="test")
    store.commit()

    assert coordinator.retry_abandoned() is None

    assert coordinator.get_state()["last_outcome"] == "cancelled"
    db_session.expire_all()
    rows = FailureTracker(Store(db_session)).abandoned_messages()
    assert len(rows) == 30
    assert {row.retry_count for row in rows} == {0}
