"""Reconciliation: messages history missed, and drifted inbox/unread state."""
from datetime import datetime, timedelta

import pytest

from mailmirror.errors import AuthenticationError, ServerError
from mailmirror.reconcile import Reconciler

from conftest import make_raw_message


def _reconciler(fake_client, store, fast_fetcher, tracker):
    return Reconciler(fake_client, store, fast_fetcher, tracker, label_window_s=3600, label_limit=30, recent_edit_s=300)


def test_check_for_missed_messages_returns_only_absent_ids(fake_client, store, upserter, fast_fetcher, tracker):
    upserter.upsert(make_raw_message("m1"))
    store.commit()
    fake_client.add(make_raw_message("m1"), make_raw_message("m2"), make_raw_message("m3"))

    missing = _reconciler(fake_client, store, fast_fetcher, tracker).check_for_missed_messages(None, None)
    assert missing == ["m2", "m3"]


def test_check_for_missed_messages_swallows_remote_errors(fake_client, store, fast_fetcher, tracker):
    reconciler = _reconciler(fake_client, store, fast_fetcher, tracker)

    def boom(*args, **kwargs):
        raise ServerError(503)

    fake_client.list_messages = boom
    assert reconciler.check_for_missed_messages(None, None) == []


def test_check_for_missed_messages_propagates_auth_errors(fake_client, store, fast_fetcher, tracker):
    reconciler = _reconciler(fake_client, store, fast_fetcher, tracker)

    def denied(*args, **kwargs):
        raise AuthenticationError("token revoked")

    fake_client.list_messages = denied
    with pytest.raises(AuthenticationError):
        reconciler.check_for_missed_messages(None, None)


def test_label_reconciliation_fixes_missed_archive(fake_client, store, upserter, fast_fetcher, tracker):
    upserter.upsert(make_raw_message("m1"))
    upserter.upsert(make_raw_message("m2", labels=("INBOX",)))
    store.commit()
    tracker.drain()
    # Server: m1 archived and read; m2 unchanged.
    fake_client.add(make_raw_message("m1", labels=("IMPORTANT",)), make_raw_message("m2", labels=("INBOX",)))

    stats = _reconciler(fake_client, store, fast_fetcher, tracker).reconcile_label_states()
    store.commit()

    assert stats.checked == 2
    assert stats.updated == 1
    m1 = store.get_message("m1")
    assert m1.label_ids == set()
    assert m1.is_unread is False
    assert tracker.drain() == {m1.conversation_id}
    assert all(fmt == "metadata" for _, fmt in fake_client.get_calls)


def test_label_reconciliation_skips_recent_local_edits(fake_client, store, upserter, fast_fetcher, tracker):
    upserter.upsert(make_raw_message("m1"))
    store.get_message("m1").local_modified_at = datetime.utcnow() - timedelta(minutes=1)
    store.commit()
    fake_client.add(make_raw_message("m1", labels=()))

    stats = _reconciler(fake_client, store, fast_fetcher, tracker).reconcile_label_states()
    assert stats.skipped_recent_edit == 1
    assert stats.checked == 0
    assert "INBOX" in store.get_message("m1").label_ids
    assert fake_client.get_calls == []
