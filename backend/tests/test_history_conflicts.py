"""History record application and local-modification conflict handling."""
from datetime import datetime, timedelta

from mailmirror.history import HistoryProcessor
from mailmirror.models import Message
from mailmirror.remote import AddedMessage, HistoryRecord, LabelChange, parse_history_record

from conftest import make_raw_message


def _seed(store, upserter, *ids, labels=("INBOX", "UNREAD")):
    for mid in ids:
        upserter.upsert(make_raw_message(mid, labels=labels))
    store.commit()


def test_extract_new_message_ids_skips_spam_duplicates_and_later_deletes():
    records = [
        HistoryRecord(messages_added=[AddedMessage("a", ["INBOX"]), AddedMessage("spam", ["SPAM"])]),
        HistoryRecord(messages_added=[AddedMessage("b"), AddedMessage("a")]),
        HistoryRecord(messages_deleted=["b"]),
        HistoryRecord(messages_deleted=["c"]),
        HistoryRecord(messages_added=[AddedMessage("c")]),
    ]
    assert HistoryProcessor.extract_new_message_ids(records) == ["a", "c"]


def test_label_removal_archives_and_marks_read(store, upserter, tracker):
    _seed(store, upserter, "m1")
    tracker.drain()
    processor = HistoryProcessor(store, tracker)
    result = processor.process_records(
        [HistoryRecord(labels_removed=[LabelChange("m1", ["INBOX", "UNREAD"])])],
        sync_start_time=datetime.utcnow(),
    )
    store.commit()
    message = store.get_message("m1")
    assert result.labels_applied == 1
    assert message.label_ids == set()
    assert message.is_unread is False
    assert tracker.drain() == {message.conversation_id}


def test_label_add_creates_unknown_labels(store, upserter, tracker):
    _seed(store, upserter, "m1", labels=("INBOX",))
    HistoryProcessor(store, tracker).process_records(
        [HistoryRecord(labels_added=[LabelChange("m1", ["Label_9", "UNREAD"])])], sync_start_time=None
    )
    store.commit()
    message = store.get_message("m1")
    assert message.label_ids == {"INBOX", "Label_9", "UNREAD"}
    assert message.is_unread is True


def test_recent_local_modification_wins(store, upserter, tracker):
    _seed(store, upserter, "m1")
    start = datetime.utcnow() - timedelta(minutes=1)
    message = store.get_message("m1")
    message.local_modified_at = start + timedelta(seconds=30)
    store.commit()

    result = HistoryProcessor(store, tracker).process_records(
        [HistoryRecord(labels_removed=[LabelChange("m1", ["INBOX"])])], sync_start_time=start
    )
    store.commit()
    assert result.skipped_conflict == 1
    assert "INBOX" in store.get_message("m1").label_ids


def test_stale_local_modification_loses(store, upserter, tracker):
    _seed(store, upserter, "m1")
    now = datetime.utcnow()
    start = now - timedelta(hours=2)
    message = store.get_message("m1")
    message.local_modified_at = now - timedelta(hours=1)
    store.commit()

    processor = HistoryProcessor(store, tracker, max_local_modification_age_s=30 * 60)
    result = processor.process_records(
        [HistoryRecord(labels_removed=[LabelChange("m1", ["INBOX"])])], sync_start_time=start, now=now
    )
    store.commit()
    assert result.skipped_conflict == 0
    assert "INBOX" not in store.get_message("m1").label_ids


def test_modification_before_pass_start_is_not_a_conflict(store, upserter, tracker):
    _seed(store, upserter, "m1")
    start = datetime.utcnow()
    message = store.get_message("m1")
    message.local_modified_at = start - timedelta(seconds=1)
    assert HistoryProcessor(store, tracker).has_conflict(message, start) is False
    assert HistoryProcessor(store, tracker).has_conflict(message, None) is False


def test_missing_messages_are_skipped(store, tracker):
    result = HistoryProcessor(store, tracker).process_records(
        [HistoryRecord(labels_added=[LabelChange("ghost", ["INBOX"])])], sync_start_time=None
    )
    assert result.skipped_missing == 1
    assert result.labels_applied == 0


def test_deletion_removes_message_and_tracks_conversation(store, upserter, tracker):
    _seed(store, upserter, "m1", "m2")
    conversation_id = store.get_message("m1").conversation_id
    tracker.drain()
    result = HistoryProcessor(store, tracker).process_records(
        [
            HistoryRecord(messages_deleted=["m1", "never-seen"]),
            HistoryRecord(labels_added=[LabelChange("m1", ["STARRED"])]),
        ],
        sync_start_time=None,
    )
    store.commit()
    assert result.deleted == 1
    assert result.skipped_missing == 1
    assert store.get_message("m1") is None
    assert store.count(Message) == 1
    assert tracker.drain() == {conversation_id}


def test_clear_local_modifications(store, upserter, tracker):
    _seed(store, upserter, "m1")
    store.get_message("m1").local_modified_at = datetime.utcnow()
    store.commit()
    assert HistoryProcessor(store, tracker).clear_local_modifications(["m1", "zzz"]) == 1
    store.commit()
    assert store.get_message("m1").local_modified_at is None


def test_parse_history_record_gmail_shape():
    record = parse_history_record(
        {
            "id": "501",
            "messagesAdded": [{"message": {"id": "a", "labelIds": ["INBOX"]}}],
            "messagesDeleted": [{"message": {"id": "b"}}],
            "labelsAdded": [{"message": {"id": "c"}, "labelIds": ["STARRED"]}],
            "labelsRemoved": [{"message": {"id": "d"}, "labelIds": ["UNREAD"]}],
        }
    )
    assert record.id == "501"
    assert record.messages_added[0].id == "a"
    assert record.messages_deleted == ["b"]
    assert record.labels_added[0].label_ids == ["STARRED"]
    assert record.labels_removed[0].message_id == "d"
