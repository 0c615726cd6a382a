"""Data cleanup: one-time migrations, empty conversations, drafts, hash fix-ups."""
from mailmirror.identity import participant_hash
from mailmirror.models import Conversation, ConversationParticipant, Message
from mailmirror.services.cleanup import (
    ARCHIVE_MIGRATION_FLAG,
    DUPLICATE_CLEANUP_FLAG,
    DataCleanupService,
)

from conftest import ME, make_raw_message


def _link(store, conversation, *emails):
    for email in emails:
        person = store.upsert_person(email)
        conversation.participants.append(ConversationParticipant(person=person, person_email=email))


def test_full_cleanup_runs_once(store, resolver):
    service = DataCleanupService(store, resolver)
    assert service.run_full_cleanup_once() is True
    assert store.get_flag(DUPLICATE_CLEANUP_FLAG) is True
    assert store.get_flag(ARCHIVE_MIGRATION_FLAG) is True
    assert service.run_full_cleanup_once() is False


def test_archive_migration_backfills_hash_and_archives(store, resolver, upserter):
    legacy = Conversation(participant_hash=None)
    _link(store, legacy, "alice@example.com", ME)
    store.add(legacy)
    upserter.upsert(make_raw_message("m1", from_="bob@example.com", labels=("IMPORTANT",)))
    store.flush()

    changed = DataCleanupService(store, resolver).migrate_to_archive_model()
    store.commit()

    assert changed == 2
    assert legacy.participant_hash == participant_hash(["alice@example.com"])
    archived = store.get_message("m1").conversation
    assert archived.archived_at is not None
    assert DataCleanupService(store, resolver).migrate_to_archive_model() == 0


def test_incremental_cleanup_removes_drafts_and_empty_conversations(store, resolver, upserter, tracker):
    upserter.upsert(make_raw_message("d1", from_=ME, to="bob@example.com", labels=("DRAFT",)))
    upserter.upsert(make_raw_message("m1"))
    empty = Conversation(participant_hash="orphan")
    store.add(empty)
    store.flush()
    tracker.drain()

    result = DataCleanupService(store, resolver).run_incremental_cleanup()
    store.commit()

    assert result["drafts_removed"] == 1
    assert result["empty_removed"] == 1
    assert store.get_message("d1") is None
    assert store.get_message("m1") is not None
    assert store.count(Message) == 1
    assert len(tracker.drain()) == 1


def test_fix_incorrect_hashes_merges_collisions(store, resolver, upserter):
    good = upserter.upsert(make_raw_message("m1")).conversation
    bad = Conversation(participant_hash=participant_hash(["alice@example.com", ME]), conversation_type="group")
    _link(store, bad, "alice@example.com", ME)
    bad.messages.append(Message(id="m2"))
    store.add(bad)
    store.flush()
    good_id = good.id

    merged = DataCleanupService(store, resolver).fix_and_merge_incorrect_participant_hashes()
    store.commit()

    assert merged == 1
    assert store.count(Conversation) == 1
    survivor = store.get_message("m2").conversation
    assert survivor.participant_hash == participant_hash(["alice@example.com"])
    assert survivor.participant_emails == ["alice@example.com"]
    assert {m.id for m in survivor.messages} == {"m1", "m2"}
    assert survivor.id == good_id
