"""Email normalization and participant-based conversation identity."""
from mailmirror.identity import (
    GROUP,
    ONE_TO_ONE,
    format_group_names,
    make_conversation_identity,
    normalize_email,
    participant_hash,
    thread_hash,
)

ME = "me@example.com"


def test_normalize_email_gmail_dots_and_tags():
    assert normalize_email("  John.Smith+news@GMAIL.com ") == "johnsmith@gmail.com"
    assert normalize_email("j.smith@googlemail.com") == "jsmith@gmail.com"
    # Other domains keep dots and tags.
    assert normalize_email("John.Smith+x@Example.com") == "john.smith+x@example.com"


def test_identity_excludes_my_aliases_and_bcc():
    a = make_conversation_identity("Alice <alice@example.com>", ME, None, "t1", {ME})
    b = make_conversation_identity(f"Me <{ME}>", "alice@example.com", None, "t2", {ME})
    assert a.participant_hash == b.participant_hash
    assert a.participants == ["alice@example.com"]
    assert a.conversation_type == ONE_TO_ONE
    assert a.display_names["alice@example.com"] == "Alice"


def test_identity_is_order_independent_and_groups():
    a = make_conversation_identity("bob@example.com", "carol@example.com, me@example.com", None, "t1", {ME})
    b = make_conversation_identity("carol@example.com", ME, "Bob <bob@example.com>", "t9", {ME})
    assert a.participant_hash == b.participant_hash == participant_hash(["carol@example.com", "bob@example.com"])
    assert a.conversation_type == GROUP


def test_self_thread_is_keyed_by_thread_id():
    one = make_conversation_identity(ME, ME, None, "thread-1", {ME})
    two = make_conversation_identity(ME, ME, None, "thread-2", {ME})
    assert one.participants == []
    assert one.participant_hash == thread_hash("thread-1")
    assert one.participant_hash != two.participant_hash


def test_participant_hash_ignores_duplicates():
    assert participant_hash(["a@x.com", "b@x.com", "a@x.com"]) == participant_hash(["b@x.com", "a@x.com"])
    assert len(participant_hash(["a@x.com"])) == 64


def test_format_group_names():
    assert format_group_names([]) == ""
    assert format_group_names(["John Smith"]) == "John Smith"
    assert format_group_names(["John Smith", "Jane Doe"]) == "John & Jane"
    assert format_group_names(["John Smith", "Jane Doe", "bob@example.com"]) == "John, Jane & bob@example.com"
