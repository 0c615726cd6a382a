"""Create or update local Message rows from raw remote messages."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .conversations import ConversationResolver
from .identity import make_conversation_identity
from .models import (
    DRAFT_LABEL,
    SPAM_LABEL,
    UNREAD_LABEL,
    Attachment,
    Message,
    MessageParticipant,
)
from .parsing import ParsedMessage, parse_message
from .store import Store
from .tracking import ModificationTracker

logger = logging.getLogger(__name__)


class MessageUpserter:
    """Idempotent: upserting the same remote message twice leaves one row with the same values."""

    def __init__(
        self,
        store: Store,
        resolver: ConversationResolver,
        tracker: ModificationTracker,
        my_aliases: set[str],
    ):
        self.store = store
        self.resolver = resolver
        self.tracker = tracker
        self.my_aliases = my_aliases
        self.created = 0
        self.updated = 0
        self.skipped = 0

    def upsert(self, raw: dict) -> Optional[Message]:
        parsed = parse_message(raw, self.my_aliases)
        if SPAM_LABEL in parsed.label_ids:
            logger.debug(f"Skipping spam message {parsed.id}")
            self.skipped += 1
            return None

        message = self.store.get_message(parsed.id)
        if message is not None:
            self._update(message, parsed)
            self.updated += 1
        else:
            message = self._create(parsed)
            self.created += 1
        self.store.flush()
        self.tracker.record(message.conversation_id)
        return message

    def _set_labels(self, message: Message, label_ids: Sequence[str]) -> None:
        labels = self.store.ensure_labels(label_ids)
        message.labels = [labels[i] for i in dict.fromkeys(label_ids) if i in labels]

    def _add_attachments(self, message: Message, parsed: ParsedMessage) -> None:
        for info in parsed.attachments:
            message.attachments.append(
                Attachment(
                    attachment_id=info.attachment_id,
                    filename=info.filename,
                    mime_type=info.mime_type,
                    size=info.size,
                )
            )

    def _update(self, message: Message, parsed: ParsedMessage) -> None:
        message.is_unread = parsed.is_unread
        message.snippet = parsed.snippet
        message.cleaned_snippet = parsed.cleaned_snippet
        self._set_labels(message, parsed.label_ids)
        if not message.attachments and parsed.attachments:
            self._add_attachments(message, parsed)
            message.has_attachments = True

    def _create(self, parsed: ParsedMessage) -> Message:
        identity = make_conversation_identity(
            parsed.from_header, parsed.to_header, parsed.cc_header, parsed.thread_id, self.my_aliases
        )
        conversation = self.resolver.find_or_create(identity)

        message = Message(
            id=parsed.id,
            thread_id=parsed.thread_id,
            internal_date=parsed.internal_date,
            subject=parsed.subject,
            snippet=parsed.snippet,
            cleaned_snippet=parsed.cleaned_snippet,
            sender_email=parsed.sender_email,
            sender_name=parsed.sender_name,
            is_unread=parsed.is_unread,
            is_from_me=parsed.is_from_me,
            is_newsletter=parsed.is_newsletter,
            has_attachments=parsed.has_attachments,
        )
        message.conversation = conversation
        self.store.add(message)

        seen = set()
        for kind, email, name in parsed.participants():
            if (kind, email) in seen:
                continue
            seen.add((kind, email))
            person = self.store.upsert_person(email, name)
            message.participants.append(MessageParticipant(person=person, person_email=email, kind=kind))

        self._set_labels(message, parsed.label_ids)
        self._add_attachments(message, parsed)

        # Keep list ordering sensible until rollups are recomputed at the end of the pass.
        if DRAFT_LABEL not in parsed.label_ids and (
            conversation.last_message_date is None or parsed.internal_date > conversation.last_message_date
        ):
            conversation.last_message_date = parsed.internal_date
            conversation.snippet = parsed.cleaned_snippet or parsed.snippet
        return message


def mark_local_modification(
    store: Store,
    message_ids: Iterable[str],
    is_unread: Optional[bool] = None,
    add_labels: Sequence[str] = (),
    remove_labels: Sequence[str] = (),
    tracker: Optional[ModificationTracker] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Apply a local edit (mark read, archive, label) that has not been pushed to the
    server yet. Stamps local_modified_at so incoming history does not undo it.
    Returns the number of messages changed.
    """
    now = now or datetime.utcnow()
    messages = store.messages_by_ids(message_ids)
    if not messages:
        return 0

    add = list(add_labels)
    remove = set(remove_labels)
    if is_unread is True:
        add.append(UNREAD_LABEL)
        remove.discard(UNREAD_LABEL)
    elif is_unread is False:
        remove.add(UNREAD_LABEL)
    labels = store.ensure_labels(add)

    for message in messages.values():
        current = [l for l in message.labels if l.id not in remove]
        present = {l.id for l in current}
        current.extend(labels[i] for i in dict.fromkeys(add) if i not in present)
        message.labels = current
        message.is_unread = UNREAD_LABEL in {l.id for l in current}
        message.local_modified_at = now
        if tracker is not None:
            tracker.record(message.conversation_id)
    store.flush()
    return len(messages)
