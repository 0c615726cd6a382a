"""Conversation identity resolution, duplicate merging, and rollup recompute."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

from .identity import GROUP, ConversationIdentity, format_group_names, normalize_email
from .models import (
    DRAFT_LABEL,
    SENT_LABEL,
    Conversation,
    ConversationParticipant,
    Message,
)
from .store import Store
from .tracking import ModificationTracker

logger = logging.getLogger(__name__)


def _winner_key(conversation: Conversation):
    created = conversation.created_at or datetime.max
    return (-len(conversation.messages), created, conversation.id or 0)


class ConversationResolver:
    def __init__(self, store: Store, tracker: ModificationTracker, my_aliases: Optional[set[str]] = None):
        self.store = store
        self.tracker = tracker
        self.my_aliases = set(my_aliases or ())

    # ---- identity ----

    def find_active(self, participant_hash: str) -> Optional[Conversation]:
        return self.store.first(
            Conversation,
            Conversation.participant_hash == participant_hash,
            Conversation.archived_at.is_(None),
            order_by=Conversation.id,
        )

    def find_or_create(self, identity: ConversationIdentity) -> Conversation:
        """
        Return the active conversation for identity, creating it (and its participant
        links) on a miss. Archived conversations are never reused: a new message for
        them starts a new conversation with the same participant hash.
        """
        conversation = self.find_active(identity.participant_hash)
        if conversation is None:
            conversation = Conversation(
                participant_hash=identity.participant_hash,
                conversation_type=identity.conversation_type,
                has_inbox=False,
                inbox_unread_count=0,
                pinned=False,
                muted=False,
            )
            self.store.add(conversation)
            logger.debug(f"Created conversation for participants={identity.participants}")
        self._ensure_participants(conversation, identity)
        # Flush so the next lookup in this pass finds it and it has an id to track.
        self.store.flush()
        return conversation

    def _ensure_participants(self, conversation: Conversation, identity: ConversationIdentity) -> None:
        present = {p.person_email for p in conversation.participants}
        for email in identity.participants:
            person = self.store.upsert_person(email, identity.display_names.get(email))
            if email not in present:
                conversation.participants.append(ConversationParticipant(person=person, person_email=email))
                present.add(email)

    # ---- merge ----

    @staticmethod
    def select_winner(group: Sequence[Conversation]) -> Conversation:
        """Most messages wins; ties go to the oldest conversation, then the lowest id."""
        return min(group, key=_winner_key)

    def merge(self, loser: Conversation, winner: Conversation) -> Conversation:
        """Re-parent loser's messages and participants onto winner, combine flags, delete loser."""
        if loser is winner:
            return winner
        for message in list(loser.messages):
            message.conversation = winner

        present = {p.person_email for p in winner.participants}
        for participant in list(loser.participants):
            if participant.person_email in present:
                loser.participants.remove(participant)
            else:
                participant.conversation = winner
                present.add(participant.person_email)

        if loser.last_message_date and (winner.last_message_date is None or loser.last_message_date > winner.last_message_date):
            winner.last_message_date = loser.last_message_date
            winner.snippet = loser.snippet
        if loser.latest_inbox_date and (winner.latest_inbox_date is None or loser.latest_inbox_date > winner.latest_inbox_date):
            winner.latest_inbox_date = loser.latest_inbox_date
        winner.has_inbox = bool(winner.has_inbox or loser.has_inbox)
        winner.inbox_unread_count = (winner.inbox_unread_count or 0) + (loser.inbox_unread_count or 0)
        winner.pinned = bool(winner.pinned or loser.pinned)
        winner.muted = bool(winner.muted or loser.muted)
        if loser.archived_at is None:
            winner.archived_at = None
        if len(present) > 1:
            winner.conversation_type = GROUP

        logger.info(f"Merging conversation {loser.id} into {winner.id}")
        self.store.delete(loser)
        self.store.flush()
        self.tracker.record(winner.id)
        return winner

    def merge_group(self, group: Sequence[Conversation]) -> tuple[Conversation, int]:
        winner = self.select_winner(group)
        merged = 0
        # Deterministic order so repeated runs make the same choices.
        for loser in sorted((c for c in group if c is not winner), key=_winner_key):
            self.merge(loser, winner)
            merged += 1
        return winner, merged

    def merge_active_duplicates(self) -> int:
        """Merge active conversations that share a participant hash."""
        active = self.store.find(
            Conversation,
            Conversation.archived_at.is_(None),
            Conversation.participant_hash.isnot(None),
            order_by=Conversation.id,
        )
        groups: dict[str, list[Conversation]] = {}
        for conversation in active:
            groups.setdefault(conversation.participant_hash, []).append(conversation)
        merged = 0
        for group in groups.values():
            if len(group) > 1:
                merged += self.merge_group(group)[1]
        if merged:
            logger.info(f"Merged {merged} duplicate conversations")
        return merged

    # ---- rollups ----

    def update_rollups(self, conversation: Conversation) -> None:
        messages: list[Message] = list(conversation.messages)
        non_draft = [m for m in messages if DRAFT_LABEL not in m.label_ids]
        dated = [m for m in non_draft if m.internal_date is not None]
        if dated:
            latest = max(dated, key=lambda m: m.internal_date)
            conversation.last_message_date = latest.internal_date
            if latest.is_newsletter and latest.subject:
                conversation.snippet = latest.subject
            else:
                conversation.snippet = latest.cleaned_snippet or latest.snippet
        elif not non_draft:
            conversation.last_message_date = None
            conversation.snippet = None

        inbox = [m for m in messages if m.in_inbox]
        has_inbox = bool(inbox)
        conversation.has_inbox = has_inbox
        conversation.inbox_unread_count = sum(1 for m in inbox if m.is_unread)
        inbox_dates = [m.internal_date for m in inbox if m.internal_date is not None]
        if inbox_dates:
            conversation.latest_inbox_date = max(inbox_dates)

        # Sent-only conversations (awaiting a reply) stay visible.
        sent_or_mine = any(m.is_from_me or SENT_LABEL in m.label_ids for m in messages)
        received = any(not m.is_from_me for m in messages)
        sent_only = sent_or_mine and not received and not has_inbox
        if has_inbox and conversation.archived_at is not None:
            conversation.archived_at = None
        elif not has_inbox and conversation.archived_at is None and not sent_only:
            conversation.archived_at = datetime.utcnow()

        conversation.display_name = self._display_name(conversation)

    def _display_name(self, conversation: Conversation) -> str:
        names = []
        seen = set()
        for participant in sorted(conversation.participants, key=lambda p: p.person_email):
            email = normalize_email(participant.person_email)
            if email in self.my_aliases or email in seen:
                continue
            seen.add(email)
            person = participant.person
            names.append((person.display_name if person is not None and person.display_name else None) or email)
        return format_group_names(names) or "Unknown"

    def update_rollups_for(self, conversation_ids: Iterable[int]) -> int:
        """Recompute rollups only for the given conversations (the pass's tracked set)."""
        ids = sorted(set(conversation_ids))
        if not ids:
            return 0
        conversations = self.store.find(Conversation, Conversation.id.in_(ids))
        for conversation in conversations:
            self.update_rollups(conversation)
        self.store.flush()
        logger.info(f"Updated rollups for {len(conversations)} conversations")
        return len(conversations)

    def update_all_rollups(self) -> int:
        """Full scan; only used by recovery sync."""
        conversations = self.store.find(Conversation)
        for conversation in conversations:
            self.update_rollups(conversation)
        self.store.flush()
        logger.info(f"Updated rollups for all {len(conversations)} conversations")
        return len(conversations)
