"""Data cleanup: one-time migrations, duplicate conversation merges, empty rows and drafts."""
from __future__ import annotations

import logging

from ..conversations import ConversationResolver
from ..identity import GROUP, ONE_TO_ONE, normalize_email, participant_hash
from ..models import DRAFT_LABEL, Conversation, Label, Message
from ..store import Store

logger = logging.getLogger(__name__)

ARCHIVE_MIGRATION_FLAG = "has_done_archive_model_migration_v1"
DUPLICATE_CLEANUP_FLAG = "has_done_duplicate_cleanup_v1"


class DataCleanupService:
    def __init__(self, store: Store, resolver: ConversationResolver):
        self.store = store
        self.resolver = resolver

    def run_full_cleanup(self) -> dict:
        """Archive-model migration (once), participant-hash fix-up, then merge active duplicates."""
        migrated = self.migrate_to_archive_model()
        fixed = self.fix_and_merge_incorrect_participant_hashes()
        merged = self.resolver.merge_active_duplicates()
        return {"migrated": migrated, "hash_merged": fixed, "merged": merged}

    def run_full_cleanup_once(self) -> bool:
        """Run the full cleanup the first time only. Returns True if it ran."""
        if self.store.get_flag(DUPLICATE_CLEANUP_FLAG):
            return False
        result = self.run_full_cleanup()
        self.store.set_flag(DUPLICATE_CLEANUP_FLAG)
        logger.info(f"One-time cleanup done: {result}")
        return True

    def run_incremental_cleanup(self) -> dict:
        merged = self.resolver.merge_active_duplicates()
        empty = self.remove_empty_conversations()
        drafts = self.remove_draft_messages()
        return {"merged": merged, "empty_removed": empty, "drafts_removed": drafts}

    def migrate_to_archive_model(self) -> int:
        """
        Backfill participant hashes and archive state on conversations created before
        either existed. Guarded by a flag; returns the number of conversations changed.
        """
        if self.store.get_flag(ARCHIVE_MIGRATION_FLAG):
            return 0
        changed = 0
        for conversation in self.store.find(Conversation, Conversation.archived_at.is_(None)):
            touched = False
            if not conversation.participant_hash:
                emails = [e for e in conversation.participant_emails if e not in self.resolver.my_aliases]
                if emails:
                    conversation.participant_hash = participant_hash(emails)
                    touched = True
            if not conversation.has_inbox:
                # Rollups own the archive rule (including the sent-only exception).
                self.resolver.update_rollups(conversation)
                touched = touched or conversation.archived_at is not None
            if touched:
                changed += 1
        self.store.set_flag(ARCHIVE_MIGRATION_FLAG)
        logger.info(f"Archive model migration updated {changed} conversations")
        return changed

    def remove_empty_conversations(self) -> int:
        self.store.flush()
        empty = self.store.find(
            Conversation,
            ~Conversation.messages.any(),
            ~Conversation.participants.any(),
        )
        removed = self.store.delete_many(empty)
        if removed:
            self.store.flush()
            logger.info(f"Removed {removed} empty conversations")
        return removed

    def remove_draft_messages(self) -> int:
        self.store.flush()
        drafts = self.store.find(Message, Message.labels.any(Label.id == DRAFT_LABEL))
        self.resolver.tracker.record_many(m.conversation_id for m in drafts)
        removed = self.store.delete_many(drafts)
        if removed:
            self.store.flush()
            logger.info(f"Removed {removed} draft messages")
        return removed

    def fix_and_merge_incorrect_participant_hashes(self) -> int:
        """
        Recompute each active conversation's hash without the account's own addresses,
        fix the ones that were wrong, and merge conversations that now collide.
        """
        aliases = self.resolver.my_aliases
        if not aliases:
            return 0
        groups: dict[str, list[Conversation]] = {}
        fixed = 0
        for conversation in self.store.find(Conversation, Conversation.archived_at.is_(None), order_by=Conversation.id):
            emails = {normalize_email(e) for e in conversation.participant_emails}
            correct = sorted(emails - aliases)
            if not correct:
                continue
            correct_hash = participant_hash(correct)
            if conversation.participant_hash != correct_hash:
                logger.debug(f"Fixing participant hash for conversation {conversation.id}")
                conversation.participant_hash = correct_hash
                for link in list(conversation.participants):
                    if normalize_email(link.person_email) in aliases:
                        conversation.participants.remove(link)
                conversation.conversation_type = ONE_TO_ONE if len(correct) == 1 else GROUP
                self.resolver.tracker.record(conversation.id)
                fixed += 1
            groups.setdefault(correct_hash, []).append(conversation)
        self.store.flush()

        merged = 0
        for group in groups.values():
            if len(group) > 1:
                merged += self.resolver.merge_group(group)[1]
        if fixed or merged:
            logger.info(f"Fixed {fixed} participant hashes and merged {merged} conversations")
        return merged
