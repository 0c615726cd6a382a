"""Apply history (delta) records to the local mirror."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, List

from .config import settings
from .models import SPAM_LABEL, UNREAD_LABEL, Message
from .remote import HistoryRecord, LabelChange
from .store import Store
from .tracking import ModificationTracker

logger = logging.getLogger(__name__)

ADD = "add"
REMOVE = "remove"


@dataclass
class HistoryResult:
    deleted: int = 0
    labels_applied: int = 0
    skipped_missing: int = 0
    skipped_conflict: int = 0


class HistoryProcessor:
    def __init__(
        self,
        store: Store,
        tracker: ModificationTracker,
        max_local_modification_age_s: Optional[int] = None,
    ):
        self.store = store
        self.tracker = tracker
        self.max_local_modification_age_s = (
            max_local_modification_age_s
            if max_local_modification_age_s is not None
            else settings.max_local_modification_age_s
        )

    @staticmethod
    def extract_new_message_ids(records: List[HistoryRecord]) -> list[str]:
        """
        Ids added by the records, in order, without spam and without duplicates.
        An id that a later record deletes is dropped; fetching it would only 404.
        """
        added: dict[str, int] = {}
        deleted_at: dict[str, int] = {}
        for pos, record in enumerate(records):
            for item in record.messages_added:
                if SPAM_LABEL in item.label_ids:
                    logger.debug(f"Skipping spam: {item.id}")
                    continue
                added.setdefault(item.id, pos)
            for mid in record.messages_deleted:
                deleted_at[mid] = pos
        return [mid for mid, pos in added.items() if deleted_at.get(mid, -1) < pos]

    def has_conflict(self, message: Message, sync_start_time: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """
        A local edit made after the pass started wins over the server, unless it is
        older than the staleness window (then it is treated as abandoned).
        """
        if sync_start_time is None or message.local_modified_at is None:
            return False
        if message.local_modified_at <= sync_start_time:
            return False
        age = ((now or datetime.utcnow()) - message.local_modified_at).total_seconds()
        if age > self.max_local_modification_age_s:
            logger.warning(f"Local modification of {message.id} is stale (age: {int(age)}s), allowing server update")
            return False
        return True

    def process_records(
        self,
        records: List[HistoryRecord],
        sync_start_time: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> HistoryResult:
        """Deletions first, then label additions and removals, record by record."""
        result = HistoryResult()
        if not records:
            return result
        now = now or datetime.utcnow()

        message_ids: set[str] = set()
        label_ids: set[str] = set()
        for record in records:
            message_ids.update(record.messages_deleted)
            for change in record.labels_added + record.labels_removed:
                message_ids.add(change.message_id)
                label_ids.update(change.label_ids)
        messages = self.store.messages_by_ids(message_ids)
        labels = self.store.ensure_labels(label_ids)

        for record in records:
            for mid in record.messages_deleted:
                message = messages.pop(mid, None)
                if message is None:
                    continue
                self.tracker.record(message.conversation_id)
                self.store.delete(message)
                result.deleted += 1
            for change in record.labels_added:
                self._apply(change, ADD, messages, labels, sync_start_time, now, result)
            for change in record.labels_removed:
                self._apply(change, REMOVE, messages, labels, sync_start_time, now, result)

        self.store.flush()
        logger.info(
            f"Applied history: deleted={result.deleted} label_changes={result.labels_applied} "
            f"missing={result.skipped_missing} conflicts={result.skipped_conflict}"
        )
        return result

    def _apply(
        self,
        change: LabelChange,
        operation: str,
        messages: dict,
        labels: dict,
        sync_start_time: Optional[datetime],
        now: datetime,
        result: HistoryResult,
    ) -> None:
        message = messages.get(change.message_id)
        if message is None:
            logger.debug(f"Message {change.message_id} not found locally, skipping label {operation}")
            result.skipped_missing += 1
            return
        if self.has_conflict(message, sync_start_time, now):
            logger.debug(f"Skipping server label {operation} for {message.id}: local changes pending")
            result.skipped_conflict += 1
            return

        if operation == ADD:
            present = message.label_ids
            for label_id in change.label_ids:
                if label_id not in present and label_id in labels:
                    message.labels.append(labels[label_id])
        else:
            drop = set(change.label_ids)
            message.labels = [l for l in message.labels if l.id not in drop]
        if UNREAD_LABEL in change.label_ids:
            message.is_unread = operation == ADD

        self.tracker.record(message.conversation_id)
        result.labels_applied += 1

    def clear_local_modifications(self, message_ids: Iterable[str]) -> int:
        messages = self.store.messages_by_ids(message_ids)
        for message in messages.values():
            message.local_modified_at = None
        self.store.flush()
        logger.debug(f"Cleared local modifications for {len(messages)} messages")
        return len(messages)
