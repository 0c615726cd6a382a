"""Persisted failure bookkeeping that decides when the history cursor may advance."""
import logging
from datetime import datetime
from typing import Iterable, Optional, List

from .config import settings
from .models import AbandonedSyncMessage
from .store import Store

logger = logging.getLogger(__name__)

CONSECUTIVE_FAILURES_KEY = "consecutive_sync_failures"
FAILED_IDS_KEY = "persistent_failed_ids"
LAST_SUCCESS_KEY = "last_successful_sync_time"


class FailureTracker:
    """
    A pass with fetch failures withholds the cursor so the next pass retries the
    same window. After max_consecutive_failures such passes in a row, the failed
    ids are abandoned and the cursor is allowed to move, so one bad message can
    never pin the cursor forever.
    """

    def __init__(
        self,
        store: Store,
        max_consecutive_failures: Optional[int] = None,
        max_failed_before_advance: Optional[int] = None,
    ):
        self.store = store
        self.max_consecutive_failures = max(1, max_consecutive_failures or settings.max_consecutive_sync_failures)
        self.max_failed_before_advance = max(1, max_failed_before_advance or settings.max_failed_messages_before_advance)

    # ---- queries ----

    def consecutive_failures(self) -> int:
        raw = self.store.get_meta(CONSECUTIVE_FAILURES_KEY)
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    def persistent_failed_ids(self) -> list[str]:
        return list(self.store.get_json(FAILED_IDS_KEY, default=[]) or [])

    def last_successful_sync(self) -> Optional[datetime]:
        return self.store.get_datetime(LAST_SUCCESS_KEY)

    def abandoned_messages(self) -> list[AbandonedSyncMessage]:
        return self.store.find(AbandonedSyncMessage, order_by=AbandonedSyncMessage.abandoned_at)

    def abandoned_count(self) -> int:
        return self.store.count(AbandonedSyncMessage)

    # ---- mutations ----

    def record_success(self, now: Optional[datetime] = None) -> None:
        self.reset()
        self.store.set_datetime(LAST_SUCCESS_KEY, now or datetime.utcnow())

    def record_failure(self, failed_ids: Iterable[str]) -> int:
        """Bump the consecutive counter and remember the ids. Returns the new count."""
        count = self.consecutive_failures() + 1
        self.store.set_meta(CONSECUTIVE_FAILURES_KEY, str(count))

        ids = list(dict.fromkeys(self.persistent_failed_ids() + [i for i in failed_ids if i]))
        if len(ids) > self.max_failed_before_advance * 2:
            ids = ids[-self.max_failed_before_advance:]
        self.store.set_json(FAILED_IDS_KEY, ids)
        return count

    def reset(self) -> None:
        self.store.set_meta(CONSECUTIVE_FAILURES_KEY, "0")
        self.store.set_json(FAILED_IDS_KEY, [])

    def abandon(self, message_ids: Iterable[str], reason: str) -> int:
        ids = [i for i in dict.fromkeys(message_ids) if i]
        if not ids:
            return 0
        existing = {row.message_id: row for row in self.store.find(AbandonedSyncMessage, AbandonedSyncMessage.message_id.in_(ids))}
        now = datetime.utcnow()
        for mid in ids:
            row = existing.get(mid)
            if row is None:
                self.store.add(AbandonedSyncMessage(message_id=mid, reason=reason, abandoned_at=now, retry_count=0))
            else:
                row.retry_count = (row.retry_count or 0) + 1
                row.reason = reason
                row.abandoned_at = now
        self.store.flush()
        logger.warning(f"Abandoned {len(ids)} messages: {reason}")
        return len(ids)

    def remove_abandoned(self, message_ids: Iterable[str]) -> int:
        ids = [i for i in dict.fromkeys(message_ids) if i]
        if not ids:
            return 0
        rows = self.store.find(AbandonedSyncMessage, AbandonedSyncMessage.message_id.in_(ids))
        return self.store.delete_many(rows)

    def should_advance_cursor(self, had_failures: bool, new_cursor: Optional[str], failed_ids: Optional[List[str]] = None) -> bool:
        if not had_failures:
            self.record_success()
            return True

        count = self.record_failure(failed_ids or [])
        if count < self.max_consecutive_failures:
            logger.warning(
                f"Withholding history cursor {new_cursor}: {len(failed_ids or [])} failed messages "
                f"({count}/{self.max_consecutive_failures} consecutive failed passes)"
            )
            return False

        self.abandon(
            self.persistent_failed_ids(),
            reason=f"failed to sync in {count} consecutive passes",
        )
        self.reset()
        logger.warning(f"Advancing history cursor to {new_cursor} after abandoning failed messages")
        return True
