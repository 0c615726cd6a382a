"""Catch what history missed: absent messages and drifted inbox/unread state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .config import settings
from .errors import AuthenticationError, RemoteError
from .fetcher import BoundedFetcher
from .models import INBOX_LABEL, UNREAD_LABEL
from .remote import RemoteMailClient
from .store import Store
from .tracking import ModificationTracker
from .windows import build_query, reconciliation_max_results, reconciliation_start

logger = logging.getLogger(__name__)


@dataclass
class LabelReconcileStats:
    checked: int = 0
    mismatches: int = 0
    updated: int = 0
    skipped_recent_edit: int = 0
    failed: int = 0


class Reconciler:
    def __init__(
        self,
        client: RemoteMailClient,
        store: Store,
        fetcher: BoundedFetcher,
        tracker: ModificationTracker,
        label_window_s: Optional[int] = None,
        label_limit: Optional[int] = None,
        recent_edit_s: Optional[int] = None,
    ):
        self.client = client
        self.store = store
        self.fetcher = fetcher
        self.tracker = tracker
        self.label_window_s = label_window_s if label_window_s is not None else settings.label_reconcile_window_s
        self.label_limit = label_limit if label_limit is not None else settings.label_reconcile_limit
        self.recent_edit_s = recent_edit_s if recent_edit_s is not None else settings.label_reconcile_recent_edit_s

    def check_for_missed_messages(
        self,
        last_success: Optional[datetime],
        install_time: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Ids the server lists in the recent window that are not stored locally."""
        now = now or datetime.utcnow()
        start = reconciliation_start(last_success, install_time, now)
        max_results = reconciliation_max_results(start, now)
        try:
            page = self.client.list_messages(build_query(start), max_results=max_results)
        except AuthenticationError:
            raise
        except RemoteError as e:
            logger.error(f"Reconciliation check failed: {e}")
            return []
        if not page.ids:
            logger.debug("No recent messages to check for reconciliation")
            return []
        existing = self.store.existing_message_ids(page.ids)
        missing = [mid for mid in page.ids if mid not in existing]
        if missing:
            logger.info(f"Found {len(missing)} messages on the server but not locally")
        return missing

    def reconcile_label_states(self, now: Optional[datetime] = None) -> LabelReconcileStats:
        """
        Compare INBOX/UNREAD for the most recent messages against the server and fix
        local drift (mostly missed archives). Messages edited locally in the last few
        minutes are left alone. Per-message fetch errors are logged and skipped.
        """
        now = now or datetime.utcnow()
        stats = LabelReconcileStats()
        start = now - timedelta(seconds=self.label_window_s)
        try:
            page = self.client.list_messages(build_query(start), max_results=self.label_limit)
        except AuthenticationError:
            raise
        except RemoteError as e:
            logger.error(f"Label reconciliation failed: {e}")
            return stats

        local = self.store.messages_by_ids(page.ids)
        recent_cutoff = now - timedelta(seconds=self.recent_edit_s)
        to_check = []
        for mid, message in local.items():
            if message.local_modified_at is not None and message.local_modified_at > recent_cutoff:
                stats.skipped_recent_edit += 1
                continue
            to_check.append(mid)
        if not to_check:
            logger.debug("No recent local messages to reconcile labels for")
            return stats

        tracked_labels = self.store.ensure_labels([INBOX_LABEL, UNREAD_LABEL])

        def _compare(raw: dict) -> None:
            message = local.get(raw.get("id"))
            if message is None:
                return
            stats.checked += 1
            remote_labels = set(raw.get("labelIds") or [])
            changed = False
            for label_id in (INBOX_LABEL, UNREAD_LABEL):
                remote_has = label_id in remote_labels
                if remote_has == (label_id in message.label_ids):
                    continue
                changed = True
                if remote_has:
                    message.labels.append(tracked_labels[label_id])
                else:
                    message.labels = [l for l in message.labels if l.id != label_id]
            remote_unread = UNREAD_LABEL in remote_labels
            if message.is_unread != remote_unread:
                message.is_unread = remote_unread
                changed = True
            if changed:
                stats.mismatches += 1
                stats.updated += 1
                self.tracker.record(message.conversation_id)

        failed = self.fetcher.fetch_batch(to_check, _compare, fmt="metadata")
        stats.failed = len(failed)
        self.store.flush()
        if stats.mismatches:
            logger.info(f"Label reconciliation: fixed {stats.updated} of {stats.checked} messages")
        else:
            logger.debug(f"Label reconciliation: no mismatches (checked {stats.checked})")
        return stats
