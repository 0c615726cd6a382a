"""Incremental sync from the history cursor, with recovery when the cursor has expired."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, List

from ..account import advance_history_id, get_install_time, my_aliases
from ..errors import CursorExpiredError
from ..history import HistoryProcessor
from ..models import Account
from ..reconcile import Reconciler
from ..remote import HistoryRecord
from ..windows import build_query, recovery_start
from .cleanup import DataCleanupService
from .initial_sync import InitialSyncOrchestrator
from .pipeline import SyncPass, SyncResult

logger = logging.getLogger(__name__)


def _newer(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None:
        return a
    try:
        return a if int(a) >= int(b) else b
    except ValueError:
        return a


class IncrementalSyncOrchestrator(SyncPass):
    mode = "incremental"

    def run(self) -> SyncResult:
        account = self.store.get_account()
        if account is None or not account.history_id:
            logger.info("No stored history cursor; running initial sync instead")
            return self._initial().run()

        self.tracker.reset()
        sync_start = datetime.utcnow()
        self.progress(0.0, "Checking for changes…")
        try:
            records, latest_history_id = self.collect_history(account.history_id)
        except CursorExpiredError:
            logger.warning(f"History cursor {account.history_id} expired; running recovery sync")
            self.progress(0.05, "History expired, re-syncing...")
            return self.run_recovery(account)
        self.progress(0.10, f"Found {len(records)} changes")

        result = SyncResult(mode=self.mode)
        mine = my_aliases(account)
        resolver, upserter = self.make_upserter(mine)

        new_ids = HistoryProcessor.extract_new_message_ids(records)
        existing = self.store.existing_message_ids(new_ids)
        to_fetch = [mid for mid in new_ids if mid not in existing]
        logger.info(f"History: {len(records)} records, {len(to_fetch)} new messages to fetch")
        failed = self.fetch_and_upsert(to_fetch, upserter, base=0.30, span=0.40)
        self.checkpoint()

        # Label changes only after the new messages exist locally.
        self.progress(0.70, "Applying changes…")
        HistoryProcessor(self.store, self.tracker).process_records(records, sync_start)
        self.checkpoint()

        self.progress(0.80, "Reconciling…")
        reconciler = Reconciler(self.client, self.store, self.fetcher, self.tracker)
        missing = reconciler.check_for_missed_messages(
            self.failure_tracker.last_successful_sync(), get_install_time(self.store)
        )
        if missing:
            failed += self.fetch_and_upsert(missing, upserter, base=0.80, span=0.0, message="Fetching missed messages…")
            to_fetch += missing
        reconciler.reconcile_label_states()
        self.checkpoint()

        self.progress(0.85, "Updating conversations…")
        DataCleanupService(self.store, resolver).run_incremental_cleanup()
        resolver.update_rollups_for(self.tracker.drain())

        failed = list(dict.fromkeys(failed))
        result.processed = len(to_fetch) - len(failed)
        result.failed_ids = failed
        if self.failure_tracker.should_advance_cursor(bool(failed), latest_history_id, failed):
            result.cursor_advanced = advance_history_id(account, latest_history_id)
        result.history_id = account.history_id
        self.checkpoint()

        self.progress(0.95, "Saving…")
        self.store.commit()
        result.pending_attachments = self.store.pending_attachment_ids(to_fetch)
        logger.info(
            f"Incremental sync finished: processed={result.processed} failed={len(failed)} "
            f"cursor={result.history_id} advanced={result.cursor_advanced}"
        )
        self.progress(1.0, result.status_text)
        return result

    def _initial(self) -> InitialSyncOrchestrator:
        return InitialSyncOrchestrator(
            self.client,
            self.store,
            cancel_event=self.cancel_event,
            on_progress=self.on_progress,
            fetcher=self.fetcher,
            tracker=self.tracker,
            failure_tracker=self.failure_tracker,
            batch_size=self.batch_size,
        )

    def collect_history(self, start_history_id: str) -> tuple[List[HistoryRecord], Optional[str]]:
        """All history pages since the cursor, and the newest history id any page reported."""
        records: List[HistoryRecord] = []
        latest: Optional[str] = None
        page_token: Optional[str] = None
        seen_tokens = set()
        while True:
            self.checkpoint()
            page = self.client.list_history(start_history_id, page_token=page_token)
            records.extend(page.records)
            latest = _newer(latest, page.history_id)
            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                logger.warning("History pagination stalled (repeated page token); stopping.")
                break
            seen_tokens.add(page_token)
        return records, latest

    def run_recovery(self, account: Account) -> SyncResult:
        """
        Re-list and refetch a bounded recent window, refresh every rollup, then jump
        the cursor to the server's current history id.
        """
        result = SyncResult(mode="recovery")
        mine = my_aliases(account)
        resolver, upserter = self.make_upserter(mine)

        start = recovery_start(self.failure_tracker.last_successful_sync(), get_install_time(self.store))
        ids = self.list_all_message_ids(build_query(start))
        self.progress(0.15, f"Re-syncing {len(ids)} messages")
        failed = self.fetch_and_upsert(ids, upserter, base=0.20, span=0.60)
        self.checkpoint()

        self.progress(0.85, "Updating conversations…")
        resolver.update_all_rollups()
        self.tracker.drain()

        profile = self.client.get_profile()
        result.cursor_advanced = advance_history_id(account, profile.history_id)
        result.history_id = account.history_id
        if failed:
            # The cursor jumps regardless, so keep the ids visible and retryable.
            self.failure_tracker.abandon(failed, reason="failed during recovery sync")
            self.failure_tracker.reset()
        else:
            self.failure_tracker.record_success()
        result.processed = len(ids) - len(failed)
        result.failed_ids = failed
        self.checkpoint()

        self.progress(0.95, "Saving…")
        self.store.commit()
        result.pending_attachments = self.store.pending_attachment_ids(ids)
        logger.info(
            f"Recovery sync finished: processed={result.processed} failed={len(failed)} cursor={result.history_id}"
        )
        self.progress(1.0, result.status_text)
        return result
