"""Initial sync: full backfill of the install window, then the first cursor."""
from __future__ import annotations

import logging
from datetime import datetime

from ..account import advance_history_id, get_install_time, my_aliases, record_install_time, save_account
from ..windows import build_query, initial_sync_start
from .cleanup import DataCleanupService
from .pipeline import SyncPass, SyncResult

logger = logging.getLogger(__name__)


class InitialSyncOrchestrator(SyncPass):
    mode = "initial"

    def run(self) -> SyncResult:
        self.tracker.reset()
        result = SyncResult(mode=self.mode)
        self.progress(0.0, "Connecting to Gmail…")

        profile = self.client.get_profile()
        aliases = self.client.list_aliases()
        account = save_account(self.store, profile, aliases)
        mine = my_aliases(account)
        logger.info(f"Initial sync for {profile.email} ({len(mine)} aliases), server history id {profile.history_id}")
        self.progress(0.05, "Fetching labels…")
        self.checkpoint()

        self.store.upsert_labels(self.client.list_labels())
        self.progress(0.10, "Listing messages…")
        self.checkpoint()

        install_time = get_install_time(self.store)
        query = build_query(initial_sync_start(install_time))
        if install_time is None:
            record_install_time(self.store, datetime.utcnow())
        ids = self.list_all_message_ids(query)
        self.progress(0.15, f"Found {len(ids)} messages")

        resolver, upserter = self.make_upserter(mine)
        failed = self.fetch_and_upsert(ids, upserter, base=0.20, span=0.65)
        result.processed = len(ids) - len(failed)
        result.failed_ids = failed
        self.checkpoint()

        self.progress(0.85, "Updating conversations…")
        if not failed:
            DataCleanupService(self.store, resolver).run_full_cleanup_once()
        resolver.update_rollups_for(self.tracker.drain())

        if self.failure_tracker.should_advance_cursor(bool(failed), profile.history_id, failed):
            result.cursor_advanced = advance_history_id(account, profile.history_id)
        result.history_id = account.history_id
        self.checkpoint()

        self.progress(0.95, "Saving…")
        self.store.commit()

        result.pending_attachments = self.store.pending_attachment_ids(ids)
        if result.pending_attachments:
            logger.info(f"{len(result.pending_attachments)} attachments queued for download")
        logger.info(
            f"Initial sync finished: processed={result.processed} failed={len(failed)} "
            f"cursor={result.history_id} advanced={result.cursor_advanced}"
        )
        self.progress(1.0, result.status_text)
        return result
