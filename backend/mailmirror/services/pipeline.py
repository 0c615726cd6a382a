"""Shared plumbing for sync passes: progress, cancellation checkpoints, listing, batched fetch."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, List

from ..config import settings
from ..conversations import ConversationResolver
from ..errors import raise_if_cancelled
from ..failures import FailureTracker
from ..fetcher import BoundedFetcher
from ..remote import RemoteMailClient
from ..store import Store, chunk_list
from ..tracking import ModificationTracker
from ..upsert import MessageUpserter

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


@dataclass
class SyncResult:
    mode: str
    processed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    cursor_advanced: bool = False
    history_id: Optional[str] = None
    pending_attachments: List[tuple] = field(default_factory=list)

    @property
    def had_warnings(self) -> bool:
        return bool(self.failed_ids)

    @property
    def status_text(self) -> str:
        return "Sync completed with warnings" if self.had_warnings else "Sync complete"


class SyncPass:
    """One unit of work against one Store. Subclasses implement run()."""

    mode = ""

    def __init__(
        self,
        client: RemoteMailClient,
        store: Store,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        fetcher: Optional[BoundedFetcher] = None,
        tracker: Optional[ModificationTracker] = None,
        failure_tracker: Optional[FailureTracker] = None,
        batch_size: Optional[int] = None,
    ):
        self.client = client
        self.store = store
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress
        self.fetcher = fetcher or BoundedFetcher(client, cancel_event=self.cancel_event)
        self.tracker = tracker or ModificationTracker()
        self.failure_tracker = failure_tracker or FailureTracker(store)
        self.batch_size = max(1, batch_size or settings.message_batch_size)
        self._fraction = 0.0

    def run(self) -> SyncResult:
        raise NotImplementedError

    def progress(self, fraction: float, message: str) -> None:
        """Report progress. The fraction never goes backwards within a pass."""
        self._fraction = max(self._fraction, min(1.0, max(0.0, fraction)))
        if self.on_progress is not None:
            self.on_progress(self._fraction, message)

    def checkpoint(self) -> None:
        raise_if_cancelled(self.cancel_event)

    def make_upserter(self, my_aliases: set[str]) -> tuple[ConversationResolver, MessageUpserter]:
        resolver = ConversationResolver(self.store, self.tracker, my_aliases)
        return resolver, MessageUpserter(self.store, resolver, self.tracker, my_aliases)

    def list_all_message_ids(self, query: str) -> list[str]:
        """Page through the list endpoint. Stops on no next token, a repeated token, or the page cap."""
        ids: list[str] = []
        seen = set()
        page_token: Optional[str] = None
        page_num = 0
        while True:
            self.checkpoint()
            page = self.client.list_messages(query, page_token=page_token, max_results=settings.list_page_size)
            page_num += 1
            for mid in page.ids:
                if mid not in seen:
                    seen.add(mid)
                    ids.append(mid)
            next_token = page.next_page_token
            if not next_token:
                break
            if next_token == page_token:
                logger.warning("Pagination stalled (repeated page token); stopping listing.")
                break
            if page_num >= settings.list_max_pages:
                logger.warning(f"Reached max pages ({settings.list_max_pages}); stopping listing.")
                break
            page_token = next_token
        logger.info(f"Listed {len(ids)} messages in {page_num} page(s) for query {query!r}")
        return ids

    def fetch_and_upsert(
        self,
        ids: List[str],
        upserter: MessageUpserter,
        base: float,
        span: float,
        message: str = "Downloading messages…",
    ) -> list[str]:
        """
        Fetch ids in fixed-size batches, upserting each result on this thread.
        Failed ids get one bulk retry at the end. Returns ids that still failed.
        """
        total = len(ids)
        failed: list[str] = []
        done = 0
        for batch in chunk_list(list(ids), self.batch_size):
            self.checkpoint()
            failed.extend(self.fetcher.fetch_batch(batch, upserter.upsert))
            done += len(batch)
            self.progress(base + span * (done / total), f"{message} ({done}/{total})")
        self.checkpoint()
        if failed:
            failed = self.fetcher.retry_failed(failed, upserter.upsert)
            self.checkpoint()
        if failed:
            logger.warning(f"{len(failed)} of {total} messages could not be fetched")
        return failed
