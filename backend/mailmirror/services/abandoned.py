"""Out-of-band retry of messages the sync gave up on."""
from __future__ import annotations

import logging
from typing import Optional

from ..account import my_aliases
from ..conversations import ConversationResolver
from ..errors import raise_if_cancelled
from ..failures import FailureTracker
from ..fetcher import BoundedFetcher
from ..remote import RemoteMailClient
from ..store import Store
from ..tracking import ModificationTracker
from ..upsert import MessageUpserter

logger = logging.getLogger(__name__)


def retry_abandoned_messages(
    client: RemoteMailClient,
    store: Store,
    fetcher: BoundedFetcher,
    tracker: Optional[ModificationTracker] = None,
) -> dict:
    """
    Refetch every abandoned id. Successes are upserted and un-abandoned; failures
    keep their record with retry_count bumped. Never touches the history cursor.
    Raises SyncCancelled without recording anything if the fetcher was cancelled.
    """
    failures = FailureTracker(store)
    ids = [row.message_id for row in failures.abandoned_messages()]
    if not ids:
        return {"retried": 0, "recovered": 0, "still_failing": 0}

    tracker = tracker or ModificationTracker()
    mine = my_aliases(store.get_account())
    resolver = ConversationResolver(store, tracker, mine)
    upserter = MessageUpserter(store, resolver, tracker, mine)

    recovered: list[str] = []

    def _on_success(raw: dict) -> None:
        upserter.upsert(raw)
        recovered.append(raw["id"])

    failed = fetcher.fetch_batch(ids, _on_success)
    # Ids skipped by a cancel come back as failed; they must not be re-abandoned.
    raise_if_cancelled(fetcher.cancel_event)
    failures.remove_abandoned(recovered)
    if failed:
        failures.abandon(failed, reason="retry of abandoned message failed")
    resolver.update_rollups_for(tracker.drain())
    store.commit()

    logger.info(f"Retried {len(ids)} abandoned messages: recovered={len(recovered)} still_failing={len(failed)}")
    return {"retried": len(ids), "recovered": len(recovered), "still_failing": len(failed)}
