"""Bounded-concurrency message fetching with per-item timeouts and retry.

Fetches run in a ThreadPoolExecutor. Results are handed to ``on_success`` on the
calling thread (single-writer loop), so the pass's Session is never touched from
a worker.
"""
from __future__ import annotations

import heapq
import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, List

from .config import settings
from .errors import FetchTimeoutError, is_retryable
from .remote import RemoteMailClient

logger = logging.getLogger(__name__)

# Upper bound on how long the writer loop sleeps between checks (cancel, timeouts).
_POLL_S = 0.25


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped, plus up to 10% jitter."""
    delay = min(max_s, base_s * (2 ** max(0, attempt - 1)))
    return delay + random.uniform(0, delay * 0.1)


class BoundedFetcher:
    def __init__(
        self,
        client: RemoteMailClient,
        *,
        max_workers: Optional[int] = None,
        item_timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay_s: Optional[float] = None,
        max_delay_s: Optional[float] = None,
        bulk_retry_delay_s: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.max_workers = max(1, max_workers or settings.fetch_concurrency)
        self.item_timeout_s = item_timeout_s if item_timeout_s is not None else settings.fetch_item_timeout_s
        self.max_attempts = max(1, max_attempts or settings.fetch_max_attempts)
        self.base_delay_s = base_delay_s if base_delay_s is not None else settings.fetch_retry_base_delay_s
        self.max_delay_s = max_delay_s if max_delay_s is not None else settings.fetch_retry_max_delay_s
        self.bulk_retry_delay_s = (
            bulk_retry_delay_s if bulk_retry_delay_s is not None else settings.fetch_bulk_retry_delay_s
        )
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _run_one(self, message_id: str, fmt: str, slot: dict) -> dict:
        slot["started"] = time.monotonic()
        return self.client.get_message(message_id, fmt=fmt)

    def fetch_batch(
        self,
        ids: List[str],
        on_success: Callable[[dict], None],
        fmt: str = "full",
    ) -> list[str]:
        """
        Fetch every id with at most max_workers in flight and call on_success(raw)
        for each success, in completion order. Returns the ids that failed after
        all attempts (or were left unfinished by a cancel). Exceptions raised by
        on_success propagate.
        """
        ids = list(dict.fromkeys(i for i in ids if i))
        if not ids:
            return []

        ready: deque = deque((mid, 1) for mid in ids)
        delayed: list[tuple[float, str, int]] = []  # heap of (ready_at, id, attempt)
        in_flight: dict[Future, tuple[str, int, dict]] = {}
        failed: list[str] = []

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fetch")
        try:
            while ready or delayed or in_flight:
                if self._cancelled():
                    unfinished = [mid for mid, _ in ready] + [mid for _, mid, _ in delayed]
                    unfinished += [mid for mid, _, _ in in_flight.values()]
                    for fut in in_flight:
                        fut.cancel()
                    logger.info(f"Fetch cancelled with {len(unfinished)} messages unfinished")
                    return failed + unfinished

                now = time.monotonic()
                while delayed and delayed[0][0] <= now:
                    _, mid, attempt = heapq.heappop(delayed)
                    ready.append((mid, attempt))

                while ready and len(in_flight) < self.max_workers:
                    mid, attempt = ready.popleft()
                    slot: dict = {}
                    fut = executor.submit(self._run_one, mid, fmt, slot)
                    in_flight[fut] = (mid, attempt, slot)

                timeout = _POLL_S
                if delayed:
                    timeout = min(timeout, max(0.0, delayed[0][0] - time.monotonic()))
                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED) if in_flight else (set(), set())
                if not in_flight and delayed:
                    time.sleep(timeout)

                for fut in done:
                    mid, attempt, _ = in_flight.pop(fut)
                    exc = fut.exception()
                    if exc is None:
                        on_success(fut.result())
                    else:
                        self._handle_failure(mid, attempt, exc, delayed, failed)

                # Per-item timeout is measured from when the worker started the call.
                now = time.monotonic()
                for fut, (mid, attempt, slot) in list(in_flight.items()):
                    started = slot.get("started")
                    if started is not None and now - started > self.item_timeout_s and not fut.done():
                        fut.cancel()
                        in_flight.pop(fut)
                        self._handle_failure(
                            mid, attempt, FetchTimeoutError(f"fetch of {mid} timed out"), delayed, failed
                        )
            return failed
        finally:
            # Timed-out calls may still be running; do not block on them.
            executor.shutdown(wait=False, cancel_futures=True)

    def _handle_failure(self, mid: str, attempt: int, exc: BaseException, delayed: list, failed: list) -> None:
        if is_retryable(exc) and attempt < self.max_attempts:
            delay = backoff_delay(attempt, self.base_delay_s, self.max_delay_s)
            logger.debug(f"Retrying {mid} in {delay:.2f}s (attempt {attempt + 1}/{self.max_attempts}): {exc}")
            heapq.heappush(delayed, (time.monotonic() + delay, mid, attempt + 1))
            return
        logger.warning(f"Giving up on message {mid} after {attempt} attempt(s): {exc}")
        failed.append(mid)

    def retry_failed(self, ids: List[str], on_success: Callable[[dict], None], fmt: str = "full") -> list[str]:
        """One bulk retry of a phase's failed ids after a short pause. Returns ids still failing."""
        if not ids:
            return []
        logger.info(f"Retrying {len(ids)} failed messages in {self.bulk_retry_delay_s}s")
        if self.cancel_event is not None:
            if self.cancel_event.wait(self.bulk_retry_delay_s):
                return list(ids)
        elif self.bulk_retry_delay_s > 0:
            time.sleep(self.bulk_retry_delay_s)
        return self.fetch_batch(ids, on_success, fmt=fmt)
