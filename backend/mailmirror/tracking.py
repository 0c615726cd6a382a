"""Per-pass accumulator of conversations touched by upserts and history changes."""
import threading
from typing import Iterable, Optional


class ModificationTracker:
    """Thread-safe set of conversation ids. Reset at pass start, drained once at rollup time."""

    def __init__(self):
        self._ids: set[int] = set()
        self._lock = threading.Lock()

    def record(self, conversation_id: Optional[int]) -> None:
        if conversation_id is None:
            return
        with self._lock:
            self._ids.add(conversation_id)

    def record_many(self, conversation_ids: Iterable[Optional[int]]) -> None:
        with self._lock:
            self._ids.update(cid for cid in conversation_ids if cid is not None)

    def drain(self) -> set[int]:
        """Return everything recorded so far and clear the set."""
        with self._lock:
            ids = self._ids
            self._ids = set()
            return ids

    def reset(self) -> None:
        with self._lock:
            self._ids = set()
