"""Single-flight sync coordinator: state machine, cancellation, progress listeners."""
from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import StoreCommitError, SyncCancelled, format_sync_error
from .failures import FailureTracker
from .fetcher import BoundedFetcher, backoff_delay
from .remote import RemoteMailClient
from .services.abandoned import retry_abandoned_messages
from .services.incremental_sync import IncrementalSyncOrchestrator
from .services.initial_sync import InitialSyncOrchestrator
from .services.pipeline import SyncResult
from .store import Store

logger = logging.getLogger(__name__)

ProgressListener = Callable[[float, str], None]


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SyncCoordinator:
    """
    idle -> syncing -> {idle, cancelled, failed}, and always back to idle once the
    pass ends. At most one pass runs at a time; a second request is a no-op.
    """

    def __init__(
        self,
        client_factory: Callable[[], RemoteMailClient],
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.client_factory = client_factory
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._status = SyncStatus.IDLE
        self._last_outcome = SyncStatus.IDLE
        self._mode: Optional[str] = None
        self._fraction = 0.0
        self._status_text = ""
        self._error: Optional[str] = None
        self._cancel_event = threading.Event()
        self._listeners: list[ProgressListener] = []

    # ---- state machine ----

    def begin_sync(self, mode: Optional[str] = None) -> bool:
        with self._lock:
            if self._status != SyncStatus.IDLE:
                return False
            self._status = SyncStatus.SYNCING
            self._mode = mode
            self._cancel_event = threading.Event()
            self._fraction = 0.0
            self._status_text = "Starting…"
            self._error = None
            return True

    def cancel_sync(self) -> bool:
        with self._lock:
            if self._status != SyncStatus.SYNCING:
                return False
            self._cancel_event.set()
        logger.info("Sync cancellation requested")
        return True

    def _finish(self, outcome: SyncStatus, text: str, error: Optional[str] = None) -> None:
        with self._lock:
            self._status = SyncStatus.IDLE
            self._last_outcome = outcome
            self._status_text = text
            self._error = error
            fraction = self._fraction
            listeners = list(self._listeners)
        self._notify(listeners, fraction, text)

    @property
    def is_syncing(self) -> bool:
        with self._lock:
            return self._status == SyncStatus.SYNCING

    def get_state(self) -> dict:
        with self._lock:
            return {
                "status": self._status.value,
                "last_outcome": self._last_outcome.value,
                "mode": self._mode,
                "progress": self._fraction,
                "message": self._status_text,
                "error": self._error,
            }

    # ---- progress channel ----

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register listener(fraction, status_text). Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _on_progress(self, fraction: float, text: str) -> None:
        with self._lock:
            self._fraction = max(self._fraction, fraction)
            self._status_text = text
            fraction = self._fraction
            listeners = list(self._listeners)
        self._notify(listeners, fraction, text)

    @staticmethod
    def _notify(listeners: list, fraction: float, text: str) -> None:
        for listener in listeners:
            try:
                listener(fraction, text)
            except Exception as e:
                logger.warning(f"Sync progress listener failed: {e}")

    # ---- passes ----

    def perform_initial_sync(self, on_begin: Optional[Callable[[], None]] = None) -> Optional[SyncResult]:
        return self._perform("initial", InitialSyncOrchestrator, on_begin)

    def perform_incremental_sync(self, on_begin: Optional[Callable[[], None]] = None) -> Optional[SyncResult]:
        return self._perform("incremental", IncrementalSyncOrchestrator, on_begin)

    def _perform(self, mode: str, pass_cls, on_begin: Optional[Callable[[], None]] = None) -> Optional[SyncResult]:
        """
        Run one pass in its own Session. Returns None when another pass is running
        or this one was cancelled. Errors re-raise after the state is recorded.
        on_begin runs only once this request owns the single-flight slot.
        """
        if not self.begin_sync(mode):
            logger.info(f"Sync already in progress; ignoring {mode} sync request")
            return None
        if on_begin is not None:
            try:
                on_begin()
            except Exception as e:
                self._fail(f"{mode.capitalize()} sync", e)
                raise
        attempt = 0
        while True:
            session = self.session_factory()
            store = Store(session)
            try:
                client = self.client_factory()
                sync_pass = pass_cls(client, store, cancel_event=self._cancel_event, on_progress=self._on_progress)
                result = sync_pass.run()
                self._finish(SyncStatus.IDLE, result.status_text)
                return result
            except SyncCancelled:
                store.rollback()
                logger.info(f"{mode.capitalize()} sync cancelled; uncommitted changes rolled back")
                self._finish(SyncStatus.CANCELLED, "Sync cancelled")
                return None
            except StoreCommitError as e:
                # Nothing of the pass was written; re-run it from the start.
                store.rollback()
                if attempt < settings.store_commit_max_retries and not self._cancel_event.is_set():
                    attempt += 1
                    delay = backoff_delay(attempt, settings.store_commit_retry_base_delay_s, 2.0)
                    logger.warning(f"{mode.capitalize()} sync could not commit ({e}); re-running pass in {delay:.2f}s")
                    time.sleep(delay)
                    continue
                self._fail(f"{mode.capitalize()} sync", e)
                raise
            except Exception as e:
                store.rollback()
                self._fail(f"{mode.capitalize()} sync", e)
                raise
            finally:
                session.close()

    def _fail(self, what: str, exc: BaseException) -> None:
        message = format_sync_error(exc)
        logger.error(f"{what} failed: {exc}")
        self._finish(SyncStatus.FAILED, f"Sync failed: {message}", error=message)

    def retry_abandoned(self) -> Optional[dict]:
        if not self.begin_sync("retry_abandoned"):
            logger.info("Sync already in progress; ignoring abandoned-message retry")
            return None
        session = self.session_factory()
        store = Store(session)
        try:
            client = self.client_factory()
            fetcher = BoundedFetcher(client, cancel_event=self._cancel_event)
            self._on_progress(0.0, "Retrying abandoned messages…")
            result = retry_abandoned_messages(client, store, fetcher)
            self._on_progress(1.0, "Sync complete")
            self._finish(SyncStatus.IDLE, "Sync complete")
            return result
        except SyncCancelled:
            store.rollback()
            logger.info("Abandoned-message retry cancelled; uncommitted changes rolled back")
            self._finish(SyncStatus.CANCELLED, "Sync cancelled")
            return None
        except Exception as e:
            store.rollback()
            self._fail("Abandoned-message retry", e)
            raise
        finally:
            session.close()

    # ---- diagnostics ----

    def diagnostics(self) -> dict:
        session = self.session_factory()
        try:
            store = Store(session)
            failures = FailureTracker(store)
            account = store.get_account()
            last_success = failures.last_successful_sync()
            return {
                "history_id": account.history_id if account else None,
                "last_successful_sync": last_success.isoformat() if last_success else None,
                "consecutive_failures": failures.consecutive_failures(),
                "persistent_failed_ids": failures.persistent_failed_ids(),
                "abandoned_count": failures.abandoned_count(),
                "abandoned_messages": [
                    {
                        "message_id": row.message_id,
                        "reason": row.reason,
                        "abandoned_at": row.abandoned_at.isoformat() if row.abandoned_at else None,
                        "retry_count": row.retry_count,
                    }
                    for row in failures.abandoned_messages()
                ],
            }
        finally:
            session.close()


_coordinator: Optional[SyncCoordinator] = None
_coordinator_lock = threading.Lock()


def get_coordinator() -> SyncCoordinator:
    """Process-wide coordinator used by the HTTP surface and the Celery task."""
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            from .gmail_service import GmailMailClient

            _coordinator = SyncCoordinator(client_factory=GmailMailClient)
        return _coordinator
