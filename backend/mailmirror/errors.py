"""Sync error taxonomy.

Remote failures are translated into these at the RemoteMailClient boundary so the
rest of the engine never sees transport-specific exceptions.
"""
import threading
from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors."""


class RemoteError(SyncError):
    """A call to the remote mail service failed."""

    retryable = False


class RateLimitedError(RemoteError):
    retryable = True


class FetchTimeoutError(RemoteError):
    retryable = True


class ServerError(RemoteError):
    retryable = True

    def __init__(self, code: int, message: str = ""):
        super().__init__(message or f"server error {code}")
        self.code = code


class NetworkError(RemoteError):
    retryable = True

    def __init__(self, cause: Optional[BaseException] = None, message: str = ""):
        super().__init__(message or str(cause) or "network error")
        self.cause = cause


class AuthenticationError(RemoteError):
    pass


class NotFoundError(RemoteError):
    pass


class CursorExpiredError(RemoteError):
    """The stored history cursor is too old for the delta endpoint."""


class SyncCancelled(SyncError):
    """Raised at a cancellation checkpoint after cancel_sync()."""


class StoreCommitError(SyncError):
    """The pass could not be committed after bounded retries."""


def is_retryable(exc: BaseException) -> bool:
    """Transient network/server failures are retried; everything else is permanent."""
    if isinstance(exc, RemoteError):
        return exc.retryable
    # Raw socket/connection errors that escaped translation (TimeoutError is an OSError).
    return isinstance(exc, OSError)


def raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelled("sync cancelled")


def format_sync_error(exc: BaseException) -> str:
    """Short, user-facing status text for a failed pass."""
    if isinstance(exc, CursorExpiredError):
        return "History expired, re-syncing..."
    if isinstance(exc, AuthenticationError):
        return "Authentication failed"
    if isinstance(exc, RateLimitedError):
        return "Rate limited, please try again later"
    if isinstance(exc, FetchTimeoutError):
        return "Request timed out"
    if isinstance(exc, NetworkError):
        return f"Network error: {exc}"
    if isinstance(exc, ServerError):
        return f"Server error: {exc.code}"
    if isinstance(exc, StoreCommitError):
        return "Could not save changes"
    return str(exc) or exc.__class__.__name__
