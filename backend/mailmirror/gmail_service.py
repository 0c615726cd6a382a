"""Gmail API integration: credentials, rate-limit backoff, and the RemoteMailClient adapter."""
import os
import pickle
import socket
import threading
import time
import logging
from typing import Optional, List

import httplib2
from google.auth.transport.requests import Request
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .errors import (
    AuthenticationError,
    CursorExpiredError,
    FetchTimeoutError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RemoteError,
    ServerError,
)
from .remote import (
    Alias,
    HistoryPage,
    MessagePage,
    Profile,
    RemoteLabel,
    RemoteMailClient,
    parse_history_record,
)

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.readonly",
]

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
_RETRY_STATUSES = (429, 500, 502, 503, 504)
_RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "rate limit", "quota")


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(backend_dir, path)


class GmailAuthRequiredError(Exception):
    """Raised when Gmail needs interactive OAuth (browser). Do not run in background task."""
    pass


def _load_credentials():
    token_path = _resolve_path(settings.token_path)
    if not os.path.exists(token_path):
        return None
    with open(token_path, "rb") as token:
        return pickle.load(token)


def gmail_creds_ready_for_background() -> bool:
    """True if we can get a service without blocking on browser OAuth."""
    try:
        creds = _load_credentials()
    except (OSError, pickle.UnpicklingError, EOFError):
        return False
    if not creds:
        return False
    if creds.valid:
        return True
    return bool(creds.expired and creds.refresh_token)


def get_gmail_credentials():
    """
    Return stored credentials, refreshing them if expired.
    Never opens a browser: raises GmailAuthRequiredError when the token is missing
    or cannot be refreshed.
    """
    creds = _load_credentials()
    if not creds:
        raise GmailAuthRequiredError(
            f"Gmail token not found at {_resolve_path(settings.token_path)}. Authorize once and retry."
        )
    if not creds.valid:
        if not (creds.expired and creds.refresh_token):
            raise GmailAuthRequiredError("Gmail token is invalid and cannot be refreshed.")
        try:
            creds.refresh(Request())
        except Exception as e:
            raise GmailAuthRequiredError("Gmail token expired and refresh failed.") from e
        token_path = _resolve_path(settings.token_path)
        with open(token_path, "wb") as token:
            pickle.dump(creds, token)
        try:
            os.chmod(token_path, 0o600)
        except OSError:
            pass
    return creds


def build_gmail_service(creds):
    """Gmail API service over its own httplib2.Http (which is not thread-safe)."""
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=settings.gmail_http_timeout_s))
    return build("gmail", "v1", http=http, cache_discovery=False)


def get_gmail_service():
    """Return Gmail API service from the stored token."""
    return build_gmail_service(get_gmail_credentials())


# Rate limiting: exponential backoff
def _with_backoff(fn, max_retries: int = 5):
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in _RETRY_STATUSES and attempt < max_retries - 1:
                time.sleep(2 ** attempt)
                continue
            raise


def _is_rate_limit(e: HttpError) -> bool:
    text = f"{e.reason or ''} {e.error_details or ''}".lower()
    return any(r in text for r in _RATE_LIMIT_REASONS)


def translate_http_error(e: HttpError, history: bool = False) -> RemoteError:
    """Map a Gmail HttpError onto the sync error taxonomy."""
    status = e.resp.status
    reason = e.reason or ""
    if history and (status == 404 or "historyid" in reason.lower()):
        return CursorExpiredError(reason or "history cursor expired")
    if status == 429 or (status == 403 and _is_rate_limit(e)):
        return RateLimitedError(reason)
    if status in (401, 403):
        return AuthenticationError(reason)
    if status == 404:
        return NotFoundError(reason)
    if status >= 500:
        return ServerError(status, reason)
    return RemoteError(f"HTTP {status}: {reason}")


class GmailMailClient(RemoteMailClient):
    """RemoteMailClient backed by the Gmail v1 API."""

    def __init__(self, service=None, user_id: str = "me", max_retries: Optional[int] = None, credentials=None):
        self._shared_service = service
        self._credentials = None
        if service is None:
            self._credentials = credentials if credentials is not None else get_gmail_credentials()
        self._local = threading.local()
        self.user_id = user_id
        self.max_retries = max_retries or settings.gmail_metadata_max_retries

    @property
    def service(self):
        """Per-thread service: BoundedFetcher calls get_message from several worker threads."""
        if self._shared_service is not None:
            return self._shared_service
        service = getattr(self._local, "service", None)
        if service is None:
            service = build_gmail_service(self._credentials)
            self._local.service = service
        return service

    def _call(self, fn, retry: bool = True, history: bool = False):
        try:
            if retry:
                return _with_backoff(fn, max_retries=self.max_retries)
            return fn()
        except HttpError as e:
            raise translate_http_error(e, history=history) from e
        except (socket.timeout, TimeoutError) as e:
            raise FetchTimeoutError(str(e) or "request timed out") from e
        except (httplib2.HttpLib2Error, ConnectionError, OSError) as e:
            raise NetworkError(e) from e

    def list_messages(self, query: str, page_token: Optional[str] = None, max_results: int = 500) -> MessagePage:
        result = self._call(
            lambda: self.service.users()
            .messages()
            .list(
                userId=self.user_id,
                q=query,
                maxResults=min(max_results, 500),
                pageToken=page_token or None,
            )
            .execute()
        )
        ids = [m["id"] for m in result.get("messages", []) if m.get("id")]
        return MessagePage(ids=ids, next_page_token=result.get("nextPageToken"))

    def get_message(self, message_id: str, fmt: str = "full") -> dict:
        # BoundedFetcher owns retries for per-message fetches.
        return self._call(
            lambda: self.service.users()
            .messages()
            .get(userId=self.user_id, id=message_id, format=fmt)
            .execute(),
            retry=False,
        )

    def list_history(self, start_history_id: str, page_token: Optional[str] = None) -> HistoryPage:
        result = self._call(
            lambda: self.service.users()
            .history()
            .list(
                userId=self.user_id,
                startHistoryId=start_history_id,
                maxResults=settings.history_page_size,
                pageToken=page_token or None,
                historyTypes=HISTORY_TYPES,
            )
            .execute(),
            history=True,
        )
        records = [parse_history_record(h) for h in result.get("history", [])]
        return HistoryPage(
            records=records,
            history_id=result.get("historyId"),
            next_page_token=result.get("nextPageToken"),
        )

    def get_profile(self) -> Profile:
        profile = self._call(lambda: self.service.users().getProfile(userId=self.user_id).execute())
        return Profile(email=profile.get("emailAddress", ""), history_id=profile.get("historyId"))

    def list_labels(self) -> List[RemoteLabel]:
        result = self._call(lambda: self.service.users().labels().list(userId=self.user_id).execute())
        return [
            RemoteLabel(id=l["id"], name=l.get("name") or l["id"], label_type=l.get("type"))
            for l in result.get("labels", [])
        ]

    def list_aliases(self) -> List[Alias]:
        result = self._call(
            lambda: self.service.users().settings().sendAs().list(userId=self.user_id).execute()
        )
        return [
            Alias(
                email=s.get("sendAsEmail", ""),
                display_name=s.get("displayName") or None,
                is_primary=bool(s.get("isPrimary")),
                treat_as_alias=bool(s.get("treatAsAlias")),
            )
            for s in result.get("sendAs", [])
            if s.get("sendAsEmail")
        ]
