"""Pytest fixtures: file-backed SQLite DB, scripted mail server, API client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
# Keep retry pauses out of the test run.
os.environ.setdefault("FETCH_RETRY_BASE_DELAY_S", "0")
os.environ.setdefault("FETCH_RETRY_MAX_DELAY_S", "0")
os.environ.setdefault("FETCH_BULK_RETRY_DELAY_S", "0")
os.environ.setdefault("STORE_COMMIT_RETRY_BASE_DELAY_S", "0")

import base64
import copy
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from mailmirror.conversations import ConversationResolver
from mailmirror.errors import NotFoundError
from mailmirror.fetcher import BoundedFetcher
from mailmirror.models import Base
from mailmirror.remote import (
    Alias,
    HistoryPage,
    MessagePage,
    Profile,
    RemoteLabel,
    RemoteMailClient,
)
from mailmirror.store import Store
from mailmirror.tracking import ModificationTracker
from mailmirror.upsert import MessageUpserter

ME = "me@example.com"
BASE_INTERNAL_MS = 1_700_000_000_000


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def make_raw_message(
    mid: str,
    *,
    from_: str = "Alice Smith <alice@example.com>",
    to: Optional[str] = ME,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    subject: str = "Hello",
    labels=("INBOX", "UNREAD"),
    thread_id: Optional[str] = None,
    minutes: int = 0,
    body: str = "Hi there",
    attachments=(),
    extra_headers=(),
) -> dict:
    """Raw message in the Gmail API 'full' shape."""
    headers = [{"name": "From", "value": from_}, {"name": "Subject", "value": subject}]
    if to:
        headers.append({"name": "To", "value": to})
    if cc:
        headers.append({"name": "Cc", "value": cc})
    if bcc:
        headers.append({"name": "Bcc", "value": bcc})
    headers.extend({"name": n, "value": v} for n, v in extra_headers)
    parts = [{"mimeType": "text/plain", "body": {"data": _b64(body)}}]
    for att_id, filename in attachments:
        parts.append(
            {
                "mimeType": "application/pdf",
                "filename": filename,
                "body": {"attachmentId": att_id, "size": 1234},
            }
        )
    return {
        "id": mid,
        "threadId": thread_id or f"thread-{mid}",
        "labelIds": list(labels),
        "snippet": body,
        "internalDate": str(BASE_INTERNAL_MS + minutes * 60_000),
        "payload": {"mimeType": "multipart/mixed", "headers": headers, "parts": parts},
    }


class FakeMailClient(RemoteMailClient):
    """Scripted in-memory mail server."""

    def __init__(self, email: str = ME, history_id: str = "100"):
        self.messages: dict[str, dict] = {}
        self.profile = Profile(email=email, history_id=history_id)
        self.aliases = [Alias(email=email, is_primary=True)]
        self.labels = [
            RemoteLabel(id=label_id, name=label_id, label_type="system")
            for label_id in ("INBOX", "UNREAD", "SENT", "SPAM", "DRAFT", "IMPORTANT")
        ]
        self.history_pages: list[HistoryPage] = []
        self.history_error: Optional[Exception] = None
        self.fail_ids: dict[str, Exception] = {}
        self.list_ids: Optional[list] = None  # overrides what list_messages returns
        self.get_calls: list[tuple[str, str]] = []
        self.history_calls: list[tuple[str, Optional[str]]] = []

    def add(self, *raws: dict) -> None:
        for raw in raws:
            self.messages[raw["id"]] = raw

    def list_messages(self, query, page_token=None, max_results=500):
        ids = self.list_ids if self.list_ids is not None else list(self.messages)
        return MessagePage(ids=list(ids)[:max_results])

    def get_message(self, message_id, fmt="full"):
        self.get_calls.append((message_id, fmt))
        if message_id in self.fail_ids:
            raise self.fail_ids[message_id]
        if message_id not in self.messages:
            raise NotFoundError(f"message {message_id} not found")
        return copy.deepcopy(self.messages[message_id])

    def list_history(self, start_history_id, page_token=None):
        self.history_calls.append((start_history_id, page_token))
        if self.history_error is not None:
            raise self.history_error
        if not self.history_pages:
            return HistoryPage(records=[], history_id=self.profile.history_id)
        return self.history_pages[int(page_token) if page_token else 0]

    def get_profile(self):
        return Profile(email=self.profile.email, history_id=self.profile.history_id)

    def list_labels(self):
        return list(self.labels)

    def list_aliases(self):
        return list(self.aliases)


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _fk_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db_session):
    return Store(db_session)


@pytest.fixture
def fake_client():
    return FakeMailClient()


@pytest.fixture
def tracker():
    return ModificationTracker()


@pytest.fixture
def resolver(store, tracker):
    return ConversationResolver(store, tracker, {ME})


@pytest.fixture
def upserter(store, resolver, tracker):
    return MessageUpserter(store, resolver, tracker, {ME})


@pytest.fixture
def fast_fetcher(fake_client):
    return BoundedFetcher(
        fake_client,
        max_workers=4,
        item_timeout_s=5,
        max_attempts=2,
        base_delay_s=0,
        max_delay_s=0,
        bulk_retry_delay_s=0,
    )


@pytest.fixture
def client(session_factory, fake_client, monkeypatch):
    """API client wired to the test DB and a coordinator backed by FakeMailClient."""
    from mailmirror import coordinator as coordinator_module
    from mailmirror.coordinator import SyncCoordinator
    from mailmirror.database import get_sync_db
    from mailmirror.main import app
    from mailmirror.routers import sync as sync_router

    coordinator = SyncCoordinator(client_factory=lambda: fake_client, session_factory=session_factory)
    monkeypatch.setattr(coordinator_module, "_coordinator", coordinator)
    monkeypatch.setattr(sync_router, "SessionLocal", session_factory)

    def override_get_sync_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_sync_db] = override_get_sync_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
