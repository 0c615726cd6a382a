"""Transactional local store used by a sync pass.

A Store wraps exactly one Session. Every mutation of a pass goes through it on the
pass thread; nothing is visible to readers until commit().
"""
from __future__ import annotations

import json
import logging
import random
import time
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .errors import StoreCommitError
from .models import (
    Account,
    Attachment,
    Label,
    Message,
    Person,
    SyncMetadata,
)

logger = logging.getLogger(__name__)

# Keep IN (...) lists below SQLite's bound-parameter limit.
QUERY_CHUNK_SIZE = 500


def chunk_list(items: list, chunk_size: int) -> list[list]:
    if chunk_size <= 0:
        return [items]
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(getattr(exc, "orig", exc)).lower()
    return "database is locked" in msg or "database is busy" in msg


def commit_with_retry(
    db: Session,
    apply: Optional[Callable[[], None]] = None,
    *,
    max_retries: int = 6,
    base_sleep_s: float = 0.05,
) -> None:
    """
    SQLite can transiently raise 'database is locked' while the API reads.
    A failed commit rolls the session back and discards its pending changes, so only
    writes that `apply` can redo are retried (exponential backoff + jitter). Without
    `apply` the error is raised after the rollback.
    """
    attempt = 0
    while True:
        if apply is not None:
            apply()
        try:
            db.commit()
            return
        except OperationalError as e:
            db.rollback()
            if apply is None or attempt >= max_retries or not _is_sqlite_locked_error(e):
                raise
            sleep_s = min(2.0, base_sleep_s * (2 ** attempt)) + random.uniform(0, 0.05)
            logger.warning(f"Commit hit a locked database; retrying in {sleep_s:.2f}s (attempt {attempt + 1})")
            time.sleep(sleep_s)
            attempt += 1


class Store:
    """Batched queries and mutations over the mirror tables."""

    def __init__(self, session: Session):
        self.session = session
        # Pending Person/Label rows are not visible to queries until flushed; cache them.
        self._people: dict[str, Person] = {}
        self._labels: dict[str, Label] = {}

    # ---- generic predicate queries ----

    def find(self, model, *criteria, order_by=None) -> list:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        return list(self.session.scalars(stmt))

    def first(self, model, *criteria, order_by=None):
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        return self.session.scalars(stmt.limit(1)).first()

    def count(self, model, *criteria) -> int:
        return self.session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0

    # ---- batched lookups ----

    def messages_by_ids(self, ids: Iterable[str]) -> dict[str, Message]:
        """One IN query per chunk. Ids missing locally are simply absent from the result."""
        wanted = [i for i in dict.fromkeys(ids) if i]
        found: dict[str, Message] = {}
        for chunk in chunk_list(wanted, QUERY_CHUNK_SIZE):
            for message in self.session.scalars(select(Message).where(Message.id.in_(chunk))):
                found[message.id] = message
        return found

    def get_message(self, message_id: str) -> Optional[Message]:
        return self.session.get(Message, message_id)

    def existing_message_ids(self, ids: Iterable[str]) -> set[str]:
        wanted = [i for i in dict.fromkeys(ids) if i]
        existing: set[str] = set()
        for chunk in chunk_list(wanted, QUERY_CHUNK_SIZE):
            existing.update(self.session.scalars(select(Message.id).where(Message.id.in_(chunk))))
        return existing

    def labels_by_ids(self, ids: Iterable[str]) -> dict[str, Label]:
        wanted = [i for i in dict.fromkeys(ids) if i]
        found = {i: self._labels[i] for i in wanted if i in self._labels}
        missing = [i for i in wanted if i not in found]
        for chunk in chunk_list(missing, QUERY_CHUNK_SIZE):
            for label in self.session.scalars(select(Label).where(Label.id.in_(chunk))):
                found[label.id] = label
                self._labels[label.id] = label
        return found

    def ensure_labels(self, ids: Iterable[str]) -> dict[str, Label]:
        """Like labels_by_ids, but creates placeholder labels for unknown ids."""
        wanted = [i for i in dict.fromkeys(ids) if i]
        found = self.labels_by_ids(wanted)
        for label_id in wanted:
            if label_id not in found:
                label = Label(id=label_id, name=label_id)
                self.session.add(label)
                self._labels[label_id] = label
                found[label_id] = label
        return found

    # ---- upserts ----

    def upsert_labels(self, remote_labels: Sequence) -> int:
        """Create or rename labels from the remote label list. Returns number written."""
        existing = self.labels_by_ids([l.id for l in remote_labels])
        for remote in remote_labels:
            label = existing.get(remote.id)
            if label is None:
                label = Label(id=remote.id, name=remote.name, label_type=remote.label_type)
                self.session.add(label)
                self._labels[remote.id] = label
            else:
                label.name = remote.name
                label.label_type = remote.label_type
        return len(remote_labels)

    def upsert_person(self, email: str, display_name: Optional[str] = None) -> Person:
        """Find or create a Person. A display name is only ever upgraded, never cleared."""
        person = self._people.get(email)
        if person is None:
            person = self.session.get(Person, email)
        if person is None:
            person = Person(email=email, display_name=display_name or None)
            self.session.add(person)
        elif display_name and person.display_name != display_name:
            person.display_name = display_name
        self._people[email] = person
        return person

    def get_account(self) -> Optional[Account]:
        return self.first(Account, order_by=Account.id)

    def pending_attachment_ids(self, message_ids: Optional[Iterable[str]] = None) -> list[tuple[str, str]]:
        """(message_id, attachment_id) pairs still queued for download."""
        stmt = select(Attachment.message_id, Attachment.attachment_id).where(Attachment.state == "queued")
        if message_ids is None:
            return [(row[0], row[1]) for row in self.session.execute(stmt)]
        pairs: list[tuple[str, str]] = []
        for chunk in chunk_list(list(dict.fromkeys(message_ids)), QUERY_CHUNK_SIZE):
            if chunk:
                pairs.extend((row[0], row[1]) for row in self.session.execute(stmt.where(Attachment.message_id.in_(chunk))))
        return pairs

    # ---- deletes ----

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def delete_many(self, objs: Iterable) -> int:
        n = 0
        for obj in objs:
            self.session.delete(obj)
            n += 1
        return n

    # ---- key/value metadata ----

    def get_meta(self, key: str) -> Optional[str]:
        row = self.session.get(SyncMetadata, key)
        return row.value if row else None

    def set_meta(self, key: str, value: Optional[str]) -> None:
        row = self.session.get(SyncMetadata, key)
        if row is None:
            self.session.add(SyncMetadata(key=key, value=value))
        else:
            row.value = value
            row.updated_at = datetime.utcnow()
        # Later get_meta() calls in the same pass must see the new value.
        self.session.flush()

    def get_json(self, key: str, default=None):
        raw = self.get_meta(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring unparseable sync metadata {key!r}")
            return default

    def set_json(self, key: str, value) -> None:
        self.set_meta(key, json.dumps(value))

    def get_datetime(self, key: str) -> Optional[datetime]:
        raw = self.get_meta(key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def set_datetime(self, key: str, value: Optional[datetime]) -> None:
        self.set_meta(key, value.isoformat() if value else None)

    def get_flag(self, key: str) -> bool:
        return self.get_meta(key) == "1"

    def set_flag(self, key: str, value: bool = True) -> None:
        self.set_meta(key, "1" if value else "0")

    # ---- unit of work ----

    def add(self, obj) -> None:
        self.session.add(obj)

    def flush(self) -> None:
        self.session.flush()

    def commit(self) -> None:
        """
        Commit the pass's unit of work. A failure leaves the session rolled back and
        raises StoreCommitError; the work cannot be replayed here, so the caller re-runs the pass.
        """
        try:
            commit_with_retry(self.session)
        except OperationalError as e:
            raise StoreCommitError(f"commit failed: {e}") from e
        finally:
            self._people.clear()
            self._labels.clear()

    def rollback(self) -> None:
        self.session.rollback()
        self._people.clear()
        self._labels.clear()
