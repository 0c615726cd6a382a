"""Abstract boundary to the remote mail service.

Everything the sync engine needs from the server goes through RemoteMailClient.
Implementations must raise the errors from `mailmirror.errors`, never transport
exceptions.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List


@dataclass
class MessagePage:
    ids: List[str]
    next_page_token: Optional[str] = None


@dataclass
class AddedMessage:
    id: str
    label_ids: List[str] = field(default_factory=list)


@dataclass
class LabelChange:
    message_id: str
    label_ids: List[str] = field(default_factory=list)


@dataclass
class HistoryRecord:
    """One history entry; any of the four change lists may be empty."""
    id: Optional[str] = None
    messages_added: List[AddedMessage] = field(default_factory=list)
    messages_deleted: List[str] = field(default_factory=list)
    labels_added: List[LabelChange] = field(default_factory=list)
    labels_removed: List[LabelChange] = field(default_factory=list)


@dataclass
class HistoryPage:
    records: List[HistoryRecord]
    history_id: Optional[str] = None
    next_page_token: Optional[str] = None


@dataclass
class Profile:
    email: str
    history_id: Optional[str] = None


@dataclass
class RemoteLabel:
    id: str
    name: str
    label_type: Optional[str] = None


@dataclass
class Alias:
    email: str
    display_name: Optional[str] = None
    is_primary: bool = False
    treat_as_alias: bool = False


def parse_history_record(raw: dict) -> HistoryRecord:
    """Convert a history entry in the Gmail JSON shape into a HistoryRecord."""
    added = [
        AddedMessage(id=m["message"]["id"], label_ids=list(m["message"].get("labelIds") or []))
        for m in raw.get("messagesAdded", [])
        if m.get("message", {}).get("id")
    ]
    deleted = [
        m["message"]["id"]
        for m in raw.get("messagesDeleted", [])
        if m.get("message", {}).get("id")
    ]
    labels_added = [
        LabelChange(message_id=m["message"]["id"], label_ids=list(m.get("labelIds") or []))
        for m in raw.get("labelsAdded", [])
        if m.get("message", {}).get("id")
    ]
    labels_removed = [
        LabelChange(message_id=m["message"]["id"], label_ids=list(m.get("labelIds") or []))
        for m in raw.get("labelsRemoved", [])
        if m.get("message", {}).get("id")
    ]
    return HistoryRecord(
        id=raw.get("id"),
        messages_added=added,
        messages_deleted=deleted,
        labels_added=labels_added,
        labels_removed=labels_removed,
    )


class RemoteMailClient(ABC):
    """RPC boundary consumed by the sync engine."""

    @abstractmethod
    def list_messages(
        self,
        query: str,
        page_token: Optional[str] = None,
        max_results: int = 500,
    ) -> MessagePage:
        ...

    @abstractmethod
    def get_message(self, message_id: str, fmt: str = "full") -> dict:
        """Return the raw message. fmt is "full" or "metadata"."""

    @abstractmethod
    def list_history(self, start_history_id: str, page_token: Optional[str] = None) -> HistoryPage:
        """Raises CursorExpiredError when start_history_id is no longer valid."""

    @abstractmethod
    def get_profile(self) -> Profile:
        ...

    @abstractmethod
    def list_labels(self) -> List[RemoteLabel]:
        ...

    @abstractmethod
    def list_aliases(self) -> List[Alias]:
        ...
