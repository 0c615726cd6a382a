"""Email normalization and participant-based conversation identity."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from email.utils import getaddresses
from typing import Iterable, Optional

ONE_TO_ONE = "one_to_one"
GROUP = "group"


def normalize_email(raw: str) -> str:
    """Lowercase and trim; for Gmail addresses also drop dots and +tags from the local part."""
    s = (raw or "").strip().lower()
    if "@" not in s:
        return s
    local, _, domain = s.rpartition("@")
    if domain == "googlemail.com":
        domain = "gmail.com"
    if domain == "gmail.com":
        local = local.replace(".", "").split("+", 1)[0]
    return f"{local}@{domain}"


def parse_addresses(header_value: Optional[str]) -> list[tuple[str, Optional[str]]]:
    """Split an address header into (normalized_email, display_name) pairs."""
    if not header_value:
        return []
    out = []
    for name, addr in getaddresses([header_value]):
        if "@" not in addr:
            continue
        email = normalize_email(addr)
        if not email:
            continue
        display = (name or "").replace('"', "").strip() or None
        out.append((email, display))
    return out


def participant_hash(participants: Iterable[str]) -> str:
    key = "p|" + "|".join(sorted(set(participants)))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def thread_hash(thread_id: str) -> str:
    return hashlib.sha256(f"t|{thread_id}".encode("utf-8")).hexdigest()


@dataclass
class ConversationIdentity:
    participant_hash: str
    conversation_type: str
    participants: list[str]  # normalized, sorted, never includes the account's addresses
    display_names: dict[str, str] = field(default_factory=dict)


def make_conversation_identity(
    from_header: Optional[str],
    to_header: Optional[str],
    cc_header: Optional[str],
    thread_id: Optional[str],
    my_aliases: set[str],
) -> ConversationIdentity:
    """
    Identity is the sorted set of From/To/Cc addresses minus the account's own.
    Bcc never participates. A thread with nobody else on it (notes to self) is keyed
    by its thread id instead.
    """
    display_names: dict[str, str] = {}
    everyone: set[str] = set()
    for header in (from_header, to_header, cc_header):
        for email, name in parse_addresses(header):
            everyone.add(email)
            if name and email not in display_names:
                display_names[email] = name

    others = sorted(everyone - my_aliases)
    if others:
        return ConversationIdentity(
            participant_hash=participant_hash(others),
            conversation_type=ONE_TO_ONE if len(others) == 1 else GROUP,
            participants=others,
            display_names=display_names,
        )
    return ConversationIdentity(
        participant_hash=thread_hash(thread_id or ""),
        conversation_type=ONE_TO_ONE,
        participants=[],
        display_names=display_names,
    )


def first_name(name: str) -> str:
    if "@" in name:
        return name
    parts = name.split()
    return parts[0] if parts else name


def format_group_names(names: list[str]) -> str:
    """["John Smith"] -> "John Smith"; groups use first names: "John & Jane", "John, Jane & Bob"."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    firsts = [first_name(n) for n in names]
    return f"{', '.join(firsts[:-1])} & {firsts[-1]}"
