"""Turn a raw Gmail message (full or metadata format) into plain values for the upserter."""
from __future__ import annotations

import base64
import html
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

from .identity import parse_addresses
from .models import UNREAD_LABEL

SNIPPET_MAX_CHARS = 500
NEWSLETTER_CATEGORIES = ("CATEGORY_PROMOTIONS", "CATEGORY_UPDATES", "CATEGORY_FORUMS")
NO_REPLY_PATTERNS = ("noreply@", "no-reply@", "donotreply@", "do-not-reply@", "newsletter@", "notifications@")

_TAG_RE = re.compile(r"<[^>]+>")
_STYLE_RE = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")


@dataclass
class AttachmentInfo:
    attachment_id: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class ParsedMessage:
    id: str
    thread_id: Optional[str]
    label_ids: List[str]
    snippet: Optional[str]
    cleaned_snippet: Optional[str]
    internal_date: datetime
    subject: Optional[str]
    from_header: Optional[str]
    to_header: Optional[str]
    cc_header: Optional[str]
    bcc_header: Optional[str]
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    is_from_me: bool = False
    is_unread: bool = False
    is_newsletter: bool = False
    has_attachments: bool = False
    attachments: List[AttachmentInfo] = field(default_factory=list)

    def participants(self) -> list[tuple[str, str, Optional[str]]]:
        """(kind, email, display_name) for every address header, Bcc included."""
        out = []
        for kind, header in (("from", self.from_header), ("to", self.to_header), ("cc", self.cc_header), ("bcc", self.bcc_header)):
            for email, name in parse_addresses(header):
                out.append((kind, email, name))
        return out


def _get_headers(email: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in email.get("payload", {}).get("headers", [])}


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_bodies(payload: dict) -> tuple[Optional[str], Optional[str]]:
    """Depth-first search for the first text/plain and text/html bodies."""
    plain: Optional[str] = None
    rich: Optional[str] = None
    stack = [payload]
    while stack and (plain is None or rich is None):
        part = stack.pop(0)
        mime = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if data and mime == "text/plain" and plain is None:
            plain = _decode(data)
        elif data and mime == "text/html" and rich is None:
            rich = _decode(data)
        stack[0:0] = part.get("parts") or []
    return plain, rich


def _strip_html(raw: str) -> str:
    return html.unescape(_TAG_RE.sub(" ", _STYLE_RE.sub(" ", raw)))


def clean_snippet(plain: Optional[str], rich: Optional[str], snippet: Optional[str]) -> Optional[str]:
    if plain:
        text = plain
    elif rich:
        text = _strip_html(rich)
    else:
        text = html.unescape(snippet or "")
    text = _WS_RE.sub(" ", text).strip()
    if not text:
        return None
    return text[:SNIPPET_MAX_CHARS]


def _attachments(payload: dict) -> list[AttachmentInfo]:
    found = []
    stack = [payload]
    while stack:
        part = stack.pop()
        body = part.get("body") or {}
        if body.get("attachmentId"):
            found.append(
                AttachmentInfo(
                    attachment_id=body["attachmentId"],
                    filename=part.get("filename") or None,
                    mime_type=part.get("mimeType"),
                    size=body.get("size"),
                )
            )
        stack.extend(part.get("parts") or [])
    return found


def _is_newsletter(label_ids: list[str], headers: dict) -> bool:
    if any(label in NEWSLETTER_CATEGORIES for label in label_ids):
        return True
    if headers.get("list-unsubscribe") or headers.get("list-id"):
        return True
    if (headers.get("precedence") or "").strip().lower() in ("bulk", "list", "junk"):
        return True
    sender = (headers.get("from") or "").lower()
    return any(p in sender for p in NO_REPLY_PATTERNS)


def _internal_date(email: dict) -> datetime:
    raw = email.get("internalDate")
    try:
        return datetime.utcfromtimestamp(int(raw) / 1000.0)
    except (TypeError, ValueError):
        return datetime.utcnow()


def parse_message(email: dict, my_aliases: set[str]) -> ParsedMessage:
    headers = _get_headers(email)
    label_ids = list(email.get("labelIds") or [])
    payload = email.get("payload") or {}
    plain, rich = _find_bodies(payload)
    attachments = _attachments(payload)

    sender = parse_addresses(headers.get("from"))
    sender_email, sender_name = sender[0] if sender else (None, None)

    return ParsedMessage(
        id=email["id"],
        thread_id=email.get("threadId"),
        label_ids=label_ids,
        snippet=email.get("snippet"),
        cleaned_snippet=clean_snippet(plain, rich, email.get("snippet")),
        internal_date=_internal_date(email),
        subject=headers.get("subject"),
        from_header=headers.get("from"),
        to_header=headers.get("to"),
        cc_header=headers.get("cc"),
        bcc_header=headers.get("bcc"),
        sender_email=sender_email,
        sender_name=sender_name,
        is_from_me=bool(sender_email and sender_email in my_aliases),
        is_unread=UNREAD_LABEL in label_ids,
        is_newsletter=_is_newsletter(label_ids, headers),
        has_attachments=bool(attachments),
        attachments=attachments,
    )
