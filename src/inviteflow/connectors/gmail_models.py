"""Validated Gmail API response shapes and body/header helpers.

Every payload the Gmail client receives is parsed into one of these models
on receipt; nothing downstream touches raw JSON.
"""

from __future__ import annotations

import base64
import binascii
import html
import logging
import re
from email.utils import getaddresses

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

_MAX_PART_DEPTH = 20
_HTML_MIME_TYPES = frozenset({"text/html", "text/xhtml", "application/xhtml+xml"})
_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)


class _GmailModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Message payloads
# ---------------------------------------------------------------------------


class MessageHeader(_GmailModel):
    name: str
    value: str = ""


class MessageBody(_GmailModel):
    data: str | None = None
    size: int = 0
    attachment_id: str | None = Field(default=None, alias="attachmentId")


class MessagePart(_GmailModel):
    part_id: str | None = Field(default=None, alias="partId")
    mime_type: str = Field(default="", alias="mimeType")
    filename: str | None = None
    headers: list[MessageHeader] = Field(default_factory=list)
    body: MessageBody | None = None
    parts: list[MessagePart] = Field(default_factory=list)


class GmailMessage(_GmailModel):
    """A message fetched with ``format=full``."""

    id: str = Field(min_length=1)
    thread_id: str = Field(default="", alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    snippet: str = ""
    history_id: str | None = Field(default=None, alias="historyId")
    internal_date: int = Field(default=0, alias="internalDate")
    payload: MessagePart | None = None

    @field_validator("internal_date", mode="before")
    @classmethod
    def _coerce_internal_date(cls, value: object) -> int:
        # Gmail encodes epoch millis as a decimal string
        if value is None or value == "":
            return 0
        try:
            return int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0

    def header(self, name: str) -> str | None:
        """Case-insensitive lookup of a top-level header."""
        if self.payload is None:
            return None
        wanted = name.lower()
        for header in self.payload.headers:
            if header.name.lower() == wanted:
                return header.value
        return None

    @property
    def subject(self) -> str:
        return self.header("Subject") or ""

    @property
    def sender(self) -> str:
        return self.header("From") or ""

    def plain_text(self) -> str:
        return extract_plain_text(self.payload) if self.payload is not None else ""

    def html_body(self) -> str:
        return extract_html(self.payload) if self.payload is not None else ""


# ---------------------------------------------------------------------------
# List / history / profile responses
# ---------------------------------------------------------------------------


class MessageStub(_GmailModel):
    """Minimal message shape returned by history.list and messages.list."""

    id: str = Field(min_length=1)
    thread_id: str = Field(default="", alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")


class MessageAdded(_GmailModel):
    message: MessageStub


class HistoryRecord(_GmailModel):
    id: str
    messages: list[MessageStub] = Field(default_factory=list)
    messages_added: list[MessageAdded] = Field(default_factory=list, alias="messagesAdded")


class HistoryPage(_GmailModel):
    """One page of ``users.history.list``."""

    history: list[HistoryRecord] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")
    history_id: str | None = Field(default=None, alias="historyId")


class MessageListPage(_GmailModel):
    """One page of ``users.messages.list``."""

    messages: list[MessageStub] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")
    result_size_estimate: int = Field(default=0, alias="resultSizeEstimate")


class GmailThread(_GmailModel):
    id: str
    history_id: str | None = Field(default=None, alias="historyId")
    messages: list[GmailMessage] = Field(default_factory=list)


class GmailProfile(_GmailModel):
    email_address: str = Field(default="", alias="emailAddress")
    history_id: str = Field(min_length=1, alias="historyId")
    messages_total: int = Field(default=0, alias="messagesTotal")


# ---------------------------------------------------------------------------
# Body helpers
# ---------------------------------------------------------------------------


def decode_base64url(data: str | None) -> str:
    """Decode Gmail's unpadded url-safe base64; undecodable input yields ''."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.debug("Ignoring undecodable message body part")
        return ""


def _walk_parts(part: MessagePart) -> list[MessagePart]:
    """Breadth-first list of nested parts, bounded in depth."""
    ordered: list[MessagePart] = []
    frontier: list[tuple[MessagePart, int]] = [(child, 1) for child in part.parts]
    while frontier:
        current, depth = frontier.pop(0)
        ordered.append(current)
        if depth >= _MAX_PART_DEPTH:
            logger.warning("Maximum nesting depth reached in email parsing")
            continue
        frontier.extend((child, depth + 1) for child in current.parts)
    return ordered


def extract_plain_text(payload: MessagePart) -> str:
    """First non-blank ``text/plain`` body, or a non-HTML top-level body."""
    if payload.mime_type not in _HTML_MIME_TYPES and payload.body is not None:
        decoded = decode_base64url(payload.body.data)
        if decoded.strip():
            return decoded
    for part in _walk_parts(payload):
        if part.mime_type == "text/plain" and part.body is not None:
            decoded = decode_base64url(part.body.data)
            if decoded.strip():
                return decoded
    return ""


def extract_html(payload: MessagePart) -> str:
    """All HTML bodies joined by blank lines."""
    if payload.mime_type in _HTML_MIME_TYPES and payload.body is not None:
        decoded = decode_base64url(payload.body.data)
        if decoded.strip():
            return decoded
    html_parts = []
    for part in _walk_parts(payload):
        if part.mime_type in _HTML_MIME_TYPES and part.body is not None:
            decoded = decode_base64url(part.body.data)
            if decoded.strip():
                html_parts.append(decoded)
    return "\n\n".join(html_parts)


def html_to_text(html_value: str) -> str:
    """Render an HTML body to whitespace-normalized visible text."""
    if not html_value:
        return ""
    cleaned = re.sub(r"(?is)<(script|style|head|title)[^>]*>.*?</\1>", " ", html_value)
    cleaned = re.sub(r"(?i)<br\s*/?>", "\n", cleaned)
    cleaned = re.sub(r"(?i)</p>", "\n", cleaned)
    cleaned = re.sub(r"(?i)<li>", "\n- ", cleaned)
    cleaned = re.sub(r"(?is)<[^>]+>", " ", cleaned)
    cleaned = html.unescape(cleaned)
    return " ".join(cleaned.split())


# ---------------------------------------------------------------------------
# Address helpers
# ---------------------------------------------------------------------------


def extract_emails(value: str | None) -> list[str]:
    """Lower-cased addresses found anywhere in a header value, in order, deduped."""
    if not value:
        return []
    seen: dict[str, None] = {}
    for match in _EMAIL_RE.findall(value):
        seen.setdefault(match.lower(), None)
    return list(seen)


def sender_address(from_header: str | None) -> str | None:
    """The bare lower-cased address of a ``From`` header."""
    if not from_header:
        return None
    for _, address in getaddresses([from_header]):
        if address and "@" in address:
            return address.strip().lower()
    found = extract_emails(from_header)
    return found[0] if found else None
