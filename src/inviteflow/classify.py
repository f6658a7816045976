"""Per-message routing: ignore, digest reply, invite candidate, or skip."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from inviteflow.connectors.gmail_models import (
    GmailMessage,
    extract_emails,
    html_to_text,
    sender_address,
)
from inviteflow.sync import IGNORED_LABELS, SENT_LABEL, MessageReference


class Route(StrEnum):
    IGNORE = "ignore"
    DIGEST_REPLY = "digest_reply"
    INVITE_CANDIDATE = "invite_candidate"
    SKIP = "skip"


class RoutedMessage(BaseModel):
    """A fetched message with everything downstream handlers need."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    route: Route
    message_id: str
    thread_id: str
    labels: frozenset[str]
    subject: str = ""
    sender: str | None = None
    recipients: frozenset[str] = frozenset()
    text: str = ""
    html: str = ""
    internal_date: int = 0


def extractable_text(message: GmailMessage, html: str) -> str:
    """Plain-text body, then snippet, then rendered HTML; first non-blank wins."""
    for candidate in (message.plain_text(), message.snippet, html_to_text(html)):
        if candidate and candidate.strip():
            return candidate
    return ""


def recipient_emails(message: GmailMessage) -> frozenset[str]:
    found: set[str] = set()
    for header in ("To", "Cc", "Bcc"):
        found.update(extract_emails(message.header(header)))
    return frozenset(found)


class ClassificationRouter:
    """Routes a fetched message for one mailbox owner.

    Parameters
    ----------
    user_email:
        The mailbox owner's address; decides "from the user".
    digest_subject_marker:
        Case-insensitive subject substring identifying digest threads.
    digest_recipient:
        Optional address digests are sent from; a ``To`` header containing
        it also marks a digest reply.
    """

    def __init__(
        self,
        *,
        user_email: str,
        digest_subject_marker: str,
        digest_recipient: str | None = None,
    ) -> None:
        self._user_email = user_email.strip().lower()
        self._marker = digest_subject_marker.strip().lower()
        self._digest_recipient = digest_recipient.strip().lower() if digest_recipient else None

    def route(self, ref: MessageReference, message: GmailMessage) -> RoutedMessage:
        labels = frozenset(ref.labels) | frozenset(message.label_ids)
        html = message.html_body()
        sender = sender_address(message.sender)
        subject = message.subject

        def routed(route: Route, text: str = "") -> RoutedMessage:
            return RoutedMessage(
                route=route,
                message_id=message.id or ref.id,
                thread_id=message.thread_id or ref.thread_id,
                labels=labels,
                subject=subject,
                sender=sender,
                recipients=recipient_emails(message),
                text=text,
                html=html,
                internal_date=message.internal_date,
            )

        if labels & IGNORED_LABELS:
            return routed(Route.IGNORE)

        text = extractable_text(message, html)
        from_user = sender == self._user_email

        if from_user and SENT_LABEL in labels and self._is_digest_thread(message):
            return routed(Route.DIGEST_REPLY, text)

        if not from_user and text.strip():
            return routed(Route.INVITE_CANDIDATE, text)

        return routed(Route.SKIP, text)

    def _is_digest_thread(self, message: GmailMessage) -> bool:
        if self._marker and self._marker in message.subject.lower():
            return True
        if self._digest_recipient is None:
            return False
        return self._digest_recipient in (message.header("To") or "").lower()
