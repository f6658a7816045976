"""Incremental Gmail sync: history cursor, backfill, and message fetch.

History paging is modelled as a fold: each validated :class:`HistoryPage`
is folded into an immutable :class:`HistoryAccumulator` by the pure function
:func:`fold_history_page`. The cursor object only drives the transport loop
and decides what to persist.

Cursor rules:

- the watermark is the highest history id observed across all pages
- it is committed only after the caller has drained and processed the refs
- it never moves backwards
- an invalid cursor (history 404) is re-baselined to the mailbox's current
  history id and yields no refs for that pass
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from inviteflow.core.audit import write_audit_entry
from inviteflow.core.metrics import PollMetrics
from inviteflow.errors import CursorInvalidError, ProviderNotFoundError, ProviderRequestError

if TYPE_CHECKING:
    from inviteflow.connectors.gmail import GmailClient
    from inviteflow.connectors.gmail_models import GmailMessage, HistoryPage, MessageStub
    from inviteflow.credentials import CredentialRepository

logger = logging.getLogger(__name__)

IGNORED_LABELS = frozenset({"DRAFT", "CHAT"})
SENT_LABEL = "SENT"
MAX_BACKFILL_DAYS = 30


class MessageReference(BaseModel):
    """A message discovered by sync. Never persisted."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    thread_id: str
    labels: tuple[str, ...] = ()

    @classmethod
    def from_stub(cls, stub: MessageStub) -> MessageReference:
        return cls(id=stub.id, thread_id=stub.thread_id, labels=tuple(stub.label_ids))


# ---------------------------------------------------------------------------
# Pure fold
# ---------------------------------------------------------------------------


def newer_history_id(current: str | None, candidate: str | None) -> str | None:
    """Return the later of two history ids.

    Gmail history ids are decimal strings; they are compared numerically.
    Non-numeric ids fall back to string comparison.
    """
    if candidate is None:
        return current
    if current is None:
        return candidate
    if current.isdigit() and candidate.isdigit():
        return candidate if int(candidate) > int(current) else current
    return candidate if candidate > current else current


def is_history_id_newer(candidate: str | None, baseline: str | None) -> bool:
    """True when *candidate* is strictly later than *baseline*."""
    if candidate is None:
        return False
    if baseline is None:
        return True
    return candidate != baseline and newer_history_id(baseline, candidate) == candidate


def is_syncable(stub: MessageStub) -> bool:
    if stub.id == stub.thread_id:
        return False
    return not IGNORED_LABELS.intersection(stub.label_ids)


class HistoryAccumulator(BaseModel):
    """Immutable state threaded through the history fold."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    refs: tuple[MessageReference, ...] = ()
    seen_ids: frozenset[str] = frozenset()
    watermark: str | None = None
    pages: int = 0


def fold_history_page(acc: HistoryAccumulator, page: HistoryPage) -> HistoryAccumulator:
    """Fold one history page into the accumulator; first occurrence of an id wins."""
    refs = list(acc.refs)
    seen = set(acc.seen_ids)
    watermark = newer_history_id(acc.watermark, page.history_id)

    for record in page.history:
        watermark = newer_history_id(watermark, record.id)
        stubs = [added.message for added in record.messages_added]
        stubs.extend(record.messages)
        for stub in stubs:
            if stub.id in seen or not is_syncable(stub):
                continue
            seen.add(stub.id)
            refs.append(MessageReference.from_stub(stub))

    return HistoryAccumulator(
        refs=tuple(refs),
        seen_ids=frozenset(seen),
        watermark=watermark,
        pages=acc.pages + 1,
    )


def merge_refs(
    primary: tuple[MessageReference, ...], extra: tuple[MessageReference, ...]
) -> tuple[MessageReference, ...]:
    """Union two ref sequences keyed by message id, keeping *primary* order first."""
    seen = {ref.id for ref in primary}
    merged = list(primary)
    for ref in extra:
        if ref.id not in seen:
            seen.add(ref.id)
            merged.append(ref)
    return tuple(merged)


# ---------------------------------------------------------------------------
# HistorySyncCursor
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Result of draining the history stream for one user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    refs: tuple[MessageReference, ...] = ()
    previous_cursor: str | None = None
    cursor: str | None = None
    rebaselined: bool = False
    backfilled: int = 0


class HistorySyncCursor:
    """Drains Gmail history since a user's stored cursor.

    Owns the ``history_cursor`` field of credentials: commits after a drained
    sync and re-baselines when the cursor is no longer valid.
    """

    def __init__(
        self,
        *,
        store: CredentialRepository,
        metrics: PollMetrics | None = None,
        audit_pool: Any | None = None,
        page_size: int = 100,
    ) -> None:
        self._store = store
        self._metrics = metrics or PollMetrics()
        self._audit_pool = audit_pool
        self._page_size = page_size

    async def sync_since(
        self,
        client: GmailClient,
        cursor: str | None,
        *,
        backfill_days: int = 0,
    ) -> SyncOutcome:
        """Collect new message refs since *cursor*.

        Errors other than an invalid cursor propagate and leave the stored
        cursor untouched.
        """
        user_id = client.user_id

        try:
            acc = await self._collect_history(client, cursor)
        except CursorInvalidError:
            logger.warning("History id %s expired for user=%s; re-baselining", cursor, user_id)
            baseline = await self._rebaseline(client, reason="history cursor invalid")
            return SyncOutcome(previous_cursor=cursor, cursor=baseline, rebaselined=True)

        refs = acc.refs
        backfill = await self._collect_backfill(client, backfill_days)
        if backfill:
            refs = merge_refs(refs, backfill)

        logger.info(
            "History sync for user=%s: pages=%d refs=%d backfilled=%d",
            user_id,
            acc.pages,
            len(refs),
            len(backfill),
        )
        return SyncOutcome(
            refs=refs,
            previous_cursor=cursor,
            cursor=newer_history_id(cursor, acc.watermark),
            backfilled=len(backfill),
        )

    async def commit(self, user_id: str, outcome: SyncOutcome) -> bool:
        """Persist the watermark if it advanced. Returns True when written."""
        if outcome.rebaselined:
            return False
        if not is_history_id_newer(outcome.cursor, outcome.previous_cursor):
            return False
        await self._store.update(user_id, history_cursor=outcome.cursor)
        self._metrics.record_cursor_commit("advance")
        logger.debug("Committed history cursor for user=%s: %s", user_id, outcome.cursor)
        return True

    async def _collect_history(
        self, client: GmailClient, cursor: str | None
    ) -> HistoryAccumulator:
        acc = HistoryAccumulator()
        page_token: str | None = None
        while True:
            page = await client.list_history(
                cursor, page_token=page_token, page_size=self._page_size
            )
            acc = fold_history_page(acc, page)
            page_token = page.next_page_token
            if not page_token:
                return acc

    async def _collect_backfill(
        self, client: GmailClient, days: int
    ) -> tuple[MessageReference, ...]:
        if days <= 0:
            return ()
        days = min(days, MAX_BACKFILL_DAYS)
        query = f"newer_than:{days}d"
        refs: tuple[MessageReference, ...] = ()
        page_token: str | None = None
        while True:
            page = await client.search_messages(
                query, page_token=page_token, page_size=self._page_size
            )
            refs = merge_refs(refs, tuple(MessageReference.from_stub(s) for s in page.messages))
            page_token = page.next_page_token
            if not page_token:
                break
        logger.info(
            "Backfill for user=%s days=%d found %d messages", client.user_id, days, len(refs)
        )
        return refs

    async def _rebaseline(self, client: GmailClient, *, reason: str) -> str:
        profile = await client.get_profile()
        await self._store.update(client.user_id, history_cursor=profile.history_id)
        self._metrics.record_cursor_commit("rebaseline")
        await write_audit_entry(
            self._audit_pool,
            user_id=client.user_id,
            event="history_reset",
            details={"history_id": profile.history_id, "reason": reason},
            level="warn",
        )
        return profile.history_id


# ---------------------------------------------------------------------------
# MessageFetcher
# ---------------------------------------------------------------------------


class MessageFetcher:
    """Fetches full messages, falling back to the thread when a message vanished."""

    def __init__(self, client: GmailClient) -> None:
        self._client = client

    async def fetch(self, ref: MessageReference) -> GmailMessage | None:
        """Return the full message for *ref*, or None when it cannot be recovered.

        Non-404 errors from the primary fetch propagate to the caller's
        per-message boundary.
        """
        try:
            return await self._client.get_message(ref.id)
        except ProviderNotFoundError:
            logger.info(
                "Message %s not found for user=%s; falling back to thread %s",
                ref.id,
                self._client.user_id,
                ref.thread_id,
            )

        if not ref.thread_id:
            return None

        try:
            thread = await self._client.get_thread(ref.thread_id)
        except ProviderRequestError as exc:
            logger.warning(
                "Thread fallback failed for message=%s thread=%s user=%s: %s",
                ref.id,
                ref.thread_id,
                self._client.user_id,
                exc,
            )
            return None

        for message in thread.messages:
            if message.id == ref.id:
                return message

        sent = [m for m in thread.messages if SENT_LABEL in m.label_ids]
        if not sent:
            logger.info("Thread %s has no recoverable message for ref %s", ref.thread_id, ref.id)
            return None
        return max(sent, key=lambda m: m.internal_date)
