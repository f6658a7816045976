"""Canonical invites: dedup, shared-thread merge, and decision transitions.

One thread yields at most one :class:`Invite`. When a second user sees the
same thread (typically a partner copied on the email) the existing row is
shared with them through ``shared_user_ids`` instead of being duplicated.

Decision transitions::

    pending --yes--> approved
    pending --no---> declined
    pending --maybe-> pending   (notes and confidence still recorded)

``approved`` and ``declined`` are terminal.
"""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from inviteflow.core.metrics import PollMetrics
from inviteflow.db import store_guard
from inviteflow.extraction import Decision, InviteExtraction
from inviteflow.users import UserRecord

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

InviteStatus = Literal["pending", "approved", "declined"]

DECISION_TO_STATUS: dict[str, InviteStatus] = {
    "yes": "approved",
    "no": "declined",
    "maybe": "pending",
}

TERMINAL_STATUSES = frozenset({"approved", "declined"})


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Invite(BaseModel):
    """Persisted canonical invite for one email thread."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    owner_user_id: str
    thread_id: str
    primary_message_id: str
    subject: str = ""
    parsed_payload: dict[str, Any] = Field(default_factory=dict)
    shared_user_ids: frozenset[str] = frozenset()
    status: InviteStatus = "pending"
    notes: str | None = None
    preprocessor_confidence: float | None = None
    html_formatting_detected: bool = False

    @property
    def external_ref(self) -> str | None:
        ref = self.parsed_payload.get("external_ref") or self.parsed_payload.get("invite_id")
        return str(ref) if ref else None

    @property
    def summary(self) -> str:
        return str(self.parsed_payload.get("summary") or self.parsed_payload.get("title") or "")

    def visible_to(self, user_id: str) -> bool:
        return user_id == self.owner_user_id or user_id in self.shared_user_ids


class NewInvite(BaseModel):
    """Insert payload for a not-yet-persisted invite."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    owner_user_id: str
    thread_id: str
    primary_message_id: str
    subject: str = ""
    parsed_payload: dict[str, Any]
    shared_user_ids: frozenset[str] = frozenset()


class InviteCandidate(BaseModel):
    """An extracted invite proposal seen in one user's mailbox."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    message_id: str
    thread_id: str
    subject: str = ""
    recipients: frozenset[str] = frozenset()
    extraction: InviteExtraction
    partner: UserRecord | None = None

    def detected_shared_users(self) -> frozenset[str]:
        """Partner id when the partner's address is among the recipients."""
        partner = self.partner
        if partner is None or partner.id == self.user_id:
            return frozenset()
        if partner.email in self.recipients:
            return frozenset({partner.id})
        return frozenset()


class MergeOutcome(StrEnum):
    SKIPPED_INCOMPLETE = "skipped_incomplete"
    DUPLICATE_MESSAGE = "duplicate_message"
    MERGED = "merged"
    MERGE_NOOP = "merge_noop"
    CREATED = "created"
    DRY_RUN = "dry_run"


class MergeResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    outcome: MergeOutcome
    invite_id: str | None = None


class DecisionOutcome(StrEnum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    TERMINAL = "terminal"
    UNKNOWN_INVITE = "unknown_invite"
    DRY_RUN = "dry_run"


class DecisionResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    outcome: DecisionOutcome
    invite_id: str | None = None
    status: InviteStatus | None = None


# ---------------------------------------------------------------------------
# Repository contract
# ---------------------------------------------------------------------------


class InviteRepository(Protocol):
    """Persistence contract for invites. Holds no domain logic."""

    async def get(self, invite_id: str) -> Invite | None:
        ...

    async def get_by_message_id(self, message_id: str) -> Invite | None:
        ...

    async def get_by_thread_id(self, thread_id: str) -> Invite | None:
        ...

    async def find_by_external_ref(self, user_id: str, external_ref: str) -> Invite | None:
        """Most recent invite visible to *user_id* whose payload carries *external_ref*."""
        ...

    async def insert_if_absent(self, invite: NewInvite) -> Invite | None:
        """Insert *invite*; return None when a row for its thread or message exists."""
        ...

    async def add_shared_users(self, invite_id: str, user_ids: frozenset[str]) -> frozenset[str]:
        """Union *user_ids* into ``shared_user_ids``; return the resulting set."""
        ...

    async def update_decision(
        self,
        invite_id: str,
        *,
        expected_status: InviteStatus,
        status: InviteStatus,
        notes: str | None,
        confidence: float | None,
        html_formatting_detected: bool,
    ) -> bool:
        """Write a decision only if the row still has *expected_status*."""
        ...


# ---------------------------------------------------------------------------
# InviteDeduplicator
# ---------------------------------------------------------------------------


class InviteDeduplicator:
    """Creates, merges and transitions canonical invites.

    Parameters
    ----------
    repository:
        Invite persistence.
    metrics:
        Metrics helper; a fresh :class:`PollMetrics` when omitted.
    """

    def __init__(self, repository: InviteRepository, metrics: PollMetrics | None = None) -> None:
        self._repository = repository
        self._metrics = metrics or PollMetrics()

    async def apply(self, candidate: InviteCandidate, *, dry_run: bool = False) -> MergeResult:
        result = await self._apply(candidate, dry_run=dry_run)
        self._metrics.record_invite_outcome(result.outcome.value)
        logger.info(
            "Invite candidate user=%s message=%s thread=%s: %s",
            candidate.user_id,
            candidate.message_id,
            candidate.thread_id,
            result.outcome.value,
        )
        return result

    async def _apply(self, candidate: InviteCandidate, *, dry_run: bool) -> MergeResult:
        if not candidate.extraction.is_complete:
            return MergeResult(outcome=MergeOutcome.SKIPPED_INCOMPLETE)

        existing = await self._repository.get_by_message_id(candidate.message_id)
        if existing is not None:
            return MergeResult(outcome=MergeOutcome.DUPLICATE_MESSAGE, invite_id=existing.id)

        related = await self._repository.get_by_thread_id(candidate.thread_id)

        if dry_run:
            return MergeResult(
                outcome=MergeOutcome.DRY_RUN,
                invite_id=related.id if related is not None else None,
            )

        if related is not None:
            return await self._merge(related, candidate)

        shared = candidate.detected_shared_users() - {candidate.user_id}
        inserted = await self._repository.insert_if_absent(
            NewInvite(
                owner_user_id=candidate.user_id,
                thread_id=candidate.thread_id,
                primary_message_id=candidate.message_id,
                subject=candidate.subject,
                parsed_payload=candidate.extraction.to_payload(),
                shared_user_ids=shared,
            )
        )
        if inserted is not None:
            return MergeResult(outcome=MergeOutcome.CREATED, invite_id=inserted.id)

        # Lost an insert race: merge into whichever row won.
        winner = await self._repository.get_by_thread_id(candidate.thread_id)
        if winner is None:
            winner = await self._repository.get_by_message_id(candidate.message_id)
            if winner is not None:
                return MergeResult(outcome=MergeOutcome.DUPLICATE_MESSAGE, invite_id=winner.id)
            raise RuntimeError(
                f"Insert for thread {candidate.thread_id} conflicted but no row was found"
            )
        return await self._merge(winner, candidate)

    async def _merge(self, invite: Invite, candidate: InviteCandidate) -> MergeResult:
        additions = set(candidate.detected_shared_users())
        additions.add(candidate.user_id)
        additions.discard(invite.owner_user_id)

        missing = frozenset(additions) - invite.shared_user_ids
        if not missing:
            return MergeResult(outcome=MergeOutcome.MERGE_NOOP, invite_id=invite.id)

        await self._repository.add_shared_users(invite.id, missing)
        return MergeResult(outcome=MergeOutcome.MERGED, invite_id=invite.id)

    async def apply_decision(
        self,
        user_id: str,
        invite_id: str,
        decision: Decision,
        *,
        notes: str | None = None,
        confidence: float | None = None,
        html_formatting_detected: bool = False,
        dry_run: bool = False,
    ) -> DecisionResult:
        """Apply a reply decision to the invite *user_id* refers to.

        *invite_id* is tried as a stored invite id first and then as the
        extraction's ``external_ref`` among invites visible to the user.
        """
        result = await self._apply_decision(
            user_id,
            invite_id,
            decision,
            notes=notes,
            confidence=confidence,
            html_formatting_detected=html_formatting_detected,
            dry_run=dry_run,
        )
        self._metrics.record_decision(result.outcome.value)
        return result

    async def _apply_decision(
        self,
        user_id: str,
        invite_id: str,
        decision: Decision,
        *,
        notes: str | None,
        confidence: float | None,
        html_formatting_detected: bool,
        dry_run: bool,
    ) -> DecisionResult:
        invite = await self._resolve_visible(user_id, invite_id)
        if invite is None:
            logger.info("Decision for unknown invite %r from user=%s ignored", invite_id, user_id)
            return DecisionResult(outcome=DecisionOutcome.UNKNOWN_INVITE)

        target = DECISION_TO_STATUS[decision]
        terminal = _terminal_result(invite, target)
        if terminal is not None:
            return terminal

        merged_notes = notes if notes is not None else invite.notes
        if (
            target == invite.status
            and merged_notes == invite.notes
            and confidence == invite.preprocessor_confidence
            and html_formatting_detected == invite.html_formatting_detected
        ):
            return DecisionResult(
                outcome=DecisionOutcome.UNCHANGED, invite_id=invite.id, status=invite.status
            )

        if dry_run:
            return DecisionResult(
                outcome=DecisionOutcome.DRY_RUN, invite_id=invite.id, status=target
            )

        written = await self._repository.update_decision(
            invite.id,
            expected_status="pending",
            status=target,
            notes=merged_notes,
            confidence=confidence,
            html_formatting_detected=html_formatting_detected,
        )
        if not written:
            # Another writer finalized the invite between read and write.
            current = await self._repository.get(invite.id)
            if current is None:
                return DecisionResult(outcome=DecisionOutcome.UNKNOWN_INVITE)
            return _terminal_result(current, target) or DecisionResult(
                outcome=DecisionOutcome.UNCHANGED, invite_id=current.id, status=current.status
            )

        logger.info(
            "Invite %s for user=%s: %s -> %s (decision=%s)",
            invite.id,
            user_id,
            invite.status,
            target,
            decision,
        )
        return DecisionResult(outcome=DecisionOutcome.APPLIED, invite_id=invite.id, status=target)

    async def _resolve_visible(self, user_id: str, reference: str) -> Invite | None:
        invite = await self._repository.get(reference)
        if invite is not None and invite.visible_to(user_id):
            return invite
        return await self._repository.find_by_external_ref(user_id, reference)


def _terminal_result(invite: Invite, target: InviteStatus) -> DecisionResult | None:
    if invite.status not in TERMINAL_STATUSES:
        return None
    outcome = DecisionOutcome.UNCHANGED if invite.status == target else DecisionOutcome.TERMINAL
    return DecisionResult(outcome=outcome, invite_id=invite.id, status=invite.status)


# ---------------------------------------------------------------------------
# PostgresInviteStore
# ---------------------------------------------------------------------------

_COLUMNS = (
    "id, user_id, gmail_thread_id, gmail_message_id, subject, parsed, shared_user_ids, "
    "status, notes, preprocessor_confidence, html_formatting_detected"
)


def _decode_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_invite(row: Any) -> Invite:
    confidence = row["preprocessor_confidence"]
    return Invite(
        id=str(row["id"]),
        owner_user_id=str(row["user_id"]),
        thread_id=row["gmail_thread_id"],
        primary_message_id=row["gmail_message_id"],
        subject=row["subject"] or "",
        parsed_payload=_decode_json(row["parsed"]),
        shared_user_ids=frozenset(row["shared_user_ids"] or ()),
        status=row["status"],
        notes=row["notes"],
        preprocessor_confidence=float(confidence) if confidence is not None else None,
        html_formatting_detected=bool(row["html_formatting_detected"]),
    )


class PostgresInviteStore:
    """Invite repository backed by the ``invite`` table.

    ``gmail_thread_id`` and ``gmail_message_id`` are both unique, which is
    what makes :meth:`insert_if_absent` race-safe.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def _fetch_one(self, operation: str, where: str, *args: Any) -> Invite | None:
        async with store_guard(operation), self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM invite WHERE {where}", *args)
        return _row_to_invite(row) if row is not None else None

    async def get(self, invite_id: str) -> Invite | None:
        return await self._fetch_one("invite get", "id::text = $1", invite_id)

    async def get_by_message_id(self, message_id: str) -> Invite | None:
        return await self._fetch_one("invite by message", "gmail_message_id = $1", message_id)

    async def get_by_thread_id(self, thread_id: str) -> Invite | None:
        return await self._fetch_one("invite by thread", "gmail_thread_id = $1", thread_id)

    async def find_by_external_ref(self, user_id: str, external_ref: str) -> Invite | None:
        return await self._fetch_one(
            "invite by external ref",
            "COALESCE(parsed->>'external_ref', parsed->>'invite_id') = $2 "
            "AND (user_id::text = $1 OR $1 = ANY(shared_user_ids)) "
            "ORDER BY created_at DESC LIMIT 1",
            user_id,
            external_ref,
        )

    async def insert_if_absent(self, invite: NewInvite) -> Invite | None:
        async with store_guard("invite insert"), self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO invite (user_id, gmail_thread_id, gmail_message_id, subject, "
                "parsed, shared_user_ids, status) "
                "VALUES ($1, $2, $3, $4, $5::jsonb, $6::text[], 'pending') "
                f"ON CONFLICT DO NOTHING RETURNING {_COLUMNS}",
                invite.owner_user_id,
                invite.thread_id,
                invite.primary_message_id,
                invite.subject,
                json.dumps(invite.parsed_payload),
                sorted(invite.shared_user_ids),
            )
        return _row_to_invite(row) if row is not None else None

    async def add_shared_users(self, invite_id: str, user_ids: frozenset[str]) -> frozenset[str]:
        async with store_guard("invite share"), self.pool.acquire() as conn:
            merged = await conn.fetchval(
                "UPDATE invite SET shared_user_ids = ARRAY("
                "SELECT DISTINCT u FROM unnest(shared_user_ids || $2::text[]) AS u ORDER BY u"
                "), updated_at = now() WHERE id::text = $1 RETURNING shared_user_ids",
                invite_id,
                sorted(user_ids),
            )
        return frozenset(merged or ())

    async def update_decision(
        self,
        invite_id: str,
        *,
        expected_status: InviteStatus,
        status: InviteStatus,
        notes: str | None,
        confidence: float | None,
        html_formatting_detected: bool,
    ) -> bool:
        async with store_guard("invite decision"), self.pool.acquire() as conn:
            written = await conn.fetchval(
                "UPDATE invite SET status = $3, notes = $4, preprocessor_confidence = $5, "
                "html_formatting_detected = $6, updated_at = now() "
                "WHERE id::text = $1 AND status = $2 RETURNING id",
                invite_id,
                expected_status,
                status,
                notes,
                confidence,
                html_formatting_detected,
            )
        return written is not None

    def __repr__(self) -> str:
        return f"PostgresInviteStore(pool={self.pool!r})"
