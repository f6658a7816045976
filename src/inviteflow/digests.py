"""Digest snapshots and their letter mappings.

A digest is the email the user receives listing pending invites, each
tagged with a letter (A, B, C, ...). Replies refer to invites by those
letters, so the snapshot of what was sent is kept verbatim and never
modified after creation.
"""

from __future__ import annotations

import json
import logging
import string
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from inviteflow.db import store_guard

if TYPE_CHECKING:
    import asyncpg

    from inviteflow.invites import Invite

logger = logging.getLogger(__name__)

LETTERS = string.ascii_uppercase
MAX_DIGEST_ITEMS = len(LETTERS)


def letter_for(index: int) -> str:
    if index < 0 or index >= MAX_DIGEST_ITEMS:
        raise ValueError(f"Digest position {index} has no letter (max {MAX_DIGEST_ITEMS} items)")
    return LETTERS[index]


class DigestItem(BaseModel):
    """One line of a sent digest."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    invite_id: str = ""
    gmail_thread_id: str | None = None
    gmail_message_id: str | None = None
    summary: str = ""
    created_at: str | None = None


class DigestSnapshot(BaseModel):
    """Immutable record of a digest as sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    sent_at: datetime
    items: tuple[DigestItem, ...] = ()
    letter_mapping: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_invites(
        cls,
        user_id: str,
        invites: Sequence[Invite],
        *,
        sent_at: datetime | None = None,
    ) -> DigestSnapshot:
        """Build a snapshot assigning letters by position.

        Raises ``ValueError`` for more than 26 invites.
        """
        if len(invites) > MAX_DIGEST_ITEMS:
            raise ValueError(
                f"A digest holds at most {MAX_DIGEST_ITEMS} invites, got {len(invites)}"
            )
        items = tuple(
            DigestItem(
                invite_id=invite.id,
                gmail_thread_id=invite.thread_id,
                gmail_message_id=invite.primary_message_id,
                summary=invite.summary,
            )
            for invite in invites
        )
        mapping = {letter_for(index): invite.id for index, invite in enumerate(invites)}
        return cls(
            user_id=user_id,
            sent_at=sent_at or datetime.now(UTC),
            items=items,
            letter_mapping=mapping,
        )

    def context(self) -> DigestContext:
        return reconstruct_digest_context(
            [item.model_dump(exclude_none=True) for item in self.items], self.letter_mapping
        )


class DigestContext(BaseModel):
    """Digest text as shown to the reply analyzer, plus the letter lookup table."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str = ""
    letter_mapping: dict[str, str] = Field(default_factory=dict)


def normalize_letter_mapping(mapping: Mapping[str, Any] | None) -> dict[str, str]:
    if not mapping:
        return {}
    return {
        str(key).strip().upper(): str(value)
        for key, value in mapping.items()
        if value is not None and str(value).strip()
    }


def reconstruct_digest_context(
    items: Sequence[Any],
    stored_mapping: Mapping[str, Any] | None = None,
) -> DigestContext:
    """Rebuild digest text and the letter mapping from stored items.

    For each letter the stored mapping wins, then the item's own
    ``invite_id``, then the letter itself. Both ``A`` and ``INVITE A`` keys
    are produced. Stored keys beyond the items are carried through.
    Deterministic for identical input.
    """
    stored = normalize_letter_mapping(stored_mapping)
    mapping: dict[str, str] = {}
    lines: list[str] = []

    for index, item in enumerate(items[:MAX_DIGEST_ITEMS]):
        letter = letter_for(index)
        if isinstance(item, Mapping):
            invite_id = str(item.get("invite_id") or letter)
            summary = str(item.get("summary") or "")
            lines.append(f"{letter}. {invite_id}: {summary}")
        else:
            invite_id = letter
            lines.append(f"{letter}. {item}")

        resolved = stored.get(letter) or stored.get(f"INVITE {letter}") or invite_id
        mapping[letter] = resolved
        mapping[f"INVITE {letter}"] = resolved

    if len(items) > MAX_DIGEST_ITEMS:
        logger.warning(
            "Digest has %d items; only the first %d carry letters", len(items), MAX_DIGEST_ITEMS
        )

    for key, value in stored.items():
        mapping.setdefault(key, value)

    return DigestContext(text="\n\n".join(lines), letter_mapping=mapping)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DigestRepository(Protocol):
    async def latest_for_user(self, user_id: str) -> DigestSnapshot | None:
        """Most recently sent digest for *user_id*."""
        ...


def _decode_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresDigestStore:
    """Read-only access to the ``digest`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def latest_for_user(self, user_id: str) -> DigestSnapshot | None:
        async with store_guard("digest latest"), self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, sent_at, items, letter_mapping FROM digest "
                "WHERE user_id::text = $1 ORDER BY sent_at DESC LIMIT 1",
                user_id,
            )
        if row is None:
            return None

        raw_items = _decode_json(row["items"], [])
        items = tuple(
            DigestItem.model_validate(item)
            if isinstance(item, dict)
            else DigestItem(summary=str(item))
            for item in raw_items
        )
        return DigestSnapshot(
            user_id=str(row["user_id"]),
            sent_at=row["sent_at"],
            items=items,
            letter_mapping=normalize_letter_mapping(_decode_json(row["letter_mapping"], {})),
        )

    def __repr__(self) -> str:
        return f"PostgresDigestStore(pool={self.pool!r})"
