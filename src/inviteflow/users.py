"""User directory: email identity and partner linkage."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from inviteflow.db import store_guard

if TYPE_CHECKING:
    import asyncpg


class UserRecord(BaseModel):
    """One application user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    email: str
    partner_user_id: str | None = None
    tz: str = "UTC"

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("email must be a non-empty string")
        return normalized


class UserDirectory(Protocol):
    """Read-only lookup of users by id."""

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, UserRecord]:
        """Return the users that exist among *user_ids*, keyed by id."""
        ...


async def load_users_with_partners(
    directory: UserDirectory, user_ids: Iterable[str]
) -> dict[str, UserRecord]:
    """Load *user_ids* and, in a second lookup, every partner they link to."""
    users = await directory.get_many(list(user_ids))
    partner_ids = {
        user.partner_user_id
        for user in users.values()
        if user.partner_user_id is not None and user.partner_user_id not in users
    }
    if partner_ids:
        users = {**users, **await directory.get_many(sorted(partner_ids))}
    return users


class PostgresUserDirectory:
    """User directory backed by the ``app_user`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, UserRecord]:
        ids = list(user_ids)
        if not ids:
            return {}
        async with store_guard("user lookup"), self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, email, partner_user_id, tz FROM app_user "
                "WHERE id::text = ANY($1::text[])",
                ids,
            )
        return {str(row["id"]): _row_to_user(row) for row in rows}


def _row_to_user(row: Any) -> UserRecord:
    partner = row["partner_user_id"]
    return UserRecord(
        id=str(row["id"]),
        email=row["email"],
        partner_user_id=str(partner) if partner is not None else None,
        tz=row["tz"] or "UTC",
    )
