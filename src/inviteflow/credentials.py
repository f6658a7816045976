"""Per-user OAuth credential records and their stores.

A credential couples the user's Gmail refresh/access tokens with the two
pieces of sync state that travel with them:

- ``needs_reauth``: sticky flag. Flipped false→true here; only an external
  re-consent flow ever clears it.
- ``history_cursor``: last committed Gmail history id.

Tokens are encrypted at rest with :class:`~inviteflow.crypto.TokenCipher`.
A token that fails to decrypt makes the whole credential unreadable
(:class:`~inviteflow.errors.SecretDecryptionError`); no partial credential
is ever returned.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict

from inviteflow.db import store_guard

if TYPE_CHECKING:
    import asyncpg

    from inviteflow.crypto import TokenCipher

logger = logging.getLogger(__name__)

_TABLE = "user_credentials"

# Fields that callers may update independently of each other.
UPDATABLE_FIELDS = frozenset({"access_token", "refresh_token", "history_cursor"})


# ---------------------------------------------------------------------------
# Credential model
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Decrypted view of one user's Gmail credential."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    needs_reauth: bool = False
    history_cursor: str | None = None

    def __repr__(self) -> str:
        return (
            f"Credential("
            f"user_id={self.user_id!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"needs_reauth={self.needs_reauth!r}, "
            f"history_cursor={self.history_cursor!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Repository contract
# ---------------------------------------------------------------------------


class CredentialRepository(Protocol):
    """Persistence contract for per-user credentials."""

    async def get(self, user_id: str) -> Credential | None:
        """Load and decrypt one credential."""
        ...

    async def update(self, user_id: str, **fields: Any) -> None:
        """Partially update ``access_token``, ``refresh_token`` and/or ``history_cursor``."""
        ...

    async def mark_needs_reauth(self, user_id: str) -> bool:
        """Set ``needs_reauth``; return True only if this call flipped it."""
        ...

    async def list_eligible_user_ids(self) -> list[str]:
        """Ids of users whose credential does not need re-authentication.

        Tokens are not decrypted here; callers load each credential with
        :meth:`get` inside their per-user failure boundary.
        """
        ...


def validate_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported credential field(s): {', '.join(sorted(unknown))}")
    if not fields:
        raise ValueError("update requires at least one field")


# ---------------------------------------------------------------------------
# PostgresCredentialStore
# ---------------------------------------------------------------------------


class PostgresCredentialStore:
    """Credential store backed by the ``user_credentials`` table.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    cipher:
        Cipher used to encrypt tokens on write and decrypt them on read.
    """

    def __init__(self, pool: asyncpg.Pool, cipher: TokenCipher) -> None:
        self.pool = pool
        self._cipher = cipher

    def _decode(self, row: Any) -> Credential:
        return Credential(
            user_id=str(row["user_id"]),
            access_token=self._cipher.decrypt_optional(row["access_token_enc"]),
            refresh_token=self._cipher.decrypt_optional(row["refresh_token_enc"]),
            needs_reauth=bool(row["needs_reauth"]),
            history_cursor=row["last_history_id"],
        )

    async def get(self, user_id: str) -> Credential | None:
        """Load one credential.

        Raises
        ------
        SecretDecryptionError
            If a stored token cannot be decrypted.
        StoreUnavailableError
            If the database cannot be reached.
        """
        async with store_guard("credential get"), self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT user_id, access_token_enc, refresh_token_enc, needs_reauth, "
                f"last_history_id FROM {_TABLE} WHERE user_id = $1",
                user_id,
            )
        if row is None:
            return None
        return self._decode(row)

    async def update(self, user_id: str, **fields: Any) -> None:
        validate_update_fields(fields)

        columns: list[str] = []
        args: list[Any] = [user_id]
        if "access_token" in fields:
            args.append(self._cipher.encrypt_optional(fields["access_token"]))
            columns.append(f"access_token_enc = ${len(args)}")
        if "refresh_token" in fields:
            args.append(self._cipher.encrypt_optional(fields["refresh_token"]))
            columns.append(f"refresh_token_enc = ${len(args)}")
        if "history_cursor" in fields:
            args.append(fields["history_cursor"])
            columns.append(f"last_history_id = ${len(args)}")

        async with store_guard("credential update"), self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE {_TABLE} SET {', '.join(columns)}, updated_at = now() WHERE user_id = $1",
                *args,
            )

    async def mark_needs_reauth(self, user_id: str) -> bool:
        async with store_guard("credential reauth flag"), self.pool.acquire() as conn:
            flipped = await conn.fetchval(
                f"UPDATE {_TABLE} SET needs_reauth = true, updated_at = now() "
                "WHERE user_id = $1 AND needs_reauth = false RETURNING user_id",
                user_id,
            )
        return flipped is not None

    async def list_eligible_user_ids(self) -> list[str]:
        async with store_guard("credential list"), self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT user_id FROM {_TABLE} WHERE needs_reauth = false ORDER BY user_id"
            )
        return [str(row["user_id"]) for row in rows]

    def __repr__(self) -> str:
        return f"PostgresCredentialStore(pool={self.pool!r})"
