"""Tests for user records and partner loading."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from inviteflow.testing import InMemoryUserDirectory
from inviteflow.users import PostgresUserDirectory, UserRecord, load_users_with_partners

pytestmark = pytest.mark.unit


class TestUserRecord:
    def test_email_normalized(self) -> None:
        assert UserRecord(id="u-1", email="  Ann@Example.COM ").email == "ann@example.com"

    def test_blank_email_rejected(self) -> None:
        with pytest.raises(ValidationError):
            UserRecord(id="u-1", email="   ")


class TestLoadUsersWithPartners:
    async def test_partners_loaded_in_second_lookup(self) -> None:
        directory = InMemoryUserDirectory(
            [
                UserRecord(id="u-1", email="ann@example.com", partner_user_id="u-2"),
                UserRecord(id="u-2", email="bob@example.com", partner_user_id="u-1"),
                UserRecord(id="u-3", email="cat@example.com"),
            ]
        )

        users = await load_users_with_partners(directory, ["u-1"])

        assert set(users) == {"u-1", "u-2"}

    async def test_missing_partner_is_ignored(self) -> None:
        directory = InMemoryUserDirectory(
            [UserRecord(id="u-1", email="ann@example.com", partner_user_id="u-404")]
        )
        users = await load_users_with_partners(directory, ["u-1", "u-9"])
        assert set(users) == {"u-1"}

    async def test_no_second_lookup_when_partners_present(self) -> None:
        directory = MagicMock()
        directory.get_many = AsyncMock(
            return_value={
                "u-1": UserRecord(id="u-1", email="ann@example.com", partner_user_id="u-2"),
                "u-2": UserRecord(id="u-2", email="bob@example.com", partner_user_id="u-1"),
            }
        )

        await load_users_with_partners(directory, ["u-1", "u-2"])

        directory.get_many.assert_awaited_once()


# ---------------------------------------------------------------------------
# PostgresUserDirectory
# ---------------------------------------------------------------------------


def _make_pool(*, fetch_return=None) -> MagicMock:
    """Build a minimal asyncpg pool mock."""
    conn = AsyncMock()
    conn.fetch.return_value = fetch_return or []

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    pool._conn = conn
    return pool


def _make_row(**kwargs) -> MagicMock:
    """Build a mock asyncpg Record-like object."""
    row = MagicMock()
    row.__getitem__ = lambda self, key: kwargs[key]
    return row


class TestPostgresUserDirectory:
    async def test_get_many(self) -> None:
        owner = uuid.uuid4()
        partner = uuid.uuid4()
        pool = _make_pool(
            fetch_return=[
                _make_row(id=owner, email="Ann@Example.com", partner_user_id=partner, tz=None),
            ]
        )

        users = await PostgresUserDirectory(pool).get_many([str(owner)])

        user = users[str(owner)]
        assert user.email == "ann@example.com"
        assert user.partner_user_id == str(partner)
        assert user.tz == "UTC"
        assert pool._conn.fetch.call_args[0][1] == [str(owner)]

    async def test_empty_ids_skip_query(self) -> None:
        pool = _make_pool()
        assert await PostgresUserDirectory(pool).get_many([]) == {}
        pool.acquire.assert_not_called()
