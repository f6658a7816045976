"""Connection pool management and store error mapping."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from inviteflow.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_DEFAULT_DB_NAME = "inviteflow"

# Connection-level failures. Query errors (constraint violations, bad SQL)
# are programming errors and propagate unchanged.
_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
)


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def _db_params_from_database_url(database_url: str) -> dict[str, str | int | None]:
    """Parse connection params from a libpq-style DATABASE_URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "inviteflow",
        "password": parsed.password or "inviteflow",
        "database": parsed.path.lstrip("/") or _DEFAULT_DB_NAME,
        "ssl": sslmode,
    }


def db_params_from_env() -> dict[str, str | int | None]:
    """Read DB connection params from environment variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return _db_params_from_database_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "inviteflow"),
        "password": os.environ.get("POSTGRES_PASSWORD", "inviteflow"),
        "database": os.environ.get("POSTGRES_DB", _DEFAULT_DB_NAME),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def sqlalchemy_url_from_params(params: dict[str, str | int | None]) -> str:
    """Build the SQLAlchemy URL Alembic connects with."""
    url = (
        f"postgresql://{params['user']}:{params['password']}"
        f"@{params['host']}:{params['port']}/{params['database']}"
    )
    if params.get("ssl"):
        url += f"?sslmode={params['ssl']}"
    return url


@asynccontextmanager
async def store_guard(operation: str) -> AsyncIterator[None]:
    """Translate connection-level database failures into ``StoreUnavailableError``."""
    try:
        yield
    except _UNAVAILABLE_ERRORS as exc:
        raise StoreUnavailableError(f"Database unavailable during {operation}: {exc}") from exc


class Database:
    """Manages the asyncpg connection pool."""

    def __init__(
        self,
        db_name: str = _DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool."""
        pool_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        async with store_guard("connect"):
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    def sqlalchemy_url(self) -> str:
        return sqlalchemy_url_from_params(
            {
                "host": self.host,
                "port": self.port,
                "user": self.user,
                "password": self.password,
                "database": self.db_name,
                "ssl": self.ssl,
            }
        )

    @classmethod
    def from_env(cls) -> Database:
        """Create a Database from ``DATABASE_URL`` or ``POSTGRES_*`` variables."""
        params = db_params_from_env()
        return cls(
            db_name=str(params["database"]),
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
        )
