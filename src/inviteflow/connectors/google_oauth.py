"""Google OAuth refresh-token exchange and shared error helpers."""

from __future__ import annotations

import logging
from typing import Any, NoReturn

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from inviteflow.core.metrics import PollMetrics
from inviteflow.errors import TokenRefreshError, TransientProviderError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# OAuth error codes that will never succeed on retry
PERMANENT_OAUTH_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})
PERMANENT_OAUTH_STATUSES = frozenset({400, 401})


def default_http_client(timeout_s: float = 20.0) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, connect=10.0))


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, log-safe error message from a Google error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        message = payload.get("error_description") or payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return error_payload.strip()[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


def oauth_error_code(response: httpx.Response) -> str | None:
    """Return the OAuth ``error`` code (e.g. ``invalid_grant``) when present."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    return None


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class TokenGrant(BaseModel):
    """Validated token endpoint response."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int = 3600

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_in={self.expires_in!r})"
        )

    __str__ = __repr__


class GoogleOAuthClient:
    """Exchanges refresh tokens for access tokens at the Google token endpoint.

    Holds no tokens itself. Callers own persistence and reauth flagging.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        metrics: PollMetrics | None = None,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._metrics = metrics or PollMetrics()
        self._token_url = token_url

    async def exchange(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a fresh access token.

        Raises
        ------
        TokenRefreshError
            With ``permanent=True`` for ``invalid_grant`` / ``invalid_client``
            or HTTP 400/401; ``permanent=False`` for other rejections.
        TransientProviderError
            For timeouts, network errors, 5xx and 429.
        """
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            self._metrics.record_api_call("token.refresh", "error")
            raise TransientProviderError(
                status_code=None,
                message=f"{type(exc).__name__}: {exc}",
                operation="token refresh",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            self._metrics.record_api_call("token.refresh", "error")
            self._raise_for_status(response)

        try:
            payload: Any = response.json()
            grant = TokenGrant.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            self._metrics.record_api_call("token.refresh", "error")
            raise TokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token",
                status_code=response.status_code,
                permanent=False,
            ) from exc

        self._metrics.record_api_call("token.refresh", "success")
        return grant

    def _raise_for_status(self, response: httpx.Response) -> NoReturn:
        status = response.status_code
        message = safe_google_error_message(response)
        if is_transient_status(status):
            raise TransientProviderError(
                status_code=status, message=message, operation="token refresh"
            )
        error_code = oauth_error_code(response)
        permanent = status in PERMANENT_OAUTH_STATUSES or error_code in PERMANENT_OAUTH_ERRORS
        raise TokenRefreshError(
            f"Google OAuth token refresh failed ({status}): {error_code or message}",
            status_code=status,
            permanent=permanent,
        )
