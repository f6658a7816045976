"""Gmail REST client bound to one user's auth session.

Maps HTTP outcomes onto the error taxonomy:

- 401: one refresh-and-retry through the :class:`~inviteflow.tokens.AuthSession`;
  a second 401 flags the credential and raises ``AuthExpiredError``
- 404: ``ProviderNotFoundError`` (``CursorInvalidError`` for history.list)
- 429, 5xx, 403 rate limits, timeouts, network errors: ``TransientProviderError``
- anything else non-2xx: ``ProviderRequestError``
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from inviteflow.connectors.gmail_models import (
    GmailMessage,
    GmailProfile,
    GmailThread,
    HistoryPage,
    MessageListPage,
)
from inviteflow.connectors.google_oauth import is_transient_status, safe_google_error_message
from inviteflow.core.metrics import PollMetrics, get_error_type
from inviteflow.errors import (
    CursorInvalidError,
    ProviderNotFoundError,
    ProviderRequestError,
    TransientProviderError,
)

if TYPE_CHECKING:
    from inviteflow.tokens import AuthSession

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
DEFAULT_PAGE_SIZE = 100
_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})

ModelT = TypeVar("ModelT", bound=BaseModel)


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    error = payload.get("error") if isinstance(payload, dict) else None
    errors = error.get("errors") if isinstance(error, dict) else None
    if not isinstance(errors, list):
        return set()
    return {
        item["reason"]
        for item in errors
        if isinstance(item, dict) and isinstance(item.get("reason"), str)
    }


class GmailClient:
    """Thin typed wrapper over the Gmail v1 endpoints the sync engine uses."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        session: AuthSession,
        metrics: PollMetrics | None = None,
        base_url: str = GMAIL_API_BASE_URL,
    ) -> None:
        self._http_client = http_client
        self._session = session
        self._metrics = metrics or PollMetrics()
        self._base_url = base_url.rstrip("/")

    @property
    def user_id(self) -> str:
        return self._session.user_id

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def list_history(
        self,
        start_history_id: str | None,
        *,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> HistoryPage:
        """Fetch one page of ``messageAdded`` history since *start_history_id*.

        Raises ``CursorInvalidError`` when Gmail no longer knows the start id.
        """
        params: dict[str, Any] = {
            "historyTypes": "messageAdded",
            "maxResults": page_size,
        }
        if start_history_id is not None:
            params["startHistoryId"] = start_history_id
        if page_token is not None:
            params["pageToken"] = page_token
        return await self._get(
            "history.list",
            "/history",
            HistoryPage,
            params=params,
            not_found=CursorInvalidError,
        )

    async def get_profile(self) -> GmailProfile:
        return await self._get("profile.get", "/profile", GmailProfile)

    async def get_message(self, message_id: str) -> GmailMessage:
        return await self._get(
            "messages.get",
            f"/messages/{message_id}",
            GmailMessage,
            params={"format": "full"},
        )

    async def get_thread(self, thread_id: str) -> GmailThread:
        return await self._get(
            "threads.get",
            f"/threads/{thread_id}",
            GmailThread,
            params={"format": "full"},
        )

    async def search_messages(
        self,
        query: str,
        *,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> MessageListPage:
        params: dict[str, Any] = {
            "q": query,
            "maxResults": page_size,
            "fields": "messages(id,threadId,labelIds),nextPageToken",
        }
        if page_token is not None:
            params["pageToken"] = page_token
        return await self._get("messages.list", "/messages", MessageListPage, params=params)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, api_method: str, url: str, params: dict[str, Any] | None, token: str):
        try:
            return await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            self._metrics.record_api_call(api_method, "error")
            self._metrics.record_error(get_error_type(exc), api_method)
            raise TransientProviderError(
                status_code=None,
                message=f"{type(exc).__name__}: {exc}",
                operation=api_method,
            ) from exc

    async def _get(
        self,
        api_method: str,
        path: str,
        model: type[ModelT],
        *,
        params: dict[str, Any] | None = None,
        not_found: type[ProviderNotFoundError] = ProviderNotFoundError,
    ) -> ModelT:
        url = f"{self._base_url}{path}"
        token = await self._session.access_token()
        response = await self._send(api_method, url, params, token)

        if response.status_code == 401:
            self._metrics.record_api_call(api_method, "unauthorized")
            token = await self._session.handle_unauthorized()
            response = await self._send(api_method, url, params, token)
            if response.status_code == 401:
                self._metrics.record_api_call(api_method, "unauthorized")
                await self._session.handle_unauthorized()

        status = response.status_code
        if status < 200 or status >= 300:
            self._raise_for_status(api_method, response, not_found)

        try:
            parsed = model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            self._metrics.record_api_call(api_method, "error")
            raise ProviderRequestError(
                status_code=status,
                message=f"Invalid {api_method} payload: {exc}",
                operation=api_method,
            ) from exc

        self._metrics.record_api_call(api_method, "success")
        return parsed

    def _raise_for_status(
        self,
        api_method: str,
        response: httpx.Response,
        not_found: type[ProviderNotFoundError],
    ) -> None:
        status = response.status_code
        message = safe_google_error_message(response)

        if status == 404:
            self._metrics.record_api_call(api_method, "not_found")
            raise not_found(status_code=status, message=message, operation=api_method)

        self._metrics.record_api_call(api_method, "error")
        logger.warning(
            "Gmail %s failed status=%s user=%s details=%s",
            api_method,
            status,
            self.user_id,
            message,
        )
        if is_transient_status(status) or (
            status == 403 and _error_reasons(response) & _RATE_LIMIT_REASONS
        ):
            raise TransientProviderError(status_code=status, message=message, operation=api_method)
        raise ProviderRequestError(status_code=status, message=message, operation=api_method)
