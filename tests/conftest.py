"""Shared fixtures for the inviteflow test suite.

``FakeGoogle`` stands in for both the Google OAuth token endpoint and the
Gmail v1 API behind an ``httpx.MockTransport``. Mailboxes are addressed by
bearer token, so a refresh that mints a new access token must register it
with :meth:`FakeGoogle.grant`.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.fernet import Fernet

from inviteflow.config import InviteflowConfig
from inviteflow.connectors.google_oauth import GOOGLE_OAUTH_TOKEN_URL, GoogleOAuthClient
from inviteflow.credentials import Credential
from inviteflow.invites import InviteDeduplicator
from inviteflow.poller import GmailPoller
from inviteflow.replies import ReplyReconciler
from inviteflow.sync import HistorySyncCursor
from inviteflow.testing import (
    InMemoryCredentialStore,
    InMemoryDigestStore,
    InMemoryInviteStore,
    InMemoryUserDirectory,
    RecordingDecisionSink,
    RecordingNotifier,
    ScriptedExtractor,
)
from inviteflow.tokens import TokenLifecycleManager
from inviteflow.users import UserRecord

_GMAIL_PREFIX = "/gmail/v1/users/me"


def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def gmail_message(
    message_id: str,
    thread_id: str,
    *,
    sender: str,
    to: str = "",
    cc: str = "",
    subject: str = "",
    body: str = "",
    html: str | None = None,
    labels: tuple[str, ...] = ("INBOX",),
    internal_date: int = 0,
) -> dict[str, Any]:
    """A ``format=full`` Gmail message payload."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Subject", "value": subject},
    ]
    if cc:
        headers.append({"name": "Cc", "value": cc})
    parts: list[dict[str, Any]] = [{"mimeType": "text/plain", "body": {"data": b64url(body)}}]
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": b64url(html)}})
    return {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": list(labels),
        "snippet": body[:40],
        "internalDate": str(internal_date),
        "payload": {"mimeType": "multipart/alternative", "headers": headers, "parts": parts},
    }


class FakeMailbox:
    """One Gmail account's history stream and message store."""

    def __init__(self, email: str, *, history_id: int = 100) -> None:
        self.email = email
        self.history_id = history_id
        self.records: list[dict[str, Any]] = []
        self.messages: dict[str, dict[str, Any]] = {}
        self.hidden: set[str] = set()
        self.message_status: dict[str, int] = {}
        self.search_ids: list[str] = []
        self.cursor_invalid = False
        self.history_status: int | None = None

    def add(self, message: dict[str, Any], *, in_history: bool = True) -> str:
        """Store *message* and, by default, append a ``messageAdded`` record."""
        self.messages[message["id"]] = message
        if not in_history:
            return str(self.history_id)
        self.history_id += 1
        self.records.append(
            {
                "id": str(self.history_id),
                "messagesAdded": [
                    {
                        "message": {
                            "id": message["id"],
                            "threadId": message["threadId"],
                            "labelIds": message["labelIds"],
                        }
                    }
                ],
            }
        )
        return str(self.history_id)

    def thread(self, thread_id: str) -> list[dict[str, Any]]:
        return [
            m
            for m in self.messages.values()
            if m["threadId"] == thread_id and m["id"] not in self.hidden
        ]


class FakeGoogle:
    """Token endpoint plus Gmail API served from in-memory mailboxes."""

    def __init__(self) -> None:
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.grants: dict[str, tuple[int, dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []

    def mailbox(self, access_token: str, email: str, **kwargs: Any) -> FakeMailbox:
        box = FakeMailbox(email, **kwargs)
        self.mailboxes[access_token] = box
        return box

    def grant(
        self,
        refresh_token: str,
        access_token: str | None = None,
        *,
        mailbox: FakeMailbox | None = None,
        status: int = 200,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if payload is None:
            payload = {"access_token": access_token, "expires_in": 3600}
        self.grants[refresh_token] = (status, payload)
        if access_token is not None and mailbox is not None:
            self.mailboxes[access_token] = mailbox

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, path_suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path_suffix)]

    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return self._token(request)
        if request.url.path.startswith(_GMAIL_PREFIX):
            return self._gmail(request)
        return httpx.Response(500, json={"error": {"message": "unexpected request"}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        refresh_token = form.get("refresh_token", [""])[0]
        status, payload = self.grants.get(
            refresh_token, (400, {"error": "invalid_grant", "error_description": "Bad Request"})
        )
        return httpx.Response(status, json=payload)

    def _gmail(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        box = self.mailboxes.get(token)
        if box is None:
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid"}})

        path = request.url.path.removeprefix(_GMAIL_PREFIX)
        params = request.url.params
        if path == "/history":
            return self._history(box, params)
        if path == "/profile":
            return httpx.Response(
                200, json={"emailAddress": box.email, "historyId": str(box.history_id)}
            )
        if path == "/messages":
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"id": mid, "threadId": box.messages[mid]["threadId"]}
                        for mid in box.search_ids
                    ]
                },
            )
        if path.startswith("/messages/"):
            message_id = path.removeprefix("/messages/")
            if message_id in box.message_status:
                return httpx.Response(
                    box.message_status[message_id], json={"error": {"message": "boom"}}
                )
            if message_id in box.hidden or message_id not in box.messages:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            return httpx.Response(200, json=box.messages[message_id])
        if path.startswith("/threads/"):
            thread_id = path.removeprefix("/threads/")
            messages = box.thread(thread_id)
            if not messages:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            return httpx.Response(200, json={"id": thread_id, "messages": messages})
        return httpx.Response(404, json={"error": {"message": "Unknown path"}})

    def _history(self, box: FakeMailbox, params: httpx.QueryParams) -> httpx.Response:
        if box.history_status is not None:
            return httpx.Response(box.history_status, json={"error": {"message": "boom"}})
        if box.cursor_invalid:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        start = params.get("startHistoryId")
        records = [r for r in box.records if start is None or int(r["id"]) > int(start)]
        offset = int(params.get("pageToken") or 0)
        size = int(params.get("maxResults") or 100)
        page = records[offset : offset + size]
        body: dict[str, Any] = {"history": page, "historyId": str(box.history_id)}
        if offset + size < len(records):
            body["nextPageToken"] = str(offset + size)
        return httpx.Response(200, json=body)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fernet_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def config(fernet_key: str) -> InviteflowConfig:
    return InviteflowConfig(
        google_client_id="cid",
        google_client_secret="secret",
        token_encryption_key=fernet_key,
    )


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(fake_google: FakeGoogle):
    client = fake_google.client()
    yield client
    await client.aclose()


class Engine:
    """Fully wired poller over in-memory stores and the fake Google backend."""

    def __init__(
        self,
        *,
        config: InviteflowConfig,
        http_client: httpx.AsyncClient,
        credentials: list[Credential],
        users: list[UserRecord],
    ) -> None:
        self.credentials = InMemoryCredentialStore(credentials)
        self.users = InMemoryUserDirectory(users)
        self.invites = InMemoryInviteStore()
        self.digests = InMemoryDigestStore()
        self.sink = RecordingDecisionSink()
        self.notifier = RecordingNotifier()
        self.extractor = ScriptedExtractor()
        self.deduplicator = InviteDeduplicator(self.invites)
        self.tokens = TokenLifecycleManager(
            store=self.credentials,
            oauth=GoogleOAuthClient(
                client_id="cid", client_secret="secret", http_client=http_client
            ),
            notifier=self.notifier,
        )
        self.poller = GmailPoller(
            config=config,
            credentials=self.credentials,
            users=self.users,
            tokens=self.tokens,
            cursor=HistorySyncCursor(store=self.credentials),
            deduplicator=self.deduplicator,
            reconciler=ReplyReconciler(
                extractor=self.extractor,
                deduplicator=self.deduplicator,
                digests=self.digests,
                sink=self.sink,
            ),
            extractor=self.extractor,
            http_client=http_client,
        )


@pytest.fixture
def make_engine(
    config: InviteflowConfig, http_client: httpx.AsyncClient
) -> Callable[..., Engine]:
    def _make(credentials: list[Credential], users: list[UserRecord]) -> Engine:
        return Engine(
            config=config, http_client=http_client, credentials=credentials, users=users
        )

    return _make
