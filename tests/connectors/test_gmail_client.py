"""Tests for GmailClient status mapping and the single refresh-and-retry."""

from __future__ import annotations

import httpx
import pytest
from conftest import FakeGoogle, gmail_message

from inviteflow.connectors.gmail import GmailClient
from inviteflow.connectors.google_oauth import GoogleOAuthClient
from inviteflow.credentials import Credential
from inviteflow.errors import (
    AuthExpiredError,
    CursorInvalidError,
    ProviderNotFoundError,
    ProviderRequestError,
    TransientProviderError,
)
from inviteflow.testing import InMemoryCredentialStore, RecordingNotifier
from inviteflow.tokens import TokenLifecycleManager

pytestmark = pytest.mark.unit


class _Harness:
    def __init__(self, fake: FakeGoogle, http_client: httpx.AsyncClient, credential: Credential):
        self.store = InMemoryCredentialStore([credential])
        self.notifier = RecordingNotifier()
        self.manager = TokenLifecycleManager(
            store=self.store,
            oauth=GoogleOAuthClient(
                client_id="cid", client_secret="secret", http_client=http_client
            ),
            notifier=self.notifier,
        )
        self.session = self.manager.open_session(credential, email="ann@example.com")
        self.client = GmailClient(http_client=http_client, session=self.session)


@pytest.fixture
def harness(fake_google: FakeGoogle, http_client: httpx.AsyncClient) -> _Harness:
    credential = Credential(user_id="u-1", access_token="tok-1", refresh_token="r-1")
    return _Harness(fake_google, http_client, credential)


class TestEndpoints:
    async def test_get_message_parses_payload(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        box = fake_google.mailbox("tok-1", "ann@example.com")
        box.add(
            gmail_message(
                "m-1", "t-1", sender="Bob <bob@example.com>", subject="Dinner", body="Friday?"
            )
        )

        message = await harness.client.get_message("m-1")

        assert message.id == "m-1"
        assert message.thread_id == "t-1"
        assert message.subject == "Dinner"
        assert message.plain_text() == "Friday?"
        request = fake_google.calls("/messages/m-1")[0]
        assert request.url.params["format"] == "full"
        assert request.headers["Authorization"] == "Bearer tok-1"

    async def test_list_history_sends_cursor_and_page_token(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        fake_google.mailbox("tok-1", "ann@example.com", history_id=42)

        page = await harness.client.list_history("10", page_token="5", page_size=50)

        assert page.history == []
        assert page.history_id == "42"
        params = fake_google.calls("/history")[0].url.params
        assert params["startHistoryId"] == "10"
        assert params["pageToken"] == "5"
        assert params["maxResults"] == "50"
        assert params["historyTypes"] == "messageAdded"

    async def test_list_history_without_cursor_omits_start(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        fake_google.mailbox("tok-1", "ann@example.com")
        await harness.client.list_history(None)
        assert "startHistoryId" not in fake_google.calls("/history")[0].url.params

    async def test_search_messages_sends_query(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        box = fake_google.mailbox("tok-1", "ann@example.com")
        box.add(gmail_message("m-1", "t-1", sender="bob@example.com"), in_history=False)
        box.search_ids = ["m-1"]

        page = await harness.client.search_messages("newer_than:3d")

        assert [m.id for m in page.messages] == ["m-1"]
        assert fake_google.calls("/messages")[0].url.params["q"] == "newer_than:3d"

    async def test_get_profile(self, fake_google: FakeGoogle, harness: _Harness) -> None:
        fake_google.mailbox("tok-1", "ann@example.com", history_id=777)
        profile = await harness.client.get_profile()
        assert profile.history_id == "777"
        assert profile.email_address == "ann@example.com"


class TestStatusMapping:
    async def test_history_404_is_cursor_invalid(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        fake_google.mailbox("tok-1", "ann@example.com").cursor_invalid = True
        with pytest.raises(CursorInvalidError):
            await harness.client.list_history("1")

    async def test_message_404_is_not_found(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        fake_google.mailbox("tok-1", "ann@example.com")
        with pytest.raises(ProviderNotFoundError) as exc_info:
            await harness.client.get_message("missing")
        assert not isinstance(exc_info.value, CursorInvalidError)

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses(
        self, fake_google: FakeGoogle, harness: _Harness, status: int
    ) -> None:
        box = fake_google.mailbox("tok-1", "ann@example.com")
        box.message_status["m-1"] = status
        with pytest.raises(TransientProviderError):
            await harness.client.get_message("m-1")

    async def test_403_rate_limit_is_transient(self, harness: _Harness) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                json={
                    "error": {
                        "code": 403,
                        "message": "User-rate limit exceeded",
                        "errors": [{"reason": "userRateLimitExceeded"}],
                    }
                },
            )

        client = GmailClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            session=harness.session,
        )
        with pytest.raises(TransientProviderError):
            await client.get_message("m-1")

    async def test_403_other_reason_is_not_transient(
        self, fake_google: FakeGoogle, harness: _Harness
    ) -> None:
        box = fake_google.mailbox("tok-1", "ann@example.com")
        box.message_status["m-1"] = 403
        with pytest.raises(ProviderRequestError) as exc_info:
            await harness.client.get_message("m-1")
        assert not isinstance(exc_info.value, TransientProviderError)
        assert exc_info.value.status_code == 403

    async def test_network_error_is_transient(self, harness: _Harness) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = GmailClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            session=harness.session,
        )
        with pytest.raises(TransientProviderError):
            await client.get_profile()

    async def test_invalid_payload_is_request_error(self, harness: _Harness) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"emailAddress": "ann@example.com"})

        client = GmailClient(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            session=harness.session,
        )
        with pytest.raises(ProviderRequestError, match="profile.get"):
            await client.get_profile()


class TestUnauthorizedRetry:
    async def test_single_401_refreshes_and_retries(
        self, fake_google: FakeGoogle, http_client: httpx.AsyncClient
    ) -> None:
        box = fake_google.mailbox("fresh-token", "ann@example.com", history_id=9)
        fake_google.grant("r-1", "fresh-token", mailbox=box)
        harness = _Harness(
            fake_google,
            http_client,
            Credential(user_id="u-1", access_token="stale-token", refresh_token="r-1"),
        )

        profile = await harness.client.get_profile()

        assert profile.history_id == "9"
        assert len(fake_google.calls("/token")) == 1
        assert harness.store.snapshot("u-1").access_token == "fresh-token"
        assert harness.store.snapshot("u-1").needs_reauth is False

    async def test_second_401_flags_reauth(
        self, fake_google: FakeGoogle, http_client: httpx.AsyncClient
    ) -> None:
        # The refreshed token is minted but never accepted by Gmail.
        fake_google.grant("r-1", "also-rejected")
        harness = _Harness(
            fake_google,
            http_client,
            Credential(user_id="u-1", access_token="stale-token", refresh_token="r-1"),
        )

        with pytest.raises(AuthExpiredError):
            await harness.client.get_profile()

        assert harness.store.snapshot("u-1").needs_reauth is True
        assert len(harness.notifier.calls) == 1
        assert len(fake_google.calls("/token")) == 1
        assert len(fake_google.calls("/profile")) == 2

    async def test_missing_access_token_refreshes_first(
        self, fake_google: FakeGoogle, http_client: httpx.AsyncClient
    ) -> None:
        box = fake_google.mailbox("minted", "ann@example.com")
        fake_google.grant("r-1", "minted", mailbox=box)
        harness = _Harness(
            fake_google, http_client, Credential(user_id="u-1", refresh_token="r-1")
        )

        await harness.client.get_profile()

        assert len(fake_google.calls("/profile")) == 1
        assert harness.store.snapshot("u-1").access_token == "minted"
