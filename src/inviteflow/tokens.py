"""OAuth token lifecycle: refresh, rotation, and the sticky reauth flag.

Every path that can end a credential's usefulness funnels through
:meth:`TokenLifecycleManager.flag_reauth`:

- permanent refresh failure (``invalid_grant``, ``invalid_client``, 400/401)
- missing refresh token
- a provider 401 that survives exactly one refresh-and-retry

``flag_reauth`` re-reads the stored credential before writing and the store
only flips a flag that is still false, so concurrent failures for the same
user produce exactly one notification.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict

from inviteflow.core.audit import write_audit_entry
from inviteflow.errors import AuthExpiredError, TokenRefreshError

if TYPE_CHECKING:
    from inviteflow.connectors.google_oauth import GoogleOAuthClient
    from inviteflow.credentials import Credential, CredentialRepository

logger = logging.getLogger(__name__)


class ReauthNotifierProtocol(Protocol):
    async def notify(self, user_id: str, reason: str, email: str | None = None) -> None:
        """Tell a human that *user_id* must re-consent."""
        ...


class TokenPair(BaseModel):
    """Token material after a successful refresh."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str
    refresh_token: str
    rotated: bool = False

    def __repr__(self) -> str:
        return (
            f"TokenPair(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"rotated={self.rotated})"
        )

    __str__ = __repr__


class TokenLifecycleManager:
    """Owns every write to a credential's token fields and its reauth flag."""

    def __init__(
        self,
        *,
        store: CredentialRepository,
        oauth: GoogleOAuthClient,
        notifier: ReauthNotifierProtocol | None = None,
        audit_pool: Any | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._notifier = notifier
        self._audit_pool = audit_pool

    async def ensure_access_token(self, credential: Credential) -> str:
        """Return a usable access token, refreshing when none is cached."""
        if credential.needs_reauth:
            raise AuthExpiredError(credential.user_id, "credential already flagged for reauth")
        if credential.access_token:
            return credential.access_token
        pair = await self.refresh(credential)
        return pair.access_token

    async def refresh(self, credential: Credential, *, email: str | None = None) -> TokenPair:
        """Exchange the refresh token and persist the result.

        The stored refresh token is kept when the provider does not rotate it.

        Raises
        ------
        AuthExpiredError
            Permanent failure; the credential has been flagged.
        TransientProviderError
            Network/5xx/429; nothing was written.
        """
        user_id = credential.user_id
        if credential.needs_reauth:
            raise AuthExpiredError(user_id, "credential already flagged for reauth")
        if not credential.refresh_token:
            await self.flag_reauth(user_id, "missing refresh token", email=email)
            raise AuthExpiredError(user_id, "missing refresh token")

        try:
            grant = await self._oauth.exchange(credential.refresh_token)
        except TokenRefreshError as exc:
            if not exc.permanent:
                raise
            await self.flag_reauth(user_id, str(exc), email=email)
            raise AuthExpiredError(user_id, str(exc)) from exc

        rotated = bool(grant.refresh_token) and grant.refresh_token != credential.refresh_token
        pair = TokenPair(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            rotated=rotated,
        )
        await self._store.update(
            user_id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )
        logger.info("Refreshed access token for user=%s rotated=%s", user_id, rotated)
        return pair

    async def flag_reauth(self, user_id: str, reason: str, *, email: str | None = None) -> bool:
        """Set ``needs_reauth`` once and notify once.

        Returns True if this call flipped the flag, False if it was already
        set (or the credential no longer exists).
        """
        current = await self._store.get(user_id)
        if current is None:
            logger.warning("Cannot flag reauth for unknown credential user=%s", user_id)
            return False
        if current.needs_reauth:
            logger.debug("Reauth already flagged for user=%s; skipping", user_id)
            return False

        flipped = await self._store.mark_needs_reauth(user_id)
        if not flipped:
            return False

        logger.warning("Flagged user=%s for re-authentication: %s", user_id, reason)
        await write_audit_entry(
            self._audit_pool,
            user_id=user_id,
            event="reauth_flagged",
            details={"reason": reason},
            level="warn",
        )
        if self._notifier is not None:
            await self._notifier.notify(user_id, reason, email)
        return True

    def open_session(self, credential: Credential, *, email: str | None = None) -> AuthSession:
        """Start a per-user, per-pass token session."""
        return AuthSession(self, credential, email=email)


class AuthSession:
    """Access token holder for one credential during one pass.

    Allows exactly one refresh-and-retry on a provider 401. A second 401
    flags the credential and raises :class:`AuthExpiredError`.
    """

    def __init__(
        self,
        manager: TokenLifecycleManager,
        credential: Credential,
        *,
        email: str | None = None,
    ) -> None:
        self._manager = manager
        self._credential = credential
        self._email = email
        self._access_token: str | None = None
        self._refreshed = False

    @property
    def user_id(self) -> str:
        return self._credential.user_id

    @property
    def credential(self) -> Credential:
        return self._credential

    async def access_token(self) -> str:
        if self._access_token is None:
            if self._credential.access_token or self._credential.needs_reauth:
                self._access_token = await self._manager.ensure_access_token(self._credential)
            else:
                await self._refresh()
        assert self._access_token is not None
        return self._access_token

    async def handle_unauthorized(self) -> str:
        """React to a provider 401 and return the token to retry with."""
        if self._refreshed:
            reason = "provider rejected a freshly refreshed access token"
            await self._manager.flag_reauth(self.user_id, reason, email=self._email)
            raise AuthExpiredError(self.user_id, reason)
        await self._refresh()
        assert self._access_token is not None
        return self._access_token

    async def _refresh(self) -> None:
        # A transient refresh failure leaves the session's single refresh unused.
        pair = await self._manager.refresh(self._credential, email=self._email)
        self._refreshed = True
        self._credential = self._credential.model_copy(
            update={"access_token": pair.access_token, "refresh_token": pair.refresh_token}
        )
        self._access_token = pair.access_token
