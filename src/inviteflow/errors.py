"""Error taxonomy for the sync and reconciliation engine.

Every error message here is safe to log: messages name users, messages, and
status codes but never include token material.
"""

from __future__ import annotations


class InviteflowError(RuntimeError):
    """Base inviteflow error."""


# ---------------------------------------------------------------------------
# Provider (Gmail / Google OAuth) errors
# ---------------------------------------------------------------------------


class ProviderRequestError(InviteflowError):
    """Raised when an upstream HTTP request fails with a non-retryable status."""

    def __init__(
        self, *, status_code: int | None, message: str, operation: str = "request"
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.operation = operation
        status = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"{operation} request failed{status}: {message}")


class TransientProviderError(ProviderRequestError):
    """Timeouts, network failures, 5xx, and rate limiting (429 / 403 rate limits).

    Never mutates state. The next pass retries naturally.
    """


class ProviderNotFoundError(ProviderRequestError):
    """Raised when a Google API resource does not exist (HTTP 404)."""


class CursorInvalidError(ProviderNotFoundError):
    """Raised when the stored history cursor is unknown to the provider.

    Triggers a re-baseline of the cursor to the mailbox's current history id.
    """


class AuthExpiredError(InviteflowError):
    """Raised when a credential can no longer be used without user re-consent.

    Terminal for the credential: ``needs_reauth`` has been set (or already was)
    by the time this propagates.
    """

    def __init__(self, user_id: str, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Re-authentication required for user {user_id}: {reason}")


class TokenRefreshError(InviteflowError):
    """Raised when the OAuth token endpoint rejects a refresh-token exchange.

    ``permanent`` is True for failures that will not resolve on retry
    (``invalid_grant``, ``invalid_client``, HTTP 400/401).
    """

    def __init__(self, message: str, *, status_code: int | None = None, permanent: bool) -> None:
        self.status_code = status_code
        self.permanent = permanent
        super().__init__(message)


# ---------------------------------------------------------------------------
# Local errors
# ---------------------------------------------------------------------------


class ExtractionSchemaError(InviteflowError):
    """Raised when extractor output does not match the expected schema."""


class SecretDecryptionError(InviteflowError):
    """Raised when a stored token cannot be decrypted with the configured key."""


class StoreUnavailableError(InviteflowError):
    """Raised when the relational store cannot be reached.

    This is the only error that aborts a whole pass.
    """
