"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_DIGEST_SUBJECT_MARKER = "inviteflow digest"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-lite"
MAX_BACKFILL_DAYS = 30


def _int_from_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc


def _optional_from_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


class InviteflowConfig(BaseModel):
    """Configuration for one poller process."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Google OAuth client (the per-user refresh tokens live in the credential store)
    google_client_id: str = Field(min_length=1)
    google_client_secret: str = Field(min_length=1)

    # Fernet key used to encrypt tokens at rest
    token_encryption_key: str = Field(min_length=1)

    # Digest reply detection
    digest_subject_marker: str = DEFAULT_DIGEST_SUBJECT_MARKER
    digest_recipient: str | None = None

    # Outbound webhooks
    reauth_webhook_url: str | None = None
    peer_webhook_url: str | None = None

    # Extraction collaborator
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_GEMINI_MODEL

    http_timeout_s: int = Field(default=20, ge=1)
    max_backfill_days: int = Field(default=MAX_BACKFILL_DAYS, ge=0, le=MAX_BACKFILL_DAYS)

    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("digest_subject_marker")
    @classmethod
    def _normalize_marker(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("digest_subject_marker must be a non-empty string")
        return normalized

    @field_validator("digest_recipient")
    @classmethod
    def _normalize_recipient(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @classmethod
    def _load_env_config(cls) -> dict[str, Any]:
        required: dict[str, str] = {}
        for env_name, field_name in (
            ("GOOGLE_CLIENT_ID", "google_client_id"),
            ("GOOGLE_CLIENT_SECRET", "google_client_secret"),
            ("TOKEN_ENCRYPTION_KEY", "token_encryption_key"),
        ):
            value = os.environ.get(env_name, "").strip()
            if not value:
                raise ValueError(f"{env_name} is required")
            required[field_name] = value

        log_format = os.environ.get("INVITEFLOW_LOG_FORMAT", "text").strip().lower()
        if log_format not in ("text", "json"):
            raise ValueError(f"INVITEFLOW_LOG_FORMAT must be 'text' or 'json', got: {log_format}")

        # The digest webhook doubles as the reauth channel when no dedicated one is set
        reauth_webhook_url = _optional_from_env("REAUTH_WEBHOOK_URL") or _optional_from_env(
            "DIGEST_WEBHOOK_URL"
        )

        return {
            **required,
            "digest_subject_marker": os.environ.get(
                "DIGEST_SUBJECT_MARKER", DEFAULT_DIGEST_SUBJECT_MARKER
            ),
            "digest_recipient": _optional_from_env("DIGEST_RECIPIENT"),
            "reauth_webhook_url": reauth_webhook_url,
            "peer_webhook_url": _optional_from_env("PEER_WEBHOOK_URL"),
            "gemini_api_key": _optional_from_env("GEMINI_API_KEY"),
            "gemini_model": _optional_from_env("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL,
            "http_timeout_s": _int_from_env("INVITEFLOW_HTTP_TIMEOUT_S", "20"),
            "max_backfill_days": _int_from_env(
                "INVITEFLOW_MAX_BACKFILL_DAYS", str(MAX_BACKFILL_DAYS)
            ),
            "log_level": os.environ.get("INVITEFLOW_LOG_LEVEL", "INFO"),
            "log_format": log_format,
        }

    @classmethod
    def from_env(cls) -> InviteflowConfig:
        """Load the configuration, raising ``ValueError`` on missing or malformed values."""
        return cls(**cls._load_env_config())

    def clamp_backfill_days(self, requested: int | None) -> int:
        """Clamp a requested backfill window into ``0..max_backfill_days``."""
        if requested is None:
            return 0
        return max(0, min(int(requested), self.max_backfill_days))

    def __repr__(self) -> str:
        return (
            f"InviteflowConfig("
            f"google_client_id={self.google_client_id!r}, "
            f"google_client_secret=<REDACTED>, "
            f"token_encryption_key=<REDACTED>, "
            f"digest_subject_marker={self.digest_subject_marker!r}, "
            f"digest_recipient={self.digest_recipient!r}, "
            f"gemini_model={self.gemini_model!r})"
        )

    __str__ = __repr__
