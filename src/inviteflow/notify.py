"""Outbound webhooks: re-auth alerts and decision forwarding."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from inviteflow.connectors.google_oauth import is_transient_status
from inviteflow.core.audit import write_audit_entry
from inviteflow.errors import ProviderRequestError, TransientProviderError
from inviteflow.extraction import Decision

logger = logging.getLogger(__name__)

_SLACK_HOOK_HOST = "hooks.slack.com"
_MAX_ERROR_BODY = 300


class ReauthNotifier:
    """Posts one alert per ``needs_reauth`` flip.

    Slack incoming webhooks get ``{"text": ...}``; any other URL receives a
    generic JSON body. Delivery failures are logged and audited, never
    raised, so they cannot interfere with the flag itself.
    """

    def __init__(
        self,
        *,
        webhook_url: str | None,
        http_client: httpx.AsyncClient,
        audit_pool: Any | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._http_client = http_client
        self._audit_pool = audit_pool

    @staticmethod
    def build_message(user_id: str, reason: str, email: str | None) -> str:
        who = f"{email} ({user_id})" if email else f"user {user_id}"
        return f":warning: inviteflow needs Google reauth for {who}. Reason: {reason}"

    def build_payload(self, user_id: str, reason: str, email: str | None) -> dict[str, Any]:
        message = self.build_message(user_id, reason, email)
        if self._webhook_url and _SLACK_HOOK_HOST in self._webhook_url:
            return {"text": message}
        return {"message": message, "userId": user_id, "email": email, "reason": reason}

    async def notify(self, user_id: str, reason: str, email: str | None = None) -> None:
        if not self._webhook_url:
            logger.info("No reauth webhook configured; user=%s not notified", user_id)
            return

        payload = self.build_payload(user_id, reason, email)
        try:
            response = await self._http_client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Reauth notification for user=%s failed: %s", user_id, exc)
            await self._audit(user_id, "reauth_notification_failed", {"error": str(exc)})
            return

        if response.is_success:
            logger.info("Reauth notification sent for user=%s", user_id)
            await self._audit(user_id, "reauth_notification_sent", {"reason": reason}, "info")
            return

        logger.warning(
            "Reauth notification for user=%s rejected: HTTP %d", user_id, response.status_code
        )
        await self._audit(
            user_id,
            "reauth_notification_failed",
            {"status": response.status_code, "body": response.text[:_MAX_ERROR_BODY]},
        )

    async def _audit(
        self, user_id: str, event: str, details: dict[str, Any], level: str = "error"
    ) -> None:
        await write_audit_entry(
            self._audit_pool, user_id=user_id, event=event, details=details, level=level
        )


class DecisionSink(Protocol):
    """Downstream consumer of applied invite decisions."""

    async def record(
        self,
        user_id: str,
        invite_id: str,
        decision: Decision,
        notes: str | None,
        confidence: float | None,
        *,
        gmail_message_id: str | None = None,
        gmail_thread_id: str | None = None,
    ) -> None:
        ...


class WebhookDecisionSink:
    """Forwards ``invite_decision`` events to a peer webhook.

    Raises :class:`TransientProviderError` or :class:`ProviderRequestError`
    when the peer does not accept the event.
    """

    def __init__(self, *, webhook_url: str, http_client: httpx.AsyncClient) -> None:
        self._webhook_url = webhook_url
        self._http_client = http_client

    async def record(
        self,
        user_id: str,
        invite_id: str,
        decision: Decision,
        notes: str | None,
        confidence: float | None,
        *,
        gmail_message_id: str | None = None,
        gmail_thread_id: str | None = None,
    ) -> None:
        payload = {
            "type": "invite_decision",
            "user_id": user_id,
            "invite_id": invite_id,
            "decision": decision,
            "notes": notes,
            "confidence": confidence,
            "gmail_message_id": gmail_message_id,
            "gmail_thread_id": gmail_thread_id,
        }
        try:
            response = await self._http_client.post(self._webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise TransientProviderError(
                status_code=None, message=f"{type(exc).__name__}: {exc}", operation="peer webhook"
            ) from exc

        if not response.is_success:
            error_cls = (
                TransientProviderError
                if is_transient_status(response.status_code)
                else ProviderRequestError
            )
            raise error_cls(
                status_code=response.status_code,
                message=response.text[:_MAX_ERROR_BODY],
                operation="peer webhook",
            )
        logger.debug("Forwarded decision for invite=%s user=%s", invite_id, user_id)
