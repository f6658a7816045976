"""One poll pass over every eligible mailbox.

Per user: open an auth session, drain history since the stored cursor,
fetch and route each message, then hand invite candidates to the
deduplicator and digest replies to the reconciler. The cursor is committed
only after every ref has been handled.

Failure boundaries:

- per message: any error except ``AuthExpiredError`` and
  ``StoreUnavailableError`` is logged, audited and skipped
- per user: ``AuthExpiredError`` ends that user's pass (reauth is already
  flagged); any other error except ``StoreUnavailableError`` marks the user
  failed and leaves its cursor untouched
- ``StoreUnavailableError`` aborts the whole pass
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from inviteflow.classify import ClassificationRouter, Route, RoutedMessage
from inviteflow.config import InviteflowConfig
from inviteflow.connectors.gmail import GMAIL_API_BASE_URL, GmailClient
from inviteflow.core.audit import write_audit_entry
from inviteflow.core.logging import user_context
from inviteflow.core.metrics import PollMetrics, get_error_type
from inviteflow.core.telemetry import get_tracer, tag_user_span
from inviteflow.credentials import Credential, CredentialRepository
from inviteflow.errors import AuthExpiredError, SecretDecryptionError, StoreUnavailableError
from inviteflow.extraction import Extractor, InviteExtraction
from inviteflow.invites import InviteCandidate, InviteDeduplicator, MergeOutcome
from inviteflow.prompts import build_invite_prompt
from inviteflow.replies import ReplyReconciler
from inviteflow.sync import HistorySyncCursor, MessageFetcher, MessageReference
from inviteflow.tokens import TokenLifecycleManager
from inviteflow.users import UserDirectory, UserRecord, load_users_with_partners

logger = logging.getLogger(__name__)


class PassSummary(BaseModel):
    """Counts reported by one :meth:`GmailPoller.run_pass`."""

    model_config = ConfigDict(extra="forbid")

    dry_run: bool = False
    backfill_days: int = 0
    users_total: int = 0
    users_ok: int = 0
    users_reauth: int = 0
    users_failed: int = 0
    messages_seen: int = 0
    messages_unavailable: int = 0
    message_errors: int = 0
    routes: dict[str, int] = Field(default_factory=dict)
    invite_outcomes: dict[str, int] = Field(default_factory=dict)
    replies_processed: int = 0
    decisions_applied: int = 0
    cursors_committed: int = 0
    cursors_rebaselined: int = 0


class _Tally:
    """Mutable counters folded into a :class:`PassSummary` at the end."""

    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()
        self.routes: Counter[str] = Counter()
        self.invite_outcomes: Counter[str] = Counter()

    def to_summary(self, *, dry_run: bool, backfill_days: int) -> PassSummary:
        return PassSummary(
            dry_run=dry_run,
            backfill_days=backfill_days,
            routes=dict(sorted(self.routes.items())),
            invite_outcomes=dict(sorted(self.invite_outcomes.items())),
            **self.counts,
        )


class GmailPoller:
    """Wires the sync, routing and reconciliation components into a pass."""

    def __init__(
        self,
        *,
        config: InviteflowConfig,
        credentials: CredentialRepository,
        users: UserDirectory,
        tokens: TokenLifecycleManager,
        cursor: HistorySyncCursor,
        deduplicator: InviteDeduplicator,
        reconciler: ReplyReconciler,
        extractor: Extractor,
        http_client: httpx.AsyncClient,
        metrics: PollMetrics | None = None,
        audit_pool: Any | None = None,
        gmail_base_url: str = GMAIL_API_BASE_URL,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._users = users
        self._tokens = tokens
        self._cursor = cursor
        self._deduplicator = deduplicator
        self._reconciler = reconciler
        self._extractor = extractor
        self._http_client = http_client
        self._metrics = metrics or PollMetrics()
        self._audit_pool = audit_pool
        self._gmail_base_url = gmail_base_url

    async def run_pass(
        self,
        user_id: str | None = None,
        *,
        dry_run: bool = False,
        backfill_days: int | None = None,
    ) -> PassSummary:
        """Process every eligible credential (or just *user_id*) once.

        Raises
        ------
        StoreUnavailableError
            The relational store is unreachable; nothing else escapes.
        """
        days = self._config.clamp_backfill_days(backfill_days)
        tally = _Tally()
        tracer = get_tracer()

        with self._metrics.track_pass(), tracer.start_as_current_span("inviteflow.pass") as span:
            span.set_attribute("inviteflow.dry_run", dry_run)
            user_ids = await self._credentials.list_eligible_user_ids()
            if user_id is not None:
                user_ids = [uid for uid in user_ids if uid == user_id]
            users = await load_users_with_partners(self._users, user_ids)

            logger.info(
                "Starting poll pass: users=%d dry_run=%s backfill_days=%d",
                len(user_ids),
                dry_run,
                days,
            )

            for uid in user_ids:
                tally.counts["users_total"] += 1
                with (
                    user_context(uid),
                    tracer.start_as_current_span("inviteflow.user") as user_span,
                ):
                    tag_user_span(user_span, uid, dry_run=dry_run)
                    outcome = await self._run_user(
                        uid, users, tally, dry_run=dry_run, backfill_days=days
                    )
                    user_span.set_attribute("inviteflow.outcome", outcome)
                tally.counts[f"users_{outcome}"] += 1
                self._metrics.record_user(outcome)

        summary = tally.to_summary(dry_run=dry_run, backfill_days=days)
        logger.info(
            "Poll pass complete: ok=%d reauth=%d failed=%d messages=%d",
            summary.users_ok,
            summary.users_reauth,
            summary.users_failed,
            summary.messages_seen,
        )
        return summary

    async def _run_user(
        self,
        user_id: str,
        users: dict[str, UserRecord],
        tally: _Tally,
        *,
        dry_run: bool,
        backfill_days: int,
    ) -> str:
        user = users.get(user_id)
        if user is None:
            logger.warning("Credential for user=%s has no user record; skipping", user_id)
            return "failed"
        partner = users.get(user.partner_user_id) if user.partner_user_id else None

        try:
            credential = await self._credentials.get(user_id)
            if credential is None:
                logger.warning("Credential for user=%s disappeared mid-pass; skipping", user_id)
                return "failed"
            if credential.needs_reauth:
                return "reauth"
            await self._process_user(
                credential, user, partner, tally, dry_run=dry_run, backfill_days=backfill_days
            )
        except AuthExpiredError as exc:
            logger.warning("User %s needs re-authentication: %s", user_id, exc.reason)
            return "reauth"
        except StoreUnavailableError:
            raise
        except SecretDecryptionError as exc:
            logger.error("Cannot decrypt stored tokens for user=%s: %s", user_id, exc)
            self._metrics.record_error("decryption_error", "credential.read")
            await write_audit_entry(
                self._audit_pool,
                user_id=user_id,
                event="credential_unreadable",
                details={"error": str(exc)},
                level="error",
            )
            return "failed"
        except Exception as exc:
            logger.exception("Poll failed for user=%s", user_id)
            self._metrics.record_error(get_error_type(exc), "user.poll")
            return "failed"
        return "ok"

    async def _process_user(
        self,
        credential: Credential,
        user: UserRecord,
        partner: UserRecord | None,
        tally: _Tally,
        *,
        dry_run: bool,
        backfill_days: int,
    ) -> None:
        session = self._tokens.open_session(credential, email=user.email)
        client = GmailClient(
            http_client=self._http_client,
            session=session,
            metrics=self._metrics,
            base_url=self._gmail_base_url,
        )

        outcome = await self._cursor.sync_since(
            client, credential.history_cursor, backfill_days=backfill_days
        )
        if outcome.rebaselined:
            tally.counts["cursors_rebaselined"] += 1

        fetcher = MessageFetcher(client)
        router = ClassificationRouter(
            user_email=user.email,
            digest_subject_marker=self._config.digest_subject_marker,
            digest_recipient=self._config.digest_recipient,
        )

        for ref in outcome.refs:
            tally.counts["messages_seen"] += 1
            try:
                await self._process_message(
                    ref, fetcher, router, user, partner, tally, dry_run=dry_run
                )
            except (AuthExpiredError, StoreUnavailableError):
                raise
            except Exception as exc:
                tally.counts["message_errors"] += 1
                self._metrics.record_error(get_error_type(exc), "message.process")
                logger.exception(
                    "Skipping message=%s thread=%s user=%s",
                    ref.id,
                    ref.thread_id,
                    user.id,
                )
                await write_audit_entry(
                    self._audit_pool,
                    user_id=user.id,
                    event="message_failed",
                    details={
                        "message_id": ref.id,
                        "thread_id": ref.thread_id,
                        "error": f"{type(exc).__name__}: {exc}",
                    },
                    level="error",
                )

        if await self._cursor.commit(user.id, outcome):
            tally.counts["cursors_committed"] += 1

    async def _process_message(
        self,
        ref: MessageReference,
        fetcher: MessageFetcher,
        router: ClassificationRouter,
        user: UserRecord,
        partner: UserRecord | None,
        tally: _Tally,
        *,
        dry_run: bool,
    ) -> None:
        message = await fetcher.fetch(ref)
        if message is None:
            tally.counts["messages_unavailable"] += 1
            return

        routed = router.route(ref, message)
        tally.routes[routed.route.value] += 1
        self._metrics.record_route(routed.route.value)
        logger.debug(
            "Routed message=%s thread=%s as %s", routed.message_id, routed.thread_id, routed.route
        )

        if routed.route is Route.INVITE_CANDIDATE:
            outcome = await self._handle_invite(routed, user, partner, dry_run=dry_run)
            tally.invite_outcomes[outcome.value] += 1
        elif routed.route is Route.DIGEST_REPLY:
            result = await self._reconciler.process(
                user.id,
                text=routed.text,
                html=routed.html,
                message_id=routed.message_id,
                thread_id=routed.thread_id,
                dry_run=dry_run,
            )
            tally.counts["replies_processed"] += 1
            tally.counts["decisions_applied"] += result.applied

    async def _handle_invite(
        self,
        routed: RoutedMessage,
        user: UserRecord,
        partner: UserRecord | None,
        *,
        dry_run: bool,
    ) -> MergeOutcome:
        extraction = await self._extractor.extract(
            build_invite_prompt(routed.text, user.email), InviteExtraction
        )
        candidate = InviteCandidate(
            user_id=user.id,
            message_id=routed.message_id,
            thread_id=routed.thread_id,
            subject=routed.subject,
            recipients=routed.recipients,
            extraction=extraction,
            partner=partner,
        )
        if dry_run:
            logger.info(
                "Dry run: extracted invite %r (%s) from message=%s",
                extraction.external_ref,
                extraction.title,
                routed.message_id,
            )
        result = await self._deduplicator.apply(candidate, dry_run=dry_run)
        return result.outcome
