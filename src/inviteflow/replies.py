"""Digest reply reconciliation.

A reply to a digest says things like "A & B yes, C no". The extractor turns
that into a decision array keyed by whatever the user wrote; the letter
resolver maps each reference onto an invite id using the digest's letter
mapping, and each decision is applied to its invite.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from inviteflow.core.audit import write_audit_entry
from inviteflow.core.metrics import PollMetrics, get_error_type
from inviteflow.digests import DigestContext, DigestRepository, normalize_letter_mapping
from inviteflow.errors import (
    AuthExpiredError,
    ExtractionSchemaError,
    ProviderRequestError,
    StoreUnavailableError,
)
from inviteflow.extraction import (
    EMPTY_GUARDRAIL,
    Decision,
    Extractor,
    HtmlGuardrail,
    ReplyDecisionList,
)
from inviteflow.invites import DecisionOutcome, DecisionResult, InviteDeduplicator
from inviteflow.prompts import build_html_guardrail_prompt, build_response_analyzer_prompt

if TYPE_CHECKING:
    from inviteflow.notify import DecisionSink

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.99

# ---------------------------------------------------------------------------
# Letter matchers
# ---------------------------------------------------------------------------

Matcher = Callable[[str, Mapping[str, str]], str | None]

_SINGLE_LETTER_RE = re.compile(r"^[A-Za-z]$")
_INVITE_PREFIX_RE = re.compile(r"^Invite\s+([A-Za-z])$", re.IGNORECASE)


def match_exact(reference: str, mapping: Mapping[str, str]) -> str | None:
    """Case-insensitive key lookup; covers both ``A`` and ``INVITE A`` keys."""
    return mapping.get(reference.upper())


def match_single_letter(reference: str, mapping: Mapping[str, str]) -> str | None:
    if _SINGLE_LETTER_RE.match(reference):
        return mapping.get(reference.upper())
    return None


def match_invite_prefix(reference: str, mapping: Mapping[str, str]) -> str | None:
    """``Invite b`` / ``invite   B`` style references."""
    match = _INVITE_PREFIX_RE.match(reference)
    if match:
        return mapping.get(match.group(1).upper())
    return None


def match_passthrough(reference: str, mapping: Mapping[str, str]) -> str | None:
    return reference


DEFAULT_MATCHERS: tuple[Matcher, ...] = (
    match_exact,
    match_single_letter,
    match_invite_prefix,
    match_passthrough,
)


class ReplyLetterResolver:
    """Maps a reply reference to an invite id with an ordered matcher chain.

    The first matcher returning a non-empty value wins. With
    :data:`DEFAULT_MATCHERS` an unmatched reference comes back trimmed but
    otherwise unchanged, which lets already-canonical ids through; callers
    treat a decision for an unknown id as a no-op.
    """

    def __init__(
        self,
        letter_mapping: Mapping[str, Any] | None = None,
        matchers: Sequence[Matcher] = DEFAULT_MATCHERS,
    ) -> None:
        self._mapping = normalize_letter_mapping(letter_mapping)
        self._matchers = tuple(matchers)

    @classmethod
    def from_context(cls, context: DigestContext) -> ReplyLetterResolver:
        return cls(context.letter_mapping)

    @property
    def letter_mapping(self) -> dict[str, str]:
        return dict(self._mapping)

    def resolve(self, reference: str) -> str:
        trimmed = reference.strip()
        if not trimmed:
            return trimmed
        for matcher in self._matchers:
            resolved = matcher(trimmed, self._mapping)
            if resolved:
                return resolved
        return trimmed


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def normalize_confidence(value: float | None) -> float:
    """Clamp to [0, 1] and round to two places; missing means 0.99."""
    raw = DEFAULT_CONFIDENCE if value is None else value
    return round(max(0.0, min(1.0, raw)), 2)


class ResolvedDecision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    reference: str
    resolved_invite_id: str
    decision: Decision
    notes: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)


class ReplyResult(BaseModel):
    """What happened to one digest reply."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    message_id: str | None = None
    skipped_reason: str | None = None
    guardrail: HtmlGuardrail = EMPTY_GUARDRAIL
    decisions: tuple[ResolvedDecision, ...] = ()
    results: tuple[DecisionResult, ...] = ()

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.outcome is DecisionOutcome.APPLIED)


class ReplyReconciler:
    """Turns a digest reply into invite decisions.

    Parameters
    ----------
    extractor:
        Structured extraction collaborator.
    deduplicator:
        Owns invite status transitions.
    digests:
        Source of the user's latest digest snapshot.
    sink:
        Optional downstream consumer; receives only decisions that changed
        an invite.
    """

    def __init__(
        self,
        *,
        extractor: Extractor,
        deduplicator: InviteDeduplicator,
        digests: DigestRepository,
        sink: DecisionSink | None = None,
        metrics: PollMetrics | None = None,
        audit_pool: Any | None = None,
    ) -> None:
        self._extractor = extractor
        self._deduplicator = deduplicator
        self._digests = digests
        self._sink = sink
        self._metrics = metrics or PollMetrics()
        self._audit_pool = audit_pool

    async def process(
        self,
        user_id: str,
        *,
        text: str,
        html: str = "",
        digest_text: str | None = None,
        letter_mapping: Mapping[str, Any] | None = None,
        message_id: str | None = None,
        thread_id: str | None = None,
        dry_run: bool = False,
    ) -> ReplyResult:
        """Reconcile one reply.

        An unusable decision array skips the whole reply. Each decision is
        applied in its own failure boundary.
        """
        guardrail = await self._guardrail(user_id, html)
        context = await self._context(user_id, digest_text, letter_mapping)
        resolver = ReplyLetterResolver.from_context(context)

        prompt = build_response_analyzer_prompt(text, guardrail, context.text)
        try:
            extracted = await self._extractor.extract(prompt, ReplyDecisionList)
        except ExtractionSchemaError as exc:
            logger.warning(
                "Skipping digest reply message=%s user=%s: %s", message_id, user_id, exc
            )
            self._metrics.record_error("validation_error", "reply.analyze")
            return ReplyResult(
                user_id=user_id,
                message_id=message_id,
                skipped_reason="schema_error",
                guardrail=guardrail,
            )

        decisions = tuple(
            ResolvedDecision(
                reference=item.reference,
                resolved_invite_id=resolver.resolve(item.reference),
                decision=item.decision,
                notes=item.notes.strip() if item.notes and item.notes.strip() else None,
                confidence=normalize_confidence(item.confidence),
            )
            for item in extracted.root
        )
        logger.info(
            "Digest reply message=%s user=%s yielded %d decision(s)",
            message_id,
            user_id,
            len(decisions),
        )

        results: list[DecisionResult] = []
        for decision in decisions:
            result = await self._apply_one(
                user_id,
                decision,
                html_formatting_detected=guardrail.has_findings,
                message_id=message_id,
                thread_id=thread_id,
                dry_run=dry_run,
            )
            if result is not None:
                results.append(result)

        return ReplyResult(
            user_id=user_id,
            message_id=message_id,
            guardrail=guardrail,
            decisions=decisions,
            results=tuple(results),
        )

    async def _guardrail(self, user_id: str, html: str) -> HtmlGuardrail:
        if not html.strip():
            return EMPTY_GUARDRAIL
        try:
            return await self._extractor.extract(build_html_guardrail_prompt(html), HtmlGuardrail)
        except (ExtractionSchemaError, ProviderRequestError) as exc:
            logger.warning(
                "HTML guardrail failed for user=%s; continuing without it: %s", user_id, exc
            )
            return EMPTY_GUARDRAIL

    async def _context(
        self,
        user_id: str,
        digest_text: str | None,
        letter_mapping: Mapping[str, Any] | None,
    ) -> DigestContext:
        if digest_text is not None:
            return DigestContext(
                text=digest_text, letter_mapping=normalize_letter_mapping(letter_mapping)
            )
        snapshot = await self._digests.latest_for_user(user_id)
        if snapshot is None:
            logger.info("No digest on record for user=%s; references pass through", user_id)
            return DigestContext()
        return snapshot.context()

    async def _apply_one(
        self,
        user_id: str,
        decision: ResolvedDecision,
        *,
        html_formatting_detected: bool,
        message_id: str | None,
        thread_id: str | None,
        dry_run: bool,
    ) -> DecisionResult | None:
        try:
            result = await self._deduplicator.apply_decision(
                user_id,
                decision.resolved_invite_id,
                decision.decision,
                notes=decision.notes,
                confidence=decision.confidence,
                html_formatting_detected=html_formatting_detected,
                dry_run=dry_run,
            )
        except (AuthExpiredError, StoreUnavailableError):
            raise
        except Exception as exc:
            logger.exception(
                "Decision %r for reference %r failed (user=%s message=%s)",
                decision.decision,
                decision.reference,
                user_id,
                message_id,
            )
            self._metrics.record_error(get_error_type(exc), "reply.decision")
            return None

        if result.outcome is DecisionOutcome.APPLIED and self._sink is not None and not dry_run:
            await self._forward(self._sink, user_id, result, decision, message_id, thread_id)
        return result

    async def _forward(
        self,
        sink: DecisionSink,
        user_id: str,
        result: DecisionResult,
        decision: ResolvedDecision,
        message_id: str | None,
        thread_id: str | None,
    ) -> None:
        invite_id = result.invite_id or decision.resolved_invite_id
        try:
            await sink.record(
                user_id,
                invite_id,
                decision.decision,
                decision.notes,
                decision.confidence,
                gmail_message_id=message_id,
                gmail_thread_id=thread_id,
            )
        except ProviderRequestError as exc:
            logger.warning("Forwarding decision for invite=%s failed: %s", invite_id, exc)
            await write_audit_entry(
                self._audit_pool,
                user_id=user_id,
                event="decision_forward_failed",
                details={"invite_id": invite_id, "error": str(exc)},
                level="error",
            )
