"""Schema boundary around the natural-language extraction collaborator.

The extractor itself is opaque: it takes a prompt and returns JSON text.
Everything it returns is validated against one of the schemas below before
it reaches the engine; any mismatch raises ``ExtractionSchemaError``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator

from inviteflow.connectors.google_oauth import is_transient_status, safe_google_error_message
from inviteflow.errors import ExtractionSchemaError, ProviderRequestError, TransientProviderError

logger = logging.getLogger(__name__)

GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

SchemaT = TypeVar("SchemaT", bound=BaseModel)

Decision = Literal["yes", "no", "maybe"]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ProposedTime(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    start: str = Field(min_length=4)
    end: str | None = None
    timezone: str | None = None


class InviteExtraction(BaseModel):
    """Structured event proposal extracted from one email."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    external_ref: str = Field(default="", alias="invite_id")
    title: str = ""
    summary: str = ""
    inviter: str | None = None
    inviter_email: str | None = None
    location: str | None = None
    proposed_times: list[ProposedTime] = Field(default_factory=list)
    follow_up_actions: list[str] = Field(default_factory=list)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("external_ref", "title", "summary", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @property
    def is_complete(self) -> bool:
        """An extraction is usable only with a reference, a title and a summary."""
        return bool(self.external_ref and self.title and self.summary)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ReplyDecisionItem(BaseModel):
    """One decision the reply analyzer found in a digest reply."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    reference: str = Field(min_length=1, alias="invite_id")
    decision: Decision
    notes: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ReplyDecisionList(RootModel[list[ReplyDecisionItem]]):
    model_config = ConfigDict(frozen=True)


class HtmlGuardrail(BaseModel):
    """Formatting signals (mainly strikethrough) found in an HTML reply."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    struck_through_references: list[str] = Field(
        default_factory=list, alias="struck_through_items"
    )
    notes: str = Field(default="", alias="formatting_notes")

    @property
    def has_findings(self) -> bool:
        return bool(self.struck_through_references) or bool(self.notes.strip())


EMPTY_GUARDRAIL = HtmlGuardrail()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _strip_code_fences(text_value: str) -> str:
    text_value = text_value.strip()
    if text_value.startswith("```") and text_value.endswith("```"):
        lines = text_value.splitlines()
        if len(lines) >= 3:
            return "\n".join(lines[1:-1]).strip()
    return text_value


def parse_structured(raw: str, schema: type[SchemaT]) -> SchemaT:
    """Parse extractor JSON text into *schema*."""
    try:
        data = json.loads(_strip_code_fences(raw))
    except ValueError as exc:
        raise ExtractionSchemaError(f"Extractor returned invalid JSON: {exc}") from exc
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise ExtractionSchemaError(
            f"Extractor output does not match {schema.__name__}: {exc.error_count()} error(s)"
        ) from exc


# ---------------------------------------------------------------------------
# Extractor contract
# ---------------------------------------------------------------------------


class Extractor(Protocol):
    """Turns a prompt into a validated instance of *schema*."""

    async def extract(self, prompt: str, schema: type[SchemaT]) -> SchemaT:
        ...


class _GeminiPart(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = ""


class _GeminiContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parts: list[_GeminiPart] = Field(default_factory=list)


class _GeminiCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: _GeminiContent | None = None


class _GeminiResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidates: list[_GeminiCandidate] = Field(default_factory=list)

    def first_text(self) -> str | None:
        for candidate in self.candidates:
            if candidate.content is None:
                continue
            for part in candidate.content.parts:
                if part.text.strip():
                    return part.text
        return None


class GeminiExtractor:
    """Extractor backed by Gemini ``generateContent`` in JSON response mode."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        http_client: httpx.AsyncClient,
        temperature: float = 0.0,
        max_output_tokens: int = 1024,
        base_url: str = GEMINI_API_BASE_URL,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._http_client = http_client
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._base_url = base_url.rstrip("/")

    async def extract(self, prompt: str, schema: type[SchemaT]) -> SchemaT:
        text = await self._generate(prompt)
        return parse_structured(text, schema)

    async def _generate(self, prompt: str) -> str:
        url = f"{self._base_url}/{self._model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self._temperature,
                "maxOutputTokens": self._max_output_tokens,
                "responseMimeType": "application/json",
            },
        }
        try:
            response = await self._http_client.post(
                url,
                json=body,
                headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientProviderError(
                status_code=None, message=f"{type(exc).__name__}: {exc}", operation="gemini"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = safe_google_error_message(response)
            error_cls = (
                TransientProviderError
                if is_transient_status(response.status_code)
                else ProviderRequestError
            )
            raise error_cls(status_code=response.status_code, message=message, operation="gemini")

        try:
            parsed = _GeminiResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ExtractionSchemaError("Gemini response envelope is malformed") from exc

        text = parsed.first_text()
        if text is None:
            raise ExtractionSchemaError("Gemini response did not contain text content")
        return text
