"""Prompt builders for the extraction collaborator."""

from __future__ import annotations

import json

from inviteflow.extraction import HtmlGuardrail

_INVITE_SHAPE = """{
  "invite_id": "short alphanumeric reference for the digest, e.g. 1A",
  "inviter": "name of the person proposing the event",
  "inviter_email": "inviter email address if present",
  "title": "short event title",
  "summary": "one sentence summary",
  "location": "event location if present",
  "proposed_times": [
    {"start": "ISO8601", "end": "ISO8601 or omitted", "timezone": "IANA timezone if known"}
  ],
  "follow_up_actions": ["optional list of tasks"],
  "confidence": 0.0
}"""

_SINGLE_EXAMPLES = (
    '"A" -> yes for A',
    '"B." -> yes for B',
    '"C yes please" -> yes for C',
    '"D - no thanks" -> no for D',
    '"E pass" -> no for E',
    '"F maybe, lean yes" -> maybe for F',
    '"G on hold" -> maybe for G',
    '"H no, double booked" -> no for H with note double booked',
    '"I confirmed" -> yes for I',
    '"J tentative" -> maybe for J',
)

_COMBINED_EXAMPLES = (
    '"A & B" -> yes for A and B',
    '"C & D no" -> no for C and D',
    '"E + F maybe" -> maybe for E and F',
    '"Invite A and B are yes" -> yes for A and B',
    '"A-D yes" -> yes for A, B, C and D',
    '"E thru G no" -> no for E, F and G',
)

_LINE_EXAMPLES = (
    '"A: yes\\nB: no" -> yes for A, no for B',
    '"A yes, B no, C maybe" -> yes for A, no for B, maybe for C',
    '"A -> yes with Jamie\\nB -> pass" -> yes for A with note with Jamie, no for B',
    '"A y, B n, C m" -> yes for A, no for B, maybe for C',
    '"A yes pending final agenda" -> maybe for A with note pending final agenda',
)

_HTML_EXAMPLES = (
    '"HTML with <s>A</s>" -> no for A',
    '"HTML with <del>B</del> and text C yes" -> no for B, yes for C',
    '"HTML showing <s>D</s> though the text says D yes" -> strikethrough wins, no for D',
)

_BULK_EXAMPLES = (
    '"All invites no" -> no for every invite in the digest',
    '"Everything except C" -> yes for all invites except C, which is no',
    '"A yes, others no" -> yes for A, no for all others',
    '"A yes, leave B open" -> yes for A, maybe for B',
)


def build_invite_prompt(email_text: str, user_email: str) -> str:
    """Prompt asking for one structured event proposal from an email."""
    return f"""You extract calendar invitation proposals from Gmail messages for the user {user_email}.
Return a compact JSON object with exactly this shape:
{_INVITE_SHAPE}

If the email contains no event proposal, respond with {{"invite_id": "", "title": "", "summary": ""}}.
Email:
\"\"\"
{email_text}
\"\"\""""


def build_html_guardrail_prompt(html_content: str) -> str:
    """Prompt asking which digest letters are struck through in an HTML reply."""
    return f"""You analyze the HTML formatting of an email reply.

Identify formatting that signals the sender's intent:
1. Strikethrough: <strike>, <del>, <s> tags or style="text-decoration: line-through"
2. Which invite letters (A-Z) are struck through
3. Any other notable formatting (bold, highlights, emphasis)

HTML CONTENT:
\"\"\"
{html_content}
\"\"\"

Return JSON strictly as:
{{
  "struck_through_items": ["A", "B"],
  "formatting_notes": "other relevant formatting observations"
}}"""


def _examples() -> str:
    groups = (_SINGLE_EXAMPLES, _COMBINED_EXAMPLES, _LINE_EXAMPLES, _HTML_EXAMPLES, _BULK_EXAMPLES)
    return "\n".join(f"- {example}" for group in groups for example in group)


def build_response_analyzer_prompt(
    email_text: str,
    guardrail: HtmlGuardrail,
    digest_context: str,
) -> str:
    """Prompt asking for a decision array from a free-form digest reply."""
    findings = json.dumps(
        {
            "struck_through_items": guardrail.struck_through_references,
            "formatting_notes": guardrail.notes,
        }
    )
    return f"""You analyze a user's reply to their invite digest email.

CONTEXT:
- The digest listed invites with letters (A, B, C, ...)
- The user replies with decisions (yes, no, maybe) and optional notes
- HTML formatting analysis: {findings}

REPLY FORMATS TO RECOGNIZE:
{_examples()}

OUTPUT REQUIREMENTS:
- Return a JSON array with one element per invite decision
- Each element has: invite_id (string), decision ("yes" | "no" | "maybe"), notes (string, optional), confidence (number 0-1)
- Always include confidence: 0.99 for clear intent, around 0.5 when ambiguous
- Keep meaningful natural language context in notes
- When the reply covers every invite (e.g. "all yes"), emit a decision for each one

ORIGINAL DIGEST CONTEXT:
\"\"\"
{digest_context}
\"\"\"

EMAIL REPLY TO ANALYZE:
\"\"\"
{email_text}
\"\"\"

Return ONLY valid JSON."""
