"""In-memory repositories and recording collaborators."""

from __future__ import annotations

import itertools
import json
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from inviteflow.credentials import Credential, validate_update_fields
from inviteflow.digests import DigestSnapshot
from inviteflow.errors import ExtractionSchemaError
from inviteflow.extraction import SchemaT, parse_structured
from inviteflow.invites import Invite, InviteStatus, NewInvite
from inviteflow.users import UserRecord


class InMemoryCredentialStore:
    """Credential repository over a dict. ``writes`` records every update."""

    def __init__(self, credentials: Iterable[Credential] = ()) -> None:
        self._rows: dict[str, Credential] = {c.user_id: c for c in credentials}
        self.writes: list[tuple[str, dict[str, Any]]] = []
        self.reauth_flips: list[str] = []

    async def get(self, user_id: str) -> Credential | None:
        return self._rows.get(user_id)

    async def update(self, user_id: str, **fields: Any) -> None:
        validate_update_fields(fields)
        current = self._rows.get(user_id)
        if current is None:
            return
        self._rows[user_id] = current.model_copy(update=fields)
        self.writes.append((user_id, dict(fields)))

    async def mark_needs_reauth(self, user_id: str) -> bool:
        current = self._rows.get(user_id)
        if current is None or current.needs_reauth:
            return False
        self._rows[user_id] = current.model_copy(update={"needs_reauth": True})
        self.reauth_flips.append(user_id)
        return True

    async def list_eligible_user_ids(self) -> list[str]:
        return [uid for uid, c in sorted(self._rows.items()) if not c.needs_reauth]

    def snapshot(self, user_id: str) -> Credential:
        return self._rows[user_id]


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users = {u.id: u for u in users}

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, UserRecord]:
        return {uid: self._users[uid] for uid in user_ids if uid in self._users}


class InMemoryInviteStore:
    """Invite repository with the same uniqueness rules as the ``invite`` table."""

    def __init__(self, invites: Iterable[Invite] = ()) -> None:
        self._rows: dict[str, Invite] = {}
        self._ids = itertools.count(1)
        for invite in invites:
            self._rows[invite.id] = invite

    @property
    def invites(self) -> list[Invite]:
        return list(self._rows.values())

    async def get(self, invite_id: str) -> Invite | None:
        return self._rows.get(invite_id)

    async def get_by_message_id(self, message_id: str) -> Invite | None:
        return next((i for i in self._rows.values() if i.primary_message_id == message_id), None)

    async def get_by_thread_id(self, thread_id: str) -> Invite | None:
        return next((i for i in self._rows.values() if i.thread_id == thread_id), None)

    async def find_by_external_ref(self, user_id: str, external_ref: str) -> Invite | None:
        matches = [
            i
            for i in self._rows.values()
            if i.external_ref == external_ref and i.visible_to(user_id)
        ]
        return matches[-1] if matches else None

    async def insert_if_absent(self, invite: NewInvite) -> Invite | None:
        if await self.get_by_thread_id(invite.thread_id) is not None:
            return None
        if await self.get_by_message_id(invite.primary_message_id) is not None:
            return None
        invite_id = f"inv-{next(self._ids)}"
        while invite_id in self._rows:
            invite_id = f"inv-{next(self._ids)}"
        row = Invite(id=invite_id, **invite.model_dump())
        self._rows[row.id] = row
        return row

    async def add_shared_users(self, invite_id: str, user_ids: frozenset[str]) -> frozenset[str]:
        current = self._rows[invite_id]
        merged = current.shared_user_ids | user_ids
        self._rows[invite_id] = current.model_copy(update={"shared_user_ids": merged})
        return merged

    async def update_decision(
        self,
        invite_id: str,
        *,
        expected_status: InviteStatus,
        status: InviteStatus,
        notes: str | None,
        confidence: float | None,
        html_formatting_detected: bool,
    ) -> bool:
        current = self._rows.get(invite_id)
        if current is None or current.status != expected_status:
            return False
        self._rows[invite_id] = current.model_copy(
            update={
                "status": status,
                "notes": notes,
                "preprocessor_confidence": confidence,
                "html_formatting_detected": html_formatting_detected,
            }
        )
        return True


class InMemoryDigestStore:
    def __init__(self, snapshots: Iterable[DigestSnapshot] = ()) -> None:
        self._snapshots = list(snapshots)

    def add(self, snapshot: DigestSnapshot) -> None:
        self._snapshots.append(snapshot)

    async def latest_for_user(self, user_id: str) -> DigestSnapshot | None:
        mine = [s for s in self._snapshots if s.user_id == user_id]
        return max(mine, key=lambda s: s.sent_at) if mine else None


class RecordingDecisionSink:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    async def record(
        self,
        user_id: str,
        invite_id: str,
        decision: str,
        notes: str | None,
        confidence: float | None,
        *,
        gmail_message_id: str | None = None,
        gmail_thread_id: str | None = None,
    ) -> None:
        self.records.append(
            {
                "user_id": user_id,
                "invite_id": invite_id,
                "decision": decision,
                "notes": notes,
                "confidence": confidence,
                "gmail_message_id": gmail_message_id,
                "gmail_thread_id": gmail_thread_id,
            }
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str | None]] = []

    async def notify(self, user_id: str, reason: str, email: str | None = None) -> None:
        self.calls.append((user_id, reason, email))


class ScriptedExtractor:
    """Extractor returning canned JSON per schema.

    Each response is either a JSON-serializable value, a string of raw JSON,
    an exception to raise, or a callable taking the prompt and returning one
    of those. Responses are consumed in order; the last one repeats.
    """

    def __init__(self) -> None:
        self._responses: dict[type[BaseModel], list[Any]] = {}
        self.prompts: list[tuple[str, str]] = []

    def respond(self, schema: type[BaseModel], *responses: Any) -> ScriptedExtractor:
        self._responses.setdefault(schema, []).extend(responses)
        return self

    async def extract(self, prompt: str, schema: type[SchemaT]) -> SchemaT:
        self.prompts.append((schema.__name__, prompt))
        queue = self._responses.get(schema)
        if not queue:
            raise ExtractionSchemaError(f"No scripted response for {schema.__name__}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response) and not isinstance(response, type):
            response = response(prompt)
        if isinstance(response, Exception):
            raise response
        raw = response if isinstance(response, str) else json.dumps(response)
        return parse_structured(raw, schema)
