"""Test support utilities for the inviteflow package.

In-memory implementations of the repository and collaborator contracts.
They have no dependency on pytest and can be used by any test tree or by
local experiments that should not touch Postgres or Google.
"""

from __future__ import annotations

from inviteflow.testing.stores import (
    InMemoryCredentialStore,
    InMemoryDigestStore,
    InMemoryInviteStore,
    InMemoryUserDirectory,
    RecordingDecisionSink,
    RecordingNotifier,
    ScriptedExtractor,
)

__all__ = [
    "InMemoryCredentialStore",
    "InMemoryDigestStore",
    "InMemoryInviteStore",
    "InMemoryUserDirectory",
    "RecordingDecisionSink",
    "RecordingNotifier",
    "ScriptedExtractor",
]
