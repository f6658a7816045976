"""Google transport adapters.

Connectors are transport-only: they speak HTTP to Google, map status codes
onto the inviteflow error taxonomy, and validate every payload into pydantic
models on receipt. They hold no sync state.
"""

__all__ = ["gmail", "gmail_models", "google_oauth"]
