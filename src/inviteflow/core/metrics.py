"""Prometheus metrics instrumentation for poll passes.

Metrics exported:
- inviteflow_pass_users_total: Counter of users processed by outcome
- inviteflow_pass_duration_seconds: Histogram of whole-pass latency
- inviteflow_messages_routed_total: Counter of fetched messages by route
- inviteflow_invite_outcomes_total: Counter of invite dedup/merge outcomes
- inviteflow_reply_decisions_total: Counter of reply decision outcomes
- inviteflow_provider_api_calls_total: Counter of Google API calls
- inviteflow_cursor_commits_total: Counter of history cursor writes
- inviteflow_errors_total: Counter of per-item errors by type
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

pass_users_total = Counter(
    "inviteflow_pass_users_total",
    "Total number of users processed by a poll pass",
    labelnames=["outcome"],
)

pass_duration_seconds = Histogram(
    "inviteflow_pass_duration_seconds",
    "Duration of a complete poll pass in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

messages_routed_total = Counter(
    "inviteflow_messages_routed_total",
    "Total number of fetched messages by classification route",
    labelnames=["route"],
)

invite_outcomes_total = Counter(
    "inviteflow_invite_outcomes_total",
    "Total number of invite candidates by dedup/merge outcome",
    labelnames=["outcome"],
)

reply_decisions_total = Counter(
    "inviteflow_reply_decisions_total",
    "Total number of reply decisions by outcome",
    labelnames=["outcome"],
)

provider_api_calls_total = Counter(
    "inviteflow_provider_api_calls_total",
    "Total number of Google API calls",
    labelnames=["api_method", "status"],
)

cursor_commits_total = Counter(
    "inviteflow_cursor_commits_total",
    "Total number of history cursor writes",
    labelnames=["kind"],
)

errors_total = Counter(
    "inviteflow_errors_total",
    "Total number of per-item errors by type",
    labelnames=["error_type", "operation"],
)


class PollMetrics:
    """Records pass metrics with consistent labels."""

    def record_user(self, outcome: str) -> None:
        """Record a user outcome ("ok", "reauth", "failed")."""
        pass_users_total.labels(outcome=outcome).inc()

    @contextmanager
    def track_pass(self) -> Iterator[None]:
        start_time = time.perf_counter()
        try:
            yield
        finally:
            pass_duration_seconds.observe(time.perf_counter() - start_time)

    def record_route(self, route: str) -> None:
        messages_routed_total.labels(route=route).inc()

    def record_invite_outcome(self, outcome: str) -> None:
        invite_outcomes_total.labels(outcome=outcome).inc()

    def record_decision(self, outcome: str) -> None:
        reply_decisions_total.labels(outcome=outcome).inc()

    def record_api_call(self, api_method: str, status: str) -> None:
        """Record a Google API call.

        Args:
            api_method: API method name (e.g. "history.list", "token.refresh")
            status: Call status ("success", "error", "not_found", "unauthorized")
        """
        provider_api_calls_total.labels(api_method=api_method, status=status).inc()

    def record_cursor_commit(self, kind: str) -> None:
        """Record a cursor write ("advance" or "rebaseline")."""
        cursor_commits_total.labels(kind=kind).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        errors_total.labels(error_type=error_type, operation=operation).inc()


def get_error_type(exc: Exception) -> str:
    """Map an exception to a semantic error type for metrics labeling."""
    exc_type = type(exc).__name__

    if "Timeout" in exc_type:
        return "timeout"
    if "ConnectError" in exc_type or "ConnectionError" in exc_type:
        return "connection_error"
    if "HTTP" in exc_type or "Provider" in exc_type:
        return "http_error"
    if "Schema" in exc_type or "ValidationError" in exc_type:
        return "validation_error"

    return exc_type.lower()
