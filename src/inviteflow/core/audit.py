"""Audit logging helper.

Writes operational events (reauth flagged, history reset, per-message
failures) to the ``audit_log`` table using a raw ``asyncpg.Pool``.

Fire-and-forget: exceptions are logged and swallowed so that audit
logging never blocks or breaks the primary operation.
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


async def write_audit_entry(
    pool: Any | None,
    *,
    user_id: str | None,
    event: str,
    details: dict[str, Any],
    level: str = "info",
) -> None:
    """Insert an audit log entry.

    Parameters
    ----------
    pool:
        asyncpg connection pool. If ``None``, the call is a silent no-op.
    user_id:
        User the event concerns, if any.
    event:
        Event type (e.g. ``"history_reset"``, ``"reauth_flagged"``).
    details:
        Arbitrary dict serialized as JSON into the ``details`` column.
    level:
        ``"info"``, ``"warn"`` or ``"error"``.
    """
    if pool is None:
        return

    try:
        await pool.execute(
            "INSERT INTO audit_log (user_id, level, event, details) VALUES ($1, $2, $3, $4)",
            user_id,
            level,
            event,
            json.dumps(details, default=str),
        )
    except Exception:
        logger.warning(
            "Failed to write audit entry: user_id=%s event=%s",
            user_id,
            event,
            exc_info=True,
        )
