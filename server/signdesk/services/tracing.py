from __future__ import annotations

from typing import Any

from signdesk.core.logging import get_logger

logger = get_logger(__name__)
trace_logger = get_logger("signdesk.trace")


def emit_trace(correlation_id: str, category: str, **details: Any) -> None:
    """Fire-and-forget trace record keyed by correlation id."""
    try:
        trace_logger.info(category, correlation_id=correlation_id, kind="trace", **details)
    except Exception as exc:  # tracing never fails the caller
        logger.warning("trace.emit_failed", category=category, error=str(exc))
