"""Audit-trail sinks.

Persisting and formatting audit entries belongs to the audit service; fleet
operations only hand it an event name and a payload.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from fleetops.logging import get_logger

logger = get_logger(__name__)


class AuditSink(Protocol):
    def emit(self, event: str, actor: str, payload: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class AuditEvent:
    event: str
    actor: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


class RecordingAuditSink:
    """Keeps emitted events in memory, oldest first."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[AuditEvent] = []

    def emit(self, event: str, actor: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events.append(AuditEvent(event, actor, dict(payload)))

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)


class LoggingAuditSink:
    def emit(self, event: str, actor: str, payload: dict[str, Any]) -> None:
        logger.info(
            "audit %s by %s: %s",
            event,
            actor,
            payload,
            extra={"event": event, "actor": actor},
        )


def emit_safely(sink: AuditSink | None, event: str, actor: str, payload: dict[str, Any]) -> None:
    """Forward to the sink; a failing sink is logged, never raised."""
    if sink is None:
        return
    try:
        sink.emit(event, actor, payload)
    except Exception as exc:
        logger.error(
            "Audit sink failed for %s: %s",
            event,
            exc,
            exc_info=True,
            extra={"event": event, "error_message": str(exc)},
        )
