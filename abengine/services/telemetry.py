"""Audit-event sinks.

Emission is fire-and-forget: the engine calls ``emit`` synchronously, never
awaits a sink, and swallows any failure after logging it.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

audit_logger = logging.getLogger("abengine.audit")


class TelemetrySink(Protocol):
    def emit(self, event: str, **fields: Any) -> None:
        ...


class LoggingTelemetry:
    """Writes each audit event as one structured log record."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or audit_logger

    def emit(self, event: str, **fields: Any) -> None:
        self.logger.info("%s %s", event, fields, extra={"audit_event": event, "audit_fields": fields})
