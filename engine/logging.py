"""
Decision Core — Structured Logging with Correlation IDs

Emits JSON log lines for every workflow event. Field names follow
OpenTelemetry semantic conventions (trace_id, span_id, service.name)
so the output can be shipped to any OTel-aware collector unchanged.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Every workflow event carries trace_id, request_id and conversation_id
  - Configurable log level: DEBUG (full payloads), INFO (transitions), WARN (errors only)

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    log = StructuredLogger(request_id="req_1a2b", conversation_id="conv_9f")
    log.on_transition("collecting", "analyzing")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "decision_core"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: maps to OTel trace ID
      - span_id: maps to OTel span ID
      - service.name: "decision_core"
      - service.version: from env
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CC_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the decision_core logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for decision_core
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)  # Inherit from parent

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the decision_core namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Trace ID Generation
# ═══════════════════════════════════════════════════════════════════

def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Per-workflow structured logger.

    One instance per workflow run. Every entry includes trace_id,
    request_id and conversation_id so a decision can be reconstructed
    from logs alone.
    """

    def __init__(
        self,
        request_id: str = "",
        conversation_id: str = "",
        trace_id: str | None = None,
    ):
        self.request_id = request_id
        self.conversation_id = conversation_id
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("workflow")
        self._span_id = generate_span_id()

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self._span_id,
            "request_id": self.request_id,
            "conversation_id": self.conversation_id,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Workflow Events ─────────────────────────────────────────

    def on_workflow_start(self, trigger: str, resumed_from: str = "") -> None:
        fields: dict[str, Any] = {"trigger": trigger}
        if resumed_from:
            fields["resumed_from"] = resumed_from
        self._emit(logging.INFO, "workflow_start", **fields)

    def on_transition(self, from_status: str, to_status: str) -> None:
        self._span_id = generate_span_id()
        self._emit(
            logging.INFO, "transition",
            from_status=from_status,
            to_status=to_status,
        )

    def on_proposals_collected(self, received: int, errors: list[dict[str, Any]]) -> None:
        self._emit(
            logging.INFO if not errors else logging.WARNING,
            "proposals_collected",
            received=received,
            proposer_errors=errors,
        )

    def on_conflicts_detected(self, conflicts: list[dict[str, Any]]) -> None:
        self._emit(
            logging.INFO, "conflicts_detected",
            conflict_count=len(conflicts),
            conflict_types=sorted({c["type"] for c in conflicts}),
        )
        if self._logger.isEnabledFor(logging.DEBUG):
            self._emit(logging.DEBUG, "conflicts_full", conflicts=conflicts)

    def on_oracle_fallback(self, reason: str) -> None:
        self._emit(logging.WARNING, "oracle_fallback", reason=reason[:500])

    def on_decision(
        self,
        decision_id: str,
        decision_type: str,
        source: str,
        approved: int,
        rejected: int,
        human_approval_required: bool,
    ) -> None:
        self._emit(
            logging.INFO, "decision",
            decision_id=decision_id,
            decision_type=decision_type,
            source=source,
            approved_actions=approved,
            rejected_actions=rejected,
            human_approval_required=human_approval_required,
        )

    def on_command_result(
        self, command_id: str, control_variable: str, status: str, error: str | None = None,
    ) -> None:
        self._emit(
            logging.INFO if status == "success" else logging.WARNING,
            "command_result",
            command_id=command_id,
            control_variable=control_variable,
            status=status,
            error=error,
        )

    def on_workflow_end(self, status: str, elapsed_s: float, error: str | None = None) -> None:
        self._emit(
            logging.INFO if status != "error" else logging.ERROR,
            "workflow_end",
            status=status,
            elapsed_s=round(elapsed_s, 3),
            error=error,
        )
