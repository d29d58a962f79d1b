"""
HyperCut Agent - Structured Logging with Correlation IDs

JSON log lines for the engine, plus an execution-event listener that turns
the AgentExecutionEvent stream into one structured entry per event. The
schema follows OpenTelemetry conventions (trace_id, span_id, service.name).

  - Transport: Python logging with a JSON formatter
  - Correlation: request id -> trace_id, tool call id -> span_id
  - Levels: recovery events at WARNING, everything else at INFO

Usage:
    from agent.logging import ExecutionLogger, configure_logging

    configure_logging(level="INFO")
    events = ExecutionEventLog()
    ExecutionLogger().attach(events)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable

from agent.events import RECOVERY_EVENT_TYPES, AgentExecutionEvent, ExecutionEventLog

SERVICE_NAME = "hypercut_agent"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: maps to OTel trace ID
      - span_id: maps to OTel span ID
      - service.name: "hypercut_agent"
      - service.version: from env
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("HCA_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            # OTel resource attributes
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        # Merge structured fields from extra
        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str, ensure_ascii=False)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = SERVICE_NAME,
) -> logging.Logger:
    """
    Configure the hypercut_agent logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for hypercut_agent
    """
    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(f"{SERVICE_NAME}."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the hypercut_agent namespace."""
    if name:
        return logging.getLogger(f"{SERVICE_NAME}.{name}")
    return logging.getLogger(SERVICE_NAME)


# ═══════════════════════════════════════════════════════════════════
# Execution Logger (event listener)
# ═══════════════════════════════════════════════════════════════════

class ExecutionLogger:
    """
    Writes one structured log entry per AgentExecutionEvent.

    Attach to an ExecutionEventLog; the returned callable detaches it.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or get_logger("execution")

    def attach(self, event_log: ExecutionEventLog) -> Callable[[], None]:
        return event_log.subscribe(self.on_event)

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = {"action": action, **{k: v for k, v in fields.items() if v is not None}}
        self._logger.handle(record)

    def on_event(self, event: AgentExecutionEvent) -> None:
        level = logging.WARNING if event.type in RECOVERY_EVENT_TYPES else logging.INFO
        fields: dict[str, Any] = {
            "trace_id": event.request_id,
            "span_id": event.tool_call_id,
            "mode": event.mode.value,
            "tool_name": event.tool_name,
            "step_index": event.step_index,
            "total_steps": event.total_steps,
            "status": event.status.value if event.status else None,
            "detail": event.message,
        }
        if event.result is not None:
            fields["success"] = event.result.get("success")
        if event.recovery is not None:
            fields["recovery"] = event.recovery
        if event.plan is not None:
            fields["plan_id"] = event.plan.get("id")
        self._emit(level, event.type.value, **fields)
