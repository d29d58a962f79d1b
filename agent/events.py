"""
HyperCut Agent - Execution Events

Append-only, ordered telemetry stream consumed by UIs and loggers.
Events are created once and never mutated; listeners are notified
synchronously in emission order.

Usage:
    log = ExecutionEventLog()
    log.subscribe(lambda event: print(event.type.value))
    log.emit(AgentExecutionEvent(type=ExecutionEventType.REQUEST_STARTED,
                                 request_id="req-1", mode=ExecutionMode.CHAT))
    log.events_for("req-1")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from agent.types import ExecutionMode, ResponseStatus

logger = logging.getLogger("hypercut_agent.events")


class ExecutionEventType(str, Enum):
    REQUEST_STARTED = "request_started"
    PLAN_CREATED = "plan_created"
    TOOL_STARTED = "tool_started"
    TOOL_PROGRESS = "tool_progress"
    RECOVERY_STARTED = "recovery_started"
    RECOVERY_PREREQUISITE_STARTED = "recovery_prerequisite_started"
    RECOVERY_PREREQUISITE_COMPLETED = "recovery_prerequisite_completed"
    RECOVERY_RETRYING = "recovery_retrying"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    TOOL_COMPLETED = "tool_completed"
    REQUEST_COMPLETED = "request_completed"


RECOVERY_EVENT_TYPES = frozenset({
    ExecutionEventType.RECOVERY_STARTED,
    ExecutionEventType.RECOVERY_PREREQUISITE_STARTED,
    ExecutionEventType.RECOVERY_PREREQUISITE_COMPLETED,
    ExecutionEventType.RECOVERY_RETRYING,
    ExecutionEventType.RECOVERY_EXHAUSTED,
})


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AgentExecutionEvent:
    type: ExecutionEventType
    request_id: str
    mode: ExecutionMode
    tool_name: str | None = None
    tool_call_id: str | None = None
    step_index: int | None = None
    total_steps: int | None = None
    status: ResponseStatus | None = None
    message: str | None = None
    progress: dict[str, Any] | None = None
    result: dict[str, Any] | None = None  # {success, message}
    plan: dict[str, Any] | None = None
    recovery: dict[str, Any] | None = None  # {policyId, errorCode, attempt, ...}
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        values = {
            "type": self.type.value,
            "request_id": self.request_id,
            "mode": self.mode.value,
            "tool_name": self.tool_name,
            "tool_call_id": self.tool_call_id,
            "step_index": self.step_index,
            "total_steps": self.total_steps,
            "status": self.status.value if self.status else None,
            "message": self.message,
            "progress": self.progress,
            "result": self.result,
            "plan": self.plan,
            "recovery": self.recovery,
            "timestamp": self.timestamp,
        }
        return {k: v for k, v in values.items() if v is not None}


EventListener = Callable[[AgentExecutionEvent], None]


class ExecutionEventLog:
    """Ordered, append-only event store with synchronous listeners."""

    def __init__(self, max_events: int = 5000):
        self._events: list[AgentExecutionEvent] = []
        self._listeners: list[EventListener] = []
        self._offset = 0  # number of events trimmed from the front
        self.max_events = max_events

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def emit(self, event: AgentExecutionEvent) -> None:
        self._events.append(event)
        if len(self._events) > self.max_events:
            overflow = len(self._events) - self.max_events
            del self._events[:overflow]
            self._offset += overflow
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Execution event listener failed for %s", event.type.value)

    @property
    def events(self) -> list[AgentExecutionEvent]:
        return list(self._events)

    def since(self, cursor: int) -> tuple[list[AgentExecutionEvent], int]:
        """Events with absolute position >= cursor, plus the next cursor."""
        start = max(0, cursor - self._offset)
        return list(self._events[start:]), self._offset + len(self._events)

    def events_for(self, request_id: str) -> list[AgentExecutionEvent]:
        return [e for e in self._events if e.request_id == request_id]

    def clear(self) -> None:
        self._offset += len(self._events)
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)
