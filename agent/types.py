"""
HyperCut Agent - Core Types

Data model shared by the registry, recovery table, workflow resolver,
quality loop and orchestrator.

Python attributes are snake_case. Payloads that cross the tool boundary
(tool arguments and ToolResult.data) keep the keys the tools and the
language model agree on, e.g. ``data["errorCode"]``.

Usage:
    from agent.types import ToolCall, ToolResult, AgentResponse

    call = ToolCall(id="call-1", name="split_clip", arguments={"time": 4.2})
    result = ToolResult(success=False, message="no transcript",
                        data={"errorCode": "NO_TRANSCRIPT"})
    result.error_code   # "NO_TRANSCRIPT"
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from agent.cancellation import CancellationToken
    from agent.document import DocumentMutator


class ExecutionMode(str, Enum):
    CHAT = "chat"
    WORKFLOW = "workflow"
    PLAN_CONFIRMATION = "plan_confirmation"


class ResponseStatus(str, Enum):
    COMPLETED = "completed"
    PLANNED = "planned"
    RUNNING = "running"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CANCELLED = "cancelled"
    ERROR = "error"


class StepOperation(str, Enum):
    READ = "read"
    WRITE = "write"


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


# ═══════════════════════════════════════════════════════════════════
# Tool calls and results
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ToolCall:
    """A named, argument-bearing request to run one tool."""
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=copy.deepcopy(self.arguments))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": copy.deepcopy(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        arguments = data.get("arguments")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            arguments=dict(arguments) if isinstance(arguments, dict) else {},
        )


@dataclass
class ToolResult:
    """
    Structured outcome of a tool call.

    Tools report failure through ``success=False`` and a machine-readable
    ``data["errorCode"]``; they never raise across the registry boundary.
    """
    success: bool
    message: str
    data: dict[str, Any] | None = None

    @property
    def error_code(self) -> str | None:
        from agent.recovery import extract_tool_error_code
        return extract_tool_error_code(self.data)

    def with_data(self, **updates: Any) -> ToolResult:
        """Copy of this result with extra keys merged into ``data``."""
        data = dict(self.data or {})
        data.update(updates)
        return ToolResult(success=self.success, message=self.message, data=data)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        payload = data.get("data")
        return cls(
            success=bool(data.get("success")),
            message=str(data.get("message") or ""),
            data=payload if isinstance(payload, dict) else None,
        )


@dataclass
class ExecutedTool:
    name: str
    result: ToolResult

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "result": self.result.to_dict()}


# ═══════════════════════════════════════════════════════════════════
# Chat provider messages
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Message:
    role: str  # system | user | assistant | tool
    content: str | list[dict[str, Any]] | None
    tool_call_id: str | None = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "role": self.role,
            "content": self.content,
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "tool_calls": [c.to_dict() for c in self.tool_calls] if self.tool_calls else None,
        })


@dataclass
class ToolDefinition:
    """Tool surface exposed to the chat provider as a JSON schema."""
    name: str
    description: str
    parameters: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


@dataclass
class ChatResponse:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"  # stop | tool_calls | error


# ═══════════════════════════════════════════════════════════════════
# Plans
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PlanStep:
    id: str
    tool_name: str
    arguments: dict[str, Any]
    summary: str = ""
    requires_confirmation: bool = False
    operation: StepOperation | None = None
    depends_on: list[str] | None = None
    resource_locks: list[str] | None = None
    optional: bool = False

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.tool_name, arguments=copy.deepcopy(self.arguments))

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "tool_name": self.tool_name,
            "arguments": copy.deepcopy(self.arguments),
            "summary": self.summary,
            "requires_confirmation": self.requires_confirmation,
            "operation": self.operation.value if self.operation else None,
            "depends_on": list(self.depends_on) if self.depends_on is not None else None,
            "resource_locks": list(self.resource_locks) if self.resource_locks is not None else None,
            "optional": self.optional or None,
        })


@dataclass
class ExecutionPlan:
    id: str
    original_user_message: str
    created_at: str
    steps: list[PlanStep] = field(default_factory=list)

    def get_step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_user_message": self.original_user_message,
            "created_at": self.created_at,
            "steps": [s.to_dict() for s in self.steps],
        }


# ═══════════════════════════════════════════════════════════════════
# Workflow pause hints
# ═══════════════════════════════════════════════════════════════════

@dataclass
class WorkflowNextStep:
    id: str
    tool_name: str
    summary: str | None = None
    arguments: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id, "toolName": self.tool_name,
            "summary": self.summary, "arguments": self.arguments,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowNextStep:
        arguments = data.get("arguments")
        return cls(
            id=str(data.get("id") or ""),
            tool_name=str(data.get("toolName") or data.get("tool_name") or ""),
            summary=data.get("summary"),
            arguments=dict(arguments) if isinstance(arguments, dict) else None,
        )


@dataclass
class WorkflowResumeHint:
    """Arguments that resume a paused workflow at the step awaiting confirmation."""
    workflow_name: str
    start_from_step_id: str
    confirm_required_steps: bool = True
    step_overrides: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "workflowName": self.workflow_name,
            "startFromStepId": self.start_from_step_id,
            "confirmRequiredSteps": self.confirm_required_steps,
            "stepOverrides": copy.deepcopy(self.step_overrides),
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowResumeHint:
        overrides = data.get("stepOverrides")
        return cls(
            workflow_name=str(data.get("workflowName") or ""),
            start_from_step_id=str(data.get("startFromStepId") or ""),
            confirm_required_steps=bool(data.get("confirmRequiredSteps", True)),
            step_overrides=copy.deepcopy(overrides) if isinstance(overrides, list) else None,
        )


# ═══════════════════════════════════════════════════════════════════
# Agent responses
# ═══════════════════════════════════════════════════════════════════

@dataclass
class AgentResponse:
    message: str
    success: bool
    status: ResponseStatus | None = None
    tool_calls: list[ExecutedTool] | None = None
    requires_confirmation: bool = False
    plan: ExecutionPlan | None = None
    request_id: str | None = None
    next_step: WorkflowNextStep | None = None
    resume_hint: WorkflowResumeHint | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "message": self.message,
            "success": self.success,
            "status": self.status.value if self.status else None,
            "tool_calls": [t.to_dict() for t in self.tool_calls] if self.tool_calls else None,
            "requires_confirmation": self.requires_confirmation or None,
            "plan": self.plan.to_dict() if self.plan else None,
            "request_id": self.request_id,
            "next_step": self.next_step.to_dict() if self.next_step else None,
            "resume_hint": self.resume_hint.to_dict() if self.resume_hint else None,
            "error_code": self.error_code,
        })


# ═══════════════════════════════════════════════════════════════════
# Tool execution context
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ToolProgress:
    message: str
    data: dict[str, Any] | None = None


@dataclass
class ToolExecutionContext:
    """
    Passed to every tool body.

    ``token`` is the cancellation token for this call; long-running tools
    check it at their own await points. ``document`` is the injected
    document handle, so tools never reach for a global editor.
    """
    request_id: str | None = None
    mode: ExecutionMode | None = None
    tool_name: str | None = None
    tool_call_id: str | None = None
    token: CancellationToken | None = None
    document: DocumentMutator | None = None
    report_progress: Callable[[ToolProgress], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.token is not None and self.token.cancelled
