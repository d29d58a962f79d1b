"""
HyperCut Agent - API Models

Request dataclasses for the API server.
No FastAPI dependency: used by the server and by tests.

Bodies accept the camelCase keys the editor UI sends (``workflowName``,
``stepOverrides``...) as well as snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _pick(body: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in body:
            return body[key]
    return default


@dataclass
class MessageRequest:
    """POST /v1/agent/messages body."""
    message: str

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> MessageRequest:
        return cls(message=body.get("message", ""))

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.message, str) or not self.message.strip():
            errors.append("message is required and must be a non-empty string")
        return errors


@dataclass
class PlanStepUpdate:
    """PATCH /v1/agent/plan/steps/{step_id} body."""
    arguments: dict[str, Any]

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> PlanStepUpdate:
        return cls(arguments=body.get("arguments"))

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.arguments, dict):
            errors.append("arguments is required and must be an object")
        return errors


@dataclass
class WorkflowRunRequest:
    """POST /v1/agent/workflows/run body."""
    workflow_name: str
    step_overrides: list[dict[str, Any]] | None = None
    start_from_step_id: str | None = None
    confirm_required_steps: bool | None = None
    quality_max_iterations: int | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> WorkflowRunRequest:
        return cls(
            workflow_name=_pick(body, "workflowName", "workflow_name", "name", default=""),
            step_overrides=_pick(body, "stepOverrides", "step_overrides"),
            start_from_step_id=_pick(body, "startFromStepId", "start_from_step_id"),
            confirm_required_steps=_pick(body, "confirmRequiredSteps", "confirm_required_steps"),
            quality_max_iterations=_pick(body, "qualityMaxIterations", "quality_max_iterations"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.workflow_name, str) or not self.workflow_name.strip():
            errors.append("workflowName is required and must be a string")
        if self.step_overrides is not None and not isinstance(self.step_overrides, list):
            errors.append("stepOverrides must be an array")
        if self.start_from_step_id is not None and not isinstance(self.start_from_step_id, str):
            errors.append("startFromStepId must be a string")
        if self.confirm_required_steps is not None and not isinstance(self.confirm_required_steps, bool):
            errors.append("confirmRequiredSteps must be a boolean")
        if self.quality_max_iterations is not None and (
            isinstance(self.quality_max_iterations, bool) or not isinstance(self.quality_max_iterations, int)
        ):
            errors.append("qualityMaxIterations must be an integer")
        return errors


@dataclass
class ToolExecutionRequest:
    """POST /v1/agent/tools/{tool_name} body."""
    arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ToolExecutionRequest:
        return cls(arguments=body.get("arguments", {}))

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.arguments, dict):
            errors.append("arguments must be an object")
        return errors
