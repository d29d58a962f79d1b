"""
HyperCut Agent - Workflow Schemas

Pydantic models for workflow templates, their per-argument schemas and
user step overrides. Templates are loaded from catalog.yaml and validated
here once; everything downstream works with typed models.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from agent.types import PlanStep, StepOperation


# ---------------------------------------------------------------------------
# Argument schema
# ---------------------------------------------------------------------------

class ArgumentType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ArgumentSchema(BaseModel):
    """Bounds for one overridable step argument."""
    key: str = Field(description="Argument name inside the step's arguments")
    type: ArgumentType = Field(description="Expected JSON type of the value")
    description: str = Field(default="", description="Shown to users and the language model")
    default_value: Any = Field(default=None, description="Value used when the user does not override it")
    min: Optional[float] = Field(default=None, description="Inclusive lower bound (numbers)")
    max: Optional[float] = Field(default=None, description="Inclusive upper bound (numbers)")
    enum: Optional[list[Any]] = Field(default=None, description="Allowed values")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class WorkflowScenario(str, Enum):
    GENERAL = "general"
    PODCAST = "podcast"
    TALKING_HEAD = "talking-head"
    COURSE = "course"


class QualityConfig(BaseModel):
    enabled: bool = False
    max_iterations: Optional[int] = None
    target_duration_seconds: Optional[float] = Field(default=None, gt=0)
    duration_tolerance_ratio: Optional[float] = Field(default=None, ge=0, le=1)
    blocking: bool = Field(default=True, description="False: an unmet target is a warning, not a failure")


class WorkflowStep(BaseModel):
    id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    argument_schema: list[ArgumentSchema] = Field(default_factory=list)
    summary: str = ""
    requires_confirmation: bool = False
    optional: bool = Field(default=False, description="Failure does not stop the workflow")
    operation: Optional[StepOperation] = None
    depends_on: Optional[list[str]] = None
    resource_locks: Optional[list[str]] = None

    def schema_for(self, key: str) -> ArgumentSchema | None:
        for entry in self.argument_schema:
            if entry.key == key:
                return entry
        return None

    def to_plan_step(self) -> PlanStep:
        return PlanStep(
            id=self.id,
            tool_name=self.tool_name,
            arguments=dict(self.arguments),
            summary=self.summary or self.tool_name,
            requires_confirmation=self.requires_confirmation,
            operation=self.operation,
            depends_on=list(self.depends_on) if self.depends_on is not None else None,
            resource_locks=list(self.resource_locks) if self.resource_locks is not None else None,
            optional=self.optional,
        )


class Workflow(BaseModel):
    name: str
    description: str
    scenario: WorkflowScenario = WorkflowScenario.GENERAL
    template_description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    quality: Optional[QualityConfig] = None
    steps: list[WorkflowStep] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_steps(self) -> Workflow:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"workflow {self.name}: duplicate step id {step.id!r}")
            for dep in step.depends_on or []:
                if dep not in seen:
                    raise ValueError(
                        f"workflow {self.name}: step {step.id!r} depends on {dep!r}, "
                        "which is not an earlier step"
                    )
            seen.add(step.id)
        return self

    def summary_dict(self) -> dict[str, Any]:
        """Listing shape returned by the list_workflows tool."""
        return {
            "name": self.name,
            "description": self.description,
            "scenario": self.scenario.value,
            "templateDescription": self.template_description,
            "steps": [
                {
                    "id": step.id,
                    "toolName": step.tool_name,
                    "summary": step.summary,
                    "arguments": dict(step.arguments),
                    "requiresConfirmation": step.requires_confirmation,
                }
                for step in self.steps
            ],
        }


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class StepOverride(BaseModel):
    step_id: Optional[str] = None
    index: Optional[int] = None
    arguments: dict[str, Any]

    @property
    def target(self) -> str:
        return self.step_id if self.step_id is not None else str(self.index)


class ResolvedWorkflow(BaseModel):
    workflow: Workflow
    steps: list[WorkflowStep]

    def to_plan_steps(self) -> list[PlanStep]:
        return [step.to_plan_step() for step in self.steps]
