"""
HyperCut Agent - Workflow Resolver

Expands a named template into concrete steps, overlaying user overrides.

Params (as received from the run_workflow tool):
    {"workflowName": "podcast-to-clips",          # or "name"
     "stepOverrides": [{"stepId": "generate-plan", # or "index": 2
                        "arguments": {"targetDuration": 75}}]}

Every overridden key that the target step declares in its argument_schema
is checked against that schema (type, min, max, enum). Resolution is
all-or-nothing: the first violation fails the whole request and no step is
modified. Keys without a schema entry pass through unchecked.

Usage:
    resolution = resolve_workflow_from_params(params)
    if not resolution.ok:
        return ToolResult(False, resolution.message, {"errorCode": resolution.error_code})
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from workflows.registry import WorkflowCatalog, default_catalog
from workflows.schemas import ArgumentSchema, ArgumentType, ResolvedWorkflow, StepOverride, WorkflowStep

logger = logging.getLogger("hypercut_agent.workflows.resolver")

INVALID_WORKFLOW_REQUEST = "INVALID_WORKFLOW_REQUEST"
VALIDATION_ERROR = "VALIDATION_ERROR"


@dataclass
class WorkflowResolution:
    ok: bool
    resolved: ResolvedWorkflow | None = None
    message: str = ""
    error_code: str | None = None

    @classmethod
    def failure(cls, message: str, error_code: str = INVALID_WORKFLOW_REQUEST) -> WorkflowResolution:
        return cls(ok=False, message=message, error_code=error_code)


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def parse_workflow_name(params: dict[str, Any]) -> str | None:
    for key in ("workflowName", "name"):
        if _non_empty_string(params.get(key)):
            return params[key].strip()
    return None


def parse_step_overrides(value: Any) -> tuple[list[StepOverride] | None, str]:
    """Returns (overrides, "") or (None, error message)."""
    if value is None:
        return [], ""
    if not isinstance(value, list):
        return None, "stepOverrides 必须是数组 (stepOverrides must be an array)"

    overrides = []
    for i, candidate in enumerate(value):
        if isinstance(candidate, StepOverride):
            overrides.append(candidate)
            continue
        if not isinstance(candidate, dict):
            return None, f"stepOverrides[{i}] 必须是对象 (must be an object)"

        raw_step_id = candidate.get("stepId", candidate.get("step_id"))
        raw_index = candidate.get("index")
        has_step_id = _non_empty_string(raw_step_id)
        has_index = (
            isinstance(raw_index, (int, float)) and not isinstance(raw_index, bool)
            and math.isfinite(raw_index) and raw_index >= 0
        )
        if not has_step_id and not has_index:
            return None, f"stepOverrides[{i}] 必须提供 stepId 或 index (stepId or index is required)"
        if not isinstance(candidate.get("arguments"), dict):
            return None, f"stepOverrides[{i}].arguments 必须是对象 (arguments must be an object)"

        overrides.append(StepOverride(
            step_id=raw_step_id.strip() if has_step_id else None,
            index=int(math.floor(raw_index)) if has_index and not has_step_id else None,
            arguments=dict(candidate["arguments"]),
        ))
    return overrides, ""


# ═══════════════════════════════════════════════════════════════════
# Schema checks
# ═══════════════════════════════════════════════════════════════════

def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _matches_type(value: Any, expected: ArgumentType) -> bool:
    if expected is ArgumentType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
    if expected is ArgumentType.STRING:
        return isinstance(value, str)
    if expected is ArgumentType.BOOLEAN:
        return isinstance(value, bool)
    if expected is ArgumentType.ARRAY:
        return isinstance(value, list)
    return isinstance(value, dict)


def check_argument(step: WorkflowStep, schema: ArgumentSchema, value: Any) -> str | None:
    """Violation message for ``value`` against ``schema``, or None when valid."""
    key = schema.key
    prefix = f"工作流参数校验失败: 步骤 {step.id} 的 `{key}`"
    if not _matches_type(value, schema.type):
        return f"{prefix} 类型错误，应为 {schema.type.value} (expected {schema.type.value})"
    if schema.type is ArgumentType.NUMBER:
        if schema.min is not None and value < schema.min:
            return f"{prefix} 低于最小值 {_fmt(schema.min)} (value {_fmt(value)} is below minimum {_fmt(schema.min)})"
        if schema.max is not None and value > schema.max:
            return f"{prefix} 高于最大值 {_fmt(schema.max)} (value {_fmt(value)} exceeds maximum {_fmt(schema.max)})"
    if schema.enum is not None and value not in schema.enum:
        allowed = ", ".join(_fmt(v) for v in schema.enum)
        return f"{prefix} 不在允许范围内: {allowed} (value {_fmt(value)} not in enum)"
    return None


def _locate(steps: list[WorkflowStep], override: StepOverride) -> int:
    if override.step_id is not None:
        for i, step in enumerate(steps):
            if step.id == override.step_id:
                return i
        return -1
    index = override.index if override.index is not None else -1
    return index if 0 <= index < len(steps) else -1


# ═══════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════

def apply_step_overrides(
    steps: list[WorkflowStep],
    overrides: list[StepOverride],
) -> tuple[list[WorkflowStep] | None, str, str | None]:
    """
    Returns (steps, "", None) on success or (None, message, error_code).
    The input steps are never modified.
    """
    next_steps = [step.model_copy(deep=True) for step in steps]
    for override in overrides:
        target = _locate(next_steps, override)
        if target < 0:
            return None, f"找不到要覆盖的工作流步骤 ({override.target})", INVALID_WORKFLOW_REQUEST
        step = next_steps[target]
        for key, value in override.arguments.items():
            schema = step.schema_for(key)
            if schema is None:
                continue
            violation = check_argument(step, schema, value)
            if violation:
                return None, violation, VALIDATION_ERROR
        step.arguments = {**step.arguments, **override.arguments}
    return next_steps, "", None


def resolve_workflow_from_params(
    params: dict[str, Any],
    catalog: WorkflowCatalog | None = None,
) -> WorkflowResolution:
    if catalog is None:
        catalog = default_catalog()
    if not isinstance(params, dict):
        return WorkflowResolution.failure("run_workflow 参数必须是对象 (params must be an object)")

    name = parse_workflow_name(params)
    if not name:
        return WorkflowResolution.failure(
            "缺少 workflowName 参数 (Missing workflowName). "
            "例如: run_workflow({ workflowName: 'auto-caption-cleanup' })"
        )

    workflow = catalog.get(name)
    if workflow is None:
        return WorkflowResolution.failure(f"未找到工作流: {name} (Workflow not found)")

    overrides, error = parse_step_overrides(params.get("stepOverrides"))
    if overrides is None:
        return WorkflowResolution.failure(error)

    steps, error, code = apply_step_overrides(workflow.steps, overrides)
    if steps is None:
        logger.info("Workflow %s rejected: %s", workflow.name, error)
        return WorkflowResolution.failure(error, code or INVALID_WORKFLOW_REQUEST)

    return WorkflowResolution(ok=True, resolved=ResolvedWorkflow(workflow=workflow, steps=steps))
