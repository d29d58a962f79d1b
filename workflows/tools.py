"""
HyperCut Agent - Workflow Tools

The two tools the engine itself ships: ``list_workflows`` and
``run_workflow``. Every other tool comes from the host.

run_workflow:
  1. resolves the template and overrides (workflows.resolver)
  2. checks every step names a registered, non-workflow tool
  3. drops the steps before ``startFromStepId`` when resuming
  4. runs the steps as a DAG (agent.dag): writes serialize on the editor
     lock, reads run alongside each other
  5. with ``confirmRequiredSteps`` it stops in front of a step that
     requires confirmation (other than the resume step) and returns a
     WORKFLOW_CONFIRMATION_REQUIRED result with nextStep / resumeHint

A failed optional step is recorded and the workflow continues; any other
failure stops the run with WORKFLOW_STEP_FAILED and the step results so far.

Usage:
    toolset = WorkflowToolset(registry, catalog)
    toolset.register()
    result = await registry.execute("run_workflow", {"workflowName": "full-cleanup"}, context)
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Awaitable, Callable

from agent.cancellation import CancellationToken, build_execution_cancelled_result, is_cancelled_result
from agent.dag import DagNode, NodeOutcome, build_dag, run_dag
from agent.tools import ToolRegistry
from agent.types import (
    StepOperation,
    ToolCall,
    ToolExecutionContext,
    ToolProgress,
    ToolResult,
    WorkflowNextStep,
    WorkflowResumeHint,
)
from workflows.registry import WorkflowCatalog, default_catalog
from workflows.resolver import INVALID_WORKFLOW_REQUEST, resolve_workflow_from_params

logger = logging.getLogger("hypercut_agent.workflows.tools")

LIST_WORKFLOWS = "list_workflows"
RUN_WORKFLOW = "run_workflow"
WORKFLOW_TOOL_NAMES = frozenset({LIST_WORKFLOWS, RUN_WORKFLOW})

WORKFLOW_NESTING_NOT_ALLOWED = "WORKFLOW_NESTING_NOT_ALLOWED"
WORKFLOW_TOOL_NOT_FOUND = "WORKFLOW_TOOL_NOT_FOUND"
WORKFLOW_STEP_FAILED = "WORKFLOW_STEP_FAILED"
WORKFLOW_CONFIRMATION_REQUIRED = "WORKFLOW_CONFIRMATION_REQUIRED"
REQUIRES_CONFIRMATION_STATE = "REQUIRES_CONFIRMATION"

LIST_WORKFLOWS_PARAMETERS = {
    "type": "object",
    "properties": {
        "scenario": {
            "type": "string",
            "enum": ["general", "podcast", "talking-head", "course"],
            "description": "只列出某个场景的工作流 (Filter by scenario)",
        },
    },
    "required": [],
}

RUN_WORKFLOW_PARAMETERS = {
    "type": "object",
    "properties": {
        "workflowName": {
            "type": "string",
            "description": "工作流名称，例如 auto-caption-cleanup (Workflow name)",
        },
        "name": {"type": "string", "description": "workflowName 的别名 (alias)"},
        "stepOverrides": {
            "type": "array",
            "description": "步骤参数覆盖数组：[{ stepId 或 index, arguments }] (Optional step overrides)",
        },
        "startFromStepId": {
            "type": "string",
            "description": "从指定步骤继续执行 (Resume from this step)",
        },
        "confirmRequiredSteps": {
            "type": "boolean",
            "description": "遇到需确认的步骤时暂停 (Pause before steps that require confirmation)",
        },
    },
    "required": [],
}

StepExecutor = Callable[[ToolCall, ToolExecutionContext, int, int], Awaitable[ToolResult]]


def is_confirmation_pause(result: ToolResult) -> bool:
    """True for results that ask the user to confirm before continuing."""
    data = result.data or {}
    return (
        data.get("errorCode") == WORKFLOW_CONFIRMATION_REQUIRED
        or data.get("stateCode") == REQUIRES_CONFIRMATION_STATE
    )


def _failure(message: str, error_code: str, **data: Any) -> ToolResult:
    return ToolResult(success=False, message=message, data={"errorCode": error_code, **data})


class WorkflowToolset:
    """
    Binds the workflow tools to a tool registry and a catalog.

    ``step_executor`` runs one workflow step; the orchestrator installs its
    recovery-aware executor here. The default calls the registry directly.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        catalog: WorkflowCatalog | None = None,
        step_executor: StepExecutor | None = None,
        max_parallel_steps: int = 4,
    ):
        self.registry = registry
        self.catalog = catalog if catalog is not None else default_catalog()
        self.step_executor = step_executor or self._execute_directly
        self.max_parallel_steps = max_parallel_steps

    def register(self) -> None:
        self.registry.register(
            LIST_WORKFLOWS, self.list_workflows,
            description="列出可复用的预置工作流（名称、描述、步骤）。List available predefined workflows.",
            parameters=LIST_WORKFLOWS_PARAMETERS,
            operation=StepOperation.READ,
        )
        self.registry.register(
            RUN_WORKFLOW, self.run_workflow,
            description=(
                "执行预置工作流。Execute a predefined workflow by name. "
                "支持 stepOverrides 覆盖某一步参数。"
            ),
            parameters=RUN_WORKFLOW_PARAMETERS,
            operation=StepOperation.WRITE,
        )

    async def _execute_directly(
        self, call: ToolCall, context: ToolExecutionContext, step_index: int, total_steps: int,
    ) -> ToolResult:
        return await self.registry.execute(call.name, call.arguments, context)

    # ── list_workflows ───────────────────────────────────────────

    def list_workflows(self, arguments: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        scenario = arguments.get("scenario")
        workflows = [
            w for w in self.catalog.list()
            if not scenario or w.scenario.value == scenario
        ]
        if not workflows:
            return ToolResult(
                success=True,
                message="当前没有可用工作流 (No workflows available)",
                data={"workflows": []},
            )
        lines = [f"- {w.name}: {w.description} ({len(w.steps)} steps)" for w in workflows]
        return ToolResult(
            success=True,
            message="可用工作流:\n" + "\n".join(lines),
            data={"workflows": [w.summary_dict() for w in workflows]},
        )

    # ── run_workflow ─────────────────────────────────────────────

    async def run_workflow(self, arguments: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        resolution = resolve_workflow_from_params(arguments, self.catalog)
        if not resolution.ok:
            return _failure(resolution.message, resolution.error_code or INVALID_WORKFLOW_REQUEST)
        workflow = resolution.resolved.workflow
        steps = resolution.resolved.to_plan_steps()

        for step in steps:
            if step.tool_name in WORKFLOW_TOOL_NAMES:
                return _failure(
                    f"工作流步骤 {step.id} 包含保留工具 {step.tool_name}，不支持嵌套工作流执行",
                    WORKFLOW_NESTING_NOT_ALLOWED, stepId=step.id,
                )
            if step.tool_name not in self.registry:
                return _failure(
                    f"工作流步骤 {step.id} 对应工具不存在: {step.tool_name} (Tool not found)",
                    WORKFLOW_TOOL_NOT_FOUND, stepId=step.id, toolName=step.tool_name,
                )

        start_from = arguments.get("startFromStepId")
        if isinstance(start_from, str) and start_from.strip():
            start_from = start_from.strip()
            ids = [s.id for s in steps]
            if start_from not in ids:
                return _failure(
                    f"找不到起始步骤: {start_from} (startFromStepId not found)",
                    INVALID_WORKFLOW_REQUEST, workflowName=workflow.name,
                )
            steps = steps[ids.index(start_from):]
        else:
            start_from = None
        confirm_required = bool(arguments.get("confirmRequiredSteps", False))

        dag = build_dag(steps)
        total = len(steps)
        results: dict[str, ToolResult] = {}
        token = context.token or CancellationToken()

        def gate(node: DagNode) -> bool:
            if not confirm_required or not node.step.requires_confirmation:
                return True
            return node.id == start_from

        async def worker(node: DagNode, node_token: CancellationToken) -> NodeOutcome:
            step = node.step
            if context.report_progress:
                context.report_progress(ToolProgress(
                    message=f"步骤 {node.index + 1}/{total}: {step.summary or step.tool_name}",
                    data={"workflowName": workflow.name, "stepId": step.id},
                ))
            call = ToolCall(id=f"{context.tool_call_id or workflow.name}:{step.id}",
                            name=step.tool_name, arguments=copy.deepcopy(step.arguments))
            step_context = ToolExecutionContext(
                request_id=context.request_id,
                mode=context.mode,
                tool_name=step.tool_name,
                tool_call_id=call.id,
                token=node_token,
                document=context.document,
                report_progress=context.report_progress,
            )
            result = await self.step_executor(call, step_context, node.index, total)
            results[step.id] = result
            if is_cancelled_result(result) or is_confirmation_pause(result):
                return NodeOutcome(success=False, halt=True, value=result)
            if result.success:
                return NodeOutcome(success=True, value=result)
            if step.optional:
                logger.info("Optional step %s of %s failed: %s", step.id, workflow.name, result.message)
                return NodeOutcome(success=False, value=result)
            return NodeOutcome(success=False, halt=True, value=result)

        summary = await run_dag(dag, worker, token=token, max_concurrency=self.max_parallel_steps, gate=gate)

        step_results = [
            {"stepId": node.id, "toolName": node.step.tool_name, "result": results[node.id].to_dict()}
            for node in dag.nodes if node.id in results
        ]
        base = {"workflowName": workflow.name, "stepResults": step_results}

        if summary.cancelled or token.cancelled:
            return build_execution_cancelled_result(base)

        if summary.halted_by is not None:
            node = dag.by_id[summary.halted_by]
            halted = results[node.id]
            if is_cancelled_result(halted):
                return build_execution_cancelled_result(base)
            if is_confirmation_pause(halted):
                return self._pause_result(workflow.name, node, arguments, base, halted)
            return _failure(
                f"工作流执行失败，停止在步骤 {node.id} ({node.step.tool_name})：{halted.message}",
                WORKFLOW_STEP_FAILED, stepId=node.id, **base,
            )

        if summary.paused_at is not None:
            return self._pause_result(workflow.name, dag.by_id[summary.paused_at], arguments, base)

        failed_optional = [node.id for node in dag.nodes if node.id in results and not results[node.id].success]
        message = f"工作流 {workflow.name} 执行完成，共 {len(step_results)} 步"
        if failed_optional:
            message += f"（可选步骤失败: {', '.join(failed_optional)}）"
            base["failedOptionalSteps"] = failed_optional
        return ToolResult(success=True, message=message, data=base)

    def _pause_result(
        self,
        workflow_name: str,
        node: DagNode,
        arguments: dict[str, Any],
        base: dict[str, Any],
        cause: ToolResult | None = None,
    ) -> ToolResult:
        step = node.step
        next_step = WorkflowNextStep(
            id=step.id, tool_name=step.tool_name, summary=step.summary,
            arguments=copy.deepcopy(step.arguments),
        )
        overrides = arguments.get("stepOverrides")
        resume_hint = WorkflowResumeHint(
            workflow_name=workflow_name,
            start_from_step_id=step.id,
            confirm_required_steps=True,
            step_overrides=copy.deepcopy(overrides) if isinstance(overrides, list) else None,
        )
        message = f"工作流 {workflow_name} 已暂停，等待确认步骤 {step.id} ({step.summary or step.tool_name})"
        if cause is not None and cause.message:
            message += f"：{cause.message}"
        logger.info("Workflow %s paused before %s", workflow_name, step.id)
        return ToolResult(
            success=False,
            message=message,
            data={
                "errorCode": WORKFLOW_CONFIRMATION_REQUIRED,
                "status": "awaiting_confirmation",
                "nextStep": next_step.to_dict(),
                "resumeHint": resume_hint.to_dict(),
                **base,
            },
        )
