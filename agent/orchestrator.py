"""
HyperCut Agent - Orchestrator

Turns a conversational turn into tool execution against the document:

    user message -> chat provider -> tool calls -> registry -> document
                          ^                              |
                          +-------- tool results --------+

Request state machine:
    idle -> awaiting_provider -> plan_confirmation | running
         -> completed | cancelled | error

  - one request at a time per orchestrator (single-flow session)
  - tool calls of one provider response run in the order received
  - failed calls go through the recovery table before they are surfaced
  - each call has a timeout; a timeout counts as PROVIDER_UNAVAILABLE
  - run_workflow calls are wrapped in the quality loop of their workflow
  - confirmed plans and workflow steps run as a DAG (agent.dag)
  - a workflow pause ends the turn with status awaiting_confirmation
  - every transition is published on the execution event log

Usage:
    registry = ToolRegistry()
    registry.register("split_clip", split_clip, description="...", parameters={...})

    orchestrator = AgentOrchestrator(registry, provider, document=doc)
    response = await orchestrator.process("把开头 3 秒剪掉")
    if response.status is ResponseStatus.PLANNED:
        response = await orchestrator.confirm_pending_plan()
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from agent.cancellation import (
    EXECUTION_CANCELLED_ERROR_CODE,
    CancellationToken,
    ExecutionCancelled,
    build_execution_cancelled_result,
    cancellable_sleep,
    is_cancellation_error,
    is_cancelled_result,
    run_cancellable,
)
from agent.config import DEFAULT_CONFIG, get_config_value, positive_int
from agent.dag import DagNode, NodeOutcome, build_dag, run_dag
from agent.document import DocumentMutator
from agent.events import AgentExecutionEvent, ExecutionEventLog, ExecutionEventType
from agent.providers import ChatProvider, ProviderError, create_routed_provider
from agent.quality import IterationController, QualityEvaluator, QualityLoopConfig, QualityThresholds, clamp_quality_iterations
from agent.recovery import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_BACKOFF_MAX_MS,
    PROVIDER_UNAVAILABLE,
    RecoveryPolicyTable,
    builtin_policies,
    default_policy_table,
    extract_tool_error_code,
)
from agent.tools import TOOL_EXECUTION_FAILED, ToolRegistry
from agent.types import (
    AgentResponse,
    ChatResponse,
    ExecutedTool,
    ExecutionMode,
    ExecutionPlan,
    Message,
    PlanStep,
    ResponseStatus,
    ToolCall,
    ToolExecutionContext,
    ToolProgress,
    ToolResult,
    WorkflowNextStep,
    WorkflowResumeHint,
)
from workflows.registry import WorkflowCatalog, default_catalog
from workflows.resolver import parse_workflow_name, resolve_workflow_from_params
from workflows.tools import RUN_WORKFLOW, WORKFLOW_TOOL_NAMES, WorkflowToolset, is_confirmation_pause

logger = logging.getLogger("hypercut_agent.orchestrator")

_ORCHESTRATOR_DEFAULTS = DEFAULT_CONFIG["orchestrator"]

DEFAULT_MAX_HISTORY_MESSAGES = 30
DEFAULT_MAX_TOOL_ITERATIONS = 4
DEFAULT_TOOL_TIMEOUT_MS = 60000
DEFAULT_MAX_PARALLEL_STEPS = 4

PLAN_INTRO = "我已生成执行计划，请确认后再执行："
PLAN_PENDING_MESSAGE = "当前有待确认的计划，请先确认执行或取消后再发起新请求。"
NO_PENDING_PLAN_MESSAGE = "当前没有待确认的计划。"
PLAN_RUNNING_MESSAGE = "计划正在执行中，请勿重复确认。"
REQUEST_BUSY_MESSAGE = "当前已有请求正在执行，请等待完成或取消后再试。(Another request is in progress)"
TOOL_LIMIT_MESSAGE = "工具调用次数已达上限，请重试 (Tool call limit reached)"
CONFIRM_PLAN_MARKER = "[确认执行计划]"
CANCEL_PLAN_MARKER = "[取消执行计划]"
PLAN_CANCELLED_MESSAGE = "已取消执行计划。"
CANCELLED_MESSAGE = "执行已取消 (Execution cancelled)"
TOOL_LIMIT_REACHED = "TOOL_LIMIT_REACHED"


# ═══════════════════════════════════════════════════════════════════
# Options
# ═══════════════════════════════════════════════════════════════════

@dataclass
class OrchestratorOptions:
    system_prompt: str = _ORCHESTRATOR_DEFAULTS["system_prompt"]
    max_history_messages: int = DEFAULT_MAX_HISTORY_MESSAGES
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    tool_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
    planning_enabled: bool = False
    max_parallel_steps: int = DEFAULT_MAX_PARALLEL_STEPS
    quality_max_iterations: int = 2

    def __post_init__(self):
        # Non-positive numbers fall back to the defaults
        self.max_history_messages = positive_int(self.max_history_messages, DEFAULT_MAX_HISTORY_MESSAGES)
        self.max_tool_iterations = positive_int(self.max_tool_iterations, DEFAULT_MAX_TOOL_ITERATIONS)
        self.tool_timeout_ms = positive_int(self.tool_timeout_ms, DEFAULT_TOOL_TIMEOUT_MS)
        self.max_parallel_steps = positive_int(self.max_parallel_steps, DEFAULT_MAX_PARALLEL_STEPS)
        self.quality_max_iterations = clamp_quality_iterations(self.quality_max_iterations)
        if not self.system_prompt:
            self.system_prompt = _ORCHESTRATOR_DEFAULTS["system_prompt"]

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> OrchestratorOptions:
        section = get_config_value("orchestrator", config or {}, {}) or {}
        return cls(
            system_prompt=section.get("system_prompt") or _ORCHESTRATOR_DEFAULTS["system_prompt"],
            max_history_messages=section.get("max_history_messages", DEFAULT_MAX_HISTORY_MESSAGES),
            max_tool_iterations=section.get("max_tool_iterations", DEFAULT_MAX_TOOL_ITERATIONS),
            tool_timeout_ms=section.get("tool_timeout_ms", DEFAULT_TOOL_TIMEOUT_MS),
            planning_enabled=bool(section.get("planning_enabled", False)),
            max_parallel_steps=section.get("max_parallel_steps", DEFAULT_MAX_PARALLEL_STEPS),
            quality_max_iterations=section.get("quality_max_iterations", 2),
        )


# ═══════════════════════════════════════════════════════════════════
# Request state machine
# ═══════════════════════════════════════════════════════════════════

class RequestState(str, Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    PLAN_CONFIRMATION = "plan_confirmation"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class IllegalStateTransition(Exception):
    """Raised when a request attempts a transition its current state does not allow."""
    pass


# Valid transitions: {from_state: [valid_to_states]}
VALID_TRANSITIONS = {
    RequestState.IDLE: [
        RequestState.AWAITING_PROVIDER, RequestState.RUNNING, RequestState.PLAN_CONFIRMATION,
        RequestState.CANCELLED, RequestState.ERROR,
    ],
    RequestState.AWAITING_PROVIDER: [
        RequestState.PLAN_CONFIRMATION, RequestState.RUNNING, RequestState.COMPLETED,
        RequestState.CANCELLED, RequestState.ERROR,
    ],
    RequestState.RUNNING: [
        RequestState.AWAITING_PROVIDER, RequestState.PLAN_CONFIRMATION, RequestState.COMPLETED,
        RequestState.CANCELLED, RequestState.ERROR,
    ],
    RequestState.PLAN_CONFIRMATION: [],  # Terminal: waits on the user
    RequestState.COMPLETED: [],  # Terminal
    RequestState.CANCELLED: [],  # Terminal
    RequestState.ERROR: [],  # Terminal
}

_STATE_FOR_STATUS = {
    ResponseStatus.COMPLETED: RequestState.COMPLETED,
    ResponseStatus.PLANNED: RequestState.PLAN_CONFIRMATION,
    ResponseStatus.AWAITING_CONFIRMATION: RequestState.PLAN_CONFIRMATION,
    ResponseStatus.CANCELLED: RequestState.CANCELLED,
    ResponseStatus.ERROR: RequestState.ERROR,
}


@dataclass
class ActiveRequest:
    """The one request an orchestrator is currently serving."""
    request_id: str
    mode: ExecutionMode
    token: CancellationToken
    state: RequestState = RequestState.IDLE
    started_at: float = 0.0

    def transition(self, to_state: RequestState) -> None:
        if to_state is self.state:
            return
        if to_state not in VALID_TRANSITIONS[self.state]:
            raise IllegalStateTransition(
                f"Request {self.request_id}: {self.state.value} -> {to_state.value} not allowed"
            )
        logger.debug("Request %s: %s -> %s", self.request_id, self.state.value, to_state.value)
        self.state = to_state


def _new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _result_summary(result: ToolResult) -> dict[str, Any]:
    summary: dict[str, Any] = {"success": result.success, "message": result.message}
    error_code = extract_tool_error_code(result.data)
    if error_code:
        summary["errorCode"] = error_code
    return summary


# ═══════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════

class AgentOrchestrator:
    """
    Conversational execution engine over a ToolRegistry.

    The workflow tools (list_workflows / run_workflow) are registered on the
    registry unless the host already registered tools under those names.
    Workflow steps are executed through this orchestrator, so they get the
    same timeout, recovery and events as any other tool call.
    """

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        provider: ChatProvider | None = None,
        document: DocumentMutator | None = None,
        options: OrchestratorOptions | None = None,
        catalog: WorkflowCatalog | None = None,
        quality_evaluator: QualityEvaluator | None = None,
        recovery_table: RecoveryPolicyTable | None = None,
        event_log: ExecutionEventLog | None = None,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if provider is None:
            raise ValueError("AgentOrchestrator requires a chat provider")
        self.registry = registry if registry is not None else ToolRegistry()
        self.provider = provider
        self.document = document
        self.options = options or OrchestratorOptions()
        self.catalog = catalog if catalog is not None else default_catalog()
        self.recovery_table = recovery_table if recovery_table is not None else default_policy_table()
        self.event_log = event_log if event_log is not None else ExecutionEventLog()
        self.iteration_controller = IterationController(quality_evaluator)
        self._sleep_fn = sleep_fn

        self.workflow_tools = WorkflowToolset(
            self.registry, self.catalog,
            step_executor=self._execute_workflow_step,
            max_parallel_steps=self.options.max_parallel_steps,
        )
        if not any(name in self.registry for name in WORKFLOW_TOOL_NAMES):
            self.workflow_tools.register()

        self._history: list[Message] = []
        self._pending_plan: ExecutionPlan | None = None
        self._plan_sequence = 0
        self._call_sequence = 0
        self._active: ActiveRequest | None = None

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        registry: ToolRegistry | None = None,
        document: DocumentMutator | None = None,
        **kwargs: Any,
    ) -> AgentOrchestrator:
        """Build provider, options, thresholds and recovery backoff from a loaded config."""
        transport = kwargs.pop("transport", None)
        provider = kwargs.pop("provider", None)
        if provider is None:
            provider = create_routed_provider(config.get("provider"), transport=transport)

        # Custom backoff gets its own table; the defaults share the default table
        backoff = get_config_value("recovery.provider_backoff", config, {}) or {}
        base_ms = positive_int(backoff.get("base_ms"), DEFAULT_BACKOFF_BASE_MS)
        max_ms = positive_int(backoff.get("max_ms"), DEFAULT_BACKOFF_MAX_MS)
        if "recovery_table" not in kwargs and (base_ms, max_ms) != (DEFAULT_BACKOFF_BASE_MS, DEFAULT_BACKOFF_MAX_MS):
            kwargs["recovery_table"] = RecoveryPolicyTable(builtin_policies(base_ms, max_ms))
        kwargs.setdefault("quality_evaluator", QualityEvaluator(QualityThresholds.from_config(config.get("quality"))))
        return cls(
            registry=registry,
            provider=provider,
            document=document,
            options=OrchestratorOptions.from_config(config),
            **kwargs,
        )

    # ── Introspection ────────────────────────────────────────────

    @property
    def active_request(self) -> ActiveRequest | None:
        return self._active

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    def get_pending_plan(self) -> ExecutionPlan | None:
        return self._pending_plan

    def clear_history(self) -> None:
        self._history = []
        self._pending_plan = None

    async def check_provider_status(self) -> dict[str, Any]:
        available = await self.provider.is_available()
        return {"available": available, "provider": getattr(self.provider, "name", "unknown")}

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Abort the active request. Returns False when nothing is running."""
        if self._active is None:
            return False
        logger.info("Cancelling request %s: %s", self._active.request_id, reason)
        self._active.token.cancel(reason)
        return True

    # ── Request bookkeeping ──────────────────────────────────────

    def _busy_response(self) -> AgentResponse | None:
        if self._active is None:
            return None
        message = PLAN_RUNNING_MESSAGE if self._active.mode is ExecutionMode.PLAN_CONFIRMATION else REQUEST_BUSY_MESSAGE
        return AgentResponse(message=message, success=False, status=ResponseStatus.ERROR)

    def _pending_plan_response(self) -> AgentResponse:
        return AgentResponse(
            message=PLAN_PENDING_MESSAGE,
            success=False,
            status=ResponseStatus.PLANNED,
            requires_confirmation=True,
            plan=self._pending_plan,
        )

    def _begin(self, mode: ExecutionMode, plan: ExecutionPlan | None = None) -> ActiveRequest:
        request = ActiveRequest(
            request_id=_new_request_id(), mode=mode, token=CancellationToken(), started_at=time.time(),
        )
        self._active = request
        logger.info("Request %s started (%s)", request.request_id, mode.value)
        self._emit(request, ExecutionEventType.REQUEST_STARTED, plan=plan.to_dict() if plan else None)
        return request

    def _finish(self, request: ActiveRequest, response: AgentResponse) -> AgentResponse:
        status = response.status or ResponseStatus.ERROR
        response.status = status
        response.request_id = request.request_id
        request.transition(_STATE_FOR_STATUS[status])
        elapsed_ms = (time.time() - request.started_at) * 1000
        logger.info(
            "Request %s finished: status=%s success=%s (%.1fms)",
            request.request_id, status.value, response.success, elapsed_ms,
        )
        self._emit(
            request, ExecutionEventType.REQUEST_COMPLETED,
            status=status, message=response.message,
            result={"success": response.success, "message": response.message},
        )
        return response

    def _release(self, request: ActiveRequest) -> None:
        if self._active is request:
            self._active = None

    def _emit(self, request: ActiveRequest, event_type: ExecutionEventType, **fields: Any) -> None:
        self.event_log.emit(AgentExecutionEvent(
            type=event_type, request_id=request.request_id, mode=request.mode, **fields,
        ))

    # ── History ──────────────────────────────────────────────────

    def _append_history(self, message: Message) -> None:
        self._history.append(message)
        overflow = len(self._history) - self.options.max_history_messages
        if overflow > 0:
            del self._history[:overflow]

    def _append_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        self._append_history(Message(
            role="tool",
            content=json.dumps(result.to_dict(), ensure_ascii=False, default=str),
            tool_call_id=call.id,
            name=call.name,
        ))

    def _build_messages(self) -> list[Message]:
        return [Message(role="system", content=self.options.system_prompt), *self._history]

    # ── Provider ─────────────────────────────────────────────────

    def _normalize_tool_calls(self, calls: list[ToolCall], sequence: int) -> list[ToolCall]:
        """Give missing or duplicated call ids a unique ``step-<seq>-<n>`` id."""
        seen: set[str] = set()
        normalized = []
        for index, call in enumerate(calls, start=1):
            call_id = (call.id or "").strip()
            if not call_id or call_id in seen:
                call_id = f"step-{sequence}-{index}"
            seen.add(call_id)
            normalized.append(ToolCall(id=call_id, name=call.name, arguments=copy.deepcopy(call.arguments or {})))
        return normalized

    async def _chat(self, request: ActiveRequest) -> ChatResponse:
        request.transition(RequestState.AWAITING_PROVIDER)
        response = await run_cancellable(
            self.provider.chat(self._build_messages(), self.registry.definitions(), token=request.token),
            request.token,
        )
        if response.tool_calls:
            self._call_sequence += 1
            response.tool_calls = self._normalize_tool_calls(response.tool_calls, self._call_sequence)
        logger.debug(
            "Request %s: provider returned %d tool calls (finish_reason=%s)",
            request.request_id, len(response.tool_calls), response.finish_reason,
        )
        self._append_history(Message(
            role="assistant",
            content=None if response.tool_calls else response.content,
            tool_calls=list(response.tool_calls) if response.tool_calls else None,
        ))
        return response

    # ── Responses ────────────────────────────────────────────────

    @staticmethod
    def _tool_summary(executed: list[ExecutedTool]) -> str:
        return "\n".join(f"{tool.name}: {tool.result.message}" for tool in executed)

    @staticmethod
    def _failure_code(executed: list[ExecutedTool], default: str) -> str:
        """errorCode of the last failed tool, else ``default``."""
        for tool in reversed(executed):
            if not tool.result.success:
                return extract_tool_error_code(tool.result.data) or TOOL_EXECUTION_FAILED
        return default

    def _final_response(self, response: ChatResponse, executed: list[ExecutedTool]) -> AgentResponse:
        message = response.content or self._tool_summary(executed)
        has_failure = any(not tool.result.success for tool in executed)
        success = response.finish_reason != "error" and not has_failure
        fallback = "操作完成" if success else "处理失败，请重试 (Request failed, please try again)"
        return AgentResponse(
            message=message or fallback,
            success=success,
            status=ResponseStatus.COMPLETED if success else ResponseStatus.ERROR,
            tool_calls=executed or None,
            error_code=None if success else self._failure_code(executed, PROVIDER_UNAVAILABLE),
        )

    @staticmethod
    def _pause_response(pause: ToolResult, executed: list[ExecutedTool]) -> AgentResponse:
        data = pause.data or {}
        next_step = data.get("nextStep")
        resume_hint = data.get("resumeHint")
        return AgentResponse(
            message=pause.message or "等待确认后继续执行 (Awaiting confirmation)",
            success=False,
            status=ResponseStatus.AWAITING_CONFIRMATION,
            tool_calls=executed or None,
            requires_confirmation=True,
            next_step=WorkflowNextStep.from_dict(next_step) if isinstance(next_step, dict) else None,
            resume_hint=WorkflowResumeHint.from_dict(resume_hint) if isinstance(resume_hint, dict) else None,
            error_code=extract_tool_error_code(data),
        )

    @staticmethod
    def _cancelled_response(executed: list[ExecutedTool]) -> AgentResponse:
        return AgentResponse(
            message=CANCELLED_MESSAGE,
            success=False,
            status=ResponseStatus.CANCELLED,
            tool_calls=executed or None,
            error_code=EXECUTION_CANCELLED_ERROR_CODE,
        )

    def _result_response(self, result: ToolResult, executed: list[ExecutedTool]) -> AgentResponse:
        """Response for a single direct tool or workflow call."""
        if is_cancelled_result(result):
            return self._cancelled_response(executed)
        if is_confirmation_pause(result):
            return self._pause_response(result, executed)
        return AgentResponse(
            message=result.message,
            success=result.success,
            status=ResponseStatus.COMPLETED if result.success else ResponseStatus.ERROR,
            tool_calls=executed,
            error_code=None if result.success else extract_tool_error_code(result.data),
        )

    def _error_response(self, request: ActiveRequest, error: Exception, snapshot: list[Message],
                        executed: list[ExecutedTool]) -> AgentResponse:
        self._history = snapshot
        if is_cancellation_error(error) or request.token.cancelled:
            return self._finish(request, self._cancelled_response(executed))
        logger.warning("Request %s failed: %s", request.request_id, error)
        return self._finish(request, AgentResponse(
            message=f"Error processing request: {error}",
            success=False,
            status=ResponseStatus.ERROR,
            tool_calls=executed or None,
            error_code=PROVIDER_UNAVAILABLE if isinstance(error, ProviderError) else TOOL_EXECUTION_FAILED,
        ))

    # ═══════════════════════════════════════════════════════════════
    # process
    # ═══════════════════════════════════════════════════════════════

    async def process(self, user_message: str) -> AgentResponse:
        """Run one conversational turn."""
        busy = self._busy_response()
        if busy is not None:
            return busy
        if self._pending_plan is not None:
            return self._pending_plan_response()

        request = self._begin(ExecutionMode.CHAT)
        snapshot = list(self._history)
        executed: list[ExecutedTool] = []
        self._append_history(Message(role="user", content=user_message))
        try:
            request.transition(RequestState.AWAITING_PROVIDER)
            if not await run_cancellable(self.provider.is_available(), request.token):
                self._history = snapshot
                name = getattr(self.provider, "name", "unknown")
                return self._finish(request, AgentResponse(
                    message=f"LLM provider ({name}) is not available. Please ensure LM Studio is running.",
                    success=False,
                    status=ResponseStatus.ERROR,
                    error_code=PROVIDER_UNAVAILABLE,
                ))

            response = await self._chat(request)
            if not response.tool_calls:
                return self._finish(request, self._final_response(response, executed))

            if self._should_plan(response.tool_calls):
                plan = self._build_execution_plan(user_message, response.tool_calls)
                return self._finish(request, self._store_plan(request, plan))

            iterations = 0
            while True:
                if iterations >= self.options.max_tool_iterations:
                    logger.warning("Request %s hit the tool iteration limit (%d)",
                                   request.request_id, self.options.max_tool_iterations)
                    return self._finish(request, AgentResponse(
                        message=TOOL_LIMIT_MESSAGE,
                        success=False,
                        status=ResponseStatus.ERROR,
                        tool_calls=executed or None,
                        error_code=TOOL_LIMIT_REACHED,
                    ))

                request.transition(RequestState.RUNNING)
                pause = await self._run_batch(request, response.tool_calls, executed)
                if request.token.cancelled or (pause is not None and is_cancelled_result(pause)):
                    self._history = snapshot
                    return self._finish(request, self._cancelled_response(executed))
                if pause is not None:
                    return self._finish(request, self._pause_response(pause, executed))

                iterations += 1
                response = await self._chat(request)
                if not response.tool_calls:
                    return self._finish(request, self._final_response(response, executed))
        except Exception as e:
            return self._error_response(request, e, snapshot, executed)
        finally:
            self._release(request)

    async def _run_batch(
        self,
        request: ActiveRequest,
        calls: list[ToolCall],
        executed: list[ExecutedTool],
    ) -> ToolResult | None:
        """
        Run one provider batch in order. Stops at the first result that
        pauses for confirmation or reports cancellation, and returns it.
        """
        total = len(calls)
        for index, call in enumerate(calls):
            if request.token.cancelled:
                return None
            result = await self._execute_call(call, request, index, total, request.token)
            executed.append(ExecutedTool(name=call.name, result=result))
            self._append_tool_result(call, result)
            if is_confirmation_pause(result) or is_cancelled_result(result):
                return result
        return None

    # ═══════════════════════════════════════════════════════════════
    # Plans
    # ═══════════════════════════════════════════════════════════════

    def _should_plan(self, calls: list[ToolCall]) -> bool:
        if self.options.planning_enabled:
            return True
        for call in calls:
            spec = self.registry.get(call.name)
            if spec is not None and spec.requires_confirmation:
                return True
        return False

    def _build_plan_summary(self, call: ToolCall) -> str:
        spec = self.registry.get(call.name)
        keys = list((call.arguments or {}).keys())
        arg_text = f"参数: {', '.join(keys)}" if keys else "无参数"
        description = ""
        if spec is not None and spec.description:
            description = re.split(r"[.。]", spec.description)[0].strip()
        return f"{description or '执行工具操作'}（{arg_text}）"

    def _plan_step_for(self, call: ToolCall) -> PlanStep:
        spec = self.registry.get(call.name)
        return PlanStep(
            id=call.id,
            tool_name=call.name,
            arguments=copy.deepcopy(call.arguments),
            summary=self._build_plan_summary(call),
            requires_confirmation=bool(spec and spec.requires_confirmation),
            operation=spec.operation if spec else None,
        )

    def _expand_workflow_call(self, call: ToolCall) -> list[PlanStep] | None:
        """
        Concrete plan steps for a run_workflow call, or None when the call
        cannot be expanded (unresolvable, or a step's tool is missing).
        """
        resolution = resolve_workflow_from_params(call.arguments, self.catalog)
        if not resolution.ok:
            return None
        steps = resolution.resolved.to_plan_steps()
        start_from = call.arguments.get("startFromStepId")
        ids = [step.id for step in steps]
        if isinstance(start_from, str) and start_from.strip() in ids:
            steps = steps[ids.index(start_from.strip()):]
        if any(s.tool_name in WORKFLOW_TOOL_NAMES or s.tool_name not in self.registry for s in steps):
            return None

        id_map = {step.id: f"{call.id}:{step.id}" for step in steps}
        expanded = []
        for step in steps:
            step_call = ToolCall(id=id_map[step.id], name=step.tool_name, arguments=step.arguments)
            expanded.append(PlanStep(
                id=id_map[step.id],
                tool_name=step.tool_name,
                arguments=copy.deepcopy(step.arguments),
                summary=step.summary or self._build_plan_summary(step_call),
                requires_confirmation=step.requires_confirmation,
                operation=step.operation,
                depends_on=[id_map[d] for d in step.depends_on if d in id_map] if step.depends_on is not None else None,
                resource_locks=step.resource_locks,
                optional=step.optional,
            ))
        return expanded

    def _build_execution_plan(self, user_message: str, calls: list[ToolCall]) -> ExecutionPlan:
        self._plan_sequence += 1
        steps: list[PlanStep] = []
        for call in self._normalize_tool_calls(calls, self._plan_sequence):
            expanded = self._expand_workflow_call(call) if call.name == RUN_WORKFLOW else None
            if expanded:
                steps.extend(expanded)
            else:
                steps.append(self._plan_step_for(call))
        return ExecutionPlan(
            id=f"plan-{int(time.time() * 1000)}-{self._plan_sequence}",
            original_user_message=user_message,
            created_at=_utc_now(),
            steps=steps,
        )

    @staticmethod
    def format_plan_message(plan: ExecutionPlan, prefix: str | None = None) -> str:
        lines = [prefix or PLAN_INTRO]
        lines.extend(f"{i}. {step.tool_name} - {step.summary}" for i, step in enumerate(plan.steps, start=1))
        return "\n".join(lines)

    def _planned_response(self, plan: ExecutionPlan, prefix: str | None = None) -> AgentResponse:
        return AgentResponse(
            message=self.format_plan_message(plan, prefix),
            success=True,
            status=ResponseStatus.PLANNED,
            requires_confirmation=True,
            plan=plan,
        )

    def _store_plan(self, request: ActiveRequest, plan: ExecutionPlan) -> AgentResponse:
        self._pending_plan = plan
        logger.info("Request %s created plan %s with %d steps", request.request_id, plan.id, len(plan.steps))
        self._emit(
            request, ExecutionEventType.PLAN_CREATED,
            total_steps=len(plan.steps), plan=plan.to_dict(),
        )
        return self._planned_response(plan)

    def update_pending_plan_step(self, step_id: str, arguments: dict[str, Any]) -> AgentResponse:
        plan = self._pending_plan
        if plan is None:
            return AgentResponse(message=NO_PENDING_PLAN_MESSAGE, success=False, status=ResponseStatus.ERROR)
        step = plan.get_step(step_id)
        if step is None:
            return AgentResponse(message=f"未找到步骤: {step_id}", success=False, status=ResponseStatus.ERROR)
        if not isinstance(arguments, dict):
            return AgentResponse(message="参数必须是对象 (arguments must be an object)",
                                 success=False, status=ResponseStatus.ERROR)

        if step.tool_name in self.registry:
            missing = self.registry.missing_required(step.tool_name, arguments)
            if missing:
                return AgentResponse(
                    message=f"缺少必填参数: {', '.join(missing)}",
                    success=False, status=ResponseStatus.ERROR, plan=plan,
                )
            violations = self.registry.validate_arguments(step.tool_name, arguments)
            if violations:
                return AgentResponse(
                    message=f"参数校验失败: {'; '.join(violations)}",
                    success=False, status=ResponseStatus.ERROR, plan=plan,
                )

        step.arguments = copy.deepcopy(arguments)
        step.summary = self._build_plan_summary(ToolCall(id=step.id, name=step.tool_name, arguments=arguments))
        return self._planned_response(plan, f"已更新步骤 {step_id}，请确认执行计划：")

    def remove_pending_plan_step(self, step_id: str) -> AgentResponse:
        plan = self._pending_plan
        if plan is None:
            return AgentResponse(message=NO_PENDING_PLAN_MESSAGE, success=False, status=ResponseStatus.ERROR)
        if plan.get_step(step_id) is None:
            return AgentResponse(message=f"未找到步骤: {step_id}", success=False, status=ResponseStatus.ERROR)

        plan.steps = [step for step in plan.steps if step.id != step_id]
        for step in plan.steps:
            if step.depends_on and step_id in step.depends_on:
                step.depends_on = [dep for dep in step.depends_on if dep != step_id]
        if not plan.steps:
            self._pending_plan = None
            return AgentResponse(message="计划已清空并取消。", success=True, status=ResponseStatus.CANCELLED)
        return self._planned_response(plan, f"已移除步骤 {step_id}，请确认执行剩余计划：")

    def cancel_pending_plan(self) -> AgentResponse:
        if self._pending_plan is None:
            return AgentResponse(message=NO_PENDING_PLAN_MESSAGE, success=False, status=ResponseStatus.ERROR)
        logger.info("Plan %s cancelled by user", self._pending_plan.id)
        self._pending_plan = None
        self._append_history(Message(role="user", content=CANCEL_PLAN_MARKER))
        self._append_history(Message(role="assistant", content=PLAN_CANCELLED_MESSAGE))
        return AgentResponse(message=PLAN_CANCELLED_MESSAGE, success=True, status=ResponseStatus.CANCELLED)

    async def confirm_pending_plan(self) -> AgentResponse:
        """Execute the pending plan as a DAG of its steps."""
        busy = self._busy_response()
        if busy is not None:
            return busy
        plan = self._pending_plan
        if plan is None:
            return AgentResponse(message=NO_PENDING_PLAN_MESSAGE, success=False, status=ResponseStatus.ERROR)

        self._pending_plan = None
        request = self._begin(ExecutionMode.PLAN_CONFIRMATION, plan)
        snapshot = list(self._history)
        executed: list[ExecutedTool] = []
        self._append_history(Message(role="user", content=CONFIRM_PLAN_MARKER))
        try:
            request.transition(RequestState.RUNNING)
            pause, failed = await self._run_plan_steps(request, plan.steps, executed)
            if request.token.cancelled:
                self._history = snapshot
                return self._finish(request, self._cancelled_response(executed))
            if pause is not None:
                return self._finish(request, self._pause_response(pause, executed))

            summary = self._tool_summary(executed)
            message = f"计划执行完成，但有步骤失败：\n{summary}" if failed else f"计划执行完成：\n{summary}"
            self._append_history(Message(role="assistant", content=message))
            return self._finish(request, AgentResponse(
                message=message,
                success=not failed,
                status=ResponseStatus.ERROR if failed else ResponseStatus.COMPLETED,
                tool_calls=executed,
                error_code=self._failure_code(executed, TOOL_EXECUTION_FAILED) if failed else None,
            ))
        except Exception as e:
            return self._error_response(request, e, snapshot, executed)
        finally:
            self._release(request)

    async def _run_plan_steps(
        self,
        request: ActiveRequest,
        steps: list[PlanStep],
        executed: list[ExecutedTool],
    ) -> tuple[ToolResult | None, list[str]]:
        """
        Run plan steps through the DAG scheduler. Results are recorded in
        step order. Returns the pausing result (if any) and the ids of
        failed steps that are not optional.
        """
        dag = build_dag(steps)
        total = len(steps)
        results: dict[str, ToolResult] = {}

        async def worker(node: DagNode, node_token: CancellationToken) -> NodeOutcome:
            result = await self._execute_call(node.step.to_tool_call(), request, node.index, total, node_token)
            results[node.id] = result
            if is_cancelled_result(result) or is_confirmation_pause(result):
                return NodeOutcome(success=False, halt=True, value=result)
            return NodeOutcome(success=result.success, value=result)

        summary = await run_dag(dag, worker, token=request.token, max_concurrency=self.options.max_parallel_steps)

        failed = []
        for node in dag.nodes:
            if node.id not in results:
                continue
            result = results[node.id]
            executed.append(ExecutedTool(name=node.step.tool_name, result=result))
            self._append_tool_result(node.step.to_tool_call(), result)
            if not result.success and not node.step.optional:
                failed.append(node.id)

        if summary.halted_by is not None and is_confirmation_pause(results[summary.halted_by]):
            return results[summary.halted_by], failed
        return None, failed

    # ═══════════════════════════════════════════════════════════════
    # Direct entry points
    # ═══════════════════════════════════════════════════════════════

    async def run_workflow(
        self,
        workflow_name: str,
        step_overrides: list[dict[str, Any]] | None = None,
        start_from_step_id: str | None = None,
        confirm_required_steps: bool | None = None,
        quality_max_iterations: int | None = None,
    ) -> AgentResponse:
        """
        Run a named workflow without a provider round.

        With planning enabled the workflow becomes a pending plan instead.
        ``quality_max_iterations`` overrides the workflow's own loop limit.
        """
        busy = self._busy_response()
        if busy is not None:
            return busy
        if self._pending_plan is not None:
            return self._pending_plan_response()

        arguments: dict[str, Any] = {"workflowName": workflow_name}
        if step_overrides is not None:
            arguments["stepOverrides"] = copy.deepcopy(step_overrides)
        if start_from_step_id is not None:
            arguments["startFromStepId"] = start_from_step_id
        if confirm_required_steps is not None:
            arguments["confirmRequiredSteps"] = confirm_required_steps
        call = ToolCall(id=f"workflow-{uuid.uuid4().hex[:8]}", name=RUN_WORKFLOW, arguments=arguments)

        request = self._begin(ExecutionMode.WORKFLOW)
        executed: list[ExecutedTool] = []
        try:
            if self.options.planning_enabled:
                plan = self._build_execution_plan(f"run_workflow: {workflow_name}", [call])
                return self._finish(request, self._store_plan(request, plan))

            request.transition(RequestState.RUNNING)
            result = await self._execute_call(
                call, request, 0, 1, request.token, quality_max_iterations=quality_max_iterations,
            )
            executed.append(ExecutedTool(name=RUN_WORKFLOW, result=result))
            if request.token.cancelled:
                return self._finish(request, self._cancelled_response(executed))
            return self._finish(request, self._result_response(result, executed))
        except Exception as e:
            return self._error_response(request, e, list(self._history), executed)
        finally:
            self._release(request)

    async def execute_tool(self, tool_name: str, arguments: dict[str, Any] | None = None) -> AgentResponse:
        """Run one tool directly, with timeout and recovery, bypassing the provider."""
        busy = self._busy_response()
        if busy is not None:
            return busy

        call = ToolCall(id=f"direct-{uuid.uuid4().hex[:8]}", name=tool_name, arguments=dict(arguments or {}))
        request = self._begin(ExecutionMode.CHAT)
        executed: list[ExecutedTool] = []
        try:
            request.transition(RequestState.RUNNING)
            result = await self._execute_call(call, request, 0, 1, request.token)
            executed.append(ExecutedTool(name=tool_name, result=result))
            if request.token.cancelled:
                return self._finish(request, self._cancelled_response(executed))
            return self._finish(request, self._result_response(result, executed))
        except Exception as e:
            return self._error_response(request, e, list(self._history), executed)
        finally:
            self._release(request)

    # ═══════════════════════════════════════════════════════════════
    # Tool execution
    # ═══════════════════════════════════════════════════════════════

    async def _execute_call(
        self,
        call: ToolCall,
        request: ActiveRequest,
        step_index: int,
        total_steps: int,
        token: CancellationToken,
        quality_max_iterations: int | None = None,
    ) -> ToolResult:
        if call.name == RUN_WORKFLOW:
            return await self._execute_workflow_call(
                call, request, step_index, total_steps, token, quality_max_iterations,
            )
        return await self._execute_with_recovery(call, request, step_index, total_steps, token)

    def _quality_config_for(self, arguments: dict[str, Any], max_iterations: int | None) -> QualityLoopConfig:
        name = parse_workflow_name(arguments) if isinstance(arguments, dict) else None
        workflow = self.catalog.get(name) if name else None
        if workflow is None or workflow.quality is None:
            return QualityLoopConfig(enabled=False)
        return QualityLoopConfig.from_mapping(
            workflow.quality.model_dump(),
            max_iterations=max_iterations,
            default_max_iterations=self.options.quality_max_iterations,
        )

    def _with_target_duration(self, arguments: dict[str, Any], target: float) -> dict[str, Any]:
        """Arguments with a stepOverride pinning targetDuration on every step that declares it."""
        resolution = resolve_workflow_from_params(arguments, self.catalog)
        if not resolution.ok:
            return arguments
        overrides = list(copy.deepcopy(arguments.get("stepOverrides") or []))
        for step in resolution.resolved.steps:
            if "targetDuration" in step.arguments:
                overrides.append({"stepId": step.id, "arguments": {"targetDuration": target}})
        if not overrides:
            return arguments
        return {**arguments, "stepOverrides": overrides}

    async def _execute_workflow_call(
        self,
        call: ToolCall,
        request: ActiveRequest,
        step_index: int,
        total_steps: int,
        token: CancellationToken,
        quality_max_iterations: int | None = None,
    ) -> ToolResult:
        config = self._quality_config_for(call.arguments, quality_max_iterations)
        if config.enabled and self.document is None:
            logger.warning("Quality loop for %s skipped: no document attached", call.arguments.get("workflowName"))
            config = QualityLoopConfig(enabled=False)

        async def run_once(iteration: int, adjusted_target: float | None) -> ToolResult:
            attempt = call
            if iteration > 1:
                arguments = call.arguments
                if adjusted_target is not None:
                    arguments = self._with_target_duration(call.arguments, adjusted_target)
                attempt = ToolCall(id=f"{call.id}#{iteration}", name=call.name, arguments=arguments)
            return await self._execute_with_recovery(attempt, request, step_index, total_steps, token)

        outcome = await self.iteration_controller.run(
            run_once, self.document, config, token=token, should_stop=is_confirmation_pause,
        )
        return outcome.result

    async def _execute_workflow_step(
        self,
        call: ToolCall,
        context: ToolExecutionContext,
        step_index: int,
        total_steps: int,
    ) -> ToolResult:
        """Step executor handed to the workflow tools."""
        request = self._active
        if request is None or request.request_id != context.request_id:
            request = ActiveRequest(
                request_id=context.request_id or _new_request_id(),
                mode=context.mode or ExecutionMode.WORKFLOW,
                token=context.token or CancellationToken(),
            )
        token = context.token or request.token
        return await self._execute_with_recovery(call, request, step_index, total_steps, token)

    async def _execute_with_recovery(
        self,
        call: ToolCall,
        request: ActiveRequest,
        step_index: int,
        total_steps: int,
        token: CancellationToken,
    ) -> ToolResult:
        position = {"step_index": step_index, "total_steps": total_steps}
        self._emit(request, ExecutionEventType.TOOL_STARTED,
                   tool_name=call.name, tool_call_id=call.id, **position)

        result = await self._invoke(call, request, token)
        retry_count = 0
        while not result.success and not is_cancelled_result(result):
            error_code = extract_tool_error_code(result.data)
            if not error_code:
                break
            decision = self.recovery_table.resolve(call, error_code, retry_count)
            if decision is None:
                if retry_count > 0:
                    logger.warning("Recovery exhausted for %s (%s) after %d retries",
                                   call.name, error_code, retry_count)
                    self._emit(
                        request, ExecutionEventType.RECOVERY_EXHAUSTED,
                        tool_name=call.name, tool_call_id=call.id, message=result.message,
                        recovery={"errorCode": error_code, "attempt": retry_count}, **position,
                    )
                break

            recovery = {
                "policyId": decision.policy_id,
                "errorCode": error_code,
                "attempt": retry_count + 1,
                "maxRetries": decision.max_retries,
                "delayMs": decision.delay_ms,
            }
            logger.info("Recovering %s from %s with %s (attempt %d/%d)",
                        call.name, error_code, decision.policy_id, retry_count + 1, decision.max_retries)
            self._emit(request, ExecutionEventType.RECOVERY_STARTED, tool_name=call.name,
                       tool_call_id=call.id, message=decision.reason, recovery=recovery, **position)

            failed_prerequisite: tuple[ToolCall, ToolResult] | None = None
            for prerequisite in decision.prerequisite_calls:
                self._emit(request, ExecutionEventType.RECOVERY_PREREQUISITE_STARTED,
                           tool_name=prerequisite.name, tool_call_id=prerequisite.id, recovery=recovery, **position)
                prerequisite_result = await self._invoke(prerequisite, request, token)
                self._emit(request, ExecutionEventType.RECOVERY_PREREQUISITE_COMPLETED,
                           tool_name=prerequisite.name, tool_call_id=prerequisite.id, recovery=recovery,
                           result=_result_summary(prerequisite_result), **position)
                if not prerequisite_result.success:
                    failed_prerequisite = (prerequisite, prerequisite_result)
                    break

            if failed_prerequisite is not None:
                prerequisite, prerequisite_result = failed_prerequisite
                if is_cancelled_result(prerequisite_result):
                    result = prerequisite_result
                    break
                result = ToolResult(
                    success=False,
                    message=(
                        f"自动恢复失败: 前置步骤 {prerequisite.name} 执行失败 "
                        f"({prerequisite_result.message})；原始错误: {result.message}"
                    ),
                    data={
                        **(result.data or {}),
                        "recoveryPolicyId": decision.policy_id,
                        "prerequisiteToolName": prerequisite.name,
                        "prerequisiteErrorCode": extract_tool_error_code(prerequisite_result.data),
                    },
                )
                self._emit(request, ExecutionEventType.RECOVERY_EXHAUSTED, tool_name=call.name,
                           tool_call_id=call.id, message=result.message, recovery=recovery, **position)
                break

            if decision.delay_ms > 0:
                try:
                    await cancellable_sleep(decision.delay_ms / 1000, token, self._sleep_fn)
                except ExecutionCancelled:
                    result = build_execution_cancelled_result({"toolName": call.name})
                    break

            retry_count += 1
            self._emit(request, ExecutionEventType.RECOVERY_RETRYING, tool_name=call.name,
                       tool_call_id=call.id, recovery=recovery, **position)
            result = await self._invoke(decision.retry_call or call, request, token)

        if retry_count > 0 and not is_cancelled_result(result):
            result = result.with_data(recoveryAttempts=retry_count)
        self._emit(request, ExecutionEventType.TOOL_COMPLETED, tool_name=call.name,
                   tool_call_id=call.id, result=_result_summary(result), **position)
        return result

    async def _invoke(self, call: ToolCall, request: ActiveRequest, token: CancellationToken) -> ToolResult:
        """
        One registry call under a child token and the per-call timeout.

        run_workflow is not timed as a whole; each of its steps is.
        """
        call_token = token.child()

        def report_progress(progress: ToolProgress) -> None:
            self._emit(
                request, ExecutionEventType.TOOL_PROGRESS,
                tool_name=call.name, tool_call_id=call.id,
                progress={"message": progress.message, "data": progress.data},
            )

        context = ToolExecutionContext(
            request_id=request.request_id,
            mode=request.mode,
            tool_name=call.name,
            tool_call_id=call.id,
            token=call_token,
            document=self.document,
            report_progress=report_progress,
        )
        timeout_ms = None if call.name == RUN_WORKFLOW else self.options.tool_timeout_ms
        try:
            return await run_cancellable(
                self.registry.execute(call.name, call.arguments, context),
                call_token,
                timeout=timeout_ms / 1000 if timeout_ms else None,
            )
        except ExecutionCancelled:
            return build_execution_cancelled_result({"toolName": call.name})
        except asyncio.TimeoutError:
            call_token.cancel("timeout")
            logger.warning("Tool %s timed out after %dms", call.name, timeout_ms)
            return ToolResult(
                success=False,
                message=f"工具执行超时 ({timeout_ms}ms) (Tool execution timeout)",
                data={"errorCode": PROVIDER_UNAVAILABLE, "toolName": call.name, "timeoutMs": timeout_ms},
            )
