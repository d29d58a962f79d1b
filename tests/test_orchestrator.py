"""
HyperCut Agent - Orchestrator Tests

Uses a scripted chat provider; no network, no real sleeps.

Tests:
  - Chat turns: plain reply, tool round trip, call id normalization, event order
  - Provider unavailable / provider error roll back history; failures carry an error code
  - Recovery: transcript bootstrap, prerequisite failure, provider backoff
  - Per-call timeout
  - Planning: confirmation tools, planning_enabled, run_workflow expansion
  - Plan edits: update / remove steps, cancel, confirm twice
  - Busy guard, cancellation, tool abort stops the batch, tool iteration limit
  - Workflow pause via chat and resume via run_workflow
  - Quality loop: retry with adjusted target, blocking, non-blocking, no document
  - Options and from_config wiring
"""

import asyncio
import os
import sys
import unittest

import httpx

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from agent.cancellation import EXECUTION_CANCELLED_ERROR_CODE
from agent.document import InMemoryDocument
from agent.events import ExecutionEventType
from agent.orchestrator import (
    CANCEL_PLAN_MARKER,
    NO_PENDING_PLAN_MESSAGE,
    PLAN_INTRO,
    PLAN_PENDING_MESSAGE,
    PLAN_RUNNING_MESSAGE,
    REQUEST_BUSY_MESSAGE,
    TOOL_LIMIT_MESSAGE,
    TOOL_LIMIT_REACHED,
    AgentOrchestrator,
    OrchestratorOptions,
)
from agent.providers import ProviderError
from agent.quality import QUALITY_TARGET_NOT_MET
from agent.recovery import PROVIDER_UNAVAILABLE, RecoveryPolicyTable, default_policy_table
from agent.tools import TOOL_EXECUTION_FAILED, ToolRegistry
from agent.types import ChatResponse, ResponseStatus, ToolCall, ToolProgress, ToolResult
from workflows.registry import WorkflowCatalog
from workflows.tools import RUN_WORKFLOW


SPLIT_PARAMETERS = {
    "type": "object",
    "properties": {"time": {"type": "number"}},
    "required": ["time"],
}


class ScriptedProvider:
    """Returns the scripted responses in order, then ``default``."""

    name = "scripted"

    def __init__(self, responses=(), default=None, available=True, error=None):
        self.responses = list(responses)
        self.default = default or ChatResponse(content="完成")
        self.available = available
        self.error = error
        self.seen = []

    async def chat(self, messages, tools, temperature=None, token=None):
        self.seen.append(list(messages))
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return self.default

    async def is_available(self):
        return self.available


def tool_calls(*calls):
    return ChatResponse(content=None, tool_calls=list(calls), finish_reason="tool_calls")


async def no_sleep(seconds):
    no_sleep.delays.append(seconds)


no_sleep.delays = []


def timeline(duration):
    words = " ".join(f"w{i}" for i in range(10))
    return [
        {"id": "v", "type": "video", "elements": [{"id": "clip", "start_time": 0, "duration": duration}]},
        {"id": "t", "type": "text", "elements": [{
            "id": "c1", "start_time": 0, "duration": duration, "content": words, "is_caption": True,
        }]},
    ]


class EditorTools:
    """Fake editor tools; each call is recorded as (name, arguments)."""

    NAMES = (
        "get_info", "generate_captions", "detect_filler_words", "remove_filler_words",
        "remove_silence", "score_highlights", "generate_highlight_plan", "apply_highlight_cut",
    )

    def __init__(self, registry):
        self.calls = []
        self.cut_duration = None
        self.plan_target = None
        for name in self.NAMES:
            registry.register(name, self._make(name), description=f"{name} tool.")

    def _make(self, name):
        def tool(arguments, context):
            self.calls.append((name, dict(arguments)))
            if name == "generate_highlight_plan":
                self.plan_target = arguments.get("targetDuration")
            if name == "apply_highlight_cut" and context.document is not None:
                duration = self.cut_duration or self.plan_target or 10
                context.document.replace_tracks(timeline(duration))
            return ToolResult(True, f"{name} ok")
        return tool

    def names(self):
        return [c[0] for c in self.calls]


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        no_sleep.delays = []
        self.registry = ToolRegistry()
        self.tools = EditorTools(self.registry)

    def make(self, provider=None, **kwargs):
        kwargs.setdefault("sleep_fn", no_sleep)
        return AgentOrchestrator(self.registry, provider or ScriptedProvider(), **kwargs)

    def event_types(self, orchestrator, request_id):
        return [e.type for e in orchestrator.event_log.events_for(request_id)]


# ═══════════════════════════════════════════════════════════════════
# Chat turns
# ═══════════════════════════════════════════════════════════════════

class TestChatTurns(OrchestratorTestCase):

    async def test_plain_reply(self):
        orchestrator = self.make(ScriptedProvider([ChatResponse(content="你好")]))
        response = await orchestrator.process("hi")
        self.assertTrue(response.success)
        self.assertEqual(response.status, ResponseStatus.COMPLETED)
        self.assertEqual(response.message, "你好")
        self.assertEqual([m.role for m in orchestrator.history], ["user", "assistant"])
        self.assertIsNone(orchestrator.active_request)

    async def test_tool_round_trip(self):
        provider = ScriptedProvider([
            tool_calls(ToolCall("", "get_info", {})),
            ChatResponse(content="时间线有 1 条轨道"),
        ])
        orchestrator = self.make(provider)
        response = await orchestrator.process("看看时间线")

        self.assertTrue(response.success)
        self.assertEqual(response.message, "时间线有 1 条轨道")
        self.assertEqual([t.name for t in response.tool_calls], ["get_info"])
        self.assertEqual(self.tools.names(), ["get_info"])

        roles = [m.role for m in orchestrator.history]
        self.assertEqual(roles, ["user", "assistant", "tool", "assistant"])
        self.assertEqual(orchestrator.history[2].tool_call_id, "step-1-1")
        # The second provider round sees the tool result
        self.assertEqual(provider.seen[1][-1].role, "tool")
        self.assertEqual(provider.seen[1][0].role, "system")

    async def test_duplicate_call_ids_renamed(self):
        provider = ScriptedProvider([tool_calls(
            ToolCall("dup", "get_info", {}),
            ToolCall("dup", "remove_silence", {}),
        )])
        orchestrator = self.make(provider)
        await orchestrator.process("go")
        ids = [m.tool_call_id for m in orchestrator.history if m.role == "tool"]
        self.assertEqual(ids, ["dup", "step-1-2"])
        self.assertEqual(self.tools.names(), ["get_info", "remove_silence"])

    async def test_summary_when_provider_is_silent(self):
        provider = ScriptedProvider([
            tool_calls(ToolCall("c1", "get_info", {})),
            ChatResponse(content=None),
        ])
        response = await self.make(provider).process("go")
        self.assertEqual(response.message, "get_info: get_info ok")

    async def test_event_order(self):
        def with_progress(arguments, context):
            context.report_progress(ToolProgress("half way"))
            return ToolResult(True, "done")

        self.registry.register("render", with_progress)
        orchestrator = self.make(ScriptedProvider([tool_calls(ToolCall("c1", "render", {}))]))
        response = await orchestrator.process("render")

        self.assertEqual(self.event_types(orchestrator, response.request_id), [
            ExecutionEventType.REQUEST_STARTED,
            ExecutionEventType.TOOL_STARTED,
            ExecutionEventType.TOOL_PROGRESS,
            ExecutionEventType.TOOL_COMPLETED,
            ExecutionEventType.REQUEST_COMPLETED,
        ])
        events = orchestrator.event_log.events_for(response.request_id)
        self.assertEqual((events[1].step_index, events[1].total_steps), (0, 1))
        self.assertEqual(events[2].progress["message"], "half way")
        self.assertEqual(events[3].result, {"success": True, "message": "done"})
        self.assertEqual(events[-1].status, ResponseStatus.COMPLETED)

    async def test_failed_tool_marks_turn_failed(self):
        self.registry.register("broken", lambda a, c: ToolResult(False, "nope", {"errorCode": "BOOM"}))
        provider = ScriptedProvider([tool_calls(ToolCall("c1", "broken", {}))], default=ChatResponse(content=None))
        response = await self.make(provider).process("go")
        self.assertFalse(response.success)
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertEqual(response.error_code, "BOOM")

    async def test_raising_tool_reports_execution_failure(self):
        def crash(arguments, context):
            raise RuntimeError("disk full")

        self.registry.register("crash", crash)
        provider = ScriptedProvider([tool_calls(ToolCall("c1", "crash", {}))], default=ChatResponse(content="出错了"))
        response = await self.make(provider).process("go")
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertEqual(response.error_code, TOOL_EXECUTION_FAILED)

    async def test_provider_unavailable(self):
        orchestrator = self.make(ScriptedProvider(available=False))
        response = await orchestrator.process("hi")
        self.assertFalse(response.success)
        self.assertEqual(response.error_code, PROVIDER_UNAVAILABLE)
        self.assertIn("scripted", response.message)
        self.assertEqual(orchestrator.history, [])

    async def test_provider_error_rolls_back_history(self):
        orchestrator = self.make(ScriptedProvider(error=ProviderError("HTTP 500")))
        response = await orchestrator.process("hi")
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertTrue(response.message.startswith("Error processing request"))
        self.assertEqual(response.error_code, PROVIDER_UNAVAILABLE)
        self.assertEqual(orchestrator.history, [])

    async def test_history_trimmed(self):
        orchestrator = self.make(options=OrchestratorOptions(max_history_messages=3))
        for text in ("a", "b", "c"):
            await orchestrator.process(text)
        self.assertEqual(len(orchestrator.history), 3)
        self.assertEqual(orchestrator.history[-2].content, "c")

    def test_provider_required(self):
        with self.assertRaises(ValueError):
            AgentOrchestrator(self.registry, None)


# ═══════════════════════════════════════════════════════════════════
# Recovery and timeouts
# ═══════════════════════════════════════════════════════════════════

class TestRecovery(OrchestratorTestCase):

    async def test_transcript_bootstrap(self):
        state = {"captions": False}

        def detect(arguments, context):
            if not state["captions"]:
                return ToolResult(False, "没有转录", {"errorCode": "NO_TRANSCRIPT"})
            return ToolResult(True, "找到 3 个填充词")

        def captions(arguments, context):
            state["captions"] = True
            return ToolResult(True, "字幕已生成")

        self.registry.register("detect_filler_words", detect)
        self.registry.register("generate_captions", captions)
        orchestrator = self.make()
        response = await orchestrator.execute_tool("detect_filler_words")

        self.assertTrue(response.success, response.message)
        self.assertEqual(response.tool_calls[0].result.data["recoveryAttempts"], 1)
        self.assertEqual(self.event_types(orchestrator, response.request_id), [
            ExecutionEventType.REQUEST_STARTED,
            ExecutionEventType.TOOL_STARTED,
            ExecutionEventType.RECOVERY_STARTED,
            ExecutionEventType.RECOVERY_PREREQUISITE_STARTED,
            ExecutionEventType.RECOVERY_PREREQUISITE_COMPLETED,
            ExecutionEventType.RECOVERY_RETRYING,
            ExecutionEventType.TOOL_COMPLETED,
            ExecutionEventType.REQUEST_COMPLETED,
        ])
        started = orchestrator.event_log.events_for(response.request_id)[2]
        self.assertEqual(started.recovery["policyId"], "transcript-bootstrap")
        self.assertEqual(started.recovery["attempt"], 1)

    async def test_prerequisite_failure(self):
        self.registry.register("detect_filler_words",
                               lambda a, c: ToolResult(False, "没有转录", {"errorCode": "NO_TRANSCRIPT"}))
        self.registry.register("generate_captions",
                               lambda a, c: ToolResult(False, "ASR 失败", {"errorCode": "ASR_FAILED"}))
        orchestrator = self.make()
        response = await orchestrator.execute_tool("detect_filler_words")

        self.assertFalse(response.success)
        result = response.tool_calls[0].result
        self.assertTrue(result.message.startswith("自动恢复失败"))
        self.assertIn("generate_captions", result.message)
        self.assertEqual(result.data["recoveryPolicyId"], "transcript-bootstrap")
        self.assertEqual(result.data["prerequisiteErrorCode"], "ASR_FAILED")
        self.assertEqual(response.error_code, "NO_TRANSCRIPT")
        self.assertIn(ExecutionEventType.RECOVERY_EXHAUSTED, self.event_types(orchestrator, response.request_id))

    async def test_provider_backoff_exhausted(self):
        attempts = []

        def flaky(arguments, context):
            attempts.append(1)
            return ToolResult(False, "模型不可用", {"errorCode": PROVIDER_UNAVAILABLE})

        self.registry.register("score_highlights", flaky)
        orchestrator = self.make()
        response = await orchestrator.execute_tool("score_highlights")

        self.assertEqual(len(attempts), 3)
        self.assertEqual(no_sleep.delays, [0.4, 0.8])
        self.assertEqual(response.tool_calls[0].result.data["recoveryAttempts"], 2)
        types = self.event_types(orchestrator, response.request_id)
        self.assertEqual(types.count(ExecutionEventType.RECOVERY_RETRYING), 2)
        self.assertEqual(types[-3], ExecutionEventType.RECOVERY_EXHAUSTED)

    async def test_unrecoverable_error_not_retried(self):
        attempts = []

        def broken(arguments, context):
            attempts.append(1)
            return ToolResult(False, "nope", {"errorCode": "BOOM"})

        self.registry.register("broken", broken)
        orchestrator = self.make()
        response = await orchestrator.execute_tool("broken")
        self.assertEqual(len(attempts), 1)
        self.assertNotIn(ExecutionEventType.RECOVERY_EXHAUSTED, self.event_types(orchestrator, response.request_id))

    async def test_timeout(self):
        async def slow(arguments, context):
            await asyncio.sleep(5)
            return ToolResult(True, "late")

        self.registry.register("slow", slow)
        orchestrator = self.make(
            options=OrchestratorOptions(tool_timeout_ms=50),
            recovery_table=RecoveryPolicyTable([]),
        )
        response = await orchestrator.execute_tool("slow")
        result = response.tool_calls[0].result
        self.assertFalse(result.success)
        self.assertIn("超时", result.message)
        self.assertEqual(result.data["errorCode"], PROVIDER_UNAVAILABLE)
        self.assertEqual(result.data["timeoutMs"], 50)

    async def test_execute_unknown_tool(self):
        response = await self.make().execute_tool("nope")
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertEqual(response.error_code, "TOOL_NOT_FOUND")


# ═══════════════════════════════════════════════════════════════════
# Plans
# ═══════════════════════════════════════════════════════════════════

class TestPlans(OrchestratorTestCase):

    def setUp(self):
        super().setUp()
        self.splits = []

        def split(arguments, context):
            self.splits.append(arguments["time"])
            return ToolResult(True, f"已在 {arguments['time']}s 分割")

        self.registry.register(
            "split_clip", split, description="Split the clip at a time. Keeps both halves.",
            parameters=SPLIT_PARAMETERS, requires_confirmation=True,
        )

    async def planned(self, orchestrator, *calls):
        orchestrator.provider.responses.append(tool_calls(*calls))
        return await orchestrator.process("剪一下")

    async def test_confirmation_tool_creates_plan(self):
        orchestrator = self.make()
        response = await self.planned(orchestrator, ToolCall("call-a", "split_clip", {"time": 3}))

        self.assertEqual(response.status, ResponseStatus.PLANNED)
        self.assertTrue(response.requires_confirmation)
        self.assertTrue(response.message.startswith(PLAN_INTRO))
        self.assertIn("1. split_clip - Split the clip at a time（参数: time）", response.message)
        self.assertEqual(self.splits, [])
        plan = orchestrator.get_pending_plan()
        self.assertEqual([s.id for s in plan.steps], ["call-a"])
        self.assertTrue(plan.steps[0].requires_confirmation)
        self.assertIn(ExecutionEventType.PLAN_CREATED, self.event_types(orchestrator, response.request_id))

        blocked = await orchestrator.process("再来")
        self.assertEqual(blocked.message, PLAN_PENDING_MESSAGE)
        self.assertEqual(blocked.status, ResponseStatus.PLANNED)

        confirmed = await orchestrator.confirm_pending_plan()
        self.assertTrue(confirmed.success)
        self.assertTrue(confirmed.message.startswith("计划执行完成："))
        self.assertEqual(self.splits, [3])
        self.assertIsNone(orchestrator.get_pending_plan())

        again = await orchestrator.confirm_pending_plan()
        self.assertEqual(again.message, NO_PENDING_PLAN_MESSAGE)

    async def test_planning_enabled_plans_everything(self):
        orchestrator = self.make(options=OrchestratorOptions(planning_enabled=True))
        response = await self.planned(orchestrator, ToolCall("c1", "get_info", {}))
        self.assertEqual(response.status, ResponseStatus.PLANNED)
        self.assertEqual(orchestrator.get_pending_plan().steps[0].summary, "get_info tool（无参数）")
        self.assertEqual(self.tools.calls, [])

    async def test_run_workflow_expanded(self):
        orchestrator = self.make(options=OrchestratorOptions(planning_enabled=True))
        response = await self.planned(orchestrator, ToolCall("wf", RUN_WORKFLOW, {"workflowName": "full-cleanup"}))
        plan = response.plan
        self.assertEqual([s.id for s in plan.steps], [
            "wf:detect-fillers", "wf:remove-fillers", "wf:remove-silence", "wf:generate-captions",
        ])
        self.assertEqual(plan.steps[0].summary, "扫描填充词")
        self.assertTrue(plan.steps[1].requires_confirmation)

        confirmed = await orchestrator.confirm_pending_plan()
        self.assertTrue(confirmed.success, confirmed.message)
        self.assertEqual(sorted(self.tools.names()), sorted([
            "detect_filler_words", "remove_filler_words", "remove_silence", "generate_captions",
        ]))
        self.assertEqual(self.tools.calls[0], ("detect_filler_words", {"minConfidence": 0.5}))

    async def test_unexpandable_workflow_stays_one_step(self):
        self.registry.unregister("remove_silence")
        orchestrator = self.make(options=OrchestratorOptions(planning_enabled=True))
        response = await self.planned(orchestrator, ToolCall("wf", RUN_WORKFLOW, {"workflowName": "full-cleanup"}))
        self.assertEqual([s.tool_name for s in response.plan.steps], [RUN_WORKFLOW])

    async def test_update_step(self):
        orchestrator = self.make()
        await self.planned(orchestrator, ToolCall("call-a", "split_clip", {"time": 3}))

        missing = orchestrator.update_pending_plan_step("call-a", {})
        self.assertEqual(missing.message, "缺少必填参数: time")
        invalid = orchestrator.update_pending_plan_step("call-a", {"time": "soon"})
        self.assertTrue(invalid.message.startswith("参数校验失败"))
        unknown = orchestrator.update_pending_plan_step("nope", {"time": 1})
        self.assertEqual(unknown.message, "未找到步骤: nope")

        updated = orchestrator.update_pending_plan_step("call-a", {"time": 7.5})
        self.assertEqual(updated.status, ResponseStatus.PLANNED)
        self.assertTrue(updated.message.startswith("已更新步骤 call-a"))
        await orchestrator.confirm_pending_plan()
        self.assertEqual(self.splits, [7.5])

    async def test_remove_step(self):
        orchestrator = self.make()
        await self.planned(orchestrator,
                           ToolCall("a", "split_clip", {"time": 1}),
                           ToolCall("b", "split_clip", {"time": 2}))
        response = orchestrator.remove_pending_plan_step("a")
        self.assertEqual(response.status, ResponseStatus.PLANNED)
        self.assertEqual([s.id for s in orchestrator.get_pending_plan().steps], ["b"])

        emptied = orchestrator.remove_pending_plan_step("b")
        self.assertEqual(emptied.status, ResponseStatus.CANCELLED)
        self.assertIsNone(orchestrator.get_pending_plan())

    async def test_cancel_plan(self):
        orchestrator = self.make()
        await self.planned(orchestrator, ToolCall("a", "split_clip", {"time": 1}))
        response = orchestrator.cancel_pending_plan()
        self.assertEqual(response.status, ResponseStatus.CANCELLED)
        self.assertEqual(orchestrator.history[-2].content, CANCEL_PLAN_MARKER)
        self.assertIsNone(orchestrator.get_pending_plan())
        self.assertEqual(orchestrator.cancel_pending_plan().message, NO_PENDING_PLAN_MESSAGE)

    async def test_failed_step_reported(self):
        self.registry.register("split_clip", lambda a, c: ToolResult(False, "越界", {"errorCode": "OUT_OF_RANGE"}),
                               parameters=SPLIT_PARAMETERS, requires_confirmation=True)
        orchestrator = self.make()
        await self.planned(orchestrator, ToolCall("a", "split_clip", {"time": 99}))
        response = await orchestrator.confirm_pending_plan()
        self.assertFalse(response.success)
        self.assertTrue(response.message.startswith("计划执行完成，但有步骤失败"))
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertEqual(response.error_code, "OUT_OF_RANGE")

    async def test_confirm_while_running(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def wait_split(arguments, context):
            started.set()
            await release.wait()
            return ToolResult(True, "split")

        self.registry.register("split_clip", wait_split, parameters=SPLIT_PARAMETERS, requires_confirmation=True)
        orchestrator = self.make()
        await self.planned(orchestrator, ToolCall("a", "split_clip", {"time": 1}))

        task = asyncio.create_task(orchestrator.confirm_pending_plan())
        await started.wait()
        busy = await orchestrator.confirm_pending_plan()
        self.assertEqual(busy.message, PLAN_RUNNING_MESSAGE)
        release.set()
        response = await task
        self.assertTrue(response.success)


# ═══════════════════════════════════════════════════════════════════
# Busy guard, cancellation, limits
# ═══════════════════════════════════════════════════════════════════

class TestLifecycle(OrchestratorTestCase):

    def setUp(self):
        super().setUp()
        self.started = asyncio.Event()

        async def slow(arguments, context):
            self.started.set()
            await asyncio.sleep(10)
            return ToolResult(True, "late")

        self.registry.register("slow", slow)

    async def test_busy_then_cancel(self):
        orchestrator = self.make()
        task = asyncio.create_task(orchestrator.execute_tool("slow"))
        await self.started.wait()

        busy = await orchestrator.process("hi")
        self.assertEqual(busy.message, REQUEST_BUSY_MESSAGE)
        self.assertTrue(orchestrator.cancel())

        response = await task
        self.assertEqual(response.status, ResponseStatus.CANCELLED)
        self.assertEqual(response.error_code, EXECUTION_CANCELLED_ERROR_CODE)
        self.assertFalse(orchestrator.cancel())

    async def test_cancel_rolls_back_chat_history(self):
        orchestrator = self.make(ScriptedProvider([
            ChatResponse(content="ready"),
            tool_calls(ToolCall("c1", "slow", {})),
        ]))
        await orchestrator.process("warm up")
        before = orchestrator.history

        task = asyncio.create_task(orchestrator.process("slow please"))
        await self.started.wait()
        orchestrator.cancel()
        response = await task

        self.assertEqual(response.status, ResponseStatus.CANCELLED)
        self.assertEqual(orchestrator.history, before)
        events = orchestrator.event_log.events_for(response.request_id)
        self.assertEqual(events[-1].status, ResponseStatus.CANCELLED)

    async def test_tool_abort_stops_batch(self):
        class AbortError(Exception):
            pass

        ran = []

        def aborting(arguments, context):
            ran.append("a")
            raise AbortError("The operation was aborted")

        def after(arguments, context):
            ran.append("b")
            return ToolResult(True, "b ok")

        self.registry.register("a", aborting)
        self.registry.register("b", after)
        provider = ScriptedProvider([tool_calls(ToolCall("c1", "a", {}), ToolCall("c2", "b", {}))])
        orchestrator = self.make(provider)
        response = await orchestrator.process("go")

        self.assertEqual(ran, ["a"])
        self.assertEqual(response.status, ResponseStatus.CANCELLED)
        self.assertEqual(response.error_code, EXECUTION_CANCELLED_ERROR_CODE)
        self.assertEqual(len(provider.seen), 1)
        self.assertEqual(orchestrator.history, [])

    async def test_tool_iteration_limit(self):
        provider = ScriptedProvider(default=tool_calls(ToolCall("c", "get_info", {})))
        orchestrator = self.make(provider, options=OrchestratorOptions(max_tool_iterations=2))
        response = await orchestrator.process("loop")
        self.assertEqual(response.message, TOOL_LIMIT_MESSAGE)
        self.assertEqual(response.error_code, TOOL_LIMIT_REACHED)
        self.assertEqual(len(self.tools.calls), 2)


# ═══════════════════════════════════════════════════════════════════
# Workflows
# ═══════════════════════════════════════════════════════════════════

class TestWorkflows(OrchestratorTestCase):

    async def test_pause_then_resume(self):
        provider = ScriptedProvider([tool_calls(ToolCall("wf", RUN_WORKFLOW, {
            "workflowName": "full-cleanup", "confirmRequiredSteps": True,
        }))])
        orchestrator = self.make(provider)
        paused = await orchestrator.process("全面清理")

        self.assertEqual(paused.status, ResponseStatus.AWAITING_CONFIRMATION)
        self.assertTrue(paused.requires_confirmation)
        self.assertEqual(paused.error_code, "WORKFLOW_CONFIRMATION_REQUIRED")
        self.assertEqual(paused.next_step.id, "remove-fillers")
        self.assertEqual(paused.resume_hint.start_from_step_id, "remove-fillers")
        self.assertEqual(self.tools.names(), ["detect_filler_words"])
        # Step calls get the same events as direct calls
        step_ids = [e.tool_call_id for e in orchestrator.event_log.events_for(paused.request_id)
                    if e.type is ExecutionEventType.TOOL_STARTED]
        self.assertEqual(step_ids, ["wf", "wf:detect-fillers"])

        hint = paused.resume_hint
        resumed = await orchestrator.run_workflow(
            hint.workflow_name,
            start_from_step_id=hint.start_from_step_id,
            confirm_required_steps=hint.confirm_required_steps,
        )
        self.assertTrue(resumed.success, resumed.message)
        self.assertEqual(self.tools.names(), [
            "detect_filler_words", "remove_filler_words", "remove_silence", "generate_captions",
        ])

    async def test_run_workflow_planning_enabled(self):
        orchestrator = self.make(options=OrchestratorOptions(planning_enabled=True))
        response = await orchestrator.run_workflow("full-cleanup")
        self.assertEqual(response.status, ResponseStatus.PLANNED)
        self.assertEqual(len(response.plan.steps), 4)
        self.assertEqual(self.tools.calls, [])

    async def test_run_unknown_workflow(self):
        response = await self.make().run_workflow("nope")
        self.assertEqual(response.status, ResponseStatus.ERROR)
        self.assertEqual(response.error_code, "INVALID_WORKFLOW_REQUEST")

    async def test_host_workflow_tool_wins(self):
        self.registry.register(RUN_WORKFLOW, lambda a, c: ToolResult(True, "host workflow"))
        orchestrator = self.make()
        response = await orchestrator.run_workflow("full-cleanup")
        self.assertEqual(response.message, "host workflow")


class TestQualityLoop(OrchestratorTestCase):

    async def test_retries_with_adjusted_target(self):
        orchestrator = self.make(document=InMemoryDocument())
        response = await orchestrator.run_workflow(
            "podcast-to-clips",
            step_overrides=[{"stepId": "generate-plan", "arguments": {"targetDuration": 60}}],
        )
        self.assertTrue(response.success, response.message)
        plan_targets = [args["targetDuration"] for name, args in self.tools.calls
                        if name == "generate_highlight_plan"]
        self.assertEqual(plan_targets, [60, 45])
        data = response.tool_calls[0].result.data
        self.assertEqual(data["qualityIterations"], 2)
        self.assertTrue(data["qualityReport"]["passed"])
        self.assertIn("质量评分", response.message)

    async def test_blocking_target_not_met(self):
        self.tools.cut_duration = 60
        orchestrator = self.make(document=InMemoryDocument())
        response = await orchestrator.run_workflow("podcast-to-clips", quality_max_iterations=3)
        self.assertFalse(response.success)
        self.assertEqual(response.error_code, QUALITY_TARGET_NOT_MET)
        self.assertEqual(self.tools.names().count("apply_highlight_cut"), 3)
        self.assertIn("质量目标未达成", response.message)

    async def test_non_blocking_warning(self):
        catalog = WorkflowCatalog.from_dicts([{
            "name": "trim",
            "description": "trim to ten seconds",
            "quality": {"enabled": True, "max_iterations": 1, "target_duration_seconds": 10, "blocking": False},
            "steps": [{"id": "cut", "tool_name": "apply_highlight_cut"}],
        }])
        self.tools.cut_duration = 60
        orchestrator = self.make(document=InMemoryDocument(), catalog=catalog)
        response = await orchestrator.run_workflow("trim")
        self.assertTrue(response.success)
        data = response.tool_calls[0].result.data
        self.assertEqual(data["qualityWarningCode"], QUALITY_TARGET_NOT_MET)
        self.assertIn("质量提示", response.message)

    async def test_skipped_without_document(self):
        orchestrator = self.make()
        response = await orchestrator.run_workflow("podcast-to-clips")
        self.assertTrue(response.success)
        self.assertEqual(self.tools.names().count("apply_highlight_cut"), 1)
        self.assertNotIn("qualityReport", response.tool_calls[0].result.data or {})


# ═══════════════════════════════════════════════════════════════════
# Options / config
# ═══════════════════════════════════════════════════════════════════

class TestConfigWiring(unittest.IsolatedAsyncioTestCase):

    def test_options_from_config(self):
        options = OrchestratorOptions.from_config({"orchestrator": {
            "max_tool_iterations": 0,
            "tool_timeout_ms": 5000,
            "planning_enabled": True,
            "quality_max_iterations": 9,
            "system_prompt": "",
        }})
        self.assertEqual(options.max_tool_iterations, 4)
        self.assertEqual(options.tool_timeout_ms, 5000)
        self.assertTrue(options.planning_enabled)
        self.assertEqual(options.quality_max_iterations, 4)
        self.assertTrue(options.system_prompt)

    async def test_from_config(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
        orchestrator = AgentOrchestrator.from_config({
            "provider": {"type": "lm-studio", "lm_studio": {"url": "http://lm.test/v1"}},
            "recovery": {"provider_backoff": {"base_ms": 100, "max_ms": 300}},
            "quality": {"min_composite_score": 0.9},
        }, transport=transport)

        self.assertEqual(orchestrator.provider.name, "routed")
        self.assertIsNot(orchestrator.recovery_table, default_policy_table())
        decision = orchestrator.recovery_table.resolve(ToolCall("c", "t", {}), PROVIDER_UNAVAILABLE, 1)
        self.assertEqual(decision.delay_ms, 200)
        self.assertEqual(orchestrator.iteration_controller.evaluator.thresholds.min_composite_score, 0.9)
        self.assertEqual(await orchestrator.check_provider_status(), {"available": True, "provider": "routed"})

    def test_default_backoff_shares_table(self):
        orchestrator = AgentOrchestrator.from_config({}, provider=ScriptedProvider())
        self.assertIs(orchestrator.recovery_table, default_policy_table())


if __name__ == "__main__":
    unittest.main()
