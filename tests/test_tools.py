"""
HyperCut Agent - Tool Registry Tests

Tests:
  - Registration, replacement, schema checks, definitions order
  - Sync and async tools, dict results coerced to ToolResult
  - Unknown tool / schema violation / raising tool -> error results
  - Cancellation before and during a tool body
  - missing_required and describe helpers
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from agent.cancellation import CancellationToken, is_cancelled_result
from agent.tools import TOOL_EXECUTION_FAILED, TOOL_NOT_FOUND, VALIDATION_ERROR, ToolRegistry
from agent.types import StepOperation, ToolExecutionContext, ToolResult


SPLIT_SCHEMA = {
    "type": "object",
    "properties": {"time": {"type": "number"}, "trackId": {"type": "string"}},
    "required": ["time"],
}


def split_clip(arguments, context):
    return ToolResult(True, f"split at {arguments['time']}", {"time": arguments["time"]})


async def get_timeline(arguments, context):
    return {"success": True, "message": "timeline", "data": {"tracks": 2}}


class TestRegistration(unittest.TestCase):

    def test_register_and_lookup(self):
        registry = ToolRegistry()
        registry.register("split_clip", split_clip, description="Split", parameters=SPLIT_SCHEMA)
        self.assertIn("split_clip", registry)
        self.assertEqual(len(registry), 1)
        self.assertEqual(registry.get("split_clip").required_parameters, ["time"])

    def test_definitions_keep_registration_order(self):
        registry = ToolRegistry()
        registry.register("b_tool", split_clip, parameters=SPLIT_SCHEMA)
        registry.register("a_tool", get_timeline)
        names = [d.name for d in registry.definitions()]
        self.assertEqual(names, ["b_tool", "a_tool"])
        self.assertEqual(registry.definitions()[1].parameters["type"], "object")

    def test_replace_registration(self):
        registry = ToolRegistry()
        registry.register("t", split_clip, description="old")
        registry.register("t", get_timeline, description="new")
        self.assertEqual(registry.get("t").description, "new")
        self.assertEqual(len(registry), 1)

    def test_invalid_schema_rejected(self):
        registry = ToolRegistry()
        with self.assertRaises(ValueError):
            registry.register("bad", split_clip, parameters={"type": "not-a-type"})

    def test_blank_name_rejected(self):
        with self.assertRaises(ValueError):
            ToolRegistry().register("  ", split_clip)

    def test_operation_and_confirmation_flags(self):
        registry = ToolRegistry()
        spec = registry.register("delete_clip", split_clip, requires_confirmation=True, operation="write")
        self.assertTrue(spec.requires_confirmation)
        self.assertEqual(spec.operation, StepOperation.WRITE)

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register("t", split_clip)
        self.assertTrue(registry.unregister("t"))
        self.assertFalse(registry.unregister("t"))

    def test_missing_required_and_describe(self):
        registry = ToolRegistry()
        registry.register("split_clip", split_clip, description="Split", parameters=SPLIT_SCHEMA,
                          requires_confirmation=True)
        self.assertEqual(registry.missing_required("split_clip", {}), ["time"])
        self.assertEqual(registry.missing_required("split_clip", {"time": 1}), [])
        self.assertEqual(registry.missing_required("unknown", {}), [])
        description = registry.describe()
        self.assertIn("split_clip (CONFIRM): Split", description)
        self.assertIn("Required: time", description)
        self.assertEqual(ToolRegistry().describe(), "No tools registered.")

    def test_validate_arguments(self):
        registry = ToolRegistry()
        registry.register("split_clip", split_clip, parameters=SPLIT_SCHEMA)
        self.assertEqual(registry.validate_arguments("split_clip", {"time": 1.5}), [])
        errors = registry.validate_arguments("split_clip", {"time": "soon"})
        self.assertEqual(len(errors), 1)
        self.assertTrue(errors[0].startswith("time: "))
        self.assertEqual(registry.validate_arguments("split_clip", "x"), ["arguments must be an object"])


class TestExecute(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.registry = ToolRegistry()
        self.registry.register("split_clip", split_clip, parameters=SPLIT_SCHEMA)
        self.registry.register("get_timeline", get_timeline)

    async def test_sync_tool(self):
        result = await self.registry.execute("split_clip", {"time": 2})
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"time": 2})

    async def test_async_tool_dict_result(self):
        result = await self.registry.execute("get_timeline", None)
        self.assertIsInstance(result, ToolResult)
        self.assertEqual(result.data, {"tracks": 2})

    async def test_unknown_tool(self):
        result = await self.registry.execute("nope", {})
        self.assertFalse(result.success)
        self.assertEqual(result.error_code, TOOL_NOT_FOUND)
        self.assertIn("nope", result.message)

    async def test_schema_violation_does_not_run_tool(self):
        calls = []
        self.registry.register("tracked", lambda a, c: calls.append(a) or ToolResult(True, "ok"),
                               parameters=SPLIT_SCHEMA)
        result = await self.registry.execute("tracked", {"trackId": "t1"})
        self.assertFalse(result.success)
        self.assertEqual(result.error_code, VALIDATION_ERROR)
        self.assertEqual(calls, [])

    async def test_raising_tool(self):
        def broken(arguments, context):
            raise RuntimeError("disk full")

        self.registry.register("broken", broken)
        result = await self.registry.execute("broken", {})
        self.assertFalse(result.success)
        self.assertEqual(result.error_code, TOOL_EXECUTION_FAILED)
        self.assertIn("disk full", result.message)

    async def test_bad_return_type(self):
        self.registry.register("weird", lambda a, c: "text")
        result = await self.registry.execute("weird", {})
        self.assertEqual(result.error_code, TOOL_EXECUTION_FAILED)

    async def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        result = await self.registry.execute("split_clip", {"time": 1}, ToolExecutionContext(token=token))
        self.assertTrue(is_cancelled_result(result))

    async def test_tool_raising_cancellation(self):
        async def long_running(arguments, context):
            context.token.cancel("user")
            context.token.raise_if_cancelled()

        self.registry.register("long_running", long_running)
        context = ToolExecutionContext(token=CancellationToken())
        result = await self.registry.execute("long_running", {}, context)
        self.assertTrue(is_cancelled_result(result))
        self.assertEqual(result.data["toolName"], "long_running")

    async def test_context_reaches_tool(self):
        seen = {}

        def inspect_context(arguments, context):
            seen["request_id"] = context.request_id
            return ToolResult(True, "ok")

        self.registry.register("inspect", inspect_context)
        await self.registry.execute("inspect", {}, ToolExecutionContext(request_id="req-1"))
        self.assertEqual(seen["request_id"], "req-1")


if __name__ == "__main__":
    unittest.main()
