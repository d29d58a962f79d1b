"""
HyperCut Agent - Cooperative Cancellation Tests

Tests:
  - Token cancel / child propagation / callbacks
  - Cancelled-result sentinel shape
  - Cancellation error classification
  - run_cancellable: completes, cancels, times out
  - cancellable_sleep wakes up early
"""

import asyncio
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

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
from agent.types import ToolResult


class TestCancellationToken(unittest.TestCase):

    def test_cancel_sets_reason_once(self):
        token = CancellationToken()
        self.assertFalse(token.cancelled)
        token.cancel("stop")
        token.cancel("again")
        self.assertTrue(token.cancelled)
        self.assertEqual(token.reason, "stop")

    def test_parent_cancels_children(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()
        parent.cancel("user")
        self.assertTrue(child.cancelled)
        self.assertTrue(grandchild.cancelled)
        self.assertEqual(grandchild.reason, "user")

    def test_child_does_not_cancel_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel("timeout")
        self.assertFalse(parent.cancelled)

    def test_callback_runs_immediately_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))
        self.assertEqual(calls, [1])

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("x")
        with self.assertRaises(ExecutionCancelled):
            token.raise_if_cancelled()


class TestCancelledResult(unittest.TestCase):

    def test_sentinel_shape(self):
        result = build_execution_cancelled_result({"toolName": "split_clip"})
        self.assertFalse(result.success)
        self.assertEqual(result.message, "执行已取消 (Execution cancelled)")
        self.assertEqual(result.data["errorCode"], EXECUTION_CANCELLED_ERROR_CODE)
        self.assertEqual(result.data["toolName"], "split_clip")
        self.assertTrue(is_cancelled_result(result))

    def test_other_failures_are_not_cancellation(self):
        self.assertFalse(is_cancelled_result(ToolResult(False, "boom", {"errorCode": "NO_TRANSCRIPT"})))
        self.assertFalse(is_cancelled_result(ToolResult(True, "ok")))

    def test_error_classification(self):
        class AbortError(Exception):
            pass

        self.assertTrue(is_cancellation_error(ExecutionCancelled("x")))
        self.assertTrue(is_cancellation_error(asyncio.CancelledError()))
        self.assertTrue(is_cancellation_error(AbortError("aborted")))
        self.assertTrue(is_cancellation_error(RuntimeError("Request was Canceled")))
        self.assertFalse(is_cancellation_error(RuntimeError("disk full")))
        self.assertFalse(is_cancellation_error(None))


class TestRunCancellable(unittest.IsolatedAsyncioTestCase):

    async def test_returns_value(self):
        async def work():
            return 42
        self.assertEqual(await run_cancellable(work(), CancellationToken()), 42)

    async def test_no_token(self):
        async def work():
            return "ok"
        self.assertEqual(await run_cancellable(work(), None), "ok")

    async def test_cancel_while_running(self):
        token = CancellationToken()
        started = asyncio.Event()
        finished = []

        async def work():
            started.set()
            await asyncio.sleep(10)
            finished.append(True)

        async def cancel_soon():
            await started.wait()
            token.cancel("user")

        canceller = asyncio.ensure_future(cancel_soon())
        with self.assertRaises(ExecutionCancelled):
            await run_cancellable(work(), token)
        await canceller
        self.assertEqual(finished, [])

    async def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel()

        async def work():
            return 1

        with self.assertRaises(ExecutionCancelled):
            await run_cancellable(work(), token)

    async def test_timeout(self):
        async def work():
            await asyncio.sleep(10)

        with self.assertRaises(asyncio.TimeoutError):
            await run_cancellable(work(), CancellationToken(), timeout=0.01)

    async def test_exception_propagates(self):
        async def work():
            raise ValueError("bad")

        with self.assertRaises(ValueError):
            await run_cancellable(work(), CancellationToken())


class TestCancellableSleep(unittest.IsolatedAsyncioTestCase):

    async def test_zero_delay_checks_token(self):
        await cancellable_sleep(0, CancellationToken())
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(ExecutionCancelled):
            await cancellable_sleep(0, token)

    async def test_uses_injected_sleep(self):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        await cancellable_sleep(0.4, CancellationToken(), sleep_fn=fake_sleep)
        self.assertEqual(slept, [0.4])

    async def test_wakes_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        with self.assertRaises(ExecutionCancelled):
            await cancellable_sleep(10, token)


if __name__ == "__main__":
    unittest.main()
