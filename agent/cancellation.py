"""
HyperCut Agent - Cooperative Cancellation

A CancellationToken is threaded through every await point of a request:
provider calls, tool bodies, recovery prerequisites, backoff sleeps and
quality iterations. Cancelling a token cancels all of its children, so a
request token aborts every tool call it spawned, and a tool-call token can
be aborted alone (timeouts, sibling abort after a workflow pause).

Cancellation is reported as a distinct ToolResult sentinel rather than an
exception, and it is never fed to the recovery table.

Usage:
    from agent.cancellation import CancellationToken, build_execution_cancelled_result

    token = CancellationToken()
    child = token.child()
    token.cancel("user pressed stop")
    child.cancelled            # True
    build_execution_cancelled_result().data["errorCode"]   # "EXECUTION_CANCELLED"
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from agent.types import ToolResult

logger = logging.getLogger("hypercut_agent.cancellation")

EXECUTION_CANCELLED_ERROR_CODE = "EXECUTION_CANCELLED"

T = TypeVar("T")


class ExecutionCancelled(Exception):
    """Raised at a suspension point when the active request has been cancelled."""
    pass


class CancellationToken:
    """Hierarchical, cooperative cancellation flag."""

    def __init__(self, parent: CancellationToken | None = None):
        self._cancelled = False
        self.reason = ""
        self._callbacks: list[Callable[[], None]] = []
        self._event: asyncio.Event | None = None
        if parent is not None:
            parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ExecutionCancelled(f"Execution cancelled: {self.reason}")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


def is_cancellation_error(error: BaseException | None) -> bool:
    """
    True for errors that mean "aborted", not "failed".

    Covers our own ExecutionCancelled, asyncio cancellation, errors named
    AbortError by third-party clients, and messages that say cancelled.
    """
    if error is None:
        return False
    if isinstance(error, (ExecutionCancelled, asyncio.CancelledError)):
        return True
    if type(error).__name__ == "AbortError":
        return True
    message = str(error).lower()
    return "cancelled" in message or "canceled" in message


def build_execution_cancelled_result(data: dict[str, Any] | None = None) -> ToolResult:
    payload = dict(data or {})
    payload["errorCode"] = EXECUTION_CANCELLED_ERROR_CODE
    return ToolResult(
        success=False,
        message="执行已取消 (Execution cancelled)",
        data=payload,
    )


def is_cancelled_result(result: ToolResult) -> bool:
    return bool(result.data) and result.data.get("errorCode") == EXECUTION_CANCELLED_ERROR_CODE


async def run_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    timeout: float | None = None,
) -> T:
    """
    Await ``awaitable`` unless the token fires or the timeout expires first.

    Raises ExecutionCancelled when the token fires and asyncio.TimeoutError
    on timeout. In both cases the inner task is cancelled and awaited, so no
    work is left running behind the caller's back.
    """
    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        if token.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise ExecutionCancelled(f"Execution cancelled: {token.reason}")
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel_waiter is not None and cancel_waiter in done:
        raise ExecutionCancelled(f"Execution cancelled: {token.reason}")
    logger.debug("Awaitable exceeded timeout of %.3fs", timeout)
    raise asyncio.TimeoutError(f"timed out after {timeout}s")


async def cancellable_sleep(
    seconds: float,
    token: CancellationToken | None,
    sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Sleep that wakes up early with ExecutionCancelled if the token fires."""
    if seconds <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    await run_cancellable(sleep_fn(seconds), token)
