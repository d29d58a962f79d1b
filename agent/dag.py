"""
HyperCut Agent - Plan Step DAG

Turns an ordered list of PlanSteps into a dependency graph and runs it
with bounded concurrency.

Rules:
  - operation is explicit, or inferred: get_* / list_* tools read, the
    rest write
  - explicit dependsOn is kept when it names an earlier step; otherwise a
    read depends on the last write before it and a write depends on every
    earlier step
  - resourceLocks are explicit, or "editor_write" for writes and none for
    reads; two steps holding the same lock never run at the same time
  - a step is ready when every dependency has finished (completed or
    failed) and none of its locks is held

Usage:
    dag = build_dag(plan.steps)
    summary = await run_dag(dag, worker, token=request_token, max_concurrency=4)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from agent.cancellation import CancellationToken
from agent.types import PlanStep, StepOperation

logger = logging.getLogger("hypercut_agent.dag")

READ_ONLY_PREFIXES = ("get_", "list_")
DEFAULT_WRITE_LOCK = "editor_write"


class DagCycleError(Exception):
    """Raised when a DAG's dependencies cannot be ordered."""
    pass


class DagNodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


FINISHED_STATES = (DagNodeState.COMPLETED, DagNodeState.FAILED)


@dataclass
class DagNode:
    id: str
    index: int
    step: PlanStep
    operation: StepOperation
    depends_on: list[str]
    resource_locks: list[str]


@dataclass
class DagPlan:
    nodes: list[DagNode]
    by_id: dict[str, DagNode]


def _unique_strings(values: Iterable[Any]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if not isinstance(value, str):
            continue
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        result.append(normalized)
    return result


def infer_operation(step: PlanStep) -> StepOperation:
    if step.operation is not None:
        return StepOperation(step.operation)
    if step.tool_name.startswith(READ_ONLY_PREFIXES):
        return StepOperation.READ
    return StepOperation.WRITE


def build_dag(steps: list[PlanStep]) -> DagPlan:
    nodes: list[DagNode] = []
    previous_ids: list[str] = []
    last_write_id: str | None = None

    for index, step in enumerate(steps):
        operation = infer_operation(step)

        explicit = _unique_strings(step.depends_on or [])
        earlier = set(previous_ids)
        if explicit:
            depends_on = [dep for dep in explicit if dep != step.id and dep in earlier]
        elif index == 0:
            depends_on = []
        elif operation is StepOperation.READ:
            depends_on = [last_write_id] if last_write_id else []
        else:
            depends_on = list(previous_ids)

        if step.resource_locks:
            locks = _unique_strings(step.resource_locks)
        elif operation is StepOperation.READ:
            locks = []
        else:
            locks = [DEFAULT_WRITE_LOCK]

        nodes.append(DagNode(
            id=step.id, index=index, step=step, operation=operation,
            depends_on=depends_on, resource_locks=locks,
        ))
        previous_ids.append(step.id)
        if operation is StepOperation.WRITE:
            last_write_id = step.id

    return DagPlan(nodes=nodes, by_id={node.id: node for node in nodes})


def topological_order(dag: DagPlan) -> list[str]:
    """
    Kahn's algorithm, seeded in step order.

    Raises:
        DagCycleError: If the dependencies contain a cycle.
    """
    indegree = {node.id: len(node.depends_on) for node in dag.nodes}
    outgoing: dict[str, list[str]] = {}
    for node in dag.nodes:
        for dep in node.depends_on:
            outgoing.setdefault(dep, []).append(node.id)

    queue = [node.id for node in sorted(dag.nodes, key=lambda n: n.index) if indegree[node.id] == 0]
    order: list[str] = []
    while queue:
        node_id = queue.pop(0)
        order.append(node_id)
        for next_id in outgoing.get(node_id, []):
            indegree[next_id] -= 1
            if indegree[next_id] == 0:
                queue.append(next_id)

    if len(order) != len(dag.nodes):
        raise DagCycleError("DAG contains cyclic dependencies")
    return order


def ready_nodes(
    dag: DagPlan,
    states: dict[str, DagNodeState],
    running_locks: set[str],
) -> list[DagNode]:
    ready = []
    for node in dag.nodes:
        if states.get(node.id) is not DagNodeState.PENDING:
            continue
        if not all(states.get(dep) in FINISHED_STATES for dep in node.depends_on):
            continue
        if any(lock in running_locks for lock in node.resource_locks):
            continue
        ready.append(node)
    return ready


# ═══════════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════════

@dataclass
class NodeOutcome:
    """Worker verdict for one node. ``halt`` stops the whole run and aborts siblings."""
    success: bool
    halt: bool = False
    value: Any = None


@dataclass
class DagRunSummary:
    states: dict[str, DagNodeState]
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    started: list[str] = field(default_factory=list)
    halted_by: str | None = None
    paused_at: str | None = None
    cancelled: bool = False


async def run_dag(
    dag: DagPlan,
    worker: Callable[[DagNode, CancellationToken], Awaitable[NodeOutcome]],
    token: CancellationToken | None = None,
    max_concurrency: int = 4,
    gate: Callable[[DagNode], bool] | None = None,
) -> DagRunSummary:
    """
    Run every node of ``dag`` through ``worker``.

    Each node gets a child token of ``token``. When a worker reports
    ``halt``, running siblings are cancelled through their tokens and
    awaited, and nothing new starts. When ``gate`` returns False for a ready
    node, scheduling stops there (``paused_at``) and running nodes are
    allowed to finish.
    """
    topological_order(dag)
    token = token or CancellationToken()
    limit = max(1, max_concurrency)
    summary = DagRunSummary(states={node.id: DagNodeState.PENDING for node in dag.nodes})
    running: dict[asyncio.Task, tuple[DagNode, CancellationToken]] = {}
    held_locks: set[str] = set()
    stop_scheduling = False

    while True:
        if token.cancelled:
            summary.cancelled = True
            stop_scheduling = True

        if not stop_scheduling:
            for node in ready_nodes(dag, summary.states, held_locks):
                if len(running) >= limit:
                    break
                if any(lock in held_locks for lock in node.resource_locks):
                    continue
                if gate is not None and not gate(node):
                    summary.paused_at = node.id
                    stop_scheduling = True
                    break
                node_token = token.child()
                summary.states[node.id] = DagNodeState.RUNNING
                summary.started.append(node.id)
                held_locks.update(node.resource_locks)
                task = asyncio.ensure_future(worker(node, node_token))
                running[task] = (node, node_token)

        if not running:
            break

        done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            node, _node_token = running.pop(task)
            held_locks.difference_update(node.resource_locks)
            try:
                outcome = task.result()
            except Exception:
                for _, (_other, other_token) in running.items():
                    other_token.cancel("sibling failed")
                await asyncio.gather(*running.keys(), return_exceptions=True)
                raise
            summary.outcomes[node.id] = outcome
            summary.states[node.id] = DagNodeState.COMPLETED if outcome.success else DagNodeState.FAILED
            if outcome.halt and summary.halted_by is None:
                summary.halted_by = node.id
                stop_scheduling = True
                for _other_task, (other, other_token) in running.items():
                    logger.debug("Aborting sibling %s after halt at %s", other.id, node.id)
                    other_token.cancel("sibling paused")

    for node_id, state in summary.states.items():
        if state is DagNodeState.PENDING:
            summary.states[node_id] = DagNodeState.SKIPPED
    return summary

