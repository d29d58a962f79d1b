"""
HyperCut Agent - Agent Package

Lazy-loading module: the orchestrator pulls in the workflows package, which
itself imports from agent.*, so orchestrator symbols are only imported when
they are actually used. Everything else is light and imported eagerly.

Light imports:
  - agent.types: ToolCall, ToolResult, AgentResponse, PlanStep, ...
  - agent.cancellation: CancellationToken, ExecutionCancelled
  - agent.tools: ToolRegistry
  - agent.recovery: RecoveryPolicy, RecoveryPolicyTable, resolve_recovery_policy_decision
  - agent.events: ExecutionEventLog, AgentExecutionEvent
  - agent.document: DocumentMutator, InMemoryDocument
  - agent.quality: QualityEvaluator, IterationController

Lazy imports (need the workflows package):
  - agent.orchestrator: AgentOrchestrator, OrchestratorOptions
"""

from agent.types import (
    AgentResponse, ExecutedTool, ExecutionMode, ExecutionPlan, PlanStep,
    ResponseStatus, ToolCall, ToolExecutionContext, ToolResult,
)
from agent.cancellation import CancellationToken, ExecutionCancelled
from agent.tools import ToolRegistry
from agent.recovery import (
    RecoveryPolicy, RecoveryPolicyDecision, RecoveryPolicyTable,
    default_policy_table, resolve_recovery_policy_decision,
)
from agent.events import AgentExecutionEvent, ExecutionEventLog, ExecutionEventType
from agent.document import DocumentMutator, InMemoryDocument
from agent.quality import IterationController, QualityEvaluator, QualityLoopConfig, QualityReport


def __getattr__(name):
    """Lazy-load orchestrator symbols."""
    _orchestrator_symbols = {
        "AgentOrchestrator", "OrchestratorOptions", "RequestState", "IllegalStateTransition",
    }
    if name in _orchestrator_symbols:
        import agent.orchestrator as _orchestrator
        return getattr(_orchestrator, name)

    raise AttributeError(f"module 'agent' has no attribute {name!r}")
