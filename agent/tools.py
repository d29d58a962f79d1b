"""
HyperCut Agent - Tool Registry

Name -> tool lookup with a schema-validated, cancellation-aware call
boundary.

A "tool" is a callable that takes the LLM-supplied arguments (dict) and a
ToolExecutionContext and returns a ToolResult (or a dict shaped like one).
It may be sync or async. Tools are registered by name together with the
JSON schema of their parameters; that schema is what the chat provider
sees, and it is also enforced here before any tool body runs.

Usage:
    registry = ToolRegistry()
    registry.register(
        "split_clip", split_clip,
        description="Split the clip under the playhead",
        parameters={"type": "object",
                    "properties": {"time": {"type": "number"}},
                    "required": ["time"]},
    )
    result = await registry.execute("split_clip", {"time": 4.2}, context)

The registry never raises for tool failures: unknown tools, schema
mismatches, exceptions and cancellation all come back as ToolResults with
an ``errorCode`` the orchestrator can branch on.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from agent.cancellation import build_execution_cancelled_result, is_cancellation_error
from agent.types import StepOperation, ToolDefinition, ToolExecutionContext, ToolResult

logger = logging.getLogger("hypercut_agent.tools")

TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
VALIDATION_ERROR = "VALIDATION_ERROR"

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}, "required": []}


# ---------------------------------------------------------------------------
# Tool protocol
# ---------------------------------------------------------------------------

ToolReturn = Union[ToolResult, dict[str, Any]]


class AgentTool(Protocol):
    """A document query or mutation the language model can call."""
    def __call__(
        self,
        arguments: dict[str, Any],
        context: ToolExecutionContext,
    ) -> ToolReturn | Awaitable[ToolReturn]:
        """
        Args:
            arguments: Arguments already validated against the tool's schema.
            context: Request id, mode, cancellation token, document handle.
        Returns:
            A ToolResult, or a dict with success / message / data keys.
        """
        ...


@dataclass
class ToolSpec:
    """Registration entry for a tool."""
    name: str
    fn: Callable[..., Any]
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))
    requires_confirmation: bool = False  # plan must be confirmed before it runs
    operation: StepOperation | None = None  # None: inferred from the name
    _validator: Draft202012Validator | None = field(default=None, repr=False, compare=False)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters)

    @property
    def required_parameters(self) -> list[str]:
        required = self.parameters.get("required") or []
        return [str(name) for name in required]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ToolRegistry:
    """
    Central registry of agent tools.

    Registration order is preserved; it is the order tools are offered to
    the chat provider.
    """

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        fn: Callable[..., Any],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        requires_confirmation: bool = False,
        operation: StepOperation | str | None = None,
    ) -> ToolSpec:
        """
        Register a tool. Re-registering a name replaces the previous entry.

        Raises:
            ValueError: If the name is empty or the parameter schema is invalid.
        """
        if not name or not name.strip():
            raise ValueError("Tool name must be a non-empty string")
        schema = dict(parameters) if parameters else dict(EMPTY_PARAMETERS)
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"Invalid parameter schema for tool {name!r}: {e.message}") from e

        spec = ToolSpec(
            name=name,
            fn=fn,
            description=description,
            parameters=schema,
            requires_confirmation=requires_confirmation,
            operation=StepOperation(operation) if operation else None,
            _validator=Draft202012Validator(schema),
        )
        if name in self._tools:
            logger.debug("Replacing tool registration: %s", name)
        self._tools[name] = spec
        return spec

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def definitions(self) -> list[ToolDefinition]:
        """Tool schemas in the shape the chat provider expects."""
        return [spec.definition() for spec in self._tools.values()]

    def describe(self) -> str:
        """Human-readable description of all registered tools (for prompts and logs)."""
        if not self._tools:
            return "No tools registered."
        lines = []
        for spec in self._tools.values():
            flag = " (CONFIRM)" if spec.requires_confirmation else ""
            lines.append(f"  - {spec.name}{flag}: {spec.description}")
            if spec.required_parameters:
                lines.append(f"    Required: {', '.join(spec.required_parameters)}")
        return "\n".join(lines)

    def validate_arguments(self, name: str, arguments: Any) -> list[str]:
        """Return schema violations for ``arguments`` (empty = valid)."""
        spec = self._tools.get(name)
        if spec is None:
            return [f"Tool '{name}' not registered"]
        if not isinstance(arguments, dict):
            return ["arguments must be an object"]
        validator = spec._validator or Draft202012Validator(spec.parameters)
        errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
        return [_format_schema_error(e) for e in errors]

    def missing_required(self, name: str, arguments: dict[str, Any]) -> list[str]:
        spec = self._tools.get(name)
        if spec is None:
            return []
        return [key for key in spec.required_parameters if key not in arguments]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        context: ToolExecutionContext | None = None,
    ) -> ToolResult:
        """Call a tool by name. Always returns a ToolResult."""
        context = context or ToolExecutionContext(tool_name=name)
        if context.cancelled:
            return build_execution_cancelled_result({"toolName": name})

        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(
                success=False,
                message=f"未找到工具: {name} (Tool not found)",
                data={"errorCode": TOOL_NOT_FOUND, "toolName": name},
            )

        arguments = arguments if arguments is not None else {}
        violations = self.validate_arguments(name, arguments)
        if violations:
            return ToolResult(
                success=False,
                message=f"参数校验失败 (Invalid arguments for {name}): {'; '.join(violations)}",
                data={"errorCode": VALIDATION_ERROR, "toolName": name, "violations": violations},
            )

        t0 = time.time()
        try:
            outcome = spec.fn(arguments, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            result = _coerce_result(outcome)
        except Exception as e:
            elapsed_ms = (time.time() - t0) * 1000
            if is_cancellation_error(e) or context.cancelled:
                logger.info("Tool %s cancelled after %.1fms", name, elapsed_ms)
                return build_execution_cancelled_result({"toolName": name})
            logger.warning("Tool %s raised after %.1fms: %s", name, elapsed_ms, e)
            return ToolResult(
                success=False,
                message=f"工具执行失败: {e}",
                data={"errorCode": TOOL_EXECUTION_FAILED, "toolName": name},
            )

        elapsed_ms = (time.time() - t0) * 1000
        logger.debug("Tool %s finished in %.1fms (success=%s)", name, elapsed_ms, result.success)
        return result


def _coerce_result(outcome: Any) -> ToolResult:
    if isinstance(outcome, ToolResult):
        return outcome
    if isinstance(outcome, dict) and "success" in outcome:
        return ToolResult.from_dict(outcome)
    raise TypeError(f"Tool returned {type(outcome).__name__}, expected ToolResult")


def _format_schema_error(error: Any) -> str:
    path = ".".join(str(p) for p in error.path)
    return f"{path}: {error.message}" if path else error.message
