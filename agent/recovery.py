"""
HyperCut Agent - Recovery Policy Engine

Maps a failed tool call's error code to a bounded retry strategy,
optionally prefixed by prerequisite calls that repair the missing state
(generate captions before filler detection, rebuild highlight scores
before validating them, and so on).

Resolution is a pure function of (tool call, error code, retry count): no
I/O, no mutation. The orchestrator runs the prerequisites in the listed
order, waits ``delay_ms``, and retries ``retry_call``.

The policy table is an open map from error code to policy. The built-in
policies are registered on the default table; hosts may register their own
for tool-specific codes.

Usage:
    from agent.recovery import resolve_recovery_policy_decision

    decision = resolve_recovery_policy_decision(call, "NO_TRANSCRIPT", retry_count=0)
    if decision is None:
        ...  # unrecoverable or exhausted
    for prereq in decision.prerequisite_calls:
        ...

    # Extending the table
    default_policy_table().register(RecoveryPolicy(
        policy_id="asset-reload", error_codes=("ASSET_NOT_LOADED",),
        max_retries=1, reason="reload media then retry",
        build_prerequisites=lambda call: [ToolCall("recovery-load", "load_asset", {})],
    ))
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable

from agent.types import ToolCall

logger = logging.getLogger("hypercut_agent.recovery")

NO_TRANSCRIPT = "NO_TRANSCRIPT"
PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
HIGHLIGHT_CACHE_STALE = "HIGHLIGHT_CACHE_STALE"
HIGHLIGHT_CACHE_MISSING = "HIGHLIGHT_CACHE_MISSING"
HIGHLIGHT_PLAN_STALE = "HIGHLIGHT_PLAN_STALE"
HIGHLIGHT_PLAN_MISSING = "HIGHLIGHT_PLAN_MISSING"

DEFAULT_BACKOFF_BASE_MS = 400
DEFAULT_BACKOFF_MAX_MS = 2500


# ═══════════════════════════════════════════════════════════════════
# Decision / Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RecoveryPolicyDecision:
    """What to do about one failed call. ``None`` from the resolver means give up."""
    policy_id: str
    error_code: str
    reason: str
    max_retries: int
    delay_ms: int
    prerequisite_calls: list[ToolCall] = field(default_factory=list)
    retry_call: ToolCall | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "error_code": self.error_code,
            "reason": self.reason,
            "max_retries": self.max_retries,
            "delay_ms": self.delay_ms,
            "prerequisite_calls": [c.to_dict() for c in self.prerequisite_calls],
            "retry_call": self.retry_call.to_dict() if self.retry_call else None,
        }


def _no_prerequisites(tool_call: ToolCall) -> list[ToolCall]:
    return []


def _no_delay(retry_count: int) -> int:
    return 0


@dataclass
class RecoveryPolicy:
    """
    A recovery rule for one or more error codes.

    ``applies_to`` restricts the policy to specific tool names (None = any
    tool). ``build_prerequisites`` derives the repair calls from the
    original call's arguments; ``compute_delay_ms`` gives the wait before
    retry number ``retry_count + 1``.
    """
    policy_id: str
    error_codes: tuple[str, ...]
    max_retries: int
    reason: str = ""
    applies_to: frozenset[str] | None = None
    build_prerequisites: Callable[[ToolCall], list[ToolCall]] = _no_prerequisites
    compute_delay_ms: Callable[[int], int] = _no_delay

    def decide(self, tool_call: ToolCall, error_code: str, retry_count: int) -> RecoveryPolicyDecision | None:
        if self.applies_to is not None and tool_call.name not in self.applies_to:
            return None
        if retry_count >= self.max_retries:
            return None
        return RecoveryPolicyDecision(
            policy_id=self.policy_id,
            error_code=error_code,
            reason=self.reason,
            max_retries=self.max_retries,
            delay_ms=max(0, int(self.compute_delay_ms(retry_count))),
            prerequisite_calls=self.build_prerequisites(tool_call),
            retry_call=tool_call.copy(),
        )


class RecoveryPolicyTable:
    """Registerable map of error code -> RecoveryPolicy."""

    def __init__(self, policies: list[RecoveryPolicy] | None = None):
        self._policies: dict[str, RecoveryPolicy] = {}
        for policy in policies or []:
            self.register(policy)

    def register(self, policy: RecoveryPolicy) -> None:
        if policy.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 (policy {policy.policy_id})")
        for code in policy.error_codes:
            normalized = code.strip()
            if normalized in self._policies:
                logger.info("Recovery policy for %s replaced by %s", normalized, policy.policy_id)
            self._policies[normalized] = policy

    def unregister(self, error_code: str) -> bool:
        return self._policies.pop(error_code.strip(), None) is not None

    def get(self, error_code: str) -> RecoveryPolicy | None:
        return self._policies.get(error_code.strip())

    def error_codes(self) -> list[str]:
        return sorted(self._policies)

    def resolve(self, tool_call: ToolCall, error_code: str | None, retry_count: int) -> RecoveryPolicyDecision | None:
        if not error_code:
            return None
        policy = self.get(error_code)
        if policy is None:
            return None
        return policy.decide(tool_call, error_code.strip(), retry_count)


# ═══════════════════════════════════════════════════════════════════
# Argument helpers
# ═══════════════════════════════════════════════════════════════════

def _optional_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _finite_number(value: Any) -> float | int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def extract_tool_error_code(data: Any) -> str | None:
    """``data["errorCode"]`` trimmed, or None for missing / blank / non-dict input."""
    if not isinstance(data, dict):
        return None
    return _optional_string(data.get("errorCode"))


def compute_provider_backoff_delay_ms(
    retry_count: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    max_ms: int = DEFAULT_BACKOFF_MAX_MS,
) -> int:
    """Exponential backoff: base * 2^retry_count, capped at max_ms."""
    return int(min(max_ms, base_ms * (2 ** retry_count)))


# ═══════════════════════════════════════════════════════════════════
# Built-in prerequisite builders
# ═══════════════════════════════════════════════════════════════════

def build_generate_captions_call(tool_call: ToolCall | None = None) -> list[ToolCall]:
    return [ToolCall(
        id="recovery-generate-captions",
        name="generate_captions",
        arguments={"source": "timeline"},
    )]


def _score_highlights_call(tool_call: ToolCall) -> ToolCall:
    args: dict[str, Any] = {}
    video_asset_id = _optional_string(tool_call.arguments.get("videoAssetId"))
    if video_asset_id:
        args["videoAssetId"] = video_asset_id
    return ToolCall(id="recovery-score-highlights", name="score_highlights", arguments=args)


def build_score_highlights_call(tool_call: ToolCall) -> list[ToolCall]:
    return [_score_highlights_call(tool_call)]


def build_highlight_plan_rebuild_calls(tool_call: ToolCall) -> list[ToolCall]:
    """score_highlights, then generate_highlight_plan with the original plan arguments."""
    source = tool_call.arguments
    plan_args: dict[str, Any] = {}
    for key in ("targetDuration", "tolerance"):
        value = _finite_number(source.get(key))
        if value is not None:
            plan_args[key] = value
    if isinstance(source.get("includeHook"), bool):
        plan_args["includeHook"] = source["includeHook"]
    return [
        _score_highlights_call(tool_call),
        ToolCall(
            id="recovery-generate-highlight-plan",
            name="generate_highlight_plan",
            arguments=copy.deepcopy(plan_args),
        ),
    ]


def builtin_policies(
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS,
) -> list[RecoveryPolicy]:
    return [
        RecoveryPolicy(
            policy_id="transcript-bootstrap",
            error_codes=(NO_TRANSCRIPT,),
            max_retries=1,
            reason="缺少转录，先自动生成字幕再重试",
            applies_to=frozenset({"detect_filler_words", "remove_filler_words", "score_highlights"}),
            build_prerequisites=build_generate_captions_call,
        ),
        RecoveryPolicy(
            policy_id="provider-backoff",
            error_codes=(PROVIDER_UNAVAILABLE,),
            max_retries=2,
            reason="模型服务暂不可用，执行指数退避重试",
            compute_delay_ms=lambda retry_count: compute_provider_backoff_delay_ms(
                retry_count, backoff_base_ms, backoff_max_ms),
        ),
        RecoveryPolicy(
            policy_id="highlight-score-refresh",
            error_codes=(HIGHLIGHT_CACHE_STALE, HIGHLIGHT_CACHE_MISSING),
            max_retries=1,
            reason="高光评分缓存失效，先刷新 score_highlights 再重试",
            applies_to=frozenset({"validate_highlights_visual", "generate_highlight_plan"}),
            build_prerequisites=build_score_highlights_call,
        ),
        RecoveryPolicy(
            policy_id="highlight-plan-rebuild",
            error_codes=(HIGHLIGHT_PLAN_STALE, HIGHLIGHT_PLAN_MISSING),
            max_retries=1,
            reason="高光计划失效，重建评分与计划后重试 apply_highlight_cut",
            applies_to=frozenset({"apply_highlight_cut"}),
            build_prerequisites=build_highlight_plan_rebuild_calls,
        ),
    ]


# ═══════════════════════════════════════════════════════════════════
# Default table
# ═══════════════════════════════════════════════════════════════════

_default_table: RecoveryPolicyTable | None = None


def default_policy_table() -> RecoveryPolicyTable:
    global _default_table
    if _default_table is None:
        _default_table = RecoveryPolicyTable(builtin_policies())
    return _default_table


def reset_default_policy_table() -> None:
    """For testing: drop host registrations from the default table."""
    global _default_table
    _default_table = None


def resolve_recovery_policy_decision(
    tool_call: ToolCall,
    error_code: str | None,
    retry_count: int,
    table: RecoveryPolicyTable | None = None,
) -> RecoveryPolicyDecision | None:
    return (table or default_policy_table()).resolve(tool_call, error_code, retry_count)
