"""
HyperCut Agent - Quality Evaluator & Iteration Controller

Scores the document after a workflow run and re-runs the workflow a
bounded number of times until the score clears the thresholds.

Metrics (each 0..1, rounded to 4 places):
  - speech coverage     merged word intervals / timeline duration
  - subtitle coverage   merged caption intervals / timeline duration
  - silence rate        1 - speech coverage
  - semantic            0.7 * speech + 0.3 * subtitle
  - duration            1 - |duration - target| / target  (1 without target)

  composite = 0.35 semantic + 0.2 (1 - silence) + 0.25 subtitle + 0.2 duration

A report passes when every metric check passes and the composite clears
``min_composite_score``.

Usage:
    evaluator = QualityEvaluator()
    report = evaluator.evaluate(document, target_duration=45, tolerance=0.2)

    controller = IterationController(evaluator)
    outcome = await controller.run(run_once, document, QualityLoopConfig(enabled=True))
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from agent.cancellation import CancellationToken, build_execution_cancelled_result, is_cancelled_result
from agent.document import DocumentMutator
from agent.types import ToolResult

logger = logging.getLogger("hypercut_agent.quality")

QUALITY_TARGET_NOT_MET = "QUALITY_TARGET_NOT_MET"

DEFAULT_QUALITY_MAX_ITERATIONS = 2
MIN_QUALITY_ITERATIONS = 1
MAX_QUALITY_ITERATIONS = 4


def _clamp01(value: float) -> float:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _round4(value: float) -> float:
    return round(value, 4)


def _positive_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return float(value)


def clamp_quality_iterations(value: Any, default: int = DEFAULT_QUALITY_MAX_ITERATIONS) -> int:
    """Clamp to [1, 4]; non-numeric input gives ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        value = default
    return int(min(MAX_QUALITY_ITERATIONS, max(MIN_QUALITY_ITERATIONS, math.floor(value))))


# ═══════════════════════════════════════════════════════════════════
# Transcript context
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TimedText:
    start_time: float
    end_time: float
    text: str


@dataclass
class TranscriptContext:
    segments: list[TimedText]
    words: list[TimedText]
    source: str  # "words" | "captions"


def build_transcript_context(document: DocumentMutator) -> TranscriptContext | None:
    """
    Caption segments from text tracks, plus word timings.

    Word timings come from the caption elements' ``words`` when present,
    otherwise they are estimated by splitting each caption's text evenly
    across its duration. Returns None when there are no words at all.
    """
    segments: list[TimedText] = []
    words: list[TimedText] = []
    for track in document.get_tracks():
        if track.get("type") != "text":
            continue
        for element in track.get("elements", []):
            if not element.get("is_caption"):
                continue
            start = float(element.get("start_time", 0.0))
            end = start + float(element.get("duration", 0.0))
            segments.append(TimedText(start, end, str(element.get("content") or "")))
            for word in element.get("words") or []:
                w_start, w_end = word.get("start_time"), word.get("end_time")
                text = str(word.get("text") or "").strip()
                if not text or not isinstance(w_start, (int, float)) or not isinstance(w_end, (int, float)):
                    continue
                words.append(TimedText(max(0.0, w_start), max(w_start, w_end), text))

    segments.sort(key=lambda s: s.start_time)
    source = "words"
    if words:
        words.sort(key=lambda w: w.start_time)
    else:
        source = "captions"
        for segment in segments:
            tokens = segment.text.split()
            if not tokens:
                continue
            step = (segment.end_time - segment.start_time) / len(tokens)
            for i, token in enumerate(tokens):
                words.append(TimedText(
                    segment.start_time + i * step,
                    segment.start_time + (i + 1) * step,
                    token,
                ))

    if not words:
        return None
    return TranscriptContext(segments=segments, words=words, source=source)


def merged_coverage_seconds(intervals: list[TimedText], duration: float) -> float:
    """Total length of the union of ``intervals`` clipped to [0, duration]."""
    if not intervals or duration <= 0:
        return 0.0
    clipped = sorted(
        (
            (max(0.0, min(duration, i.start_time)), max(0.0, min(duration, i.end_time)))
            for i in intervals
        ),
        key=lambda pair: pair[0],
    )
    merged: list[list[float]] = []
    for start, end in clipped:
        if end <= start:
            continue
        if not merged or start > merged[-1][1]:
            merged.append([start, end])
        else:
            merged[-1][1] = max(merged[-1][1], end)
    return sum(end - start for start, end in merged)


# ═══════════════════════════════════════════════════════════════════
# Evaluator
# ═══════════════════════════════════════════════════════════════════

@dataclass
class QualityMetric:
    value: float
    score: float
    passed: bool
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "score": self.score, "passed": self.passed, "threshold": self.threshold}


@dataclass
class QualityThresholds:
    min_semantic_completeness: float = 0.65
    max_silence_rate: float = 0.45
    min_subtitle_coverage: float = 0.55
    min_duration_compliance: float = 0.7
    duration_tolerance_ratio: float = 0.2
    min_composite_score: float = 0.6

    @classmethod
    def from_config(cls, section: dict[str, Any] | None) -> QualityThresholds:
        """Build from the ``quality`` config section; bad values keep defaults."""
        defaults = cls()
        values = {}
        for name in cls.__dataclass_fields__:
            raw = (section or {}).get(name)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool) and math.isfinite(raw):
                values[name] = _clamp01(raw)
            else:
                values[name] = getattr(defaults, name)
        return cls(**values)


@dataclass
class QualityReport:
    passed: bool
    composite_score: float
    semantic_completeness: QualityMetric
    silence_rate: QualityMetric
    subtitle_coverage: QualityMetric
    duration_compliance: QualityMetric
    timeline_duration_seconds: float
    target_duration_seconds: float | None = None
    reasons: list[str] = field(default_factory=list)
    evaluated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = {
            "passed": self.passed,
            "composite_score": self.composite_score,
            "timeline_duration_seconds": self.timeline_duration_seconds,
            "metrics": {
                "semantic_completeness": self.semantic_completeness.to_dict(),
                "silence_rate": self.silence_rate.to_dict(),
                "subtitle_coverage": self.subtitle_coverage.to_dict(),
                "duration_compliance": self.duration_compliance.to_dict(),
            },
            "reasons": list(self.reasons),
            "evaluated_at": self.evaluated_at,
        }
        if self.target_duration_seconds is not None:
            result["target_duration_seconds"] = self.target_duration_seconds
        return result


class QualityEvaluator:
    def __init__(self, thresholds: QualityThresholds | None = None):
        self.thresholds = thresholds or QualityThresholds()

    def evaluate(
        self,
        document: DocumentMutator,
        target_duration: float | None = None,
        tolerance: float | None = None,
    ) -> QualityReport:
        t = self.thresholds
        duration = max(float(document.get_total_duration()), 0.0)
        normalized = max(duration, 0.0001)
        context = build_transcript_context(document)

        speech_seconds = merged_coverage_seconds(context.words, normalized) if context else 0.0
        subtitle_seconds = merged_coverage_seconds(context.segments, normalized) if context else 0.0
        speech = _clamp01(speech_seconds / normalized)
        subtitle = _clamp01(subtitle_seconds / normalized)
        silence = _clamp01(1 - speech)
        semantic = _clamp01(speech * 0.7 + subtitle * 0.3)

        target = _positive_number(target_duration)
        tol = _clamp01(tolerance) if isinstance(tolerance, (int, float)) and not isinstance(tolerance, bool) \
            else t.duration_tolerance_ratio
        if target is None:
            duration_score = 1.0
            delta_ratio = 0.0
        else:
            delta_ratio = abs(duration - target) / target
            duration_score = _clamp01(1 - delta_ratio)

        semantic_ok = semantic >= t.min_semantic_completeness
        silence_ok = silence <= t.max_silence_rate
        subtitle_ok = subtitle >= t.min_subtitle_coverage
        duration_ok = target is None or (duration_score >= t.min_duration_compliance and delta_ratio <= tol)

        composite = _clamp01(semantic * 0.35 + (1 - silence) * 0.2 + subtitle * 0.25 + duration_score * 0.2)
        composite_ok = composite >= t.min_composite_score

        reasons = []
        if not semantic_ok:
            reasons.append(f"语义完整性偏低 ({semantic:.2f} < {t.min_semantic_completeness:.2f})")
        if not silence_ok:
            reasons.append(f"静音率偏高 ({silence:.2f} > {t.max_silence_rate:.2f})")
        if not subtitle_ok:
            reasons.append(f"字幕覆盖率偏低 ({subtitle:.2f} < {t.min_subtitle_coverage:.2f})")
        if not duration_ok:
            reasons.append(
                f"时长未达标 ({duration:.2f}s vs target {target:.2f}s, tolerance {tol * 100:.0f}%)"
            )
        if not composite_ok:
            reasons.append(f"综合评分偏低 ({composite:.2f} < {t.min_composite_score:.2f})")

        return QualityReport(
            passed=semantic_ok and silence_ok and subtitle_ok and duration_ok and composite_ok,
            composite_score=_round4(composite),
            semantic_completeness=QualityMetric(
                _round4(semantic), _round4(semantic), semantic_ok, _round4(t.min_semantic_completeness)),
            silence_rate=QualityMetric(
                _round4(silence), _round4(1 - silence), silence_ok, _round4(t.max_silence_rate)),
            subtitle_coverage=QualityMetric(
                _round4(subtitle), _round4(subtitle), subtitle_ok, _round4(t.min_subtitle_coverage)),
            duration_compliance=QualityMetric(
                _round4(duration_score), _round4(duration_score), duration_ok, _round4(t.min_duration_compliance)),
            timeline_duration_seconds=_round4(duration),
            target_duration_seconds=target,
            reasons=reasons,
            evaluated_at=datetime.now(timezone.utc).isoformat(),
        )


# ═══════════════════════════════════════════════════════════════════
# Iteration controller
# ═══════════════════════════════════════════════════════════════════

@dataclass
class QualityLoopConfig:
    enabled: bool = False
    max_iterations: int = DEFAULT_QUALITY_MAX_ITERATIONS
    target_duration_seconds: float | None = None
    tolerance: float | None = None
    blocking: bool = True

    def __post_init__(self):
        self.max_iterations = clamp_quality_iterations(self.max_iterations)
        self.target_duration_seconds = _positive_number(self.target_duration_seconds)

    @classmethod
    def from_mapping(
        cls,
        quality: dict[str, Any] | None,
        max_iterations: Any = None,
        default_max_iterations: int = DEFAULT_QUALITY_MAX_ITERATIONS,
    ) -> QualityLoopConfig:
        """
        Build from a workflow's ``quality`` block. An explicit
        ``max_iterations`` argument wins over the block's own value.
        """
        quality = quality or {}
        iterations = max_iterations if max_iterations is not None else quality.get("max_iterations")
        return cls(
            enabled=bool(quality.get("enabled", False)),
            max_iterations=clamp_quality_iterations(iterations, default_max_iterations),
            target_duration_seconds=quality.get("target_duration_seconds"),
            tolerance=quality.get("duration_tolerance_ratio"),
            blocking=quality.get("blocking", True) is not False,
        )


@dataclass
class QualityLoopOutcome:
    result: ToolResult
    iterations: int
    report: QualityReport | None = None


RunOnce = Callable[[int, "float | None"], Awaitable[ToolResult]]


class IterationController:
    """
    Wraps a workflow run in the bounded quality loop.

    ``run_once(iteration, adjusted_target)`` performs one full run.
    ``adjusted_target`` is None on the first iteration; after a failed
    duration check it carries the target the next run should cut to.
    """

    def __init__(self, evaluator: QualityEvaluator | None = None):
        self.evaluator = evaluator or QualityEvaluator()

    async def run(
        self,
        run_once: RunOnce,
        document: DocumentMutator,
        config: QualityLoopConfig,
        token: CancellationToken | None = None,
        should_stop: Callable[[ToolResult], bool] | None = None,
    ) -> QualityLoopOutcome:
        if not config.enabled:
            return QualityLoopOutcome(result=await run_once(1, None), iterations=1)

        notes: list[str] = []
        adjusted_target: float | None = None
        result: ToolResult | None = None
        report: QualityReport | None = None
        iterations = 0

        for iteration in range(1, config.max_iterations + 1):
            if token is not None and token.cancelled:
                return QualityLoopOutcome(build_execution_cancelled_result(), iterations, report)

            result = await run_once(iteration, adjusted_target)
            iterations = iteration
            if not result.success or is_cancelled_result(result) or (should_stop and should_stop(result)):
                return QualityLoopOutcome(result, iterations, report)

            report = self.evaluator.evaluate(document, config.target_duration_seconds, config.tolerance)
            notes.append(f"质量评分: {report.composite_score:.2f} (第 {iteration}/{config.max_iterations} 轮)")
            logger.info(
                "Quality iteration %d/%d: score=%.4f passed=%s",
                iteration, config.max_iterations, report.composite_score, report.passed,
            )
            if report.passed:
                return QualityLoopOutcome(
                    _annotate(result, notes, report, iterations), iterations, report,
                )
            if not report.duration_compliance.passed and config.target_duration_seconds is not None:
                adjusted_target = config.target_duration_seconds

        reasons = "; ".join(report.reasons) if report.reasons else "质量未达标"
        if config.blocking:
            logger.warning("Quality target not met after %d iterations: %s", iterations, reasons)
            message = "\n".join([result.message, *notes, f"质量目标未达成: {reasons}"])
            data = dict(result.data or {})
            data.update({
                "errorCode": QUALITY_TARGET_NOT_MET,
                "qualityReport": report.to_dict(),
                "qualityIterations": iterations,
            })
            return QualityLoopOutcome(ToolResult(success=False, message=message, data=data), iterations, report)

        logger.info("Quality target not met after %d iterations (non-blocking): %s", iterations, reasons)
        annotated = _annotate(result, notes + [f"质量提示: {reasons}"], report, iterations)
        annotated.data["qualityWarningCode"] = QUALITY_TARGET_NOT_MET
        return QualityLoopOutcome(annotated, iterations, report)


def _annotate(result: ToolResult, notes: list[str], report: QualityReport, iterations: int) -> ToolResult:
    data = dict(result.data or {})
    data.pop("errorCode", None)
    data["qualityReport"] = report.to_dict()
    data["qualityIterations"] = iterations
    return ToolResult(success=True, message="\n".join([result.message, *notes]), data=data)
