"""
Aggregate analytics over the item results of a finished batch.

``analyze_batch`` is a pure function of the result list: calling it twice on
the same results yields equal statistics, trend, issues and patterns.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from batch_models import BatchJob, ItemResult
from inspection_config import DEFAULT_CONFIG, InspectionConfig
from vision_client import QualityVerdict

TREND_THRESHOLD = 0.1
PART_TYPE_FAILURE_RATE = 0.5
FAIL_RATE_LIMIT = 0.3
CONFIDENCE_FLOOR = 0.6
ERROR_RATE_LIMIT = 0.1


class BatchQualityTrend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class PatternType(Enum):
    PART_TYPE_FAILURE = "part_type_failure"
    TIME_BASED = "time_based"
    QUALITY_DEGRADATION = "quality_degradation"
    PERFORMANCE_ISSUE = "performance_issue"


@dataclass(frozen=True)
class BatchStatistics:
    total_processed: int
    successful_count: int
    warning_count: int
    failed_count: int
    error_count: int
    gated_count: int
    success_rate: float
    average_confidence: float


@dataclass(frozen=True)
class BatchPerformanceMetrics:
    total_processing_seconds: float
    average_processing_seconds: float
    total_tokens: int
    tokens_saved: int
    total_cost: float
    throughput_per_hour: float


@dataclass(frozen=True)
class BatchRecommendation:
    priority: str
    title: str
    description: str
    action_items: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BatchPattern:
    type: PatternType
    description: str
    confidence: float
    affected_items: int
    part_type: Optional[str] = None


@dataclass(frozen=True)
class BatchOverallAnalysis:
    batch_id: str
    overall_confidence: float
    overall_status: QualityVerdict
    statistics: BatchStatistics
    performance: BatchPerformanceMetrics
    quality_metrics: Dict[str, float]
    trend: BatchQualityTrend
    critical_issues: Tuple[str, ...]
    recommendations: Tuple[BatchRecommendation, ...]
    patterns: Tuple[BatchPattern, ...]
    executive_summary: str
    generated_at: datetime = field(default_factory=datetime.now, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "overall_confidence": self.overall_confidence,
            "overall_status": self.overall_status.value,
            "statistics": asdict(self.statistics),
            "performance": asdict(self.performance),
            "quality_metrics": dict(self.quality_metrics),
            "trend": self.trend.value,
            "critical_issues": list(self.critical_issues),
            "recommendations": [
                {**asdict(rec), "action_items": list(rec.action_items)} for rec in self.recommendations
            ],
            "patterns": [
                {
                    "type": p.type.value,
                    "description": p.description,
                    "confidence": p.confidence,
                    "affected_items": p.affected_items,
                    "part_type": p.part_type,
                }
                for p in self.patterns
            ],
            "executive_summary": self.executive_summary,
            "generated_at": self.generated_at.isoformat(),
        }


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def compute_statistics(results: Sequence[ItemResult]) -> BatchStatistics:
    total = len(results)
    passed = sum(1 for r in results if r.overall_quality is QualityVerdict.PASS)
    warned = sum(1 for r in results if r.overall_quality is QualityVerdict.WARNING)
    failed = sum(1 for r in results if r.overall_quality is QualityVerdict.FAIL)
    errors = sum(1 for r in results if r.is_failed)
    gated = sum(1 for r in results if r.is_completed and r.ai_result is None)
    confidences = [r.confidence_score for r in results if r.confidence_score is not None]
    return BatchStatistics(
        total_processed=total,
        successful_count=passed,
        warning_count=warned,
        failed_count=failed,
        error_count=errors,
        gated_count=gated,
        success_rate=passed / total if total else 0.0,
        average_confidence=_mean(confidences),
    )


def compute_performance(results: Sequence[ItemResult], total_seconds: Optional[float] = None) -> BatchPerformanceMetrics:
    item_seconds = [r.processing_seconds for r in results]
    wall = total_seconds if total_seconds is not None else sum(item_seconds)
    return BatchPerformanceMetrics(
        total_processing_seconds=wall,
        average_processing_seconds=_mean(item_seconds),
        total_tokens=sum(r.tokens_used for r in results),
        tokens_saved=sum(r.tokens_saved for r in results),
        total_cost=sum(r.estimated_cost for r in results),
        throughput_per_hour=len(results) / (wall / 3600) if wall > 0 else 0.0,
    )


def weighted_confidence(results: Sequence[ItemResult]) -> float:
    """Calibrated confidence weighted by each item's combined quality score."""
    numerator = 0.0
    weight_sum = 0.0
    for result in results:
        if not result.is_completed or result.confidence_score is None:
            continue
        weight = result.combined_quality_score
        numerator += result.confidence_score * weight
        weight_sum += weight
    return numerator / weight_sum if weight_sum > 0 else 0.0


def overall_status(statistics: BatchStatistics) -> QualityVerdict:
    if statistics.total_processed == 0:
        return QualityVerdict.FAIL
    if statistics.success_rate >= 0.9:
        return QualityVerdict.PASS
    if statistics.success_rate >= 0.7:
        return QualityVerdict.WARNING
    return QualityVerdict.FAIL


def quality_trend(results: Sequence[ItemResult]) -> BatchQualityTrend:
    """Second-half vs first-half mean combined score, by completion time."""
    completed = sorted((r for r in results if r.is_completed), key=lambda r: r.processed_at)
    if len(completed) < 3:
        return BatchQualityTrend.STABLE
    middle = len(completed) // 2
    first = _mean([r.combined_quality_score for r in completed[:middle]])
    second = _mean([r.combined_quality_score for r in completed[middle:]])
    difference = second - first
    if difference > TREND_THRESHOLD:
        return BatchQualityTrend.IMPROVING
    if difference < -TREND_THRESHOLD:
        return BatchQualityTrend.DECLINING
    return BatchQualityTrend.STABLE


def critical_issues(statistics: BatchStatistics) -> List[str]:
    issues: List[str] = []
    total = statistics.total_processed
    if total == 0:
        return issues
    fail_rate = statistics.failed_count / total
    if fail_rate > FAIL_RATE_LIMIT:
        issues.append(f"High failure rate: {fail_rate:.0%} of parts failed inspection")
    if statistics.average_confidence < CONFIDENCE_FLOOR:
        issues.append(f"Low average confidence: {statistics.average_confidence:.0%}")
    error_rate = statistics.error_count / total
    if error_rate > ERROR_RATE_LIMIT:
        issues.append(f"Processing errors on {error_rate:.0%} of items")
    return issues


def batch_recommendations(results: Sequence[ItemResult], statistics: BatchStatistics,
                          slow_item_seconds: float) -> List[BatchRecommendation]:
    recs: List[BatchRecommendation] = []
    if statistics.total_processed and statistics.success_rate < 0.7:
        recs.append(BatchRecommendation(
            priority="high",
            title="Improve input image quality",
            description=f"Only {statistics.success_rate:.0%} of items passed.",
            action_items=(
                "Check lighting and focus at the capture station",
                "Verify reference images match the part revision",
                "Review failed items with an inspector",
            ),
        ))
    if any(r.processing_seconds > slow_item_seconds for r in results):
        recs.append(BatchRecommendation(
            priority="medium",
            title="Optimize processing performance",
            description=f"Some items took longer than {slow_item_seconds:.0f}s to analyse.",
            action_items=(
                "Reduce image size before upload",
                "Check network latency to the vision endpoint",
            ),
        ))
    return recs


def detect_patterns(results: Sequence[ItemResult], trend: BatchQualityTrend,
                    slow_item_seconds: float) -> List[BatchPattern]:
    patterns: List[BatchPattern] = []

    totals: Dict[str, int] = defaultdict(int)
    failures: Dict[str, int] = defaultdict(int)
    for result in results:
        if not result.is_completed:
            continue
        totals[result.part_type] += 1
        if result.overall_quality is QualityVerdict.FAIL:
            failures[result.part_type] += 1
    for part_type in sorted(totals):
        rate = failures[part_type] / totals[part_type]
        if rate > PART_TYPE_FAILURE_RATE:
            patterns.append(BatchPattern(
                type=PatternType.PART_TYPE_FAILURE,
                description=(
                    f"Part type '{part_type or 'unspecified'}' failed "
                    f"{failures[part_type]} of {totals[part_type]} inspections"
                ),
                confidence=rate,
                affected_items=failures[part_type],
                part_type=part_type,
            ))

    completed_count = sum(totals.values())
    if trend is BatchQualityTrend.DECLINING and completed_count:
        patterns.append(BatchPattern(
            type=PatternType.QUALITY_DEGRADATION,
            description="Combined quality score declined over the course of the batch",
            confidence=0.6,
            affected_items=completed_count,
        ))

    slow = [r for r in results if r.processing_seconds > slow_item_seconds]
    if results and len(slow) / len(results) > 0.3:
        patterns.append(BatchPattern(
            type=PatternType.PERFORMANCE_ISSUE,
            description=f"{len(slow)} items exceeded {slow_item_seconds:.0f}s processing time",
            confidence=len(slow) / len(results),
            affected_items=len(slow),
        ))
    return patterns


def executive_summary(statistics: BatchStatistics, status: QualityVerdict, trend: BatchQualityTrend,
                      issues: Sequence[str]) -> str:
    lines = [
        f"Processed {statistics.total_processed} items: {statistics.successful_count} passed, "
        f"{statistics.warning_count} warnings, {statistics.failed_count} failed, "
        f"{statistics.error_count} errors, {statistics.gated_count} held back by the quality gate.",
        f"Overall status: {status.value.upper()} (success rate {statistics.success_rate:.0%}, "
        f"average confidence {statistics.average_confidence:.0%}, trend {trend.value}).",
    ]
    if issues:
        lines.append("Critical issues: " + "; ".join(issues) + ".")
    return " ".join(lines)


def analyze_batch(
    batch_id: str,
    results: Sequence[ItemResult],
    total_processing_seconds: Optional[float] = None,
    config: Optional[InspectionConfig] = None,
) -> BatchOverallAnalysis:
    config = config or DEFAULT_CONFIG
    slow_seconds = config.batch.slow_item_seconds

    statistics = compute_statistics(results)
    performance = compute_performance(results, total_processing_seconds)
    status = overall_status(statistics)
    trend = quality_trend(results)
    issues = critical_issues(statistics)
    total = statistics.total_processed

    quality_metrics = {
        "average_confidence": statistics.average_confidence,
        "average_processing_seconds": performance.average_processing_seconds,
        "pass_rate": statistics.successful_count / total if total else 0.0,
        "warning_rate": statistics.warning_count / total if total else 0.0,
        "fail_rate": statistics.failed_count / total if total else 0.0,
    }

    return BatchOverallAnalysis(
        batch_id=batch_id,
        overall_confidence=weighted_confidence(results),
        overall_status=status,
        statistics=statistics,
        performance=performance,
        quality_metrics=quality_metrics,
        trend=trend,
        critical_issues=tuple(issues),
        recommendations=tuple(batch_recommendations(results, statistics, slow_seconds)),
        patterns=tuple(detect_patterns(results, trend, slow_seconds)),
        executive_summary=executive_summary(statistics, status, trend, issues),
    )


def performance_metrics(job: BatchJob) -> BatchPerformanceMetrics:
    return compute_performance(job.results, job.total_processing_seconds)


def export_for_fine_tuning(job: BatchJob) -> Dict[str, Any]:
    """JSON-ready dump of a batch for building training datasets."""
    return {
        "batch_info": {
            "id": job.id,
            "name": job.name,
            "created_at": job.created_at.isoformat(),
            "operator_name": job.operator_name,
            "production_line": job.production_line,
            "batch_number": job.batch_number,
            "complexity": job.complexity,
        },
        "results": [
            {
                "pair_id": r.pair_id,
                "part_type": r.part_type,
                "status": r.status.value,
                "overall_quality": r.overall_quality.value if r.overall_quality else None,
                "confidence_score": r.confidence_score,
                "processing_ms": int(r.processing_seconds * 1000),
                "tokens_used": r.tokens_used,
                "estimated_cost": r.estimated_cost,
                "recommendations": r.all_recommendations,
                "ai_result": r.ai_result.model_dump(mode="json") if r.ai_result else None,
            }
            for r in job.results
        ],
        "overall_analysis": job.overall_analysis.to_dict() if job.overall_analysis else None,
        "exported_at": datetime.now().isoformat(),
    }
