"""
Batch job state.

A ``BatchJob`` is an immutable snapshot. The orchestrator moves it through
``pending -> processing -> completed | failed`` with the transition functions
below; each returns a new snapshot and refuses to leave a terminal state.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from confidence_scorer import EnhancedConfidenceScore
from inspection_errors import JobTransitionError
from quality_metrics import PreAnalysisDecision, PreAnalysisResult
from recommendation_engine import ActionRecommendation
from vision_client import AIAnalysisResult, QualityVerdict


class BatchStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class ItemStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ItemOutcome(Enum):
    ANALYZED = "analyzed"
    RETAKE_REQUIRED = "retake_required"
    OPTIMIZE_FIRST = "optimize_first"


@dataclass(frozen=True)
class BatchPhotoPair:
    id: str
    reference_image_path: str
    part_image_path: str
    part_type: str = ""
    part_serial: Optional[str] = None
    notes: Optional[str] = None
    complexity: Optional[str] = None
    context: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ItemResult:
    pair_id: str
    part_type: str
    status: ItemStatus
    processed_at: datetime
    processing_seconds: float
    attempts: int = 1
    outcome: Optional[ItemOutcome] = None
    pre_analysis: Optional[PreAnalysisResult] = None
    ai_result: Optional[AIAnalysisResult] = None
    confidence: Optional[EnhancedConfidenceScore] = None
    recommendations: Tuple[ActionRecommendation, ...] = ()
    tokens_used: int = 0
    tokens_saved: int = 0
    estimated_cost: float = 0.0
    error_message: Optional[str] = None
    reference_image_path: str = ""
    part_image_path: str = ""
    part_serial: Optional[str] = None

    @classmethod
    def completed(
        cls,
        pair: BatchPhotoPair,
        processing_seconds: float,
        pre_analysis: Optional[PreAnalysisResult] = None,
        ai_result: Optional[AIAnalysisResult] = None,
        confidence: Optional[EnhancedConfidenceScore] = None,
        recommendations: Sequence[ActionRecommendation] = (),
        tokens_used: int = 0,
        estimated_cost: float = 0.0,
        processed_at: Optional[datetime] = None,
    ) -> "ItemResult":
        if pre_analysis is not None and pre_analysis.decision is PreAnalysisDecision.REJECT_AND_RETAKE:
            outcome = ItemOutcome.RETAKE_REQUIRED
        elif pre_analysis is not None and pre_analysis.decision is PreAnalysisDecision.OPTIMIZE_FIRST:
            outcome = ItemOutcome.OPTIMIZE_FIRST
        else:
            outcome = ItemOutcome.ANALYZED
        return cls(
            pair_id=pair.id,
            part_type=pair.part_type,
            status=ItemStatus.COMPLETED,
            processed_at=processed_at or datetime.now(),
            processing_seconds=processing_seconds,
            outcome=outcome,
            pre_analysis=pre_analysis,
            ai_result=ai_result,
            confidence=confidence,
            recommendations=tuple(recommendations),
            tokens_used=tokens_used,
            tokens_saved=pre_analysis.token_saving.saved_tokens if pre_analysis else 0,
            estimated_cost=estimated_cost,
            reference_image_path=pair.reference_image_path,
            part_image_path=pair.part_image_path,
            part_serial=pair.part_serial,
        )

    @classmethod
    def failed(cls, pair: BatchPhotoPair, error_message: str, processing_seconds: float,
               attempts: int = 1) -> "ItemResult":
        return cls(
            pair_id=pair.id,
            part_type=pair.part_type,
            status=ItemStatus.FAILED,
            processed_at=datetime.now(),
            processing_seconds=processing_seconds,
            attempts=attempts,
            error_message=error_message,
            reference_image_path=pair.reference_image_path,
            part_image_path=pair.part_image_path,
            part_serial=pair.part_serial,
        )

    @property
    def is_completed(self) -> bool:
        return self.status is ItemStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status is ItemStatus.FAILED

    @property
    def overall_quality(self) -> Optional[QualityVerdict]:
        return self.ai_result.overall_quality if self.ai_result else None

    @property
    def confidence_score(self) -> Optional[float]:
        return self.confidence.overall_confidence if self.confidence else None

    @property
    def combined_quality_score(self) -> float:
        """Mean of whichever of model confidence, calibrated confidence and image quality exist."""
        parts: List[float] = []
        if self.ai_result is not None:
            parts.append(self.ai_result.confidence_score)
        if self.confidence is not None:
            parts.append(self.confidence.overall_confidence)
        if self.pre_analysis is not None:
            parts.append(self.pre_analysis.average_score)
        return sum(parts) / len(parts) if parts else 0.0

    @property
    def all_recommendations(self) -> List[str]:
        return [step.action for rec in self.recommendations for step in rec.steps]

    def to_row(self) -> Dict[str, Any]:
        """Flat view for CSV export."""
        return {
            "pair_id": self.pair_id,
            "part_type": self.part_type,
            "part_serial": self.part_serial or "",
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else "",
            "decision": self.pre_analysis.decision.value if self.pre_analysis else "",
            "overall_quality": self.overall_quality.value if self.overall_quality else "",
            "ai_confidence": f"{self.ai_result.confidence_score:.3f}" if self.ai_result else "",
            "calibrated_confidence": f"{self.confidence_score:.3f}" if self.confidence_score is not None else "",
            "combined_quality_score": f"{self.combined_quality_score:.3f}",
            "defects": len(self.ai_result.defects) if self.ai_result else 0,
            "top_recommendation": self.recommendations[0].title if self.recommendations else "",
            "processing_seconds": f"{self.processing_seconds:.2f}",
            "attempts": self.attempts,
            "tokens_used": self.tokens_used,
            "tokens_saved": self.tokens_saved,
            "estimated_cost": f"{self.estimated_cost:.5f}",
            "error_message": self.error_message or "",
            "reference_image_path": self.reference_image_path,
            "part_image_path": self.part_image_path,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "part_type": self.part_type,
            "part_serial": self.part_serial,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "processed_at": self.processed_at.isoformat(),
            "processing_seconds": self.processing_seconds,
            "attempts": self.attempts,
            "pre_analysis": self.pre_analysis.to_dict() if self.pre_analysis else None,
            "ai_result": self.ai_result.model_dump(mode="json") if self.ai_result else None,
            "confidence": self.confidence.to_dict() if self.confidence else None,
            "combined_quality_score": self.combined_quality_score,
            "recommendations": [rec.to_dict() for rec in self.recommendations],
            "tokens_used": self.tokens_used,
            "tokens_saved": self.tokens_saved,
            "estimated_cost": self.estimated_cost,
            "error_message": self.error_message,
            "reference_image_path": self.reference_image_path,
            "part_image_path": self.part_image_path,
        }


@dataclass(frozen=True)
class BatchJob:
    id: str
    name: str
    pairs: Tuple[BatchPhotoPair, ...]
    created_at: datetime
    status: BatchStatus = BatchStatus.PENDING
    completed_pairs: int = 0
    failed_pairs: int = 0
    results: Tuple[ItemResult, ...] = ()
    error_messages: Tuple[str, ...] = ()
    complexity: str = "moderate"
    operator_name: Optional[str] = None
    production_line: Optional[str] = None
    batch_number: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    overall_analysis: Optional[Any] = None

    @property
    def total_pairs(self) -> int:
        return len(self.pairs)

    @property
    def processed_pairs(self) -> int:
        return self.completed_pairs + self.failed_pairs

    @property
    def progress_percentage(self) -> float:
        if not self.pairs:
            return 100.0 if self.status.is_terminal else 0.0
        return self.processed_pairs / self.total_pairs * 100

    def _count_verdict(self, verdict: QualityVerdict) -> int:
        return sum(1 for r in self.results if r.overall_quality is verdict)

    @property
    def pass_count(self) -> int:
        return self._count_verdict(QualityVerdict.PASS)

    @property
    def warning_count(self) -> int:
        return self._count_verdict(QualityVerdict.WARNING)

    @property
    def fail_count(self) -> int:
        return self._count_verdict(QualityVerdict.FAIL)

    @property
    def total_processing_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return sum(r.processing_seconds for r in self.results)

    def to_dict(self, include_results: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_pairs": self.total_pairs,
            "completed_pairs": self.completed_pairs,
            "failed_pairs": self.failed_pairs,
            "error_messages": list(self.error_messages),
            "complexity": self.complexity,
            "operator_name": self.operator_name,
            "production_line": self.production_line,
            "batch_number": self.batch_number,
            "overall_analysis": self.overall_analysis.to_dict() if self.overall_analysis else None,
        }
        if include_results:
            data["results"] = [result.to_dict() for result in self.results]
        return data


def create_job(name: str, pairs: Sequence[BatchPhotoPair], complexity: str = "moderate",
               operator_name: Optional[str] = None, production_line: Optional[str] = None,
               batch_number: Optional[str] = None, job_id: Optional[str] = None) -> BatchJob:
    pair_ids = [pair.id for pair in pairs]
    if len(set(pair_ids)) != len(pair_ids):
        raise JobTransitionError("Photo pair ids must be unique within a batch")
    return BatchJob(
        id=job_id or uuid.uuid4().hex[:12],
        name=name,
        pairs=tuple(pairs),
        created_at=datetime.now(),
        complexity=complexity,
        operator_name=operator_name,
        production_line=production_line,
        batch_number=batch_number,
    )


def start_job(job: BatchJob) -> BatchJob:
    if job.status is not BatchStatus.PENDING:
        raise JobTransitionError(f"Cannot start job {job.id} in state {job.status.value}")
    return replace(job, status=BatchStatus.PROCESSING, started_at=datetime.now())


def record_item(job: BatchJob, result: ItemResult) -> BatchJob:
    """Append one finished item and update the running totals."""
    if job.status is not BatchStatus.PROCESSING:
        raise JobTransitionError(f"Cannot record items on job {job.id} in state {job.status.value}")
    if job.processed_pairs >= job.total_pairs:
        raise JobTransitionError(f"Job {job.id} already recorded all {job.total_pairs} pairs")
    if any(existing.pair_id == result.pair_id for existing in job.results):
        raise JobTransitionError(f"Pair {result.pair_id} was already recorded on job {job.id}")

    if result.is_failed:
        return replace(
            job,
            failed_pairs=job.failed_pairs + 1,
            results=job.results + (result,),
            error_messages=job.error_messages + (f"Pair {result.pair_id}: {result.error_message}",),
        )
    return replace(job, completed_pairs=job.completed_pairs + 1, results=job.results + (result,))


def complete_job(job: BatchJob, overall_analysis: Optional[Any] = None) -> BatchJob:
    if job.status is not BatchStatus.PROCESSING:
        raise JobTransitionError(f"Cannot complete job {job.id} in state {job.status.value}")
    return replace(job, status=BatchStatus.COMPLETED, finished_at=datetime.now(),
                   overall_analysis=overall_analysis)


def fail_job(job: BatchJob, error: Any) -> BatchJob:
    """Mark the job failed; partial results are kept."""
    if job.status.is_terminal:
        raise JobTransitionError(f"Job {job.id} is already {job.status.value}")
    return replace(
        job,
        status=BatchStatus.FAILED,
        finished_at=datetime.now(),
        error_messages=job.error_messages + (f"Batch failed: {error}",),
    )
