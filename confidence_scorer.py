"""
Multi-factor confidence scoring.

The overall confidence blends five components with the weights from
``ConfidenceWeights`` (defaults 0.30 / 0.25 / 0.20 / 0.15 / 0.10):

    image quality      mean overall score of the reference and part images
    model reliability  lookup by complexity tier
    contextual         0.7 base adjusted by signed boolean flags
    historical         0.4 * success rate + 0.6 * recent accuracy (0.7 without history)
    complexity         1 - complexity penalty

Every component is clamped to [0, 1] and so is the weighted sum. Scores are
immutable; ``calculate_final`` builds a new score once the model result is
known, with the complexity tier re-derived from what the model actually saw.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from inspection_config import DEFAULT_CONFIG, InspectionConfig
from inspection_errors import InspectionValidationError
from quality_metrics import ImageQualityMetrics, PreAnalysisResult, clamp
from vision_client import AIAnalysisResult

logger = logging.getLogger(__name__)


class AnalysisComplexity(Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXTREME = "extreme"

    @classmethod
    def parse(cls, value: Union[str, "AnalysisComplexity", None]) -> "AnalysisComplexity":
        if isinstance(value, cls):
            return value
        if not value:
            return cls.MODERATE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InspectionValidationError(f"Unknown complexity tier: {value!r}") from None


COMPLEXITY_ORDER: Tuple[AnalysisComplexity, ...] = (
    AnalysisComplexity.SIMPLE,
    AnalysisComplexity.MODERATE,
    AnalysisComplexity.COMPLEX,
    AnalysisComplexity.EXTREME,
)


class FactorType(Enum):
    IMAGE_QUALITY = "image_quality"
    MODEL_RELIABILITY = "model_reliability"
    CONTEXTUAL = "contextual"
    HISTORICAL = "historical"
    COMPLEXITY = "complexity"


class FactorImpact(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConfidenceLevel(Enum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


def confidence_level_for_score(score: float) -> ConfidenceLevel:
    if score >= 0.9:
        return ConfidenceLevel.VERY_HIGH
    if score >= 0.7:
        return ConfidenceLevel.HIGH
    if score >= 0.5:
        return ConfidenceLevel.MEDIUM
    if score >= 0.3:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


@dataclass(frozen=True)
class ConfidenceFactor:
    type: FactorType
    score: float
    impact: FactorImpact
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "score": self.score,
            "impact": self.impact.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class ModelPerformanceHistory:
    total_analyses: int = 0
    successful_analyses: int = 0
    recent_accuracy: float = 0.7
    last_updated: Optional[datetime] = None

    @property
    def has_data(self) -> bool:
        return self.total_analyses > 0

    @property
    def success_rate(self) -> float:
        if self.total_analyses <= 0:
            return 0.0
        return self.successful_analyses / self.total_analyses

    def record_feedback(self, positive: bool, accuracy_score: float,
                        now: Optional[datetime] = None) -> "ModelPerformanceHistory":
        """Fold one feedback event in: unbounded EMA, 0.8 old / 0.2 new."""
        return ModelPerformanceHistory(
            total_analyses=self.total_analyses + 1,
            successful_analyses=self.successful_analyses + (1 if positive else 0),
            recent_accuracy=clamp(0.8 * self.recent_accuracy + 0.2 * accuracy_score),
            last_updated=now or datetime.now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_analyses": self.total_analyses,
            "successful_analyses": self.successful_analyses,
            "recent_accuracy": self.recent_accuracy,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelPerformanceHistory":
        last_updated = data.get("last_updated")
        return cls(
            total_analyses=int(data.get("total_analyses", 0)),
            successful_analyses=int(data.get("successful_analyses", 0)),
            recent_accuracy=float(data.get("recent_accuracy", 0.7)),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )


class HistoryStore:
    """Process-wide holder of the model performance history.

    Reads return an immutable snapshot. Writes go through ``update`` which
    performs the whole read-modify-write (and optional save) under one lock.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None,
                 initial: Optional[ModelPerformanceHistory] = None):
        self._lock = threading.Lock()
        self.path = Path(path) if path else None
        self._history = initial or self._load()

    def _load(self) -> ModelPerformanceHistory:
        if self.path is None or not self.path.exists():
            return ModelPerformanceHistory()
        try:
            return ModelPerformanceHistory.from_dict(json.loads(self.path.read_text()))
        except (ValueError, TypeError) as exc:
            logger.warning(f"Ignoring unreadable history file {self.path}: {exc}")
            return ModelPerformanceHistory()

    def get(self) -> ModelPerformanceHistory:
        with self._lock:
            return self._history

    def update(self, fn: Callable[[ModelPerformanceHistory], ModelPerformanceHistory]) -> ModelPerformanceHistory:
        with self._lock:
            updated = fn(self._history)
            self._history = updated
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(json.dumps(updated.to_dict(), indent=2))
            return updated


@dataclass(frozen=True)
class ContextualFlags:
    has_reference_model: bool = False
    good_lighting_conditions: bool = False
    stable_environment: bool = False
    has_reflective_surfaces: bool = False
    poor_angle: bool = False
    background_noise: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "ContextualFlags":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{key: bool(value) for key, value in data.items() if key in known})

    def to_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


CONTEXT_ADJUSTMENTS: Dict[str, float] = {
    "has_reference_model": 0.15,
    "good_lighting_conditions": 0.10,
    "stable_environment": 0.05,
    "has_reflective_surfaces": -0.10,
    "poor_angle": -0.15,
    "background_noise": -0.05,
}

# Loose hint names accepted from callers (CLI manifests, UI forms)
CONTEXT_HINT_ALIASES: Dict[str, str] = {
    "reference_model": "has_reference_model",
    "good_lighting": "good_lighting_conditions",
    "stable": "stable_environment",
    "reflective": "has_reflective_surfaces",
    "bad_angle": "poor_angle",
    "noisy_background": "background_noise",
}


def prepare_contextual_data(hints: Optional[Mapping[str, Any]] = None) -> ContextualFlags:
    """Map caller hints onto contextual flags; unknown keys are ignored."""
    resolved: Dict[str, bool] = {}
    for key, value in (hints or {}).items():
        name = CONTEXT_HINT_ALIASES.get(key, key)
        if name in CONTEXT_ADJUSTMENTS:
            resolved[name] = bool(value)
    return ContextualFlags.from_mapping(resolved)


def contextual_score(flags: ContextualFlags, base: float = 0.7) -> float:
    score = base
    for name, delta in CONTEXT_ADJUSTMENTS.items():
        if getattr(flags, name):
            score += delta
    return clamp(score)


def historical_score(history: Optional[ModelPerformanceHistory], neutral: float = 0.7) -> float:
    if history is None or not history.has_data:
        return neutral
    return clamp(0.4 * history.success_rate + 0.6 * history.recent_accuracy)


COMPLEXITY_DESCRIPTIONS = {
    AnalysisComplexity.SIMPLE: "Simple part, low analysis difficulty",
    AnalysisComplexity.MODERATE: "Moderately complex part",
    AnalysisComplexity.COMPLEX: "Complex part with many features",
    AnalysisComplexity.EXTREME: "Extremely complex part, high risk of missed defects",
}


def _quality_description(score: float) -> str:
    if score >= 0.8:
        return "Excellent image quality"
    if score >= 0.6:
        return "Good image quality"
    if score >= 0.4:
        return "Acceptable image quality"
    return "Low image quality may reduce accuracy"


@dataclass(frozen=True)
class EnhancedConfidenceScore:
    image_quality_score: float
    model_reliability_score: float
    contextual_score: float
    historical_score: float
    complexity_penalty: float
    overall_confidence: float
    complexity: AnalysisComplexity
    factors: Tuple[ConfidenceFactor, ...]
    context: Mapping[str, Any] = field(default_factory=dict, compare=False)
    calculated_at: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level_for_score(self.overall_confidence)

    @property
    def is_reliable_for_decision_making(self) -> bool:
        return self.overall_confidence >= 0.7

    @property
    def requires_human_review(self) -> bool:
        return self.overall_confidence < 0.5

    @property
    def should_show_warnings(self) -> bool:
        return self.overall_confidence < 0.7

    def factor(self, factor_type: FactorType) -> Optional[ConfidenceFactor]:
        for item in self.factors:
            if item.type is factor_type:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_confidence": self.overall_confidence,
            "confidence_level": self.confidence_level.value,
            "image_quality_score": self.image_quality_score,
            "model_reliability_score": self.model_reliability_score,
            "contextual_score": self.contextual_score,
            "historical_score": self.historical_score,
            "complexity_penalty": self.complexity_penalty,
            "complexity": self.complexity.value,
            "factors": [factor.to_dict() for factor in self.factors],
            "context": dict(self.context),
            "calculated_at": self.calculated_at.isoformat(),
        }


def calculate(
    reference: ImageQualityMetrics,
    part: ImageQualityMetrics,
    complexity: Union[AnalysisComplexity, str] = AnalysisComplexity.MODERATE,
    history: Optional[ModelPerformanceHistory] = None,
    contextual_data: Union[ContextualFlags, Mapping[str, Any], None] = None,
    config: Optional[InspectionConfig] = None,
) -> EnhancedConfidenceScore:
    """Blend quality, reliability, context, history and complexity into one score."""
    config = config or DEFAULT_CONFIG
    weights = config.confidence_weights
    tables = config.reliability
    tier = AnalysisComplexity.parse(complexity)
    flags = contextual_data if isinstance(contextual_data, ContextualFlags) \
        else prepare_contextual_data(contextual_data)

    quality = clamp((reference.overall_score + part.overall_score) / 2)
    reliability = clamp(tables.model_reliability[tier.value])
    context = contextual_score(flags, tables.contextual_base)
    historical = historical_score(history, tables.neutral_historical)
    penalty = clamp(tables.complexity_penalty[tier.value])

    overall = clamp(
        weights.image_quality * quality
        + weights.model_reliability * reliability
        + weights.contextual * context
        + weights.historical * historical
        + weights.complexity * (1.0 - penalty)
    )

    if history is None or not history.has_data:
        history_text = "No historical data, neutral estimate"
    else:
        history_text = (
            f"Historical success rate {history.success_rate:.0%}, "
            f"recent accuracy {history.recent_accuracy:.0%}"
        )

    factors = (
        ConfidenceFactor(FactorType.IMAGE_QUALITY, quality, FactorImpact.HIGH, _quality_description(quality)),
        ConfidenceFactor(FactorType.MODEL_RELIABILITY, reliability, FactorImpact.HIGH,
                         f"Model reliability for {tier.value} parts"),
        ConfidenceFactor(FactorType.CONTEXTUAL, context, FactorImpact.MEDIUM,
                         "Favourable inspection conditions" if context >= 0.7
                         else "Inspection conditions reduce certainty"),
        ConfidenceFactor(FactorType.HISTORICAL, historical, FactorImpact.MEDIUM, history_text),
        ConfidenceFactor(FactorType.COMPLEXITY, clamp(1.0 - penalty), FactorImpact.LOW,
                         COMPLEXITY_DESCRIPTIONS[tier]),
    )
    return EnhancedConfidenceScore(
        image_quality_score=quality,
        model_reliability_score=reliability,
        contextual_score=context,
        historical_score=historical,
        complexity_penalty=penalty,
        overall_confidence=overall,
        complexity=tier,
        factors=factors,
        context={"flags": flags.to_dict()},
    )


def derive_final_complexity(
    pre_analysis: PreAnalysisResult,
    ai_result: AIAnalysisResult,
    initial: AnalysisComplexity,
) -> AnalysisComplexity:
    """Re-derive the complexity tier from what the model actually reported."""
    defect_count = len(ai_result.defects)
    critical_count = ai_result.critical_defect_count
    low_confidence = ai_result.confidence_score < 0.6

    if critical_count >= 2 or (defect_count > 5 and low_confidence):
        return AnalysisComplexity.EXTREME

    index = COMPLEXITY_ORDER.index(initial)
    if pre_analysis.has_critical_issues:
        index += 1
    if ai_result.confidence_score < 0.5:
        index += 1
    if defect_count > 3:
        index += 1
    if critical_count > 0:
        index += 2
    if pre_analysis.expected_confidence > 0.8 and ai_result.is_clean_pass:
        index -= 1
    return COMPLEXITY_ORDER[max(0, min(len(COMPLEXITY_ORDER) - 1, index))]


def measured_context(reference: ImageQualityMetrics, part: ImageQualityMetrics) -> Dict[str, bool]:
    brightness = (reference.brightness + part.brightness) / 2
    contrast = (reference.contrast + part.contrast) / 2
    coverage = (reference.object_coverage + part.object_coverage) / 2
    edges = (reference.edge_clarity + part.edge_clarity) / 2
    return {
        "good_lighting_conditions": 0.4 <= brightness <= 0.8 and contrast >= 0.3,
        "poor_angle": coverage < 0.4 or edges < 0.5,
    }


def calculate_final(
    pre_analysis: PreAnalysisResult,
    ai_result: AIAnalysisResult,
    complexity: Union[AnalysisComplexity, str] = AnalysisComplexity.MODERATE,
    history: Optional[ModelPerformanceHistory] = None,
    contextual_data: Union[ContextualFlags, Mapping[str, Any], None] = None,
    config: Optional[InspectionConfig] = None,
) -> EnhancedConfidenceScore:
    """Second pass once the vision result is in, with measured context."""
    initial = AnalysisComplexity.parse(complexity)
    final_tier = derive_final_complexity(pre_analysis, ai_result, initial)
    if final_tier is not initial:
        logger.debug(f"Complexity adjusted from {initial.value} to {final_tier.value}")

    base_flags = contextual_data if isinstance(contextual_data, ContextualFlags) \
        else prepare_contextual_data(contextual_data)
    flags = replace(base_flags, **measured_context(pre_analysis.reference_quality, pre_analysis.part_quality))

    score = calculate(
        pre_analysis.reference_quality,
        pre_analysis.part_quality,
        final_tier,
        history,
        flags,
        config,
    )
    alignment = clamp(1.0 - abs(pre_analysis.expected_confidence - ai_result.confidence_score))
    context = dict(score.context)
    context.update({
        "initial_complexity": initial.value,
        "confidence_alignment": alignment,
        "ai_confidence": ai_result.confidence_score,
        "defect_count": len(ai_result.defects),
    })
    return replace(score, context=context)


IMPROVEMENT_SUGGESTIONS = {
    FactorType.IMAGE_QUALITY: "Improve lighting and focus to raise image quality",
    FactorType.MODEL_RELIABILITY: "Photograph complex features in separate, simpler views",
    FactorType.CONTEXTUAL: "Stabilise the setup and use a neutral, non-reflective background",
    FactorType.HISTORICAL: "Rate analysis results so the model history can be calibrated",
    FactorType.COMPLEXITY: "Capture critical features separately to reduce complexity",
}


def improvement_suggestions(score: EnhancedConfidenceScore, threshold: float = 0.6) -> List[str]:
    """One suggestion per factor scoring below ``threshold``."""
    return [IMPROVEMENT_SUGGESTIONS[factor.type] for factor in score.factors if factor.score < threshold]


class ConfidenceScorer:
    """Binds the scoring functions to a config and a shared history store."""

    def __init__(self, config: Optional[InspectionConfig] = None, history_store: Optional[HistoryStore] = None):
        self.config = config or DEFAULT_CONFIG
        self.history_store = history_store or HistoryStore()

    def calculate(self, reference, part, complexity=AnalysisComplexity.MODERATE, contextual_data=None):
        return calculate(reference, part, complexity, self.history_store.get(), contextual_data, self.config)

    def calculate_final(self, pre_analysis, ai_result, complexity=AnalysisComplexity.MODERATE, contextual_data=None):
        return calculate_final(
            pre_analysis, ai_result, complexity, self.history_store.get(), contextual_data, self.config
        )


def calculate_confidence(reference, part, complexity=AnalysisComplexity.MODERATE, history=None,
                         contextual_data=None, config=None) -> EnhancedConfidenceScore:
    """Single-item entry point for callers outside batch mode."""
    return calculate(reference, part, complexity, history, contextual_data, config)
