"""
User feedback collection and confidence calibration.

Each feedback event is classified (positive / mixed / negative), compared
with the confidence the system reported, and folded into the shared
``ModelPerformanceHistory`` that feeds the historical confidence factor.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from confidence_scorer import EnhancedConfidenceScore, HistoryStore, improvement_suggestions
from inspection_errors import InspectionValidationError
from vision_client import AIAnalysisResult

logger = logging.getLogger(__name__)

MAX_STORED_FEEDBACK = 100


class UserSatisfaction(IntEnum):
    VERY_DISSATISFIED = 1
    DISSATISFIED = 2
    NEUTRAL = 3
    SATISFIED = 4
    VERY_SATISFIED = 5


class AccuracyRating(IntEnum):
    VERY_POOR = 1
    POOR = 2
    ACCEPTABLE = 3
    GOOD = 4
    VERY_GOOD = 5
    EXCELLENT = 6


ACCURACY_SCORES = {
    AccuracyRating.EXCELLENT: 1.0,
    AccuracyRating.VERY_GOOD: 0.9,
    AccuracyRating.GOOD: 0.75,
    AccuracyRating.ACCEPTABLE: 0.6,
    AccuracyRating.POOR: 0.3,
    AccuracyRating.VERY_POOR: 0.1,
}


class FeedbackType(Enum):
    POSITIVE = "positive"
    MIXED = "mixed"
    NEGATIVE = "negative"


class CalibrationCategory(Enum):
    WELL_CALIBRATED = "well_calibrated"
    MODERATELY_CALIBRATED = "moderately_calibrated"
    OVERCONFIDENT = "overconfident"
    UNDERCONFIDENT = "underconfident"


class QualityAssessmentFeedback(Enum):
    ACCURATE = "accurate"
    INACCURATE = "inaccurate"
    PARTIALLY_ACCURATE = "partially_accurate"


class ImprovementArea(Enum):
    MODEL_ACCURACY = "model_accuracy"
    CONFIDENCE_CALIBRATION = "confidence_calibration"
    IMAGE_QUALITY_ASSESSMENT = "image_quality_assessment"
    BLUR_DETECTION = "blur_detection"
    LIGHTING_ASSESSMENT = "lighting_assessment"
    DEFECT_DETECTION = "defect_detection"


ISSUE_KEYWORD_AREAS = (
    ("blur", ImprovementArea.BLUR_DETECTION),
    ("light", ImprovementArea.LIGHTING_ASSESSMENT),
    ("missing", ImprovementArea.DEFECT_DETECTION),
)


def classify_feedback(satisfaction: int, accuracy_rating: int) -> FeedbackType:
    combined = (satisfaction + accuracy_rating) / 2
    if combined >= 4.0:
        return FeedbackType.POSITIVE
    if combined <= 2.5:
        return FeedbackType.NEGATIVE
    return FeedbackType.MIXED


def calibration_category(reported: float, actual: float) -> CalibrationCategory:
    deviation = abs(reported - actual)
    if deviation <= 0.1:
        return CalibrationCategory.WELL_CALIBRATED
    if deviation <= 0.2:
        return CalibrationCategory.MODERATELY_CALIBRATED
    if reported > actual:
        return CalibrationCategory.OVERCONFIDENT
    return CalibrationCategory.UNDERCONFIDENT


@dataclass(frozen=True)
class ConfidenceValidation:
    reported_confidence: float
    actual_confidence: float
    deviation: float
    category: CalibrationCategory
    is_accurate: bool

    @classmethod
    def evaluate(cls, reported: float, actual: float, feedback_type: FeedbackType) -> "ConfidenceValidation":
        deviation = abs(reported - actual)
        if feedback_type is FeedbackType.POSITIVE:
            accurate = deviation <= 0.15
        elif feedback_type is FeedbackType.MIXED:
            accurate = deviation <= 0.2
        else:
            accurate = False
        return cls(reported, actual, deviation, calibration_category(reported, actual), accurate)


def learning_weight(feedback_type: FeedbackType, deviation: float, comments: Optional[str]) -> float:
    weight = {FeedbackType.POSITIVE: 1.0, FeedbackType.NEGATIVE: 1.5, FeedbackType.MIXED: 1.2}[feedback_type]
    if deviation <= 0.1:
        weight *= 1.3
    elif deviation >= 0.3:
        weight *= 0.8
    if comments and len(comments) > 20:
        weight *= 1.1
    return weight


class FeedbackInput(BaseModel):
    """Boundary validation for user supplied feedback."""

    analysis_id: str = Field(min_length=1)
    satisfaction: int = Field(ge=1, le=5)
    accuracy_rating: int = Field(ge=1, le=6)
    reported_confidence: float = Field(ge=0.0, le=1.0)
    actual_confidence: float = Field(ge=0.0, le=1.0)
    comments: Optional[str] = None
    issues: List[str] = Field(default_factory=list)
    quality_assessment: Optional[QualityAssessmentFeedback] = None


@dataclass(frozen=True)
class AnalysisFeedback:
    id: str
    analysis_id: str
    satisfaction: UserSatisfaction
    accuracy_rating: AccuracyRating
    feedback_type: FeedbackType
    validation: ConfidenceValidation
    learning_weight: float
    comments: Optional[str] = None
    issues: tuple = ()
    quality_assessment: Optional[QualityAssessmentFeedback] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def accuracy_score(self) -> float:
        return ACCURACY_SCORES[self.accuracy_rating]

    @property
    def is_positive(self) -> bool:
        return self.feedback_type is FeedbackType.POSITIVE

    def improvement_areas(self) -> List[ImprovementArea]:
        areas: List[ImprovementArea] = []
        if self.accuracy_rating in (AccuracyRating.POOR, AccuracyRating.VERY_POOR):
            areas.append(ImprovementArea.MODEL_ACCURACY)
        if not self.validation.is_accurate:
            areas.append(ImprovementArea.CONFIDENCE_CALIBRATION)
        if self.quality_assessment not in (None, QualityAssessmentFeedback.ACCURATE):
            areas.append(ImprovementArea.IMAGE_QUALITY_ASSESSMENT)
        for issue in self.issues:
            lowered = issue.lower()
            for keyword, area in ISSUE_KEYWORD_AREAS:
                if keyword in lowered and area not in areas:
                    areas.append(area)
        return areas

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "analysis_id": self.analysis_id,
            "satisfaction": int(self.satisfaction),
            "accuracy_rating": int(self.accuracy_rating),
            "feedback_type": self.feedback_type.value,
            "reported_confidence": self.validation.reported_confidence,
            "actual_confidence": self.validation.actual_confidence,
            "deviation": self.validation.deviation,
            "calibration": self.validation.category.value,
            "is_accurate": self.validation.is_accurate,
            "learning_weight": self.learning_weight,
            "comments": self.comments,
            "issues": list(self.issues),
            "quality_assessment": self.quality_assessment.value if self.quality_assessment else None,
            "created_at": self.created_at.isoformat(),
        }


def build_feedback(
    analysis_id: str,
    satisfaction: int,
    accuracy_rating: int,
    reported_confidence: float,
    actual_confidence: float,
    comments: Optional[str] = None,
    issues: Optional[Sequence[str]] = None,
    quality_assessment: Optional[str] = None,
) -> AnalysisFeedback:
    """Validate raw input and derive type, calibration and learning weight.

    Raises InspectionValidationError for out-of-range ratings or confidences.
    """
    try:
        data = FeedbackInput(
            analysis_id=analysis_id,
            satisfaction=satisfaction,
            accuracy_rating=accuracy_rating,
            reported_confidence=reported_confidence,
            actual_confidence=actual_confidence,
            comments=comments,
            issues=list(issues or []),
            quality_assessment=quality_assessment,
        )
    except ValidationError as exc:
        raise InspectionValidationError(f"Invalid feedback for {analysis_id!r}: {exc}") from exc

    feedback_type = classify_feedback(data.satisfaction, data.accuracy_rating)
    validation = ConfidenceValidation.evaluate(data.reported_confidence, data.actual_confidence, feedback_type)
    return AnalysisFeedback(
        id=uuid.uuid4().hex,
        analysis_id=data.analysis_id,
        satisfaction=UserSatisfaction(data.satisfaction),
        accuracy_rating=AccuracyRating(data.accuracy_rating),
        feedback_type=feedback_type,
        validation=validation,
        learning_weight=learning_weight(feedback_type, validation.deviation, data.comments),
        comments=data.comments,
        issues=tuple(data.issues),
        quality_assessment=data.quality_assessment,
    )


@dataclass(frozen=True)
class Trend:
    average: float
    direction: str
    change: float


@dataclass(frozen=True)
class SystemRecommendation:
    area: str
    priority: str
    title: str
    description: str


@dataclass(frozen=True)
class FeedbackPatternReport:
    total_feedback: int
    satisfaction: Optional[Trend]
    accuracy: Optional[Trend]
    average_deviation: float
    calibration_accuracy: float
    overconfidence_rate: float
    underconfidence_rate: float
    common_issues: List[str]
    improvement_areas: List[ImprovementArea]
    recommendations: List[SystemRecommendation]
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        def trend(t: Optional[Trend]):
            return None if t is None else {"average": t.average, "direction": t.direction, "change": t.change}

        return {
            "total_feedback": self.total_feedback,
            "satisfaction": trend(self.satisfaction),
            "accuracy": trend(self.accuracy),
            "average_deviation": self.average_deviation,
            "calibration_accuracy": self.calibration_accuracy,
            "overconfidence_rate": self.overconfidence_rate,
            "underconfidence_rate": self.underconfidence_rate,
            "common_issues": self.common_issues,
            "improvement_areas": [area.value for area in self.improvement_areas],
            "recommendations": [asdict(r) for r in self.recommendations],
            "generated_at": self.generated_at.isoformat(),
        }


def _trend(values: Sequence[float], window: int = 10) -> Optional[Trend]:
    if not values:
        return None
    recent = values[-window:]
    early = values[:window]
    recent_avg = sum(recent) / len(recent)
    early_avg = sum(early) / len(early)
    if recent_avg > early_avg:
        direction = "improving"
    elif recent_avg < early_avg:
        direction = "declining"
    else:
        direction = "stable"
    return Trend(sum(values) / len(values), direction, recent_avg - early_avg)


def analyze_feedback_patterns(feedback: Sequence[AnalysisFeedback]) -> FeedbackPatternReport:
    """Aggregate trends, calibration rates and recurring issues over stored feedback."""
    count = len(feedback)
    if count == 0:
        return FeedbackPatternReport(0, None, None, 0.0, 0.0, 0.0, 0.0, [], [], [])

    satisfaction = _trend([float(f.satisfaction) for f in feedback])
    accuracy = _trend([f.accuracy_score for f in feedback])
    average_deviation = sum(f.validation.deviation for f in feedback) / count
    calibration_accuracy = sum(1 for f in feedback if f.validation.is_accurate) / count
    over = sum(1 for f in feedback if f.validation.category is CalibrationCategory.OVERCONFIDENT) / count
    under = sum(1 for f in feedback if f.validation.category is CalibrationCategory.UNDERCONFIDENT) / count

    issue_counts = Counter(issue for f in feedback for issue in f.issues)
    common_issues = [issue for issue, _ in issue_counts.most_common(5)]

    area_counts = Counter(area for f in feedback for area in f.improvement_areas())
    threshold = round(count * 0.1)
    areas = [area for area, hits in area_counts.items() if hits >= threshold]

    recommendations: List[SystemRecommendation] = []
    if satisfaction.average < 3.0:
        recommendations.append(SystemRecommendation(
            "user_experience", "high", "Improve user experience",
            f"Average satisfaction is {satisfaction.average:.1f}/5",
        ))
    if accuracy.average < 0.7:
        recommendations.append(SystemRecommendation(
            "model_performance", "critical", "Improve model accuracy",
            f"Average reported accuracy is {accuracy.average:.0%}",
        ))
    if average_deviation > 0.2:
        recommendations.append(SystemRecommendation(
            "analysis_confidence", "medium", "Recalibrate confidence scoring",
            f"Reported confidence deviates by {average_deviation:.2f} on average",
        ))

    return FeedbackPatternReport(
        total_feedback=count,
        satisfaction=satisfaction,
        accuracy=accuracy,
        average_deviation=average_deviation,
        calibration_accuracy=calibration_accuracy,
        overconfidence_rate=over,
        underconfidence_rate=under,
        common_issues=common_issues,
        improvement_areas=areas,
        recommendations=recommendations,
    )


def guided_feedback_prompts(confidence: EnhancedConfidenceScore,
                            ai_result: Optional[AIAnalysisResult] = None) -> Dict[str, Dict[str, Any]]:
    """Questionnaire shown to the operator after an analysis."""
    prompts: Dict[str, Dict[str, Any]] = {
        "satisfaction": {
            "question": "How satisfied are you with the analysis result?",
            "type": "rating",
            "scale": 5,
            "labels": ["Very dissatisfied", "Dissatisfied", "Neutral", "Satisfied", "Very satisfied"],
        },
        "accuracy": {
            "question": "How accurate are the reported defects?",
            "type": "rating",
            "scale": 6,
            "labels": ["Very poor (0-20%)", "Poor (21-40%)", "Acceptable (41-60%)",
                       "Good (61-80%)", "Very good (81-95%)", "Excellent (96-100%)"],
        },
        "confidence_validation": {
            "question": "How confident are you in your own accuracy rating?",
            "type": "slider",
            "min": 0.0,
            "max": 1.0,
            "current": confidence.overall_confidence,
            "description": f"System confidence: {round(confidence.overall_confidence * 100)}%",
        },
    }
    if ai_result is not None and ai_result.defects:
        prompts["defect_validation"] = {
            "question": "Which of the reported defects are really present?",
            "type": "multi_select",
            "options": [
                {"id": index, "description": defect.description, "severity": defect.severity.value}
                for index, defect in enumerate(ai_result.defects)
            ],
        }
    prompts["missed_defects"] = {
        "question": "Are there defects the system missed?",
        "type": "text_list",
    }
    suggestions = improvement_suggestions(confidence)
    if suggestions:
        prompts["improvements"] = {
            "question": "What would help improve future analyses?",
            "type": "multi_select",
            "options": suggestions,
        }
    prompts["comments"] = {
        "question": "Any other comments or suggestions?",
        "type": "text",
        "optional": True,
    }
    return prompts


class FeedbackCollector:
    """Keeps recent feedback and pushes every event into the shared history."""

    def __init__(self, history_store: Optional[HistoryStore] = None, max_items: int = MAX_STORED_FEEDBACK):
        self.history_store = history_store or HistoryStore()
        self._lock = threading.Lock()
        self._feedback: Deque[AnalysisFeedback] = deque(maxlen=max_items)

    def collect(
        self,
        analysis_id: str,
        satisfaction: int,
        accuracy_rating: int,
        reported_confidence: float,
        actual_confidence: float,
        comments: Optional[str] = None,
        issues: Optional[Sequence[str]] = None,
        quality_assessment: Optional[str] = None,
    ) -> AnalysisFeedback:
        feedback = build_feedback(
            analysis_id, satisfaction, accuracy_rating, reported_confidence,
            actual_confidence, comments, issues, quality_assessment,
        )
        with self._lock:
            self._feedback.append(feedback)
        history = self.history_store.update(
            lambda current: current.record_feedback(feedback.is_positive, feedback.accuracy_score)
        )
        logger.info(
            f"Feedback for {analysis_id}: {feedback.feedback_type.value}, "
            f"calibration {feedback.validation.category.value}, "
            f"history now {history.total_analyses} analyses"
        )
        return feedback

    def extend(self, items: Iterable[AnalysisFeedback]) -> None:
        """Load previously collected feedback without touching history."""
        with self._lock:
            self._feedback.extend(items)

    def recent(self) -> List[AnalysisFeedback]:
        with self._lock:
            return list(self._feedback)

    def analyze_patterns(self) -> FeedbackPatternReport:
        return analyze_feedback_patterns(self.recent())


def collect_feedback(collector: FeedbackCollector, **kwargs: Any) -> AnalysisFeedback:
    """Single-item entry point for callers outside batch mode."""
    return collector.collect(**kwargs)


def feedback_from_record(record: Mapping[str, Any]) -> AnalysisFeedback:
    """Rebuild feedback from a flat record (CSV row, stored JSON)."""
    issues = record.get("issues") or []
    if isinstance(issues, str):
        issues = [item.strip() for item in issues.split(";") if item.strip()]
    return build_feedback(
        analysis_id=str(record.get("analysis_id", "")),
        satisfaction=record.get("satisfaction"),
        accuracy_rating=record.get("accuracy_rating"),
        reported_confidence=record.get("reported_confidence"),
        actual_confidence=record.get("actual_confidence"),
        comments=record.get("comments") or None,
        issues=issues,
        quality_assessment=record.get("quality_assessment") or None,
    )
