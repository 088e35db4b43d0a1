"""
Turns quality issues, weak confidence factors, the pre-analysis verdict and
the model result into a short list of remediation actions.

Output is deduplicated by recommendation type (the higher priority instance
wins, the earlier one on a tie), sorted by priority descending and capped at
five entries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from confidence_scorer import EnhancedConfidenceScore, FactorType
from quality_metrics import (
    ImageQualityMetrics,
    IssueSeverity,
    IssueType,
    PreAnalysisDecision,
    PreAnalysisResult,
    QualityIssue,
)
from vision_client import AIAnalysisResult, DefectSeverity, QualityVerdict

logger = logging.getLogger(__name__)

MAX_RECOMMENDATIONS = 5
FACTOR_THRESHOLD = 0.6


class RecommendationType(Enum):
    RETAKE_PHOTO = "retake_photo"
    IMPROVE_CONDITIONS = "improve_conditions"
    ADJUST_SETTINGS = "adjust_settings"
    CHANGE_BACKGROUND = "change_background"
    REPOSITION_CAMERA = "reposition_camera"
    REVIEW_SETTINGS = "review_settings"
    PROCEED = "proceed"


class ActionPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ActionPriority.LOW: 0,
    ActionPriority.MEDIUM: 1,
    ActionPriority.HIGH: 2,
    ActionPriority.CRITICAL: 3,
}


class RecommendationCategory(Enum):
    IMAGE_CAPTURE = "image_capture"
    ENVIRONMENT = "environment"
    SETUP = "setup"
    TECHNICAL = "technical"
    POSITIONING = "positioning"
    ANALYSIS = "analysis"
    REVIEW = "review"


@dataclass(frozen=True)
class RecommendationStep:
    order: int
    action: str
    details: str = ""
    estimated_seconds: int = 60


@dataclass(frozen=True)
class EstimatedImprovement:
    confidence_increase: float
    quality_increase: float
    success_probability: float


@dataclass(frozen=True)
class ActionRecommendation:
    type: RecommendationType
    priority: ActionPriority
    category: RecommendationCategory
    title: str
    description: str
    steps: Tuple[RecommendationStep, ...] = ()
    improvement: EstimatedImprovement = EstimatedImprovement(0.0, 0.0, 0.0)
    estimated_seconds: int = 60
    required_resources: Tuple[str, ...] = ()
    actionable: bool = True
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "priority": self.priority.value,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "steps": [
                {"order": s.order, "action": s.action, "details": s.details,
                 "estimated_seconds": s.estimated_seconds}
                for s in self.steps
            ],
            "improvement": {
                "confidence_increase": self.improvement.confidence_increase,
                "quality_increase": self.improvement.quality_increase,
                "success_probability": self.improvement.success_probability,
            },
            "estimated_seconds": self.estimated_seconds,
            "required_resources": list(self.required_resources),
            "actionable": self.actionable,
            "source": self.source,
        }


def _steps(*actions: str, seconds: int = 30) -> Tuple[RecommendationStep, ...]:
    return tuple(RecommendationStep(order=i + 1, action=a, estimated_seconds=seconds) for i, a in enumerate(actions))


@dataclass(frozen=True)
class _IssueTemplate:
    type: RecommendationType
    category: RecommendationCategory
    title: str
    description: str
    improvement: EstimatedImprovement
    estimated_seconds: int
    steps: Tuple[RecommendationStep, ...]
    resources: Tuple[str, ...] = field(default=())
    fixed_priority: Optional[ActionPriority] = None


ISSUE_TEMPLATES: Dict[IssueType, _IssueTemplate] = {
    IssueType.BLUR: _IssueTemplate(
        type=RecommendationType.RETAKE_PHOTO,
        category=RecommendationCategory.IMAGE_CAPTURE,
        title="Retake the photo in focus",
        description="The image is blurred; the model cannot reliably see small defects.",
        improvement=EstimatedImprovement(0.30, 0.40, 0.85),
        estimated_seconds=60,
        steps=_steps(
            "Clean the camera lens",
            "Steady the camera or mount it on a tripod",
            "Tap to focus on the part and wait for autofocus to lock",
            "Take the photo again",
        ),
        resources=("tripod", "lens cloth"),
    ),
    IssueType.LIGHTING: _IssueTemplate(
        type=RecommendationType.IMPROVE_CONDITIONS,
        category=RecommendationCategory.ENVIRONMENT,
        title="Fix the lighting",
        description="Exposure is outside the usable range; details are lost in highlights or shadows.",
        improvement=EstimatedImprovement(0.25, 0.35, 0.80),
        estimated_seconds=180,
        steps=_steps(
            "Switch on diffuse overhead lighting",
            "Move away from direct sunlight",
            "Remove shadows cast on the part",
        ),
        resources=("diffuse light source",),
        fixed_priority=ActionPriority.HIGH,
    ),
    IssueType.CONTRAST: _IssueTemplate(
        type=RecommendationType.CHANGE_BACKGROUND,
        category=RecommendationCategory.SETUP,
        title="Use a contrasting background",
        description="The part blends into the background.",
        improvement=EstimatedImprovement(0.20, 0.30, 0.75),
        estimated_seconds=120,
        steps=_steps(
            "Place the part on a plain background of contrasting colour",
            "Remove other objects from the frame",
        ),
        resources=("neutral background sheet",),
        fixed_priority=ActionPriority.MEDIUM,
    ),
    IssueType.NOISE: _IssueTemplate(
        type=RecommendationType.IMPROVE_CONDITIONS,
        category=RecommendationCategory.TECHNICAL,
        title="Reduce image noise",
        description="The image is noisy, usually from low light and high ISO.",
        improvement=EstimatedImprovement(0.15, 0.25, 0.70),
        estimated_seconds=120,
        steps=_steps(
            "Add light so the camera can lower ISO",
            "Avoid digital zoom",
        ),
        fixed_priority=ActionPriority.MEDIUM,
    ),
    IssueType.RESOLUTION: _IssueTemplate(
        type=RecommendationType.ADJUST_SETTINGS,
        category=RecommendationCategory.TECHNICAL,
        title="Increase the capture resolution",
        description="The image has too few pixels for a detailed comparison.",
        improvement=EstimatedImprovement(0.35, 0.45, 0.90),
        estimated_seconds=60,
        steps=_steps(
            "Set the camera to its highest resolution",
            "Disable any upload downscaling",
        ),
        fixed_priority=ActionPriority.HIGH,
    ),
    IssueType.OBJECT_SIZE: _IssueTemplate(
        type=RecommendationType.REPOSITION_CAMERA,
        category=RecommendationCategory.POSITIONING,
        title="Move the camera closer",
        description="The part covers too little of the frame.",
        improvement=EstimatedImprovement(0.25, 0.30, 0.85),
        estimated_seconds=60,
        steps=_steps(
            "Move the camera closer to the part",
            "Fill most of the frame with the part",
        ),
        fixed_priority=ActionPriority.HIGH,
    ),
}


def _priority_for_severity(severity: IssueSeverity) -> ActionPriority:
    if severity is IssueSeverity.CRITICAL:
        return ActionPriority.CRITICAL
    if severity is IssueSeverity.MAJOR:
        return ActionPriority.HIGH
    return ActionPriority.MEDIUM


def recommendation_for_issue(issue_type: IssueType, severity: IssueSeverity) -> ActionRecommendation:
    template = ISSUE_TEMPLATES[issue_type]
    return ActionRecommendation(
        type=template.type,
        priority=template.fixed_priority or _priority_for_severity(severity),
        category=template.category,
        title=template.title,
        description=template.description,
        steps=template.steps,
        improvement=template.improvement,
        estimated_seconds=template.estimated_seconds,
        required_resources=template.resources,
        source=f"issue:{issue_type.value}",
    )


def _quality_recommendations(issues: Sequence[QualityIssue]) -> List[ActionRecommendation]:
    worst: Dict[IssueType, IssueSeverity] = {}
    for issue in issues:
        current = worst.get(issue.type)
        if current is None or issue.severity.rank > current.rank:
            worst[issue.type] = issue.severity
    return [recommendation_for_issue(issue_type, severity) for issue_type, severity in worst.items()]


def _factor_recommendation(factor_type: FactorType, score: float) -> ActionRecommendation:
    if factor_type is FactorType.IMAGE_QUALITY:
        return ActionRecommendation(
            type=RecommendationType.IMPROVE_CONDITIONS,
            priority=ActionPriority.HIGH,
            category=RecommendationCategory.ENVIRONMENT,
            title="Improve capture conditions",
            description=f"Image quality factor is low ({score:.2f}).",
            steps=_steps("Improve lighting", "Check focus before shooting"),
            improvement=EstimatedImprovement(0.20, 0.30, 0.75),
            estimated_seconds=180,
            source="factor:image_quality",
        )
    if factor_type is FactorType.CONTEXTUAL:
        return ActionRecommendation(
            type=RecommendationType.CHANGE_BACKGROUND,
            priority=ActionPriority.MEDIUM,
            category=RecommendationCategory.SETUP,
            title="Improve the inspection setup",
            description=f"Inspection conditions lower confidence ({score:.2f}).",
            steps=_steps("Use a neutral, non-reflective background", "Photograph the part square-on"),
            improvement=EstimatedImprovement(0.10, 0.15, 0.70),
            estimated_seconds=120,
            source="factor:contextual",
        )
    if factor_type is FactorType.COMPLEXITY:
        return ActionRecommendation(
            type=RecommendationType.REVIEW_SETTINGS,
            priority=ActionPriority.LOW,
            category=RecommendationCategory.ANALYSIS,
            title="Split the inspection into views",
            description="The part is complex; photograph critical features separately.",
            steps=_steps("Capture each critical feature in its own photo pair"),
            improvement=EstimatedImprovement(0.10, 0.05, 0.65),
            estimated_seconds=300,
            source="factor:complexity",
        )
    # Model reliability and history are not something the operator can fix
    label = "model reliability" if factor_type is FactorType.MODEL_RELIABILITY else "historical accuracy"
    return ActionRecommendation(
        type=RecommendationType.REVIEW_SETTINGS,
        priority=ActionPriority.LOW,
        category=RecommendationCategory.REVIEW,
        title=f"Low {label}",
        description=f"The {label} factor is {score:.2f}; treat the result with extra care.",
        actionable=False,
        source=f"factor:{factor_type.value}",
    )


def _overall_recommendation(confidence: EnhancedConfidenceScore) -> ActionRecommendation:
    return ActionRecommendation(
        type=RecommendationType.REVIEW_SETTINGS,
        priority=ActionPriority.HIGH,
        category=RecommendationCategory.REVIEW,
        title="Manual review recommended",
        description=f"Overall confidence is {confidence.overall_confidence:.2f}; have an inspector confirm the result.",
        steps=_steps("Compare the part with the reference by eye", "Record the outcome as feedback", seconds=120),
        improvement=EstimatedImprovement(0.0, 0.0, 0.9),
        estimated_seconds=240,
        source="overall",
    )


def _pre_analysis_recommendation(pre: PreAnalysisResult) -> Optional[ActionRecommendation]:
    if pre.decision is PreAnalysisDecision.REJECT_AND_RETAKE:
        return ActionRecommendation(
            type=RecommendationType.RETAKE_PHOTO,
            priority=ActionPriority.CRITICAL,
            category=RecommendationCategory.IMAGE_CAPTURE,
            title="Retake both photos",
            description=pre.reason,
            steps=_steps(*pre.recommendations),
            improvement=EstimatedImprovement(0.40, 0.50, 0.85),
            estimated_seconds=120,
            source="pre_analysis",
        )
    if pre.decision is PreAnalysisDecision.OPTIMIZE_FIRST:
        return ActionRecommendation(
            type=RecommendationType.IMPROVE_CONDITIONS,
            priority=ActionPriority.MEDIUM,
            category=RecommendationCategory.ENVIRONMENT,
            title="Optimise the photos before analysis",
            description=pre.reason,
            steps=_steps(*pre.recommendations[:3]),
            improvement=EstimatedImprovement(0.20, 0.30, 0.75),
            estimated_seconds=180,
            source="pre_analysis",
        )
    if pre.decision is PreAnalysisDecision.PROCEED_WITH_WARNING:
        return ActionRecommendation(
            type=RecommendationType.REVIEW_SETTINGS,
            priority=ActionPriority.LOW,
            category=RecommendationCategory.REVIEW,
            title="Check the result carefully",
            description=pre.reason,
            steps=_steps(*pre.recommendations[:2]),
            improvement=EstimatedImprovement(0.05, 0.10, 0.70),
            estimated_seconds=60,
            source="pre_analysis",
        )
    return None


def _ai_recommendations(ai_result: AIAnalysisResult) -> List[ActionRecommendation]:
    recs: List[ActionRecommendation] = []
    if ai_result.confidence_score < 0.6:
        recs.append(ActionRecommendation(
            type=RecommendationType.REVIEW_SETTINGS,
            priority=ActionPriority.HIGH,
            category=RecommendationCategory.REVIEW,
            title="Verify the analysis result",
            description=f"The model reported low confidence ({ai_result.confidence_score:.2f}).",
            steps=(
                RecommendationStep(1, "Check the reported defect locations on the part", estimated_seconds=120),
                RecommendationStep(2, "Retake photos if the result looks wrong", estimated_seconds=60),
            ),
            improvement=EstimatedImprovement(0.15, 0.0, 0.80),
            estimated_seconds=180,
            source="ai:confidence",
        ))
    if ai_result.defects:
        critical = sum(1 for d in ai_result.defects if d.severity is DefectSeverity.CRITICAL)
        major = sum(1 for d in ai_result.defects if d.severity is DefectSeverity.MAJOR)
        if critical:
            priority = ActionPriority.CRITICAL
        elif major:
            priority = ActionPriority.HIGH
        else:
            priority = ActionPriority.MEDIUM
        steps = [RecommendationStep(1, "Inspect each reported defect on the physical part", estimated_seconds=120)]
        if ai_result.overall_quality is QualityVerdict.FAIL:
            steps.append(RecommendationStep(2, "Quarantine the part pending disposition", estimated_seconds=300))
        recs.append(ActionRecommendation(
            type=RecommendationType.REVIEW_SETTINGS,
            priority=priority,
            category=RecommendationCategory.ANALYSIS,
            title="Handle the detected defects",
            description=f"{len(ai_result.defects)} defect(s) reported, {critical} critical.",
            steps=tuple(steps),
            improvement=EstimatedImprovement(0.0, 0.0, 0.9),
            estimated_seconds=600 if critical else 300,
            source="ai:defects",
        ))
    if ai_result.overall_quality is QualityVerdict.FAIL:
        recs.append(ActionRecommendation(
            type=RecommendationType.REVIEW_SETTINGS,
            priority=ActionPriority.CRITICAL,
            category=RecommendationCategory.ANALYSIS,
            title="Part does not meet quality requirements",
            description=ai_result.summary or "The model judged the part as failing.",
            steps=_steps(
                "Remove the part from the line",
                "Confirm the failure with a second inspector",
                "Log the defect for the production record",
                seconds=180,
            ),
            improvement=EstimatedImprovement(0.0, 0.0, 0.95),
            estimated_seconds=600,
            source="ai:fail",
        ))
    return recs


def proceed_recommendation() -> ActionRecommendation:
    return ActionRecommendation(
        type=RecommendationType.PROCEED,
        priority=ActionPriority.LOW,
        category=RecommendationCategory.ANALYSIS,
        title="No action needed",
        description="Image quality and confidence are sufficient.",
        improvement=EstimatedImprovement(0.0, 0.0, 0.95),
        estimated_seconds=0,
        actionable=False,
        source="proceed",
    )


def deduplicate_and_rank(recommendations: Sequence[ActionRecommendation],
                         limit: int = MAX_RECOMMENDATIONS) -> List[ActionRecommendation]:
    unique: Dict[RecommendationType, ActionRecommendation] = {}
    for rec in recommendations:
        existing = unique.get(rec.type)
        if existing is None or rec.priority.rank > existing.priority.rank:
            unique[rec.type] = rec
    ranked = sorted(unique.values(), key=lambda r: r.priority.rank, reverse=True)
    return ranked[:limit]


def recommend(
    reference: ImageQualityMetrics,
    part: ImageQualityMetrics,
    confidence: EnhancedConfidenceScore,
    pre_analysis: Optional[PreAnalysisResult] = None,
    ai_result: Optional[AIAnalysisResult] = None,
) -> List[ActionRecommendation]:
    """Build the prioritized remediation list for one analysis."""
    candidates: List[ActionRecommendation] = []
    candidates.extend(_quality_recommendations(reference.get_quality_issues() + part.get_quality_issues()))

    seen_factors = set()
    for factor in confidence.factors:
        if factor.score < FACTOR_THRESHOLD and factor.type not in seen_factors:
            seen_factors.add(factor.type)
            candidates.append(_factor_recommendation(factor.type, factor.score))

    if confidence.overall_confidence < 0.5:
        candidates.append(_overall_recommendation(confidence))

    if pre_analysis is not None:
        pre_rec = _pre_analysis_recommendation(pre_analysis)
        if pre_rec is not None:
            candidates.append(pre_rec)

    if ai_result is not None:
        candidates.extend(_ai_recommendations(ai_result))

    if not candidates:
        return [proceed_recommendation()]
    ranked = deduplicate_and_rank(candidates)
    logger.debug(f"Generated {len(candidates)} recommendation candidates, kept {len(ranked)}")
    return ranked


class RecommendationEngine:
    def recommend(self, reference, part, confidence, pre_analysis=None, ai_result=None):
        return recommend(reference, part, confidence, pre_analysis, ai_result)
