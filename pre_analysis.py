"""
Quality gate run before the paid vision model call.

``decide`` maps the overall scores of the reference and part images onto one
of four verdicts. Rules are evaluated in order and the first match wins:

1. min score below ``reject_below`` or at least ``critical_issue_limit``
   critical issues -> reject and retake (confidence 0, full call saved)
2. min score below ``optimize_below`` -> optimize first (partial saving)
3. mean score below ``warning_below`` -> proceed with warning
4. otherwise -> proceed
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from inspection_config import DEFAULT_CONFIG, InspectionConfig
from inspection_errors import DecodeError
from quality_analyzer import analyze_image_bytes
from quality_metrics import (
    ImageQualityMetrics,
    IssueSeverity,
    IssueType,
    PreAnalysisDecision,
    PreAnalysisResult,
    QualityIssue,
    TokenSavingEstimate,
)

logger = logging.getLogger(__name__)

CRITICAL_REMEDIATIONS = {
    IssueType.BLUR: (
        "Clean the camera lens",
        "Use a tripod or a fixed mount",
        "Check that autofocus has locked before shooting",
    ),
    IssueType.LIGHTING: (
        "Add light to the inspection area",
        "Avoid direct sunlight",
        "Remove shadows falling on the part",
    ),
}


def _ordered_unique(items: Sequence[str]) -> List[str]:
    seen = set()
    unique = []
    for item in items:
        if item not in seen:
            seen.add(item)
            unique.append(item)
    return unique


def _by_severity(issues: Sequence[QualityIssue]) -> List[QualityIssue]:
    return sorted(issues, key=lambda issue: issue.severity.rank, reverse=True)


def _reject_recommendations(issues: Sequence[QualityIssue]) -> List[str]:
    recs: List[str] = []
    for issue in _by_severity(issues):
        if issue.severity is not IssueSeverity.CRITICAL:
            continue
        recs.extend(CRITICAL_REMEDIATIONS.get(issue.type, issue.recommendations[:1]))
    if not recs:
        recs.append("Retake both photos with better focus and lighting")
    recs.append("Continuing with these photos would produce unreliable results")
    return _ordered_unique(recs)


def _optimize_recommendations(issues: Sequence[QualityIssue]) -> List[str]:
    recs = ["Improve the photos before analysis for a more reliable result"]
    for issue in _by_severity(issues):
        recs.extend(issue.recommendations)
    return _ordered_unique(recs)


def _warning_recommendations(issues: Sequence[QualityIssue]) -> List[str]:
    recs = ["Analysis can proceed, but the result may be less reliable"]
    for issue in _by_severity(issues)[:3]:
        recs.append(issue.recommendations[0])
    return _ordered_unique(recs)


def decide(
    reference: ImageQualityMetrics,
    part: ImageQualityMetrics,
    config: Optional[InspectionConfig] = None,
) -> PreAnalysisResult:
    """Issue the pre-analysis verdict for one reference/part pair."""
    config = config or DEFAULT_CONFIG
    thresholds = config.decision
    tokens = config.tokens

    issues = tuple(reference.get_quality_issues() + part.get_quality_issues())
    critical_count = sum(1 for issue in issues if issue.severity is IssueSeverity.CRITICAL)
    min_score = min(reference.overall_score, part.overall_score)
    avg_score = (reference.overall_score + part.overall_score) / 2

    if min_score < thresholds.reject_below or critical_count >= thresholds.critical_issue_limit:
        if min_score < thresholds.reject_below:
            reason = f"Image quality too low for analysis (lowest score {min_score:.2f})"
        else:
            reason = f"{critical_count} critical quality issues detected"
        return PreAnalysisResult(
            decision=PreAnalysisDecision.REJECT_AND_RETAKE,
            expected_confidence=0.0,
            reference_quality=reference,
            part_quality=part,
            issues=issues,
            recommendations=tuple(_reject_recommendations(issues)),
            reason=reason,
            token_saving=TokenSavingEstimate.significant(tokens.reject_saved_tokens, tokens),
        )

    if min_score < thresholds.optimize_below:
        return PreAnalysisResult(
            decision=PreAnalysisDecision.OPTIMIZE_FIRST,
            expected_confidence=min_score * thresholds.optimize_confidence_factor,
            reference_quality=reference,
            part_quality=part,
            issues=issues,
            recommendations=tuple(_optimize_recommendations(issues)),
            reason=f"Image quality should be improved first (lowest score {min_score:.2f})",
            token_saving=TokenSavingEstimate.minor(tokens.optimize_saved_tokens, tokens),
        )

    if avg_score < thresholds.warning_below:
        return PreAnalysisResult(
            decision=PreAnalysisDecision.PROCEED_WITH_WARNING,
            expected_confidence=avg_score * thresholds.warning_confidence_factor,
            reference_quality=reference,
            part_quality=part,
            issues=issues,
            recommendations=tuple(_warning_recommendations(issues)),
            reason=f"Acceptable image quality with reservations (average score {avg_score:.2f})",
            token_saving=TokenSavingEstimate.none(),
        )

    return PreAnalysisResult(
        decision=PreAnalysisDecision.PROCEED,
        expected_confidence=avg_score * thresholds.proceed_confidence_factor,
        reference_quality=reference,
        part_quality=part,
        issues=issues,
        recommendations=("Image quality is suitable for analysis",),
        reason=f"Good image quality (average score {avg_score:.2f})",
        token_saving=TokenSavingEstimate.none(),
    )


def analysis_unavailable_result(error: Exception) -> PreAnalysisResult:
    """Lenient fallback used when the images could not be analysed."""
    return PreAnalysisResult(
        decision=PreAnalysisDecision.PROCEED_WITH_WARNING,
        expected_confidence=0.5,
        reference_quality=ImageQualityMetrics.default(),
        part_quality=ImageQualityMetrics.default(),
        issues=(QualityIssue.create(IssueType.BLUR, IssueSeverity.MAJOR),),
        recommendations=(
            "Image quality could not be analysed",
            "Check the photos manually before continuing",
        ),
        reason=f"Quality analysis failed: {error}",
        token_saving=TokenSavingEstimate.none(),
    )


def evaluate_before_analysis(
    reference_bytes: bytes,
    part_bytes: bytes,
    config: Optional[InspectionConfig] = None,
    lenient: bool = False,
) -> PreAnalysisResult:
    """Analyse both images and run the quality gate.

    With ``lenient`` a decode failure degrades to a warning verdict instead
    of raising DecodeError.
    """
    try:
        reference = analyze_image_bytes(reference_bytes, config)
        part = analyze_image_bytes(part_bytes, config)
    except DecodeError as exc:
        if not lenient:
            raise
        logger.warning(f"Image quality analysis failed, continuing with warning: {exc}")
        return analysis_unavailable_result(exc)
    return decide(reference, part, config)


class PreAnalysisDecisionEngine:
    def __init__(self, config: Optional[InspectionConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def decide(self, reference: ImageQualityMetrics, part: ImageQualityMetrics) -> PreAnalysisResult:
        return decide(reference, part, self.config)
