"""Image quality data types: metrics, issues and the pre-analysis verdict."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from inspection_config import DEFAULT_CONFIG, QualityWeights, TokenPolicy
from inspection_errors import InspectionValidationError

METRIC_NAMES = (
    "sharpness",
    "brightness",
    "contrast",
    "noise_level",
    "resolution",
    "compression",
    "object_coverage",
    "edge_clarity",
)

# Issue thresholds on individual metrics
BLUR_THRESHOLD = 0.5
LIGHTING_RANGE = (0.3, 0.8)
LIGHTING_MIDPOINT = 0.55
LOW_CONTRAST_THRESHOLD = 0.3
NOISE_THRESHOLD = 0.6
LOW_RESOLUTION_THRESHOLD = 0.5
SMALL_OBJECT_THRESHOLD = 0.3


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


class QualityLevel(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"
    CRITICAL = "critical"


class IssueType(Enum):
    BLUR = "blur"
    LIGHTING = "lighting"
    CONTRAST = "contrast"
    NOISE = "noise"
    RESOLUTION = "resolution"
    OBJECT_SIZE = "object_size"


class IssueSeverity(Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {IssueSeverity.MINOR: 0, IssueSeverity.MAJOR: 1, IssueSeverity.CRITICAL: 2}


def severity_for_score(score: float) -> IssueSeverity:
    if score >= 0.7:
        return IssueSeverity.MINOR
    if score >= 0.4:
        return IssueSeverity.MAJOR
    return IssueSeverity.CRITICAL


def quality_level_for_score(score: float) -> QualityLevel:
    if score >= 0.9:
        return QualityLevel.EXCELLENT
    if score >= 0.7:
        return QualityLevel.GOOD
    if score >= 0.5:
        return QualityLevel.ACCEPTABLE
    if score >= 0.3:
        return QualityLevel.POOR
    return QualityLevel.CRITICAL


def weighted_overall(scores: Dict[str, float], weights: QualityWeights) -> float:
    """Fixed convex combination of the seven weighted sub-metrics."""
    total = (
        scores["sharpness"] * weights.sharpness
        + scores["brightness"] * weights.brightness
        + scores["contrast"] * weights.contrast
        + (1.0 - scores["noise_level"]) * weights.noise_level
        + scores["resolution"] * weights.resolution
        + scores["compression"] * weights.compression
        + scores["object_coverage"] * weights.object_coverage
    )
    return clamp(total)


@dataclass(frozen=True)
class ImageQualityMetrics:
    sharpness: float
    brightness: float
    contrast: float
    noise_level: float  # higher = worse
    resolution: float
    compression: float
    object_coverage: float
    edge_clarity: float
    overall_score: float
    width: int = 0
    height: int = 0
    analyzed_at: datetime = field(default_factory=datetime.now, compare=False)

    def __post_init__(self):
        for name in METRIC_NAMES + ("overall_score",):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InspectionValidationError(f"{name} must be within [0, 1], got {value}")

    @classmethod
    def from_scores(
        cls,
        weights: Optional[QualityWeights] = None,
        width: int = 0,
        height: int = 0,
        **scores: float,
    ) -> "ImageQualityMetrics":
        """Clamp raw metric values and derive the weighted overall score."""
        missing = [name for name in METRIC_NAMES if name not in scores]
        if missing:
            raise InspectionValidationError(f"Missing metrics: {', '.join(missing)}")
        clamped = {name: clamp(scores[name]) for name in METRIC_NAMES}
        overall = weighted_overall(clamped, weights or DEFAULT_CONFIG.quality_weights)
        return cls(overall_score=overall, width=width, height=height, **clamped)

    @classmethod
    def default(cls) -> "ImageQualityMetrics":
        """Neutral metrics used when an image could not be analysed."""
        return cls.from_scores(**{name: 0.5 for name in METRIC_NAMES})

    @property
    def quality_level(self) -> QualityLevel:
        return quality_level_for_score(self.overall_score)

    @property
    def is_acceptable_for_analysis(self) -> bool:
        return self.overall_score >= 0.4

    @property
    def should_proceed_without_warning(self) -> bool:
        return self.overall_score >= 0.7

    def get_quality_issues(self) -> List["QualityIssue"]:
        issues: List[QualityIssue] = []
        if self.sharpness < BLUR_THRESHOLD:
            issues.append(QualityIssue.create(IssueType.BLUR, severity_for_score(self.sharpness)))
        low, high = LIGHTING_RANGE
        if self.brightness < low or self.brightness > high:
            distance = abs(self.brightness - LIGHTING_MIDPOINT) * 2
            issues.append(QualityIssue.create(IssueType.LIGHTING, severity_for_score(1.0 - distance)))
        if self.contrast < LOW_CONTRAST_THRESHOLD:
            issues.append(QualityIssue.create(IssueType.CONTRAST, severity_for_score(self.contrast)))
        if self.noise_level > NOISE_THRESHOLD:
            issues.append(QualityIssue.create(IssueType.NOISE, severity_for_score(1.0 - self.noise_level)))
        if self.resolution < LOW_RESOLUTION_THRESHOLD:
            issues.append(QualityIssue.create(IssueType.RESOLUTION, severity_for_score(self.resolution)))
        if self.object_coverage < SMALL_OBJECT_THRESHOLD:
            issues.append(QualityIssue.create(IssueType.OBJECT_SIZE, severity_for_score(self.object_coverage)))
        return issues

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["analyzed_at"] = self.analyzed_at.isoformat()
        data["quality_level"] = self.quality_level.value
        return data

    def __str__(self) -> str:
        return f"ImageQualityMetrics(overall: {self.overall_score:.2f}, quality: {self.quality_level.value})"


ISSUE_DESCRIPTIONS: Dict[IssueType, str] = {
    IssueType.BLUR: "Image is blurred or out of focus",
    IssueType.LIGHTING: "Unsuitable lighting",
    IssueType.CONTRAST: "Low image contrast",
    IssueType.NOISE: "High noise level in the image",
    IssueType.RESOLUTION: "Insufficient image resolution",
    IssueType.OBJECT_SIZE: "The part covers too little of the frame",
}

ISSUE_REMEDIATIONS: Dict[IssueType, Tuple[str, ...]] = {
    IssueType.BLUR: (
        "Use autofocus before taking the picture",
        "Steady your hands or use a tripod",
        "Check that the lens is clean",
        "Move closer to the part for better focus",
    ),
    IssueType.LIGHTING: (
        "Improve the lighting of the inspection area",
        "Avoid direct light and hard shadows",
        "Use even, diffuse lighting",
        "Rotate the part for better illumination",
    ),
    IssueType.CONTRAST: (
        "Use a contrasting background",
        "Improve lighting to increase contrast",
        "Adjust the camera settings",
    ),
    IssueType.NOISE: (
        "Add light so the camera can use a lower ISO",
        "Use a better quality camera",
        "Reduce digital zoom",
    ),
    IssueType.RESOLUTION: (
        "Increase the camera resolution",
        "Move closer to the part",
        "Use a better camera",
    ),
    IssueType.OBJECT_SIZE: (
        "Move closer to the part",
        "Use optical zoom for more detail",
        "Place the part closer to the camera",
    ),
}


@dataclass(frozen=True)
class QualityIssue:
    type: IssueType
    severity: IssueSeverity
    description: str
    recommendations: Tuple[str, ...]

    @classmethod
    def create(cls, issue_type: IssueType, severity: IssueSeverity) -> "QualityIssue":
        return cls(
            type=issue_type,
            severity=severity,
            description=ISSUE_DESCRIPTIONS[issue_type],
            recommendations=ISSUE_REMEDIATIONS[issue_type],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "recommendations": list(self.recommendations),
        }


class PreAnalysisDecision(Enum):
    PROCEED = "proceed"
    PROCEED_WITH_WARNING = "proceed_with_warning"
    OPTIMIZE_FIRST = "optimize_first"
    REJECT_AND_RETAKE = "reject_and_retake"


class TokenSavingLevel(Enum):
    NONE = "none"
    MINOR = "minor"
    SIGNIFICANT = "significant"


@dataclass(frozen=True)
class TokenSavingEstimate:
    saved_tokens: int
    saved_cost_usd: float
    level: TokenSavingLevel

    @classmethod
    def none(cls) -> "TokenSavingEstimate":
        return cls(0, 0.0, TokenSavingLevel.NONE)

    @classmethod
    def minor(cls, tokens: int, policy: TokenPolicy) -> "TokenSavingEstimate":
        return cls(tokens, tokens * policy.cost_per_token_usd, TokenSavingLevel.MINOR)

    @classmethod
    def significant(cls, tokens: int, policy: TokenPolicy) -> "TokenSavingEstimate":
        return cls(tokens, tokens * policy.cost_per_token_usd, TokenSavingLevel.SIGNIFICANT)


@dataclass(frozen=True)
class PreAnalysisResult:
    decision: PreAnalysisDecision
    expected_confidence: float
    reference_quality: ImageQualityMetrics
    part_quality: ImageQualityMetrics
    issues: Tuple[QualityIssue, ...]
    recommendations: Tuple[str, ...]
    reason: str
    token_saving: TokenSavingEstimate

    @property
    def should_proceed_to_ai(self) -> bool:
        return self.decision in (PreAnalysisDecision.PROCEED, PreAnalysisDecision.PROCEED_WITH_WARNING)

    @property
    def has_warnings(self) -> bool:
        return self.decision is not PreAnalysisDecision.PROCEED

    @property
    def has_critical_issues(self) -> bool:
        return any(issue.severity is IssueSeverity.CRITICAL for issue in self.issues)

    @property
    def min_score(self) -> float:
        return min(self.reference_quality.overall_score, self.part_quality.overall_score)

    @property
    def average_score(self) -> float:
        return (self.reference_quality.overall_score + self.part_quality.overall_score) / 2

    @property
    def recommended_model(self) -> str:
        if self.expected_confidence >= 0.8:
            return "premium"
        if self.expected_confidence >= 0.6:
            return "standard"
        return "basic"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "expected_confidence": self.expected_confidence,
            "reference_quality": self.reference_quality.to_dict(),
            "part_quality": self.part_quality.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "recommendations": list(self.recommendations),
            "reason": self.reason,
            "token_saving": {
                "saved_tokens": self.token_saving.saved_tokens,
                "saved_cost_usd": self.token_saving.saved_cost_usd,
                "level": self.token_saving.level.value,
            },
        }
