"""
Client for the external vision model that compares a reference image with a
part image and returns a structured defect report.

The request follows the Ollama ``/api/generate`` shape: base64 images, a
prompt, and a JSON schema in ``format`` so the model answers with strict
JSON. The client never retries; the batch orchestrator owns retry policy.
"""

from __future__ import annotations

import base64
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from inspection_config import DEFAULT_CONFIG, VisionSettings
from inspection_errors import AnalysisTimeoutError, RemoteAnalysisError

logger = logging.getLogger(__name__)


class QualityVerdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


class DefectType(str, Enum):
    MISSING = "missing"
    EXTRA = "extra"
    DEFORMED = "deformed"
    DIMENSIONAL = "dimensional"


class DefectSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


class DefectLocation(BaseModel):
    x: float = Field(0.0, ge=0.0, le=1.0)
    y: float = Field(0.0, ge=0.0, le=1.0)
    width: float = Field(0.0, ge=0.0, le=1.0)
    height: float = Field(0.0, ge=0.0, le=1.0)


class Defect(BaseModel):
    model_config = ConfigDict(extra='allow')

    type: DefectType
    severity: DefectSeverity
    description: str = ""
    location: DefectLocation = Field(default_factory=DefectLocation)
    confidence: float = Field(0.0, ge=0.0, le=1.0)

    @field_validator('type', 'severity', mode='before')
    def normalize_enum_case(cls, v):
        return _lower(v)


class AIAnalysisResult(BaseModel):
    model_config = ConfigDict(extra='allow')

    overall_quality: QualityVerdict = Field(
        validation_alias=AliasChoices('overall_quality', 'overallQuality')
    )
    confidence_score: float = Field(
        ge=0.0, le=1.0, validation_alias=AliasChoices('confidence_score', 'confidenceScore')
    )
    summary: str = ""
    defects: List[Defect] = Field(default_factory=list)
    tokens_used: Optional[int] = None

    @field_validator('overall_quality', mode='before')
    def normalize_verdict(cls, v):
        return _lower(v)

    @property
    def critical_defect_count(self) -> int:
        return sum(1 for defect in self.defects if defect.severity is DefectSeverity.CRITICAL)

    @property
    def is_clean_pass(self) -> bool:
        return self.overall_quality is QualityVerdict.PASS and not self.defects


INSPECTION_PROMPT = """You are an industrial quality inspector.

Compare the REFERENCE image (first) with the inspected PART image (second).
Part type: {part_type}

Ignore colour, shade and surface finish completely; parts are often painted
differently. Judge only geometry, shape and completeness:
1. MISSING: holes, bosses, features or sections present on the reference but absent on the part.
2. EXTRA: burrs, flash, leftover material or anything not present on the reference.

Return STRICT JSON only:
{{"overall_quality": "PASS|FAIL|WARNING", "confidence_score": 0.0-1.0,
  "summary": "...", "defects": [{{"type": "MISSING|EXTRA", "severity": "MINOR|MAJOR|CRITICAL",
  "description": "...", "location": {{"x": 0.5, "y": 0.3, "width": 0.1, "height": 0.2}},
  "confidence": 0.0-1.0}}]}}

Rules:
- Coordinates are relative positions in [0, 1].
- CRITICAL = part unusable, MAJOR = functional problem, MINOR = cosmetic.
- Never report colour differences as defects.
"""

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "overall_quality": {"type": "string", "enum": ["PASS", "FAIL", "WARNING"]},
        "confidence_score": {"type": "number"},
        "summary": {"type": "string"},
        "defects": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "severity": {"type": "string"},
                    "description": {"type": "string"},
                    "location": {
                        "type": "object",
                        "properties": {
                            "x": {"type": "number"},
                            "y": {"type": "number"},
                            "width": {"type": "number"},
                            "height": {"type": "number"},
                        },
                    },
                    "confidence": {"type": "number"},
                },
                "required": ["type", "severity", "description"],
            },
        },
    },
    "required": ["overall_quality", "confidence_score", "summary", "defects"],
}


def parse_analysis_payload(data: Dict[str, Any]) -> AIAnalysisResult:
    """Turn an Ollama generate response body into an AIAnalysisResult."""
    raw_json = data.get("response") or data.get("message") or data.get("text")
    if isinstance(raw_json, dict) and "content" in raw_json:
        raw_json = raw_json["content"]
    if not raw_json:
        raise RemoteAnalysisError("Vision model returned an empty payload")
    try:
        report = json.loads(raw_json) if isinstance(raw_json, str) else raw_json
    except json.JSONDecodeError as exc:
        raise RemoteAnalysisError(f"Vision model returned malformed JSON: {exc}") from exc
    if not isinstance(report, dict):
        raise RemoteAnalysisError("Vision model returned a non-object JSON payload")
    try:
        result = AIAnalysisResult.model_validate(report)
    except ValidationError as exc:
        raise RemoteAnalysisError(f"Vision model report failed validation: {exc}") from exc

    token_counts = [data.get("prompt_eval_count"), data.get("eval_count")]
    if any(isinstance(count, int) for count in token_counts):
        result.tokens_used = sum(count for count in token_counts if isinstance(count, int))
    return result


class VisionClient:
    def __init__(self, settings: Optional[VisionSettings] = None):
        self.settings = settings or DEFAULT_CONFIG.vision

    def build_payload(self, reference_bytes: bytes, part_bytes: bytes, part_type: str) -> Dict[str, Any]:
        return {
            "model": self.settings.model,
            "stream": False,
            "images": [
                base64.b64encode(reference_bytes).decode("utf-8"),
                base64.b64encode(part_bytes).decode("utf-8"),
            ],
            "prompt": INSPECTION_PROMPT.format(part_type=part_type or "unspecified"),
            "format": RESPONSE_SCHEMA,
            "options": {
                "temperature": self.settings.temperature,
                "top_p": 0.9,
            },
        }

    def analyze_images(self, reference_bytes: bytes, part_bytes: bytes, part_type: str = "") -> AIAnalysisResult:
        """Single remote comparison; raises RemoteAnalysisError on any failure."""
        payload = self.build_payload(reference_bytes, part_bytes, part_type)
        try:
            response = requests.post(
                self.settings.url,
                json=payload,
                timeout=self.settings.request_timeout_seconds,
            )
        except requests.exceptions.Timeout as exc:
            raise AnalysisTimeoutError(f"Vision request timed out: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise RemoteAnalysisError(f"Vision request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise RemoteAnalysisError(
                f"Vision endpoint returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteAnalysisError(f"Vision endpoint returned non-JSON body: {exc}") from exc
        if not isinstance(data, dict):
            raise RemoteAnalysisError("Vision endpoint returned an unexpected body")

        result = parse_analysis_payload(data)
        logger.debug(
            f"Vision result for {part_type or 'part'}: {result.overall_quality.value} "
            f"({result.confidence_score:.2f}, {len(result.defects)} defects)"
        )
        return result
