"""
Policy configuration for the part inspection pipeline.

Every threshold, weight table and batch setting used by the quality gate,
the confidence scorer and the batch orchestrator lives in ``InspectionConfig``.
The model is immutable; tune a deployment by picking a named profile and/or
layering overrides (environment variables, a JSON file, explicit dicts) with
``build_config`` or ``load_config``.

Weight Tables Note:
    ``QualityWeights`` and ``ConfidenceWeights`` ARE convex combinations and
    must sum to 1.0 (validated to within 1e-6). Changing a single weight
    therefore means rebalancing the others.

Available Profiles:
    - balanced: default thresholds (0.3 / 0.4 / 0.7)
    - strict: rejects and warns earlier, for safety-critical parts
    - lenient: lets marginal captures through to the model
    - high_throughput: larger concurrency window, shorter pauses
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')


class DecisionThresholds(_FrozenModel):
    reject_below: float = Field(0.3, ge=0.0, le=1.0)
    optimize_below: float = Field(0.4, ge=0.0, le=1.0)
    warning_below: float = Field(0.7, ge=0.0, le=1.0)
    critical_issue_limit: int = Field(2, ge=1)
    optimize_confidence_factor: float = Field(0.7, ge=0.0, le=1.0)
    warning_confidence_factor: float = Field(0.85, ge=0.0, le=1.0)
    proceed_confidence_factor: float = Field(0.95, ge=0.0, le=1.0)

    @model_validator(mode='after')
    def check_band_order(self):
        if not self.reject_below <= self.optimize_below <= self.warning_below:
            raise ValueError(
                "Decision thresholds must satisfy reject_below <= optimize_below <= warning_below"
            )
        return self


class TokenPolicy(_FrozenModel):
    # Placeholder estimates, not measured usage
    reject_saved_tokens: int = Field(200, ge=0)
    optimize_saved_tokens: int = Field(50, ge=0)
    cost_per_token_usd: float = Field(0.00003, ge=0.0)
    tokens_per_analysis: int = Field(200, ge=0)


class QualityWeights(_FrozenModel):
    sharpness: float = 0.25
    brightness: float = 0.15
    contrast: float = 0.20
    noise_level: float = 0.10  # applied to (1 - noise)
    resolution: float = 0.15
    compression: float = 0.05
    object_coverage: float = 0.10

    @model_validator(mode='after')
    def check_sum(self):
        _check_weight_sum(self.model_dump(), "QualityWeights")
        return self


class ConfidenceWeights(_FrozenModel):
    image_quality: float = 0.30
    model_reliability: float = 0.25
    contextual: float = 0.20
    historical: float = 0.15
    complexity: float = 0.10  # applied to (1 - complexity penalty)

    @model_validator(mode='after')
    def check_sum(self):
        _check_weight_sum(self.model_dump(), "ConfidenceWeights")
        return self


class ReliabilityTables(_FrozenModel):
    model_reliability: Dict[str, float] = Field(default_factory=lambda: {
        "simple": 0.95,
        "moderate": 0.85,
        "complex": 0.75,
        "extreme": 0.60,
    })
    complexity_penalty: Dict[str, float] = Field(default_factory=lambda: {
        "simple": 0.05,
        "moderate": 0.15,
        "complex": 0.25,
        "extreme": 0.40,
    })
    contextual_base: float = Field(0.7, ge=0.0, le=1.0)
    neutral_historical: float = Field(0.7, ge=0.0, le=1.0)

    @model_validator(mode='after')
    def check_tiers(self):
        tiers = {"simple", "moderate", "complex", "extreme"}
        for name, table in (("model_reliability", self.model_reliability),
                            ("complexity_penalty", self.complexity_penalty)):
            missing = tiers - set(table)
            if missing:
                raise ValueError(f"{name} is missing tiers: {', '.join(sorted(missing))}")
            for tier, value in table.items():
                if not 0.0 <= value <= 1.0:
                    raise ValueError(f"{name}[{tier}] must be within [0, 1], got {value}")
        return self


class BatchSettings(_FrozenModel):
    chunk_size: int = Field(3, ge=1)
    max_retries: int = Field(2, ge=0)
    item_timeout_seconds: float = Field(180.0, gt=0)
    inter_chunk_delay_seconds: float = Field(1.0, ge=0)
    backoff_step_seconds: float = Field(1.0, ge=0)
    slow_item_seconds: float = Field(30.0, gt=0)


class VisionSettings(_FrozenModel):
    url: str = "http://localhost:11434/api/generate"
    model: str = "qwen2.5vl:7b"
    request_timeout_seconds: float = Field(120.0, gt=0)
    temperature: float = Field(0.1, ge=0.0, le=2.0)


class InspectionConfig(_FrozenModel):
    decision: DecisionThresholds = Field(default_factory=DecisionThresholds)
    tokens: TokenPolicy = Field(default_factory=TokenPolicy)
    quality_weights: QualityWeights = Field(default_factory=QualityWeights)
    confidence_weights: ConfidenceWeights = Field(default_factory=ConfidenceWeights)
    reliability: ReliabilityTables = Field(default_factory=ReliabilityTables)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    vision: VisionSettings = Field(default_factory=VisionSettings)
    profile: str = "balanced"


def _check_weight_sum(weights: Dict[str, float], label: str) -> None:
    for key, value in weights.items():
        if value < 0:
            raise ValueError(f"{label}.{key} must be non-negative, got {value}")
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ValueError(f"{label} must sum to 1.0, got {total:.6f}")


PROFILE_CONFIG: Dict[str, Dict[str, Any]] = {
    "balanced": {},
    "strict": {
        "decision": {
            "reject_below": 0.35,
            "optimize_below": 0.5,
            "warning_below": 0.8,
            "critical_issue_limit": 1,
        },
    },
    "lenient": {
        "decision": {
            "reject_below": 0.2,
            "optimize_below": 0.3,
            "warning_below": 0.6,
            "critical_issue_limit": 3,
        },
    },
    "high_throughput": {
        "batch": {
            "chunk_size": 6,
            "inter_chunk_delay_seconds": 0.25,
            "item_timeout_seconds": 90.0,
        },
    },
}

DEFAULT_PROFILE = "balanced"


def get_available_profiles() -> List[str]:
    """Return the names of the built-in deployment profiles."""
    return list(PROFILE_CONFIG.keys())


def get_profile(name: str) -> Optional[Dict[str, Any]]:
    """Get the override dict for a profile, or None if unknown."""
    return PROFILE_CONFIG.get(name)


def validate_profile_name(name: str) -> bool:
    return name in PROFILE_CONFIG


def _get_int_env(var_name: str, fallback: Optional[int] = None) -> Optional[int]:
    """Read an integer environment variable, falling back if unset/invalid."""
    value = os.environ.get(var_name)
    if value is None:
        return fallback
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {var_name}: {value!r}. Using {fallback}.")
        return fallback


def _get_float_env(var_name: str, fallback: Optional[float] = None) -> Optional[float]:
    """Read a float environment variable, falling back if unset/invalid."""
    value = os.environ.get(var_name)
    if value is None:
        return fallback
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {var_name}: {value!r}. Using {fallback}.")
        return fallback


def env_overrides() -> Dict[str, Any]:
    """Collect overrides from PART_INSPECT_* environment variables."""
    batch: Dict[str, Any] = {}
    vision: Dict[str, Any] = {}

    chunk_size = _get_int_env("PART_INSPECT_CHUNK_SIZE")
    if chunk_size is not None:
        batch["chunk_size"] = chunk_size
    max_retries = _get_int_env("PART_INSPECT_MAX_RETRIES")
    if max_retries is not None:
        batch["max_retries"] = max_retries
    timeout = _get_float_env("PART_INSPECT_ITEM_TIMEOUT")
    if timeout is not None:
        batch["item_timeout_seconds"] = timeout
    delay = _get_float_env("PART_INSPECT_CHUNK_DELAY")
    if delay is not None:
        batch["inter_chunk_delay_seconds"] = delay

    if os.environ.get("PART_INSPECT_VISION_URL"):
        vision["url"] = os.environ["PART_INSPECT_VISION_URL"]
    if os.environ.get("PART_INSPECT_VISION_MODEL"):
        vision["model"] = os.environ["PART_INSPECT_VISION_MODEL"]

    overrides: Dict[str, Any] = {}
    if batch:
        overrides["batch"] = batch
    if vision:
        overrides["vision"] = vision
    return overrides


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_config(profile: str = DEFAULT_PROFILE, *overrides: Dict[str, Any]) -> InspectionConfig:
    """Build a config from a named profile plus any number of override dicts.

    Later overrides win. Raises ValueError for an unknown profile and
    pydantic.ValidationError for values out of range.
    """
    profile_overrides = get_profile(profile)
    if profile_overrides is None:
        raise ValueError(
            f"Unknown profile '{profile}'. Available: {', '.join(get_available_profiles())}"
        )
    data: Dict[str, Any] = _deep_merge({}, profile_overrides)
    for extra in overrides:
        data = _deep_merge(data, extra or {})
    data["profile"] = profile
    return InspectionConfig.model_validate(data)


def load_config(path: Optional[Union[str, Path]] = None, profile: Optional[str] = None) -> InspectionConfig:
    """Resolve the effective configuration.

    Precedence (lowest first): profile, JSON file, environment variables.
    """
    profile_name = profile or os.environ.get("PART_INSPECT_PROFILE", DEFAULT_PROFILE)
    file_overrides: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path).expanduser()
        file_overrides = json.loads(config_path.read_text())
        file_overrides.pop("profile", None)
        logger.info(f"Loaded configuration overrides from {config_path}")
    return build_config(profile_name, file_overrides, env_overrides())


DEFAULT_CONFIG = InspectionConfig()
