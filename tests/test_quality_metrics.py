import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from conftest import CLEAN_SCORES, encode_image, make_metrics
from inspection_config import DEFAULT_CONFIG
from inspection_errors import DecodeError, InspectionValidationError
from quality_analyzer import (
    analyze_image_bytes,
    analyze_image_file,
    compute_compression,
    compute_resolution,
    evaluate_image_quality,
)
from quality_metrics import (
    ImageQualityMetrics,
    IssueSeverity,
    IssueType,
    QualityLevel,
    severity_for_score,
    weighted_overall,
)


def test_quality_weights_sum_to_one():
    weights = DEFAULT_CONFIG.quality_weights.model_dump()
    assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)


def test_weighted_overall_is_convex_combination():
    assert weighted_overall({**CLEAN_SCORES, "sharpness": 1, "brightness": 1, "contrast": 1, "noise_level": 0,
                             "resolution": 1, "compression": 1, "object_coverage": 1},
                            DEFAULT_CONFIG.quality_weights) == pytest.approx(1.0)
    assert weighted_overall({name: 0.0 for name in CLEAN_SCORES} | {"noise_level": 1.0},
                            DEFAULT_CONFIG.quality_weights) == pytest.approx(0.0)


def test_from_scores_clamps_raw_values():
    metrics = ImageQualityMetrics.from_scores(**{**CLEAN_SCORES, "sharpness": 3.5, "contrast": -1})
    assert metrics.sharpness == 1.0
    assert metrics.contrast == 0.0
    assert 0.0 <= metrics.overall_score <= 1.0


def test_out_of_range_metric_is_rejected():
    with pytest.raises(InspectionValidationError):
        make_metrics(1.2)
    with pytest.raises(InspectionValidationError):
        make_metrics(0.5, sharpness=-0.1)


@pytest.mark.parametrize("score,level", [
    (0.95, QualityLevel.EXCELLENT),
    (0.75, QualityLevel.GOOD),
    (0.55, QualityLevel.ACCEPTABLE),
    (0.35, QualityLevel.POOR),
    (0.1, QualityLevel.CRITICAL),
])
def test_quality_level_bands(score, level):
    assert make_metrics(score).quality_level is level


@pytest.mark.parametrize("score,severity", [
    (0.8, IssueSeverity.MINOR),
    (0.5, IssueSeverity.MAJOR),
    (0.2, IssueSeverity.CRITICAL),
])
def test_severity_for_score(score, severity):
    assert severity_for_score(score) is severity


def test_clean_metrics_have_no_issues():
    assert make_metrics(0.9).get_quality_issues() == []


def test_issue_detection_and_severity():
    metrics = make_metrics(0.5, sharpness=0.1, brightness=0.95, noise_level=0.9, object_coverage=0.2)
    issues = {issue.type: issue for issue in metrics.get_quality_issues()}
    assert set(issues) == {IssueType.BLUR, IssueType.LIGHTING, IssueType.NOISE, IssueType.OBJECT_SIZE}
    assert issues[IssueType.BLUR].severity is IssueSeverity.CRITICAL
    # 1 - 2 * |0.95 - 0.55| = 0.2
    assert issues[IssueType.LIGHTING].severity is IssueSeverity.CRITICAL
    assert issues[IssueType.NOISE].severity is IssueSeverity.CRITICAL
    assert len(issues[IssueType.BLUR].recommendations) == 4
    assert len(issues[IssueType.NOISE].recommendations) == 3


def test_default_metrics_are_neutral():
    metrics = ImageQualityMetrics.default()
    assert metrics.sharpness == 0.5
    assert metrics.is_acceptable_for_analysis
    assert not metrics.should_proceed_without_warning


def test_checkerboard_is_sharper_than_flat_image(checkerboard, flat_gray):
    sharp = analyze_image_bytes(encode_image(checkerboard))
    flat = analyze_image_bytes(encode_image(flat_gray))

    assert sharp.sharpness > flat.sharpness
    assert sharp.edge_clarity > flat.edge_clarity
    assert flat.sharpness == pytest.approx(0.0)
    assert flat.noise_level == pytest.approx(0.0)
    assert flat.contrast == pytest.approx(0.0)
    assert flat.brightness == pytest.approx(128 / 255, abs=1e-3)
    assert (sharp.width, sharp.height) == (64, 64)


def test_all_metrics_stay_in_unit_range(checkerboard):
    rng = np.random.default_rng(7)
    noisy = rng.integers(0, 256, size=(48, 80, 3), dtype=np.uint8)
    for array in (checkerboard, noisy):
        metrics = evaluate_image_quality(encode_image(array))
        for value in metrics.to_dict().values():
            if isinstance(value, float):
                assert 0.0 <= value <= 1.0


def test_grayscale_and_rgba_inputs_are_accepted(checkerboard):
    gray = checkerboard[..., 0]
    rgba = np.dstack([checkerboard, np.full((64, 64), 255, dtype=np.uint8)])
    assert analyze_image_bytes(encode_image(gray)).sharpness > 0.5
    assert analyze_image_bytes(encode_image(rgba)).sharpness > 0.5


@pytest.mark.parametrize("payload", [b"", b"not an image"])
def test_undecodable_bytes_raise_decode_error(payload):
    with pytest.raises(DecodeError):
        analyze_image_bytes(payload)


def test_analyze_image_file_reports_path(tmp_path):
    bad = tmp_path / "broken.jpg"
    bad.write_bytes(b"garbage")
    with pytest.raises(DecodeError, match="broken.jpg"):
        analyze_image_file(bad)
    with pytest.raises(FileNotFoundError):
        analyze_image_file(tmp_path / "missing.jpg")


def test_resolution_ramp():
    assert compute_resolution(1920, 1080) == 1.0
    assert compute_resolution(4000, 3000) == 1.0
    assert compute_resolution(640, 480) == pytest.approx(0.5)
    assert compute_resolution(320, 480) == pytest.approx(0.25)
    assert 0.5 < compute_resolution(1280, 720) < 1.0


def test_compression_proxy():
    assert compute_compression(500 * 1024, 1920, 1080) == pytest.approx(1.0)
    assert compute_compression(250 * 1024, 1920, 1080) == pytest.approx(0.5)
    assert compute_compression(10, 0, 0) == 0.0
