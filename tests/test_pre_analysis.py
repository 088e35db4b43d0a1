import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from conftest import encode_image, make_metrics
from inspection_config import build_config
from inspection_errors import DecodeError
from pre_analysis import PreAnalysisDecisionEngine, decide, evaluate_before_analysis
from quality_metrics import IssueSeverity, PreAnalysisDecision, TokenSavingLevel


def test_very_low_scores_reject_and_retake():
    result = decide(make_metrics(0.2), make_metrics(0.25))
    assert result.decision is PreAnalysisDecision.REJECT_AND_RETAKE
    assert result.expected_confidence == 0.0
    assert not result.should_proceed_to_ai
    assert result.token_saving.saved_tokens == 200
    assert result.token_saving.level is TokenSavingLevel.SIGNIFICANT
    assert result.token_saving.saved_cost_usd == pytest.approx(200 * 0.00003)


def test_good_scores_proceed_to_analysis():
    result = decide(make_metrics(0.9), make_metrics(0.92))
    assert result.decision is PreAnalysisDecision.PROCEED
    assert result.expected_confidence == pytest.approx(0.91 * 0.95)
    assert result.should_proceed_to_ai
    assert not result.has_warnings
    assert result.token_saving.saved_tokens == 0
    assert result.recommended_model == "premium"


@pytest.mark.parametrize("ref,part,decision,factor", [
    (0.35, 0.9, PreAnalysisDecision.OPTIMIZE_FIRST, 0.35 * 0.7),
    (0.5, 0.6, PreAnalysisDecision.PROCEED_WITH_WARNING, 0.55 * 0.85),
    (0.4, 0.99, PreAnalysisDecision.PROCEED_WITH_WARNING, 0.695 * 0.85),
    (0.7, 0.7, PreAnalysisDecision.PROCEED, 0.7 * 0.95),
    (0.3, 0.3, PreAnalysisDecision.OPTIMIZE_FIRST, 0.3 * 0.7),
    (0.29, 1.0, PreAnalysisDecision.REJECT_AND_RETAKE, 0.0),
])
def test_decision_bands(ref, part, decision, factor):
    result = decide(make_metrics(ref), make_metrics(part))
    assert result.decision is decision
    assert result.expected_confidence == pytest.approx(factor)


def test_optimize_first_saves_partial_tokens():
    result = decide(make_metrics(0.35), make_metrics(0.9))
    assert result.token_saving.saved_tokens == 50
    assert result.token_saving.level is TokenSavingLevel.MINOR
    assert not result.should_proceed_to_ai


def test_two_critical_issues_reject_despite_high_scores():
    reference = make_metrics(0.8, sharpness=0.1)
    part = make_metrics(0.8, object_coverage=0.1)
    result = decide(reference, part)
    assert result.decision is PreAnalysisDecision.REJECT_AND_RETAKE
    assert result.has_critical_issues
    assert sum(1 for issue in result.issues if issue.severity is IssueSeverity.CRITICAL) == 2
    assert "Clean the camera lens" in result.recommendations
    assert "2 critical quality issues" in result.reason


def test_single_critical_issue_does_not_reject():
    result = decide(make_metrics(0.8, sharpness=0.1), make_metrics(0.8))
    assert result.decision is PreAnalysisDecision.PROCEED
    assert result.has_critical_issues


def test_decision_is_total_and_deterministic():
    grid = [i / 20 for i in range(21)]
    for ref in grid:
        for part in grid:
            first = decide(make_metrics(ref), make_metrics(part))
            second = decide(make_metrics(ref), make_metrics(part))
            assert first.decision in set(PreAnalysisDecision)
            assert first.decision is second.decision
            assert first.expected_confidence == second.expected_confidence


def test_expected_confidence_non_decreasing_with_score():
    previous = -1.0
    for step in range(101):
        score = step / 100
        confidence = decide(make_metrics(score), make_metrics(score)).expected_confidence
        assert confidence >= previous
        previous = confidence


def test_strict_profile_moves_bands():
    strict = build_config("strict")
    result = decide(make_metrics(0.45), make_metrics(0.9), strict)
    assert result.decision is PreAnalysisDecision.OPTIMIZE_FIRST
    assert decide(make_metrics(0.45), make_metrics(0.9)).decision is PreAnalysisDecision.PROCEED_WITH_WARNING


def test_engine_wraps_decide():
    engine = PreAnalysisDecisionEngine()
    assert engine.decide(make_metrics(0.9), make_metrics(0.9)).decision is PreAnalysisDecision.PROCEED


def test_evaluate_before_analysis_on_real_images(checkerboard, flat_gray):
    result = evaluate_before_analysis(encode_image(flat_gray), encode_image(checkerboard))
    assert result.decision is PreAnalysisDecision.REJECT_AND_RETAKE
    assert result.reference_quality.sharpness == pytest.approx(0.0)


def test_evaluate_before_analysis_lenient_decode_failure(checkerboard):
    with pytest.raises(DecodeError):
        evaluate_before_analysis(b"junk", encode_image(checkerboard))

    result = evaluate_before_analysis(b"junk", encode_image(checkerboard), lenient=True)
    assert result.decision is PreAnalysisDecision.PROCEED_WITH_WARNING
    assert result.expected_confidence == 0.5
    assert [issue.severity for issue in result.issues] == [IssueSeverity.MAJOR]
