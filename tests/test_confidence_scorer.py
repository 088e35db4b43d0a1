import os
import sys
import threading
from datetime import datetime

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from conftest import make_ai_result, make_metrics
from confidence_scorer import (
    AnalysisComplexity,
    ConfidenceLevel,
    ConfidenceScorer,
    ContextualFlags,
    FactorType,
    HistoryStore,
    ModelPerformanceHistory,
    calculate,
    calculate_confidence,
    calculate_final,
    contextual_score,
    derive_final_complexity,
    historical_score,
    improvement_suggestions,
    prepare_contextual_data,
)
from inspection_config import DEFAULT_CONFIG, build_config
from inspection_errors import InspectionValidationError
from pre_analysis import decide
from vision_client import Defect


def test_confidence_weights_sum_to_one():
    weights = DEFAULT_CONFIG.confidence_weights.model_dump()
    assert sum(weights.values()) == pytest.approx(1.0, abs=1e-6)


def test_good_pair_simple_part_without_history_is_highly_confident():
    reference, part = make_metrics(0.9), make_metrics(0.92)
    assert decide(reference, part).should_proceed_to_ai

    score = calculate(reference, part, AnalysisComplexity.SIMPLE)
    # 0.3*0.91 + 0.25*0.95 + 0.2*0.7 + 0.15*0.7 + 0.1*0.95
    assert score.overall_confidence == pytest.approx(0.8505)
    assert score.overall_confidence >= 0.85
    assert score.historical_score == pytest.approx(0.7)
    assert score.confidence_level is ConfidenceLevel.HIGH
    assert score.is_reliable_for_decision_making
    assert not score.requires_human_review


def test_factors_cover_all_components():
    score = calculate(make_metrics(0.6), make_metrics(0.6), "complex")
    assert [factor.type for factor in score.factors] == list(FactorType)
    assert score.factor(FactorType.COMPLEXITY).score == pytest.approx(0.75)
    assert score.factor(FactorType.MODEL_RELIABILITY).score == pytest.approx(0.75)
    assert score.complexity is AnalysisComplexity.COMPLEX


def test_monotonic_in_image_quality():
    previous = -1.0
    for step in range(11):
        value = step / 10
        score = calculate(make_metrics(value), make_metrics(value)).overall_confidence
        assert score >= previous
        previous = score


def test_monotonic_in_context_history_and_complexity():
    reference, part = make_metrics(0.7), make_metrics(0.7)
    plain = calculate(reference, part).overall_confidence
    with_reference = calculate(reference, part, contextual_data={"has_reference_model": True}).overall_confidence
    reflective = calculate(reference, part, contextual_data={"reflective": True}).overall_confidence
    assert reflective < plain < with_reference

    weak = ModelPerformanceHistory(total_analyses=10, successful_analyses=2, recent_accuracy=0.3)
    strong = ModelPerformanceHistory(total_analyses=10, successful_analyses=9, recent_accuracy=0.95)
    assert calculate(reference, part, history=weak).overall_confidence < \
        calculate(reference, part, history=strong).overall_confidence

    tiers = [calculate(reference, part, tier).overall_confidence for tier in AnalysisComplexity]
    assert tiers == sorted(tiers, reverse=True)


def test_scores_are_clamped():
    score = calculate(make_metrics(1.0), make_metrics(1.0), "simple",
                      history=ModelPerformanceHistory(5, 5, 1.0),
                      contextual_data={"good_lighting": True, "stable": True, "reference_model": True})
    assert score.contextual_score == pytest.approx(1.0)
    assert 0.0 <= score.overall_confidence <= 1.0


def test_complexity_parse():
    assert AnalysisComplexity.parse(None) is AnalysisComplexity.MODERATE
    assert AnalysisComplexity.parse(" Complex ") is AnalysisComplexity.COMPLEX
    with pytest.raises(InspectionValidationError):
        AnalysisComplexity.parse("galactic")


def test_prepare_contextual_data_maps_aliases_and_ignores_unknown():
    flags = prepare_contextual_data({"good_lighting": 1, "bad_angle": True, "weather": "sunny"})
    assert flags == ContextualFlags(good_lighting_conditions=True, poor_angle=True)
    assert contextual_score(flags) == pytest.approx(0.65)


def test_historical_score_blend():
    assert historical_score(None) == 0.7
    assert historical_score(ModelPerformanceHistory()) == 0.7
    history = ModelPerformanceHistory(total_analyses=4, successful_analyses=2, recent_accuracy=0.8)
    assert historical_score(history) == pytest.approx(0.4 * 0.5 + 0.6 * 0.8)


def test_history_record_feedback_is_exponential_average():
    now = datetime(2024, 5, 1)
    history = ModelPerformanceHistory().record_feedback(True, 1.0, now=now)
    assert history.total_analyses == 1
    assert history.successful_analyses == 1
    assert history.recent_accuracy == pytest.approx(0.8 * 0.7 + 0.2 * 1.0)
    assert history.last_updated == now

    history = history.record_feedback(False, 0.1)
    assert history.total_analyses == 2
    assert history.success_rate == pytest.approx(0.5)
    assert history.recent_accuracy == pytest.approx(0.8 * 0.76 + 0.2 * 0.1)


def test_history_round_trip():
    history = ModelPerformanceHistory(3, 2, 0.65, datetime(2024, 2, 3, 4, 5, 6))
    assert ModelPerformanceHistory.from_dict(history.to_dict()) == history


def test_history_store_serializes_concurrent_updates(tmp_path):
    store = HistoryStore(tmp_path / "history.json")

    def worker():
        for _ in range(25):
            store.update(lambda h: h.record_feedback(True, 0.9))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get().total_analyses == 200
    assert store.get().successful_analyses == 200
    reloaded = HistoryStore(tmp_path / "history.json").get()
    assert reloaded.total_analyses == 200


def test_history_store_ignores_unreadable_file(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{not json")
    assert HistoryStore(path).get() == ModelPerformanceHistory()


def test_derive_final_complexity_rules():
    clean = decide(make_metrics(0.9), make_metrics(0.9))
    critical = Defect(type="missing", severity="critical", description="bolt missing")
    minor = Defect(type="deformed", severity="minor")

    assert derive_final_complexity(clean, make_ai_result("pass", 0.95), AnalysisComplexity.MODERATE) \
        is AnalysisComplexity.SIMPLE
    assert derive_final_complexity(clean, make_ai_result("fail", 0.9, [critical, critical]),
                                   AnalysisComplexity.SIMPLE) is AnalysisComplexity.EXTREME
    assert derive_final_complexity(clean, make_ai_result("fail", 0.5, [minor] * 6),
                                   AnalysisComplexity.SIMPLE) is AnalysisComplexity.EXTREME
    assert derive_final_complexity(clean, make_ai_result("fail", 0.9, [critical]),
                                   AnalysisComplexity.SIMPLE) is AnalysisComplexity.COMPLEX
    assert derive_final_complexity(clean, make_ai_result("warning", 0.4),
                                   AnalysisComplexity.MODERATE) is AnalysisComplexity.COMPLEX


def test_calculate_final_uses_measured_context_and_alignment():
    pre = decide(make_metrics(0.9), make_metrics(0.9))
    ai_result = make_ai_result("pass", 0.8)
    score = calculate_final(pre, ai_result, "moderate")

    flags = score.context["flags"]
    assert flags["good_lighting_conditions"] is True
    assert flags["poor_angle"] is False
    assert score.context["initial_complexity"] == "moderate"
    assert score.context["confidence_alignment"] == pytest.approx(1 - abs(0.9 * 0.95 - 0.8))
    assert score.contextual_score == pytest.approx(0.8)


def test_improvement_suggestions_for_weak_factors():
    score = calculate(make_metrics(0.3), make_metrics(0.3), "extreme",
                      contextual_data={"reflective": True, "bad_angle": True})
    suggestions = improvement_suggestions(score)
    assert len(suggestions) == 2
    assert improvement_suggestions(calculate(make_metrics(0.9), make_metrics(0.9))) == []


def test_scorer_reads_shared_history():
    store = HistoryStore(initial=ModelPerformanceHistory(10, 10, 1.0))
    scorer = ConfidenceScorer(build_config("balanced"), store)
    with_history = scorer.calculate(make_metrics(0.8), make_metrics(0.8))
    without = calculate_confidence(make_metrics(0.8), make_metrics(0.8))
    assert with_history.historical_score == pytest.approx(1.0)
    assert with_history.overall_confidence > without.overall_confidence
