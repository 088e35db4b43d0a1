import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from conftest import make_completed
from batch_analysis import (
    BatchQualityTrend,
    PatternType,
    analyze_batch,
    compute_statistics,
    critical_issues,
    export_for_fine_tuning,
    overall_status,
    performance_metrics,
    quality_trend,
)
from batch_models import BatchPhotoPair, ItemResult, complete_job, create_job, record_item, start_job
from vision_client import QualityVerdict


def _failed(pair_id, part_type="A"):
    pair = BatchPhotoPair(id=pair_id, reference_image_path="r", part_image_path="p", part_type=part_type)
    return ItemResult.failed(pair, "Analysis timed out after 180s", 180.0, attempts=3)


def _mixed_results():
    results = []
    for i in range(8):
        verdict = "fail" if i < 6 else "pass"
        results.append(make_completed(f"a{i}", part_type="A", verdict=verdict))
    for i in range(2):
        results.append(make_completed(f"b{i}", part_type="B", verdict="pass"))
    return results


def test_part_type_failure_pattern():
    analysis = analyze_batch("batch-1", _mixed_results())
    failures = [p for p in analysis.patterns if p.type is PatternType.PART_TYPE_FAILURE]

    assert len(failures) == 1
    assert failures[0].part_type == "A"
    assert failures[0].confidence == pytest.approx(0.75)
    assert failures[0].affected_items == 6


def test_failure_rate_at_half_is_not_a_pattern():
    results = [make_completed(f"a{i}", verdict="fail" if i < 2 else "pass") for i in range(4)]
    analysis = analyze_batch("batch-2", results)
    assert not [p for p in analysis.patterns if p.type is PatternType.PART_TYPE_FAILURE]


def test_analysis_is_deterministic():
    results = _mixed_results() + [_failed("x1")]
    first = analyze_batch("batch-3", results)
    second = analyze_batch("batch-3", results)
    assert first == second
    assert first.executive_summary == second.executive_summary


def test_statistics_count_outcomes():
    results = _mixed_results() + [_failed("x1")] + [make_completed("w1", verdict="warning")]
    statistics = compute_statistics(results)
    assert statistics.total_processed == 12
    assert statistics.successful_count == 4
    assert statistics.failed_count == 6
    assert statistics.warning_count == 1
    assert statistics.error_count == 1
    assert statistics.gated_count == 0
    assert statistics.success_rate == pytest.approx(4 / 12)


@pytest.mark.parametrize("passes,expected", [
    (10, QualityVerdict.PASS),
    (9, QualityVerdict.PASS),
    (7, QualityVerdict.WARNING),
    (6, QualityVerdict.FAIL),
])
def test_overall_status_thresholds(passes, expected):
    results = [make_completed(f"p{i}", verdict="pass" if i < passes else "fail") for i in range(10)]
    assert overall_status(compute_statistics(results)) is expected


def test_empty_batch_is_failing_and_stable():
    analysis = analyze_batch("empty", [])
    assert analysis.overall_status is QualityVerdict.FAIL
    assert analysis.trend is BatchQualityTrend.STABLE
    assert analysis.overall_confidence == 0.0
    assert analysis.patterns == ()


def test_trend_needs_three_completed_items(timestamps):
    results = [make_completed("a", confidence=0.1, processed_at=timestamps[0]),
               make_completed("b", confidence=0.99, processed_at=timestamps[1])]
    assert quality_trend(results) is BatchQualityTrend.STABLE


def test_trend_follows_completion_time(timestamps):
    results = [
        make_completed(f"p{i}", confidence=0.2 if i < 3 else 0.95, processed_at=timestamps[i])
        for i in range(6)
    ]
    assert quality_trend(results) is BatchQualityTrend.IMPROVING
    assert quality_trend(list(reversed(results))) is BatchQualityTrend.IMPROVING

    declining = [
        make_completed(f"p{i}", confidence=0.95 if i < 3 else 0.2, processed_at=timestamps[i])
        for i in range(6)
    ]
    analysis = analyze_batch("batch-4", declining)
    assert analysis.trend is BatchQualityTrend.DECLINING
    assert PatternType.QUALITY_DEGRADATION in [p.type for p in analysis.patterns]


def test_critical_issues():
    results = _mixed_results() + [_failed("x1"), _failed("x2")]
    issues = critical_issues(compute_statistics(results))
    assert any(issue.startswith("High failure rate") for issue in issues)
    assert any(issue.startswith("Processing errors") for issue in issues)


def test_slow_items_raise_performance_pattern():
    results = [make_completed(f"p{i}", seconds=45.0 if i < 2 else 1.0) for i in range(4)]
    analysis = analyze_batch("slow", results)
    performance = [p for p in analysis.patterns if p.type is PatternType.PERFORMANCE_ISSUE]
    assert performance and performance[0].affected_items == 2
    assert any(rec.title == "Optimize processing performance" for rec in analysis.recommendations)


def test_performance_totals():
    results = [make_completed(f"p{i}", seconds=2.0) for i in range(3)]
    analysis = analyze_batch("perf", results, total_processing_seconds=3.6)
    assert analysis.performance.total_tokens == 600
    assert analysis.performance.total_cost == pytest.approx(0.018)
    assert analysis.performance.average_processing_seconds == pytest.approx(2.0)
    assert analysis.performance.throughput_per_hour == pytest.approx(3000.0)


def _finished_job():
    pairs = [BatchPhotoPair(id=f"p{i}", reference_image_path="r", part_image_path="p", part_type="A")
             for i in range(2)]
    job = start_job(create_job("export", pairs, operator_name="kim", job_id="job-9"))
    for i in range(2):
        job = record_item(job, make_completed(f"p{i}", verdict="fail" if i else "pass"))
    return complete_job(job, analyze_batch(job.id, job.results))


def test_export_for_fine_tuning():
    job = _finished_job()
    data = export_for_fine_tuning(job)

    assert data["batch_info"]["id"] == "job-9"
    assert data["batch_info"]["operator_name"] == "kim"
    assert [r["overall_quality"] for r in data["results"]] == ["pass", "fail"]
    assert data["results"][0]["processing_ms"] == 1000
    assert data["overall_analysis"]["overall_status"] == "fail"
    datetime.fromisoformat(data["exported_at"])


def test_performance_metrics_uses_job_wall_clock():
    job = _finished_job()
    assert job.finished_at - job.started_at < timedelta(seconds=5)
    metrics = performance_metrics(job)
    assert metrics.total_tokens == 400
    assert metrics.total_processing_seconds == pytest.approx(job.total_processing_seconds)


def test_all_errored_batch_reports_low_confidence():
    issues = critical_issues(compute_statistics([_failed("x1"), _failed("x2")]))
    assert "Low average confidence: 0%" in issues
    assert any(issue.startswith("Processing errors") for issue in issues)
