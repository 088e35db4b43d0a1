import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from conftest import make_completed, make_metrics
from batch_models import (
    BatchPhotoPair,
    BatchStatus,
    ItemOutcome,
    ItemResult,
    complete_job,
    create_job,
    fail_job,
    record_item,
    start_job,
)
from inspection_errors import JobTransitionError
from pre_analysis import decide


def _pairs(count):
    return [BatchPhotoPair(id=f"p{i}", reference_image_path=f"p{i}_ref.jpg", part_image_path=f"p{i}_part.jpg")
            for i in range(count)]


def test_new_job_is_pending():
    job = create_job("night shift", _pairs(3), operator_name="alex")
    assert job.status is BatchStatus.PENDING
    assert job.total_pairs == 3
    assert job.processed_pairs == 0
    assert job.progress_percentage == 0.0
    assert len(job.id) == 12


def test_duplicate_pair_ids_are_rejected():
    pairs = _pairs(2) + _pairs(1)
    with pytest.raises(JobTransitionError):
        create_job("dupes", pairs)


def test_lifecycle_counts_and_progress():
    job = start_job(create_job("run", _pairs(2)))
    assert job.status is BatchStatus.PROCESSING
    assert job.started_at is not None

    job = record_item(job, make_completed("p0"))
    assert job.progress_percentage == 50.0
    failed = ItemResult.failed(BatchPhotoPair(id="p1", reference_image_path="r", part_image_path="p"),
                               "boom", 0.5, attempts=3)
    job = record_item(job, failed)
    assert (job.completed_pairs, job.failed_pairs) == (1, 1)
    assert job.error_messages == ("Pair p1: boom",)

    job = complete_job(job)
    assert job.status is BatchStatus.COMPLETED
    assert job.status.is_terminal
    assert job.finished_at >= job.started_at


def test_terminal_states_are_final():
    job = complete_job(start_job(create_job("done", [])))
    with pytest.raises(JobTransitionError):
        fail_job(job, "late failure")
    with pytest.raises(JobTransitionError):
        start_job(job)
    with pytest.raises(JobTransitionError):
        complete_job(job)

    failed = fail_job(start_job(create_job("broken", _pairs(1))), "endpoint down")
    assert failed.status is BatchStatus.FAILED
    assert failed.error_messages[-1] == "Batch failed: endpoint down"
    with pytest.raises(JobTransitionError):
        record_item(failed, make_completed("p0"))


def test_record_item_guards():
    pending = create_job("pending", _pairs(1))
    with pytest.raises(JobTransitionError):
        record_item(pending, make_completed("p0"))

    job = record_item(start_job(pending), make_completed("p0"))
    with pytest.raises(JobTransitionError):
        record_item(job, make_completed("p0"))


def test_item_outcome_follows_gate_decision():
    pair = _pairs(1)[0]
    rejected = ItemResult.completed(pair, 0.1, pre_analysis=decide(make_metrics(0.1), make_metrics(0.1)))
    optimize = ItemResult.completed(pair, 0.1, pre_analysis=decide(make_metrics(0.4), make_metrics(0.9)))
    analyzed = make_completed("p0")

    assert rejected.outcome is ItemOutcome.RETAKE_REQUIRED
    assert rejected.tokens_saved == 200
    assert optimize.outcome is ItemOutcome.OPTIMIZE_FIRST
    assert optimize.tokens_saved == 50
    assert analyzed.outcome is ItemOutcome.ANALYZED


def test_item_serialization():
    result = make_completed("p0", verdict="warning", confidence=0.65)
    row = result.to_row()
    assert row["overall_quality"] == "warning"
    assert row["ai_confidence"] == "0.650"
    assert row["status"] == "completed"
    data = result.to_dict()
    assert data["ai_result"]["overall_quality"] == "warning"
    assert data["pre_analysis"]["decision"] == "proceed"
    # mean of model confidence and pre-analysis average
    assert result.combined_quality_score == pytest.approx((0.65 + 0.9) / 2)
