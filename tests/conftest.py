import io
import os
import sys
from datetime import datetime, timedelta

import numpy as np
import pytest
from PIL import Image

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from batch_models import BatchPhotoPair, ItemResult
from inspection_config import build_config
from pre_analysis import decide
from quality_metrics import ImageQualityMetrics
from vision_client import AIAnalysisResult

CLEAN_SCORES = {
    "sharpness": 0.9,
    "brightness": 0.55,
    "contrast": 0.6,
    "noise_level": 0.1,
    "resolution": 1.0,
    "compression": 0.8,
    "object_coverage": 0.9,
    "edge_clarity": 0.8,
}


def make_metrics(overall, **overrides):
    """Metrics with issue-free sub-scores and an explicit overall score."""
    scores = dict(CLEAN_SCORES)
    scores.update(overrides)
    return ImageQualityMetrics(overall_score=overall, width=1920, height=1080, **scores)


def make_ai_result(verdict="pass", confidence=0.9, defects=()):
    return AIAnalysisResult(
        overall_quality=verdict,
        confidence_score=confidence,
        summary=f"{verdict} result",
        defects=list(defects),
    )


def make_completed(pair_id, part_type="A", verdict="pass", confidence=0.9, processed_at=None, seconds=1.0):
    pair = BatchPhotoPair(id=pair_id, reference_image_path=f"{pair_id}_ref.png",
                          part_image_path=f"{pair_id}_part.png", part_type=part_type)
    pre = decide(make_metrics(0.9), make_metrics(0.9))
    return ItemResult.completed(
        pair,
        processing_seconds=seconds,
        pre_analysis=pre,
        ai_result=make_ai_result(verdict, confidence),
        tokens_used=200,
        estimated_cost=0.006,
        processed_at=processed_at or datetime(2024, 1, 1, 12, 0, 0),
    )


def encode_image(array, fmt="PNG"):
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def fast_config():
    return build_config("balanced", {
        "batch": {
            "chunk_size": 3,
            "max_retries": 2,
            "inter_chunk_delay_seconds": 0,
            "backoff_step_seconds": 0,
            "item_timeout_seconds": 5,
        },
    })


@pytest.fixture
def checkerboard():
    tile = (np.indices((64, 64)).sum(axis=0) % 2) * 255
    return np.stack([tile] * 3, axis=-1).astype(np.uint8)


@pytest.fixture
def flat_gray():
    return np.full((64, 64, 3), 128, dtype=np.uint8)


@pytest.fixture
def timestamps():
    start = datetime(2024, 1, 1, 8, 0, 0)
    return [start + timedelta(minutes=i) for i in range(20)]
