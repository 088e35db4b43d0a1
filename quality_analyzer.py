"""
Deterministic image quality metrics computed from raw pixel data.

All statistics run on float luminance in [0, 1]. Neighbourhood based
measures (Laplacian, 8-neighbour noise, Sobel) only use interior pixels so
the one-pixel border never contributes padding artefacts.

Note on object coverage: it is an edge-density proxy (2 x edge clarity),
not a segmentation of the part. Decision thresholds were tuned on this
scale, so keep it unless every threshold is re-tuned together.
"""

from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from inspection_config import DEFAULT_CONFIG, InspectionConfig
from inspection_errors import DecodeError
from quality_metrics import ImageQualityMetrics, clamp

logger = logging.getLogger(__name__)

# Allow large factory camera frames
Image.MAX_IMAGE_PIXELS = None

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)
LAPLACIAN_KERNEL = np.array([[0, -1, 0], [-1, 4, -1], [0, -1, 0]], dtype=np.float64)

SHARPNESS_SCALE = 1000.0
NOISE_SCALE = 10.0
EDGE_SCALE = 4.0

MIN_RESOLUTION_PIXELS = 640 * 480
GOOD_RESOLUTION_PIXELS = 1920 * 1080
# 500 KB for a Full HD frame
REFERENCE_BYTES_PER_PIXEL = (500 * 1024) / GOOD_RESOLUTION_PIXELS


@contextmanager
def open_image_for_analysis(data: bytes) -> Iterator[Image.Image]:
    """Decode bytes into an RGB PIL image, raising DecodeError on failure."""
    if not data:
        raise DecodeError("Empty image payload")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Could not decode image: {exc}") from exc
    try:
        yield img.convert("RGB") if img.mode != "RGB" else img
    finally:
        img.close()


def to_luminance(img: Image.Image) -> np.ndarray:
    rgb = np.asarray(img, dtype=np.float64)
    return (rgb[..., :3] @ LUMA_WEIGHTS) / 255.0


def _interior(arr: np.ndarray) -> np.ndarray:
    return arr[1:-1, 1:-1]


def compute_sharpness(gray: np.ndarray) -> float:
    """Mean squared Laplacian response, scaled and clamped."""
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    response = cv2.filter2D(gray, cv2.CV_64F, LAPLACIAN_KERNEL, borderType=cv2.BORDER_REPLICATE)
    return clamp(float(np.mean(_interior(response) ** 2)) * SHARPNESS_SCALE)


def compute_brightness(gray: np.ndarray) -> float:
    return clamp(float(gray.mean()))


def compute_contrast(gray: np.ndarray) -> float:
    """RMS contrast around the mean luminance."""
    mean = gray.mean()
    return clamp(float(np.sqrt(np.mean((gray - mean) ** 2))))


def compute_noise_level(gray: np.ndarray) -> float:
    """Mean 3x3 local variance (8-neighbour squared differences / 8). Higher = noisier."""
    height, width = gray.shape
    if height < 3 or width < 3:
        return 0.0
    center = gray[1:-1, 1:-1]
    total = np.zeros_like(center)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dy == 0 and dx == 0:
                continue
            neighbour = gray[1 + dy:height - 1 + dy, 1 + dx:width - 1 + dx]
            total += (neighbour - center) ** 2
    return clamp(float(np.mean(total / 8.0)) * NOISE_SCALE)


def compute_resolution(width: int, height: int) -> float:
    pixels = width * height
    if pixels >= GOOD_RESOLUTION_PIXELS:
        return 1.0
    if pixels < MIN_RESOLUTION_PIXELS:
        return clamp(0.5 * pixels / MIN_RESOLUTION_PIXELS)
    ratio = (pixels - MIN_RESOLUTION_PIXELS) / (GOOD_RESOLUTION_PIXELS - MIN_RESOLUTION_PIXELS)
    return clamp(0.5 + 0.5 * ratio)


def compute_compression(byte_count: int, width: int, height: int) -> float:
    """File-size-per-pixel proxy: heavier compression means fewer bytes per pixel."""
    pixels = width * height
    if pixels <= 0:
        return 0.0
    return clamp((byte_count / pixels) / REFERENCE_BYTES_PER_PIXEL)


def compute_edge_clarity(gray: np.ndarray) -> float:
    """Mean Sobel gradient magnitude, scaled and clamped."""
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    magnitude = np.sqrt(_interior(gx) ** 2 + _interior(gy) ** 2)
    return clamp(float(magnitude.mean()) * EDGE_SCALE)


def compute_object_coverage(edge_clarity: float) -> float:
    return clamp(edge_clarity * 2.0)


def analyze_image_bytes(data: bytes, config: Optional[InspectionConfig] = None) -> ImageQualityMetrics:
    """Compute the eight quality metrics for an encoded image.

    Raises DecodeError if the bytes are not a readable raster image.
    """
    config = config or DEFAULT_CONFIG
    with open_image_for_analysis(data) as img:
        width, height = img.size
        gray = to_luminance(img)

    edge_clarity = compute_edge_clarity(gray)
    metrics = ImageQualityMetrics.from_scores(
        weights=config.quality_weights,
        width=width,
        height=height,
        sharpness=compute_sharpness(gray),
        brightness=compute_brightness(gray),
        contrast=compute_contrast(gray),
        noise_level=compute_noise_level(gray),
        resolution=compute_resolution(width, height),
        compression=compute_compression(len(data), width, height),
        object_coverage=compute_object_coverage(edge_clarity),
        edge_clarity=edge_clarity,
    )
    logger.debug(f"Analyzed {width}x{height} image: {metrics}")
    return metrics


def analyze_image_file(path: Union[str, Path], config: Optional[InspectionConfig] = None) -> ImageQualityMetrics:
    image_path = Path(path)
    try:
        return analyze_image_bytes(image_path.read_bytes(), config)
    except DecodeError as exc:
        raise DecodeError(f"{image_path}: {exc}") from exc


class ImageQualityAnalyzer:
    """Callable wrapper so the orchestrator can inject an alternative analyzer."""

    def __init__(self, config: Optional[InspectionConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def analyze(self, data: bytes) -> ImageQualityMetrics:
        return analyze_image_bytes(data, self.config)

    def analyze_file(self, path: Union[str, Path]) -> ImageQualityMetrics:
        return analyze_image_file(path, self.config)


def evaluate_image_quality(data: bytes, config: Optional[InspectionConfig] = None) -> ImageQualityMetrics:
    """Single-image entry point for callers outside batch mode."""
    return analyze_image_bytes(data, config)
