"""
Persistence and post-processing hooks for finished batches.

Record stores are plain CRUD: ``save``, ``get``, ``query``. Export sinks are
fire-and-forget: ``run_export_hooks`` calls each one, logs failures and never
lets them reach the orchestration result.
"""

from __future__ import annotations

import copy
import csv
import json
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import piexif
import piexif.helper
import requests
from PIL import Image

from batch_models import BatchJob

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}

    def save(self, record: Mapping[str, Any]) -> str:
        record_id = str(record.get("id") or uuid.uuid4().hex)
        stored = copy.deepcopy(dict(record))
        stored["id"] = record_id
        with self._lock:
            self._records[record_id] = stored
        return record_id

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def query(self, **filters: Any) -> List[Dict[str, Any]]:
        with self._lock:
            records = list(self._records.values())
        return [copy.deepcopy(r) for r in records if all(r.get(k) == v for k, v in filters.items())]


class JsonRecordStore(InMemoryRecordStore):
    """Record store backed by a single JSON file, rewritten atomically per save."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path).expanduser()
        if self.path.exists():
            data = json.loads(self.path.read_text() or "{}")
            self._records = {str(k): v for k, v in data.items()}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(self._records, handle, indent=2, default=str)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def save(self, record: Mapping[str, Any]) -> str:
        record_id = str(record.get("id") or uuid.uuid4().hex)
        stored = json.loads(json.dumps(dict(record), default=str))
        stored["id"] = record_id
        with self._lock:
            self._records[record_id] = stored
            self._flush()
        return record_id


class ExportSink:
    """Base class; ``export`` returns True on success."""

    name = "export"

    def export(self, job: BatchJob) -> bool:
        raise NotImplementedError


CSV_FIELDNAMES = [
    "batch_id",
    "pair_id",
    "part_type",
    "part_serial",
    "status",
    "outcome",
    "decision",
    "overall_quality",
    "ai_confidence",
    "calibrated_confidence",
    "combined_quality_score",
    "defects",
    "top_recommendation",
    "processing_seconds",
    "attempts",
    "tokens_used",
    "tokens_saved",
    "estimated_cost",
    "error_message",
    "reference_image_path",
    "part_image_path",
]


def save_results_to_csv(job: BatchJob, output_path: Union[str, Path]) -> None:
    """Write one CSV row per item result."""
    with open(output_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=CSV_FIELDNAMES)
        writer.writeheader()
        for result in job.results:
            writer.writerow({"batch_id": job.id, **result.to_row()})
    logger.info(f"Results saved to: {output_path}")


class CsvExportSink(ExportSink):
    name = "csv"

    def __init__(self, output_path: Union[str, Path]):
        self.output_path = Path(output_path)

    def export(self, job: BatchJob) -> bool:
        save_results_to_csv(job, self.output_path)
        return True


class WebhookExportSink(ExportSink):
    """POST the batch summary to an enterprise endpoint (MES/QMS/ERP bridge)."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 30.0, include_results: bool = False):
        self.url = url
        self.timeout = timeout
        self.include_results = include_results

    def export(self, job: BatchJob) -> bool:
        response = requests.post(self.url, json=job.to_dict(include_results=self.include_results),
                                 timeout=self.timeout)
        response.raise_for_status()
        return True


class ExifVerdictSink(ExportSink):
    """Embed each item's verdict into the part image's EXIF UserComment (JPEG only)."""

    name = "exif"

    def export(self, job: BatchJob) -> bool:
        written = 0
        for result in job.results:
            path = Path(result.part_image_path)
            if not result.is_completed or path.suffix.lower() not in (".jpg", ".jpeg"):
                continue
            verdict = {
                "batch_id": job.id,
                "pair_id": result.pair_id,
                "outcome": result.outcome.value if result.outcome else None,
                "overall_quality": result.overall_quality.value if result.overall_quality else None,
                "confidence": result.confidence_score,
            }
            with Image.open(path) as img:
                img.load()
                exif_dict = piexif.load(img.info.get("exif", b"")) if img.info.get("exif") else {
                    "0th": {}, "Exif": {}, "GPS": {}, "1st": {}, "Interop": {},
                }
                exif_dict["Exif"][piexif.ExifIFD.UserComment] = piexif.helper.UserComment.dump(
                    json.dumps(verdict, ensure_ascii=False)
                )
                exif_bytes = piexif.dump(exif_dict)
                img.save(path, exif=exif_bytes)
            written += 1
        logger.info(f"Embedded inspection verdicts into {written} part images")
        return True


def read_exif_verdict(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    with Image.open(path) as img:
        exif_data = img.info.get("exif", b"")
    if not exif_data:
        return None
    exif_dict = piexif.load(exif_data)
    raw = exif_dict.get("Exif", {}).get(piexif.ExifIFD.UserComment)
    if not raw:
        return None
    return json.loads(piexif.helper.UserComment.load(raw))


def run_export_hooks(sinks: Iterable[ExportSink], job: BatchJob) -> Dict[str, bool]:
    """Call every sink; failures are logged and reported as False."""
    outcomes: Dict[str, bool] = {}
    for sink in sinks:
        try:
            outcomes[sink.name] = bool(sink.export(job))
        except Exception as exc:
            logger.error(f"Export sink '{sink.name}' failed for batch {job.id}: {exc}")
            outcomes[sink.name] = False
    return outcomes
