import csv
import json
import os
import sys
from dataclasses import replace

import numpy as np
import pytest
import requests

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import record_store
from conftest import encode_image, make_completed
from batch_analysis import analyze_batch
from batch_models import BatchPhotoPair, ItemResult, complete_job, create_job, record_item, start_job
from record_store import (
    CSV_FIELDNAMES,
    CsvExportSink,
    ExifVerdictSink,
    ExportSink,
    InMemoryRecordStore,
    JsonRecordStore,
    WebhookExportSink,
    read_exif_verdict,
    run_export_hooks,
    save_results_to_csv,
)


def _job(results, job_id="job-1"):
    pairs = [BatchPhotoPair(id=r.pair_id, reference_image_path=r.reference_image_path,
                            part_image_path=r.part_image_path) for r in results]
    job = start_job(create_job("line-2", pairs, job_id=job_id))
    for result in results:
        job = record_item(job, result)
    return complete_job(job, analyze_batch(job.id, job.results))


def test_in_memory_store_round_trip():
    store = InMemoryRecordStore()
    record_id = store.save({"id": "a", "status": "completed", "items": [1, 2]})
    store.save({"id": "b", "status": "failed"})

    assert record_id == "a"
    fetched = store.get("a")
    fetched["items"].append(3)
    assert store.get("a")["items"] == [1, 2]
    assert [r["id"] for r in store.query(status="failed")] == ["b"]
    assert store.get("missing") is None


def test_in_memory_store_assigns_ids():
    store = InMemoryRecordStore()
    record_id = store.save({"status": "completed"})
    assert store.get(record_id)["id"] == record_id


def test_json_store_survives_reload(tmp_path):
    path = tmp_path / "records" / "jobs.json"
    store = JsonRecordStore(path)
    store.save(_job([make_completed("p0")]).to_dict())

    reloaded = JsonRecordStore(path)
    record = reloaded.get("job-1")
    assert record["status"] == "completed"
    assert record["results"][0]["pair_id"] == "p0"
    assert json.loads(path.read_text())["job-1"]["name"] == "line-2"
    assert not list(path.parent.glob("*.tmp"))


def test_csv_export(tmp_path):
    pair = BatchPhotoPair(id="p1", reference_image_path="r.jpg", part_image_path="p.jpg")
    job = _job([make_completed("p0", verdict="fail"), ItemResult.failed(pair, "HTTP 503", 2.0, attempts=3)])
    output = tmp_path / "results.csv"
    save_results_to_csv(job, output)

    with open(output, newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        rows = list(reader)
        assert reader.fieldnames == CSV_FIELDNAMES
    assert [row["pair_id"] for row in rows] == ["p0", "p1"]
    assert rows[0]["overall_quality"] == "fail"
    assert rows[0]["batch_id"] == "job-1"
    assert rows[1]["status"] == "failed"
    assert rows[1]["error_message"] == "HTTP 503"
    assert rows[1]["attempts"] == "3"


def test_export_hooks_isolate_failures(tmp_path):
    class BrokenSink(ExportSink):
        name = "broken"

        def export(self, job):
            raise RuntimeError("no route to host")

    output = tmp_path / "out.csv"
    outcomes = run_export_hooks([BrokenSink(), CsvExportSink(output)], _job([make_completed("p0")]))
    assert outcomes == {"broken": False, "csv": True}
    assert output.exists()


def test_webhook_sink_posts_summary(monkeypatch):
    sent = {}

    class Response:
        def raise_for_status(self):
            pass

    def fake_post(url, json=None, timeout=None):
        sent.update(url=url, body=json, timeout=timeout)
        return Response()

    monkeypatch.setattr(record_store.requests, "post", fake_post)
    sink = WebhookExportSink("http://mes.local/hooks/inspection", timeout=5)
    assert sink.export(_job([make_completed("p0")]))
    assert sent["url"] == "http://mes.local/hooks/inspection"
    assert sent["body"]["id"] == "job-1"
    assert "results" not in sent["body"]
    assert sent["timeout"] == 5


def test_webhook_http_error_is_reported_false(monkeypatch):
    class Response:
        def raise_for_status(self):
            raise requests.HTTPError("500 Server Error")

    monkeypatch.setattr(record_store.requests, "post", lambda url, json=None, timeout=None: Response())
    outcomes = run_export_hooks([WebhookExportSink("http://mes.local")], _job([make_completed("p0")]))
    assert outcomes == {"webhook": False}


def test_exif_verdict_round_trip(tmp_path):
    image = np.full((32, 48, 3), 90, dtype=np.uint8)
    part = tmp_path / "p0_part.jpg"
    part.write_bytes(encode_image(image, "JPEG"))
    skipped = tmp_path / "p1_part.png"
    skipped.write_bytes(encode_image(image))

    results = []
    for pair_id, path in (("p0", part), ("p1", skipped)):
        result = make_completed(pair_id, verdict="pass", confidence=0.9)
        results.append(replace(result, part_image_path=str(path)))
    job = _job(results)

    assert ExifVerdictSink().export(job)
    verdict = read_exif_verdict(part)
    assert verdict["batch_id"] == "job-1"
    assert verdict["pair_id"] == "p0"
    assert verdict["overall_quality"] == "pass"
    assert verdict["outcome"] == "analyzed"
    assert read_exif_verdict(skipped) is None


@pytest.mark.parametrize("suffix", [".jpg", ".png"])
def test_read_exif_verdict_without_metadata(tmp_path, suffix):
    path = tmp_path / f"plain{suffix}"
    path.write_bytes(encode_image(np.zeros((8, 8, 3), dtype=np.uint8), "JPEG" if suffix == ".jpg" else "PNG"))
    assert read_exif_verdict(path) is None
