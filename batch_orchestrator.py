"""
Batch orchestration: runs every photo pair of a job through pre-analysis,
the vision call, confidence scoring and recommendations.

Items run in chunks of ``chunk_size`` concurrent workers. Each item gets
``max_retries`` retries, every attempt bounded by ``item_timeout_seconds``;
an item that runs out of attempts is recorded as failed and the batch keeps
going. The job snapshot is the only shared state and is folded under a lock,
one item at a time, with a snapshot published to the observer after each fold.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from batch_analysis import analyze_batch
from batch_models import (
    BatchJob,
    BatchPhotoPair,
    BatchStatus,
    ItemResult,
    complete_job,
    fail_job,
    record_item,
    start_job,
)
from confidence_scorer import HistoryStore, calculate, calculate_final
from inspection_config import DEFAULT_CONFIG, InspectionConfig
from inspection_errors import PERMANENT_ERRORS, AnalysisTimeoutError
from pre_analysis import decide
from quality_analyzer import ImageQualityAnalyzer
from record_store import ExportSink, run_export_hooks
from recommendation_engine import recommend
from vision_client import VisionClient

logger = logging.getLogger(__name__)

Observer = Callable[[BatchJob], None]
ItemAnalyzer = Callable[[BatchPhotoPair, str], ItemResult]


def chunked(pairs: Sequence[BatchPhotoPair], size: int) -> List[Sequence[BatchPhotoPair]]:
    return [pairs[i:i + size] for i in range(0, len(pairs), size)]


class BatchOrchestrator:
    def __init__(
        self,
        config: Optional[InspectionConfig] = None,
        vision_client: Optional[VisionClient] = None,
        analyzer: Optional[ImageQualityAnalyzer] = None,
        history_store: Optional[HistoryStore] = None,
        record_store=None,
        export_sinks: Sequence[ExportSink] = (),
        item_analyzer: Optional[ItemAnalyzer] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or DEFAULT_CONFIG
        self.vision_client = vision_client or VisionClient(self.config.vision)
        self.analyzer = analyzer or ImageQualityAnalyzer(self.config)
        self.history_store = history_store or HistoryStore()
        self.record_store = record_store
        self.export_sinks = list(export_sinks)
        self.item_analyzer = item_analyzer or self.analyze_one_item
        self.sleep = sleep

        self._cancel = threading.Event()
        self._lock = threading.RLock()
        self._snapshots: List[BatchJob] = []
        self.export_outcomes: Dict[str, bool] = {}

    def cancel(self) -> None:
        """Stop scheduling further chunks; items already running finish."""
        logger.info("Cancellation requested")
        self._cancel.set()

    def snapshots(self) -> List[BatchJob]:
        with self._lock:
            return list(self._snapshots)

    def _publish(self, job: BatchJob, observer: Optional[Observer]) -> None:
        self._snapshots.append(job)
        if observer is not None:
            try:
                observer(job)
            except Exception as e:
                logger.error(f"Progress observer raised for job {job.id}: {e}")

    def analyze_one_item(self, pair: BatchPhotoPair, complexity: str) -> ItemResult:
        """Full single-item pipeline: metrics, gate, vision call, scoring, recommendations."""
        started = time.monotonic()
        reference_bytes = Path(pair.reference_image_path).read_bytes()
        part_bytes = Path(pair.part_image_path).read_bytes()
        reference = self.analyzer.analyze(reference_bytes)
        part = self.analyzer.analyze(part_bytes)

        pre_analysis = decide(reference, part, self.config)
        history = self.history_store.get()

        if not pre_analysis.should_proceed_to_ai:
            logger.info(f"Pair {pair.id} gated before AI analysis: {pre_analysis.decision.value}")
            confidence = calculate(reference, part, complexity, history, pair.context, self.config)
            return ItemResult.completed(
                pair,
                processing_seconds=time.monotonic() - started,
                pre_analysis=pre_analysis,
                confidence=confidence,
                recommendations=recommend(reference, part, confidence, pre_analysis),
            )

        ai_result = self.vision_client.analyze_images(reference_bytes, part_bytes, pair.part_type)
        confidence = calculate_final(pre_analysis, ai_result, complexity, history, pair.context, self.config)
        tokens = ai_result.tokens_used or self.config.tokens.tokens_per_analysis
        return ItemResult.completed(
            pair,
            processing_seconds=time.monotonic() - started,
            pre_analysis=pre_analysis,
            ai_result=ai_result,
            confidence=confidence,
            recommendations=recommend(reference, part, confidence, pre_analysis, ai_result),
            tokens_used=tokens,
            estimated_cost=tokens * self.config.tokens.cost_per_token_usd,
        )

    def _attempt(self, pair: BatchPhotoPair, complexity: str) -> ItemResult:
        """One attempt on a dedicated thread; the timeout counts from submission."""
        timeout = self.config.batch.item_timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"inspect-{pair.id}")
        try:
            future = executor.submit(self.item_analyzer, pair, complexity)
            done, _ = wait([future], timeout=timeout)
            if not done:
                raise AnalysisTimeoutError(f"Analysis timed out after {timeout:g}s")
            return future.result()
        finally:
            # a timed-out analyzer keeps its own thread; nobody else waits on it
            executor.shutdown(wait=False)

    def process_item(self, pair: BatchPhotoPair, complexity: str) -> ItemResult:
        """Run one item with per-attempt timeout and linear backoff. Never raises."""
        settings = self.config.batch
        attempts = settings.max_retries + 1
        started = time.monotonic()
        last_error: Optional[BaseException] = None
        attempt = 0

        for attempt in range(attempts):
            try:
                result = self._attempt(pair, complexity)
                return replace(result, attempts=attempt + 1)
            except PERMANENT_ERRORS as e:
                logger.error(f"Pair {pair.id} failed permanently, not retrying: {e}")
                last_error = e
                break
            except Exception as e:
                last_error = e

            if attempt < attempts - 1:
                delay = settings.backoff_step_seconds * (attempt + 1)
                logger.warning(
                    f"Pair {pair.id} attempt {attempt + 1}/{attempts} failed, retrying in {delay:g}s: {last_error}"
                )
                self.sleep(delay)

        logger.error(f"Pair {pair.id} failed after {attempt + 1} attempt(s): {last_error}")
        return ItemResult.failed(pair, str(last_error), time.monotonic() - started, attempt + 1)

    def run(self, job: BatchJob, observer: Optional[Observer] = None) -> BatchJob:
        """Drive ``job`` to a terminal state and return the final snapshot."""
        settings = self.config.batch
        self._cancel.clear()
        with self._lock:
            self._snapshots = []
            job = start_job(job)
            self._publish(job, observer)

        chunks = chunked(job.pairs, settings.chunk_size)
        logger.info(f"Starting batch {job.id} ({job.name}): {job.total_pairs} pairs in {len(chunks)} chunks")

        try:
            for index, chunk in enumerate(chunks):
                if self._cancel.is_set():
                    with self._lock:
                        job = fail_job(job, f"cancelled before chunk {index + 1}/{len(chunks)}")
                        self._publish(job, observer)
                    logger.warning(f"Batch {job.id} cancelled with {job.processed_pairs}/{job.total_pairs} processed")
                    return job

                with ThreadPoolExecutor(max_workers=settings.chunk_size, thread_name_prefix="inspect-item") as executor:
                    futures = {
                        executor.submit(self.process_item, pair, pair.complexity or job.complexity): pair
                        for pair in chunk
                    }
                    for future in as_completed(futures):
                        result = future.result()
                        with self._lock:
                            job = record_item(job, result)
                            self._publish(job, observer)

                logger.info(
                    f"Chunk {index + 1}/{len(chunks)} done: {job.processed_pairs}/{job.total_pairs} processed "
                    f"({job.failed_pairs} failed)"
                )
                if index < len(chunks) - 1 and settings.inter_chunk_delay_seconds > 0:
                    self.sleep(settings.inter_chunk_delay_seconds)

            elapsed = (datetime.now() - job.started_at).total_seconds()
            analysis = analyze_batch(job.id, job.results, total_processing_seconds=elapsed, config=self.config)
            with self._lock:
                job = self._finish(job, analysis)
        except Exception as e:
            logger.error(f"Batch {job.id} failed: {e}")
            with self._lock:
                if not job.status.is_terminal:
                    job = fail_job(job, e)
                self._publish(job, observer)
            return job

        with self._lock:
            self._publish(job, observer)

        if job.status is BatchStatus.COMPLETED and self.export_sinks:
            self.export_outcomes = run_export_hooks(self.export_sinks, job)
        logger.info(
            f"Batch {job.id} {job.status.value}: {job.completed_pairs} completed, {job.failed_pairs} failed"
        )
        return job

    def _finish(self, job: BatchJob, analysis) -> BatchJob:
        """Complete a processing job, or fail it if its record cannot be stored."""
        completed = complete_job(job, analysis)
        if self.record_store is None:
            return completed
        try:
            self.record_store.save(completed.to_dict())
        except Exception as e:
            logger.error(f"Could not persist batch {job.id}: {e}")
            return fail_job(job, f"could not persist job record: {e}")
        return completed


def run_batch(job: BatchJob, config: Optional[InspectionConfig] = None, observer: Optional[Observer] = None,
              **kwargs) -> BatchJob:
    return BatchOrchestrator(config=config, **kwargs).run(job, observer)
