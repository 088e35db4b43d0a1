#!/usr/bin/env python3
"""
Part Inspection Batch Runner

Runs reference/part photo pairs through the inspection pipeline:
- Pre-analysis image quality gate (reject / optimize / proceed)
- Vision model comparison of the part against its reference
- Calibrated confidence and prioritized remediation steps
- Batch statistics, quality trend and failure patterns

Pairs come from a CSV manifest (id,reference,part,part_type,part_serial,notes,complexity,context)
or from a folder of ``<name>_ref.<ext>`` / ``<name>_part.<ext>`` files.
"""

import argparse
import csv
import json
import logging
import logging.handlers
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from colorama import Fore, Style, init
from pydantic import ValidationError
from tqdm import tqdm

from batch_models import BatchJob, BatchPhotoPair, BatchStatus, create_job
from batch_orchestrator import BatchOrchestrator
from confidence_scorer import HistoryStore
from inspection_config import get_available_profiles, load_config
from inspection_errors import InspectionError
from record_store import CsvExportSink, ExifVerdictSink, JsonRecordStore, WebhookExportSink

init(autoreset=True)

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.tif', '.tiff', '.bmp', '.webp']
REFERENCE_SUFFIX = "_ref"
PART_SUFFIX = "_part"


def setup_logging(log_file: Optional[str] = None, verbose: bool = False, debug: bool = False):
    """Configure root logging; WARNING by default, --verbose enables INFO, --debug enables DEBUG."""
    if debug:
        log_level = logging.DEBUG
    elif verbose:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5  # 10MB per file, 5 backups
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")


def _parse_context(raw: str) -> Dict[str, bool]:
    hints = {}
    for token in (raw or "").replace(",", ";").split(";"):
        token = token.strip().lower()
        if token:
            hints[token] = True
    return hints


def load_manifest(manifest_path: str, base_dir: Optional[str] = None) -> List[BatchPhotoPair]:
    """Read photo pairs from a CSV manifest. Relative paths resolve against the manifest folder."""
    base = Path(base_dir) if base_dir else Path(manifest_path).resolve().parent
    pairs = []
    with open(manifest_path, newline='', encoding='utf-8') as csvfile:
        reader = csv.DictReader(csvfile)
        missing = {'reference', 'part'} - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"Manifest {manifest_path} is missing columns: {', '.join(sorted(missing))}")
        for index, row in enumerate(reader, start=1):
            reference = Path(row['reference'].strip())
            part = Path(row['part'].strip())
            pairs.append(BatchPhotoPair(
                id=(row.get('id') or '').strip() or f"pair-{index:04d}",
                reference_image_path=str(reference if reference.is_absolute() else base / reference),
                part_image_path=str(part if part.is_absolute() else base / part),
                part_type=(row.get('part_type') or '').strip(),
                part_serial=(row.get('part_serial') or '').strip() or None,
                notes=(row.get('notes') or '').strip() or None,
                complexity=(row.get('complexity') or '').strip().lower() or None,
                context=_parse_context(row.get('context') or ''),
            ))
    return pairs


def find_pairs(directory: str, extensions: List[str], part_type: str = "") -> List[BatchPhotoPair]:
    """Match ``<name>_ref`` and ``<name>_part`` images in one folder."""
    references: Dict[str, Path] = {}
    parts: Dict[str, Path] = {}
    for path in sorted(Path(directory).iterdir()):
        if not path.is_file() or path.suffix.lower() not in extensions:
            continue
        stem = path.stem
        if stem.lower().endswith(REFERENCE_SUFFIX):
            references[stem[:-len(REFERENCE_SUFFIX)]] = path
        elif stem.lower().endswith(PART_SUFFIX):
            parts[stem[:-len(PART_SUFFIX)]] = path

    unmatched = sorted(set(references) ^ set(parts))
    for name in unmatched:
        logger.warning(f"Skipping '{name}': no matching {'part' if name in references else 'reference'} image")

    return [
        BatchPhotoPair(
            id=name,
            reference_image_path=str(references[name]),
            part_image_path=str(parts[name]),
            part_type=part_type,
        )
        for name in sorted(set(references) & set(parts))
    ]


def print_summary(job: BatchJob) -> None:
    """Print the batch verdict counts, statistics, issues and patterns."""
    print("\n" + "="*80)
    print(f"{Fore.CYAN}{Style.BRIGHT}PART INSPECTION SUMMARY: {job.name}{Style.RESET_ALL}")
    print("="*80)
    status_color = Fore.GREEN if job.status is BatchStatus.COMPLETED else Fore.RED
    print(f"\nBatch {job.id}: {status_color}{job.status.value.upper()}{Style.RESET_ALL}")
    print(f"Total pairs: {job.total_pairs}")
    print(f"Completed: {job.completed_pairs}")
    print(f"Failed: {job.failed_pairs}")

    print(f"\n{Style.BRIGHT}VERDICTS:{Style.RESET_ALL}")
    print(f"  {Fore.GREEN}PASS: {job.pass_count}{Style.RESET_ALL}")
    print(f"  {Fore.YELLOW}WARNING: {job.warning_count}{Style.RESET_ALL}")
    print(f"  {Fore.RED}FAIL: {job.fail_count}{Style.RESET_ALL}")

    analysis = job.overall_analysis
    if analysis is not None:
        stats = analysis.statistics
        perf = analysis.performance
        print(f"  {Fore.MAGENTA}GATED (retake/optimize): {stats.gated_count}{Style.RESET_ALL}")
        print(f"\n{Style.BRIGHT}OVERALL: {analysis.overall_status.value.upper()} "
              f"(confidence {analysis.overall_confidence:.1%}, trend {analysis.trend.value}){Style.RESET_ALL}")
        print(f"Success rate: {stats.success_rate:.1%}")
        print(f"Tokens used: {perf.total_tokens} (saved {perf.tokens_saved}), cost ${perf.total_cost:.4f}")
        print(f"Throughput: {perf.throughput_per_hour:.1f} pairs/hour")
        print(f"\n{analysis.executive_summary}")

        if analysis.critical_issues:
            print(f"\n{Fore.RED}{Style.BRIGHT}CRITICAL ISSUES:{Style.RESET_ALL}")
            for issue in analysis.critical_issues:
                print(f"  - {issue}")
        if analysis.patterns:
            print(f"\n{Style.BRIGHT}PATTERNS:{Style.RESET_ALL}")
            for pattern in analysis.patterns:
                print(f"  - [{pattern.type.value}] {pattern.description} ({pattern.confidence:.0%})")
        if analysis.recommendations:
            print(f"\n{Style.BRIGHT}RECOMMENDATIONS:{Style.RESET_ALL}")
            for rec in analysis.recommendations:
                print(f"  [{rec.priority.upper()}] {rec.title}: {rec.description}")

    if job.error_messages:
        print(f"\n{Fore.RED}{Style.BRIGHT}ERRORS:{Style.RESET_ALL}")
        for message in job.error_messages:
            print(f"  {Fore.RED}{message}{Style.RESET_ALL}")
    print("="*80)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Inspect manufactured parts against reference photos',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('source', help='CSV manifest or directory of *_ref / *_part images')
    parser.add_argument('--name', help='Batch name (default: source name)')
    parser.add_argument('--part-type', default='', help='Part type for folder input')
    parser.add_argument('--complexity', default='moderate',
                        choices=['simple', 'moderate', 'complex', 'extreme'],
                        help='Default analysis complexity (default: moderate)')
    parser.add_argument('--profile', choices=get_available_profiles(), help='Configuration profile')
    parser.add_argument('--config', help='JSON file with configuration overrides')
    parser.add_argument('--history', help='JSON file holding model performance history')
    parser.add_argument('--store', help='JSON file where batch records are saved')
    parser.add_argument('--csv', help='Output CSV file (default: auto-generated)')
    parser.add_argument('--json', help='Write the full batch report (results and analysis) as JSON')
    parser.add_argument('--webhook', help='POST the batch summary to this URL when finished')
    parser.add_argument('--embed-verdict', action='store_true',
                        help='Write each verdict into the part image EXIF UserComment (JPEG only)')
    parser.add_argument('--operator', help='Operator name recorded on the batch')
    parser.add_argument('--production-line', help='Production line recorded on the batch')
    parser.add_argument('--batch-number', help='Batch number recorded on the batch')
    parser.add_argument('--extensions', nargs='+', default=DEFAULT_EXTENSIONS, help='Image file extensions')
    parser.add_argument('--log-file', help='Rotating log file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--debug', action='store_true', help='Debug output')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the part inspection CLI."""
    args = parse_args(argv)
    setup_logging(args.log_file, args.verbose, args.debug)

    try:
        config = load_config(args.config, args.profile)
    except (OSError, ValueError, ValidationError) as e:
        print(f"{Fore.RED}Invalid configuration: {e}{Style.RESET_ALL}")
        sys.exit(1)

    if os.path.isdir(args.source):
        extensions = [ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in args.extensions]
        pairs = find_pairs(args.source, extensions, args.part_type)
    elif os.path.isfile(args.source):
        try:
            pairs = load_manifest(args.source)
        except (OSError, ValueError) as e:
            print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}")
            sys.exit(1)
    else:
        print(f"{Fore.RED}Error: Source not found: {args.source}{Style.RESET_ALL}")
        sys.exit(1)

    if not pairs:
        print(f"{Fore.RED}No photo pairs found in {args.source}{Style.RESET_ALL}")
        sys.exit(1)

    try:
        job = create_job(
            args.name or Path(args.source).stem,
            pairs,
            complexity=args.complexity,
            operator_name=args.operator,
            production_line=args.production_line,
            batch_number=args.batch_number,
        )
    except InspectionError as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}")
        sys.exit(1)

    csv_path = args.csv or f"part_inspection_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    sinks = [CsvExportSink(csv_path)]
    if args.webhook:
        sinks.append(WebhookExportSink(args.webhook))
    if args.embed_verdict:
        sinks.append(ExifVerdictSink())

    orchestrator = BatchOrchestrator(
        config=config,
        history_store=HistoryStore(args.history),
        record_store=JsonRecordStore(args.store) if args.store else None,
        export_sinks=sinks,
    )

    print(f"Found {Fore.GREEN}{len(pairs)}{Style.RESET_ALL} photo pairs "
          f"(profile {config.profile}, chunk size {config.batch.chunk_size})")
    print(f"\n{Fore.CYAN}Inspecting parts...{Style.RESET_ALL}")
    start_time = time.time()

    with tqdm(total=len(pairs), desc="Inspecting", unit="pair") as pbar:
        def on_update(snapshot: BatchJob) -> None:
            pbar.n = snapshot.processed_pairs
            pbar.set_postfix(failed=snapshot.failed_pairs)
            pbar.refresh()

        try:
            job = orchestrator.run(job, observer=on_update)
        except KeyboardInterrupt:
            orchestrator.cancel()
            print(f"\n{Fore.YELLOW}Interrupted{Style.RESET_ALL}")
            sys.exit(130)

    elapsed = time.time() - start_time
    print(f"\nProcessed {job.processed_pairs} pairs in {elapsed:.1f}s")

    if args.json:
        with open(args.json, 'w', encoding='utf-8') as f:
            json.dump(job.to_dict(), f, indent=2, default=str)
        print(f"Report saved to: {Fore.GREEN}{args.json}{Style.RESET_ALL}")
    if orchestrator.export_outcomes.get("csv"):
        print(f"Results saved to: {Fore.GREEN}{csv_path}{Style.RESET_ALL}")

    print_summary(job)
    if job.status is not BatchStatus.COMPLETED:
        sys.exit(2)


if __name__ == "__main__":
    main()
