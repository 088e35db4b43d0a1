"""
Build a feedback pattern report from a CSV export of user feedback.

Each row is one rating of one analysis. Rows are validated the same way as
live feedback; invalid rows are reported and skipped. With ``--history`` the
rows are also replayed into the model performance history file so later
batches pick up the calibrated historical factor.
"""
from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from confidence_scorer import HistoryStore
from feedback_loop import (
    MAX_STORED_FEEDBACK,
    AnalysisFeedback,
    FeedbackCollector,
    feedback_from_record,
)
from inspection_errors import InspectionValidationError
from part_inspector import setup_logging

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = [
    "analysis_id",
    "satisfaction",
    "accuracy_rating",
    "reported_confidence",
    "actual_confidence",
]
INT_COLUMNS = ("satisfaction", "accuracy_rating")
FLOAT_COLUMNS = ("reported_confidence", "actual_confidence")

DEFAULT_OUTPUT = Path("feedback_report.json")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize satisfaction, accuracy and confidence calibration from a feedback CSV."
    )
    parser.add_argument("input", type=Path, help="Feedback CSV (one row per rated analysis)")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Where to write the report JSON. Default: {DEFAULT_OUTPUT}",
    )
    parser.add_argument(
        "--history",
        type=Path,
        help="Model performance history file to update with every valid row.",
    )
    parser.add_argument(
        "--max-items",
        type=int,
        default=MAX_STORED_FEEDBACK,
        help=f"Only the most recent N rows feed the pattern analysis. Default: {MAX_STORED_FEEDBACK}",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser.parse_args(argv)


def validate_columns(columns: Iterable[str], required: Iterable[str] = REQUIRED_COLUMNS) -> List[str]:
    available = set(columns)
    return [col for col in required if col not in available]


def frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Rows as plain dicts with NaN replaced by None."""
    return df.astype(object).where(df.notna(), None).to_dict("records")


def _coerce(record: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(record)
    for col in INT_COLUMNS:
        if row.get(col) is not None:
            value = float(row[col])
            if not value.is_integer():
                raise InspectionValidationError(f"{col} must be a whole number, got {row[col]}")
            row[col] = int(value)
    for col in FLOAT_COLUMNS:
        if row.get(col) is not None:
            row[col] = float(row[col])
    return row


def load_feedback(df: pd.DataFrame) -> Tuple[List[AnalysisFeedback], List[str]]:
    feedback: List[AnalysisFeedback] = []
    errors: List[str] = []
    for index, record in enumerate(frame_to_records(df), start=1):
        try:
            feedback.append(feedback_from_record(_coerce(record)))
        except (InspectionValidationError, TypeError, ValueError) as e:
            errors.append(f"Row {index}: {e}")
            logger.warning(f"Skipping feedback row {index}: {e}")
    return feedback, errors


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    input_path = args.input.expanduser()
    output_path = args.output.expanduser()

    if not input_path.is_file():
        raise SystemExit(f"Input CSV not found: {input_path}")

    df = pd.read_csv(input_path)
    missing_columns = validate_columns(df.columns)
    if missing_columns:
        raise SystemExit(f"Input CSV is missing required columns: {', '.join(missing_columns)}")

    feedback, errors = load_feedback(df)
    collector = FeedbackCollector(HistoryStore(args.history), max_items=args.max_items)
    if args.history:
        for item in feedback:
            collector.collect(
                item.analysis_id,
                int(item.satisfaction),
                int(item.accuracy_rating),
                item.validation.reported_confidence,
                item.validation.actual_confidence,
                item.comments,
                item.issues,
                item.quality_assessment.value if item.quality_assessment else None,
            )
    else:
        collector.extend(feedback)

    report = collector.analyze_patterns()
    payload = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "source_csv": str(input_path),
        "row_count": int(df.shape[0]),
        "valid_rows": len(feedback),
        "rejected_rows": errors,
        "report": report.to_dict(),
    }
    if args.history:
        payload["history"] = collector.history_store.get().to_dict()

    output_path.write_text(json.dumps(payload, indent=2))
    print(f"Wrote feedback report for {len(feedback)} rows to {output_path}")


if __name__ == "__main__":
    main()
