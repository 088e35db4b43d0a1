#!/usr/bin/env python3
"""
Simple CLI for the image quality gate: metrics and issues for one image, or
the full pre-analysis verdict for a reference/part pair.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from pydantic import ValidationError

from confidence_scorer import calculate_confidence
from inspection_config import get_available_profiles, load_config
from inspection_errors import DecodeError
from part_inspector import setup_logging
from pre_analysis import decide
from quality_analyzer import analyze_image_file
from quality_metrics import ImageQualityMetrics
from recommendation_engine import recommend

logger = logging.getLogger(__name__)


def print_metrics(label: str, metrics: ImageQualityMetrics) -> None:
    print(f"{label}: {metrics.width}x{metrics.height}, overall {metrics.overall_score:.2f} "
          f"({metrics.quality_level.value})")
    print(f"  Sharpness: {metrics.sharpness:.2f}")
    print(f"  Brightness: {metrics.brightness:.2f}")
    print(f"  Contrast: {metrics.contrast:.2f}")
    print(f"  Noise level: {metrics.noise_level:.2f}")
    print(f"  Resolution: {metrics.resolution:.2f}")
    print(f"  Compression: {metrics.compression:.2f}")
    print(f"  Edge clarity: {metrics.edge_clarity:.2f}")
    print(f"  Object coverage: {metrics.object_coverage:.2f}")

    issues = metrics.get_quality_issues()
    if issues:
        print("  Issues:")
        for issue in issues:
            print(f"    - [{issue.severity.value}] {issue.description}")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Check image quality before sending photos for inspection.")
    parser.add_argument("image_path", help="Image to analyze (the reference image when --part is given)")
    parser.add_argument("--part", help="Part image; runs the full pre-analysis gate on the pair")
    parser.add_argument("--complexity", default="moderate",
                        choices=["simple", "moderate", "complex", "extreme"],
                        help="Analysis complexity used for the confidence estimate")
    parser.add_argument("--profile", choices=get_available_profiles(), help="Configuration profile")
    parser.add_argument("--config", help="JSON file with configuration overrides")
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)

    for path in filter(None, (args.image_path, args.part)):
        if not os.path.exists(path):
            logger.error("File not found: %s", path)
            sys.exit(1)

    try:
        config = load_config(args.config, args.profile)
        reference = analyze_image_file(args.image_path, config)
        part = analyze_image_file(args.part, config) if args.part else None
    except (DecodeError, ValidationError, ValueError, OSError) as e:
        logger.error("Quality check failed: %s", e)
        sys.exit(1)

    if part is None:
        if args.format == "json":
            data = reference.to_dict()
            data["issues"] = [issue.to_dict() for issue in reference.get_quality_issues()]
            print(json.dumps(data, indent=2))
            return
        print_metrics(f"Quality metrics for {args.image_path}", reference)
        return

    result = decide(reference, part, config)
    confidence = calculate_confidence(reference, part, args.complexity, config=config)
    recommendations = recommend(reference, part, confidence, result)

    if args.format == "json":
        print(json.dumps({
            "pre_analysis": result.to_dict(),
            "confidence": confidence.to_dict(),
            "recommendations": [rec.to_dict() for rec in recommendations],
        }, indent=2))
        return

    print_metrics(f"Reference {args.image_path}", reference)
    print_metrics(f"Part {args.part}", part)
    print(f"\nDecision: {result.decision.value} (expected confidence {result.expected_confidence:.2f})")
    print(f"  {result.reason}")
    if result.token_saving.saved_tokens:
        print(f"  Saves ~{result.token_saving.saved_tokens} tokens (${result.token_saving.saved_cost_usd:.4f})")
    print(f"Estimated confidence: {confidence.overall_confidence:.2f} ({confidence.confidence_level.value})")
    if recommendations:
        print("Recommendations:")
        for rec in recommendations:
            print(f"  [{rec.priority.value}] {rec.title}")
            for step in rec.steps:
                print(f"    {step.order}. {step.action}")


if __name__ == "__main__":
    main()
