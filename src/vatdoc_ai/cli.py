#!/usr/bin/env python3
"""
Command-line interface for VatDoc-AI.

This module provides a command-line interface for the VAT document processing
system. Learning state is kept in a JSON file so corrections made in one
invocation shape the confidence of the next.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from .categorization.engine import CategorizedResult
from .config import VatDocSettings
from .parsing.schema import Category
from .pipeline.extraction_orchestrator import TerminalFailure
from .pipeline.vat_document_processor import VatDocumentProcessor

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = ".vatdoc/learning.json"
DOCUMENT_SUFFIXES = (".pdf", ".txt", ".jpg", ".jpeg", ".png", ".webp", ".gif")


def build_processor(args) -> VatDocumentProcessor:
    settings = VatDocSettings()
    if args.store:
        settings.store_path = args.store
    elif not settings.store_path:
        settings.store_path = DEFAULT_STORE_PATH
    return VatDocumentProcessor(settings=settings, background_learning=False)


def _write_output(payload, output):
    text = json.dumps(payload, indent=2, default=str)
    if output:
        with open(output, 'w') as f:
            f.write(text)
        print(f"Results saved to {output}")
    else:
        print(text)


def _as_dict(outcome):
    if isinstance(outcome, (CategorizedResult, TerminalFailure)):
        return outcome.to_dict()
    return outcome


def process_single_document(args):
    """Process a single document."""
    processor = build_processor(args)
    try:
        outcome = asyncio.run(processor.process_file(args.document_path, args.category))
    finally:
        processor.close()

    _write_output(_as_dict(outcome), args.output)
    if isinstance(outcome, TerminalFailure):
        sys.exit(2)


def process_batch(args):
    """Process multiple documents."""
    if args.input_file:
        with open(args.input_file, 'r') as f:
            paths = [line.strip() for line in f if line.strip()]
    elif args.input_dir:
        input_dir = Path(args.input_dir)
        paths = sorted(str(p) for p in input_dir.iterdir() if p.suffix.lower() in DOCUMENT_SUFFIXES)
    else:
        raise ValueError("Either --input_file or --input_dir is required")

    processor = build_processor(args)
    try:
        results = asyncio.run(processor.process_batch(paths, args.category))
    finally:
        processor.close()

    payload = [dict(_as_dict(outcome), path=path) for path, outcome in results]
    _write_output(payload, args.output)


def submit_feedback(args):
    """Submit a correction for a previously saved result."""
    with open(args.result_path, 'r') as f:
        original = CategorizedResult.from_dict(json.load(f))

    corrected_category = Category.parse(args.category) if args.category else None
    processor = build_processor(args)
    try:
        record = processor.submit_correction(
            original,
            corrected_sales=args.sales,
            corrected_purchases=args.purchases,
            tag=args.tag,
            corrected_category=corrected_category,
        )
    finally:
        processor.close()

    print(f"Correction {record.id} recorded: {record.feedback.value}, accuracy {record.accuracy:.2f}")


def run_learning(args):
    """Force a learning pass over unconsumed corrections."""
    processor = build_processor(args)
    try:
        report = processor.run_learning()
    finally:
        processor.close()
    _write_output(asdict(report), args.output)


def show_status(args):
    """Print calibration factors and template summary."""
    processor = build_processor(args)
    try:
        _write_output(processor.get_processing_stats(), None)
    finally:
        processor.close()


def main():
    parser = argparse.ArgumentParser(description="VatDoc-AI Command Line Interface")
    parser.add_argument('--store', help=f'Learning store path (default: {DEFAULT_STORE_PATH})')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Process single document
    process_parser = subparsers.add_parser('process', help='Process a single document')
    process_parser.add_argument('document_path', help='Path to the document (image, PDF or text)')
    process_parser.add_argument('--category', default='UNKNOWN', help='SALES, PURCHASES or UNKNOWN')
    process_parser.add_argument('--output', '-o', help='Output file path')
    process_parser.set_defaults(func=process_single_document)

    # Process batch
    batch_parser = subparsers.add_parser('batch', help='Process multiple documents')
    batch_parser.add_argument('--input_file', help='File containing list of document paths')
    batch_parser.add_argument('--input_dir', help='Directory containing documents')
    batch_parser.add_argument('--category', default='UNKNOWN', help='SALES, PURCHASES or UNKNOWN')
    batch_parser.add_argument('--output', '-o', help='Output file path')
    batch_parser.set_defaults(func=process_batch)

    # Feedback
    feedback_parser = subparsers.add_parser('feedback', help='Correct a saved result')
    feedback_parser.add_argument('result_path', help='JSON result written by "process"')
    feedback_parser.add_argument('--tag', required=True,
                                 help='CORRECT, INCORRECT, PARTIALLY_CORRECT or a correction reason')
    feedback_parser.add_argument('--sales', type=float, nargs='*', default=[], help='Correct sales VAT amounts')
    feedback_parser.add_argument('--purchases', type=float, nargs='*', default=[],
                                 help='Correct purchase VAT amounts')
    feedback_parser.add_argument('--category', help='Correct category, if it changed')
    feedback_parser.set_defaults(func=submit_feedback)

    # Learning pass
    learn_parser = subparsers.add_parser('learn', help='Run a learning pass over pending corrections')
    learn_parser.add_argument('--output', '-o', help='Output file path')
    learn_parser.set_defaults(func=run_learning)

    # Status
    status_parser = subparsers.add_parser('status', help='Show calibration and template status')
    status_parser.set_defaults(func=show_status)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=VatDocSettings().log_level)

    try:
        args.func(args)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
