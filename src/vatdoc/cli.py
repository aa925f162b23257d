#!/usr/bin/env python3
"""
Command-line interface for VATDoc.

This module provides a command-line interface for extracting VAT amounts from
document text and spreadsheets.
"""

import argparse
import sys
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from .config import load_config
from .errors import VATExtractionError
from .extraction.grid_reader import is_spreadsheet, read_grid
from .pipeline.extraction_pipeline import ExtractionPipeline
from .evaluation.evaluator import PipelineEvaluator
from .utils.logger import setup_logging

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = ("*.txt", "*.csv", "*.tsv", "*.xlsx", "*.xls")


def load_document(path: str, category: str = None) -> Dict[str, Any]:
    """Read a text file or spreadsheet into a pipeline document dict."""
    file_name = Path(path).name
    if is_spreadsheet(path):
        return {"text": "", "file_name": file_name, "category": category, "spreadsheet_grid": read_grid(path)}
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return {"text": f.read(), "file_name": file_name, "category": category}


def build_pipeline(args) -> ExtractionPipeline:
    config = load_config(args.config)
    if getattr(args, "vision_api_key", None):
        config.vision_api_key = args.vision_api_key
    setup_logging(config.log_level)
    return ExtractionPipeline(config)


def write_output(data: Any, output: str = None):
    if output:
        with open(output, 'w') as f:
            json.dump(data, f, indent=2)
        print(f"Results saved to {output}")
    else:
        print(json.dumps(data, indent=2))


def process_single_document(args):
    """Process a single document."""
    pipeline = build_pipeline(args)

    try:
        document = load_document(args.path, args.category)
        result = pipeline.process_document(
            document["text"],
            file_name=document["file_name"],
            category=document["category"],
            spreadsheet_grid=document.get("spreadsheet_grid")
        )
        output = result.to_dict()
        output["summary"] = pipeline.summarize(result)
        write_output(output, args.output)

    except (VATExtractionError, OSError) as e:
        logger.error(f"Error processing document: {e}")
        sys.exit(1)


def process_batch(args):
    """Process multiple documents."""
    pipeline = build_pipeline(args)

    if args.input_file:
        with open(args.input_file, 'r') as f:
            paths = [line.strip() for line in f if line.strip()]
    elif args.input_dir:
        input_dir = Path(args.input_dir)
        paths = sorted(str(p) for pattern in DOCUMENT_SUFFIXES for p in input_dir.glob(pattern))
    else:
        logger.error("Either --input_file or --input_dir is required")
        sys.exit(1)

    try:
        documents: List[Dict[str, Any]] = [load_document(p, args.category) for p in paths]
        results = pipeline.process_batch(documents, args.batch_size, args.pause)
        write_output({
            "documents": [pipeline.summarize(r) for r in results],
            "totals": pipeline.aggregate_vat(results)
        }, args.output)

    except (VATExtractionError, OSError) as e:
        logger.error(f"Error processing batch: {e}")
        sys.exit(1)


def evaluate(args):
    """Evaluate the pipeline against labelled samples."""
    pipeline = build_pipeline(args)

    with open(args.labels, 'r') as f:
        samples = json.load(f)

    base_dir = Path(args.labels).parent
    for sample in samples:
        if "path" in sample:
            document = load_document(str(base_dir / sample["path"]), sample.get("category"))
            sample.update(document)

    evaluator = PipelineEvaluator(pipeline)
    results = evaluator.evaluate(samples, save_results=True, output_dir=args.output_dir)
    write_output(results, args.output)


def main():
    parser = argparse.ArgumentParser(description="VATDoc Command Line Interface")
    parser.add_argument('--config', help='Path to YAML or JSON configuration file')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Process single document
    process_parser = subparsers.add_parser('process', help='Process a single document')
    process_parser.add_argument('path', help='Path to a text file or spreadsheet')
    process_parser.add_argument('--category', choices=['SALES', 'PURCHASES'], help='Document category')
    process_parser.add_argument('--output', '-o', help='Output file path')
    process_parser.add_argument('--vision_api_key', help='API key for the vision service')
    process_parser.set_defaults(func=process_single_document)

    # Process batch
    batch_parser = subparsers.add_parser('batch', help='Process multiple documents')
    batch_parser.add_argument('--input_file', help='File containing list of document paths')
    batch_parser.add_argument('--input_dir', help='Directory containing documents')
    batch_parser.add_argument('--category', choices=['SALES', 'PURCHASES'], help='Category for every document')
    batch_parser.add_argument('--batch_size', type=int, help='Documents processed concurrently')
    batch_parser.add_argument('--pause', type=float, help='Seconds to pause between batches')
    batch_parser.add_argument('--output', '-o', help='Output file path')
    batch_parser.add_argument('--vision_api_key', help='API key for the vision service')
    batch_parser.set_defaults(func=process_batch)

    # Evaluate
    eval_parser = subparsers.add_parser('evaluate', help='Evaluate against labelled documents')
    eval_parser.add_argument('labels', help='JSON file of labelled samples')
    eval_parser.add_argument('--output_dir', default='./evaluation_results', help='Directory for evaluation files')
    eval_parser.add_argument('--output', '-o', help='Output file path')
    eval_parser.set_defaults(func=evaluate)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
