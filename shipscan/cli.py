"""Command-line interface for label extraction, batch scans and record export.

Provides subcommands for extracting one label image, processing a folder
of images into a CSV of fields, and exporting stored records.
"""

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path

from shipscan.extraction.aggregator import format_contents
from shipscan.ocr.errors import OCRError
from shipscan.ocr.gemini_client import GeminiClient
from shipscan.ocr.tesseract_engine import TesseractEngine
from shipscan.pipeline.processor import BatchResult, ImageUpload, ShipmentProcessor
from shipscan.preprocessing.compress import UnsupportedImageError
from shipscan.records.export import write_records_csv
from shipscan.services import build_services
from shipscan.utils.config import AppConfig, load_config
from shipscan.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}
_META_COLUMNS = [
    "filename",
    "status",
    "source",
    "processing_time_s",
    "overall_confidence",
    "low_confidence",
    "error",
]


def _find_images(input_dir: Path) -> list[Path]:
    """Find all supported label images in a directory.

    Args:
        input_dir: Directory to scan.

    Returns:
        Sorted list of image paths.
    """
    return sorted(
        p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in _MIME_TYPES
    )


def _load_upload(path: Path) -> ImageUpload:
    return ImageUpload(
        file_name=path.name,
        data=path.read_bytes(),
        mime_type=_MIME_TYPES.get(path.suffix.lower(), "application/octet-stream"),
    )


def _build_processor(config: AppConfig, retries: int | None = None) -> ShipmentProcessor:
    extraction = config.extraction
    if retries is not None:
        extraction = extraction.model_copy(update={"max_retries": retries})
    tesseract = TesseractEngine(config.ocr) if config.ocr.fallback_enabled else None
    return ShipmentProcessor(
        config, GeminiClient(config.ocr, extraction), tesseract=tesseract
    )


def _result_rows(batch: BatchResult) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for name, outcome in batch.outcomes.items():
        row: dict[str, object] = {
            "filename": name,
            "status": "success" if outcome.usable else "failed",
            "processing_time_s": round(outcome.elapsed_s, 2),
            "error": outcome.error,
        }
        if outcome.extraction is not None:
            extraction = outcome.extraction
            row["source"] = extraction.source
            row["overall_confidence"] = round(extraction.overall_confidence, 3)
            row["low_confidence"] = extraction.low_confidence
            row.update(extraction.fields.values)
        rows.append(row)
    return rows


def process_folder(
    input_dir: Path,
    output_csv: Path,
    aggregate: bool = False,
    verbose: bool = False,
) -> dict[str, int]:
    """Extract every label image in a folder and write the fields to CSV.

    Args:
        input_dir: Directory containing label images.
        output_csv: Path for the output CSV file.
        aggregate: Also print the merged contents of all usable images.
        verbose: Whether to print per-file progress.

    Returns:
        Summary dict with total, successful, and failed counts.
    """
    config = load_config()
    processor = _build_processor(config)

    files = _find_images(input_dir)
    if not files:
        logger.warning("No images found in %s", input_dir)
        return {"total": 0, "successful": 0, "failed": 0}

    logger.info("Found %d images to process", len(files))
    uploads = [_load_upload(path) for path in files]
    batch = asyncio.run(processor.process_batch(uploads))

    if verbose:
        for outcome in batch.outcomes.values():
            print(outcome.message)

    _write_csv(_result_rows(batch), output_csv)
    logger.info("Results written to %s", output_csv)

    summary = {
        "total": len(files),
        "successful": batch.usable_count,
        "failed": len(batch.outcomes) - batch.usable_count,
    }
    _print_summary(summary, output_csv)
    if aggregate:
        print(f"Contents:   {format_contents(processor.aggregate(batch.usable))}")
    return summary


def _write_csv(results: list[dict[str, object]], output_path: Path) -> None:
    """Write extraction results to a CSV file.

    Args:
        results: List of result dictionaries.
        output_path: Path for the output CSV file.
    """
    if not results:
        return

    all_keys: set[str] = set()
    for r in results:
        all_keys.update(r.keys())

    field_columns = sorted(all_keys - set(_META_COLUMNS))
    columns = [c for c in _META_COLUMNS if c in all_keys] + field_columns

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(results)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Scan Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Output:     {output_csv}")


def extract_single(file_path: Path, retries: int | None = None) -> dict[str, object]:
    """Extract label fields from one image.

    Args:
        file_path: Path to the image.
        retries: Overrides the configured retry budget.

    Returns:
        Extraction result as a camelCase dictionary.

    Raises:
        UnsupportedImageError: If the file type or size is not accepted.
        OCRError: If no extraction path produced a result.
    """
    config = load_config()
    processor = _build_processor(config, retries)
    extraction = asyncio.run(processor.process_image(_load_upload(file_path)))
    return extraction.to_dict()


def export_records(output_csv: Path) -> int:
    """Write all stored records to CSV and return the row count."""
    services = build_services(load_config())
    try:
        output_csv.parent.mkdir(parents=True, exist_ok=True)
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            count = write_records_csv(services.records.all(), f)
    finally:
        services.close()
    logger.info("Exported %d records to %s", count, output_csv)
    return count


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Shipping label scanner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    batch_parser = subparsers.add_parser("batch", help="Process a folder of label images")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory with images")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument(
        "--aggregate", action="store_true", help="Print merged contents of all images"
    )
    batch_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    single_parser = subparsers.add_parser("extract", help="Process a single label image")
    single_parser.add_argument("file", type=Path, help="Image file to process")
    single_parser.add_argument("--retries", type=int, help="Retry budget for the model")
    single_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    export_parser = subparsers.add_parser("export", help="Export stored records to CSV")
    export_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("records.csv"),
        help="Output CSV file (default: records.csv)",
    )

    args = parser.parse_args(argv)

    setup_logging()

    if args.command == "batch":
        if not args.input_dir.is_dir():
            print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
            sys.exit(1)
        process_folder(args.input_dir, args.output, args.aggregate, args.verbose)
    elif args.command == "extract":
        if not args.file.exists():
            print(f"Error: {args.file} does not exist", file=sys.stderr)
            sys.exit(1)
        try:
            result = extract_single(args.file, args.retries)
        except (UnsupportedImageError, OCRError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        output_str = json.dumps(result, indent=2, ensure_ascii=False)
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(output_str, encoding="utf-8")
            print(f"Output written to {args.output}")
        else:
            print(output_str)
    elif args.command == "export":
        count = export_records(args.output)
        print(f"Exported {count} records to {args.output}")
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
