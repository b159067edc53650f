"""Command-line interface for batch statement processing and store upkeep.

Provides subcommands for processing statements into CSV or JSON, submitting
corrections, inspecting learning statistics, applying retention rules, and
exporting or importing learned data.
"""

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path
from typing import Any

from src.errors import StatementError
from src.pipeline import Document, StatementPipeline
from src.utils.config import AppConfig, load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.pdf", "*.png", "*.jpg", "*.jpeg", "*.tiff", "*.tif", "*.txt")
_CSV_COLUMNS = [
    "filename",
    "id",
    "date",
    "amount",
    "type",
    "description",
    "category",
    "subcategory",
    "confidence",
    "merchant",
    "needsReview",
    "detectedSource",
    "sourceConfidence",
]


def _find_documents(paths: list[Path]) -> list[Path]:
    """Expand directories into the supported statement files they contain.

    Args:
        paths: Files and directories given on the command line.

    Returns:
        Sorted, de-duplicated list of document paths.
    """
    files: set[Path] = set()
    for path in paths:
        if path.is_dir():
            for ext in _SUPPORTED_EXTENSIONS:
                files.update(path.glob(ext))
                files.update(path.glob(ext.upper()))
        elif path.exists():
            files.add(path)
        else:
            logger.warning("Skipping missing path %s", path)
    return sorted(files)


async def process_files(
    files: list[Path], config: AppConfig, hint: str | None = None
) -> tuple[list[dict[str, Any]], dict[str, int]]:
    """Process statements concurrently.

    Args:
        files: Statement files.
        config: Application configuration.
        hint: Optional source id applied to every file.

    Returns:
        Transaction rows (with their file name) and a summary of counts.
    """
    pipeline = StatementPipeline(config)
    try:
        results = await asyncio.gather(
            *(pipeline.process(Document.from_path(f), hint=hint) for f in files),
            return_exceptions=True,
        )
    finally:
        await pipeline.close()

    rows: list[dict[str, Any]] = []
    failed = 0
    for path, result in zip(files, results):
        if isinstance(result, StatementError):
            logger.error("Failed to process %s: %s", path.name, result)
            failed += 1
            continue
        if isinstance(result, BaseException):
            raise result
        rows.extend({"filename": path.name, **t.to_dict()} for t in result)

    summary = {
        "total": len(files),
        "successful": len(files) - failed,
        "failed": failed,
        "transactions": len(rows),
    }
    return rows, summary


def _write_output(rows: list[dict[str, Any]], output_path: Path) -> None:
    """Write transaction rows as JSON or CSV, chosen by the file suffix.

    Args:
        rows: Transaction rows.
        output_path: Destination file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if output_path.suffix.lower() == ".json":
        output_path.write_text(json.dumps(rows, indent=2, ensure_ascii=False), encoding="utf-8")
        return

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=_CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def _print_summary(summary: dict[str, int], output_path: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Statement Processing Complete")
    print(f"{'=' * 50}")
    print(f"Documents:    {summary['total']}")
    print(f"Successful:   {summary['successful']}")
    print(f"Failed:       {summary['failed']}")
    print(f"Transactions: {summary['transactions']}")
    print(f"Output:       {output_path}")


async def _feedback(config: AppConfig, transaction_id: str, corrections: dict[str, Any]) -> bool:
    pipeline = StatementPipeline(config)
    try:
        outcome = await pipeline.apply_feedback(transaction_id, corrections)
    finally:
        await pipeline.close()
    return outcome.applied


def _with_pipeline(config: AppConfig, action):
    """Run a synchronous pipeline action and close the pipeline afterwards."""

    async def run():
        pipeline = StatementPipeline(config)
        try:
            return action(pipeline)
        finally:
            await pipeline.close()

    return asyncio.run(run())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Statement Intelligence Processor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="Configuration YAML file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    process_parser = subparsers.add_parser("process", help="Process statement files or folders")
    process_parser.add_argument("paths", type=Path, nargs="+", help="Files or directories")
    process_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("transactions.csv"),
        help="Output .csv or .json file (default: transactions.csv)",
    )
    process_parser.add_argument("--hint", help="Source id to use instead of detection")

    feedback_parser = subparsers.add_parser("feedback", help="Correct a processed transaction")
    feedback_parser.add_argument("transaction_id", help="Transaction id from the output")
    feedback_parser.add_argument("--category", help="Correct category")
    feedback_parser.add_argument("--subcategory", help="Correct subcategory")
    feedback_parser.add_argument("--description", help="Correct description text")
    feedback_parser.add_argument("--source", help="Correct source id")
    feedback_parser.add_argument(
        "--not-transaction", action="store_true", help="The line is not a transaction"
    )

    subparsers.add_parser("stats", help="Show learning statistics")
    subparsers.add_parser("cleanup", help="Apply retention rules to the learning store")

    export_parser = subparsers.add_parser("export", help="Export learned data to JSON")
    export_parser.add_argument("output", type=Path, help="Output JSON file")

    import_parser = subparsers.add_parser("import", help="Import learned data from JSON")
    import_parser.add_argument("input", type=Path, help="Exported JSON file")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level)

    if args.command == "process":
        files = _find_documents(args.paths)
        if not files:
            print("Error: no statement files found", file=sys.stderr)
            sys.exit(1)
        rows, summary = asyncio.run(process_files(files, config, args.hint))
        _write_output(rows, args.output)
        _print_summary(summary, args.output)
        if summary["failed"] == summary["total"]:
            sys.exit(1)

    elif args.command == "feedback":
        corrections = {
            key: value
            for key, value in {
                "category": args.category,
                "subcategory": args.subcategory,
                "description": args.description,
                "source": args.source,
            }.items()
            if value
        }
        if args.not_transaction:
            corrections["not_transaction"] = True
        if not corrections:
            print("Error: give at least one correction", file=sys.stderr)
            sys.exit(1)
        applied = asyncio.run(_feedback(config, args.transaction_id, corrections))
        print("Feedback applied" if applied else "Feedback recorded but not applied")

    elif args.command == "stats":
        stats = _with_pipeline(config, lambda p: p.get_stats())
        print(json.dumps(stats, indent=2, ensure_ascii=False))

    elif args.command == "cleanup":
        removed = _with_pipeline(config, lambda p: p.cleanup())
        print(json.dumps(removed, indent=2))

    elif args.command == "export":
        data = _with_pipeline(config, lambda p: p.store.export_data())
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        print(f"Exported learned data to {args.output}")

    elif args.command == "import":
        if not args.input.exists():
            print(f"Error: {args.input} does not exist", file=sys.stderr)
            sys.exit(1)
        data = json.loads(args.input.read_text(encoding="utf-8"))
        try:
            counts = _with_pipeline(config, lambda p: p.store.import_data(data))
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(counts, indent=2))

    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
