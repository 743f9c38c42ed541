"""
Command line entry point.

Usage:
    python -m tally_import preview FILE [--format xml|json]
    python -m tally_import dry-run FILE [--mapping mapping.json] [--from-date 2024-04-01]
    python -m tally_import init-db
"""
import argparse
import json
import sys
from datetime import date
from pathlib import Path
from loguru import logger

from .config import ImportEngineConfig, configure_logging
from .errors import MappingConfigurationError, TallyImportError
from .lifecycle import BatchManager
from .models import BatchStatus, ImportRequest, ImportType, RecordType, Severity
from .parsers import parse_export
from .repository import InMemoryTargetRepository
from .storage import InMemoryBatchStore, PostgresBatchStore


def _record_types(value: str) -> set[RecordType]:
    try:
        return {RecordType(v.strip()) for v in value.split(",") if v.strip()}
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tally_import",
        description="Tally Import Engine - migrate Tally exports into the target system",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    preview = sub.add_parser("preview", help="Parse an export and report what it contains")
    preview.add_argument("file", type=Path)
    preview.add_argument("--format", choices=["xml", "json"], help="Export format (default: from extension)")
    preview.add_argument("--issues", action="store_true", help="List every validation issue")

    dry_run = sub.add_parser("dry-run", help="Import an export into an in-memory target")
    dry_run.add_argument("file", type=Path)
    dry_run.add_argument("--format", choices=["xml", "json"], help="Export format (default: from extension)")
    dry_run.add_argument("--company", default="default", help="Company id for the batch")
    dry_run.add_argument("--mapping", type=Path, help="Mapping configuration (JSON)")
    dry_run.add_argument(
        "--from-date",
        type=lambda s: date.fromisoformat(s),
        help="First voucher date to import (YYYY-MM-DD)",
    )
    dry_run.add_argument(
        "--to-date",
        type=lambda s: date.fromisoformat(s),
        help="Last voucher date to import (YYYY-MM-DD)",
    )
    dry_run.add_argument(
        "--record-types",
        type=_record_types,
        help=f"Comma separated subset of: {', '.join(rt.value for rt in RecordType)}",
    )
    dry_run.add_argument("--incremental", action="store_true", help="Run as an incremental import")
    dry_run.add_argument("--no-journal", action="store_true", help="Do not create journal entries")
    dry_run.add_argument("--no-stock", action="store_true", help="Do not apply stock movements")

    sub.add_parser("init-db", help="Create the batch history schema in DB_URL")
    return parser


def _format_for(path: Path, fmt):
    return fmt or ("json" if path.suffix.lower() == ".json" else "xml")


def cmd_preview(args, config: ImportEngineConfig) -> int:
    result = parse_export(args.file.read_bytes(), _format_for(args.file, args.format), config.balance_tolerance)
    summary = result.summary

    print(f"\n=== {args.file.name} ===")
    if result.masters is not None:
        print(f"Company: {result.masters.company_name or '-'}")
    print(f"Ledgers: {summary.ledger_count}")
    print(f"Stock items: {summary.stock_item_count}")
    print(f"Vouchers: {summary.voucher_count}")
    if summary.from_date:
        print(f"Period: {summary.from_date} to {summary.to_date}")
    if summary.vouchers_by_type:
        print("\nVouchers by type:")
        for voucher_type, count in sorted(summary.vouchers_by_type.items()):
            print(f"  {voucher_type}: {count} ({summary.amount_by_type.get(voucher_type, 0)})")

    print(f"\nErrors: {result.error_count}  Warnings: {result.warning_count}")
    shown = [i for i in result.issues if args.issues or i.severity != Severity.INFO]
    for issue in shown:
        target = f" [{issue.record_name}]" if issue.record_name else ""
        print(f"  {issue.severity.value.upper():7} {issue.code}{target}: {issue.message}")
    print(f"\nCan proceed: {'yes' if result.can_proceed else 'no'}")
    return 0 if result.can_proceed else 1


def cmd_dry_run(args, config: ImportEngineConfig) -> int:
    manager = BatchManager(InMemoryBatchStore(), InMemoryTargetRepository(), config=config)
    batch = manager.upload(
        args.company,
        args.file.read_bytes(),
        file_name=args.file.name,
        fmt=args.format,
        import_type=ImportType.INCREMENTAL if args.incremental else ImportType.FULL,
    )
    if batch.status == BatchStatus.FAILED:
        print(f"Parsing failed: {batch.error_message}")
        return 1

    if args.mapping:
        manager.configure_mappings(batch.id, json.loads(args.mapping.read_text(encoding="utf-8")))

    request = ImportRequest(
        record_types=args.record_types,
        from_date=args.from_date,
        to_date=args.to_date,
        create_journal_entries=not args.no_journal,
        update_stock_quantities=not args.no_stock,
    )
    summary = manager.start_import(batch.id, request, background=False)

    print("\n=== Import Results ===")
    print(f"Batch: {summary.batch_number} ({summary.status.value})")
    for record_type, counts in summary.counts.items():
        print(
            f"  {record_type}: {counts.total} total, {counts.imported} imported, "
            f"{counts.skipped} skipped, {counts.failed} failed, {counts.suspense} suspense"
        )
    print(f"Debit: {summary.total_debit}  Credit: {summary.total_credit}  Imbalance: {summary.imbalance}")
    print(f"Opening balance difference: {summary.opening_balance_difference}")
    print(f"Suspense items: {summary.suspense_item_count} ({summary.suspense_amount})")
    if summary.payment_type_counts:
        print("Payments: " + ", ".join(f"{k}={v}" for k, v in sorted(summary.payment_type_counts.items())))

    final = manager.get_batch(batch.id)
    if final.errors:
        print(f"\nErrors ({len(final.errors)}):")
        for error in final.errors:
            print(f"  {error.error_code} [{error.source_name}]: {error.message}")
    if summary.error_message:
        print(f"\n{summary.error_message}")
    return 0 if summary.status == BatchStatus.COMPLETED else 1


def cmd_init_db(args, config: ImportEngineConfig) -> int:
    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(problem)
        return 1
    with PostgresBatchStore(config) as store:
        store.initialize_schema()
    print("Schema initialized successfully")
    return 0


COMMANDS = {
    "preview": cmd_preview,
    "dry-run": cmd_dry_run,
    "init-db": cmd_init_db,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = ImportEngineConfig.from_env()
    configure_logging(config, verbose=args.verbose)

    try:
        return COMMANDS[args.command](args, config)
    except MappingConfigurationError as e:
        logger.error(f"Mapping error: {e}")
        return 1
    except TallyImportError as e:
        logger.error(f"Import error: {e}")
        return 1
    except OSError as e:
        logger.error(f"File error: {e}")
        return 1
    except ValueError as e:
        # Malformed JSON or undecodable text in a file given on the command line
        logger.error(f"Invalid input: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
