#!/usr/bin/env python3
"""
Command line importer for bank statement files.

Runs upload, configure and process (or preview) in one go and prints a
summary of the outcome.
"""

import argparse
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.engine import Engine

from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import get_engine
from .db.tables import create_tables
from .domain.imports.errors import ImportFileError, ImportStateError, InvalidMappingError, MappingNotFound, UploadTooLarge
from .domain.imports.jobs import configure_import_job
from .domain.imports.mapping import IndexColumnMapping
from .domain.imports.orchestrator import ImportSummary, preview_import, process_import
from .domain.imports.parser import AmountSignStrategy
from .domain.imports.saved_mappings import find_mapping_by_name, mark_mapping_used, saved_column_mapping
from .domain.imports.uploads import start_import


class ImportConsole:
    """Drives one file import and renders the results with rich."""

    def __init__(self, engine: Engine, console: Optional[Console] = None):
        self.engine = engine
        self.console = console or Console()

    def print_error(self, title: str, message: str, details: Optional[List[str]] = None) -> None:
        body = f"[red]❌ {message}[/red]"
        if details:
            body += "\n" + "\n".join(f"• {detail}" for detail in details)
        self.console.print(Panel(body, title=title, border_style="red"))

    def print_summary(self, job: Dict[str, Any], summary: ImportSummary) -> None:
        style = {"completed": "green", "failed": "red"}.get(summary.status.value, "yellow")
        table = Table(title=f"Import {summary.import_id}")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")
        table.add_row("File", job.get("original_filename") or job["file_path"])
        table.add_row("Status", f"[{style}]{summary.status.value}[/{style}]")
        table.add_row("Rows read", str(summary.total_rows))
        table.add_row("Imported", str(summary.processed_rows))
        table.add_row("Failed", str(summary.failed_rows))
        table.add_row("Skipped", str(summary.skipped_rows))
        if summary.unreadable_line is not None:
            table.add_row("Stopped at line", str(summary.unreadable_line))
        self.console.print(table)

    def print_preview(self, rows: List[Dict[str, Any]]) -> None:
        table = Table(title="Preview")
        table.add_column("Row", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Booked")
        table.add_column("Amount", justify="right")
        table.add_column("Partner / Error")
        for row in rows:
            data = row["data"] or {}
            ok = row["status"] == "success"
            table.add_row(
                str(row["row_number"]),
                "[green]ok[/green]" if ok else f"[red]{row['status']}[/red]",
                str(data.get("booked_date") or ""),
                str(data.get("amount") or ""),
                str(data.get("partner") or "") if ok else (row["error"] or ""),
            )
        self.console.print(table)

    def run_import(self, args: argparse.Namespace) -> int:
        try:
            with open(args.file, "rb") as handle:
                content = handle.read()
        except OSError as e:
            self.print_error("File error", f"Cannot read {args.file}: {e}")
            return 1

        try:
            job = start_import(
                self.engine,
                user_id=args.user,
                content=content,
                filename=args.file,
                delimiter=args.delimiter,
                quote_char=args.quote_char,
                account_id=args.account,
            )
            metadata = job["metadata"]

            formats = {
                "date_format": args.date_format,
                "amount_format": args.amount_format,
                "amount_sign_strategy": args.sign_strategy,
                "currency": args.currency,
            }
            if args.mapping:
                saved = find_mapping_by_name(self.engine, args.user, args.mapping)
                column_mapping = saved_column_mapping(saved)
                for key in formats:
                    formats[key] = formats[key] or saved[key]
                mark_mapping_used(self.engine, saved["id"], args.user)
            else:
                column_mapping = IndexColumnMapping(dict(metadata["detected_mapping"]))
                confidence = metadata.get("detection", {}).get("overall_confidence", 0.0)
                self.console.print(f"[dim]Detected column mapping (confidence {confidence:.0%})[/dim]")
            formats["date_format"] = formats["date_format"] or metadata.get("suggested_date_format")
            formats["amount_format"] = formats["amount_format"] or metadata.get("suggested_amount_format")

            job, warnings = configure_import_job(self.engine, job, column_mapping=column_mapping, **formats)
            for warning in warnings:
                self.console.print(f"[yellow]⚠ {warning}[/yellow]")

            if args.preview:
                self.print_preview(preview_import(self.engine, job["id"], args.user, rows=args.rows))
                return 0

            summary = process_import(self.engine, job["id"], args.user)
        except InvalidMappingError as e:
            self.print_error("Mapping error", "The column mapping cannot be used", e.errors)
            return 1
        except (ImportFileError, ImportStateError, MappingNotFound, UploadTooLarge) as e:
            self.print_error("Import error", str(e))
            return 1

        self.print_summary(job, summary)
        return 1 if summary.status.value == "failed" else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bank statement importer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s import statement.csv --user 42                       # Auto-detect columns and import
  %(prog)s import export.csv --user 42 --mapping "My bank"      # Use a saved mapping
  %(prog)s import export.csv --user 42 --preview                # Dry run on the first rows
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a delimited statement file")
    import_parser.add_argument("file", help="Path of the statement export")
    import_parser.add_argument("--user", required=True, help="Owner of the imported transactions")
    import_parser.add_argument("--account", default=None, help="Account the transactions belong to")
    import_parser.add_argument("--mapping", default=None, help="Name of a saved column mapping")
    import_parser.add_argument("--delimiter", default=None, help="Column delimiter (detected when omitted)")
    import_parser.add_argument("--quote-char", default=None, help="Quote character; pass '' to disable quoting")
    import_parser.add_argument("--currency", default=None, help=f"3-letter currency (default: {settings.default_currency})")
    import_parser.add_argument("--date-format", default=None, help="Date format tokens, e.g. d.m.Y or Y-m-d")
    import_parser.add_argument("--amount-format", default=None, choices=["1,234.56", "1.234,56", "1234,56"])
    import_parser.add_argument(
        "--sign-strategy",
        default=None,
        choices=[strategy.value for strategy in AmountSignStrategy],
    )
    import_parser.add_argument("--preview", action="store_true", help="Parse and validate without saving")
    import_parser.add_argument("--rows", type=int, default=None, help="Rows shown in preview mode")
    return parser


def main(argv: Optional[List[str]] = None, engine: Optional[Engine] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, use_rich=True)

    engine = engine or get_engine()
    create_tables(engine)

    importer = ImportConsole(engine)
    if args.command == "import":
        return importer.run_import(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
