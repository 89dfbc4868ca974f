#!/usr/bin/env python3
"""
Operator console for import jobs.

Drives an import from the command line the way the web client does:
create the job, validate it, then call ``process_chunk`` until the job
completes. Also shows job status, lists stalled jobs and exports failed rows.
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from .core.config import settings
from .core.errors import ChunkClaimConflictError, ImportSystemError, IntakeError
from .core.logging_config import configure_logging
from .db.session import create_all_tables
from .domain.imports import orchestrator
from .domain.imports.failed_rows import build_failed_rows_csv
from .domain.imports.jobs import TERMINAL_STATUSES, find_stalled_jobs


class ImportConsole:
    """Command-line driver for the import pipeline."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_job(self, job: dict) -> None:
        table = Table(title=f"Import job {job['id']}", show_header=False)
        table.add_column("Field", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")
        for key in (
            "file_name", "import_type", "status", "progress", "source_rows", "total_rows",
            "invalid_rows", "processed_rows", "successful_rows", "failed_rows", "cursor",
            "error_message", "created_at", "processing_completed_at",
        ):
            value = job.get(key)
            if value is not None:
                table.add_row(key, str(value))
        self.console.print(table)

    def print_error(self, message: str) -> None:
        self.console.print(Panel(f"[red]{message}[/red]", title="Error", border_style="red"))

    def run_import(
        self,
        file_path: Path,
        import_type: str,
        mapping: Optional[dict] = None,
        template_id: Optional[str] = None,
        chunk_size: Optional[int] = None,
        retries: int = 3,
    ) -> int:
        """Create, validate and process a file to completion. Returns the exit code."""
        job = orchestrator.create_job(
            file_path.read_bytes(),
            file_path.name,
            import_type,
            field_mapping=mapping,
            template_id=template_id,
        )
        self.console.print(f"[green]Created job[/green] {job['id']} ({job['status']})")

        summary = orchestrator.validate_job(job["id"])
        self.console.print(
            f"Validated {summary.source_rows} rows: "
            f"[green]{summary.valid_rows} valid[/green], [red]{summary.invalid_rows} invalid[/red]"
        )
        for error in summary.errors[:10]:
            self.console.print(f"  [dim]row {error.row_number}[/dim] {error.field or ''}: {error.message}")

        attempts_left = retries
        with Progress(TextColumn("[bold blue]{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"),
                      console=self.console) as progress:
            task = progress.add_task("Processing", total=100)
            while True:
                try:
                    result = orchestrator.process_chunk(job["id"], chunk_size=chunk_size)
                except ImportSystemError as e:
                    if attempts_left <= 0:
                        raise
                    attempts_left -= 1
                    self.console.print(f"[yellow]Chunk aborted, retrying:[/yellow] {e}")
                    time.sleep(1)
                    continue
                progress.update(task, completed=result.progress)
                if result.completed or result.status in {status.value for status in TERMINAL_STATUSES}:
                    break

        job = orchestrator.get_job(job["id"])
        self.print_job(job)
        return 0 if job["status"] == "completed" else 1

    def show_status(self, job_id: str) -> int:
        self.print_job(orchestrator.get_job(job_id))
        return 0

    def show_stalled(self) -> int:
        stalled = find_stalled_jobs()
        if not stalled:
            self.console.print("[green]No stalled import jobs[/green]")
            return 0
        table = Table(title="Stalled import jobs")
        table.add_column("Job", style="cyan")
        table.add_column("File")
        table.add_column("Status")
        table.add_column("Rows", justify="right")
        table.add_column("Last progress")
        table.add_column("Abandoned claim")
        for job in stalled:
            table.add_row(
                job["id"],
                job["file_name"],
                job["status"],
                f"{job['processed_rows']}/{job['total_rows']}",
                str(job["last_progress_at"] or job["processing_started_at"] or job["validation_started_at"]),
                "yes" if job["abandoned_claim"] else "no",
            )
        self.console.print(table)
        self.console.print(
            f"[dim]Processing jobs: the next process call will {settings.stalled_job_action} them. "
            f"Validating jobs: the next validate call restarts them.[/dim]"
        )
        return 0

    def export_failed_rows(self, job_id: str, out: Path) -> int:
        content = build_failed_rows_csv(job_id)
        if content is None:
            self.console.print("[yellow]Failed rows not available: the job has no failed rows[/yellow]")
            return 1
        out.write_bytes(content)
        self.console.print(f"[green]Wrote failed rows to[/green] {out}")
        return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Debt Intake console - run and inspect import jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run accounts.csv --type accounts --chunk-size 500
  %(prog)s status 2b0c...
  %(prog)s stalled
  %(prog)s failed-rows 2b0c... --out failed.csv
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Import a file end to end")
    run_parser.add_argument("file", type=Path)
    run_parser.add_argument("--type", dest="import_type", required=True)
    run_parser.add_argument("--mapping", help="JSON object of source column -> canonical field")
    run_parser.add_argument("--template", dest="template_id")
    run_parser.add_argument("--chunk-size", type=int)
    run_parser.add_argument("--retries", type=int, default=3)

    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id")

    subparsers.add_parser("stalled", help="List processing jobs without recent progress")

    failed_parser = subparsers.add_parser("failed-rows", help="Export a job's failed rows as CSV")
    failed_parser.add_argument("job_id")
    failed_parser.add_argument("--out", type=Path, required=True)

    args = parser.parse_args(argv)

    configure_logging(settings.log_level, settings.log_file or None, settings.log_file_max_mb)
    create_all_tables()
    import_console = ImportConsole()

    try:
        if args.command == "run":
            mapping = json.loads(args.mapping) if args.mapping else None
            code = import_console.run_import(
                args.file, args.import_type, mapping=mapping, template_id=args.template_id,
                chunk_size=args.chunk_size, retries=args.retries,
            )
        elif args.command == "status":
            code = import_console.show_status(args.job_id)
        elif args.command == "stalled":
            code = import_console.show_stalled()
        else:
            code = import_console.export_failed_rows(args.job_id, args.out)
    except ChunkClaimConflictError as e:
        import_console.print_error(str(e))
        code = 2
    except (IntakeError, ValueError) as e:
        import_console.print_error(str(e))
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
