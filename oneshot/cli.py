"""Command-line entry point: ``oneshot PROGRAM``."""

from __future__ import annotations

import argparse
import sys
import uuid
from collections.abc import Sequence
from pathlib import Path

from botocore.exceptions import BotoCoreError
from rich.console import Console
from rich.table import Table

from oneshot.artifact import InputArtifact
from oneshot.aws.clients import build_orchestrator
from oneshot.config import resolve_config
from oneshot.exceptions import ConfigurationError, JobFailedError, ValidationError
from oneshot.job import JobResult
from oneshot.logging import LogConfig, setup_logging, teardown_logging
from oneshot.record import CleanupReport

EXIT_OK = 0
EXIT_FAILED = 1

console = Console(stderr=True)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oneshot",
        description="Run one program on a throwaway EC2 instance and collect what it produces",
    )
    parser.add_argument("program", type=Path, help="Executable file to upload and run")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    parser.add_argument("--config", type=Path, default=None, help="Config file replacing ./oneshot.toml")
    parser.add_argument("--log-file", type=str, default=None, help="Also write debug logs to this file")
    return parser


def _cleanup_table(report: CleanupReport) -> Table:
    table = Table(title="Cleanup", show_header=True, header_style="bold")
    table.add_column("Resource")
    table.add_column("Identifier")
    table.add_column("Status")
    for entry in report.succeeded:
        table.add_row(str(entry.resource), entry.identifier, "[green]removed[/green]")
    for failure in report.failed:
        table.add_row(str(failure.resource), failure.identifier, f"[red]failed: {failure.error}[/red]")
    return table


def _print_result(result: JobResult) -> None:
    console.print(f"[bold green]Job {result.job_id} finished[/bold green], results in {result.results_dir}")
    for path in result.downloaded:
        console.print(f"  [green]+[/green] {path}")
    for key in result.failed:
        console.print(f"  [red]x[/red] {key} (download failed)")
    incomplete = [o.command for o in result.outputs if not o.complete]
    for command in incomplete:
        console.print(f"  [yellow]![/yellow] no prompt after {command!r}, output may be partial")
    console.print(_cleanup_table(result.cleanup))


def _print_failure(error: JobFailedError) -> None:
    console.print(f"[bold red]Job failed:[/bold red] {error.cause}")
    if error.cleanup.attempted:
        console.print(_cleanup_table(error.cleanup))
    if error.cleanup.failed:
        console.print("[bold red]Some resources may still exist and need manual removal.[/bold red]")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    handler_ids = setup_logging(LogConfig(level="DEBUG" if args.verbose else "INFO", file=args.log_file))

    try:
        try:
            config = resolve_config(path=args.config)
            artifact = InputArtifact.from_path(args.program)
        except (ConfigurationError, ValidationError) as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            return EXIT_FAILED

        job_id = uuid.uuid4().hex[:8]
        try:
            orchestrator = build_orchestrator(config, job_id)
        except BotoCoreError as e:
            console.print(f"[bold red]AWS setup failed:[/bold red] {e}")
            return EXIT_FAILED

        try:
            result = orchestrator.run(artifact)
        except JobFailedError as e:
            _print_failure(e)
            return EXIT_FAILED

        _print_result(result)
        return EXIT_OK if result.ok else EXIT_FAILED
    finally:
        teardown_logging(handler_ids)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
