"""
Rich console utilities for dual-mode CLI output.

Provides readable terminal output for humans and structured JSON for
automation. All output functions adapt to the global output_mode setting.

This module provides:
- OutputMode: Class to manage output format (text/json/quiet)
- Context managers: spinner(), create_progress_bar()
- Output functions: success(), error(), warning(), info()
- Display functions: print_study_table(), print_checkpoint_table(),
  print_identity_table(), print_banner(), print_final_summary()

Human Mode (--format text):
    - Rich spinners, progress bars, colored tables and panels

Agent Mode (--format json):
    - Structured JSON output to stdout
    - No ANSI codes or spinners

Quiet Mode (--quiet):
    - Minimal tab-separated output
"""

from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table


class OutputMode:
    """
    Output mode configuration for dual-mode CLI.

    Attributes:
        format: Output format - "text" (human) or "json" (agent)
        quiet: If True, suppress non-essential output
        _json_buffer: Internal buffer for JSON output in agent mode

    Examples:
        >>> mode = OutputMode()
        >>> mode.is_human()
        True
        >>> mode.format = "json"
        >>> mode.is_agent()
        True
    """

    def __init__(self, format_type: str = "text", quiet: bool = False):
        """
        Initialize output mode.

        Raises:
            ValueError: If format_type is not "text" or "json"
        """
        if format_type not in ["text", "json"]:
            raise ValueError(f"Invalid format: {format_type}. Must be 'text' or 'json'")

        self.format = format_type
        self.quiet = quiet
        self._json_buffer: dict[str, Any] = {}

    def is_human(self) -> bool:
        return self.format == "text"

    def is_agent(self) -> bool:
        return self.format == "json"

    def add_json(self, key: str, value: Any) -> None:
        """Add key-value pair to the JSON buffer flushed by flush_json()."""
        self._json_buffer[key] = value

    def flush_json(self) -> None:
        """
        Output buffered JSON to stdout and clear buffer.

        Only outputs in agent mode. In human mode, this is a no-op.
        """
        if self.is_agent() and self._json_buffer:
            json.dump(self._json_buffer, sys.stdout, indent=2)
            sys.stdout.write("\n")
            sys.stdout.flush()
            self._json_buffer.clear()


# Global output mode instance (set by CLI flags)
output_mode = OutputMode()

# Global Rich console instances for human mode
console = Console()  # stdout
console_err = Console(stderr=True)  # stderr


@contextmanager
def spinner(message: str):
    """
    Context manager for showing a spinner during operations.

    Silent in agent/quiet modes.

    Examples:
        >>> with spinner("Loading config..."):
        ...     config = load_config()
    """
    if output_mode.is_human() and not output_mode.quiet:
        with console.status(f"[bold blue]{message}", spinner="dots") as status:
            yield status
    else:
        yield None


def create_progress_bar() -> Progress | NoOpProgress:
    """
    Create a progress bar with one task per study.

    Returns a Rich Progress instance in human mode and a no-op progress bar
    in agent/quiet modes.

    Examples:
        >>> progress = create_progress_bar()
        >>> with progress:
        ...     task = progress.add_task("google-india", total=100)
        ...     progress.advance(task)
    """
    if output_mode.is_human() and not output_mode.quiet:
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
    return NoOpProgress()


class NoOpProgress:
    """
    No-op progress bar for agent and quiet modes.

    Provides the subset of the Rich Progress interface the engine uses.
    """

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass

    def add_task(self, _description: str, total: int | None = None, completed: int = 0) -> int:
        return 0

    def advance(self, _task_id: int, _advance: float = 1.0) -> None:
        pass

    def update(self, _task_id: int, **_kwargs) -> None:
        pass


def success(message: str) -> None:
    """
    Print a success message.

    Human mode: Green checkmark with message
    Agent mode: Buffer to JSON
    """
    if output_mode.is_human():
        console.print(f"[green]✓[/green] {message}")
    elif output_mode.is_agent():
        output_mode.add_json("status", "success")
        output_mode.add_json("message", message)


def error(message: str) -> None:
    """
    Print an error message.

    Human mode: Red X with message to stderr
    Agent mode: Buffer to JSON
    """
    if output_mode.is_human():
        console_err.print(f"[red]✗[/red] {message}", style="red")
    elif output_mode.is_agent():
        output_mode.add_json("status", "error")
        output_mode.add_json("error", message)


def warning(message: str) -> None:
    """Print a warning message (buffered as "warning" in agent mode)."""
    if output_mode.is_human():
        console.print(f"[yellow]⚠[/yellow] {message}", style="yellow")
    elif output_mode.is_agent():
        output_mode.add_json("warning", message)


def info(message: str) -> None:
    """Print an info message. Silent in agent and quiet modes."""
    if output_mode.is_human() and not output_mode.quiet:
        console.print(f"[blue]ℹ[/blue] {message}")


def _state_markup(state: str) -> str:
    if state == "completed":
        return "[green]completed[/green]"
    if state == "aborted":
        return "[red]aborted[/red]"
    return f"[yellow]{state}[/yellow]"


def print_study_table(studies: list[dict]) -> None:
    """
    Print one row per study.

    Expected dict keys:
    - study_id, surface_id, final_state
    - queries_completed, total_queries, successful, failed
    - recovery_attempts, p95_duration_ms
    - abort_reason (optional)

    Human mode: Rich table with colored state
    Agent mode: Buffer as "studies" JSON array
    Quiet mode: Silent
    """
    if output_mode.is_agent():
        output_mode.add_json("studies", studies)
        return

    if output_mode.quiet:
        return

    table = Table(title="Study Summary", box=box.ROUNDED)
    table.add_column("Study", style="cyan", no_wrap=True)
    table.add_column("Surface", style="magenta")
    table.add_column("State", justify="center")
    table.add_column("Completed", justify="right")
    table.add_column("OK / Failed", justify="right")
    table.add_column("Recoveries", justify="right")
    table.add_column("p95 ms", justify="right", style="green")

    for study in studies:
        table.add_row(
            study.get("study_id", ""),
            study.get("surface_id", ""),
            _state_markup(study.get("final_state", "unknown")),
            f"{study.get('queries_completed', 0)}/{study.get('total_queries', 0)}",
            f"{study.get('successful', 0)} / {study.get('failed', 0)}",
            str(study.get("recovery_attempts", 0)),
            str(study.get("p95_duration_ms", 0)),
        )

    console.print(table)

    for study in studies:
        if study.get("abort_reason"):
            console.print(
                f"[red]✗[/red] {study['study_id']} aborted: {study['abort_reason']}"
            )


def print_checkpoint_table(checkpoints: list[dict]) -> None:
    """Print saved checkpoints (keys: study_id, file_path, saved_at, queries_completed, total_queries, file_size_bytes)."""
    if output_mode.is_agent():
        output_mode.add_json("checkpoints", checkpoints)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        for cp in checkpoints:
            print(
                f"{cp['study_id']}\t{cp['queries_completed']}\t{cp['total_queries']}\t{cp['file_path']}"
            )
        return

    table = Table(title="Checkpoints", box=box.ROUNDED)
    table.add_column("Study", style="cyan", no_wrap=True)
    table.add_column("Progress", justify="right")
    table.add_column("Saved At", style="magenta")
    table.add_column("Size", justify="right")
    table.add_column("File", style="dim")

    for cp in checkpoints:
        table.add_row(
            cp["study_id"],
            f"{cp['queries_completed']}/{cp['total_queries']}",
            cp["saved_at"],
            f"{cp['file_size_bytes']} B",
            cp["file_path"],
        )

    console.print(table)


def print_identity_table(identities: list[dict]) -> None:
    """Print configured identities (output of EgressIdentity.to_public_dict())."""
    if output_mode.is_agent():
        output_mode.add_json("identities", identities)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        for identity in identities:
            print(f"{identity['name']}\t{identity['location']}\t{identity['server']}")
        return

    table = Table(title="Egress Identities", box=box.ROUNDED)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Location", style="magenta")
    table.add_column("Server")
    table.add_column("Username", style="dim")
    table.add_column("Password", justify="center")

    for identity in identities:
        table.add_row(
            identity["name"],
            identity["location"],
            identity["server"] or "(direct)",
            identity["username"] or "",
            "***" if identity["has_password"] else "",
        )

    console.print(table)


def print_banner(version: str) -> None:
    """Print a startup banner in human mode."""
    if not output_mode.is_human() or output_mode.quiet:
        return

    banner = f"""
[bold cyan]╔{"═" * 39}╗
║   Resilient Query Engine v{version:<11} ║
║   Long query batches that survive     ║
╚{"═" * 39}╝[/bold cyan]
"""

    console.print(banner)


def print_final_summary(
    run_id: str,
    output_dir: str,
    successful: int,
    total: int,
    aborted_studies: int = 0,
) -> None:
    """
    Print final summary with run statistics.

    Human mode: Rich panel with colored border
    Agent mode: Flush all buffered JSON including these final stats
    Quiet mode: Tab-separated values

    Examples:
        >>> print_final_summary("2025-11-02T08-30-00Z", "./output/2025-11-02T08-30-00Z", 10, 10)
    """
    if output_mode.is_agent():
        output_mode.add_json("run_id", run_id)
        output_mode.add_json("output_dir", output_dir)
        output_mode.add_json("successful_queries", successful)
        output_mode.add_json("total_queries", total)
        output_mode.add_json("aborted_studies", aborted_studies)
        output_mode.flush_json()
        return

    if output_mode.quiet:
        print(f"{run_id}\t{output_dir}\t{successful}\t{total}\t{aborted_studies}")
        return

    success_rate = (successful / total * 100) if total > 0 else 0.0

    summary_text = f"""
[bold]Run ID:[/bold] {run_id}
[bold]Output Directory:[/bold] {output_dir}
[bold]Queries:[/bold] {successful}/{total} successful ({success_rate:.1f}%)
[bold]Aborted Studies:[/bold] {aborted_studies}
"""

    if aborted_studies:
        border_style = "red"
        title = "[bold red]✗ Run Aborted[/bold red]"
    elif successful == total:
        border_style = "green"
        title = "[bold green]✓ Run Completed Successfully[/bold green]"
    elif successful > 0:
        border_style = "yellow"
        title = "[bold yellow]⚠ Run Completed with Partial Failures[/bold yellow]"
    else:
        border_style = "red"
        title = "[bold red]✗ Run Failed[/bold red]"

    panel = Panel(
        summary_text.strip(),
        title=title,
        border_style=border_style,
        box=box.ROUNDED,
    )

    console.print(panel)
