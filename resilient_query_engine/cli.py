"""
CLI entrypoint for the Resilient Query Engine.

Provides a dual-mode command-line interface with:
- Human-friendly output: Rich spinners, progress bars, tables and the
  interactive operator prompt
- Agent-friendly output: Structured JSON, never prompts
- Quiet mode: Tab-separated minimal output for shell scripts

Commands:
    run: Execute studies (optionally resuming an earlier run directory)
    validate: Validate configuration without running queries
    checkpoints: List checkpoints saved in a run directory
    identities: List configured egress identities (passwords redacted)

Exit codes:
    0: Success - every study completed and every query succeeded
    1: Configuration error (invalid YAML, missing env vars, bad resume target)
    2: Storage error (cannot write results or checkpoints, corrupt checkpoint)
    3: Partial failure (studies completed, some queries failed)
    4: Complete failure (studies completed, no query succeeded)
    5: Aborted (at least one study ended ABORTED; takes precedence over 3/4)

Examples:
    # Human mode with operator prompts
    query-engine run --config engine.config.yaml

    # Automation: JSON output, operator escalations abort the study
    query-engine run --config engine.config.yaml --format json --yes

    # Continue an interrupted run
    query-engine run --config engine.config.yaml --resume ./output/2025-11-02T08-00-00Z
"""

import asyncio
import logging
import os
import signal
from pathlib import Path

import typer
from rich.traceback import install as install_rich_traceback

from resilient_query_engine.adapters import AdapterRegistry
from resilient_query_engine.config.loader import load_config, load_identities_from_env
from resilient_query_engine.engine.checkpoint import CheckpointStore
from resilient_query_engine.engine.operator import (
    ConsoleOperatorChannel,
    ScriptedOperatorChannel,
)
from resilient_query_engine.engine.orchestrator import RunOutcome, run_studies, study_row
from resilient_query_engine.engine.pacing import CancellationToken
from resilient_query_engine.exceptions import (
    APIKeyMissingError,
    CheckpointError,
    ConfigFileNotFoundError,
    ConfigurationError,
    ConfigValidationError,
    InvalidQueryListError,
    ResumeError,
)
from resilient_query_engine.utils.console import (
    console_err,
    create_progress_bar,
    error,
    info,
    output_mode,
    print_banner,
    print_checkpoint_table,
    print_final_summary,
    print_identity_table,
    print_study_table,
    spinner,
    success,
    warning,
)
from resilient_query_engine.utils.logging import setup_logging

install_rich_traceback(show_locals=False)

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0  # All studies completed, all queries successful
EXIT_CONFIG_ERROR = 1  # Config validation failed
EXIT_STORAGE_ERROR = 2  # Cannot write results/checkpoints
EXIT_PARTIAL_FAILURE = 3  # Some queries failed
EXIT_COMPLETE_FAILURE = 4  # All queries failed
EXIT_ABORTED = 5  # At least one study aborted

app = typer.Typer(
    name="query-engine",
    help="Run long query batches against search and LLM surfaces without losing progress",
    add_completion=False,
)


def exit_code_for(outcome: RunOutcome) -> int:
    """
    Map a finished run onto an exit code.

    Aborted studies take precedence over query failures.
    """
    if outcome.aborted_studies:
        return EXIT_ABORTED
    if outcome.total_queries and outcome.successful_queries == 0:
        return EXIT_COMPLETE_FAILURE
    if outcome.successful_queries < outcome.total_queries:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS


def _fail(message: str, code: int) -> None:
    """Report an error (flushing buffered JSON in agent mode) and exit."""
    error(message)
    output_mode.flush_json()
    raise typer.Exit(code)


def _install_interrupt_handler(cancel: CancellationToken) -> bool:
    """Route Ctrl-C to the cancellation token so studies checkpoint and stop."""
    try:
        asyncio.get_running_loop().add_signal_handler(
            signal.SIGINT, cancel.cancel, "interrupted by operator (SIGINT)"
        )
        return True
    except (NotImplementedError, RuntimeError, ValueError):
        return False


async def _execute(runtime_config, studies, resume_dir, operator, progress_callback) -> RunOutcome:
    cancel = CancellationToken()
    installed = _install_interrupt_handler(cancel)
    try:
        return await run_studies(
            runtime_config,
            studies=studies,
            resume_dir=resume_dir,
            operator=operator,
            progress_callback=progress_callback,
            cancel=cancel,
        )
    finally:
        if installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)


@app.command()
def run(
    config: Path = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to YAML configuration file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    study: list[str] = typer.Option(
        None,
        "--study",
        "-s",
        help="Run only this study (repeatable)",
    ),
    resume: Path = typer.Option(
        None,
        "--resume",
        "-r",
        help="Resume the run in this results directory",
    ),
    format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: 'text' (human-friendly) or 'json' (machine-readable)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output (tab-separated values)",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Never prompt; operator escalations abort the study (for automation)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
):
    """
    Execute the configured studies.

    Each study submits its queries in order through a proxy identity,
    rotates identities when the surface blocks it, and checkpoints progress.
    When every identity for a location is exhausted the operator is asked to
    continue, skip or abort (human mode only; --yes and JSON mode abort).

    Examples:
      query-engine run --config engine.config.yaml
      query-engine run --config engine.config.yaml --study google-india --yes
      query-engine run --config engine.config.yaml --resume ./output/2025-11-02T08-00-00Z
    """
    output_mode.format = format
    output_mode.quiet = quiet

    # JSON log lines would interleave with the Rich progress display
    setup_logging(verbose=verbose, quiet_logs=output_mode.is_human())

    print_banner(_read_version())

    try:
        with spinner("Loading configuration..."):
            runtime_config = load_config(config)
        studies = runtime_config.select_studies(study)
        success(
            f"Loaded {len(studies)} studies, {len(runtime_config.identities)} egress identities"
        )
    except ConfigFileNotFoundError as e:
        _fail(f"Configuration file not found: {e}", EXIT_CONFIG_ERROR)
    except APIKeyMissingError as e:
        _fail(f"Environment variable missing: {e}", EXIT_CONFIG_ERROR)
    except ConfigValidationError as e:
        _fail(f"Configuration validation failed: {e}", EXIT_CONFIG_ERROR)
    except (ConfigurationError, InvalidQueryListError, ValueError) as e:
        _fail(f"Configuration error: {e}", EXIT_CONFIG_ERROR)

    resume_dir = None
    if resume is not None:
        if not resume.is_dir():
            _fail(f"Cannot resume: directory {resume} does not exist", EXIT_CONFIG_ERROR)
        resume_dir = str(resume)
        info(f"Resuming run in {resume_dir}")

    total_queries = sum(len(s.queries) for s in studies)
    info(f"Will execute up to {total_queries} queries across {len(studies)} studies")

    if yes or not output_mode.is_human():
        operator = ScriptedOperatorChannel()
    else:
        operator = ConsoleOperatorChannel(
            console=console_err,
            timeout_seconds=runtime_config.run_settings.operator_timeout_seconds,
        )

    try:
        progress = create_progress_bar()
        with progress:
            tasks = {
                s.config.study_id: progress.add_task(s.config.study_id, total=len(s.queries))
                for s in studies
            }

            def _on_progress(study_id: str, completed: int, total: int) -> None:
                progress.update(tasks[study_id], completed=completed, total=total)

            outcome = asyncio.run(
                _execute(runtime_config, studies, resume_dir, operator, _on_progress)
            )
    except (ConfigValidationError, ResumeError, InvalidQueryListError) as e:
        _fail(f"Cannot run studies: {e}", EXIT_CONFIG_ERROR)
    except (CheckpointError, OSError) as e:
        _fail(f"Storage error: {e}", EXIT_STORAGE_ERROR)

    print_study_table([study_row(r) for r in outcome.results])
    for result in outcome.results:
        if result.failure_summary and result.failure_summary.total_failures:
            for recommendation in result.failure_summary.recommendations:
                warning(f"{result.study_id}: {recommendation}")

    print_final_summary(
        run_id=outcome.run_id,
        output_dir=outcome.run_dir,
        successful=outcome.successful_queries,
        total=outcome.total_queries,
        aborted_studies=outcome.aborted_studies,
    )

    raise typer.Exit(exit_code_for(outcome))


@app.command()
def validate(
    config: Path = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to YAML configuration file",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: 'text' or 'json'",
    ),
):
    """
    Validate configuration without executing queries.

    Checks YAML syntax, schema rules, ${ENV} references, query lists and
    each study's adapter configuration.

    Exit codes:
      0: Configuration is valid
      1: Configuration is invalid
    """
    output_mode.format = format

    with spinner("Validating configuration..."):
        try:
            runtime_config = load_config(config)
            for study in runtime_config.studies:
                try:
                    AdapterRegistry.validate(study.surface.adapter, study.surface.config)
                except ValueError as e:
                    raise ConfigValidationError(f"Study '{study.config.study_id}': {e}") from e
        except ConfigurationError as e:
            error(f"Validation failed: {e}")
            if output_mode.is_agent():
                output_mode.add_json("valid", False)
                output_mode.add_json("error", str(e))
                output_mode.add_json("error_type", type(e).__name__)
                output_mode.flush_json()
            raise typer.Exit(EXIT_CONFIG_ERROR)
        except InvalidQueryListError as e:
            error(f"Validation failed: {e}")
            if output_mode.is_agent():
                output_mode.add_json("valid", False)
                output_mode.add_json("error", str(e))
                output_mode.add_json("error_type", "InvalidQueryListError")
                output_mode.flush_json()
            raise typer.Exit(EXIT_CONFIG_ERROR)

    success("Configuration is valid")
    info(f"Studies: {len(runtime_config.studies)}")
    info(f"Queries: {sum(len(s.queries) for s in runtime_config.studies)}")
    info(f"Egress identities: {len(runtime_config.identities)}")
    info(f"CAPTCHA solving: {'enabled' if runtime_config.captcha_api_key else 'disabled'}")

    if output_mode.is_agent():
        output_mode.add_json("valid", True)
        output_mode.add_json("studies_count", len(runtime_config.studies))
        output_mode.add_json(
            "queries_count", sum(len(s.queries) for s in runtime_config.studies)
        )
        output_mode.add_json("identities_count", len(runtime_config.identities))
        output_mode.flush_json()

    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def checkpoints(
    run_dir: Path = typer.Argument(..., help="Run directory holding checkpoint files"),
    study: str = typer.Option(None, "--study", "-s", help="Only this study"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Tab-separated output"),
):
    """
    List checkpoints saved in a run directory.

    Example:
      query-engine checkpoints ./output/2025-11-02T08-00-00Z --study google-india
    """
    output_mode.format = format
    output_mode.quiet = quiet

    if not run_dir.is_dir():
        _fail(f"Directory not found: {run_dir}", EXIT_CONFIG_ERROR)

    infos = CheckpointStore(run_dir).list_checkpoints(study)
    if not infos:
        warning(f"No checkpoints found in {run_dir}")
    print_checkpoint_table([i.to_dict() for i in infos])
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def identities(
    location: str = typer.Option(None, "--location", "-l", help="Only this location"),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Also include identities declared in this configuration file",
        exists=True,
        dir_okay=False,
    ),
    format: str = typer.Option("text", "--format", "-f", help="Output format: 'text' or 'json'"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Tab-separated output"),
):
    """
    List egress identities from the environment (passwords are never shown).

    Reads PROXY_IN_1..5, PROXY_US_1..5, CHERRY_PROXY_IN, CHERRY_PROXY_US and
    LOCAL_SOCKS_PROXY.
    """
    output_mode.format = format
    output_mode.quiet = quiet

    if config is not None:
        try:
            found = load_config(config).identities
        except (ConfigurationError, InvalidQueryListError) as e:
            _fail(f"Configuration error: {e}", EXIT_CONFIG_ERROR)
    else:
        found = load_identities_from_env(os.environ)

    if location:
        found = [identity for identity in found if identity.location == location]
    if not found:
        warning("No egress identities configured; studies will use direct egress")
    print_identity_table([identity.to_public_dict() for identity in found])
    raise typer.Exit(EXIT_SUCCESS)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Resilient Query Engine - long query batches that survive blocks and crashes.

    Exit codes:
      0: Success
      1: Configuration error
      2: Storage error
      3: Partial failure (some queries failed)
      4: Complete failure (all queries failed)
      5: At least one study aborted
    """
    if version:
        typer.echo(f"query-engine version {_read_version()}")
        raise typer.Exit(EXIT_SUCCESS)

    if ctx.invoked_subcommand is None:
        typer.echo("Use --help to see available commands")


def _read_version() -> str:
    """Read version from package metadata, falling back to the source version."""
    try:
        from importlib.metadata import version

        return version("resilient-query-engine")
    except Exception:
        return "0.1.0"


if __name__ == "__main__":
    app()
