"""CLI entry point for requesting a rental business analysis.

Loads transaction and reservation records from a JSON file, runs one
analysis request against the remote service, and prints the narrative
(or the user-facing failure message).
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from rental_analysis.models.config import AnalysisConfig, ConfigManager
from rental_analysis.models.data_models import (
    AnalysisKind,
    AnalysisOutcome,
    AnalysisPayload,
    AnalysisProgress,
    OutcomeSource,
)
from rental_analysis.pipeline.orchestrator import AnalysisOptions, AnalysisOrchestrator
from rental_analysis.pipeline.output import JSONOutputFormatter


__version__ = "1.0.0"

console = Console()


def load_payload(path: Path) -> AnalysisPayload:
    """
    Read ``{"transactions": [...], "reservations": [...]}`` from ``path``.

    Raises:
        click.BadParameter: If the file is not valid JSON or not an object
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except ValueError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}", param_hint="--records")
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a JSON object", param_hint="--records")
    return AnalysisPayload(
        transactions=data.get("transactions", []),
        reservations=data.get("reservations", []),
    )


@click.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False, path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option(
    "--records",
    "-r",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with transactions and reservations",
)
@click.option(
    "--endpoint",
    "-e",
    help="Analysis endpoint URL (overrides config)",
)
@click.option(
    "--timeout-ms",
    "-t",
    type=click.IntRange(min=1),
    help="Per-attempt timeout in milliseconds (overrides config)",
)
@click.option(
    "--max-attempts",
    "-m",
    type=click.IntRange(min=1),
    help="Maximum attempts for the request (overrides config)",
)
@click.option(
    "--kind",
    "-k",
    type=click.Choice([kind.value for kind in AnalysisKind], case_sensitive=False),
    help="Expected analysis kind (inferred from the records by default)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the outcome as JSON to this file",
)
@click.option(
    "--no-progress",
    is_flag=True,
    help="Disable spinner and rich formatting (useful for CI/CD)",
)
@click.version_option(version=__version__, prog_name="rental-analysis")
def main(
    config: Path,
    records: Path,
    endpoint: Optional[str],
    timeout_ms: Optional[int],
    max_attempts: Optional[int],
    kind: Optional[str],
    log_level: Optional[str],
    output: Optional[Path],
    no_progress: bool,
) -> None:
    """
    Rental Analysis - AI business summary with retries and local fallback.

    Examples:

        # Analyze records with default configuration
        $ rental-analysis --records data/records.json

        # Point at another server and allow a single attempt
        $ rental-analysis -r data/records.json -e http://localhost:8000/api/analyze -m 1

        # Save the outcome for later processing
        $ rental-analysis -r data/records.json --output out/analysis.json --no-progress
    """
    try:
        cli_overrides = {
            "endpoint_url": endpoint,
            "request_timeout_ms": timeout_ms,
            "max_attempts": max_attempts,
            "log_level": log_level.upper() if log_level else None,
        }
        analysis_config = ConfigManager(config).load_config(cli_overrides)
        payload = load_payload(records)

        _display_config_summary(analysis_config, no_progress)

        orchestrator = AnalysisOrchestrator(analysis_config)
        options = AnalysisOptions(expected_kind=kind.lower() if kind else None)
        outcome = asyncio.run(_run_with_progress(orchestrator, payload, options, no_progress))

        if output is not None:
            JSONOutputFormatter().save(outcome, str(output), orchestrator.snapshot())

        _display_outcome(outcome, output, no_progress)
        sys.exit(0 if outcome.narrative else 1)

    except click.ClickException:
        raise
    except KeyboardInterrupt:
        console.print("\n[yellow]Analysis interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        if "--debug" in sys.argv:
            console.print_exception()
        sys.exit(1)


async def _run_with_progress(
    orchestrator: AnalysisOrchestrator,
    payload: AnalysisPayload,
    options: AnalysisOptions,
    no_progress: bool,
) -> AnalysisOutcome:
    """Run one analysis request, showing a spinner that follows retries."""
    if no_progress:
        return await orchestrator.request_analysis(payload, options)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("[cyan]Requesting analysis...", total=None)

        def on_progress(event: AnalysisProgress) -> None:
            if event.stage == "attempt":
                description = f"[cyan]Attempt {event.attempt}/{event.max_attempts}..."
            elif event.stage == "retrying":
                description = f"[yellow]Retrying in {event.delay_ms}ms..."
            else:
                description = f"[cyan]Analysis {event.stage}"
            progress.update(task_id, description=description)

        options.on_progress = on_progress
        return await orchestrator.request_analysis(payload, options)


def _display_config_summary(config: AnalysisConfig, no_progress: bool) -> None:
    """Display configuration summary before running."""
    if no_progress:
        return

    console.print("\n[bold cyan]Analysis Configuration[/bold cyan]")
    console.print(f"  Endpoint: {config.endpoint_url}")
    console.print(f"  Timeout: {config.request_timeout_ms}ms per attempt")
    console.print(f"  Max Attempts: {config.max_attempts}")
    console.print(f"  Backoff: {config.base_delay_ms}ms base, {config.max_delay_ms}ms max")
    console.print()


def _display_outcome(
    outcome: AnalysisOutcome,
    output_path: Optional[Path],
    no_progress: bool,
) -> None:
    """Display the narrative or the failure message."""
    if no_progress:
        # Plain output for CI/CD
        if outcome.user_message:
            click.echo(outcome.user_message, err=not outcome.succeeded)
        if outcome.narrative:
            click.echo(outcome.narrative)
        if output_path is not None:
            click.echo(f"Output saved to: {output_path}")
        return

    summary_table = Table(title="Analysis Outcome", show_header=False)
    summary_table.add_column("Field", style="cyan")
    summary_table.add_column("Value", style="green")
    summary_table.add_row("Succeeded", "yes" if outcome.succeeded else "no")
    summary_table.add_row("Source", outcome.source.value if outcome.source else "-")
    summary_table.add_row("Attempts", str(outcome.attempts_made))
    summary_table.add_row("Degraded", "yes" if outcome.degraded else "no")
    if outcome.error_kind is not None:
        summary_table.add_row("Error", outcome.error_kind.value)
    console.print(summary_table)
    console.print()

    if outcome.user_message:
        style = "yellow" if outcome.succeeded else "bold red"
        console.print(Text(outcome.user_message, style=style))
        console.print()

    if outcome.narrative:
        # Local narratives are markdown; remote ones are sanitized HTML shown verbatim
        body = Markdown(outcome.narrative) if outcome.source == OutcomeSource.LOCAL else Text(outcome.narrative)
        console.print(Panel(body, title="Analysis", border_style="green"))
        console.print()

    if output_path is not None:
        console.print(f"[bold]Output saved to:[/bold] {output_path}")
        console.print()


if __name__ == "__main__":
    main()
