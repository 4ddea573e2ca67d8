"""Command-line interface for geoload."""

from __future__ import annotations

import asyncio
import math
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from geoload import __version__
from geoload.config import Config
from geoload.engine.scheduler import target_at
from geoload.errors import AggregationError, ConfigurationError
from geoload.models import RunResult
from geoload.observability import configure_logging
from geoload.runner import LoadTestRunner

console = Console()
logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
# Same code k6 uses when thresholds are crossed
EXIT_THRESHOLDS_FAILED = 99


def load_scenario(path: str, overrides: Optional[Dict[str, Any]] = None) -> Config:
    """Load a scenario or exit with a readable configuration error."""
    try:
        return Config.from_yaml(Path(path), overrides=overrides)
    except ConfigurationError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(EXIT_ERROR)


def render_result(result: RunResult) -> None:
    snapshot = result.snapshot

    stats = Table(title="Run Summary")
    stats.add_column("Metric", style="cyan")
    stats.add_column("Value", style="magenta", justify="right")
    stats.add_row("http_reqs", f"{snapshot.requests} ({snapshot.request_rate:.1f}/s)")
    stats.add_row("http_req_failed", f"{snapshot.failure_rate:.2%} ({snapshot.failed_requests})")
    stats.add_row(
        "http_req_duration",
        f"avg={snapshot.avg:.2f}ms min={snapshot.min:.2f}ms med={snapshot.med:.2f}ms "
        f"max={snapshot.max:.2f}ms p(90)={snapshot.percentile(90):.2f}ms p(95)={snapshot.percentile(95):.2f}ms "
        f"p(99)={snapshot.percentile(99):.2f}ms",
    )
    stats.add_row("checks", f"{snapshot.checks_rate:.2%} ✓ {snapshot.checks_passed} ✗ {snapshot.checks_failed}")
    for name, counts in snapshot.checks.items():
        stats.add_row(f"  {name}", f"✓ {counts.passes} ✗ {counts.fails}")
    for status, count in sorted(snapshot.status_counts.items()):
        stats.add_row(f"  status {status}", str(count))
    for kind, count in sorted(snapshot.error_counts.items()):
        stats.add_row(f"  {kind} errors", str(count))
    stats.add_row("vus_max", str(result.max_vus))
    stats.add_row("duration", f"{result.duration:.1f}s")
    console.print(stats)

    if result.thresholds:
        thresholds = Table(title="Thresholds")
        thresholds.add_column("Threshold", style="cyan")
        thresholds.add_column("Observed", justify="right")
        thresholds.add_column("Result")
        for item in result.thresholds:
            thresholds.add_row(
                item.spec.label,
                f"{item.observed:.4g}",
                "[green]✓ pass[/green]" if item.passed else "[red]✗ fail[/red]",
            )
        console.print(thresholds)

    if result.interrupted:
        console.print("[yellow]Run was interrupted before all stages completed.[/yellow]")
    if result.passed:
        console.print(Panel.fit("[bold green]✅ All thresholds passed[/bold green]", border_style="green"))
    else:
        failed = ", ".join(item.spec.label for item in result.failed_thresholds)
        console.print(Panel.fit(f"[bold red]❌ Thresholds crossed: {failed}[/bold red]", border_style="red"))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (defaults to the scenario's monitoring.log_level)",
)
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """geoload - ramping virtual-user load tests for geolocation search endpoints."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
@click.option("--base-url", help="Override the target base URL (e.g. http://localhost:9090)")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@click.option("--seed", type=int, help="Seed the per-VU random sources for a reproducible request stream")
@click.option("--prometheus-port", type=int, help="Expose live metrics on this port while running")
@click.pass_context
def run(
    ctx: click.Context,
    scenario: str,
    base_url: Optional[str],
    insecure: bool,
    seed: Optional[int],
    prometheus_port: Optional[int],
) -> None:
    """Run SCENARIO and exit non-zero when any threshold is crossed."""
    overrides: Dict[str, Any] = {}
    if base_url:
        overrides["target"] = {"base_url": base_url}
    if insecure:
        overrides["insecure_skip_tls_verify"] = True
    if seed is not None:
        overrides["seed"] = seed
    monitoring: Dict[str, Any] = {}
    if ctx.obj["log_level"]:
        monitoring["log_level"] = ctx.obj["log_level"]
    if prometheus_port:
        monitoring["prometheus_port"] = prometheus_port
    if monitoring:
        overrides["monitoring"] = monitoring

    config = load_scenario(scenario, overrides)
    configure_logging(config.monitoring)

    console.print(
        Panel.fit(
            f"[bold blue]geoload {__version__}[/bold blue]\n"
            f"Target: {config.target.url}\n"
            f"Stages: {len(config.stages)} ({config.total_duration:.0f}s, max {config.max_target} VUs)\n"
            f"Thresholds: {sum(len(v) for v in config.thresholds.values())}",
            title="Starting Load Test",
        )
    )

    try:
        runner = LoadTestRunner(config, handle_signals=True, export_metrics=True)
        result = asyncio.run(runner.run())
    except ConfigurationError as e:
        console.print(f"[red]❌ Invalid scenario: {escape(str(e))}[/red]")
        sys.exit(EXIT_ERROR)
    except AggregationError as e:
        logger.critical("Metrics aggregation invariant violated", error=str(e))
        console.print(f"[red]❌ Internal metrics error: {escape(str(e))}[/red]")
        sys.exit(EXIT_ERROR)

    render_result(result)
    sys.exit(EXIT_OK if result.passed else EXIT_THRESHOLDS_FAILED)


@cli.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
def validate(scenario: str) -> None:
    """Validate SCENARIO without sending any request."""
    config = load_scenario(scenario)

    table = Table(title="Stages")
    table.add_column("#", style="cyan")
    table.add_column("Duration", justify="right")
    table.add_column("Target VUs", justify="right")
    for index, stage in enumerate(config.stages, start=1):
        table.add_row(str(index), f"{stage.duration:g}s", str(stage.target))
    console.print(table)

    for spec in config.threshold_specs():
        console.print(f"threshold  {spec.label}")
    console.print(f"target     {config.target.url}")
    console.print("[green]✅ Scenario is valid![/green]")


@cli.command()
@click.argument("scenario", type=click.Path(exists=True, dir_okay=False))
@click.option("--step", default=1.0, show_default=True, type=click.FloatRange(min=0.001), help="Seconds per row")
def plan(scenario: str, step: float) -> None:
    """Print the interpolated VU target over the lifetime of SCENARIO."""
    config = load_scenario(scenario)
    stages = config.stage_plan()

    table = Table(title="VU plan")
    table.add_column("t (s)", justify="right", style="cyan")
    table.add_column("VUs", justify="right", style="magenta")
    rows = int(math.floor(config.total_duration / step)) + 1
    for i in range(rows):
        elapsed = i * step
        table.add_row(f"{elapsed:g}", str(target_at(stages, elapsed, config.vus)))
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
