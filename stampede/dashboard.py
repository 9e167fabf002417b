"""Rich live dashboard and final console summary, with low overhead."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import Report, ScenarioConfig, ThresholdOutcome, Verdict

if TYPE_CHECKING:
    from .metrics import MetricAggregator
    from .scenarios import ConcurrencyController

logger = get_logger("dashboard")

# Trailing window for the live requests-per-second figure
LIVE_RATE_WINDOW_SEC = 5.0
# Most recent samples behind the live p95 figure
LIVE_LATENCY_SAMPLES = 1000

VERDICT_STYLES = {
    Verdict.GRANTED: "green",
    Verdict.DUPLICATE_REJECTED: "yellow",
    Verdict.RESOURCE_EXHAUSTED: "blue",
    Verdict.UNEXPECTED_FAILURE: "red",
}


def _format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def _live_error_rate(aggregator: MetricAggregator) -> float:
    total = aggregator.total_requests
    if total == 0:
        return 0.0
    return 100.0 * aggregator.count(Verdict.UNEXPECTED_FAILURE) / total


def build_metrics_table(
    aggregator: MetricAggregator,
    controller: ConcurrencyController,
) -> Table:
    """Build a single Rich table with current metrics."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    table.add_row("Active users (target)", f"{controller.active_count} ({controller.target_level})")
    table.add_row("Peak users", str(controller.peak_active))
    phase = controller.current_phase
    if phase is not None:
        table.add_row("Phase", controller.schedule.describe()[phase])
    table.add_row("Total requests", str(aggregator.total_requests))
    table.add_row("RPS", f"{aggregator.recent_rate(LIVE_RATE_WINDOW_SEC):.1f}")
    table.add_row("p95 (recent)", f"{aggregator.recent_p95_ms(LIVE_LATENCY_SAMPLES):.1f} ms")
    for verdict in Verdict:
        table.add_row(
            Text(verdict.value, style=VERDICT_STYLES[verdict]),
            str(aggregator.count(verdict)),
        )
    table.add_row("Error rate %", f"{_live_error_rate(aggregator):.2f}%")
    return table


def create_live_panel(
    aggregator: MetricAggregator,
    controller: ConcurrencyController,
    config: ScenarioConfig,
) -> Panel:
    """Create Rich Panel for live display."""
    total = config.total_duration_seconds
    elapsed = controller.elapsed
    remaining = max(0.0, total - elapsed)
    table = build_metrics_table(aggregator, controller)
    table.add_row("Elapsed", f"{elapsed:.1f}s / {total:g}s")
    table.add_row("Remaining (ETA)", _format_remaining(remaining))
    title = Text()
    title.append("stampede ", style="bold magenta")
    title.append(f"| {config.name} | {config.scenario.value}", style="dim")
    title.append(f" | ETA: {_format_remaining(remaining)}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


def format_progress_line(
    aggregator: MetricAggregator,
    controller: ConcurrencyController,
    config: ScenarioConfig,
) -> str:
    """One-line progress for non-TTY output (CI, Docker without -it)."""
    total = config.total_duration_seconds
    elapsed = controller.elapsed
    counts = " ".join(f"{v.value}={aggregator.count(v)}" for v in Verdict)
    return (
        f"stampede | {elapsed:.1f}s/{total:g}s | remaining: {_format_remaining(total - elapsed)} "
        f"| users={controller.active_count}/{controller.target_level} "
        f"requests={aggregator.total_requests} rps={aggregator.recent_rate(LIVE_RATE_WINDOW_SEC):.1f} "
        f"{counts} err%={_live_error_rate(aggregator):.2f}"
    )


def build_summary(report: Report) -> Table:
    """Final summary table: verdicts, latency, thresholds."""
    table = Table(title=f"stampede summary: {report.name}" if report.name else "stampede summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Total requests", str(report.total_requests))
    table.add_row("Duration", f"{report.duration_seconds:.1f}s")
    table.add_row("Throughput", f"{report.throughput_rps:.1f} rps")
    for verdict in Verdict:
        table.add_row(
            Text(verdict.value, style=VERDICT_STYLES[verdict]),
            str(report.verdict_counts.get(verdict.value, 0)),
        )
    table.add_row("Error rate", f"{report.error_rate_pct:.2f}%")
    lat = report.latency
    table.add_row("Latency p50/p90", f"{lat.p50_ms:.1f} / {lat.p90_ms:.1f} ms")
    table.add_row("Latency p95/p99", f"{lat.p95_ms:.1f} / {lat.p99_ms:.1f} ms")
    table.add_row("Latency avg/min/max", f"{lat.avg_ms:.1f} / {lat.min_ms:.1f} / {lat.max_ms:.1f} ms")
    if report.granted_callers:
        table.add_row("Granted callers", str(report.granted_callers))
        table.add_row("Double-granted callers", str(report.double_granted_callers))

    for name, outcome in report.threshold_results.items():
        style = "green" if outcome == ThresholdOutcome.PASS else "bold red"
        table.add_row(
            f"threshold {name}",
            Text(f"{outcome.value.upper()}  {report.threshold_details.get(name, '')}", style=style),
        )
    return table


def build_tag_table(report: Report) -> Table | None:
    """Per-tag comparison (e.g. orchestration vs choreography). None with fewer than two tags."""
    if len(report.tags) < 2:
        return None
    table = Table(title="By request kind")
    table.add_column("Tag", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Granted", justify="right")
    table.add_column("Error %", justify="right")
    table.add_column("p95 ms", justify="right")
    table.add_column("avg ms", justify="right")
    for tag, tr in report.tags.items():
        table.add_row(
            tag,
            str(tr.total_requests),
            str(tr.verdict_counts.get(Verdict.GRANTED.value, 0)),
            f"{tr.error_rate_pct:.2f}",
            f"{tr.latency.p95_ms:.1f}",
            f"{tr.latency.avg_ms:.1f}",
        )
    return table


def print_summary(report: Report, console: Console | None = None) -> None:
    console = console or Console()
    console.print(build_summary(report))
    tags = build_tag_table(report)
    if tags is not None:
        console.print(tags)
    if report.passed:
        console.print("[bold green]All thresholds passed[/bold green]")
    else:
        console.print(f"[bold red]Thresholds failed:[/bold red] {', '.join(report.failed_thresholds)}")
