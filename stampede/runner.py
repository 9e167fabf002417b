"""Execution runner: config, controller, metrics, report. Lightweight, speed-first; no framework layer."""

from __future__ import annotations

import asyncio
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from rich.console import Console
from rich.live import Live

from .classifier import ResponseClassifier
from .config import load_config, validate_scenario_config
from .dashboard import create_live_panel, format_progress_line, print_summary
from .engine import create_client
from .exceptions import StampedeRunnerError
from .logging_config import get_logger
from .metrics import MetricAggregator
from .models import Report, ScenarioConfig, ScenarioKind
from .report import build_report, write_json_report, write_junit_report
from .scenarios import ConcurrencyController, ControllerResult
from .schedule import Schedule
from .workload import WorkloadGenerator

if TYPE_CHECKING:
    import httpx

logger = get_logger("runner")

LIVE_POLL_SEC = 0.25
LIVE_REFRESH_PER_SEC = 4
# When stdout is not a TTY (e.g. Docker without -it), refresh interval for streaming fallback
STREAMING_FALLBACK_INTERVAL_SEC = 1.0
REPORT_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"


def _setup_signal_handlers(controller: ConcurrencyController) -> dict[int, Any]:
    """Route SIGINT/SIGTERM to controller.request_stop. Returns the previous handlers."""
    previous: dict[int, Any] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    loop = asyncio.get_running_loop()

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received (signal %d), finishing current requests...", signum)
        loop.call_soon_threadsafe(controller.request_stop)

    signals = [signal.SIGINT]
    # Only set up SIGTERM on Unix-like systems
    if hasattr(signal, "SIGTERM"):
        signals.append(signal.SIGTERM)
    for sig in signals:
        previous[sig] = signal.signal(sig, _signal_handler)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        # None: the previous handler was not installed from Python
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


async def _run_live(
    aggregator: MetricAggregator,
    controller: ConcurrencyController,
    config: ScenarioConfig,
    controller_task: asyncio.Task,
    console: Console,
) -> None:
    with Live(
        create_live_panel(aggregator, controller, config),
        console=console,
        refresh_per_second=LIVE_REFRESH_PER_SEC,
    ) as live_ctx:
        while not controller_task.done():
            live_ctx.update(create_live_panel(aggregator, controller, config))
            await asyncio.wait({controller_task}, timeout=LIVE_POLL_SEC)
        live_ctx.update(create_live_panel(aggregator, controller, config))


async def _run_streaming_fallback(
    aggregator: MetricAggregator,
    controller: ConcurrencyController,
    config: ScenarioConfig,
    controller_task: asyncio.Task,
) -> None:
    """Print one line per interval when not a TTY (Docker, CI) so output streams in real time."""
    while not controller_task.done():
        await asyncio.wait({controller_task}, timeout=STREAMING_FALLBACK_INTERVAL_SEC)
        sys.stdout.write(format_progress_line(aggregator, controller, config) + "\n")
        sys.stdout.flush()


def _resolve_report_path(report_path: str | Path, suffix: str, name: str) -> Path:
    """Directories get a timestamped file so back-to-back runs do not overwrite each other."""
    p = Path(report_path)
    if p.is_dir() or not p.suffix:
        stamp = datetime.now(timezone.utc).strftime(REPORT_TIMESTAMP_FMT)
        return p / f"{name or 'stampede'}_{stamp}{suffix}"
    return p


async def run_with_config(
    config: ScenarioConfig,
    live: bool = True,
    json_path: str | Path | None = None,
    junit_path: str | Path | None = None,
    client: httpx.AsyncClient | None = None,
    console: Console | None = None,
) -> Report:
    """
    Run one scenario end to end and return its Report.

    1. Validates config and builds the schedule, workload and classifier
    2. Drives users with the ConcurrencyController (live view if enabled)
    3. Snapshots the aggregator and evaluates thresholds
    4. Writes JSON / JUnit reports when paths are given

    A client may be injected (tests); otherwise one is created and closed here.
    """
    validate_scenario_config(config)
    schedule = Schedule(config.phases)
    is_coupon = config.scenario == ScenarioKind.COUPON_FCFS
    aggregator = MetricAggregator(track_grants=is_coupon)
    generator = WorkloadGenerator(config)
    classifier = ResponseClassifier(config.exhaustion_marker, config.order_number_field)
    console = console or Console()

    start_dt = datetime.now(timezone.utc)
    logger.info(
        "Starting run: name=%s, scenario=%s, base_url=%s, duration=%.1fs, peak_users=%d",
        config.name,
        config.scenario.value,
        config.base_url,
        schedule.total_duration,
        schedule.peak_level,
        extra={"run": config.name},
    )

    own_client = client is None
    if client is None:
        try:
            client = create_client(
                http2=config.http2,
                timeout=config.timeout_seconds,
                max_connections=config.max_connections,
            )
        except ImportError as e:
            # httpx raises ImportError for http2=True without the h2 package
            raise StampedeRunnerError(
                "Cannot create HTTP client", context={"http2": config.http2}, original_error=e
            ) from e

    try:
        controller = ConcurrencyController(
            schedule,
            client,
            generator,
            classifier,
            aggregator,
            config.think_time,
            control_interval=config.control_interval_seconds,
            grace_period=config.grace_period_seconds,
        )
        previous = _setup_signal_handlers(controller)
        try:
            controller_task = asyncio.create_task(controller.run())
            if live:
                if _stdout_is_tty():
                    await _run_live(aggregator, controller, config, controller_task, console)
                else:
                    await _run_streaming_fallback(aggregator, controller, config, controller_task)
            result: ControllerResult = await controller_task
        finally:
            _restore_signal_handlers(previous)
    finally:
        if own_client:
            await client.aclose()

    end_dt = datetime.now(timezone.utc)
    report = build_report(
        aggregator.snapshot(),
        config.thresholds,
        duration_seconds=result.duration_seconds,
        name=config.name,
        coupon_stock=config.coupon_stock if is_coupon else None,
        check_double_issuance=is_coupon,
    )
    report.interrupted = result.interrupted
    logger.info(
        "Run finished: total_requests=%d, rps=%.1f, error_rate_pct=%.2f, passed=%s",
        report.total_requests,
        report.throughput_rps,
        report.error_rate_pct,
        report.passed,
        extra={"run": config.name},
    )

    extra = {
        "scenario": config.scenario.value,
        "base_url": config.base_url,
        "preset": config.preset,
        "peak_users": result.peak_active,
        "users_started": result.users_started,
        "cancelled_users": result.cancelled_users,
    }
    if json_path:
        out = write_json_report(
            _resolve_report_path(json_path, ".json", config.name),
            report,
            start_dt=start_dt,
            end_dt=end_dt,
            extra=extra,
            time_series=aggregator.time_series_1s(),
        )
        if live:
            console.print(f"[dim]JSON report:[/dim] {out}")
    if junit_path:
        out = write_junit_report(_resolve_report_path(junit_path, ".xml", config.name), report, start_dt=start_dt)
        if live:
            console.print(f"[dim]JUnit report:[/dim] {out}")
    if live:
        print_summary(report, console)
    return report


async def run_scenario_file(
    config_path: str | Path | None,
    overrides: Mapping[str, Any] | None = None,
    live: bool = True,
    json_path: str | Path | None = None,
    junit_path: str | Path | None = None,
) -> Report:
    """Load YAML scenario (plus overrides) and run it."""
    config = await asyncio.to_thread(load_config, config_path, overrides)
    return await run_with_config(config, live=live, json_path=json_path, junit_path=junit_path)
