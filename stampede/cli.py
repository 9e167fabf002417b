"""CLI entry point for stampede.

Speed-first design:
- Uses uvloop for faster event loop when installed
- GC disabled during the run for consistent latency
- Exit codes: 0 all thresholds passed, 99 a threshold failed, 1 error, 130 interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import sys
from typing import Any, Coroutine

# Try to use uvloop for faster async performance
_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from . import __version__
from .exceptions import StampedeError
from .logging_config import LOG_FORMATS, configure_logging, get_logger
from .models import ScenarioKind, SelectionStrategy
from .presets import preset_names
from .runner import run_scenario_file

logger = get_logger("cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_THRESHOLDS_FAILED = 99
EXIT_INTERRUPTED = 130


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run async coroutine with the fastest available event loop.

    Disables GC during execution for consistent latency.
    """
    gc_was_enabled = gc.isenabled()
    gc.disable()

    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        else:
            return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def _overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Raw config values from CLI flags. Unset flags are omitted."""
    mapping = {
        "base_url": args.base_url,
        "coupon_id": args.coupon_id,
        "scenario": args.scenario,
        "selection": args.selection,
        "preset": args.preset,
        "think_time_ms": args.think_time_ms,
        "grace_period_seconds": args.grace_period,
        "control_interval_seconds": args.control_interval,
    }
    return {k: v for k, v in mapping.items() if v is not None}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stampede",
        description="FCFS load and correctness harness. Drives a coupon-issuance or order "
        "endpoint with a staged population of virtual users and checks the outcome.",
    )
    parser.add_argument(
        "-f",
        "--config",
        default=None,
        help="Path to YAML scenario (optional: without it, defaults plus overrides are used)",
    )
    parser.add_argument(
        "--json",
        metavar="PATH",
        dest="json_path",
        help="Write JSON report to PATH (file or directory)",
    )
    parser.add_argument(
        "--junit",
        metavar="PATH",
        dest="junit_path",
        help="Write JUnit XML report to PATH (for CI)",
    )
    parser.add_argument(
        "--no-live",
        action="store_true",
        help="Disable live Rich dashboard and console summary (headless mode)",
    )
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="List built-in load profiles and exit",
    )
    # Config overrides (override values from -f YAML when provided)
    parser.add_argument("--base-url", default=None, dest="base_url", help="Override config: target base URL")
    parser.add_argument("--coupon-id", default=None, dest="coupon_id", help="Override config: coupon id")
    parser.add_argument(
        "--scenario",
        choices=[k.value for k in ScenarioKind],
        default=None,
        help="Override config: endpoint to drive",
    )
    parser.add_argument(
        "--selection",
        choices=[s.value for s in SelectionStrategy],
        default=None,
        help="Override config: caller id selection strategy",
    )
    parser.add_argument("--preset", choices=preset_names(), default=None, help="Override config: load profile")
    parser.add_argument("--think-time", type=float, default=None, metavar="MS", dest="think_time_ms", help="Override config: think time between iterations (ms)")
    parser.add_argument("--grace-period", type=float, default=None, metavar="SEC", dest="grace_period", help="Override config: wait for in-flight requests at the end (s)")
    parser.add_argument("--control-interval", type=float, default=None, metavar="SEC", dest="control_interval", help="Override config: user-level sampling interval (s)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Log level (default: $STAMPEDE_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=None,
        help="Log line format (default: $STAMPEDE_LOG_FORMAT or text)",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"stampede {__version__}",
    )
    return parser


def handle_error(e: BaseException) -> int:
    if isinstance(e, StampedeError):
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    if isinstance(e, (FileNotFoundError, ValueError)):
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    logger.exception("Unexpected error")
    print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
    return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level or args.log_format:
        configure_logging(args.log_level, args.log_format)

    if args.list_presets:
        for name in preset_names():
            print(name)
        return EXIT_OK

    try:
        report = _run_async(
            run_scenario_file(
                args.config,
                overrides=_overrides_from_args(args),
                live=not args.no_live,
                json_path=args.json_path,
                junit_path=args.junit_path,
            )
        )
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        return handle_error(e)

    if report.interrupted:
        print("Interrupted, partial report.", file=sys.stderr)
        return EXIT_INTERRUPTED
    if not report.passed:
        print(f"Thresholds failed: {', '.join(report.failed_thresholds)}", file=sys.stderr)
        return EXIT_THRESHOLDS_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
