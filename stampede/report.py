"""Report building, threshold evaluation and JSON / JUnit output.

build_report is deterministic for a given MetricState and threshold set. Error
rate counts only unexpected failures: duplicates and exhaustion are expected
business outcomes of an FCFS endpoint.
"""

from __future__ import annotations

import operator
import re
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import orjson

from . import __version__ as stampede_version
from .exceptions import StampedeConfigError, StampedeRunnerError
from .logging_config import get_logger
from .metrics import TimeSeriesPoint, latency_percentiles
from .models import (
    MetricState,
    Report,
    TagReport,
    Threshold,
    ThresholdOutcome,
    Verdict,
)

logger = get_logger("report")

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_THRESHOLD_RE = re.compile(
    r"^\s*(?P<metric>[a-z_]+[0-9]*(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<value>-?\d+(?:\.\d+)?)\s*(?P<unit>%|ms|s)?\s*$",
    re.IGNORECASE,
)

LATENCY_METRICS = ("p50", "p90", "p95", "p99", "avg", "min", "max")
COUNT_METRICS = ("total_requests",) + tuple(v.value for v in Verdict)
_ALIASES = {
    "throughput": "rps",
    "tps": "rps",
    "errors": "error_rate",
    "error_rate_pct": "error_rate",
    "requests": "total_requests",
    "med": "p50",
    "median": "p50",
}

DEFAULT_THRESHOLDS = {
    "error_rate": "error_rate < 5%",
    "p95": "p95 < 1000ms",
}

NO_DOUBLE_ISSUANCE = "no_double_issuance"
NO_OVER_ISSUANCE = "no_over_issuance"
# Built-in invariant checks; user thresholds may not take these names
RESERVED_THRESHOLD_NAMES = frozenset({NO_DOUBLE_ISSUANCE, NO_OVER_ISSUANCE})


def _normalize_metric(raw: str) -> str:
    name = raw.lower().replace(" ", "")
    m = re.fullmatch(r"p\((\d+(?:\.\d+)?)\)", name)
    if m:
        num = m.group(1)
        name = "p" + (num[:-2] if num.endswith(".0") else num)
    return _ALIASES.get(name, name)


def parse_threshold(expression: str, name: str | None = None) -> Threshold:
    """Parse "error_rate < 5%", "p(95) < 1s", "granted <= 100" into a Threshold.

    Latency values are stored in milliseconds, rates in percent. The k6 form
    "rate < 0.05" is accepted as an error-rate fraction.
    """
    if not isinstance(expression, str):
        raise StampedeConfigError(
            "Threshold expression must be a string",
            context={"threshold": name, "actual_type": type(expression).__name__},
        )
    m = _THRESHOLD_RE.match(expression)
    if not m:
        raise StampedeConfigError(f"Malformed threshold: {expression!r}", context={"threshold": name})
    metric = _normalize_metric(m.group("metric"))
    op = m.group("op")
    value = float(m.group("value"))
    unit = (m.group("unit") or "").lower()

    if metric == "rate":
        if unit:
            raise StampedeConfigError(f"'rate' takes a fraction without unit: {expression!r}")
        metric, value = "error_rate", value * 100.0
    elif metric == "error_rate":
        if unit not in ("", "%"):
            raise StampedeConfigError(f"error_rate takes a percentage: {expression!r}")
    elif metric in LATENCY_METRICS:
        if unit == "%":
            raise StampedeConfigError(f"Latency threshold cannot be a percentage: {expression!r}")
        if unit == "s":
            value *= 1000.0
    elif metric == "rps" or metric in COUNT_METRICS:
        if unit:
            raise StampedeConfigError(f"{metric} takes a plain number: {expression!r}")
    else:
        raise StampedeConfigError(
            f"Unknown threshold metric: {m.group('metric')!r}",
            context={"expression": expression, "supported": ", ".join(supported_metrics())},
        )
    return Threshold(name=name or expression.strip(), metric=metric, operator=op, value=value, expression=expression.strip())


def supported_metrics() -> list[str]:
    return ["error_rate", *LATENCY_METRICS, "rps", *COUNT_METRICS]


def parse_thresholds(raw: Mapping[str, str] | Iterable[str] | None) -> tuple[Threshold, ...]:
    """Thresholds from a mapping (name -> expression) or a list of expressions.

    None means the defaults (error rate below 5%, p95 below one second).
    """
    if raw is None:
        raw = DEFAULT_THRESHOLDS
    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, Mapping):
        out = [parse_threshold(expr, name=str(name)) for name, expr in raw.items()]
    else:
        out = [parse_threshold(expr) for expr in raw]
    names = [t.name for t in out]
    reserved = sorted(set(names) & RESERVED_THRESHOLD_NAMES)
    if reserved:
        raise StampedeConfigError(
            "Threshold name is reserved for a built-in invariant check",
            context={"names": ", ".join(reserved)},
        )
    if len(set(names)) != len(names):
        raise StampedeConfigError("Duplicate threshold names", context={"names": names})
    return tuple(out)


def _metric_values(report: Report) -> dict[str, float]:
    lat = report.latency
    values: dict[str, float] = {
        "error_rate": report.error_rate_pct,
        "p50": lat.p50_ms,
        "p90": lat.p90_ms,
        "p95": lat.p95_ms,
        "p99": lat.p99_ms,
        "avg": lat.avg_ms,
        "min": lat.min_ms,
        "max": lat.max_ms,
        "rps": report.throughput_rps,
        "total_requests": float(report.total_requests),
    }
    for v in Verdict:
        values[v.value] = float(report.verdict_counts.get(v.value, 0))
    return values


def _error_rate(counts: Mapping[Verdict, int], total: int) -> float:
    if total == 0:
        return 0.0
    return 100.0 * counts.get(Verdict.UNEXPECTED_FAILURE, 0) / total


def build_report(
    state: MetricState,
    thresholds: Iterable[Threshold],
    duration_seconds: float | None = None,
    name: str = "",
    coupon_stock: int | None = None,
    check_double_issuance: bool = False,
) -> Report:
    """Turn a metric snapshot into a Report and evaluate every threshold.

    duration_seconds defaults to the span between the first and last recorded
    sample. coupon_stock adds the no_over_issuance check; check_double_issuance
    adds no_double_issuance (needs an aggregator with track_grants).
    """
    duration = state.window_seconds if duration_seconds is None else max(0.0, duration_seconds)
    total = state.total_requests
    counts = {v.value: int(state.verdict_counts.get(v, 0)) for v in Verdict}
    tags = {
        tag: TagReport(
            tag=tag,
            verdict_counts={v.value: int(ts.verdict_counts.get(v, 0)) for v in Verdict},
            total_requests=ts.total_requests,
            error_rate_pct=_error_rate(ts.verdict_counts, ts.total_requests),
            latency=latency_percentiles(ts.latency),
        )
        for tag, ts in sorted(state.tags.items())
    }
    report = Report(
        verdict_counts=counts,
        total_requests=total,
        duration_seconds=duration,
        throughput_rps=total / duration if duration > 0 else 0.0,
        error_rate_pct=_error_rate(state.verdict_counts, total),
        latency=latency_percentiles(state.latency),
        tags=tags,
        granted_callers=state.granted_callers,
        double_granted_callers=state.double_granted_callers,
        name=name,
    )
    if total == 0:
        logger.warning("No requests were recorded; check target availability and schedule")

    values = _metric_values(report)
    for t in thresholds:
        actual = values[t.metric]
        ok = OPERATORS[t.operator](actual, t.value)
        report.threshold_results[t.name] = ThresholdOutcome.PASS if ok else ThresholdOutcome.FAIL
        report.threshold_details[t.name] = (
            f"{t.metric}={actual:.2f} {t.operator} {t.value:g} ({'pass' if ok else 'fail'})"
        )

    if check_double_issuance:
        doubles = state.double_granted_callers
        report.threshold_results[NO_DOUBLE_ISSUANCE] = (
            ThresholdOutcome.PASS if doubles == 0 else ThresholdOutcome.FAIL
        )
        report.threshold_details[NO_DOUBLE_ISSUANCE] = f"callers granted more than once: {doubles}"
    if coupon_stock is not None:
        granted = counts[Verdict.GRANTED.value]
        report.threshold_results[NO_OVER_ISSUANCE] = (
            ThresholdOutcome.PASS if granted <= coupon_stock else ThresholdOutcome.FAIL
        )
        report.threshold_details[NO_OVER_ISSUANCE] = f"granted={granted} stock={coupon_stock}"

    for failed in report.failed_thresholds:
        logger.info("Threshold failed: %s: %s", failed, report.threshold_details[failed])
    return report


def report_to_dict(report: Report) -> dict[str, Any]:
    """Plain-dict form of a Report (JSON-ready)."""

    def lat(p) -> dict[str, float]:
        return {
            "p50_ms": round(p.p50_ms, 4),
            "p90_ms": round(p.p90_ms, 4),
            "p95_ms": round(p.p95_ms, 4),
            "p99_ms": round(p.p99_ms, 4),
            "avg_ms": round(p.avg_ms, 4),
            "min_ms": round(p.min_ms, 4),
            "max_ms": round(p.max_ms, 4),
        }

    return {
        "name": report.name,
        "passed": report.passed,
        "interrupted": report.interrupted,
        "total_requests": report.total_requests,
        "duration_seconds": round(report.duration_seconds, 4),
        "throughput_rps": round(report.throughput_rps, 4),
        "error_rate_pct": round(report.error_rate_pct, 4),
        "verdict_counts": dict(report.verdict_counts),
        "latency": lat(report.latency),
        "granted_callers": report.granted_callers,
        "double_granted_callers": report.double_granted_callers,
        "thresholds": {
            name: {"result": outcome.value, "detail": report.threshold_details.get(name, "")}
            for name, outcome in report.threshold_results.items()
        },
        "tags": {
            tag: {
                "total_requests": tr.total_requests,
                "error_rate_pct": round(tr.error_rate_pct, 4),
                "verdict_counts": dict(tr.verdict_counts),
                "latency": lat(tr.latency),
            }
            for tag, tr in report.tags.items()
        },
    }


def _write(out: Path, data: bytes) -> None:
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(data)
    except OSError as e:
        raise StampedeRunnerError(
            f"Cannot write report: {out}",
            context={"path": str(out)},
            original_error=e,
        ) from e


def write_json_report(
    output_path: str | Path,
    report: Report,
    start_dt: datetime | None = None,
    end_dt: datetime | None = None,
    extra: Mapping[str, Any] | None = None,
    time_series: Iterable[TimeSeriesPoint] | None = None,
) -> Path:
    """Write machine-readable JSON report. extra is merged in at the top level.

    time_series (per-second buckets of the retained samples) is written under "time_series".
    """
    payload: dict[str, Any] = {
        "stampede_version": stampede_version,
        "start_datetime": start_dt.strftime("%Y-%m-%dT%H:%M:%SZ") if start_dt else None,
        "end_datetime": end_dt.strftime("%Y-%m-%dT%H:%M:%SZ") if end_dt else None,
        **report_to_dict(report),
    }
    if extra:
        payload.update(extra)
    if time_series is not None:
        payload["time_series"] = [asdict(p) for p in time_series]
    out = Path(output_path)
    _write(out, orjson.dumps(payload, option=orjson.OPT_INDENT_2))
    return out


def write_junit_report(
    output_path: str | Path,
    report: Report,
    start_dt: datetime | None = None,
) -> Path:
    """Write JUnit XML report for CI (e.g. Jenkins, GitLab). One testcase per threshold."""
    import xml.etree.ElementTree as ET
    from xml.dom import minidom

    suite_name = f"stampede.{report.name or 'run'}"
    failed = report.failed_thresholds
    testsuite = ET.Element(
        "testsuite",
        name=suite_name,
        tests=str(len(report.threshold_results)),
        failures=str(len(failed)),
        errors="0",
        skipped="0",
        time=f"{report.duration_seconds:.3f}",
    )
    if start_dt:
        testsuite.set("timestamp", start_dt.strftime("%Y-%m-%dT%H:%M:%S"))
    props = ET.SubElement(testsuite, "properties")
    for key, value in (
        ("total_requests", report.total_requests),
        ("throughput_rps", f"{report.throughput_rps:.2f}"),
        ("error_rate_pct", f"{report.error_rate_pct:.2f}"),
        ("p95_ms", f"{report.latency.p95_ms:.2f}"),
    ):
        ET.SubElement(props, "property", name=key, value=str(value))
    for name, outcome in report.threshold_results.items():
        testcase = ET.SubElement(testsuite, "testcase", name=name, classname=suite_name, time="0")
        detail = report.threshold_details.get(name, "")
        if outcome == ThresholdOutcome.FAIL:
            failure = ET.SubElement(testcase, "failure", message=f"threshold {name} failed")
            failure.text = detail
        else:
            system_out = ET.SubElement(testcase, "system-out")
            system_out.text = detail

    root = ET.Element("testsuites")
    root.append(testsuite)
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out = Path(output_path)
    _write(out, xml_str.encode("utf-8"))
    return out
