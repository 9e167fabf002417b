"""Unit tests for report building, threshold parsing and report files."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path

import orjson
import pytest

from stampede.classifier import ResponseClassifier
from stampede.exceptions import StampedeConfigError
from stampede.metrics import MetricAggregator, TimeSeriesPoint
from stampede.models import Outcome, ThresholdOutcome, Verdict
from stampede.report import (
    NO_DOUBLE_ISSUANCE,
    NO_OVER_ISSUANCE,
    build_report,
    parse_threshold,
    parse_thresholds,
    report_to_dict,
    write_json_report,
    write_junit_report,
)


def _state(granted: int = 0, duplicate: int = 0, exhausted: int = 0, failed: int = 0, latency_ms: float = 10.0):
    agg = MetricAggregator(track_grants=True)
    t = 0.0
    for verdict, n in (
        (Verdict.GRANTED, granted),
        (Verdict.DUPLICATE_REJECTED, duplicate),
        (Verdict.RESOURCE_EXHAUSTED, exhausted),
        (Verdict.UNEXPECTED_FAILURE, failed),
    ):
        for i in range(n):
            caller = f"{verdict.value}-{i}"
            agg.record(verdict, latency_ms, tag="coupon_fcfs", caller_id=caller, timestamp=t)
            t += 0.01
    return agg.snapshot()


def test_error_rate_threshold_passes_at_four_percent() -> None:
    report = build_report(_state(granted=96, failed=4), parse_thresholds(["error_rate < 5%"]))
    assert report.error_rate_pct == pytest.approx(4.0)
    assert report.threshold_results["error_rate < 5%"] == ThresholdOutcome.PASS
    assert report.passed


def test_error_rate_threshold_fails_at_five_percent() -> None:
    report = build_report(_state(granted=95, failed=5), parse_thresholds(["error_rate < 5%"]))
    assert report.error_rate_pct == pytest.approx(5.0)
    assert report.threshold_results["error_rate < 5%"] == ThresholdOutcome.FAIL
    assert not report.passed
    assert report.failed_thresholds == ["error_rate < 5%"]


def test_duplicates_and_exhaustion_are_not_errors() -> None:
    report = build_report(_state(granted=10, duplicate=50, exhausted=40), ())
    assert report.error_rate_pct == 0.0
    assert report.verdict_counts == {
        "granted": 10,
        "duplicate_rejected": 50,
        "resource_exhausted": 40,
        "unexpected_failure": 0,
    }


def test_build_report_is_deterministic() -> None:
    state = _state(granted=30, failed=2)
    thresholds = parse_thresholds(None)
    a = build_report(state, thresholds, duration_seconds=10)
    b = build_report(state, thresholds, duration_seconds=10)
    assert report_to_dict(a) == report_to_dict(b)


def test_throughput_and_duration() -> None:
    report = build_report(_state(granted=100), (), duration_seconds=20)
    assert report.duration_seconds == 20
    assert report.throughput_rps == pytest.approx(5.0)


def test_duration_defaults_to_sample_window() -> None:
    report = build_report(_state(granted=11), ())
    assert report.duration_seconds == pytest.approx(0.1)


def test_empty_state_report() -> None:
    report = build_report(MetricAggregator().snapshot(), parse_thresholds(None))
    assert report.total_requests == 0
    assert report.throughput_rps == 0.0
    assert report.error_rate_pct == 0.0
    assert report.passed


def test_latency_thresholds() -> None:
    state = _state(granted=50, latency_ms=1500.0)
    report = build_report(state, parse_thresholds({"p95": "p(95) < 1s", "avg": "avg <= 2000ms"}))
    assert report.threshold_results["p95"] == ThresholdOutcome.FAIL
    assert report.threshold_results["avg"] == ThresholdOutcome.PASS
    assert "p95=" in report.threshold_details["p95"]


def test_verdict_count_threshold() -> None:
    report = build_report(_state(granted=100, exhausted=5), parse_thresholds(["granted <= 100"]))
    assert report.passed
    report = build_report(_state(granted=101), parse_thresholds(["granted <= 100"]))
    assert not report.passed


def test_no_over_issuance() -> None:
    report = build_report(_state(granted=100, exhausted=900), (), coupon_stock=100)
    assert report.threshold_results[NO_OVER_ISSUANCE] == ThresholdOutcome.PASS
    report = build_report(_state(granted=101, exhausted=899), (), coupon_stock=100)
    assert report.threshold_results[NO_OVER_ISSUANCE] == ThresholdOutcome.FAIL


def test_no_double_issuance() -> None:
    agg = MetricAggregator(track_grants=True)
    agg.record(Verdict.GRANTED, 1.0, caller_id="1")
    agg.record(Verdict.GRANTED, 1.0, caller_id="2")
    report = build_report(agg.snapshot(), (), check_double_issuance=True)
    assert report.threshold_results[NO_DOUBLE_ISSUANCE] == ThresholdOutcome.PASS
    agg.record(Verdict.GRANTED, 1.0, caller_id="1")
    report = build_report(agg.snapshot(), (), check_double_issuance=True)
    assert report.threshold_results[NO_DOUBLE_ISSUANCE] == ThresholdOutcome.FAIL
    assert report.double_granted_callers == 1


def test_tag_breakdown() -> None:
    agg = MetricAggregator()
    agg.record(Verdict.GRANTED, 10.0, tag="order_orchestration")
    agg.record(Verdict.UNEXPECTED_FAILURE, 10.0, tag="order_choreography")
    agg.record(Verdict.GRANTED, 10.0, tag="order_choreography")
    report = build_report(agg.snapshot(), ())
    assert list(report.tags) == ["order_choreography", "order_orchestration"]
    assert report.tags["order_choreography"].error_rate_pct == 50.0
    assert report.tags["order_orchestration"].verdict_counts["granted"] == 1


@pytest.mark.parametrize(
    "expr,metric,op,value",
    [
        ("error_rate < 5%", "error_rate", "<", 5.0),
        ("error_rate<5", "error_rate", "<", 5.0),
        ("rate<0.05", "error_rate", "<", 5.0),
        ("p95 < 1000ms", "p95", "<", 1000.0),
        ("p(95)<1000", "p95", "<", 1000.0),
        ("p(99) < 2s", "p99", "<", 2000.0),
        ("P90 <= 1.5s", "p90", "<=", 1500.0),
        ("avg < 300", "avg", "<", 300.0),
        ("throughput >= 100", "rps", ">=", 100.0),
        ("granted <= 100", "granted", "<=", 100.0),
        ("unexpected_failure == 0", "unexpected_failure", "==", 0.0),
        ("total_requests > 10", "total_requests", ">", 10.0),
        ("max != 0", "max", "!=", 0.0),
    ],
)
def test_parse_threshold(expr, metric, op, value) -> None:
    t = parse_threshold(expr)
    assert t.metric == metric
    assert t.operator == op
    assert t.value == pytest.approx(value)
    assert t.name == expr.strip()


@pytest.mark.parametrize(
    "expr",
    ["", "p95", "p95 ~ 10", "latency < 10", "p(97) < 10", "p95 < 10%", "granted < 5ms", "error_rate < 5s", 42],
)
def test_parse_threshold_invalid(expr) -> None:
    with pytest.raises(StampedeConfigError):
        parse_threshold(expr)


def test_parse_thresholds_defaults_and_mapping() -> None:
    defaults = parse_thresholds(None)
    assert {t.metric for t in defaults} == {"error_rate", "p95"}
    named = parse_thresholds({"errors": "error_rate < 1%"})
    assert named[0].name == "errors"


def test_parse_thresholds_duplicate_names() -> None:
    with pytest.raises(StampedeConfigError):
        parse_thresholds(["p95 < 10", "p95 < 10"])


@pytest.mark.parametrize("name", [NO_DOUBLE_ISSUANCE, NO_OVER_ISSUANCE])
def test_parse_thresholds_rejects_invariant_names(name) -> None:
    with pytest.raises(StampedeConfigError) as exc:
        parse_thresholds({name: "error_rate < 50%"})
    assert name in exc.value.context["names"]


def test_write_json_report(tmp_path: Path) -> None:
    report = build_report(_state(granted=9, failed=1), parse_thresholds(None), duration_seconds=1, name="run")
    out = write_json_report(
        tmp_path / "nested" / "r.json",
        report,
        start_dt=datetime(2026, 1, 1, tzinfo=timezone.utc),
        extra={"scenario": "coupon_fcfs"},
        time_series=[TimeSeriesPoint(second=0, rps=10.0, avg_ms=10.0, p95_ms=10.0, error_rate_pct=10.0, granted=9)],
    )
    data = orjson.loads(out.read_bytes())
    assert data["name"] == "run"
    assert data["total_requests"] == 10
    assert data["verdict_counts"]["unexpected_failure"] == 1
    assert data["error_rate_pct"] == 10.0
    assert data["passed"] is False
    assert data["thresholds"]["error_rate"]["result"] == "fail"
    assert data["scenario"] == "coupon_fcfs"
    assert data["start_datetime"] == "2026-01-01T00:00:00Z"
    assert "coupon_fcfs" in data["tags"]
    assert data["time_series"] == [
        {"second": 0, "rps": 10.0, "avg_ms": 10.0, "p95_ms": 10.0, "error_rate_pct": 10.0, "granted": 9}
    ]


def test_write_junit_report(tmp_path: Path) -> None:
    report = build_report(_state(granted=9, failed=1), parse_thresholds(None), duration_seconds=1, name="run")
    out = write_junit_report(tmp_path / "junit.xml", report)
    root = ET.parse(out).getroot()
    suite = root.find("testsuite")
    assert suite is not None
    assert suite.get("name") == "stampede.run"
    assert suite.get("tests") == "2"
    assert suite.get("failures") == "1"
    cases = {c.get("name"): c for c in suite.findall("testcase")}
    assert cases["error_rate"].find("failure") is not None
    assert cases["p95"].find("failure") is None


def test_all_granted_outcomes_through_classifier() -> None:
    classifier = ResponseClassifier()
    agg = MetricAggregator(track_grants=True)
    for i in range(100):
        outcome = Outcome(202, b"", 12.0, tag="coupon_fcfs", caller_id=str(i + 1), timestamp=i * 0.01)
        agg.record(
            classifier.classify(outcome),
            outcome.latency_ms,
            tag=outcome.tag,
            caller_id=outcome.caller_id,
            timestamp=outcome.timestamp,
        )

    report = build_report(agg.snapshot(), parse_thresholds(None), coupon_stock=100, check_double_issuance=True)

    assert report.total_requests == 100
    assert report.verdict_counts == {
        Verdict.GRANTED.value: 100,
        Verdict.DUPLICATE_REJECTED.value: 0,
        Verdict.RESOURCE_EXHAUSTED.value: 0,
        Verdict.UNEXPECTED_FAILURE.value: 0,
    }
    assert report.error_rate_pct == 0.0
    assert report.granted_callers == 100
    assert report.passed
