"""Data models for stampede.

Optimized for high-throughput, low-memory load runs:
- __slots__ on hot-path classes (Outcome is allocated once per request)
- Frozen dataclasses for values that must not change during a run (Phase, Request, Threshold)
- str Enums so verdicts and kinds serialize to their plain names
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Mapping

from .exceptions import StampedeConfigError

if TYPE_CHECKING:
    from tdigest import TDigest


class PhaseKind(str, Enum):
    """Shape of one schedule phase."""

    RAMP = "ramp"  # Linear move from from_level to to_level
    HOLD = "hold"  # Constant to_level


class Verdict(str, Enum):
    """Correctness classification of one response."""

    GRANTED = "granted"
    DUPLICATE_REJECTED = "duplicate_rejected"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNEXPECTED_FAILURE = "unexpected_failure"


class ScenarioKind(str, Enum):
    """Which endpoint the virtual users call."""

    COUPON_FCFS = "coupon_fcfs"
    ORDER = "order"


class SelectionStrategy(str, Enum):
    """How a virtual user picks the caller identity for a request."""

    RANDOM = "random"
    SEQUENTIAL_UNIQUE = "sequential_unique"
    FIXED_POOL_CYCLIC = "fixed_pool_cyclic"


class VuState(str, Enum):
    """Lifecycle of a virtual user inside the controller."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    STOPPING = "stopping"  # Stop requested, finishing in-flight request
    STOPPED = "stopped"


class ThresholdOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class Phase:
    """One time-bounded segment of a load schedule.

    Validated on construction: a malformed phase never reaches a running schedule.
    """

    kind: PhaseKind
    from_level: int
    to_level: int
    duration: float  # seconds

    def __post_init__(self) -> None:
        if self.from_level < 0 or self.to_level < 0:
            raise StampedeConfigError(
                "Phase levels must be >= 0",
                context={"from_level": self.from_level, "to_level": self.to_level},
            )
        if not (self.duration > 0 and math.isfinite(self.duration)):
            raise StampedeConfigError(
                "Phase duration must be finite and > 0",
                context={"duration": self.duration},
            )

    @classmethod
    def ramp(cls, from_level: int, to_level: int, duration: float) -> "Phase":
        return cls(PhaseKind.RAMP, from_level, to_level, duration)

    @classmethod
    def hold(cls, level: int, duration: float) -> "Phase":
        return cls(PhaseKind.HOLD, level, level, duration)


@dataclass(frozen=True, slots=True)
class Request:
    """A single HTTP request built by the workload generator. Never retried."""

    method: str
    url: str
    body: bytes | None
    headers: Mapping[str, str]
    tag: str
    caller_id: str


class Outcome:
    """Result of issuing one Request.

    Uses __slots__ for memory efficiency: this is the most allocated object during a run.
    status_code is None when the transport failed (connection refused, timeout).
    """

    __slots__ = ("status_code", "body", "latency_ms", "tag", "caller_id", "error", "timestamp")

    def __init__(
        self,
        status_code: int | None,
        body: bytes,
        latency_ms: float,
        tag: str = "",
        caller_id: str = "",
        error: str | None = None,
        timestamp: float = 0.0,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.latency_ms = latency_ms
        self.tag = tag
        self.caller_id = caller_id
        self.error = error
        self.timestamp = timestamp

    def __repr__(self) -> str:
        return (
            f"Outcome(tag={self.tag!r}, status={self.status_code}, "
            f"latency_ms={self.latency_ms:.2f}, error={self.error!r})"
        )


@dataclass(frozen=True, slots=True)
class ThinkTime:
    """Delay between two iterations of the same virtual user. Fixed when min == max."""

    min_ms: float = 0.0
    max_ms: float = 0.0

    def sample_seconds(self, rng: random.Random | None = None) -> float:
        if self.max_ms <= self.min_ms:
            return self.min_ms / 1000.0
        return (rng or random).uniform(self.min_ms, self.max_ms) / 1000.0


@dataclass(frozen=True, slots=True)
class Threshold:
    """A pass/fail condition over one aggregated metric, declared before a run."""

    name: str
    metric: str
    operator: str
    value: float
    expression: str = ""


@dataclass(frozen=True, slots=True)
class LatencyState:
    """Point-in-time copy of a latency distribution. The digest is private to the snapshot."""

    count: int
    sum_ms: float
    min_ms: float
    max_ms: float
    digest: TDigest | None = None


@dataclass(frozen=True, slots=True)
class TagState:
    """Per request-tag slice of the metrics (e.g. one order pattern)."""

    tag: str
    verdict_counts: Mapping[Verdict, int]
    total_requests: int
    latency: LatencyState


@dataclass(frozen=True, slots=True)
class MetricState:
    """Consistent snapshot of a MetricAggregator, read by the report builder."""

    verdict_counts: Mapping[Verdict, int]
    total_requests: int
    latency: LatencyState
    first_timestamp: float | None = None
    last_timestamp: float | None = None
    tags: Mapping[str, TagState] = field(default_factory=dict)
    granted_callers: int = 0
    double_granted_callers: int = 0

    @property
    def window_seconds(self) -> float:
        if self.first_timestamp is None or self.last_timestamp is None:
            return 0.0
        return max(0.0, self.last_timestamp - self.first_timestamp)


@dataclass(slots=True)
class LatencyPercentiles:
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    avg_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0


@dataclass(slots=True)
class TagReport:
    tag: str
    verdict_counts: dict[str, int]
    total_requests: int
    error_rate_pct: float
    latency: LatencyPercentiles


@dataclass(slots=True)
class Report:
    """Final run summary. Built once from a MetricState and a threshold set."""

    verdict_counts: dict[str, int]
    total_requests: int
    duration_seconds: float
    throughput_rps: float
    error_rate_pct: float
    latency: LatencyPercentiles
    threshold_results: dict[str, ThresholdOutcome] = field(default_factory=dict)
    threshold_details: dict[str, str] = field(default_factory=dict)
    tags: dict[str, TagReport] = field(default_factory=dict)
    granted_callers: int = 0
    double_granted_callers: int = 0
    name: str = ""
    interrupted: bool = False  # stopped early by a signal

    @property
    def passed(self) -> bool:
        return all(v == ThresholdOutcome.PASS for v in self.threshold_results.values())

    @property
    def failed_thresholds(self) -> list[str]:
        return [k for k, v in self.threshold_results.items() if v == ThresholdOutcome.FAIL]


DEFAULT_PRODUCT_IDS: tuple[int, ...] = tuple(range(1, 11))


@dataclass(slots=True)
class ScenarioConfig:
    """Scenario configuration from YAML. Validated by config.validate_scenario_config."""

    phases: tuple[Phase, ...]
    name: str = "stampede"
    scenario: ScenarioKind = ScenarioKind.COUPON_FCFS
    base_url: str = "http://localhost:8080"
    api_prefix: str = "/api"
    coupon_id: str = "1"
    order_patterns: tuple[str, ...] = ("orchestration",)
    selection: SelectionStrategy = SelectionStrategy.RANDOM
    user_id_start: int = 1
    user_id_end: int = 1000
    user_ids: tuple[str, ...] = ()
    product_ids: tuple[int, ...] = DEFAULT_PRODUCT_IDS
    max_items: int = 3
    max_quantity: int = 3
    recipient_name: str = "Load Tester"
    shipping_address: str = "123 Teheran-ro, Gangnam-gu, Seoul"
    shipping_phone: str = "010-1234-5678"
    user_coupon_id: int | None = None
    think_time: ThinkTime = field(default_factory=lambda: ThinkTime(100.0, 100.0))
    thresholds: tuple[Threshold, ...] = ()
    exhaustion_marker: str = "재고"
    order_number_field: str = "orderNumber"
    coupon_stock: int | None = None
    control_interval_seconds: float = 1.0
    grace_period_seconds: float = 10.0
    timeout_seconds: float = 30.0
    http2: bool = False
    max_connections: int = 1000
    headers: dict[str, str] = field(default_factory=dict)
    preset: str | None = None

    @property
    def total_duration_seconds(self) -> float:
        return sum(p.duration for p in self.phases)
