"""Verdict and latency aggregation with bounded memory.

T-Digest for streaming percentiles, ring-buffer (deque) of recent samples for the
per-second series and the live dashboard. Counters are plain ints.

Locking: one threading.Lock per field group (each verdict counter, the total,
the latency digest, each tag, grant bookkeeping, recent samples). record() never
holds more than one lock at a time and no lock covers the whole aggregator, so
asyncio tasks and threads can record concurrently without serializing on a
single mutex.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from itertools import islice

from tdigest import TDigest

from .logging_config import get_logger
from .models import (
    LatencyPercentiles,
    LatencyState,
    MetricState,
    TagState,
    Verdict,
)

logger = get_logger("metrics")

# Recent samples kept for the per-second series and live view
DEFAULT_MAX_SAMPLES = 100_000
# Time series bucket size in seconds
TIME_SERIES_BUCKET_SEC = 1
PERCENTILES = (50, 90, 95, 99)


@dataclass
class TimeSeriesPoint:
    """Single point for time-series (requests and latency per second)."""

    second: int
    rps: float
    avg_ms: float
    p95_ms: float
    error_rate_pct: float
    granted: int


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError, ZeroDivisionError):
        return 0.0


def _percentile(sorted_times: list[float], p: float) -> float:
    """Exact percentile by linear interpolation over an already sorted list."""
    if not sorted_times:
        return 0.0
    k = (len(sorted_times) - 1) * (p / 100.0)
    f = int(k)
    c = f + 1 if f + 1 < len(sorted_times) else f
    return sorted_times[f] + (k - f) * (sorted_times[c] - sorted_times[f])


def _copy_digest(digest: TDigest) -> TDigest:
    return TDigest() + digest


def latency_percentiles(latency: LatencyState) -> LatencyPercentiles:
    """p50/p90/p95/p99 plus avg/min/max from a latency snapshot.

    Percentile estimates are clamped to [min, max] and forced non-decreasing:
    digest interpolation can otherwise invert neighbours on small samples.
    """
    if latency.count == 0:
        return LatencyPercentiles()
    values: list[float] = []
    running = latency.min_ms
    for p in PERCENTILES:
        v = _percentile_from_digest(latency.digest, p) if latency.digest is not None else 0.0
        v = min(max(v, latency.min_ms), latency.max_ms)
        running = max(running, v)
        values.append(running)
    return LatencyPercentiles(
        p50_ms=values[0],
        p90_ms=values[1],
        p95_ms=values[2],
        p99_ms=values[3],
        avg_ms=latency.sum_ms / latency.count,
        min_ms=latency.min_ms,
        max_ms=latency.max_ms,
    )


class _Counter:
    __slots__ = ("lock", "value")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.value = 0

    def incr(self) -> None:
        with self.lock:
            self.value += 1

    def read(self) -> int:
        with self.lock:
            return self.value


class _Latency:
    """Digest plus count/sum/min/max behind one lock."""

    __slots__ = ("lock", "digest", "count", "sum_ms", "min_ms", "max_ms")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.digest = TDigest()
        self.count = 0
        self.sum_ms = 0.0
        self.min_ms = 0.0
        self.max_ms = 0.0

    def add(self, ms: float) -> None:
        with self.lock:
            self.digest.update(ms)
            if self.count == 0:
                self.min_ms = self.max_ms = ms
            else:
                if ms < self.min_ms:
                    self.min_ms = ms
                if ms > self.max_ms:
                    self.max_ms = ms
            self.count += 1
            self.sum_ms += ms

    def snapshot(self) -> LatencyState:
        with self.lock:
            return LatencyState(
                count=self.count,
                sum_ms=self.sum_ms,
                min_ms=self.min_ms,
                max_ms=self.max_ms,
                digest=_copy_digest(self.digest),
            )


class _TagBucket:
    """Per-tag counters and latency, guarded by the tag's own lock."""

    __slots__ = ("lock", "counts", "total", "latency")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.counts: dict[Verdict, int] = {v: 0 for v in Verdict}
        self.total = 0
        self.latency = _Latency()

    def add(self, verdict: Verdict, ms: float) -> None:
        with self.lock:
            self.counts[verdict] += 1
            self.total += 1
        self.latency.add(ms)

    def snapshot(self, tag: str) -> TagState:
        with self.lock:
            counts = dict(self.counts)
            total = self.total
        return TagState(tag=tag, verdict_counts=counts, total_requests=total, latency=self.latency.snapshot())


class MetricAggregator:
    """
    Thread- and task-safe sink for classified outcomes.

    Owned by one run and injected into the virtual users. snapshot() returns an
    immutable MetricState. Taken while recording continues, each field is
    internally consistent; taken after the run has stopped, the whole state is.
    """

    __slots__ = (
        "_verdicts", "_total", "_window", "_latency",
        "_tags", "_tags_lock",
        "_track_grants", "_grants", "_grants_lock",
        "_samples", "_samples_lock", "_max_samples",
    )

    def __init__(self, track_grants: bool = False, max_samples: int = DEFAULT_MAX_SAMPLES) -> None:
        self._verdicts: dict[Verdict, _Counter] = {v: _Counter() for v in Verdict}
        self._total = _Counter()
        # first/last timestamps move with the total, under its lock
        self._window: list[float | None] = [None, None]
        self._latency = _Latency()
        self._tags: dict[str, _TagBucket] = {}
        self._tags_lock = threading.Lock()
        self._track_grants = track_grants
        self._grants: dict[str, int] = {}
        self._grants_lock = threading.Lock()
        self._samples: deque[tuple[float, float, Verdict]] = deque(maxlen=max_samples)
        self._samples_lock = threading.Lock()
        self._max_samples = max_samples

    def record(
        self,
        verdict: Verdict,
        latency_ms: float,
        tag: str | None = None,
        caller_id: str | None = None,
        timestamp: float | None = None,
    ) -> None:
        """Fold one classified response into the aggregate."""
        ts = time.perf_counter() if timestamp is None else timestamp
        self._verdicts[verdict].incr()
        with self._total.lock:
            self._total.value += 1
            first, last = self._window
            if first is None or ts < first:
                self._window[0] = ts
            if last is None or ts > last:
                self._window[1] = ts
        self._latency.add(latency_ms)
        if tag:
            self._tag_bucket(tag).add(verdict, latency_ms)
        if self._track_grants and caller_id and verdict == Verdict.GRANTED:
            with self._grants_lock:
                n = self._grants.get(caller_id, 0) + 1
                self._grants[caller_id] = n
            if n == 2:
                logger.warning("Caller %s was granted more than once", caller_id)
        with self._samples_lock:
            self._samples.append((ts, latency_ms, verdict))

    def _tag_bucket(self, tag: str) -> _TagBucket:
        bucket = self._tags.get(tag)
        if bucket is not None:
            return bucket
        with self._tags_lock:
            bucket = self._tags.get(tag)
            if bucket is None:
                bucket = _TagBucket()
                self._tags[tag] = bucket
            return bucket

    @property
    def total_requests(self) -> int:
        return self._total.read()

    def count(self, verdict: Verdict) -> int:
        return self._verdicts[verdict].read()

    def snapshot(self) -> MetricState:
        counts = {v: c.read() for v, c in self._verdicts.items()}
        with self._total.lock:
            total = self._total.value
            first, last = self._window
        with self._tags_lock:
            tags = list(self._tags.items())
        with self._grants_lock:
            granted_callers = len(self._grants)
            doubles = sum(1 for n in self._grants.values() if n > 1)
        return MetricState(
            verdict_counts=counts,
            total_requests=total,
            latency=self._latency.snapshot(),
            first_timestamp=first,
            last_timestamp=last,
            tags={name: bucket.snapshot(name) for name, bucket in tags},
            granted_callers=granted_callers,
            double_granted_callers=doubles,
        )

    def recent_samples(self, n: int) -> list[tuple[float, float, Verdict]]:
        """Last n samples (newest last) as (timestamp, latency_ms, verdict)."""
        with self._samples_lock:
            total = len(self._samples)
            if total <= n:
                return list(self._samples)
            return list(islice(self._samples, total - n, None))

    def recent_p95_ms(self, n: int) -> float:
        """p95 latency over the last n samples. 0.0 before any request."""
        times = sorted(ms for _, ms, _ in self.recent_samples(n))
        return _percentile(times, 95)

    def recent_rate(self, window_seconds: float, now: float | None = None) -> float:
        """Requests per second over the trailing window. Used by the live view."""
        if window_seconds <= 0:
            return 0.0
        now = time.perf_counter() if now is None else now
        cutoff = now - window_seconds
        with self._samples_lock:
            n = 0
            for ts, _, _ in reversed(self._samples):
                if ts < cutoff:
                    break
                n += 1
        return n / window_seconds

    def time_series_1s(self) -> list[TimeSeriesPoint]:
        """Bucket retained samples by second since the first sample."""
        with self._samples_lock:
            samples = list(self._samples)
        if not samples:
            return []
        start = samples[0][0]
        buckets: dict[int, list[tuple[float, Verdict]]] = {}
        for ts, ms, verdict in samples:
            sec = int((ts - start) // TIME_SERIES_BUCKET_SEC)
            buckets.setdefault(sec, []).append((ms, verdict))
        out: list[TimeSeriesPoint] = []
        for sec in sorted(buckets):
            entries = buckets[sec]
            times = sorted(ms for ms, _ in entries)
            total = len(entries)
            failed = sum(1 for _, v in entries if v == Verdict.UNEXPECTED_FAILURE)
            granted = sum(1 for _, v in entries if v == Verdict.GRANTED)
            out.append(
                TimeSeriesPoint(
                    second=sec,
                    rps=total / TIME_SERIES_BUCKET_SEC,
                    avg_ms=sum(times) / total,
                    p95_ms=_percentile(times, 95),
                    error_rate_pct=100.0 * failed / total,
                    granted=granted,
                )
            )
        return out
