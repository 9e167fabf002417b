"""Lightweight async execution engine. Speed and minimal overhead first.

This module provides the core HTTP request execution logic:
- create_client: Shared async HTTP client factory
- execute_request: Single request execution with timing, never raises
- run_virtual_user: build -> issue -> classify -> record -> think loop of one VU

Performance notes:
- perf_counter_ns for timing (faster than perf_counter)
- Request bodies arrive as bytes; nothing is re-encoded here
- Results are recorded straight into the aggregator, no queue hop
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING

import httpx

from .logging_config import get_logger
from .models import Outcome, Request, ThinkTime

if TYPE_CHECKING:
    from .classifier import ResponseClassifier
    from .metrics import MetricAggregator
    from .workload import WorkloadGenerator

logger = get_logger("engine")

# Tuned for thousands of concurrent users on one shared client.
DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_KEEPALIVE = 200
DEFAULT_KEEPALIVE_EXPIRY = 30.0
# Default timeout for HTTP requests (seconds)
DEFAULT_TIMEOUT_SEC = 30.0
# Nanoseconds to milliseconds conversion
NS_TO_MS = 1_000_000
NS_TO_SEC = 1_000_000_000


def create_client(
    http2: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    max_connections: int = DEFAULT_MAX_CONNECTIONS,
    limits: httpx.Limits | None = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client. Single client per run.

    Args:
        http2: Enable HTTP/2 (needs the h2 extra of httpx)
        timeout: Request timeout in seconds
        max_connections: Connection pool size; keep-alive pool is capped below it
        limits: Custom connection limits, overrides max_connections

    Returns:
        Configured AsyncClient ready for use as async context manager
    """
    limits = limits or httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=min(DEFAULT_MAX_KEEPALIVE, max_connections),
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(
        http2=http2,
        timeout=timeout,
        limits=limits,
    )


async def execute_request(client: httpx.AsyncClient, req: Request) -> Outcome:
    """Issue one request and return its Outcome with timing.

    Note:
        This never raises for transport problems: connection errors and timeouts
        come back as an Outcome with status_code None and error set.
        Cancellation is not caught, so a cancelled request produces no Outcome.
    """
    start_ns = time.perf_counter_ns()
    try:
        r = await client.request(
            req.method,
            req.url,
            headers=req.headers,
            content=req.body,
        )
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        return Outcome(
            status_code=r.status_code,
            body=r.content,
            latency_ms=elapsed_ms,
            tag=req.tag,
            caller_id=req.caller_id,
            error=None,
            timestamp=start_ns / NS_TO_SEC,
        )
    except Exception as e:  # noqa: BLE001
        elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        return Outcome(
            status_code=None,
            body=b"",
            latency_ms=elapsed_ms,
            tag=req.tag,
            caller_id=req.caller_id,
            error=f"{type(e).__name__}: {e}",
            timestamp=start_ns / NS_TO_SEC,
        )


async def _think(stop_event: asyncio.Event, delay: float) -> bool:
    """Wait up to delay seconds. True if stop was requested meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def run_virtual_user(
    index: int,
    client: httpx.AsyncClient,
    generator: WorkloadGenerator,
    classifier: ResponseClassifier,
    aggregator: MetricAggregator,
    think_time: ThinkTime,
    stop_event: asyncio.Event,
    rng: random.Random | None = None,
) -> int:
    """
    One virtual user: iterate until stop_event is set.

    A stop request lets the in-flight request finish and be recorded; it only
    cuts the think time short. Returns the number of completed iterations.
    """
    iteration = 0
    is_set = stop_event.is_set
    record = aggregator.record
    classify = classifier.classify
    while not is_set():
        req = generator.next_request(index, iteration)
        outcome = await execute_request(client, req)
        verdict = classify(outcome)
        record(
            verdict,
            outcome.latency_ms,
            tag=outcome.tag,
            caller_id=outcome.caller_id,
            timestamp=outcome.timestamp,
        )
        if outcome.error is not None:
            logger.debug("vu=%d transport failure: %s", index, outcome.error)
        iteration += 1
        delay = think_time.sample_seconds(rng)
        if delay > 0:
            if await _think(stop_event, delay):
                break
        else:
            # zero think time still yields so other users and the controller run
            await asyncio.sleep(0)
    return iteration
