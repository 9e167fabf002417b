"""Pytest fixtures for stampede tests."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def tmp_path_config_coupon() -> Path:
    """Write a minimal coupon FCFS scenario with explicit phases to a temp file."""
    content = """
name: coupon-smoke
scenario: coupon_fcfs
base_url: http://localhost:8080
coupon_id: 7
selection: sequential_unique
user_id_start: 1
user_id_end: 500
phases:
  - kind: ramp
    from: 0
    to: 10
    duration: 10s
  - kind: hold
    level: 10
    duration: 1m
think_time_ms: 100
coupon_stock: 100
"""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False, encoding="utf-8") as f:
        f.write(content)
        path = Path(f.name)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture
def tmp_path_config_order() -> Path:
    """Write an order scenario using k6-style stages to a temp file."""
    content = """
name: order-compare
scenario: order
order_patterns: [orchestration, choreography]
selection: fixed_pool_cyclic
user_ids:
  - 550e8400-e29b-41d4-a716-446655440001
  - 550e8400-e29b-41d4-a716-446655440002
products:
  - id: 1
  - id: 2
  - 3
stages:
  - duration: 30s
    target: 50
  - duration: 2m
    target: 50
  - duration: 30s
    target: 0
think_time_min_ms: 2000
think_time_max_ms: 5000
thresholds:
  errors: "error_rate < 5%"
  latency: "p(95) < 1s"
"""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False, encoding="utf-8") as f:
        f.write(content)
        path = Path(f.name)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture
def tmp_path_config_fast(tmp_path: Path) -> Path:
    """Sub-second coupon run for integration tests."""
    p = tmp_path / "fast.yaml"
    p.write_text(
        "name: fast\n"
        "base_url: http://stampede.test\n"
        "selection: sequential_unique\n"
        "phases:\n"
        "  - {kind: hold, level: 3, duration: 0.3}\n"
        "think_time_ms: 10\n"
        "control_interval_seconds: 0.02\n"
        "grace_period_seconds: 1\n",
        encoding="utf-8",
    )
    return p
