"""Built-in load profiles.

Ramping presets are k6-style (duration_seconds, target_vus) stages expanded with
stages_to_phases. Constant presets start every user at once, so they are plain holds.
Gaps between back-to-back sub-scenarios are zero-level holds.

Each preset also carries the pass criteria and think time it was written for.
They apply when the scenario file sets no thresholds or think time of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from .exceptions import StampedeConfigError
from .models import Phase, ThinkTime
from .schedule import stages_to_phases

LOAD_STAGES = [(30, 50), (60, 100), (30, 0)]
STRESS_STAGES = [(60, 100), (120, 200), (60, 300), (60, 0)]
BURST_STAGES = [(10, 500), (30, 500), (10, 0)]

# Shared coupon-suite criteria: errors below 5%, p95 within 1s, p99 within 2s
SUITE_THRESHOLDS = {
    "error_rate": "error_rate < 5%",
    "p95": "p95 < 1000ms",
    "p99": "p99 < 2000ms",
}
QUICK_THRESHOLDS = {
    "error_rate": "error_rate < 10%",
    "p95": "p95 < 2000ms",
}


@dataclass(frozen=True)
class Preset:
    """A named schedule plus the thresholds and think time that go with it."""

    build: Callable[[], list[Phase]]
    thresholds: Mapping[str, str]
    think_time: ThinkTime

    def phases(self) -> list[Phase]:
        return self.build()


def _fixed(ms: float) -> ThinkTime:
    return ThinkTime(ms, ms)


def _fcfs_suite() -> list[Phase]:
    # smoke at 0s, load at 35s, stress at 3m, burst at 8m
    return [
        Phase.hold(10, 30),
        Phase.hold(0, 5),
        *stages_to_phases(LOAD_STAGES),
        Phase.hold(0, 25),
        *stages_to_phases(STRESS_STAGES),
        *stages_to_phases(BURST_STAGES),
    ]


PRESETS: dict[str, Preset] = {
    "smoke": Preset(lambda: [Phase.hold(10, 30)], SUITE_THRESHOLDS, _fixed(100)),
    "quick": Preset(lambda: [Phase.hold(50, 10)], QUICK_THRESHOLDS, _fixed(500)),
    "simple": Preset(lambda: [Phase.hold(100, 10)], QUICK_THRESHOLDS, _fixed(500)),
    "load": Preset(lambda: stages_to_phases(LOAD_STAGES), SUITE_THRESHOLDS, _fixed(100)),
    "stress": Preset(lambda: stages_to_phases(STRESS_STAGES), SUITE_THRESHOLDS, _fixed(100)),
    "spike": Preset(
        lambda: stages_to_phases(
            [(10, 10), (10, 100), (20, 100), (10, 100), (10, 200), (20, 200), (5, 500), (15, 500), (5, 0)]
        ),
        {"error_rate": "error_rate < 10%", "p95": "p95 < 2000ms", "p99": "p99 < 3000ms"},
        _fixed(100),
    ),
    "fcfs_suite": Preset(_fcfs_suite, SUITE_THRESHOLDS, _fixed(100)),
    "order_load": Preset(
        lambda: stages_to_phases([(60, 50), (300, 100), (300, 200), (300, 100), (60, 0)]),
        {"p95": "p95 < 1000ms", "p99": "p99 < 2000ms", "error_rate": "error_rate < 1%"},
        ThinkTime(2000, 5000),
    ),
    "order_comparison": Preset(
        lambda: stages_to_phases([(30, 50), (120, 100), (30, 0)]),
        {"p95": "p95 < 2000ms", "error_rate": "error_rate < 5%"},
        _fixed(1000),
    ),
    "soak": Preset(
        lambda: stages_to_phases([(300, 100), (7200, 100), (300, 0)]),
        {"p95": "p95 < 1500ms", "error_rate": "error_rate < 1%"},
        ThinkTime(3000, 5000),
    ),
}


def preset_names() -> list[str]:
    return sorted(PRESETS)


def get_preset(name: str) -> Preset:
    """Look up a preset by name (case-insensitive). Raises StampedeConfigError for an unknown name."""
    preset = PRESETS.get((name or "").strip().lower())
    if preset is None:
        raise StampedeConfigError(
            f"Unknown preset: {name!r}",
            context={"available": ", ".join(preset_names())},
        )
    return preset


def preset_phases(name: str) -> list[Phase]:
    """Phases for a named preset. Raises StampedeConfigError for an unknown name."""
    return get_preset(name).phases()
