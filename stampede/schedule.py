"""Phase scheduler: target virtual-user level for any instant of a run.

Pure scheduling math, independent of the concurrency mechanism, so it can be
tested without an event loop. The controller in scenarios.py samples
Schedule.active_level at its control interval.
"""

from __future__ import annotations

import math
import re
from bisect import bisect_right
from typing import Any, Iterable, Sequence

from .exceptions import StampedeConfigError
from .models import Phase, PhaseKind

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _finite(seconds: float, raw: Any) -> float:
    if not math.isfinite(seconds):
        raise StampedeConfigError(f"Duration must be finite: {raw!r}", context={"value": raw})
    return seconds


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and k6-style strings: "500ms", "30s", "1m", "2h", "1m30s".
    Infinity and NaN are rejected.
    """
    if isinstance(value, bool):
        raise StampedeConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return _finite(float(value), value)
    if not isinstance(value, str):
        raise StampedeConfigError(f"Invalid duration: {value!r}")
    text = value.strip().lower()
    try:
        return _finite(float(text), value)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text) or not text:
        raise StampedeConfigError(f"Invalid duration: {value!r}", context={"value": value})
    return total


def stages_to_phases(stages: Iterable[tuple[float, int]], start_level: int = 0) -> list[Phase]:
    """Convert k6-style (duration, target) stages into phases.

    Each stage ramps from the previous target (start_level for the first one)
    to its own target. A stage that keeps the level becomes a hold.
    """
    phases: list[Phase] = []
    level = start_level
    for duration, target in stages:
        if target == level:
            phases.append(Phase.hold(target, duration))
        else:
            phases.append(Phase.ramp(level, target, duration))
        level = target
    return phases


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


class Schedule:
    """Ordered, contiguous sequence of phases.

    Phase i occupies [start_i, start_i + duration_i). The final instant
    elapsed == total_duration still belongs to the last phase; anything
    later is past the schedule, whose level is 0.
    """

    __slots__ = ("_phases", "_starts", "_total")

    def __init__(self, phases: Sequence[Phase]) -> None:
        if not phases:
            raise StampedeConfigError("Schedule requires at least one phase")
        starts: list[float] = []
        t = 0.0
        for i, p in enumerate(phases):
            if not isinstance(p, Phase):
                raise StampedeConfigError(
                    "Schedule entries must be Phase instances",
                    context={"index": i, "actual_type": type(p).__name__},
                )
            starts.append(t)
            t += p.duration
        self._phases: tuple[Phase, ...] = tuple(phases)
        self._starts: tuple[float, ...] = tuple(starts)
        self._total = t

    @property
    def phases(self) -> tuple[Phase, ...]:
        return self._phases

    @property
    def total_duration(self) -> float:
        return self._total

    @property
    def peak_level(self) -> int:
        return max(max(p.from_level, p.to_level) for p in self._phases)

    def phase_start(self, index: int) -> float:
        return self._starts[index]

    def is_complete(self, elapsed: float) -> bool:
        return elapsed > self._total

    def phase_at(self, elapsed: float) -> int | None:
        """Index of the phase active at elapsed, or None before start / after completion."""
        if elapsed < 0 or elapsed > self._total:
            return None
        if elapsed == self._total:
            return len(self._phases) - 1
        return bisect_right(self._starts, elapsed) - 1

    def active_level(self, elapsed: float) -> int:
        """Target number of concurrently active virtual users at elapsed seconds."""
        idx = self.phase_at(elapsed)
        if idx is None:
            return 0
        phase = self._phases[idx]
        if phase.kind == PhaseKind.HOLD:
            return phase.to_level
        progress = min(1.0, (elapsed - self._starts[idx]) / phase.duration)
        raw = phase.from_level + (phase.to_level - phase.from_level) * progress
        lo = min(phase.from_level, phase.to_level)
        hi = max(phase.from_level, phase.to_level)
        return max(lo, min(hi, _round_half_up(raw)))

    def describe(self) -> list[str]:
        out = []
        for i, p in enumerate(self._phases):
            if p.kind == PhaseKind.HOLD:
                out.append(f"#{i + 1} hold {p.to_level} VUs for {p.duration:g}s")
            else:
                out.append(f"#{i + 1} ramp {p.from_level}->{p.to_level} VUs over {p.duration:g}s")
        return out

    def __repr__(self) -> str:
        return f"Schedule(phases={len(self._phases)}, total_duration={self._total:g}s)"
