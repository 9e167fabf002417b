"""Concurrency controller: keeps the live virtual-user population on the schedule.

The controller samples Schedule.active_level every control interval and
reconciles: rising level starts users at the lowest free index, falling level
asks the highest-indexed active users to stop after their in-flight request.
A sample also lands just past the schedule end, where every user is told to stop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .engine import run_virtual_user
from .logging_config import get_logger
from .models import ThinkTime, VuState
from .schedule import Schedule

if TYPE_CHECKING:
    import httpx

    from .classifier import ResponseClassifier
    from .metrics import MetricAggregator
    from .workload import WorkloadGenerator

logger = get_logger("scenarios")

# Default sampling interval for the target level (seconds)
DEFAULT_CONTROL_INTERVAL_SEC = 1.0
# Default wait for in-flight requests once the schedule is over (seconds)
DEFAULT_GRACE_PERIOD_SEC = 10.0
# Overshoot past the schedule end so the last wake-up sees it complete
END_OVERSHOOT_SEC = 0.001


class VirtualUser:
    """Controller-side handle of one VU task."""

    __slots__ = ("index", "state", "stop_event", "task")

    def __init__(self, index: int) -> None:
        self.index = index
        self.state = VuState.INACTIVE
        self.stop_event = asyncio.Event()
        self.task: asyncio.Task | None = None

    @property
    def is_live(self) -> bool:
        return self.state in (VuState.ACTIVE, VuState.STOPPING)

    def __repr__(self) -> str:
        return f"VirtualUser(index={self.index}, state={self.state.value})"


@dataclass
class ControllerResult:
    """What happened to the population during one run."""

    start_time: float
    end_time: float
    users_started: int
    peak_active: int
    cancelled_users: int
    interrupted: bool

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.end_time - self.start_time)


class ConcurrencyController:
    """
    Drives virtual users along a Schedule.

    Args:
        schedule: Phase schedule giving the target level over time
        client: Shared HTTP client
        generator, classifier, aggregator: per-iteration pipeline shared by all users
        think_time: Delay between iterations of one user
        control_interval: Seconds between two level samples
        grace_period: Seconds to wait for in-flight requests at the end before cancelling
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        schedule: Schedule,
        client: httpx.AsyncClient,
        generator: WorkloadGenerator,
        classifier: ResponseClassifier,
        aggregator: MetricAggregator,
        think_time: ThinkTime,
        control_interval: float = DEFAULT_CONTROL_INTERVAL_SEC,
        grace_period: float = DEFAULT_GRACE_PERIOD_SEC,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._schedule = schedule
        self._client = client
        self._generator = generator
        self._classifier = classifier
        self._aggregator = aggregator
        self._think_time = think_time
        self._interval = control_interval
        self._grace = grace_period
        self._clock = clock
        self._users: dict[int, VirtualUser] = {}
        self._stop_requested = asyncio.Event()
        self._start: float | None = None
        self._target = 0
        self._peak = 0
        self._started = 0
        self._phase: int | None = None

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def active_count(self) -> int:
        return sum(1 for u in self._users.values() if u.state == VuState.ACTIVE)

    @property
    def live_count(self) -> int:
        """Active plus stopping users (tasks still running)."""
        return sum(1 for u in self._users.values() if u.is_live)

    @property
    def target_level(self) -> int:
        return self._target

    @property
    def peak_active(self) -> int:
        return self._peak

    @property
    def users_started(self) -> int:
        return self._started

    @property
    def current_phase(self) -> int | None:
        return self._phase

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        return self._clock() - self._start

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        """End the run early. Users finish their in-flight request within the grace period."""
        if not self._stop_requested.is_set():
            logger.info("Stop requested at %.1fs, winding down", self.elapsed)
        self._stop_requested.set()

    def users(self) -> list[VirtualUser]:
        return [self._users[i] for i in sorted(self._users)]

    async def run(self) -> ControllerResult:
        """Run the schedule to completion (or until request_stop), then drain."""
        self._start = self._clock()
        logger.info(
            "Schedule started: %d phases, %.1fs, peak %d users",
            len(self._schedule.phases),
            self._schedule.total_duration,
            self._schedule.peak_level,
        )
        while not self._stop_requested.is_set():
            elapsed = self._clock() - self._start
            if self._schedule.is_complete(elapsed):
                break
            self._track_phase(elapsed)
            self._reconcile(self._schedule.active_level(elapsed))
            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=self._next_wait(elapsed))
            except asyncio.TimeoutError:
                pass
        self._target = 0
        cancelled = await self._shutdown()
        end = self._clock()
        logger.info(
            "Schedule finished: %.1fs, %d users started, peak %d, %d cancelled",
            end - self._start,
            self._started,
            self._peak,
            cancelled,
        )
        return ControllerResult(
            start_time=self._start,
            end_time=end,
            users_started=self._started,
            peak_active=self._peak,
            cancelled_users=cancelled,
            interrupted=self._stop_requested.is_set(),
        )

    def _next_wait(self, elapsed: float) -> float:
        """Seconds until the next sample: one interval, or less if the schedule ends sooner."""
        remaining = self._schedule.total_duration - elapsed
        return min(self._interval, max(0.0, remaining) + END_OVERSHOOT_SEC)

    def _track_phase(self, elapsed: float) -> None:
        idx = self._schedule.phase_at(elapsed)
        if idx is not None and idx != self._phase:
            self._phase = idx
            logger.info("Phase %s", self._schedule.describe()[idx], extra={"phase": idx})

    def _reconcile(self, target: int) -> None:
        self._target = target
        active = sorted(i for i, u in self._users.items() if u.state == VuState.ACTIVE)
        if len(active) < target:
            needed = target - len(active)
            index = 1
            while needed > 0:
                user = self._users.get(index)
                if user is None or not user.is_live:
                    self._start_user(index)
                    needed -= 1
                index += 1
        elif len(active) > target:
            for index in reversed(active[target:]):
                self._stop_user(self._users[index])
        self._peak = max(self._peak, self.active_count)

    def _start_user(self, index: int) -> None:
        user = VirtualUser(index)
        user.state = VuState.ACTIVE
        user.task = asyncio.create_task(
            run_virtual_user(
                index,
                self._client,
                self._generator,
                self._classifier,
                self._aggregator,
                self._think_time,
                user.stop_event,
            ),
            name=f"vu-{index}",
        )
        user.task.add_done_callback(lambda t, u=user: self._on_user_done(u, t))
        self._users[index] = user
        self._started += 1
        logger.debug("vu=%d started", index)

    def _stop_user(self, user: VirtualUser) -> None:
        if user.state == VuState.ACTIVE:
            user.state = VuState.STOPPING
            user.stop_event.set()
            logger.debug("vu=%d stopping", user.index)

    def _on_user_done(self, user: VirtualUser, task: asyncio.Task) -> None:
        user.state = VuState.STOPPED
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("vu=%d crashed: %s", user.index, exc, exc_info=exc, extra={"vu": user.index})

    async def _shutdown(self) -> int:
        """Stop every user, wait up to the grace period, cancel the rest."""
        live = [u for u in self._users.values() if u.is_live]
        for user in live:
            user.state = VuState.STOPPING
            user.stop_event.set()
        tasks = [u.task for u in live if u.task is not None and not u.task.done()]
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, self._grace))
        if not pending:
            return 0
        logger.warning("Grace period of %.1fs elapsed, cancelling %d users", self._grace, len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)
