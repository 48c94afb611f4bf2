"""Load pattern engine: realizes a LoadConfig as a virtual-user population over time.

Every pattern compiles to a LoadPlan, an ordered list of (offset_seconds, target_users)
change points plus an end offset. The engine walks the plan: at each point it spawns
users or flips the oldest active users to stopping until the population matches the
target. The same plan drives the dashboard's expected-users figure.

The overall duration is a ceiling for every pattern; all waits are clamped to the
execution deadline and wake early on request_stop().
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass

from .engine import RequestExecutor, run_virtual_user
from .exceptions import VolleyPatternError
from .execution import TestExecution
from .logging_config import get_logger
from .models import LoadConfig, LoadPattern, VirtualUser

logger = get_logger("patterns")

RAMP_STEPS = 10
STEP_COUNT = 5
SPIKE_BASELINE_FRACTION = 0.1
SPIKE_WINDOW_FRACTION = 0.3
SPIKE_WINDOW_MAX_SEC = 30.0
# Hold loop granularity when watching for users finishing early (seconds)
HOLD_POLL_SEC = 0.05


@dataclass(frozen=True, slots=True)
class LoadPlan:
    points: tuple[tuple[float, int], ...]
    end_seconds: float

    def target_at(self, elapsed_seconds: float) -> int:
        """Planned population at elapsed_seconds (0 before start and after the end)."""
        if elapsed_seconds < 0 or elapsed_seconds >= self.end_seconds:
            return 0
        target = 0
        for offset, users in self.points:
            if offset > elapsed_seconds:
                break
            target = users
        return target

    @property
    def peak(self) -> int:
        return max((users for _, users in self.points), default=0)


def _ramp_points(start: float, span: float, users: int, steps: int = RAMP_STEPS) -> list[tuple[float, int]]:
    per_step = math.ceil(users / steps)
    step_span = span / steps
    return [(start + i * step_span, min(users, (i + 1) * per_step)) for i in range(steps)]


def build_plan(load: LoadConfig) -> LoadPlan:
    """Compile a LoadConfig into change points. Raises VolleyPatternError for unusable patterns."""
    users = load.virtual_users
    duration = load.duration_seconds
    if users < 1:
        raise VolleyPatternError("virtual_users must be >= 1", context={"pattern": load.pattern.value})
    if duration <= 0:
        raise VolleyPatternError("duration_seconds must be > 0", context={"pattern": load.pattern.value})
    pattern = load.pattern

    if pattern is LoadPattern.CONSTANT:
        return LoadPlan(((0.0, users),), duration)

    if pattern is LoadPattern.RAMP_UP:
        ramp = load.ramp_up_seconds if load.ramp_up_seconds is not None else duration / 2
        ramp = min(max(0.0, ramp), duration)
        return LoadPlan(tuple(_ramp_points(0.0, ramp, users)), duration)

    if pattern is LoadPattern.RAMP_DOWN:
        half = duration / 2
        ramp_up = load.ramp_up_seconds if load.ramp_up_seconds is not None else duration / 4
        ramp_up = min(max(0.0, ramp_up), half)
        ramp_down = load.ramp_down_seconds if load.ramp_down_seconds is not None else half
        ramp_down = min(max(0.0, ramp_down), duration - half)
        decrement = math.ceil(users / RAMP_STEPS)
        down_span = ramp_down / RAMP_STEPS
        points = _ramp_points(0.0, ramp_up, users)
        points += [(half + i * down_span, max(0, users - (i + 1) * decrement)) for i in range(RAMP_STEPS)]
        return LoadPlan(tuple(points), duration)

    if pattern is LoadPattern.STEP:
        span = duration / STEP_COUNT
        return LoadPlan(
            tuple((i * span, math.ceil((i + 1) * users / STEP_COUNT)) for i in range(STEP_COUNT)),
            duration,
        )

    if pattern is LoadPattern.SPIKE:
        baseline = math.ceil(SPIKE_BASELINE_FRACTION * users)
        window = min(SPIKE_WINDOW_FRACTION * duration, SPIKE_WINDOW_MAX_SEC)
        lead = (duration - window) / 2
        return LoadPlan(((0.0, baseline), (lead, users), (lead + window, baseline)), duration)

    if pattern is LoadPattern.CUSTOM:
        if not load.custom_steps:
            raise VolleyPatternError("custom pattern requires at least one step")
        points: list[tuple[float, int]] = []
        offset = 0.0
        for i, step in enumerate(load.custom_steps):
            if step.virtual_users < 0 or step.duration_seconds < 0:
                raise VolleyPatternError(
                    "custom step values must be >= 0",
                    context={"step": i, "virtual_users": step.virtual_users, "duration_seconds": step.duration_seconds},
                )
            if step.virtual_users > users:
                raise VolleyPatternError(
                    f"custom step targets {step.virtual_users} users, above virtual_users={users}",
                    context={"step": i},
                )
            points.append((offset, step.virtual_users))
            offset += step.duration_seconds
        return LoadPlan(tuple(points), min(offset, duration))

    raise VolleyPatternError(f"Unsupported load pattern: {pattern!r}")


def expected_active_users(load: LoadConfig, elapsed_seconds: float) -> int:
    """Synchronous helper for the dashboard: planned population at elapsed_seconds."""
    try:
        return build_plan(load).target_at(elapsed_seconds)
    except VolleyPatternError:
        return 0


class LoadPatternEngine:
    """Owns the virtual users of one execution and the tasks running them.

    Each change point diffs its target against the users still active, so users that
    failed or reached their iteration cap are replaced at the next point.
    """

    def __init__(self, execution: TestExecution, executor: RequestExecutor) -> None:
        self._execution = execution
        self._executor = executor
        self._load = execution.scenario.load
        self._plan = build_plan(self._load)
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._population = 0
        self._spawned = 0
        self.peak_active = 0

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def active_users(self) -> list[VirtualUser]:
        return [u for u in list(self._execution.virtual_users) if u.is_active]

    def live_task_count(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def run(self) -> None:
        """Walk the plan, then hold until its end, the deadline, a stop, or all users finishing."""
        start = time.monotonic()
        logger.debug(
            "Pattern %s for %s: %d change points, end=%.1fs",
            self._load.pattern.value, self._execution.test_id, len(self._plan.points), self._plan.end_seconds,
        )
        for offset, target in self._plan.points:
            if offset >= self._plan.end_seconds:
                break
            await self._wait_until(start + offset, idle_exit=False)
            if self.stop_requested or self._execution.deadline_passed():
                return
            self.scale_to(target)
        if self._population > 0:
            await self._wait_until(start + self._plan.end_seconds, idle_exit=True)

    def scale_to(self, target: int) -> None:
        """Spawn or stop users until the active count matches target (capped at virtual_users)."""
        target = min(target, self._load.virtual_users)
        active = len(self.active_users())
        if target > active:
            self.spawn(target - active)
        elif target < active:
            self.shrink(active - target)
        self._population = target

    def spawn(self, count: int) -> list[VirtualUser]:
        execution = self._execution
        template = execution.scenario.request
        users = []
        for _ in range(count):
            self._spawned += 1
            user = VirtualUser(f"{execution.test_id}_vu_{self._spawned}", index=self._spawned)
            execution.virtual_users.append(user)
            task = asyncio.create_task(
                run_virtual_user(
                    user,
                    execution,
                    self._executor,
                    template,
                    think_time_ms=self._load.think_time_ms,
                    iterations=self._load.iterations,
                ),
                name=user.id,
            )
            self._tasks.append(task)
            users.append(user)
        self._population += count
        self.peak_active = max(self.peak_active, len(self.active_users()))
        logger.debug("Spawned %d users for %s (population=%d)", count, execution.test_id, self._population)
        return users

    def shrink(self, count: int) -> int:
        """Flip up to `count` active users to stopping, oldest first. Does not wait for them."""
        stopped = 0
        for user in self.active_users():
            if stopped >= count:
                break
            if user.request_stop():
                stopped += 1
        self._population = max(0, self._population - count)
        logger.debug("Stopping %d users for %s (population=%d)", stopped, self._execution.test_id, self._population)
        return stopped

    def request_stop(self) -> int:
        """Wake the pattern driver and flip all remaining active users to stopping."""
        self._stop_event.set()
        self._population = 0
        return self._execution.stop_users()

    async def join(self, timeout: float) -> bool:
        """Wait up to timeout for all user tasks; cancel stragglers. True if all exited in time."""
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if not still_pending:
            return True
        logger.warning(
            "%d virtual users of %s did not exit within %.1fs; cancelling",
            len(still_pending), self._execution.test_id, timeout,
        )
        for t in still_pending:
            t.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)
        return False

    async def _wait_until(self, when: float, idle_exit: bool) -> None:
        deadline = self._execution.deadline
        if deadline is not None:
            when = min(when, deadline)
        while not self.stop_requested:
            remaining = when - time.monotonic()
            if remaining <= 0:
                return
            if idle_exit and self.live_task_count() == 0:
                return
            timeout = min(remaining, HOLD_POLL_SEC) if idle_exit else remaining
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
