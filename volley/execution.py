"""Runtime state of one test run."""

from __future__ import annotations

import time

from .metrics import MetricsAccumulator, elapsed_since
from .models import (
    ExecutionStatus,
    MetricsSample,
    ScenarioConfig,
    TestResult,
    ThresholdViolation,
    VirtualUser,
)

# Minimum spacing forced between two sample timestamps (seconds)
SAMPLE_TIMESTAMP_EPSILON = 1e-6


class TestExecution:
    """Aggregate root of a run: scenario, status, users, accumulator, samples and violations.

    virtual_users has a single writer (the pattern engine); readers take list() snapshots.
    samples is append-only with strictly increasing timestamps.
    """

    __test__ = False

    def __init__(self, test_id: str, scenario: ScenarioConfig) -> None:
        self.test_id = test_id
        self.scenario = scenario
        self.status = ExecutionStatus.INITIALIZING
        self.created_at = time.time()
        self.start_time: float | None = None
        self.end_time: float | None = None
        self.started_monotonic: float | None = None
        self.deadline: float | None = None
        self.virtual_users: list[VirtualUser] = []
        self.accumulator = MetricsAccumulator()
        self.samples: list[MetricsSample] = []
        self.violations: list[ThresholdViolation] = []
        self.result: TestResult | None = None
        self.error: str | None = None

    def mark_running(self) -> None:
        """Start the measured phase: the hard deadline is now + duration."""
        self.start_time = time.time()
        self.started_monotonic = time.monotonic()
        self.deadline = self.started_monotonic + self.scenario.load.duration_seconds
        if self.status is ExecutionStatus.INITIALIZING:
            self.status = ExecutionStatus.RUNNING

    @property
    def is_stopping(self) -> bool:
        return self.status in (ExecutionStatus.STOPPING, ExecutionStatus.STOPPED)

    @property
    def latest_sample(self) -> MetricsSample | None:
        return self.samples[-1] if self.samples else None

    def deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def elapsed_seconds(self) -> float:
        return elapsed_since(self.started_monotonic)

    def next_sample_timestamp(self) -> float:
        now = time.time()
        last = self.latest_sample
        if last is not None and now <= last.timestamp:
            return last.timestamp + SAMPLE_TIMESTAMP_EPSILON
        return now

    def append_sample(self, sample: MetricsSample) -> None:
        last = self.latest_sample
        if last is not None and sample.timestamp <= last.timestamp:
            raise ValueError(
                f"Sample timestamp {sample.timestamp} is not after {last.timestamp} for {self.test_id}"
            )
        self.samples.append(sample)

    def stop_users(self) -> int:
        """Flip every active user to stopping. Returns how many were flipped."""
        return sum(1 for u in list(self.virtual_users) if u.request_stop())

    def all_users_terminal(self) -> bool:
        return all(u.is_terminal for u in list(self.virtual_users))

    def finish(self, status: ExecutionStatus) -> None:
        self.status = status
        self.end_time = time.time()

    def __repr__(self) -> str:
        return f"TestExecution(test_id={self.test_id!r}, status={self.status.value}, users={len(self.virtual_users)})"
