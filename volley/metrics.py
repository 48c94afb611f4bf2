"""Metrics accumulation, sampling and summary statistics.

Every virtual user of a run writes into one MetricsAccumulator; writes and snapshots
are serialized by a lock, so the aggregator never observes a torn update
(completed + failed <= sent holds for every snapshot).

Percentiles use the nearest-rank rule over the full response-time history:
sorted[ceil(p/100 * n) - 1], clamped to index 0.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .logging_config import get_logger
from .models import (
    ErrorSummary,
    MetricsSample,
    RequestCounts,
    Summary,
    SystemMetrics,
    ThroughputStats,
    TimingStats,
    UserCounts,
    VirtualUser,
    VirtualUserStatus,
)

if TYPE_CHECKING:
    from .execution import TestExecution

logger = get_logger("metrics")

# Longest error key kept in the per-type breakdown
MAX_ERROR_KEY_LENGTH = 200


def percentile(values: Sequence[float], p: float, presorted: bool = False) -> float:
    """Nearest-rank percentile. Returns 0.0 for an empty sequence."""
    n = len(values)
    if n == 0:
        return 0.0
    ordered = values if presorted else sorted(values)
    idx = max(0, math.ceil(p / 100.0 * n) - 1)
    return float(ordered[min(idx, n - 1)])


@dataclass(slots=True)
class AccumulatorSnapshot:
    """Consistent copy of the accumulator, taken under its lock."""

    sent: int
    completed: int
    failed: int
    total_response_time_ms: float
    min_response_time_ms: float
    max_response_time_ms: float
    response_times_ms: list[float]
    error_types: dict[str, int]
    bytes_received: int

    @property
    def pending(self) -> int:
        return max(0, self.sent - self.completed - self.failed)

    @property
    def average_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.completed if self.completed else 0.0

    @property
    def error_rate_pct(self) -> float:
        return 100.0 * self.failed / self.sent if self.sent else 0.0


class MetricsAccumulator:
    """Shared, lock-protected counters for one test execution."""

    __slots__ = (
        "_lock", "sent", "completed", "failed", "total_response_time_ms",
        "min_response_time_ms", "max_response_time_ms", "_response_times", "_error_types", "bytes_received",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent = 0
        self.completed = 0
        self.failed = 0
        self.total_response_time_ms = 0.0
        self.min_response_time_ms = math.inf
        self.max_response_time_ms = 0.0
        self._response_times: list[float] = []
        self._error_types: dict[str, int] = {}
        self.bytes_received = 0

    def record_sent(self) -> None:
        with self._lock:
            self.sent += 1

    def record_success(self, latency_ms: float, size_bytes: int = 0) -> None:
        with self._lock:
            self.completed += 1
            self.total_response_time_ms += latency_ms
            if latency_ms < self.min_response_time_ms:
                self.min_response_time_ms = latency_ms
            if latency_ms > self.max_response_time_ms:
                self.max_response_time_ms = latency_ms
            self._response_times.append(latency_ms)
            self.bytes_received += size_bytes

    def record_failure(self, error_type: str) -> None:
        key = error_type[:MAX_ERROR_KEY_LENGTH] if error_type else "Unknown Error"
        with self._lock:
            self.failed += 1
            self._error_types[key] = self._error_types.get(key, 0) + 1

    def snapshot(self) -> AccumulatorSnapshot:
        with self._lock:
            return AccumulatorSnapshot(
                sent=self.sent,
                completed=self.completed,
                failed=self.failed,
                total_response_time_ms=self.total_response_time_ms,
                min_response_time_ms=0.0 if self.completed == 0 else self.min_response_time_ms,
                max_response_time_ms=self.max_response_time_ms,
                response_times_ms=list(self._response_times),
                error_types=dict(self._error_types),
                bytes_received=self.bytes_received,
            )


def count_users(users: Iterable[VirtualUser]) -> UserCounts:
    """Count statuses over a snapshot of the user list."""
    active = completed = failed = total = 0
    for u in users:
        total += 1
        status = u.status
        if status is VirtualUserStatus.ACTIVE:
            active += 1
        elif status is VirtualUserStatus.COMPLETED:
            completed += 1
        elif status is VirtualUserStatus.FAILED:
            failed += 1
    return UserCounts(active=active, total=total, completed=completed, failed=failed)


def build_sample(
    snap: AccumulatorSnapshot,
    users: UserCounts,
    elapsed_seconds: float,
    timestamp: float,
    system: SystemMetrics | None = None,
) -> MetricsSample:
    """Derive one immutable MetricsSample from an accumulator snapshot."""
    times = sorted(snap.response_times_ms)
    elapsed = max(elapsed_seconds, 1e-9)
    return MetricsSample(
        timestamp=timestamp,
        elapsed_seconds=elapsed_seconds,
        virtual_users=users,
        requests=RequestCounts(
            sent=snap.sent,
            completed=snap.completed,
            failed=snap.failed,
            pending=snap.pending,
        ),
        timing=TimingStats(
            average_ms=snap.average_response_time_ms,
            min_ms=snap.min_response_time_ms,
            max_ms=snap.max_response_time_ms,
            p50_ms=percentile(times, 50, presorted=True),
            p95_ms=percentile(times, 95, presorted=True),
            p99_ms=percentile(times, 99, presorted=True),
        ),
        throughput=ThroughputStats(
            requests_per_second=snap.completed / elapsed if elapsed_seconds > 0 else 0.0,
            bytes_per_second=snap.bytes_received / elapsed if elapsed_seconds > 0 else 0.0,
        ),
        errors=ErrorSummary(
            count=snap.failed,
            rate_pct=snap.error_rate_pct,
            by_type=snap.error_types,
        ),
        system=system,
    )


def compute_summary(
    snap: AccumulatorSnapshot,
    samples: Sequence[MetricsSample],
    duration_seconds: float,
) -> Summary:
    """Final statistics for a run: totals from the accumulator, concurrency from the sample history."""
    times = sorted(snap.response_times_ms)
    active = [s.virtual_users.active for s in samples]
    return Summary(
        total_requests=snap.sent,
        successful_requests=snap.completed,
        failed_requests=snap.failed,
        error_rate_pct=snap.error_rate_pct,
        average_response_time_ms=snap.average_response_time_ms,
        min_response_time_ms=snap.min_response_time_ms,
        max_response_time_ms=snap.max_response_time_ms,
        p50_response_time_ms=percentile(times, 50, presorted=True),
        p95_response_time_ms=percentile(times, 95, presorted=True),
        p99_response_time_ms=percentile(times, 99, presorted=True),
        throughput_rps=snap.completed / duration_seconds if duration_seconds > 0 else 0.0,
        bytes_received=snap.bytes_received,
        peak_concurrent_users=max(active) if active else 0,
        average_concurrent_users=sum(active) / len(active) if active else 0.0,
        efficiency_pct=100.0 * snap.completed / snap.sent if snap.sent else 0.0,
        error_types=snap.error_types,
    )


class MetricsAggregator:
    """Samples one execution on a fixed interval.

    Each sample is appended to the execution history and passed to on_sample.
    Sampling stops by itself once is_alive() turns false, and stop() cancels the
    timer task, so no timer outlives its run.
    """

    def __init__(
        self,
        execution: "TestExecution",
        interval_seconds: float,
        on_sample: Callable[[MetricsSample], None] | None = None,
        is_alive: Callable[[], bool] | None = None,
        system_sampler: Callable[[], SystemMetrics | None] | None = None,
    ) -> None:
        self._execution = execution
        self._interval = interval_seconds
        self._on_sample = on_sample
        self._is_alive = is_alive or (lambda: True)
        self._system_sampler = system_sampler
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"metrics-{self._execution.test_id}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._is_alive():
                logger.debug("Execution %s gone; metrics sampling stopped", self._execution.test_id)
                return
            try:
                self.sample_now()
            except Exception:
                logger.exception("Metrics sampling failed for %s", self._execution.test_id)

    def sample_now(self) -> MetricsSample:
        """Take one sample immediately (also used for the final sample of a run)."""
        execution = self._execution
        snap = execution.accumulator.snapshot()
        users = count_users(list(execution.virtual_users))
        system = self._system_sampler() if self._system_sampler is not None else None
        sample = build_sample(
            snap,
            users,
            elapsed_seconds=execution.elapsed_seconds(),
            timestamp=execution.next_sample_timestamp(),
            system=system,
        )
        execution.append_sample(sample)
        if self._on_sample is not None:
            self._on_sample(sample)
        return sample

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def elapsed_since(start_monotonic: float | None) -> float:
    if start_monotonic is None:
        return 0.0
    return max(0.0, time.monotonic() - start_monotonic)
