"""Threshold evaluation: one violation per breached check, severity fixed per metric.

Average and max response time, throughput and resource usage breaches are warnings;
p95/p99 response time and error rate breaches are critical.
"""

from __future__ import annotations

from .models import MetricsSample, Severity, ThresholdSet, ThresholdViolation

AVERAGE_RESPONSE_TIME = "average_response_time"
P95_RESPONSE_TIME = "95th_percentile_response_time"
P99_RESPONSE_TIME = "99th_percentile_response_time"
MAX_RESPONSE_TIME = "max_response_time"
ERROR_RATE = "error_rate"
THROUGHPUT = "throughput"
CPU_USAGE = "cpu_usage"
MEMORY_USAGE = "memory_usage"

SEVERITY_BY_METRIC: dict[str, Severity] = {
    AVERAGE_RESPONSE_TIME: Severity.WARNING,
    P95_RESPONSE_TIME: Severity.CRITICAL,
    P99_RESPONSE_TIME: Severity.CRITICAL,
    MAX_RESPONSE_TIME: Severity.WARNING,
    ERROR_RATE: Severity.CRITICAL,
    THROUGHPUT: Severity.WARNING,
    CPU_USAGE: Severity.WARNING,
    MEMORY_USAGE: Severity.WARNING,
}


def _violation(sample: MetricsSample, metric: str, actual: float, limit: float, description: str) -> ThresholdViolation:
    return ThresholdViolation(
        timestamp=sample.timestamp,
        metric=metric,
        actual_value=actual,
        threshold_value=limit,
        severity=SEVERITY_BY_METRIC[metric],
        description=description,
    )


def evaluate_thresholds(sample: MetricsSample, thresholds: ThresholdSet) -> list[ThresholdViolation]:
    """Compare one sample with a threshold set. Unset thresholds are skipped."""
    out: list[ThresholdViolation] = []
    timing = sample.timing

    limit = thresholds.response_time_avg_ms
    if limit is not None and timing.average_ms > limit:
        out.append(_violation(
            sample, AVERAGE_RESPONSE_TIME, timing.average_ms, limit,
            f"Average response time {timing.average_ms:.2f}ms exceeds threshold {limit:g}ms",
        ))
    limit = thresholds.response_time_p95_ms
    if limit is not None and timing.p95_ms > limit:
        out.append(_violation(
            sample, P95_RESPONSE_TIME, timing.p95_ms, limit,
            f"95th percentile response time {timing.p95_ms:.2f}ms exceeds threshold {limit:g}ms",
        ))
    limit = thresholds.response_time_p99_ms
    if limit is not None and timing.p99_ms > limit:
        out.append(_violation(
            sample, P99_RESPONSE_TIME, timing.p99_ms, limit,
            f"99th percentile response time {timing.p99_ms:.2f}ms exceeds threshold {limit:g}ms",
        ))
    limit = thresholds.response_time_max_ms
    if limit is not None and timing.max_ms > limit:
        out.append(_violation(
            sample, MAX_RESPONSE_TIME, timing.max_ms, limit,
            f"Max response time {timing.max_ms:.2f}ms exceeds threshold {limit:g}ms",
        ))
    limit = thresholds.error_rate_max_pct
    if limit is not None and sample.errors.rate_pct > limit:
        out.append(_violation(
            sample, ERROR_RATE, sample.errors.rate_pct, limit,
            f"Error rate {sample.errors.rate_pct:.2f}% exceeds threshold {limit:g}%",
        ))
    limit = thresholds.throughput_min_rps
    rps = sample.throughput.requests_per_second
    if limit is not None and rps < limit:
        out.append(_violation(
            sample, THROUGHPUT, rps, limit,
            f"Throughput {rps:.2f} req/s is below threshold {limit:g} req/s",
        ))

    system = sample.system
    if system is not None:
        limit = thresholds.cpu_usage_max_pct
        if limit is not None and system.cpu_percent > limit:
            out.append(_violation(
                sample, CPU_USAGE, system.cpu_percent, limit,
                f"CPU usage {system.cpu_percent:.1f}% exceeds threshold {limit:g}%",
            ))
        limit = thresholds.memory_usage_max_pct
        if limit is not None and system.memory_percent > limit:
            out.append(_violation(
                sample, MEMORY_USAGE, system.memory_percent, limit,
                f"Memory usage {system.memory_percent:.1f}% exceeds threshold {limit:g}%",
            ))
    return out
