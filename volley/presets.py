"""Ready-made scenarios with the usual threshold defaults per test type."""

from __future__ import annotations

import time
from collections.abc import Sequence

from .config import validate_scenario
from .models import (
    LoadConfig,
    LoadPattern,
    LoadStep,
    RequestTemplate,
    ScenarioConfig,
    ScenarioType,
    ThresholdSet,
)

# Baseline hold before each spike in a multi-spike test (seconds)
MULTI_SPIKE_BASELINE_SEC = 30.0


def _id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


def _request(url: str, request: RequestTemplate | None) -> RequestTemplate:
    return request if request is not None else RequestTemplate(url=url)


def _build(**kwargs) -> ScenarioConfig:
    scenario = ScenarioConfig(**kwargs)
    validate_scenario(scenario)
    return scenario


def standard_load_test(
    name: str,
    url: str,
    virtual_users: int,
    duration_seconds: float,
    think_time_ms: float = 1000.0,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    """Constant load; throughput must stay above 80% of one request per user per second."""
    return _build(
        id=_id("load_test"),
        name=name,
        scenario_type=ScenarioType.LOAD,
        description=f"Load test with {virtual_users} users for {duration_seconds:g}s",
        load=LoadConfig(LoadPattern.CONSTANT, virtual_users, duration_seconds, think_time_ms=think_time_ms),
        thresholds=ThresholdSet(
            response_time_avg_ms=2000,
            response_time_p95_ms=5000,
            response_time_max_ms=10000,
            error_rate_max_pct=1,
            throughput_min_rps=virtual_users * 0.8,
        ),
        request=_request(url, request),
        warmup_requests=min(virtual_users, 10),
        tags=("load-test", "baseline"),
    )


def ramp_up_load_test(
    name: str,
    url: str,
    max_users: int,
    ramp_up_seconds: float,
    sustain_seconds: float,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    return _build(
        id=_id("ramp_up_test"),
        name=name,
        scenario_type=ScenarioType.LOAD,
        description=f"Ramp-up load test to {max_users} users over {ramp_up_seconds:g}s, sustain for {sustain_seconds:g}s",
        load=LoadConfig(
            LoadPattern.RAMP_UP, max_users, ramp_up_seconds + sustain_seconds, ramp_up_seconds=ramp_up_seconds,
        ),
        thresholds=ThresholdSet(response_time_avg_ms=2500, response_time_p95_ms=6000, error_rate_max_pct=2),
        request=_request(url, request),
        warmup_requests=5,
        tags=("load-test", "ramp-up"),
    )


def standard_stress_test(
    name: str,
    url: str,
    start_users: int,
    max_users: int,
    step_duration_seconds: float,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    """Step pattern towards max_users with resource ceilings."""
    increment = max(1, max_users // 10)
    steps = max(1, -(-(max_users - start_users) // increment))
    return _build(
        id=_id("stress_test"),
        name=name,
        scenario_type=ScenarioType.STRESS,
        description=f"Stress test from {start_users} to {max_users} users in {steps} steps",
        load=LoadConfig(LoadPattern.STEP, max_users, steps * step_duration_seconds),
        thresholds=ThresholdSet(
            response_time_avg_ms=5000,
            response_time_p95_ms=15000,
            response_time_max_ms=30000,
            error_rate_max_pct=10,
            cpu_usage_max_pct=90,
            memory_usage_max_pct=85,
        ),
        request=_request(url, request),
        warmup_requests=5,
        tags=("stress-test", "breaking-point"),
    )


def custom_step_stress_test(
    name: str,
    url: str,
    steps: Sequence[tuple[int, float]],
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    """Custom pattern from (users, duration_seconds) pairs."""
    load_steps = tuple(
        LoadStep(users, duration, f"Step {i + 1}: {users} users") for i, (users, duration) in enumerate(steps)
    )
    max_users = max((s.virtual_users for s in load_steps), default=0)
    total = sum(s.duration_seconds for s in load_steps)
    return _build(
        id=_id("custom_stress_test"),
        name=name,
        scenario_type=ScenarioType.STRESS,
        description=f"Custom stress test with {len(load_steps)} steps over {total:g}s",
        load=LoadConfig(LoadPattern.CUSTOM, max_users, total, custom_steps=load_steps),
        thresholds=ThresholdSet(response_time_avg_ms=4000, response_time_p95_ms=12000, error_rate_max_pct=8),
        request=_request(url, request),
        tags=("stress-test", "custom-pattern"),
    )


def standard_spike_test(
    name: str,
    url: str,
    spike_users: int,
    duration_seconds: float,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    """Spike pattern: 10% baseline, burst to spike_users, back to baseline."""
    baseline = max(1, -(-spike_users // 10))
    return _build(
        id=_id("spike_test"),
        name=name,
        scenario_type=ScenarioType.SPIKE,
        description=f"Spike test: {baseline} baseline -> {spike_users} users",
        load=LoadConfig(LoadPattern.SPIKE, spike_users, duration_seconds),
        thresholds=ThresholdSet(
            response_time_avg_ms=3000,
            response_time_p95_ms=8000,
            response_time_max_ms=20000,
            error_rate_max_pct=5,
            cpu_usage_max_pct=95,
            memory_usage_max_pct=90,
        ),
        request=_request(url, request),
        warmup_requests=min(baseline, 5),
        tags=("spike-test", "sudden-load"),
    )


def multiple_spike_test(
    name: str,
    url: str,
    baseline_users: int,
    spikes: Sequence[tuple[int, float, float]],
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    """Custom pattern: for each (users, duration, pause) a baseline hold, the spike, then recovery."""
    steps: list[LoadStep] = []
    for i, (users, duration, pause) in enumerate(spikes):
        steps.append(LoadStep(baseline_users, MULTI_SPIKE_BASELINE_SEC, f"Baseline before spike {i + 1}"))
        steps.append(LoadStep(users, duration, f"Spike {i + 1}: {users} users"))
        steps.append(LoadStep(baseline_users, pause, f"Recovery after spike {i + 1}"))
    max_users = max([baseline_users, *(s.virtual_users for s in steps)])
    total = sum(s.duration_seconds for s in steps)
    return _build(
        id=_id("multi_spike_test"),
        name=name,
        scenario_type=ScenarioType.SPIKE,
        description=f"Multiple spike test with {len(spikes)} spikes",
        load=LoadConfig(LoadPattern.CUSTOM, max_users, total, custom_steps=tuple(steps)),
        thresholds=ThresholdSet(response_time_avg_ms=3500, response_time_p95_ms=10000, error_rate_max_pct=7),
        request=_request(url, request),
        tags=("spike-test", "multiple-spikes"),
    )


def data_volume_test(
    name: str,
    url: str,
    virtual_users: int,
    duration_seconds: float,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    return _build(
        id=_id("volume_test"),
        name=name,
        scenario_type=ScenarioType.VOLUME,
        description=f"Data volume test with {virtual_users} users for {duration_seconds:g}s",
        load=LoadConfig(LoadPattern.CONSTANT, virtual_users, duration_seconds, think_time_ms=500),
        thresholds=ThresholdSet(
            response_time_avg_ms=4000, response_time_p95_ms=12000, error_rate_max_pct=3, memory_usage_max_pct=80,
        ),
        request=_request(url, request),
        tags=("volume-test", "data-processing"),
    )


def standard_endurance_test(
    name: str,
    url: str,
    virtual_users: int,
    duration_hours: float,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    return _build(
        id=_id("endurance_test"),
        name=name,
        scenario_type=ScenarioType.ENDURANCE,
        description=f"Endurance test with {virtual_users} users for {duration_hours:g} hours",
        load=LoadConfig(LoadPattern.CONSTANT, virtual_users, duration_hours * 3600, think_time_ms=2000),
        thresholds=ThresholdSet(
            response_time_avg_ms=2500,
            response_time_p95_ms=7000,
            error_rate_max_pct=0.5,
            cpu_usage_max_pct=70,
            memory_usage_max_pct=75,
        ),
        request=_request(url, request),
        warmup_requests=20,
        cooldown_ms=60_000,
        tags=("endurance-test", "long-running", "memory-leak-detection"),
    )


def baseline_test(
    name: str,
    url: str,
    virtual_users: int = 1,
    duration_seconds: float = 300.0,
    request: RequestTemplate | None = None,
) -> ScenarioConfig:
    return _build(
        id=_id("baseline_test"),
        name=name,
        scenario_type=ScenarioType.BASELINE,
        description="Baseline test to establish performance metrics",
        load=LoadConfig(LoadPattern.CONSTANT, virtual_users, duration_seconds, think_time_ms=3000),
        thresholds=ThresholdSet(response_time_avg_ms=1000, response_time_p95_ms=2500, error_rate_max_pct=0.1),
        request=_request(url, request),
        warmup_requests=3,
        tags=("baseline-test", "performance-baseline"),
    )


def page_load_test(
    name: str,
    url: str,
    iterations: int = 3,
    core_web_vitals: bool = False,
    timeout_ms: float = 30_000.0,
) -> ScenarioConfig:
    """Single-user page load run; pair with browser.PageLoadExecutor."""
    scenario_type = ScenarioType.CORE_WEB_VITALS if core_web_vitals else ScenarioType.PAGE_LOAD
    thresholds = (
        ThresholdSet(response_time_avg_ms=3000, error_rate_max_pct=0)
        if core_web_vitals
        else ThresholdSet(response_time_avg_ms=5000, response_time_p95_ms=8000, error_rate_max_pct=0)
    )
    return _build(
        id=_id("web_vitals" if core_web_vitals else "page_load"),
        name=name,
        scenario_type=scenario_type,
        description=f"{scenario_type.value} test for {url}",
        # The duration bounds the run; the iteration cap normally ends it first
        load=LoadConfig(LoadPattern.CONSTANT, 1, max(60.0, iterations * timeout_ms / 1000.0), think_time_ms=0,
                        iterations=iterations),
        thresholds=thresholds,
        request=RequestTemplate(url=url, timeout_ms=timeout_ms),
        tags=("ui-performance", scenario_type.value),
    )


def ui_load_test(
    name: str,
    url: str,
    virtual_users: int,
    duration_seconds: float,
    think_time_ms: float = 2000.0,
) -> ScenarioConfig:
    return _build(
        id=_id("ui_load"),
        name=name,
        scenario_type=ScenarioType.UI_LOAD,
        description=f"UI load test with {virtual_users} browser users for {duration_seconds:g}s",
        load=LoadConfig(LoadPattern.CONSTANT, virtual_users, duration_seconds, think_time_ms=think_time_ms),
        thresholds=ThresholdSet(response_time_avg_ms=3000, response_time_p95_ms=6000, error_rate_max_pct=2),
        request=RequestTemplate(url=url),
        tags=("ui-load", "ui-performance"),
    )
