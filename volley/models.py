"""Data models for the volley load orchestrator.

Scenario descriptions are frozen dataclasses, created once by the caller and never
mutated during a run. Runtime objects on the request path (VirtualUser, RequestOutcome)
use __slots__ to keep per-user overhead small.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ScenarioType(str, Enum):
    """Test category. UI variants drive a browser page instead of raw HTTP."""

    LOAD = "load"
    STRESS = "stress"
    SPIKE = "spike"
    VOLUME = "volume"
    ENDURANCE = "endurance"
    BASELINE = "baseline"
    UI_LOAD = "ui-load"
    UI_STRESS = "ui-stress"
    CORE_WEB_VITALS = "core-web-vitals"
    PAGE_LOAD = "page-load"

    @property
    def is_ui(self) -> bool:
        return self in (ScenarioType.UI_LOAD, ScenarioType.UI_STRESS, ScenarioType.CORE_WEB_VITALS, ScenarioType.PAGE_LOAD)


class LoadPattern(str, Enum):
    """Time shape of the virtual-user population."""

    CONSTANT = "constant"
    RAMP_UP = "ramp-up"
    RAMP_DOWN = "ramp-down"
    STEP = "step"
    SPIKE = "spike"
    CUSTOM = "custom"


class VirtualUserStatus(str, Enum):
    ACTIVE = "active"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.STOPPED, ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ReportFormat(str, Enum):
    HTML = "html"
    JSON = "json"
    CSV = "csv"
    JUNIT = "junit"

    @property
    def extension(self) -> str:
        return "xml" if self is ReportFormat.JUNIT else self.value


# --- Scenario configuration (immutable) ---


@dataclass(frozen=True, slots=True)
class RequestTemplate:
    """One HTTP call issued per virtual-user iteration.

    body: str is sent as-is, dict/list is sent as JSON, None sends no body.
    expected_statuses: empty means any 2xx counts as success.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_ms: float = 30_000.0
    follow_redirects: bool = True
    expected_statuses: tuple[int, ...] = ()

    def accepts(self, status_code: int) -> bool:
        if self.expected_statuses:
            return status_code in self.expected_statuses
        return 200 <= status_code < 300


@dataclass(frozen=True, slots=True)
class LoadStep:
    """One entry of a custom pattern: hold `virtual_users` for `duration_seconds`."""

    virtual_users: int
    duration_seconds: float
    description: str = ""


@dataclass(frozen=True, slots=True)
class LoadConfig:
    pattern: LoadPattern
    virtual_users: int
    duration_seconds: float
    ramp_up_seconds: float | None = None
    ramp_down_seconds: float | None = None
    think_time_ms: float = 1000.0
    iterations: int = 0  # 0 = run for duration, >0 = per-user iteration cap
    custom_steps: tuple[LoadStep, ...] = ()


@dataclass(frozen=True, slots=True)
class ThresholdSet:
    """Optional ceilings (and the throughput floor). None disables a check."""

    response_time_avg_ms: float | None = None
    response_time_p95_ms: float | None = None
    response_time_p99_ms: float | None = None
    response_time_max_ms: float | None = None
    error_rate_max_pct: float | None = None
    throughput_min_rps: float | None = None
    cpu_usage_max_pct: float | None = None
    memory_usage_max_pct: float | None = None

    @property
    def needs_system_metrics(self) -> bool:
        return self.cpu_usage_max_pct is not None or self.memory_usage_max_pct is not None


@dataclass(frozen=True, slots=True)
class ScenarioConfig:
    id: str
    name: str
    load: LoadConfig
    scenario_type: ScenarioType = ScenarioType.LOAD
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)
    request: RequestTemplate | None = None
    warmup_requests: int = 0
    cooldown_ms: float = 0.0
    description: str = ""
    tags: tuple[str, ...] = ()


# --- Runtime ---


class RequestOutcome:
    """Successful response as seen by a virtual user."""

    __slots__ = ("status_code", "latency_ms", "size_bytes")

    def __init__(self, status_code: int, latency_ms: float, size_bytes: int = 0) -> None:
        self.status_code = status_code
        self.latency_ms = latency_ms
        self.size_bytes = size_bytes

    def __repr__(self) -> str:
        return f"RequestOutcome(status={self.status_code}, latency_ms={self.latency_ms:.2f}, size={self.size_bytes})"


_TERMINAL_USER_STATES = (VirtualUserStatus.COMPLETED, VirtualUserStatus.FAILED)


class VirtualUser:
    """Simulated client. Status only moves forward: active -> stopping -> completed, or -> failed.

    Owned by the LoadPatternEngine that spawned it; counters are written by its own loop only.
    """

    __slots__ = (
        "id", "index", "start_time", "end_time", "request_count", "error_count",
        "total_response_time_ms", "average_response_time_ms", "status",
    )

    def __init__(self, user_id: str, index: int = 0) -> None:
        self.id = user_id
        self.index = index
        self.start_time = time.time()
        self.end_time: float | None = None
        self.request_count = 0
        self.error_count = 0
        self.total_response_time_ms = 0.0
        self.average_response_time_ms = 0.0
        self.status = VirtualUserStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status is VirtualUserStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_USER_STATES

    def record_success(self, latency_ms: float) -> None:
        self.total_response_time_ms += latency_ms

    def record_failure(self) -> None:
        self.error_count += 1

    def request_stop(self) -> bool:
        """Flip active -> stopping. Returns False when the user was not active."""
        if self.status is not VirtualUserStatus.ACTIVE:
            return False
        self.status = VirtualUserStatus.STOPPING
        return True

    def finish(self) -> None:
        if self.is_terminal:
            return
        successes = self.request_count - self.error_count
        self.average_response_time_ms = self.total_response_time_ms / successes if successes > 0 else 0.0
        self.end_time = time.time()
        self.status = VirtualUserStatus.COMPLETED

    def fail(self) -> None:
        if self.is_terminal:
            return
        self.end_time = time.time()
        self.status = VirtualUserStatus.FAILED

    def __repr__(self) -> str:
        return f"VirtualUser(id={self.id!r}, status={self.status.value}, requests={self.request_count})"


# --- Metrics samples (immutable) ---


@dataclass(frozen=True, slots=True)
class UserCounts:
    active: int = 0
    total: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class RequestCounts:
    sent: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0


@dataclass(frozen=True, slots=True)
class TimingStats:
    average_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class ThroughputStats:
    requests_per_second: float = 0.0
    bytes_per_second: float = 0.0


@dataclass(frozen=True, slots=True)
class ErrorSummary:
    count: int = 0
    rate_pct: float = 0.0
    by_type: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SystemMetrics:
    cpu_percent: float
    memory_percent: float
    memory_used_mb: float


@dataclass(frozen=True, slots=True)
class MetricsSample:
    timestamp: float  # epoch seconds
    elapsed_seconds: float
    virtual_users: UserCounts
    requests: RequestCounts
    timing: TimingStats
    throughput: ThroughputStats
    errors: ErrorSummary
    system: SystemMetrics | None = None


@dataclass(frozen=True, slots=True)
class ThresholdViolation:
    timestamp: float
    metric: str
    actual_value: float
    threshold_value: float
    severity: Severity
    description: str


# --- Results ---


@dataclass(frozen=True, slots=True)
class Summary:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_rate_pct: float = 0.0
    average_response_time_ms: float = 0.0
    min_response_time_ms: float = 0.0
    max_response_time_ms: float = 0.0
    p50_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    throughput_rps: float = 0.0
    bytes_received: int = 0
    peak_concurrent_users: int = 0
    average_concurrent_users: float = 0.0
    efficiency_pct: float = 0.0
    error_types: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Summary":
        """Rebuild from a JSON export. Unknown keys are ignored."""
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        if "error_types" in kwargs:
            kwargs["error_types"] = {str(k): int(v) for k, v in kwargs["error_types"].items()}
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class VirtualUserResult:
    id: str
    status: VirtualUserStatus
    start_time: float
    end_time: float | None
    request_count: int
    error_count: int
    average_response_time_ms: float

    @classmethod
    def from_user(cls, user: VirtualUser) -> "VirtualUserResult":
        return cls(
            id=user.id,
            status=user.status,
            start_time=user.start_time,
            end_time=user.end_time,
            request_count=user.request_count,
            error_count=user.error_count,
            average_response_time_ms=user.average_response_time_ms,
        )


@dataclass(frozen=True, slots=True)
class EnvironmentInfo:
    test_run_id: str
    hostname: str
    os: str
    platform: str
    arch: str
    python_version: str
    cpus: int
    total_memory_mb: int
    volley_version: str


@dataclass(frozen=True, slots=True)
class WebVitalsSummary:
    """Averaged page timings of a page-load run with a good/needs-improvement/poor rating per vital."""

    page_loads: int
    averages: dict[str, float] = field(default_factory=dict)
    ratings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TestResult:
    __test__ = False

    test_id: str
    scenario: ScenarioConfig
    status: ExecutionStatus
    start_time: float
    end_time: float
    duration_seconds: float
    summary: Summary
    samples: tuple[MetricsSample, ...]
    violations: tuple[ThresholdViolation, ...]
    virtual_users: tuple[VirtualUserResult, ...]
    environment: EnvironmentInfo
    error: str | None = None
    web_vitals: WebVitalsSummary | None = None

    @property
    def passed(self) -> bool:
        """No critical violation and the run was not failed."""
        if self.status is ExecutionStatus.FAILED:
            return False
        return not any(v.severity is Severity.CRITICAL for v in self.violations)
