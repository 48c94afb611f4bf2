"""Pytest fixtures for volley tests."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import pytest

from volley.exceptions import VolleyNetworkError
from volley.models import (
    LoadConfig,
    LoadPattern,
    RequestOutcome,
    RequestTemplate,
    ScenarioConfig,
    ThresholdSet,
)
from volley.settings import Settings


class FakeExecutor:
    """In-memory executor: fixed latency, optional failure every N calls."""

    def __init__(self, latency_ms: float = 5.0, sleep_seconds: float = 0.001, fail_every: int = 0) -> None:
        self.latency_ms = latency_ms
        self.sleep_seconds = sleep_seconds
        self.fail_every = fail_every
        self.calls = 0
        self.closed = False

    async def execute(self, template: RequestTemplate | None) -> RequestOutcome:
        self.calls += 1
        await asyncio.sleep(self.sleep_seconds)
        if self.fail_every and self.calls % self.fail_every == 0:
            raise VolleyNetworkError("Connection refused")
        return RequestOutcome(200, self.latency_ms, 10)

    async def aclose(self) -> None:
        self.closed = True


def make_scenario(
    pattern: LoadPattern = LoadPattern.CONSTANT,
    users: int = 5,
    duration: float = 0.5,
    think_time_ms: float = 0,
    **kwargs,
) -> ScenarioConfig:
    load_kwargs = {k: kwargs.pop(k) for k in ("ramp_up_seconds", "ramp_down_seconds", "iterations", "custom_steps") if k in kwargs}
    return ScenarioConfig(
        id=kwargs.pop("id", "scenario_1"),
        name=kwargs.pop("name", "Checkout"),
        load=LoadConfig(pattern, users, duration, think_time_ms=think_time_ms, **load_kwargs),
        thresholds=kwargs.pop("thresholds", ThresholdSet()),
        request=kwargs.pop("request", RequestTemplate(url="https://api.example.com/checkout")),
        **kwargs,
    )


@pytest.fixture
def fast_settings() -> Settings:
    """Short intervals so orchestrator tests finish in well under a second each."""
    return Settings(
        {
            "METRICS_INTERVAL_MS": 50,
            "STOP_TIMEOUT_SECONDS": 2,
            "SCENARIO_PAUSE_MS": 0,
            "RESULT_RETENTION_SECONDS": 60,
            "REPORT_FORMATS": "",
        },
        env={},
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def tmp_path_scenario() -> Path:
    """Write a minimal valid ramp-up scenario to a temp file."""
    content = """
name: Checkout load
type: load
load:
  pattern: ramp-up
  virtual_users: 20
  duration_seconds: 120
  ramp_up_seconds: 30
  think_time_ms: 500
thresholds:
  response_time_avg_ms: 300
  error_rate_max_pct: 1
request:
  method: POST
  url: https://api.example.com/checkout
  headers:
    Authorization: Bearer secret
  body: {"sku": "A-1"}
"""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(content)
        path = Path(f.name)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture
def tmp_path_multi_scenario(tmp_path: Path) -> Path:
    """Two scenarios in one file, the second a custom pattern defined by steps."""
    content = """
scenarios:
  - name: Baseline
    type: baseline
    load:
      virtual_users: 1
      duration_seconds: 10
  - name: Steps
    type: stress
    load:
      pattern: custom
      steps:
        - virtual_users: 2
          duration_seconds: 5
        - virtual_users: 6
          duration_seconds: 5
"""
    p = tmp_path / "scenarios.yaml"
    p.write_text(content, encoding="utf-8")
    return p
