"""Unit tests for ready-made scenario builders."""

from __future__ import annotations

import pytest

from volley import presets
from volley.exceptions import VolleyConfigError
from volley.models import LoadPattern, RequestTemplate, ScenarioType
from volley.patterns import build_plan

URL = "https://api.example.com/orders"


def test_standard_load_test() -> None:
    s = presets.standard_load_test("Orders", URL, virtual_users=20, duration_seconds=300)
    assert s.scenario_type is ScenarioType.LOAD
    assert s.load.pattern is LoadPattern.CONSTANT
    assert s.load.think_time_ms == 1000
    assert s.thresholds.response_time_avg_ms == 2000
    assert s.thresholds.response_time_p95_ms == 5000
    assert s.thresholds.response_time_max_ms == 10000
    assert s.thresholds.error_rate_max_pct == 1
    assert s.thresholds.throughput_min_rps == 16
    assert s.warmup_requests == 10
    assert s.request.url == URL
    assert s.id.startswith("load_test_")


def test_standard_load_test_custom_request() -> None:
    request = RequestTemplate(url=URL, method="POST", body={"id": 1})
    s = presets.standard_load_test("Orders", URL, 5, 60, request=request)
    assert s.request is request
    assert s.warmup_requests == 5


def test_ramp_up_load_test_duration_is_ramp_plus_sustain() -> None:
    s = presets.ramp_up_load_test("Orders", URL, max_users=50, ramp_up_seconds=60, sustain_seconds=120)
    assert s.load.pattern is LoadPattern.RAMP_UP
    assert s.load.duration_seconds == 180
    assert s.load.ramp_up_seconds == 60
    assert s.thresholds.response_time_avg_ms == 2500


def test_standard_stress_test_steps() -> None:
    """Stress preset: increment is a tenth of max users, one step per increment."""
    s = presets.standard_stress_test("Orders", URL, start_users=10, max_users=100, step_duration_seconds=30)
    # (100 - 10) / 10 per step = 9 steps
    assert s.load.duration_seconds == 270
    assert s.load.pattern is LoadPattern.STEP
    assert s.thresholds.cpu_usage_max_pct == 90
    assert s.thresholds.memory_usage_max_pct == 85


def test_custom_step_stress_test() -> None:
    s = presets.custom_step_stress_test("Orders", URL, [(5, 10), (20, 30), (10, 20)])
    assert s.load.pattern is LoadPattern.CUSTOM
    assert s.load.virtual_users == 20
    assert s.load.duration_seconds == 60
    assert s.load.custom_steps[1].description == "Step 2: 20 users"
    assert build_plan(s.load).peak == 20


def test_custom_step_stress_test_without_steps_rejected() -> None:
    with pytest.raises(VolleyConfigError):
        presets.custom_step_stress_test("Orders", URL, [])


def test_standard_spike_test() -> None:
    s = presets.standard_spike_test("Orders", URL, spike_users=100, duration_seconds=120)
    assert s.load.pattern is LoadPattern.SPIKE
    assert s.load.virtual_users == 100
    assert s.warmup_requests == 5
    assert s.thresholds.cpu_usage_max_pct == 95


def test_multiple_spike_test_layout() -> None:
    """Each spike is preceded by a baseline period and followed by recovery."""
    s = presets.multiple_spike_test("Orders", URL, baseline_users=5, spikes=[(50, 10, 20), (80, 5, 15)])
    steps = s.load.custom_steps
    assert [st.virtual_users for st in steps] == [5, 50, 5, 5, 80, 5]
    assert s.load.duration_seconds == 30 + 10 + 20 + 30 + 5 + 15
    assert s.load.virtual_users == 80
    assert s.thresholds.error_rate_max_pct == 7


def test_data_volume_test() -> None:
    s = presets.data_volume_test("Orders", URL, 10, 600)
    assert s.scenario_type is ScenarioType.VOLUME
    assert s.load.think_time_ms == 500
    assert s.thresholds.memory_usage_max_pct == 80


def test_standard_endurance_test() -> None:
    s = presets.standard_endurance_test("Orders", URL, virtual_users=10, duration_hours=2)
    assert s.load.duration_seconds == 7200
    assert s.cooldown_ms == 60000
    assert s.warmup_requests == 20
    assert s.thresholds.error_rate_max_pct == 0.5


def test_baseline_test_defaults() -> None:
    s = presets.baseline_test("Orders", URL)
    assert s.load.virtual_users == 1
    assert s.load.duration_seconds == 300
    assert s.load.think_time_ms == 3000
    assert s.thresholds.error_rate_max_pct == 0.1


def test_page_load_tests() -> None:
    page = presets.page_load_test("Home", "https://www.example.com/")
    assert page.scenario_type is ScenarioType.PAGE_LOAD
    assert page.load.iterations == 3
    assert page.thresholds.response_time_p95_ms == 8000
    vitals = presets.page_load_test("Home", "https://www.example.com/", iterations=5, core_web_vitals=True)
    assert vitals.scenario_type is ScenarioType.CORE_WEB_VITALS
    assert vitals.load.iterations == 5
    assert vitals.thresholds.error_rate_max_pct == 0


def test_ui_load_test() -> None:
    s = presets.ui_load_test("Home", "https://www.example.com/", virtual_users=5, duration_seconds=60)
    assert s.scenario_type is ScenarioType.UI_LOAD
    assert s.load.think_time_ms == 2000


def test_presets_validate() -> None:
    """Every preset builds a scenario that passes validation."""
    with pytest.raises(VolleyConfigError):
        presets.standard_load_test("Orders", URL, virtual_users=0, duration_seconds=60)
