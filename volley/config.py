"""YAML scenario loader and scenario validation.

A scenario file holds either one scenario mapping or `scenarios: [...]`:

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
      body: {"sku": "A-1"}
"""

from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Any

import yaml

from .exceptions import VolleyConfigError
from .logging_config import get_logger
from .models import (
    LoadConfig,
    LoadPattern,
    LoadStep,
    RequestTemplate,
    ScenarioConfig,
    ScenarioType,
    ThresholdSet,
)

logger = get_logger("config")

THRESHOLD_KEYS = (
    "response_time_avg_ms",
    "response_time_p95_ms",
    "response_time_p99_ms",
    "response_time_max_ms",
    "error_rate_max_pct",
    "throughput_min_rps",
    "cpu_usage_max_pct",
    "memory_usage_max_pct",
)
ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def validate_scenario(s: ScenarioConfig) -> None:
    """Validate bounds before any load is generated. Raises VolleyConfigError if invalid."""
    if not s.id or not str(s.id).strip():
        raise VolleyConfigError("scenario id is required")
    if not s.name or not s.name.strip():
        raise VolleyConfigError("scenario name is required", context={"id": s.id})
    load = s.load
    ctx = {"scenario": s.name}
    if load.virtual_users < 1:
        raise VolleyConfigError("virtual_users must be > 0", context=ctx)
    if load.duration_seconds <= 0:
        raise VolleyConfigError("duration_seconds must be > 0", context=ctx)
    if load.think_time_ms < 0:
        raise VolleyConfigError("think_time_ms must be >= 0", context=ctx)
    if load.iterations < 0:
        raise VolleyConfigError("iterations must be >= 0", context=ctx)
    if load.ramp_up_seconds is not None and load.ramp_up_seconds < 0:
        raise VolleyConfigError("ramp_up_seconds must be >= 0", context=ctx)
    if load.ramp_down_seconds is not None and load.ramp_down_seconds < 0:
        raise VolleyConfigError("ramp_down_seconds must be >= 0", context=ctx)
    if s.warmup_requests < 0:
        raise VolleyConfigError("warmup_requests must be >= 0", context=ctx)
    if s.cooldown_ms < 0:
        raise VolleyConfigError("cooldown_ms must be >= 0", context=ctx)
    if s.request is not None:
        if not s.request.url or not s.request.url.strip():
            raise VolleyConfigError("request url is required when a request template is given", context=ctx)
        if s.request.timeout_ms <= 0:
            raise VolleyConfigError("request timeout_ms must be > 0", context=ctx)
    for key in THRESHOLD_KEYS:
        value = getattr(s.thresholds, key)
        if value is not None and value < 0:
            raise VolleyConfigError(f"threshold {key} must be >= 0 when set", context=ctx)
    err = s.thresholds.error_rate_max_pct
    if err is not None and err > 100:
        raise VolleyConfigError("threshold error_rate_max_pct must be between 0 and 100", context=ctx)


def _optional_float(data: dict[str, Any], key: str) -> float | None:
    v = data.get(key)
    if v is None:
        return None
    return float(v)


def _load_from_dict(raw: dict[str, Any]) -> LoadConfig:
    pattern_str = str(raw.get("pattern") or "constant").strip().lower().replace("_", "-")
    try:
        pattern = LoadPattern(pattern_str)
    except ValueError:
        raise VolleyConfigError(
            f"Unknown load pattern: {pattern_str}",
            context={"supported": [p.value for p in LoadPattern]},
        ) from None
    steps = tuple(
        LoadStep(
            virtual_users=int(step["virtual_users"]),
            duration_seconds=float(step["duration_seconds"]),
            description=str(step.get("description") or f"Step {i + 1}"),
        )
        for i, step in enumerate(raw.get("steps") or [])
    )
    users = raw.get("virtual_users")
    if users is None and steps:
        users = max(step.virtual_users for step in steps)
    duration = raw.get("duration_seconds")
    if duration is None and steps:
        duration = sum(step.duration_seconds for step in steps)
    return LoadConfig(
        pattern=pattern,
        virtual_users=int(users if users is not None else 10),
        duration_seconds=float(duration if duration is not None else 60),
        ramp_up_seconds=_optional_float(raw, "ramp_up_seconds"),
        ramp_down_seconds=_optional_float(raw, "ramp_down_seconds"),
        think_time_ms=float(raw.get("think_time_ms", 1000)),
        iterations=int(raw.get("iterations", 0)),
        custom_steps=steps,
    )


def _request_from_dict(raw: dict[str, Any]) -> RequestTemplate:
    method = str(raw.get("method") or "GET").upper()
    if method not in ALLOWED_METHODS:
        raise VolleyConfigError(f"Unsupported HTTP method: {method}")
    headers = raw.get("headers") or {}
    if not isinstance(headers, dict):
        raise VolleyConfigError("request headers must be a mapping")
    expected = raw.get("expected_statuses") or ()
    return RequestTemplate(
        url=str(raw.get("url") or ""),
        method=method,
        headers={str(k): str(v) for k, v in headers.items()},
        body=raw.get("body"),
        timeout_ms=float(raw.get("timeout_ms", 30_000)),
        follow_redirects=bool(raw.get("follow_redirects", True)),
        expected_statuses=tuple(int(x) for x in expected),
    )


def scenario_from_dict(raw: dict[str, Any]) -> ScenarioConfig:
    """Build and validate a ScenarioConfig from a plain mapping (YAML or JSON shaped)."""
    if not isinstance(raw, dict):
        raise VolleyConfigError("Scenario must be a mapping", context={"actual_type": type(raw).__name__})
    name = str(raw.get("name") or "").strip()
    type_str = str(raw.get("type") or raw.get("scenario_type") or "load").strip().lower()
    try:
        scenario_type = ScenarioType(type_str)
    except ValueError:
        raise VolleyConfigError(
            f"Unknown scenario type: {type_str}",
            context={"supported": [t.value for t in ScenarioType]},
        ) from None
    load_raw = raw.get("load") or {}
    thresholds_raw = raw.get("thresholds") or {}
    request_raw = raw.get("request")
    if not isinstance(load_raw, dict) or not isinstance(thresholds_raw, dict):
        raise VolleyConfigError("load and thresholds must be mappings", context={"scenario": name})
    unknown = sorted(set(thresholds_raw) - set(THRESHOLD_KEYS))
    if unknown:
        raise VolleyConfigError(f"Unknown threshold keys: {', '.join(unknown)}", context={"scenario": name})
    try:
        scenario = ScenarioConfig(
            id=str(raw.get("id") or f"{_slug(name) or 'scenario'}_{uuid.uuid4().hex[:8]}"),
            name=name,
            scenario_type=scenario_type,
            load=_load_from_dict(load_raw),
            thresholds=ThresholdSet(**{k: _optional_float(thresholds_raw, k) for k in THRESHOLD_KEYS}),
            request=_request_from_dict(request_raw) if request_raw else None,
            warmup_requests=int(raw.get("warmup_requests", 0)),
            cooldown_ms=float(raw.get("cooldown_ms", 0)),
            description=str(raw.get("description") or ""),
            tags=tuple(str(t) for t in (raw.get("tags") or ())),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise VolleyConfigError(
            f"Invalid scenario value: {e}", context={"scenario": name}, original_error=e
        ) from e
    validate_scenario(scenario)
    return scenario


def _read_yaml(path: str | Path) -> Any:
    p = Path(path)
    if not p.exists():
        raise VolleyConfigError(f"Scenario file not found: {path}", context={"path": str(path)})
    try:
        return yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML scenario file")
        raise VolleyConfigError(
            f"Invalid YAML syntax in scenario file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    except OSError as e:
        raise VolleyConfigError(
            f"Cannot read scenario file: {e}", context={"path": str(path)}, original_error=e
        ) from e


def load_scenarios(path: str | Path) -> list[ScenarioConfig]:
    """Load every scenario in a YAML file (single mapping or `scenarios:` list)."""
    raw = _read_yaml(path)
    if isinstance(raw, dict) and "scenarios" in raw:
        items = raw["scenarios"]
        if not isinstance(items, list) or not items:
            raise VolleyConfigError("scenarios must be a non-empty list", context={"path": str(path)})
    elif isinstance(raw, dict):
        items = [raw]
    else:
        raise VolleyConfigError(
            "Scenario file must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    scenarios = []
    for item in items:
        try:
            scenarios.append(scenario_from_dict(item))
        except VolleyConfigError as e:
            raise e.with_context(path=str(path))
    logger.debug("Loaded %d scenario(s) from %s", len(scenarios), path)
    return scenarios


def load_scenario(path: str | Path) -> ScenarioConfig:
    """Load the first scenario of a YAML file."""
    return load_scenarios(path)[0]
