"""Named runtime settings with typed defaults.

Lookup order: explicit values (constructor / YAML file), then VOLLEY_<KEY> environment
variables, then DEFAULTS. Keys are case-insensitive.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .exceptions import VolleyConfigError
from .logging_config import get_logger

logger = get_logger("settings")

ENV_PREFIX = "VOLLEY_"

DEFAULTS: dict[str, Any] = {
    # Sampling period of the metrics aggregator
    "METRICS_INTERVAL_MS": 1000,
    # How long a finished run stays queryable
    "RESULT_RETENTION_SECONDS": 300,
    # Bounded wait for virtual users to quiesce on stop
    "STOP_TIMEOUT_SECONDS": 10,
    # Pause between scenarios in run_scenarios
    "SCENARIO_PAUSE_MS": 5000,
    # Attach psutil CPU/memory to every sample
    "SYSTEM_MONITORING": False,
    # Comma-separated: html,json,csv,junit ("" = no automatic reports)
    "REPORT_FORMATS": "",
    "REPORT_PATH": "./performance-reports",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "y"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", "n", ""})


class Settings:
    """Typed view over named configuration values."""

    __slots__ = ("_values", "_env")

    def __init__(
        self,
        values: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._values = {k.upper(): v for k, v in (values or {}).items()}
        self._env = os.environ if env is None else env

    @classmethod
    def from_yaml(cls, path: str | Path, env: Mapping[str, str] | None = None) -> "Settings":
        """Load settings from a flat YAML mapping (keys as in DEFAULTS)."""
        p = Path(path)
        if not p.exists():
            raise VolleyConfigError(f"Settings file not found: {path}", context={"path": str(path)})
        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise VolleyConfigError(
                f"Invalid YAML syntax in settings file: {e}",
                context={"path": str(path)},
                original_error=e,
            ) from e
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise VolleyConfigError(
                "Settings must be a YAML object/dictionary",
                context={"path": str(path), "actual_type": type(raw).__name__},
            )
        unknown = sorted(k for k in (str(k).upper() for k in raw) if k not in DEFAULTS)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", ", ".join(unknown))
        return cls(raw, env=env)

    def with_values(self, **overrides: Any) -> "Settings":
        """Copy with overrides taking precedence over the current explicit values."""
        merged = dict(self._values)
        merged.update({k.upper(): v for k, v in overrides.items()})
        return Settings(merged, env=self._env)

    def get(self, key: str, default: Any = None) -> Any:
        key = key.upper()
        if key in self._values:
            return self._values[key]
        env_value = self._env.get(ENV_PREFIX + key)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        return DEFAULTS.get(key)

    def get_bool(self, key: str, default: bool | None = None) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if value is None:
            return False
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise VolleyConfigError(f"Setting {key} is not a boolean", context={"value": value})

    def get_number(self, key: str, default: float | None = None) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise VolleyConfigError(
                f"Setting {key} is not a number", context={"value": value}, original_error=e
            ) from e

    def get_int(self, key: str, default: int | None = None) -> int:
        return int(self.get_number(key, default))

    # Convenience accessors used by the orchestrator and reporter

    @property
    def metrics_interval_seconds(self) -> float:
        return max(0.01, self.get_number("METRICS_INTERVAL_MS") / 1000.0)

    @property
    def result_retention_seconds(self) -> float:
        return max(0.0, self.get_number("RESULT_RETENTION_SECONDS"))

    @property
    def stop_timeout_seconds(self) -> float:
        return max(0.0, self.get_number("STOP_TIMEOUT_SECONDS"))

    @property
    def scenario_pause_seconds(self) -> float:
        return max(0.0, self.get_number("SCENARIO_PAUSE_MS") / 1000.0)

    @property
    def system_monitoring(self) -> bool:
        return self.get_bool("SYSTEM_MONITORING")

    @property
    def report_path(self) -> Path:
        return Path(str(self.get("REPORT_PATH")))

    @property
    def report_formats(self) -> list[str]:
        raw = self.get("REPORT_FORMATS")
        if isinstance(raw, (list, tuple)):
            items = [str(x) for x in raw]
        else:
            items = str(raw or "").split(",")
        return [s.strip().lower() for s in items if s.strip()]
