"""
volley - In-process performance and load test orchestrator.

Virtual users driven by load patterns (constant, ramp-up, ramp-down, step, spike,
custom), live metrics sampling, threshold evaluation, HTML/JSON/CSV/JUnit reports.
"""

__version__ = "1.0.0"

from .exceptions import (  # noqa: E402
    VolleyConfigError,
    VolleyError,
    VolleyNetworkError,
    VolleyPatternError,
    VolleyReportError,
    VolleyRequestError,
    VolleyRunnerError,
    VolleyStatusError,
    VolleyTimeoutError,
)

__all__ = [
    "__version__",
    "VolleyConfigError",
    "VolleyError",
    "VolleyNetworkError",
    "VolleyPatternError",
    "VolleyReportError",
    "VolleyRequestError",
    "VolleyRunnerError",
    "VolleyStatusError",
    "VolleyTimeoutError",
]
