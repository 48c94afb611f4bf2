"""Custom exceptions for the volley load orchestrator.

All volley-specific exceptions inherit from VolleyError for unified error handling.
Each exception preserves the original cause chain for debugging.
"""

from __future__ import annotations

from typing import Any


class VolleyError(Exception):
    """Base exception for all volley errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "VolleyError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class VolleyConfigError(VolleyError):
    """Raised when a scenario or settings file is invalid.

    Always raised before any virtual user is started. Common causes:
    - Scenario file not found or invalid YAML
    - virtual_users < 1 or duration_seconds <= 0
    - Request template without a URL
    """


class VolleyPatternError(VolleyConfigError):
    """Raised when a load pattern cannot be realized (e.g. custom pattern without steps)."""


class VolleyRequestError(VolleyError):
    """One failed virtual-user iteration. Counted by the caller, never fatal to the run."""


class VolleyTimeoutError(VolleyRequestError):
    """Request did not complete within the template timeout."""


class VolleyNetworkError(VolleyRequestError):
    """Connection, protocol or transport failure."""


class VolleyStatusError(VolleyRequestError):
    """Response status outside the accepted range."""

    def __init__(self, message: str, status_code: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class VolleyRunnerError(VolleyError):
    """Raised for run-level failures and unknown test ids.

    Common causes:
    - stop_test / export_results for an id that is not (or no longer) retained
    - Export requested before the run produced a result
    """


class VolleyReportError(VolleyError):
    """Raised when a report cannot be rendered (e.g. unsupported format)."""
