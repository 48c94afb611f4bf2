"""Page-load executor for UI scenario types (page-load, core-web-vitals, ui-load, ui-stress).

The browser itself is an external collaborator: callers supply a factory for objects
implementing BrowserPage (e.g. a thin wrapper over a Playwright page). Each iteration
opens a page, navigates, reads its timings and closes it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .exceptions import VolleyNetworkError, VolleyRequestError, VolleyStatusError, VolleyTimeoutError
from .logging_config import get_logger
from .models import RequestOutcome, RequestTemplate, WebVitalsSummary

logger = get_logger("browser")

NS_TO_MS = 1_000_000
GOOD = "good"
NEEDS_IMPROVEMENT = "needs-improvement"
POOR = "poor"


@runtime_checkable
class BrowserPage(Protocol):
    async def navigate(self, url: str, timeout_ms: float) -> int | None:
        """Load url; return the main document HTTP status (None if unknown)."""
        ...

    async def measure(self) -> dict[str, float]:
        """Timings of the last navigation: lcp, fid, cls, fcp, ttfb, load (ms except cls)."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class VitalThreshold:
    good: float
    needs_improvement: float

    def rate(self, value: float) -> str:
        if value <= self.good:
            return GOOD
        if value <= self.needs_improvement:
            return NEEDS_IMPROVEMENT
        return POOR


DEFAULT_VITAL_THRESHOLDS: dict[str, VitalThreshold] = {
    "lcp": VitalThreshold(2500, 4000),
    "fid": VitalThreshold(100, 300),
    "cls": VitalThreshold(0.1, 0.25),
    "fcp": VitalThreshold(1800, 3000),
    "ttfb": VitalThreshold(800, 1800),
}


@dataclass(frozen=True, slots=True)
class CoreWebVitals:
    url: str
    lcp_ms: float | None = None
    fid_ms: float | None = None
    cls_score: float | None = None
    fcp_ms: float | None = None
    ttfb_ms: float | None = None
    load_ms: float | None = None

    @classmethod
    def from_measurements(cls, url: str, m: dict[str, float]) -> "CoreWebVitals":
        return cls(
            url=url,
            lcp_ms=m.get("lcp"),
            fid_ms=m.get("fid"),
            cls_score=m.get("cls"),
            fcp_ms=m.get("fcp"),
            ttfb_ms=m.get("ttfb"),
            load_ms=m.get("load"),
        )

    def ratings(self, thresholds: dict[str, VitalThreshold] | None = None) -> dict[str, str]:
        thresholds = thresholds or DEFAULT_VITAL_THRESHOLDS
        values = {"lcp": self.lcp_ms, "fid": self.fid_ms, "cls": self.cls_score, "fcp": self.fcp_ms, "ttfb": self.ttfb_ms}
        return {name: thresholds[name].rate(v) for name, v in values.items() if v is not None and name in thresholds}


class PageLoadExecutor:
    """RequestExecutor over browser pages. Latency is the page load time.

    Measurements of every successful iteration are kept in `vitals`.
    """

    def __init__(self, page_factory: Callable[[], Awaitable[BrowserPage]]) -> None:
        self._page_factory = page_factory
        self.vitals: list[CoreWebVitals] = []

    async def execute(self, template: RequestTemplate | None) -> RequestOutcome:
        if template is None:
            raise VolleyNetworkError("Page-load scenarios need a request template with the page URL")
        page = await self._page_factory()
        try:
            start_ns = time.perf_counter_ns()
            try:
                status = await page.navigate(template.url, template.timeout_ms)
            except VolleyRequestError:
                raise
            except (TimeoutError, asyncio.TimeoutError) as e:
                raise VolleyTimeoutError(
                    f"Page load timed out after {template.timeout_ms:.0f}ms", original_error=e
                ) from e
            except Exception as e:  # noqa: BLE001
                raise VolleyNetworkError(f"Navigation failed: {type(e).__name__}: {e}", original_error=e) from e
            elapsed_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
            if status is not None and not template.accepts(status):
                raise VolleyStatusError(f"HTTP {status}", status_code=status)
            measurements = await page.measure()
        finally:
            try:
                await page.close()
            except Exception as e:  # noqa: BLE001
                logger.debug("Closing page failed: %s", e)
        vitals = CoreWebVitals.from_measurements(template.url, measurements)
        self.vitals.append(vitals)
        latency_ms = vitals.load_ms if vitals.load_ms is not None else elapsed_ms
        return RequestOutcome(status or 200, latency_ms, 0)

    def vitals_summary(self) -> dict[str, float]:
        """Mean of each collected vital over all successful page loads."""
        out: dict[str, float] = {}
        for name in ("lcp_ms", "fid_ms", "cls_score", "fcp_ms", "ttfb_ms", "load_ms"):
            values = [getattr(v, name) for v in self.vitals if getattr(v, name) is not None]
            if values:
                out[name] = sum(values) / len(values)
        return out

    def web_vitals(self) -> WebVitalsSummary | None:
        """Averages and their ratings, or None before the first successful page load."""
        if not self.vitals:
            return None
        averages = self.vitals_summary()
        mean = CoreWebVitals(url=self.vitals[-1].url, **averages)
        return WebVitalsSummary(page_loads=len(self.vitals), averages=averages, ratings=mean.ratings())

    async def aclose(self) -> None:
        return None
