"""Unit tests for the page-load executor and Core Web Vitals ratings."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from volley.browser import (
    GOOD,
    NEEDS_IMPROVEMENT,
    POOR,
    BrowserPage,
    CoreWebVitals,
    PageLoadExecutor,
)
from volley.exceptions import VolleyNetworkError, VolleyStatusError, VolleyTimeoutError
from volley.models import ExecutionStatus, RequestTemplate, ScenarioType
from volley.orchestrator import TestRunOrchestrator, default_executor_factory
from volley.report import PerformanceReporter, load_json_report
from volley.settings import Settings

from conftest import make_scenario


class FakePage:
    def __init__(self, status: int | None = 200, error: Exception | None = None, metrics: dict | None = None) -> None:
        self.status = status
        self.error = error
        self.metrics = metrics if metrics is not None else {"lcp": 1200, "cls": 0.3, "ttfb": 900, "load": 1500}
        self.closed = False

    async def navigate(self, url: str, timeout_ms: float) -> int | None:
        if self.error is not None:
            raise self.error
        return self.status

    async def measure(self) -> dict[str, float]:
        return self.metrics

    async def close(self) -> None:
        self.closed = True


def _executor(page: FakePage) -> PageLoadExecutor:
    async def factory() -> FakePage:
        return page

    return PageLoadExecutor(factory)


TEMPLATE = RequestTemplate(url="https://www.example.com/", timeout_ms=5000)


def test_fake_page_satisfies_protocol() -> None:
    assert isinstance(FakePage(), BrowserPage)


def test_vitals_ratings() -> None:
    """Each vital is rated good, needs-improvement or poor against its bounds."""
    vitals = CoreWebVitals.from_measurements("u", {"lcp": 1200, "fid": 200, "cls": 0.3, "ttfb": 900})
    assert vitals.ratings() == {"lcp": GOOD, "fid": NEEDS_IMPROVEMENT, "cls": POOR, "ttfb": NEEDS_IMPROVEMENT}


def test_execute_uses_load_time_as_latency() -> None:
    page = FakePage()
    executor = _executor(page)
    outcome = asyncio.run(executor.execute(TEMPLATE))
    assert outcome.status_code == 200
    assert outcome.latency_ms == 1500
    assert page.closed
    assert executor.vitals[0].lcp_ms == 1200


def test_execute_without_load_metric_uses_elapsed() -> None:
    executor = _executor(FakePage(status=None, metrics={}))
    outcome = asyncio.run(executor.execute(TEMPLATE))
    assert outcome.status_code == 200
    assert outcome.latency_ms >= 0


def test_execute_rejected_status() -> None:
    """Test that a rejected document status raises and still closes the page."""
    page = FakePage(status=500)
    with pytest.raises(VolleyStatusError):
        asyncio.run(_executor(page).execute(TEMPLATE))
    assert page.closed


@pytest.mark.parametrize(
    "error,expected",
    [
        (asyncio.TimeoutError(), VolleyTimeoutError),
        (RuntimeError("net::ERR_NAME_NOT_RESOLVED"), VolleyNetworkError),
    ],
)
def test_execute_maps_navigation_errors(error: Exception, expected: type) -> None:
    page = FakePage(error=error)
    with pytest.raises(expected):
        asyncio.run(_executor(page).execute(TEMPLATE))
    assert page.closed


def test_execute_without_template() -> None:
    with pytest.raises(VolleyNetworkError):
        asyncio.run(_executor(FakePage()).execute(None))


def test_vitals_summary_averages() -> None:
    executor = _executor(FakePage())
    asyncio.run(executor.execute(TEMPLATE))
    executor._page_factory = _executor(FakePage(metrics={"lcp": 1800, "load": 2500}))._page_factory
    asyncio.run(executor.execute(TEMPLATE))
    summary = executor.vitals_summary()
    assert summary["lcp_ms"] == 1500
    assert summary["load_ms"] == 2000
    assert summary["cls_score"] == 0.3
    assert "fid_ms" not in summary


def test_web_vitals_none_before_first_load() -> None:
    assert _executor(FakePage()).web_vitals() is None


def test_web_vitals_rates_averages() -> None:
    executor = _executor(FakePage())
    asyncio.run(executor.execute(TEMPLATE))
    vitals = executor.web_vitals()
    assert vitals.page_loads == 1
    assert vitals.averages["load_ms"] == 1500
    assert vitals.ratings == {"lcp": GOOD, "cls": POOR, "ttfb": NEEDS_IMPROVEMENT}


def test_default_factory_uses_pages_for_ui_scenarios() -> None:
    async def factory() -> FakePage:
        return FakePage()

    ui = make_scenario(scenario_type=ScenarioType.PAGE_LOAD)
    assert isinstance(default_executor_factory(ui, factory), PageLoadExecutor)
    assert not isinstance(default_executor_factory(make_scenario(), factory), PageLoadExecutor)
    assert not isinstance(default_executor_factory(ui), PageLoadExecutor)


def test_page_load_run_carries_web_vitals_into_result(fast_settings: Settings, tmp_path: Path) -> None:
    """A page-load scenario run through the orchestrator reports averaged vitals in the result and JSON."""
    async def factory() -> FakePage:
        return FakePage()

    orch = TestRunOrchestrator(
        settings=fast_settings,
        reporter=PerformanceReporter(tmp_path, ["json"]),
        page_factory=factory,
    )
    scenario = make_scenario(
        users=1,
        duration=0.2,
        think_time_ms=20,
        scenario_type=ScenarioType.CORE_WEB_VITALS,
        request=TEMPLATE,
    )
    result = asyncio.run(orch.run_scenario(scenario, test_id="t-vitals"))

    assert result.status is ExecutionStatus.COMPLETED
    assert result.web_vitals is not None
    assert result.web_vitals.page_loads == result.summary.successful_requests
    assert result.web_vitals.averages["lcp_ms"] == 1200
    assert result.web_vitals.ratings["cls"] == POOR
    [report] = list(tmp_path.glob("*.json"))
    assert load_json_report(report)["web_vitals"]["averages"]["ttfb_ms"] == 900
