"""Test run orchestrator: validate, warm up, run the pattern, sample, cool down, finalize.

TestRunOrchestrator is an explicitly constructed service object; settings, executor
factory, reporter and system monitor are injected. It keeps an in-memory table of
executions; finished runs stay queryable for RESULT_RETENTION_SECONDS.
"""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from pathlib import Path

from .browser import BrowserPage, PageLoadExecutor
from .config import validate_scenario
from .engine import HttpRequestExecutor, RequestExecutor, SimulatedExecutor
from .exceptions import VolleyRunnerError
from .execution import TestExecution
from .logging_config import get_logger
from .metrics import MetricsAggregator, compute_summary
from .models import (
    ExecutionStatus,
    LoadConfig,
    LoadPattern,
    MetricsSample,
    ReportFormat,
    ScenarioConfig,
    TestResult,
    ThresholdSet,
    ThresholdViolation,
    VirtualUserResult,
)
from .patterns import LoadPatternEngine, build_plan
from .report import PerformanceReporter, ReportSession, export_result
from .settings import Settings
from .system_monitor import SystemMonitor, environment_info
from .thresholds import evaluate_thresholds

logger = get_logger("orchestrator")

WARMUP_MAX_USERS = 5
WARMUP_MAX_SECONDS = 30.0
# Poll interval while waiting for users to reach a terminal status on stop
STOP_POLL_SEC = 0.1

ExecutorFactory = Callable[[ScenarioConfig], RequestExecutor]
PageFactory = Callable[[], Awaitable[BrowserPage]]
SampleListener = Callable[[str, MetricsSample], None]
ViolationListener = Callable[[str, ThresholdViolation], None]
StatusListener = Callable[[str, ExecutionStatus], None]


def default_executor_factory(scenario: ScenarioConfig, page_factory: PageFactory | None = None) -> RequestExecutor:
    """Page loads for UI scenario types when a browser page factory is given; otherwise HTTP
    when the scenario has a request template, simulated traffic without one.
    """
    if scenario.scenario_type.is_ui:
        if page_factory is not None:
            return PageLoadExecutor(page_factory)
        logger.warning("No browser page factory for %s scenario %s; timing HTTP requests instead",
                       scenario.scenario_type.value, scenario.name)
    if scenario.request is not None:
        return HttpRequestExecutor()
    return SimulatedExecutor()


def new_test_id() -> str:
    return f"perf_test_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class TestRunOrchestrator:
    """Runs scenarios and owns the table of live and recently finished executions."""

    __test__ = False

    def __init__(
        self,
        settings: Settings | None = None,
        executor_factory: ExecutorFactory | None = None,
        reporter: PerformanceReporter | None = None,
        system_monitor: SystemMonitor | None = None,
        page_factory: PageFactory | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._executor_factory = executor_factory or (lambda s: default_executor_factory(s, page_factory))
        self.reporter = reporter or PerformanceReporter(self.settings.report_path, self.settings.report_formats)
        self._system_monitor = system_monitor
        self._executions: dict[str, TestExecution] = {}
        self._engines: dict[str, LoadPatternEngine] = {}
        self._retention_handles: dict[str, asyncio.TimerHandle] = {}
        self._sample_listeners: list[SampleListener] = []
        self._violation_listeners: list[ViolationListener] = []
        self._status_listeners: list[StatusListener] = []

    # --- Events ---

    def on_sample(self, listener: SampleListener) -> None:
        self._sample_listeners.append(listener)

    def on_violation(self, listener: ViolationListener) -> None:
        self._violation_listeners.append(listener)

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _notify(self, listeners: Iterable[Callable], test_id: str, payload: object) -> None:
        for listener in listeners:
            try:
                listener(test_id, payload)
            except Exception:
                logger.exception("Listener %r failed for %s", listener, test_id)

    def _set_status(self, execution: TestExecution, status: ExecutionStatus) -> None:
        if execution.status is status:
            return
        if status.is_terminal:
            execution.finish(status)
        else:
            execution.status = status
        self._notify(self._status_listeners, execution.test_id, status)

    # --- Queries ---

    def get_execution(self, test_id: str) -> TestExecution | None:
        return self._executions.get(test_id)

    def running_tests(self) -> list[str]:
        return [tid for tid, e in self._executions.items() if not e.status.is_terminal]

    def get_real_time_metrics(self, test_id: str) -> MetricsSample | None:
        """Latest sample of a running test; None if unknown or not running."""
        execution = self._executions.get(test_id)
        if execution is None or execution.status is not ExecutionStatus.RUNNING:
            return None
        return execution.latest_sample

    def get_test_result(self, test_id: str) -> TestResult | None:
        execution = self._executions.get(test_id)
        return execution.result if execution is not None else None

    # --- Run ---

    async def run_scenario(self, scenario: ScenarioConfig, test_id: str | None = None) -> TestResult:
        """Full lifecycle of one scenario. Raises VolleyConfigError before any load on bad config.

        Any other exception marks the execution failed, is logged and re-raised.
        """
        validate_scenario(scenario)
        build_plan(scenario.load)
        if scenario.warmup_requests > 0:
            build_plan(self._warmup_load(scenario))

        test_id = test_id or new_test_id()
        if test_id in self._executions and not self._executions[test_id].status.is_terminal:
            raise VolleyRunnerError("A test with this id is already running", context={"test_id": test_id})
        self._cancel_retention(test_id)
        execution = TestExecution(test_id, scenario)
        self._executions[test_id] = execution
        session = self.reporter.start_session(test_id, scenario.name)
        executor: RequestExecutor | None = None
        aggregator: MetricsAggregator | None = None
        logger.info(
            "Starting test %s: scenario=%s type=%s pattern=%s users=%d duration=%ss",
            test_id, scenario.name, scenario.scenario_type.value, scenario.load.pattern.value,
            scenario.load.virtual_users, scenario.load.duration_seconds,
            extra={"test_id": test_id},
        )
        self._notify(self._status_listeners, test_id, execution.status)
        try:
            executor = self._executor_factory(scenario)
            if scenario.warmup_requests > 0:
                await self._run_warmup(execution, executor)
            if not execution.is_stopping:
                engine = LoadPatternEngine(execution, executor)
                self._engines[test_id] = engine
                execution.mark_running()
                self._notify(self._status_listeners, test_id, execution.status)
                aggregator = MetricsAggregator(
                    execution,
                    self.settings.metrics_interval_seconds,
                    on_sample=lambda sample: self._handle_sample(execution, session, sample),
                    is_alive=lambda: self._executions.get(test_id) is execution,
                    system_sampler=self._system_sampler(scenario),
                )
                aggregator.start()
                try:
                    await engine.run()
                finally:
                    engine.request_stop()
                    await engine.join(self.settings.stop_timeout_seconds)
                if scenario.cooldown_ms > 0 and not execution.is_stopping:
                    logger.info("Cooldown %.0fms for %s", scenario.cooldown_ms, test_id)
                    await asyncio.sleep(scenario.cooldown_ms / 1000.0)
                await aggregator.stop()
                aggregator.sample_now()
            if execution.is_stopping:
                self._set_status(execution, ExecutionStatus.STOPPED)
            else:
                self._set_status(execution, ExecutionStatus.COMPLETED)
            result = self._build_result(execution, executor)
            execution.result = result
            session.finalize(result)
            return result
        except asyncio.CancelledError:
            logger.warning("Test %s cancelled", test_id, extra={"test_id": test_id})
            self._set_status(execution, ExecutionStatus.STOPPED)
            raise
        except Exception as e:
            execution.error = f"{type(e).__name__}: {e}"
            self._set_status(execution, ExecutionStatus.FAILED)
            execution.result = self._build_result(execution, executor)
            logger.exception("Test %s failed", test_id, extra={"test_id": test_id})
            raise
        finally:
            if aggregator is not None:
                await aggregator.stop()
            engine_left = self._engines.pop(test_id, None)
            if engine_left is not None and engine_left.live_task_count():
                engine_left.request_stop()
                await engine_left.join(0)
            if executor is not None:
                try:
                    await executor.aclose()
                except Exception:
                    logger.exception("Closing request executor failed for %s", test_id, extra={"test_id": test_id})
            self._schedule_removal(test_id, execution)

    async def run_scenarios(self, scenarios: Iterable[ScenarioConfig]) -> list[TestResult]:
        """Run scenarios one after another, pausing between them. A failed scenario is logged and skipped."""
        results: list[TestResult] = []
        pause = self.settings.scenario_pause_seconds
        for i, scenario in enumerate(scenarios):
            if i > 0 and pause > 0:
                await asyncio.sleep(pause)
            try:
                results.append(await self.run_scenario(scenario))
            except Exception as e:
                logger.error("Scenario %s failed: %s", scenario.name, e)
        return results

    def _warmup_load(self, scenario: ScenarioConfig) -> LoadConfig:
        users = min(scenario.load.virtual_users, WARMUP_MAX_USERS)
        return LoadConfig(
            pattern=LoadPattern.CONSTANT,
            virtual_users=users,
            duration_seconds=min(scenario.load.duration_seconds, WARMUP_MAX_SECONDS),
            think_time_ms=scenario.load.think_time_ms,
            iterations=max(1, math.ceil(scenario.warmup_requests / users)),
        )

    async def _run_warmup(self, execution: TestExecution, executor: RequestExecutor) -> None:
        """Scaled-down constant load in a separate, untracked execution."""
        scenario = execution.scenario
        warm_scenario = replace(
            scenario,
            id=f"{scenario.id}_warmup",
            load=self._warmup_load(scenario),
            thresholds=ThresholdSet(),
            warmup_requests=0,
            cooldown_ms=0.0,
        )
        warm = TestExecution(f"{execution.test_id}_warmup", warm_scenario)
        warm.mark_running()
        engine = LoadPatternEngine(warm, executor)
        self._engines[execution.test_id] = engine
        logger.info(
            "Warmup for %s: %d users, up to %d requests",
            execution.test_id, warm_scenario.load.virtual_users, scenario.warmup_requests,
        )
        try:
            await engine.run()
        finally:
            engine.request_stop()
            await engine.join(self.settings.stop_timeout_seconds)
            self._engines.pop(execution.test_id, None)
        snap = warm.accumulator.snapshot()
        logger.info("Warmup finished for %s: sent=%d failed=%d", execution.test_id, snap.sent, snap.failed)

    def _system_sampler(self, scenario: ScenarioConfig) -> Callable | None:
        if not (self.settings.system_monitoring or scenario.thresholds.needs_system_metrics):
            return None
        if self._system_monitor is None:
            self._system_monitor = SystemMonitor()
        return self._system_monitor.sample

    def _handle_sample(self, execution: TestExecution, session: ReportSession, sample: MetricsSample) -> None:
        test_id = execution.test_id
        for violation in evaluate_thresholds(sample, execution.scenario.thresholds):
            execution.violations.append(violation)
            session.record_violation(violation)
            self._notify(self._violation_listeners, test_id, violation)
        session.record_sample(sample)
        self._notify(self._sample_listeners, test_id, sample)

    def _build_result(self, execution: TestExecution, executor: RequestExecutor | None = None) -> TestResult:
        start = execution.start_time or execution.created_at
        end = execution.end_time or time.time()
        duration = max(0.0, end - start)
        summary = compute_summary(execution.accumulator.snapshot(), execution.samples, duration)
        return TestResult(
            test_id=execution.test_id,
            scenario=execution.scenario,
            status=execution.status,
            start_time=start,
            end_time=end,
            duration_seconds=duration,
            summary=summary,
            samples=tuple(execution.samples),
            violations=tuple(execution.violations),
            virtual_users=tuple(VirtualUserResult.from_user(u) for u in list(execution.virtual_users)),
            environment=environment_info(),
            error=execution.error,
            web_vitals=executor.web_vitals() if isinstance(executor, PageLoadExecutor) else None,
        )

    # --- Stop / retention / shutdown ---

    async def stop_test(self, test_id: str) -> ExecutionStatus:
        """Cooperative stop: stopping -> users flipped -> bounded wait -> stopped (even on timeout)."""
        execution = self._executions.get(test_id)
        if execution is None:
            raise VolleyRunnerError("Unknown test id", context={"test_id": test_id})
        if execution.status.is_terminal:
            logger.info("Test %s already %s", test_id, execution.status.value)
            return execution.status
        logger.info("Stopping test %s", test_id, extra={"test_id": test_id})
        self._set_status(execution, ExecutionStatus.STOPPING)
        engine = self._engines.get(test_id)
        if engine is not None:
            engine.request_stop()
        execution.stop_users()
        timeout = self.settings.stop_timeout_seconds
        if not await self._wait_for_users(execution, timeout):
            logger.warning(
                "Virtual users of %s did not stop within %.1fs; marking stopped",
                test_id, timeout, extra={"test_id": test_id},
            )
        if not execution.status.is_terminal:
            self._set_status(execution, ExecutionStatus.STOPPED)
        return execution.status

    async def _wait_for_users(self, execution: TestExecution, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while not execution.all_users_terminal():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(STOP_POLL_SEC, remaining))
        return True

    def _schedule_removal(self, test_id: str, execution: TestExecution) -> None:
        retention = self.settings.result_retention_seconds
        loop = asyncio.get_running_loop()

        def _remove() -> None:
            self._retention_handles.pop(test_id, None)
            if self._executions.get(test_id) is execution:
                del self._executions[test_id]
                logger.debug("Execution %s removed after retention", test_id)

        self._cancel_retention(test_id)
        self._retention_handles[test_id] = loop.call_later(retention, _remove)

    def _cancel_retention(self, test_id: str) -> None:
        handle = self._retention_handles.pop(test_id, None)
        if handle is not None:
            handle.cancel()

    async def export_results(
        self,
        test_id: str,
        fmt: ReportFormat | str,
        output_dir: str | Path | None = None,
    ) -> Path:
        """Write the finalized result of a retained test in one format; returns the file path."""
        result = self.get_test_result(test_id)
        if result is None:
            raise VolleyRunnerError("No finalized result for test", context={"test_id": test_id})
        directory = Path(output_dir) if output_dir is not None else self.reporter.output_dir
        return await asyncio.to_thread(export_result, result, fmt, directory)

    async def shutdown(self) -> None:
        """Stop live tests, cancel retention timers and clear the execution table."""
        for test_id in self.running_tests():
            try:
                await self.stop_test(test_id)
            except Exception:
                logger.exception("Stopping %s during shutdown failed", test_id)
        for handle in self._retention_handles.values():
            handle.cancel()
        self._retention_handles.clear()
        self._executions.clear()
