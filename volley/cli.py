"""CLI entry point for volley.

- Uses uvloop when installed for a faster event loop
- GC disabled during the run for consistent latency
- Live Rich dashboard unless --no-live (streaming status lines when stdout is not a TTY)
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Coroutine

_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from rich.console import Console

from . import __version__
from .config import load_scenarios, scenario_from_dict
from .dashboard import run_live_dashboard
from .exceptions import VolleyError
from .logging_config import get_logger
from .models import LoadPattern, ScenarioConfig, Severity, TestResult
from .orchestrator import TestRunOrchestrator, new_test_id
from .report import PerformanceReporter, report_filename
from .settings import Settings

logger = get_logger("cli")

# Defaults when running with --url instead of -f
DEFAULT_USERS = 10
DEFAULT_DURATION_SECONDS = 60.0
DEFAULT_THINK_TIME_MS = 1000.0
DEFAULT_OUTPUT_DIR = "./performance-reports"
DEFAULT_FORMAT = "html"

# CLI flag dest -> threshold field
THRESHOLD_ARGS = {
    "max_avg_ms": "response_time_avg_ms",
    "max_p95_ms": "response_time_p95_ms",
    "max_p99_ms": "response_time_p99_ms",
    "max_response_ms": "response_time_max_ms",
    "max_error_rate": "error_rate_max_pct",
    "min_throughput": "throughput_min_rps",
    "max_cpu": "cpu_usage_max_pct",
    "max_memory": "memory_usage_max_pct",
}


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run coroutine on uvloop when available; GC is disabled for the duration."""
    gc_was_enabled = gc.isenabled()
    gc.disable()
    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def _threshold_overrides(args: argparse.Namespace) -> dict[str, float]:
    return {field: getattr(args, dest) for dest, field in THRESHOLD_ARGS.items() if getattr(args, dest) is not None}


def _scenario_from_args(args: argparse.Namespace) -> ScenarioConfig:
    """Single scenario from --url and load flags (no scenario file)."""
    load: dict[str, Any] = {
        "pattern": args.pattern or LoadPattern.CONSTANT.value,
        "virtual_users": args.users if args.users is not None else DEFAULT_USERS,
        "duration_seconds": args.duration if args.duration is not None else DEFAULT_DURATION_SECONDS,
        "think_time_ms": args.think_time_ms if args.think_time_ms is not None else DEFAULT_THINK_TIME_MS,
        "iterations": args.iterations or 0,
    }
    if args.ramp_up is not None:
        load["ramp_up_seconds"] = args.ramp_up
    if args.ramp_down is not None:
        load["ramp_down_seconds"] = args.ramp_down
    return scenario_from_dict(
        {
            "name": args.name or args.url,
            "type": args.type or "load",
            "load": load,
            "thresholds": _threshold_overrides(args),
            "request": {"url": args.url, "method": args.method},
            "warmup_requests": args.warmup or 0,
        }
    )


def _apply_overrides(scenario: ScenarioConfig, args: argparse.Namespace) -> ScenarioConfig:
    """Apply load and threshold flags on top of a scenario loaded from file."""
    load_changes: dict[str, Any] = {}
    if args.users is not None:
        load_changes["virtual_users"] = args.users
    if args.duration is not None:
        load_changes["duration_seconds"] = args.duration
    if args.pattern is not None:
        load_changes["pattern"] = LoadPattern(args.pattern)
    if args.ramp_up is not None:
        load_changes["ramp_up_seconds"] = args.ramp_up
    if args.ramp_down is not None:
        load_changes["ramp_down_seconds"] = args.ramp_down
    if args.think_time_ms is not None:
        load_changes["think_time_ms"] = args.think_time_ms
    if args.iterations is not None:
        load_changes["iterations"] = args.iterations
    thresholds = _threshold_overrides(args)
    if not load_changes and not thresholds:
        return scenario
    return replace(
        scenario,
        load=replace(scenario.load, **load_changes),
        thresholds=replace(scenario.thresholds, **thresholds),
    )


def _build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_yaml(args.settings) if args.settings else Settings()
    overrides: dict[str, Any] = {
        "REPORT_PATH": args.output,
        "REPORT_FORMATS": ",".join(args.formats or [DEFAULT_FORMAT]),
    }
    if args.metrics_interval is not None:
        overrides["METRICS_INTERVAL_MS"] = args.metrics_interval
    if args.system_monitoring:
        overrides["SYSTEM_MONITORING"] = True
    return settings.with_values(**overrides)


def _print_result(console: Console, result: TestResult, reporter: PerformanceReporter) -> None:
    s = result.summary
    style = "green" if result.passed else "red"
    console.print(
        f"[{style}]{result.scenario.name}: {result.status.value}[/{style}] "
        f"requests={s.total_requests} rps={s.throughput_rps:.1f} avg={s.average_response_time_ms:.1f}ms "
        f"p95={s.p95_response_time_ms:.1f}ms errors={s.error_rate_pct:.2f}% violations={len(result.violations)}"
    )
    for fmt in reporter.formats:
        console.print(f"[dim]{fmt.value.upper()} report:[/dim] {reporter.output_dir / report_filename(result, fmt)}")


async def _run_all(
    orchestrator: TestRunOrchestrator,
    scenarios: list[ScenarioConfig],
    live: bool,
    console: Console,
) -> list[TestResult]:
    """Run scenarios in order; each with the live dashboard alongside when enabled."""
    results: list[TestResult] = []
    pause = orchestrator.settings.scenario_pause_seconds
    try:
        for i, scenario in enumerate(scenarios):
            if i > 0 and pause > 0:
                await asyncio.sleep(pause)
            test_id = new_test_id()
            task = asyncio.create_task(orchestrator.run_scenario(scenario, test_id))
            if live:
                await run_live_dashboard(orchestrator, test_id, scenario, task)
            result = await task
            results.append(result)
            _print_result(console, result, orchestrator.reporter)
    finally:
        await orchestrator.shutdown()
    return results


def _has_critical(results: list[TestResult]) -> bool:
    return any(v.severity is Severity.CRITICAL for r in results for v in r.violations)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volley",
        description="Performance test orchestrator: load patterns, live metrics, thresholds and reports.",
    )
    parser.add_argument("-f", "--file", dest="scenario_file", help="Path to YAML scenario file")
    parser.add_argument("-u", "--url", help="Target URL for a single scenario built from flags (no -f)")
    parser.add_argument("--name", help="Scenario name with --url (default: the URL)")
    parser.add_argument("--type", default=None, help="Scenario type with --url (default: load)")
    parser.add_argument("--method", default="GET", help="HTTP method with --url (default: GET)")
    parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Report output directory (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--format",
        action="append",
        dest="formats",
        choices=["html", "json", "csv", "junit", "xml"],
        help="Report format (repeatable; default: html)",
    )
    parser.add_argument("--settings", metavar="PATH", help="YAML settings file (METRICS_INTERVAL_MS, ...)")
    parser.add_argument("--no-live", action="store_true", help="Disable live Rich dashboard (headless mode)")
    parser.add_argument(
        "--fail-on-critical",
        action="store_true",
        help="Exit 1 when any critical threshold violation was recorded",
    )
    parser.add_argument("--system-monitoring", action="store_true", help="Sample host CPU and memory with every metric")
    parser.add_argument("--metrics-interval", type=float, default=None, metavar="MS", help="Metrics sampling interval (ms)")
    # Load overrides (also applied on top of -f scenarios)
    parser.add_argument("--users", type=int, default=None, help="Number of virtual users")
    parser.add_argument("--duration", type=float, default=None, metavar="SEC", help="Test duration in seconds")
    parser.add_argument("--pattern", choices=[p.value for p in LoadPattern], default=None, help="Load pattern")
    parser.add_argument("--ramp-up", type=float, default=None, metavar="SEC", dest="ramp_up", help="Ramp-up time in seconds")
    parser.add_argument("--ramp-down", type=float, default=None, metavar="SEC", dest="ramp_down", help="Ramp-down time in seconds")
    parser.add_argument("--think-time", type=float, default=None, metavar="MS", dest="think_time_ms", help="Think time between requests (ms)")
    parser.add_argument("--iterations", type=int, default=None, help="Requests per user (0 = run for duration)")
    parser.add_argument("--warmup", type=int, default=None, metavar="N", help="Warmup requests with --url")
    # Threshold overrides
    parser.add_argument("--max-avg-ms", type=float, default=None, dest="max_avg_ms", help="Max average response time (ms)")
    parser.add_argument("--max-p95-ms", type=float, default=None, dest="max_p95_ms", help="Max P95 response time (ms)")
    parser.add_argument("--max-p99-ms", type=float, default=None, dest="max_p99_ms", help="Max P99 response time (ms)")
    parser.add_argument("--max-response-ms", type=float, default=None, dest="max_response_ms", help="Max response time (ms)")
    parser.add_argument("--max-error-rate", type=float, default=None, metavar="PCT", dest="max_error_rate", help="Max error rate (%%)")
    parser.add_argument("--min-throughput", type=float, default=None, metavar="RPS", dest="min_throughput", help="Min throughput (req/s)")
    parser.add_argument("--max-cpu", type=float, default=None, metavar="PCT", dest="max_cpu", help="Max host CPU usage (%%)")
    parser.add_argument("--max-memory", type=float, default=None, metavar="PCT", dest="max_memory", help="Max host memory usage (%%)")
    parser.add_argument("-v", "--version", action="version", version=f"volley {__version__}")
    return parser


def main() -> int:
    args = build_parser().parse_args()

    def handle_error(e: BaseException) -> int:
        if isinstance(e, VolleyError):
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        if isinstance(e, (FileNotFoundError, ValueError)):
            print(f"Error: {e}", file=sys.stderr)
            return 1
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return 1

    if not args.scenario_file and not args.url:
        print("Error: -f/--file or -u/--url is required", file=sys.stderr)
        return 1

    try:
        if args.scenario_file:
            scenarios = [_apply_overrides(s, args) for s in load_scenarios(Path(args.scenario_file))]
        else:
            scenarios = [_scenario_from_args(args)]
        settings = _build_settings(args)
        orchestrator = TestRunOrchestrator(settings=settings)
        console = Console()
        results = _run_async(_run_all(orchestrator, scenarios, not args.no_live, console))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        return handle_error(e)

    if args.fail_on_critical and _has_critical(results):
        print("Error: critical threshold violations recorded", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
