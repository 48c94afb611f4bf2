"""Rich live dashboard over the latest metrics sample of a running test."""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .models import MetricsSample, ScenarioConfig
from .patterns import expected_active_users

if TYPE_CHECKING:
    from .orchestrator import TestRunOrchestrator

logger = get_logger("dashboard")

LIVE_REFRESH_PER_SEC = 2
# When stdout is not a TTY (CI, pipes), one status line per interval instead of a live panel
STREAMING_FALLBACK_INTERVAL_SEC = 1.0


def build_metrics_table(sample: MetricsSample | None, scenario: ScenarioConfig, elapsed_seconds: float) -> Table:
    """Build a single Rich table with current metrics."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    expected = expected_active_users(scenario.load, elapsed_seconds)
    if sample is None:
        table.add_row("Active users", f"- (planned {expected})")
        for label in ("Requests sent", "Throughput", "Avg response (ms)", "P95 (ms)", "P99 (ms)", "Error rate %"):
            table.add_row(label, "-")
        return table

    table.add_row("Active users", f"{sample.virtual_users.active} (planned {expected})")
    table.add_row("Requests sent", str(sample.requests.sent))
    table.add_row("Throughput", f"{sample.throughput.requests_per_second:.1f} req/s")
    table.add_row("Avg response (ms)", f"{sample.timing.average_ms:.1f}")
    table.add_row("P95 (ms)", f"{sample.timing.p95_ms:.1f}")
    table.add_row("P99 (ms)", f"{sample.timing.p99_ms:.1f}")
    table.add_row("Error rate %", f"{sample.errors.rate_pct:.2f}%")
    if sample.system is not None:
        table.add_row("CPU / Memory", f"{sample.system.cpu_percent:.0f}% / {sample.system.memory_percent:.0f}%")
    return table


def _format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def create_live_panel(
    sample: MetricsSample | None,
    scenario: ScenarioConfig,
    violation_count: int = 0,
) -> Panel:
    """Create Rich Panel for live display."""
    duration = scenario.load.duration_seconds
    elapsed = sample.elapsed_seconds if sample is not None else 0.0
    remaining = max(0.0, duration - elapsed)
    table = build_metrics_table(sample, scenario, elapsed)
    table.add_row("Violations", str(violation_count))
    table.add_row("Elapsed", f"{elapsed:.1f}s / {duration:g}s")
    title = Text()
    title.append("volley ", style="bold magenta")
    title.append(f"| {scenario.name} | {scenario.load.pattern.value}", style="dim")
    title.append(f" | ETA: {_format_remaining(remaining)}", style="bold yellow")
    return Panel(table, title=title, border_style="red" if violation_count else "blue")


def format_status_line(sample: MetricsSample | None, scenario: ScenarioConfig) -> str:
    if sample is None:
        return f"volley | {scenario.name} | waiting for first sample"
    return (
        f"volley | {sample.elapsed_seconds:.1f}s/{scenario.load.duration_seconds:g}s | "
        f"users={sample.virtual_users.active} requests={sample.requests.sent} "
        f"rps={sample.throughput.requests_per_second:.1f} avg={sample.timing.average_ms:.1f}ms "
        f"err%={sample.errors.rate_pct:.2f}"
    )


def _stdout_is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


async def run_live_dashboard(
    orchestrator: "TestRunOrchestrator",
    test_id: str,
    scenario: ScenarioConfig,
    until: asyncio.Future,
    refresh_interval: float = 0.5,
    console: Console | None = None,
) -> None:
    """Render the latest sample of test_id until the `until` future is done."""

    def _state() -> tuple[MetricsSample | None, int]:
        execution = orchestrator.get_execution(test_id)
        if execution is None:
            return None, 0
        return execution.latest_sample, len(execution.violations)

    try:
        if console is None and not _stdout_is_tty():
            while not until.done():
                sample, _ = _state()
                sys.stdout.write(format_status_line(sample, scenario) + "\n")
                sys.stdout.flush()
                await asyncio.wait({until}, timeout=STREAMING_FALLBACK_INTERVAL_SEC)
            return
        with Live(
            create_live_panel(None, scenario),
            console=console or Console(),
            refresh_per_second=LIVE_REFRESH_PER_SEC,
        ) as live:
            while not until.done():
                sample, violations = _state()
                live.update(create_live_panel(sample, scenario, violations))
                await asyncio.wait({until}, timeout=refresh_interval)
            sample, violations = _state()
            live.update(create_live_panel(sample, scenario, violations))
    except Exception as e:
        logger.debug("Live dashboard stopped: %s", e)
