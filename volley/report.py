"""Report rendering for finalized test results: HTML, JSON, CSV and JUnit XML.

Files are named performance-report-<scenario>-<timestamp>-<run>.<ext>, where <run> is the
tail of the test id. URLs are written without query string or fragment and sensitive
request headers are redacted.
"""

from __future__ import annotations

import csv
import re
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence
from urllib.parse import urlparse, urlunparse

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape

from . import __version__ as volley_version
from .exceptions import VolleyReportError
from .logging_config import get_logger
from .models import (
    ReportFormat,
    ScenarioConfig,
    Severity,
    Summary,
    TestResult,
    ThresholdViolation,
)

if TYPE_CHECKING:
    from .models import MetricsSample

logger = get_logger("report")

REPORT_FILE_PREFIX = "performance-report"
REPORT_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"
CSV_HEADER = ("Timestamp", "Active Users", "Requests", "Response Time", "Throughput", "Error Rate")

# Headers that must be redacted in reports (case-insensitive)
SENSITIVE_HEADER_NAMES = frozenset(
    k.lower()
    for k in (
        "Authorization",
        "Cookie",
        "Set-Cookie",
        "X-Api-Key",
        "X-Auth-Token",
        "Api-Key",
        "Proxy-Authorization",
    )
)
REDACTED_PLACEHOLDER = "[REDACTED]"
# Web vital display order: (average key, rating key, label, unit)
VITAL_ROWS = (
    ("lcp_ms", "lcp", "Largest Contentful Paint", "ms"),
    ("fcp_ms", "fcp", "First Contentful Paint", "ms"),
    ("fid_ms", "fid", "First Input Delay", "ms"),
    ("cls_score", "cls", "Cumulative Layout Shift", ""),
    ("ttfb_ms", "ttfb", "Time to First Byte", "ms"),
    ("load_ms", None, "Page load", "ms"),
)
# Characters of the test id kept in report file names
FILENAME_ID_LENGTH = 8
# Chart geometry for the inline SVG sparklines
CHART_WIDTH = 640
CHART_HEIGHT = 120


def mask_url(url: str, max_path_length: int = 120) -> str:
    """Remove query string and fragment from URL to avoid leaking tokens in reports."""
    if not url or not url.strip():
        return url
    try:
        parsed = urlparse(url)
        clean = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "", "", "", ""))
    except ValueError:
        clean = url
    if len(clean) > max_path_length:
        clean = clean[: max_path_length - 3] + "..."
    return clean


def mask_headers(headers: dict[str, str]) -> dict[str, str]:
    return {k: (REDACTED_PLACEHOLDER if k.lower() in SENSITIVE_HEADER_NAMES else v) for k, v in headers.items()}


def _slug(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", name).strip("-").lower()
    return slug or "scenario"


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def report_filename(result: TestResult, fmt: ReportFormat) -> str:
    """Name ends with the tail of the test id so runs started in the same second do not collide."""
    stamp = datetime.fromtimestamp(result.start_time, tz=timezone.utc).strftime(REPORT_TIMESTAMP_FMT)
    run = _slug(result.test_id)[-FILENAME_ID_LENGTH:].strip("-") or "run"
    return f"{REPORT_FILE_PREFIX}-{_slug(result.scenario.name)}-{stamp}-{run}.{fmt.extension}"


def scenario_to_dict(scenario: ScenarioConfig) -> dict[str, Any]:
    data = asdict(scenario)
    request = data.get("request")
    if request is not None:
        request["url"] = mask_url(request["url"])
        request["headers"] = mask_headers(request["headers"])
        request["has_body"] = request.pop("body") is not None
    return data


def result_to_dict(result: TestResult) -> dict[str, Any]:
    """Machine-readable form of a result. Enums serialize as their values."""
    return {
        "test_id": result.test_id,
        "status": result.status,
        "passed": result.passed,
        "start_time": _iso(result.start_time),
        "end_time": _iso(result.end_time),
        "start_timestamp": result.start_time,
        "end_timestamp": result.end_time,
        "duration_seconds": result.duration_seconds,
        "scenario": scenario_to_dict(result.scenario),
        "summary": asdict(result.summary),
        "violations": [asdict(v) for v in result.violations],
        "samples": [asdict(s) for s in result.samples],
        "virtual_users": [asdict(u) for u in result.virtual_users],
        "environment": asdict(result.environment),
        "error": result.error,
        "web_vitals": asdict(result.web_vitals) if result.web_vitals is not None else None,
    }


def generate_json_report(output_path: str | Path, result: TestResult) -> Path:
    """Write the full result (summary, samples, violations, users, environment) as JSON."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(orjson.dumps(result_to_dict(result), option=orjson.OPT_INDENT_2))
    return out


def load_json_report(path: str | Path) -> dict[str, Any]:
    """Parse a JSON report written by generate_json_report."""
    p = Path(path)
    try:
        data = orjson.loads(p.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise VolleyReportError(f"Cannot read JSON report: {e}", context={"path": str(p)}, original_error=e) from e
    if not isinstance(data, dict) or "summary" not in data:
        raise VolleyReportError("Not a volley JSON report", context={"path": str(p)})
    return data


def load_summary(path: str | Path) -> Summary:
    return Summary.from_dict(load_json_report(path)["summary"])


def generate_csv_report(output_path: str | Path, result: TestResult) -> Path:
    """One row per metrics sample."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for s in result.samples:
            writer.writerow((
                _iso(s.timestamp),
                s.virtual_users.active,
                s.requests.sent,
                f"{s.timing.average_ms:.2f}",
                f"{s.throughput.requests_per_second:.2f}",
                f"{s.errors.rate_pct:.2f}",
            ))
    return out


def _group_violations(violations: Sequence[ThresholdViolation]) -> dict[str, list[ThresholdViolation]]:
    grouped: dict[str, list[ThresholdViolation]] = {}
    for v in violations:
        grouped.setdefault(v.metric, []).append(v)
    return grouped


def generate_junit_report(output_path: str | Path, result: TestResult) -> Path:
    """JUnit XML for CI: one testcase per violated metric plus the run itself.

    Metrics with a critical violation become failures; warning-only metrics pass
    and list their violations in system-out.
    """
    import xml.etree.ElementTree as ET
    from xml.dom import minidom

    suite_name = f"volley.{_slug(result.scenario.name)}"
    grouped = _group_violations(result.violations)
    duration = f"{result.duration_seconds:.3f}"
    failures = sum(1 for vs in grouped.values() if any(v.severity is Severity.CRITICAL for v in vs))
    errors = 1 if result.error else 0

    testsuite = ET.Element(
        "testsuite",
        name=suite_name,
        tests=str(1 + len(grouped)),
        failures=str(failures),
        errors=str(errors),
        skipped="0",
        time=duration,
        timestamp=datetime.fromtimestamp(result.start_time, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
    )
    run_case = ET.SubElement(
        testsuite,
        "testcase",
        name=f"{result.scenario.scenario_type.value}_{result.scenario.load.pattern.value}",
        classname=suite_name,
        time=duration,
    )
    if result.error:
        err = ET.SubElement(run_case, "error", message="Run failed")
        err.text = result.error
    s = result.summary
    out_el = ET.SubElement(run_case, "system-out")
    out_el.text = (
        f"status={result.status.value} total_requests={s.total_requests} failed={s.failed_requests} "
        f"rps={s.throughput_rps:.2f} avg_ms={s.average_response_time_ms:.2f} "
        f"p95_ms={s.p95_response_time_ms:.2f} error_rate_pct={s.error_rate_pct:.2f}"
    )
    for metric, vs in grouped.items():
        case = ET.SubElement(testsuite, "testcase", name=f"threshold_{metric}", classname=suite_name, time="0")
        text = "\n".join(v.description for v in vs)
        if any(v.severity is Severity.CRITICAL for v in vs):
            failure = ET.SubElement(case, "failure", message=f"{len(vs)} violation(s) of {metric}", type="critical")
            failure.text = text
        else:
            ET.SubElement(case, "system-out").text = text

    root = ET.Element("testsuites")
    root.append(testsuite)
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(xml_str, encoding="utf-8")
    return out


def _sparkline(values: Sequence[float]) -> str:
    """SVG polyline points for a series scaled into the chart box."""
    if not values:
        return ""
    top = max(values) or 1.0
    n = len(values)
    step = CHART_WIDTH / (n - 1) if n > 1 else 0.0
    return " ".join(
        f"{i * step:.1f},{CHART_HEIGHT - (v / top) * (CHART_HEIGHT - 4) - 2:.1f}" for i, v in enumerate(values)
    )


def _verdict(result: TestResult) -> tuple[str, str]:
    if result.error:
        return "Failed", "danger"
    if not result.passed:
        return "Critical threshold violations", "danger"
    if result.violations:
        return "Passed with warnings", "warning"
    if result.summary.total_requests == 0:
        return "No data", "warning"
    return "Passed", "success"


def _vitals_rows(result: TestResult) -> list[dict[str, Any]]:
    vitals = result.web_vitals
    if vitals is None:
        return []
    rows = []
    for key, rating_key, label, unit in VITAL_ROWS:
        value = vitals.averages.get(key)
        if value is None:
            continue
        shown = f"{value:.3f}" if not unit else f"{value:.0f} {unit}"
        rows.append({"label": label, "value": shown, "rating": vitals.ratings.get(rating_key) if rating_key else None})
    return rows


def generate_html_report(output_path: str | Path, result: TestResult) -> Path:
    """Single self-contained HTML file: summary cards, sparklines, violations, users, environment."""
    samples: Sequence[MetricsSample] = result.samples
    verdict, verdict_class = _verdict(result)
    grouped = _group_violations(result.violations)
    violation_rows = [
        {
            "metric": metric,
            "severity": "critical" if any(v.severity is Severity.CRITICAL for v in vs) else "warning",
            "count": len(vs),
            "worst": max(v.actual_value for v in vs) if metric != "throughput" else min(v.actual_value for v in vs),
            "threshold": vs[0].threshold_value,
            "description": vs[-1].description,
        }
        for metric, vs in grouped.items()
    ]
    error_rows = sorted(result.summary.error_types.items(), key=lambda kv: -kv[1])
    request = result.scenario.request

    env = Environment(
        loader=PackageLoader("volley", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    html = template.render(
        result=result,
        scenario=result.scenario,
        summary=result.summary,
        verdict=verdict,
        verdict_class=verdict_class,
        target_url=mask_url(request.url) if request is not None else "simulated",
        target_method=request.method if request is not None else "-",
        start_str=_iso(result.start_time),
        end_str=_iso(result.end_time),
        violation_rows=violation_rows,
        error_rows=error_rows,
        vitals_rows=_vitals_rows(result),
        sample_count=len(samples),
        chart_width=CHART_WIDTH,
        chart_height=CHART_HEIGHT,
        users_points=_sparkline([s.virtual_users.active for s in samples]),
        rps_points=_sparkline([s.throughput.requests_per_second for s in samples]),
        avg_points=_sparkline([s.timing.average_ms for s in samples]),
        p95_points=_sparkline([s.timing.p95_ms for s in samples]),
        environment=result.environment,
        generated_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        volley_version=volley_version,
        python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
    )
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(html, encoding="utf-8")
    return out


_RENDERERS = {
    ReportFormat.HTML: generate_html_report,
    ReportFormat.JSON: generate_json_report,
    ReportFormat.CSV: generate_csv_report,
    ReportFormat.JUNIT: generate_junit_report,
}


def parse_format(fmt: ReportFormat | str) -> ReportFormat:
    if isinstance(fmt, ReportFormat):
        return fmt
    value = str(fmt).strip().lower()
    if value == "xml":
        return ReportFormat.JUNIT
    try:
        return ReportFormat(value)
    except ValueError:
        raise VolleyReportError(
            f"Unsupported report format: {fmt}",
            context={"supported": [f.value for f in ReportFormat]},
        ) from None


def export_result(result: TestResult, fmt: ReportFormat | str, output_dir: str | Path) -> Path:
    """Render one format into output_dir and return the written path."""
    report_format = parse_format(fmt)
    path = Path(output_dir) / report_filename(result, report_format)
    _RENDERERS[report_format](path, result)
    logger.info("%s report written: %s", report_format.value.upper(), path)
    return path


class ReportSession:
    """Per-run reporting sink: logs violations as they happen, writes reports on finalize."""

    def __init__(self, reporter: "PerformanceReporter", test_id: str, scenario_name: str) -> None:
        self._reporter = reporter
        self.test_id = test_id
        self.scenario_name = scenario_name
        self.sample_count = 0
        self.violation_count = 0
        self.paths: list[Path] = []

    def record_sample(self, sample: "MetricsSample") -> None:
        self.sample_count += 1
        logger.debug(
            "[%s] active=%d sent=%d avg=%.1fms rps=%.1f err=%.2f%%",
            self.test_id, sample.virtual_users.active, sample.requests.sent,
            sample.timing.average_ms, sample.throughput.requests_per_second, sample.errors.rate_pct,
        )

    def record_violation(self, violation: ThresholdViolation) -> None:
        self.violation_count += 1
        if violation.severity is Severity.CRITICAL:
            logger.error("[%s] Threshold violated: %s", self.test_id, violation.description)
        else:
            logger.warning("[%s] Threshold violated: %s", self.test_id, violation.description)

    def finalize(self, result: TestResult) -> list[Path]:
        for fmt in self._reporter.formats:
            self.paths.append(export_result(result, fmt, self._reporter.output_dir))
        s = result.summary
        logger.info(
            "Test %s (%s) finished: status=%s requests=%d rps=%.1f avg=%.1fms p95=%.1fms errors=%.2f%% violations=%d",
            self.test_id, self.scenario_name, result.status.value, s.total_requests, s.throughput_rps,
            s.average_response_time_ms, s.p95_response_time_ms, s.error_rate_pct, self.violation_count,
        )
        return self.paths


class PerformanceReporter:
    """Output directory plus the formats written automatically when a run finalizes."""

    def __init__(self, output_dir: str | Path, formats: Sequence[ReportFormat | str] = ()) -> None:
        self.output_dir = Path(output_dir)
        self.formats = [parse_format(f) for f in formats]

    def start_session(self, test_id: str, scenario_name: str) -> ReportSession:
        return ReportSession(self, test_id, scenario_name)
