"""Request execution and the virtual-user loop. Speed and minimal overhead first.

- RequestExecutor: protocol for "issue one request, return an outcome or raise"
- HttpRequestExecutor: shared httpx client (HTTP/2), no retries
- SimulatedExecutor: stand-in when a scenario has no request template
- run_virtual_user: request/think-time loop of a single virtual user

Per-iteration failures are raised by executors as VolleyRequestError subclasses and
counted by run_virtual_user; they never propagate out of the loop.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx
import orjson

from .exceptions import VolleyError, VolleyNetworkError, VolleyStatusError, VolleyTimeoutError
from .logging_config import get_logger
from .models import RequestOutcome, RequestTemplate, VirtualUser

if TYPE_CHECKING:
    from .execution import TestExecution

logger = get_logger("engine")

# Tuned for throughput: high connection limits, shared client.
DEFAULT_MAX_CONNECTIONS = 1000
DEFAULT_MAX_KEEPALIVE = 200
DEFAULT_KEEPALIVE_EXPIRY = 30.0
DEFAULT_TIMEOUT_SEC = 30.0
# Simulated latency range when no request template is configured (ms)
SIMULATED_MIN_MS = 100.0
SIMULATED_MAX_MS = 300.0
NS_TO_MS = 1_000_000
UNKNOWN_ERROR = "Unknown Error"
MAX_ERROR_KEY_LENGTH = 200


@runtime_checkable
class RequestExecutor(Protocol):
    """Issues one request per call. Raises on network error, timeout or rejected status."""

    async def execute(self, template: RequestTemplate | None) -> RequestOutcome: ...

    async def aclose(self) -> None: ...


def create_client(
    http2: bool = True,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    limits: httpx.Limits | None = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client for one run.

    Args:
        http2: Enable HTTP/2 protocol (multiplexing)
        timeout: Default request timeout in seconds (templates override per request)
        limits: Custom connection limits (uses high defaults if not specified)
    """
    limits = limits or httpx.Limits(
        max_connections=DEFAULT_MAX_CONNECTIONS,
        max_keepalive_connections=DEFAULT_MAX_KEEPALIVE,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    return httpx.AsyncClient(http2=http2, timeout=timeout, limits=limits)


def _encode_body(template: RequestTemplate) -> tuple[bytes | None, dict[str, str]]:
    headers = dict(template.headers)
    body = template.body
    if body is None:
        return None, headers
    if isinstance(body, bytes):
        return body, headers
    if isinstance(body, str):
        content = body.encode("utf-8")
    else:
        content = orjson.dumps(body)
    if "content-type" not in {k.lower() for k in headers}:
        headers["Content-Type"] = "application/json"
    return content, headers


class HttpRequestExecutor:
    """HTTP executor over a shared httpx.AsyncClient.

    Body bytes and headers are prepared once per template and cached.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, http2: bool = True) -> None:
        self._client = client
        self._owns_client = client is None
        self._http2 = http2
        self._prepared: dict[int, tuple[bytes | None, dict[str, str]]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_client(http2=self._http2)
        return self._client

    def _prepare(self, template: RequestTemplate) -> tuple[bytes | None, dict[str, str]]:
        key = id(template)
        cached = self._prepared.get(key)
        if cached is None:
            cached = _encode_body(template)
            self._prepared[key] = cached
        return cached

    async def execute(self, template: RequestTemplate | None) -> RequestOutcome:
        if template is None:
            raise VolleyNetworkError("No request template configured")
        content, headers = self._prepare(template)
        client = self._get_client()
        start_ns = time.perf_counter_ns()
        try:
            r = await client.request(
                template.method,
                template.url,
                headers=headers,
                content=content,
                timeout=template.timeout_ms / 1000.0,
                follow_redirects=template.follow_redirects,
            )
        except httpx.TimeoutException as e:
            raise VolleyTimeoutError(
                f"Request timed out after {template.timeout_ms:.0f}ms", original_error=e
            ) from e
        except httpx.HTTPError as e:
            raise VolleyNetworkError(f"{type(e).__name__}: {e}", original_error=e) from e
        latency_ms = (time.perf_counter_ns() - start_ns) / NS_TO_MS
        if not template.accepts(r.status_code):
            raise VolleyStatusError(
                f"HTTP {r.status_code} {r.reason_phrase}".strip(), status_code=r.status_code
            )
        return RequestOutcome(r.status_code, latency_ms, len(r.content))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class SimulatedExecutor:
    """Sleeps a random 100-300 ms and reports success. Used when no template is configured."""

    def __init__(
        self,
        min_ms: float = SIMULATED_MIN_MS,
        max_ms: float = SIMULATED_MAX_MS,
        rng: random.Random | None = None,
    ) -> None:
        self._min_ms = min_ms
        self._max_ms = max_ms
        self._rng = rng or random.Random()

    async def execute(self, template: RequestTemplate | None) -> RequestOutcome:
        latency_ms = self._rng.uniform(self._min_ms, self._max_ms)
        await asyncio.sleep(latency_ms / 1000.0)
        return RequestOutcome(200, latency_ms, 0)

    async def aclose(self) -> None:
        return None


def error_key(error: BaseException) -> str:
    """Category used in the per-error-type breakdown: message, else exception type."""
    message = error.message if isinstance(error, VolleyError) else str(error)
    message = (message or "").strip()
    if not message:
        message = type(error).__name__ or UNKNOWN_ERROR
    return message[:MAX_ERROR_KEY_LENGTH]


def _should_continue(user: VirtualUser, execution: "TestExecution") -> bool:
    return user.is_active and not execution.is_stopping and not execution.deadline_passed()


async def run_virtual_user(
    user: VirtualUser,
    execution: "TestExecution",
    executor: RequestExecutor,
    template: RequestTemplate | None,
    think_time_ms: float,
    iterations: int = 0,
) -> None:
    """Run one virtual user until it is stopped, the deadline passes or the iteration cap is hit.

    Each iteration: count sent, execute, record success or failure into the shared
    accumulator, then think. On exit the user is marked completed; an error outside
    the per-iteration handling marks it failed instead.
    """
    acc = execution.accumulator
    think_sec = max(0.0, think_time_ms) / 1000.0
    done = 0
    try:
        while _should_continue(user, execution):
            acc.record_sent()
            user.request_count += 1
            try:
                outcome = await executor.execute(template)
            except Exception as e:  # noqa: BLE001
                acc.record_failure(error_key(e))
                user.record_failure()
            else:
                acc.record_success(outcome.latency_ms, outcome.size_bytes)
                user.record_success(outcome.latency_ms)
            done += 1
            if iterations > 0 and done >= iterations:
                break
            if not _should_continue(user, execution):
                break
            if think_sec > 0:
                remaining = execution.deadline - time.monotonic() if execution.deadline is not None else think_sec
                await asyncio.sleep(max(0.0, min(think_sec, remaining)))
            else:
                await asyncio.sleep(0)
    except asyncio.CancelledError:
        user.finish()
        raise
    except Exception:
        logger.exception("Virtual user %s failed", user.id, extra={"test_id": execution.test_id})
        user.fail()
    finally:
        user.finish()
