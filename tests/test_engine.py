"""Unit tests for engine (HttpRequestExecutor, create_client, error_key, run_virtual_user)."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from volley.engine import (
    HttpRequestExecutor,
    SimulatedExecutor,
    create_client,
    error_key,
    run_virtual_user,
)
from volley.exceptions import VolleyNetworkError, VolleyStatusError, VolleyTimeoutError
from volley.execution import TestExecution
from volley.models import RequestTemplate, VirtualUser, VirtualUserStatus

from conftest import FakeExecutor, make_scenario


def _mock_client(status_code: int = 200, content: bytes = b"ok", side_effect=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.reason_phrase = "OK" if status_code < 400 else "Service Unavailable"
    response.content = content
    client = MagicMock()
    client.request = AsyncMock(return_value=response, side_effect=side_effect)
    client.aclose = AsyncMock()
    return client


def test_create_client_returns_async_client() -> None:
    client = create_client(http2=False)
    assert isinstance(client, httpx.AsyncClient)
    asyncio.run(client.aclose())


def test_execute_success() -> None:
    """Test that a 2xx response yields status, latency and body size."""
    client = _mock_client(200, b"hello")
    executor = HttpRequestExecutor(client=client)
    outcome = asyncio.run(executor.execute(RequestTemplate(url="https://api.example.com/")))
    assert outcome.status_code == 200
    assert outcome.size_bytes == 5
    assert outcome.latency_ms >= 0
    kwargs = client.request.call_args.kwargs
    assert kwargs["timeout"] == 30.0
    assert kwargs["follow_redirects"] is True


def test_execute_json_body_sets_content_type() -> None:
    """Test that a dict body is sent as JSON with a JSON Content-Type."""
    client = _mock_client()
    executor = HttpRequestExecutor(client=client)
    template = RequestTemplate(url="https://x.com", method="POST", body={"a": 1})
    asyncio.run(executor.execute(template))
    kwargs = client.request.call_args.kwargs
    assert kwargs["content"] == b'{"a":1}'
    assert kwargs["headers"]["Content-Type"] == "application/json"


def test_execute_keeps_existing_content_type() -> None:
    """Test that an explicit Content-Type header is not overwritten."""
    client = _mock_client()
    executor = HttpRequestExecutor(client=client)
    template = RequestTemplate(url="https://x.com", method="POST", headers={"content-type": "text/plain"}, body="raw")
    asyncio.run(executor.execute(template))
    kwargs = client.request.call_args.kwargs
    assert kwargs["content"] == b"raw"
    assert "Content-Type" not in kwargs["headers"]


def test_execute_status_outside_2xx_raises() -> None:
    """Test that a non-2xx status raises VolleyStatusError with the code attached."""
    executor = HttpRequestExecutor(client=_mock_client(503))
    with pytest.raises(VolleyStatusError) as exc:
        asyncio.run(executor.execute(RequestTemplate(url="https://x.com")))
    assert exc.value.status_code == 503
    assert exc.value.message.startswith("HTTP 503")


def test_execute_expected_statuses_override() -> None:
    executor = HttpRequestExecutor(client=_mock_client(404))
    template = RequestTemplate(url="https://x.com", expected_statuses=(404,))
    assert asyncio.run(executor.execute(template)).status_code == 404


def test_execute_timeout_maps_to_timeout_error() -> None:
    """Test that httpx timeouts surface as VolleyTimeoutError."""
    client = _mock_client(side_effect=httpx.ReadTimeout("slow"))
    executor = HttpRequestExecutor(client=client)
    with pytest.raises(VolleyTimeoutError) as exc:
        asyncio.run(executor.execute(RequestTemplate(url="https://x.com", timeout_ms=250)))
    assert exc.value.message == "Request timed out after 250ms"


def test_execute_transport_error_maps_to_network_error() -> None:
    """Test that connection failures surface as VolleyNetworkError."""
    client = _mock_client(side_effect=httpx.ConnectError("refused"))
    executor = HttpRequestExecutor(client=client)
    with pytest.raises(VolleyNetworkError):
        asyncio.run(executor.execute(RequestTemplate(url="https://x.com")))


def test_execute_without_template_raises() -> None:
    executor = HttpRequestExecutor(client=_mock_client())
    with pytest.raises(VolleyNetworkError):
        asyncio.run(executor.execute(None))


def test_aclose_leaves_injected_client_open() -> None:
    """An injected client belongs to the caller and is not closed."""
    client = _mock_client()
    asyncio.run(HttpRequestExecutor(client=client).aclose())
    client.aclose.assert_not_awaited()


def test_simulated_executor_latency_in_range() -> None:
    executor = SimulatedExecutor(min_ms=1, max_ms=3)
    outcome = asyncio.run(executor.execute(None))
    assert outcome.status_code == 200
    assert 1 <= outcome.latency_ms <= 3


def test_error_key_uses_message_then_type() -> None:
    """Error types are the exception message, or its class name when the message is empty."""
    assert error_key(VolleyNetworkError("Connection refused")) == "Connection refused"
    assert error_key(RuntimeError()) == "RuntimeError"
    assert len(error_key(ValueError("x" * 500))) == 200


def _running_execution(**kwargs) -> TestExecution:
    execution = TestExecution("t1", make_scenario(**kwargs))
    execution.mark_running()
    return execution


def test_run_virtual_user_iteration_cap() -> None:
    """With iterations=3 the user sends exactly three requests and completes."""
    execution = _running_execution(duration=5, iterations=3)
    user = VirtualUser("t1_vu_1")
    executor = FakeExecutor()
    asyncio.run(run_virtual_user(user, execution, executor, None, think_time_ms=0, iterations=3))
    assert executor.calls == 3
    assert user.request_count == 3
    assert user.status is VirtualUserStatus.COMPLETED
    assert user.average_response_time_ms == 5.0
    snap = execution.accumulator.snapshot()
    assert (snap.sent, snap.completed, snap.failed) == (3, 3, 0)


def test_run_virtual_user_counts_failures() -> None:
    execution = _running_execution(duration=5)
    user = VirtualUser("t1_vu_1")
    executor = FakeExecutor(fail_every=2)
    asyncio.run(run_virtual_user(user, execution, executor, None, think_time_ms=0, iterations=4))
    assert user.request_count == 4
    assert user.error_count == 2
    snap = execution.accumulator.snapshot()
    assert snap.failed == 2
    assert snap.error_types == {"Connection refused": 2}


def test_run_virtual_user_stops_at_deadline() -> None:
    """Test that the loop ends once the execution deadline passes."""
    execution = _running_execution(duration=0.2)
    user = VirtualUser("t1_vu_1")
    start = time.monotonic()
    asyncio.run(run_virtual_user(user, execution, FakeExecutor(), None, think_time_ms=1000))
    # Think time is clamped to the deadline
    assert time.monotonic() - start < 0.8
    assert user.status is VirtualUserStatus.COMPLETED


def test_run_virtual_user_exits_when_stopped() -> None:
    execution = _running_execution(duration=10)
    user = VirtualUser("t1_vu_1")

    async def scenario() -> None:
        task = asyncio.create_task(run_virtual_user(user, execution, FakeExecutor(), None, think_time_ms=0))
        await asyncio.sleep(0.05)
        user.request_stop()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())
    assert user.status is VirtualUserStatus.COMPLETED
    assert user.request_count > 0


def test_run_virtual_user_cancel_marks_completed() -> None:
    """Cancelling the task still leaves the user completed, never active."""
    execution = _running_execution(duration=10)
    user = VirtualUser("t1_vu_1")

    async def scenario() -> None:
        task = asyncio.create_task(run_virtual_user(user, execution, FakeExecutor(sleep_seconds=1), None, 0))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert user.status is VirtualUserStatus.COMPLETED
    snap = execution.accumulator.snapshot()
    assert snap.completed + snap.failed <= snap.sent
