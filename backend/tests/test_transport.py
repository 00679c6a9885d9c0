from __future__ import annotations

import httpx
import pytest

from intake.core.errors import ShutdownRejected, TransportError
from intake.core.lifecycle import ShutdownFlag
from intake.providers.transport import (
    RetryPolicy,
    RetryingTransport,
    build_status_error,
    compute_retry_delay_ms,
)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[int] = []

    async def __call__(self, delay_ms: int) -> None:
        self.delays.append(delay_ms)


def _transport(handler, *, retries: int = 2, shutdown: ShutdownFlag | None = None):
    sleeper = SleepRecorder()
    transport = RetryingTransport(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        policy=RetryPolicy(retries=retries, backoff_ms=400, timeout_ms=5_000),
        shutdown=shutdown,
        random_fn=lambda: 0.0,
        sleep=sleeper,
    )
    return transport, sleeper


def test_retry_delay_is_exponential_with_bounded_jitter():
    assert compute_retry_delay_ms(0, 400, 0.0) == 400
    assert compute_retry_delay_ms(1, 400, 0.0) == 800
    assert compute_retry_delay_ms(2, 400, 1.0) == 1_920
    assert compute_retry_delay_ms(0, 100, 5.0) == 120
    assert compute_retry_delay_ms(0, 100, -1.0) == 100
    assert compute_retry_delay_ms(0, 100, float("nan")) == 100
    assert compute_retry_delay_ms(-3, 100, 0.0) == 100


@pytest.mark.anyio
async def test_retryable_statuses_are_retried_until_success():
    calls: list[int] = []
    statuses = [500, 500, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(statuses[len(calls) - 1], json={"ok": True})

    transport, sleeper = _transport(handler)
    response = await transport.fetch_with_retry("https://api.example.test/v1/review")

    assert response.status_code == 200
    assert len(calls) == 3
    assert sleeper.delays == [400, 800]


@pytest.mark.anyio
async def test_non_retryable_status_is_returned_immediately():
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, json={"error": "bad request"})

    transport, sleeper = _transport(handler)
    response = await transport.fetch_with_retry("https://api.example.test/v1/review")

    assert response.status_code == 400
    assert len(calls) == 1
    assert sleeper.delays == []


@pytest.mark.anyio
async def test_exhausted_retries_return_the_last_response():
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503, text="busy")

    transport, _ = _transport(handler, retries=1)
    response = await transport.fetch_with_retry("https://api.example.test/v1/review")

    assert response.status_code == 503
    assert len(calls) == 2


@pytest.mark.anyio
async def test_connection_errors_raise_after_the_budget():
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    transport, sleeper = _transport(handler)
    with pytest.raises(TransportError) as exc_info:
        await transport.fetch_with_retry("https://api.example.test/v1/review", method="POST")

    assert len(calls) == 3
    assert sleeper.delays == [400, 800]
    assert exc_info.value.code == "PROVIDER_CONNECTION_ERROR"
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.anyio
async def test_timeouts_are_reported_as_timeouts():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    transport, _ = _transport(handler, retries=0)
    with pytest.raises(TransportError) as exc_info:
        await transport.fetch_with_retry("https://api.example.test/v1/review")

    assert exc_info.value.code == "PROVIDER_TIMEOUT"
    assert exc_info.value.retryable is True


@pytest.mark.anyio
async def test_shutdown_blocks_new_attempts():
    calls: list[int] = []
    flag = ShutdownFlag()
    flag.request()

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200)

    transport, _ = _transport(handler, shutdown=flag)
    with pytest.raises(ShutdownRejected):
        await transport.fetch_with_retry("https://api.example.test/v1/review")
    assert calls == []


@pytest.mark.anyio
async def test_shutdown_between_attempts_stops_retrying():
    calls: list[int] = []
    flag = ShutdownFlag()

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        flag.request()
        return httpx.Response(502)

    transport, _ = _transport(handler, shutdown=flag)
    with pytest.raises(ShutdownRejected):
        await transport.fetch_with_retry("https://api.example.test/v1/review")
    assert len(calls) == 1


@pytest.mark.anyio
async def test_request_json_maps_error_statuses():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    transport, _ = _transport(handler, retries=0)
    with pytest.raises(TransportError) as exc_info:
        await transport.request_json("https://api.example.test/v1/review")

    assert exc_info.value.code == "PROVIDER_RATE_LIMIT"
    assert exc_info.value.status_code == 429
    assert "slow down" in exc_info.value.message


@pytest.mark.anyio
async def test_request_json_decodes_objects_and_rejects_garbage():
    payloads = iter([httpx.Response(200, json={"id": 1}), httpx.Response(200, text="<html>")])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(payloads)

    transport, _ = _transport(handler)
    assert await transport.request_json("https://api.example.test/v1/review") == {"id": 1}
    with pytest.raises(TransportError) as exc_info:
        await transport.request_json("https://api.example.test/v1/review")
    assert exc_info.value.code == "PROVIDER_PARSE_ERROR"
    await transport.aclose()


def test_status_errors_are_classified():
    request = httpx.Request("GET", "https://api.example.test")
    assert build_status_error(httpx.Response(408, request=request)).code == "PROVIDER_TIMEOUT"
    assert build_status_error(httpx.Response(503, request=request)).code == "PROVIDER_UPSTREAM"
    bad = build_status_error(httpx.Response(404, text="missing", request=request))
    assert bad.code == "PROVIDER_BAD_STATUS"
    assert bad.retryable is False
    assert bad.message == "Provider returned 404: missing"
