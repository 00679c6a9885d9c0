from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from intake.core.errors import ShutdownRejected, TransportError
from intake.core.lifecycle import ShutdownFlag

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
JITTER_RATIO = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one logical request."""

    retries: int = 2
    backoff_ms: int = 400
    timeout_ms: int = 30_000
    retry_on_statuses: frozenset[int] = DEFAULT_RETRY_STATUSES


def compute_retry_delay_ms(attempt: int, backoff_ms: int, random_value: float) -> int:
    """Delay before retrying after ``attempt`` (0-indexed) failed.

    Exponential ``backoff_ms * 2**attempt`` plus up to 20% of that value as jitter.
    """

    safe_attempt = max(0, int(attempt))
    safe_backoff = max(0, int(backoff_ms))
    base_delay = safe_backoff * 2**safe_attempt
    normalized = min(1.0, max(0.0, random_value)) if math.isfinite(random_value) else 0.0
    return int(base_delay + base_delay * JITTER_RATIO * normalized)


async def _sleep_ms(delay_ms: int) -> None:
    await asyncio.sleep(delay_ms / 1000)


class RetryingTransport:
    """HTTP client wrapper with bounded exponential backoff and shutdown awareness."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        policy: Optional[RetryPolicy] = None,
        shutdown: Optional[ShutdownFlag] = None,
        random_fn: Callable[[], float] = random.random,
        sleep: Callable[[int], Awaitable[None]] = _sleep_ms,
    ) -> None:
        self._client = http_client
        self._policy = policy or RetryPolicy()
        self._shutdown = shutdown or ShutdownFlag()
        self._random = random_fn
        self._sleep = sleep

    @property
    def default_policy(self) -> RetryPolicy:
        return self._policy

    async def fetch_with_retry(
        self,
        url: str,
        *,
        method: str = "GET",
        policy: Optional[RetryPolicy] = None,
        **request_kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying retryable statuses and transport errors.

        Non-retryable statuses are returned as-is on the first attempt. When the
        budget runs out on a retryable status the last response is returned; when
        it runs out on transport errors a TransportError is raised.
        """

        active = policy or self._policy
        retries = max(0, int(active.retries))
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            if self._shutdown.requested:
                raise ShutdownRejected()
            try:
                response = await self._send(method, url, active.timeout_ms, request_kwargs)
            except (httpx.TransportError, asyncio.TimeoutError) as exc:
                if self._shutdown.requested:
                    raise ShutdownRejected() from exc
                last_error = exc
                logger.warning(
                    "HTTP %s %s failed on attempt %s/%s: %s",
                    method,
                    url,
                    attempt + 1,
                    retries + 1,
                    exc.__class__.__name__,
                )
                if attempt == retries:
                    break
                await self._sleep(compute_retry_delay_ms(attempt, active.backoff_ms, self._random()))
                continue

            if response.status_code not in active.retry_on_statuses or attempt == retries:
                return response
            logger.info(
                "HTTP %s %s returned %s, retrying (attempt %s/%s)",
                method,
                url,
                response.status_code,
                attempt + 1,
                retries + 1,
            )
            await response.aclose()
            await self._sleep(compute_retry_delay_ms(attempt, active.backoff_ms, self._random()))

        is_timeout = isinstance(last_error, (httpx.TimeoutException, asyncio.TimeoutError))
        raise TransportError(
            "PROVIDER_TIMEOUT" if is_timeout else "PROVIDER_CONNECTION_ERROR",
            f"Request to {url} failed after {retries + 1} attempt(s).",
            retryable=True,
            attempts=retries + 1,
        ) from last_error

    async def request_json(
        self,
        url: str,
        *,
        method: str = "GET",
        policy: Optional[RetryPolicy] = None,
        **request_kwargs: Any,
    ) -> dict[str, Any]:
        """Fetch with retry and decode a JSON object, mapping error statuses to TransportError."""

        response = await self.fetch_with_retry(url, method=method, policy=policy, **request_kwargs)
        if response.status_code >= 400:
            raise build_status_error(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise TransportError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _send(
        self, method: str, url: str, timeout_ms: int, request_kwargs: dict[str, Any]
    ) -> httpx.Response:
        timeout_sec = max(1, int(timeout_ms)) / 1000
        if self._client is not None:
            return await asyncio.wait_for(
                self._client.request(method, url, timeout=timeout_sec, **request_kwargs),
                timeout=timeout_sec,
            )
        async with httpx.AsyncClient(timeout=timeout_sec) as client:
            return await asyncio.wait_for(
                client.request(method, url, **request_kwargs), timeout=timeout_sec
            )


def build_status_error(response: httpx.Response) -> TransportError:
    """Build a normalized transport error from an HTTP response."""

    status = response.status_code
    message = f"Provider returned {status}: {_extract_response_message(response)}"
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return TransportError(code, message, retryable=True, status_code=status)
    if status >= 500:
        return TransportError("PROVIDER_UPSTREAM", message, retryable=True, status_code=status)
    return TransportError("PROVIDER_BAD_STATUS", message, status_code=status)


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()
