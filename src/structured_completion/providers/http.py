from __future__ import annotations

import asyncio
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import structlog

from ..config import ProviderSettings
from ..errors import (
    AuthenticationError,
    CircuitBreakerOpenError,
    ConfigurationError,
    PipelineError,
    RequestTimeoutError,
    TransportError,
    UpstreamProtocolError,
    UpstreamRateLimitError,
)
from ..metrics import upstream_circuit_breaker_events_total

log = structlog.get_logger()

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class UpstreamSession:
    """
    Retrying JSON-over-HTTP session for one vendor endpoint.

    Retries timeouts, transport errors, 429 and 5xx with exponential backoff
    (honouring Retry-After), maps 401/403 to AuthenticationError, and trips a
    circuit breaker after consecutive failures.
    """

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout_seconds: float = 60,
        max_attempts: int = 3,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        circuit_breaker_failures: int = 5,
        circuit_breaker_reset_seconds: float = 30.0,
        sleeper: Sleeper | None = None,
        clock: Clock | None = None,
    ):
        self.provider = provider
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._params = dict(params or {})
        self._max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Sleeper = sleeper or asyncio.sleep
        self._clock: Clock = clock or time.monotonic

        self._cb_threshold = max(0, int(circuit_breaker_failures))
        self._cb_reset_seconds = max(0.0, float(circuit_breaker_reset_seconds))
        self._cb_failures = 0
        self._cb_open_until: float | None = None

    async def close(self) -> None:
        await self._client.aclose()

    def _circuit_remaining_seconds(self) -> int | None:
        if self._cb_open_until is None:
            return None
        remaining = self._cb_open_until - self._clock()
        if remaining <= 0:
            return None
        return int(remaining) + 1

    def _circuit_allow(self) -> None:
        if self._cb_threshold <= 0:
            return
        remaining = self._circuit_remaining_seconds()
        if remaining is None:
            return
        upstream_circuit_breaker_events_total.labels(provider=self.provider, event="short_circuit").inc()
        raise CircuitBreakerOpenError(retry_after_seconds=remaining)

    def _circuit_on_success(self) -> None:
        if self._cb_threshold <= 0:
            return
        self._cb_failures = 0
        self._cb_open_until = None

    def _circuit_on_failure(self) -> None:
        if self._cb_threshold <= 0:
            return
        self._cb_failures += 1
        if self._cb_failures < self._cb_threshold:
            return
        if self._cb_reset_seconds <= 0:
            return
        self._cb_open_until = self._clock() + self._cb_reset_seconds
        upstream_circuit_breaker_events_total.labels(provider=self.provider, event="open").inc()

    def _compute_backoff(self, attempt_index: int) -> float:
        # attempt_index: 0-based retry count (0 for first retry)
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _error_for_status(self, resp: httpx.Response) -> tuple[PipelineError, float | None]:
        """Map a failed response to (error, retry delay). A None delay means do not retry."""
        status = resp.status_code
        if status in (401, 403):
            return AuthenticationError(f"{self.provider} rejected credentials."), None
        if status == 429:
            retry_after = resp.headers.get("retry-after")
            retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
            self._circuit_on_failure()
            return UpstreamRateLimitError(retry_after_seconds=retry_seconds), (
                float(retry_seconds) if retry_seconds is not None else -1.0
            )
        if 500 <= status <= 599:
            self._circuit_on_failure()
            return TransportError(f"Upstream error {status}.", status_code=status), -1.0
        return TransportError(f"Upstream error {status}.", status_code=status, retryable=False), None

    async def _backoff_or_raise(self, err: PipelineError, delay: float | None, attempt: int) -> None:
        if delay is None or attempt >= self._max_attempts - 1:
            raise err
        await self._sleep(delay if delay >= 0 else self._compute_backoff(attempt))

    async def post_json(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        self._circuit_allow()
        url = self._url(path)
        merged_headers = {**self._headers, **(headers or {})}
        merged_params = {**self._params, **(params or {})}

        for attempt in range(self._max_attempts):
            try:
                resp = await self._client.post(url, params=merged_params or None, headers=merged_headers, json=payload)
            except httpx.TimeoutException as e:
                self._circuit_on_failure()
                if attempt >= self._max_attempts - 1:
                    raise RequestTimeoutError("Upstream request timed out.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue
            except httpx.HTTPError as e:
                self._circuit_on_failure()
                if attempt >= self._max_attempts - 1:
                    raise TransportError("Upstream request failed.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue

            if resp.status_code >= 400:
                err, delay = self._error_for_status(resp)
                if delay is None or attempt >= self._max_attempts - 1:
                    log.warning(
                        "upstream_error_response",
                        provider=self.provider,
                        status_code=resp.status_code,
                        body=resp.text[:500],
                    )
                await self._backoff_or_raise(err, delay, attempt)
                continue

            try:
                data = resp.json()
            except ValueError as e:
                raise UpstreamProtocolError("Upstream returned a non-JSON body.") from e
            if not isinstance(data, dict):
                raise UpstreamProtocolError("Upstream returned a non-object JSON body.")
            self._circuit_on_success()
            return data

        raise TransportError("Upstream request failed after retries.")  # pragma: no cover

    async def stream_lines(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[str]:
        """Yield non-empty response lines. Retries only happen before the first line is yielded."""
        self._circuit_allow()
        url = self._url(path)
        merged_headers = {**self._headers, **(headers or {})}
        merged_params = {**self._params, **(params or {})}

        for attempt in range(self._max_attempts):
            started = False
            failure: tuple[PipelineError, float | None] | None = None
            try:
                async with self._client.stream(
                    "POST", url, params=merged_params or None, headers=merged_headers, json=payload
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        failure = self._error_for_status(resp)
                    else:
                        async for line in resp.aiter_lines():
                            if not line:
                                continue
                            started = True
                            yield line
                        self._circuit_on_success()
                        return
            except httpx.TimeoutException as e:
                self._circuit_on_failure()
                if started or attempt >= self._max_attempts - 1:
                    raise RequestTimeoutError("Upstream stream timed out.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue
            except httpx.HTTPError as e:
                self._circuit_on_failure()
                if started or attempt >= self._max_attempts - 1:
                    raise TransportError("Upstream stream failed.") from e
                await self._sleep(self._compute_backoff(attempt))
                continue

            if failure is not None:
                await self._backoff_or_raise(failure[0], failure[1], attempt)

        raise TransportError("Upstream request failed after retries.")  # pragma: no cover


class LazySession:
    """Builds the UpstreamSession on first use; credentials are resolved at that moment."""

    def __init__(self, factory: Callable[[], UpstreamSession]):
        self._factory = factory
        self._session: UpstreamSession | None = None

    @property
    def connected(self) -> bool:
        return self._session is not None

    def get(self) -> UpstreamSession:
        if self._session is None:
            self._session = self._factory()
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()


def connect(
    settings: ProviderSettings,
    *,
    provider: str,
    base_url: str,
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
    require_api_key: bool = True,
    client: httpx.AsyncClient | None = None,
    sleeper: Sleeper | None = None,
    clock: Clock | None = None,
) -> UpstreamSession:
    if require_api_key and not settings.api_key:
        raise ConfigurationError(f"{provider} API key not configured.")
    return UpstreamSession(
        provider=provider,
        base_url=base_url,
        client=client,
        headers=headers,
        params=params,
        timeout_seconds=settings.timeout_seconds,
        max_attempts=settings.max_attempts,
        backoff_initial_seconds=settings.backoff_initial_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
        circuit_breaker_failures=settings.circuit_breaker_failures,
        circuit_breaker_reset_seconds=settings.circuit_breaker_reset_seconds,
        sleeper=sleeper,
        clock=clock,
    )


def sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or None for other fields."""
    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    return raw or None
