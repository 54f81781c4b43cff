from __future__ import annotations

import json
import os
import time
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog

from ..config import ProviderSettings
from ..contracts import CompletionResponse, StreamChunk
from ..errors import UpstreamProtocolError
from ..metrics import request_latency_seconds, requests_total
from ..schemas import CompletionRequest

log = structlog.get_logger()

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.3


@dataclass(frozen=True)
class ModelPrice:
    """USD per million tokens."""

    input: float
    output: float


@runtime_checkable
class ProviderAdapter(Protocol):
    name: str
    default_model: str
    supports_tools: bool
    supports_streaming: bool

    def is_available(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]: ...

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str | None = None) -> float: ...


def estimate_cost_from_table(
    pricing: Mapping[str, ModelPrice],
    default_model: str,
    prompt_tokens: int,
    completion_tokens: int,
    model: str | None = None,
) -> float:
    price = pricing.get(model or default_model) or pricing[default_model]
    return (prompt_tokens / 1_000_000) * price.input + (completion_tokens / 1_000_000) * price.output


def require_object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise UpstreamProtocolError(f"Malformed {what} in upstream response.")
    return value


def optional_object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def token_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def decode_event(raw: str) -> dict[str, Any]:
    """One streamed JSON payload. Anything but an object is a protocol error."""
    try:
        event = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UpstreamProtocolError("Failed to decode upstream stream JSON.") from e
    return require_object(event, "stream event")


def resolve_api_key(settings: ProviderSettings, env_var: str) -> str | None:
    """Explicit setting first, else the vendor environment variable."""
    return settings.api_key or os.getenv(env_var) or None


@contextmanager
def track_request(provider: str, model: str) -> Iterator[None]:
    """Count and time one upstream request. Streams are timed until their last chunk."""
    start = time.monotonic()
    try:
        with request_latency_seconds.labels(provider=provider).time():
            yield
    except Exception as e:
        requests_total.labels(provider=provider, status="error").inc()
        log.warning(
            "provider_error",
            provider=provider,
            model=model,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    except BaseException:
        # Task cancellation or a stream closed early by its consumer.
        requests_total.labels(provider=provider, status="cancelled").inc()
        raise
    requests_total.labels(provider=provider, status="success").inc()
    log.debug("provider_complete_ok", provider=provider, model=model, latency_seconds=time.monotonic() - start)
