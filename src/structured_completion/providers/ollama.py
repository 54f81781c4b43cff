from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx
import structlog

from ..config import ProviderSettings
from ..contracts import CompletionResponse, StreamChunk, Usage
from ..errors import UpstreamProtocolError
from ..schemas import CompletionRequest
from .base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ModelPrice,
    estimate_cost_from_table,
    optional_object,
    token_count,
    track_request,
)
from .http import Clock, LazySession, Sleeper, UpstreamSession, connect

log = structlog.get_logger()

OLLAMA_DEFAULT_URL = "http://localhost:11434"

# Local inference is free; every model resolves to the default row.
OLLAMA_PRICING: dict[str, ModelPrice] = {"llama3.2": ModelPrice(0.0, 0.0)}


def build_payload(request: CompletionRequest, model: str, *, stream: bool) -> dict[str, Any]:
    messages = [
        {"role": m.role, "content": m.content}
        for m in request.messages
        if m.role != "tool" and (m.content or not m.tool_calls)
    ]
    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": stream,
        "options": {
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "num_predict": request.max_tokens or DEFAULT_MAX_TOKENS,
        },
    }
    if request.response_format == "json":
        payload["format"] = "json"
    return payload


class OllamaAdapter:
    """Local Ollama server. No credential and no tool support."""

    name = "ollama"
    default_model = "llama3.2"
    supports_tools = False
    supports_streaming = True

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleeper: Sleeper | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or ProviderSettings()
        self._client = client
        self._sleeper = sleeper
        self._clock = clock
        self._session = LazySession(self._connect)

    def is_available(self) -> bool:
        # Reachability is only known once a request is attempted.
        return True

    def _base_url(self) -> str:
        return self.settings.base_url or os.getenv("OLLAMA_URL") or OLLAMA_DEFAULT_URL

    def _connect(self) -> UpstreamSession:
        return connect(
            self.settings,
            provider=self.name,
            base_url=self._base_url(),
            require_api_key=False,
            client=self._client,
            sleeper=self._sleeper,
            clock=self._clock,
        )

    async def connect(self) -> None:
        self._session.get()

    async def close(self) -> None:
        await self._session.close()

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        if request.tools:
            log.debug("ollama_tools_ignored", tool_count=len(request.tools))
        with track_request(self.name, model):
            data = await self._session.get().post_json("/api/chat", build_payload(request, model, stream=False))
            message = data.get("message")
            if not isinstance(message, dict):
                raise UpstreamProtocolError("Missing message in upstream response.")
            prompt = token_count(data.get("prompt_eval_count"))
            completion = token_count(data.get("eval_count"))
            content = message.get("content")
            return CompletionResponse(
                content=content if isinstance(content, str) else None,
                tool_calls=[],
                usage=Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion),
                model=model,
                provider=self.name,
            )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self.default_model
        session = self._session.get()
        payload = build_payload(request, model, stream=True)
        with track_request(self.name, model):
            async with aclosing(session.stream_lines("/api/chat", payload)) as lines:
                async for line in lines:
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("ollama_stream_line_skipped", line=line[:200])
                        continue
                    if not isinstance(chunk, dict):
                        log.debug("ollama_stream_line_skipped", line=line[:200])
                        continue
                    if chunk.get("error"):
                        raise UpstreamProtocolError("Upstream stream reported an error.")
                    text = optional_object(chunk.get("message")).get("content")
                    if isinstance(text, str) and text:
                        yield StreamChunk(content=text, done=False)
                    if chunk.get("done"):
                        break
        yield StreamChunk(done=True)

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str | None = None) -> float:
        return estimate_cost_from_table(OLLAMA_PRICING, self.default_model, prompt_tokens, completion_tokens, model)
