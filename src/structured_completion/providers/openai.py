from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing

import httpx

from ..config import ProviderSettings
from ..contracts import CompletionResponse, StreamChunk
from ..schemas import CompletionRequest
from . import openai_compat
from .base import ModelPrice, estimate_cost_from_table, resolve_api_key, track_request
from .http import Clock, LazySession, Sleeper, UpstreamSession, connect, sse_data

OPENAI_PRICING: dict[str, ModelPrice] = {
    "gpt-4o": ModelPrice(2.50, 10.00),
    "gpt-4o-mini": ModelPrice(0.15, 0.60),
    "gpt-4-turbo": ModelPrice(10.00, 30.00),
    "gpt-3.5-turbo": ModelPrice(0.50, 1.50),
}


class OpenAIAdapter:
    """OpenAI chat-completions adapter. Tool results travel as ``tool`` role messages."""

    name = "openai"
    default_model = "gpt-4o-mini"
    supports_tools = True
    supports_streaming = True

    base_url = "https://api.openai.com/v1"
    credential_env = "OPENAI_API_KEY"
    pricing: dict[str, ModelPrice] = OPENAI_PRICING

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
        return bool(resolve_api_key(self.settings, self.credential_env))

    def _connect(self) -> UpstreamSession:
        api_key = resolve_api_key(self.settings, self.credential_env)
        settings = self.settings.model_copy(update={"api_key": api_key})
        return connect(
            settings,
            provider=self.name,
            base_url=self.settings.base_url or self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
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
        with track_request(self.name, model):
            session = self._session.get()
            data = await session.post_json(
                "/chat/completions", openai_compat.build_payload(request, model)
            )
            return openai_compat.parse_completion(
                data, model=model, provider=self.name, tools_requested=request.has_tools
            )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self.default_model
        session = self._session.get()
        payload = openai_compat.build_payload(request, model, stream=True)
        with track_request(self.name, model):
            async with aclosing(session.stream_lines("/chat/completions", payload)) as lines:
                async for line in lines:
                    raw = sse_data(line)
                    if raw is None:
                        continue
                    if raw == openai_compat.STREAM_DONE:
                        break
                    text = openai_compat.parse_stream_event(raw)
                    if text:
                        yield StreamChunk(content=text, done=False)
        yield StreamChunk(done=True)

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str | None = None) -> float:
        return estimate_cost_from_table(self.pricing, self.default_model, prompt_tokens, completion_tokens, model)
