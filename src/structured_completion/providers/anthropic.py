from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from ..config import ProviderSettings
from ..contracts import CompletionResponse, StreamChunk, ToolCall, Usage
from ..errors import UpstreamProtocolError
from ..schemas import ChatMessage, CompletionRequest
from .base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ModelPrice,
    decode_event,
    estimate_cost_from_table,
    optional_object,
    resolve_api_key,
    token_count,
    track_request,
)
from .http import Clock, LazySession, Sleeper, UpstreamSession, connect, sse_data

ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

ANTHROPIC_PRICING: dict[str, ModelPrice] = {
    "claude-3-5-sonnet-20241022": ModelPrice(3.00, 15.00),
    "claude-3-5-haiku-20241022": ModelPrice(0.80, 4.00),
    "claude-3-opus-20240229": ModelPrice(15.00, 75.00),
    "claude-3-sonnet-20240229": ModelPrice(3.00, 15.00),
    "claude-3-haiku-20240307": ModelPrice(0.25, 1.25),
}

_TOOL_CHOICE = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


def _split_messages(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
    """
    System text goes to its own field. Tool results become ``tool_result``
    blocks inside a user turn; consecutive results share one turn.
    """
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        if msg.role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
            prev = out[-1] if out else None
            if prev and prev["role"] == "user" and isinstance(prev["content"], list) and all(
                b.get("type") == "tool_result" for b in prev["content"]
            ):
                prev["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue
        if msg.role == "assistant" and msg.tool_calls:
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
            out.append({"role": "assistant", "content": blocks})
            continue
        out.append({"role": msg.role, "content": msg.content})

    system = "\n\n".join(system_parts).strip() or None
    return system, out


def build_payload(request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]:
    system, messages = _split_messages(request.messages)
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        "messages": messages,
    }
    if system:
        payload["system"] = system
    if stream:
        payload["stream"] = True
    elif request.tools:
        payload["tools"] = [
            {
                "name": t.function.name,
                "description": t.function.description,
                "input_schema": t.function.parameters,
            }
            for t in request.tools
        ]
        choice = request.effective_tool_choice()
        if choice:
            payload["tool_choice"] = _TOOL_CHOICE[choice]
    return payload


def parse_completion(data: dict[str, Any], *, model: str, tools_requested: bool) -> CompletionResponse:
    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise UpstreamProtocolError("Missing content blocks in upstream response.")

    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text = block.get("text")
            texts.append(text if isinstance(text, str) else "")
        elif block.get("type") == "tool_use" and tools_requested:
            args = block.get("input")
            call_id = block.get("id")
            name = block.get("name")
            tool_calls.append(
                ToolCall(
                    id=call_id if isinstance(call_id, str) else "",
                    name=name if isinstance(name, str) else "",
                    arguments=args if isinstance(args, dict) else {},
                    argument_error=None if isinstance(args, dict) else "Tool input was not an object",
                )
            )

    usage = optional_object(data.get("usage"))
    prompt = token_count(usage.get("input_tokens"))
    completion = token_count(usage.get("output_tokens"))
    return CompletionResponse(
        content="".join(texts) if texts else None,
        tool_calls=tool_calls,
        usage=Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion),
        model=model,
        provider="anthropic",
    )


class AnthropicAdapter:
    name = "anthropic"
    default_model = "claude-3-5-sonnet-20241022"
    supports_tools = True
    supports_streaming = True

    credential_env = "ANTHROPIC_API_KEY"

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
        return connect(
            self.settings.model_copy(update={"api_key": api_key}),
            provider=self.name,
            base_url=self.settings.base_url or ANTHROPIC_API_BASE,
            headers={"x-api-key": api_key or "", "anthropic-version": ANTHROPIC_VERSION},
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
            data = await self._session.get().post_json("/messages", build_payload(request, model))
            return parse_completion(data, model=model, tools_requested=request.has_tools)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self.default_model
        session = self._session.get()
        payload = build_payload(request, model, stream=True)
        with track_request(self.name, model):
            async with aclosing(session.stream_lines("/messages", payload)) as lines:
                async for line in lines:
                    raw = sse_data(line)
                    if raw is None:
                        continue
                    event = decode_event(raw)
                    etype = event.get("type")
                    if etype == "message_stop":
                        break
                    if etype == "error":
                        raise UpstreamProtocolError("Upstream stream reported an error.")
                    if etype == "content_block_delta":
                        delta = optional_object(event.get("delta"))
                        text = delta.get("text")
                        if delta.get("type") == "text_delta" and isinstance(text, str) and text:
                            yield StreamChunk(content=text, done=False)
        yield StreamChunk(done=True)

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str | None = None) -> float:
        return estimate_cost_from_table(
            ANTHROPIC_PRICING, self.default_model, prompt_tokens, completion_tokens, model
        )
