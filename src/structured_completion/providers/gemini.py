from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from ..config import ProviderSettings
from ..contracts import CompletionResponse, StreamChunk, ToolCall, Usage
from ..errors import UpstreamProtocolError
from ..json_extract import extract_json, is_json_object
from ..schemas import ChatMessage, CompletionRequest
from .base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ModelPrice,
    decode_event,
    estimate_cost_from_table,
    optional_object,
    require_object,
    resolve_api_key,
    token_count,
    track_request,
)
from .http import Clock, LazySession, Sleeper, UpstreamSession, connect, sse_data

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

GEMINI_PRICING: dict[str, ModelPrice] = {
    "gemini-2.0-flash": ModelPrice(0.10, 0.40),
    "gemini-2.5-flash": ModelPrice(0.30, 2.50),
    "gemini-2.5-pro": ModelPrice(1.25, 10.00),
    "gemini-1.5-flash": ModelPrice(0.075, 0.30),
    "gemini-1.5-pro": ModelPrice(1.25, 5.00),
}

_FUNCTION_MODE = {"auto": "AUTO", "required": "ANY", "none": "NONE"}

# JSON-schema keywords the function declaration endpoint rejects.
_UNSUPPORTED_SCHEMA_KEYS = {"$schema", "additionalProperties", "$id", "$ref", "definitions", "$defs"}


def _clean_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {k: _clean_schema(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [_clean_schema(v) for v in schema]
    return schema


def _function_response(content: str) -> dict[str, Any]:
    result = extract_json(content, is_json_object)
    if result.success:
        return result.data
    parsed = extract_json(content)
    return {"result": parsed.data if parsed.success else content}


def _split_messages(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []
    # functionResponse parts are matched by name, not id
    call_names: dict[str, str] = {}

    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        if msg.role == "user":
            contents.append({"role": "user", "parts": [{"text": msg.content}]})
        elif msg.role == "assistant":
            parts: list[dict[str, Any]] = []
            if msg.content:
                parts.append({"text": msg.content})
            for tc in msg.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
            if parts:
                contents.append({"role": "model", "parts": parts})
        else:
            name = call_names.get(msg.tool_call_id or "", "")
            part = {"functionResponse": {"name": name, "response": _function_response(msg.content)}}
            prev = contents[-1] if contents else None
            if prev and prev["role"] == "user" and all("functionResponse" in p for p in prev["parts"]):
                prev["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})

    system_instruction = "\n\n".join(system_parts).strip() or None
    return system_instruction, contents


def build_payload(request: CompletionRequest, *, stream: bool = False) -> dict[str, Any]:
    system_instruction, contents = _split_messages(request.messages)
    payload: dict[str, Any] = {"contents": contents}

    if system_instruction:
        payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

    generation_config: dict[str, Any] = {
        "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        "maxOutputTokens": request.max_tokens or DEFAULT_MAX_TOKENS,
    }
    if request.response_format == "json":
        generation_config["responseMimeType"] = "application/json"
    payload["generationConfig"] = generation_config

    if request.tools and not stream:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {
                        "name": t.function.name,
                        "description": t.function.description,
                        "parameters": _clean_schema(t.function.parameters),
                    }
                    for t in request.tools
                ]
            }
        ]
        choice = request.effective_tool_choice()
        if choice:
            payload["toolConfig"] = {"functionCallingConfig": {"mode": _FUNCTION_MODE[choice]}}
    return payload


def _candidate_parts(data: dict[str, Any]) -> list[dict[str, Any]] | None:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = require_object(candidates[0], "candidate").get("content")
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    return [p for p in parts if isinstance(p, dict)]


def parse_completion(data: dict[str, Any], *, model: str, tools_requested: bool) -> CompletionResponse:
    parts = _candidate_parts(data)
    if parts is None:
        raise UpstreamProtocolError("Missing candidates in upstream response.")

    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in parts:
        text = part.get("text")
        if isinstance(text, str):
            texts.append(text)
        fc = part.get("functionCall")
        if isinstance(fc, dict) and tools_requested:
            name = fc.get("name")
            name = name if isinstance(name, str) else ""
            args = fc.get("args")
            # Older API revisions return no call id.
            call_id = fc.get("id")
            if not isinstance(call_id, str) or not call_id:
                call_id = f"gemini-call-{len(tool_calls)}-{name}"
            tool_calls.append(
                ToolCall(
                    id=call_id,
                    name=name,
                    arguments=args if isinstance(args, dict) else {},
                    argument_error=None if args is None or isinstance(args, dict) else "Tool args were not an object",
                )
            )

    meta = optional_object(data.get("usageMetadata"))
    prompt = token_count(meta.get("promptTokenCount"))
    completion = token_count(meta.get("candidatesTokenCount"))
    return CompletionResponse(
        content="".join(texts) if texts else None,
        tool_calls=tool_calls,
        usage=Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=token_count(meta.get("totalTokenCount")) or prompt + completion,
        ),
        model=model,
        provider="gemini",
    )


class GeminiAdapter:
    name = "gemini"
    default_model = "gemini-2.0-flash"
    supports_tools = True
    supports_streaming = True

    credential_env = "GOOGLE_API_KEY"

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
            base_url=self.settings.base_url or GEMINI_DEV_API_BASE,
            params={"key": api_key or ""},
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
            data = await self._session.get().post_json(f"/models/{model}:generateContent", build_payload(request))
            return parse_completion(data, model=model, tools_requested=request.has_tools)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        model = request.model or self.default_model
        session = self._session.get()
        payload = build_payload(request, stream=True)
        with track_request(self.name, model):
            lines = session.stream_lines(f"/models/{model}:streamGenerateContent", payload, params={"alt": "sse"})
            async with aclosing(lines):
                async for line in lines:
                    raw = sse_data(line)
                    if raw is None:
                        continue
                    for part in _candidate_parts(decode_event(raw)) or []:
                        text = part.get("text")
                        if isinstance(text, str) and text:
                            yield StreamChunk(content=text, done=False)
        yield StreamChunk(done=True)

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: str | None = None) -> float:
        return estimate_cost_from_table(GEMINI_PRICING, self.default_model, prompt_tokens, completion_tokens, model)
