"""Translation between the shared contracts and the OpenAI chat-completions wire shape."""

from __future__ import annotations

import json
from typing import Any

from ..contracts import CompletionResponse, ToolCall, Usage
from ..errors import UpstreamProtocolError
from ..json_extract import extract_json, is_json_object
from ..schemas import ChatMessage, CompletionRequest
from .base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    decode_event,
    optional_object,
    require_object,
    token_count,
)

STREAM_DONE = "[DONE]"


def to_wire_message(message: ChatMessage) -> dict[str, Any]:
    if message.role == "tool":
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
    if message.role == "assistant" and message.tool_calls:
        return {
            "role": "assistant",
            "content": message.content or None,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in message.tool_calls
            ],
        }
    return {"role": message.role, "content": message.content}


def build_payload(request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [to_wire_message(m) for m in request.messages],
        "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
    }
    if stream:
        payload["stream"] = True
    elif request.tools:
        payload["tools"] = [t.model_dump() for t in request.tools]
        payload["tool_choice"] = request.effective_tool_choice()
    if request.response_format == "json":
        payload["response_format"] = {"type": "json_object"}
    return payload


def parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    function = optional_object(raw.get("function"))
    name = function.get("name")
    name = name if isinstance(name, str) else ""
    call_id = raw.get("id")
    call_id = call_id if isinstance(call_id, str) else ""
    arguments = function.get("arguments")
    if isinstance(arguments, dict):
        return ToolCall(id=call_id, name=name, arguments=arguments)
    if arguments in (None, ""):
        return ToolCall(id=call_id, name=name, arguments={})
    result = extract_json(str(arguments), is_json_object)
    if not result.success:
        return ToolCall(id=call_id, name=name, arguments={}, argument_error=result.error)
    return ToolCall(id=call_id, name=name, arguments=result.data)


def parse_usage(data: dict[str, Any]) -> Usage:
    usage = optional_object(data.get("usage"))
    prompt = token_count(usage.get("prompt_tokens"))
    completion = token_count(usage.get("completion_tokens"))
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=token_count(usage.get("total_tokens")) or prompt + completion,
    )


def parse_completion(
    data: dict[str, Any],
    *,
    model: str,
    provider: str,
    tools_requested: bool,
) -> CompletionResponse:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise UpstreamProtocolError("Missing choices in upstream response.")
    message = require_object(require_object(choices[0], "choice").get("message"), "message")

    tool_calls: list[ToolCall] = []
    if tools_requested:
        raw_calls = message.get("tool_calls")
        for raw in raw_calls if isinstance(raw_calls, list) else []:
            if isinstance(raw, dict) and raw.get("type", "function") == "function":
                tool_calls.append(parse_tool_call(raw))

    content = message.get("content")
    return CompletionResponse(
        content=content if isinstance(content, str) else None,
        tool_calls=tool_calls,
        usage=parse_usage(data),
        model=model,
        provider=provider,
    )


def parse_stream_event(raw: str) -> str | None:
    """Text delta carried by one SSE data payload, if any."""
    choices = decode_event(raw).get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    delta = optional_object(require_object(choices[0], "stream choice").get("delta"))
    content = delta.get("content")
    return content if isinstance(content, str) and content else None
